"""Transfer lifecycle state machine"""

from typing import Dict, FrozenSet
import logging

from ..errors import TransferStateError
from .models import Transfer, TransferStatus

logger = logging.getLogger(__name__)


class TransferStateMachine:
    """
    pending -> transferring <-> paused
    transferring -> completed | failed
    pending, paused -> failed
    completed and failed are terminal
    """

    TRANSITIONS: Dict[TransferStatus, FrozenSet[TransferStatus]] = {
        TransferStatus.PENDING: frozenset({
            TransferStatus.TRANSFERRING,
            TransferStatus.FAILED,
        }),
        TransferStatus.TRANSFERRING: frozenset({
            TransferStatus.PAUSED,
            TransferStatus.COMPLETED,
            TransferStatus.FAILED,
        }),
        TransferStatus.PAUSED: frozenset({
            TransferStatus.TRANSFERRING,
            TransferStatus.FAILED,
        }),
        TransferStatus.COMPLETED: frozenset(),
        TransferStatus.FAILED: frozenset(),
    }

    @classmethod
    def can_transition(cls, current: TransferStatus, target: TransferStatus) -> bool:
        return target in cls.TRANSITIONS[current]

    @classmethod
    def is_terminal(cls, status: TransferStatus) -> bool:
        return not cls.TRANSITIONS[status]

    @classmethod
    def transition(cls, transfer: Transfer, target: TransferStatus) -> TransferStatus:
        """Move transfer to target status, returns the previous status"""
        current = transfer.status
        if not cls.can_transition(current, target):
            raise TransferStateError(
                f"Cannot move transfer from {current.value} to {target.value}",
                transfer_id=transfer.id
            )
        transfer.status = target
        logger.debug(f"Transfer {transfer.id}: {current.value} -> {target.value}")
        return current
