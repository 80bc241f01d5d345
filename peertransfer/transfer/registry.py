"""
Transfer registry

Single owner of every Transfer, its receive buffer and its callbacks.
All status changes go through here and through TransferStateMachine.

Status mutations are plain synchronous methods: under asyncio they run
without interleaving, so a pause() landing between two chunk sends is
seen whole by the next status check. Multi-step sequences that await in
the middle (decrypt, buffer, finalize) hold the per-id lock from lock();
unrelated transfers never contend on the same lock.
"""

import asyncio
import time
from typing import Dict, List, Optional
import logging

from ..errors import TransferNotFoundError, TransferStateError
from ..network.chunks import ChunkBuffer
from .models import Transfer, TransferCallbacks, TransferDirection, TransferStatus
from .state import TransferStateMachine

logger = logging.getLogger(__name__)


class TransferRegistry:
    """Maps transfer ids to transfers, chunk buffers and callbacks"""

    def __init__(self):
        self._transfers: Dict[str, Transfer] = {}
        self._buffers: Dict[str, ChunkBuffer] = {}
        self._callbacks: Dict[str, TransferCallbacks] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    # Lookup

    def add(self, transfer: Transfer, callbacks: Optional[TransferCallbacks] = None):
        if transfer.id in self._transfers:
            raise TransferStateError(
                f"Transfer {transfer.id} already registered", transfer_id=transfer.id
            )
        self._transfers[transfer.id] = transfer
        self._callbacks[transfer.id] = callbacks or TransferCallbacks()
        logger.debug(f"Registered transfer {transfer.id} ({transfer.direction.value})")

    def get(self, transfer_id: str) -> Optional[Transfer]:
        return self._transfers.get(transfer_id)

    def require(self, transfer_id: str) -> Transfer:
        transfer = self._transfers.get(transfer_id)
        if transfer is None:
            raise TransferNotFoundError(
                f"Transfer {transfer_id} not found", transfer_id=transfer_id
            )
        return transfer

    def __contains__(self, transfer_id: str) -> bool:
        return transfer_id in self._transfers

    def __len__(self) -> int:
        return len(self._transfers)

    def list(self) -> List[Transfer]:
        """Snapshots of every registered transfer"""
        return [t.snapshot() for t in self._transfers.values()]

    def lock(self, transfer_id: str) -> asyncio.Lock:
        lock = self._locks.get(transfer_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[transfer_id] = lock
        return lock

    def callbacks(self, transfer_id: str) -> TransferCallbacks:
        return self._callbacks.get(transfer_id) or TransferCallbacks()

    # Chunk buffers

    def buffer(self, transfer_id: str, create: bool = False) -> Optional[ChunkBuffer]:
        buf = self._buffers.get(transfer_id)
        if buf is None and create:
            transfer = self.require(transfer_id)
            buf = ChunkBuffer(transfer_id, transfer.total_chunks)
            self._buffers[transfer_id] = buf
        return buf

    def discard_buffer(self, transfer_id: str):
        self._buffers.pop(transfer_id, None)

    def rekey(self, old_id: str, new_id: str) -> Transfer:
        """Move a transfer and everything attached to it under a new id"""
        if new_id in self._transfers:
            raise TransferStateError(f"Transfer {new_id} already registered", transfer_id=new_id)

        transfer = self._transfers.pop(old_id)
        transfer.id = new_id
        self._transfers[new_id] = transfer

        for table in (self._buffers, self._callbacks, self._locks):
            if old_id in table:
                table[new_id] = table.pop(old_id)

        buf = self._buffers.get(new_id)
        if buf is not None:
            buf.transfer_id = new_id

        logger.warning(f"Re-keyed transfer {old_id} as {new_id}")
        return transfer

    def remove(self, transfer_id: str) -> Optional[Transfer]:
        transfer = self._transfers.pop(transfer_id, None)
        self._buffers.pop(transfer_id, None)
        self._callbacks.pop(transfer_id, None)
        self._locks.pop(transfer_id, None)
        return transfer

    def find_fallback_candidate(self) -> Optional[Transfer]:
        """
        Legacy orphan-chunk matching: the single receiving transfer that is
        transferring and has no chunks buffered yet, if exactly one exists
        """
        candidates = [
            t for t in self._transfers.values()
            if t.direction == TransferDirection.RECEIVE
            and t.status == TransferStatus.TRANSFERRING
            and not self._buffers.get(t.id)
        ]
        if len(candidates) == 1:
            return candidates[0]
        if len(candidates) > 1:
            logger.warning(f"{len(candidates)} fallback candidates, refusing to guess")
        return None

    # Status changes

    def start(self, transfer_id: str) -> Transfer:
        transfer = self.require(transfer_id)
        TransferStateMachine.transition(transfer, TransferStatus.TRANSFERRING)
        transfer.start_time = time.time()
        return transfer

    def pause(self, transfer_id: str) -> Transfer:
        transfer = self.require(transfer_id)
        if transfer.status != TransferStatus.TRANSFERRING:
            raise TransferStateError(
                f"Only a transferring transfer can be paused (status {transfer.status.value})",
                transfer_id=transfer_id
            )
        TransferStateMachine.transition(transfer, TransferStatus.PAUSED)
        logger.info(f"Paused transfer {transfer_id} at chunk {transfer.chunks_done}")
        return transfer

    def resume(self, transfer_id: str) -> Transfer:
        transfer = self.require(transfer_id)
        if transfer.status != TransferStatus.PAUSED:
            raise TransferStateError(
                f"Only a paused transfer can be resumed (status {transfer.status.value})",
                transfer_id=transfer_id
            )
        TransferStateMachine.transition(transfer, TransferStatus.TRANSFERRING)
        logger.info(f"Resumed transfer {transfer_id} from chunk {transfer.chunks_done}")
        return transfer

    def complete(self, transfer_id: str) -> Transfer:
        transfer = self.require(transfer_id)
        TransferStateMachine.transition(transfer, TransferStatus.COMPLETED)
        transfer.progress = 100.0
        transfer.encryption_key = None
        self.discard_buffer(transfer_id)
        return transfer

    def fail(self, transfer_id: str, reason: str) -> Optional[Transfer]:
        """
        Mark a transfer failed, keeping it visible until dismissed
        Returns None if it is gone or already terminal
        """
        transfer = self._transfers.get(transfer_id)
        if transfer is None or transfer.is_terminal:
            return None
        TransferStateMachine.transition(transfer, TransferStatus.FAILED)
        transfer.error = reason
        transfer.encryption_key = None
        self.discard_buffer(transfer_id)
        logger.error(f"Transfer {transfer_id} failed: {reason}")
        return transfer

    def cancel(self, transfer_id: str) -> Transfer:
        """Fail (if still live) and forget a transfer immediately"""
        transfer = self.require(transfer_id)
        if not transfer.is_terminal:
            TransferStateMachine.transition(transfer, TransferStatus.FAILED)
            transfer.error = "Cancelled"
        transfer.encryption_key = None
        self.remove(transfer_id)
        logger.info(f"Cancelled transfer {transfer_id}")
        return transfer

    def dismiss(self, transfer_id: str) -> Transfer:
        """Drop a transfer that already reached a terminal state"""
        transfer = self.require(transfer_id)
        if not transfer.is_terminal:
            raise TransferStateError(
                f"Transfer {transfer_id} is still {transfer.status.value}",
                transfer_id=transfer_id
            )
        self.remove(transfer_id)
        return transfer

    # Callbacks

    def notify_progress(self, transfer_id: str):
        transfer = self._transfers.get(transfer_id)
        callback = self.callbacks(transfer_id).on_progress
        if transfer is not None and callback:
            self._invoke("progress", callback, transfer.snapshot())

    def notify_complete(self, transfer_id: str):
        transfer = self._transfers.get(transfer_id)
        callback = self.callbacks(transfer_id).on_complete
        if transfer is not None and callback:
            self._invoke("complete", callback, transfer.snapshot())

    def notify_error(self, transfer_id: str, reason: str):
        transfer = self._transfers.get(transfer_id)
        callback = self.callbacks(transfer_id).on_error
        if transfer is not None and callback:
            self._invoke("error", callback, transfer.snapshot(), reason)

    @staticmethod
    def _invoke(kind: str, callback, *args):
        try:
            callback(*args)
        except Exception as e:
            logger.error(f"{kind.capitalize()} callback error: {e}", exc_info=True)
