"""Transfer records and callback bundle"""

import secrets
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Callable, Optional


class TransferStatus(Enum):
    """Transfer lifecycle states"""
    PENDING = "pending"
    TRANSFERRING = "transferring"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class TransferDirection(Enum):
    SEND = "send"
    RECEIVE = "receive"


def generate_transfer_id() -> str:
    """Sender-minted id, adopted verbatim by the receiver"""
    return f"transfer_{int(time.time() * 1000)}_{secrets.token_hex(6)}"


@dataclass
class Transfer:
    """
    One file moving between two peers

    Owned by a TransferRegistry. Anything handed to callbacks is a
    snapshot() and can be kept without affecting the live record.
    """
    id: str
    file_name: str
    file_size: int
    chunk_size: int
    total_chunks: int
    peer_id: str
    checksum: str
    direction: TransferDirection
    encryption_key: Optional[bytes] = field(default=None, repr=False)
    status: TransferStatus = TransferStatus.PENDING
    progress: float = 0.0
    speed: float = 0.0
    start_time: float = field(default_factory=time.time)
    chunks_done: int = 0
    bytes_transferred: int = 0
    source_path: Optional[Path] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (TransferStatus.COMPLETED, TransferStatus.FAILED)

    def snapshot(self) -> "Transfer":
        """Independent copy for callers outside the registry, without the key"""
        return replace(self, encryption_key=None)

    def to_dict(self) -> dict:
        """Summary without key material"""
        return {
            'id': self.id,
            'file_name': self.file_name,
            'file_size': self.file_size,
            'chunk_size': self.chunk_size,
            'total_chunks': self.total_chunks,
            'peer_id': self.peer_id,
            'checksum': self.checksum,
            'direction': self.direction.value,
            'status': self.status.value,
            'progress': self.progress,
            'speed': self.speed,
            'chunks_done': self.chunks_done,
            'bytes_transferred': self.bytes_transferred,
            'error': self.error,
        }


ProgressCallback = Callable[[Transfer], None]
CompleteCallback = Callable[[Transfer], None]
ErrorCallback = Callable[[Transfer, str], None]


@dataclass
class TransferCallbacks:
    """UI-facing hooks, each receives a read-only snapshot"""
    on_progress: Optional[ProgressCallback] = None
    on_complete: Optional[CompleteCallback] = None
    on_error: Optional[ErrorCallback] = None
