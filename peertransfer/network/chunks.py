"""Chunk arithmetic and receive-side chunk buffer"""

from typing import Dict, List, Tuple
import logging

from ..errors import IncompleteTransferError

logger = logging.getLogger(__name__)


def total_chunks(file_size: int, chunk_size: int) -> int:
    """
    Number of chunks for a file
    An empty file still travels as one zero-length final chunk
    """
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    if file_size < 0:
        raise ValueError(f"file_size must be non-negative, got {file_size}")
    if file_size == 0:
        return 1
    return (file_size + chunk_size - 1) // chunk_size


def chunk_bounds(index: int, file_size: int, chunk_size: int) -> Tuple[int, int]:
    """Byte window [start, end) of chunk `index`"""
    count = total_chunks(file_size, chunk_size)
    if index < 0 or index >= count:
        raise IndexError(f"Chunk index {index} out of range [0, {count})")

    start = index * chunk_size
    end = min(file_size, start + chunk_size)
    return start, end


class ChunkBuffer:
    """Sparse, index-addressed store of decrypted chunks for one transfer"""

    def __init__(self, transfer_id: str, total: int):
        self.transfer_id = transfer_id
        self.total = total
        self._chunks: Dict[int, bytes] = {}

    def add(self, index: int, data: bytes):
        if index < 0 or index >= self.total:
            raise IndexError(f"Chunk index {index} out of range [0, {self.total})")
        if index in self._chunks:
            logger.debug(f"Duplicate chunk {index} for {self.transfer_id}, replacing")
        self._chunks[index] = data

    def has(self, index: int) -> bool:
        return index in self._chunks

    def missing(self) -> List[int]:
        return [i for i in range(self.total) if i not in self._chunks]

    def is_complete(self) -> bool:
        return len(self._chunks) == self.total

    @property
    def byte_count(self) -> int:
        return sum(len(c) for c in self._chunks.values())

    def __len__(self) -> int:
        return len(self._chunks)

    def assemble(self) -> bytes:
        """Concatenate chunks in index order, all indices must be present"""
        missing = self.missing()
        if missing:
            preview = ', '.join(str(i) for i in missing[:10])
            if len(missing) > 10:
                preview += ', ...'
            raise IncompleteTransferError(
                f"Missing {len(missing)} of {self.total} chunks: {preview}",
                transfer_id=self.transfer_id,
                missing=missing
            )
        return b''.join(self._chunks[i] for i in range(self.total))
