"""Progress and speed estimation"""

import time
from typing import Optional


def progress_percent(done: int, total: int) -> float:
    """Completion percentage clamped to [0, 100]"""
    if total <= 0:
        return 100.0
    return max(0.0, min(100.0, (done / total) * 100))


def transfer_speed(bytes_moved: int, start_time: float, now: Optional[float] = None) -> float:
    """Average bytes per second since start_time, never negative"""
    if now is None:
        now = time.time()
    elapsed = now - start_time
    if elapsed <= 0 or bytes_moved <= 0:
        return 0.0
    return bytes_moved / elapsed


def apply_progress(transfer, done: int, bytes_moved: int, now: Optional[float] = None):
    """
    Update a transfer's counters, progress and speed in place

    Progress never moves backwards, so late out-of-order chunks or a
    resumed loop cannot make the percentage drop.
    """
    transfer.chunks_done = done
    transfer.bytes_transferred = bytes_moved
    transfer.progress = max(transfer.progress, progress_percent(done, transfer.total_chunks))
    transfer.speed = transfer_speed(bytes_moved, transfer.start_time, now)


def format_bytes(size: float) -> str:
    """Format byte size as human-readable string"""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if abs(size) < 1024.0:
            return f"{size:.1f} {unit}"
        size /= 1024.0
    return f"{size:.1f} PB"


def format_speed(bytes_per_second: float) -> str:
    return f"{format_bytes(bytes_per_second)}/s"
