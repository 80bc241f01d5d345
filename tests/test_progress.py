"""Test progress and speed estimation"""

from peertransfer.transfer.models import Transfer, TransferDirection
from peertransfer.transfer.progress import (
    apply_progress, format_bytes, progress_percent, transfer_speed
)


def make_transfer():
    return Transfer(
        id="t1",
        file_name="f.bin",
        file_size=10,
        chunk_size=4,
        total_chunks=3,
        peer_id="peer",
        checksum="00",
        direction=TransferDirection.SEND
    )


def test_progress_percent():
    assert progress_percent(0, 4) == 0.0
    assert progress_percent(1, 4) == 25.0
    assert progress_percent(4, 4) == 100.0
    assert progress_percent(9, 4) == 100.0


def test_speed_never_negative():
    assert transfer_speed(1000, start_time=100.0, now=102.0) == 500.0
    assert transfer_speed(1000, start_time=100.0, now=100.0) == 0.0
    assert transfer_speed(1000, start_time=100.0, now=99.0) == 0.0
    assert transfer_speed(0, start_time=100.0, now=200.0) == 0.0


def test_apply_progress_is_monotonic():
    transfer = make_transfer()
    transfer.start_time = 0.0

    apply_progress(transfer, 2, 8, now=2.0)
    assert transfer.progress == progress_percent(2, 3)
    assert transfer.speed == 4.0

    apply_progress(transfer, 1, 4, now=3.0)
    assert transfer.progress == progress_percent(2, 3)


def test_format_bytes():
    assert format_bytes(512) == "512.0 B"
    assert format_bytes(2048) == "2.0 KB"
