"""Pytest configuration and fixtures"""

import json
import struct

import pytest
import tempfile
import shutil
from pathlib import Path

from peertransfer.config import TransferConfig
from peertransfer.crypto.engine import CryptoService
from peertransfer.network.protocol import decode_message
from peertransfer.transfer.models import TransferCallbacks
from peertransfer.transfer.receiver import MemorySink, ReceiverPipeline
from peertransfer.transfer.registry import TransferRegistry
from peertransfer.transfer.sender import SenderPipeline


class CallbackRecorder:
    """Collects every callback a pipeline makes"""

    def __init__(self):
        self.progress = []
        self.completed = []
        self.errors = []
        self.diagnostics = []

    def callbacks(self) -> TransferCallbacks:
        return TransferCallbacks(
            on_progress=self.progress.append,
            on_complete=self.completed.append,
            on_error=lambda transfer, reason: self.errors.append((transfer, reason))
        )

    def on_diagnostic(self, error):
        self.diagnostics.append(error)


class MessageLog:
    """Send function that records messages and can refuse some of them"""

    def __init__(self, refuse_at=None):
        self.messages = []
        self.refuse_at = refuse_at

    def __call__(self, message) -> bool:
        if self.refuse_at is not None and len(self.messages) == self.refuse_at:
            return False
        self.messages.append(message)
        return True

    @property
    def chunks(self):
        return [m for m in self.messages if m['type'] == 'file-chunk']

    def decoded(self):
        return [decode_message(m) for m in self.messages]


class FakeWriter:
    """Collects written bytes in place of an asyncio.StreamWriter"""

    def __init__(self, fail=False):
        self.data = bytearray()
        self.fail = fail
        self.closed = False

    def write(self, data):
        self.data.extend(data)

    async def drain(self):
        if self.fail:
            raise ConnectionResetError("peer went away")

    def close(self):
        self.closed = True

    async def wait_closed(self):
        pass


def frame(message) -> bytes:
    """Length-prefixed JSON frame as StreamChannel reads it"""
    body = json.dumps(message).encode('utf-8')
    return struct.pack('!I', len(body)) + body


@pytest.fixture
def temp_dir():
    """Create temporary directory for tests"""
    tmpdir = tempfile.mkdtemp()
    yield Path(tmpdir)
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture
def make_file(temp_dir):
    """Write a file with given content into the temp dir"""
    def _make(content: bytes, name: str = "sample.bin") -> Path:
        path = temp_dir / name
        path.write_bytes(content)
        return path
    return _make


@pytest.fixture
def small_config():
    """Tiny chunks so a few bytes already span several chunks"""
    return TransferConfig(chunk_size=4, checksum_block_size=3)


@pytest.fixture
def crypto():
    return CryptoService()


@pytest.fixture
def recorder():
    return CallbackRecorder()


@pytest.fixture
def sender(small_config):
    return SenderPipeline(TransferRegistry(), small_config)


@pytest.fixture
def sink():
    return MemorySink()


@pytest.fixture
def receiver(small_config, sink, recorder):
    return ReceiverPipeline(
        TransferRegistry(), sink, small_config, on_diagnostic=recorder.on_diagnostic
    )
