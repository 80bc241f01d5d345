"""
FileTransferService - one object per channel

Wires registry, sender and receiver to an injected Channel. Nothing here
is process-global: two services on two loopback channels behave like
two independent peers.
"""

import asyncio
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
import logging

from ..config import TransferConfig
from ..crypto.engine import CryptoService
from ..errors import ProtocolError
from ..network.protocol import FileChunkMessage, TransferStartMessage, decode_message
from ..network.transport import Channel
from .models import Transfer, TransferCallbacks, TransferDirection
from .receiver import DiagnosticCallback, DirectorySink, MemorySink, OutputSink, ReceiverPipeline
from .registry import TransferRegistry
from .sender import SenderPipeline

logger = logging.getLogger(__name__)


class FileTransferService:
    """Send and receive encrypted files over a single channel"""

    def __init__(self, channel: Channel, config: Optional[TransferConfig] = None,
                 sink: Optional[OutputSink] = None,
                 callbacks: Optional[TransferCallbacks] = None,
                 on_diagnostic: Optional[DiagnosticCallback] = None):
        self.channel = channel
        self.config = (config or TransferConfig()).validate()
        self.callbacks = callbacks or TransferCallbacks()

        if sink is None:
            if self.config.download_dir:
                sink = DirectorySink(Path(self.config.download_dir))
            else:
                sink = MemorySink()
        self.sink = sink

        crypto = CryptoService()
        self.registry = TransferRegistry()
        self.sender = SenderPipeline(self.registry, self.config, crypto)
        self.receiver = ReceiverPipeline(
            self.registry, sink, self.config, crypto, on_diagnostic=on_diagnostic
        )

        self._tasks: Dict[str, asyncio.Task] = {}
        channel.set_message_handler(self.handle_message)

    # Outbound

    async def send_file(self, path: Union[str, Path], peer_id: str,
                        callbacks: Optional[TransferCallbacks] = None) -> str:
        """Prepare a transfer and start streaming it in the background"""
        transfer_id = await self.sender.start_transfer(path, peer_id, callbacks or self.callbacks)
        self._launch(transfer_id, self.sender.send_chunks(transfer_id, self._send_fn(peer_id)))
        return transfer_id

    def _send_fn(self, peer_id: str):
        def send(message: Dict[str, Any]):
            return self.channel.send(peer_id, message)
        return send

    def _launch(self, transfer_id: str, coro):
        task = asyncio.create_task(coro)
        self._tasks[transfer_id] = task
        task.add_done_callback(lambda t, tid=transfer_id: self._task_done(tid, t))

    def _task_done(self, transfer_id: str, task: asyncio.Task):
        if self._tasks.get(transfer_id) is task:
            del self._tasks[transfer_id]
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Send task for {transfer_id} crashed: {task.exception()}")

    # Inbound

    async def handle_message(self, peer_id: str, message: Any):
        """Entry point for everything the channel delivers"""
        try:
            decoded = decode_message(message)
        except ProtocolError as e:
            self.receiver.diagnose(ProtocolError(f"Message from {peer_id} rejected: {e.message}"))
            return

        if isinstance(decoded, TransferStartMessage):
            await self.receiver.handle_transfer_start(decoded, peer_id, self.callbacks)
        elif isinstance(decoded, FileChunkMessage):
            await self.receiver.handle_chunk(decoded, peer_id)

    # Control

    def pause(self, transfer_id: str):
        transfer = self.registry.require(transfer_id)
        if transfer.direction == TransferDirection.RECEIVE:
            self.receiver.pause(transfer_id)
        else:
            self.sender.pause(transfer_id)

    async def resume(self, transfer_id: str):
        """Resume either direction; an outgoing loop restarts in the background"""
        transfer = self.registry.require(transfer_id)
        if transfer.direction == TransferDirection.RECEIVE:
            await self.receiver.resume(transfer_id)
            return

        self.registry.resume(transfer_id)
        if self.sender.is_sending(transfer_id):
            # The old loop either has not reached its pause check yet or
            # re-checks status on its way out, so it keeps going
            return
        self._launch(
            transfer_id,
            self.sender.continue_sending(transfer_id, self._send_fn(transfer.peer_id))
        )

    def cancel(self, transfer_id: str):
        transfer = self.registry.require(transfer_id)
        if transfer.direction == TransferDirection.RECEIVE:
            self.receiver.cancel(transfer_id)
        else:
            self.sender.cancel(transfer_id)

    def dismiss(self, transfer_id: str):
        self.registry.dismiss(transfer_id)

    # Queries

    def get_transfer(self, transfer_id: str) -> Optional[Transfer]:
        transfer = self.registry.get(transfer_id)
        return transfer.snapshot() if transfer else None

    def list_transfers(self) -> List[Transfer]:
        return self.registry.list()

    async def wait(self, transfer_id: Optional[str] = None):
        """Wait for one (or every) background send task to finish"""
        if transfer_id is not None:
            task = self._tasks.get(transfer_id)
            if task is not None:
                await asyncio.gather(task, return_exceptions=True)
            return
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def close(self):
        """Stop background send tasks and detach from the channel"""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self.channel.set_message_handler(None)
