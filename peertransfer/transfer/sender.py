"""
Sending side of a transfer

start_transfer() checksums the file and registers a pending transfer;
send_chunks() announces it with transfer-start and streams the chunks.
A paused loop exits at its next per-chunk check; resume() re-enters it
at the first chunk not yet sent, without announcing the transfer again.
"""

import inspect
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Union
import logging

import aiofiles

from ..config import TransferConfig
from ..crypto.engine import CryptoService
from ..errors import SendFailure, TransferError, TransferStateError
from ..network.chunks import chunk_bounds, total_chunks
from ..network.protocol import (
    FileChunkMessage, TransferStartMessage, encode_message, PROTOCOL_VERSION
)
from .models import (
    Transfer, TransferCallbacks, TransferDirection, TransferStatus, generate_transfer_id
)
from .progress import apply_progress, format_bytes, format_speed
from .registry import TransferRegistry

logger = logging.getLogger(__name__)

SendFunction = Callable[[Dict[str, Any]], Union[bool, Awaitable[bool]]]


async def _call_send(send_fn: SendFunction, message: Dict[str, Any]) -> bool:
    """Invoke a sync or async send function, any exception counts as a refusal"""
    try:
        result = send_fn(message)
        if inspect.isawaitable(result):
            result = await result
    except Exception as e:
        logger.error(f"Send function raised: {e}")
        return False
    return bool(result)


class SenderPipeline:
    """Reads, encrypts and streams files chunk by chunk"""

    def __init__(self, registry: TransferRegistry, config: Optional[TransferConfig] = None,
                 crypto: Optional[CryptoService] = None):
        self.registry = registry
        self.config = config or TransferConfig()
        self.crypto = crypto or CryptoService()
        # ids with a send loop currently running
        self._active: Set[str] = set()

    async def start_transfer(self, path: Union[str, Path], peer_id: str,
                             callbacks: Optional[TransferCallbacks] = None) -> str:
        """Checksum the file, mint a key and register a pending transfer"""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"No such file: {path}")
        if not path.is_file():
            raise IsADirectoryError(f"Not a regular file: {path}")

        file_size = path.stat().st_size
        checksum = await self.crypto.checksum_file(path, self.config.checksum_block_size)
        chunk_size = self.config.chunk_size

        transfer = Transfer(
            id=generate_transfer_id(),
            file_name=path.name,
            file_size=file_size,
            chunk_size=chunk_size,
            total_chunks=total_chunks(file_size, chunk_size),
            peer_id=peer_id,
            checksum=checksum,
            direction=TransferDirection.SEND,
            encryption_key=self.crypto.generate_key(),
            source_path=path
        )
        self.registry.add(transfer, callbacks)

        logger.info(
            f"Prepared transfer {transfer.id}: {transfer.file_name} "
            f"({format_bytes(file_size)}, {transfer.total_chunks} chunks) for {peer_id}"
        )
        return transfer.id

    async def send_chunks(self, transfer_id: str, send_fn: SendFunction):
        """Announce the transfer and stream every chunk in ascending order"""
        transfer = self.registry.start(transfer_id)

        start_message = TransferStartMessage(
            transfer_id=transfer.id,
            file_name=transfer.file_name,
            file_size=transfer.file_size,
            total_chunks=transfer.total_chunks,
            encryption_key=self.crypto.export_key(transfer.encryption_key),
            checksum=transfer.checksum,
            chunk_size=transfer.chunk_size,
            version=PROTOCOL_VERSION
        )

        if not await _call_send(send_fn, encode_message(start_message)):
            self._fail(transfer_id, SendFailure("Failed to send transfer metadata", transfer_id))
            return

        await self._run_loop(transfer_id, send_fn)

    async def resume(self, transfer_id: str, send_fn: SendFunction):
        """Flip a paused transfer back to transferring and keep sending"""
        transfer = self.registry.require(transfer_id)
        if transfer.direction != TransferDirection.SEND:
            raise TransferStateError(
                f"Transfer {transfer_id} is not an outgoing transfer", transfer_id=transfer_id
            )
        self.registry.resume(transfer_id)
        await self.continue_sending(transfer_id, send_fn)

    async def continue_sending(self, transfer_id: str, send_fn: SendFunction):
        """Re-enter the send loop at the first unsent chunk of a transferring transfer"""
        if transfer_id in self._active:
            # The running loop re-checks status before it gives up the id
            logger.debug(f"Send loop for {transfer_id} still running, not restarting")
            return
        await self._run_loop(transfer_id, send_fn)

    def pause(self, transfer_id: str):
        self.registry.pause(transfer_id)

    def cancel(self, transfer_id: str):
        self.registry.cancel(transfer_id)

    def is_sending(self, transfer_id: str) -> bool:
        return transfer_id in self._active

    async def _run_loop(self, transfer_id: str, send_fn: SendFunction):
        self._active.add(transfer_id)
        try:
            while True:
                await self._send_loop(transfer_id, send_fn)
                # A resume landing while the exiting loop closed its file
                # saw is_sending() and left the restart to us
                transfer = self.registry.get(transfer_id)
                if transfer is None or transfer.status != TransferStatus.TRANSFERRING:
                    break
                logger.debug(f"Transfer {transfer_id} resumed while its send loop was "
                             f"exiting, continuing at chunk {transfer.chunks_done}")
        finally:
            self._active.discard(transfer_id)

    async def _send_loop(self, transfer_id: str, send_fn: SendFunction):
        transfer = self.registry.require(transfer_id)

        try:
            async with aiofiles.open(transfer.source_path, 'rb') as f:
                while True:
                    transfer = self.registry.get(transfer_id)
                    if transfer is None:
                        logger.info(f"Transfer {transfer_id} cancelled, stopping send loop")
                        return
                    if transfer.status != TransferStatus.TRANSFERRING:
                        logger.debug(f"Transfer {transfer_id} is {transfer.status.value}, "
                                     f"send loop exits")
                        return

                    index = transfer.chunks_done
                    if index >= transfer.total_chunks:
                        break

                    start, end = chunk_bounds(index, transfer.file_size, transfer.chunk_size)
                    await f.seek(start)
                    data = await f.read(end - start)
                    if len(data) != end - start:
                        raise OSError(
                            f"short read on chunk {index}: expected {end - start} bytes, "
                            f"got {len(data)}"
                        )

                    # Pause or cancel may have landed during the read
                    transfer = self.registry.get(transfer_id)
                    if transfer is None or transfer.status != TransferStatus.TRANSFERRING:
                        continue

                    encrypted, iv = self.crypto.encrypt(data, transfer.encryption_key)
                    message = FileChunkMessage(
                        transfer_id=transfer_id,
                        chunk_index=index,
                        encrypted_data=encrypted,
                        iv=iv,
                        checksum=self.crypto.checksum(data),
                        is_last_chunk=(index == transfer.total_chunks - 1)
                    )

                    if not await _call_send(send_fn, encode_message(message)):
                        self._fail(transfer_id,
                                   SendFailure(f"Failed to send chunk {index}", transfer_id))
                        return

                    transfer = self.registry.get(transfer_id)
                    if transfer is None:
                        logger.info(f"Transfer {transfer_id} cancelled after chunk {index}")
                        return

                    bytes_sent = transfer.bytes_transferred + len(data)
                    if transfer.status == TransferStatus.TRANSFERRING:
                        apply_progress(transfer, index + 1, bytes_sent)
                        logger.debug(
                            f"Sent chunk {index + 1}/{transfer.total_chunks} of {transfer_id} "
                            f"({format_speed(transfer.speed)})"
                        )
                        self.registry.notify_progress(transfer_id)
                    else:
                        # Chunk left before the pause was seen; progress stays frozen
                        transfer.chunks_done = index + 1
                        transfer.bytes_transferred = bytes_sent
        except OSError as e:
            self._fail(transfer_id,
                       TransferError(f"Failed to read source file: {e}", transfer_id))
            return

        transfer = self.registry.get(transfer_id)
        if transfer is None or transfer.status != TransferStatus.TRANSFERRING:
            return

        self.registry.complete(transfer_id)
        logger.info(
            f"Transfer {transfer_id} sent: {transfer.file_name} "
            f"({format_bytes(transfer.file_size)})"
        )
        self.registry.notify_complete(transfer_id)
        self.registry.remove(transfer_id)

    def _fail(self, transfer_id: str, error: TransferError):
        reason = error.message
        if self.registry.fail(transfer_id, reason) is not None:
            self.registry.notify_error(transfer_id, reason)
