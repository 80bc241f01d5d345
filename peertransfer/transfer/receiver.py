"""
Receiving side of a transfer

transfer-start registers the transfer under the sender's id; each
file-chunk is decrypted, verified and buffered by index. The chunk
flagged last triggers reconstruction, whole-file verification and the
hand-off to an output sink.
"""

import inspect
import os
from pathlib import Path
from typing import Awaitable, Callable, Dict, Optional, Set, Union
import logging

import aiofiles

from ..config import TransferConfig
from ..crypto.engine import CryptoService
from ..errors import (
    ChecksumMismatchError, DecryptionError, IncompleteTransferError, InvalidKeyError,
    OutputError, ProtocolError, TransferError, TransferStateError, UnknownTransferError
)
from ..network.chunks import total_chunks
from ..network.protocol import FileChunkMessage, TransferStartMessage
from .models import Transfer, TransferCallbacks, TransferDirection, TransferStatus
from .progress import apply_progress, format_bytes, format_speed
from .registry import TransferRegistry

logger = logging.getLogger(__name__)

OutputSink = Callable[[str, bytes], Union[object, Awaitable[object]]]
DiagnosticCallback = Callable[[TransferError], None]


class MemorySink:
    """Keeps reconstructed files in memory, keyed by file name"""

    def __init__(self):
        self.files: Dict[str, bytes] = {}

    async def __call__(self, file_name: str, data: bytes) -> str:
        self.files[file_name] = data
        return file_name


class DirectorySink:
    """
    Writes reconstructed files into a directory

    Only the base name of the announced file name is used, and an
    existing file is never overwritten: a numeric suffix is added.
    """

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def safe_name(file_name: str) -> str:
        name = os.path.basename(file_name.replace('\\', '/')).strip()
        if name in ('', '.', '..'):
            return 'download'
        return name

    def _unique_path(self, name: str) -> Path:
        path = self.directory / name
        if not path.exists():
            return path

        stem = path.stem
        suffix = path.suffix
        counter = 1
        while path.exists():
            path = self.directory / f"{stem}_{counter}{suffix}"
            counter += 1
        return path

    async def __call__(self, file_name: str, data: bytes) -> Path:
        final_path = self._unique_path(self.safe_name(file_name))
        temp_path = final_path.parent / f".{final_path.name}.tmp"

        try:
            async with aiofiles.open(temp_path, 'wb') as f:
                await f.write(data)
            os.replace(temp_path, final_path)
        except OSError:
            if temp_path.exists():
                temp_path.unlink()
            raise

        logger.info(f"File written successfully: {final_path}")
        return final_path


class ReceiverPipeline:
    """Turns inbound transfer messages back into files"""

    def __init__(self, registry: TransferRegistry, sink: OutputSink,
                 config: Optional[TransferConfig] = None,
                 crypto: Optional[CryptoService] = None,
                 on_diagnostic: Optional[DiagnosticCallback] = None):
        self.registry = registry
        self.sink = sink
        self.config = config or TransferConfig()
        self.crypto = crypto or CryptoService()
        self.on_diagnostic = on_diagnostic

        self.orphan_chunks = 0
        # last chunk arrived while paused, finish on resume
        self._finish_on_resume: Set[str] = set()

    async def handle_transfer_start(self, message: TransferStartMessage, peer_id: str,
                                    callbacks: Optional[TransferCallbacks] = None
                                    ) -> Optional[str]:
        """Register an incoming transfer, returns its id or None if rejected"""
        transfer_id = message.transfer_id
        if transfer_id in self.registry:
            self.diagnose(ProtocolError(
                f"Duplicate transfer-start for {transfer_id} from {peer_id}", transfer_id
            ))
            return None

        try:
            key = self.crypto.import_key(message.encryption_key)
        except InvalidKeyError as e:
            self.diagnose(ProtocolError(f"Rejected transfer {transfer_id}: {e}", transfer_id))
            return None

        chunk_size = message.chunk_size
        if chunk_size is None:
            chunk_size = self.config.chunk_size
            logger.warning(
                f"Transfer {transfer_id} does not announce its chunk size, "
                f"assuming {chunk_size}"
            )

        expected = total_chunks(message.file_size, chunk_size)
        if expected != message.total_chunks:
            self.diagnose(ProtocolError(
                f"Transfer {transfer_id} announces {message.total_chunks} chunks, "
                f"expected {expected} for {message.file_size} bytes",
                transfer_id
            ))
            return None

        transfer = Transfer(
            id=transfer_id,
            file_name=message.file_name,
            file_size=message.file_size,
            chunk_size=chunk_size,
            total_chunks=expected,
            peer_id=peer_id,
            checksum=message.checksum,
            direction=TransferDirection.RECEIVE,
            encryption_key=key,
            status=TransferStatus.TRANSFERRING
        )
        self.registry.add(transfer, callbacks)

        logger.info(
            f"Incoming transfer {transfer_id} from {peer_id}: {transfer.file_name} "
            f"({format_bytes(transfer.file_size)}, {transfer.total_chunks} chunks)"
        )
        return transfer_id

    async def handle_chunk(self, message: FileChunkMessage,
                           peer_id: Optional[str] = None) -> bool:
        """Process one chunk, returns True if it was accepted"""
        transfer_id = message.transfer_id

        if transfer_id not in self.registry:
            if self._match_orphan(message) is None:
                return False

        async with self.registry.lock(transfer_id):
            transfer = self.registry.get(transfer_id)
            if transfer is None:
                # Cancelled while this chunk waited for the lock
                self._orphan(message)
                return False

            if transfer.direction != TransferDirection.RECEIVE:
                self.diagnose(ProtocolError(
                    f"Chunk for outgoing transfer {transfer_id}", transfer_id
                ))
                return False
            if peer_id is not None and peer_id != transfer.peer_id:
                self.diagnose(ProtocolError(
                    f"Chunk for {transfer_id} from {peer_id}, expected {transfer.peer_id}",
                    transfer_id
                ))
                return False
            if transfer.is_terminal:
                logger.debug(f"Ignoring chunk {message.chunk_index} for {transfer.status.value} "
                             f"transfer {transfer_id}")
                return False

            index = message.chunk_index
            if index >= transfer.total_chunks:
                self._fail(transfer_id, ProtocolError(
                    f"Chunk index {index} out of range for {transfer.total_chunks} chunks",
                    transfer_id
                ))
                return False

            try:
                plaintext = self.crypto.decrypt(
                    message.encrypted_data, transfer.encryption_key, message.iv
                )
            except DecryptionError as e:
                self._fail(transfer_id, DecryptionError(
                    f"Failed to decrypt chunk {index}: {e.message}", transfer_id
                ))
                return False

            if not self.crypto.verify_checksum(plaintext, message.checksum):
                self._fail(transfer_id, ChecksumMismatchError(
                    f"Checksum verification failed for chunk {index}", transfer_id
                ))
                return False

            buffer = self.registry.buffer(transfer_id, create=True)
            buffer.add(index, plaintext)

            if transfer.status == TransferStatus.TRANSFERRING:
                apply_progress(transfer, len(buffer), buffer.byte_count)
                logger.debug(
                    f"Received chunk {index + 1}/{transfer.total_chunks} of {transfer_id} "
                    f"({format_speed(transfer.speed)})"
                )
                self.registry.notify_progress(transfer_id)
            else:
                transfer.chunks_done = len(buffer)
                transfer.bytes_transferred = buffer.byte_count

            if message.is_last_chunk:
                if transfer.status == TransferStatus.PAUSED:
                    logger.info(f"Last chunk of {transfer_id} arrived while paused")
                    self._finish_on_resume.add(transfer_id)
                else:
                    await self._finalize(transfer_id)
            return True

    async def resume(self, transfer_id: str):
        transfer = self.registry.require(transfer_id)
        if transfer.direction != TransferDirection.RECEIVE:
            raise TransferStateError(
                f"Transfer {transfer_id} is not an incoming transfer", transfer_id=transfer_id
            )

        async with self.registry.lock(transfer_id):
            self.registry.resume(transfer_id)
            if transfer_id in self._finish_on_resume:
                self._finish_on_resume.discard(transfer_id)
                await self._finalize(transfer_id)

    def pause(self, transfer_id: str):
        self.registry.pause(transfer_id)

    def cancel(self, transfer_id: str):
        self._finish_on_resume.discard(transfer_id)
        self.registry.cancel(transfer_id)

    async def _finalize(self, transfer_id: str):
        """Reassemble, verify and hand off; caller holds the transfer lock"""
        transfer = self.registry.require(transfer_id)
        buffer = self.registry.buffer(transfer_id, create=True)

        try:
            data = buffer.assemble()
            if len(data) != transfer.file_size:
                raise IncompleteTransferError(
                    f"Reassembled {len(data)} bytes, expected {transfer.file_size}",
                    transfer_id
                )
            if not self.crypto.verify_checksum(data, transfer.checksum):
                raise ChecksumMismatchError(
                    f"Whole-file checksum mismatch for {transfer.file_name}", transfer_id
                )
        except (IncompleteTransferError, ChecksumMismatchError) as e:
            self._fail(transfer_id, e)
            return

        self.registry.discard_buffer(transfer_id)

        try:
            result = self.sink(transfer.file_name, data)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            self._fail(transfer_id, OutputError(
                f"Failed to save {transfer.file_name}: {e}", transfer_id
            ))
            return

        if self.registry.get(transfer_id) is None:
            logger.info(f"Transfer {transfer_id} was cancelled after its output was saved")
            return

        self.registry.complete(transfer_id)
        logger.info(
            f"Transfer {transfer_id} received: {transfer.file_name} "
            f"({format_bytes(transfer.file_size)})"
        )
        self.registry.notify_complete(transfer_id)
        self.registry.remove(transfer_id)

    def _match_orphan(self, message: FileChunkMessage) -> Optional[Transfer]:
        if self.config.allow_fallback_matching:
            candidate = self.registry.find_fallback_candidate()
            if candidate is not None:
                return self.registry.rekey(candidate.id, message.transfer_id)
        self._orphan(message)
        return None

    def _orphan(self, message: FileChunkMessage):
        self.orphan_chunks += 1
        self.diagnose(UnknownTransferError(
            f"Dropped chunk {message.chunk_index} for unknown transfer {message.transfer_id}",
            message.transfer_id
        ))

    def _fail(self, transfer_id: str, error: TransferError):
        reason = error.message
        self._finish_on_resume.discard(transfer_id)
        if self.registry.fail(transfer_id, reason) is not None:
            self.registry.notify_error(transfer_id, reason)

    def diagnose(self, error: TransferError):
        logger.warning(error.message)
        if self.on_diagnostic:
            try:
                self.on_diagnostic(error)
            except Exception as e:
                logger.error(f"Diagnostic callback error: {e}", exc_info=True)
