"""Wire messages for chunked transfers"""

import base64
import binascii
import json
import re
from enum import Enum
from typing import Any, Dict, Optional, Union
from dataclasses import dataclass
import logging

from ..errors import MalformedMessageError, UnknownMessageTypeError
from .chunks import total_chunks

logger = logging.getLogger(__name__)

# Protocol version
PROTOCOL_VERSION = "1.1.0"

# SHA-256 hex digest
CHECKSUM_PATTERN = re.compile(r"[0-9a-fA-F]{64}")


class MessageType(Enum):
    """Protocol message types"""
    TRANSFER_START = "transfer-start"
    FILE_CHUNK = "file-chunk"


@dataclass(frozen=True)
class TransferStartMessage:
    """Announces a transfer and carries its key, sent before any chunk"""
    transfer_id: str
    file_name: str
    file_size: int
    total_chunks: int
    encryption_key: str  # exported key text
    checksum: str
    chunk_size: Optional[int] = None
    version: str = PROTOCOL_VERSION

    msg_type = MessageType.TRANSFER_START


@dataclass(frozen=True)
class FileChunkMessage:
    """One encrypted chunk"""
    transfer_id: str
    chunk_index: int
    encrypted_data: bytes
    iv: bytes
    checksum: str  # of the plaintext chunk
    is_last_chunk: bool

    msg_type = MessageType.FILE_CHUNK


Message = Union[TransferStartMessage, FileChunkMessage]


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode('ascii')


def _b64decode(value: Any, field_name: str) -> bytes:
    if not isinstance(value, str):
        raise MalformedMessageError(f"Field '{field_name}' must be base64 text")
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise MalformedMessageError(f"Field '{field_name}' is not valid base64: {e}") from e


def encode_message(message: Message) -> Dict[str, Any]:
    """Encode a message into a JSON-serializable dict"""
    if isinstance(message, TransferStartMessage):
        payload = {
            'type': MessageType.TRANSFER_START.value,
            'transferId': message.transfer_id,
            'fileName': message.file_name,
            'fileSize': message.file_size,
            'totalChunks': message.total_chunks,
            'encryptionKey': message.encryption_key,
            'checksum': message.checksum,
            'version': message.version,
        }
        if message.chunk_size is not None:
            payload['chunkSize'] = message.chunk_size
        return payload

    if isinstance(message, FileChunkMessage):
        return {
            'type': MessageType.FILE_CHUNK.value,
            'transferId': message.transfer_id,
            'chunkIndex': message.chunk_index,
            'encryptedData': _b64encode(message.encrypted_data),
            'iv': _b64encode(message.iv),
            'checksum': message.checksum,
            'isLastChunk': message.is_last_chunk,
        }

    raise TypeError(f"Cannot encode {type(message).__name__}")


def _require(payload: dict, key: str, kind, allow_bool: bool = False):
    if key not in payload:
        raise MalformedMessageError(f"Missing field '{key}'")
    value = payload[key]
    # bool is an int subclass, reject it for numeric fields
    if not allow_bool and isinstance(value, bool):
        raise MalformedMessageError(f"Field '{key}' has wrong type bool")
    if not isinstance(value, kind):
        raise MalformedMessageError(
            f"Field '{key}' has wrong type {type(value).__name__}"
        )
    return value


def _require_checksum(payload: dict) -> str:
    checksum = _require(payload, 'checksum', str)
    if not CHECKSUM_PATTERN.fullmatch(checksum):
        raise MalformedMessageError("Field 'checksum' is not a SHA-256 hex digest")
    return checksum


def _decode_transfer_start(payload: dict) -> TransferStartMessage:
    transfer_id = _require(payload, 'transferId', str)
    file_name = _require(payload, 'fileName', str)
    file_size = _require(payload, 'fileSize', int)
    chunks = _require(payload, 'totalChunks', int)
    key = _require(payload, 'encryptionKey', str)
    checksum = _require_checksum(payload)

    if not transfer_id:
        raise MalformedMessageError("Empty transferId")
    if file_size < 0:
        raise MalformedMessageError(f"Negative fileSize {file_size}")

    chunk_size = payload.get('chunkSize')
    if chunk_size is not None:
        if isinstance(chunk_size, bool) or not isinstance(chunk_size, int) or chunk_size <= 0:
            raise MalformedMessageError(f"Invalid chunkSize {chunk_size!r}")
        expected = total_chunks(file_size, chunk_size)
        if chunks != expected:
            raise MalformedMessageError(
                f"totalChunks {chunks} inconsistent with fileSize {file_size} "
                f"and chunkSize {chunk_size} (expected {expected})"
            )
    elif chunks <= 0:
        raise MalformedMessageError(f"Invalid totalChunks {chunks}")

    version = payload.get('version', PROTOCOL_VERSION)

    return TransferStartMessage(
        transfer_id=transfer_id,
        file_name=file_name,
        file_size=file_size,
        total_chunks=chunks,
        encryption_key=key,
        checksum=checksum,
        chunk_size=chunk_size,
        version=str(version)
    )


def _decode_file_chunk(payload: dict) -> FileChunkMessage:
    transfer_id = _require(payload, 'transferId', str)
    index = _require(payload, 'chunkIndex', int)
    checksum = _require_checksum(payload)
    is_last = _require(payload, 'isLastChunk', bool, allow_bool=True)

    if index < 0:
        raise MalformedMessageError(f"Negative chunkIndex {index}")

    encrypted = _b64decode(payload.get('encryptedData'), 'encryptedData')
    iv = _b64decode(payload.get('iv'), 'iv')

    return FileChunkMessage(
        transfer_id=transfer_id,
        chunk_index=index,
        encrypted_data=encrypted,
        iv=iv,
        checksum=checksum,
        is_last_chunk=is_last
    )


def decode_message(raw: Union[dict, str, bytes]) -> Message:
    """
    Decode and validate an inbound message
    Raises UnknownMessageTypeError or MalformedMessageError
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode('utf-8')
        except UnicodeDecodeError as e:
            raise MalformedMessageError(f"Message is not UTF-8: {e}") from e
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise MalformedMessageError(f"Message is not valid JSON: {e}") from e

    if not isinstance(raw, dict):
        raise MalformedMessageError(f"Message must be an object, got {type(raw).__name__}")
    if 'type' not in raw:
        raise MalformedMessageError("Message has no type")

    try:
        msg_type = MessageType(raw['type'])
    except ValueError:
        raise UnknownMessageTypeError(f"Unknown message type {raw['type']!r}") from None

    if msg_type == MessageType.TRANSFER_START:
        return _decode_transfer_start(raw)
    return _decode_file_chunk(raw)
