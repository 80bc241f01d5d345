from .protocol import (
    MessageType, TransferStartMessage, FileChunkMessage,
    encode_message, decode_message, PROTOCOL_VERSION
)
from .chunks import ChunkBuffer, total_chunks, chunk_bounds
from .transport import Channel, LoopbackChannel, StreamChannel

__all__ = [
    'MessageType',
    'TransferStartMessage',
    'FileChunkMessage',
    'encode_message',
    'decode_message',
    'PROTOCOL_VERSION',
    'ChunkBuffer',
    'total_chunks',
    'chunk_bounds',
    'Channel',
    'LoopbackChannel',
    'StreamChannel'
]
