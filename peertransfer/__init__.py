"""Chunked, end-to-end encrypted file transfer over peer message channels"""

from .config import TransferConfig, load_config, configure_logging
from .crypto import CryptoService
from .errors import (
    TransferError, SendFailure, DecryptionError, ChecksumMismatchError,
    IncompleteTransferError, UnknownTransferError, TransferNotFoundError,
    TransferStateError, ProtocolError, MalformedMessageError, UnknownMessageTypeError
)
from .network import Channel, LoopbackChannel, StreamChannel
from .transfer import (
    FileTransferService, Transfer, TransferStatus, TransferCallbacks,
    MemorySink, DirectorySink
)

__version__ = "1.1.0"

__all__ = [
    'TransferConfig',
    'load_config',
    'configure_logging',
    'CryptoService',
    'TransferError',
    'SendFailure',
    'DecryptionError',
    'ChecksumMismatchError',
    'IncompleteTransferError',
    'UnknownTransferError',
    'TransferNotFoundError',
    'TransferStateError',
    'ProtocolError',
    'MalformedMessageError',
    'UnknownMessageTypeError',
    'Channel',
    'LoopbackChannel',
    'StreamChannel',
    'FileTransferService',
    'Transfer',
    'TransferStatus',
    'TransferCallbacks',
    'MemorySink',
    'DirectorySink'
]
