"""
Exception taxonomy for encrypted chunked transfers

Fatal conditions are raised inside a pipeline, caught at the transfer
boundary and turned into a `failed` status plus an on_error callback.
API misuse (unknown id, illegal state change) propagates to the caller.
"""

from enum import Enum
from typing import Optional


class ErrorCode(Enum):
    """Error codes for categorization"""
    # Channel
    SEND_FAILURE = "send_failure"

    # Integrity
    DECRYPTION_FAILED = "decryption_failed"
    CHECKSUM_MISMATCH = "checksum_mismatch"
    INCOMPLETE_TRANSFER = "incomplete_transfer"
    INVALID_KEY = "invalid_key"

    # Registry
    UNKNOWN_TRANSFER = "unknown_transfer"
    TRANSFER_NOT_FOUND = "transfer_not_found"
    INVALID_STATE = "invalid_state"

    # Protocol
    PROTOCOL_ERROR = "protocol_error"
    MALFORMED_MESSAGE = "malformed_message"
    UNKNOWN_MESSAGE_TYPE = "unknown_message_type"

    # Output
    OUTPUT_FAILED = "output_failed"

    # Configuration
    INVALID_CONFIG = "invalid_config"


class TransferError(Exception):
    """Base class for all transfer errors"""

    code = ErrorCode.PROTOCOL_ERROR

    def __init__(self, message: str, transfer_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.transfer_id = transfer_id

    def to_dict(self) -> dict:
        return {
            "code": self.code.value,
            "message": self.message,
            "transfer_id": self.transfer_id,
        }


class SendFailure(TransferError):
    """Channel refused a message"""
    code = ErrorCode.SEND_FAILURE


class DecryptionError(TransferError):
    """Authentication tag mismatch, wrong key or corrupted ciphertext"""
    code = ErrorCode.DECRYPTION_FAILED


class ChecksumMismatchError(TransferError):
    """Decrypted data does not match its declared digest"""
    code = ErrorCode.CHECKSUM_MISMATCH


class IncompleteTransferError(TransferError):
    """Final chunk arrived while earlier indices are missing"""
    code = ErrorCode.INCOMPLETE_TRANSFER

    def __init__(self, message: str, transfer_id: Optional[str] = None,
                 missing: Optional[list] = None):
        super().__init__(message, transfer_id)
        self.missing = missing or []


class InvalidKeyError(TransferError):
    code = ErrorCode.INVALID_KEY


class UnknownTransferError(TransferError):
    """Chunk references a transfer id nobody knows (orphan chunk)"""
    code = ErrorCode.UNKNOWN_TRANSFER


class TransferNotFoundError(TransferError, KeyError):
    code = ErrorCode.TRANSFER_NOT_FOUND

    def __str__(self) -> str:
        return self.message


class TransferStateError(TransferError):
    """Requested status change is not allowed from the current status"""
    code = ErrorCode.INVALID_STATE


class ProtocolError(TransferError):
    code = ErrorCode.PROTOCOL_ERROR


class MalformedMessageError(ProtocolError):
    code = ErrorCode.MALFORMED_MESSAGE


class UnknownMessageTypeError(ProtocolError):
    code = ErrorCode.UNKNOWN_MESSAGE_TYPE


class OutputError(TransferError):
    """Output sink could not materialize a reconstructed file"""
    code = ErrorCode.OUTPUT_FAILED


class ConfigError(TransferError, ValueError):
    code = ErrorCode.INVALID_CONFIG
