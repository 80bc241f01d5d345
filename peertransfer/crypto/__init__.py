from .engine import CryptoService, KEY_SIZE, NONCE_SIZE, TAG_SIZE

__all__ = [
    'CryptoService',
    'KEY_SIZE',
    'NONCE_SIZE',
    'TAG_SIZE'
]
