import base64
import binascii
import hashlib
import hmac
import secrets
from pathlib import Path
from typing import Tuple, Union
import logging

import aiofiles
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.backends import default_backend

from ..errors import DecryptionError, InvalidKeyError

logger = logging.getLogger(__name__)

KEY_SIZE = 32    # 256-bit AES key
NONCE_SIZE = 12  # 96 bits for GCM
TAG_SIZE = 16    # 128-bit authentication tag


class CryptoService:
    """
    AES-256-GCM encryption and SHA-256 checksums for transfer chunks
    Stateless: every call takes the key it operates on
    """

    @staticmethod
    def generate_key() -> bytes:
        """Generate a fresh random 256-bit key"""
        return secrets.token_bytes(KEY_SIZE)

    @staticmethod
    def export_key(key: bytes) -> str:
        """Serialize key as base64 text for the peer"""
        if len(key) != KEY_SIZE:
            raise InvalidKeyError(f"Key must be {KEY_SIZE} bytes, got {len(key)}")
        return base64.b64encode(key).decode('ascii')

    @staticmethod
    def import_key(key_data: str) -> bytes:
        """Inverse of export_key"""
        try:
            key = base64.b64decode(key_data, validate=True)
        except (binascii.Error, ValueError, TypeError) as e:
            raise InvalidKeyError(f"Key is not valid base64: {e}") from e

        if len(key) != KEY_SIZE:
            raise InvalidKeyError(f"Key must be {KEY_SIZE} bytes, got {len(key)}")
        return key

    @staticmethod
    def encrypt(plaintext: bytes, key: bytes) -> Tuple[bytes, bytes]:
        """
        Encrypt data with AES-GCM
        Returns (ciphertext || tag, nonce)
        """
        nonce = secrets.token_bytes(NONCE_SIZE)
        cipher = Cipher(
            algorithms.AES(key),
            modes.GCM(nonce),
            backend=default_backend()
        )
        encryptor = cipher.encryptor()
        ciphertext = encryptor.update(plaintext) + encryptor.finalize()
        return ciphertext + encryptor.tag, nonce

    @staticmethod
    def decrypt(ciphertext: bytes, key: bytes, nonce: bytes) -> bytes:
        """Decrypt AES-GCM ciphertext produced by encrypt()"""
        if len(nonce) != NONCE_SIZE:
            raise DecryptionError(f"Nonce must be {NONCE_SIZE} bytes, got {len(nonce)}")
        if len(ciphertext) < TAG_SIZE:
            raise DecryptionError("Ciphertext shorter than authentication tag")

        body = ciphertext[:-TAG_SIZE]
        tag = ciphertext[-TAG_SIZE:]

        try:
            cipher = Cipher(
                algorithms.AES(key),
                modes.GCM(nonce, tag),
                backend=default_backend()
            )
            decryptor = cipher.decryptor()
            return decryptor.update(body) + decryptor.finalize()
        except InvalidTag as e:
            raise DecryptionError("Authentication tag mismatch") from e
        except ValueError as e:
            # Bad key length
            raise DecryptionError(f"Decryption failed: {e}") from e

    @staticmethod
    def checksum(data: bytes) -> str:
        """SHA-256 hex digest"""
        return hashlib.sha256(data).hexdigest()

    @classmethod
    def verify_checksum(cls, data: bytes, expected: str) -> bool:
        # compare_digest raises TypeError on non-ASCII str
        if not isinstance(expected, str) or not expected.isascii():
            return False
        return hmac.compare_digest(cls.checksum(data), expected.lower())

    @staticmethod
    async def checksum_file(path: Union[str, Path], block_size: int = 1024 * 1024) -> str:
        """Incremental SHA-256 of a file, reading block by block"""
        hasher = hashlib.sha256()
        async with aiofiles.open(path, 'rb') as f:
            while True:
                block = await f.read(block_size)
                if not block:
                    break
                hasher.update(block)
        return hasher.hexdigest()
