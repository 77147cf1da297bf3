"""
Passphrase-based encryption for snapshot archives.

Algorithm: AES-GCM (256-bit key)
Key derivation: PBKDF2-HMAC-SHA256, 100,000 iterations
Wire format: salt (16 bytes) || iv (12 bytes) || ciphertext with GCM tag
"""

import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .exceptions import DecryptionFailedError, create_error_context

logger = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 100_000
SALT_LENGTH = 16
IV_LENGTH = 12
KEY_LENGTH = 32  # 256 bits
TAG_LENGTH = 16


def derive_key(passphrase: str, salt: bytes) -> bytes:
    """Derive an AES-256 key from a passphrase and salt."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=PBKDF2_ITERATIONS,
    )
    return kdf.derive(passphrase.encode("utf-8"))


def encrypt_data(data: bytes, passphrase: str) -> bytes:
    """
    Encrypt bytes with a passphrase.

    Args:
        data: Plaintext bytes
        passphrase: User passphrase

    Returns:
        salt || iv || ciphertext
    """
    salt = os.urandom(SALT_LENGTH)
    iv = os.urandom(IV_LENGTH)
    key = derive_key(passphrase, salt)
    ciphertext = AESGCM(key).encrypt(iv, data, None)
    return salt + iv + ciphertext


def decrypt_data(data: bytes, passphrase: str) -> bytes:
    """
    Decrypt bytes produced by encrypt_data.

    Raises:
        DecryptionFailedError: Wrong passphrase, truncated or tampered input
    """
    if len(data) < SALT_LENGTH + IV_LENGTH + TAG_LENGTH:
        raise DecryptionFailedError(
            message=f"Encrypted payload too short ({len(data)} bytes)",
            context=create_error_context(operation="decrypt", size=len(data)),
        )

    salt = data[:SALT_LENGTH]
    iv = data[SALT_LENGTH:SALT_LENGTH + IV_LENGTH]
    ciphertext = data[SALT_LENGTH + IV_LENGTH:]

    try:
        key = derive_key(passphrase, salt)
        return AESGCM(key).decrypt(iv, ciphertext, None)
    except InvalidTag as e:
        logger.warning("Decryption failed: authentication tag mismatch")
        raise DecryptionFailedError(
            message="Authentication tag mismatch",
            context=create_error_context(operation="decrypt", size=len(data)),
            cause=e,
        )
