"""
Session blob encryption.

The serialized Telegram session grants full account access, so it can be
encrypted at rest using Fernet symmetric encryption.  When no key is
configured the blob is stored as plaintext (file mode 0600).

Generate a key once with::

    python -c "from shared.secrets import generate_encryption_key as g; print(g())"

and export it as ``TELEGRAM_SESSION_KEY``.
"""

from __future__ import annotations

import logging

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger("shared.secrets")

__all__ = [
    "InvalidToken",
    "decrypt_blob",
    "encrypt_blob",
    "generate_encryption_key",
]


def encrypt_blob(plaintext: bytes, key: str) -> bytes:
    """Encrypt session bytes with a Fernet key.

    Args:
        plaintext: Serialized session data.
        key: Fernet-compatible key (base64-encoded 32-byte key).

    Returns:
        The Fernet token (ciphertext) as bytes.

    Raises:
        ValueError: If the key is not a valid Fernet key.
    """
    return Fernet(key.encode()).encrypt(plaintext)


def decrypt_blob(ciphertext: bytes, key: str) -> bytes:
    """Decrypt a Fernet token back into session bytes.

    Raises:
        ValueError: If the key is not a valid Fernet key.
        cryptography.fernet.InvalidToken: If the key is wrong or the
            data has been tampered with.
    """
    plaintext = Fernet(key.encode()).decrypt(ciphertext)
    logger.debug("Session blob decrypted in memory (%d bytes)", len(plaintext))
    return plaintext


def generate_encryption_key() -> str:
    """Generate a new Fernet encryption key.

    Returns:
        A base64-encoded 32-byte key suitable for Fernet.
    """
    return Fernet.generate_key().decode()
