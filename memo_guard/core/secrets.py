"""
Authenticated encryption of upstream API keys at rest.

Stored format: ``v1:<base64 nonce>:<base64 ciphertext>``, AES-256-GCM with
the key derived as SHA-256 of the server secret. Decryption failures are
fatal: there is no fallback to a plaintext or default key.
"""

import base64
import binascii
import logging
import os
from functools import lru_cache

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import SecretDecryptionError

logger = logging.getLogger(__name__)

FORMAT_VERSION = "v1"
NONCE_BYTES = 12


@lru_cache(maxsize=8)
def _derive_key(secret: str) -> bytes:
    """SHA-256 of the server secret, cached for the process lifetime."""
    digest = hashes.Hash(hashes.SHA256())
    digest.update(secret.encode("utf-8"))
    return digest.finalize()


def encrypt_api_key(plaintext: str, secret: str) -> str:
    """Encrypt an API key for storage.

    Args:
        plaintext: Raw upstream API key
        secret: Server-held encryption secret

    Returns:
        ``v1:<nonce>:<ciphertext>`` with both parts base64 encoded

    Raises:
        ValueError: If the key or secret is empty
    """
    if not plaintext:
        raise ValueError("API key cannot be empty")
    if not secret:
        raise ValueError("Encryption secret cannot be empty")

    nonce = os.urandom(NONCE_BYTES)
    ciphertext = AESGCM(_derive_key(secret)).encrypt(nonce, plaintext.encode("utf-8"), None)
    return ":".join([
        FORMAT_VERSION,
        base64.b64encode(nonce).decode("ascii"),
        base64.b64encode(ciphertext).decode("ascii"),
    ])


def decrypt_api_key(stored: str, secret: str) -> str:
    """Decrypt a stored API key.

    Args:
        stored: Value of ``api_keys.encrypted_key``
        secret: Server-held encryption secret

    Returns:
        The plaintext API key

    Raises:
        SecretDecryptionError: On a missing secret, an unversioned or
            malformed payload, or an authentication failure
    """
    if not secret:
        logger.error("Cannot decrypt API key: encryption secret is not configured")
        raise SecretDecryptionError("Encryption secret is not configured")

    parts = (stored or "").split(":")
    if len(parts) != 3 or parts[0] != FORMAT_VERSION:
        logger.error("Cannot decrypt API key: unsupported payload format")
        raise SecretDecryptionError("Unsupported encrypted key format")

    try:
        nonce = base64.b64decode(parts[1], validate=True)
        ciphertext = base64.b64decode(parts[2], validate=True)
    except (binascii.Error, ValueError):
        logger.error("Cannot decrypt API key: payload is not valid base64")
        raise SecretDecryptionError("Malformed encrypted key payload")

    if len(nonce) != NONCE_BYTES:
        logger.error("Cannot decrypt API key: bad nonce length")
        raise SecretDecryptionError("Malformed encrypted key payload")

    try:
        plaintext = AESGCM(_derive_key(secret)).decrypt(nonce, ciphertext, None)
    except InvalidTag:
        logger.error("Cannot decrypt API key: authentication failed")
        raise SecretDecryptionError("Encrypted key failed authentication")

    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError:
        raise SecretDecryptionError("Decrypted key is not valid UTF-8")
