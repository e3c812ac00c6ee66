"""Cryptography utilities for storing the endpoint API key."""

import base64
import hashlib
import platform
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

_PREFIX = "FERNET:"


def get_machine_id() -> str:
    """Get a machine-specific identifier for key derivation.

    Combines the network name, machine type and processor string; stable
    for a given machine, so a settings file only decrypts where it was
    written.
    """
    factors = [platform.node(), platform.machine(), platform.processor()]
    return "|".join(factors)


def derive_encryption_key() -> bytes:
    """Derive a Fernet encryption key from machine-specific data.

    Returns:
        URL-safe base64 encoded 32-byte key
    """
    key_material = hashlib.pbkdf2_hmac(
        "sha256",
        get_machine_id().encode("utf-8"),
        b"horae_endpoint_key_encryption",
        iterations=100000,
        dklen=32,
    )
    return base64.urlsafe_b64encode(key_material)


# Global encryption key (derived once)
_encryption_key: Optional[bytes] = None


def get_fernet() -> Fernet:
    global _encryption_key
    if _encryption_key is None:
        _encryption_key = derive_encryption_key()
    return Fernet(_encryption_key)


def encrypt_api_key(plaintext: str) -> str:
    """Encrypt an API key for storage.

    Args:
        plaintext: The plain API key

    Returns:
        ``FERNET:``-prefixed token, or "" for an empty key
    """
    if not plaintext:
        return ""
    encrypted = get_fernet().encrypt(plaintext.encode("utf-8"))
    return f"{_PREFIX}{encrypted.decode('utf-8')}"


def decrypt_api_key(ciphertext: str) -> str:
    """Decrypt a stored API key.

    Values without the ``FERNET:`` prefix are treated as plaintext (keys
    pasted directly into the settings file).

    Raises:
        ValueError: if the token was written on another machine or is corrupt
    """
    if not ciphertext:
        return ""
    if not ciphertext.startswith(_PREFIX):
        return ciphertext
    try:
        decrypted = get_fernet().decrypt(ciphertext[len(_PREFIX):].encode("utf-8"))
    except InvalidToken as e:
        raise ValueError("Decryption failed: key was stored on another machine or is corrupt") from e
    return decrypted.decode("utf-8")


def mask_api_key(key: str) -> str:
    """Create a masked version of an API key for display.

    Args:
        key: The API key (can be encrypted or plain)

    Returns:
        Masked version like "sk-a...wxyz", "****" for short keys, "" when unset
    """
    if not key:
        return ""
    try:
        plain = decrypt_api_key(key)
    except ValueError:
        return "[Invalid Key]"
    if not plain:
        return ""
    if len(plain) <= 8:
        return "****"
    return f"{plain[:4]}...{plain[-4:]}"


def is_key_configured(key: str) -> bool:
    if not key:
        return False
    try:
        return bool(decrypt_api_key(key))
    except ValueError:
        return False
