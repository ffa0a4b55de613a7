import base64
import hashlib
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

TOKEN_PREFIX = "v1:"
KEY_ENV_NAMES = ("HUBSPOT_TOKEN_ENC_KEY", "TOKEN_ENC_KEY")


def _raw_key() -> str:
    for name in KEY_ENV_NAMES:
        value = os.getenv(name)
        if value:
            return value
    raise ValueError(f"Missing required environment variable: {KEY_ENV_NAMES[0]}")


def _derive_key() -> bytes:
    raw = _raw_key()

    # A urlsafe-base64 key of AES size is used as-is; anything else is hashed.
    key_bytes: Optional[bytes] = None
    try:
        padded = raw + "=" * (-len(raw) % 4)
        decoded = base64.urlsafe_b64decode(padded.encode("utf-8"))
        if len(decoded) in (16, 24, 32):
            key_bytes = decoded
    except (ValueError, TypeError):
        key_bytes = None

    if not key_bytes:
        key_bytes = hashlib.sha256(raw.encode("utf-8")).digest()
    return key_bytes


def is_encrypted(value: Optional[str]) -> bool:
    return bool(value) and str(value).startswith(TOKEN_PREFIX)


def encrypt_token(token: str) -> str:
    if token is None:
        raise ValueError("token is required")
    aesgcm = AESGCM(_derive_key())
    nonce = os.urandom(12)
    ciphertext = aesgcm.encrypt(nonce, token.encode("utf-8"), None)
    payload = base64.urlsafe_b64encode(nonce + ciphertext).decode("utf-8").rstrip("=")
    return f"{TOKEN_PREFIX}{payload}"


def decrypt_token(token: str) -> str:
    if token is None:
        raise ValueError("token is required")
    raw = str(token)
    if not raw.startswith(TOKEN_PREFIX):
        # Rows written before encryption was enabled hold the plain token.
        return raw
    raw = raw[len(TOKEN_PREFIX):]
    padded = raw + "=" * (-len(raw) % 4)
    try:
        blob = base64.urlsafe_b64decode(padded.encode("utf-8"))
    except ValueError as exc:
        raise ValueError("Invalid token encoding") from exc
    if len(blob) < 13:
        raise ValueError("Invalid token payload")
    nonce, ciphertext = blob[:12], blob[12:]
    try:
        plaintext = AESGCM(_derive_key()).decrypt(nonce, ciphertext, None)
    except InvalidTag as exc:
        raise ValueError("Token could not be decrypted with the configured key") from exc
    return plaintext.decode("utf-8")
