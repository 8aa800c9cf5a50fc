# babylog/encryption.py
from __future__ import annotations

"""
At-rest encryption for deployment secrets (the system administrator password).

AES-256-GCM, key derived from the ENC_HASH env var. Stored form:

    enc:v1:<base64(nonce || ciphertext || tag)>

Values without the prefix are legacy plaintext and are returned unchanged.
"""

import base64
import hashlib
import logging
import os
import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from babylog.auth_errors import SystemNotConfigured

logger = logging.getLogger(__name__)

PREFIX = "enc:v1:"
NONCE_SIZE = 12  # 96 bits, recommended for AES-GCM


class DecryptionError(Exception):
    """Raised when a stored secret can't be decrypted with the current key."""


def _key() -> bytes:
    enc_hash = (os.getenv("ENC_HASH") or "").strip()
    if not enc_hash:
        logger.error("ENC_HASH is not set; encrypted secrets can't be read")
        raise SystemNotConfigured()
    return hashlib.sha256(enc_hash.encode("utf-8")).digest()


def is_encrypted(value: str | None) -> bool:
    return bool(value) and value.startswith(PREFIX)


def encrypt(plaintext: str) -> str:
    nonce = secrets.token_bytes(NONCE_SIZE)
    sealed = AESGCM(_key()).encrypt(nonce, plaintext.encode("utf-8"), None)
    return PREFIX + base64.b64encode(nonce + sealed).decode("ascii")


def decrypt(value: str) -> str:
    if not is_encrypted(value):
        return value
    try:
        raw = base64.b64decode(value[len(PREFIX):], validate=True)
    except ValueError as e:
        raise DecryptionError("Malformed encrypted value") from e
    nonce, sealed = raw[:NONCE_SIZE], raw[NONCE_SIZE:]
    try:
        return AESGCM(_key()).decrypt(nonce, sealed, None).decode("utf-8")
    except InvalidTag as e:
        raise DecryptionError("Encrypted value does not match ENC_HASH") from e
