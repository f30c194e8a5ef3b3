"""Symmetric encryption for OAuth tokens at rest.

Tokens are sealed with AES-256-GCM using a process-wide key loaded once at
startup from ``CALSYNC_ENCRYPTION_KEY``.  The key may be given as 64 hex
characters or as urlsafe base64 of 32 raw bytes.  A missing or malformed key
is fatal: :meth:`TokenCipher.from_env` raises :class:`EncryptionKeyError`
immediately so the process never starts half-configured.

Stored format::

    v1:<urlsafe-base64(nonce || ciphertext || tag)>
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

logger = logging.getLogger(__name__)

ENCRYPTION_KEY_ENV = "CALSYNC_ENCRYPTION_KEY"

_KEY_LENGTH = 32
_NONCE_LENGTH = 12  # 96-bit nonce for GCM
_VERSION_PREFIX = "v1:"


class EncryptionKeyError(RuntimeError):
    """Raised when the token encryption key is missing or malformed."""


class TokenDecryptionError(ValueError):
    """Raised when a stored ciphertext cannot be opened with the current key."""


def _decode_key(raw: str) -> bytes:
    candidate = raw.strip()
    if len(candidate) == _KEY_LENGTH * 2:
        try:
            return bytes.fromhex(candidate)
        except ValueError:
            pass
    try:
        decoded = base64.urlsafe_b64decode(candidate + "=" * (-len(candidate) % 4))
    except (binascii.Error, ValueError) as exc:
        raise EncryptionKeyError(
            f"{ENCRYPTION_KEY_ENV} must be 64 hex characters or base64 of 32 bytes"
        ) from exc
    if len(decoded) != _KEY_LENGTH:
        raise EncryptionKeyError(
            f"{ENCRYPTION_KEY_ENV} must decode to {_KEY_LENGTH} bytes, got {len(decoded)}"
        )
    return decoded


class TokenCipher:
    """AES-256-GCM sealer for token strings.

    Instantiate once per process (see :meth:`from_env`) and pass the
    instance to the token store.
    """

    def __init__(self, key: bytes) -> None:
        if len(key) != _KEY_LENGTH:
            raise EncryptionKeyError(f"encryption key must be {_KEY_LENGTH} bytes")
        self._aesgcm = AESGCM(key)

    @classmethod
    def from_env(cls, env_var: str = ENCRYPTION_KEY_ENV) -> TokenCipher:
        """Load the process-wide key, failing fast when it is unusable."""
        raw = os.environ.get(env_var, "")
        if not raw.strip():
            raise EncryptionKeyError(f"{env_var} is not set; token encryption is unavailable")
        cipher = cls(_decode_key(raw))
        logger.info("Token encryption key loaded from %s", env_var)
        return cipher

    @staticmethod
    def generate_key() -> str:
        """Return a fresh hex-encoded key suitable for ``CALSYNC_ENCRYPTION_KEY``."""
        return secrets.token_bytes(_KEY_LENGTH).hex()

    def encrypt(self, plaintext: str) -> str:
        nonce = secrets.token_bytes(_NONCE_LENGTH)
        sealed = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        return _VERSION_PREFIX + base64.urlsafe_b64encode(nonce + sealed).decode("ascii")

    def decrypt(self, token: str) -> str:
        if not token.startswith(_VERSION_PREFIX):
            raise TokenDecryptionError("ciphertext has an unknown format version")
        try:
            blob = base64.urlsafe_b64decode(token[len(_VERSION_PREFIX) :])
        except (binascii.Error, ValueError) as exc:
            raise TokenDecryptionError("ciphertext is not valid base64") from exc
        if len(blob) <= _NONCE_LENGTH:
            raise TokenDecryptionError("ciphertext is truncated")
        nonce, sealed = blob[:_NONCE_LENGTH], blob[_NONCE_LENGTH:]
        try:
            return self._aesgcm.decrypt(nonce, sealed, None).decode("utf-8")
        except InvalidTag as exc:
            raise TokenDecryptionError("ciphertext failed authentication") from exc

    def __repr__(self) -> str:
        return "TokenCipher(key=<REDACTED>)"
