"""CredentialVault: authenticated encryption of provider API keys and secret config values.

Tokens are URL-safe base64 of ``nonce (12) | tag (16) | ciphertext``.
A fresh random nonce is drawn for every call, so encrypting the same
plaintext twice yields different tokens.
"""

import base64
import binascii
import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from flowsync.exceptions import ConfigurationError, DecryptionError

logger = logging.getLogger(__name__)

NONCE_SIZE = 12
TAG_SIZE = 16
_KDF_SALT = b"flowsync.credential-vault.v1"
_KDF_INFO = b"provider-api-keys"

# Header names whose values must never be logged.
_SENSITIVE_HEADERS: frozenset[str] = frozenset({
    "authorization",
    "x-n8n-api-key",
    "x-api-key",
    "cookie",
})


def derive_key(master_secret: str) -> bytes:
    """Derive a 256-bit AES key from the externally supplied master secret."""
    hkdf = HKDF(algorithm=hashes.SHA256(), length=32, salt=_KDF_SALT, info=_KDF_INFO)
    return hkdf.derive(master_secret.encode())


def redact_headers(headers: dict[str, str]) -> dict[str, str]:
    """Return a copy of *headers* safe to log."""
    return {k: "***" if k.lower() in _SENSITIVE_HEADERS else v for k, v in headers.items()}


def mask_secret(value: str, visible: int = 4) -> str:
    """``"n8n_api_abcdef1234"`` -> ``"***1234"``. Short values are fully masked."""
    if not value or len(value) <= visible * 2:
        return "***"
    return f"***{value[-visible:]}"


class CredentialVault:
    """AES-256-GCM wrapper keyed from a master secret.

    Args:
        master_secret: externally supplied secret (``FLOWSYNC_ENCRYPTION_KEY``).
            An empty value is a configuration error; there is no default key.
    """

    def __init__(self, master_secret: str) -> None:
        if not master_secret:
            raise ConfigurationError("CredentialVault requires a non-empty master secret")
        self._aead = AESGCM(derive_key(master_secret))

    @classmethod
    def from_config(cls, config) -> "CredentialVault":
        return cls(config.require_encryption_key())

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def encrypt(self, plaintext: str) -> str:
        """Encrypt *plaintext* and return the packed token string."""
        nonce = os.urandom(NONCE_SIZE)
        sealed = self._aead.encrypt(nonce, plaintext.encode(), None)
        # AESGCM appends the tag; store it ahead of the ciphertext.
        ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
        return base64.urlsafe_b64encode(nonce + tag + ciphertext).decode()

    def decrypt(self, token: str) -> str:
        """Decrypt a token produced by :meth:`encrypt`.

        Raises:
            DecryptionError: malformed token, tampered data, or wrong key.
        """
        try:
            raw = base64.urlsafe_b64decode(token.encode())
        except (binascii.Error, ValueError) as exc:
            raise DecryptionError("Decryption failed: token is not valid base64") from exc

        if len(raw) < NONCE_SIZE + TAG_SIZE:
            raise DecryptionError("Decryption failed: token is truncated")

        nonce = raw[:NONCE_SIZE]
        tag = raw[NONCE_SIZE:NONCE_SIZE + TAG_SIZE]
        ciphertext = raw[NONCE_SIZE + TAG_SIZE:]
        try:
            plaintext = self._aead.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as exc:
            raise DecryptionError("Decryption failed: invalid or tampered token") from exc
        return plaintext.decode()
