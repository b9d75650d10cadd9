from __future__ import annotations
import base64
import binascii
import json
import logging
import os
import re
import time
from functools import lru_cache
from typing import Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from storesync.core.config import settings
from storesync.core.errors import ConfigurationError, FormatError, IntegrityError

logger = logging.getLogger(__name__)

KEY_LENGTH = 32
NONCE_LENGTH = 16
TAG_LENGTH = 16

_HEX_KEY = re.compile(r"^[0-9a-fA-F]{64}$")


def _parse_key(key_str: str) -> bytes:
    key_str = (key_str or "").strip()
    if not key_str:
        raise ConfigurationError("TOKEN_ENC_KEY is empty. Set it in .env")

    if _HEX_KEY.match(key_str):
        raw = bytes.fromhex(key_str)
    else:
        try:
            raw = base64.b64decode(key_str, validate=True)
        except (binascii.Error, ValueError):
            try:
                raw = base64.urlsafe_b64decode(key_str)
            except (binascii.Error, ValueError) as e:
                raise ConfigurationError(
                    "TOKEN_ENC_KEY must be 32 bytes as hex (64 chars) or base64 (44 chars)"
                ) from e

    if len(raw) != KEY_LENGTH:
        raise ConfigurationError(f"TOKEN_ENC_KEY must be exactly 32 bytes, got {len(raw)} bytes")
    return raw


class TokenVault:
    """
    AES-256-GCM sealing of provider credentials.

    Blob layout (base64): nonce(16) | tag(16) | ciphertext. Never log inputs or outputs.
    """

    def __init__(self, key: bytes):
        if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_LENGTH:
            raise ConfigurationError("vault key must be exactly 32 bytes")
        self._aead = AESGCM(bytes(key))

    @classmethod
    def from_key_string(cls, key_str: str) -> "TokenVault":
        return cls(_parse_key(key_str))

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(NONCE_LENGTH)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        # AESGCM appends the tag; store it up front
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return base64.b64encode(nonce + tag + ciphertext).decode("ascii")

    def decrypt(self, blob: str) -> str:
        try:
            combined = base64.b64decode(blob, validate=True)
        except (binascii.Error, ValueError, TypeError) as e:
            raise FormatError("Invalid encrypted data") from e

        if len(combined) < NONCE_LENGTH + TAG_LENGTH:
            raise FormatError("Invalid encrypted data: too short")

        nonce = combined[:NONCE_LENGTH]
        tag = combined[NONCE_LENGTH:NONCE_LENGTH + TAG_LENGTH]
        ciphertext = combined[NONCE_LENGTH + TAG_LENGTH:]
        try:
            out = self._aead.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag:
            # same message for tampering and wrong key
            logger.warning("credential decryption failed")
            raise IntegrityError("Failed to decrypt data") from None

        try:
            return out.decode("utf-8")
        except UnicodeDecodeError as e:
            raise FormatError("Invalid encrypted data") from e

    def self_check(self) -> bool:
        probe = f"vault-self-check-{time.time()}"
        try:
            return self.decrypt(self.encrypt(probe)) == probe
        except (IntegrityError, FormatError):
            return False


def generate_key() -> Dict[str, str]:
    """New random key in both accepted encodings (for setup)."""
    raw = os.urandom(KEY_LENGTH)
    return {"hex": raw.hex(), "base64": base64.b64encode(raw).decode("ascii")}


@lru_cache(maxsize=4)
def get_vault(key_str: Optional[str] = None) -> TokenVault:
    """
    Vault built from the given key, or from TOKEN_ENC_KEY. Called at startup so a
    missing or wrong-sized key stops the service before it serves anything.
    """
    return TokenVault.from_key_string(settings.TOKEN_ENC_KEY if key_str is None else key_str)


def main() -> None:
    """Print a fresh TOKEN_ENC_KEY: `python -m storesync.services.crypto`."""
    keys = generate_key()
    print(json.dumps(keys, indent=2))
    print(f"\n# add to .env\nTOKEN_ENC_KEY={keys['hex']}")


if __name__ == "__main__":
    main()
