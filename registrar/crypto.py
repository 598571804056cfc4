"""
AES-GCM sealing with the provisioned engine key.

Sealed values are JSON documents of the form {"iv": [...], "ct": [...]} (byte
arrays as integer lists), the format the credential store already uses.
"""

from __future__ import annotations

import base64
import binascii
import json
import os
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

NONCE_SIZE = 12


class SealError(ValueError):
    """Payload could not be decrypted or is malformed."""


def load_key(key_b64: str) -> bytes:
    try:
        key = base64.b64decode(key_b64, validate=True)
    except (binascii.Error, ValueError) as e:
        raise SealError("encryption key is not valid base64") from e
    if len(key) not in (16, 24, 32):
        raise SealError(f"encryption key must be 16, 24 or 32 bytes, got {len(key)}")
    return key


class SecretBox:
    def __init__(self, key: bytes, *, aad: bytes | None = None) -> None:
        self._aead = AESGCM(key)
        self._aad = aad

    @classmethod
    def from_b64(cls, key_b64: str, *, aad: bytes | None = None) -> SecretBox:
        return cls(load_key(key_b64), aad=aad)

    def seal_bytes(self, data: bytes) -> str:
        nonce = os.urandom(NONCE_SIZE)
        ct = self._aead.encrypt(nonce, data, self._aad)
        return json.dumps({"iv": list(nonce), "ct": list(ct)}, separators=(",", ":"))

    def open_bytes(self, sealed: str | dict[str, Any]) -> bytes:
        try:
            doc = json.loads(sealed) if isinstance(sealed, str) else sealed
            nonce = bytes(doc["iv"])
            ct = bytes(doc["ct"])
        except (TypeError, KeyError, ValueError) as e:
            raise SealError("sealed payload is malformed") from e
        try:
            return self._aead.decrypt(nonce, ct, self._aad)
        except InvalidTag as e:
            raise SealError("sealed payload failed authentication") from e

    def seal(self, text: str) -> str:
        return self.seal_bytes(text.encode("utf-8"))

    def open(self, sealed: str | dict[str, Any]) -> str:
        return self.open_bytes(sealed).decode("utf-8")
