from __future__ import annotations

import hashlib
import os
from typing import Mapping

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from taskguard.logging import get_logger
from taskguard.service.errors import DecryptionError, ServerError

logger = get_logger(__name__)

IV_BYTES = 16
TAG_BYTES = 16


class SecretCipher:
    """AES-256-GCM envelope encryption for secrets at rest.

    Each key context ("2FA", "CHAT", ...) has its own key material; the
    256-bit key is the SHA-256 digest of that material. Payloads are
    ``hex(iv):hex(tag):hex(ciphertext)``.

    ``allow_legacy_plaintext`` opens a migration path for secrets stored
    before encryption was introduced: a payload with no ``:`` separator is
    returned unchanged and a warning is logged. Any other payload that does
    not split into three parts is rejected as malformed.
    """

    def __init__(
        self,
        key_material: Mapping[str, str],
        *,
        allow_legacy_plaintext: bool = False,
    ) -> None:
        self._keys = {
            context: hashlib.sha256(material.encode("utf-8")).digest()
            for context, material in key_material.items()
            if material
        }
        self.allow_legacy_plaintext = allow_legacy_plaintext

    def _key_for(self, key_context: str) -> bytes:
        key = self._keys.get(key_context)
        if key is None:
            logger.error("cipher_context_unconfigured", key_context=key_context)
            raise ServerError("encryption is not configured for this context")
        return key

    def encrypt(self, plaintext: str, key_context: str) -> str:
        aead = AESGCM(self._key_for(key_context))
        iv = os.urandom(IV_BYTES)
        sealed = aead.encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decrypt(self, payload: str, key_context: str) -> str:
        key = self._key_for(key_context)
        if self.allow_legacy_plaintext and ":" not in payload:
            logger.warning("legacy_plaintext_secret", key_context=key_context)
            return payload
        parts = payload.split(":")
        if len(parts) != 3:
            raise DecryptionError("malformed")
        try:
            iv, tag, ciphertext = (bytes.fromhex(part) for part in parts)
        except ValueError:
            raise DecryptionError("malformed")
        if len(iv) != IV_BYTES or len(tag) != TAG_BYTES:
            raise DecryptionError("malformed")
        try:
            plaintext = AESGCM(key).decrypt(iv, ciphertext + tag, None)
        except InvalidTag:
            raise DecryptionError("tag mismatch")
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError:
            raise DecryptionError("malformed")
