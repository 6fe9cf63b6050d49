from __future__ import annotations

import base64
import binascii
import hashlib
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from oficina_nf.services.exceptions import CorruptSecret, MissingKey

KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16


def _decode_lenient(value: str) -> bytes:
    """Lenient base64: padding is optional and the URL-safe alphabet is accepted."""
    stripped = value.strip().rstrip("=")
    try:
        return base64.urlsafe_b64decode(stripped + "=" * (-len(stripped) % 4))
    except (binascii.Error, ValueError):
        return b""


def derive_key(key_material: str) -> bytes:
    """Turn the configured key string into a 32-byte AES key.

    A value that base64-decodes to exactly 32 bytes is used as-is; anything
    else is hashed with SHA-256. Blobs encrypted by earlier deployments rely
    on this fallback, so it must not change.
    """
    decoded = _decode_lenient(key_material)
    if len(decoded) == KEY_SIZE:
        return decoded
    return hashlib.sha256(key_material.encode("utf-8")).digest()


class SecretCipher:
    """AES-256-GCM for small secrets (A1 certificates) stored in the database.

    Stored layout: ``nonce(12) | tag(16) | ciphertext``.
    """

    def __init__(self, key_material: str | None) -> None:
        self._key_material = key_material
        self._aead: AESGCM | None = None

    def _cipher(self) -> AESGCM:
        if self._aead is None:
            if not self._key_material:
                raise MissingKey(
                    "CERT_KEY is required for certificate encryption (env var or keyring)"
                )
            self._aead = AESGCM(derive_key(self._key_material))
        return self._aead

    def encrypt(self, base64_blob: str) -> bytes:
        """Encrypt the bytes behind *base64_blob* with a fresh random nonce."""
        plaintext = base64.b64decode(base64_blob)
        nonce = os.urandom(NONCE_SIZE)
        sealed = self._cipher().encrypt(nonce, plaintext, None)
        # AESGCM appends the tag; the stored layout keeps it before the ciphertext.
        ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
        return nonce + tag + ciphertext

    def decrypt(self, blob: bytes | None) -> str | None:
        """Return the base64 text of the decrypted secret (None passes through)."""
        if blob is None:
            return None
        aead = self._cipher()
        blob = bytes(blob)
        if len(blob) < NONCE_SIZE + TAG_SIZE:
            raise CorruptSecret(f"Encrypted blob too short ({len(blob)} bytes)")
        nonce = blob[:NONCE_SIZE]
        tag = blob[NONCE_SIZE : NONCE_SIZE + TAG_SIZE]
        ciphertext = blob[NONCE_SIZE + TAG_SIZE :]
        try:
            plaintext = aead.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as exc:
            raise CorruptSecret("Certificate blob failed authentication") from exc
        return base64.b64encode(plaintext).decode("ascii")
