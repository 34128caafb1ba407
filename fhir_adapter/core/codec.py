"""At-rest protection for quarantined source entries.

Tokens have the form ``base64(iv):base64(ciphertext)`` where the ciphertext is
AES-256-CBC over PKCS7-padded UTF-8 plaintext. Natural keys of entries that
were eventually synced are replaced by a SHA-256 hex digest, which keeps an
audit trace without keeping anything recoverable.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import os
from dataclasses import dataclass
from typing import Any

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

KEY_SIZE_BYTES = 32
IV_SIZE_BYTES = 16
TOKEN_SEPARATOR = ":"


class CodecError(Exception):
    """Base codec error."""


class CodecKeyError(CodecError):
    """Raised when the symmetric key is not exactly 32 bytes."""


class DecodeError(CodecError):
    """Raised when a token cannot be decoded, decrypted or parsed."""


@dataclass(slots=True, frozen=True)
class RecoveredEntry:
    natural_key: str | None
    payload: Any


class CodecService:
    def __init__(self, key: str | bytes) -> None:
        raw_key = key.encode("utf-8") if isinstance(key, str) else bytes(key)
        if len(raw_key) != KEY_SIZE_BYTES:
            raise CodecKeyError(f"encryption key must be exactly {KEY_SIZE_BYTES} bytes, got {len(raw_key)}")
        self._key = raw_key

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(IV_SIZE_BYTES)
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
        encryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()
        return f"{_b64encode(iv)}{TOKEN_SEPARATOR}{_b64encode(ciphertext)}"

    def decrypt(self, token: str) -> str:
        iv_part, separator, cipher_part = token.partition(TOKEN_SEPARATOR)
        if not separator or not iv_part or not cipher_part:
            raise DecodeError("invalid token format, expected base64(iv):base64(ciphertext)")

        iv = _b64decode(iv_part)
        ciphertext = _b64decode(cipher_part)
        if len(iv) != IV_SIZE_BYTES:
            raise DecodeError(f"initialization vector must be {IV_SIZE_BYTES} bytes, got {len(iv)}")

        try:
            decryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).decryptor()
            padded = decryptor.update(ciphertext) + decryptor.finalize()
            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            plaintext = unpadder.update(padded) + unpadder.finalize()
            return plaintext.decode("utf-8")
        except (ValueError, UnicodeDecodeError) as exc:
            raise DecodeError(f"failed to decrypt token: {exc}") from exc

    def encrypt_json(self, payload: Any) -> str:
        return self.encrypt(json.dumps(payload, separators=(",", ":"), default=str))

    @staticmethod
    def hash_natural_key(value: str) -> str:
        return hashlib.sha256(value.encode("utf-8")).hexdigest()

    def decrypt_recovered_entry(self, encrypted_natural_key: str | None, encrypted_payload: str) -> RecoveredEntry:
        natural_key = self.decrypt(encrypted_natural_key) if encrypted_natural_key else None
        raw_payload = self.decrypt(encrypted_payload)
        try:
            payload = json.loads(raw_payload)
        except json.JSONDecodeError as exc:
            raise DecodeError(f"decrypted payload is not valid JSON: {exc.msg}") from exc
        return RecoveredEntry(natural_key=natural_key, payload=payload)


def _b64encode(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def _b64decode(value: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecodeError(f"invalid base64 segment: {exc}") from exc
