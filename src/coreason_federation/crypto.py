# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_federation

"""
Secret hashing, authenticated encryption and identifier generation.
"""

import os
import secrets

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from pydantic import BaseModel, ConfigDict, SecretStr

from coreason_federation.exceptions import CoreasonFederationError

AEAD_ALGORITHM = "AES-256-GCM"
PASSWORD_KDF = "argon2id"
_NONCE_BYTES = 12
_TAG_BYTES = 16


class SecretHasher:
    """
    Argon2id hashing for client secrets. `verify` never raises on a mismatch.
    """

    algorithm = PASSWORD_KDF

    def __init__(self, hasher: PasswordHasher | None = None) -> None:
        self._hasher = hasher or PasswordHasher()

    def hash(self, secret: str) -> str:
        return self._hasher.hash(secret)

    def verify(self, secret: str | None, secret_hash: str | None) -> bool:
        """
        Returns True only if `secret` matches `secret_hash`.
        """
        if not secret or not secret_hash:
            return False
        try:
            return self._hasher.verify(secret_hash, secret)
        except (VerifyMismatchError, VerificationError, InvalidHashError):
            return False


class SecretBox:
    """
    AES-256-GCM authenticated encryption.

    `seal`/`open` use the XML-Enc 1.1 GCM layout (`nonce || ciphertext || tag`); `encrypt`/`decrypt`
    produce the hex `nonce:tag:ciphertext` text format used for secrets at rest.
    """

    algorithm = AEAD_ALGORITHM

    def __init__(self, key: bytes) -> None:
        if len(key) != 32:
            raise ValueError("SecretBox requires a 32-byte key")
        self._aead = AESGCM(key)

    @classmethod
    def from_secret(cls, key_hex: SecretStr) -> "SecretBox":
        return cls(bytes.fromhex(key_hex.get_secret_value()))

    @classmethod
    def generate(cls) -> "SecretBox":
        return cls(AESGCM.generate_key(bit_length=256))

    def seal(self, plaintext: bytes, associated_data: bytes | None = None) -> bytes:
        nonce = os.urandom(_NONCE_BYTES)
        return nonce + self._aead.encrypt(nonce, plaintext, associated_data)

    def open(self, sealed: bytes, associated_data: bytes | None = None) -> bytes:
        if len(sealed) < _NONCE_BYTES + _TAG_BYTES:
            raise CoreasonFederationError("Sealed payload is too short")
        nonce, body = sealed[:_NONCE_BYTES], sealed[_NONCE_BYTES:]
        try:
            return self._aead.decrypt(nonce, body, associated_data)
        except InvalidTag as e:
            raise CoreasonFederationError("Authentication tag mismatch") from e

    def encrypt(self, text: str) -> str:
        sealed = self.seal(text.encode("utf-8"))
        nonce, ciphertext, tag = sealed[:_NONCE_BYTES], sealed[_NONCE_BYTES:-_TAG_BYTES], sealed[-_TAG_BYTES:]
        return f"{nonce.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decrypt(self, encrypted: str) -> str:
        parts = encrypted.split(":")
        if len(parts) != 3:
            raise CoreasonFederationError("Invalid encrypted data format")
        try:
            nonce, tag, ciphertext = (bytes.fromhex(p) for p in parts)
        except ValueError as e:
            raise CoreasonFederationError("Invalid encrypted data format") from e
        return self.open(nonce + ciphertext + tag).decode("utf-8")


class CryptoPosture(BaseModel):
    """Algorithms in use, as reported to the security harness."""

    model_config = ConfigDict(frozen=True)

    password_kdf: str = PASSWORD_KDF
    symmetric_cipher: str = AEAD_ALGORITHM
    token_signing_algorithm: str = "HS256"
    saml_signature_algorithm: str | None = None


def generate_secret(length: int = 32) -> str:
    return secrets.token_hex(length)


def generate_client_id() -> str:
    return f"oauth2_{secrets.token_hex(16)}"


def generate_client_secret() -> str:
    return f"sk_{secrets.token_hex(32)}"
