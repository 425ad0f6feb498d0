# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_federation

import re

import pytest
from pydantic import SecretStr

from coreason_federation.crypto import (
    AEAD_ALGORITHM,
    PASSWORD_KDF,
    CryptoPosture,
    SecretBox,
    SecretHasher,
    generate_client_id,
    generate_client_secret,
    generate_secret,
)
from coreason_federation.exceptions import CoreasonFederationError


def test_hasher_round_trip(hasher: SecretHasher) -> None:
    secret_hash = hasher.hash("sk_live")
    assert secret_hash.startswith("$argon2id$")
    assert hasher.verify("sk_live", secret_hash)


@pytest.mark.parametrize(("secret", "secret_hash"), [("wrong", None), (None, "x"), ("", "x"), ("sk", "not-a-hash")])
def test_hasher_verify_never_raises(hasher: SecretHasher, secret: str | None, secret_hash: str | None) -> None:
    assert hasher.verify(secret, secret_hash) is False


def test_hasher_rejects_mismatch(hasher: SecretHasher) -> None:
    assert hasher.verify("other", hasher.hash("sk_live")) is False


def test_secret_box_seal_open() -> None:
    box = SecretBox.generate()
    sealed = box.seal(b"payload", associated_data=b"ctx")
    assert sealed != b"payload"
    assert box.open(sealed, associated_data=b"ctx") == b"payload"
    with pytest.raises(CoreasonFederationError, match="tag"):
        box.open(sealed, associated_data=b"other")


def test_secret_box_text_format() -> None:
    box = SecretBox.from_secret(SecretStr("11" * 32))
    encrypted = box.encrypt("private key material")
    assert re.fullmatch(r"[0-9a-f]{24}:[0-9a-f]{32}:[0-9a-f]+", encrypted)
    assert box.decrypt(encrypted) == "private key material"


def test_secret_box_tamper_detected() -> None:
    box = SecretBox.generate()
    nonce, tag, ciphertext = box.encrypt("hello").split(":")
    flipped = format(int(ciphertext[:2], 16) ^ 0xFF, "02x") + ciphertext[2:]
    with pytest.raises(CoreasonFederationError):
        box.decrypt(f"{nonce}:{tag}:{flipped}")


@pytest.mark.parametrize("value", ["only:two", "zz:zz:zz", ""])
def test_secret_box_rejects_bad_format(value: str) -> None:
    with pytest.raises(CoreasonFederationError):
        SecretBox.generate().decrypt(value)


def test_secret_box_requires_256_bit_key() -> None:
    with pytest.raises(ValueError):
        SecretBox(b"short")
    with pytest.raises(CoreasonFederationError, match="too short"):
        SecretBox.generate().open(b"abc")


def test_identifier_generation() -> None:
    assert re.fullmatch(r"oauth2_[0-9a-f]{32}", generate_client_id())
    assert re.fullmatch(r"sk_[0-9a-f]{64}", generate_client_secret())
    assert len(generate_secret()) == 64
    assert generate_client_secret() != generate_client_secret()


def test_default_posture() -> None:
    posture = CryptoPosture()
    assert posture.password_kdf == PASSWORD_KDF
    assert posture.symmetric_cipher == AEAD_ALGORITHM
    assert posture.token_signing_algorithm == "HS256"
