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
Tests for the TokenCodec component.
"""

import base64
import json

import pytest
from authlib.jose import JsonWebToken
from pydantic import SecretStr

from coreason_federation.exceptions import ExpiredTokenError, InvalidSignatureError
from coreason_federation.token_codec import TokenCodec
from tests.conftest import TOKEN_SECRET, FakeClock


def _segment(data: dict[str, object]) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).rstrip(b"=").decode()


def test_round_trip(codec: TokenCodec, clock: FakeClock) -> None:
    token = codec.encode({"sub": "c1", "iat": 0, "exp": 0}, ttl_seconds=60)
    claims = codec.decode(token)
    assert claims["sub"] == "c1"
    assert claims["iat"] == int(clock.now)
    assert claims["exp"] == int(clock.now) + 60


def test_ttl_must_be_positive(codec: TokenCodec) -> None:
    with pytest.raises(ValueError):
        codec.encode({}, ttl_seconds=0)


def test_expired(codec: TokenCodec, clock: FakeClock) -> None:
    token = codec.encode({"sub": "c1"}, ttl_seconds=60)
    clock.advance(60)
    assert codec.decode(token)["sub"] == "c1"
    clock.advance(1)
    with pytest.raises(ExpiredTokenError):
        codec.decode(token)


def test_explicit_evaluation_time(codec: TokenCodec, clock: FakeClock) -> None:
    token = codec.encode({"sub": "c1"}, ttl_seconds=10)
    with pytest.raises(ExpiredTokenError):
        codec.decode(token, now=clock.now + 11)


def test_tampered_payload_rejected(codec: TokenCodec) -> None:
    header, _, signature = codec.encode({"scope": "read"}, ttl_seconds=60).split(".")
    forged = f"{header}.{_segment({'scope': 'admin', 'exp': 9_999_999_999})}.{signature}"
    with pytest.raises(InvalidSignatureError):
        codec.decode(forged)


def test_alg_none_rejected(codec: TokenCodec) -> None:
    token = f"{_segment({'alg': 'none', 'typ': 'JWT'})}.{_segment({'sub': 'x', 'exp': 9_999_999_999})}."
    with pytest.raises(InvalidSignatureError):
        codec.decode(token)


def test_foreign_key_rejected(codec: TokenCodec) -> None:
    other = TokenCodec(SecretStr("another-secret-that-is-long-enough!!"))
    with pytest.raises(InvalidSignatureError):
        codec.decode(other.encode({"sub": "x"}, ttl_seconds=60))


def test_algorithm_confusion_rejected(clock: FakeClock) -> None:
    hs512 = JsonWebToken(["HS512"]).encode({"alg": "HS512"}, {"sub": "x", "exp": 9_999_999_999}, TOKEN_SECRET)
    codec = TokenCodec(SecretStr(TOKEN_SECRET), "HS256", clock=clock)
    with pytest.raises(InvalidSignatureError):
        codec.decode(hs512.decode())


@pytest.mark.parametrize("token", ["", "garbage", "a.b.c", "....", "é.é.é"])
def test_malformed_input_is_invalid_signature(codec: TokenCodec, token: str) -> None:
    with pytest.raises(InvalidSignatureError):
        codec.decode(token)


def test_missing_expiry_rejected(clock: FakeClock) -> None:
    raw = JsonWebToken(["HS256"]).encode({"alg": "HS256"}, {"sub": "x"}, TOKEN_SECRET)
    codec = TokenCodec(SecretStr(TOKEN_SECRET), clock=clock)
    with pytest.raises(InvalidSignatureError, match="expiry"):
        codec.decode(raw.decode())
