# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_federation

import pytest
from pydantic import SecretStr, ValidationError

from coreason_federation.config import MAX_AUTHORIZATION_CODE_TTL, FederationConfig, HarnessConfig

SECRET = SecretStr("x" * 32)


def test_federation_config_defaults() -> None:
    config = FederationConfig(token_secret=SECRET)
    assert config.token_algorithm == "HS256"
    assert config.authorization_code_ttl == MAX_AUTHORIZATION_CODE_TTL
    assert config.clock_skew_tolerance == 300
    assert config.enforce_single_use_codes is True
    assert config.issuer.startswith("https://")


def test_short_token_secret_rejected() -> None:
    with pytest.raises(ValidationError, match="at least 32 bytes"):
        FederationConfig(token_secret=SecretStr("short"))


def test_code_ttl_capped_at_ten_minutes() -> None:
    with pytest.raises(ValidationError):
        FederationConfig(token_secret=SECRET, authorization_code_ttl=601)


def test_http_issuer_requires_local_dev_opt_in() -> None:
    with pytest.raises(ValidationError, match="HTTPS is required"):
        FederationConfig(token_secret=SECRET, issuer="http://localhost:3000")

    config = FederationConfig(token_secret=SECRET, issuer="http://localhost:3000/", unsafe_local_dev=True)
    assert config.issuer == "http://localhost:3000"


@pytest.mark.parametrize("key", ["not-hex", "ab" * 16])
def test_encryption_key_must_be_32_hex_bytes(key: str) -> None:
    with pytest.raises(ValidationError):
        FederationConfig(token_secret=SECRET, encryption_key=SecretStr(key))


def test_encryption_key_accepted() -> None:
    config = FederationConfig(token_secret=SECRET, encryption_key=SecretStr("ab" * 32))
    assert config.encryption_key is not None


def test_config_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("COREASON_FED_TOKEN_SECRET", "y" * 40)
    monkeypatch.setenv("COREASON_FED_STORE_TIMEOUT", "2.5")
    config = FederationConfig()  # type: ignore[call-arg]
    assert config.token_secret.get_secret_value() == "y" * 40
    assert config.store_timeout == 2.5


def test_secret_not_in_repr() -> None:
    config = FederationConfig(token_secret=SecretStr("s3cr3t" * 8))
    assert "s3cr3t" not in repr(config)


def test_harness_config_normalizes_urls() -> None:
    config = HarnessConfig(base_url=" https://mock.example.com/ ", http_timeout=3, rate_limit_endpoint="oauth/token")
    assert config.base_url == "https://mock.example.com"
    assert config.rate_limit_endpoint == "/oauth/token"
    assert config.rate_limit_probe_requests == 20


def test_harness_config_requires_timeout_and_scheme() -> None:
    with pytest.raises(ValidationError):
        HarnessConfig()  # type: ignore[call-arg]
    with pytest.raises(ValidationError, match="scheme"):
        HarnessConfig(base_url="mock.example.com", http_timeout=1)
    with pytest.raises(ValidationError):
        HarnessConfig(http_timeout=0)
