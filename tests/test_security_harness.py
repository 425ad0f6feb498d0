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
Tests for the security validation harness.
"""

import anyio
import httpx
import pytest
from pydantic import SecretStr

from coreason_federation.config import HarnessConfig
from coreason_federation.crypto import CryptoPosture
from coreason_federation.exceptions import SamlParseError
from coreason_federation.models import Severity
from coreason_federation.saml_parser import parse
from coreason_federation.security_harness import (
    SecurityValidator,
    foreign_token,
    open_redirect_candidates,
    signature_wrapping_payload,
    unsigned_token,
    xxe_payload,
)
from coreason_federation.simulator import FederationSimulator

BASE_URL = "http://target.test"


def _config(**overrides: object) -> HarnessConfig:
    values: dict[str, object] = {"base_url": BASE_URL, "http_timeout": 1.0}
    values.update(overrides)
    return HarnessConfig(**values)  # type: ignore[arg-type]


def _mock_client(handler: object) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=BASE_URL)  # type: ignore[arg-type]


def test_open_redirect_candidates() -> None:
    candidates = open_redirect_candidates("https://app.example.com/callback")
    assert "https://app.example.com/callback" not in candidates
    assert "https://evil.com/callback" in candidates
    assert "https://app.example.com@evil.com/callback" in candidates
    assert "https://app.example.com.evil.com/callback" in candidates
    assert "//evil.com/callback" in candidates
    assert "https://app.example.com/callback/" in candidates
    assert "https://APP.EXAMPLE.COM/callback" in candidates
    assert len(candidates) == len(set(candidates))


def test_forged_tokens_have_the_expected_shape() -> None:
    header, payload, signature = unsigned_token({"sub": "x"}).split(".")
    assert header and payload
    assert signature == ""
    assert len(foreign_token({"sub": "x"}).split(".")) == 3


def test_attack_payloads() -> None:
    wrapped = parse(signature_wrapping_payload("https://target/saml/x/sso"))
    assert wrapped.assertion_count == 2
    assert wrapped.has_signature_element is True
    with pytest.raises(SamlParseError):
        parse(xxe_payload())


def test_cryptography_without_posture_is_informational() -> None:
    validator = SecurityValidator(_mock_client(lambda r: httpx.Response(200)), _config())
    results = validator.test_cryptography()
    assert len(results) == 3
    assert all(r.passed for r in results)
    assert all(r.details is not None and r.details["verified"] is False for r in results)


def test_cryptography_flags_weak_posture() -> None:
    posture = CryptoPosture(password_kdf="md5", symmetric_cipher="AES-256-CBC", token_signing_algorithm="none")
    validator = SecurityValidator(_mock_client(lambda r: httpx.Response(200)), _config(), posture)
    results = validator.test_cryptography()
    assert [r.passed for r in results] == [False, False, False]
    assert results[0].severity is Severity.CRITICAL


def test_cryptography_accepts_strong_posture() -> None:
    validator = SecurityValidator(_mock_client(lambda r: httpx.Response(200)), _config(), CryptoPosture())
    assert all(r.passed for r in validator.test_cryptography())


@pytest.mark.asyncio
async def test_unconfigured_probes_are_skipped() -> None:
    async with _mock_client(lambda r: httpx.Response(400)) as client:
        validator = SecurityValidator(client, _config())
        assert await validator.test_oauth_security() == []
        assert await validator.test_saml_security() == []


@pytest.mark.asyncio
async def test_unreachable_target_fails_every_probe_without_aborting() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with _mock_client(handler) as client:
        results = await SecurityValidator(client, _config()).run_all()

    network = [r for r in results if r.category != "Cryptography"]
    assert network
    assert all(not r.passed for r in network)
    assert all("ConnectError" in r.description or "connection refused" in r.description for r in network)
    sql = next(r for r in results if r.category == "SQL Injection")
    assert sql.severity is Severity.CRITICAL


@pytest.mark.asyncio
async def test_timeouts_become_probe_failures() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    async with _mock_client(handler) as client:
        results = await SecurityValidator(client, _config()).test_xss()
    assert all(not r.passed and "timed out" in r.description for r in results)


@pytest.mark.asyncio
async def test_judge_errors_become_failed_results() -> None:
    async with _mock_client(lambda r: httpx.Response(200, text="not json")) as client:
        validator = SecurityValidator(client, _config(client_id="c1", client_secret=SecretStr("s")))
        results = await validator.test_jwt_security()

    introspection = next(r for r in results if r.test == "None algorithm introspection")
    assert introspection.passed is False
    assert introspection.description.startswith("Probe error")


@pytest.mark.asyncio
async def test_reflected_payload_fails() -> None:
    async with _mock_client(lambda r: httpx.Response(400, text=str(r.url.params.get("state")))) as client:
        results = await SecurityValidator(client, _config()).test_xss()
    assert results
    assert all(not r.passed for r in results)
    assert all(r.details is not None and r.details["reflected"] is True for r in results)


@pytest.mark.asyncio
async def test_concurrency_is_bounded() -> None:
    in_flight = 0
    peak = 0

    async def handler(request: httpx.Request) -> httpx.Response:
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await anyio.sleep(0.01)
        in_flight -= 1
        return httpx.Response(400)

    async with _mock_client(handler) as client:
        await SecurityValidator(client, _config(max_concurrency=2)).test_sql_injection()
    assert peak == 2


@pytest.mark.asyncio
async def test_run_against_simulator_without_rate_limits(simulator: FederationSimulator) -> None:
    report = await simulator.run_security_validation()
    by_test = {r.test: r for r in report.security}

    failed = [r.test for r in report.security if not r.passed]
    assert failed == ["Rate limiting on /oauth/token"]
    assert report.has_blocking_failures()

    assert len(report.security) == 27
    assert by_test["PKCE support"].passed
    assert by_test["State parameter handling"].details == {"status": 302, "stateEchoed": True}
    assert by_test["XXE (XML External Entity) protection"].passed
    assert by_test["XML signature wrapping protection"].passed
    assert by_test["Password hashing algorithm"].details == {"algorithm": "argon2id", "verified": True}


@pytest.mark.asyncio
async def test_run_against_rate_limited_simulator(limited_simulator: FederationSimulator) -> None:
    report = await limited_simulator.run_security_validation()
    assert all(r.passed for r in report.security)
    assert not report.has_blocking_failures()

    rate = next(r for r in report.security if r.category == "Rate Limiting")
    assert rate.details is not None
    assert rate.details["requestsSent"] == 20
    assert rate.details["rateLimitedResponses"] == 10


@pytest.mark.asyncio
async def test_validator_accumulates_results(simulator: FederationSimulator) -> None:
    validator = SecurityValidator(simulator.client(), simulator.harness_config())
    first = await validator.test_saml_security()
    second = await validator.run_all()
    assert len(first) == 2
    assert len(validator.results) == len(second)
    assert validator.report().security == tuple(second)
