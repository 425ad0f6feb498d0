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
Tests for the in-process federation simulator.
"""

import pytest
from pydantic import ValidationError

from coreason_federation.crypto import AEAD_ALGORITHM, PASSWORD_KDF
from coreason_federation.models import Client, GrantType, SamlEnvironment, SamlRole
from coreason_federation.signing import RSA_SHA256, XmlDsigSigner
from coreason_federation.simulator import DEFAULT_BASE_URL, SEED_REDIRECT_URI, FederationSimulator
from coreason_federation.store import CLIENTS, SAML_ENVIRONMENTS


def test_default_config_targets_base_url() -> None:
    simulator = FederationSimulator(base_url="http://sim.local/")
    assert simulator.base_url == "http://sim.local"
    assert simulator.config.issuer == "http://sim.local"
    assert simulator.config.encryption_key is not None
    assert simulator.seed_data is None


@pytest.mark.asyncio
async def test_seed_registers_records() -> None:
    simulator = FederationSimulator()
    seed = await simulator.seed()

    confidential = await simulator.raw_store.get(CLIENTS, seed.client_id)
    assert isinstance(confidential, Client)
    assert not confidential.is_public
    assert confidential.redirect_uris == (SEED_REDIRECT_URI,)
    assert GrantType.CLIENT_CREDENTIALS in confidential.grant_types
    assert simulator.hasher.verify(seed.client_secret.get_secret_value(), confidential.client_secret_hash)

    public = await simulator.raw_store.get(CLIENTS, seed.public_client_id)
    assert public.is_public
    assert public.client_secret_hash is None

    idp = await simulator.raw_store.get(SAML_ENVIRONMENTS, seed.idp_environment_id)
    sp = await simulator.raw_store.get(SAML_ENVIRONMENTS, seed.sp_environment_id)
    assert idp.role is SamlRole.IDP
    assert idp.sso_url == f"{DEFAULT_BASE_URL}/saml/{idp.id}/sso"
    assert sp.role is SamlRole.SP


@pytest.mark.asyncio
async def test_seeded_seeds_once_on_enter() -> None:
    async with FederationSimulator.seeded() as simulator:
        first = simulator.seed_data
        assert first is not None
        await simulator.__aenter__()
        assert simulator.seed_data is first


@pytest.mark.asyncio
async def test_register_client_keeps_given_credentials() -> None:
    simulator = FederationSimulator()
    client, secret = await simulator.register_client(
        ["https://a.example/cb"], client_id="fixed", client_secret="sk_fixed", auto_approve=True
    )
    assert client.client_id == "fixed"
    assert secret == "sk_fixed"
    assert client.auto_approve
    public, none = await simulator.register_client(["https://a.example/cb"], is_public=True)
    assert none is None
    assert public.client_id.startswith("oauth2_")


def test_environment_overrides() -> None:
    simulator = FederationSimulator()
    env = simulator.idp_environment("idp-x", slo_url=None, encrypt_assertions=True)
    assert isinstance(env, SamlEnvironment)
    assert env.id == "idp-x"
    assert env.entity_id.endswith("/saml/idp-x/metadata")
    assert env.slo_url is None
    assert env.encrypt_assertions
    with pytest.raises(ValidationError):
        simulator.idp_environment(sso_url=None)


@pytest.mark.asyncio
async def test_harness_config_uses_seed() -> None:
    simulator = FederationSimulator()
    unseeded = simulator.harness_config()
    assert unseeded.base_url == DEFAULT_BASE_URL
    assert unseeded.client_id is None

    seed = await simulator.seed()
    config = simulator.harness_config(http_timeout=2.0, max_concurrency=3)
    assert config.client_id == seed.client_id
    assert config.public_client_id == seed.public_client_id
    assert config.environment_id == seed.idp_environment_id
    assert config.http_timeout == 2.0
    assert config.max_concurrency == 3


def test_crypto_posture(rsa_key_pair: tuple[bytes, bytes]) -> None:
    posture = FederationSimulator().crypto_posture()
    assert posture.password_kdf == PASSWORD_KDF
    assert posture.symmetric_cipher == AEAD_ALGORITHM
    assert posture.token_signing_algorithm == "HS256"
    assert posture.saml_signature_algorithm is None

    signed = FederationSimulator(signer=XmlDsigSigner(*rsa_key_pair)).crypto_posture()
    assert signed.saml_signature_algorithm == RSA_SHA256


@pytest.mark.asyncio
async def test_clients_are_closed_on_exit() -> None:
    async with FederationSimulator() as simulator:
        client = simulator.client()
        response = await client.get("/saml/missing/metadata")
        assert response.status_code == 404
    assert client.is_closed


@pytest.mark.asyncio
async def test_security_validation_passes_with_default_limiters(limited_simulator: FederationSimulator) -> None:
    report = await limited_simulator.run_security_validation()
    assert not report.has_blocking_failures()
    assert report.failed == 0
