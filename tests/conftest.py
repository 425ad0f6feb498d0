# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_federation

from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
import pytest_asyncio
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID
from pydantic import SecretStr

from coreason_federation.config import FederationConfig
from coreason_federation.crypto import SecretHasher
from coreason_federation.models import Client, GrantType, SamlEnvironment, SamlRole
from coreason_federation.oauth_engine import OAuthGrantEngine
from coreason_federation.simulator import FederationSimulator
from coreason_federation.store import CLIENTS, InMemoryCredentialStore, TimeoutBoundStore
from coreason_federation.token_codec import TokenCodec

TOKEN_SECRET = "0123456789abcdef0123456789abcdef-test-secret"
CLIENT_SECRET = "sk_test_secret"
REDIRECT_URI = "https://app.example.com/callback"


class FakeClock:
    """Manually advanced epoch-seconds clock."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def federation_config() -> FederationConfig:
    return FederationConfig(
        token_secret=SecretStr(TOKEN_SECRET),
        issuer="https://federation.test",
        pii_salt=SecretStr("test-salt"),
    )


@pytest.fixture
def hasher() -> SecretHasher:
    return SecretHasher()


@pytest.fixture
def memory_store() -> InMemoryCredentialStore:
    return InMemoryCredentialStore()


@pytest.fixture
def store(memory_store: InMemoryCredentialStore) -> TimeoutBoundStore:
    return TimeoutBoundStore(memory_store, timeout=1.0)


@pytest.fixture
def codec(federation_config: FederationConfig, clock: FakeClock) -> TokenCodec:
    return TokenCodec(federation_config.token_secret, clock=clock)


@pytest.fixture
def engine(
    store: TimeoutBoundStore,
    codec: TokenCodec,
    hasher: SecretHasher,
    federation_config: FederationConfig,
    clock: FakeClock,
) -> OAuthGrantEngine:
    return OAuthGrantEngine(store, codec, hasher, federation_config, clock=clock)


def make_client(hasher: SecretHasher, **overrides: Any) -> Client:
    values: dict[str, Any] = {
        "id": "rec-1",
        "client_id": "c1",
        "client_secret_hash": hasher.hash(CLIENT_SECRET),
        "redirect_uris": (REDIRECT_URI,),
        "grant_types": frozenset({GrantType.AUTHORIZATION_CODE, GrantType.REFRESH_TOKEN}),
    }
    values.update(overrides)
    if values.get("is_public"):
        values["client_secret_hash"] = None
    return Client(**values)


@pytest_asyncio.fixture
async def confidential_client(store: TimeoutBoundStore, hasher: SecretHasher) -> Client:
    client = make_client(
        hasher,
        grant_types=frozenset(
            {GrantType.AUTHORIZATION_CODE, GrantType.REFRESH_TOKEN, GrantType.CLIENT_CREDENTIALS}
        ),
    )
    await store.put(CLIENTS, client.client_id, client)
    return client


@pytest_asyncio.fixture
async def public_client(store: TimeoutBoundStore, hasher: SecretHasher) -> Client:
    client = make_client(hasher, id="rec-2", client_id="spa", is_public=True)
    await store.put(CLIENTS, client.client_id, client)
    return client


@pytest.fixture
def idp_environment() -> SamlEnvironment:
    return SamlEnvironment(
        id="idp-1",
        entity_id="https://idp.example.com/metadata",
        role=SamlRole.IDP,
        sso_url="https://idp.example.com/sso",
        slo_url="https://idp.example.com/slo",
        acs_url="https://sp.example.com/acs",
        attribute_mapping={"http://schemas.xmlsoap.org/ws/2005/05/identity/claims/emailaddress": "email"},
    )


@pytest.fixture
def sp_environment() -> SamlEnvironment:
    return SamlEnvironment(
        id="sp-1",
        entity_id="https://sp.example.com/metadata",
        role=SamlRole.SP,
        acs_url="https://sp.example.com/acs",
    )


@pytest.fixture(scope="session")
def rsa_key_pair() -> tuple[bytes, bytes]:
    """A PEM private key and a matching self-signed certificate."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "federation.test")])
    now = datetime.now(UTC)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=30))
        .sign(key, hashes.SHA256())
    )
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )
    return key_pem, cert.public_bytes(serialization.Encoding.PEM)


@pytest_asyncio.fixture
async def simulator() -> AsyncGenerator[FederationSimulator, None]:
    """A seeded simulator without rate limiting."""
    async with FederationSimulator.seeded(rate_limiters={}) as sim:
        yield sim


@pytest_asyncio.fixture
async def limited_simulator() -> AsyncGenerator[FederationSimulator, None]:
    """A seeded simulator with the default rate limiters."""
    async with FederationSimulator.seeded() as sim:
        yield sim
