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
A complete federation deployment in one process.

`FederationSimulator` wires the store, codec, engines, endpoints and the rate-limited transport
together, and hands out `httpx.AsyncClient`s bound to it. The flow validators and the security
harness run against it exactly as they would against a remote base URL.
"""

import secrets
from collections.abc import Iterable, Mapping
from typing import Any

import httpx
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from pydantic import BaseModel, ConfigDict, SecretStr

from coreason_federation.config import FederationConfig, HarnessConfig
from coreason_federation.crypto import (
    AEAD_ALGORITHM,
    CryptoPosture,
    SecretBox,
    SecretHasher,
    generate_client_id,
    generate_client_secret,
    generate_secret,
)
from coreason_federation.endpoints import FederationEndpoints
from coreason_federation.exceptions import CoreasonFederationError
from coreason_federation.models import (
    Client,
    GrantType,
    SamlEnvironment,
    SamlRole,
    TestPrincipal,
)
from coreason_federation.oauth_engine import OAuthGrantEngine
from coreason_federation.rate_limiter import InMemoryFixedWindowRateLimiter, RateLimiter
from coreason_federation.report import ValidationReport
from coreason_federation.saml_builder import SamlAssertionBuilder
from coreason_federation.security_harness import SecurityValidator
from coreason_federation.signing import Signer, StructuralSigner, Verifier
from coreason_federation.store import (
    CLIENTS,
    SAML_ENVIRONMENTS,
    CredentialStore,
    InMemoryCredentialStore,
    TimeoutBoundStore,
)
from coreason_federation.token_codec import TokenCodec
from coreason_federation.transport import FederationTransport
from coreason_federation.utils.logger import logger

DEFAULT_BASE_URL = "http://federation.local"
SEED_REDIRECT_URI = "https://app.example.com/callback"
SEED_IDP_ID = "idp-test"
SEED_SP_ID = "sp-test"

EMAIL_CLAIM_URI = "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/emailaddress"
GIVEN_NAME_CLAIM_URI = "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/givenname"
SURNAME_CLAIM_URI = "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/surname"


class SeedData(BaseModel):
    """Identifiers of the records created by `FederationSimulator.seed`."""

    model_config = ConfigDict(frozen=True)

    client_id: str
    client_secret: SecretStr
    public_client_id: str
    redirect_uri: str
    idp_environment_id: str
    sp_environment_id: str


def default_rate_limiters() -> dict[str, RateLimiter]:
    return {"/oauth/token": InMemoryFixedWindowRateLimiter.from_preset("auth")}


class FederationSimulator:
    """
    In-process OAuth 2.0 / SAML 2.0 deployment.

    Args:
        config (FederationConfig | None): Engine settings. Defaults to a fresh random token secret,
            an encryption key and a plain-http issuer at `base_url`.
        base_url (str): Base URL of the clients handed out by `client()`.
        store (CredentialStore | None): Backing store, wrapped with the configured timeout.
        signer (Signer | None): XML signer for SAML documents. Defaults to `StructuralSigner`.
        verifier (Verifier | None): Checks signatures of SAML responses posted to SSO endpoints.
        signing_cert (bytes | str | None): Certificate published in metadata.
        rate_limiters (Mapping[str, RateLimiter] | None): Limiter per path. Defaults to the "auth"
            preset on `/oauth/token`; pass an empty mapping to disable rate limiting.
    """

    def __init__(
        self,
        config: FederationConfig | None = None,
        *,
        base_url: str = DEFAULT_BASE_URL,
        store: CredentialStore | None = None,
        signer: Signer | None = None,
        verifier: Verifier | None = None,
        signing_cert: bytes | str | None = None,
        rate_limiters: Mapping[str, RateLimiter] | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.config = config or FederationConfig(
            token_secret=SecretStr(generate_secret()),
            issuer=self.base_url,
            unsafe_local_dev=True,
            encryption_key=SecretStr(generate_secret()),
        )
        self.raw_store = store or InMemoryCredentialStore()
        self.store = TimeoutBoundStore(self.raw_store, self.config.store_timeout)
        self.codec = TokenCodec(self.config.token_secret, self.config.token_algorithm)
        self.hasher = SecretHasher()
        self.secret_box = (
            SecretBox.from_secret(self.config.encryption_key) if self.config.encryption_key else SecretBox.generate()
        )
        self.engine = OAuthGrantEngine(self.store, self.codec, self.hasher, self.config)
        self.builder = SamlAssertionBuilder(
            signer=signer, secret_box=self.secret_box, clock_skew=self.config.clock_skew_tolerance
        )
        self.endpoints = FederationEndpoints(
            self.engine,
            self.builder,
            self.store,
            verifier=verifier,
            secret_box=self.secret_box,
            signing_cert=signing_cert,
        )
        self.transport = FederationTransport(
            self.endpoints, default_rate_limiters() if rate_limiters is None else rate_limiters
        )
        self.seed_data: SeedData | None = None
        self._seed_on_enter = False
        self._clients: list[httpx.AsyncClient] = []

    @classmethod
    def seeded(cls, **kwargs: Any) -> "FederationSimulator":
        """A simulator that registers the default clients and environments when entered."""
        simulator = cls(**kwargs)
        simulator._seed_on_enter = True
        return simulator

    async def __aenter__(self) -> "FederationSimulator":
        if self._seed_on_enter and self.seed_data is None:
            await self.seed()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        while self._clients:
            await self._clients.pop().aclose()

    def client(self, **kwargs: Any) -> httpx.AsyncClient:
        """
        An `httpx.AsyncClient` bound to the in-process transport. Closed by `aclose()`.
        """
        client = httpx.AsyncClient(transport=self.transport, base_url=self.base_url, **kwargs)
        HTTPXClientInstrumentor().instrument_client(client)
        self._clients.append(client)
        return client

    async def register_client(
        self,
        redirect_uris: Iterable[str],
        grant_types: Iterable[GrantType] = (GrantType.AUTHORIZATION_CODE,),
        *,
        is_public: bool = False,
        client_id: str | None = None,
        client_secret: str | None = None,
        **fields: Any,
    ) -> tuple[Client, str | None]:
        """
        Registers an OAuth client. Confidential clients get a generated secret unless one is given.

        Returns:
            tuple[Client, str | None]: The stored record and the plaintext secret (None for public clients).
        """
        secret = None if is_public else (client_secret or generate_client_secret())
        client = Client(
            id=secrets.token_hex(8),
            client_id=client_id or generate_client_id(),
            client_secret_hash=self.hasher.hash(secret) if secret else None,
            redirect_uris=tuple(redirect_uris),
            grant_types=frozenset(grant_types),
            is_public=is_public,
            **fields,
        )
        await self.store.put(CLIENTS, client.client_id, client)
        logger.debug(f"Registered {'public' if is_public else 'confidential'} client")
        return client, secret

    async def register_environment(self, environment: SamlEnvironment) -> SamlEnvironment:
        await self.store.put(SAML_ENVIRONMENTS, environment.id, environment)
        return environment

    def idp_environment(self, environment_id: str = SEED_IDP_ID, **fields: Any) -> SamlEnvironment:
        """An IdP environment whose SSO and SLO endpoints live on this simulator."""
        values: dict[str, Any] = {
            "id": environment_id,
            "name": "Test IdP",
            "entity_id": f"{self.base_url}/saml/{environment_id}/metadata",
            "role": SamlRole.IDP,
            "sso_url": f"{self.base_url}/saml/{environment_id}/sso",
            "slo_url": f"{self.base_url}/saml/{environment_id}/slo",
            "acs_url": "https://sp.example.com/acs",
            "attribute_mapping": {
                EMAIL_CLAIM_URI: "email",
                GIVEN_NAME_CLAIM_URI: "firstName",
                SURNAME_CLAIM_URI: "lastName",
            },
            "test_principals": (TestPrincipal(email="test@mockauth.dev", custom_attributes={"department": "QA"}),),
        }
        values.update(fields)
        return SamlEnvironment(**values)

    def sp_environment(self, environment_id: str = SEED_SP_ID, **fields: Any) -> SamlEnvironment:
        values: dict[str, Any] = {
            "id": environment_id,
            "name": "Test SP",
            "entity_id": f"{self.base_url}/saml/{environment_id}/metadata",
            "role": SamlRole.SP,
            "acs_url": f"{self.base_url}/saml/{environment_id}/sso",
            "attribute_mapping": {EMAIL_CLAIM_URI: "email"},
        }
        values.update(fields)
        return SamlEnvironment(**values)

    async def seed(self) -> SeedData:
        """
        Registers a confidential client with every grant, a public PKCE client sharing its redirect
        URI, an IdP environment and an SP environment.
        """
        confidential, secret = await self.register_client(
            [SEED_REDIRECT_URI],
            [GrantType.AUTHORIZATION_CODE, GrantType.CLIENT_CREDENTIALS, GrantType.REFRESH_TOKEN],
        )
        public, _ = await self.register_client([SEED_REDIRECT_URI], is_public=True)
        idp = await self.register_environment(self.idp_environment())
        sp = await self.register_environment(self.sp_environment())
        if secret is None:
            raise CoreasonFederationError("Confidential seed client was registered without a secret")
        self.seed_data = SeedData(
            client_id=confidential.client_id,
            client_secret=SecretStr(secret),
            public_client_id=public.client_id,
            redirect_uri=SEED_REDIRECT_URI,
            idp_environment_id=idp.id,
            sp_environment_id=sp.id,
        )
        logger.info("Seeded federation simulator")
        return self.seed_data

    def harness_config(self, http_timeout: float = 5.0, **overrides: Any) -> HarnessConfig:
        """Harness settings targeting this simulator and, when seeded, its seed records."""
        values: dict[str, Any] = {"base_url": self.base_url, "http_timeout": http_timeout}
        if self.seed_data is not None:
            values.update(
                client_id=self.seed_data.client_id,
                client_secret=self.seed_data.client_secret,
                redirect_uri=self.seed_data.redirect_uri,
                public_client_id=self.seed_data.public_client_id,
                environment_id=self.seed_data.idp_environment_id,
                sp_environment_id=self.seed_data.sp_environment_id,
            )
        values.update(overrides)
        return HarnessConfig(**values)

    def crypto_posture(self) -> CryptoPosture:
        signer = self.builder.signer
        return CryptoPosture(
            password_kdf=self.hasher.algorithm,
            symmetric_cipher=AEAD_ALGORITHM,
            token_signing_algorithm=self.codec.algorithm,
            saml_signature_algorithm=None if isinstance(signer, StructuralSigner) else signer.algorithm,
        )

    async def run_security_validation(self, config: HarnessConfig | None = None) -> ValidationReport:
        validator = SecurityValidator(self.client(), config or self.harness_config(), self.crypto_posture())
        await validator.run_all()
        return validator.report()
