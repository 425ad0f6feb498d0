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
OAuth 2.0 grant engine: authorization code (with optional PKCE), client credentials and
refresh token grants over the token codec and the credential store.
"""

import hashlib
import secrets
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace

from coreason_federation.config import FederationConfig
from coreason_federation.crypto import SecretHasher
from coreason_federation.exceptions import (
    ExpiredTokenError,
    InvalidClientError,
    InvalidGrantError,
    InvalidRequestError,
    InvalidTokenError,
    StoreTimeoutError,
    TemporarilyUnavailableError,
    TokenCodecError,
)
from coreason_federation.models import (
    AccessTokenRecord,
    AuthorizationGrant,
    Client,
    ConsumedCodeRecord,
    GrantType,
    RefreshTokenRecord,
    TokenResponse,
)
from coreason_federation.pkce import S256, SUPPORTED_CHALLENGE_METHODS, verify_code_verifier
from coreason_federation.store import (
    ACCESS_TOKENS,
    CLIENTS,
    CONSUMED_CODES,
    REFRESH_TOKENS,
    CredentialStore,
)
from coreason_federation.token_codec import TokenCodec
from coreason_federation.utils.logger import anonymize, logger

tracer = trace.get_tracer(__name__)

CODE_TOKEN_TYPE = "authorization_code"
ACCESS_TOKEN_TYPE = "access_token"


def token_fingerprint(token: str) -> str:
    """Storage key for an access token; the raw token is never used as a key."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def split_scope(scope: str | None) -> tuple[str, ...]:
    if not scope:
        return ()
    return tuple(dict.fromkeys(s for s in scope.split(" ") if s))


@contextmanager
def _store_guard() -> Iterator[None]:
    try:
        yield
    except StoreTimeoutError as e:
        raise TemporarilyUnavailableError("The credential store is temporarily unavailable") from e


class OAuthGrantEngine:
    """
    Request/response state machine for the supported grant types.

    Every operation either returns a value or raises an `OAuthError` subclass carrying the OAuth
    error code. Secrets, codes and tokens are never logged.

    Attributes:
        store (CredentialStore): Source of clients; sink for token and consumed-code records.
        codec (TokenCodec): Signs authorization codes and access tokens.
        hasher (SecretHasher): Verifies client secrets.
        config (FederationConfig): Engine settings.
    """

    def __init__(
        self,
        store: CredentialStore,
        codec: TokenCodec,
        hasher: SecretHasher,
        config: FederationConfig,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.codec = codec
        self.hasher = hasher
        self.config = config
        self._clock = clock

    def _anonymize(self, value: str) -> str:
        return anonymize(value, self.config.pii_salt.get_secret_value())

    async def _get_client(self, client_id: str) -> Client:
        with _store_guard():
            client = await self.store.get(CLIENTS, client_id)
        if client is None:
            raise InvalidClientError("Unknown client")
        return client  # type: ignore[no-any-return]

    def _authenticate(self, client: Client, client_secret: str | None) -> None:
        """
        Public clients cannot hold a secret and are authenticated by PKCE instead.
        """
        if client.is_public:
            return
        if not self.hasher.verify(client_secret, client.client_secret_hash):
            logger.warning(f"Client authentication failed for client {self._anonymize(client.client_id)}")
            raise InvalidClientError("Client authentication failed")

    async def authenticate_client(
        self, client_id: str, client_secret: str | None, allow_public: bool = False
    ) -> Client:
        """
        Authenticates a confidential client, e.g. for introspection.

        Args:
            allow_public: Accept public clients on their client id alone, as revocation does.

        Raises:
            InvalidClientError: If the client is unknown, public (unless allowed), or the secret
                does not verify.
        """
        client = await self._get_client(client_id)
        if client.is_public and not allow_public:
            raise InvalidClientError("Client authentication required")
        self._authenticate(client, client_secret)
        return client

    def _check_scope(self, client: Client, scopes: tuple[str, ...]) -> None:
        if client.scopes and not set(scopes) <= client.scopes:
            raise InvalidRequestError("Requested scope exceeds the scopes allowed for this client")

    async def issue_code(
        self,
        client_id: str,
        redirect_uri: str,
        scope: str | None = None,
        state: str | None = None,
        code_challenge: str | None = None,
        code_challenge_method: str | None = None,
    ) -> AuthorizationGrant:
        """
        Issues a signed authorization code bound to the client, redirect URI, scope and PKCE challenge.

        `state` is echoed unmodified and never inspected.

        Raises:
            InvalidClientError: If the client is unknown.
            InvalidRequestError: If the redirect URI is not registered (exact match), the client does
                not enable the authorization code grant, the scope is not allowed, or the PKCE method
                is unsupported.
        """
        with tracer.start_as_current_span("oauth.issue_code") as span:
            client = await self._get_client(client_id)
            span.set_attribute("oauth.client", self._anonymize(client.client_id))

            if not client.allows_redirect(redirect_uri):
                logger.warning(f"Rejected unregistered redirect_uri for client {self._anonymize(client_id)}")
                raise InvalidRequestError("Invalid redirect_uri")

            if GrantType.AUTHORIZATION_CODE not in client.grant_types:
                raise InvalidRequestError("The authorization_code grant is not enabled for this client")

            scopes = split_scope(scope)
            self._check_scope(client, scopes)

            if code_challenge is not None:
                code_challenge_method = code_challenge_method or S256
                if code_challenge_method not in SUPPORTED_CHALLENGE_METHODS:
                    raise InvalidRequestError("Unsupported code_challenge_method")
            elif code_challenge_method is not None:
                raise InvalidRequestError("code_challenge_method supplied without code_challenge")
            elif client.is_public:
                raise InvalidRequestError("Public clients must use PKCE")

            payload: dict[str, Any] = {
                "typ": CODE_TOKEN_TYPE,
                "jti": secrets.token_urlsafe(24),
                "client_id": client.client_id,
                "redirect_uri": redirect_uri,
                "scope": " ".join(scopes),
            }
            if code_challenge is not None:
                payload["code_challenge"] = code_challenge
                payload["code_challenge_method"] = code_challenge_method
            span.set_attribute("oauth.pkce", code_challenge is not None)

            code = self.codec.encode(payload, self.config.authorization_code_ttl)
            logger.info(f"Authorization code issued for client {self._anonymize(client.client_id)}")
            return AuthorizationGrant(code=code, redirect_uri=redirect_uri, state=state)

    async def exchange_code(
        self,
        code: str,
        client_id: str,
        client_secret: str | None,
        redirect_uri: str,
        code_verifier: str | None = None,
    ) -> TokenResponse:
        """
        Exchanges an authorization code for tokens.

        Raises:
            InvalidGrantError: If the code is expired, forged, already used, issued to another client,
                bound to a different redirect URI, or fails PKCE verification.
            InvalidClientError: If the client is unknown or the secret does not verify.
        """
        with tracer.start_as_current_span("oauth.exchange_code"):
            try:
                claims = self.codec.decode(code)
            except ExpiredTokenError as e:
                raise InvalidGrantError("Authorization code has expired") from e
            except TokenCodecError as e:
                raise InvalidGrantError("Invalid authorization code") from e

            if claims.get("typ") != CODE_TOKEN_TYPE:
                raise InvalidGrantError("Invalid authorization code")

            client = await self._get_client(client_id)
            self._authenticate(client, client_secret)

            if claims.get("client_id") != client.client_id:
                raise InvalidGrantError("Authorization code was issued to another client")

            if claims.get("redirect_uri") != redirect_uri:
                raise InvalidGrantError("redirect_uri does not match the authorization request")

            # PKCE is checked before the code is consumed, so a wrong verifier does not burn the code.
            challenge = claims.get("code_challenge")
            if challenge:
                if not code_verifier:
                    raise InvalidGrantError("code_verifier required for PKCE")
                if not verify_code_verifier(code_verifier, challenge):
                    raise InvalidGrantError("Invalid code_verifier")
            elif client.is_public:
                raise InvalidGrantError("Public clients must use PKCE")

            # Consumption is the last check; a code that fails any earlier check stays redeemable.
            if self.config.enforce_single_use_codes:
                await self._consume_code(claims, client)

            return await self._issue_tokens(client, split_scope(claims.get("scope")))

    async def _consume_code(self, claims: dict[str, Any], client: Client) -> None:
        jti = claims.get("jti")
        if not isinstance(jti, str) or not jti:
            raise InvalidGrantError("Invalid authorization code")
        record = ConsumedCodeRecord(
            jti=jti,
            client_id=client.client_id,
            consumed_at=self._clock(),
            expires_at=float(claims["exp"]),
        )
        # create() is atomic, so exactly one of several concurrent redemptions sees a fresh jti.
        with _store_guard():
            fresh = await self.store.create(CONSUMED_CODES, jti, record)
        if not fresh:
            logger.warning(f"Authorization code replay detected for client {self._anonymize(client.client_id)}")
            raise InvalidGrantError("Authorization code has already been used")

    async def client_credentials(
        self,
        client_id: str,
        client_secret: str | None,
        scope: str | None = None,
    ) -> TokenResponse:
        """
        Issues an access token to the client itself. Never issues a refresh token.

        Raises:
            InvalidClientError: If the client is unknown, public, or the secret does not verify.
            InvalidRequestError: If the client does not enable this grant or asks for disallowed scopes.
        """
        with tracer.start_as_current_span("oauth.client_credentials"):
            client = await self._get_client(client_id)
            if GrantType.CLIENT_CREDENTIALS not in client.grant_types:
                raise InvalidRequestError("The client_credentials grant is not enabled for this client")
            if client.is_public:
                raise InvalidClientError("Public clients cannot use the client_credentials grant")
            self._authenticate(client, client_secret)

            scopes = split_scope(scope)
            self._check_scope(client, scopes)
            return await self._issue_tokens(client, scopes, include_refresh_token=False)

    async def refresh_token(
        self,
        refresh_token: str,
        client_id: str,
        client_secret: str | None,
    ) -> TokenResponse:
        """
        Issues a new access token for the scope originally granted to `refresh_token`.

        The presented refresh token is rotated: it is deleted and a new one is returned.

        Raises:
            InvalidClientError: If the client is unknown or the secret does not verify.
            InvalidGrantError: If the client no longer enables the refresh_token grant, or the refresh
                token is unknown, owned by another client, expired, or already rotated.
        """
        with tracer.start_as_current_span("oauth.refresh_token"):
            client = await self._get_client(client_id)
            self._authenticate(client, client_secret)

            # The grant may have been disabled after the token was issued.
            if GrantType.REFRESH_TOKEN not in client.grant_types:
                raise InvalidGrantError("The refresh_token grant is not enabled for this client")

            with _store_guard():
                record = await self.store.get(REFRESH_TOKENS, refresh_token)
            if record is None or record.client_id != client.client_id:
                raise InvalidGrantError("Invalid refresh_token")
            if record.expires_at <= self._clock():
                raise InvalidGrantError("Refresh token expired")

            # The delete is the atomic step: of several concurrent refreshes that all passed the
            # lookup above, only the one that actually removed the record may issue tokens.
            with _store_guard():
                removed = await self.store.delete_where(REFRESH_TOKENS, lambda key, _: key == refresh_token)
            if removed != 1:
                logger.warning(f"Refresh token reuse detected for client {self._anonymize(client.client_id)}")
                raise InvalidGrantError("Refresh token has already been used")
            return await self._issue_tokens(client, record.scope)

    async def _issue_tokens(
        self,
        client: Client,
        scopes: tuple[str, ...],
        include_refresh_token: bool = True,
    ) -> TokenResponse:
        now = self._clock()
        access_token = self.codec.encode(
            {
                "typ": ACCESS_TOKEN_TYPE,
                "iss": self.config.issuer,
                "sub": client.client_id,
                "client_id": client.client_id,
                "scope": " ".join(scopes),
                "jti": secrets.token_urlsafe(16),
            },
            client.access_token_lifetime,
        )
        fingerprint = token_fingerprint(access_token)

        refresh_token: str | None = None
        if include_refresh_token and GrantType.REFRESH_TOKEN in client.grant_types:
            refresh_token = secrets.token_hex(self.config.refresh_token_entropy_bytes)

        with _store_guard():
            await self.store.put(
                ACCESS_TOKENS,
                fingerprint,
                AccessTokenRecord(
                    fingerprint=fingerprint,
                    client_id=client.client_id,
                    scope=scopes,
                    issued_at=now,
                    expires_at=now + client.access_token_lifetime,
                    refresh_token=refresh_token,
                ),
            )
            if refresh_token is not None:
                await self.store.put(
                    REFRESH_TOKENS,
                    refresh_token,
                    RefreshTokenRecord(
                        token=refresh_token,
                        client_id=client.client_id,
                        scope=scopes,
                        issued_at=now,
                        expires_at=now + client.refresh_token_lifetime,
                        access_token_fingerprint=fingerprint,
                    ),
                )

        logger.info(
            f"Issued access token for client {self._anonymize(client.client_id)} "
            f"(refresh={'yes' if refresh_token else 'no'})"
        )
        return TokenResponse(
            access_token=access_token,
            expires_in=client.access_token_lifetime,
            scope=" ".join(scopes) or None,
            refresh_token=refresh_token,
        )

    async def verify_access_token(self, token: str) -> dict[str, Any]:
        """
        Verifies signature, expiry and the server-side record of an access token.

        Returns:
            dict[str, Any]: The token claims.

        Raises:
            InvalidTokenError: If the token is unsigned, forged, expired, not an access token, or revoked.
        """
        try:
            claims = self.codec.decode(token)
        except ExpiredTokenError as e:
            raise InvalidTokenError("The access token expired") from e
        except TokenCodecError as e:
            raise InvalidTokenError("The access token is invalid") from e

        if claims.get("typ") != ACCESS_TOKEN_TYPE:
            raise InvalidTokenError("The access token is invalid")

        with _store_guard():
            record = await self.store.get(ACCESS_TOKENS, token_fingerprint(token))
        if record is None:
            raise InvalidTokenError("The access token has been revoked")
        if record.expires_at <= self._clock():
            raise InvalidTokenError("The access token expired")
        return claims

    async def introspect(self, token: str) -> dict[str, Any]:
        """
        RFC 7662 introspection. Any invalid token yields `{"active": False}`.
        """
        try:
            claims = await self.verify_access_token(token)
        except InvalidTokenError:
            return {"active": False}
        return {
            "active": True,
            "client_id": claims.get("client_id"),
            "sub": claims.get("sub"),
            "scope": claims.get("scope") or None,
            "token_type": "Bearer",
            "iat": claims.get("iat"),
            "exp": claims.get("exp"),
            "iss": claims.get("iss"),
        }

    async def userinfo(self, token: str) -> dict[str, Any]:
        """
        Simulated userinfo claims for a valid access token.
        """
        claims = await self.verify_access_token(token)
        return {
            "sub": claims.get("sub"),
            "email": "test@mockauth.dev",
            "name": "Test User",
            "email_verified": True,
        }

    async def revoke(self, token: str, client_id: str | None = None) -> int:
        """
        Deletes every access and refresh token record matching `token`, as access or refresh value.

        Args:
            token: An access or refresh token.
            client_id: When given, only records issued to this client are removed (RFC 7009 section 2.1).

        Returns:
            int: The number of records removed.
        """
        fingerprint = token_fingerprint(token)

        def owned(record: Any) -> bool:
            return client_id is None or record.client_id == client_id

        with _store_guard():
            removed = await self.store.delete_where(
                ACCESS_TOKENS,
                lambda key, record: (key == fingerprint or record.refresh_token == token) and owned(record),
            )
            removed += await self.store.delete_where(
                REFRESH_TOKENS,
                lambda key, record: (key == token or record.access_token_fingerprint == fingerprint) and owned(record),
            )
        logger.info(f"Revocation removed {removed} token record(s)")
        return removed
