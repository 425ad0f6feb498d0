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
Transport-agnostic endpoint handlers.

Each handler takes already-decoded parameters and returns an `EndpointResponse`. Engine exceptions
are converted here into typed responses, so the transport maps them onto HTTP without further logic.
Error bodies carry only the taxonomy's `error`/`error_description`, never request input.
"""

import base64
import binascii
import html
import time
from collections.abc import Callable, Mapping
from typing import Any
from urllib.parse import unquote

from pydantic import BaseModel, ConfigDict, Field

from coreason_federation.crypto import SecretBox
from coreason_federation.exceptions import (
    InvalidClientError,
    InvalidRequestError,
    InvalidTokenError,
    OAuthError,
    SamlParseError,
    StoreTimeoutError,
    TemporarilyUnavailableError,
    UnsupportedGrantTypeError,
    UnsupportedResponseTypeError,
)
from coreason_federation.models import GrantType, SamlEnvironment, SamlRole, SamlSessionRecord, TestPrincipal
from coreason_federation.oauth_engine import OAuthGrantEngine
from coreason_federation.saml_builder import SamlAssertionBuilder
from coreason_federation.saml_parser import parse, validate_timing
from coreason_federation.signing import Verifier
from coreason_federation.store import SAML_ENVIRONMENTS, SAML_SESSIONS, CredentialStore
from coreason_federation.utils.logger import logger

DEFAULT_ACS_URL = "https://sp.example.com/acs"
SAML_SESSION_LIFETIME = 8 * 60 * 60
NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}
STORE_UNAVAILABLE = TemporarilyUnavailableError("The credential store is temporarily unavailable")


class EndpointResponse(BaseModel):
    """Status, body and headers of a handled request."""

    model_config = ConfigDict(frozen=True)

    status_code: int
    body: dict[str, Any] | str = Field(default_factory=dict)
    headers: dict[str, str] = Field(default_factory=dict)
    media_type: str = "application/json"

    @classmethod
    def from_error(cls, error: OAuthError, headers: dict[str, str] | None = None) -> "EndpointResponse":
        return cls(status_code=error.status_code, body=error.to_body(), headers=headers or {})


def _error(status_code: int, error: str, description: str) -> EndpointResponse:
    return EndpointResponse(status_code=status_code, body={"error": error, "error_description": description})


def map_principal_attributes(environment: SamlEnvironment, principal: TestPrincipal) -> dict[str, str]:
    """
    Outbound attributes for `principal`: each mapped claim under its external name, then the
    principal's custom attributes.
    """
    claims = principal.claims()
    attributes = {
        external: claims[internal] for external, internal in environment.attribute_mapping.items() if internal in claims
    }
    attributes.update(principal.custom_attributes)
    return attributes


def map_inbound_claims(environment: SamlEnvironment, attributes: Mapping[str, str]) -> dict[str, str]:
    """Internal claims from parsed attributes. Parsed names are local names, so mapped URIs are reduced too."""
    return {
        internal: attributes[external.split("/")[-1]]
        for external, internal in environment.attribute_mapping.items()
        if external.split("/")[-1] in attributes
    }


def parse_basic_auth(authorization: str | None) -> tuple[str, str] | None:
    """
    Client credentials from an HTTP Basic `Authorization` header (RFC 6749 section 2.3.1).

    Raises:
        InvalidClientError: If the header uses the Basic scheme but is malformed.
    """
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "basic":
        return None
    try:
        decoded = base64.b64decode(value.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        raise InvalidClientError("Malformed Basic authorization header") from e
    client_id, sep, client_secret = decoded.partition(":")
    if not sep:
        raise InvalidClientError("Malformed Basic authorization header")
    return unquote(client_id), unquote(client_secret)


def parse_bearer(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class FederationEndpoints:
    """
    OAuth and SAML endpoints over the engines.

    Args:
        engine (OAuthGrantEngine): The OAuth grant engine.
        builder (SamlAssertionBuilder): Builds SSO responses.
        store (CredentialStore): Source of SAML environments; sink for SSO sessions.
        verifier (Verifier | None): Verifies signatures of posted SAML responses when set.
        secret_box (SecretBox | None): Decrypts posted encrypted assertions when set.
        signing_cert (bytes | str | None): Published in metadata `KeyDescriptor`s when set.
    """

    def __init__(
        self,
        engine: OAuthGrantEngine,
        builder: SamlAssertionBuilder,
        store: CredentialStore,
        verifier: Verifier | None = None,
        secret_box: SecretBox | None = None,
        signing_cert: bytes | str | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.engine = engine
        self.builder = builder
        self.store = store
        self.verifier = verifier
        self.secret_box = secret_box
        self.signing_cert = signing_cert
        self._clock = clock

    async def authorize(self, params: Mapping[str, str]) -> EndpointResponse:
        client_id = params.get("client_id")
        redirect_uri = params.get("redirect_uri")
        response_type = params.get("response_type")
        if not client_id or not redirect_uri or not response_type:
            return EndpointResponse.from_error(InvalidRequestError("Missing required parameters"))
        if response_type != "code":
            return EndpointResponse.from_error(UnsupportedResponseTypeError())

        try:
            grant = await self.engine.issue_code(
                client_id=client_id,
                redirect_uri=redirect_uri,
                scope=params.get("scope") or None,
                state=params.get("state"),
                code_challenge=params.get("code_challenge") or None,
                code_challenge_method=params.get("code_challenge_method") or None,
            )
        except OAuthError as e:
            logger.info(f"Authorization request rejected: {e.error}")
            return EndpointResponse.from_error(e)
        return EndpointResponse(
            status_code=302, body="", headers={"Location": grant.redirect_url()}, media_type="text/plain"
        )

    def _client_credentials(
        self, form: Mapping[str, str], authorization: str | None
    ) -> tuple[str | None, str | None]:
        basic = parse_basic_auth(authorization)
        if basic is not None:
            return basic
        return form.get("client_id") or None, form.get("client_secret") or None

    async def token(self, form: Mapping[str, str], authorization: str | None = None) -> EndpointResponse:
        try:
            grant_type = form.get("grant_type")
            if not grant_type:
                raise InvalidRequestError("Missing grant_type")
            client_id, client_secret = self._client_credentials(form, authorization)
            if not client_id:
                raise InvalidClientError("Missing client_id")

            if grant_type == GrantType.AUTHORIZATION_CODE:
                code, redirect_uri = form.get("code"), form.get("redirect_uri")
                if not code or not redirect_uri:
                    raise InvalidRequestError("Missing code or redirect_uri")
                response = await self.engine.exchange_code(
                    code, client_id, client_secret, redirect_uri, form.get("code_verifier") or None
                )
            elif grant_type == GrantType.CLIENT_CREDENTIALS:
                response = await self.engine.client_credentials(client_id, client_secret, form.get("scope") or None)
            elif grant_type == GrantType.REFRESH_TOKEN:
                refresh_token = form.get("refresh_token")
                if not refresh_token:
                    raise InvalidRequestError("Missing refresh_token")
                response = await self.engine.refresh_token(refresh_token, client_id, client_secret)
            else:
                raise UnsupportedGrantTypeError()
        except OAuthError as e:
            logger.info(f"Token request rejected: {e.error}")
            return EndpointResponse.from_error(e, headers=dict(NO_STORE))
        return EndpointResponse(status_code=200, body=response.to_body(), headers=dict(NO_STORE))

    async def userinfo(self, authorization: str | None) -> EndpointResponse:
        token = parse_bearer(authorization)
        try:
            if token is None:
                raise InvalidTokenError("Missing bearer token")
            claims = await self.engine.userinfo(token)
        except InvalidTokenError as e:
            return EndpointResponse.from_error(
                e, headers={"WWW-Authenticate": f'Bearer error="{e.error}"'}
            )
        except OAuthError as e:
            return EndpointResponse.from_error(e)
        return EndpointResponse(status_code=200, body=claims)

    async def introspect(self, form: Mapping[str, str], authorization: str | None = None) -> EndpointResponse:
        """RFC 7662. The caller must authenticate as a registered confidential client."""
        try:
            client_id, client_secret = self._client_credentials(form, authorization)
            if not client_id:
                raise InvalidClientError("Client authentication required")
            await self.engine.authenticate_client(client_id, client_secret)
            token = form.get("token")
            if not token:
                raise InvalidRequestError("Missing token")
            body = await self.engine.introspect(token)
        except OAuthError as e:
            return EndpointResponse.from_error(e)
        return EndpointResponse(status_code=200, body=body, headers=dict(NO_STORE))

    async def revoke(self, form: Mapping[str, str], authorization: str | None = None) -> EndpointResponse:
        """
        RFC 7009. The caller must authenticate; only tokens issued to it are revoked, and unknown
        tokens still answer 200.
        """
        try:
            client_id, client_secret = self._client_credentials(form, authorization)
            if not client_id:
                raise InvalidClientError("Client authentication required")
            client = await self.engine.authenticate_client(client_id, client_secret, allow_public=True)
            token = form.get("token")
            if not token:
                raise InvalidRequestError("Missing token")
            # Tokens of other clients are left alone, but the answer is the same 200.
            await self.engine.revoke(token, client.client_id)
        except OAuthError as e:
            return EndpointResponse.from_error(e)
        return EndpointResponse(status_code=200, body={})

    async def _get_environment(self, environment_id: str) -> SamlEnvironment | None:
        environment: SamlEnvironment | None = await self.store.get(SAML_ENVIRONMENTS, environment_id)
        return environment

    async def saml_sso(self, environment_id: str, params: Mapping[str, str]) -> EndpointResponse:
        """
        SSO endpoint for both directions.

        With a `SAMLResponse` parameter, the payload is parsed and validated (parse path): documents
        with a DTD, more than one assertion, or a failed signature check are rejected with 400.
        Otherwise, for IdP environments, a signed response for the environment's first test principal
        is built and returned as an auto-submitting HTML form (build path). An optional `SAMLRequest`
        makes the flow SP-initiated.
        """
        try:
            environment = await self._get_environment(environment_id)
            if environment is None:
                return _error(404, "not_found", "SAML environment not found")
            if "SAMLResponse" in params:
                return self._consume_response(environment, params["SAMLResponse"])
            if environment.role != SamlRole.IDP:
                return _error(404, "not_found", "IdP not found")
            return await self._issue_response(environment, params)
        except StoreTimeoutError:
            return EndpointResponse.from_error(STORE_UNAVAILABLE)

    def _consume_response(self, environment: SamlEnvironment, payload: str) -> EndpointResponse:
        try:
            fields = parse(payload, verifier=self.verifier, secret_box=self.secret_box)
        except SamlParseError as e:
            logger.warning(f"Rejected SAML response for environment {environment.id}: {e}")
            return _error(400, "invalid_saml", "Malformed SAML payload")

        if fields.assertion_count > 1:
            logger.warning(f"Rejected SAML response with {fields.assertion_count} assertions for {environment.id}")
            return _error(400, "invalid_saml", "Multiple assertions are not allowed")
        if fields.signature_verified is False:
            return _error(400, "invalid_saml", "Signature verification failed")

        return EndpointResponse(
            status_code=200,
            body={
                "fields": fields.model_dump(mode="json"),
                "warnings": validate_timing(fields),
                "claims": map_inbound_claims(environment, fields.attributes),
            },
        )

    async def _issue_response(self, environment: SamlEnvironment, params: Mapping[str, str]) -> EndpointResponse:
        in_response_to: str | None = None
        if params.get("SAMLRequest"):
            try:
                in_response_to = parse(params["SAMLRequest"]).id
            except SamlParseError:
                return _error(400, "invalid_saml", "Malformed SAMLRequest")

        principal = environment.default_principal()
        attributes = map_principal_attributes(environment, principal)
        destination = environment.acs_url or DEFAULT_ACS_URL

        assertion = self.builder.create_assertion(
            environment, str(principal.email), attributes, destination, in_response_to
        )
        response_xml = self.builder.build_response(environment, assertion, destination, in_response_to)

        now = self._clock()
        session = SamlSessionRecord(
            session_id=assertion.session_index,
            environment_id=environment.id,
            name_id=assertion.name_id,
            attributes=attributes,
            created_at=now,
            expires_at=now + SAML_SESSION_LIFETIME,
        )
        await self.store.put(SAML_SESSIONS, session.session_id, session)
        logger.info(
            f"Issued SAML response for environment {environment.id} (sp_initiated={in_response_to is not None})"
        )

        encoded = base64.b64encode(response_xml.encode("utf-8")).decode("ascii")
        relay_state = params.get("RelayState")
        relay_input = (
            f'<input type="hidden" name="RelayState" value="{html.escape(relay_state, quote=True)}" />'
            if relay_state
            else ""
        )
        page = (
            "<!DOCTYPE html>\n<html>\n<head><title>SAML POST</title></head>\n"
            '<body onload="document.forms[0].submit()">\n'
            f'<form method="POST" action="{html.escape(destination, quote=True)}">\n'
            f'<input type="hidden" name="SAMLResponse" value="{encoded}" />\n'
            f"{relay_input}\n"
            '<noscript><button type="submit">Continue</button></noscript>\n'
            "</form>\n</body>\n</html>\n"
        )
        return EndpointResponse(status_code=200, body=page, media_type="text/html")

    async def saml_metadata(self, environment_id: str) -> EndpointResponse:
        try:
            environment = await self._get_environment(environment_id)
        except StoreTimeoutError:
            return EndpointResponse.from_error(STORE_UNAVAILABLE)
        if environment is None:
            return _error(404, "not_found", "SAML environment not found")
        xml = self.builder.build_metadata(environment, signing_cert=self.signing_cert)
        return EndpointResponse(status_code=200, body=xml, media_type="application/samlmetadata+xml")
