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
End-to-end OAuth 2.0 and SAML 2.0 flow validation over HTTP.

Every `validate_*` call drives one flow through the deployment reachable via an `httpx.AsyncClient`
and returns a `ValidationResult`. A flow never raises: transport failures and malformed answers are
recorded as errors of that flow. Tokens, codes and secrets are never copied into result details.
"""

import base64
import re
import secrets
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any
from urllib.parse import parse_qs, urlsplit
from xml.etree.ElementTree import Element

import httpx

from coreason_federation.config import HarnessConfig
from coreason_federation.exceptions import CoreasonFederationError
from coreason_federation.models import SamlRole, ValidationResult
from coreason_federation.pkce import S256, compute_code_challenge, generate_code_verifier
from coreason_federation.saml_builder import SamlAssertionBuilder
from coreason_federation.saml_parser import (
    decode_saml_payload,
    load_document,
    local_name,
    parse,
    parse_instant,
    parse_metadata,
    validate_timing,
)
from coreason_federation.security_harness import send_probe
from coreason_federation.utils.logger import logger

MAX_VALIDITY_WINDOW_MINUTES = 60
_SAML_RESPONSE_FIELD = re.compile(r'name="SAMLResponse"\s+value="([^"]+)"')
_SAML_ID = re.compile(r"^[A-Za-z_][\w.-]*$")


class FlowRecorder:
    """Mutable scratch space for one flow; frozen into a `ValidationResult` by `result()`."""

    def __init__(self, flow: str) -> None:
        self.flow = flow
        self.errors: list[str] = []
        self.warnings: list[str] = []
        self.details: dict[str, Any] = {}

    @contextmanager
    def guard(self) -> Iterator["FlowRecorder"]:
        try:
            yield self
        except (CoreasonFederationError, httpx.HTTPError, ValueError, KeyError, TypeError, AttributeError) as e:
            self.errors.append(f"Exception: {e}")

    def result(self) -> ValidationResult:
        return ValidationResult(
            flow=self.flow,
            passed=not self.errors,
            errors=tuple(self.errors),
            warnings=tuple(self.warnings),
            details=self.details,
        )


def _error_code(response: httpx.Response) -> str | None:
    try:
        body = response.json()
    except ValueError:
        return None
    return body.get("error") if isinstance(body, dict) else None


def _same_endpoint(url: str, expected: str) -> bool:
    got, want = urlsplit(url), urlsplit(expected)
    return (got.scheme, got.netloc, got.path) == (want.scheme, want.netloc, want.path)


def _descendants(root: Element, name: str) -> list[Element]:
    return [e for e in root.iter() if local_name(e.tag) == name]


class _HttpFlowValidator:
    def __init__(self, client: httpx.AsyncClient, config: HarnessConfig) -> None:
        self.client = client
        self.config = config
        self.results: list[ValidationResult] = []

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        return await send_probe(self.client, method, path, self.config.http_timeout, **kwargs)

    def _finish(self, recorder: FlowRecorder) -> ValidationResult:
        result = recorder.result()
        self.results.append(result)
        if result.passed:
            logger.info(f"Flow '{result.flow}' passed with {len(result.warnings)} warning(s)")
        else:
            logger.warning(f"Flow '{result.flow}' failed: {'; '.join(result.errors)}")
        return result


class OAuthFlowValidator(_HttpFlowValidator):
    """
    Validates the OAuth 2.0 flows of a deployment.

    The authorization code and client credentials flows need `client_id`, `client_secret` and
    `redirect_uri` in the config. The PKCE flow prefers `public_client_id`. Tokens obtained by one
    flow are reused by the refresh, userinfo and revocation flows of the same validator.
    """

    def __init__(self, client: httpx.AsyncClient, config: HarnessConfig) -> None:
        super().__init__(client, config)
        self._access_token: str | None = None
        self._refresh_token: str | None = None

    def _confidential(self) -> tuple[str, str, str]:
        if not self.config.client_id or not self.config.client_secret or not self.config.redirect_uri:
            raise CoreasonFederationError("client_id, client_secret and redirect_uri must be configured")
        return self.config.client_id, self.config.client_secret.get_secret_value(), self.config.redirect_uri

    async def _token(self, form: dict[str, str], auth: tuple[str, str] | None = None) -> httpx.Response:
        return await self._request("POST", "/oauth/token", data=form, auth=auth)

    async def _authorize_code(
        self, recorder: FlowRecorder, client_id: str, redirect_uri: str, **extra: str
    ) -> str | None:
        state = secrets.token_urlsafe(16)
        params = {"client_id": client_id, "redirect_uri": redirect_uri, "response_type": "code", "state": state}
        response = await self._request("GET", "/oauth/authorize", params={**params, **extra})
        recorder.details["authorizeStatus"] = response.status_code
        if response.status_code != 302:
            recorder.errors.append(f"Authorization endpoint returned {response.status_code}")
            return None

        location = response.headers.get("location", "")
        if not _same_endpoint(location, redirect_uri):
            recorder.errors.append("Authorization redirect does not target the registered redirect_uri")
            return None
        query = parse_qs(urlsplit(location).query)
        if query.get("state") != [state]:
            recorder.errors.append("state was not echoed unmodified")
        codes = query.get("code")
        if not codes:
            recorder.errors.append("Authorization redirect carries no code")
            return None
        return codes[0]

    @staticmethod
    def _check_token_body(recorder: FlowRecorder, response: httpx.Response) -> dict[str, Any] | None:
        if response.status_code != 200:
            recorder.errors.append(f"Token request failed: {response.status_code} {_error_code(response)}")
            return None
        body = response.json()
        if not isinstance(body, dict):
            recorder.errors.append(f"Token response is not a JSON object: {type(body).__name__}")
            return None
        if not body.get("access_token"):
            recorder.errors.append("Missing access_token in response")
        if body.get("token_type") != "Bearer":
            recorder.errors.append(f"Invalid token_type: {body.get('token_type')}")
        if "expires_in" not in body:
            recorder.warnings.append("Missing expires_in in response")
        if response.headers.get("cache-control") != "no-store":
            recorder.warnings.append("Token response is cacheable (Cache-Control: no-store missing)")
        recorder.details["tokenType"] = body.get("token_type")
        recorder.details["expiresIn"] = body.get("expires_in")
        recorder.details["hasRefreshToken"] = "refresh_token" in body
        return body

    async def validate_authorization_code_flow(self) -> ValidationResult:
        """Authorize, exchange, then replay the same code, which must fail with `invalid_grant`."""
        recorder = FlowRecorder("authorization_code")
        with recorder.guard():
            client_id, client_secret, redirect_uri = self._confidential()
            code = await self._authorize_code(recorder, client_id, redirect_uri)
            if code is not None:
                form = {"grant_type": "authorization_code", "code": code, "redirect_uri": redirect_uri}
                body = self._check_token_body(recorder, await self._token(form, auth=(client_id, client_secret)))
                if body is not None:
                    self._access_token = body.get("access_token")
                    self._refresh_token = body.get("refresh_token")

                replay = await self._token(form, auth=(client_id, client_secret))
                recorder.details["replayStatus"] = replay.status_code
                if replay.status_code != 400 or _error_code(replay) != "invalid_grant":
                    recorder.errors.append("Authorization code was accepted twice")
        return self._finish(recorder)

    async def validate_pkce_flow(self) -> ValidationResult:
        """S256 PKCE: a wrong verifier must fail with `invalid_grant`, the right one must succeed."""
        recorder = FlowRecorder("authorization_code_pkce")
        with recorder.guard():
            redirect_uri = self.config.redirect_uri
            client_id = self.config.public_client_id or self.config.client_id
            if not client_id or not redirect_uri:
                raise CoreasonFederationError("A client_id and redirect_uri must be configured")
            auth: tuple[str, str] | None = None
            if not self.config.public_client_id:
                recorder.warnings.append("No public client configured; PKCE exercised with the confidential client")
                if self.config.client_secret is not None:
                    auth = (client_id, self.config.client_secret.get_secret_value())

            verifier = generate_code_verifier()
            code = await self._authorize_code(
                recorder,
                client_id,
                redirect_uri,
                code_challenge=compute_code_challenge(verifier),
                code_challenge_method=S256,
            )
            if code is not None:
                form = {
                    "grant_type": "authorization_code",
                    "code": code,
                    "redirect_uri": redirect_uri,
                    "client_id": client_id,
                }
                wrong = await self._token({**form, "code_verifier": generate_code_verifier()}, auth=auth)
                recorder.details["wrongVerifierStatus"] = wrong.status_code
                if _error_code(wrong) != "invalid_grant":
                    recorder.errors.append("A wrong code_verifier was not rejected with invalid_grant")

                right = await self._token({**form, "code_verifier": verifier}, auth=auth)
                if self._check_token_body(recorder, right) is None:
                    recorder.errors.append("PKCE flow not supported or failed")
        return self._finish(recorder)

    async def validate_client_credentials_flow(self) -> ValidationResult:
        recorder = FlowRecorder("client_credentials")
        with recorder.guard():
            client_id, client_secret, _ = self._confidential()
            response = await self._token({"grant_type": "client_credentials"}, auth=(client_id, client_secret))
            body = self._check_token_body(recorder, response)
            if body is not None and "refresh_token" in body:
                recorder.errors.append("Client credentials response must not include a refresh_token")
        return self._finish(recorder)

    async def validate_refresh_token_flow(self) -> ValidationResult:
        """Refreshes the token of the authorization code flow; the rotated-out token must be dead."""
        recorder = FlowRecorder("refresh_token")
        with recorder.guard():
            client_id, client_secret, _ = self._confidential()
            if self._refresh_token is None:
                recorder.warnings.append("No refresh_token available; run the authorization code flow first")
                return self._finish(recorder)

            old = self._refresh_token
            form = {"grant_type": "refresh_token", "refresh_token": old}
            body = self._check_token_body(recorder, await self._token(form, auth=(client_id, client_secret)))
            if body is not None:
                self._access_token = body.get("access_token")
                self._refresh_token = body.get("refresh_token")
                if self._refresh_token is None:
                    recorder.warnings.append("Refresh response carries no rotated refresh_token")

            # Replays the old form even if the refresh failed; a rotated-out token must never work.
            reuse = await self._token(form, auth=(client_id, client_secret))
            recorder.details["reuseStatus"] = reuse.status_code
            if reuse.status_code == 200:
                recorder.errors.append("A rotated-out refresh_token was accepted again")
        return self._finish(recorder)

    async def validate_userinfo_endpoint(self) -> ValidationResult:
        recorder = FlowRecorder("userinfo_endpoint")
        with recorder.guard():
            if self._access_token is None:
                recorder.warnings.append("No access_token available; run a token flow first")
                return self._finish(recorder)
            response = await self._request(
                "GET", "/oauth/userinfo", headers={"Authorization": f"Bearer {self._access_token}"}
            )
            recorder.details["status"] = response.status_code
            if response.status_code != 200:
                recorder.errors.append(f"UserInfo endpoint returned {response.status_code}")
            else:
                claims = response.json()
                if not isinstance(claims, dict):
                    recorder.errors.append(f"UserInfo response is not a JSON object: {type(claims).__name__}")
                else:
                    recorder.details["claims"] = sorted(claims)
                    if not claims.get("sub"):
                        recorder.errors.append("Missing required claim: sub")
        return self._finish(recorder)

    async def validate_token_revocation(self) -> ValidationResult:
        """Revokes a fresh client credentials token; userinfo must then answer 401."""
        recorder = FlowRecorder("token_revocation")
        with recorder.guard():
            client_id, client_secret, _ = self._confidential()
            issued = await self._token({"grant_type": "client_credentials"}, auth=(client_id, client_secret))
            body = self._check_token_body(recorder, issued)
            if body is not None:
                token = body["access_token"]
                # A fresh token, so revoking it does not break the tokens other flows still hold.
                revoked = await self._request(
                    "POST", "/oauth/revoke", data={"token": token}, auth=(client_id, client_secret)
                )
                recorder.details["revokeStatus"] = revoked.status_code
                if revoked.status_code != 200:
                    recorder.errors.append(f"Revocation endpoint returned {revoked.status_code}")
                after = await self._request("GET", "/oauth/userinfo", headers={"Authorization": f"Bearer {token}"})
                recorder.details["postRevocationStatus"] = after.status_code
                if after.status_code != 401:
                    recorder.errors.append("A revoked access token is still accepted")
        return self._finish(recorder)

    async def validate_security_controls(self) -> ValidationResult:
        recorder = FlowRecorder("security_controls")
        with recorder.guard():
            client_id, client_secret, redirect_uri = self._confidential()

            evil = await self._request(
                "GET",
                "/oauth/authorize",
                params={"client_id": client_id, "redirect_uri": "https://evil.com/callback", "response_type": "code"},
            )
            recorder.details["invalidRedirectStatus"] = evil.status_code
            if evil.status_code < 400:
                recorder.errors.append("Security: Invalid redirect_uri was accepted")

            anonymous = await self._request(
                "GET", "/oauth/authorize", params={"redirect_uri": redirect_uri, "response_type": "code"}
            )
            recorder.details["missingClientIdStatus"] = anonymous.status_code
            if anonymous.status_code < 400:
                recorder.errors.append("Security: Missing client_id was accepted")

            bogus = await self._token({"grant_type": "invalid_grant_type"}, auth=(client_id, client_secret))
            recorder.details["invalidGrantTypeStatus"] = bogus.status_code
            if _error_code(bogus) != "unsupported_grant_type":
                recorder.errors.append("Security: Invalid grant type not properly rejected")
        return self._finish(recorder)

    async def run_all(self) -> list[ValidationResult]:
        """Runs every OAuth flow in dependency order."""
        return [
            await self.validate_authorization_code_flow(),
            await self.validate_pkce_flow(),
            await self.validate_client_credentials_flow(),
            await self.validate_refresh_token_flow(),
            await self.validate_userinfo_endpoint(),
            await self.validate_token_revocation(),
            await self.validate_security_controls(),
        ]


class SamlFlowValidator(_HttpFlowValidator):
    """
    Validates SAML metadata, SP-initiated SSO and the structure of the issued documents.

    Args:
        client (httpx.AsyncClient): Client whose `base_url` points at the system under test.
        config (HarnessConfig): `environment_id` (an IdP) and optionally `sp_environment_id`.
        builder (SamlAssertionBuilder | None): Builds the AuthnRequest sent to the IdP.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        config: HarnessConfig,
        builder: SamlAssertionBuilder | None = None,
    ) -> None:
        super().__init__(client, config)
        self.builder = builder or SamlAssertionBuilder()
        self.last_response_xml: str | None = None

    async def _fetch_metadata(self, recorder: FlowRecorder, environment_id: str) -> str | None:
        response = await self._request("GET", f"/saml/{environment_id}/metadata")
        recorder.details["status"] = response.status_code
        if response.status_code != 200:
            recorder.errors.append(f"Metadata endpoint returned {response.status_code}")
            return None
        recorder.details["metadataLength"] = len(response.text)
        if not response.text.lstrip().startswith("<?xml"):
            recorder.errors.append("Invalid XML: Missing XML declaration")
        return response.text

    async def validate_idp_metadata(self, environment_id: str | None = None) -> ValidationResult:
        recorder = FlowRecorder("idp_metadata")
        with recorder.guard():
            environment_id = environment_id or self.config.environment_id
            if not environment_id:
                raise CoreasonFederationError("environment_id must be configured")
            xml = await self._fetch_metadata(recorder, environment_id)
            if xml is not None:
                summary = parse_metadata(xml)
                recorder.details["entityId"] = summary.entity_id
                recorder.details["ssoUrl"] = summary.sso_url
                if summary.role is not SamlRole.IDP:
                    recorder.errors.append("Invalid IdP metadata: Missing IDPSSODescriptor")
                if not summary.entity_id:
                    recorder.errors.append("Missing entityID attribute")
                if not summary.name_id_formats:
                    recorder.errors.append("Missing required element: NameIDFormat")
                if not summary.sso_url:
                    recorder.warnings.append("SSO Location not found in metadata")
                if not summary.slo_url:
                    recorder.warnings.append("SingleLogoutService not advertised")
        return self._finish(recorder)

    async def validate_sp_metadata(self, environment_id: str | None = None) -> ValidationResult:
        recorder = FlowRecorder("sp_metadata")
        with recorder.guard():
            environment_id = environment_id or self.config.sp_environment_id
            if not environment_id:
                raise CoreasonFederationError("sp_environment_id must be configured")
            xml = await self._fetch_metadata(recorder, environment_id)
            if xml is not None:
                summary = parse_metadata(xml)
                recorder.details["entityId"] = summary.entity_id
                if summary.role is not SamlRole.SP:
                    recorder.errors.append("Invalid SP metadata: Missing SPSSODescriptor")
                if summary.acs_url is None:
                    recorder.errors.append("Missing ACS Location")
                else:
                    recorder.details["acsUrl"] = summary.acs_url
        return self._finish(recorder)

    async def validate_sso_flow(self, environment_id: str | None = None) -> ValidationResult:
        """
        SP-initiated SSO: posts an AuthnRequest and checks the auto-posted response it gets back.

        The decoded response is kept in `last_response_xml` for the structural checks.
        """
        recorder = FlowRecorder("saml_sso")
        with recorder.guard():
            environment_id = environment_id or self.config.environment_id
            if not environment_id:
                raise CoreasonFederationError("environment_id must be configured")
            path = f"/saml/{environment_id}/sso"
            request_id, request_xml = self.builder.build_authn_request(
                sp_entity_id=f"{self.config.base_url}/validator",
                acs_url=f"{self.config.base_url}/validator/acs",
                destination=f"{self.config.base_url}{path}",
            )
            relay_state = secrets.token_urlsafe(8)
            response = await self._request(
                "POST",
                path,
                data={
                    "SAMLRequest": base64.b64encode(request_xml.encode("utf-8")).decode("ascii"),
                    "RelayState": relay_state,
                },
            )
            recorder.details["ssoEndpointStatus"] = response.status_code
            if response.status_code != 200:
                recorder.errors.append(f"SSO endpoint returned {response.status_code}")
                return self._finish(recorder)

            match = _SAML_RESPONSE_FIELD.search(response.text)
            if match is None:
                recorder.errors.append("SSO page carries no SAMLResponse form field")
                return self._finish(recorder)
            if relay_state not in response.text:
                recorder.warnings.append("RelayState was not passed through")

            xml = decode_saml_payload(match.group(1))
            self.last_response_xml = xml.decode("utf-8")
            fields = parse(xml)
            recorder.details["issuer"] = fields.issuer
            recorder.details["nameId"] = fields.name_id
            recorder.details["assertionCount"] = fields.assertion_count
            if fields.root_element != "Response":
                recorder.errors.append(f"Expected a Response, got {fields.root_element}")
            if fields.in_response_to != request_id:
                recorder.errors.append("InResponseTo does not match the AuthnRequest ID")
            if fields.is_success is not True:
                recorder.errors.append(f"Non-success status: {fields.status}")
            if fields.assertion_count != 1:
                recorder.errors.append(f"Expected exactly one assertion, got {fields.assertion_count}")
            recorder.warnings.extend(f"Assertion is {w}" for w in validate_timing(fields))
        return self._finish(recorder)

    def check_assertion_structure(self, xml: str) -> ValidationResult:
        recorder = FlowRecorder("saml_assertion")
        with recorder.guard():
            root = load_document(decode_saml_payload(xml))
            assertions = _descendants(root, "Assertion")
            if not assertions:
                if _descendants(root, "EncryptedAssertion"):
                    recorder.warnings.append("Assertion is encrypted; structure not inspected")
                else:
                    recorder.errors.append("Missing required element: Assertion")
                return self._finish(recorder)

            assertion = assertions[0]
            for name in ("Issuer", "Subject", "NameID", "Conditions", "AuthnStatement"):
                if not _descendants(assertion, name):
                    recorder.errors.append(f"Missing required element: {name}")
            if not _SAML_ID.match(assertion.get("ID") or ""):
                recorder.errors.append("Assertion missing valid ID attribute")
            if assertion.get("Version") != "2.0":
                recorder.errors.append("Assertion missing or invalid Version attribute")
            if parse_instant(assertion.get("IssueInstant")) is None:
                recorder.warnings.append("IssueInstant format may be invalid")

            conditions = _descendants(assertion, "Conditions")
            if conditions:
                not_before = parse_instant(conditions[0].get("NotBefore"))
                not_on_or_after = parse_instant(conditions[0].get("NotOnOrAfter"))
                if not_before is not None and not_on_or_after is not None:
                    if not_on_or_after <= not_before:
                        recorder.errors.append("Invalid time window: NotOnOrAfter must be after NotBefore")
                    recorder.details["validityWindow"] = {
                        "notBefore": not_before.isoformat(),
                        "notOnOrAfter": not_on_or_after.isoformat(),
                        "durationSeconds": (not_on_or_after - not_before).total_seconds(),
                    }
        return self._finish(recorder)

    def check_response_structure(self, xml: str) -> ValidationResult:
        recorder = FlowRecorder("saml_response")
        with recorder.guard():
            root = load_document(decode_saml_payload(xml))
            if local_name(root.tag) != "Response":
                recorder.errors.append("Missing required element: Response")
            for name in ("Issuer", "Status", "StatusCode"):
                if not _descendants(root, name):
                    recorder.errors.append(f"Missing required element: {name}")

            status_codes = _descendants(root, "StatusCode")
            if status_codes:
                status = (status_codes[0].get("Value") or "").rsplit(":", 1)[-1]
                recorder.details["statusCode"] = status
                if status != "Success":
                    recorder.warnings.append(f"Non-success status: {status}")
            if not _descendants(root, "Assertion") and not _descendants(root, "EncryptedAssertion"):
                recorder.warnings.append("Response does not contain an embedded assertion")

            destination = root.get("Destination")
            if destination:
                recorder.details["destination"] = destination
            else:
                recorder.warnings.append("Response missing Destination attribute")
            in_response_to = root.get("InResponseTo")
            if in_response_to:
                recorder.details["inResponseTo"] = in_response_to
            recorder.details["initiationType"] = "SP-initiated" if in_response_to else "IdP-initiated"
        return self._finish(recorder)

    def check_saml_security(self, xml: str) -> ValidationResult:
        """
        Signature and encryption markers, recipient, audience and validity window length.

        Markers are structural: a present `Signature` element is not a verified signature.
        """
        recorder = FlowRecorder("saml_security")
        with recorder.guard():
            root = load_document(decode_saml_payload(xml))
            assertions = _descendants(root, "Assertion")
            assertion_signed = any(
                local_name(child.tag) == "Signature" for assertion in assertions for child in assertion
            )
            response_signed = any(local_name(child.tag) == "Signature" for child in root)
            encrypted = bool(_descendants(root, "EncryptedAssertion"))
            recorder.details["assertionSigned"] = assertion_signed
            recorder.details["responseSigned"] = response_signed
            recorder.details["assertionEncrypted"] = encrypted

            if not assertion_signed and not response_signed:
                recorder.warnings.append("Neither assertion nor response is signed - vulnerable to tampering")
            if not encrypted:
                recorder.warnings.append("Assertion is not encrypted - sensitive data may be exposed")

            confirmations = _descendants(root, "SubjectConfirmationData")
            recipient = confirmations[0].get("Recipient") if confirmations else None
            if recipient:
                recorder.details["recipient"] = recipient
            elif not encrypted:
                recorder.warnings.append("Missing Recipient attribute in SubjectConfirmationData")
            if not _descendants(root, "AudienceRestriction") and not encrypted:
                recorder.warnings.append("Missing AudienceRestriction - assertion can be used by any SP")

            conditions = _descendants(root, "Conditions")
            if conditions:
                window = _window_minutes(conditions[0])
                if window is not None and window > MAX_VALIDITY_WINDOW_MINUTES:
                    recorder.warnings.append(f"Assertion validity window is very long: {window:.0f} minutes")
        return self._finish(recorder)

    def check_attribute_statement(self, xml: str) -> ValidationResult:
        recorder = FlowRecorder("attribute_statement")
        with recorder.guard():
            root = load_document(decode_saml_payload(xml))
            statements = _descendants(root, "AttributeStatement")
            if not statements:
                recorder.warnings.append("No AttributeStatement found in assertion")
                return self._finish(recorder)

            attributes: dict[str, str] = {}
            count = 0
            for attribute in _descendants(statements[0], "Attribute"):
                count += 1
                values = _descendants(attribute, "AttributeValue")
                if values and values[0].text:
                    attributes[attribute.get("Name") or ""] = values[0].text
            recorder.details["attributeCount"] = count
            recorder.details["attributes"] = attributes
            if count == 0:
                recorder.warnings.append("AttributeStatement exists but contains no attributes")
        return self._finish(recorder)

    async def run_all(self) -> list[ValidationResult]:
        """Metadata, SSO, then the structural checks on the SSO response when one was obtained."""
        results: list[ValidationResult] = []
        if self.config.environment_id:
            results.append(await self.validate_idp_metadata())
        if self.config.sp_environment_id:
            results.append(await self.validate_sp_metadata())
        if self.config.environment_id:
            results.append(await self.validate_sso_flow())
        if self.last_response_xml is not None:
            results.append(self.check_response_structure(self.last_response_xml))
            results.append(self.check_assertion_structure(self.last_response_xml))
            results.append(self.check_saml_security(self.last_response_xml))
            results.append(self.check_attribute_statement(self.last_response_xml))
        return results


def _window_minutes(conditions: Element) -> float | None:
    not_before: datetime | None = parse_instant(conditions.get("NotBefore"))
    not_on_or_after: datetime | None = parse_instant(conditions.get("NotOnOrAfter"))
    if not_before is None or not_on_or_after is None:
        return None
    return (not_on_or_after - not_before).total_seconds() / 60
