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
Adversarial probes against a federation deployment, driven over HTTP.

Each probe is one request (or one burst) plus a judgment, producing a `SecurityTestResult`. Probes are
independent: an exception inside one becomes a failed result of that probe's severity and never
aborts the run. The rate-limit probe runs last, from an isolated caller identity.
"""

import base64
import json
import secrets
import time
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar
from urllib.parse import parse_qs, urlsplit, urlunsplit

import anyio
import httpx
from authlib.jose import JsonWebToken
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from coreason_federation.config import HarnessConfig
from coreason_federation.crypto import CryptoPosture
from coreason_federation.exceptions import ProbeFailure
from coreason_federation.models import SecurityTestResult, Severity
from coreason_federation.pkce import S256, compute_code_challenge, generate_code_verifier
from coreason_federation.report import ValidationReport
from coreason_federation.utils.logger import logger

tracer = trace.get_tracer(__name__)

SQL_INJECTION_PAYLOADS = (
    "' OR '1'='1",
    "'; DROP TABLE users--",
    "' UNION SELECT NULL--",
    "admin'--",
    "' OR 1=1--",
)

XSS_PAYLOADS = (
    '<script>alert("XSS")</script>',
    '<img src=x onerror=alert("XSS")>',
    'javascript:alert("XSS")',
    '<svg onload=alert("XSS")>',
)

SLOW_KDFS = frozenset({"argon2id", "argon2i", "argon2d", "bcrypt", "scrypt", "pbkdf2"})
AEAD_CIPHERS = frozenset({"AES-128-GCM", "AES-192-GCM", "AES-256-GCM", "ChaCha20-Poly1305", "XChaCha20-Poly1305"})
SIGNING_ALGORITHM_FAMILIES = ("HS", "RS", "ES", "PS", "EdDSA")

_POST_ENDPOINTS = frozenset({"/oauth/token", "/oauth/revoke", "/oauth/introspect"})

Judgment = tuple[bool, dict[str, Any]]
T = TypeVar("T")


async def send_probe(
    client: httpx.AsyncClient, method: str, path: str, timeout: float, **kwargs: Any
) -> httpx.Response:
    """
    Sends one request with a timeout.

    Raises:
        ProbeFailure: If the target times out or is unreachable.
    """
    try:
        return await client.request(method, path, timeout=timeout, **kwargs)
    except httpx.TimeoutException as e:
        raise ProbeFailure(f"{method} {path} timed out after {timeout}s") from e
    except httpx.TransportError as e:
        raise ProbeFailure(f"{method} {path} failed: {type(e).__name__}") from e


def is_rejected(response: httpx.Response) -> bool:
    return 400 <= response.status_code < 500


def _b64url_json(data: dict[str, Any]) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def unsigned_token(claims: dict[str, Any]) -> str:
    """A JWT with `alg=none` and an empty signature segment."""
    return f"{_b64url_json({'alg': 'none', 'typ': 'JWT'})}.{_b64url_json(claims)}."


def foreign_token(claims: dict[str, Any]) -> str:
    """An HS256 JWT signed with a random key the target cannot know."""
    token = JsonWebToken(["HS256"]).encode({"alg": "HS256", "typ": "JWT"}, claims, secrets.token_bytes(32))
    return token.decode("ascii")


def open_redirect_candidates(redirect_uri: str) -> list[str]:
    """
    Redirect URIs that must all be rejected for a client registering only `redirect_uri`.

    Covers a foreign host, userinfo and subdomain confusion, scheme-relative URLs, a trailing slash
    toggle and a case change of the authority.
    """
    parts = urlsplit(redirect_uri)
    scheme = parts.scheme or "https"
    host = parts.hostname or "example.com"
    path = parts.path or "/callback"
    candidates = [
        "https://evil.com/callback",
        f"{scheme}://{host}@evil.com{path}",
        f"{scheme}://{host}.evil.com{path}",
        "//evil.com/callback",
        redirect_uri[:-1] if redirect_uri.endswith("/") else f"{redirect_uri}/",
        urlunsplit(parts._replace(netloc=parts.netloc.upper())),
    ]
    return [c for c in dict.fromkeys(candidates) if c != redirect_uri]


def signature_wrapping_payload(destination: str) -> str:
    """A response carrying a (claimed) signed assertion followed by an attacker-controlled one."""
    assertion = (
        '<saml:Assertion ID="{id}" Version="2.0" IssueInstant="2024-01-01T00:00:00Z">'
        "<saml:Issuer>https://idp.example.com</saml:Issuer>"
        "{signature}"
        '<saml:Subject><saml:NameID Format="urn:oasis:names:tc:SAML:1.1:nameid-format:emailAddress">'
        "{subject}</saml:NameID></saml:Subject>"
        "</saml:Assertion>"
    )
    signature = (
        '<ds:Signature xmlns:ds="http://www.w3.org/2000/09/xmldsig#"><ds:SignedInfo>'
        '<ds:Reference URI="#_legit"/></ds:SignedInfo><ds:SignatureValue>AAAA</ds:SignatureValue></ds:Signature>'
    )
    return (
        '<samlp:Response xmlns:samlp="urn:oasis:names:tc:SAML:2.0:protocol" '
        'xmlns:saml="urn:oasis:names:tc:SAML:2.0:assertion" '
        f'ID="_wrapper" Version="2.0" IssueInstant="2024-01-01T00:00:00Z" Destination="{destination}">'
        "<saml:Issuer>https://idp.example.com</saml:Issuer>"
        '<samlp:Status><samlp:StatusCode Value="urn:oasis:names:tc:SAML:2.0:status:Success"/></samlp:Status>'
        + assertion.format(id="_legit", signature=signature, subject="user@example.com")
        + assertion.format(id="_evil", signature="", subject="admin@example.com")
        + "</samlp:Response>"
    )


def xxe_payload() -> str:
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        '<!DOCTYPE samlp:Response [<!ENTITY xxe SYSTEM "file:///etc/passwd">]>\n'
        '<samlp:Response xmlns:samlp="urn:oasis:names:tc:SAML:2.0:protocol" '
        'xmlns:saml="urn:oasis:names:tc:SAML:2.0:assertion" ID="_xxe" Version="2.0" '
        'IssueInstant="2024-01-01T00:00:00Z">'
        "<saml:Issuer>&xxe;</saml:Issuer>"
        '<samlp:Status><samlp:StatusCode Value="urn:oasis:names:tc:SAML:2.0:status:Success"/></samlp:Status>'
        "</samlp:Response>"
    )


class SecurityValidator:
    """
    Runs the security probes against the deployment reachable through `client`.

    Args:
        client (httpx.AsyncClient): Client whose `base_url` points at the system under test.
        config (HarnessConfig): Target identifiers and probe limits.
        posture (CryptoPosture | None): Algorithms declared by the deployment, for the static checks.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        config: HarnessConfig,
        posture: CryptoPosture | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.client = client
        self.config = config
        self.posture = posture
        self.results: list[SecurityTestResult] = []
        self._clock = clock
        self._limiter: anyio.CapacityLimiter | None = None

    def _get_limiter(self) -> anyio.CapacityLimiter:
        if self._limiter is None:
            self._limiter = anyio.CapacityLimiter(self.config.max_concurrency)
        return self._limiter

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """
        Sends one probe request.

        Raises:
            ProbeFailure: If the target times out or is unreachable.
        """
        async with self._get_limiter():
            return await send_probe(self.client, method, path, self.config.http_timeout, **kwargs)

    async def _check(
        self,
        *,
        category: str,
        test: str,
        severity: Severity,
        description: str,
        recommendation: str | None,
        send: Callable[[], Awaitable[T]],
        judge: Callable[[T], Judgment],
    ) -> SecurityTestResult:
        with tracer.start_as_current_span("security.probe") as span:
            span.set_attribute("probe.category", category)
            span.set_attribute("probe.test", test)
            try:
                observed = await send()
                passed, details = judge(observed)
            except ProbeFailure as e:
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                logger.warning(f"Probe '{test}' could not reach its target: {e}")
                return SecurityTestResult(
                    category=category,
                    test=test,
                    passed=False,
                    severity=severity,
                    description=str(e),
                    recommendation=recommendation,
                )
            except Exception as e:  # a single probe never aborts the run
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, type(e).__name__))
                logger.exception(f"Probe '{test}' raised")
                return SecurityTestResult(
                    category=category,
                    test=test,
                    passed=False,
                    severity=severity,
                    description=f"Probe error: {type(e).__name__}",
                    recommendation=recommendation,
                    details={"error": str(e)},
                )
            span.set_attribute("probe.passed", passed)
            return SecurityTestResult(
                category=category,
                test=test,
                passed=passed,
                severity=severity,
                description=description,
                recommendation=recommendation,
                details=details,
            )

    async def _gather(self, checks: list[Callable[[], Awaitable[SecurityTestResult]]]) -> list[SecurityTestResult]:
        """Runs checks concurrently; results keep the order of `checks`."""
        results: list[SecurityTestResult | None] = [None] * len(checks)

        async def run(index: int, check: Callable[[], Awaitable[SecurityTestResult]]) -> None:
            results[index] = await check()

        async with anyio.create_task_group() as tg:
            for index, check in enumerate(checks):
                tg.start_soon(run, index, check)
        return [r for r in results if r is not None]

    def _authorize(self, **params: str) -> Callable[[], Awaitable[httpx.Response]]:
        return lambda: self._request("GET", "/oauth/authorize", params=params)

    async def test_sql_injection(self) -> list[SecurityTestResult]:
        """SQL payloads as `client_id`: each must be rejected with 4xx and not reflected."""
        redirect_uri = self.config.redirect_uri or "https://example.com/callback"

        def check(payload: str) -> Callable[[], Awaitable[SecurityTestResult]]:
            def judge(response: httpx.Response) -> Judgment:
                reflected = payload in response.text
                return is_rejected(response) and not reflected, {
                    "payload": payload,
                    "status": response.status_code,
                    "reflected": reflected,
                }

            return lambda: self._check(
                category="SQL Injection",
                test=f"SQL injection with payload: {payload}",
                severity=Severity.CRITICAL,
                description="SQL injection payloads in client_id must be rejected, not executed or reflected",
                recommendation="Use parameterized queries and exact-match client lookups",
                send=self._authorize(client_id=payload, redirect_uri=redirect_uri, response_type="code"),
                judge=judge,
            )

        return await self._gather([check(p) for p in SQL_INJECTION_PAYLOADS])

    async def test_xss(self) -> list[SecurityTestResult]:
        """Script payloads as `state` for an unknown client: rejected with 4xx and never reflected."""

        def check(payload: str) -> Callable[[], Awaitable[SecurityTestResult]]:
            def judge(response: httpx.Response) -> Judgment:
                reflected = payload in response.text
                return is_rejected(response) and not reflected, {
                    "payload": payload[:50],
                    "status": response.status_code,
                    "reflected": reflected,
                }

            return lambda: self._check(
                category="XSS",
                test=f"XSS with payload: {payload[:30]}",
                severity=Severity.HIGH,
                description="Script payloads must never be reflected into responses",
                recommendation="Never echo request parameters into error bodies; escape all HTML output",
                send=self._authorize(
                    state=payload, client_id="test", redirect_uri="https://example.com", response_type="code"
                ),
                judge=judge,
            )

        return await self._gather([check(p) for p in XSS_PAYLOADS])

    async def test_jwt_security(self) -> list[SecurityTestResult]:
        """Unsigned, foreign-signed and expired bearer tokens must all be rejected with 401."""
        now = int(self._clock())
        forged_claims = {
            "typ": "access_token",
            "sub": "test",
            "client_id": "malicious",
            "scope": "admin",
            "iat": now,
            "exp": now + 3600,
        }
        expired_claims = {**forged_claims, "iat": now - 7200, "exp": now - 3600}

        def userinfo_judge(response: httpx.Response) -> Judgment:
            return response.status_code == 401, {"status": response.status_code, "expectedStatus": 401}

        def bearer_check(
            test: str, severity: Severity, token: str, description: str, recommendation: str
        ) -> Callable[[], Awaitable[SecurityTestResult]]:
            return lambda: self._check(
                category="JWT Security",
                test=test,
                severity=severity,
                description=description,
                recommendation=recommendation,
                send=lambda: self._request("GET", "/oauth/userinfo", headers={"Authorization": f"Bearer {token}"}),
                judge=userinfo_judge,
            )

        checks = [
            bearer_check(
                "None algorithm attack",
                Severity.CRITICAL,
                unsigned_token(forged_claims),
                "Unsigned (alg=none) tokens must be rejected",
                "Validate JWT signatures with an explicit algorithm allow-list that excludes 'none'",
            ),
            bearer_check(
                "Forged signature",
                Severity.CRITICAL,
                foreign_token(forged_claims),
                "Tokens signed with an unknown key must be rejected",
                "Verify signatures against the server key only",
            ),
            bearer_check(
                "Expired token rejection",
                Severity.HIGH,
                foreign_token(expired_claims),
                "Expired tokens must be rejected",
                "Always check token expiration",
            ),
        ]

        if self.config.client_id and self.config.client_secret:
            auth = (self.config.client_id, self.config.client_secret.get_secret_value())
            none_token = unsigned_token(forged_claims)

            def introspect_judge(response: httpx.Response) -> Judgment:
                body = response.json() if response.status_code == 200 else None
                active = isinstance(body, dict) and body.get("active") is True
                return not active, {"status": response.status_code, "active": active}

            checks.append(
                lambda: self._check(
                    category="JWT Security",
                    test="None algorithm introspection",
                    severity=Severity.CRITICAL,
                    description="Introspection must report unsigned tokens as inactive",
                    recommendation="Never report tokens active without verifying their signature",
                    send=lambda: self._request("POST", "/oauth/introspect", data={"token": none_token}, auth=auth),
                    judge=introspect_judge,
                )
            )
        return await self._gather(checks)

    async def test_oauth_security(self) -> list[SecurityTestResult]:
        """Open redirect, state passthrough and PKCE availability. Needs a registered client."""
        client_id, redirect_uri = self.config.client_id, self.config.redirect_uri
        if not client_id or not redirect_uri:
            logger.info("Skipping OAuth security probes: client_id and redirect_uri are not configured")
            return []

        def redirect_check(candidate: str) -> Callable[[], Awaitable[SecurityTestResult]]:
            return lambda: self._check(
                category="OAuth Security",
                test=f"Open redirect test: {candidate}",
                severity=Severity.CRITICAL,
                description="Only exactly registered redirect URIs may be accepted",
                recommendation="Compare redirect URIs byte-exact against the registered set",
                send=self._authorize(client_id=client_id, redirect_uri=candidate, response_type="code"),
                judge=lambda r: (is_rejected(r), {"redirectUri": candidate, "status": r.status_code}),
            )

        state = secrets.token_urlsafe(16)

        def state_judge(response: httpx.Response) -> Judgment:
            query = parse_qs(urlsplit(response.headers.get("location", "")).query)
            # Informational: state is optional, so only its passthrough is reported.
            return True, {"status": response.status_code, "stateEchoed": query.get("state") == [state]}

        pkce_client = self.config.public_client_id or client_id
        challenge = compute_code_challenge(generate_code_verifier())

        checks = [redirect_check(c) for c in open_redirect_candidates(redirect_uri)]
        checks.append(
            lambda: self._check(
                category="OAuth Security",
                test="State parameter handling",
                severity=Severity.MEDIUM,
                description="state must be passed through unmodified for CSRF protection",
                recommendation="Encourage or require the state parameter",
                send=self._authorize(client_id=client_id, redirect_uri=redirect_uri, response_type="code", state=state),
                judge=state_judge,
            )
        )
        checks.append(
            lambda: self._check(
                category="OAuth Security",
                test="PKCE support",
                severity=Severity.HIGH,
                description="The authorize endpoint must accept code_challenge with S256",
                recommendation="Enforce PKCE for public clients and recommend it for confidential clients",
                send=self._authorize(
                    client_id=pkce_client,
                    redirect_uri=redirect_uri,
                    response_type="code",
                    code_challenge=challenge,
                    code_challenge_method=S256,
                ),
                judge=lambda r: (r.status_code < 400, {"status": r.status_code, "clientId": pkce_client}),
            )
        )
        return await self._gather(checks)

    async def test_saml_security(self) -> list[SecurityTestResult]:
        """Signature wrapping and XXE payloads posted to the SSO endpoint must be rejected with 4xx."""
        environment_id = self.config.environment_id
        if not environment_id:
            logger.info("Skipping SAML security probes: environment_id is not configured")
            return []
        path = f"/saml/{environment_id}/sso"
        destination = f"{self.config.base_url}{path}"

        def post(xml: str) -> Callable[[], Awaitable[httpx.Response]]:
            encoded = base64.b64encode(xml.encode("utf-8")).decode("ascii")
            return lambda: self._request("POST", path, data={"SAMLResponse": encoded})

        return await self._gather(
            [
                lambda: self._check(
                    category="SAML Security",
                    test="XML signature wrapping protection",
                    severity=Severity.CRITICAL,
                    description="Responses with more than one assertion must be rejected",
                    recommendation="Process exactly one assertion, the one the verified signature references",
                    send=post(signature_wrapping_payload(destination)),
                    judge=lambda r: (is_rejected(r), {"status": r.status_code}),
                ),
                lambda: self._check(
                    category="SAML Security",
                    test="XXE (XML External Entity) protection",
                    severity=Severity.CRITICAL,
                    description="Documents declaring a DTD or external entity must be rejected",
                    recommendation="Disable DTD and external entity processing in the XML parser",
                    send=post(xxe_payload()),
                    judge=lambda r: (is_rejected(r), {"status": r.status_code}),
                ),
            ]
        )

    def test_cryptography(self) -> list[SecurityTestResult]:
        """
        Static posture checks. Without a declared posture they are recorded as informational passes.
        """
        posture = self.posture

        def static(
            test: str,
            severity: Severity,
            description: str,
            recommendation: str,
            algorithm: str | None,
            acceptable: Callable[[str], bool],
        ) -> SecurityTestResult:
            verified = algorithm is not None
            return SecurityTestResult(
                category="Cryptography",
                test=test,
                passed=acceptable(algorithm) if algorithm is not None else True,
                severity=severity,
                description=description,
                recommendation=recommendation,
                details={"algorithm": algorithm, "verified": verified},
            )

        return [
            static(
                "Password hashing algorithm",
                Severity.CRITICAL,
                "Client secrets must be hashed with a deliberately slow KDF",
                "Use argon2id, bcrypt or scrypt",
                posture.password_kdf if posture else None,
                lambda alg: alg.lower() in SLOW_KDFS,
            ),
            static(
                "Data encryption algorithm",
                Severity.HIGH,
                "Symmetric encryption must use an AEAD cipher",
                "Use AES-256-GCM or ChaCha20-Poly1305",
                posture.symmetric_cipher if posture else None,
                lambda alg: alg in AEAD_CIPHERS,
            ),
            static(
                "JWT signing algorithm",
                Severity.HIGH,
                "Tokens must be signed with an HMAC or asymmetric algorithm",
                "Use RS256, ES256 or PS256 in production, and never 'none'",
                posture.token_signing_algorithm if posture else None,
                lambda alg: alg.startswith(SIGNING_ALGORITHM_FAMILIES),
            ),
        ]

    async def test_rate_limiting(self) -> list[SecurityTestResult]:
        """
        Fires a burst at the configured endpoint from a fresh caller identity; passes iff any answer is 429.
        """
        endpoint = self.config.rate_limit_endpoint
        count = self.config.rate_limit_probe_requests
        method = "POST" if endpoint in _POST_ENDPOINTS else "GET"
        headers = {"X-Forwarded-For": f"rate-limit-probe-{secrets.token_hex(6)}"}
        data = {"grant_type": "client_credentials", "client_id": "rate-limit-probe"} if method == "POST" else None

        async def burst() -> list[int]:
            statuses: list[int] = []
            failures: list[str] = []

            async def fire() -> None:
                try:
                    response = await self._request(method, endpoint, headers=headers, data=data)
                except ProbeFailure as e:
                    failures.append(str(e))
                    return
                statuses.append(response.status_code)

            async with anyio.create_task_group() as tg:
                for _ in range(count):
                    tg.start_soon(fire)
            if not statuses:
                raise ProbeFailure(failures[0] if failures else f"No response from {endpoint}")
            return statuses

        def judge(statuses: list[int]) -> Judgment:
            limited = statuses.count(429)
            return limited > 0, {
                "endpoint": endpoint,
                "requestsSent": count,
                "responses": len(statuses),
                "rateLimitedResponses": limited,
            }

        return [
            await self._check(
                category="Rate Limiting",
                test=f"Rate limiting on {endpoint}",
                severity=Severity.HIGH,
                description="Bursts against public endpoints must be throttled",
                recommendation="Apply rate limiting on all public endpoints",
                send=burst,
                judge=judge,
            )
        ]

    async def run_all(self) -> list[SecurityTestResult]:
        """
        Runs every probe. Independent probes run concurrently; rate limiting runs last.

        Returns:
            list[SecurityTestResult]: The results of this run, in a stable category order.
        """
        groups: list[Callable[[], Awaitable[list[SecurityTestResult]]]] = [
            self.test_sql_injection,
            self.test_xss,
            self.test_jwt_security,
            self.test_oauth_security,
            self.test_saml_security,
        ]
        collected: list[list[SecurityTestResult]] = [[] for _ in groups]

        async def run(index: int, group: Callable[[], Awaitable[list[SecurityTestResult]]]) -> None:
            collected[index] = await group()

        logger.info(f"Running security validation against {self.config.base_url}")
        async with anyio.create_task_group() as tg:
            for index, group in enumerate(groups):
                tg.start_soon(run, index, group)

        results = [r for group_results in collected for r in group_results]
        results.extend(self.test_cryptography())
        results.extend(await self.test_rate_limiting())
        self.results.extend(results)

        failed = sum(1 for r in results if not r.passed)
        logger.info(f"Security validation finished: {len(results) - failed} passed, {failed} failed")
        return results

    def report(self) -> ValidationReport:
        return ValidationReport(security=tuple(self.results))
