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
In-process HTTP transport serving the federation endpoints.

Plugging `FederationTransport` into an `httpx.AsyncClient` lets the security harness and flow
validators drive the engines through a real HTTP boundary without a network listener.
"""

import json
import re
from collections.abc import Awaitable, Callable, Mapping
from urllib.parse import parse_qsl

import httpx

from coreason_federation.endpoints import EndpointResponse, FederationEndpoints, parse_basic_auth
from coreason_federation.exceptions import InvalidClientError
from coreason_federation.rate_limiter import RateLimiter
from coreason_federation.utils.logger import logger

Params = dict[str, str]
Handler = Callable[[re.Match[str], Params, httpx.Request], Awaitable[EndpointResponse]]


def _first_wins(items: list[tuple[str, str]]) -> Params:
    params: Params = {}
    for key, value in items:
        params.setdefault(key, value)
    return params


def caller_identity(request: httpx.Request, form: Mapping[str, str]) -> str:
    """
    Rate limit key: first `X-Forwarded-For` hop, else the Basic auth client id, else the form
    `client_id`, else `anonymous`.
    """
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    try:
        credentials = parse_basic_auth(request.headers.get("authorization"))
    except InvalidClientError:
        # The endpoint rejects the malformed header itself; the limiter only needs a key.
        credentials = None
    if credentials is not None and credentials[0]:
        return credentials[0]
    return form.get("client_id") or "anonymous"


class FederationTransport(httpx.AsyncBaseTransport):
    """
    Routes requests onto `FederationEndpoints`.

    Rate limiting happens here, before a request reaches an endpoint; the engines never see it.

    Args:
        endpoints (FederationEndpoints): The handlers.
        rate_limiters (Mapping[str, RateLimiter] | None): Limiter per exact request path.
    """

    def __init__(
        self,
        endpoints: FederationEndpoints,
        rate_limiters: Mapping[str, RateLimiter] | None = None,
    ) -> None:
        self.endpoints = endpoints
        self.rate_limiters = dict(rate_limiters or {})
        self._routes: list[tuple[re.Pattern[str], frozenset[str], Handler]] = [
            (re.compile(r"^/oauth/authorize$"), frozenset({"GET"}), self._authorize),
            (re.compile(r"^/oauth/token$"), frozenset({"POST"}), self._token),
            (re.compile(r"^/oauth/userinfo$"), frozenset({"GET", "POST"}), self._userinfo),
            (re.compile(r"^/oauth/revoke$"), frozenset({"POST"}), self._revoke),
            (re.compile(r"^/oauth/introspect$"), frozenset({"POST"}), self._introspect),
            (re.compile(r"^/saml/(?P<id>[^/]+)/sso$"), frozenset({"GET", "POST"}), self._sso),
            (re.compile(r"^/saml/(?P<id>[^/]+)/metadata$"), frozenset({"GET"}), self._metadata),
        ]

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        body = await request.aread()
        params = self._decode_params(request, body)

        limiter = self.rate_limiters.get(path)
        if limiter is not None:
            # Budgets are per path and per caller, so one client exhausting /oauth/token leaves others alone.
            decision = await limiter.hit(f"{path}:{caller_identity(request, params)}")
            if not decision.allowed:
                logger.warning(f"Rate limit exceeded on {path}")
                return self._to_httpx(
                    EndpointResponse(
                        status_code=429,
                        body={"error": "rate_limit_exceeded", "error_description": "Too many requests"},
                        headers=decision.headers(),
                    ),
                    request,
                )
            extra_headers = decision.headers()
        else:
            extra_headers = {}

        for pattern, methods, handler in self._routes:
            match = pattern.match(path)
            if match is None:
                continue
            if request.method not in methods:
                result = EndpointResponse(
                    status_code=405,
                    body={"error": "method_not_allowed"},
                    headers={"Allow": ", ".join(sorted(methods))},
                )
            else:
                result = await handler(match, params, request)
            break
        else:
            result = EndpointResponse(status_code=404, body={"error": "not_found"})

        if extra_headers:
            result = result.model_copy(update={"headers": {**extra_headers, **result.headers}})
        logger.debug(f"{request.method} {path} -> {result.status_code}")
        return self._to_httpx(result, request)

    @staticmethod
    def _decode_params(request: httpx.Request, body: bytes) -> Params:
        """Query parameters, overlaid by form or JSON body fields. The first occurrence of a key wins."""
        params = _first_wins(list(request.url.params.multi_items()))
        if not body:
            return params
        content_type = request.headers.get("content-type", "")
        if content_type.startswith("application/json"):
            try:
                payload = json.loads(body)
            except ValueError:
                return params
            if isinstance(payload, dict):
                params.update({str(k): str(v) for k, v in payload.items() if v is not None})
        else:
            params.update(_first_wins(parse_qsl(body.decode("utf-8", errors="replace"), keep_blank_values=True)))
        return params

    @staticmethod
    def _to_httpx(result: EndpointResponse, request: httpx.Request) -> httpx.Response:
        headers = dict(result.headers)
        if isinstance(result.body, str):
            headers.setdefault("Content-Type", f"{result.media_type}; charset=utf-8")
            return httpx.Response(result.status_code, headers=headers, text=result.body, request=request)
        return httpx.Response(result.status_code, headers=headers, json=result.body, request=request)

    async def _authorize(self, match: re.Match[str], params: Params, request: httpx.Request) -> EndpointResponse:
        return await self.endpoints.authorize(params)

    async def _token(self, match: re.Match[str], params: Params, request: httpx.Request) -> EndpointResponse:
        return await self.endpoints.token(params, request.headers.get("authorization"))

    async def _userinfo(self, match: re.Match[str], params: Params, request: httpx.Request) -> EndpointResponse:
        return await self.endpoints.userinfo(request.headers.get("authorization"))

    async def _revoke(self, match: re.Match[str], params: Params, request: httpx.Request) -> EndpointResponse:
        return await self.endpoints.revoke(params, request.headers.get("authorization"))

    async def _introspect(self, match: re.Match[str], params: Params, request: httpx.Request) -> EndpointResponse:
        return await self.endpoints.introspect(params, request.headers.get("authorization"))

    async def _sso(self, match: re.Match[str], params: Params, request: httpx.Request) -> EndpointResponse:
        return await self.endpoints.saml_sso(match.group("id"), params)

    async def _metadata(self, match: re.Match[str], params: Params, request: httpx.Request) -> EndpointResponse:
        return await self.endpoints.saml_metadata(match.group("id"))
