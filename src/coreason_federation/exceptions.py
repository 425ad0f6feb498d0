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
Custom exceptions for the coreason-federation package.
"""

from typing import Any


class CoreasonFederationError(Exception):
    """Base exception for all coreason-federation errors."""


class OAuthError(CoreasonFederationError):
    """
    Base class for errors that map onto an OAuth 2.0 error response.

    Attributes:
        error (str): The OAuth error code (e.g. `invalid_grant`).
        description (str): Human readable `error_description`.
        status_code (int): The HTTP-style status associated with the error.
    """

    error = "server_error"
    status_code = 400

    def __init__(self, description: str = "", *, status_code: int | None = None) -> None:
        super().__init__(description or self.error)
        self.description = description
        if status_code is not None:
            self.status_code = status_code

    def to_body(self) -> dict[str, Any]:
        """Renders the error as an OAuth error object."""
        body: dict[str, Any] = {"error": self.error}
        if self.description:
            body["error_description"] = self.description
        return body


class InvalidClientError(OAuthError):
    """Unknown client, or client secret mismatch."""

    error = "invalid_client"


class InvalidRequestError(OAuthError):
    """Malformed or policy-violating request (e.g. unregistered redirect URI)."""

    error = "invalid_request"


class UnsupportedGrantTypeError(OAuthError):
    """The requested grant type is not implemented by the engine."""

    error = "unsupported_grant_type"


class UnsupportedResponseTypeError(OAuthError):
    error = "unsupported_response_type"


class InvalidGrantError(OAuthError):
    """Authorization code or refresh token is expired, forged, replayed or mismatched."""

    error = "invalid_grant"


class InvalidTokenError(OAuthError):
    """Bearer token presented to a protected resource is invalid, expired or revoked."""

    error = "invalid_token"
    status_code = 401


class TemporarilyUnavailableError(OAuthError):
    """The credential store did not answer within its timeout."""

    error = "temporarily_unavailable"
    status_code = 503


class TokenCodecError(CoreasonFederationError):
    """Base class for token codec failures. Only two concrete types exist."""


class ExpiredTokenError(TokenCodecError):
    """Raised when the embedded expiry of a token has passed."""


class InvalidSignatureError(TokenCodecError):
    """Raised when a token's signature does not verify, or the token is malformed."""


class SamlParseError(CoreasonFederationError):
    """Raised when SAML input is neither XML nor base64-encoded XML, or is unsafe to parse."""


class StoreTimeoutError(CoreasonFederationError):
    """Raised when a credential store operation exceeds its timeout."""


class ProbeFailure(CoreasonFederationError):
    """Raised inside the security harness when a probe cannot reach its target."""
