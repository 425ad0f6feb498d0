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
Data models for the coreason-federation package.

Configuration records (`Client`, `SamlEnvironment`) are validated once at construction and are
frozen afterwards. Protocol artifacts (`SamlAssertion`, `SamlResponse`) and report entries
(`ValidationResult`, `SecurityTestResult`) are values: they are never mutated after creation.
"""

from datetime import datetime
from enum import StrEnum
from typing import Any
from urllib.parse import urlencode, urlsplit, urlunsplit

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

NAMEID_EMAIL = "urn:oasis:names:tc:SAML:1.1:nameid-format:emailAddress"
NAMEID_PERSISTENT = "urn:oasis:names:tc:SAML:2.0:nameid-format:persistent"
NAMEID_TRANSIENT = "urn:oasis:names:tc:SAML:2.0:nameid-format:transient"
NAMEID_UNSPECIFIED = "urn:oasis:names:tc:SAML:1.1:nameid-format:unspecified"

STATUS_SUCCESS = "urn:oasis:names:tc:SAML:2.0:status:Success"
STATUS_REQUESTER = "urn:oasis:names:tc:SAML:2.0:status:Requester"
STATUS_RESPONDER = "urn:oasis:names:tc:SAML:2.0:status:Responder"

AUTHN_CONTEXT_PASSWORD_PROTECTED = "urn:oasis:names:tc:SAML:2.0:ac:classes:PasswordProtectedTransport"


class GrantType(StrEnum):
    AUTHORIZATION_CODE = "authorization_code"
    CLIENT_CREDENTIALS = "client_credentials"
    REFRESH_TOKEN = "refresh_token"


class SamlRole(StrEnum):
    IDP = "idp"
    SP = "sp"


class Severity(StrEnum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class Client(BaseModel):
    """
    A registered OAuth 2.0 client.

    A redirect URI presented at any stage must be a byte-exact member of `redirect_uris`.
    Confidential clients (`is_public=False`) never obtain tokens without a verified secret.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(..., description="Internal record id.")
    client_id: str = Field(..., min_length=1, description="Public client identifier.")
    client_secret_hash: str | None = Field(default=None, description="Argon2 hash of the client secret.")
    redirect_uris: tuple[str, ...] = Field(..., description="Allowed redirect URIs, compared byte-exact.")
    grant_types: frozenset[GrantType] = frozenset({GrantType.AUTHORIZATION_CODE})
    scopes: frozenset[str] = Field(default=frozenset(), description="Allowed scopes. Empty means unrestricted.")
    access_token_lifetime: int = Field(default=3600, gt=0)
    refresh_token_lifetime: int = Field(default=2_592_000, gt=0)
    auto_approve: bool = False
    is_public: bool = False

    @field_validator("redirect_uris")
    @classmethod
    def validate_redirect_uris(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        if not v:
            raise ValueError("At least one redirect URI must be registered")
        for uri in v:
            parts = urlsplit(uri)
            if not parts.scheme or not parts.netloc:
                raise ValueError(f"Redirect URI must be absolute: {uri!r}")
            if parts.fragment:
                raise ValueError(f"Redirect URI must not contain a fragment: {uri!r}")
        return v

    @model_validator(mode="after")
    def check_secret_for_confidential(self) -> "Client":
        if not self.is_public and not self.client_secret_hash:
            raise ValueError("Confidential clients require a client_secret_hash")
        if self.is_public and GrantType.CLIENT_CREDENTIALS in self.grant_types:
            raise ValueError("Public clients cannot use the client_credentials grant")
        return self

    def allows_redirect(self, redirect_uri: str) -> bool:
        """Exact-match comparison only: no prefix, suffix, case or normalization tolerance."""
        return redirect_uri in self.redirect_uris

    def __repr__(self) -> str:
        return (
            f"Client(client_id={self.client_id!r}, client_secret_hash='<REDACTED>', "
            f"grant_types={sorted(self.grant_types)!r}, is_public={self.is_public!r})"
        )


class AuthorizationGrant(BaseModel):
    """
    Result of a successful authorization request: the code plus the opaque, echoed `state`.
    """

    model_config = ConfigDict(frozen=True)

    code: str
    redirect_uri: str
    state: str | None = None

    def redirect_url(self) -> str:
        """
        The redirect URI with `code` (and `state`, unmodified) appended to its query.
        """
        parts = urlsplit(self.redirect_uri)
        params: dict[str, str] = {"code": self.code}
        if self.state is not None:
            params["state"] = self.state
        query = f"{parts.query}&{urlencode(params)}" if parts.query else urlencode(params)
        return urlunsplit((parts.scheme, parts.netloc, parts.path, query, ""))


class TokenResponse(BaseModel):
    """
    Response of the token endpoint.

    Attributes:
        access_token (str): The signed access token.
        token_type (str): Always "Bearer".
        expires_in (int): Lifetime of the access token in seconds.
        scope (str | None): Space separated granted scopes.
        refresh_token (str | None): Present only for clients with the refresh_token grant enabled.
    """

    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    scope: str | None = None
    refresh_token: str | None = None

    def to_body(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class AccessTokenRecord(BaseModel):
    """Server-side record of an issued access token, keyed by the token fingerprint."""

    model_config = ConfigDict(frozen=True)

    fingerprint: str
    client_id: str
    scope: tuple[str, ...] = ()
    issued_at: float
    expires_at: float
    refresh_token: str | None = None


class RefreshTokenRecord(BaseModel):
    """Server-side record of a refresh token, keyed by the token value."""

    model_config = ConfigDict(frozen=True)

    token: str
    client_id: str
    scope: tuple[str, ...] = ()
    issued_at: float
    expires_at: float
    access_token_fingerprint: str | None = None


class ConsumedCodeRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    jti: str
    client_id: str
    consumed_at: float
    expires_at: float


class TestPrincipal(BaseModel):
    """A user the simulated IdP asserts during SSO."""

    __test__ = False

    model_config = ConfigDict(frozen=True, extra="forbid")

    email: EmailStr
    first_name: str = "Test"
    last_name: str = "User"
    custom_attributes: dict[str, str] = Field(default_factory=dict)

    def claims(self) -> dict[str, str]:
        """Internal claim names available for attribute mapping."""
        return {"email": str(self.email), "firstName": self.first_name, "lastName": self.last_name}


DEFAULT_TEST_PRINCIPAL = TestPrincipal(email="test@mockauth.dev")


class SamlEnvironment(BaseModel):
    """
    A simulated SAML 2.0 entity.

    `attribute_mapping` maps an external SAML attribute name to an internal claim name
    (e.g. `{"http://schemas.xmlsoap.org/ws/2005/05/identity/claims/emailaddress": "email"}`).
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str
    name: str = "SAML environment"
    entity_id: str = Field(..., min_length=1)
    role: SamlRole
    sso_url: str | None = None
    slo_url: str | None = None
    acs_url: str | None = None
    name_id_format: str = NAMEID_EMAIL
    assertion_lifetime: int = Field(default=300, gt=0)
    sign_assertions: bool = True
    sign_response: bool = False
    encrypt_assertions: bool = False
    attribute_mapping: dict[str, str] = Field(default_factory=dict)
    test_principals: tuple[TestPrincipal, ...] = ()

    @model_validator(mode="after")
    def check_role_endpoints(self) -> "SamlEnvironment":
        if self.role is SamlRole.IDP and not self.sso_url:
            raise ValueError("IdP environments require sso_url")
        if self.role is SamlRole.SP and not self.acs_url:
            raise ValueError("SP environments require acs_url")
        return self

    def default_principal(self) -> TestPrincipal:
        return self.test_principals[0] if self.test_principals else DEFAULT_TEST_PRINCIPAL


class SamlAssertion(BaseModel):
    """
    A SAML 2.0 assertion value.

    Invariants: `not_on_or_after > not_before`, and `not_on_or_after - issue_instant`
    equals the issuing environment's assertion lifetime.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    issuer: str
    name_id: str
    name_id_format: str = NAMEID_EMAIL
    issue_instant: datetime
    not_before: datetime
    not_on_or_after: datetime
    audience: str
    recipient: str
    in_response_to: str | None = None
    session_index: str
    authn_instant: datetime
    authn_context_class: str = AUTHN_CONTEXT_PASSWORD_PROTECTED
    attributes: tuple[tuple[str, str], ...] = ()

    @model_validator(mode="after")
    def check_window(self) -> "SamlAssertion":
        if self.not_on_or_after <= self.not_before:
            raise ValueError("NotOnOrAfter must be strictly after NotBefore")
        return self


class SamlResponse(BaseModel):
    """A SAML 2.0 `samlp:Response` wrapping zero or one assertion."""

    model_config = ConfigDict(frozen=True)

    id: str
    issuer: str
    destination: str
    issue_instant: datetime
    status_code: str = STATUS_SUCCESS
    in_response_to: str | None = None
    assertion: SamlAssertion | None = None

    @property
    def is_idp_initiated(self) -> bool:
        return self.in_response_to is None


class ParsedSamlFields(BaseModel):
    """
    Fields extracted from arbitrary SAML XML. Every field is independently optional.

    `has_signature_element` and `has_encryption_element` are structural claims (the elements are
    present); they are not cryptographic proof. `signature_verified` is only set when a verifier
    was supplied to the parser.
    """

    model_config = ConfigDict(frozen=True)

    root_element: str
    id: str | None = None
    issuer: str | None = None
    name_id: str | None = None
    name_id_format: str | None = None
    destination: str | None = None
    in_response_to: str | None = None
    issue_instant: datetime | None = None
    status: str | None = None
    is_success: bool | None = None
    attributes: dict[str, str] = Field(default_factory=dict)
    attribute_values: dict[str, list[str]] = Field(default_factory=dict)
    session_index: str | None = None
    audience: str | None = None
    recipient: str | None = None
    not_before: datetime | None = None
    not_on_or_after: datetime | None = None
    has_conditions: bool = False
    has_signature_element: bool = False
    has_encryption_element: bool = False
    assertion_count: int = 0
    signature_verified: bool | None = None


class MetadataSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    entity_id: str | None = None
    sso_url: str | None = None
    slo_url: str | None = None
    acs_url: str | None = None
    name_id_formats: tuple[str, ...] = ()
    role: SamlRole | None = None


class SamlSessionRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    session_id: str
    environment_id: str
    name_id: str
    attributes: dict[str, str]
    created_at: float
    expires_at: float


class ValidationResult(BaseModel):
    """Outcome of one OAuth or SAML flow validation."""

    model_config = ConfigDict(frozen=True)

    flow: str
    passed: bool
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    details: dict[str, Any] = Field(default_factory=dict)


class SecurityTestResult(BaseModel):
    """Outcome of one adversarial probe."""

    model_config = ConfigDict(frozen=True)

    category: str
    test: str
    passed: bool
    severity: Severity
    description: str
    recommendation: str | None = None
    details: dict[str, Any] | None = None
