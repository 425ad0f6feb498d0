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
Configuration for the coreason-federation package.
"""

from typing import Literal

from pydantic import Field, SecretStr, ValidationInfo, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MAX_AUTHORIZATION_CODE_TTL = 600


class FederationConfig(BaseSettings):
    """
    Settings for the protocol simulation engines.

    Attributes:
        token_secret (SecretStr): HMAC key for authorization codes and access tokens.
        token_algorithm (str): JWS algorithm used by the token codec.
        issuer (str): Issuer URL embedded in access tokens and used as base for endpoints.
        authorization_code_ttl (int): Lifetime of authorization codes in seconds (at most 600).
        refresh_token_entropy_bytes (int): Random bytes behind each refresh token.
        store_timeout (float): Timeout in seconds for every credential store call.
        clock_skew_tolerance (int): Seconds subtracted from `NotBefore` on built assertions.
        pii_salt (SecretStr): Salt for anonymizing client identifiers in logs.
        encryption_key (SecretStr | None): 32-byte hex key for the AES-256-GCM secret box.
        enforce_single_use_codes (bool): Track consumed authorization codes in the store.
        unsafe_local_dev (bool): Allow a plain-http issuer.
    """

    model_config = SettingsConfigDict(
        env_prefix="COREASON_FED_",
        case_sensitive=False,
    )

    token_secret: SecretStr
    token_algorithm: Literal["HS256", "HS384", "HS512"] = "HS256"
    unsafe_local_dev: bool = False
    issuer: str = "https://federation.coreason.local"
    authorization_code_ttl: int = Field(default=MAX_AUTHORIZATION_CODE_TTL, gt=0, le=MAX_AUTHORIZATION_CODE_TTL)
    refresh_token_entropy_bytes: int = Field(default=64, ge=32)
    store_timeout: float = Field(default=5.0, gt=0)
    clock_skew_tolerance: int = Field(default=300, gt=0)
    pii_salt: SecretStr = SecretStr("coreason-unsafe-default-salt")
    encryption_key: SecretStr | None = None
    enforce_single_use_codes: bool = True

    @field_validator("token_secret")
    @classmethod
    def validate_secret_strength(cls, v: SecretStr) -> SecretStr:
        """
        HMAC keys shorter than the SHA-256 block output are rejected.
        """
        if len(v.get_secret_value().encode("utf-8")) < 32:
            raise ValueError("token_secret must be at least 32 bytes long")
        return v

    @field_validator("encryption_key")
    @classmethod
    def validate_encryption_key(cls, v: SecretStr | None) -> SecretStr | None:
        if v is None:
            return v
        raw = v.get_secret_value()
        try:
            key = bytes.fromhex(raw)
        except ValueError as e:
            raise ValueError("encryption_key must be hex encoded") from e
        if len(key) != 32:
            raise ValueError("encryption_key must decode to exactly 32 bytes (AES-256)")
        return v

    @field_validator("issuer", mode="after")
    @classmethod
    def validate_https(cls, v: str, info: ValidationInfo) -> str:
        """
        Ensures the issuer uses HTTPS, unless strictly opted out for local dev.
        """
        if v.startswith("http://") and not info.data.get("unsafe_local_dev", False):
            raise ValueError("HTTPS is required for production. Set 'unsafe_local_dev=True' only for local testing.")
        return v.rstrip("/")


class HarnessConfig(BaseSettings):
    """
    Settings for the flow validators and the security validation harness.

    Attributes:
        base_url (str): Root URL of the system under test.
        http_timeout (float): Timeout in seconds for every probe request.
        client_id (str | None): OAuth client used by flow and redirect probes.
        client_secret (SecretStr | None): Secret of `client_id`, for token flows.
        redirect_uri (str | None): A redirect URI registered for `client_id`.
        environment_id (str | None): SAML environment targeted by SSO probes.
        sp_environment_id (str | None): SAML SP environment whose metadata is validated.
        public_client_id (str | None): Public OAuth client used by the PKCE probes, registered for `redirect_uri`.
        rate_limit_probe_requests (int): Burst size fired by the rate-limit probe.
        rate_limit_endpoint (str): Path targeted by the rate-limit probe.
        max_concurrency (int): Upper bound on in-flight probe requests.
    """

    model_config = SettingsConfigDict(
        env_prefix="COREASON_HARNESS_",
        case_sensitive=False,
    )

    base_url: str = "http://localhost:3000"
    http_timeout: float = Field(..., gt=0, description="Timeout in seconds for all probe requests.")
    client_id: str | None = None
    client_secret: SecretStr | None = None
    redirect_uri: str | None = None
    environment_id: str | None = None
    sp_environment_id: str | None = None
    public_client_id: str | None = None
    rate_limit_probe_requests: int = Field(default=20, ge=1)
    rate_limit_endpoint: str = "/oauth/token"
    max_concurrency: int = Field(default=10, ge=1)

    @field_validator("base_url")
    @classmethod
    def normalize_base_url(cls, v: str) -> str:
        v = v.strip()
        if "://" not in v:
            raise ValueError("base_url must include a scheme (e.g. https://)")
        return v.rstrip("/")

    @model_validator(mode="after")
    def check_rate_limit_endpoint(self) -> "HarnessConfig":
        if not self.rate_limit_endpoint.startswith("/"):
            self.rate_limit_endpoint = f"/{self.rate_limit_endpoint}"
        return self
