# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_federation

from datetime import UTC, datetime, timedelta

import pytest
from pydantic import ValidationError

from coreason_federation.crypto import SecretHasher
from coreason_federation.models import (
    DEFAULT_TEST_PRINCIPAL,
    AuthorizationGrant,
    GrantType,
    SamlAssertion,
    SamlEnvironment,
    SamlResponse,
    SamlRole,
    TestPrincipal,
    TokenResponse,
)
from tests.conftest import REDIRECT_URI, make_client


def test_client_redirect_exact_match(hasher: SecretHasher) -> None:
    client = make_client(hasher)
    assert client.allows_redirect(REDIRECT_URI)
    assert not client.allows_redirect(REDIRECT_URI + "/")
    assert not client.allows_redirect(REDIRECT_URI.upper())


@pytest.mark.parametrize("uris", [(), ("/relative",), ("https://app.example.com/cb#frag",)])
def test_client_rejects_bad_redirect_uris(hasher: SecretHasher, uris: tuple[str, ...]) -> None:
    with pytest.raises(ValidationError):
        make_client(hasher, redirect_uris=uris)


def test_confidential_client_needs_secret_hash(hasher: SecretHasher) -> None:
    with pytest.raises(ValidationError, match="client_secret_hash"):
        make_client(hasher, client_secret_hash=None)


def test_public_client_cannot_use_client_credentials(hasher: SecretHasher) -> None:
    with pytest.raises(ValidationError, match="client_credentials"):
        make_client(hasher, is_public=True, grant_types=frozenset({GrantType.CLIENT_CREDENTIALS}))


def test_client_is_frozen_and_repr_redacts_hash(hasher: SecretHasher) -> None:
    client = make_client(hasher)
    with pytest.raises(ValidationError):
        client.client_id = "other"  # type: ignore[misc]
    assert "argon2" not in repr(client)
    assert "<REDACTED>" in repr(client)


def test_client_rejects_unknown_fields(hasher: SecretHasher) -> None:
    with pytest.raises(ValidationError):
        make_client(hasher, unexpected=True)


def test_authorization_grant_redirect_url() -> None:
    grant = AuthorizationGrant(code="abc", redirect_uri="https://app/cb?x=1", state="s t&")
    assert grant.redirect_url() == "https://app/cb?x=1&code=abc&state=s+t%26"
    assert AuthorizationGrant(code="abc", redirect_uri="https://app/cb").redirect_url() == "https://app/cb?code=abc"


def test_token_response_body_omits_missing_fields() -> None:
    body = TokenResponse(access_token="at", expires_in=60).to_body()
    assert body == {"access_token": "at", "token_type": "Bearer", "expires_in": 60}


def test_environment_role_requirements() -> None:
    with pytest.raises(ValidationError, match="sso_url"):
        SamlEnvironment(id="e", entity_id="urn:e", role=SamlRole.IDP)
    with pytest.raises(ValidationError, match="acs_url"):
        SamlEnvironment(id="e", entity_id="urn:e", role=SamlRole.SP)
    with pytest.raises(ValidationError):
        SamlEnvironment(id="e", entity_id="urn:e", role=SamlRole.SP, acs_url="https://sp/acs", assertion_lifetime=0)


def test_environment_default_principal(idp_environment: SamlEnvironment) -> None:
    assert idp_environment.default_principal() == DEFAULT_TEST_PRINCIPAL
    principal = TestPrincipal(email="alice@example.com", first_name="Alice")
    env = idp_environment.model_copy(update={"test_principals": (principal,)})
    assert env.default_principal() is principal
    assert principal.claims() == {"email": "alice@example.com", "firstName": "Alice", "lastName": "User"}


def test_principal_email_validated() -> None:
    with pytest.raises(ValidationError):
        TestPrincipal(email="not-an-email")


def _assertion(**overrides: object) -> SamlAssertion:
    now = datetime(2025, 1, 1, tzinfo=UTC)
    values: dict[str, object] = {
        "id": "_a",
        "issuer": "urn:idp",
        "name_id": "user@example.com",
        "issue_instant": now,
        "not_before": now - timedelta(minutes=5),
        "not_on_or_after": now + timedelta(minutes=5),
        "audience": "urn:sp",
        "recipient": "https://sp/acs",
        "session_index": "_s",
        "authn_instant": now,
    }
    values.update(overrides)
    return SamlAssertion(**values)  # type: ignore[arg-type]


def test_assertion_window_must_be_positive() -> None:
    now = datetime(2025, 1, 1, tzinfo=UTC)
    with pytest.raises(ValidationError, match="NotOnOrAfter"):
        _assertion(not_before=now, not_on_or_after=now)


def test_response_initiation() -> None:
    now = datetime(2025, 1, 1, tzinfo=UTC)
    response = SamlResponse(id="_r", issuer="urn:idp", destination="https://sp/acs", issue_instant=now)
    assert response.is_idp_initiated
    sp_initiated = response.model_copy(update={"in_response_to": "_req", "assertion": _assertion()})
    assert not sp_initiated.is_idp_initiated
