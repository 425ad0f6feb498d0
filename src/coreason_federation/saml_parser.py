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
Extraction of structured fields from arbitrary SAML XML, and time-window validation.

Parsing goes through defusedxml with DTDs forbidden, so a document carrying a `DOCTYPE` (and with it
any internal or external entity) is a hard parse failure rather than an expansion.
"""

import base64
import binascii
import zlib
from collections.abc import Iterator
from datetime import UTC, datetime
from typing import Any
from xml.etree.ElementTree import Element, ParseError

from defusedxml import DefusedXmlException
from defusedxml.ElementTree import fromstring
from opentelemetry import trace

from coreason_federation.crypto import SecretBox
from coreason_federation.exceptions import CoreasonFederationError, SamlParseError
from coreason_federation.models import MetadataSummary, ParsedSamlFields, SamlRole
from coreason_federation.signing import Verifier
from coreason_federation.utils.logger import logger

tracer = trace.get_tracer(__name__)

NOT_YET_VALID = "not yet valid"
EXPIRED = "expired"

_ENCRYPTION_ELEMENTS = frozenset({"EncryptedAssertion", "EncryptedData", "EncryptedAttribute", "EncryptedID"})


def local_name(tag: Any) -> str:
    if not isinstance(tag, str):
        return ""
    return tag.rsplit("}", 1)[-1]


def _find_all(roots: list[Element], name: str) -> Iterator[Element]:
    for root in roots:
        for element in root.iter():
            if local_name(element.tag) == name:
                yield element


def _first(roots: list[Element], name: str) -> Element | None:
    return next(_find_all(roots, name), None)


def _text(element: Element | None) -> str | None:
    if element is None or element.text is None:
        return None
    return element.text.strip() or None


def parse_instant(value: str | None) -> datetime | None:
    """Parses an xs:dateTime. Unparseable values are an optional-field miss, not an error."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def decode_saml_payload(xml_or_base64: str | bytes) -> bytes:
    """
    Returns raw XML bytes. Input not starting with `<` is base64 decoded, then raw-inflated when the
    decoded bytes are not XML (HTTP-Redirect binding).

    Raises:
        SamlParseError: If the input is neither XML nor base64 of XML.
    """
    raw = xml_or_base64.encode("utf-8") if isinstance(xml_or_base64, str) else xml_or_base64
    raw = raw.strip()
    if raw.startswith(b"<"):
        return raw

    try:
        decoded = base64.b64decode(b"".join(raw.split()), validate=True)
    except (binascii.Error, ValueError) as e:
        raise SamlParseError("Input is neither XML nor base64") from e

    if decoded.lstrip().startswith(b"<"):
        return decoded.lstrip()
    try:
        inflated = zlib.decompress(decoded, -15)
    except zlib.error as e:
        raise SamlParseError("Decoded input is not XML") from e
    if not inflated.lstrip().startswith(b"<"):
        raise SamlParseError("Decoded input is not XML")
    return inflated.lstrip()


def load_document(xml: bytes) -> Element:
    """
    Parses XML with DTDs forbidden.

    Raises:
        SamlParseError: If the bytes are not well-formed XML or declare a DTD.
    """
    try:
        return fromstring(xml, forbid_dtd=True)
    except (DefusedXmlException, ParseError) as e:
        raise SamlParseError(f"Rejected SAML document: {type(e).__name__}") from e


def _decrypt_assertions(root: Element, secret_box: SecretBox) -> list[Element]:
    decrypted: list[Element] = []
    for encrypted in _find_all([root], "EncryptedAssertion"):
        cipher_value = _text(_first([encrypted], "CipherValue"))
        if cipher_value is None:
            continue
        try:
            plaintext = secret_box.open(base64.b64decode(cipher_value, validate=True))
        except (binascii.Error, ValueError, CoreasonFederationError) as e:
            logger.warning(f"Could not decrypt EncryptedAssertion: {e}")
            continue
        decrypted.append(load_document(plaintext))
    return decrypted


def parse(
    xml_or_base64: str | bytes,
    *,
    verifier: Verifier | None = None,
    secret_box: SecretBox | None = None,
) -> ParsedSamlFields:
    """
    Extracts issuer, subject, status, conditions, attributes and signature/encryption markers.

    Every extracted field is independently optional. Attribute names are keyed by their local name,
    i.e. the segment after the last `/` of a URI-style name.

    Args:
        xml_or_base64: Raw XML, or its base64 (optionally deflated) encoding.
        verifier: When given and a `Signature` element is present, sets `signature_verified`.
        secret_box: When given, `EncryptedAssertion` contents are decrypted and parsed too.

    Returns:
        ParsedSamlFields: The extracted fields.

    Raises:
        SamlParseError: If the input is not XML or base64 of XML, or declares a DTD.
    """
    with tracer.start_as_current_span("saml.parse") as span:
        xml = decode_saml_payload(xml_or_base64)
        root = load_document(xml)
        roots = [root]
        if secret_box is not None:
            roots.extend(_decrypt_assertions(root, secret_box))

        attributes: dict[str, str] = {}
        attribute_values: dict[str, list[str]] = {}
        for attribute in _find_all(roots, "Attribute"):
            name = (attribute.get("Name") or "").split("/")[-1]
            if not name:
                continue
            values = [v.text or "" for v in attribute.iter() if local_name(v.tag) == "AttributeValue"]
            attribute_values.setdefault(name, []).extend(values)
            attributes[name] = values[0] if values else ""

        status_code = _first(roots, "StatusCode")
        status = status_code.get("Value") if status_code is not None else None
        name_id = _first(roots, "NameID")
        conditions = _first(roots, "Conditions")
        authn_statement = _first(roots, "AuthnStatement")
        confirmation = _first(roots, "SubjectConfirmationData")

        has_signature = _first([root], "Signature") is not None
        signature_verified: bool | None = None
        if verifier is not None:
            signature_verified = has_signature and verifier.verify(xml)

        fields = ParsedSamlFields(
            root_element=local_name(root.tag),
            id=root.get("ID"),
            issuer=_text(_first(roots, "Issuer")),
            name_id=_text(name_id),
            name_id_format=name_id.get("Format") if name_id is not None else None,
            destination=root.get("Destination"),
            in_response_to=root.get("InResponseTo"),
            issue_instant=parse_instant(root.get("IssueInstant")),
            status=status,
            is_success=status.endswith("Success") if status else None,
            attributes=attributes,
            attribute_values=attribute_values,
            session_index=authn_statement.get("SessionIndex") if authn_statement is not None else None,
            audience=_text(_first(roots, "Audience")),
            recipient=confirmation.get("Recipient") if confirmation is not None else None,
            not_before=parse_instant(conditions.get("NotBefore")) if conditions is not None else None,
            not_on_or_after=parse_instant(conditions.get("NotOnOrAfter")) if conditions is not None else None,
            has_conditions=conditions is not None,
            has_signature_element=has_signature,
            has_encryption_element=any(local_name(e.tag) in _ENCRYPTION_ELEMENTS for e in root.iter()),
            assertion_count=sum(1 for e in root.iter() if local_name(e.tag) in ("Assertion", "EncryptedAssertion")),
            signature_verified=signature_verified,
        )
        span.set_attribute("saml.root", fields.root_element)
        span.set_attribute("saml.assertion_count", fields.assertion_count)
        return fields


def validate_timing(fields: ParsedSamlFields, now: datetime | None = None) -> list[str]:
    """
    Checks the Conditions window. Absence of Conditions is unconstrained and yields no warning.

    A naive `now` is taken to be UTC.

    Returns:
        list[str]: `"not yet valid"` if `now < NotBefore`, `"expired"` if `now >= NotOnOrAfter`.
    """
    current = now or datetime.now(UTC)
    if current.tzinfo is None:
        current = current.replace(tzinfo=UTC)
    warnings: list[str] = []
    if fields.not_before is not None and current < fields.not_before:
        warnings.append(NOT_YET_VALID)
    if fields.not_on_or_after is not None and current >= fields.not_on_or_after:
        warnings.append(EXPIRED)
    return warnings


def parse_metadata(xml: str | bytes) -> MetadataSummary:
    """
    Extracts entity id, role, endpoint locations and NameID formats from SAML metadata.

    Raises:
        SamlParseError: If the document is not XML or declares a DTD.
    """
    root = load_document(decode_saml_payload(xml))
    roots = [root]
    role: SamlRole | None = None
    if _first(roots, "IDPSSODescriptor") is not None:
        role = SamlRole.IDP
    elif _first(roots, "SPSSODescriptor") is not None:
        role = SamlRole.SP

    sso = _first(roots, "SingleSignOnService")
    slo = _first(roots, "SingleLogoutService")
    acs_services = list(_find_all(roots, "AssertionConsumerService"))
    acs = next((s for s in acs_services if s.get("isDefault") == "true"), acs_services[0] if acs_services else None)

    return MetadataSummary(
        entity_id=root.get("entityID"),
        sso_url=sso.get("Location") if sso is not None else None,
        slo_url=slo.get("Location") if slo is not None else None,
        acs_url=acs.get("Location") if acs is not None else None,
        name_id_formats=tuple(t for t in (_text(e) for e in _find_all(roots, "NameIDFormat")) if t),
        role=role,
    )
