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
SAML 2.0 assertion, response and metadata construction.
"""

import base64
import secrets
from collections.abc import Callable, Iterable, Mapping
from datetime import UTC, datetime, timedelta

from lxml import etree
from lxml.builder import ElementMaker
from opentelemetry import trace

from coreason_federation.crypto import SecretBox
from coreason_federation.exceptions import CoreasonFederationError
from coreason_federation.models import (
    STATUS_SUCCESS,
    SamlAssertion,
    SamlEnvironment,
    SamlResponse,
    SamlRole,
)
from coreason_federation.signing import DS_NS, Signer, StructuralSigner
from coreason_federation.utils.logger import logger

tracer = trace.get_tracer(__name__)

SAML_NS = "urn:oasis:names:tc:SAML:2.0:assertion"
SAMLP_NS = "urn:oasis:names:tc:SAML:2.0:protocol"
MD_NS = "urn:oasis:names:tc:SAML:2.0:metadata"
XENC_NS = "http://www.w3.org/2001/04/xmlenc#"
XSI_NS = "http://www.w3.org/2001/XMLSchema-instance"
XS_NS = "http://www.w3.org/2001/XMLSchema"

BINDING_POST = "urn:oasis:names:tc:SAML:2.0:bindings:HTTP-POST"
BINDING_REDIRECT = "urn:oasis:names:tc:SAML:2.0:bindings:HTTP-Redirect"
ATTRNAME_BASIC = "urn:oasis:names:tc:SAML:2.0:attrname-format:basic"
SUBJECT_CONFIRMATION_BEARER = "urn:oasis:names:tc:SAML:2.0:cm:bearer"
AES256_GCM = "http://www.w3.org/2009/xmlenc11#aes256-gcm"
ENCRYPTED_ELEMENT = "http://www.w3.org/2001/04/xmlenc#Element"

SAML = ElementMaker(namespace=SAML_NS, nsmap={"saml": SAML_NS, "xs": XS_NS, "xsi": XSI_NS})
SAMLP = ElementMaker(namespace=SAMLP_NS, nsmap={"samlp": SAMLP_NS, "saml": SAML_NS})
MD = ElementMaker(namespace=MD_NS, nsmap={"md": MD_NS, "ds": DS_NS})
XENC = ElementMaker(namespace=XENC_NS, nsmap={"xenc": XENC_NS})
DS = ElementMaker(namespace=DS_NS, nsmap={"ds": DS_NS})

Attributes = Mapping[str, str] | Iterable[tuple[str, str]]


def format_instant(value: datetime) -> str:
    """`YYYY-MM-DDTHH:MM:SS.mmmZ` in UTC."""
    value = value.astimezone(UTC)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def new_saml_id() -> str:
    # NCName: must not start with a digit.
    return f"_{secrets.token_hex(16)}"


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _attribute_pairs(attributes: Attributes) -> tuple[tuple[str, str], ...]:
    items = attributes.items() if isinstance(attributes, Mapping) else attributes
    return tuple((str(name), str(value)) for name, value in items)


def _xml_parser() -> etree.XMLParser:
    return etree.XMLParser(resolve_entities=False, no_network=True, load_dtd=False, huge_tree=False)


def _pem_body(cert_pem: bytes | str) -> str:
    text = cert_pem.decode("ascii") if isinstance(cert_pem, bytes) else cert_pem
    return "".join(line.strip() for line in text.splitlines() if line.strip() and "-----" not in line)


class SamlAssertionBuilder:
    """
    Builds assertions and responses for an environment.

    Builders never fail on well-formed input. Missing environment URLs are rejected earlier,
    when the `SamlEnvironment` is constructed.

    Args:
        signer (Signer | None): Applied when the environment asks for signed assertions or responses.
            Defaults to `StructuralSigner`, which marks documents as signed without real proof.
        secret_box (SecretBox | None): Required for environments with `encrypt_assertions`.
        clock_skew (int): Seconds subtracted from the issue instant to produce `NotBefore`.
        clock (Callable[[], datetime]): Source of the current UTC time.
    """

    def __init__(
        self,
        signer: Signer | None = None,
        secret_box: SecretBox | None = None,
        clock_skew: int = 300,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.signer: Signer = signer or StructuralSigner()
        self.secret_box = secret_box
        self.clock_skew = clock_skew
        self._clock = clock

    def _now(self) -> datetime:
        # Millisecond precision, so that the serialized window equals the configured lifetime.
        now = self._clock().astimezone(UTC)
        return now.replace(microsecond=(now.microsecond // 1000) * 1000)

    def create_assertion(
        self,
        environment: SamlEnvironment,
        name_id: str,
        attributes: Attributes,
        recipient: str,
        in_response_to: str | None = None,
    ) -> SamlAssertion:
        now = self._now()
        return SamlAssertion(
            id=new_saml_id(),
            issuer=environment.entity_id,
            name_id=name_id,
            name_id_format=environment.name_id_format,
            issue_instant=now,
            not_before=now - timedelta(seconds=self.clock_skew),
            not_on_or_after=now + timedelta(seconds=environment.assertion_lifetime),
            audience=recipient,
            recipient=recipient,
            in_response_to=in_response_to,
            session_index=new_saml_id(),
            authn_instant=now,
            attributes=_attribute_pairs(attributes),
        )

    def assertion_element(self, assertion: SamlAssertion) -> etree._Element:
        """Unsigned, unencrypted `saml:Assertion` element for `assertion`."""
        confirmation_data = {
            "NotOnOrAfter": format_instant(assertion.not_on_or_after),
            "Recipient": assertion.recipient,
        }
        if assertion.in_response_to:
            confirmation_data["InResponseTo"] = assertion.in_response_to

        children = [
            SAML.Issuer(assertion.issuer),
            SAML.Subject(
                SAML.NameID(assertion.name_id, Format=assertion.name_id_format),
                SAML.SubjectConfirmation(
                    SAML.SubjectConfirmationData(**confirmation_data),
                    Method=SUBJECT_CONFIRMATION_BEARER,
                ),
            ),
            SAML.Conditions(
                SAML.AudienceRestriction(SAML.Audience(assertion.audience)),
                NotBefore=format_instant(assertion.not_before),
                NotOnOrAfter=format_instant(assertion.not_on_or_after),
            ),
            SAML.AuthnStatement(
                SAML.AuthnContext(SAML.AuthnContextClassRef(assertion.authn_context_class)),
                AuthnInstant=format_instant(assertion.authn_instant),
                SessionIndex=assertion.session_index,
            ),
        ]
        if assertion.attributes:
            children.append(
                SAML.AttributeStatement(
                    *[
                        SAML.Attribute(
                            SAML.AttributeValue(value, {f"{{{XSI_NS}}}type": "xs:string"}),
                            Name=name,
                            NameFormat=ATTRNAME_BASIC,
                        )
                        for name, value in assertion.attributes
                    ]
                )
            )
        return SAML.Assertion(
            *children,
            ID=assertion.id,
            Version="2.0",
            IssueInstant=format_instant(assertion.issue_instant),
        )

    def _finish_assertion(self, environment: SamlEnvironment, element: etree._Element) -> etree._Element:
        if environment.sign_assertions:
            element = self.signer.sign(element)
        if environment.encrypt_assertions:
            element = self._encrypt(element)
        return element

    def _encrypt(self, element: etree._Element) -> etree._Element:
        if self.secret_box is None:
            raise CoreasonFederationError("encrypt_assertions requires a secret box")
        sealed = self.secret_box.seal(etree.tostring(element))
        return SAML.EncryptedAssertion(
            XENC.EncryptedData(
                XENC.EncryptionMethod(Algorithm=AES256_GCM),
                XENC.CipherData(XENC.CipherValue(base64.b64encode(sealed).decode("ascii"))),
                Type=ENCRYPTED_ELEMENT,
            )
        )

    def build_assertion(
        self,
        environment: SamlEnvironment,
        name_id: str,
        attributes: Attributes,
        recipient: str,
        in_response_to: str | None = None,
    ) -> str:
        """
        Builds an assertion for `name_id` and serializes it.

        `NotBefore` is the issue instant minus the clock skew tolerance; `NotOnOrAfter` is the issue
        instant plus the environment's assertion lifetime. The audience and recipient are both `recipient`.

        Returns:
            str: The assertion XML, signed and/or encrypted per the environment flags.
        """
        with tracer.start_as_current_span("saml.build_assertion") as span:
            span.set_attribute("saml.environment", environment.id)
            assertion = self.create_assertion(environment, name_id, attributes, recipient, in_response_to)
            element = self._finish_assertion(environment, self.assertion_element(assertion))
            logger.debug(f"Built assertion {assertion.id} for environment {environment.id}")
            return etree.tostring(element, encoding="unicode")

    def create_response(
        self,
        environment: SamlEnvironment,
        assertion: SamlAssertion | None,
        destination: str,
        in_response_to: str | None = None,
        status_code: str = STATUS_SUCCESS,
    ) -> SamlResponse:
        return SamlResponse(
            id=new_saml_id(),
            issuer=environment.entity_id,
            destination=destination,
            issue_instant=self._now(),
            status_code=status_code,
            in_response_to=in_response_to,
            assertion=assertion,
        )

    def build_response(
        self,
        environment: SamlEnvironment,
        assertion: str | SamlAssertion | None,
        destination: str,
        in_response_to: str | None = None,
        status_code: str = STATUS_SUCCESS,
    ) -> str:
        """
        Wraps an assertion in a `samlp:Response`.

        `InResponseTo` is only emitted for SP-initiated flows; its absence marks the response as
        IdP-initiated.

        Args:
            environment (SamlEnvironment): Supplies the issuer and the signing flags.
            assertion (str | SamlAssertion | None): Serialized output of `build_assertion`, an assertion
                value (signed/encrypted here per the environment), or None for a status-only response.
            destination (str): The ACS URL the response is posted to.
            in_response_to (str | None): ID of the AuthnRequest being answered.
            status_code (str): Top-level status code URI.

        Returns:
            str: The response XML.
        """
        model = self.create_response(
            environment,
            assertion if isinstance(assertion, SamlAssertion) else None,
            destination,
            in_response_to,
            status_code,
        )
        attrs = {
            "ID": model.id,
            "Version": "2.0",
            "IssueInstant": format_instant(model.issue_instant),
            "Destination": model.destination,
        }
        if model.in_response_to:
            attrs["InResponseTo"] = model.in_response_to

        root = SAMLP.Response(
            SAML.Issuer(model.issuer),
            SAMLP.Status(SAMLP.StatusCode(Value=model.status_code)),
            **attrs,
        )
        if isinstance(assertion, SamlAssertion):
            root.append(self._finish_assertion(environment, self.assertion_element(assertion)))
        elif isinstance(assertion, str):
            root.append(etree.fromstring(assertion.encode("utf-8"), parser=_xml_parser()))

        if environment.sign_response:
            root = self.signer.sign(root)
        return etree.tostring(root, encoding="unicode")

    def build_authn_request(self, sp_entity_id: str, acs_url: str, destination: str) -> tuple[str, str]:
        """
        An unsigned `samlp:AuthnRequest` for SP-initiated SSO.

        Returns:
            tuple[str, str]: The request ID (echoed back as `InResponseTo`) and the request XML.
        """
        request_id = new_saml_id()
        root = SAMLP.AuthnRequest(
            SAML.Issuer(sp_entity_id),
            ID=request_id,
            Version="2.0",
            IssueInstant=format_instant(self._now()),
            Destination=destination,
            AssertionConsumerServiceURL=acs_url,
            ProtocolBinding=BINDING_POST,
        )
        return request_id, etree.tostring(root, encoding="unicode")

    def build_metadata(self, environment: SamlEnvironment, signing_cert: bytes | str | None = None) -> str:
        """
        Metadata for an environment: IdP (`IDPSSODescriptor`) or SP (`SPSSODescriptor`) by role.

        A `KeyDescriptor` is only emitted when a real signing certificate is supplied.
        """
        children: list[etree._Element] = []
        if signing_cert is not None:
            children.append(
                MD.KeyDescriptor(
                    DS.KeyInfo(DS.X509Data(DS.X509Certificate(_pem_body(signing_cert)))),
                    use="signing",
                )
            )
        if environment.slo_url:
            children.append(MD.SingleLogoutService(Binding=BINDING_REDIRECT, Location=environment.slo_url))
        children.append(MD.NameIDFormat(environment.name_id_format))

        if environment.role == SamlRole.IDP:
            if not environment.sso_url:
                raise CoreasonFederationError(f"IdP environment {environment.id} has no sso_url")
            children.append(MD.SingleSignOnService(Binding=BINDING_POST, Location=environment.sso_url))
            children.append(MD.SingleSignOnService(Binding=BINDING_REDIRECT, Location=environment.sso_url))
            descriptor = MD.IDPSSODescriptor(
                *children,
                WantAuthnRequestsSigned="false",
                protocolSupportEnumeration=SAMLP_NS,
            )
        else:
            if not environment.acs_url:
                raise CoreasonFederationError(f"SP environment {environment.id} has no acs_url")
            children.append(
                MD.AssertionConsumerService(
                    Binding=BINDING_POST,
                    Location=environment.acs_url,
                    index="0",
                    isDefault="true",
                )
            )
            descriptor = MD.SPSSODescriptor(
                *children,
                AuthnRequestsSigned="false",
                WantAssertionsSigned="true" if environment.sign_assertions else "false",
                protocolSupportEnumeration=SAMLP_NS,
            )

        root = MD.EntityDescriptor(descriptor, entityID=environment.entity_id)
        return etree.tostring(root, xml_declaration=True, encoding="UTF-8", pretty_print=True).decode("utf-8")
