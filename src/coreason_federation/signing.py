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
Signer/Verifier capability for SAML XML.

`StructuralSigner` only inserts a `ds:Signature` skeleton: documents it produces *claim* to be signed
but carry no cryptographic proof. `XmlDsigSigner`/`XmlDsigVerifier` compute and check real enveloped
XML-DSig signatures with signxml and a caller-supplied RSA key pair.
"""

from typing import Protocol

from lxml import etree
from signxml import (
    CanonicalizationMethod,
    DigestAlgorithm,
    SignatureConstructionMethod,
    SignatureMethod,
    XMLSigner,
    XMLVerifier,
)
from signxml.exceptions import InvalidInput, InvalidSignature

from coreason_federation.utils.logger import logger

DS_NS = "http://www.w3.org/2000/09/xmldsig#"
EXC_C14N = "http://www.w3.org/2001/10/xml-exc-c14n#"
RSA_SHA256 = "http://www.w3.org/2001/04/xmldsig-more#rsa-sha256"
SHA256 = "http://www.w3.org/2001/04/xmlenc#sha256"
ENVELOPED = "http://www.w3.org/2000/09/xmldsig#enveloped-signature"


class Signer(Protocol):
    """Signs a SAML element (Assertion or Response) in place of an unsigned one."""

    algorithm: str

    def sign(self, element: etree._Element) -> etree._Element:
        """Returns the signed element. The input must not be reused afterwards."""
        ...


class Verifier(Protocol):
    def verify(self, xml: bytes) -> bool:
        """True iff the document's signature cryptographically verifies."""
        ...


def _as_text(pem: bytes | str) -> str:
    return pem.decode("ascii") if isinstance(pem, bytes) else pem


def _insert_after_issuer(element: etree._Element, signature: etree._Element) -> None:
    """SAML schema order: the Signature follows the Issuer."""
    issuer = element.find("{urn:oasis:names:tc:SAML:2.0:assertion}Issuer")
    if issuer is None:
        element.insert(0, signature)
    else:
        issuer.addnext(signature)


class StructuralSigner:
    """
    Inserts a placeholder `ds:Signature` that references the element ID. Not production-safe.
    """

    algorithm = RSA_SHA256

    def sign(self, element: etree._Element) -> etree._Element:
        ds = f"{{{DS_NS}}}"
        signature = etree.Element(f"{ds}Signature", nsmap={"ds": DS_NS})
        signed_info = etree.SubElement(signature, f"{ds}SignedInfo")
        etree.SubElement(signed_info, f"{ds}CanonicalizationMethod", Algorithm=EXC_C14N)
        etree.SubElement(signed_info, f"{ds}SignatureMethod", Algorithm=self.algorithm)
        reference = etree.SubElement(signed_info, f"{ds}Reference", URI=f"#{element.get('ID', '')}")
        transforms = etree.SubElement(reference, f"{ds}Transforms")
        etree.SubElement(transforms, f"{ds}Transform", Algorithm=ENVELOPED)
        etree.SubElement(reference, f"{ds}DigestMethod", Algorithm=SHA256)
        etree.SubElement(reference, f"{ds}DigestValue")
        etree.SubElement(signature, f"{ds}SignatureValue")
        _insert_after_issuer(element, signature)
        return element


class XmlDsigSigner:
    """
    Enveloped RSA-SHA256 XML-DSig over the whole element, with exclusive canonicalization.

    Args:
        key_pem (bytes | str): PEM encoded RSA private key.
        cert_pem (bytes | str): PEM encoded X.509 certificate embedded in `KeyInfo`.
    """

    algorithm = RSA_SHA256

    def __init__(self, key_pem: bytes | str, cert_pem: bytes | str) -> None:
        self._key = _as_text(key_pem)
        self._cert = _as_text(cert_pem)
        self._signer = XMLSigner(
            method=SignatureConstructionMethod.enveloped,
            signature_algorithm=SignatureMethod.RSA_SHA256,
            digest_algorithm=DigestAlgorithm.SHA256,
            c14n_algorithm=CanonicalizationMethod.EXCLUSIVE_XML_CANONICALIZATION_1_0,
        )

    def sign(self, element: etree._Element) -> etree._Element:
        placeholder = etree.Element(f"{{{DS_NS}}}Signature", nsmap={"ds": DS_NS}, Id="placeholder")
        _insert_after_issuer(element, placeholder)
        signed: etree._Element = self._signer.sign(
            element, key=self._key, cert=self._cert, reference_uri=element.get("ID")
        )
        return signed


class XmlDsigVerifier:
    """
    Verifies an enveloped signature against a pinned certificate.

    Signed documents must be verified byte-for-byte as produced; pretty-printing breaks the digest.
    """

    def __init__(self, cert_pem: bytes | str) -> None:
        self._cert = _as_text(cert_pem)

    def verify(self, xml: bytes) -> bool:
        try:
            XMLVerifier().verify(xml, x509_cert=self._cert)
        except (InvalidSignature, InvalidInput) as e:
            logger.warning(f"XML signature verification failed: {type(e).__name__}")
            return False
        return True
