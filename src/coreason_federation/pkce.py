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
Proof Key for Code Exchange (RFC 7636) helpers.
"""

import base64
import hashlib
import hmac
import secrets

S256 = "S256"
SUPPORTED_CHALLENGE_METHODS = frozenset({S256})


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def generate_code_verifier(num_bytes: int = 32) -> str:
    """
    Returns a high-entropy verifier: base64url of `num_bytes` random bytes, unpadded.
    """
    return _b64url(secrets.token_bytes(num_bytes))


def compute_code_challenge(code_verifier: str) -> str:
    """BASE64URL(SHA256(code_verifier)), unpadded."""
    return _b64url(hashlib.sha256(code_verifier.encode("ascii", errors="strict")).digest())


def verify_code_verifier(code_verifier: str | None, code_challenge: str) -> bool:
    """
    Constant-time comparison of the recomputed S256 challenge against `code_challenge`.
    """
    if not code_verifier:
        return False
    try:
        candidate = compute_code_challenge(code_verifier)
    except UnicodeEncodeError:
        return False
    return hmac.compare_digest(candidate, code_challenge)
