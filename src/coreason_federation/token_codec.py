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
Signed, time-bounded tokens shared by authorization codes and access tokens.
"""

import time
from collections.abc import Callable, Mapping
from typing import Any, cast

from authlib.jose import JsonWebToken
from authlib.jose.errors import JoseError
from pydantic import SecretStr

from coreason_federation.exceptions import ExpiredTokenError, InvalidSignatureError


class TokenCodec:
    """
    Encodes payloads as compact JWS tokens carrying their own `iat`/`exp`.

    Only the configured HMAC algorithm is accepted on decode, so `alg=none` and algorithm
    confusion tokens fail signature verification. The codec does not track consumption;
    callers that care about replay must record it themselves.

    Attributes:
        algorithm (str): The JWS algorithm (HS256, HS384 or HS512).
    """

    def __init__(
        self,
        secret: SecretStr,
        algorithm: str = "HS256",
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize the TokenCodec.

        Args:
            secret: The HMAC key.
            algorithm: The JWS algorithm. Defaults to HS256.
            clock: Source of the current time in epoch seconds.
        """
        self.algorithm = algorithm
        self._key = secret.get_secret_value().encode("utf-8")
        self._clock = clock
        self._jwt = JsonWebToken([algorithm])

    def encode(self, payload: Mapping[str, Any], ttl_seconds: int) -> str:
        """
        Signs `payload` with an embedded expiry `ttl_seconds` from now.

        Args:
            payload: JSON-serializable claims. `iat` and `exp` are overwritten.
            ttl_seconds: Lifetime of the token in seconds.

        Returns:
            str: The compact serialized token.
        """
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        issued_at = int(self._clock())
        claims = {**payload, "iat": issued_at, "exp": issued_at + ttl_seconds}
        header = {"alg": self.algorithm, "typ": "JWT"}
        token = cast("Any", self._jwt).encode(header, claims, self._key, check=False)
        return token.decode("ascii") if isinstance(token, bytes) else str(token)

    def decode(self, token: str, now: float | None = None) -> dict[str, Any]:
        """
        Verifies the signature and expiry of `token` and returns its payload.

        Args:
            token: The compact serialized token.
            now: Evaluation time in epoch seconds. Defaults to the codec clock.

        Returns:
            dict[str, Any]: The verified payload, including `iat` and `exp`.

        Raises:
            InvalidSignatureError: If the signature does not verify or the input is malformed.
            ExpiredTokenError: If `now` is past the embedded expiry.
        """
        try:
            claims = cast("Any", self._jwt).decode(token.strip(), self._key)
            payload = dict(claims)
        except (JoseError, ValueError, TypeError, KeyError, UnicodeError, AttributeError) as e:
            raise InvalidSignatureError("Token signature could not be verified") from e

        exp = payload.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            raise InvalidSignatureError("Token carries no valid expiry")

        current = self._clock() if now is None else now
        if current > exp:
            raise ExpiredTokenError("Token has expired")
        return payload
