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
Credential store contract consumed by the engines, with an in-memory implementation.

The engines only rely on per-record atomic `get`, `put`, `create` and `delete_where`. Records are
immutable pydantic models, so a reader never observes a partially written record.
"""

from collections.abc import Callable
from typing import Any, Protocol

import anyio

from coreason_federation.exceptions import StoreTimeoutError
from coreason_federation.utils.logger import logger

CLIENTS = "clients"
SAML_ENVIRONMENTS = "saml_environments"
ACCESS_TOKENS = "access_tokens"
REFRESH_TOKENS = "refresh_tokens"
CONSUMED_CODES = "consumed_codes"
SAML_SESSIONS = "saml_sessions"

RecordPredicate = Callable[[str, Any], bool]


class CredentialStore(Protocol):
    """Record store keyed by `(kind, key)`."""

    async def get(self, kind: str, key: str) -> Any | None:
        """Returns the record, or None when absent."""
        ...

    async def put(self, kind: str, key: str, record: Any) -> None:
        """Creates or replaces a record."""
        ...

    async def create(self, kind: str, key: str, record: Any) -> bool:
        """
        Atomically creates a record. Returns False (and writes nothing) if the key already exists.
        """
        ...

    async def delete_where(self, kind: str, predicate: RecordPredicate) -> int:
        """Deletes every record of `kind` for which `predicate(key, record)` holds. Returns the count."""
        ...


class InMemoryCredentialStore:
    """
    Process-local CredentialStore. Not suitable for multi-process deployments.
    """

    def __init__(self) -> None:
        self._records: dict[str, dict[str, Any]] = {}
        self._lock: anyio.Lock | None = None

    def _get_lock(self) -> anyio.Lock:
        if self._lock is None:
            self._lock = anyio.Lock()
        return self._lock

    async def get(self, kind: str, key: str) -> Any | None:
        return self._records.get(kind, {}).get(key)

    async def put(self, kind: str, key: str, record: Any) -> None:
        async with self._get_lock():
            self._records.setdefault(kind, {})[key] = record

    async def create(self, kind: str, key: str, record: Any) -> bool:
        async with self._get_lock():
            bucket = self._records.setdefault(kind, {})
            if key in bucket:
                return False
            bucket[key] = record
            return True

    async def delete_where(self, kind: str, predicate: RecordPredicate) -> int:
        async with self._get_lock():
            bucket = self._records.get(kind, {})
            doomed = [k for k, v in bucket.items() if predicate(k, v)]
            for k in doomed:
                del bucket[k]
            return len(doomed)

    def count(self, kind: str) -> int:
        return len(self._records.get(kind, {}))


class TimeoutBoundStore:
    """
    Wraps a CredentialStore so that every call carries a timeout.

    A call exceeding `timeout` seconds raises StoreTimeoutError instead of blocking.
    """

    def __init__(self, inner: CredentialStore, timeout: float) -> None:
        self.inner = inner
        self.timeout = timeout

    async def _bounded(self, operation: str, kind: str, call: Any) -> Any:
        try:
            with anyio.fail_after(self.timeout):
                return await call
        except TimeoutError as e:
            logger.error(f"Credential store {operation} on '{kind}' exceeded {self.timeout}s")
            raise StoreTimeoutError(f"Credential store {operation} timed out") from e

    async def get(self, kind: str, key: str) -> Any | None:
        return await self._bounded("get", kind, self.inner.get(kind, key))

    async def put(self, kind: str, key: str, record: Any) -> None:
        await self._bounded("put", kind, self.inner.put(kind, key, record))

    async def create(self, kind: str, key: str, record: Any) -> bool:
        return bool(await self._bounded("create", kind, self.inner.create(kind, key, record)))

    async def delete_where(self, kind: str, predicate: RecordPredicate) -> int:
        return int(await self._bounded("delete_where", kind, self.inner.delete_where(kind, predicate)))
