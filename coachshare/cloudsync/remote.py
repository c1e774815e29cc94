"""Remote authority contract and its aiohttp client."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from aiohttp import ClientError, ClientSession, ClientTimeout

from ..const import DEFAULT_GROUPS, DEFAULT_REQUEST_TIMEOUT, FIELD_GROUPS, GROUP_CORE
from ..errors import NetworkUnavailable, NotFound, SharingError, error_from_code
from ..models import format_timestamp, parse_timestamp

_LOGGER = logging.getLogger(__name__)

OP_CREATE = "create"
OP_UPDATE = "update"
OP_DELETE = "delete"
VALID_OPS = (OP_CREATE, OP_UPDATE, OP_DELETE)

WHERE_EQ = "=="
WHERE_ARRAY_CONTAINS = "array-contains"


# ----------------------------------------------------------------------
def field_group(collection: str, field_name: str) -> str:
    """Return the field group that owns ``field_name`` in ``collection``."""

    for group, fields in FIELD_GROUPS.get(collection, {}).items():
        if field_name in fields:
            return group
    return DEFAULT_GROUPS.get(collection, GROUP_CORE)


def touched_groups(collection: str, fields: Iterable[str]) -> set[str]:
    return {field_group(collection, name) for name in fields if name != "id"}


def split_groups(collection: str, data: Mapping[str, Any]) -> dict[str, dict[str, Any]]:
    groups: dict[str, dict[str, Any]] = {}
    for key, value in data.items():
        if key == "id":
            continue
        groups.setdefault(field_group(collection, key), {})[key] = value
    return groups


# ----------------------------------------------------------------------
@dataclass(slots=True)
class Document:
    """A remote record with a version counter and timestamp per field group."""

    collection: str
    id: str
    data: dict[str, Any]
    versions: dict[str, int] = field(default_factory=dict)
    updated_at: dict[str, datetime] = field(default_factory=dict)

    def version(self, group: str) -> int:
        return int(self.versions.get(group, 0))

    def to_dict(self) -> dict[str, Any]:
        return {
            "collection": self.collection,
            "id": self.id,
            "data": dict(self.data),
            "versions": dict(self.versions),
            "updatedAt": {group: format_timestamp(ts) for group, ts in self.updated_at.items()},
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Document:
        updated: dict[str, datetime] = {}
        for group, raw in (payload.get("updatedAt") or {}).items():
            ts = parse_timestamp(raw)
            if ts is not None:
                updated[str(group)] = ts
        return cls(
            collection=str(payload["collection"]),
            id=str(payload["id"]),
            data=dict(payload.get("data") or {}),
            versions={str(group): int(value) for group, value in (payload.get("versions") or {}).items()},
            updated_at=updated,
        )


@dataclass(slots=True)
class Write:
    """One operation of an atomic commit.

    ``expected_versions`` lists the group versions observed at read time; the
    authority rejects the whole commit if any of them moved.
    """

    collection: str
    doc_id: str
    op: str
    patch: dict[str, Any] = field(default_factory=dict)
    expected_versions: dict[str, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.op not in VALID_OPS:
            raise ValueError(f"unsupported write op {self.op!r}")

    @classmethod
    def create(cls, collection: str, doc_id: str, data: Mapping[str, Any]) -> Write:
        return cls(collection, doc_id, OP_CREATE, patch=dict(data))

    @classmethod
    def update(cls, observed: Document, patch: Mapping[str, Any]) -> Write:
        groups = touched_groups(observed.collection, patch)
        return cls(
            observed.collection,
            observed.id,
            OP_UPDATE,
            patch=dict(patch),
            expected_versions={group: observed.version(group) for group in groups},
        )

    @classmethod
    def delete(cls, observed: Document) -> Write:
        return cls(observed.collection, observed.id, OP_DELETE, expected_versions=dict(observed.versions))

    @property
    def groups(self) -> set[str]:
        return touched_groups(self.collection, self.patch)

    def to_dict(self) -> dict[str, Any]:
        return {
            "collection": self.collection,
            "id": self.doc_id,
            "op": self.op,
            "patch": dict(self.patch),
            "expectedVersions": dict(self.expected_versions),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Write:
        return cls(
            collection=str(payload["collection"]),
            doc_id=str(payload["id"]),
            op=str(payload.get("op", OP_UPDATE)),
            patch=dict(payload.get("patch") or {}),
            expected_versions={str(k): int(v) for k, v in (payload.get("expectedVersions") or {}).items()},
        )


@dataclass(frozen=True, slots=True)
class Where:
    field: str
    op: str
    value: Any

    def matches(self, data: Mapping[str, Any]) -> bool:
        current = data.get(self.field)
        if self.op == WHERE_EQ:
            return current == self.value
        if self.op == WHERE_ARRAY_CONTAINS:
            return isinstance(current, list | tuple | set) and self.value in current
        raise ValueError(f"unsupported query operator {self.op!r}")

    def to_dict(self) -> dict[str, Any]:
        return {"field": self.field, "op": self.op, "value": self.value}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Where:
        return cls(field=str(payload["field"]), op=str(payload.get("op", WHERE_EQ)), value=payload.get("value"))


def eq(field_name: str, value: Any) -> Where:
    return Where(field_name, WHERE_EQ, value)


def contains(field_name: str, value: Any) -> Where:
    return Where(field_name, WHERE_ARRAY_CONTAINS, value)


class RemoteAuthority(Protocol):
    """Authoritative document store. Every call may raise ``NetworkUnavailable``."""

    async def get(self, collection: str, doc_id: str) -> Document | None: ...

    async def query(self, collection: str, *where: Where) -> list[Document]: ...

    async def commit(self, writes: Sequence[Write]) -> list[Document | None]: ...


# ----------------------------------------------------------------------
class HttpRemoteAuthority:
    """Talk to the authority's HTTP API on behalf of one principal."""

    def __init__(
        self,
        session: ClientSession,
        base_url: str,
        *,
        subject_id: str,
        role: str,
        email: str | None = None,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> None:
        self.session = session
        self.base_url = base_url.rstrip("/")
        self.subject_id = subject_id
        self.role = role
        self.email = email
        self.timeout = timeout
        self.last_error: str | None = None

    def _headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/json",
            "X-Subject-ID": self.subject_id,
            "X-Role": self.role,
        }
        if self.email:
            headers["X-Email"] = self.email
        return headers

    async def _request(self, method: str, path: str, payload: Mapping[str, Any] | None = None) -> Any:
        url = f"{self.base_url}{path}"
        try:
            async with self.session.request(
                method,
                url,
                json=payload,
                headers=self._headers(),
                timeout=ClientTimeout(total=self.timeout),
            ) as resp:
                text = await resp.text()
                if resp.status >= 400:
                    raise self._error_from_response(resp.status, text)
        except ClientError as err:
            self.last_error = str(err)
            _LOGGER.warning("Request %s %s failed: %s", method, path, err)
            raise NetworkUnavailable(str(err), reason="client_error") from err
        except asyncio.TimeoutError as err:
            self.last_error = "timeout"
            _LOGGER.warning("Request %s %s timed out", method, path)
            raise NetworkUnavailable("request timed out", reason="timeout") from err
        self.last_error = None
        if not text:
            return None
        return json.loads(text)

    def _error_from_response(self, status: int, text: str) -> SharingError:
        try:
            payload = json.loads(text) if text else {}
        except json.JSONDecodeError:
            payload = {}
        if isinstance(payload, Mapping) and isinstance(payload.get("detail"), Mapping) and "error" not in payload:
            payload = payload["detail"]
        if not isinstance(payload, Mapping):
            payload = {}
        code = payload.get("error")
        detail = payload.get("detail")
        err = error_from_code(code, str(detail) if detail else None)
        if code is None and status >= 500:
            err = NetworkUnavailable(f"authority returned {status}", reason="server_error")
        err.reason = err.reason or f"http_{status}"
        return err

    # ------------------------------------------------------------------
    async def get(self, collection: str, doc_id: str) -> Document | None:
        try:
            payload = await self._request("GET", f"/documents/{collection}/{doc_id}")
        except NotFound:
            return None
        if not payload:
            return None
        return Document.from_dict(payload["document"])

    async def query(self, collection: str, *where: Where) -> list[Document]:
        payload = await self._request(
            "POST",
            "/query",
            {"collection": collection, "where": [clause.to_dict() for clause in where]},
        )
        documents = (payload or {}).get("documents") or []
        return [Document.from_dict(item) for item in documents]

    async def commit(self, writes: Sequence[Write]) -> list[Document | None]:
        payload = await self._request("POST", "/commit", {"writes": [write.to_dict() for write in writes]})
        documents = (payload or {}).get("documents") or []
        return [Document.from_dict(item) if item else None for item in documents]

    async def register_user(self, user_payload: Mapping[str, Any]) -> dict[str, Any]:
        payload = await self._request("POST", "/users", dict(user_payload))
        return dict((payload or {}).get("user") or {})

    def status(self) -> dict[str, Any]:
        return {"base_url": self.base_url, "subject_id": self.subject_id, "last_error": self.last_error}


__all__ = [
    "Document",
    "HttpRemoteAuthority",
    "OP_CREATE",
    "OP_DELETE",
    "OP_UPDATE",
    "RemoteAuthority",
    "Where",
    "Write",
    "contains",
    "eq",
    "field_group",
    "split_groups",
    "touched_groups",
]
