from __future__ import annotations

import copy
import logging
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from typing import Any

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from coachshare.cloudsync.remote import OP_CREATE, OP_DELETE, Document, Where, Write, split_groups
from coachshare.const import COLLECTION_USERS
from coachshare.errors import (
    Conflict,
    InvitationAlreadyProcessed,
    InvitationExpired,
    NotFound,
    SharingError,
    Unauthorized,
    ValidationError,
)
from coachshare.models import User, is_valid_email

from .auth import Principal, principal_dependency
from .rules import SecurityRules

_LOGGER = logging.getLogger(__name__)

DocKey = tuple[str, str]


class AuthorityState:
    """In-memory reference implementation of the remote authority.

    Every method is synchronous, so a commit is applied all at once with no
    interleaving from other callers.
    """

    def __init__(self, *, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or (lambda: datetime.now(tz=UTC))
        self.documents: dict[DocKey, Document] = {}
        self.rules = SecurityRules(self._lookup, self._find, self._clock)
        self.commits = 0

    # ------------------------------------------------------------------
    def _lookup(self, collection: str, doc_id: str) -> Document | None:
        return self.documents.get((collection, doc_id))

    def _find(self, collection: str) -> list[Document]:
        return [doc for (coll, _), doc in self.documents.items() if coll == collection]

    # ------------------------------------------------------------------
    def get(self, principal: Principal, collection: str, doc_id: str) -> Document:
        document = self._lookup(collection, doc_id)
        if document is None:
            raise NotFound(f"{collection}/{doc_id} not found")
        self.rules.check_read(principal, document)
        return copy.deepcopy(document)

    def query(self, principal: Principal, collection: str, where: Sequence[Where] = ()) -> list[Document]:
        """Matching documents the principal may read; unreadable ones are left out."""

        matches = [
            doc
            for doc in sorted(self._find(collection), key=lambda item: item.id)
            if all(clause.matches(doc.data) for clause in where)
        ]
        return [copy.deepcopy(doc) for doc in matches if self.rules.can_read(principal, doc)]

    def commit(self, principal: Principal, writes: Sequence[Write]) -> list[Document | None]:
        """Apply ``writes`` atomically or not at all."""

        if not writes:
            return []
        now = self._clock()
        staged: dict[DocKey, Document | None] = {}
        results: list[Document | None] = []
        for write in writes:
            key = (write.collection, write.doc_id)
            current = staged[key] if key in staged else self._lookup(*key)
            if write.op == OP_CREATE:
                if current is not None:
                    raise Conflict(f"{write.collection}/{write.doc_id} already exists", reason="exists")
                result_data: dict[str, Any] | None = {**write.patch, "id": write.doc_id}
            elif current is None:
                raise NotFound(f"{write.collection}/{write.doc_id} not found")
            else:
                self._check_versions(write, current)
                result_data = None if write.op == OP_DELETE else {**current.data, **write.patch}
            self.rules.check_write(principal, write, current, result_data, writes)
            if result_data is None:
                staged[key] = None
                results.append(None)
                continue
            updated = self._next_document(write, current, result_data, now)
            staged[key] = updated
            results.append(updated)

        for key, document in staged.items():
            if document is None:
                self.documents.pop(key, None)
            else:
                self.documents[key] = document
        self.commits += 1
        _LOGGER.debug("Committed %d writes for %s", len(writes), principal.subject_id)
        return [copy.deepcopy(doc) for doc in results]

    def _check_versions(self, write: Write, current: Document) -> None:
        for group, expected in write.expected_versions.items():
            actual = current.version(group)
            if actual != expected:
                raise Conflict(
                    f"{write.collection}/{write.doc_id} group {group} is at version {actual}, expected {expected}",
                    reason="version_mismatch",
                )

    def _next_document(
        self,
        write: Write,
        current: Document | None,
        data: dict[str, Any],
        now: datetime,
    ) -> Document:
        if current is None:
            groups = set(split_groups(write.collection, data))
            versions: dict[str, int] = {}
            updated_at: dict[str, datetime] = {}
        else:
            groups = write.groups
            versions = dict(current.versions)
            updated_at = dict(current.updated_at)
        for group in groups:
            versions[group] = versions.get(group, 0) + 1
            updated_at[group] = now
        return Document(write.collection, write.doc_id, data, versions, updated_at)

    # ------------------------------------------------------------------
    def register_user(self, principal: Principal, payload: dict[str, Any]) -> Document:
        """Create or replace the caller's user profile."""

        user_id = str(payload.get("id") or principal.subject_id)
        if user_id != principal.subject_id and not principal.is_system:
            raise Unauthorized("users may only register themselves", reason="user_write")
        if not is_valid_email(payload.get("email")):
            raise ValidationError("a valid email is required", reason="user_email")
        try:
            user = User.from_payload({**payload, "id": user_id})
        except ValueError as err:
            raise ValidationError(str(err), reason="user_payload") from err
        current = self._lookup(COLLECTION_USERS, user_id)
        data = user.to_payload()
        if current is None:
            write = Write.create(COLLECTION_USERS, user_id, data)
        else:
            write = Write.update(current, data)
        return self.commit(principal, [write])[0]


def status_for(err: SharingError) -> int:
    if isinstance(err, ValidationError):
        return 400
    if isinstance(err, Unauthorized):
        return 403
    if isinstance(err, NotFound):
        return 404
    if isinstance(err, Conflict | InvitationAlreadyProcessed):
        return 409
    if isinstance(err, InvitationExpired):
        return 410
    return 400


def create_app(state: AuthorityState | None = None) -> FastAPI:
    app = FastAPI()
    state = state or AuthorityState()
    app.state.state = state

    @app.exception_handler(SharingError)
    async def handle_sharing_error(request: Request, err: SharingError) -> JSONResponse:
        return JSONResponse(status_code=status_for(err), content={"error": err.code, "detail": str(err)})

    @app.get("/health")
    async def handle_health() -> dict[str, Any]:
        return {"status": "ok", "documents": len(state.documents), "commits": state.commits}

    @app.get("/documents/{collection}/{doc_id}")
    async def handle_get(
        collection: str,
        doc_id: str,
        principal: Principal = Depends(principal_dependency),  # noqa: B008
    ) -> dict[str, Any]:
        return {"document": state.get(principal, collection, doc_id).to_dict()}

    @app.post("/query")
    async def handle_query(
        data: dict[str, Any],
        principal: Principal = Depends(principal_dependency),  # noqa: B008
    ) -> dict[str, Any]:
        collection = str(data.get("collection") or "")
        if not collection:
            raise ValidationError("collection required", reason="query")
        try:
            where = [Where.from_dict(item) for item in data.get("where") or []]
        except (KeyError, TypeError) as err:
            raise ValidationError(f"invalid where clause: {err}", reason="query") from err
        try:
            documents = state.query(principal, collection, where)
        except ValueError as err:
            raise ValidationError(str(err), reason="query") from err
        return {"documents": [doc.to_dict() for doc in documents]}

    @app.post("/commit")
    async def handle_commit(
        data: dict[str, Any],
        principal: Principal = Depends(principal_dependency),  # noqa: B008
    ) -> dict[str, Any]:
        try:
            writes = [Write.from_dict(item) for item in data.get("writes") or []]
        except (KeyError, TypeError, ValueError) as err:
            raise ValidationError(f"invalid write: {err}", reason="commit") from err
        results = state.commit(principal, writes)
        return {"documents": [doc.to_dict() if doc else None for doc in results]}

    @app.post("/users")
    async def handle_users_post(
        data: dict[str, Any],
        principal: Principal = Depends(principal_dependency),  # noqa: B008
    ) -> dict[str, Any]:
        document = state.register_user(principal, data)
        return {"user": document.data}

    return app


def main() -> None:
    import uvicorn

    uvicorn.run(create_app(), host="0.0.0.0", port=8080)


if __name__ == "__main__":
    main()
