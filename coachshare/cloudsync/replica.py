"""SQLite-backed device replica of the sharing state."""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from ..const import COLLECTION_FOLDERS, COLLECTION_INVITATIONS, COLLECTION_REVOCATIONS
from ..models import (
    CoachInvitation,
    Permission,
    RevocationEvent,
    SharedFolder,
    format_timestamp,
    normalise_email,
    parse_timestamp,
)
from .remote import Document, Where, contains, eq

_LOGGER = logging.getLogger(__name__)

_DOC_COLUMNS = "collection, doc_id, data, versions, updated_at"


def _dumps(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), sort_keys=True)


class ReplicaWriter:
    """Write handle valid only inside :meth:`LocalReplica.transaction`."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def put_document(self, document: Document) -> None:
        self._conn.execute(
            """
            INSERT OR REPLACE INTO documents(collection, doc_id, data, versions, updated_at, stored_at)
            VALUES(?, ?, ?, ?, ?, ?)
            """,
            (
                document.collection,
                document.id,
                _dumps(document.data),
                _dumps(document.versions),
                _dumps({group: format_timestamp(ts) for group, ts in document.updated_at.items()}),
                datetime.now(tz=UTC).isoformat(),
            ),
        )

    def delete_document(self, collection: str, doc_id: str) -> None:
        self._conn.execute(
            "DELETE FROM documents WHERE collection = ? AND doc_id = ?",
            (collection, doc_id),
        )

    def cache_permission(
        self,
        folder_id: str,
        coach_id: str,
        permission: Permission,
        verified_at: datetime,
    ) -> None:
        self._conn.execute(
            """
            INSERT OR REPLACE INTO permission_cache(folder_id, coach_id, can_upload, can_comment, verified_at)
            VALUES(?, ?, ?, ?, ?)
            """,
            (
                folder_id,
                coach_id,
                int(permission.can_upload),
                int(permission.can_comment),
                format_timestamp(verified_at),
            ),
        )

    def purge_permission(self, folder_id: str, coach_id: str) -> None:
        self._conn.execute(
            "DELETE FROM permission_cache WHERE folder_id = ? AND coach_id = ?",
            (folder_id, coach_id),
        )

    def purge_folder_permissions(self, folder_id: str) -> None:
        self._conn.execute("DELETE FROM permission_cache WHERE folder_id = ?", (folder_id,))

    def record_sync(
        self,
        entity_type: str,
        owner_id: str,
        *,
        at: datetime,
        error: str | None = None,
        count: int | None = None,
    ) -> None:
        row = self._conn.execute(
            "SELECT last_success_at, last_count FROM sync_state WHERE entity_type = ? AND owner_id = ?",
            (entity_type, owner_id),
        ).fetchone()
        last_success = row["last_success_at"] if row else None
        last_count = row["last_count"] if row else None
        if error is None:
            last_success = format_timestamp(at)
            last_count = count
        self._conn.execute(
            """
            INSERT OR REPLACE INTO sync_state(
                entity_type, owner_id, last_attempt_at, last_success_at, last_error, last_count
            )
            VALUES(?, ?, ?, ?, ?, ?)
            """,
            (entity_type, owner_id, format_timestamp(at), last_success, error, last_count),
        )


class LocalReplica:
    """Device-local copy of folders, invitations and revocations.

    Reads never wait on network work. Writes go through :meth:`transaction`
    so a group of changes lands together or not at all.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._is_memory = str(path) == ":memory:"
        if not self._is_memory:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self._shared_conn: sqlite3.Connection | None = None
        self._ensure_schema()

    # ------------------------------------------------------------------
    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        if self._is_memory:
            if self._shared_conn is None:
                self._shared_conn = sqlite3.connect(":memory:")
                self._shared_conn.row_factory = sqlite3.Row
            yield self._shared_conn
        else:
            conn = sqlite3.connect(self.path)
            conn.row_factory = sqlite3.Row
            try:
                yield conn
            finally:
                conn.close()

    def _ensure_schema(self) -> None:
        with self._connection() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS documents (
                    collection TEXT NOT NULL,
                    doc_id TEXT NOT NULL,
                    data TEXT NOT NULL,
                    versions TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    stored_at TEXT NOT NULL,
                    PRIMARY KEY (collection, doc_id)
                );

                CREATE TABLE IF NOT EXISTS permission_cache (
                    folder_id TEXT NOT NULL,
                    coach_id TEXT NOT NULL,
                    can_upload INTEGER NOT NULL,
                    can_comment INTEGER NOT NULL,
                    verified_at TEXT NOT NULL,
                    PRIMARY KEY (folder_id, coach_id)
                );

                CREATE TABLE IF NOT EXISTS sync_state (
                    entity_type TEXT NOT NULL,
                    owner_id TEXT NOT NULL,
                    last_attempt_at TEXT,
                    last_success_at TEXT,
                    last_error TEXT,
                    last_count INTEGER,
                    PRIMARY KEY (entity_type, owner_id)
                );
                """
            )
            conn.commit()

    @contextmanager
    def transaction(self) -> Iterator[ReplicaWriter]:
        """Apply every write made through the yielded writer atomically."""

        with self._connection() as conn:
            try:
                yield ReplicaWriter(conn)
            except BaseException:
                conn.rollback()
                raise
            conn.commit()

    def close(self) -> None:
        if self._shared_conn is not None:
            self._shared_conn.close()
            self._shared_conn = None

    # ------------------------------------------------------------------
    def put_document(self, document: Document) -> None:
        with self.transaction() as tx:
            tx.put_document(document)

    def delete_document(self, collection: str, doc_id: str) -> None:
        with self.transaction() as tx:
            tx.delete_document(collection, doc_id)

    def get_document(self, collection: str, doc_id: str) -> Document | None:
        with self._connection() as conn:
            row = conn.execute(
                f"SELECT {_DOC_COLUMNS} FROM documents WHERE collection = ? AND doc_id = ?",
                (collection, doc_id),
            ).fetchone()
        if not row:
            return None
        return self._row_to_document(row)

    def list_documents(self, collection: str, *where: Where) -> list[Document]:
        with self._connection() as conn:
            rows = conn.execute(
                f"SELECT {_DOC_COLUMNS} FROM documents WHERE collection = ? ORDER BY doc_id",
                (collection,),
            ).fetchall()
        documents = [self._row_to_document(row) for row in rows]
        return [doc for doc in documents if all(clause.matches(doc.data) for clause in where)]

    def count_documents(self, collection: str | None = None) -> int:
        query = "SELECT COUNT(*) AS total FROM documents"
        params: tuple[Any, ...] = ()
        if collection:
            query += " WHERE collection = ?"
            params = (collection,)
        with self._connection() as conn:
            row = conn.execute(query, params).fetchone()
        if not row or row["total"] is None:
            return 0
        return int(row["total"])

    def _row_to_document(self, row: sqlite3.Row) -> Document:
        updated: dict[str, datetime] = {}
        for group, raw in json.loads(row["updated_at"]).items():
            ts = parse_timestamp(raw)
            if ts is not None:
                updated[group] = ts
        return Document(
            collection=row["collection"],
            id=row["doc_id"],
            data=json.loads(row["data"]),
            versions={group: int(value) for group, value in json.loads(row["versions"]).items()},
            updated_at=updated,
        )

    # ------------------------------------------------------------------
    def get_folder(self, folder_id: str) -> SharedFolder | None:
        document = self.get_document(COLLECTION_FOLDERS, folder_id)
        return None if document is None else SharedFolder.from_payload(document.data)

    def folders_owned_by(self, athlete_id: str) -> list[SharedFolder]:
        return [
            SharedFolder.from_payload(doc.data)
            for doc in self.list_documents(COLLECTION_FOLDERS, eq("ownerAthleteID", athlete_id))
        ]

    def folders_shared_with(self, coach_id: str) -> list[SharedFolder]:
        return [
            SharedFolder.from_payload(doc.data)
            for doc in self.list_documents(COLLECTION_FOLDERS, contains("sharedWithCoachIDs", coach_id))
        ]

    def get_invitation(self, invitation_id: str) -> CoachInvitation | None:
        document = self.get_document(COLLECTION_INVITATIONS, invitation_id)
        return None if document is None else CoachInvitation.from_payload(document.data)

    def invitations_for_email(self, email: str) -> list[CoachInvitation]:
        return [
            CoachInvitation.from_payload(doc.data)
            for doc in self.list_documents(COLLECTION_INVITATIONS, eq("coachEmail", normalise_email(email)))
        ]

    def invitations_for_athlete(self, athlete_id: str) -> list[CoachInvitation]:
        return [
            CoachInvitation.from_payload(doc.data)
            for doc in self.list_documents(COLLECTION_INVITATIONS, eq("athleteID", athlete_id))
        ]

    def revocations_for_athlete(self, athlete_id: str) -> list[RevocationEvent]:
        return [
            RevocationEvent.from_payload(doc.data)
            for doc in self.list_documents(COLLECTION_REVOCATIONS, eq("athleteID", athlete_id))
        ]

    # ------------------------------------------------------------------
    def cached_permission(self, folder_id: str, coach_id: str) -> Permission | None:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT can_upload, can_comment FROM permission_cache WHERE folder_id = ? AND coach_id = ?",
                (folder_id, coach_id),
            ).fetchone()
        if not row:
            return None
        return Permission(can_upload=bool(row["can_upload"]), can_comment=bool(row["can_comment"]))

    def cache_permission(self, folder_id: str, coach_id: str, permission: Permission, verified_at: datetime) -> None:
        with self.transaction() as tx:
            tx.cache_permission(folder_id, coach_id, permission, verified_at)

    def purge_permission(self, folder_id: str, coach_id: str) -> None:
        with self.transaction() as tx:
            tx.purge_permission(folder_id, coach_id)
        _LOGGER.debug("Purged cached permission for coach %s on folder %s", coach_id, folder_id)

    def sync_state(self, entity_type: str, owner_id: str) -> dict[str, Any] | None:
        with self._connection() as conn:
            row = conn.execute(
                """
                SELECT last_attempt_at, last_success_at, last_error, last_count
                  FROM sync_state
                 WHERE entity_type = ? AND owner_id = ?
                """,
                (entity_type, owner_id),
            ).fetchone()
        if not row:
            return None
        return {
            "last_attempt_at": row["last_attempt_at"],
            "last_success_at": row["last_success_at"],
            "last_error": row["last_error"],
            "last_count": row["last_count"],
        }
