"""Fresh permission checks for sensitive folder operations."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime

from ..cloudsync.remote import RemoteAuthority
from ..cloudsync.replica import LocalReplica
from ..const import COLLECTION_FOLDERS
from ..errors import AccessRevoked, FolderNotFound, SessionClosed, Unauthorized
from ..models import FolderAction, Permission, SharedFolder, utcnow

_LOGGER = logging.getLogger(__name__)


def can_perform(permission: Permission | None, action: FolderAction | str) -> bool:
    """Pure capability check; members may always view."""

    if permission is None:
        return False
    return permission.allows(action)


@dataclass(slots=True)
class FolderSession:
    """Permission verified once when a folder was opened.

    Closing the folder ends the session; further use raises ``SessionClosed``
    and the caller has to open the folder again, which re-verifies.
    """

    folder_id: str
    subject_id: str
    permission: Permission
    opened_at: datetime
    is_owner: bool = False
    _closed: bool = field(default=False, repr=False)

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True

    def require_open(self) -> None:
        if self._closed:
            raise SessionClosed(f"session for folder {self.folder_id} is closed")

    def can(self, action: FolderAction | str) -> bool:
        self.require_open()
        return can_perform(self.permission, action)


class PermissionValidator:
    def __init__(
        self,
        remote: RemoteAuthority,
        replica: LocalReplica,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.remote = remote
        self.replica = replica
        self._clock = clock

    async def verify_folder_access(self, folder_id: str, coach_id: str) -> Permission:
        """Re-read the folder and return the caller's permission.

        Never answers from the replica. Losing membership, or being refused
        the read, purges the cached permission and raises ``AccessRevoked``.
        ``NetworkUnavailable`` propagates so callers fail closed.
        """

        try:
            document = await self.remote.get(COLLECTION_FOLDERS, folder_id)
        except Unauthorized as err:
            self._forget(folder_id, coach_id)
            raise AccessRevoked(folder_id=folder_id, coach_id=coach_id, reason="read_refused") from err
        if document is None:
            self._forget(folder_id, coach_id)
            raise FolderNotFound(f"folder {folder_id} not found")

        folder = SharedFolder.from_payload(document.data)
        if folder.owner_athlete_id == coach_id:
            permission = Permission.full()
        else:
            member_permission = folder.permission_for(coach_id)
            if member_permission is None:
                self._forget(folder_id, coach_id)
                raise AccessRevoked(folder_id=folder_id, coach_id=coach_id, reason="not_a_member")
            permission = member_permission

        with self.replica.transaction() as tx:
            tx.put_document(document)
            tx.cache_permission(folder_id, coach_id, permission, self._clock())
        return permission

    def can_perform(self, permission: Permission | None, action: FolderAction | str) -> bool:
        return can_perform(permission, action)

    @asynccontextmanager
    async def open_session(self, folder_id: str, coach_id: str) -> AsyncIterator[FolderSession]:
        permission = await self.verify_folder_access(folder_id, coach_id)
        folder = self.replica.get_folder(folder_id)
        session = FolderSession(
            folder_id=folder_id,
            subject_id=coach_id,
            permission=permission,
            opened_at=self._clock(),
            is_owner=folder is not None and folder.owner_athlete_id == coach_id,
        )
        try:
            yield session
        finally:
            session.close()

    def invalidate(self, folder_id: str, coach_id: str) -> None:
        """Drop the cached permission after the authority reported a revocation."""

        self._forget(folder_id, coach_id)

    def _forget(self, folder_id: str, coach_id: str) -> None:
        _LOGGER.info("Access to folder %s no longer valid for %s", folder_id, coach_id)
        self.replica.purge_permission(folder_id, coach_id)
