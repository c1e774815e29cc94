"""Folder sharing workflows: invitations, membership and revocation."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable, Sequence
from datetime import datetime
from typing import Any, TypeVar
from uuid import uuid4

from ..cloudsync.conflict import ConflictResolver
from ..cloudsync.coordinator import merge_snapshot
from ..cloudsync.remote import Document, RemoteAuthority, Where, Write, contains, eq
from ..cloudsync.replica import LocalReplica
from ..config import SharingConfig
from ..const import (
    COLLECTION_COMMENTS,
    COLLECTION_FOLDERS,
    COLLECTION_INVITATIONS,
    COLLECTION_REVOCATIONS,
    COLLECTION_UPLOADS,
    COLLECTION_USERS,
)
from ..errors import (
    AccessRevoked,
    Conflict,
    DuplicateInvitation,
    EmptyComment,
    FolderNotFound,
    InvalidEmail,
    InvalidName,
    InvitationAlreadyProcessed,
    InvitationExpired,
    InvitationNotFound,
    NetworkUnavailable,
    Unauthorized,
    ValidationError,
)
from ..models import (
    CoachInvitation,
    Comment,
    FolderAction,
    InvitationStatus,
    Permission,
    RevocationEvent,
    SharedFolder,
    UploadRecord,
    User,
    UserRole,
    format_timestamp,
    is_valid_email,
    normalise_email,
    utcnow,
)
from ..utils.concurrency import concurrency_for, gather_bounded
from .permissions import FolderSession

_LOGGER = logging.getLogger(__name__)

T = TypeVar("T")
RevocationListener = Callable[[RevocationEvent], Awaitable[None] | None]


class SharedFolderManager:
    """Read-verify-write sharing operations on behalf of one signed-in user.

    Every mutation reads the records it depends on, checks its preconditions
    and commits with the versions it observed. A ``Conflict`` is retried once
    from a fresh read. The replica is only touched after the authority has
    accepted a commit, and mutations never fall back to it when offline.
    """

    def __init__(
        self,
        remote: RemoteAuthority,
        replica: LocalReplica,
        user: User,
        config: SharingConfig | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
        id_factory: Callable[[], str] | None = None,
        conflict_resolver: ConflictResolver | None = None,
    ) -> None:
        self.remote = remote
        self.replica = replica
        self.user = user
        self.config = config or SharingConfig()
        self._clock = clock
        self._new_id = id_factory or (lambda: uuid4().hex)
        self.conflicts = conflict_resolver or ConflictResolver()
        self._revocation_listeners: list[RevocationListener] = []

    # ------------------------------------------------------------------
    @property
    def _display_name(self) -> str:
        return self.user.display_name or self.user.email

    def _require_athlete(self) -> None:
        if self.user.role is not UserRole.ATHLETE:
            raise Unauthorized("only athletes manage folders", reason="role")

    def _require_coach(self) -> None:
        if self.user.role is not UserRole.COACH:
            raise Unauthorized("only coaches answer invitations", reason="role")

    async def _with_conflict_retry(self, operation: str, attempt: Callable[[], Awaitable[T]]) -> T:
        try:
            return await attempt()
        except Conflict as err:
            _LOGGER.info("%s hit a concurrent change (%s); retrying once", operation, err)
        return await attempt()

    async def _owned_folder(self, folder_id: str) -> tuple[Document, SharedFolder]:
        document = await self.remote.get(COLLECTION_FOLDERS, folder_id)
        if document is None:
            raise FolderNotFound(f"folder {folder_id} not found")
        folder = SharedFolder.from_payload(document.data)
        if folder.owner_athlete_id != self.user.id:
            raise Unauthorized("only the folder owner may do this", reason="not_owner")
        return document, folder

    async def _invitation(self, invitation_id: str) -> tuple[Document, CoachInvitation]:
        document = await self.remote.get(COLLECTION_INVITATIONS, invitation_id)
        if document is None:
            raise InvitationNotFound(f"invitation {invitation_id} not found")
        return document, CoachInvitation.from_payload(document.data)

    # ------------------------------------------------------------------
    async def create_folder(self, name: str, owner_athlete_id: str | None = None) -> str:
        """Create an empty folder owned by the signed-in athlete."""

        clean_name = str(name or "").strip()
        if not clean_name:
            raise InvalidName()
        self._require_athlete()
        owner_id = owner_athlete_id or self.user.id
        if owner_id != self.user.id:
            raise Unauthorized("athletes can only create their own folders", reason="not_owner")

        folder = SharedFolder(id=self._new_id(), name=clean_name, owner_athlete_id=owner_id, created_at=self._clock())
        (document,) = await self.remote.commit([Write.create(COLLECTION_FOLDERS, folder.id, folder.to_payload())])
        if document is not None:
            self.replica.put_document(document)
        _LOGGER.info("Created folder %s for athlete %s", folder.id, owner_id)
        return folder.id

    async def rename_folder(self, folder_id: str, name: str) -> SharedFolder:
        clean_name = str(name or "").strip()
        if not clean_name:
            raise InvalidName()
        self._require_athlete()

        async def attempt() -> SharedFolder:
            document, _ = await self._owned_folder(folder_id)
            (updated,) = await self.remote.commit([Write.update(document, {"name": clean_name})])
            if updated is None:
                raise FolderNotFound(f"folder {folder_id} not found")
            self.replica.put_document(updated)
            return SharedFolder.from_payload(updated.data)

        return await self._with_conflict_retry("rename_folder", attempt)

    async def invite_coach(
        self,
        folder_id: str,
        coach_email: str,
        coach_name: str | None = None,
        requested_permission: Permission | None = None,
    ) -> str:
        """Invite ``coach_email`` to ``folder_id``; returns the invitation id."""

        email = normalise_email(coach_email)
        if not is_valid_email(email):
            raise InvalidEmail()
        self._require_athlete()
        permission = requested_permission or Permission.full()

        _, folder = await self._owned_folder(folder_id)
        now = self._clock()
        existing = await self.remote.query(COLLECTION_INVITATIONS, eq("folderID", folder_id), eq("coachEmail", email))
        for document in existing:
            invitation = CoachInvitation.from_payload(document.data)
            if invitation.effective_status(now) is InvitationStatus.PENDING:
                raise DuplicateInvitation(f"{email} already has a pending invitation to {folder.name}")

        invitation = CoachInvitation(
            id=self._new_id(),
            athlete_id=self.user.id,
            athlete_name=self._display_name,
            coach_email=email,
            folder_id=folder.id,
            folder_name=folder.name,
            status=InvitationStatus.PENDING,
            created_at=now,
            expires_at=now + self.config.invitation_ttl,
            coach_name=(coach_name or "").strip() or None,
            permissions=permission,
        )
        (document,) = await self.remote.commit(
            [Write.create(COLLECTION_INVITATIONS, invitation.id, invitation.to_payload())]
        )
        if document is not None:
            self.replica.put_document(document)
        _LOGGER.info("Invited %s to folder %s (invitation %s)", email, folder_id, invitation.id)
        return invitation.id

    async def accept_invitation(self, invitation_id: str) -> SharedFolder:
        """Accept an invitation and join its folder in a single commit."""

        self._require_coach()

        async def attempt() -> SharedFolder:
            invitation_doc, invitation = await self._invitation(invitation_id)
            now = self._clock()
            if invitation.status.terminal:
                raise InvitationAlreadyProcessed()
            if invitation.is_expired(now):
                raise InvitationExpired()
            folder_doc = await self.remote.get(COLLECTION_FOLDERS, invitation.folder_id)
            if folder_doc is None:
                raise FolderNotFound(f"folder {invitation.folder_id} not found")
            folder = SharedFolder.from_payload(folder_doc.data)

            writes = [
                Write.update(
                    invitation_doc,
                    {
                        "status": InvitationStatus.ACCEPTED.value,
                        "respondedAt": format_timestamp(now),
                        "coachID": self.user.id,
                    },
                )
            ]
            # Members accepting a newer invitation take its grant.
            if folder.permission_for(self.user.id) != invitation.permissions:
                folder.add_member(self.user.id, invitation.permissions)
                writes.append(Write.update(folder_doc, folder.membership_payload()))
            results = await self.remote.commit(writes)

            permission = invitation.permissions
            with self.replica.transaction() as tx:
                for document in results:
                    if document is not None:
                        tx.put_document(document)
                if len(results) == 1:
                    tx.put_document(folder_doc)
                tx.cache_permission(folder.id, self.user.id, permission, now)
            return folder

        folder = await self._with_conflict_retry("accept_invitation", attempt)
        _LOGGER.info("Coach %s accepted invitation %s for folder %s", self.user.id, invitation_id, folder.id)
        return folder

    async def accept_invitations(self, invitation_ids: Sequence[str]) -> dict[str, Exception | None]:
        """Accept several invitations; maps each id to ``None`` or the error it raised."""

        ids = list(dict.fromkeys(invitation_ids))
        limit = concurrency_for(self.config.connection_class, self.config.max_concurrency)
        outcomes = await gather_bounded(ids, self.accept_invitation, limit=limit, return_exceptions=True)
        results: dict[str, Exception | None] = {}
        for invitation_id, outcome in zip(ids, outcomes, strict=True):
            if isinstance(outcome, Exception):
                _LOGGER.warning("Accepting invitation %s failed: %s", invitation_id, outcome)
                results[invitation_id] = outcome
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                results[invitation_id] = None
        return results

    async def decline_invitation(self, invitation_id: str, *, strict: bool = False) -> bool:
        """Decline a pending invitation.

        Returns ``False`` without writing when the invitation was already
        answered, unless ``strict`` asks for ``InvitationAlreadyProcessed``.
        """

        self._require_coach()

        async def attempt() -> bool:
            document, invitation = await self._invitation(invitation_id)
            now = self._clock()
            if invitation.status.terminal:
                if strict:
                    raise InvitationAlreadyProcessed()
                _LOGGER.debug("Invitation %s already %s; decline ignored", invitation_id, invitation.status.value)
                return False
            if invitation.is_expired(now):
                raise InvitationExpired()
            (updated,) = await self.remote.commit(
                [
                    Write.update(
                        document,
                        {"status": InvitationStatus.DECLINED.value, "respondedAt": format_timestamp(now)},
                    )
                ]
            )
            if updated is not None:
                self.replica.put_document(updated)
            return True

        return await self._with_conflict_retry("decline_invitation", attempt)

    async def revoke_coach_access(self, folder_id: str, coach_id: str) -> RevocationEvent | None:
        """Remove a coach and record one revocation event in the same commit.

        Returns ``None`` when the coach is not a member, so repeated calls
        never produce a second event.
        """

        self._require_athlete()

        async def attempt() -> RevocationEvent | None:
            document, folder = await self._owned_folder(folder_id)
            if not folder.remove_member(coach_id):
                _LOGGER.debug("Coach %s is not a member of folder %s", coach_id, folder_id)
                return None
            event = RevocationEvent(
                id=self._new_id(),
                folder_id=folder.id,
                folder_name=folder.name,
                coach_id=coach_id,
                coach_email=await self._coach_email(folder_id, coach_id),
                athlete_id=self.user.id,
                athlete_name=self._display_name,
                revoked_at=self._clock(),
            )
            results = await self.remote.commit(
                [
                    Write.update(document, folder.membership_payload()),
                    Write.create(COLLECTION_REVOCATIONS, event.id, event.to_payload()),
                ]
            )
            with self.replica.transaction() as tx:
                for stored in results:
                    if stored is not None:
                        tx.put_document(stored)
                tx.purge_permission(folder_id, coach_id)
            return event

        event = await self._with_conflict_retry("revoke_coach_access", attempt)
        if event is not None:
            _LOGGER.info("Revoked coach %s from folder %s", coach_id, folder_id)
            await self._notify_revocation_listeners([event])
        return event

    async def _coach_email(self, folder_id: str, coach_id: str) -> str:
        user_doc = await self.remote.get(COLLECTION_USERS, coach_id)
        if user_doc is not None and user_doc.data.get("email"):
            return normalise_email(user_doc.data["email"])
        accepted = await self.remote.query(
            COLLECTION_INVITATIONS,
            eq("folderID", folder_id),
            eq("coachID", coach_id),
        )
        for document in accepted:
            if document.data.get("coachEmail"):
                return normalise_email(document.data["coachEmail"])
        _LOGGER.warning("No email on record for coach %s; revocation notice cannot be sent", coach_id)
        return ""

    async def update_permissions(self, folder_id: str, coach_id: str, new_permission: Permission) -> SharedFolder:
        self._require_athlete()

        async def attempt() -> SharedFolder:
            document, folder = await self._owned_folder(folder_id)
            folder.set_permission(coach_id, new_permission)
            (updated,) = await self.remote.commit([Write.update(document, folder.membership_payload())])
            if updated is None:
                raise FolderNotFound(f"folder {folder_id} not found")
            self.replica.put_document(updated)
            return folder

        return await self._with_conflict_retry("update_permissions", attempt)

    async def delete_folder(self, folder_id: str) -> list[RevocationEvent]:
        """Delete a folder, revoking every member and withdrawing open invitations."""

        self._require_athlete()

        async def attempt() -> list[RevocationEvent]:
            document, folder = await self._owned_folder(folder_id)
            now = self._clock()
            invitations = await self.remote.query(COLLECTION_INVITATIONS, eq("folderID", folder_id))
            events: list[RevocationEvent] = []
            for coach_id in sorted(folder.shared_with_coach_ids):
                events.append(
                    RevocationEvent(
                        id=self._new_id(),
                        folder_id=folder.id,
                        folder_name=folder.name,
                        coach_id=coach_id,
                        coach_email=await self._coach_email(folder_id, coach_id),
                        athlete_id=self.user.id,
                        athlete_name=self._display_name,
                        revoked_at=now,
                    )
                )
            pending = [
                doc
                for doc in invitations
                if doc.data.get("status") == InvitationStatus.PENDING.value
            ]
            writes = [Write.create(COLLECTION_REVOCATIONS, event.id, event.to_payload()) for event in events]
            writes.extend(Write.delete(doc) for doc in pending)
            writes.append(Write.delete(document))
            results = await self.remote.commit(writes)

            with self.replica.transaction() as tx:
                for stored in results[: len(events)]:
                    if stored is not None:
                        tx.put_document(stored)
                for doc in pending:
                    tx.delete_document(COLLECTION_INVITATIONS, doc.id)
                tx.delete_document(COLLECTION_FOLDERS, folder_id)
                tx.purge_folder_permissions(folder_id)
            return events

        events = await self._with_conflict_retry("delete_folder", attempt)
        _LOGGER.info("Deleted folder %s (%d coaches revoked)", folder_id, len(events))
        await self._notify_revocation_listeners(events)
        return events

    # ------------------------------------------------------------------
    async def _read_scope(self, collection: str, where: Where, *, coach_id: str | None = None) -> list[Document]:
        """Fetch one scope and refresh the replica, serving the replica when offline.

        With ``coach_id`` set, folders dropped from the scope also lose that
        coach's cached permission.
        """

        try:
            remote_docs = await self.remote.query(collection, where)
        except NetworkUnavailable as err:
            _LOGGER.info("Serving %s from the local replica: %s", collection, err)
            return self.replica.list_documents(collection, where)
        merged, stale_ids = merge_snapshot(self.replica, self.conflicts, collection, where, remote_docs)
        with self.replica.transaction() as tx:
            for document in merged:
                tx.put_document(document)
            for doc_id in stale_ids:
                tx.delete_document(collection, doc_id)
                if coach_id is not None:
                    tx.purge_permission(doc_id, coach_id)
        return merged

    async def list_athlete_folders(self, athlete_id: str | None = None) -> list[SharedFolder]:
        documents = await self._read_scope(COLLECTION_FOLDERS, eq("ownerAthleteID", athlete_id or self.user.id))
        return [SharedFolder.from_payload(doc.data) for doc in documents]

    async def list_coach_folders(self, coach_id: str | None = None) -> list[SharedFolder]:
        member_id = coach_id or self.user.id
        where = contains("sharedWithCoachIDs", member_id)
        documents = await self._read_scope(COLLECTION_FOLDERS, where, coach_id=member_id)
        return [SharedFolder.from_payload(doc.data) for doc in documents]

    async def pending_invitations(self, email: str | None = None) -> list[CoachInvitation]:
        """Open invitations for ``email``; expired ones are left out."""

        email_norm = normalise_email(email or self.user.email)
        documents = await self._read_scope(COLLECTION_INVITATIONS, eq("coachEmail", email_norm))
        now = self._clock()
        invitations = [CoachInvitation.from_payload(doc.data) for doc in documents]
        return [item for item in invitations if item.effective_status(now) is InvitationStatus.PENDING]

    # ------------------------------------------------------------------
    def _require_capability(self, session: FolderSession, action: FolderAction) -> None:
        session.require_open()
        if session.subject_id != self.user.id:
            raise Unauthorized("session belongs to another user", reason="session_owner")
        if not session.can(action):
            raise Unauthorized(f"{action.value} is not permitted in this folder", reason=f"{action.value}_denied")

    async def _commit_folder_content(self, session: FolderSession, write: Write) -> Document | None:
        try:
            (stored,) = await self.remote.commit([write])
        except Unauthorized as err:
            if session.is_owner:
                raise
            # The authority no longer recognises the grant held by this session.
            self.replica.purge_permission(session.folder_id, session.subject_id)
            session.close()
            raise AccessRevoked(
                folder_id=session.folder_id,
                coach_id=session.subject_id,
                reason="commit_refused",
            ) from err
        return stored

    async def add_comment(self, session: FolderSession, text: str, timestamp: float = 0.0) -> str:
        clean_text = str(text or "").strip()
        if not clean_text:
            raise EmptyComment()
        self._require_capability(session, FolderAction.COMMENT)
        comment = Comment(
            id=self._new_id(),
            folder_id=session.folder_id,
            author_id=self.user.id,
            text=clean_text,
            timestamp=float(timestamp),
            created_at=self._clock(),
        )
        await self._commit_folder_content(session, Write.create(COLLECTION_COMMENTS, comment.id, comment.to_payload()))
        return comment.id

    async def record_upload(self, session: FolderSession, file_name: str) -> str:
        clean_name = str(file_name or "").strip()
        if not clean_name:
            raise ValidationError("file name required", reason="file_name")
        self._require_capability(session, FolderAction.UPLOAD)
        record = UploadRecord(
            id=self._new_id(),
            folder_id=session.folder_id,
            uploaded_by=self.user.id,
            file_name=clean_name,
            created_at=self._clock(),
        )
        await self._commit_folder_content(session, Write.create(COLLECTION_UPLOADS, record.id, record.to_payload()))
        return record.id

    async def record_uploads(self, session: FolderSession, file_names: Iterable[str]) -> list[str]:
        names = list(file_names)
        self._require_capability(session, FolderAction.UPLOAD)
        limit = concurrency_for(self.config.connection_class, self.config.max_concurrency)
        return await gather_bounded(names, lambda name: self.record_upload(session, name), limit=limit)

    # ------------------------------------------------------------------
    def register_revocation_listener(self, listener: RevocationListener) -> Callable[[], None]:
        """Call ``listener`` with each committed revocation; returns an unsubscribe callable."""

        if listener not in self._revocation_listeners:
            self._revocation_listeners.append(listener)

        def _remove() -> None:
            if listener in self._revocation_listeners:
                self._revocation_listeners.remove(listener)

        return _remove

    async def _notify_revocation_listeners(self, events: Iterable[RevocationEvent]) -> None:
        for event in events:
            for listener in list(self._revocation_listeners):
                try:
                    result = listener(event)
                    if asyncio.iscoroutine(result):
                        await result
                except Exception as err:
                    _LOGGER.warning("Revocation listener failed for %s: %s", event.id, err, exc_info=True)

    def status(self) -> dict[str, Any]:
        return {
            "user_id": self.user.id,
            "role": self.user.role.value,
            "replica_documents": self.replica.count_documents(),
            "revocation_listeners": len(self._revocation_listeners),
        }
