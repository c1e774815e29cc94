"""Access rules evaluated by the authority for every read and commit."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from datetime import datetime
from typing import Any

from coachshare.cloudsync.remote import OP_CREATE, OP_DELETE, OP_UPDATE, Document, Write
from coachshare.const import (
    COLLECTION_COMMENTS,
    COLLECTION_FOLDERS,
    COLLECTION_INVITATIONS,
    COLLECTION_REVOCATIONS,
    COLLECTION_UPLOADS,
    COLLECTION_USERS,
    ROLE_ATHLETE,
)
from coachshare.errors import (
    EmptyComment,
    FolderNotFound,
    InvalidEmail,
    InvitationAlreadyProcessed,
    InvitationExpired,
    NotFound,
    SharingError,
    Unauthorized,
    ValidationError,
)
from coachshare.models import (
    CoachInvitation,
    InvitationStatus,
    RevocationEvent,
    SharedFolder,
    is_valid_email,
    normalise_email,
    parse_timestamp,
)

from .auth import Principal

_LOGGER = logging.getLogger(__name__)

Lookup = Callable[[str, str], Document | None]
Finder = Callable[[str], list[Document]]


def _deny(message: str, reason: str) -> Unauthorized:
    return Unauthorized(message, reason=reason)


class SecurityRules:
    """Decide whether a principal may read a document or apply a write.

    ``lookup`` returns the committed document for ``(collection, id)`` and
    ``find`` lists a collection; both see state from before the commit.
    """

    def __init__(self, lookup: Lookup, find: Finder, clock: Callable[[], datetime]) -> None:
        self._lookup = lookup
        self._find = find
        self._clock = clock

    # ------------------------------------------------------------------
    def check_read(self, principal: Principal, document: Document) -> None:
        if principal.is_system:
            return
        data = document.data
        collection = document.collection
        if collection == COLLECTION_USERS:
            return
        if collection == COLLECTION_FOLDERS:
            self._check_folder_read(principal, data)
            return
        if collection == COLLECTION_INVITATIONS:
            self._check_invitation_read(principal, data)
            return
        if collection == COLLECTION_REVOCATIONS:
            if data.get("athleteID") != principal.subject_id:
                raise _deny("only the owning athlete may read revocations", "revocation_read")
            return
        if collection in (COLLECTION_COMMENTS, COLLECTION_UPLOADS):
            folder = self._folder(str(data.get("folderID", "")))
            if folder.owner_athlete_id != principal.subject_id and not folder.is_member(principal.subject_id):
                raise _deny("not a member of this folder", "folder_content_read")
            return
        raise _deny(f"unknown collection {collection}", "unknown_collection")

    def can_read(self, principal: Principal, document: Document) -> bool:
        try:
            self.check_read(principal, document)
        except SharingError:
            return False
        return True

    def _check_folder_read(self, principal: Principal, data: Mapping[str, Any]) -> None:
        if data.get("ownerAthleteID") == principal.subject_id:
            return
        if principal.subject_id in (data.get("sharedWithCoachIDs") or []):
            return
        if principal.is_coach and self._has_open_invitation(principal, str(data.get("id", ""))):
            return
        raise _deny("no access to this folder", "folder_read")

    def _check_invitation_read(self, principal: Principal, data: Mapping[str, Any]) -> None:
        if data.get("athleteID") == principal.subject_id:
            return
        if not self._addressed_to(principal, data):
            raise _deny("invitation addressed to someone else", "invitation_read")
        # Answered invitations stay readable as history; open ones only until expiry.
        if data.get("status") == InvitationStatus.PENDING.value and self._expired(data):
            raise InvitationExpired(reason="invitation_read")

    def _has_open_invitation(self, principal: Principal, folder_id: str) -> bool:
        for document in self._find(COLLECTION_INVITATIONS):
            data = document.data
            if (
                data.get("folderID") == folder_id
                and data.get("status") == InvitationStatus.PENDING.value
                and self._addressed_to(principal, data)
                and not self._expired(data)
            ):
                return True
        return False

    # ------------------------------------------------------------------
    def check_write(
        self,
        principal: Principal,
        write: Write,
        current: Document | None,
        result: Mapping[str, Any] | None,
        batch: Sequence[Write],
    ) -> None:
        """Raise when ``write`` is not allowed; ``result`` is the post-write data."""

        if result is not None:
            self.validate_shape(write.collection, result)
        if principal.is_system:
            if write.collection == COLLECTION_REVOCATIONS and write.op == OP_UPDATE:
                self._check_delivery_update(write, current)
            return
        handlers = {
            COLLECTION_USERS: self._check_user_write,
            COLLECTION_FOLDERS: self._check_folder_write,
            COLLECTION_INVITATIONS: self._check_invitation_write,
            COLLECTION_REVOCATIONS: self._check_revocation_write,
            COLLECTION_COMMENTS: self._check_comment_write,
            COLLECTION_UPLOADS: self._check_upload_write,
        }
        handler = handlers.get(write.collection)
        if handler is None:
            raise _deny(f"unknown collection {write.collection}", "unknown_collection")
        handler(principal, write, current, result, batch)

    def validate_shape(self, collection: str, data: Mapping[str, Any]) -> None:
        try:
            if collection == COLLECTION_FOLDERS:
                SharedFolder.from_payload(data)
            elif collection == COLLECTION_INVITATIONS:
                CoachInvitation.from_payload(data)
            elif collection == COLLECTION_REVOCATIONS:
                RevocationEvent.from_payload(data)
        except (KeyError, ValueError) as err:
            raise ValidationError(f"malformed {collection} document: {err}", reason="malformed") from err

    # ------------------------------------------------------------------
    def _check_user_write(self, principal, write, current, result, batch) -> None:
        if write.doc_id != principal.subject_id:
            raise _deny("users may only write their own profile", "user_write")
        if result is not None and not is_valid_email(result.get("email")):
            raise InvalidEmail()

    def _check_folder_write(self, principal, write, current, result, batch) -> None:
        if write.op == OP_CREATE:
            principal.require(ROLE_ATHLETE)
            if (result or {}).get("ownerAthleteID") != principal.subject_id:
                raise _deny("folders are created by their owner", "folder_create")
            return
        if current is None:
            raise FolderNotFound(f"folder {write.doc_id} not found")
        owner_id = current.data.get("ownerAthleteID")
        if write.op == OP_DELETE:
            if owner_id != principal.subject_id:
                raise _deny("only the owner may delete a folder", "folder_delete")
            return
        if owner_id == principal.subject_id:
            if (result or {}).get("ownerAthleteID") != owner_id:
                raise _deny("folder ownership cannot change", "folder_owner")
            if "membership" in write.groups:
                self._check_owner_membership(write, current, result or {}, batch)
            return
        self._check_self_admission(principal, write, current, result or {}, batch)

    def _check_owner_membership(
        self,
        write: Write,
        current: Document,
        result: Mapping[str, Any],
        batch: Sequence[Write],
    ) -> None:
        """Owners change grants in place and remove coaches only with a revocation record."""

        before = SharedFolder.from_payload(current.data).shared_with_coach_ids
        after = SharedFolder.from_payload(result).shared_with_coach_ids
        if after - before:
            raise _deny("coaches join a folder only by accepting an invitation", "folder_membership")
        revoked: dict[str, int] = {}
        for candidate in batch:
            if candidate.collection != COLLECTION_REVOCATIONS or candidate.op != OP_CREATE:
                continue
            if candidate.patch.get("folderID") != write.doc_id:
                continue
            coach_id = str(candidate.patch.get("coachID", ""))
            revoked[coach_id] = revoked.get(coach_id, 0) + 1
        if revoked != dict.fromkeys(before - after, 1):
            raise _deny("each removed coach needs exactly one revocation record", "folder_revocation")

    def _check_self_admission(
        self,
        principal: Principal,
        write: Write,
        current: Document,
        result: Mapping[str, Any],
        batch: Sequence[Write],
    ) -> None:
        """A coach may add themselves, or take a new grant, alongside accepting their invitation."""

        if not principal.is_coach or write.groups != {"membership"}:
            raise _deny("coaches may only join a folder", "folder_membership")
        before = SharedFolder.from_payload(current.data)
        after = SharedFolder.from_payload(result)
        if after.shared_with_coach_ids != before.shared_with_coach_ids | {principal.subject_id}:
            raise _deny("coaches may only add themselves", "folder_membership")
        for other in before.shared_with_coach_ids - {principal.subject_id}:
            if before.permissions[other] != after.permissions[other]:
                raise _deny("coaches may not change other members", "folder_membership")
        granted = after.permissions[principal.subject_id]
        for candidate in batch:
            if candidate.collection != COLLECTION_INVITATIONS or candidate.op != OP_UPDATE:
                continue
            if candidate.patch.get("status") != InvitationStatus.ACCEPTED.value:
                continue
            invitation_doc = self._lookup(COLLECTION_INVITATIONS, candidate.doc_id)
            if invitation_doc is None:
                continue
            invitation = CoachInvitation.from_payload(invitation_doc.data)
            if (
                invitation.folder_id == write.doc_id
                and invitation.status is InvitationStatus.PENDING
                and self._addressed_to(principal, invitation_doc.data)
                and not invitation.is_expired(self._clock())
                and invitation.permissions == granted
            ):
                return
        raise _deny("joining a folder requires accepting its invitation", "folder_membership")

    def _check_invitation_write(self, principal, write, current, result, batch) -> None:
        if write.op == OP_CREATE:
            principal.require(ROLE_ATHLETE)
            data = result or {}
            if data.get("athleteID") != principal.subject_id:
                raise _deny("invitations are created by the inviting athlete", "invitation_create")
            if data.get("status") != InvitationStatus.PENDING.value:
                raise ValidationError("new invitations must be pending", reason="invitation_status")
            folder = self._folder(str(data.get("folderID", "")))
            if folder.owner_athlete_id != principal.subject_id:
                raise _deny("only the folder owner may invite", "invitation_create")
            if not is_valid_email(data.get("coachEmail")):
                raise InvalidEmail()
            return
        if current is None:
            raise NotFound(f"invitation {write.doc_id} not found")
        if write.op == OP_DELETE:
            if current.data.get("athleteID") != principal.subject_id:
                raise _deny("only the inviting athlete may delete an invitation", "invitation_delete")
            return
        if not self._addressed_to(principal, current.data):
            raise _deny("invitation addressed to someone else", "invitation_update")
        if write.groups != {"response"}:
            raise _deny("coaches may only answer an invitation", "invitation_update")
        if current.data.get("status") != InvitationStatus.PENDING.value:
            raise InvitationAlreadyProcessed(reason="invitation_update")
        if self._expired(current.data):
            raise InvitationExpired(reason="invitation_update")
        status = (result or {}).get("status")
        if status not in (InvitationStatus.ACCEPTED.value, InvitationStatus.DECLINED.value):
            raise ValidationError(f"invalid response status {status!r}", reason="invitation_status")
        if status == InvitationStatus.ACCEPTED.value and (result or {}).get("coachID") != principal.subject_id:
            raise _deny("accepting coach must match the caller", "invitation_update")

    def _check_revocation_write(self, principal, write, current, result, batch) -> None:
        if write.op == OP_UPDATE:
            raise _deny("revocations are append-only", "revocation_update")
        data = result if write.op == OP_CREATE else (current.data if current else {})
        if (data or {}).get("athleteID") != principal.subject_id:
            raise _deny("only the owning athlete may write revocations", "revocation_write")
        if write.op == OP_CREATE and (result or {}).get("emailSent"):
            raise ValidationError("new revocations start undelivered", reason="revocation_create")

    def _check_delivery_update(self, write: Write, current: Document | None) -> None:
        if set(write.patch) != {"emailSent"} or write.patch["emailSent"] is not True:
            raise _deny("only the delivery flag may change", "revocation_update")
        if current is None or current.data.get("emailSent"):
            raise _deny("delivery flag already set", "revocation_update")

    def _check_comment_write(self, principal, write, current, result, batch) -> None:
        if write.op == OP_UPDATE:
            raise _deny("comments cannot be edited", "comment_update")
        if write.op == OP_DELETE:
            folder = self._folder(str(current.data.get("folderID", ""))) if current else None
            if current and current.data.get("authorID") != principal.subject_id and (
                folder is None or folder.owner_athlete_id != principal.subject_id
            ):
                raise _deny("only the author or owner may delete a comment", "comment_delete")
            return
        data = result or {}
        if data.get("authorID") != principal.subject_id:
            raise _deny("comment author must match the caller", "comment_create")
        if not str(data.get("text", "")).strip():
            raise EmptyComment()
        self._require_capability(principal, str(data.get("folderID", "")), "comment")

    def _check_upload_write(self, principal, write, current, result, batch) -> None:
        if write.op == OP_UPDATE:
            raise _deny("upload records cannot be edited", "upload_update")
        if write.op == OP_DELETE:
            folder = self._folder(str(current.data.get("folderID", ""))) if current else None
            if current and current.data.get("uploadedBy") != principal.subject_id and (
                folder is None or folder.owner_athlete_id != principal.subject_id
            ):
                raise _deny("only the uploader or owner may delete an upload", "upload_delete")
            return
        data = result or {}
        if data.get("uploadedBy") != principal.subject_id:
            raise _deny("uploader must match the caller", "upload_create")
        self._require_capability(principal, str(data.get("folderID", "")), "upload")

    # ------------------------------------------------------------------
    def _require_capability(self, principal: Principal, folder_id: str, action: str) -> None:
        folder = self._folder(folder_id)
        if folder.owner_athlete_id == principal.subject_id:
            return
        permission = folder.permission_for(principal.subject_id)
        if permission is None or not permission.allows(action):
            _LOGGER.info("Denied %s on folder %s for %s", action, folder_id, principal.subject_id)
            raise _deny(f"{action} not permitted on this folder", f"{action}_denied")

    def _folder(self, folder_id: str) -> SharedFolder:
        document = self._lookup(COLLECTION_FOLDERS, folder_id)
        if document is None:
            raise FolderNotFound()
        return SharedFolder.from_payload(document.data)

    def _addressed_to(self, principal: Principal, data: Mapping[str, Any]) -> bool:
        email = normalise_email(principal.email)
        return bool(principal.is_coach and email and normalise_email(data.get("coachEmail")) == email)

    def _expired(self, data: Mapping[str, Any]) -> bool:
        expires_at = parse_timestamp(data.get("expiresAt"))
        return expires_at is None or self._clock() >= expires_at


__all__ = ["SecurityRules"]
