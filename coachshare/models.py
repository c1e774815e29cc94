"""Domain records for shared folders, invitations and revocations.

Attributes are snake_case; ``to_payload``/``from_payload`` translate to the
camelCase documents stored by the remote authority.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .errors import NotAMember

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def utcnow() -> datetime:
    return datetime.now(tz=UTC)


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, str) and value.strip():
        try:
            ts = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    return ts.astimezone(UTC)


def _required_timestamp(payload: Mapping[str, Any], key: str) -> datetime:
    ts = parse_timestamp(payload.get(key))
    if ts is None:
        raise ValueError(f"{key} missing or invalid")
    return ts


def normalise_email(email: str | None) -> str:
    return str(email or "").strip().lower()


def is_valid_email(email: str | None) -> bool:
    return bool(EMAIL_PATTERN.match(normalise_email(email)))


class UserRole(str, Enum):
    ATHLETE = "athlete"
    COACH = "coach"


class InvitationStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"

    @property
    def terminal(self) -> bool:
        return self is not InvitationStatus.PENDING


class FolderAction(str, Enum):
    VIEW = "view"
    UPLOAD = "upload"
    COMMENT = "comment"


@dataclass(slots=True)
class User:
    id: str
    email: str
    role: UserRole
    display_name: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"id": self.id, "email": normalise_email(self.email), "role": self.role.value}
        if self.display_name:
            payload["displayName"] = self.display_name
        return payload

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> User:
        return cls(
            id=str(payload["id"]),
            email=normalise_email(payload.get("email")),
            role=UserRole(str(payload.get("role", UserRole.ATHLETE.value))),
            display_name=payload.get("displayName") or None,
        )


@dataclass(frozen=True, slots=True)
class Permission:
    """Capabilities granted to one coach on one folder. Viewing is implied by membership."""

    can_upload: bool = False
    can_comment: bool = False

    @classmethod
    def full(cls) -> Permission:
        return cls(can_upload=True, can_comment=True)

    def allows(self, action: FolderAction | str) -> bool:
        action = FolderAction(action)
        if action is FolderAction.UPLOAD:
            return self.can_upload
        if action is FolderAction.COMMENT:
            return self.can_comment
        return True

    def to_payload(self) -> dict[str, bool]:
        return {"canUpload": self.can_upload, "canComment": self.can_comment}

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any] | None) -> Permission:
        if not isinstance(payload, Mapping):
            return cls()
        return cls(
            can_upload=bool(payload.get("canUpload", False)),
            can_comment=bool(payload.get("canComment", False)),
        )


@dataclass(slots=True)
class SharedFolder:
    """An athlete's folder and the coaches it is shared with.

    ``shared_with_coach_ids`` and the keys of ``permissions`` always hold the
    same coach ids; every mutator below keeps them in step.
    """

    id: str
    name: str
    owner_athlete_id: str
    shared_with_coach_ids: set[str] = field(default_factory=set)
    permissions: dict[str, Permission] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        self.shared_with_coach_ids = set(self.shared_with_coach_ids)
        self.check_invariant()

    def check_invariant(self) -> None:
        if self.shared_with_coach_ids != set(self.permissions):
            raise ValueError(f"folder {self.id} membership and permissions disagree")

    def is_member(self, coach_id: str) -> bool:
        return coach_id in self.shared_with_coach_ids

    def permission_for(self, coach_id: str) -> Permission | None:
        if not self.is_member(coach_id):
            return None
        return self.permissions[coach_id]

    def add_member(self, coach_id: str, permission: Permission) -> None:
        self.shared_with_coach_ids.add(coach_id)
        self.permissions[coach_id] = permission

    def remove_member(self, coach_id: str) -> bool:
        if not self.is_member(coach_id):
            return False
        self.shared_with_coach_ids.discard(coach_id)
        self.permissions.pop(coach_id, None)
        return True

    def set_permission(self, coach_id: str, permission: Permission) -> None:
        if not self.is_member(coach_id):
            raise NotAMember(f"coach {coach_id} is not a member of folder {self.id}")
        self.permissions[coach_id] = permission

    def membership_payload(self) -> dict[str, Any]:
        return {
            "sharedWithCoachIDs": sorted(self.shared_with_coach_ids),
            "permissions": {coach_id: self.permissions[coach_id].to_payload() for coach_id in sorted(self.permissions)},
        }

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "ownerAthleteID": self.owner_athlete_id,
            **self.membership_payload(),
            "createdAt": format_timestamp(self.created_at),
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> SharedFolder:
        raw_permissions = payload.get("permissions") or {}
        permissions = {str(coach_id): Permission.from_payload(value) for coach_id, value in raw_permissions.items()}
        return cls(
            id=str(payload["id"]),
            name=str(payload.get("name", "")),
            owner_athlete_id=str(payload["ownerAthleteID"]),
            shared_with_coach_ids={str(coach_id) for coach_id in payload.get("sharedWithCoachIDs") or []},
            permissions=permissions,
            created_at=_required_timestamp(payload, "createdAt"),
        )


@dataclass(slots=True)
class CoachInvitation:
    id: str
    athlete_id: str
    athlete_name: str
    coach_email: str
    folder_id: str
    folder_name: str
    status: InvitationStatus
    created_at: datetime
    expires_at: datetime
    coach_name: str | None = None
    permissions: Permission = field(default_factory=Permission)
    responded_at: datetime | None = None
    coach_id: str | None = None

    def __post_init__(self) -> None:
        if self.expires_at <= self.created_at:
            raise ValueError(f"invitation {self.id} expires before it is created")
        self.coach_email = normalise_email(self.coach_email)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def effective_status(self, now: datetime) -> InvitationStatus:
        """Stored status, with an unanswered invitation past its expiry reported as expired."""

        if self.status is InvitationStatus.PENDING and self.is_expired(now):
            return InvitationStatus.EXPIRED
        return self.status

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "athleteID": self.athlete_id,
            "athleteName": self.athlete_name,
            "coachEmail": self.coach_email,
            "folderID": self.folder_id,
            "folderName": self.folder_name,
            "status": self.status.value,
            "createdAt": format_timestamp(self.created_at),
            "expiresAt": format_timestamp(self.expires_at),
            "permissions": self.permissions.to_payload(),
        }
        if self.coach_name:
            payload["coachName"] = self.coach_name
        if self.responded_at is not None:
            payload["respondedAt"] = format_timestamp(self.responded_at)
        if self.coach_id:
            payload["coachID"] = self.coach_id
        return payload

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> CoachInvitation:
        return cls(
            id=str(payload["id"]),
            athlete_id=str(payload["athleteID"]),
            athlete_name=str(payload.get("athleteName", "")),
            coach_email=str(payload.get("coachEmail", "")),
            folder_id=str(payload["folderID"]),
            folder_name=str(payload.get("folderName", "")),
            status=InvitationStatus(str(payload.get("status", InvitationStatus.PENDING.value))),
            created_at=_required_timestamp(payload, "createdAt"),
            expires_at=_required_timestamp(payload, "expiresAt"),
            coach_name=payload.get("coachName") or None,
            permissions=Permission.from_payload(payload.get("permissions")),
            responded_at=parse_timestamp(payload.get("respondedAt")),
            coach_id=payload.get("coachID") or None,
        )


@dataclass(slots=True)
class RevocationEvent:
    """Append-only record of a coach losing access; only ``email_sent`` ever changes."""

    id: str
    folder_id: str
    folder_name: str
    coach_id: str
    coach_email: str
    athlete_id: str
    athlete_name: str
    revoked_at: datetime
    email_sent: bool = False

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "folderID": self.folder_id,
            "folderName": self.folder_name,
            "coachID": self.coach_id,
            "coachEmail": self.coach_email,
            "athleteID": self.athlete_id,
            "athleteName": self.athlete_name,
            "revokedAt": format_timestamp(self.revoked_at),
            "emailSent": self.email_sent,
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> RevocationEvent:
        return cls(
            id=str(payload["id"]),
            folder_id=str(payload["folderID"]),
            folder_name=str(payload.get("folderName", "")),
            coach_id=str(payload["coachID"]),
            coach_email=normalise_email(payload.get("coachEmail")),
            athlete_id=str(payload["athleteID"]),
            athlete_name=str(payload.get("athleteName", "")),
            revoked_at=_required_timestamp(payload, "revokedAt"),
            email_sent=bool(payload.get("emailSent", False)),
        )


@dataclass(slots=True)
class Comment:
    id: str
    folder_id: str
    author_id: str
    text: str
    timestamp: float
    created_at: datetime

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "folderID": self.folder_id,
            "authorID": self.author_id,
            "text": self.text,
            "timestamp": self.timestamp,
            "createdAt": format_timestamp(self.created_at),
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> Comment:
        return cls(
            id=str(payload["id"]),
            folder_id=str(payload["folderID"]),
            author_id=str(payload["authorID"]),
            text=str(payload.get("text", "")),
            timestamp=float(payload.get("timestamp", 0.0)),
            created_at=_required_timestamp(payload, "createdAt"),
        )


@dataclass(slots=True)
class UploadRecord:
    id: str
    folder_id: str
    uploaded_by: str
    file_name: str
    created_at: datetime

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "folderID": self.folder_id,
            "uploadedBy": self.uploaded_by,
            "fileName": self.file_name,
            "createdAt": format_timestamp(self.created_at),
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> UploadRecord:
        return cls(
            id=str(payload["id"]),
            folder_id=str(payload["folderID"]),
            uploaded_by=str(payload["uploadedBy"]),
            file_name=str(payload.get("fileName", "")),
            created_at=_required_timestamp(payload, "createdAt"),
        )
