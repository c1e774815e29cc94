"""Error taxonomy shared by the sharing core and the remote authority."""

from __future__ import annotations


class SharingError(RuntimeError):
    """Base class for every failure surfaced by the sharing core."""

    code = "sharing_error"
    message = "The sharing operation failed"

    def __init__(self, message: str | None = None, *, reason: str | None = None) -> None:
        super().__init__(message or self.message)
        self.reason = reason


class ValidationError(SharingError):
    """Input was rejected before any remote work; never retried."""

    code = "invalid_argument"
    message = "Invalid request"


class InvalidEmail(ValidationError):
    code = "invalid_email"
    message = "Please enter a valid email address"


class InvalidName(ValidationError):
    code = "invalid_name"
    message = "Please enter a valid folder name"


class EmptyComment(ValidationError):
    code = "empty_comment"
    message = "Comment cannot be empty"


class DuplicateInvitation(ValidationError):
    code = "duplicate_invitation"
    message = "A pending invitation already exists for this coach and folder"


class NotAMember(ValidationError):
    code = "not_a_member"
    message = "Coach is not a member of this folder"


class NotFound(SharingError):
    code = "not_found"
    message = "Document not found"


class FolderNotFound(NotFound):
    code = "folder_not_found"
    message = "Shared folder not found"


class InvitationNotFound(NotFound):
    code = "invitation_not_found"
    message = "Invitation not found"


class InvitationExpired(SharingError):
    code = "invitation_expired"
    message = "This invitation has expired"


class InvitationAlreadyProcessed(SharingError):
    code = "invitation_already_processed"
    message = "This invitation has already been processed"


class AccessRevoked(SharingError):
    """The coach no longer belongs to the folder.

    Callers must drop any cached permission for the folder/coach pair and show
    this condition distinctly from generic failures.
    """

    code = "access_revoked"
    message = "Your access to this folder has been revoked"

    def __init__(
        self,
        message: str | None = None,
        *,
        folder_id: str | None = None,
        coach_id: str | None = None,
        reason: str | None = None,
    ) -> None:
        super().__init__(message, reason=reason)
        self.folder_id = folder_id
        self.coach_id = coach_id


class Conflict(SharingError):
    code = "conflict"
    message = "The record changed since it was last read"


class NetworkUnavailable(SharingError):
    code = "network_unavailable"
    message = "The sharing service is unreachable"


class Unauthorized(SharingError):
    code = "unauthorized"
    message = "You don't have permission to perform this action"


class SessionClosed(SharingError):
    code = "session_closed"
    message = "Folder session is closed; reopen the folder"


class NotificationError(SharingError):
    code = "notification_failed"
    message = "Notification could not be delivered"


_ERRORS_BY_CODE: dict[str, type[SharingError]] = {
    cls.code: cls
    for cls in (
        SharingError,
        ValidationError,
        InvalidEmail,
        InvalidName,
        EmptyComment,
        DuplicateInvitation,
        NotAMember,
        NotFound,
        FolderNotFound,
        InvitationNotFound,
        InvitationExpired,
        InvitationAlreadyProcessed,
        AccessRevoked,
        Conflict,
        NetworkUnavailable,
        Unauthorized,
        SessionClosed,
        NotificationError,
    )
}


def error_from_code(code: str | None, message: str | None = None) -> SharingError:
    """Rebuild the exception matching a wire error code."""

    cls = _ERRORS_BY_CODE.get(str(code or ""), SharingError)
    return cls(message or None)


__all__ = [
    "AccessRevoked",
    "Conflict",
    "DuplicateInvitation",
    "EmptyComment",
    "FolderNotFound",
    "InvalidEmail",
    "InvalidName",
    "InvitationAlreadyProcessed",
    "InvitationExpired",
    "InvitationNotFound",
    "NetworkUnavailable",
    "NotAMember",
    "NotFound",
    "NotificationError",
    "SessionClosed",
    "SharingError",
    "Unauthorized",
    "ValidationError",
    "error_from_code",
]
