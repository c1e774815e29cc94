from datetime import UTC, datetime, timedelta

import pytest

from coachshare.errors import NotAMember
from coachshare.models import (
    CoachInvitation,
    FolderAction,
    InvitationStatus,
    Permission,
    RevocationEvent,
    SharedFolder,
    format_timestamp,
    is_valid_email,
    normalise_email,
    parse_timestamp,
)

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=UTC)


def _invitation(**overrides) -> CoachInvitation:
    values = dict(
        id="inv-1",
        athlete_id="athlete-1",
        athlete_name="Ava",
        coach_email="Coach@Example.com ",
        folder_id="folder-1",
        folder_name="Season",
        status=InvitationStatus.PENDING,
        created_at=NOW,
        expires_at=NOW + timedelta(days=7),
    )
    values.update(overrides)
    return CoachInvitation(**values)


def test_timestamps_use_trailing_z() -> None:
    assert format_timestamp(NOW) == "2025-03-01T12:00:00Z"
    assert parse_timestamp("2025-03-01T12:00:00Z") == NOW
    assert parse_timestamp(datetime(2025, 3, 1, 12, 0)) == NOW
    assert parse_timestamp("not a date") is None
    assert parse_timestamp(None) is None


@pytest.mark.parametrize(
    ("email", "valid"),
    [
        ("coach@example.com", True),
        ("  Coach@Example.COM ", True),
        ("coach@example", False),
        ("coach example@x.com", False),
        ("", False),
        (None, False),
    ],
)
def test_email_validation(email, valid) -> None:
    assert is_valid_email(email) is valid


def test_normalise_email() -> None:
    assert normalise_email("  Cole@Example.COM") == "cole@example.com"
    assert normalise_email(None) == ""


def test_permission_allows() -> None:
    view_only = Permission()
    assert view_only.allows(FolderAction.VIEW)
    assert not view_only.allows("upload")
    assert not view_only.allows(FolderAction.COMMENT)
    assert Permission.full().allows("upload")
    assert Permission(can_comment=True).allows("comment")
    with pytest.raises(ValueError):
        view_only.allows("delete")


def test_permission_from_missing_payload_grants_nothing() -> None:
    assert Permission.from_payload(None) == Permission()
    assert Permission.from_payload({"canUpload": True}) == Permission(can_upload=True)


def test_folder_membership_mutators_keep_invariant() -> None:
    folder = SharedFolder(id="folder-1", name="Season", owner_athlete_id="athlete-1", created_at=NOW)
    folder.add_member("coach-1", Permission.full())
    assert folder.is_member("coach-1")
    assert folder.permission_for("coach-1") == Permission.full()

    folder.set_permission("coach-1", Permission(can_comment=True))
    assert folder.permission_for("coach-1") == Permission(can_comment=True)

    assert folder.remove_member("coach-1") is True
    assert folder.remove_member("coach-1") is False
    assert folder.permission_for("coach-1") is None
    assert folder.permissions == {}

    with pytest.raises(NotAMember):
        folder.set_permission("coach-1", Permission())


def test_folder_rejects_mismatched_membership() -> None:
    with pytest.raises(ValueError):
        SharedFolder(
            id="folder-1",
            name="Season",
            owner_athlete_id="athlete-1",
            shared_with_coach_ids={"coach-1"},
            created_at=NOW,
        )


def test_folder_payload_round_trip() -> None:
    folder = SharedFolder(id="folder-1", name="Season", owner_athlete_id="athlete-1", created_at=NOW)
    folder.add_member("coach-2", Permission(can_upload=True))
    folder.add_member("coach-1", Permission.full())
    payload = folder.to_payload()
    assert payload["sharedWithCoachIDs"] == ["coach-1", "coach-2"]
    assert payload["permissions"]["coach-2"] == {"canUpload": True, "canComment": False}
    assert SharedFolder.from_payload(payload) == folder


def test_folder_payload_requires_created_at() -> None:
    with pytest.raises(ValueError):
        SharedFolder.from_payload({"id": "f", "name": "n", "ownerAthleteID": "a"})


def test_invitation_normalises_email_and_checks_window() -> None:
    invitation = _invitation()
    assert invitation.coach_email == "coach@example.com"
    with pytest.raises(ValueError):
        _invitation(expires_at=NOW)


def test_invitation_expiry_boundary_is_inclusive() -> None:
    invitation = _invitation()
    just_before = invitation.expires_at - timedelta(microseconds=1)
    assert invitation.effective_status(just_before) is InvitationStatus.PENDING
    assert invitation.is_expired(invitation.expires_at)
    assert invitation.effective_status(invitation.expires_at) is InvitationStatus.EXPIRED


def test_answered_invitation_keeps_status_after_expiry() -> None:
    invitation = _invitation(status=InvitationStatus.ACCEPTED)
    later = invitation.expires_at + timedelta(days=1)
    assert invitation.effective_status(later) is InvitationStatus.ACCEPTED
    assert InvitationStatus.ACCEPTED.terminal
    assert not InvitationStatus.PENDING.terminal


def test_invitation_payload_optional_fields() -> None:
    invitation = _invitation()
    payload = invitation.to_payload()
    assert "coachID" not in payload
    assert "respondedAt" not in payload
    assert payload["permissions"] == {"canUpload": False, "canComment": False}

    answered = _invitation(status=InvitationStatus.ACCEPTED, responded_at=NOW, coach_id="coach-1", coach_name="Cole")
    restored = CoachInvitation.from_payload(answered.to_payload())
    assert restored == answered


def test_revocation_payload() -> None:
    event = RevocationEvent(
        id="rev-1",
        folder_id="folder-1",
        folder_name="Season",
        coach_id="coach-1",
        coach_email="cole@example.com",
        athlete_id="athlete-1",
        athlete_name="Ava",
        revoked_at=NOW,
    )
    payload = event.to_payload()
    assert payload["emailSent"] is False
    assert payload["revokedAt"] == "2025-03-01T12:00:00Z"
    assert RevocationEvent.from_payload(payload) == event
