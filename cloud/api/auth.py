from __future__ import annotations

from dataclasses import dataclass

from fastapi import Header

from coachshare.const import ROLE_ATHLETE, ROLE_COACH, ROLE_SYSTEM
from coachshare.errors import Unauthorized, ValidationError
from coachshare.models import normalise_email

VALID_ROLES: set[str] = {ROLE_ATHLETE, ROLE_COACH, ROLE_SYSTEM}


@dataclass(frozen=True, slots=True)
class Principal:
    subject_id: str
    role: str
    email: str | None = None

    @property
    def is_system(self) -> bool:
        return self.role == ROLE_SYSTEM

    @property
    def is_athlete(self) -> bool:
        return self.role == ROLE_ATHLETE

    @property
    def is_coach(self) -> bool:
        return self.role == ROLE_COACH

    def require(self, *roles: str) -> None:
        if self.role in roles:
            return
        raise Unauthorized(f"role {self.role} may not perform this action", reason="insufficient_role")


def build_principal(subject: str | None, role: str | None, email: str | None = None) -> Principal:
    subject_id = str(subject or "").strip()
    if not subject_id:
        raise Unauthorized("missing subject", reason="missing_subject")
    role_norm = str(role or "").strip().lower()
    if role_norm not in VALID_ROLES:
        raise ValidationError(f"invalid role {role!r}", reason="invalid_role")
    return Principal(subject_id=subject_id, role=role_norm, email=normalise_email(email) or None)


async def principal_dependency(
    subject: str | None = Header(None, alias="X-Subject-ID"),
    role: str | None = Header(None, alias="X-Role"),
    email: str | None = Header(None, alias="X-Email"),
) -> Principal:
    return build_principal(subject, role, email)


__all__ = ["Principal", "VALID_ROLES", "build_principal", "principal_dependency"]
