"""Sharing workflows layered on the remote authority and the local replica."""

from .manager import SharedFolderManager
from .notifications import (
    DeliveryOutcome,
    HttpEmailNotifier,
    NotificationDispatcher,
    RevocationNotifier,
    build_revocation_message,
)
from .permissions import FolderSession, PermissionValidator, can_perform

__all__ = [
    "DeliveryOutcome",
    "FolderSession",
    "HttpEmailNotifier",
    "NotificationDispatcher",
    "PermissionValidator",
    "RevocationNotifier",
    "SharedFolderManager",
    "build_revocation_message",
    "can_perform",
]
