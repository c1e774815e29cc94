"""Offline-tolerant replication of the sharing state."""

from .conflict import ConflictResolver, GroupMeta
from .coordinator import SCOPES, SyncCoordinator, SyncPhase, SyncResult
from .remote import (
    Document,
    HttpRemoteAuthority,
    RemoteAuthority,
    Where,
    Write,
    contains,
    eq,
    field_group,
    split_groups,
    touched_groups,
)
from .replica import LocalReplica, ReplicaWriter

__all__ = [
    "ConflictResolver",
    "Document",
    "GroupMeta",
    "HttpRemoteAuthority",
    "LocalReplica",
    "RemoteAuthority",
    "ReplicaWriter",
    "SCOPES",
    "SyncCoordinator",
    "SyncPhase",
    "SyncResult",
    "Where",
    "Write",
    "contains",
    "eq",
    "field_group",
    "split_groups",
    "touched_groups",
]
