"""Last-writer-wins merge applied per field group."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from .remote import Document, split_groups


@dataclass(slots=True)
class GroupMeta:
    """Track the last writer metadata for a field group."""

    version: int
    ts: datetime | None = None

    def dominates(self, other: GroupMeta) -> bool:
        if self.version > other.version:
            return True
        if self.version < other.version:
            return False
        if self.ts is None or other.ts is None:
            return True
        return self.ts >= other.ts

    @classmethod
    def for_group(cls, document: Document, group: str) -> GroupMeta:
        return cls(version=document.version(group), ts=document.updated_at.get(group))


class ConflictResolver:
    """Merge a freshly read remote document into the local copy.

    Each field group is taken whole from whichever side dominates, so an
    edit to one group never drags stale values of another along with it.
    """

    def merge(self, local: Document | None, incoming: Document) -> Document:
        if local is None:
            return Document(
                collection=incoming.collection,
                id=incoming.id,
                data=dict(incoming.data),
                versions=dict(incoming.versions),
                updated_at=dict(incoming.updated_at),
            )

        local_groups = split_groups(local.collection, local.data)
        incoming_groups = split_groups(incoming.collection, incoming.data)
        data: dict[str, object] = {"id": incoming.id}
        versions: dict[str, int] = {}
        updated_at: dict[str, datetime] = {}
        for group in sorted(set(local_groups) | set(incoming_groups) | set(local.versions) | set(incoming.versions)):
            local_meta = GroupMeta.for_group(local, group)
            incoming_meta = GroupMeta.for_group(incoming, group)
            if incoming_meta.dominates(local_meta):
                winner, fields = incoming, incoming_groups.get(group, {})
            else:
                winner, fields = local, local_groups.get(group, {})
            data.update(fields)
            if group in winner.versions:
                versions[group] = winner.version(group)
            if group in winner.updated_at:
                updated_at[group] = winner.updated_at[group]
        return Document(
            collection=incoming.collection,
            id=incoming.id,
            data=data,
            versions=versions,
            updated_at=updated_at,
        )
