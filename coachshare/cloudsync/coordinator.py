"""Pull sharing state from the remote authority into the local replica."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from ..config import SharingConfig
from ..const import (
    COLLECTION_FOLDERS,
    COLLECTION_INVITATIONS,
    COLLECTION_REVOCATIONS,
    ENTITY_ATHLETE_FOLDERS,
    ENTITY_ATHLETE_INVITATIONS,
    ENTITY_COACH_FOLDERS,
    ENTITY_COACH_INVITATIONS,
    ENTITY_REVOCATIONS,
)
from ..models import format_timestamp, normalise_email, utcnow
from ..utils.concurrency import concurrency_for, gather_bounded
from .conflict import ConflictResolver
from .remote import Document, RemoteAuthority, Where, contains, eq
from .replica import LocalReplica

_LOGGER = logging.getLogger(__name__)

SyncKey = tuple[str, str]


@dataclass(frozen=True, slots=True)
class SyncScope:
    """Which remote documents belong to one ``(entity_type, owner_id)`` pair."""

    collection: str
    build: Callable[[str], Where]

    def where(self, owner_id: str) -> Where:
        return self.build(owner_id)


SCOPES: dict[str, SyncScope] = {
    ENTITY_ATHLETE_FOLDERS: SyncScope(COLLECTION_FOLDERS, lambda owner: eq("ownerAthleteID", owner)),
    ENTITY_COACH_FOLDERS: SyncScope(COLLECTION_FOLDERS, lambda owner: contains("sharedWithCoachIDs", owner)),
    ENTITY_ATHLETE_INVITATIONS: SyncScope(COLLECTION_INVITATIONS, lambda owner: eq("athleteID", owner)),
    ENTITY_COACH_INVITATIONS: SyncScope(
        COLLECTION_INVITATIONS, lambda owner: eq("coachEmail", normalise_email(owner))
    ),
    ENTITY_REVOCATIONS: SyncScope(COLLECTION_REVOCATIONS, lambda owner: eq("athleteID", owner)),
}


def merge_snapshot(
    replica: LocalReplica,
    resolver: ConflictResolver,
    collection: str,
    where: Where,
    remote_docs: list[Document],
) -> tuple[list[Document], list[str]]:
    """Merge a complete remote listing for one scope with the replica.

    Returns the documents to store and the ids of local documents in the same
    scope that the authority no longer returns.
    """

    local_docs = {doc.id: doc for doc in replica.list_documents(collection, where)}
    remote_ids = {doc.id for doc in remote_docs}
    merged = [
        resolver.merge(local_docs.get(doc.id) or replica.get_document(doc.collection, doc.id), doc)
        for doc in remote_docs
    ]
    return merged, sorted(set(local_docs) - remote_ids)


class SyncPhase(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    BACKOFF_WAIT = "backoff_wait"


@dataclass(slots=True)
class SyncResult:
    entity_type: str
    owner_id: str
    fetched: int = 0
    removed: int = 0
    skipped: bool = False
    completed_at: datetime | None = None
    retry_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "owner_id": self.owner_id,
            "fetched": self.fetched,
            "removed": self.removed,
            "skipped": self.skipped,
            "completed_at": format_timestamp(self.completed_at) if self.completed_at else None,
            "retry_at": format_timestamp(self.retry_at) if self.retry_at else None,
        }


@dataclass(slots=True)
class _PairState:
    phase: SyncPhase = SyncPhase.IDLE
    failures: int = 0
    retry_at: datetime | None = None
    last_error: str | None = None
    last_success_at: datetime | None = None
    last_result: SyncResult | None = field(default=None)


class SyncCoordinator:
    """Coalesce, back off and merge sync passes per ``(entity_type, owner_id)``."""

    def __init__(
        self,
        remote: RemoteAuthority,
        replica: LocalReplica,
        config: SharingConfig | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
        conflict_resolver: ConflictResolver | None = None,
    ) -> None:
        self.remote = remote
        self.replica = replica
        self.config = config or SharingConfig()
        self._clock = clock
        self.conflicts = conflict_resolver or ConflictResolver()
        self._states: dict[SyncKey, _PairState] = {}
        self._inflight: dict[SyncKey, asyncio.Task[SyncResult]] = {}

    # ------------------------------------------------------------------
    async def sync(self, entity_type: str, owner_id: str, *, force: bool = False) -> SyncResult:
        """Run, join or skip a sync pass for one pair.

        A caller arriving while the pair is syncing awaits the running pass and
        gets its result or exception. While backing off, a non-forced call
        returns a skipped result until the retry time has passed.
        """

        if entity_type not in SCOPES:
            raise ValueError(f"unknown entity type {entity_type!r}")
        key = (entity_type, owner_id)
        task = self._inflight.get(key)
        if task is None:
            state = self._states.setdefault(key, _PairState())
            now = self._clock()
            if (
                state.phase is SyncPhase.BACKOFF_WAIT
                and not force
                and state.retry_at is not None
                and now < state.retry_at
            ):
                _LOGGER.debug("Skipping %s/%s until %s", entity_type, owner_id, state.retry_at)
                return SyncResult(entity_type, owner_id, skipped=True, retry_at=state.retry_at)
            task = asyncio.create_task(self._run(key))
            self._inflight[key] = task
            task.add_done_callback(lambda done, key=key: self._finish(key, done))
        return await asyncio.shield(task)

    def _finish(self, key: SyncKey, task: asyncio.Task[SyncResult]) -> None:
        if self._inflight.get(key) is task:
            self._inflight.pop(key, None)
        if not task.cancelled():
            # Marks the exception retrieved when every waiter has gone away.
            task.exception()

    async def _run(self, key: SyncKey) -> SyncResult:
        entity_type, owner_id = key
        state = self._states.setdefault(key, _PairState())
        previous = state.phase
        state.phase = SyncPhase.SYNCING
        try:
            result = await self._pass(entity_type, owner_id)
        except asyncio.CancelledError:
            state.phase = previous if previous is not SyncPhase.SYNCING else SyncPhase.IDLE
            raise
        except Exception as err:
            state.failures += 1
            delay = self.backoff_delay(state.failures)
            now = self._clock()
            state.retry_at = now + timedelta(seconds=delay)
            state.last_error = str(err)
            state.phase = SyncPhase.BACKOFF_WAIT
            with self.replica.transaction() as tx:
                tx.record_sync(entity_type, owner_id, at=now, error=str(err))
            _LOGGER.warning(
                "Sync %s/%s failed (%d in a row), retry in %.1fs: %s",
                entity_type,
                owner_id,
                state.failures,
                delay,
                err,
            )
            raise
        state.failures = 0
        state.retry_at = None
        state.last_error = None
        state.last_success_at = result.completed_at
        state.last_result = result
        state.phase = SyncPhase.IDLE
        return result

    async def _pass(self, entity_type: str, owner_id: str) -> SyncResult:
        scope = SCOPES[entity_type]
        where = scope.where(owner_id)
        remote_docs = await self.remote.query(scope.collection, where)

        # Everything below is synchronous so a cancelled pass writes nothing.
        merged_docs, stale_ids = merge_snapshot(self.replica, self.conflicts, scope.collection, where, remote_docs)
        now = self._clock()
        with self.replica.transaction() as tx:
            for merged in merged_docs:
                tx.put_document(merged)
            for doc_id in stale_ids:
                tx.delete_document(scope.collection, doc_id)
                if entity_type == ENTITY_COACH_FOLDERS:
                    tx.purge_permission(doc_id, owner_id)
            tx.record_sync(entity_type, owner_id, at=now, count=len(remote_docs))
        _LOGGER.debug(
            "Synced %s/%s: %d fetched, %d removed",
            entity_type,
            owner_id,
            len(remote_docs),
            len(stale_ids),
        )
        return SyncResult(
            entity_type,
            owner_id,
            fetched=len(remote_docs),
            removed=len(stale_ids),
            completed_at=now,
        )

    def backoff_delay(self, failures: int) -> float:
        if failures <= 0:
            return 0.0
        delay = self.config.backoff_base * (2 ** (failures - 1))
        return float(min(delay, self.config.backoff_max))

    # ------------------------------------------------------------------
    async def sync_many(self, targets: Iterable[SyncKey], *, force: bool = False) -> list[SyncResult | BaseException]:
        """Sync several pairs with bounded concurrency; failures are returned, not raised."""

        limit = concurrency_for(self.config.connection_class, self.config.max_concurrency)
        results = await gather_bounded(
            list(targets),
            lambda target: self.sync(target[0], target[1], force=force),
            limit=limit,
            return_exceptions=True,
        )
        for outcome in results:
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
        return results

    async def connectivity_restored(self) -> list[SyncResult | BaseException]:
        """Force a pass for every pair currently waiting out a backoff."""

        waiting = [key for key, state in self._states.items() if state.phase is SyncPhase.BACKOFF_WAIT]
        if not waiting:
            return []
        _LOGGER.info("Connectivity restored; retrying %d pending syncs", len(waiting))
        return await self.sync_many(waiting, force=True)

    async def run_forever(self, targets: Iterable[SyncKey], *, interval_seconds: int | None = None) -> None:
        pairs = list(targets)
        interval = interval_seconds or self.config.sync_interval
        while True:
            try:
                await self.sync_many(pairs)
            except asyncio.CancelledError:
                raise
            except Exception as err:  # pragma: no cover - defensive log
                _LOGGER.exception("Unexpected sync error: %s", err)
            await asyncio.sleep(interval)

    # ------------------------------------------------------------------
    def status(self, entity_type: str, owner_id: str) -> dict[str, Any]:
        key = (entity_type, owner_id)
        state = self._states.get(key, _PairState())
        return {
            "entity_type": entity_type,
            "owner_id": owner_id,
            "phase": state.phase.value,
            "in_flight": key in self._inflight,
            "failures": state.failures,
            "retry_at": format_timestamp(state.retry_at) if state.retry_at else None,
            "last_error": state.last_error,
            "last_success_at": format_timestamp(state.last_success_at) if state.last_success_at else None,
            "last_result": state.last_result.to_dict() if state.last_result else None,
            "replica": self.replica.sync_state(entity_type, owner_id),
        }

    def phase(self, entity_type: str, owner_id: str) -> SyncPhase:
        state = self._states.get((entity_type, owner_id))
        return state.phase if state else SyncPhase.IDLE
