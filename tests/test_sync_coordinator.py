import asyncio
from datetime import timedelta

import pytest

from coachshare.cloudsync import SyncPhase
from coachshare.const import (
    COLLECTION_FOLDERS,
    ENTITY_ATHLETE_FOLDERS,
    ENTITY_ATHLETE_INVITATIONS,
    ENTITY_COACH_FOLDERS,
    ENTITY_COACH_INVITATIONS,
    ENTITY_REVOCATIONS,
)
from coachshare.errors import NetworkUnavailable
from coachshare.models import Permission

from conftest import ATHLETE, COACH


async def share(athlete, coach):
    folder_id = await athlete.manager.create_folder("Film")
    invitation_id = await athlete.manager.invite_coach(folder_id, COACH.email)
    await coach.manager.accept_invitation(invitation_id)
    return folder_id


def test_backoff_delay_doubles_up_to_cap(coach):
    delays = [coach.coordinator.backoff_delay(failures) for failures in range(0, 7)]
    assert delays == [0.0, 5.0, 10.0, 20.0, 40.0, 60.0, 60.0]


@pytest.mark.asyncio
async def test_sync_pulls_scope_into_replica(athlete, coach, other_athlete):
    folder_id = await share(athlete, coach)
    await other_athlete.manager.create_folder("Not shared")

    result = await coach.coordinator.sync(ENTITY_COACH_FOLDERS, COACH.id)

    assert result.fetched == 1
    assert result.removed == 0
    assert not result.skipped
    assert [folder.id for folder in coach.replica.folders_shared_with(COACH.id)] == [folder_id]
    state = coach.replica.sync_state(ENTITY_COACH_FOLDERS, COACH.id)
    assert state["last_count"] == 1
    assert state["last_error"] is None


@pytest.mark.asyncio
async def test_every_scope_syncs(athlete, coach):
    folder_id = await share(athlete, coach)
    await athlete.manager.revoke_coach_access(folder_id, COACH.id)
    athlete.replica.delete_document(COLLECTION_FOLDERS, folder_id)

    results = await athlete.coordinator.sync_many(
        [
            (ENTITY_ATHLETE_FOLDERS, ATHLETE.id),
            (ENTITY_ATHLETE_INVITATIONS, ATHLETE.id),
            (ENTITY_REVOCATIONS, ATHLETE.id),
        ]
    )
    assert [item.fetched for item in results] == [1, 1, 1]
    assert athlete.replica.get_folder(folder_id) is not None
    assert len(athlete.replica.invitations_for_athlete(ATHLETE.id)) == 1
    assert len(athlete.replica.revocations_for_athlete(ATHLETE.id)) == 1

    (coach_result,) = await coach.coordinator.sync_many([(ENTITY_COACH_INVITATIONS, "COLE@example.com")])
    assert coach_result.fetched == 1
    assert len(coach.replica.invitations_for_email(COACH.email)) == 1


@pytest.mark.asyncio
async def test_concurrent_requests_share_one_pass(athlete, coach):
    await share(athlete, coach)
    coach.remote.latency = 0.01
    queries_before = coach.remote.calls["query"]

    first, second, third = await asyncio.gather(
        coach.coordinator.sync(ENTITY_COACH_FOLDERS, COACH.id),
        coach.coordinator.sync(ENTITY_COACH_FOLDERS, COACH.id),
        coach.coordinator.sync(ENTITY_COACH_FOLDERS, COACH.id),
    )

    assert coach.remote.calls["query"] == queries_before + 1
    assert first is second is third
    assert coach.coordinator.phase(ENTITY_COACH_FOLDERS, COACH.id) is SyncPhase.IDLE


@pytest.mark.asyncio
async def test_waiters_share_the_failure(coach):
    coach.remote.online = False
    coach.remote.latency = 0.01

    outcomes = await asyncio.gather(
        coach.coordinator.sync(ENTITY_COACH_FOLDERS, COACH.id),
        coach.coordinator.sync(ENTITY_COACH_FOLDERS, COACH.id),
        return_exceptions=True,
    )

    assert all(isinstance(item, NetworkUnavailable) for item in outcomes)
    assert coach.remote.calls["query"] == 1


@pytest.mark.asyncio
async def test_failure_enters_backoff_and_skips(coach, clock):
    coach.remote.online = False

    with pytest.raises(NetworkUnavailable):
        await coach.coordinator.sync(ENTITY_COACH_FOLDERS, COACH.id)

    assert coach.coordinator.phase(ENTITY_COACH_FOLDERS, COACH.id) is SyncPhase.BACKOFF_WAIT
    status = coach.coordinator.status(ENTITY_COACH_FOLDERS, COACH.id)
    assert status["failures"] == 1
    assert status["retry_at"] == "2025-03-01T12:00:05Z"
    assert status["replica"]["last_error"]

    skipped = await coach.coordinator.sync(ENTITY_COACH_FOLDERS, COACH.id)
    assert skipped.skipped
    assert skipped.retry_at == clock.now + timedelta(seconds=5)
    assert coach.remote.calls["query"] == 1

    clock.advance(seconds=5)
    with pytest.raises(NetworkUnavailable):
        await coach.coordinator.sync(ENTITY_COACH_FOLDERS, COACH.id)
    assert coach.coordinator.status(ENTITY_COACH_FOLDERS, COACH.id)["failures"] == 2
    assert coach.remote.calls["query"] == 2


@pytest.mark.asyncio
async def test_force_and_connectivity_restored_bypass_backoff(coach):
    coach.remote.online = False
    with pytest.raises(NetworkUnavailable):
        await coach.coordinator.sync(ENTITY_COACH_FOLDERS, COACH.id)
    with pytest.raises(NetworkUnavailable):
        await coach.coordinator.sync(ENTITY_COACH_FOLDERS, COACH.id, force=True)

    coach.remote.online = True
    (result,) = await coach.coordinator.connectivity_restored()

    assert not result.skipped
    assert coach.coordinator.phase(ENTITY_COACH_FOLDERS, COACH.id) is SyncPhase.IDLE
    status = coach.coordinator.status(ENTITY_COACH_FOLDERS, COACH.id)
    assert status["failures"] == 0
    assert status["last_error"] is None
    assert await coach.coordinator.connectivity_restored() == []


@pytest.mark.asyncio
async def test_sync_many_returns_failures(athlete, coach):
    await share(athlete, coach)

    results = await coach.coordinator.sync_many(
        [(ENTITY_COACH_FOLDERS, COACH.id), (ENTITY_REVOCATIONS, "someone-else")]
    )
    assert results[0].fetched == 1
    # revocations of another athlete are unreadable, so the scope is simply empty
    assert results[1].fetched == 0

    coach.remote.online = False
    (failure,) = await coach.coordinator.sync_many([(ENTITY_COACH_FOLDERS, COACH.id)], force=True)
    assert isinstance(failure, NetworkUnavailable)


@pytest.mark.asyncio
async def test_unknown_entity_type(coach):
    with pytest.raises(ValueError):
        await coach.coordinator.sync("comments", COACH.id)


@pytest.mark.asyncio
async def test_revoked_folder_removed_from_coach_replica(athlete, coach):
    folder_id = await share(athlete, coach)
    await coach.coordinator.sync(ENTITY_COACH_FOLDERS, COACH.id)
    assert coach.replica.cached_permission(folder_id, COACH.id) == Permission.full()

    await athlete.manager.revoke_coach_access(folder_id, COACH.id)
    result = await coach.coordinator.sync(ENTITY_COACH_FOLDERS, COACH.id)

    assert result.removed == 1
    assert coach.replica.folders_shared_with(COACH.id) == []
    assert coach.replica.cached_permission(folder_id, COACH.id) is None


@pytest.mark.asyncio
async def test_newer_remote_group_replaces_local(athlete, coach):
    folder_id = await share(athlete, coach)
    await coach.coordinator.sync(ENTITY_COACH_FOLDERS, COACH.id)

    await athlete.manager.rename_folder(folder_id, "Renamed")
    await coach.coordinator.sync(ENTITY_COACH_FOLDERS, COACH.id)

    stored = coach.replica.get_document(COLLECTION_FOLDERS, folder_id)
    assert stored.data["name"] == "Renamed"
    assert stored.versions == {"details": 2, "membership": 2}


@pytest.mark.asyncio
async def test_cancelled_caller_does_not_abort_pass(athlete, coach):
    await share(athlete, coach)
    coach.remote.latency = 0.02

    caller = asyncio.create_task(coach.coordinator.sync(ENTITY_COACH_FOLDERS, COACH.id))
    await asyncio.sleep(0.005)
    caller.cancel()
    with pytest.raises(asyncio.CancelledError):
        await caller

    result = await coach.coordinator.sync(ENTITY_COACH_FOLDERS, COACH.id)
    assert result.fetched == 1
    assert coach.remote.calls["query"] == 1


@pytest.mark.asyncio
async def test_cancelled_pass_writes_nothing(athlete, coach):
    await share(athlete, coach)
    coach.remote.latency = 0.05
    documents_before = coach.replica.count_documents()

    caller = asyncio.create_task(coach.coordinator.sync(ENTITY_COACH_FOLDERS, COACH.id))
    await asyncio.sleep(0.005)
    assert coach.coordinator.status(ENTITY_COACH_FOLDERS, COACH.id)["in_flight"]
    coach.coordinator._inflight[(ENTITY_COACH_FOLDERS, COACH.id)].cancel()

    with pytest.raises(asyncio.CancelledError):
        await caller
    await asyncio.sleep(0)

    assert coach.replica.count_documents() == documents_before
    assert coach.replica.sync_state(ENTITY_COACH_FOLDERS, COACH.id) is None
    assert coach.coordinator.phase(ENTITY_COACH_FOLDERS, COACH.id) is SyncPhase.IDLE
