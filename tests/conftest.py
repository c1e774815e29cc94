import itertools
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import pytest

from cloud.api.auth import Principal
from cloud.api.inprocess import InProcessRemoteAuthority
from cloud.api.main import AuthorityState
from coachshare.cloudsync import LocalReplica, SyncCoordinator
from coachshare.config import SharingConfig
from coachshare.models import User, UserRole
from coachshare.sharing import PermissionValidator, SharedFolderManager

START = datetime(2025, 3, 1, 12, 0, tzinfo=UTC)

ATHLETE = User("athlete-1", "ava@example.com", UserRole.ATHLETE, "Ava Athlete")
OTHER_ATHLETE = User("athlete-2", "otto@example.com", UserRole.ATHLETE, "Otto")
COACH = User("coach-1", "cole@example.com", UserRole.COACH, "Cole Coach")
COACH_TWO = User("coach-2", "casey@example.com", UserRole.COACH, "Casey")


class FakeClock:
    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@dataclass
class Device:
    """Everything one signed-in user's app holds."""

    user: User
    remote: InProcessRemoteAuthority
    replica: LocalReplica
    manager: SharedFolderManager
    validator: PermissionValidator
    coordinator: SyncCoordinator


def principal_for(user: User) -> Principal:
    return Principal(subject_id=user.id, role=user.role.value, email=user.email)


def make_device(state: AuthorityState, user: User, clock: FakeClock, config: SharingConfig | None = None) -> Device:
    config = config or SharingConfig(backoff_base=5.0, backoff_max=60.0)
    counter = itertools.count(1)
    remote = InProcessRemoteAuthority(state, principal_for(user))
    replica = LocalReplica(":memory:")
    manager = SharedFolderManager(
        remote,
        replica,
        user,
        config,
        clock=clock,
        id_factory=lambda: f"{user.id}-{next(counter)}",
    )
    validator = PermissionValidator(remote, replica, clock=clock)
    coordinator = SyncCoordinator(remote, replica, config, clock=clock)
    return Device(user, remote, replica, manager, validator, coordinator)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def state(clock: FakeClock) -> AuthorityState:
    authority = AuthorityState(clock=clock)
    for user in (ATHLETE, OTHER_ATHLETE, COACH, COACH_TWO):
        authority.register_user(principal_for(user), user.to_payload())
    return authority


@pytest.fixture
def athlete(state: AuthorityState, clock: FakeClock) -> Device:
    return make_device(state, ATHLETE, clock)


@pytest.fixture
def other_athlete(state: AuthorityState, clock: FakeClock) -> Device:
    return make_device(state, OTHER_ATHLETE, clock)


@pytest.fixture
def coach(state: AuthorityState, clock: FakeClock) -> Device:
    return make_device(state, COACH, clock)


@pytest.fixture
def coach_two(state: AuthorityState, clock: FakeClock) -> Device:
    return make_device(state, COACH_TWO, clock)


@pytest.fixture
def system_remote(state: AuthorityState) -> InProcessRemoteAuthority:
    return InProcessRemoteAuthority(state, Principal(subject_id="notifier", role="system"))
