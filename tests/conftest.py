from datetime import datetime, timedelta

import pytest

from medreminder import (
    InMemoryAdherenceLog,
    InMemoryAlertStore,
    InMemoryMedicationRepository,
    ReminderService,
    StaticAuthContext,
    StaticPermissionGate,
)


class FixedClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2026, 3, 10, 9, 0, 0))


@pytest.fixture
def alert_store() -> InMemoryAlertStore:
    return InMemoryAlertStore()


@pytest.fixture
def repository(clock) -> InMemoryMedicationRepository:
    return InMemoryMedicationRepository(clock=clock)


@pytest.fixture
def adherence_log() -> InMemoryAdherenceLog:
    return InMemoryAdherenceLog()


@pytest.fixture
def auth() -> StaticAuthContext:
    return StaticAuthContext(user_id="user-1")


@pytest.fixture
def permission_gate() -> StaticPermissionGate:
    return StaticPermissionGate()


@pytest.fixture
def service(alert_store, repository, adherence_log, auth, permission_gate, clock) -> ReminderService:
    return ReminderService(
        alert_store=alert_store,
        repository=repository,
        adherence_log=adherence_log,
        auth=auth,
        permission_gate=permission_gate,
        clock=clock,
    )
