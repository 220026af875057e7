from datetime import datetime, timedelta

import pytest

from app.db import (
    SqlAdherenceLog,
    SqlAlertStore,
    SqlMedicationRepository,
    build_engine,
    build_session_factory,
    create_schema,
)
from medreminder import ReminderService, StaticAuthContext, StaticPermissionGate, StoreUnavailable
from shared.contracts.enums import ResponseAction, ResponseState
from shared.contracts.models import Medication, ResponseEvent


MEMORY_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture
async def session_factory():
    engine = build_engine(MEMORY_URL)
    await create_schema(engine)
    yield build_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def sql_service(session_factory, clock) -> ReminderService:
    return ReminderService(
        alert_store=SqlAlertStore(session_factory),
        repository=SqlMedicationRepository(session_factory, clock=clock),
        adherence_log=SqlAdherenceLog(session_factory),
        auth=StaticAuthContext(user_id="user-1"),
        permission_gate=StaticPermissionGate(),
        clock=clock,
    )


def _medication(med_id="med-1", **overrides) -> Medication:
    fields = {
        "id": med_id,
        "user_id": "user-1",
        "name": "Metformin",
        "dosage": "850mg",
        "continuous": True,
        "clock_times": ["08:00", "20:00"],
        "created_at": datetime(2026, 3, 1, 12, 0),
    }
    fields.update(overrides)
    return Medication(**fields)


async def test_armed_alerts_survive_a_fresh_store_instance(sql_service, session_factory):
    armed = await sql_service.save_medication(_medication())

    restarted = SqlAlertStore(session_factory)
    listed = await restarted.list_armed()

    assert [o.handle for o in listed] == [o.handle for o in armed]
    assert [o.fire_at for o in listed] == [datetime(2026, 3, 10, 20, 0), datetime(2026, 3, 11, 8, 0)]
    assert listed[0].payload.medication_id == "med-1"


async def test_fire_due_rearms_recurring_and_consumes_one_shot(sql_service, session_factory, clock):
    await sql_service.save_medication(_medication("med-daily", clock_times=["20:00"]))
    await sql_service.save_medication(
        _medication("med-course", continuous=False, treatment_duration_days=1, clock_times=["20:00"])
    )
    store = SqlAlertStore(session_factory)

    fired = await store.fire_due(clock.advance(hours=11))

    assert sorted(o.medication_id for o in fired) == ["med-course", "med-daily"]
    armed = await store.list_armed()
    daily = [o for o in armed if o.medication_id == "med-daily"]
    course = [o for o in armed if o.medication_id == "med-course"]
    assert daily[0].fire_at == datetime(2026, 3, 11, 20, 0)
    assert [o.fire_at for o in course] == [datetime(2026, 3, 11, 20, 0)]
    assert len(await store.list_delivered()) == 2


async def test_acknowledge_over_sql_retires_delivered_instance(sql_service, session_factory, clock):
    await sql_service.save_medication(_medication(clock_times=["20:00"]))
    store = SqlAlertStore(session_factory)
    fired = await store.fire_due(clock.advance(hours=11))

    outcome = await sql_service.handle_inbound_response(
        ResponseEvent(action=ResponseAction.ACKNOWLEDGE, payload=fired[0].payload, handle=fired[0].handle)
    )

    assert outcome.state == ResponseState.ACKNOWLEDGED
    assert await store.list_delivered() == []
    history = await SqlAdherenceLog(session_factory).recent_for_user("user-1")
    assert [r.medication_id for r in history] == ["med-1"]
    # Retiring twice is harmless.
    await store.retire(fired[0].handle)


async def test_delete_keeps_other_medications_and_history(sql_service, session_factory):
    await sql_service.save_medication(_medication("med-1"))
    await sql_service.save_medication(_medication("med-2", clock_times=["12:00"]))
    await sql_service.recorder.record("med-1")

    cancelled = await sql_service.delete_medication("med-1")

    armed = await SqlAlertStore(session_factory).list_armed()
    assert cancelled == 2
    assert [o.medication_id for o in armed] == ["med-2"]
    assert len(await SqlAdherenceLog(session_factory).recent_for_user("user-1")) == 1


async def test_repository_filters_by_user_clock_time_and_course(session_factory, clock):
    repository = SqlMedicationRepository(session_factory, clock=clock)
    await repository.save(_medication("med-1"))
    await repository.save(_medication("med-2", clock_times=["08:00"], created_at=datetime(2026, 3, 2)))
    await repository.save(_medication("med-3", user_id="user-2"))
    await repository.save(
        _medication("med-4", continuous=False, treatment_duration_days=3, created_at=datetime(2026, 2, 1))
    )

    found = await repository.find_active_by_user_and_clock_time("user-1", "08:00")

    assert [m.id for m in found] == ["med-1", "med-2"]
    assert (await repository.get("med-2")).clock_times == ["08:00"]
    assert await repository.delete("med-2") is True
    assert await repository.delete("med-2") is False


async def test_updating_medication_keeps_single_row(session_factory):
    repository = SqlMedicationRepository(session_factory)
    await repository.save(_medication())
    await repository.save(_medication(name="Metformin XR"))

    assert (await repository.get("med-1")).name == "Metformin XR"


async def test_missing_schema_surfaces_store_unavailable():
    engine = build_engine(MEMORY_URL)
    store = SqlAlertStore(build_session_factory(engine))
    try:
        with pytest.raises(StoreUnavailable):
            await store.list_armed()
    finally:
        await engine.dispose()


async def test_snooze_over_sql_is_armed_five_minutes_out(sql_service, session_factory, clock):
    await sql_service.save_medication(_medication(clock_times=["20:00"]))
    store = SqlAlertStore(session_factory)
    fired = await store.fire_due(clock.advance(hours=11))

    await sql_service.handle_inbound_response(
        ResponseEvent(action=ResponseAction.SNOOZE, payload=fired[0].payload, handle=fired[0].handle)
    )

    snoozed = [o for o in await store.list_armed() if o.payload.snoozed]
    assert [o.fire_at for o in snoozed] == [clock() + timedelta(minutes=5)]


async def test_history_survives_medication_delete_with_foreign_keys_enforced(clock):
    engine = build_engine(MEMORY_URL)
    try:
        await create_schema(engine)
        async with engine.connect() as conn:
            assert (await conn.exec_driver_sql("PRAGMA foreign_keys")).scalar() == 1
        session_factory = build_session_factory(engine)
        service = ReminderService(
            alert_store=SqlAlertStore(session_factory),
            repository=SqlMedicationRepository(session_factory, clock=clock),
            adherence_log=SqlAdherenceLog(session_factory),
            auth=StaticAuthContext(user_id="user-1"),
            permission_gate=StaticPermissionGate(),
            clock=clock,
        )
        await service.save_medication(_medication())
        await service.recorder.record("med-1")

        await service.delete_medication("med-1")

        history = await service.recorder.history()
        assert [r.medication_id for r in history] == ["med-1"]
    finally:
        await engine.dispose()


async def test_dismissed_alert_leaves_no_delivered_row(sql_service, session_factory, clock):
    await sql_service.save_medication(_medication(clock_times=["20:00"]))
    store = SqlAlertStore(session_factory)
    fired = await store.fire_due(clock.advance(hours=11))

    outcome = await sql_service.handle_inbound_response(
        ResponseEvent(payload=fired[0].payload, handle=fired[0].handle)
    )

    assert outcome.state == ResponseState.DISMISSED
    assert await store.list_delivered() == []


async def test_saving_a_course_persists_its_start(sql_service, session_factory, clock):
    await sql_service.save_medication(
        _medication(continuous=False, treatment_duration_days=2, created_at=datetime(2026, 1, 5))
    )

    stored = await SqlMedicationRepository(session_factory).get("med-1")
    assert stored.course_started_at == clock()

    found = await SqlMedicationRepository(session_factory, clock=clock).find_active_by_user_and_clock_time(
        "user-1", "20:00"
    )
    assert [m.id for m in found] == ["med-1"]
