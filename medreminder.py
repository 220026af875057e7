from __future__ import annotations

import asyncio
import inspect
import logging
import re
import uuid
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple, Union

from shared.contracts.enums import PermissionStatus, ResponseAction, ResponseState
from shared.contracts.models import (
    DEFAULT_DOSAGE_LABEL,
    AdherenceRecord,
    AlertPayload,
    Medication,
    ModalBatch,
    Occurrence,
    ResponseEvent,
    RoutingOutcome,
)


logger = logging.getLogger(__name__)

SNOOZE_MINUTES = 5
TAKEN_NOTE_TEMPLATE = "Taken via reminder at {time}"
FALLBACK_BODY_LABEL = "your medication"

Clock = Callable[[], datetime]
ResponsePresenter = Callable[[ModalBatch], Union[None, Awaitable[None]]]
OccurrencePredicate = Callable[[Occurrence], bool]


class MedReminderError(Exception):
    """Base class for reminder engine failures."""


class InvalidSchedule(MedReminderError, ValueError):
    def __init__(self, clock_time: Any, reason: str = "expected HH:MM") -> None:
        super().__init__(f"invalid clock time {clock_time!r}: {reason}")
        self.clock_time = clock_time


class PermissionDenied(MedReminderError):
    def __init__(self, message: str, first_notice: bool = True) -> None:
        super().__init__(message)
        self.first_notice = first_notice


class Unauthenticated(MedReminderError):
    pass


class StoreUnavailable(MedReminderError):
    pass


class GroupingQueryFailed(MedReminderError):
    pass


class AlertStore(Protocol):
    async def schedule(self, occurrence: Occurrence) -> str: ...

    async def cancel_by_match(self, predicate: OccurrencePredicate) -> int: ...

    async def list_armed(self) -> List[Occurrence]: ...

    async def retire(self, handle: str) -> None: ...


class MedicationRepository(Protocol):
    async def find_active_by_user_and_clock_time(self, user_id: str, clock_time: str) -> List[Medication]: ...

    async def get(self, medication_id: str) -> Optional[Medication]: ...

    async def save(self, medication: Medication) -> Medication: ...

    async def delete(self, medication_id: str) -> bool: ...


class AdherenceLog(Protocol):
    async def append(self, record: AdherenceRecord) -> AdherenceRecord: ...

    async def recent_for_user(self, user_id: str, limit: int = 5) -> List[AdherenceRecord]: ...


class AuthContext(Protocol):
    async def current_user(self) -> Optional[str]: ...


class PermissionGate(Protocol):
    async def ensure_notifications_allowed(self) -> PermissionStatus: ...


_CLOCK_TIME_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})$")


def parse_clock_time(value: Any) -> Tuple[int, int]:
    if not isinstance(value, str):
        raise InvalidSchedule(value, "not a string")
    match = _CLOCK_TIME_PATTERN.match(value.strip())
    if match is None:
        raise InvalidSchedule(value)
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        raise InvalidSchedule(value, "out of range")
    return hour, minute


def next_firing(now: datetime, hour: int, minute: int) -> datetime:
    """First instant at or after ``now`` that lands on hour:minute wall-clock time."""
    candidate = datetime.combine(now.date(), time(hour, minute), tzinfo=now.tzinfo)
    if candidate < now:
        candidate = datetime.combine(now.date() + timedelta(days=1), time(hour, minute), tzinfo=now.tzinfo)
    return candidate


def next_daily_after(fire_at: datetime, now: datetime) -> datetime:
    while fire_at <= now:
        fire_at = fire_at + timedelta(days=1)
    return fire_at


def is_course_active(medication: Medication, on: datetime) -> bool:
    if medication.continuous:
        return True
    days = medication.treatment_duration_days or 0
    if days <= 0:
        return False
    anchor = medication.course_started_at or medication.created_at
    ends_on = (anchor + timedelta(days=days)).date()
    return on.date() <= ends_on


def alert_title(name: str, snoozed: bool = False) -> str:
    return f"\U0001F48A {name} (Reminder)" if snoozed else f"\U0001F48A {name}"


def alert_body(dosage: Optional[str]) -> str:
    label = (dosage or "").strip()
    if not label or label == DEFAULT_DOSAGE_LABEL:
        label = FALLBACK_BODY_LABEL
    return f"Time to take {label}"


def build_payload(medication: Medication, clock_time: str) -> AlertPayload:
    return AlertPayload(
        medication_id=medication.id,
        user_id=medication.user_id,
        name=medication.name,
        dosage=medication.dosage,
        clock_time=clock_time,
        one_shot=not medication.continuous,
    )


def matches_medication(medication_id: str) -> OccurrencePredicate:
    return lambda occurrence: occurrence.medication_id == medication_id


async def retry_once(operation: Callable[..., Awaitable[Any]], *args: Any) -> Any:
    """Await ``operation``, retrying a single time if the store is unavailable."""
    try:
        return await operation(*args)
    except StoreUnavailable as exc:
        logger.warning("Store call %s failed (%s); retrying once", getattr(operation, "__name__", "call"), exc)
        return await operation(*args)


class ScheduleCompiler:
    """Turn a medication's dosing schedule into concrete future occurrences.

    Continuous medications get one recurring occurrence per clock time, re-armed
    daily by the alert store. Finite courses get one dated occurrence per clock
    time and day, from the first firing day through the calendar date of
    ``now + treatment_duration_days`` inclusive. Unparsable clock times are
    skipped without failing the rest of the batch.
    """

    def compile(self, medication: Medication, now: datetime) -> List[Occurrence]:
        if not medication.clock_times:
            logger.warning("Medication %s (%s) has no clock times; nothing to schedule", medication.id, medication.name)
            return []

        end_date = None
        if not medication.continuous:
            days = medication.treatment_duration_days or 0
            if days <= 0:
                logger.info("Medication %s has no remaining course days; nothing to schedule", medication.id)
                return []
            end_date = (now + timedelta(days=days)).date()

        occurrences: List[Occurrence] = []
        for clock_time in medication.clock_times:
            try:
                hour, minute = parse_clock_time(clock_time)
            except InvalidSchedule as exc:
                logger.warning("Skipping clock time for medication %s: %s", medication.id, exc)
                continue

            first = next_firing(now, hour, minute)
            payload = build_payload(medication, clock_time)
            title = alert_title(medication.name)
            body = alert_body(medication.dosage)

            if end_date is None:
                occurrences.append(
                    Occurrence(payload=payload, title=title, body=body, fire_at=first, is_recurring=True)
                )
                continue

            day = first.date()
            while day <= end_date:
                occurrences.append(
                    Occurrence(
                        payload=payload,
                        title=title,
                        body=body,
                        fire_at=datetime.combine(day, time(hour, minute), tzinfo=now.tzinfo),
                        is_recurring=False,
                    )
                )
                day += timedelta(days=1)

        occurrences.sort(key=lambda o: (o.fire_at, o.clock_time))
        return occurrences


class OccurrenceReconciler:
    """Replace a medication's armed occurrences with a freshly compiled set.

    The alert store is the only record of what is armed; cancellation filters
    its armed set by the medication id carried in each payload.
    """

    def __init__(self, alert_store: AlertStore, compiler: Optional[ScheduleCompiler] = None, clock: Clock = datetime.now):
        self.alert_store = alert_store
        self.compiler = compiler or ScheduleCompiler()
        self.clock = clock

    async def cancel_all(self, medication_id: str) -> int:
        cancelled = await self._call(self.alert_store.cancel_by_match, matches_medication(medication_id))
        logger.info("Cancelled %d alert(s) for medication %s", cancelled, medication_id)
        return cancelled

    async def reconcile(self, medication: Medication, now: Optional[datetime] = None) -> List[Occurrence]:
        now = now or self.clock()
        compiled = self.compiler.compile(medication, now)

        armed_before = await self._call(self.alert_store.list_armed)
        previous = [o for o in armed_before if o.medication_id == medication.id]
        await self.cancel_all(medication.id)

        armed: List[Occurrence] = []
        try:
            for occurrence in compiled:
                handle = await self._call(self.alert_store.schedule, occurrence)
                armed.append(occurrence.model_copy(update={"handle": handle}))
        except StoreUnavailable:
            await self._restore(medication.id, previous)
            raise

        logger.info(
            "Armed %d alert(s) for medication %s (%s)",
            len(armed),
            medication.id,
            "continuous" if medication.continuous else f"{medication.treatment_duration_days} day course",
        )
        return armed

    async def _restore(self, medication_id: str, previous: List[Occurrence]) -> None:
        try:
            await self.alert_store.cancel_by_match(matches_medication(medication_id))
            for occurrence in previous:
                await self.alert_store.schedule(occurrence)
        except StoreUnavailable:
            logger.exception("Could not restore previous alerts for medication %s", medication_id)
        else:
            logger.warning("Reconcile for medication %s failed; restored %d previous alert(s)", medication_id, len(previous))

    async def _call(self, operation: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        return await retry_once(operation, *args)


class CoOccurrenceGrouper:
    def __init__(self, repository: MedicationRepository) -> None:
        self.repository = repository

    async def group(self, payload: AlertPayload) -> ModalBatch:
        try:
            medications = await self._query(payload.user_id, payload.clock_time)
        except GroupingQueryFailed as exc:
            logger.warning("Grouping query failed for %s at %s: %s", payload.user_id, payload.clock_time, exc)
            medications = []

        if not medications:
            return ModalBatch(clock_time=payload.clock_time, items=[payload])

        items = [
            AlertPayload(
                medication_id=med.id,
                user_id=payload.user_id,
                name=med.name,
                dosage=med.dosage,
                clock_time=payload.clock_time,
                one_shot=not med.continuous,
            )
            for med in medications
        ]
        if all(item.medication_id != payload.medication_id for item in items):
            items.insert(0, payload)
        return ModalBatch(clock_time=payload.clock_time, items=items)

    async def _query(self, user_id: str, clock_time: str) -> List[Medication]:
        try:
            return await self.repository.find_active_by_user_and_clock_time(user_id, clock_time)
        except Exception as exc:
            raise GroupingQueryFailed(f"{type(exc).__name__}: {exc}") from exc


class AdherenceRecorder:
    def __init__(self, log: AdherenceLog, auth: AuthContext, clock: Clock = datetime.now) -> None:
        self.log = log
        self.auth = auth
        self.clock = clock

    async def record(
        self,
        medication_id: str,
        when: Optional[datetime] = None,
        *,
        name: Optional[str] = None,
        quantity: Optional[int] = None,
        note: Optional[str] = None,
    ) -> AdherenceRecord:
        user_id = await self.auth.current_user()
        if not user_id:
            raise Unauthenticated("sign in again to record that this medication was taken")

        when = when or self.clock()
        record = AdherenceRecord(
            id=uuid.uuid4().hex,
            medication_id=medication_id,
            user_id=user_id,
            taken_at=when,
            quantity=quantity,
            note=note if note is not None else TAKEN_NOTE_TEMPLATE.format(time=when.strftime("%H:%M")),
        )
        stored = await self.log.append(record)
        logger.info("Recorded dose of %s for user %s at %s", name or medication_id, user_id, when.strftime("%H:%M"))
        return stored

    async def history(self, limit: int = 5) -> List[AdherenceRecord]:
        user_id = await self.auth.current_user()
        if not user_id:
            raise Unauthenticated("sign in again to view your medication history")
        return await self.log.recent_for_user(user_id, limit=limit)


class SnoozeRescheduler:
    def __init__(self, alert_store: AlertStore, clock: Clock = datetime.now) -> None:
        self.alert_store = alert_store
        self.clock = clock

    async def snooze(self, payload: AlertPayload) -> Occurrence:
        fire_at = self.clock() + timedelta(minutes=SNOOZE_MINUTES)
        occurrence = Occurrence(
            payload=payload.model_copy(update={"snoozed": True, "one_shot": True}),
            title=alert_title(payload.name, snoozed=True),
            body=alert_body(payload.dosage),
            fire_at=fire_at,
            is_recurring=False,
        )
        handle = await retry_once(self.alert_store.schedule, occurrence)
        logger.info("Snoozed %s until %s (handle %s)", payload.name, fire_at.strftime("%H:%M"), handle)
        return occurrence.model_copy(update={"handle": handle})


class ResponseRouter:
    """Dispatch one inbound response event to acknowledge, snooze or present.

    Presenters subscribe through ``subscribe``; with none subscribed, an opened
    alert is dismissed and its delivered instance retired. The fired instance
    is retired only after the adherence write or the snooze re-arm succeeded;
    a presented batch carries its handle for the prompt's own take.
    """

    def __init__(
        self,
        alert_store: AlertStore,
        recorder: AdherenceRecorder,
        snoozer: SnoozeRescheduler,
        grouper: CoOccurrenceGrouper,
    ) -> None:
        self.alert_store = alert_store
        self.recorder = recorder
        self.snoozer = snoozer
        self.grouper = grouper
        self._presenters: List[ResponsePresenter] = []

    def subscribe(self, presenter: ResponsePresenter) -> Callable[[], None]:
        self._presenters.append(presenter)

        def unsubscribe() -> None:
            if presenter in self._presenters:
                self._presenters.remove(presenter)

        return unsubscribe

    @property
    def has_presenter(self) -> bool:
        return bool(self._presenters)

    async def route(self, event: ResponseEvent) -> RoutingOutcome:
        if event.action == ResponseAction.ACKNOWLEDGE:
            return await self._acknowledge(event)
        if event.action == ResponseAction.SNOOZE:
            return await self._snooze(event)
        return await self._present(event)

    async def _acknowledge(self, event: ResponseEvent) -> RoutingOutcome:
        record = await self.recorder.record(event.payload.medication_id, name=event.payload.name)
        await self._retire(event)
        return RoutingOutcome(state=ResponseState.ACKNOWLEDGED, record=record)

    async def _snooze(self, event: ResponseEvent) -> RoutingOutcome:
        occurrence = await self.snoozer.snooze(event.payload)
        await self._retire(event)
        return RoutingOutcome(state=ResponseState.SNOOZED, snoozed_occurrence=occurrence)

    async def _present(self, event: ResponseEvent) -> RoutingOutcome:
        if not self._presenters:
            logger.warning(
                "No prompt presenter registered; dismissing alert for %s at %s",
                event.payload.name,
                event.payload.clock_time,
            )
            await self.retire(event.handle)
            return RoutingOutcome(state=ResponseState.DISMISSED)

        batch = await self.grouper.group(event.payload)
        # The prompt's take or snooze retires the fired instance through this handle.
        batch = batch.model_copy(update={"handle": event.handle})
        for presenter in list(self._presenters):
            result = presenter(batch)
            if inspect.isawaitable(result):
                await result
        return RoutingOutcome(state=ResponseState.PRESENTED, batch=batch)

    async def _retire(self, event: ResponseEvent) -> None:
        if event.handle is None:
            logger.debug("Response for %s carries no alert handle; nothing to retire", event.payload.medication_id)
            return
        await self.retire(event.handle)

    async def retire(self, handle: Optional[str]) -> None:
        if handle is not None:
            await retry_once(self.alert_store.retire, handle)


class InboundParser:
    """Normalize inbound action identifiers to canonical response actions."""

    _map: Dict[str, ResponseAction] = {
        "acknowledge": ResponseAction.ACKNOWLEDGE,
        "take": ResponseAction.ACKNOWLEDGE,
        "taken": ResponseAction.ACKNOWLEDGE,
        "tomar": ResponseAction.ACKNOWLEDGE,
        "1": ResponseAction.ACKNOWLEDGE,
        "✅": ResponseAction.ACKNOWLEDGE,
        "snooze": ResponseAction.SNOOZE,
        "adiar": ResponseAction.SNOOZE,
        "2": ResponseAction.SNOOZE,
        "⏰": ResponseAction.SNOOZE,
        "": ResponseAction.NONE,
        "none": ResponseAction.NONE,
        "opened": ResponseAction.NONE,
        "default": ResponseAction.NONE,
        "expo.modules.notifications.actions.default": ResponseAction.NONE,
    }

    def normalize(self, identifier: Optional[str]) -> Optional[ResponseAction]:
        if identifier is None:
            return ResponseAction.NONE
        return self._map.get(identifier.strip().lower())


class ReminderService:
    """Entry points the host application calls."""

    def __init__(
        self,
        alert_store: AlertStore,
        repository: MedicationRepository,
        adherence_log: AdherenceLog,
        auth: AuthContext,
        permission_gate: PermissionGate,
        clock: Clock = datetime.now,
    ) -> None:
        self.alert_store = alert_store
        self.repository = repository
        self.permission_gate = permission_gate
        self.clock = clock

        self.compiler = ScheduleCompiler()
        self.reconciler = OccurrenceReconciler(alert_store, self.compiler, clock)
        self.grouper = CoOccurrenceGrouper(repository)
        self.recorder = AdherenceRecorder(adherence_log, auth, clock)
        self.snoozer = SnoozeRescheduler(alert_store, clock)
        self.router = ResponseRouter(alert_store, self.recorder, self.snoozer, self.grouper)

        self._permission_granted = False
        self._denial_surfaced = False

    async def schedule_for_medication(self, medication: Medication, now: Optional[datetime] = None) -> List[Occurrence]:
        await self._ensure_permission()
        return await self.reconciler.reconcile(medication, now)

    async def cancel_for_medication(self, medication_id: str) -> int:
        return await self.reconciler.cancel_all(medication_id)

    async def cancel_all_alerts(self) -> int:
        cancelled = await self.alert_store.cancel_by_match(lambda occurrence: True)
        logger.info("Cancelled all %d armed alert(s)", cancelled)
        return cancelled

    def register_response_presenter(self, presenter: ResponsePresenter) -> Callable[[], None]:
        return self.router.subscribe(presenter)

    async def handle_inbound_response(self, event: ResponseEvent) -> RoutingOutcome:
        return await self.router.route(event)

    async def record_taken(
        self,
        medication_id: str,
        handle: Optional[str] = None,
        *,
        name: Optional[str] = None,
        quantity: Optional[int] = None,
        note: Optional[str] = None,
    ) -> AdherenceRecord:
        """Record a dose taken from a prompt, then retire the alert instance behind it."""
        record = await self.recorder.record(medication_id, name=name, quantity=quantity, note=note)
        await self.router.retire(handle)
        return record

    async def save_medication(self, medication: Medication) -> List[Occurrence]:
        now = self.clock()
        saved = await self.repository.save(medication.model_copy(update={"course_started_at": now}))
        return await self.schedule_for_medication(saved, now)

    async def delete_medication(self, medication_id: str) -> int:
        """Cancel every alert of the medication, then delete it; returns the cancelled count.

        If the delete fails the medication's alerts are re-armed before the
        error propagates, so a retried delete starts from a consistent state.
        """
        existing = await self.repository.get(medication_id)
        cancelled = await self.cancel_for_medication(medication_id)
        try:
            await self.repository.delete(medication_id)
        except MedReminderError:
            if existing is not None:
                logger.warning("Deleting medication %s failed; re-arming its alerts", medication_id)
                await self.reconciler.reconcile(existing)
            raise
        return cancelled

    def reset_permission(self) -> None:
        self._permission_granted = False

    async def _ensure_permission(self) -> None:
        if self._permission_granted:
            return

        status = await self.permission_gate.ensure_notifications_allowed()
        if status == PermissionStatus.GRANTED:
            self._permission_granted = True
            return

        first_notice = not self._denial_surfaced
        self._denial_surfaced = True
        raise PermissionDenied(
            "Enable notification permissions to receive medication reminders.",
            first_notice=first_notice,
        )


@dataclass
class InMemoryAlertStore:
    armed: Dict[str, Occurrence] = field(default_factory=dict)
    delivered: Dict[str, Occurrence] = field(default_factory=dict)

    async def schedule(self, occurrence: Occurrence) -> str:
        handle = occurrence.handle or uuid.uuid4().hex
        self.armed[handle] = occurrence.model_copy(update={"handle": handle})
        return handle

    async def cancel_by_match(self, predicate: OccurrencePredicate) -> int:
        matched = [handle for handle, occurrence in self.armed.items() if predicate(occurrence)]
        for handle in matched:
            del self.armed[handle]
        return len(matched)

    async def list_armed(self) -> List[Occurrence]:
        return sorted(self.armed.values(), key=lambda o: o.fire_at)

    async def retire(self, handle: str) -> None:
        self.delivered.pop(handle, None)
        occurrence = self.armed.get(handle)
        if occurrence is not None and not occurrence.is_recurring:
            del self.armed[handle]

    async def fire_due(self, now: datetime) -> List[Occurrence]:
        fired: List[Occurrence] = []
        for occurrence in await self.list_armed():
            if occurrence.fire_at > now:
                break
            handle = occurrence.handle
            self.delivered[handle] = occurrence
            fired.append(occurrence)
            if occurrence.is_recurring:
                self.armed[handle] = occurrence.model_copy(
                    update={"fire_at": next_daily_after(occurrence.fire_at, now)}
                )
            else:
                del self.armed[handle]
        return fired


@dataclass
class InMemoryMedicationRepository:
    medications: Dict[str, Medication] = field(default_factory=dict)
    clock: Clock = datetime.now

    async def find_active_by_user_and_clock_time(self, user_id: str, clock_time: str) -> List[Medication]:
        now = self.clock()
        matches = [
            med
            for med in self.medications.values()
            if med.user_id == user_id and clock_time in med.clock_times and is_course_active(med, now)
        ]
        return sorted(matches, key=lambda med: med.created_at)

    async def get(self, medication_id: str) -> Optional[Medication]:
        return self.medications.get(medication_id)

    async def save(self, medication: Medication) -> Medication:
        self.medications[medication.id] = medication
        return medication

    async def delete(self, medication_id: str) -> bool:
        return self.medications.pop(medication_id, None) is not None


@dataclass
class InMemoryAdherenceLog:
    records: List[AdherenceRecord] = field(default_factory=list)

    async def append(self, record: AdherenceRecord) -> AdherenceRecord:
        self.records.append(record)
        return record

    async def recent_for_user(self, user_id: str, limit: int = 5) -> List[AdherenceRecord]:
        mine = [r for r in self.records if r.user_id == user_id]
        mine.sort(key=lambda r: r.taken_at, reverse=True)
        return mine[:limit]


@dataclass
class StaticAuthContext:
    user_id: Optional[str] = None

    async def current_user(self) -> Optional[str]:
        return self.user_id


class ContextVarAuthContext:
    """Auth context bound per request or task through a context variable."""

    def __init__(self, name: str = "medreminder_user_id") -> None:
        self._current: ContextVar[Optional[str]] = ContextVar(name, default=None)

    def bind(self, user_id: Optional[str]) -> Any:
        return self._current.set(user_id)

    def reset(self, token: Any) -> None:
        self._current.reset(token)

    async def current_user(self) -> Optional[str]:
        return self._current.get()


@dataclass
class StaticPermissionGate:
    status: PermissionStatus = PermissionStatus.GRANTED
    calls: int = 0

    async def ensure_notifications_allowed(self) -> PermissionStatus:
        self.calls += 1
        return self.status


class QueuePresenter:
    """Bounded channel of prompt batches for a host that polls for them."""

    def __init__(self, maxsize: int = 32) -> None:
        if maxsize < 1:
            raise ValueError("maxsize must be >= 1")
        self.queue: asyncio.Queue[ModalBatch] = asyncio.Queue(maxsize=maxsize)

    def __call__(self, batch: ModalBatch) -> None:
        if self.queue.full():
            dropped = self.queue.get_nowait()
            logger.warning("Prompt queue full; dropping oldest prompt for %s", dropped.clock_time)
        self.queue.put_nowait(batch)

    def next_nowait(self) -> Optional[ModalBatch]:
        try:
            return self.queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    async def next(self) -> ModalBatch:
        return await self.queue.get()
