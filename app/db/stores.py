"""SQLAlchemy-backed collaborators for the reminder engine.

``SqlAlertStore`` is the durable alert store: armed alerts and delivered
instances live in tables, so a restarted process sees exactly what was armed
before it stopped. Every database failure surfaces as ``StoreUnavailable``.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Callable, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from medreminder import OccurrencePredicate, StoreUnavailable, is_course_active, next_daily_after
from shared.contracts.models import AdherenceRecord, AlertPayload, Medication, Occurrence

from .models import AdherenceRecord as AdherenceRecordRow
from .models import DeliveredAlert
from .models import Medication as MedicationRow
from .models import ScheduledAlert


logger = logging.getLogger(__name__)


class _SqlStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"{type(self).__name__} unavailable: {exc}") from exc


def _to_occurrence(row: ScheduledAlert) -> Occurrence:
    return Occurrence(
        payload=AlertPayload.model_validate(row.payload),
        title=row.title,
        body=row.body,
        fire_at=row.fire_at,
        is_recurring=row.is_recurring,
        handle=row.handle,
    )


class SqlAlertStore(_SqlStore):
    async def schedule(self, occurrence: Occurrence) -> str:
        handle = occurrence.handle or uuid.uuid4().hex
        async with self._transaction() as session:
            await session.merge(
                ScheduledAlert(
                    handle=handle,
                    medication_id=occurrence.medication_id,
                    user_id=occurrence.user_id,
                    clock_time=occurrence.clock_time,
                    title=occurrence.title,
                    body=occurrence.body,
                    payload=occurrence.payload.model_dump(mode="json"),
                    fire_at=occurrence.fire_at,
                    is_recurring=occurrence.is_recurring,
                )
            )
        return handle

    async def cancel_by_match(self, predicate: OccurrencePredicate) -> int:
        async with self._transaction() as session:
            rows = (await session.scalars(select(ScheduledAlert))).all()
            handles = [row.handle for row in rows if predicate(_to_occurrence(row))]
            if handles:
                await session.execute(delete(ScheduledAlert).where(ScheduledAlert.handle.in_(handles)))
        return len(handles)

    async def list_armed(self) -> List[Occurrence]:
        async with self._transaction() as session:
            rows = (await session.scalars(select(ScheduledAlert).order_by(ScheduledAlert.fire_at))).all()
            return [_to_occurrence(row) for row in rows]

    async def list_delivered(self) -> List[Occurrence]:
        async with self._transaction() as session:
            rows = (await session.scalars(select(DeliveredAlert).order_by(DeliveredAlert.id))).all()
            return [
                Occurrence(
                    payload=AlertPayload.model_validate(row.payload),
                    title=row.title,
                    body=row.body,
                    fire_at=row.fired_for,
                    is_recurring=row.is_recurring,
                    handle=row.handle,
                )
                for row in rows
            ]

    async def retire(self, handle: str) -> None:
        async with self._transaction() as session:
            await session.execute(delete(DeliveredAlert).where(DeliveredAlert.handle == handle))
            await session.execute(
                delete(ScheduledAlert).where(
                    ScheduledAlert.handle == handle,
                    ScheduledAlert.is_recurring.is_(False),
                )
            )

    async def fire_due(self, now: datetime) -> List[Occurrence]:
        """Deliver every armed alert due at ``now``; recurring ones re-arm for the next day."""
        fired: List[Occurrence] = []
        async with self._transaction() as session:
            due = (
                await session.scalars(
                    select(ScheduledAlert).where(ScheduledAlert.fire_at <= now).order_by(ScheduledAlert.fire_at)
                )
            ).all()
            for row in due:
                fired.append(_to_occurrence(row))
                session.add(
                    DeliveredAlert(
                        handle=row.handle,
                        medication_id=row.medication_id,
                        payload=row.payload,
                        title=row.title,
                        body=row.body,
                        fired_for=row.fire_at,
                        is_recurring=row.is_recurring,
                    )
                )
                if row.is_recurring:
                    row.fire_at = next_daily_after(row.fire_at, now)
                else:
                    await session.delete(row)
        if fired:
            logger.info("Delivered %d due alert(s)", len(fired))
        return fired


def _to_medication(row: MedicationRow) -> Medication:
    return Medication.model_validate(row)


class SqlMedicationRepository(_SqlStore):
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        super().__init__(session_factory)
        self.clock = clock

    async def find_active_by_user_and_clock_time(self, user_id: str, clock_time: str) -> List[Medication]:
        now = self.clock()
        async with self._transaction() as session:
            rows = (
                await session.scalars(
                    select(MedicationRow).where(MedicationRow.user_id == user_id).order_by(MedicationRow.created_at)
                )
            ).all()
            medications = [_to_medication(row) for row in rows]
        return [med for med in medications if clock_time in med.clock_times and is_course_active(med, now)]

    async def get(self, medication_id: str) -> Optional[Medication]:
        async with self._transaction() as session:
            row = await session.get(MedicationRow, medication_id)
            return _to_medication(row) if row is not None else None

    async def save(self, medication: Medication) -> Medication:
        async with self._transaction() as session:
            row = await session.merge(MedicationRow(**medication.model_dump()))
            await session.flush()
            return _to_medication(row)

    async def delete(self, medication_id: str) -> bool:
        async with self._transaction() as session:
            result = await session.execute(delete(MedicationRow).where(MedicationRow.id == medication_id))
        return result.rowcount > 0


class SqlAdherenceLog(_SqlStore):
    async def append(self, record: AdherenceRecord) -> AdherenceRecord:
        async with self._transaction() as session:
            session.add(AdherenceRecordRow(**record.model_dump()))
        return record

    async def recent_for_user(self, user_id: str, limit: int = 5) -> List[AdherenceRecord]:
        async with self._transaction() as session:
            rows = (
                await session.scalars(
                    select(AdherenceRecordRow)
                    .where(AdherenceRecordRow.user_id == user_id)
                    .order_by(AdherenceRecordRow.taken_at.desc())
                    .limit(limit)
                )
            ).all()
            return [AdherenceRecord.model_validate(row) for row in rows]
