from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Callable

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, Field, field_validator

from app.config import Settings, configure_logging
from app.db import (
    SqlAdherenceLog,
    SqlAlertStore,
    SqlMedicationRepository,
    build_engine,
    build_session_factory,
    create_schema,
)
from medreminder import ContextVarAuthContext, PermissionDenied, ReminderService, StoreUnavailable
from services.scheduler.permission_gate import AuditTrail, DevicePermissionStore, NotificationPermissionGate
from shared.contracts.enums import PermissionStatus, ResponseAction
from shared.contracts.models import Medication, Occurrence, ResponseEvent


logger = logging.getLogger(__name__)


class MedicationRequest(BaseModel):
    user_id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    dosage: str | None = None
    quantity: int | None = Field(default=None, ge=0)
    continuous: bool = False
    treatment_duration_days: int | None = Field(default=None, ge=0)
    clock_times: list[str] = Field(default_factory=list)


class ScheduleResult(BaseModel):
    medication: Medication
    armed: list[Occurrence]


class PermissionReport(BaseModel):
    status: PermissionStatus


class TickRequest(BaseModel):
    now: datetime | None = None

    @field_validator("now")
    @classmethod
    def to_local_wall_clock(cls, value: datetime | None) -> datetime | None:
        # Alert times are naive local wall-clock values.
        if value is not None and value.tzinfo is not None:
            return value.astimezone().replace(tzinfo=None)
        return value


def _service(request: Request) -> ReminderService:
    return request.app.state.service


def _raise_for(exc: Exception) -> None:
    if isinstance(exc, PermissionDenied):
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    if isinstance(exc, StoreUnavailable):
        raise HTTPException(status_code=503, detail="reminder store unavailable, try again") from exc
    raise exc


def create_app(settings: Settings | None = None, clock: Callable[[], datetime] = datetime.now) -> FastAPI:
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_logging(settings.log_level)
        engine = build_engine(settings.database_url)
        await create_schema(engine)
        session_factory = build_session_factory(engine)

        app.state.alert_store = SqlAlertStore(session_factory)
        app.state.permissions = DevicePermissionStore()
        app.state.audit = AuditTrail()
        app.state.service = ReminderService(
            alert_store=app.state.alert_store,
            repository=SqlMedicationRepository(session_factory, clock=clock),
            adherence_log=SqlAdherenceLog(session_factory),
            auth=ContextVarAuthContext(),
            permission_gate=NotificationPermissionGate(app.state.permissions, app.state.audit),
            clock=clock,
        )
        app.state.clock = clock
        try:
            yield
        finally:
            await engine.dispose()

    app = FastAPI(title="scheduler", lifespan=lifespan)

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "service": "scheduler"}

    @app.post("/permissions")
    def report_permission(payload: PermissionReport, request: Request) -> dict[str, str]:
        request.app.state.permissions.set_status("default", payload.status)
        _service(request).reset_permission()
        logger.info("Device reported notification permission %s", payload.status.value)
        return {"status": payload.status.value}

    @app.post("/medications", response_model=ScheduleResult, status_code=201)
    async def create_medication(payload: MedicationRequest, request: Request) -> ScheduleResult:
        medication = Medication(id=uuid.uuid4().hex, created_at=request.app.state.clock(), **payload.model_dump())
        try:
            armed = await _service(request).save_medication(medication)
        except (PermissionDenied, StoreUnavailable) as exc:
            _raise_for(exc)
        return ScheduleResult(medication=medication, armed=armed)

    @app.put("/medications/{medication_id}", response_model=ScheduleResult)
    async def update_medication(medication_id: str, payload: MedicationRequest, request: Request) -> ScheduleResult:
        service = _service(request)
        try:
            existing = await service.repository.get(medication_id)
            if existing is None:
                raise HTTPException(status_code=404, detail="medication not found")
            medication = Medication(id=medication_id, created_at=existing.created_at, **payload.model_dump())
            armed = await service.save_medication(medication)
        except (PermissionDenied, StoreUnavailable) as exc:
            _raise_for(exc)
        return ScheduleResult(medication=medication, armed=armed)

    @app.delete("/medications/{medication_id}")
    async def delete_medication(medication_id: str, request: Request) -> dict[str, object]:
        service = _service(request)
        try:
            if await service.repository.get(medication_id) is None:
                raise HTTPException(status_code=404, detail="medication not found")
            cancelled = await service.delete_medication(medication_id)
        except StoreUnavailable as exc:
            _raise_for(exc)
        return {"deleted": medication_id, "cancelled_alerts": cancelled}

    @app.get("/alerts", response_model=list[Occurrence])
    async def list_alerts(request: Request, medication_id: str | None = None) -> list[Occurrence]:
        try:
            armed = await request.app.state.alert_store.list_armed()
        except StoreUnavailable as exc:
            _raise_for(exc)
        if medication_id is not None:
            armed = [o for o in armed if o.medication_id == medication_id]
        return armed

    @app.delete("/alerts")
    async def cancel_all_alerts(request: Request) -> dict[str, int]:
        try:
            cancelled = await _service(request).cancel_all_alerts()
        except StoreUnavailable as exc:
            _raise_for(exc)
        return {"cancelled_alerts": cancelled}

    @app.post("/jobs/tick", response_model=list[ResponseEvent])
    async def tick(payload: TickRequest, request: Request) -> list[ResponseEvent]:
        now = payload.now or request.app.state.clock()
        try:
            fired = await request.app.state.alert_store.fire_due(now)
        except StoreUnavailable as exc:
            _raise_for(exc)
        return [
            ResponseEvent(action=ResponseAction.NONE, payload=o.payload, handle=o.handle, received_at=now)
            for o in fired
        ]

    return app


app = create_app()
