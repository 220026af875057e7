from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Callable

from fastapi import FastAPI, HTTPException, Request, Response
from pydantic import BaseModel, Field

from app.config import Settings, configure_logging
from app.db import (
    SqlAdherenceLog,
    SqlAlertStore,
    SqlMedicationRepository,
    build_engine,
    build_session_factory,
    create_schema,
)
from medreminder import (
    ContextVarAuthContext,
    InboundParser,
    PermissionDenied,
    QueuePresenter,
    ReminderService,
    StoreUnavailable,
    StaticPermissionGate,
    Unauthenticated,
)
from shared.contracts.enums import PermissionStatus
from shared.contracts.models import AdherenceRecord, AlertPayload, ModalBatch, Occurrence, ResponseEvent, RoutingOutcome


logger = logging.getLogger(__name__)


class InboundResponse(BaseModel):
    action: str | None = None
    payload: AlertPayload
    handle: str | None = None
    received_at: datetime | None = None


class TakeRequest(BaseModel):
    medication_id: str = Field(min_length=1)
    handle: str | None = None
    name: str | None = None
    quantity: int | None = Field(default=None, ge=0)
    note: str | None = None


def _service(request: Request) -> ReminderService:
    return request.app.state.service


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, Unauthenticated):
        return HTTPException(status_code=401, detail=str(exc))
    if isinstance(exc, PermissionDenied):
        return HTTPException(status_code=403, detail=str(exc))
    return HTTPException(status_code=503, detail="reminder store unavailable, try again")


def create_app(settings: Settings | None = None, clock: Callable[[], datetime] = datetime.now) -> FastAPI:
    settings = settings or Settings.from_env()
    auth = ContextVarAuthContext()
    parser = InboundParser()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_logging(settings.log_level)
        engine = build_engine(settings.database_url)
        await create_schema(engine)
        session_factory = build_session_factory(engine)

        app.state.prompts = QueuePresenter(maxsize=settings.prompt_queue_size)
        app.state.service = ReminderService(
            alert_store=SqlAlertStore(session_factory),
            repository=SqlMedicationRepository(session_factory, clock=clock),
            adherence_log=SqlAdherenceLog(session_factory),
            auth=auth,
            # Arming happens in the scheduler; snoozes here reuse its grant.
            permission_gate=StaticPermissionGate(PermissionStatus.GRANTED),
            clock=clock,
        )
        unsubscribe = app.state.service.register_response_presenter(app.state.prompts)
        try:
            yield
        finally:
            unsubscribe()
            await engine.dispose()

    app = FastAPI(title="orchestrator", lifespan=lifespan)

    @app.middleware("http")
    async def bind_user(request: Request, call_next):
        token = auth.bind(request.headers.get("x-user-id") or None)
        try:
            return await call_next(request)
        finally:
            auth.reset(token)

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "service": "orchestrator"}

    @app.post("/responses", response_model=RoutingOutcome)
    async def handle_response(payload: InboundResponse, request: Request) -> RoutingOutcome:
        action = parser.normalize(payload.action)
        if action is None:
            logger.warning("Rejected response for %s with unknown action %r", payload.payload.medication_id, payload.action)
            raise HTTPException(status_code=400, detail=f"unknown action {payload.action!r}")

        event = ResponseEvent(
            action=action,
            payload=payload.payload,
            handle=payload.handle,
            received_at=payload.received_at or clock(),
        )
        try:
            return await _service(request).handle_inbound_response(event)
        except (Unauthenticated, StoreUnavailable) as exc:
            raise _http_error(exc) from exc

    @app.get("/prompts/next", response_model=ModalBatch, responses={204: {"description": "No prompt waiting"}})
    async def next_prompt(request: Request) -> ModalBatch | Response:
        batch = request.app.state.prompts.next_nowait()
        if batch is None:
            return Response(status_code=204)
        return batch

    @app.post("/adherence", response_model=AdherenceRecord, status_code=201)
    async def record_taken(payload: TakeRequest, request: Request) -> AdherenceRecord:
        try:
            return await _service(request).record_taken(
                payload.medication_id,
                payload.handle,
                name=payload.name,
                quantity=payload.quantity,
                note=payload.note,
            )
        except (Unauthenticated, StoreUnavailable) as exc:
            raise _http_error(exc) from exc

    @app.get("/adherence", response_model=list[AdherenceRecord])
    async def adherence_history(request: Request, limit: int = 5) -> list[AdherenceRecord]:
        if limit < 1:
            raise HTTPException(status_code=400, detail="limit must be >= 1")
        try:
            return await _service(request).recorder.history(limit=limit)
        except (Unauthenticated, StoreUnavailable) as exc:
            raise _http_error(exc) from exc

    @app.post("/snooze", response_model=Occurrence)
    async def snooze(payload: AlertPayload, request: Request) -> Occurrence:
        try:
            return await _service(request).snoozer.snooze(payload)
        except StoreUnavailable as exc:
            raise _http_error(exc) from exc

    return app


app = create_app()
