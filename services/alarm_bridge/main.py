"""Bridge for actions pressed on the native full-screen alarm.

The alarm activity posts ``{"action": ..., "medicamento" | "medication": {...}}``
with either the app's Portuguese field names or English ones. The bridge
normalizes that into a response event and forwards it to the orchestrator.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field, ValidationError

from app.config import Settings
from medreminder import InboundParser
from shared.contracts.models import AlertPayload, ResponseEvent


logger = logging.getLogger(__name__)

app = FastAPI(title="alarm_bridge")
ACTION_LOG: list[dict[str, Any]] = []
MAX_LOG_ENTRIES = 1000
FORWARD_TIMEOUT_SECONDS = 10.0

_parser = InboundParser()

_FIELD_ALIASES = {
    "medication_id": ("medication_id", "medicamentoId", "id"),
    "user_id": ("user_id", "userId"),
    "name": ("name", "nome"),
    "dosage": ("dosage", "dosagem"),
    "clock_time": ("clock_time", "horario"),
}


class AlarmAction(BaseModel):
    action: str | None = None
    medicamento: dict[str, Any] | None = None
    medication: dict[str, Any] | None = None
    handle: str | None = None
    user_id: str | None = Field(default=None, description="Signed-in user forwarded as X-User-Id")


def _append_log(entry: dict[str, Any]) -> None:
    ACTION_LOG.append(entry)
    if len(ACTION_LOG) > MAX_LOG_ENTRIES:
        del ACTION_LOG[0 : len(ACTION_LOG) - MAX_LOG_ENTRIES]


def _pick(source: dict[str, Any], names: tuple[str, ...]) -> Any:
    for name in names:
        if source.get(name) not in (None, ""):
            return source[name]
    return None


def normalize_alarm_action(payload: AlarmAction) -> ResponseEvent:
    action = _parser.normalize(payload.action)
    if action is None:
        raise ValueError(f"unknown alarm action {payload.action!r}")

    medication = payload.medicamento or payload.medication or {}
    fields = {key: _pick(medication, names) for key, names in _FIELD_ALIASES.items()}
    if fields["user_id"] is None:
        fields["user_id"] = payload.user_id
    fields["snoozed"] = bool(medication.get("snoozed", False))
    fields["one_shot"] = bool(medication.get("one_shot", medication.get("unico", False)))

    return ResponseEvent(
        action=action,
        payload=AlertPayload.model_validate({k: v for k, v in fields.items() if v is not None}),
        handle=payload.handle,
    )


async def forward_to_orchestrator(
    event: ResponseEvent,
    user_id: str | None,
    client: httpx.AsyncClient,
    url: str,
) -> dict[str, Any]:
    headers = {"X-User-Id": user_id} if user_id else {}
    response = await client.post(
        url,
        json={
            "action": event.action.value,
            "payload": event.payload.model_dump(mode="json"),
            "handle": event.handle,
            "received_at": event.received_at.isoformat(),
        },
        headers=headers,
    )
    response.raise_for_status()
    return response.json()


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok", "service": "alarm_bridge"}


@app.post("/alarm-actions")
async def alarm_action(payload: AlarmAction) -> dict[str, Any]:
    try:
        event = normalize_alarm_action(payload)
    except (ValueError, ValidationError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    _append_log(
        {
            "received_at": datetime.now(timezone.utc).isoformat(),
            "action": event.action.value,
            "medication_id": event.payload.medication_id,
        }
    )
    user_id = payload.user_id or event.payload.user_id
    orchestrator_url = Settings.from_env().orchestrator_url

    async with httpx.AsyncClient(timeout=FORWARD_TIMEOUT_SECONDS) as client:
        try:
            outcome = await forward_to_orchestrator(event, user_id, client, orchestrator_url)
        except httpx.HTTPError as exc:
            logger.warning("Could not forward %s action for %s: %s", event.action.value, event.payload.medication_id, exc)
            raise HTTPException(status_code=502, detail=f"Orchestrator unreachable: {exc}") from exc

    return {"status": "forwarded", "outcome": outcome}


@app.get("/logs")
def logs() -> list[dict[str, Any]]:
    return ACTION_LOG
