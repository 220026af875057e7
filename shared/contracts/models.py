from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .enums import ResponseAction, ResponseState


DEFAULT_DOSAGE_LABEL = "Not informed"


class Medication(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    dosage: str | None = None
    quantity: int | None = Field(default=None, ge=0)
    continuous: bool = False
    treatment_duration_days: int | None = None
    clock_times: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.now)
    # Start of the current course window; reset each time the schedule is saved.
    course_started_at: datetime | None = None

    @field_validator("clock_times")
    @classmethod
    def dedupe_clock_times(cls, value: list[str]) -> list[str]:
        # A clock time is a set member; keep first-seen order.
        return list(dict.fromkeys(t.strip() for t in value))


class AlertPayload(BaseModel):
    """Data attached to every armed alert; the medication id is its cancel key."""

    medication_id: str
    user_id: str
    name: str
    dosage: str = DEFAULT_DOSAGE_LABEL
    clock_time: str
    one_shot: bool = False
    snoozed: bool = False

    @field_validator("dosage", mode="before")
    @classmethod
    def default_dosage(cls, value: Any) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return DEFAULT_DOSAGE_LABEL
        return value


class Occurrence(BaseModel):
    payload: AlertPayload
    title: str
    body: str
    fire_at: datetime
    is_recurring: bool = False
    handle: str | None = None

    @property
    def medication_id(self) -> str:
        return self.payload.medication_id

    @property
    def user_id(self) -> str:
        return self.payload.user_id

    @property
    def clock_time(self) -> str:
        return self.payload.clock_time


class ResponseEvent(BaseModel):
    model_config = ConfigDict(extra="forbid")

    action: ResponseAction = ResponseAction.NONE
    payload: AlertPayload
    handle: str | None = None
    received_at: datetime = Field(default_factory=datetime.now)


class AdherenceRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    medication_id: str
    user_id: str
    taken_at: datetime
    quantity: int | None = Field(default=None, ge=0)
    note: str = ""


class ModalBatch(BaseModel):
    clock_time: str
    items: list[AlertPayload] = Field(default_factory=list)
    handle: str | None = None

    @model_validator(mode="after")
    def validate_items(self) -> "ModalBatch":
        if any(item.clock_time != self.clock_time for item in self.items):
            raise ValueError("every batch item must share the batch clock_time")
        return self

    def __len__(self) -> int:
        return len(self.items)


class RoutingOutcome(BaseModel):
    state: ResponseState
    batch: ModalBatch | None = None
    record: AdherenceRecord | None = None
    snoozed_occurrence: Occurrence | None = None
