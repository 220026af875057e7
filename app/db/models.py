from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Declarative base for application models."""


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class Medication(TimestampMixin, Base):
    __tablename__ = "medications"
    __table_args__ = (Index("ix_medications_user_id", "user_id"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    dosage: Mapped[str | None] = mapped_column(String(128))
    quantity: Mapped[int | None] = mapped_column(Integer)
    continuous: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    treatment_duration_days: Mapped[int | None] = mapped_column(Integer)
    clock_times: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    course_started_at: Mapped[datetime | None] = mapped_column(DateTime)


class AdherenceRecord(TimestampMixin, Base):
    __tablename__ = "adherence_records"
    __table_args__ = (
        Index("ix_adherence_records_user_id_taken_at", "user_id", "taken_at"),
        Index("ix_adherence_records_medication_id", "medication_id"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    # Plain id, no foreign key: history outlives the medication unchanged.
    medication_id: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    taken_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    quantity: Mapped[int | None] = mapped_column(Integer)
    note: Mapped[str] = mapped_column(Text, nullable=False, default="")


class ScheduledAlert(TimestampMixin, Base):
    __tablename__ = "scheduled_alerts"
    __table_args__ = (
        Index("ix_scheduled_alerts_medication_id", "medication_id"),
        Index("ix_scheduled_alerts_fire_at", "fire_at"),
    )

    handle: Mapped[str] = mapped_column(String(64), primary_key=True)
    medication_id: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    clock_time: Mapped[str] = mapped_column(String(8), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    fire_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    is_recurring: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class DeliveredAlert(TimestampMixin, Base):
    __tablename__ = "delivered_alerts"
    __table_args__ = (Index("ix_delivered_alerts_handle", "handle"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    handle: Mapped[str] = mapped_column(String(64), nullable=False)
    medication_id: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    fired_for: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    is_recurring: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
