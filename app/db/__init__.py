from .models import (
    AdherenceRecord,
    Base,
    DeliveredAlert,
    Medication,
    ScheduledAlert,
)
from .session import build_engine, build_session_factory, create_schema
from .stores import SqlAdherenceLog, SqlAlertStore, SqlMedicationRepository

__all__ = [
    "AdherenceRecord",
    "Base",
    "DeliveredAlert",
    "Medication",
    "ScheduledAlert",
    "SqlAdherenceLog",
    "SqlAlertStore",
    "SqlMedicationRepository",
    "build_engine",
    "build_session_factory",
    "create_schema",
]
