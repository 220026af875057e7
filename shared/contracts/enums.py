from enum import Enum


class ResponseAction(str, Enum):
    ACKNOWLEDGE = "acknowledge"
    SNOOZE = "snooze"
    NONE = "none"


class ResponseState(str, Enum):
    DELIVERED = "delivered"
    ACKNOWLEDGED = "acknowledged"
    SNOOZED = "snoozed"
    PRESENTED = "presented"
    DISMISSED = "dismissed"


class PermissionStatus(str, Enum):
    GRANTED = "granted"
    DENIED = "denied"
    UNDETERMINED = "undetermined"
