from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional

from shared.contracts.enums import PermissionStatus


class ReasonCode:
    PERMISSION_ALREADY_GRANTED = "PERMISSION_ALREADY_GRANTED"
    PERMISSION_GRANTED_ON_REQUEST = "PERMISSION_GRANTED_ON_REQUEST"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    PERMISSION_DENIED_ON_REQUEST = "PERMISSION_DENIED_ON_REQUEST"
    NO_REQUESTER_AVAILABLE = "NO_REQUESTER_AVAILABLE"


PermissionRequester = Callable[[], Awaitable[PermissionStatus]]


@dataclass
class PermissionDecision:
    device_id: str
    status: PermissionStatus
    reason_codes: List[str]
    decided_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class DevicePermissionStore:
    """In-memory record of the notification permission each device reported."""

    def __init__(self) -> None:
        self._status: Dict[str, PermissionStatus] = {}

    def set_status(self, device_id: str, status: PermissionStatus) -> None:
        self._status[device_id] = PermissionStatus(status)

    def get_status(self, device_id: str) -> PermissionStatus:
        return self._status.get(device_id, PermissionStatus.UNDETERMINED)


class AuditTrail:
    def __init__(self) -> None:
        self.records: List[Dict[str, object]] = []

    def log_permission_decision(self, decision: PermissionDecision) -> None:
        if not decision.reason_codes:
            raise ValueError("permission decision without reason codes")

        self.records.append(
            {
                "type": "permission_decision",
                "device_id": decision.device_id,
                "status": decision.status.value,
                "reason_codes": decision.reason_codes,
                "logged_at": decision.decided_at.isoformat(),
            }
        )


class NotificationPermissionGate:
    """Answer whether reminders may be armed for one device.

    An undetermined status is resolved once through ``requester`` (the host's
    permission prompt); the answer is stored so later checks do not prompt again.
    """

    def __init__(
        self,
        state_store: DevicePermissionStore,
        audit_trail: AuditTrail,
        device_id: str = "default",
        requester: Optional[PermissionRequester] = None,
    ) -> None:
        self.state_store = state_store
        self.audit_trail = audit_trail
        self.device_id = device_id
        self.requester = requester

    async def ensure_notifications_allowed(self) -> PermissionStatus:
        status = self.state_store.get_status(self.device_id)
        reason_codes: List[str] = []

        if status == PermissionStatus.GRANTED:
            reason_codes.append(ReasonCode.PERMISSION_ALREADY_GRANTED)
        elif status == PermissionStatus.DENIED:
            reason_codes.append(ReasonCode.PERMISSION_DENIED)
        elif self.requester is None:
            status = PermissionStatus.DENIED
            reason_codes.append(ReasonCode.NO_REQUESTER_AVAILABLE)
        else:
            status = PermissionStatus(await self.requester())
            if status != PermissionStatus.UNDETERMINED:
                self.state_store.set_status(self.device_id, status)
            if status == PermissionStatus.GRANTED:
                reason_codes.append(ReasonCode.PERMISSION_GRANTED_ON_REQUEST)
            else:
                status = PermissionStatus.DENIED
                reason_codes.append(ReasonCode.PERMISSION_DENIED_ON_REQUEST)

        self.audit_trail.log_permission_decision(
            PermissionDecision(device_id=self.device_id, status=status, reason_codes=reason_codes)
        )
        return status
