import unittest

from services.scheduler.permission_gate import (
    AuditTrail,
    DevicePermissionStore,
    NotificationPermissionGate,
    PermissionDecision,
    ReasonCode,
)
from shared.contracts.enums import PermissionStatus


class NotificationPermissionGateTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.store = DevicePermissionStore()
        self.audit = AuditTrail()
        self.prompts = 0

    async def _grant(self) -> PermissionStatus:
        self.prompts += 1
        return PermissionStatus.GRANTED

    async def _deny(self) -> PermissionStatus:
        self.prompts += 1
        return PermissionStatus.DENIED

    async def test_reported_grant_is_used_without_prompting(self) -> None:
        self.store.set_status("default", PermissionStatus.GRANTED)
        gate = NotificationPermissionGate(self.store, self.audit, requester=self._grant)

        status = await gate.ensure_notifications_allowed()

        self.assertEqual(PermissionStatus.GRANTED, status)
        self.assertEqual(0, self.prompts)
        self.assertIn(ReasonCode.PERMISSION_ALREADY_GRANTED, self.audit.records[-1]["reason_codes"])

    async def test_undetermined_status_prompts_once_and_remembers(self) -> None:
        gate = NotificationPermissionGate(self.store, self.audit, requester=self._grant)

        self.assertEqual(PermissionStatus.GRANTED, await gate.ensure_notifications_allowed())
        self.assertEqual(PermissionStatus.GRANTED, await gate.ensure_notifications_allowed())

        self.assertEqual(1, self.prompts)
        self.assertEqual(PermissionStatus.GRANTED, self.store.get_status("default"))
        self.assertEqual(
            [ReasonCode.PERMISSION_GRANTED_ON_REQUEST, ReasonCode.PERMISSION_ALREADY_GRANTED],
            [record["reason_codes"][0] for record in self.audit.records],
        )

    async def test_denied_prompt_is_stored_as_denied(self) -> None:
        gate = NotificationPermissionGate(self.store, self.audit, device_id="phone-1", requester=self._deny)

        self.assertEqual(PermissionStatus.DENIED, await gate.ensure_notifications_allowed())
        self.assertEqual(PermissionStatus.DENIED, await gate.ensure_notifications_allowed())

        self.assertEqual(1, self.prompts)
        self.assertEqual("phone-1", self.audit.records[0]["device_id"])
        self.assertIn(ReasonCode.PERMISSION_DENIED, self.audit.records[-1]["reason_codes"])

    async def test_no_requester_means_denied(self) -> None:
        gate = NotificationPermissionGate(self.store, self.audit)

        self.assertEqual(PermissionStatus.DENIED, await gate.ensure_notifications_allowed())
        self.assertIn(ReasonCode.NO_REQUESTER_AVAILABLE, self.audit.records[-1]["reason_codes"])
        self.assertEqual(PermissionStatus.UNDETERMINED, self.store.get_status("default"))


class AuditTrailValidationTests(unittest.TestCase):
    def test_rejects_decision_without_reason_codes(self) -> None:
        audit = AuditTrail()

        with self.assertRaises(ValueError):
            audit.log_permission_decision(
                PermissionDecision(device_id="d1", status=PermissionStatus.GRANTED, reason_codes=[])
            )


if __name__ == "__main__":
    unittest.main()
