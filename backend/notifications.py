import logging
from datetime import datetime, timezone
from typing import Optional

import httpx

from reminder_store import MedicationReminder

logger = logging.getLogger(__name__)

def build_reminder_message(reminder: MedicationReminder) -> str:
    dose_text = f" ({reminder.medication_dose})" if reminder.medication_dose else ""
    return f"Time to take your {reminder.medication_name}{dose_text}"

class WebhookReminderNotifier:
    """
    Hand due reminders to the push-delivery service.
    Hook URL: REMINDER_PUSH_WEBHOOK_URL
    """

    def __init__(self, url: Optional[str], timeout: float = 8.0):
        self.url = (url or "").strip()
        self.timeout = timeout

    async def send_medication_reminder(
        self,
        reminder: MedicationReminder,
        scheduled_time: str,
        evaluation_timezone: str,
        due_reason: str = "schedule",
    ) -> bool:
        if not self.url:
            logger.info(f"[MedReminders] Push hook not configured; reminder {reminder.id} not delivered")
            return False

        envelope = {
            "event_type": "medication_reminder",
            "user_id": reminder.user_id,
            "title": "Medication Reminder",
            "body": build_reminder_message(reminder),
            "occurred_at": datetime.now(timezone.utc).isoformat(),
            "data": {
                "type": "medication_reminder",
                "reminder_id": reminder.id,
                "medication_id": reminder.medication_id,
                "medication_name": reminder.medication_name,
                "scheduled_time": scheduled_time,
                "evaluation_timezone": evaluation_timezone,
                "due_reason": due_reason,
            },
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.url, json=envelope)
        except httpx.HTTPError as exc:
            logger.warning(f"[MedReminders] Push hook failed for reminder {reminder.id}: {exc}")
            return False

        ok = 200 <= response.status_code < 300
        if not ok:
            logger.warning(
                f"[MedReminders] Push hook returned {response.status_code} for reminder {reminder.id}: "
                f"{(response.text or 'non_2xx')[:240]}"
            )
        return ok
