"""Notification sender that writes reminders to the application log.

Stands in for a real transport (email, chat) behind NotificationSender.
"""

from __future__ import annotations

import logging

from routines.domain.models import Occurrence, PartyRef, ReminderRule
from routines.ports.notification_port import SendResult

logger = logging.getLogger(__name__)


class LogNotificationSender:
    """Implements NotificationSender by logging each reminder."""

    async def send(
        self, recipient: PartyRef, occurrence: Occurrence, rule: ReminderRule
    ) -> SendResult:
        logger.info(
            "[%s] reminder %s to %s: occurrence %s starts at %s",
            rule.channel,
            rule.message_template_key or rule.id,
            recipient.key,
            occurrence.id,
            occurrence.start.isoformat(),
        )
        return SendResult.success()
