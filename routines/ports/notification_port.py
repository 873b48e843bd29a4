"""Notification port: abstract interface for delivering reminders.

The reminder scheduler depends on this protocol, never on a transport.
"""

from __future__ import annotations

from typing import Protocol

from pydantic import BaseModel

from routines.domain.models import Occurrence, PartyRef, ReminderRule


class SendResult(BaseModel):
    """Explicit delivery outcome; senders report failure instead of hiding it."""

    ok: bool
    reason: str | None = None

    @classmethod
    def success(cls) -> SendResult:
        return cls(ok=True)

    @classmethod
    def failed(cls, reason: str) -> SendResult:
        return cls(ok=False, reason=reason)


class NotificationSender(Protocol):
    """Abstract notification interface used by the reminder scheduler."""

    async def send(
        self, recipient: PartyRef, occurrence: Occurrence, rule: ReminderRule
    ) -> SendResult: ...
