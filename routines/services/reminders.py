"""Service for computing due reminders and dispatching each one exactly once
per (rule, occurrence, participant).

Receipts are the single source of truth for "already sent": a receipt is
written only after the sender reports success, and a failed or timed-out
send leaves nothing behind, so the next scan retries the same tuple.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable

from pydantic import BaseModel, Field

from routines.config import settings
from routines.domain.bus import EventBus
from routines.domain.errors import InvariantViolation, TransientError
from routines.domain.events import ReminderDispatched, ReminderDispatchFailed
from routines.domain.models import (
    Occurrence,
    OccurrenceStatus,
    Participant,
    ReceiptKey,
    ReminderReceipt,
    ReminderRule,
    Routine,
    RoutineStatus,
    Window,
)
from routines.ports.notification_port import NotificationSender, SendResult
from routines.ports.store_port import DurableStore, ReceiptWrite
from routines.services.invitations import ParticipantInvitationManager
from routines.services.occurrences import OccurrenceStore
from routines.services.retry import RetryTracker

logger = logging.getLogger(__name__)

_REMINDABLE = (OccurrenceStatus.SCHEDULED, OccurrenceStatus.IN_PROGRESS)


class DueReminder(BaseModel):
    routine: Routine
    occurrence: Occurrence
    rule: ReminderRule
    participant: Participant

    @property
    def key(self) -> ReceiptKey:
        return ReceiptKey(self.rule.id, self.occurrence.id, self.participant.party.key)


class ScanReport(BaseModel):
    scanned_at: datetime
    sent: list[ReceiptKey] = Field(default_factory=list)
    failed: list[ReceiptKey] = Field(default_factory=list)
    already_sent: list[ReceiptKey] = Field(default_factory=list)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReminderScheduler:
    def __init__(
        self,
        store: DurableStore,
        occurrences: OccurrenceStore,
        invitations: ParticipantInvitationManager,
        sender: NotificationSender,
        bus: EventBus,
        dispatch_timeout: float | None = None,
        concurrency: int | None = None,
        max_retries: int | None = None,
    ) -> None:
        self.store = store
        self.occurrences = occurrences
        self.invitations = invitations
        self.sender = sender
        self.bus = bus
        self.dispatch_timeout = dispatch_timeout or settings.DISPATCH_TIMEOUT_SECONDS
        self.concurrency = concurrency or settings.DISPATCH_CONCURRENCY
        self.retries = RetryTracker(
            "reminders", max_retries or settings.MAX_DISPATCH_RETRIES, bus
        )

    # ------------------------------------------------------------------
    # Due computation
    # ------------------------------------------------------------------

    def due_reminders(self, now: datetime) -> list[DueReminder]:
        """Every (rule, occurrence, participant) whose time has come and that
        has no receipt yet. Cancelled and completed occurrences never appear."""
        due: list[DueReminder] = []
        for routine in self.store.list_routines([RoutineStatus.ACTIVE]):
            if not routine.reminder_rules:
                continue
            max_lead = max(rule.lead_time for rule in routine.reminder_rules)
            window = Window(
                start=now - routine.schedule.duration,
                end=now + max_lead + timedelta(microseconds=1),
            )
            for occurrence in self.store.load_occurrences_in_window(routine.id, window):
                if occurrence.status not in _REMINDABLE or occurrence.end <= now:
                    continue
                for rule in routine.reminder_rules:
                    if now < occurrence.start - rule.lead_time:
                        continue
                    for participant in self.invitations.reminder_recipients(
                        routine, occurrence, rule
                    ):
                        item = DueReminder(
                            routine=routine,
                            occurrence=occurrence,
                            rule=rule,
                            participant=participant,
                        )
                        if not self.store.has_receipt(item.key):
                            due.append(item)
        return due

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def scan(self, now: datetime | None = None) -> ScanReport:
        """One pass: fan out every due reminder with bounded concurrency."""
        now = now or _utcnow()
        report = ScanReport(scanned_at=now)
        due = self.due_reminders(now)
        # Tuples that left the due set (cancelled, ended, sent) stop being tracked
        self.retries.retain(_retry_key(item.key) for item in due)
        if not due:
            return report

        semaphore = asyncio.Semaphore(self.concurrency)
        outcomes = await asyncio.gather(
            *(self._dispatch(item, now, semaphore) for item in due)
        )
        for item, outcome in zip(due, outcomes):
            if outcome == ReceiptWrite.WRITTEN:
                report.sent.append(item.key)
            elif outcome == ReceiptWrite.ALREADY_EXISTS:
                report.already_sent.append(item.key)
            else:
                report.failed.append(item.key)
        logger.info(
            "Reminder scan at %s: %d sent, %d failed, %d already sent",
            now.isoformat(), len(report.sent), len(report.failed), len(report.already_sent),
        )
        return report

    async def _dispatch(
        self, item: DueReminder, now: datetime, semaphore: asyncio.Semaphore
    ) -> ReceiptWrite | None:
        async with semaphore:
            result = await self._send(item)
        if not result.ok:
            self._record_failure(item, result.reason or "unknown")
            return None

        receipt = ReminderReceipt(
            rule_id=item.rule.id,
            occurrence_id=item.occurrence.id,
            party=item.participant.party,
            dispatched_at=now,
            result="ok",
        )
        try:
            written = self.store.write_receipt_if_absent(receipt)
        except TransientError as exc:
            self._record_failure(item, f"receipt not stored: {exc}")
            return None

        self.retries.record_success(_retry_key(item.key))
        if written == ReceiptWrite.WRITTEN:
            logger.info(
                "Reminder %s sent to %s for occurrence %s",
                item.rule.id, item.participant.party.key, item.occurrence.id,
            )
            self.bus.publish(
                ReminderDispatched(
                    routine_id=item.routine.id,
                    occurrence_id=item.occurrence.id,
                    rule_id=item.rule.id,
                    party=item.participant.party,
                    dispatched_at=now,
                )
            )
        return written

    async def _send(self, item: DueReminder) -> SendResult:
        try:
            return await asyncio.wait_for(
                self.sender.send(item.participant.party, item.occurrence, item.rule),
                timeout=self.dispatch_timeout,
            )
        except asyncio.TimeoutError:
            return SendResult.failed(f"timed out after {self.dispatch_timeout}s")
        except TransientError as exc:
            return SendResult.failed(str(exc))
        except Exception as exc:
            logger.error(
                "Sender raised for reminder %s to %s: %r",
                item.rule.id, item.participant.party.key, exc,
            )
            return SendResult.failed(f"sender error: {exc!r}")

    def _record_failure(self, item: DueReminder, reason: str) -> None:
        key = _retry_key(item.key)
        self.retries.record_failure(key, reason, routine_id=item.routine.id)
        self.bus.publish(
            ReminderDispatchFailed(
                routine_id=item.routine.id,
                occurrence_id=item.occurrence.id,
                rule_id=item.rule.id,
                party=item.participant.party,
                reason=reason,
                attempts=self.retries.attempts(key),
            )
        )

    # ------------------------------------------------------------------
    # Periodic task
    # ------------------------------------------------------------------

    async def run_forever(
        self,
        interval: float | None = None,
        on_tick: Callable[[datetime], None] | None = None,
    ) -> None:
        """Scan every *interval* seconds for the lifetime of the process.

        *on_tick* runs before each scan (the lifecycle tick: status
        advancement and horizon extension). A failing pass is logged and the
        next pass proceeds; only an ``InvariantViolation`` stops the loop.
        """
        interval = interval or settings.SCAN_INTERVAL_SECONDS
        logger.info("Reminder scheduler started (every %.1fs)", interval)
        while True:
            now = _utcnow()
            try:
                if on_tick is not None:
                    on_tick(now)
                await self.scan(now)
            except TransientError as exc:
                logger.warning("Reminder pass at %s failed, retrying next pass: %s", now, exc)
            except InvariantViolation:
                raise
            except Exception:
                logger.exception("Reminder pass at %s crashed, retrying next pass", now)
            await asyncio.sleep(interval)


def _retry_key(key: ReceiptKey) -> str:
    return f"{key.rule_id}/{key.occurrence_id}/{key.party_key}"
