"""Shared fixtures: a fresh store, bus and service graph per test."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from routines.domain.bus import EventBus
from routines.domain.errors import TransientError
from routines.domain.handlers import HandlerRegistry
from routines.domain.models import (
    Frequency,
    InvitationStatus,
    Participant,
    PartyRef,
    RecurrenceRule,
    ReminderRule,
    RoutineDraft,
    Schedule,
    ScheduleType,
)
from routines.ports.notification_port import SendResult
from routines.repos.memory import InMemoryStore
from routines.services.invitations import ParticipantInvitationManager
from routines.services.lifecycle import RoutineLifecycleController
from routines.services.occurrences import OccurrenceStore
from routines.services.reminders import ReminderScheduler
from routines.services.tasks import TaskTracker

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)

ALICE = PartyRef.user("alice")
BOB = PartyRef.user("bob")
CAROL = PartyRef.user("carol")


class FakeSender:
    """Records every send; can fail the next N calls or stall on a recipient."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str, str]] = []
        self.fail_next = 0
        self.raise_next = 0
        self.stall_for: set[str] = set()

    async def send(self, recipient, occurrence, rule) -> SendResult:
        self.calls.append((recipient.key, occurrence.id, rule.id))
        if recipient.key in self.stall_for:
            await asyncio.sleep(5)
        if self.raise_next > 0:
            self.raise_next -= 1
            raise TransientError("gateway unavailable")
        if self.fail_next > 0:
            self.fail_next -= 1
            return SendResult.failed("smtp down")
        return SendResult.success()


class FlakyStore(InMemoryStore):
    """InMemoryStore whose window reads, occurrence saves and receipt writes
    can fail on demand."""

    def __init__(self) -> None:
        super().__init__()
        self.window_failures = 0
        self.save_failures = 0
        self.receipt_failures = 0

    def load_occurrences_in_window(self, routine_id, window):
        if self.window_failures > 0:
            self.window_failures -= 1
            raise TransientError("store timeout")
        return super().load_occurrences_in_window(routine_id, window)

    def save_occurrence(self, occurrence):
        if self.save_failures > 0:
            self.save_failures -= 1
            raise TransientError("store timeout")
        return super().save_occurrence(occurrence)

    def write_receipt_if_absent(self, receipt):
        if self.receipt_failures > 0:
            self.receipt_failures -= 1
            raise TransientError("store timeout")
        return super().write_receipt_if_absent(receipt)


@pytest.fixture()
def env():
    """Fresh bus + store + services + registry for each test."""
    bus = EventBus()
    store = FlakyStore()
    occurrences = OccurrenceStore(store, bus, horizon=timedelta(days=14), max_retries=3)
    invitations = ParticipantInvitationManager(store, occurrences, bus)
    lifecycle = RoutineLifecycleController(store, occurrences, invitations, bus)
    sender = FakeSender()
    scheduler = ReminderScheduler(
        store,
        occurrences,
        invitations,
        sender,
        bus,
        dispatch_timeout=0.05,
        concurrency=4,
        max_retries=3,
    )
    registry = HandlerRegistry(bus=bus, store=store, invitations=invitations)

    class Env:
        pass

    e = Env()
    e.bus = bus
    e.store = store
    e.occurrences = occurrences
    e.invitations = invitations
    e.lifecycle = lifecycle
    e.sender = sender
    e.scheduler = scheduler
    e.tasks = TaskTracker(store, occurrences)
    e.registry = registry
    return e


@pytest.fixture()
def captured(env):
    """Collect every published event of the given types."""

    def _capture(*event_types):
        seen = []
        for event_type in event_types:
            env.bus.subscribe(event_type, seen.append)
        return seen

    return _capture


def daily_schedule(**overrides) -> Schedule:
    """Daily 09:00 UTC from 2026-06-02, one hour long, open-ended."""
    defaults = dict(
        schedule_type=ScheduleType.RECURRING,
        start_datetime=datetime(2026, 6, 2, 9, 0),
        recurrence_rule=RecurrenceRule(frequency=Frequency.DAILY),
        duration=timedelta(hours=1),
        timezone="UTC",
    )
    defaults.update(overrides)
    return Schedule(**defaults)


def default_participants() -> list[Participant]:
    return [
        Participant(party=ALICE, role="Organizer", default_status=InvitationStatus.ACCEPTED),
        Participant(party=BOB),
        Participant(party=CAROL, optional=True),
    ]


@pytest.fixture()
def make_routine(env):
    """Create (and by default activate) a routine at NOW."""

    def _make(activate: bool = True, now: datetime = NOW, **overrides):
        defaults = dict(
            title={"en": "Standup"},
            creator=ALICE,
            schedule=daily_schedule(),
            participants=default_participants(),
            reminder_rules=[ReminderRule(id="day-before", lead_time=timedelta(days=1))],
        )
        defaults.update(overrides)
        routine = env.lifecycle.create_routine(RoutineDraft(**defaults), now=now)
        if activate:
            routine = env.lifecycle.activate(routine.id, now=now)
        return routine

    return _make
