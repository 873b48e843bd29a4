"""Durable store port: the persistence interface the scheduling core needs.

Core services depend on this protocol, never on a storage technology. Any
implementation signals temporary unavailability with ``TransientError``.
"""

from __future__ import annotations

from collections.abc import Iterable
from enum import StrEnum
from typing import Protocol

from routines.domain.models import (
    Occurrence,
    ParticipantOccurrenceState,
    PartyRef,
    ReceiptKey,
    ReminderReceipt,
    Routine,
    RoutineStatus,
    TaskCompletion,
    TimelineEntry,
    Window,
)


class UpsertResult(StrEnum):
    CREATED = "created"
    EXISTING = "existing"


class ReceiptWrite(StrEnum):
    WRITTEN = "written"
    ALREADY_EXISTS = "already_exists"


class DurableStore(Protocol):
    """Abstract durable store used by core services."""

    # Routines (the stored routine document carries the schedule and version)

    def create_routine(self, routine: Routine) -> Routine: ...

    def load_schedule(self, routine_id: str) -> Routine: ...

    def save_schedule(self, routine: Routine, expected_version: int) -> Routine: ...

    def list_routines(
        self, statuses: Iterable[RoutineStatus] | None = None
    ) -> list[Routine]: ...

    # Occurrences

    def upsert_occurrence_if_absent(self, occurrence: Occurrence) -> UpsertResult: ...

    def get_occurrence(self, occurrence_id: str) -> Occurrence | None: ...

    def save_occurrence(self, occurrence: Occurrence) -> None: ...

    def load_occurrences_in_window(
        self, routine_id: str, window: Window
    ) -> list[Occurrence]: ...

    def list_occurrences(self, routine_id: str) -> list[Occurrence]: ...

    # Participant-occurrence states

    def get_participant_state(
        self, occurrence_id: str, party: PartyRef
    ) -> ParticipantOccurrenceState | None: ...

    def upsert_participant_state(self, state: ParticipantOccurrenceState) -> None: ...

    def upsert_participant_state_unless_overridden(
        self, state: ParticipantOccurrenceState
    ) -> bool:
        """Atomically write *state* unless the stored one is overridden.

        Returns whether the write happened.
        """
        ...

    def delete_participant_state(self, occurrence_id: str, party: PartyRef) -> None: ...

    def list_participant_states(
        self,
        routine_id: str | None = None,
        occurrence_id: str | None = None,
        party: PartyRef | None = None,
    ) -> list[ParticipantOccurrenceState]: ...

    # Reminder receipts (append-only, idempotent by key)

    def write_receipt_if_absent(self, receipt: ReminderReceipt) -> ReceiptWrite: ...

    def has_receipt(self, key: ReceiptKey) -> bool: ...

    def list_receipts(self, occurrence_id: str | None = None) -> list[ReminderReceipt]: ...

    # Task completions

    def get_task_completion(
        self, occurrence_id: str, task_id: str
    ) -> TaskCompletion | None: ...

    def upsert_task_completion(self, completion: TaskCompletion) -> None: ...

    # Audit timeline

    def add_timeline_entry(self, entry: TimelineEntry) -> None: ...

    def list_timeline(self, routine_id: str) -> list[TimelineEntry]: ...
