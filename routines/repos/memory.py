"""In-memory implementation of the durable store port."""

from __future__ import annotations

import threading
from collections.abc import Iterable
from datetime import datetime, timezone

from routines.domain.errors import NotFoundError, VersionConflict
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
from routines.ports.store_port import ReceiptWrite, UpsertResult


class InMemoryStore:
    """Dict-backed store keyed the way a durable store would be.

    Records are copied on the way in and out so callers can only change
    stored state through these methods, as with a real database.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._routines: dict[str, Routine] = {}
        self._occurrences: dict[str, Occurrence] = {}
        self._states: dict[tuple[str, PartyRef], ParticipantOccurrenceState] = {}
        self._receipts: dict[ReceiptKey, ReminderReceipt] = {}
        self._task_completions: dict[tuple[str, str], TaskCompletion] = {}
        self._timeline: list[TimelineEntry] = []

    # ------------------------------------------------------------------
    # Routines
    # ------------------------------------------------------------------

    def create_routine(self, routine: Routine) -> Routine:
        with self._lock:
            if routine.id in self._routines:
                raise VersionConflict(routine.id, 0, self._routines[routine.id].version)
            stored = routine.model_copy(deep=True, update={"version": 1})
            self._routines[routine.id] = stored
            return stored.model_copy(deep=True)

    def load_schedule(self, routine_id: str) -> Routine:
        with self._lock:
            routine = self._routines.get(routine_id)
            if routine is None:
                raise NotFoundError(f"Routine {routine_id} not found")
            return routine.model_copy(deep=True)

    def save_schedule(self, routine: Routine, expected_version: int) -> Routine:
        with self._lock:
            current = self._routines.get(routine.id)
            if current is None:
                raise NotFoundError(f"Routine {routine.id} not found")
            if current.version != expected_version:
                raise VersionConflict(routine.id, expected_version, current.version)
            stored = routine.model_copy(
                deep=True,
                update={
                    "version": expected_version + 1,
                    "updated_at": datetime.now(timezone.utc),
                },
            )
            self._routines[routine.id] = stored
            return stored.model_copy(deep=True)

    def list_routines(
        self, statuses: Iterable[RoutineStatus] | None = None
    ) -> list[Routine]:
        wanted = set(statuses) if statuses is not None else None
        with self._lock:
            return [
                r.model_copy(deep=True)
                for r in self._routines.values()
                if wanted is None or r.status in wanted
            ]

    # ------------------------------------------------------------------
    # Occurrences
    # ------------------------------------------------------------------

    def upsert_occurrence_if_absent(self, occurrence: Occurrence) -> UpsertResult:
        with self._lock:
            if occurrence.id in self._occurrences:
                return UpsertResult.EXISTING
            self._occurrences[occurrence.id] = occurrence.model_copy()
            return UpsertResult.CREATED

    def get_occurrence(self, occurrence_id: str) -> Occurrence | None:
        with self._lock:
            occurrence = self._occurrences.get(occurrence_id)
            return occurrence.model_copy() if occurrence else None

    def save_occurrence(self, occurrence: Occurrence) -> None:
        with self._lock:
            if occurrence.id not in self._occurrences:
                raise NotFoundError(f"Occurrence {occurrence.id} not found")
            self._occurrences[occurrence.id] = occurrence.model_copy()

    def load_occurrences_in_window(
        self, routine_id: str, window: Window
    ) -> list[Occurrence]:
        return [o for o in self.list_occurrences(routine_id) if window.contains(o.start)]

    def list_occurrences(self, routine_id: str) -> list[Occurrence]:
        with self._lock:
            found = [
                o.model_copy()
                for o in self._occurrences.values()
                if o.routine_id == routine_id
            ]
        return sorted(found, key=lambda o: o.start)

    # ------------------------------------------------------------------
    # Participant-occurrence states
    # ------------------------------------------------------------------

    def get_participant_state(
        self, occurrence_id: str, party: PartyRef
    ) -> ParticipantOccurrenceState | None:
        with self._lock:
            state = self._states.get((occurrence_id, party))
            return state.model_copy() if state else None

    def upsert_participant_state(self, state: ParticipantOccurrenceState) -> None:
        with self._lock:
            self._states[(state.occurrence_id, state.party)] = state.model_copy()

    def upsert_participant_state_unless_overridden(
        self, state: ParticipantOccurrenceState
    ) -> bool:
        key = (state.occurrence_id, state.party)
        with self._lock:
            existing = self._states.get(key)
            if existing is not None and existing.overridden:
                return False
            self._states[key] = state.model_copy()
            return True

    def delete_participant_state(self, occurrence_id: str, party: PartyRef) -> None:
        with self._lock:
            self._states.pop((occurrence_id, party), None)

    def list_participant_states(
        self,
        routine_id: str | None = None,
        occurrence_id: str | None = None,
        party: PartyRef | None = None,
    ) -> list[ParticipantOccurrenceState]:
        with self._lock:
            return [
                s.model_copy()
                for s in self._states.values()
                if (routine_id is None or s.routine_id == routine_id)
                and (occurrence_id is None or s.occurrence_id == occurrence_id)
                and (party is None or s.party == party)
            ]

    # ------------------------------------------------------------------
    # Reminder receipts
    # ------------------------------------------------------------------

    def write_receipt_if_absent(self, receipt: ReminderReceipt) -> ReceiptWrite:
        with self._lock:
            if receipt.key in self._receipts:
                return ReceiptWrite.ALREADY_EXISTS
            self._receipts[receipt.key] = receipt.model_copy()
            return ReceiptWrite.WRITTEN

    def has_receipt(self, key: ReceiptKey) -> bool:
        with self._lock:
            return key in self._receipts

    def list_receipts(self, occurrence_id: str | None = None) -> list[ReminderReceipt]:
        with self._lock:
            return [
                r.model_copy()
                for r in self._receipts.values()
                if occurrence_id is None or r.occurrence_id == occurrence_id
            ]

    # ------------------------------------------------------------------
    # Task completions
    # ------------------------------------------------------------------

    def get_task_completion(
        self, occurrence_id: str, task_id: str
    ) -> TaskCompletion | None:
        with self._lock:
            completion = self._task_completions.get((occurrence_id, task_id))
            return completion.model_copy() if completion else None

    def upsert_task_completion(self, completion: TaskCompletion) -> None:
        with self._lock:
            key = (completion.occurrence_id, completion.task_id)
            self._task_completions[key] = completion.model_copy()

    # ------------------------------------------------------------------
    # Timeline
    # ------------------------------------------------------------------

    def add_timeline_entry(self, entry: TimelineEntry) -> None:
        with self._lock:
            self._timeline.append(entry.model_copy())

    def list_timeline(self, routine_id: str) -> list[TimelineEntry]:
        with self._lock:
            entries = [e.model_copy() for e in self._timeline if e.routine_id == routine_id]
        return sorted(entries, key=lambda e: e.timestamp)
