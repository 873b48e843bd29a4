"""Service for materializing occurrence records idempotently and advancing
their status over time.

Occurrence ids are derived from ``(routine_id, UTC start)``, so re-running an
expansion finds the records it already created instead of adding new ones.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone

from routines.config import settings
from routines.domain.bus import EventBus
from routines.domain.errors import (
    ConflictError,
    InvariantViolation,
    NotFoundError,
    TransientError,
)
from routines.domain.events import OccurrenceCancelled, OccurrencesMaterialized
from routines.domain.models import (
    Occurrence,
    OccurrenceStatus,
    Routine,
    RoutineStatus,
    Window,
)
from routines.ports.store_port import DurableStore, UpsertResult
from routines.services.recurrence import expand_schedule
from routines.services.retry import RetryTracker

logger = logging.getLogger(__name__)

_OCCURRENCE_NAMESPACE = uuid.UUID("6f1c2f0e-8a3b-5d7e-9c41-2b0d5e7a9f13")


def occurrence_id_for(routine_id: str, start: datetime) -> str:
    """Deterministic occurrence id for a routine's start instant."""
    instant = start.astimezone(timezone.utc).isoformat()
    return str(uuid.uuid5(_OCCURRENCE_NAMESPACE, f"{routine_id}|{instant}"))


class OccurrenceStore:
    """Owns every write to occurrence records."""

    def __init__(
        self,
        store: DurableStore,
        bus: EventBus,
        horizon: timedelta | None = None,
        max_retries: int | None = None,
    ) -> None:
        self.store = store
        self.bus = bus
        self.horizon = horizon or timedelta(days=settings.HORIZON_DAYS)
        self.retries = RetryTracker(
            "materializer", max_retries or settings.MAX_MATERIALIZE_RETRIES, bus
        )

    def horizon_window(self, routine: Routine, now: datetime) -> Window:
        """Rolling window: anything still running at *now* up to the horizon."""
        return Window(start=now - routine.schedule.duration, end=now + self.horizon)

    # ------------------------------------------------------------------
    # Materialization
    # ------------------------------------------------------------------

    def ensure_materialized(self, routine_id: str, window: Window) -> list[Occurrence]:
        """Create any missing occurrence in *window*; return all records in it.

        Existing records are confirmed, never overwritten. Routines that are
        not Active get no new records.
        """
        routine = self.store.load_schedule(routine_id)
        if routine.status == RoutineStatus.ACTIVE:
            self._materialize(routine, window)
        return self.store.load_occurrences_in_window(routine_id, window)

    def extend_horizon(self, routine_id: str, now: datetime) -> list[Occurrence] | None:
        """Periodic horizon extension; transient store failures are retried
        on the next call and escalated past the configured bound.

        Future Scheduled records the current schedule no longer produces are
        cancelled here too, so a reconciliation cut short after an edit is
        finished by the next extension.
        """
        try:
            routine = self.store.load_schedule(routine_id)
            if routine.status == RoutineStatus.ACTIVE:
                self._reconcile_future(routine, now)
            occurrences = self.ensure_materialized(
                routine_id, self.horizon_window(routine, now)
            )
        except TransientError as exc:
            self.retries.record_failure(f"horizon:{routine_id}", exc, routine_id=routine_id)
            return None
        self.retries.record_success(f"horizon:{routine_id}")
        return occurrences

    def get_or_materialize(self, routine_id: str, start: datetime) -> Occurrence:
        """Occurrence at *start*, materialized on demand past the horizon."""
        occurrence = self.store.get_occurrence(occurrence_id_for(routine_id, start))
        if occurrence is not None:
            return occurrence

        routine = self.store.load_schedule(routine_id)
        instant = Window(start=start, end=start + timedelta(microseconds=1))
        if routine.status != RoutineStatus.ACTIVE or not list(
            expand_schedule(routine.schedule, instant)
        ):
            raise NotFoundError(
                f"Routine {routine_id} has no occurrence starting at {start.isoformat()}"
            )
        self._materialize(routine, instant)
        return self.get(occurrence_id_for(routine_id, start))

    def _materialize(self, routine: Routine, window: Window) -> list[str]:
        created: list[str] = []
        for slot in expand_schedule(routine.schedule, window):
            occurrence = Occurrence(
                id=occurrence_id_for(routine.id, slot.start),
                routine_id=routine.id,
                start=slot.start,
                end=slot.end,
            )
            if self.store.upsert_occurrence_if_absent(occurrence) == UpsertResult.CREATED:
                created.append(occurrence.id)
            else:
                self._check_identity(occurrence)

        if created:
            logger.info(
                "Materialized %d occurrence(s) for routine %s", len(created), routine.id
            )
            self.bus.publish(
                OccurrencesMaterialized(routine_id=routine.id, occurrence_ids=created)
            )
        return created

    def _check_identity(self, expected: Occurrence) -> None:
        existing = self.store.get_occurrence(expected.id)
        if existing is None:
            raise InvariantViolation(f"Occurrence {expected.id} vanished after upsert")
        if existing.routine_id != expected.routine_id or existing.start != expected.start:
            raise InvariantViolation(
                f"Occurrence id {expected.id} maps to routine {existing.routine_id} "
                f"at {existing.start.isoformat()}, expected routine "
                f"{expected.routine_id} at {expected.start.isoformat()}"
            )

    # ------------------------------------------------------------------
    # Schedule edits and cancellation
    # ------------------------------------------------------------------

    def reconcile_after_edit(self, routine_id: str, now: datetime) -> list[str]:
        """Re-derive future occurrences after a schedule edit.

        Future Scheduled records the new schedule no longer produces are
        cancelled; kept ones pick up a changed duration. Past, in-progress,
        completed and cancelled records are left alone. Returns the ids of
        the cancelled occurrences.
        """
        routine = self.store.load_schedule(routine_id)
        cancelled = self._reconcile_future(routine, now)
        if routine.status == RoutineStatus.ACTIVE:
            self._materialize(routine, Window(start=now, end=now + self.horizon))
        return cancelled

    def _reconcile_future(self, routine: Routine, now: datetime) -> list[str]:
        future = [
            o
            for o in self.store.list_occurrences(routine.id)
            if o.status == OccurrenceStatus.SCHEDULED and o.start > now
        ]
        if not future:
            return []
        window_end = max(
            [now + self.horizon] + [o.start + timedelta(microseconds=1) for o in future]
        )
        slots = {
            slot.start: slot
            for slot in expand_schedule(routine.schedule, Window(start=now, end=window_end))
        }

        cancelled: list[str] = []
        for occurrence in future:
            slot = slots.get(occurrence.start)
            if slot is None:
                self._cancel(occurrence, reason="schedule_edited")
                cancelled.append(occurrence.id)
            elif slot.end != occurrence.end:
                occurrence.end = slot.end
                self.store.save_occurrence(occurrence)

        if cancelled:
            logger.info(
                "Cancelled %d occurrence(s) of routine %s the schedule no longer produces",
                len(cancelled), routine.id,
            )
        return cancelled

    def cancel_future(self, routine_id: str, now: datetime, reason: str) -> list[str]:
        """Cancel every Scheduled occurrence that has not started yet."""
        cancelled: list[str] = []
        for occurrence in self.store.list_occurrences(routine_id):
            if occurrence.status == OccurrenceStatus.SCHEDULED and occurrence.start > now:
                self._cancel(occurrence, reason=reason)
                cancelled.append(occurrence.id)
        return cancelled

    def cancel_occurrence(self, occurrence_id: str, reason: str = "manual") -> Occurrence:
        occurrence = self.get(occurrence_id)
        if occurrence.status == OccurrenceStatus.CANCELLED:
            return occurrence
        if occurrence.status != OccurrenceStatus.SCHEDULED:
            raise ConflictError(
                f"Occurrence {occurrence_id} is {occurrence.status} and cannot be cancelled"
            )
        return self._cancel(occurrence, reason=reason)

    def _cancel(self, occurrence: Occurrence, reason: str) -> Occurrence:
        occurrence.status = OccurrenceStatus.CANCELLED
        self.store.save_occurrence(occurrence)
        self.bus.publish(
            OccurrenceCancelled(
                routine_id=occurrence.routine_id,
                occurrence_id=occurrence.id,
                reason=reason,
            )
        )
        return occurrence

    # ------------------------------------------------------------------
    # Time-driven status and reads
    # ------------------------------------------------------------------

    def advance_statuses(self, routine_id: str, now: datetime) -> list[Occurrence]:
        """Move Scheduled/InProgress records forward as *now* passes them."""
        changed: list[Occurrence] = []
        for occurrence in self.store.list_occurrences(routine_id):
            if occurrence.status not in (
                OccurrenceStatus.SCHEDULED,
                OccurrenceStatus.IN_PROGRESS,
            ):
                continue
            if occurrence.end <= now:
                new_status = OccurrenceStatus.COMPLETED
            elif occurrence.start <= now:
                new_status = OccurrenceStatus.IN_PROGRESS
            else:
                continue
            if new_status != occurrence.status:
                occurrence.status = new_status
                self.store.save_occurrence(occurrence)
                changed.append(occurrence)
        return changed

    def get(self, occurrence_id: str) -> Occurrence:
        occurrence = self.store.get_occurrence(occurrence_id)
        if occurrence is None:
            raise NotFoundError(f"Occurrence {occurrence_id} not found")
        return occurrence

    def list_occurrences(self, routine_id: str, window: Window) -> list[Occurrence]:
        return self.store.load_occurrences_in_window(routine_id, window)
