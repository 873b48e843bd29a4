"""Service gating every routine-level mutation: status transitions, schedule
edits and the periodic lifecycle tick.

Writes to one routine are serialized by a per-routine lock in this process
and by the optimistic version on the stored routine across processes.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from datetime import datetime, timedelta, timezone

from routines.domain.bus import EventBus
from routines.domain.errors import ConflictError, NotFoundError, TransientError, ValidationError
from routines.domain.events import (
    RoutineActivated,
    RoutineCancelled,
    RoutineCompleted,
    RoutineCreated,
    ScheduleEdited,
)
from routines.domain.models import (
    ReminderRule,
    Routine,
    RoutineDetailsUpdate,
    RoutineDraft,
    RoutineStatus,
    Schedule,
    TaskOrAction,
    Window,
)
from routines.ports.store_port import DurableStore
from routines.services.invitations import ParticipantInvitationManager
from routines.services.occurrences import OccurrenceStore
from routines.services.recurrence import last_occurrence, next_occurrence, validate_schedule
from routines.services.versioning import update_routine

logger = logging.getLogger(__name__)

_TRANSITIONS: dict[RoutineStatus, set[RoutineStatus]] = {
    RoutineStatus.DRAFT: {RoutineStatus.ACTIVE, RoutineStatus.CANCELLED},
    RoutineStatus.ACTIVE: {RoutineStatus.CANCELLED, RoutineStatus.COMPLETED},
    RoutineStatus.CANCELLED: set(),
    RoutineStatus.COMPLETED: set(),
}

_EDITABLE = (RoutineStatus.DRAFT, RoutineStatus.ACTIVE)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _next_start(schedule: Schedule, now: datetime) -> datetime | None:
    slot = next_occurrence(schedule, now - timedelta(microseconds=1))
    return slot.start if slot else None


def _check_transition(routine: Routine, target: RoutineStatus) -> None:
    if target not in _TRANSITIONS[routine.status]:
        raise ConflictError(
            f"Routine {routine.id} cannot go from {routine.status} to {target}"
        )


def _require_editable(routine: Routine) -> None:
    if routine.status not in _EDITABLE:
        raise ConflictError(f"Routine {routine.id} is {routine.status} and can no longer change")


class RoutineLifecycleController:
    def __init__(
        self,
        store: DurableStore,
        occurrences: OccurrenceStore,
        invitations: ParticipantInvitationManager,
        bus: EventBus,
    ) -> None:
        self.store = store
        self.occurrences = occurrences
        self.invitations = invitations
        self.bus = bus
        self._locks: dict[str, threading.RLock] = defaultdict(threading.RLock)
        self._locks_guard = threading.Lock()

    def _lock_for(self, routine_id: str) -> threading.RLock:
        with self._locks_guard:
            return self._locks[routine_id]

    # ------------------------------------------------------------------
    # Creation and reads
    # ------------------------------------------------------------------

    def create_routine(self, draft: RoutineDraft, now: datetime | None = None) -> Routine:
        """Validate a draft and store it as a Draft routine."""
        now = now or _utcnow()
        validate_schedule(draft.schedule)
        parties = [p.party for p in draft.participants]
        if len(set(parties)) != len(parties):
            raise ValidationError("a participant may only be listed once per routine")
        if draft.max_participants is not None and len(parties) > draft.max_participants:
            raise ValidationError("more participants than max_participants allows")

        routine = Routine.model_validate(
            {
                **dict(draft),
                "status": RoutineStatus.DRAFT,
                "next_occurrence_at": _next_start(draft.schedule, now),
                "created_at": now,
                "updated_at": now,
            }
        )
        stored = self.store.create_routine(routine)
        logger.info("Created routine %s by %s", stored.id, stored.creator.key)
        self.bus.publish(RoutineCreated(routine_id=stored.id))
        return stored

    def get(self, routine_id: str) -> Routine:
        return self.store.load_schedule(routine_id)

    def routines_with_next_occurrence_between(
        self, window: Window, status: RoutineStatus = RoutineStatus.ACTIVE
    ) -> list[Routine]:
        found = [
            r
            for r in self.store.list_routines([status])
            if r.next_occurrence_at is not None and window.contains(r.next_occurrence_at)
        ]
        return sorted(found, key=lambda r: r.next_occurrence_at)

    def routines_linked_to_project(
        self, project_id: str, statuses: list[RoutineStatus] | None = None
    ) -> list[Routine]:
        return [
            r for r in self.store.list_routines(statuses) if r.linked_project_id == project_id
        ]

    def routines_linked_to_team(
        self, team_id: str, statuses: list[RoutineStatus] | None = None
    ) -> list[Routine]:
        return [r for r in self.store.list_routines(statuses) if r.linked_team_id == team_id]

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    def change_status(
        self,
        routine_id: str,
        status: RoutineStatus,
        now: datetime | None = None,
        manual: bool = False,
        expected_version: int | None = None,
    ) -> Routine:
        if status == RoutineStatus.ACTIVE:
            return self.activate(routine_id, now=now, expected_version=expected_version)
        if status == RoutineStatus.CANCELLED:
            return self.cancel(routine_id, now=now, expected_version=expected_version)
        if status == RoutineStatus.COMPLETED:
            return self.complete(
                routine_id, now=now, manual=manual, expected_version=expected_version
            )
        raise ConflictError(f"Routines cannot be moved back to {status}")

    def activate(
        self,
        routine_id: str,
        now: datetime | None = None,
        expected_version: int | None = None,
    ) -> Routine:
        """Draft → Active; needs a confirmed organizer, then materializes the horizon."""
        now = now or _utcnow()

        def mutate(routine: Routine) -> None:
            _check_transition(routine, RoutineStatus.ACTIVE)
            if not self.invitations.has_confirmed_organizer(routine):
                raise ConflictError(
                    f"Routine {routine.id} needs an organizer who has accepted before activation"
                )
            routine.status = RoutineStatus.ACTIVE
            routine.next_occurrence_at = _next_start(routine.schedule, now)

        with self._lock_for(routine_id):
            routine = update_routine(self.store, routine_id, mutate, expected_version)
            self.occurrences.extend_horizon(routine_id, now)
        logger.info("Routine %s activated", routine_id)
        self.bus.publish(RoutineActivated(routine_id=routine_id))
        return routine

    def cancel(
        self,
        routine_id: str,
        now: datetime | None = None,
        expected_version: int | None = None,
    ) -> Routine:
        """Cancel the routine and every occurrence that has not started."""
        now = now or _utcnow()

        def mutate(routine: Routine) -> None:
            _check_transition(routine, RoutineStatus.CANCELLED)
            routine.status = RoutineStatus.CANCELLED
            routine.next_occurrence_at = None

        with self._lock_for(routine_id):
            routine = update_routine(self.store, routine_id, mutate, expected_version)
            cancelled = self.occurrences.cancel_future(
                routine_id, now, reason="routine_cancelled"
            )
        logger.info(
            "Routine %s cancelled with %d future occurrence(s)", routine_id, len(cancelled)
        )
        self.bus.publish(
            RoutineCancelled(routine_id=routine_id, cancelled_occurrence_ids=cancelled)
        )
        return routine

    def complete(
        self,
        routine_id: str,
        now: datetime | None = None,
        manual: bool = False,
        expected_version: int | None = None,
    ) -> Routine:
        """Active → Completed.

        Bounded schedules complete once their last occurrence has ended.
        Open-ended recurring schedules only complete manually, which also
        cancels their remaining future occurrences.
        """
        now = now or _utcnow()
        open_ended = False

        def mutate(routine: Routine) -> None:
            nonlocal open_ended
            _check_transition(routine, RoutineStatus.COMPLETED)
            last = last_occurrence(routine.schedule)
            if last is None:
                if not manual:
                    raise ConflictError(
                        f"Routine {routine.id} is open-ended and must be completed manually"
                    )
                open_ended = True
            elif last.end > now:
                raise ConflictError(
                    f"Routine {routine.id} still has an occurrence ending at {last.end.isoformat()}"
                )
            routine.status = RoutineStatus.COMPLETED
            routine.next_occurrence_at = None

        with self._lock_for(routine_id):
            routine = update_routine(self.store, routine_id, mutate, expected_version)
            if open_ended:
                self.occurrences.cancel_future(routine_id, now, reason="routine_completed")
        logger.info("Routine %s completed%s", routine_id, " manually" if manual else "")
        self.bus.publish(RoutineCompleted(routine_id=routine_id, manual=manual))
        return routine

    # ------------------------------------------------------------------
    # Edits
    # ------------------------------------------------------------------

    def edit_schedule(
        self,
        routine_id: str,
        schedule: Schedule,
        expected_version: int,
        now: datetime | None = None,
    ) -> Routine:
        """Replace the schedule of a Draft or Active routine.

        A stale *expected_version* raises ``VersionConflict``; the caller
        reloads and retries. Active routines have their future occurrences
        reconciled against the new schedule.
        """
        now = now or _utcnow()
        validate_schedule(schedule)

        def mutate(routine: Routine) -> None:
            _require_editable(routine)
            routine.schedule = schedule
            routine.next_occurrence_at = _next_start(schedule, now)

        with self._lock_for(routine_id):
            routine = update_routine(self.store, routine_id, mutate, expected_version)
            cancelled: list[str] = []
            if routine.status == RoutineStatus.ACTIVE:
                try:
                    cancelled = self.occurrences.reconcile_after_edit(routine_id, now)
                except TransientError as exc:
                    # The new version is saved; the next tick finishes reconciling
                    logger.warning(
                        "Reconciling routine %s after edit deferred to next tick: %s",
                        routine_id, exc,
                    )
        logger.info("Schedule of routine %s edited (version %d)", routine_id, routine.version)
        self.bus.publish(
            ScheduleEdited(
                routine_id=routine_id,
                version=routine.version,
                status=routine.status,
                cancelled_occurrence_ids=cancelled,
            )
        )
        return routine

    def update_details(
        self,
        routine_id: str,
        changes: RoutineDetailsUpdate,
        expected_version: int | None = None,
    ) -> Routine:
        def mutate(routine: Routine) -> None:
            _require_editable(routine)
            for name in RoutineDetailsUpdate.model_fields:
                value = getattr(changes, name)
                if value is not None:
                    setattr(routine, name, value)

        return update_routine(self.store, routine_id, mutate, expected_version)

    def add_reminder_rule(
        self, routine_id: str, rule: ReminderRule, expected_version: int | None = None
    ) -> Routine:
        def mutate(routine: Routine) -> None:
            _require_editable(routine)
            if any(r.id == rule.id for r in routine.reminder_rules):
                raise ValidationError(f"Reminder rule {rule.id} already exists")
            routine.reminder_rules.append(rule)

        return update_routine(self.store, routine_id, mutate, expected_version)

    def remove_reminder_rule(
        self, routine_id: str, rule_id: str, expected_version: int | None = None
    ) -> Routine:
        def mutate(routine: Routine) -> None:
            _require_editable(routine)
            remaining = [r for r in routine.reminder_rules if r.id != rule_id]
            if len(remaining) == len(routine.reminder_rules):
                raise NotFoundError(f"Reminder rule {rule_id} not found")
            routine.reminder_rules = remaining

        return update_routine(self.store, routine_id, mutate, expected_version)

    def add_task(
        self, routine_id: str, task: TaskOrAction, expected_version: int | None = None
    ) -> Routine:
        def mutate(routine: Routine) -> None:
            _require_editable(routine)
            routine.tasks.append(task)

        return update_routine(self.store, routine_id, mutate, expected_version)

    # ------------------------------------------------------------------
    # Periodic tick
    # ------------------------------------------------------------------

    def tick(self, now: datetime | None = None) -> list[str]:
        """Advance occurrence statuses, extend horizons and auto-complete
        finished routines. Returns the ids of routines completed by this tick.

        A transient store failure skips that routine until the next tick.
        """
        now = now or _utcnow()
        completed: list[str] = []
        for routine in self.store.list_routines(
            [RoutineStatus.ACTIVE, RoutineStatus.CANCELLED, RoutineStatus.COMPLETED]
        ):
            try:
                with self._lock_for(routine.id):
                    self.occurrences.advance_statuses(routine.id, now)
                if routine.status != RoutineStatus.ACTIVE:
                    continue
                if self._finished(routine, now):
                    self.complete(routine.id, now=now)
                    completed.append(routine.id)
                    continue
                with self._lock_for(routine.id):
                    self.occurrences.extend_horizon(routine.id, now)
                    self._refresh_next_occurrence(routine, now)
            except TransientError as exc:
                logger.warning("Tick skipped routine %s: %s", routine.id, exc)
        return completed

    @staticmethod
    def _finished(routine: Routine, now: datetime) -> bool:
        last = last_occurrence(routine.schedule)
        return last is not None and last.end <= now

    def _refresh_next_occurrence(self, routine: Routine, now: datetime) -> None:
        upcoming = _next_start(routine.schedule, now)
        if upcoming == routine.next_occurrence_at:
            return

        def mutate(current: Routine) -> None:
            current.next_occurrence_at = _next_start(current.schedule, now)

        update_routine(self.store, routine.id, mutate)
