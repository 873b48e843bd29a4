"""Domain event handlers, wired up at application startup."""

from __future__ import annotations

import logging

from routines.domain.bus import EventBus
from routines.domain.events import (
    OccurrenceCancelled,
    OccurrencesMaterialized,
    ReminderDispatched,
    ReminderDispatchFailed,
    RetriesExhausted,
    RoutineActivated,
    RoutineCancelled,
    RoutineCompleted,
    RoutineCreated,
    RsvpRecorded,
    ScheduleEdited,
)
from routines.domain.models import TimelineEntry, TimelineEntryType
from routines.ports.store_port import DurableStore
from routines.services.invitations import ParticipantInvitationManager

logger = logging.getLogger(__name__)


class HandlerRegistry:
    """Wires domain-event handlers to the bus: the audit timeline plus
    seeding invitation states for new occurrences."""

    def __init__(
        self,
        bus: EventBus,
        store: DurableStore,
        invitations: ParticipantInvitationManager,
    ) -> None:
        self.bus = bus
        self.store = store
        self.invitations = invitations
        self._register()

    def _register(self) -> None:
        self.bus.subscribe(RoutineCreated, self.on_routine_created)
        self.bus.subscribe(RoutineActivated, self.on_routine_activated)
        self.bus.subscribe(RoutineCancelled, self.on_routine_cancelled)
        self.bus.subscribe(RoutineCompleted, self.on_routine_completed)
        self.bus.subscribe(ScheduleEdited, self.on_schedule_edited)
        self.bus.subscribe(OccurrencesMaterialized, self.on_occurrences_materialized)
        self.bus.subscribe(OccurrenceCancelled, self.on_occurrence_cancelled)
        self.bus.subscribe(RsvpRecorded, self.on_rsvp_recorded)
        self.bus.subscribe(ReminderDispatched, self.on_reminder_dispatched)
        self.bus.subscribe(ReminderDispatchFailed, self.on_reminder_failed)
        self.bus.subscribe(RetriesExhausted, self.on_retries_exhausted)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def on_routine_created(self, event: RoutineCreated) -> None:
        self._timeline(event.routine_id, TimelineEntryType.CREATED)

    def on_routine_activated(self, event: RoutineActivated) -> None:
        self._timeline(event.routine_id, TimelineEntryType.ACTIVATED)

    def on_routine_cancelled(self, event: RoutineCancelled) -> None:
        self._timeline(
            event.routine_id,
            TimelineEntryType.CANCELLED,
            payload={"cancelled_occurrence_ids": event.cancelled_occurrence_ids},
        )

    def on_routine_completed(self, event: RoutineCompleted) -> None:
        self._timeline(
            event.routine_id, TimelineEntryType.COMPLETED, payload={"manual": event.manual}
        )

    def on_schedule_edited(self, event: ScheduleEdited) -> None:
        self._timeline(
            event.routine_id,
            TimelineEntryType.SCHEDULE_EDITED,
            payload={
                "version": event.version,
                "cancelled_occurrence_ids": event.cancelled_occurrence_ids,
            },
        )

    def on_occurrences_materialized(self, event: OccurrencesMaterialized) -> None:
        # 1. Every listed participant gets a default state on the new occurrences
        seeded = self.invitations.seed_states(event.routine_id, event.occurrence_ids)

        # 2. Timeline
        self._timeline(
            event.routine_id,
            TimelineEntryType.OCCURRENCES_MATERIALIZED,
            payload={"occurrence_ids": event.occurrence_ids, "states_seeded": seeded},
        )

    def on_occurrence_cancelled(self, event: OccurrenceCancelled) -> None:
        self._timeline(
            event.routine_id,
            TimelineEntryType.OCCURRENCE_CANCELLED,
            occurrence_id=event.occurrence_id,
            payload={"reason": event.reason},
        )

    def on_rsvp_recorded(self, event: RsvpRecorded) -> None:
        self._timeline(
            event.routine_id,
            TimelineEntryType.RSVP_RECORDED,
            occurrence_id=event.occurrence_id,
            payload={"party": event.party.key, "status": event.status},
        )

    def on_reminder_dispatched(self, event: ReminderDispatched) -> None:
        self._timeline(
            event.routine_id,
            TimelineEntryType.REMINDER_SENT,
            occurrence_id=event.occurrence_id,
            payload={"rule_id": event.rule_id, "party": event.party.key},
        )

    def on_reminder_failed(self, event: ReminderDispatchFailed) -> None:
        self._timeline(
            event.routine_id,
            TimelineEntryType.REMINDER_FAILED,
            occurrence_id=event.occurrence_id,
            payload={
                "rule_id": event.rule_id,
                "party": event.party.key,
                "reason": event.reason,
                "attempts": event.attempts,
            },
        )

    def on_retries_exhausted(self, event: RetriesExhausted) -> None:
        logger.error(
            "Escalation from %s: %s failed %d times (%s)",
            event.component, event.key, event.attempts, event.error,
        )
        if event.routine_id is not None:
            self._timeline(
                event.routine_id,
                TimelineEntryType.RETRIES_EXHAUSTED,
                payload={
                    "component": event.component,
                    "key": event.key,
                    "attempts": event.attempts,
                    "error": event.error,
                },
            )

    def _timeline(
        self,
        routine_id: str,
        entry_type: TimelineEntryType,
        occurrence_id: str | None = None,
        payload: dict | None = None,
    ) -> None:
        self.store.add_timeline_entry(
            TimelineEntry(
                routine_id=routine_id,
                occurrence_id=occurrence_id,
                type=entry_type,
                payload=payload or {},
            )
        )
