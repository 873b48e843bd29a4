"""Service for per-participant, per-occurrence invitation state.

Routine-level participant entries carry a default status. Each materialized
occurrence holds a state record per participant; until the participant
answers that occurrence directly (``overridden``), the record follows the
routine default.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from pydantic import BaseModel

from routines.domain.bus import EventBus
from routines.domain.errors import ConflictError, NotFoundError, ValidationError
from routines.domain.events import RsvpRecorded
from routines.domain.models import (
    RESPONSE_STATUSES,
    InvitationStatus,
    Occurrence,
    OccurrenceStatus,
    Participant,
    ParticipantOccurrenceState,
    PartyRef,
    RecipientScope,
    ReminderRule,
    Routine,
    RoutineStatus,
)
from routines.ports.store_port import DurableStore
from routines.services.occurrences import OccurrenceStore
from routines.services.versioning import update_routine

logger = logging.getLogger(__name__)

_TERMINAL = (RoutineStatus.CANCELLED, RoutineStatus.COMPLETED)
_CLOSED_OCCURRENCE = (OccurrenceStatus.CANCELLED, OccurrenceStatus.COMPLETED)
_REMINDABLE_OPTIONAL = (InvitationStatus.ACCEPTED, InvitationStatus.TENTATIVE)
_NOT_REMINDED = (InvitationStatus.DECLINED, InvitationStatus.NOT_INVITED)


class RosterEntry(BaseModel):
    party: PartyRef
    role: str
    optional: bool
    status: InvitationStatus
    overridden: bool


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ParticipantInvitationManager:
    def __init__(
        self, store: DurableStore, occurrences: OccurrenceStore, bus: EventBus
    ) -> None:
        self.store = store
        self.occurrences = occurrences
        self.bus = bus

    # ------------------------------------------------------------------
    # Routine-level participant list
    # ------------------------------------------------------------------

    def add_participant(
        self,
        routine_id: str,
        participant: Participant,
        expected_version: int | None = None,
        now: datetime | None = None,
    ) -> Routine:
        def mutate(routine: Routine) -> None:
            _require_open(routine)
            if routine.find_participant(participant.party) is not None:
                raise ValidationError(
                    f"{participant.party.key} already participates in routine {routine.id}"
                )
            if (
                routine.max_participants is not None
                and len(routine.participants) >= routine.max_participants
            ):
                raise ConflictError(
                    f"Routine {routine.id} is full ({routine.max_participants} participants)"
                )
            routine.participants.append(participant)

        routine = update_routine(self.store, routine_id, mutate, expected_version)
        logger.info("Added %s to routine %s", participant.party.key, routine_id)
        self._propagate_default(routine, participant.party, now or _utcnow())
        return routine

    def remove_participant(
        self,
        routine_id: str,
        party: PartyRef,
        expected_version: int | None = None,
    ) -> Routine:
        """Drop a participant and every state record that is not history.

        Responses recorded on occurrences that are no longer Scheduled stay
        for audit; everything else for that participant is deleted.
        """

        def mutate(routine: Routine) -> None:
            _require_open(routine)
            if routine.find_participant(party) is None:
                raise NotFoundError(f"{party.key} is not a participant of routine {routine.id}")
            routine.participants = [p for p in routine.participants if p.party != party]

        routine = update_routine(self.store, routine_id, mutate, expected_version)
        removed = 0
        for state in self.store.list_participant_states(routine_id=routine_id, party=party):
            occurrence = self.store.get_occurrence(state.occurrence_id)
            historical = (
                occurrence is not None
                and occurrence.status != OccurrenceStatus.SCHEDULED
                and state.invitation_status in RESPONSE_STATUSES
            )
            if not historical:
                self.store.delete_participant_state(state.occurrence_id, party)
                removed += 1
        logger.info(
            "Removed %s from routine %s (%d occurrence state(s) dropped)",
            party.key, routine_id, removed,
        )
        return routine

    def change_default_status(
        self,
        routine_id: str,
        party: PartyRef,
        status: InvitationStatus,
        expected_version: int | None = None,
        now: datetime | None = None,
    ) -> Routine:
        def mutate(routine: Routine) -> None:
            _require_open(routine)
            participant = routine.find_participant(party)
            if participant is None:
                raise NotFoundError(f"{party.key} is not a participant of routine {routine.id}")
            if (
                status == InvitationStatus.NOT_INVITED
                and participant.default_status != InvitationStatus.NOT_INVITED
            ):
                raise ConflictError(f"{party.key} cannot return to not_invited")
            participant.default_status = status

        routine = update_routine(self.store, routine_id, mutate, expected_version)
        logger.info("Default status of %s in routine %s is now %s", party.key, routine_id, status)
        self._propagate_default(routine, party, now or _utcnow())
        return routine

    def _propagate_default(self, routine: Routine, party: PartyRef, now: datetime) -> None:
        """Apply the routine default to every Scheduled, non-overridden state."""
        participant = routine.find_participant(party)
        if participant is None:
            return
        for occurrence in self.store.list_occurrences(routine.id):
            if occurrence.status != OccurrenceStatus.SCHEDULED:
                continue
            state = self.store.get_participant_state(occurrence.id, party)
            if state is not None and (
                state.overridden or state.invitation_status == participant.default_status
            ):
                continue
            # A response recorded since the read above wins over the default
            self.store.upsert_participant_state_unless_overridden(
                ParticipantOccurrenceState(
                    routine_id=routine.id,
                    occurrence_id=occurrence.id,
                    party=party,
                    invitation_status=participant.default_status,
                    overridden=False,
                    last_updated_at=now,
                )
            )

    def seed_states(
        self, routine_id: str, occurrence_ids: list[str], now: datetime | None = None
    ) -> int:
        """Create default state records for freshly materialized occurrences."""
        routine = self.store.load_schedule(routine_id)
        now = now or _utcnow()
        created = 0
        for occurrence_id in occurrence_ids:
            for participant in routine.participants:
                if self.store.get_participant_state(occurrence_id, participant.party):
                    continue
                if self.store.upsert_participant_state_unless_overridden(
                    ParticipantOccurrenceState(
                        routine_id=routine_id,
                        occurrence_id=occurrence_id,
                        party=participant.party,
                        invitation_status=participant.default_status,
                        last_updated_at=now,
                    )
                ):
                    created += 1
        return created

    # ------------------------------------------------------------------
    # RSVP
    # ------------------------------------------------------------------

    def respond(
        self,
        routine_id: str,
        occurrence_id: str,
        party: PartyRef,
        status: InvitationStatus,
        now: datetime | None = None,
    ) -> ParticipantOccurrenceState:
        """Record a participant's answer for one occurrence.

        The resulting state is overridden: later changes to the routine-level
        default no longer touch it.
        """
        if status not in RESPONSE_STATUSES:
            raise ConflictError(f"{status} is not a response")

        routine = self.store.load_schedule(routine_id)
        if routine.find_participant(party) is None:
            raise NotFoundError(f"{party.key} is not a participant of routine {routine_id}")
        occurrence = self.occurrences.get(occurrence_id)
        if occurrence.routine_id != routine_id:
            raise NotFoundError(f"Occurrence {occurrence_id} is not part of routine {routine_id}")
        if occurrence.status in _CLOSED_OCCURRENCE:
            raise ConflictError(f"Occurrence {occurrence_id} is {occurrence.status}")

        current = self.effective_status(routine, occurrence, party)
        if current == InvitationStatus.NOT_INVITED:
            raise ConflictError(f"{party.key} was not invited to occurrence {occurrence_id}")

        state = ParticipantOccurrenceState(
            routine_id=routine_id,
            occurrence_id=occurrence_id,
            party=party,
            invitation_status=status,
            overridden=True,
            last_updated_at=now or _utcnow(),
        )
        self.store.upsert_participant_state(state)
        self.bus.publish(
            RsvpRecorded(
                routine_id=routine_id,
                occurrence_id=occurrence_id,
                party=party,
                status=status,
            )
        )
        return state

    def respond_at(
        self,
        routine_id: str,
        start: datetime,
        party: PartyRef,
        status: InvitationStatus,
        now: datetime | None = None,
    ) -> ParticipantOccurrenceState:
        """RSVP by start instant, materializing the occurrence if needed."""
        occurrence = self.occurrences.get_or_materialize(routine_id, start)
        return self.respond(routine_id, occurrence.id, party, status, now=now)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def effective_status(
        self,
        routine: Routine,
        occurrence: Occurrence,
        party: PartyRef,
        state: ParticipantOccurrenceState | None = None,
    ) -> InvitationStatus:
        """Status a participant holds for an occurrence right now.

        Non-overridden states on Scheduled occurrences follow the current
        routine default; records on started, finished or cancelled
        occurrences are read as stored.
        """
        if state is None:
            state = self.store.get_participant_state(occurrence.id, party)
        participant = routine.find_participant(party)
        if participant is None:
            return state.invitation_status if state else InvitationStatus.NOT_INVITED
        if state is not None and (
            state.overridden or occurrence.status != OccurrenceStatus.SCHEDULED
        ):
            return state.invitation_status
        return participant.default_status

    def roster(self, occurrence_id: str) -> list[RosterEntry]:
        """Every listed participant with their status, optional or not."""
        occurrence = self.occurrences.get(occurrence_id)
        routine = self.store.load_schedule(occurrence.routine_id)
        entries = []
        for participant in routine.participants:
            state = self.store.get_participant_state(occurrence.id, participant.party)
            entries.append(
                RosterEntry(
                    party=participant.party,
                    role=participant.role,
                    optional=participant.optional,
                    status=self.effective_status(routine, occurrence, participant.party, state),
                    overridden=bool(state and state.overridden),
                )
            )
        return entries

    def reminder_recipients(
        self, routine: Routine, occurrence: Occurrence, rule: ReminderRule
    ) -> list[Participant]:
        """Participants a reminder goes to.

        Declined and not-invited participants are skipped; optional ones are
        reminded only after accepting or answering tentative.
        """
        recipients = []
        for participant in routine.participants:
            if not _in_scope(participant, rule):
                continue
            status = self.effective_status(routine, occurrence, participant.party)
            if status in _NOT_REMINDED:
                continue
            if participant.optional and status not in _REMINDABLE_OPTIONAL:
                continue
            recipients.append(participant)
        return recipients

    def has_confirmed_organizer(self, routine: Routine) -> bool:
        """At least one organizer has accepted, or is the creator (auto-accepted)."""
        return any(
            p.is_organizer
            and (p.default_status == InvitationStatus.ACCEPTED or p.party == routine.creator)
            for p in routine.participants
        )

    def routines_for_participant(
        self, party: PartyRef, statuses: list[RoutineStatus] | None = None
    ) -> list[Routine]:
        return [
            r for r in self.store.list_routines(statuses) if r.find_participant(party)
        ]


def _require_open(routine: Routine) -> None:
    if routine.status in _TERMINAL:
        raise ConflictError(f"Routine {routine.id} is {routine.status}")


def _in_scope(participant: Participant, rule: ReminderRule) -> bool:
    if rule.scope == RecipientScope.ORGANIZERS:
        return participant.is_organizer
    if rule.scope == RecipientScope.ROLE:
        return participant.role.strip().lower() == (rule.role or "").strip().lower()
    return True
