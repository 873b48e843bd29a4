"""Tests for participant lists, per-occurrence RSVP and reminder recipients."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from conftest import ALICE, BOB, CAROL, NOW
from routines.domain.errors import ConflictError, NotFoundError, ValidationError
from routines.domain.events import RsvpRecorded
from routines.domain.models import (
    InvitationStatus,
    OccurrenceStatus,
    Participant,
    PartyRef,
    RecipientScope,
    ReminderRule,
    RoutineStatus,
)

DAVE = PartyRef.user("dave")
DESIGN_TEAM = PartyRef.team("design")


def _occurrences(env, routine):
    return env.store.list_occurrences(routine.id)


def _roster_status(env, occurrence_id, party):
    for entry in env.invitations.roster(occurrence_id):
        if entry.party == party:
            return entry.status
    return None


# ---------------------------------------------------------------------------
# RSVP
# ---------------------------------------------------------------------------


def test_rsvp_survives_default_change(env, make_routine, captured):
    routine = make_routine()
    recorded = captured(RsvpRecorded)
    first, second = _occurrences(env, routine)[:2]

    state = env.invitations.respond(routine.id, first.id, BOB, InvitationStatus.ACCEPTED, now=NOW)
    assert state.overridden is True
    assert len(recorded) == 1

    env.invitations.change_default_status(routine.id, BOB, InvitationStatus.DECLINED, now=NOW)

    assert _roster_status(env, first.id, BOB) == InvitationStatus.ACCEPTED
    assert _roster_status(env, second.id, BOB) == InvitationStatus.DECLINED
    stored = env.store.get_participant_state(second.id, BOB)
    assert stored.invitation_status == InvitationStatus.DECLINED
    assert stored.overridden is False


def test_rsvp_racing_default_change_is_kept(env, make_routine, monkeypatch):
    routine = make_routine()
    first = _occurrences(env, routine)[0]
    write_default = env.store.upsert_participant_state_unless_overridden
    raced = []

    def rsvp_lands_first(state):
        if not raced and state.occurrence_id == first.id:
            raced.append(state)
            env.invitations.respond(routine.id, first.id, BOB, InvitationStatus.DECLINED)
        return write_default(state)

    monkeypatch.setattr(
        env.store, "upsert_participant_state_unless_overridden", rsvp_lands_first
    )
    env.invitations.change_default_status(routine.id, BOB, InvitationStatus.ACCEPTED, now=NOW)

    assert raced
    stored = env.store.get_participant_state(first.id, BOB)
    assert stored.invitation_status == InvitationStatus.DECLINED
    assert stored.overridden is True


def test_default_write_skips_overridden_state(env, make_routine):
    routine = make_routine()
    first = _occurrences(env, routine)[0]
    answer = env.invitations.respond(routine.id, first.id, BOB, InvitationStatus.TENTATIVE)

    written = env.store.upsert_participant_state_unless_overridden(
        answer.model_copy(
            update={"invitation_status": InvitationStatus.ACCEPTED, "overridden": False}
        )
    )

    assert written is False
    assert env.store.get_participant_state(first.id, BOB).invitation_status == (
        InvitationStatus.TENTATIVE
    )


def test_rsvp_creates_missing_state(env, make_routine):
    routine = make_routine()
    occurrence = _occurrences(env, routine)[0]
    env.store.delete_participant_state(occurrence.id, BOB)

    env.invitations.respond(routine.id, occurrence.id, BOB, InvitationStatus.TENTATIVE)

    state = env.store.get_participant_state(occurrence.id, BOB)
    assert state.invitation_status == InvitationStatus.TENTATIVE
    assert state.overridden is True


def test_rsvp_can_be_changed(env, make_routine):
    routine = make_routine()
    occurrence = _occurrences(env, routine)[0]
    env.invitations.respond(routine.id, occurrence.id, BOB, InvitationStatus.ACCEPTED)
    env.invitations.respond(routine.id, occurrence.id, BOB, InvitationStatus.DECLINED)
    assert _roster_status(env, occurrence.id, BOB) == InvitationStatus.DECLINED


def test_rsvp_by_start_beyond_horizon(env, make_routine):
    routine = make_routine()
    far = datetime(2026, 10, 5, 9, 0, tzinfo=timezone.utc)

    state = env.invitations.respond_at(routine.id, far, BOB, InvitationStatus.ACCEPTED)

    occurrence = env.store.get_occurrence(state.occurrence_id)
    assert occurrence.start == far
    assert _roster_status(env, occurrence.id, BOB) == InvitationStatus.ACCEPTED


def test_non_response_status_rejected(env, make_routine):
    routine = make_routine()
    occurrence = _occurrences(env, routine)[0]
    with pytest.raises(ConflictError):
        env.invitations.respond(routine.id, occurrence.id, BOB, InvitationStatus.INVITED)


def test_not_invited_participant_cannot_respond(env, make_routine):
    routine = make_routine()
    env.invitations.add_participant(
        routine.id, Participant(party=DAVE, default_status=InvitationStatus.NOT_INVITED)
    )
    occurrence = _occurrences(env, routine)[0]
    with pytest.raises(ConflictError):
        env.invitations.respond(routine.id, occurrence.id, DAVE, InvitationStatus.ACCEPTED)


def test_rsvp_on_cancelled_occurrence_rejected(env, make_routine):
    routine = make_routine()
    occurrence = _occurrences(env, routine)[0]
    env.occurrences.cancel_occurrence(occurrence.id)
    with pytest.raises(ConflictError):
        env.invitations.respond(routine.id, occurrence.id, BOB, InvitationStatus.ACCEPTED)


def test_unknown_participant_cannot_respond(env, make_routine):
    routine = make_routine()
    occurrence = _occurrences(env, routine)[0]
    with pytest.raises(NotFoundError):
        env.invitations.respond(routine.id, occurrence.id, DAVE, InvitationStatus.ACCEPTED)


# ---------------------------------------------------------------------------
# Participant list
# ---------------------------------------------------------------------------


def test_added_participant_gets_default_on_scheduled_occurrences(env, make_routine):
    routine = make_routine()
    env.invitations.add_participant(routine.id, Participant(party=DESIGN_TEAM, role="Reviewer"))
    for occurrence in _occurrences(env, routine):
        state = env.store.get_participant_state(occurrence.id, DESIGN_TEAM)
        assert state.invitation_status == InvitationStatus.INVITED


def test_duplicate_participant_rejected(env, make_routine):
    routine = make_routine()
    with pytest.raises(ValidationError):
        env.invitations.add_participant(routine.id, Participant(party=BOB))


def test_max_participants_enforced(env, make_routine):
    routine = make_routine(max_participants=3)
    with pytest.raises(ConflictError):
        env.invitations.add_participant(routine.id, Participant(party=DAVE))


def test_cannot_return_to_not_invited(env, make_routine):
    routine = make_routine()
    with pytest.raises(ConflictError):
        env.invitations.change_default_status(routine.id, BOB, InvitationStatus.NOT_INVITED)


def test_participant_changes_rejected_on_terminal_routine(env, make_routine):
    routine = make_routine()
    env.lifecycle.cancel(routine.id, now=NOW)
    with pytest.raises(ConflictError):
        env.invitations.add_participant(routine.id, Participant(party=DAVE))


def test_removal_keeps_history_only(env, make_routine):
    routine = make_routine()
    first, second = _occurrences(env, routine)[:2]
    env.invitations.respond(routine.id, first.id, BOB, InvitationStatus.ACCEPTED)
    env.invitations.respond(routine.id, second.id, BOB, InvitationStatus.ACCEPTED)
    env.occurrences.advance_statuses(routine.id, first.end)
    assert env.store.get_occurrence(first.id).status == OccurrenceStatus.COMPLETED

    updated = env.invitations.remove_participant(routine.id, BOB)

    assert updated.find_participant(BOB) is None
    remaining = env.store.list_participant_states(routine_id=routine.id, party=BOB)
    assert [s.occurrence_id for s in remaining] == [first.id]
    assert _roster_status(env, second.id, BOB) is None


def test_remove_unknown_participant(env, make_routine):
    routine = make_routine()
    with pytest.raises(NotFoundError):
        env.invitations.remove_participant(routine.id, DAVE)


# ---------------------------------------------------------------------------
# Reminder recipients
# ---------------------------------------------------------------------------


def test_optional_participant_reminded_only_after_accepting(env, make_routine):
    routine = make_routine()
    occurrence = _occurrences(env, routine)[0]
    rule = routine.reminder_rules[0]

    parties = [p.party for p in env.invitations.reminder_recipients(routine, occurrence, rule)]
    assert parties == [ALICE, BOB]
    # Still on the roster
    assert _roster_status(env, occurrence.id, CAROL) == InvitationStatus.INVITED

    env.invitations.respond(routine.id, occurrence.id, CAROL, InvitationStatus.TENTATIVE)
    parties = [p.party for p in env.invitations.reminder_recipients(routine, occurrence, rule)]
    assert parties == [ALICE, BOB, CAROL]


def test_declined_participant_not_reminded(env, make_routine):
    routine = make_routine()
    occurrence = _occurrences(env, routine)[0]
    env.invitations.respond(routine.id, occurrence.id, BOB, InvitationStatus.DECLINED)
    rule = routine.reminder_rules[0]
    parties = [p.party for p in env.invitations.reminder_recipients(routine, occurrence, rule)]
    assert parties == [ALICE]


def test_scoped_reminder_rules(env, make_routine):
    routine = make_routine()
    occurrence = _occurrences(env, routine)[0]

    organizers = ReminderRule(lead_time=timedelta(hours=1), scope=RecipientScope.ORGANIZERS)
    parties = [p.party for p in env.invitations.reminder_recipients(routine, occurrence, organizers)]
    assert parties == [ALICE]

    attendees = ReminderRule(
        lead_time=timedelta(hours=1), scope=RecipientScope.ROLE, role="attendee"
    )
    parties = [p.party for p in env.invitations.reminder_recipients(routine, occurrence, attendees)]
    assert parties == [BOB]


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


def test_organizer_confirmation(env, make_routine):
    routine = make_routine(activate=False)
    assert env.invitations.has_confirmed_organizer(routine)

    unconfirmed = routine.model_copy(
        update={"participants": [Participant(party=BOB, role="Organizer")]}
    )
    assert not env.invitations.has_confirmed_organizer(unconfirmed)

    creator_led = routine.model_copy(
        update={"participants": [Participant(party=ALICE, role="organizer")]}
    )
    assert env.invitations.has_confirmed_organizer(creator_led)


def test_routines_for_participant(env, make_routine):
    active = make_routine()
    draft = make_routine(activate=False)
    found = env.invitations.routines_for_participant(BOB, [RoutineStatus.ACTIVE])
    assert [r.id for r in found] == [active.id]
    assert {r.id for r in env.invitations.routines_for_participant(BOB)} == {active.id, draft.id}
