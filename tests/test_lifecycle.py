"""Tests for routine creation, status transitions, edits and the lifecycle tick."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from conftest import BOB, NOW, daily_schedule
from routines.domain.errors import (
    ConflictError,
    NotFoundError,
    ValidationError,
    VersionConflict,
)
from routines.domain.events import RoutineCancelled, ScheduleEdited
from routines.domain.models import (
    Frequency,
    OccurrenceStatus,
    Participant,
    RecurrenceRule,
    ReminderRule,
    RoutineDetailsUpdate,
    RoutineStatus,
    TaskOrAction,
    TimelineEntryType,
    Window,
)
from routines.services.versioning import update_routine


def _bounded(count: int = 3):
    return daily_schedule(recurrence_rule=RecurrenceRule(frequency=Frequency.DAILY, count=count))


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------


def test_create_routine_as_draft(env, make_routine):
    routine = make_routine(activate=False)
    assert routine.status == RoutineStatus.DRAFT
    assert routine.version == 1
    assert routine.next_occurrence_at == datetime(2026, 6, 2, 9, 0, tzinfo=timezone.utc)
    assert [e.type for e in env.store.list_timeline(routine.id)] == [TimelineEntryType.CREATED]


def test_create_rejects_duplicate_participants(make_routine):
    with pytest.raises(ValidationError):
        make_routine(participants=[Participant(party=BOB), Participant(party=BOB)])


def test_create_rejects_invalid_schedule(make_routine):
    with pytest.raises(ValidationError):
        make_routine(schedule=daily_schedule(timezone="Not/AZone"))


def test_get_unknown_routine(env):
    with pytest.raises(NotFoundError):
        env.lifecycle.get("missing")


# ---------------------------------------------------------------------------
# Status transitions
# ---------------------------------------------------------------------------


def test_activation_requires_confirmed_organizer(env, make_routine):
    routine = make_routine(activate=False, participants=[Participant(party=BOB)])
    with pytest.raises(ConflictError):
        env.lifecycle.activate(routine.id, now=NOW)
    assert env.lifecycle.get(routine.id).status == RoutineStatus.DRAFT
    assert env.store.list_occurrences(routine.id) == []


def test_activation_records_timeline(env, make_routine):
    routine = make_routine()
    types = [e.type for e in env.store.list_timeline(routine.id)]
    assert types[0] == TimelineEntryType.CREATED
    assert TimelineEntryType.ACTIVATED in types
    assert TimelineEntryType.OCCURRENCES_MATERIALIZED in types


def test_draft_can_be_cancelled(env, make_routine):
    routine = make_routine(activate=False)
    cancelled = env.lifecycle.change_status(routine.id, RoutineStatus.CANCELLED, now=NOW)
    assert cancelled.status == RoutineStatus.CANCELLED


def test_terminal_routines_are_frozen(env, make_routine):
    routine = make_routine()
    cancelled = env.lifecycle.cancel(routine.id, now=NOW)

    with pytest.raises(ConflictError):
        env.lifecycle.activate(routine.id, now=NOW)
    with pytest.raises(ConflictError):
        env.lifecycle.edit_schedule(routine.id, _bounded(), cancelled.version, now=NOW)
    with pytest.raises(ConflictError):
        env.lifecycle.change_status(routine.id, RoutineStatus.DRAFT, now=NOW)


def test_cancel_cancels_every_future_occurrence(env, make_routine, captured):
    routine = make_routine()
    events = captured(RoutineCancelled)

    env.lifecycle.cancel(routine.id, now=NOW)

    occurrences = env.store.list_occurrences(routine.id)
    assert all(o.status == OccurrenceStatus.CANCELLED for o in occurrences)
    assert len(events) == 1
    assert len(events[0].cancelled_occurrence_ids) == len(occurrences)


def test_bounded_routine_completes_only_after_last_occurrence(env, make_routine):
    routine = make_routine(schedule=_bounded())
    with pytest.raises(ConflictError):
        env.lifecycle.complete(routine.id, now=NOW)

    done = env.lifecycle.complete(
        routine.id, now=datetime(2026, 6, 4, 10, 0, tzinfo=timezone.utc)
    )
    assert done.status == RoutineStatus.COMPLETED


def test_open_ended_routine_needs_manual_completion(env, make_routine):
    routine = make_routine()
    with pytest.raises(ConflictError):
        env.lifecycle.complete(routine.id, now=NOW)

    done = env.lifecycle.change_status(routine.id, RoutineStatus.COMPLETED, now=NOW, manual=True)

    assert done.status == RoutineStatus.COMPLETED
    assert all(
        o.status == OccurrenceStatus.CANCELLED for o in env.store.list_occurrences(routine.id)
    )


# ---------------------------------------------------------------------------
# Edits and versioning
# ---------------------------------------------------------------------------


def test_stale_schedule_edit_conflicts(env, make_routine):
    routine = make_routine()
    env.lifecycle.edit_schedule(routine.id, _bounded(10), routine.version, now=NOW)

    with pytest.raises(VersionConflict) as exc_info:
        env.lifecycle.edit_schedule(routine.id, _bounded(5), routine.version, now=NOW)
    assert exc_info.value.actual == routine.version + 1


def test_invalid_schedule_edit_leaves_routine_untouched(env, make_routine):
    routine = make_routine()
    bad = daily_schedule(duration=timedelta(minutes=-5))
    with pytest.raises(ValidationError):
        env.lifecycle.edit_schedule(routine.id, bad, routine.version, now=NOW)
    assert env.lifecycle.get(routine.id).version == routine.version


def test_schedule_edit_publishes_event(env, make_routine, captured):
    routine = make_routine()
    events = captured(ScheduleEdited)
    edited = env.lifecycle.edit_schedule(routine.id, _bounded(3), routine.version, now=NOW)

    assert edited.version == routine.version + 1
    assert events[0].status == RoutineStatus.ACTIVE
    # count=3 drops every occurrence after 2026-06-04
    assert len(events[0].cancelled_occurrence_ids) == 11


def test_internal_writes_retry_version_races(env, make_routine):
    routine = make_routine(activate=False)
    raced = []

    def mutate(current):
        if not raced:
            raced.append(True)
            # Another writer saves between our load and save
            env.store.save_schedule(env.store.load_schedule(routine.id), routine.version)
        current.purpose = {"en": "sync"}

    saved = update_routine(env.store, routine.id, mutate)
    assert saved.purpose == {"en": "sync"}
    assert saved.version == routine.version + 2


def test_detail_and_rule_edits(env, make_routine):
    routine = make_routine()
    updated = env.lifecycle.update_details(
        routine.id, RoutineDetailsUpdate(title={"en": "Daily sync"})
    )
    assert updated.title == {"en": "Daily sync"}
    assert updated.purpose == routine.purpose

    with pytest.raises(ValidationError):
        env.lifecycle.add_reminder_rule(
            routine.id, ReminderRule(id="day-before", lead_time=timedelta(hours=2))
        )
    env.lifecycle.add_reminder_rule(
        routine.id, ReminderRule(id="hour-before", lead_time=timedelta(hours=1))
    )
    trimmed = env.lifecycle.remove_reminder_rule(routine.id, "day-before")
    assert [r.id for r in trimmed.reminder_rules] == ["hour-before"]
    with pytest.raises(NotFoundError):
        env.lifecycle.remove_reminder_rule(routine.id, "day-before")

    with_task = env.lifecycle.add_task(routine.id, TaskOrAction(title={"en": "Take notes"}))
    assert len(with_task.tasks) == 1


# ---------------------------------------------------------------------------
# Tick and queries
# ---------------------------------------------------------------------------


def test_tick_auto_completes_finished_routine(env, make_routine):
    routine = make_routine(schedule=_bounded(2))
    after = datetime(2026, 6, 3, 10, 0, tzinfo=timezone.utc)

    completed = env.lifecycle.tick(after)

    assert completed == [routine.id]
    assert env.lifecycle.get(routine.id).status == RoutineStatus.COMPLETED
    assert all(
        o.status == OccurrenceStatus.COMPLETED for o in env.store.list_occurrences(routine.id)
    )


def test_tick_refreshes_next_occurrence(env, make_routine):
    routine = make_routine()
    later = datetime(2026, 6, 5, 12, 0, tzinfo=timezone.utc)

    env.lifecycle.tick(later)

    refreshed = env.lifecycle.get(routine.id)
    assert refreshed.next_occurrence_at == datetime(2026, 6, 6, 9, 0, tzinfo=timezone.utc)
    assert env.store.list_occurrences(routine.id)[-1].start < later + timedelta(days=14)


def test_routines_with_next_occurrence_between(env, make_routine):
    soon = make_routine()
    later = make_routine(schedule=daily_schedule(start_datetime=datetime(2026, 7, 1, 9, 0)))
    window = Window(start=NOW, end=NOW + timedelta(days=7))

    found = env.lifecycle.routines_with_next_occurrence_between(window)

    assert [r.id for r in found] == [soon.id]
    assert later.next_occurrence_at > window.end


def test_routines_linked_to_project_and_team(env, make_routine):
    roadmap = make_routine(linked_project_id="roadmap", linked_team_id="design")
    draft = make_routine(activate=False, linked_project_id="roadmap")
    make_routine(linked_team_id="platform")

    by_project = env.lifecycle.routines_linked_to_project("roadmap")
    active_only = env.lifecycle.routines_linked_to_project("roadmap", [RoutineStatus.ACTIVE])
    by_team = env.lifecycle.routines_linked_to_team("design")

    assert {r.id for r in by_project} == {roadmap.id, draft.id}
    assert [r.id for r in active_only] == [roadmap.id]
    assert [r.id for r in by_team] == [roadmap.id]
    assert env.lifecycle.routines_linked_to_team("nobody") == []
