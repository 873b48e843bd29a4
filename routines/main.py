"""FastAPI composition root for the routine scheduling core."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from routines.adapters.log_notifier import LogNotificationSender
from routines.config import settings
from routines.domain.bus import EventBus
from routines.domain.errors import (
    ConflictError,
    NotFoundError,
    TransientError,
    ValidationError,
)
from routines.domain.handlers import HandlerRegistry
from routines.domain.models import (
    Occurrence,
    Participant,
    PartyKind,
    PartyRef,
    ParticipantOccurrenceState,
    Routine,
    RoutineDraft,
    RsvpRequest,
    ScheduleEditRequest,
    StatusChangeRequest,
    TaskCompletion,
    TaskStatusRequest,
    TimelineEntry,
    Window,
)
from routines.repos.memory import InMemoryStore
from routines.services.invitations import ParticipantInvitationManager, RosterEntry
from routines.services.lifecycle import RoutineLifecycleController
from routines.services.occurrences import OccurrenceStore
from routines.services.reminders import ReminderScheduler, ScanReport
from routines.services.tasks import OccurrenceTask, TaskTracker

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# ── Singletons (created at import time for simplicity) ────────────────
event_bus = EventBus()
store = InMemoryStore()
occurrence_store = OccurrenceStore(store, event_bus)
invitation_manager = ParticipantInvitationManager(store, occurrence_store, event_bus)
lifecycle = RoutineLifecycleController(store, occurrence_store, invitation_manager, event_bus)
reminder_scheduler = ReminderScheduler(
    store, occurrence_store, invitation_manager, LogNotificationSender(), event_bus
)
task_tracker = TaskTracker(store, occurrence_store)
handler_registry = HandlerRegistry(bus=event_bus, store=store, invitations=invitation_manager)


@asynccontextmanager
async def lifespan(_: FastAPI):
    task = None
    if settings.ENABLE_SCHEDULER:
        task = asyncio.create_task(
            reminder_scheduler.run_forever(settings.SCAN_INTERVAL_SECONDS, lifecycle.tick)
        )
    yield
    if task is not None:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task


app = FastAPI(title="Routine Scheduling Service", lifespan=lifespan)


# ── Error mapping ─────────────────────────────────────────────────────


@app.exception_handler(ValidationError)
async def _validation_error(_: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(ConflictError)
async def _conflict_error(_: Request, exc: ConflictError) -> JSONResponse:
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(NotFoundError)
async def _not_found_error(_: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(TransientError)
async def _transient_error(_: Request, exc: TransientError) -> JSONResponse:
    return JSONResponse(status_code=503, content={"detail": str(exc)})


# ── Routes ────────────────────────────────────────────────────────────


@app.post("/routines", response_model=Routine, status_code=201)
def create_routine(draft: RoutineDraft) -> Routine:
    return lifecycle.create_routine(draft)


@app.get("/routines", response_model=list[Routine])
def list_routines(
    project_id: str | None = None, team_id: str | None = None
) -> list[Routine]:
    """Routines linked to a project or team; every routine when neither is given."""
    if project_id is not None:
        found = lifecycle.routines_linked_to_project(project_id)
        if team_id is not None:
            found = [r for r in found if r.linked_team_id == team_id]
        return found
    if team_id is not None:
        return lifecycle.routines_linked_to_team(team_id)
    return store.list_routines()


@app.get("/routines/{routine_id}", response_model=Routine)
def get_routine(routine_id: str) -> Routine:
    return lifecycle.get(routine_id)


@app.post("/routines/{routine_id}/status", response_model=Routine)
def change_status(routine_id: str, body: StatusChangeRequest) -> Routine:
    return lifecycle.change_status(routine_id, body.status, manual=body.manual)


@app.put("/routines/{routine_id}/schedule", response_model=Routine)
def edit_schedule(routine_id: str, body: ScheduleEditRequest) -> Routine:
    return lifecycle.edit_schedule(routine_id, body.schedule, body.expected_version)


@app.post("/routines/{routine_id}/participants", response_model=Routine)
def add_participant(routine_id: str, participant: Participant) -> Routine:
    return invitation_manager.add_participant(routine_id, participant)


@app.delete("/routines/{routine_id}/participants/{kind}/{party_id}", response_model=Routine)
def remove_participant(routine_id: str, kind: PartyKind, party_id: str) -> Routine:
    return invitation_manager.remove_participant(routine_id, PartyRef(kind=kind, id=party_id))


@app.get("/routines/{routine_id}/occurrences", response_model=list[Occurrence])
def list_occurrences(routine_id: str, start: datetime, end: datetime) -> list[Occurrence]:
    """Occurrences starting in ``[start, end)``, materialized on demand."""
    try:
        window = Window(start=start, end=end)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc
    return occurrence_store.ensure_materialized(routine_id, window)


@app.post(
    "/routines/{routine_id}/occurrences/{occurrence_id}/rsvp",
    response_model=ParticipantOccurrenceState,
)
def rsvp(routine_id: str, occurrence_id: str, body: RsvpRequest) -> ParticipantOccurrenceState:
    return invitation_manager.respond(routine_id, occurrence_id, body.party, body.status)


@app.get("/occurrences/{occurrence_id}/roster", response_model=list[RosterEntry])
def roster(occurrence_id: str) -> list[RosterEntry]:
    return invitation_manager.roster(occurrence_id)


@app.get("/occurrences/{occurrence_id}/tasks", response_model=list[OccurrenceTask])
def occurrence_tasks(occurrence_id: str) -> list[OccurrenceTask]:
    return task_tracker.tasks_for_occurrence(occurrence_id)


@app.put("/occurrences/{occurrence_id}/tasks/{task_id}", response_model=TaskCompletion)
def set_task_status(occurrence_id: str, task_id: str, body: TaskStatusRequest) -> TaskCompletion:
    return task_tracker.set_task_status(occurrence_id, task_id, body.status)


@app.get("/routines/{routine_id}/timeline", response_model=list[TimelineEntry])
def timeline(routine_id: str) -> list[TimelineEntry]:
    lifecycle.get(routine_id)
    return store.list_timeline(routine_id)


@app.post("/tick", response_model=ScanReport)
async def tick(now: datetime | None = None) -> ScanReport:
    """Run one lifecycle tick and reminder scan.

    Pass *now* as a query param to control the simulated clock.
    Defaults to ``datetime.now(timezone.utc)`` when omitted.
    """
    current_time = now or datetime.now(timezone.utc)
    lifecycle.tick(current_time)
    return await reminder_scheduler.scan(current_time)
