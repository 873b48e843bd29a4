"""Domain events emitted while routines are scheduled and run."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel

from routines.domain.models import InvitationStatus, PartyRef, RoutineStatus


class RoutineCreated(BaseModel):
    routine_id: str


class RoutineActivated(BaseModel):
    """Fired when a Draft routine becomes Active."""

    routine_id: str


class RoutineCancelled(BaseModel):
    """Fired after a routine and its future occurrences are cancelled."""

    routine_id: str
    cancelled_occurrence_ids: list[str]


class RoutineCompleted(BaseModel):
    routine_id: str
    manual: bool = False


class ScheduleEdited(BaseModel):
    """Fired after a schedule edit has been saved and reconciled."""

    routine_id: str
    version: int
    status: RoutineStatus
    cancelled_occurrence_ids: list[str] = []


class OccurrencesMaterialized(BaseModel):
    """Fired when new occurrence records were created (never for existing ones)."""

    routine_id: str
    occurrence_ids: list[str]


class OccurrenceCancelled(BaseModel):
    routine_id: str
    occurrence_id: str
    reason: str


class RsvpRecorded(BaseModel):
    routine_id: str
    occurrence_id: str
    party: PartyRef
    status: InvitationStatus


class ReminderDispatched(BaseModel):
    """Fired once per receipt written."""

    routine_id: str
    occurrence_id: str
    rule_id: str
    party: PartyRef
    dispatched_at: datetime


class ReminderDispatchFailed(BaseModel):
    routine_id: str
    occurrence_id: str
    rule_id: str
    party: PartyRef
    reason: str
    attempts: int


class RetriesExhausted(BaseModel):
    """Escalation: a retryable operation kept failing past its bound."""

    component: str
    key: str
    attempts: int
    error: str
    routine_id: str | None = None
