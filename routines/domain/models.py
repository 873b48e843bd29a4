"""Domain models for the routine scheduling core."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from enum import StrEnum
from typing import NamedTuple

from pydantic import BaseModel, ConfigDict, Field, model_validator


class PartyKind(StrEnum):
    USER = "user"
    TEAM = "team"


class RoutineStatus(StrEnum):
    DRAFT = "draft"
    ACTIVE = "active"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class RoutineVisibility(StrEnum):
    PUBLIC = "public"
    UNLISTED = "unlisted"
    PRIVATE_TO_PARTICIPANTS = "private_to_participants"
    TEAM_ONLY = "team_only"
    PROJECT_MEMBERS_ONLY = "project_members_only"


class ScheduleType(StrEnum):
    ONE_TIME = "one_time"
    RECURRING = "recurring"


class Frequency(StrEnum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class Weekday(StrEnum):
    MO = "MO"
    TU = "TU"
    WE = "WE"
    TH = "TH"
    FR = "FR"
    SA = "SA"
    SU = "SU"


class LocationType(StrEnum):
    PHYSICAL_LOCATION = "physical_location"
    ONLINE_MEETING_LINK = "online_meeting_link"
    OTHER_PLATFORM = "other_platform"


class OccurrenceStatus(StrEnum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class InvitationStatus(StrEnum):
    NOT_INVITED = "not_invited"
    INVITED = "invited"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    TENTATIVE = "tentative"


RESPONSE_STATUSES = frozenset(
    {InvitationStatus.ACCEPTED, InvitationStatus.DECLINED, InvitationStatus.TENTATIVE}
)


class TaskStatus(StrEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    SKIPPED = "skipped"


class DueAnchor(StrEnum):
    START = "start"
    END = "end"


class RecipientScope(StrEnum):
    ALL = "all"
    ORGANIZERS = "organizers"
    ROLE = "role"


class TimelineEntryType(StrEnum):
    CREATED = "created"
    ACTIVATED = "activated"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    SCHEDULE_EDITED = "schedule_edited"
    OCCURRENCES_MATERIALIZED = "occurrences_materialized"
    OCCURRENCE_CANCELLED = "occurrence_cancelled"
    RSVP_RECORDED = "rsvp_recorded"
    REMINDER_SENT = "reminder_sent"
    REMINDER_FAILED = "reminder_failed"
    RETRIES_EXHAUSTED = "retries_exhausted"


ORGANIZER_ROLE = "organizer"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


class PartyRef(BaseModel):
    """A user or a team, referenced by id only."""

    model_config = ConfigDict(frozen=True)

    kind: PartyKind
    id: str

    @property
    def key(self) -> str:
        return f"{self.kind}:{self.id}"

    @classmethod
    def user(cls, user_id: str) -> PartyRef:
        return cls(kind=PartyKind.USER, id=user_id)

    @classmethod
    def team(cls, team_id: str) -> PartyRef:
        return cls(kind=PartyKind.TEAM, id=team_id)


class Window(BaseModel):
    """Half-open time range ``[start, end)`` in absolute time."""

    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime

    @model_validator(mode="after")
    def _aware_and_ordered(self) -> Window:
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise ValueError("window bounds must be timezone-aware")
        if self.end <= self.start:
            raise ValueError("window end must be after its start")
        return self

    def contains(self, instant: datetime) -> bool:
        return self.start <= instant < self.end


class RecurrenceRule(BaseModel):
    frequency: Frequency
    interval: int = 1
    weekdays: list[Weekday] | None = None
    count: int | None = None
    until: datetime | None = None


class Schedule(BaseModel):
    """When a routine happens.

    Naive datetimes are wall-clock time in ``timezone``; aware datetimes are
    converted into it before expansion.
    """

    schedule_type: ScheduleType
    start_datetime: datetime
    end_datetime: datetime | None = None
    recurrence_rule: RecurrenceRule | None = None
    duration: timedelta
    timezone: str


class LocationDetails(BaseModel):
    type: LocationType
    details: dict[str, str] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Routine aggregate
# ---------------------------------------------------------------------------


class Participant(BaseModel):
    party: PartyRef
    role: str = "Attendee"
    optional: bool = False
    default_status: InvitationStatus = InvitationStatus.INVITED

    @property
    def is_organizer(self) -> bool:
        return self.role.strip().lower() == ORGANIZER_ROLE


class TaskOrAction(BaseModel):
    id: str = Field(default_factory=_new_id)
    title: dict[str, str]
    description: dict[str, str] = Field(default_factory=dict)
    assigned_role: str | None = None
    assigned_user_id: str | None = None
    due_anchor: DueAnchor = DueAnchor.START
    due_offset: timedelta = timedelta(0)


class ReminderRule(BaseModel):
    id: str = Field(default_factory=_new_id)
    lead_time: timedelta = Field(ge=timedelta(0))
    scope: RecipientScope = RecipientScope.ALL
    role: str | None = None
    channel: str = "log"
    message_template_key: str | None = None

    @model_validator(mode="after")
    def _role_scope_needs_role(self) -> ReminderRule:
        if self.scope == RecipientScope.ROLE and not self.role:
            raise ValueError("role scope requires a role")
        return self


class Routine(BaseModel):
    id: str = Field(default_factory=_new_id)
    title: dict[str, str]
    descriptive_post_id: str | None = None
    creator: PartyRef
    status: RoutineStatus = RoutineStatus.DRAFT
    visibility: RoutineVisibility = RoutineVisibility.PRIVATE_TO_PARTICIPANTS
    schedule: Schedule
    purpose: dict[str, str] = Field(default_factory=dict)
    agenda_template: dict[str, str] = Field(default_factory=dict)
    location: LocationDetails | None = None
    external_link: str | None = None
    linked_project_id: str | None = None
    linked_team_id: str | None = None
    participants: list[Participant] = Field(default_factory=list)
    max_participants: int | None = None
    rsvp_required: bool = False
    tasks: list[TaskOrAction] = Field(default_factory=list)
    reminder_rules: list[ReminderRule] = Field(default_factory=list)
    version: int = 0
    next_occurrence_at: datetime | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    def find_participant(self, party: PartyRef) -> Participant | None:
        for participant in self.participants:
            if participant.party == party:
                return participant
        return None


# ---------------------------------------------------------------------------
# Derived records
# ---------------------------------------------------------------------------


class OccurrenceSlot(NamedTuple):
    start: datetime
    end: datetime


class Occurrence(BaseModel):
    id: str
    routine_id: str
    start: datetime
    end: datetime
    status: OccurrenceStatus = OccurrenceStatus.SCHEDULED


class ParticipantOccurrenceState(BaseModel):
    routine_id: str
    occurrence_id: str
    party: PartyRef
    invitation_status: InvitationStatus
    overridden: bool = False
    last_updated_at: datetime = Field(default_factory=_utcnow)


class TaskCompletion(BaseModel):
    routine_id: str
    occurrence_id: str
    task_id: str
    status: TaskStatus = TaskStatus.PENDING
    updated_at: datetime = Field(default_factory=_utcnow)


class ReceiptKey(NamedTuple):
    rule_id: str
    occurrence_id: str
    party_key: str


class ReminderReceipt(BaseModel):
    rule_id: str
    occurrence_id: str
    party: PartyRef
    dispatched_at: datetime = Field(default_factory=_utcnow)
    result: str = "ok"

    @property
    def key(self) -> ReceiptKey:
        return ReceiptKey(self.rule_id, self.occurrence_id, self.party.key)


class TimelineEntry(BaseModel):
    id: str = Field(default_factory=_new_id)
    routine_id: str
    occurrence_id: str | None = None
    timestamp: datetime = Field(default_factory=_utcnow)
    type: TimelineEntryType
    payload: dict = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Request DTOs
# ---------------------------------------------------------------------------


class RoutineDraft(BaseModel):
    title: dict[str, str]
    creator: PartyRef
    schedule: Schedule
    descriptive_post_id: str | None = None
    visibility: RoutineVisibility = RoutineVisibility.PRIVATE_TO_PARTICIPANTS
    purpose: dict[str, str] = Field(default_factory=dict)
    agenda_template: dict[str, str] = Field(default_factory=dict)
    location: LocationDetails | None = None
    external_link: str | None = None
    linked_project_id: str | None = None
    linked_team_id: str | None = None
    participants: list[Participant] = Field(default_factory=list)
    max_participants: int | None = Field(default=None, gt=0)
    rsvp_required: bool = False
    tasks: list[TaskOrAction] = Field(default_factory=list)
    reminder_rules: list[ReminderRule] = Field(default_factory=list)


class RoutineDetailsUpdate(BaseModel):
    """Non-schedule fields; ``None`` leaves a field unchanged."""

    title: dict[str, str] | None = None
    descriptive_post_id: str | None = None
    visibility: RoutineVisibility | None = None
    purpose: dict[str, str] | None = None
    agenda_template: dict[str, str] | None = None
    location: LocationDetails | None = None
    external_link: str | None = None
    linked_project_id: str | None = None
    linked_team_id: str | None = None


class StatusChangeRequest(BaseModel):
    status: RoutineStatus
    manual: bool = False


class ScheduleEditRequest(BaseModel):
    schedule: Schedule
    expected_version: int


class RsvpRequest(BaseModel):
    party: PartyRef
    status: InvitationStatus


class TaskStatusRequest(BaseModel):
    status: TaskStatus
