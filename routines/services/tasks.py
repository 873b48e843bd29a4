"""Service for per-occurrence tracking of a routine's tasks and actions."""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel

from routines.domain.errors import ConflictError, NotFoundError
from routines.domain.models import (
    DueAnchor,
    Occurrence,
    OccurrenceStatus,
    TaskCompletion,
    TaskOrAction,
    TaskStatus,
)
from routines.ports.store_port import DurableStore
from routines.services.occurrences import OccurrenceStore


class OccurrenceTask(BaseModel):
    task: TaskOrAction
    status: TaskStatus
    due_at: datetime


def due_at(task: TaskOrAction, occurrence: Occurrence) -> datetime:
    anchor = occurrence.start if task.due_anchor == DueAnchor.START else occurrence.end
    return anchor + task.due_offset


class TaskTracker:
    def __init__(self, store: DurableStore, occurrences: OccurrenceStore) -> None:
        self.store = store
        self.occurrences = occurrences

    def tasks_for_occurrence(self, occurrence_id: str) -> list[OccurrenceTask]:
        occurrence = self.occurrences.get(occurrence_id)
        routine = self.store.load_schedule(occurrence.routine_id)
        return [
            OccurrenceTask(
                task=task,
                status=self._status(occurrence, task),
                due_at=due_at(task, occurrence),
            )
            for task in routine.tasks
        ]

    def set_task_status(
        self,
        occurrence_id: str,
        task_id: str,
        status: TaskStatus,
        now: datetime | None = None,
    ) -> TaskCompletion:
        occurrence = self.occurrences.get(occurrence_id)
        routine = self.store.load_schedule(occurrence.routine_id)
        if not any(task.id == task_id for task in routine.tasks):
            raise NotFoundError(f"Task {task_id} is not part of routine {routine.id}")
        if occurrence.status == OccurrenceStatus.CANCELLED:
            raise ConflictError(f"Occurrence {occurrence_id} is cancelled")

        completion = TaskCompletion(
            routine_id=routine.id,
            occurrence_id=occurrence_id,
            task_id=task_id,
            status=status,
            updated_at=now or datetime.now(timezone.utc),
        )
        self.store.upsert_task_completion(completion)
        return completion

    def _status(self, occurrence: Occurrence, task: TaskOrAction) -> TaskStatus:
        completion = self.store.get_task_completion(occurrence.id, task.id)
        if completion is not None and completion.status != TaskStatus.PENDING:
            return completion.status
        # Work on a cancelled occurrence will never happen
        if occurrence.status == OccurrenceStatus.CANCELLED:
            return TaskStatus.SKIPPED
        return TaskStatus.PENDING
