"""Optimistic-concurrency helper for writes to the stored routine."""

from __future__ import annotations

import logging
from typing import Callable

from routines.config import settings
from routines.domain.errors import VersionConflict
from routines.domain.models import Routine
from routines.ports.store_port import DurableStore

logger = logging.getLogger(__name__)


def update_routine(
    store: DurableStore,
    routine_id: str,
    mutate: Callable[[Routine], None],
    expected_version: int | None = None,
    attempts: int | None = None,
) -> Routine:
    """Load, mutate and save a routine against its stored version.

    With *expected_version* the caller edited a specific version, so any race
    surfaces as ``VersionConflict`` for the caller to retry. Without it the
    write is internal: reload and re-apply *mutate* up to *attempts* times.
    *mutate* may raise to abort before anything is written.
    """
    attempts = attempts or settings.MAX_VERSION_RETRIES
    attempt = 0
    while True:
        attempt += 1
        routine = store.load_schedule(routine_id)
        loaded_version = routine.version
        if expected_version is not None and loaded_version != expected_version:
            raise VersionConflict(routine_id, expected_version, loaded_version)
        mutate(routine)
        try:
            return store.save_schedule(routine, loaded_version)
        except VersionConflict:
            if expected_version is not None or attempt >= attempts:
                raise
            logger.info(
                "Version race on routine %s, retrying (%d/%d)", routine_id, attempt, attempts
            )
