"""Optimistic-concurrency conflict detection. Warns, never blocks."""

import logging
from datetime import datetime
from typing import Optional

from .config import CONFLICT_MESSAGE
from .database import DecisionStore
from .models import ConflictWarning

logger = logging.getLogger(__name__)


class ConflictDetector:
    def __init__(self, store: DecisionStore):
        self.store = store

    def detect(self, clause_id: str, clause_updated_at_when_loaded: Optional[datetime]) -> Optional[ConflictWarning]:
        """Warn when the caller's view of the clause predates its last decision.

        No token means the caller did not ask for a check.
        """
        if clause_updated_at_when_loaded is None:
            return None
        last_modified, actor_id = self.store.last_modified(clause_id)
        if last_modified is None or clause_updated_at_when_loaded >= last_modified:
            return None
        logger.info(
            "Stale view on clause %s: loaded=%s last_modified=%s by=%s",
            clause_id, clause_updated_at_when_loaded.isoformat(), last_modified.isoformat(), actor_id,
        )
        return ConflictWarning(
            message=CONFLICT_MESSAGE,
            last_updated_at=last_modified,
            conflicting_actor_id=actor_id,
        )
