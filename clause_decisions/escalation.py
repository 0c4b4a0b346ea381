"""Escalation lock: derived from the projection, never stored."""

import logging
from typing import Callable, Optional

from .config import ADMIN_ROLE
from .errors import LOCKED_BY_ESCALATION, PermissionDeniedError
from .models import ESCALATED, LOCK_EXEMPT_ACTIONS, Projection

logger = logging.getLogger(__name__)


def lock_holders(projection: Projection, finding_id: Optional[str]) -> set[str]:
    """Assignees allowed to act on a target under escalation. Empty when unlocked.

    A finding is locked by its own escalation and by a clause-level one.
    A clause-level target is locked by any unresolved escalation in the clause.
    """
    if not projection.has_unresolved_escalation:
        return set()

    holders: set[str] = set()
    if projection.clause_escalation is not None:
        holders.add(projection.clause_escalation.escalated_to)
    if finding_id is None:
        holders.update(
            e.escalated_to for e in projection.finding_statuses.values() if e.status == ESCALATED
        )
    else:
        entry = projection.finding_statuses.get(finding_id)
        if entry is not None and entry.status == ESCALATED:
            holders.add(entry.escalated_to)
    holders.discard(None)
    return holders


def is_target_locked(projection: Projection, finding_id: Optional[str], actor_id: str, actor_role: str) -> bool:
    if actor_role == ADMIN_ROLE:
        return False
    holders = lock_holders(projection, finding_id)
    return bool(holders) and actor_id not in holders


class EscalationLockResolver:
    def __init__(self, projection_provider: Callable[[str], Projection]):
        self.projection_provider = projection_provider

    def is_locked(self, clause_id: str, finding_id: Optional[str], actor_id: str, actor_role: str,
                  projection: Optional[Projection] = None) -> bool:
        if projection is None:
            projection = self.projection_provider(clause_id)
        return is_target_locked(projection, finding_id, actor_id, actor_role)

    def check(self, clause_id: str, finding_id: Optional[str], action_type: str, actor_id: str,
              actor_role: str, projection: Optional[Projection] = None) -> None:
        """Raise PermissionDeniedError when the action is gated by an escalation.

        Notes, undo and revert are never gated.
        """
        if action_type in LOCK_EXEMPT_ACTIONS:
            return
        if self.is_locked(clause_id, finding_id, actor_id, actor_role, projection):
            logger.info(
                "Blocked %s on clause=%s finding=%s by actor=%s: locked by escalation",
                action_type, clause_id, finding_id, actor_id,
            )
            raise PermissionDeniedError(
                LOCKED_BY_ESCALATION,
                "This finding is escalated; only the assignee or an admin can act on it.",
            )
