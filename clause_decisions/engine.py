"""Decision command handler: the only mutation entry point.

submit() runs finalization gate -> validate -> escalation lock -> conflict
check -> append -> refold under a per-clause lock, so concurrent submitters
on one clause see "append, then refold" as a single step. Reads never take
that lock; they use the cached fold or rebuild it from the log.
"""

import copy
import logging
import threading
from typing import Optional

from .cache import ProjectionCache
from .conflicts import ConflictDetector
from .database import DecisionStore, validate_payload
from .errors import FINALIZED, NotFoundError, PermissionDeniedError, ReviewError, ValidationError
from .escalation import EscalationLockResolver
from .models import (
    META_ACTIONS, NO_ISSUES, RESOLVED, REVERT, UNDO,
    ClauseBaseline, Decision, DecisionCommand, Projection, SubmitResult, TrackChangeData,
)
from .projection import ProjectionState, fold

logger = logging.getLogger(__name__)


class DecisionEngine:
    def __init__(self, store: Optional[DecisionStore] = None, cache: Optional[ProjectionCache] = None):
        self.store = store or DecisionStore()
        self.cache = cache if cache is not None else ProjectionCache()
        self.conflicts = ConflictDetector(self.store)
        self.escalation = EscalationLockResolver(self.get_projection)
        self._clause_locks: dict[str, threading.Lock] = {}
        self._clause_locks_guard = threading.Lock()

    def _clause_lock(self, clause_id: str) -> threading.Lock:
        with self._clause_locks_guard:
            lock = self._clause_locks.get(clause_id)
            if lock is None:
                lock = self._clause_locks[clause_id] = threading.Lock()
            return lock

    # -----------------------------------------------------------------------
    # Folding
    # -----------------------------------------------------------------------

    def _fold(self, clause_id: str, baseline: Optional[ClauseBaseline] = None) -> ProjectionState:
        baseline = baseline or self.store.get_baseline(clause_id)
        decisions = self.store.list_by_clause(clause_id)
        return fold(baseline.original_text, baseline.findings, decisions, clause_id, baseline.updated_at)

    def _state(self, clause_id: str) -> tuple[ProjectionState, Projection, bool]:
        entry = self.cache.get(clause_id)
        if entry is not None:
            return entry.state, entry.projection, True
        state = self._fold(clause_id)
        projection = state.snapshot()
        self.cache.set(clause_id, state, projection)
        return state, projection, False

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    def read_projection(self, clause_id: str) -> tuple[Projection, bool]:
        """Projection plus whether it came from the cache.

        Callers get their own copy; the cached one stays untouched.
        """
        _, projection, cached = self._state(clause_id)
        return copy.deepcopy(projection), cached

    def get_projection(self, clause_id: str) -> Projection:
        return self.read_projection(clause_id)[0]

    def list_decision_history(self, clause_id: str) -> list[Decision]:
        self.store.get_baseline(clause_id)
        return self.store.list_by_clause(clause_id)

    def last_undoable_decision(self, clause_id: str, finding_id: Optional[str] = None) -> Optional[Decision]:
        """Most recent decision still in effect, the target of a one-click undo."""
        state, _, _ = self._state(clause_id)
        for d in reversed(state.active):
            if finding_id is None or d.finding_id == finding_id:
                return d
        return None

    def get_track_changes_for_contract(self, contract_id: str) -> list[TrackChangeData]:
        changes: list[TrackChangeData] = []
        for clause_id in self.store.list_contract_clause_ids(contract_id):
            state, _, _ = self._state(clause_id)
            for start, end, d in state.text_spans():
                original = state.original_text[start:end]
                replacement = d.payload["replacementText"]
                if replacement == original:
                    continue
                changes.append(TrackChangeData(
                    decision_id=d.id,
                    clause_id=clause_id,
                    finding_id=d.finding_id,
                    action_type=d.action_type,
                    original_text=original,
                    replacement_text=replacement,
                    author=d.actor_id,
                    timestamp=d.created_at,
                ))
        return changes

    def contract_summary(self, contract_id: str) -> dict:
        contract = self.store.get_contract(contract_id)
        clauses = []
        for clause_id in self.store.list_contract_clause_ids(contract_id):
            p = self.get_projection(clause_id)
            clauses.append({
                "clauseId": clause_id,
                "effectiveStatus": p.effective_status,
                "resolvedCount": p.resolved_count,
                "totalFindingCount": p.total_finding_count,
                "hasUnresolvedEscalation": p.has_unresolved_escalation,
                "version": p.version,
            })
        total = sum(c["totalFindingCount"] for c in clauses)
        resolved = sum(c["resolvedCount"] for c in clauses)
        return {
            "contractId": contract_id,
            "finalized": contract["finalized"],
            "finalizedAt": contract["finalizedAt"],
            "finalizedBy": contract["finalizedBy"],
            "totalFindingCount": total,
            "resolvedCount": resolved,
            "pendingCount": total - resolved,
            "canFinalize": not contract["finalized"]
            and all(c["effectiveStatus"] in (RESOLVED, NO_ISSUES) for c in clauses),
            "clauses": clauses,
        }

    # -----------------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------------

    def _validate(self, command: DecisionCommand, baseline: ClauseBaseline, state: ProjectionState) -> Optional[str]:
        """Validate a command against the clause. Returns the finding id to record."""
        if not command.actor_id:
            raise ValidationError("actorId is required")
        validate_payload(command.action_type, command.payload, command.finding_id)

        finding_id = command.finding_id
        if finding_id is not None and baseline.finding(finding_id) is None:
            raise NotFoundError(f"Finding {finding_id} not found in clause {baseline.clause_id}")

        if command.action_type == UNDO:
            target = self.store.get(command.payload["undoneDecisionId"])
            if target.clause_id != baseline.clause_id:
                raise ValidationError("Cannot undo a decision from a different clause")
            if target.action_type in META_ACTIONS:
                raise ValidationError(f"{target.action_type} decisions cannot be undone")
            if finding_id is not None and target.finding_id != finding_id:
                raise ValidationError("Cannot undo a decision from a different finding")
            if all(d.id != target.id for d in state.active):
                raise ValidationError(f"Decision {target.id} is no longer in effect")
            finding_id = target.finding_id
        return finding_id

    def submit(self, command: DecisionCommand) -> SubmitResult:
        clause_id = command.clause_id
        with self._clause_lock(clause_id):
            baseline = self.store.get_baseline(clause_id)
            if self.store.is_finalized(baseline.contract_id):
                raise PermissionDeniedError(FINALIZED, "Contract is finalized; no further decisions are accepted.")
            state, current, _ = self._state(clause_id)
            finding_id = self._validate(command, baseline, state)

            self.escalation.check(
                clause_id, finding_id, command.action_type, command.actor_id, command.actor_role,
                projection=current,
            )
            warning = self.conflicts.detect(clause_id, command.clause_updated_at_when_loaded)

            decision = self.store.append(
                clause_id=clause_id,
                action_type=command.action_type,
                actor_id=command.actor_id,
                actor_role=command.actor_role,
                payload=command.payload,
                finding_id=finding_id,
                clause_updated_at_when_loaded=command.clause_updated_at_when_loaded,
            )

            try:
                if decision.action_type == REVERT:
                    new_state = self._fold(clause_id, baseline)
                else:
                    new_state = state.copy().apply(decision)
                projection = new_state.snapshot()
            except ReviewError:
                self.cache.invalidate(clause_id)
                raise
            self.cache.set(clause_id, new_state, projection)

        logger.info(
            "Decision %s appended: clause=%s finding=%s action=%s actor=%s version=%d status=%s%s",
            decision.id, clause_id, finding_id, decision.action_type, decision.actor_id,
            projection.version, projection.effective_status, " (stale view)" if warning else "",
        )
        return SubmitResult(decision=decision, projection=copy.deepcopy(projection), conflict_warning=warning)

    def finalize_contract(self, contract_id: str, actor_id: str) -> dict:
        """Set the contract's finalized flag once every clause is resolved.

        Holds every clause lock of the contract so no submit slips in between
        the check and the flag.
        """
        if not actor_id:
            raise ValidationError("actorId is required")
        clause_ids = sorted(self.store.list_contract_clause_ids(contract_id))
        locks = [self._clause_lock(cid) for cid in clause_ids]
        for lock in locks:
            lock.acquire()
        try:
            summary = self.contract_summary(contract_id)
            if summary["finalized"]:
                raise ValidationError("Contract is already finalized")
            if not summary["canFinalize"]:
                raise ValidationError(
                    f"Cannot finalize: {summary['pendingCount']} finding(s) are not resolved yet."
                )
            contract = self.store.mark_finalized(contract_id, actor_id)
        finally:
            for lock in reversed(locks):
                lock.release()
        logger.info("Contract %s finalized by %s (%d findings)", contract_id, actor_id, summary["totalFindingCount"])
        return {**contract, "totalFindingCount": summary["totalFindingCount"]}
