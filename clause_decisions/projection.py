"""Projection engine: fold a clause's decision log into its effective state.

The decision log is the only system of record. A projection is derived on
every read by replaying the log left to right:

- ``active`` holds the decisions whose effect currently applies, in log order.
- UNDO removes its target from ``active`` (a no-op when the target is no
  longer active). UNDO and REVERT never enter ``active`` themselves, so they
  cannot be undone.
- REVERT empties ``active``: text returns to the baseline, every finding to
  PENDING, escalations and acceptances are cleared.
- Finding statuses, escalation and effective text are then recomputed from
  ``active`` alone, so removing a decision behaves as if it never happened.

The fold is pure: the same baseline and decision sequence always produce the
same projection.
"""

import logging
import time
from datetime import datetime
from typing import Iterable, Optional

from .database import validate_payload
from .errors import InternalError, ValidationError
from .models import (
    ADD_NOTE, ESCALATE, ESCALATED, META_ACTIONS, NO_ISSUES, PARTIALLY_RESOLVED, PENDING,
    RESOLVED, RESOLVING_ACTIONS, REVERT, STATUS_BY_ACTION, TEXT_ACTIONS, UNDO,
    Decision, Finding, FindingStatusEntry, Projection, TrackedChange, is_resolved,
)
from .tracked_changes import compose_replacements, diff_text

logger = logging.getLogger(__name__)


def derive_clause_status(resolved_count: int, total_finding_count: int, has_unresolved_escalation: bool) -> str:
    if total_finding_count == 0:
        return NO_ISSUES
    if resolved_count == total_finding_count:
        return RESOLVED
    if has_unresolved_escalation:
        return ESCALATED
    if resolved_count > 0:
        return PARTIALLY_RESOLVED
    return PENDING


def locate_excerpt(text: str, excerpt: str) -> Optional[tuple[int, int]]:
    """Span of the first occurrence of excerpt in text: exact, then case-insensitive."""
    if not excerpt or not text:
        return None
    start = text.find(excerpt)
    if start < 0:
        lowered = text.lower()
        if len(lowered) == len(text):
            start = lowered.find(excerpt.lower())
    if start < 0:
        return None
    return start, start + len(excerpt)


class ProjectionState:
    """Accumulator for the fold. ``apply`` one decision at a time, ``snapshot`` to read."""

    def __init__(self, baseline_text: Optional[str], findings: Iterable[Finding], clause_id: Optional[str] = None,
                 baseline_updated_at: Optional[datetime] = None):
        self.clause_id = clause_id
        self.baseline_updated_at = baseline_updated_at
        self.original_text = baseline_text or ""
        self.findings = list(findings)
        self._findings_by_id = {f.id: f for f in self.findings}
        self.active: list[Decision] = []
        self.decision_count = 0
        self.version = 0
        self.last_decision_at = None

    def copy(self) -> "ProjectionState":
        clone = ProjectionState(self.original_text, self.findings, self.clause_id, self.baseline_updated_at)
        clone.active = list(self.active)
        clone.decision_count = self.decision_count
        clone.version = self.version
        clone.last_decision_at = self.last_decision_at
        return clone

    def _check(self, decision: Decision) -> None:
        try:
            validate_payload(decision.action_type, decision.payload, decision.finding_id)
        except ValidationError as e:
            raise InternalError(f"Decision {decision.id} cannot be folded: {e}") from e
        if decision.finding_id is not None and decision.finding_id not in self._findings_by_id:
            raise InternalError(
                f"Decision {decision.id} targets finding {decision.finding_id}, "
                f"which is not part of clause {self.clause_id}"
            )

    def apply(self, decision: Decision) -> "ProjectionState":
        self._check(decision)
        self.version += 1
        self.last_decision_at = decision.created_at

        if decision.action_type == UNDO:
            target = decision.payload["undoneDecisionId"]
            self.active = [d for d in self.active if d.id != target]
        elif decision.action_type == REVERT:
            self.active = []
        else:
            self.active.append(decision)

        if decision.action_type not in META_ACTIONS:
            self.decision_count += 1
        return self

    # -----------------------------------------------------------------------
    # Derivation
    # -----------------------------------------------------------------------

    def _finding_statuses(self) -> tuple[dict[str, FindingStatusEntry], FindingStatusEntry]:
        statuses = {f.id: FindingStatusEntry() for f in self.findings}
        clause_entry = FindingStatusEntry()

        for d in self.active:
            entry = statuses[d.finding_id] if d.finding_id is not None else clause_entry
            if d.action_type == ADD_NOTE:
                entry.note_count += 1
                continue

            entry.status = STATUS_BY_ACTION[d.action_type]
            entry.last_action_type = d.action_type
            entry.last_action_at = d.created_at
            if d.action_type == ESCALATE:
                entry.escalated_to = d.payload["assigneeId"]
                entry.escalated_to_name = d.payload.get("assigneeName")
                entry.escalation_reason = d.payload["reason"]
                entry.escalation_comment = d.payload["comment"]
                continue

            entry.escalated_to = None
            entry.escalated_to_name = None
            entry.escalation_reason = None
            entry.escalation_comment = None
            if d.action_type in TEXT_ACTIONS:
                entry.replacement_text = d.payload["replacementText"]
            # A clause-level escalation targets the whole clause: it settles
            # once a resolution leaves no finding unresolved.
            if (
                d.action_type in RESOLVING_ACTIONS
                and clause_entry.status == ESCALATED
                and all(is_resolved(e.status) for e in statuses.values())
            ):
                clause_entry.status = PENDING
                clause_entry.escalated_to = None
                clause_entry.escalated_to_name = None
                clause_entry.escalation_reason = None
                clause_entry.escalation_comment = None

        return statuses, clause_entry

    def text_spans(self) -> list[tuple[int, int, Decision]]:
        """(start, end, decision) for every active text replacement that survives.

        One span per finding (its latest active APPLY_FALLBACK/EDIT_MANUAL),
        located by the finding's excerpt, or the whole clause when the excerpt
        cannot be found. Later decisions win overlapping regions.
        """
        latest: dict[str, Decision] = {}
        for d in self.active:
            if d.action_type in TEXT_ACTIONS:
                latest.pop(d.finding_id, None)
                latest[d.finding_id] = d

        spans: list[tuple[int, int, Decision]] = []
        whole = (0, len(self.original_text))
        for fid, d in latest.items():
            start, end = locate_excerpt(self.original_text, self._findings_by_id[fid].excerpt) or whole
            spans = [s for s in spans if s[1] <= start or s[0] >= end]
            spans.append((start, end, d))
        return sorted(spans, key=lambda s: s[0])

    def _text(self) -> tuple[str, list[TrackedChange]]:
        spans = self.text_spans()
        if len(spans) == 1 and spans[0][:2] == (0, len(self.original_text)):
            d = spans[0][2]
            replacement = d.payload["replacementText"]
            return replacement, diff_text(self.original_text, replacement, d.finding_id)
        return compose_replacements(
            self.original_text,
            [(start, end, d.payload["replacementText"], d.finding_id) for start, end, d in spans],
        )

    def snapshot(self) -> Projection:
        statuses, clause_entry = self._finding_statuses()
        effective_text, tracked = self._text()

        total = len(self.findings)
        resolved = sum(1 for e in statuses.values() if is_resolved(e.status))
        clause_escalated = clause_entry.status == ESCALATED
        has_escalation = clause_escalated or any(e.status == ESCALATED for e in statuses.values())

        escalated_to = escalated_to_name = reason = None
        if has_escalation:
            for d in reversed(self.active):
                if d.action_type != ESCALATE:
                    continue
                entry = statuses[d.finding_id] if d.finding_id is not None else clause_entry
                if entry.status == ESCALATED:
                    escalated_to = entry.escalated_to
                    escalated_to_name = entry.escalated_to_name
                    reason = entry.escalation_reason
                    break

        return Projection(
            clause_id=self.clause_id,
            original_text=self.original_text,
            effective_text=effective_text,
            tracked_changes=tracked,
            effective_status=derive_clause_status(resolved, total, has_escalation),
            finding_statuses=statuses,
            resolved_count=resolved,
            total_finding_count=total,
            decision_count=self.decision_count,
            escalated_to_user_id=escalated_to,
            escalated_to_user_name=escalated_to_name,
            escalation_reason=reason,
            has_unresolved_escalation=has_escalation,
            clause_escalated=clause_escalated,
            clause_escalation=clause_entry if clause_escalated else None,
            last_decision_at=self.last_decision_at,
            clause_updated_at=self.last_decision_at or self.baseline_updated_at,
            version=self.version,
        )


def fold(baseline_text: Optional[str], findings: Iterable[Finding], decisions: Iterable[Decision],
         clause_id: Optional[str] = None, baseline_updated_at: Optional[datetime] = None) -> ProjectionState:
    state = ProjectionState(baseline_text, findings, clause_id, baseline_updated_at)
    for d in decisions:
        state.apply(d)
    return state


def project(baseline_text: Optional[str], findings: Iterable[Finding], decisions: Iterable[Decision],
            clause_id: Optional[str] = None, baseline_updated_at: Optional[datetime] = None) -> Projection:
    """Fold an ordered decision sequence into a Projection. Pure and deterministic."""
    t0 = time.perf_counter()
    projection = fold(baseline_text, findings, decisions, clause_id, baseline_updated_at).snapshot()
    logger.debug(
        "Projection computed for clause %s in %.2fms (%d decisions, %d/%d resolved, status=%s)",
        clause_id, (time.perf_counter() - t0) * 1000, projection.version,
        projection.resolved_count, projection.total_finding_count, projection.effective_status,
    )
    return projection
