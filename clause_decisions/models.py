"""Data classes and constants for clause decisions and projections."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from .errors import ValidationError

# ---------------------------------------------------------------------------
# Action types
# ---------------------------------------------------------------------------
ACCEPT_DEVIATION = "ACCEPT_DEVIATION"
APPLY_FALLBACK = "APPLY_FALLBACK"
EDIT_MANUAL = "EDIT_MANUAL"
ESCALATE = "ESCALATE"
ADD_NOTE = "ADD_NOTE"
UNDO = "UNDO"
REVERT = "REVERT"

ACTION_TYPES = (ACCEPT_DEVIATION, APPLY_FALLBACK, EDIT_MANUAL, ESCALATE, ADD_NOTE, UNDO, REVERT)
TEXT_ACTIONS = (APPLY_FALLBACK, EDIT_MANUAL)
RESOLVING_ACTIONS = (ACCEPT_DEVIATION, APPLY_FALLBACK, EDIT_MANUAL)
FINDING_REQUIRED_ACTIONS = RESOLVING_ACTIONS
LOCK_EXEMPT_ACTIONS = (ADD_NOTE, UNDO, REVERT)
META_ACTIONS = (UNDO, REVERT)

ESCALATION_REASONS = ("Exceeds tolerance", "Commercial impact", "Regulatory", "Other")
FALLBACK_SOURCES = ("fallback", "preferred")

# ---------------------------------------------------------------------------
# Finding & clause statuses
# ---------------------------------------------------------------------------
PENDING = "PENDING"
RESOLVED_ACCEPTED = "RESOLVED_ACCEPTED"
RESOLVED_APPLIED_FALLBACK = "RESOLVED_APPLIED_FALLBACK"
RESOLVED_MANUAL_EDIT = "RESOLVED_MANUAL_EDIT"
ESCALATED = "ESCALATED"

PARTIALLY_RESOLVED = "PARTIALLY_RESOLVED"
RESOLVED = "RESOLVED"
NO_ISSUES = "NO_ISSUES"

STATUS_BY_ACTION = {
    ACCEPT_DEVIATION: RESOLVED_ACCEPTED,
    APPLY_FALLBACK: RESOLVED_APPLIED_FALLBACK,
    EDIT_MANUAL: RESOLVED_MANUAL_EDIT,
    ESCALATE: ESCALATED,
}

RISK_LEVELS = ("RED", "YELLOW", "GREEN")


def is_resolved(status: str) -> bool:
    return status.startswith("RESOLVED_")


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value) -> Optional[datetime]:
    """Parse an ISO-8601 string (or pass through a datetime). Naive values are taken as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        ts = value
    else:
        try:
            ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError as e:
            raise ValidationError(f"Invalid timestamp: {value!r}") from e
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


# ---------------------------------------------------------------------------
# Baseline (produced by the analysis pipeline)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Finding:
    id: str
    clause_id: str
    risk_level: str
    excerpt: str = ""
    fallback_text: Optional[str] = None
    matched_rule_title: str = ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "clauseId": self.clause_id,
            "riskLevel": self.risk_level,
            "excerpt": self.excerpt,
            "fallbackText": self.fallback_text,
            "matchedRuleTitle": self.matched_rule_title,
        }


@dataclass
class ClauseBaseline:
    clause_id: str
    contract_id: str
    original_text: str
    findings: list[Finding] = field(default_factory=list)
    updated_at: Optional[datetime] = None

    def finding(self, finding_id: str) -> Optional[Finding]:
        return next((f for f in self.findings if f.id == finding_id), None)

    @classmethod
    def from_dict(cls, contract_id: str, body: dict) -> "ClauseBaseline":
        if not isinstance(body, dict):
            raise ValidationError("Each clause must be an object")
        findings = body.get("findings") or []
        if not isinstance(findings, list) or not all(isinstance(f, dict) for f in findings):
            raise ValidationError("findings must be a list of objects")
        clause_id = body.get("clauseId") or body.get("id") or ""
        return cls(
            clause_id=clause_id,
            contract_id=contract_id,
            original_text=body.get("originalText") or "",
            findings=[
                Finding(
                    id=f.get("id", ""),
                    clause_id=clause_id,
                    risk_level=str(f.get("riskLevel", "")).upper(),
                    excerpt=f.get("excerpt") or "",
                    fallback_text=f.get("fallbackText"),
                    matched_rule_title=f.get("matchedRuleTitle") or "",
                )
                for f in findings
            ],
            updated_at=parse_timestamp(body.get("updatedAt")),
        )

    def to_dict(self) -> dict:
        return {
            "clauseId": self.clause_id,
            "contractId": self.contract_id,
            "originalText": self.original_text,
            "findings": [f.to_dict() for f in self.findings],
            "updatedAt": format_timestamp(self.updated_at),
        }


# ---------------------------------------------------------------------------
# Decision log
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Decision:
    id: str
    seq: int
    clause_id: str
    finding_id: Optional[str]
    actor_id: str
    actor_role: str
    action_type: str
    payload: dict
    created_at: datetime
    clause_updated_at_when_loaded: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "seq": self.seq,
            "clauseId": self.clause_id,
            "findingId": self.finding_id,
            "actorId": self.actor_id,
            "actorRole": self.actor_role,
            "actionType": self.action_type,
            "payload": dict(self.payload),
            "clauseUpdatedAtWhenLoaded": format_timestamp(self.clause_updated_at_when_loaded),
            "createdAt": format_timestamp(self.created_at),
        }


@dataclass
class DecisionCommand:
    clause_id: str
    action_type: str
    actor_id: str
    actor_role: str = "reviewer"
    payload: dict = field(default_factory=dict)
    finding_id: Optional[str] = None
    clause_updated_at_when_loaded: Optional[datetime] = None

    @classmethod
    def from_dict(cls, clause_id: str, body: dict) -> "DecisionCommand":
        return cls(
            clause_id=clause_id,
            action_type=body.get("actionType", ""),
            actor_id=body.get("actorId", ""),
            actor_role=body.get("actorRole", "reviewer"),
            payload=body.get("payload") or {},
            finding_id=body.get("findingId"),
            clause_updated_at_when_loaded=parse_timestamp(body.get("clauseUpdatedAtWhenLoaded")),
        )


# ---------------------------------------------------------------------------
# Projection
# ---------------------------------------------------------------------------

@dataclass
class FindingStatusEntry:
    status: str = PENDING
    replacement_text: Optional[str] = None
    escalated_to: Optional[str] = None
    escalated_to_name: Optional[str] = None
    escalation_reason: Optional[str] = None
    escalation_comment: Optional[str] = None
    note_count: int = 0
    last_action_type: Optional[str] = None
    last_action_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "replacementText": self.replacement_text,
            "escalatedTo": self.escalated_to,
            "escalatedToName": self.escalated_to_name,
            "escalationReason": self.escalation_reason,
            "escalationComment": self.escalation_comment,
            "noteCount": self.note_count,
            "lastActionType": self.last_action_type,
            "lastActionAt": format_timestamp(self.last_action_at),
        }


@dataclass(frozen=True)
class TrackedChange:
    type: str  # "delete" | "insert" | "equal"
    text: str
    finding_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {"type": self.type, "text": self.text, "findingId": self.finding_id}


@dataclass
class Projection:
    clause_id: Optional[str]
    original_text: str
    effective_text: str
    tracked_changes: list[TrackedChange]
    effective_status: str
    finding_statuses: dict[str, FindingStatusEntry]
    resolved_count: int
    total_finding_count: int
    decision_count: int
    escalated_to_user_id: Optional[str] = None
    escalated_to_user_name: Optional[str] = None
    escalation_reason: Optional[str] = None
    has_unresolved_escalation: bool = False
    clause_escalated: bool = False
    clause_escalation: Optional[FindingStatusEntry] = None
    last_decision_at: Optional[datetime] = None
    clause_updated_at: Optional[datetime] = None
    version: int = 0

    def to_dict(self) -> dict:
        return {
            "clauseId": self.clause_id,
            "originalText": self.original_text,
            "effectiveText": self.effective_text,
            "trackedChanges": [c.to_dict() for c in self.tracked_changes],
            "effectiveStatus": self.effective_status,
            "findingStatuses": {fid: e.to_dict() for fid, e in self.finding_statuses.items()},
            "resolvedCount": self.resolved_count,
            "totalFindingCount": self.total_finding_count,
            "decisionCount": self.decision_count,
            "escalatedToUserId": self.escalated_to_user_id,
            "escalatedToUserName": self.escalated_to_user_name,
            "escalationReason": self.escalation_reason,
            "hasUnresolvedEscalation": self.has_unresolved_escalation,
            "clauseEscalated": self.clause_escalated,
            "clauseEscalation": self.clause_escalation.to_dict() if self.clause_escalation else None,
            "lastDecisionAt": format_timestamp(self.last_decision_at),
            "clauseUpdatedAt": format_timestamp(self.clause_updated_at),
            "version": self.version,
        }


# ---------------------------------------------------------------------------
# Command results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ConflictWarning:
    message: str
    last_updated_at: datetime
    conflicting_actor_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "message": self.message,
            "lastUpdatedAt": format_timestamp(self.last_updated_at),
            "conflictingActorId": self.conflicting_actor_id,
        }


@dataclass
class SubmitResult:
    decision: Decision
    projection: Projection
    conflict_warning: Optional[ConflictWarning] = None

    def to_dict(self) -> dict:
        return {
            "decision": self.decision.to_dict(),
            "projection": self.projection.to_dict(),
            "conflictWarning": self.conflict_warning.to_dict() if self.conflict_warning else None,
        }


@dataclass(frozen=True)
class TrackChangeData:
    decision_id: str
    clause_id: str
    finding_id: Optional[str]
    action_type: str
    original_text: str
    replacement_text: str
    author: str
    timestamp: datetime

    def to_dict(self) -> dict:
        return {
            "decisionId": self.decision_id,
            "clauseId": self.clause_id,
            "findingId": self.finding_id,
            "actionType": self.action_type,
            "originalText": self.original_text,
            "replacementText": self.replacement_text,
            "author": self.author,
            "timestamp": format_timestamp(self.timestamp),
        }
