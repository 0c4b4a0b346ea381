"""SQLite persistence: append-only decision log plus clause baselines and contracts."""

import json
import logging
import sqlite3
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

from .config import DB_PATH
from .errors import InternalError, NotFoundError, ValidationError
from .models import (
    ACTION_TYPES, ADD_NOTE, APPLY_FALLBACK, EDIT_MANUAL, ESCALATE, ESCALATION_REASONS,
    FALLBACK_SOURCES, FINDING_REQUIRED_ACTIONS, RISK_LEVELS, UNDO,
    ClauseBaseline, Decision, Finding, parse_timestamp, utcnow,
)

logger = logging.getLogger(__name__)

_CREATE_SQL = """
CREATE TABLE IF NOT EXISTS contracts (
    id TEXT PRIMARY KEY,
    finalized INTEGER NOT NULL DEFAULT 0,
    finalized_at TEXT,
    finalized_by TEXT
);

CREATE TABLE IF NOT EXISTS clauses (
    id TEXT PRIMARY KEY,
    contract_id TEXT NOT NULL,
    original_text TEXT NOT NULL DEFAULT '',
    updated_at TEXT NOT NULL,
    FOREIGN KEY (contract_id) REFERENCES contracts(id)
);

CREATE TABLE IF NOT EXISTS findings (
    id TEXT PRIMARY KEY,
    clause_id TEXT NOT NULL,
    position INTEGER NOT NULL,
    risk_level TEXT NOT NULL,
    excerpt TEXT DEFAULT '',
    fallback_text TEXT,
    matched_rule_title TEXT DEFAULT '',
    FOREIGN KEY (clause_id) REFERENCES clauses(id)
);

CREATE TABLE IF NOT EXISTS decisions (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    clause_id TEXT NOT NULL,
    finding_id TEXT,
    actor_id TEXT NOT NULL,
    actor_role TEXT NOT NULL,
    action_type TEXT NOT NULL,
    payload_json TEXT NOT NULL,
    clause_updated_at_when_loaded TEXT,
    created_at TEXT NOT NULL,
    FOREIGN KEY (clause_id) REFERENCES clauses(id)
);

CREATE INDEX IF NOT EXISTS idx_decisions_clause ON decisions (clause_id, created_at, seq);
CREATE INDEX IF NOT EXISTS idx_clauses_contract ON clauses (contract_id);
"""


def get_db(db_path=None) -> sqlite3.Connection:
    db = sqlite3.connect(str(db_path or DB_PATH), timeout=30)
    db.row_factory = sqlite3.Row
    db.execute("PRAGMA journal_mode=WAL")
    db.execute("PRAGMA foreign_keys=ON")
    db.executescript(_CREATE_SQL)
    return db


def _ts(value: datetime) -> str:
    return value.isoformat(timespec="microseconds")


# ---------------------------------------------------------------------------
# Per-action payload schema
# ---------------------------------------------------------------------------

def _require_text(payload: dict, key: str, action_type: str) -> None:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{action_type} requires a non-empty '{key}' in payload")


def validate_payload(action_type: str, payload, finding_id: Optional[str] = None) -> None:
    """Check the action-specific payload shape. Raises ValidationError."""
    if not action_type:
        raise ValidationError("actionType is required")
    if action_type not in ACTION_TYPES:
        raise ValidationError(f"Invalid actionType. Must be one of: {', '.join(ACTION_TYPES)}")
    if not isinstance(payload, dict):
        raise ValidationError("payload must be an object")
    if action_type in FINDING_REQUIRED_ACTIONS and not finding_id:
        raise ValidationError(f"{action_type} requires a findingId")

    if action_type in (APPLY_FALLBACK, EDIT_MANUAL):
        _require_text(payload, "replacementText", action_type)
    if action_type == APPLY_FALLBACK:
        _require_text(payload, "playbookRuleId", action_type)
        if payload.get("source") not in FALLBACK_SOURCES:
            raise ValidationError(f"APPLY_FALLBACK source must be one of: {', '.join(FALLBACK_SOURCES)}")
    if action_type == ESCALATE:
        for key in ("reason", "comment", "assigneeId"):
            _require_text(payload, key, action_type)
        if payload["reason"] not in ESCALATION_REASONS:
            raise ValidationError(f"ESCALATE reason must be one of: {', '.join(ESCALATION_REASONS)}")
    elif action_type == ADD_NOTE:
        _require_text(payload, "noteText", action_type)
    elif action_type == UNDO:
        _require_text(payload, "undoneDecisionId", action_type)


# ---------------------------------------------------------------------------
# Row conversion
# ---------------------------------------------------------------------------

def _row_to_decision(row: sqlite3.Row) -> Decision:
    try:
        payload = json.loads(row["payload_json"])
    except json.JSONDecodeError as e:
        raise InternalError(f"Decision {row['id']} has a corrupt payload: {e}") from e
    return Decision(
        id=row["id"],
        seq=row["seq"],
        clause_id=row["clause_id"],
        finding_id=row["finding_id"],
        actor_id=row["actor_id"],
        actor_role=row["actor_role"],
        action_type=row["action_type"],
        payload=payload,
        created_at=parse_timestamp(row["created_at"]),
        clause_updated_at_when_loaded=parse_timestamp(row["clause_updated_at_when_loaded"]),
    )


def _row_to_finding(row: sqlite3.Row) -> Finding:
    return Finding(
        id=row["id"],
        clause_id=row["clause_id"],
        risk_level=row["risk_level"],
        excerpt=row["excerpt"] or "",
        fallback_text=row["fallback_text"],
        matched_rule_title=row["matched_rule_title"] or "",
    )


class DecisionStore:
    """Append-only decision log. There is no update or delete."""

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = db_path or DB_PATH

    def _connect(self) -> sqlite3.Connection:
        return get_db(self.db_path)

    # -----------------------------------------------------------------------
    # Baselines
    # -----------------------------------------------------------------------

    @staticmethod
    def _check_baseline(baseline: ClauseBaseline) -> None:
        if not baseline.clause_id or not baseline.contract_id:
            raise ValidationError("clauseId and contractId are required")
        for f in baseline.findings:
            if not f.id:
                raise ValidationError("Every finding needs an id")
            if f.risk_level not in RISK_LEVELS:
                raise ValidationError(f"Finding {f.id}: riskLevel must be one of {', '.join(RISK_LEVELS)}")
            if f.clause_id != baseline.clause_id:
                raise ValidationError(f"Finding {f.id} does not belong to clause {baseline.clause_id}")

    def save_baseline(self, baseline: ClauseBaseline) -> ClauseBaseline:
        return self.save_baselines([baseline])[0]

    def save_baselines(self, baselines: list[ClauseBaseline]) -> list[ClauseBaseline]:
        """Store a batch of clause baselines in one transaction. All or nothing."""
        for baseline in baselines:
            self._check_baseline(baseline)
        clause_ids = [b.clause_id for b in baselines]
        if len(set(clause_ids)) != len(clause_ids):
            raise ValidationError("Duplicate clauseId in batch")

        now = utcnow()
        stamped = [(b, b.updated_at or now) for b in baselines]
        db = self._connect()
        try:
            for baseline, updated_at in stamped:
                if db.execute("SELECT 1 FROM clauses WHERE id = ?", (baseline.clause_id,)).fetchone():
                    raise ValidationError(f"Clause {baseline.clause_id} already has a baseline")
                db.execute("INSERT OR IGNORE INTO contracts (id) VALUES (?)", (baseline.contract_id,))
                db.execute(
                    "INSERT INTO clauses (id, contract_id, original_text, updated_at) VALUES (?, ?, ?, ?)",
                    (baseline.clause_id, baseline.contract_id, baseline.original_text or "", _ts(updated_at)),
                )
                for position, f in enumerate(baseline.findings):
                    db.execute(
                        """INSERT INTO findings (id, clause_id, position, risk_level, excerpt,
                           fallback_text, matched_rule_title) VALUES (?, ?, ?, ?, ?, ?, ?)""",
                        (f.id, f.clause_id, position, f.risk_level, f.excerpt,
                         f.fallback_text, f.matched_rule_title),
                    )
            db.commit()
        except ValidationError:
            db.rollback()
            raise
        except sqlite3.IntegrityError as e:
            db.rollback()
            raise ValidationError(f"Baselines rejected: {e}") from e
        finally:
            db.close()

        saved = []
        for baseline, updated_at in stamped:
            logger.info("Baseline stored: clause=%s contract=%s findings=%d",
                        baseline.clause_id, baseline.contract_id, len(baseline.findings))
            saved.append(ClauseBaseline(
                clause_id=baseline.clause_id,
                contract_id=baseline.contract_id,
                original_text=baseline.original_text or "",
                findings=list(baseline.findings),
                updated_at=parse_timestamp(_ts(updated_at)),
            ))
        return saved

    def get_baseline(self, clause_id: str) -> ClauseBaseline:
        db = self._connect()
        try:
            row = db.execute("SELECT * FROM clauses WHERE id = ?", (clause_id,)).fetchone()
            if not row:
                raise NotFoundError(f"Clause {clause_id} not found")
            findings = db.execute(
                "SELECT * FROM findings WHERE clause_id = ? ORDER BY position", (clause_id,)
            ).fetchall()
        finally:
            db.close()
        return ClauseBaseline(
            clause_id=row["id"],
            contract_id=row["contract_id"],
            original_text=row["original_text"],
            findings=[_row_to_finding(f) for f in findings],
            updated_at=parse_timestamp(row["updated_at"]),
        )

    def list_contract_clause_ids(self, contract_id: str) -> list[str]:
        self.get_contract(contract_id)
        db = self._connect()
        rows = db.execute(
            "SELECT id FROM clauses WHERE contract_id = ? ORDER BY rowid", (contract_id,)
        ).fetchall()
        db.close()
        return [r["id"] for r in rows]

    # -----------------------------------------------------------------------
    # Contracts
    # -----------------------------------------------------------------------

    def get_contract(self, contract_id: str) -> dict:
        db = self._connect()
        row = db.execute("SELECT * FROM contracts WHERE id = ?", (contract_id,)).fetchone()
        db.close()
        if not row:
            raise NotFoundError(f"Contract {contract_id} not found")
        return {
            "id": row["id"],
            "finalized": bool(row["finalized"]),
            "finalizedAt": row["finalized_at"],
            "finalizedBy": row["finalized_by"],
        }

    def is_finalized(self, contract_id: str) -> bool:
        return self.get_contract(contract_id)["finalized"]

    def mark_finalized(self, contract_id: str, actor_id: str) -> dict:
        db = self._connect()
        cursor = db.execute(
            "UPDATE contracts SET finalized = 1, finalized_at = ?, finalized_by = ? "
            "WHERE id = ? AND finalized = 0",
            (_ts(utcnow()), actor_id, contract_id),
        )
        db.commit()
        db.close()
        if cursor.rowcount == 0:
            # Either unknown or already finalized; get_contract raises for the former.
            contract = self.get_contract(contract_id)
            raise ValidationError(f"Contract {contract['id']} is already finalized")
        return self.get_contract(contract_id)

    # -----------------------------------------------------------------------
    # Decisions
    # -----------------------------------------------------------------------

    def append(
        self,
        clause_id: str,
        action_type: str,
        actor_id: str,
        actor_role: str,
        payload: dict,
        finding_id: Optional[str] = None,
        clause_updated_at_when_loaded: Optional[datetime] = None,
    ) -> Decision:
        if not clause_id:
            raise ValidationError("clauseId is required")
        if not actor_id:
            raise ValidationError("actorId is required")
        validate_payload(action_type, payload, finding_id)

        decision_id = uuid.uuid4().hex
        db = self._connect()
        db.isolation_level = None
        try:
            db.execute("BEGIN IMMEDIATE")
            last = db.execute(
                "SELECT MAX(created_at) AS last FROM decisions WHERE clause_id = ?", (clause_id,)
            ).fetchone()["last"]
            created_at = utcnow()
            last_ts = parse_timestamp(last)
            if last_ts is not None and created_at <= last_ts:
                created_at = last_ts + timedelta(microseconds=1)
            cursor = db.execute(
                """INSERT INTO decisions (id, clause_id, finding_id, actor_id, actor_role,
                   action_type, payload_json, clause_updated_at_when_loaded, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (decision_id, clause_id, finding_id, actor_id, actor_role or "", action_type,
                 json.dumps(payload, sort_keys=True),
                 _ts(clause_updated_at_when_loaded) if clause_updated_at_when_loaded else None,
                 _ts(created_at)),
            )
            db.execute("COMMIT")
        except sqlite3.IntegrityError as e:
            db.execute("ROLLBACK")
            raise NotFoundError(f"Clause {clause_id} not found") from e
        finally:
            db.close()

        return Decision(
            id=decision_id,
            seq=cursor.lastrowid,
            clause_id=clause_id,
            finding_id=finding_id,
            actor_id=actor_id,
            actor_role=actor_role or "",
            action_type=action_type,
            payload=json.loads(json.dumps(payload, sort_keys=True)),
            created_at=created_at,
            clause_updated_at_when_loaded=clause_updated_at_when_loaded,
        )

    def list_by_clause(self, clause_id: str) -> list[Decision]:
        db = self._connect()
        rows = db.execute(
            "SELECT * FROM decisions WHERE clause_id = ? ORDER BY created_at, seq", (clause_id,)
        ).fetchall()
        db.close()
        return [_row_to_decision(r) for r in rows]

    def get(self, decision_id: str) -> Decision:
        db = self._connect()
        row = db.execute("SELECT * FROM decisions WHERE id = ?", (decision_id,)).fetchone()
        db.close()
        if not row:
            raise NotFoundError(f"Decision {decision_id} not found")
        return _row_to_decision(row)

    def last_modified(self, clause_id: str) -> tuple[Optional[datetime], Optional[str]]:
        """True last-modified time of a clause and the actor behind it.

        max(created_at) over its decisions, else the baseline updated_at.
        """
        db = self._connect()
        try:
            row = db.execute(
                "SELECT created_at, actor_id FROM decisions WHERE clause_id = ? "
                "ORDER BY created_at DESC, seq DESC LIMIT 1",
                (clause_id,),
            ).fetchone()
            if row:
                return parse_timestamp(row["created_at"]), row["actor_id"]
            clause = db.execute("SELECT updated_at FROM clauses WHERE id = ?", (clause_id,)).fetchone()
        finally:
            db.close()
        if not clause:
            raise NotFoundError(f"Clause {clause_id} not found")
        return parse_timestamp(clause["updated_at"]), None
