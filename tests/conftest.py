"""pytest configuration and shared fixtures.

- A fresh sqlite decision store per test (tmp_path)
- A DecisionEngine with a controllable cache clock
- A two-finding clause baseline (F1 RED, F2 YELLOW)
"""

from datetime import datetime, timezone

import pytest

from clause_decisions.cache import ProjectionCache
from clause_decisions.database import DecisionStore
from clause_decisions.engine import DecisionEngine
from clause_decisions.models import ClauseBaseline, DecisionCommand, Finding

CONTRACT_ID = "K1"
CLAUSE_ID = "C1"
BASELINE_UPDATED_AT = datetime(2024, 1, 1, tzinfo=timezone.utc)

CLAUSE_TEXT = (
    "The Processor shall notify the Controller of any breach within 72 hours. "
    "The Processor may engage sub-processors without prior consent."
)
F1_EXCERPT = "within 72 hours"
F2_EXCERPT = "may engage sub-processors without prior consent"
F1_FALLBACK = "without undue delay and in any event within 48 hours"
FALLBACK = {"source": "fallback", "playbookRuleId": "R-BREACH"}

ESCALATION = {
    "reason": "Exceeds tolerance",
    "comment": "Needs sign-off from legal",
    "assigneeId": "U2",
    "assigneeName": "User Two",
}


def make_baseline(clause_id=CLAUSE_ID, contract_id=CONTRACT_ID, text=CLAUSE_TEXT, findings=None):
    if findings is None:
        findings = [
            Finding("F1", clause_id, "RED", F1_EXCERPT, F1_FALLBACK, "Breach notification"),
            Finding("F2", clause_id, "YELLOW", F2_EXCERPT, None, "Sub-processor consent"),
        ]
    return ClauseBaseline(clause_id, contract_id, text, findings, BASELINE_UPDATED_AT)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


# ===== Store & engine =====


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "decisions.db"


@pytest.fixture
def store(db_path) -> DecisionStore:
    return DecisionStore(db_path)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine(store, clock) -> DecisionEngine:
    return DecisionEngine(store, ProjectionCache(ttl_seconds=300, clock=clock))


# ===== Data =====


@pytest.fixture
def baseline(store) -> ClauseBaseline:
    return store.save_baseline(make_baseline())


@pytest.fixture
def submit(engine, baseline):
    """Submit a decision against the baseline clause; payload fields as keyword args."""

    def _submit(action_type, finding_id=None, actor_id="U1", actor_role="reviewer",
                loaded_at=None, clause_id=CLAUSE_ID, **payload):
        return engine.submit(DecisionCommand(
            clause_id=clause_id,
            action_type=action_type,
            actor_id=actor_id,
            actor_role=actor_role,
            payload=payload,
            finding_id=finding_id,
            clause_updated_at_when_loaded=loaded_at,
        ))

    return _submit
