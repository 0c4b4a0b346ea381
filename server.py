"""FastAPI backend for the clause decision engine.

Exposes decision submission, projections, history, tracked changes and
contract finalization as REST endpoints for the review UI.
"""

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from clause_decisions.config import CORS_ORIGINS, configure_logging
from clause_decisions.engine import DecisionEngine
from clause_decisions.errors import PermissionDeniedError, ReviewError, ValidationError
from clause_decisions.models import ClauseBaseline, DecisionCommand

configure_logging()

app = FastAPI(title="Clause Decision API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

_engine = None


def get_engine() -> DecisionEngine:
    global _engine
    if _engine is None:
        _engine = DecisionEngine()
    return _engine


@app.exception_handler(ReviewError)
async def review_error_handler(request: Request, exc: ReviewError):
    content = {"detail": str(exc)}
    if isinstance(exc, PermissionDeniedError):
        content["reason"] = exc.reason
    return JSONResponse(status_code=exc.status_code, content=content)


# ---------------------------------------------------------------------------
# POST /api/contracts/{id}/clauses - Ingest clause baselines from analysis
# ---------------------------------------------------------------------------
@app.post("/api/contracts/{contract_id}/clauses")
def api_ingest_clauses(contract_id: str, body: dict, engine: DecisionEngine = Depends(get_engine)):
    clauses = body["clauses"] if "clauses" in body else [body]
    if not isinstance(clauses, list):
        raise ValidationError("clauses must be a list")
    saved = engine.store.save_baselines([ClauseBaseline.from_dict(contract_id, c) for c in clauses])
    return {"contractId": contract_id, "clauses": [b.to_dict() for b in saved]}


# ---------------------------------------------------------------------------
# POST /api/clauses/{id}/decisions - Submit a decision
# ---------------------------------------------------------------------------
@app.post("/api/clauses/{clause_id}/decisions")
def api_submit_decision(clause_id: str, body: dict, engine: DecisionEngine = Depends(get_engine)):
    result = engine.submit(DecisionCommand.from_dict(clause_id, body))
    return result.to_dict()


# ---------------------------------------------------------------------------
# GET /api/clauses/{id}/decisions - Decision history
# ---------------------------------------------------------------------------
@app.get("/api/clauses/{clause_id}/decisions")
def api_decision_history(clause_id: str, engine: DecisionEngine = Depends(get_engine)):
    return {"decisions": [d.to_dict() for d in engine.list_decision_history(clause_id)]}


# ---------------------------------------------------------------------------
# GET /api/clauses/{id}/decisions/undoable - Target for one-click undo
# ---------------------------------------------------------------------------
@app.get("/api/clauses/{clause_id}/decisions/undoable")
def api_undoable_decision(clause_id: str, findingId: str = None, engine: DecisionEngine = Depends(get_engine)):
    decision = engine.last_undoable_decision(clause_id, findingId)
    return {"decision": decision.to_dict() if decision else None}


# ---------------------------------------------------------------------------
# GET /api/clauses/{id}/projection - Current clause state
# ---------------------------------------------------------------------------
@app.get("/api/clauses/{clause_id}/projection")
def api_projection(clause_id: str, engine: DecisionEngine = Depends(get_engine)):
    projection, cached = engine.read_projection(clause_id)
    return {"projection": projection.to_dict(), "cached": cached}


# ---------------------------------------------------------------------------
# GET /api/contracts/{id}/tracked-changes - Export for document viewers
# ---------------------------------------------------------------------------
@app.get("/api/contracts/{contract_id}/tracked-changes")
def api_tracked_changes(contract_id: str, engine: DecisionEngine = Depends(get_engine)):
    changes = engine.get_track_changes_for_contract(contract_id)
    return {"contractId": contract_id, "changes": [c.to_dict() for c in changes]}


# ---------------------------------------------------------------------------
# GET /api/contracts/{id}/summary - Per-clause status roll-up
# ---------------------------------------------------------------------------
@app.get("/api/contracts/{contract_id}/summary")
def api_contract_summary(contract_id: str, engine: DecisionEngine = Depends(get_engine)):
    return engine.contract_summary(contract_id)


# ---------------------------------------------------------------------------
# POST /api/contracts/{id}/finalize - Lock the contract
# ---------------------------------------------------------------------------
@app.post("/api/contracts/{contract_id}/finalize")
def api_finalize(contract_id: str, body: dict, engine: DecisionEngine = Depends(get_engine)):
    return engine.finalize_contract(contract_id, body.get("actorId", ""))


# ---------------------------------------------------------------------------
# GET /api/cache - Projection cache stats
# ---------------------------------------------------------------------------
@app.get("/api/cache")
def api_cache_stats(engine: DecisionEngine = Depends(get_engine)):
    engine.cache.cleanup_expired()
    return engine.cache.stats()
