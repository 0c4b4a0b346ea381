"""DecisionEngine: the submit pipeline, reads, finalization and concurrency."""

import threading

import pytest

from clause_decisions.engine import DecisionEngine
from clause_decisions.errors import (
    FINALIZED, LOCKED_BY_ESCALATION, NotFoundError, PermissionDeniedError, ValidationError,
)
from clause_decisions.models import (
    ACCEPT_DEVIATION, ADD_NOTE, APPLY_FALLBACK, EDIT_MANUAL, ESCALATE, ESCALATED,
    NO_ISSUES, PARTIALLY_RESOLVED, PENDING, RESOLVED, REVERT, UNDO, DecisionCommand, Finding,
)

from conftest import (
    BASELINE_UPDATED_AT, CLAUSE_ID, CLAUSE_TEXT, CONTRACT_ID, ESCALATION, F1_EXCERPT, F1_FALLBACK,
    FALLBACK, make_baseline,
)


class TestScenarios:
    def test_escalation_gate(self, submit):
        result = submit(APPLY_FALLBACK, "F1", replacementText=F1_FALLBACK, **FALLBACK)
        assert result.projection.resolved_count == 1
        assert result.projection.effective_status == PARTIALLY_RESOLVED

        result = submit(ESCALATE, "F2", **ESCALATION)
        assert result.projection.has_unresolved_escalation
        assert result.projection.effective_status == ESCALATED

        with pytest.raises(PermissionError) as exc:
            submit(ACCEPT_DEVIATION, "F2", actor_id="U3")
        assert exc.value.reason == LOCKED_BY_ESCALATION

        result = submit(ACCEPT_DEVIATION, "F2", actor_id="U2")
        assert result.projection.resolved_count == 2
        assert result.projection.effective_status == RESOLVED

    def test_undo_restores_text(self, submit):
        applied = submit(APPLY_FALLBACK, "F1", replacementText="X", **FALLBACK)
        assert applied.projection.effective_text == CLAUSE_TEXT.replace(F1_EXCERPT, "X")

        undone = submit(UNDO, "F1", undoneDecisionId=applied.decision.id)
        assert undone.projection.effective_text == CLAUSE_TEXT
        assert undone.projection.resolved_count == 0

    def test_stale_view_warns_but_appends(self, engine, submit):
        first = submit(ADD_NOTE, "F1", actor_id="U1", loaded_at=BASELINE_UPDATED_AT, noteText="one")
        assert first.conflict_warning is None

        second = submit(ADD_NOTE, "F1", actor_id="U2", loaded_at=BASELINE_UPDATED_AT, noteText="two")
        assert second.conflict_warning is not None
        assert second.conflict_warning.last_updated_at == first.decision.created_at
        assert second.conflict_warning.conflicting_actor_id == "U1"
        assert len(engine.list_decision_history(CLAUSE_ID)) == 2

    def test_projection_carries_conflict_token(self, engine, submit):
        loaded = engine.get_projection(CLAUSE_ID).clause_updated_at
        assert loaded == BASELINE_UPDATED_AT
        first = submit(ADD_NOTE, "F1", actor_id="U1", loaded_at=loaded, noteText="one")
        assert first.conflict_warning is None
        assert first.projection.clause_updated_at == first.decision.created_at

        second = submit(ADD_NOTE, "F1", actor_id="U2", loaded_at=loaded, noteText="two")
        assert second.conflict_warning is not None
        assert second.conflict_warning.conflicting_actor_id == "U1"

        reloaded = engine.get_projection(CLAUSE_ID).clause_updated_at
        assert reloaded == second.decision.created_at
        third = submit(ADD_NOTE, "F1", actor_id="U2", loaded_at=reloaded, noteText="three")
        assert third.conflict_warning is None


class TestSubmit:
    def test_version_increments_on_every_submit(self, submit):
        versions = [
            submit(ADD_NOTE, noteText="a").projection.version,
            submit(ACCEPT_DEVIATION, "F1").projection.version,
            submit(REVERT).projection.version,
        ]
        assert versions == [1, 2, 3]

    def test_admin_bypasses_escalation(self, submit):
        submit(ESCALATE, "F2", **ESCALATION)
        result = submit(EDIT_MANUAL, "F2", actor_id="A1", actor_role="admin", replacementText="with consent")
        assert result.projection.finding_statuses["F2"].status == "RESOLVED_MANUAL_EDIT"
        assert not result.projection.has_unresolved_escalation

    def test_notes_are_never_locked(self, submit):
        submit(ESCALATE, "F2", **ESCALATION)
        result = submit(ADD_NOTE, "F2", actor_id="U3", noteText="following")
        assert result.projection.finding_statuses["F2"].note_count == 1

    def test_escalation_does_not_lock_other_findings(self, submit):
        submit(ESCALATE, "F2", **ESCALATION)
        result = submit(ACCEPT_DEVIATION, "F1", actor_id="U3")
        assert result.projection.finding_statuses["F1"].status == "RESOLVED_ACCEPTED"

    def test_clause_escalation_locks_every_finding(self, submit):
        submit(ESCALATE, **ESCALATION)
        with pytest.raises(PermissionDeniedError):
            submit(ACCEPT_DEVIATION, "F1", actor_id="U3")
        with pytest.raises(PermissionDeniedError):
            submit(ESCALATE, actor_id="U3", **{**ESCALATION, "assigneeId": "U3"})
        result = submit(ACCEPT_DEVIATION, "F1", actor_id="U2")
        assert result.projection.clause_escalated
        with pytest.raises(PermissionDeniedError):
            submit(ACCEPT_DEVIATION, "F2", actor_id="U3")
        result = submit(ACCEPT_DEVIATION, "F2", actor_id="U2")
        assert not result.projection.clause_escalated
        assert result.projection.effective_status == RESOLVED

    def test_reescalation_needs_the_assignee(self, submit):
        submit(ESCALATE, "F2", **ESCALATION)
        with pytest.raises(PermissionDeniedError):
            submit(ESCALATE, "F2", actor_id="U3", **{**ESCALATION, "assigneeId": "U3"})
        result = submit(ESCALATE, "F2", actor_id="U2", **{**ESCALATION, "assigneeId": "U4"})
        assert result.projection.escalated_to_user_id == "U4"

    def test_revert_resets_and_keeps_history(self, engine, submit):
        submit(APPLY_FALLBACK, "F1", replacementText=F1_FALLBACK, **FALLBACK)
        submit(ESCALATE, "F2", **ESCALATION)
        result = submit(REVERT, actor_id="U3")
        p = result.projection
        assert p.effective_text == CLAUSE_TEXT
        assert p.effective_status == PENDING
        assert not p.has_unresolved_escalation
        assert [d.action_type for d in engine.list_decision_history(CLAUSE_ID)] == [
            APPLY_FALLBACK, ESCALATE, REVERT,
        ]

    def test_undo_records_target_finding(self, submit):
        applied = submit(APPLY_FALLBACK, "F1", replacementText=F1_FALLBACK, **FALLBACK)
        undone = submit(UNDO, undoneDecisionId=applied.decision.id)
        assert undone.decision.finding_id == "F1"

    def test_result_serializes(self, submit):
        data = submit(ACCEPT_DEVIATION, "F1", comment="ok").to_dict()
        assert data["decision"]["actionType"] == ACCEPT_DEVIATION
        assert data["projection"]["findingStatuses"]["F1"]["status"] == "RESOLVED_ACCEPTED"
        assert data["conflictWarning"] is None


class TestSubmitRejections:
    def test_unknown_clause(self, submit):
        with pytest.raises(NotFoundError):
            submit(ADD_NOTE, clause_id="C404", noteText="x")

    def test_unknown_finding(self, submit):
        with pytest.raises(NotFoundError):
            submit(ACCEPT_DEVIATION, "F9")

    def test_missing_actor(self, submit):
        with pytest.raises(ValidationError):
            submit(ADD_NOTE, actor_id="", noteText="x")

    def test_invalid_payload(self, submit):
        with pytest.raises(ValidationError):
            submit(ESCALATE, "F1", reason="Regulatory", comment="c")

    def test_undo_unknown_decision(self, submit):
        with pytest.raises(NotFoundError):
            submit(UNDO, undoneDecisionId="missing")

    def test_undo_twice(self, submit):
        applied = submit(ACCEPT_DEVIATION, "F1")
        submit(UNDO, undoneDecisionId=applied.decision.id)
        with pytest.raises(ValidationError):
            submit(UNDO, undoneDecisionId=applied.decision.id)

    def test_undo_of_undo(self, submit):
        applied = submit(ACCEPT_DEVIATION, "F1")
        undo = submit(UNDO, undoneDecisionId=applied.decision.id)
        with pytest.raises(ValidationError):
            submit(UNDO, undoneDecisionId=undo.decision.id)

    def test_undo_wrong_finding(self, submit):
        applied = submit(ACCEPT_DEVIATION, "F1")
        with pytest.raises(ValidationError):
            submit(UNDO, "F2", undoneDecisionId=applied.decision.id)

    def test_undo_from_other_clause(self, store, submit):
        store.save_baseline(make_baseline(clause_id="C2", findings=[Finding("F21", "C2", "RED", "breach")]))
        other = submit(ACCEPT_DEVIATION, "F21", clause_id="C2")
        with pytest.raises(ValidationError):
            submit(UNDO, undoneDecisionId=other.decision.id)

    def test_rejected_command_appends_nothing(self, engine, submit):
        submit(ESCALATE, "F2", **ESCALATION)
        with pytest.raises(PermissionDeniedError):
            submit(ACCEPT_DEVIATION, "F2", actor_id="U3")
        assert len(engine.list_decision_history(CLAUSE_ID)) == 1
        assert engine.get_projection(CLAUSE_ID).version == 1


class TestReads:
    def test_projection_cached_after_read(self, engine, baseline):
        first, cached = engine.read_projection(CLAUSE_ID)
        assert not cached
        second, cached = engine.read_projection(CLAUSE_ID)
        assert cached
        assert second is not first
        assert second.to_dict() == first.to_dict()

    def test_returned_projection_is_a_private_copy(self, engine, submit):
        result = submit(ACCEPT_DEVIATION, "F1")
        result.projection.finding_statuses["F1"].status = PENDING
        result.projection.finding_statuses.pop("F2")
        read = engine.get_projection(CLAUSE_ID)
        read.effective_text = "tampered"
        read.finding_statuses["F1"].escalated_to = "U9"

        again = engine.get_projection(CLAUSE_ID)
        assert again.effective_text == CLAUSE_TEXT
        assert again.finding_statuses["F1"].status == "RESOLVED_ACCEPTED"
        assert again.finding_statuses["F1"].escalated_to is None
        assert set(again.finding_statuses) == {"F1", "F2"}
        assert engine.get_projection(CLAUSE_ID).resolved_count == 1

    def test_cache_expiry_rebuilds_from_log(self, engine, clock, submit):
        submit(ACCEPT_DEVIATION, "F1")
        clock.now += 301
        projection, cached = engine.read_projection(CLAUSE_ID)
        assert not cached
        assert projection.version == 1

    def test_fresh_engine_rebuilds_same_projection(self, engine, store, submit):
        submit(APPLY_FALLBACK, "F1", replacementText=F1_FALLBACK, **FALLBACK)
        submit(ESCALATE, "F2", **ESCALATION)
        submit(ADD_NOTE, noteText="clause note")
        rebuilt = DecisionEngine(store).get_projection(CLAUSE_ID)
        assert rebuilt.to_dict() == engine.get_projection(CLAUSE_ID).to_dict()

    def test_history_unknown_clause(self, engine):
        with pytest.raises(NotFoundError):
            engine.list_decision_history("nope")

    def test_last_undoable_decision(self, engine, submit):
        assert engine.last_undoable_decision(CLAUSE_ID) is None
        applied = submit(APPLY_FALLBACK, "F1", replacementText=F1_FALLBACK, **FALLBACK)
        note = submit(ADD_NOTE, "F2", noteText="n")
        assert engine.last_undoable_decision(CLAUSE_ID).id == note.decision.id
        assert engine.last_undoable_decision(CLAUSE_ID, "F1").id == applied.decision.id

        submit(UNDO, undoneDecisionId=note.decision.id)
        assert engine.last_undoable_decision(CLAUSE_ID).id == applied.decision.id

    def test_track_changes_for_contract(self, engine, submit):
        applied = submit(APPLY_FALLBACK, "F1", actor_id="U7", replacementText=F1_FALLBACK, **FALLBACK)
        submit(ACCEPT_DEVIATION, "F2")
        changes = engine.get_track_changes_for_contract(CONTRACT_ID)
        assert len(changes) == 1
        change = changes[0]
        assert change.decision_id == applied.decision.id
        assert change.finding_id == "F1"
        assert change.original_text == F1_EXCERPT
        assert change.replacement_text == F1_FALLBACK
        assert change.author == "U7"

    def test_track_changes_unknown_contract(self, engine):
        with pytest.raises(NotFoundError):
            engine.get_track_changes_for_contract("nope")


class TestFinalization:
    def test_cannot_finalize_with_pending_findings(self, engine, submit):
        submit(ACCEPT_DEVIATION, "F1")
        with pytest.raises(ValidationError):
            engine.finalize_contract(CONTRACT_ID, "A1")
        summary = engine.contract_summary(CONTRACT_ID)
        assert summary["pendingCount"] == 1
        assert not summary["canFinalize"]

    def test_finalize_locks_contract(self, engine, store, submit):
        store.save_baseline(make_baseline(clause_id="C2", findings=[]))
        submit(ACCEPT_DEVIATION, "F1")
        submit(APPLY_FALLBACK, "F2", replacementText="may engage sub-processors with consent", **FALLBACK)

        summary = engine.contract_summary(CONTRACT_ID)
        assert summary["canFinalize"]
        assert [c["effectiveStatus"] for c in summary["clauses"]] == [RESOLVED, NO_ISSUES]

        result = engine.finalize_contract(CONTRACT_ID, "A1")
        assert result["finalized"]
        assert result["finalizedBy"] == "A1"
        assert result["totalFindingCount"] == 2

        with pytest.raises(PermissionDeniedError) as exc:
            submit(ADD_NOTE, noteText="too late")
        assert exc.value.reason == FINALIZED
        with pytest.raises(ValidationError):
            engine.finalize_contract(CONTRACT_ID, "A1")

    def test_finalized_gate_comes_first(self, engine, store, submit):
        accepted = submit(ACCEPT_DEVIATION, "F1")
        submit(ACCEPT_DEVIATION, "F2")
        submit(UNDO, undoneDecisionId=accepted.decision.id)
        submit(ACCEPT_DEVIATION, "F1")
        engine.finalize_contract(CONTRACT_ID, "A1")

        rejected = [
            dict(action_type=UNDO, undoneDecisionId=accepted.decision.id),
            dict(action_type=UNDO, undoneDecisionId="missing"),
            dict(action_type=APPLY_FALLBACK, finding_id="F1", replacementText="x"),
            dict(action_type=ACCEPT_DEVIATION, finding_id="F9"),
            dict(action_type=ADD_NOTE, actor_id="", noteText="n"),
        ]
        for kwargs in rejected:
            with pytest.raises(PermissionDeniedError) as exc:
                submit(**kwargs)
            assert exc.value.reason == FINALIZED
        assert len(store.list_by_clause(CLAUSE_ID)) == 4

    def test_finalize_requires_actor(self, engine, baseline):
        with pytest.raises(ValidationError):
            engine.finalize_contract(CONTRACT_ID, "")


class TestConcurrency:
    def test_concurrent_submits_are_serialized(self, engine, baseline):
        results, errors = [], []

        def worker(n):
            try:
                results.append(engine.submit(DecisionCommand(
                    clause_id=CLAUSE_ID, action_type=ADD_NOTE, actor_id=f"U{n}",
                    payload={"noteText": f"note {n}"}, finding_id="F1",
                )))
            except Exception as e:  # surfaced below
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert sorted(r.projection.version for r in results) == list(range(1, 9))
        final = engine.get_projection(CLAUSE_ID)
        assert final.version == 8
        assert final.finding_statuses["F1"].note_count == 8
