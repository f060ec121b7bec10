"""
Tests: transition engine (apply_action, workflow state, auto-checks).

Covers:
    - plain → decision → terminal walk, including auto-completion of terminals
    - precondition failures and their audit rows
    - note enforcement at the engine boundary
    - optimistic concurrency (expected_version and stale flushes)
    - computed workflow state: available actions and progress
"""

import pytest
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from bugtracker.core.exceptions import NotFoundError
from bugtracker.models import db
from bugtracker.models.task import Task, TaskNote
from bugtracker.services.workflow import engine
from bugtracker.services.workflow.audit_writer import get_audit_trail


def step_of(task, template_step_id):
    """TaskStep cloned from ``template_step_id``."""
    return next(s for s in task.steps if s.template_step_id == template_step_id)


def _ids(task, *template_ids):
    return [step_of(task, t).id for t in template_ids]


def _note_specs():
    """S1 needs a 10+ character note; T is a terminal that also needs a note."""
    return [
        {"step_id": "s1", "name": "Document the impact", "role": "action", "order": 1,
         "requires_note": True, "min_note_length": 10, "next": "t"},
        {"step_id": "t", "name": "Sign off", "role": "terminal", "order": 2,
         "requires_note": True, "min_note_length": 10},
    ]


# ═════════════════════════════════════════════════════════════════════════
# Happy path
# ═════════════════════════════════════════════════════════════════════════


class TestTransitions:
    def test_plain_then_decision_no_completes_via_terminal(self, make_task):
        task = make_task()
        task_id = task.id
        s1, s2, t = _ids(task, "s1", "s2", "t")

        first = engine.apply_action(task_id, s1, "complete")
        assert first.success
        assert first.next_step_id == s2
        assert first.new_state["task_status"] == "in_progress"
        assert first.new_state["current_step"]["id"] == s2

        second = engine.apply_action(task_id, s2, "decide_no", "Not reproducible on 2024.1.2")
        assert second.success
        assert second.next_step_id == t
        assert second.new_state["is_complete"] is True
        assert any("Close as not reproducible" in m for m in second.info_messages)

        task = db.session.get(Task, task_id)
        assert task.status == "completed"
        assert task.completed_at is not None
        assert step_of(task, "t").status == "completed"
        assert step_of(task, "s2").decision_answer == "No"
        assert step_of(task, "s3").status == "pending"

        trail = get_audit_trail(task_id)
        assert [r.result for r in trail] == ["success", "success"]

        third = engine.apply_action(task_id, t, "complete")
        assert not third.success
        assert third.error_code == "TASK_ALREADY_COMPLETE"
        trail = get_audit_trail(task_id)
        assert len(trail) == 3
        assert trail[-1].result == "failure"
        assert trail[-1].error_code == "TASK_ALREADY_COMPLETE"

    def test_decide_yes_follows_the_yes_edge_to_a_plain_step(self, make_task):
        specs = [
            {"step_id": "d", "name": "Preconditions apply?", "role": "decision", "order": 1,
             "next_if_yes": "a", "next_if_no": "t"},
            {"step_id": "a", "name": "Write regression test", "role": "action", "order": 2},
            {"step_id": "t", "name": "Close", "role": "terminal", "order": 3},
        ]
        task = make_task(specs)
        task_id = task.id
        d, a = _ids(task, "d", "a")

        result = engine.apply_action(task_id, d, "decide_yes")
        assert result.success
        assert result.next_step_id == a
        assert result.new_state["current_step"]["id"] == a
        assert result.new_state["task_status"] == "in_progress"

        last = engine.apply_action(task_id, a, "complete", actor="qa.lead")
        assert last.success
        assert last.next_step_id is None
        assert "Workflow completed" in last.info_messages
        task = db.session.get(Task, task_id)
        assert task.status == "completed"
        assert step_of(task, "a").completed_by == "qa.lead"

    def test_decide_accepts_any_case(self, make_task):
        task = make_task()
        task_id = task.id
        s1, s2, s3 = _ids(task, "s1", "s2", "s3")
        engine.apply_action(task_id, s1, "complete")

        result = engine.apply_action(task_id, s2, "decide", decision="yes")
        assert result.success
        assert result.next_step_id == s3
        assert get_audit_trail(task_id)[-1].decision == "Yes"
        assert step_of(db.session.get(Task, task_id), "s2").decision_answer == "Yes"

    def test_action_type_is_case_insensitive(self, make_task):
        task = make_task()
        s1 = step_of(task, "s1").id
        assert engine.apply_action(task.id, s1, " Complete ").success

    def test_terminal_requiring_note_waits_for_explicit_completion(self, make_task):
        task = make_task(_note_specs())
        task_id = task.id
        s1, t = _ids(task, "s1", "t")

        moved = engine.apply_action(task_id, s1, "complete", "Impact documented in the ticket")
        assert moved.success
        assert moved.new_state["current_step"]["id"] == t
        assert moved.new_state["is_complete"] is False

        missing = engine.apply_action(task_id, t, "complete")
        assert missing.error_code == "VALIDATION_FAILED"

        done = engine.apply_action(task_id, t, "complete", "Signed off by QA lead")
        assert done.success
        assert "Workflow completed" in done.info_messages
        assert db.session.get(Task, task_id).status == "completed"

    def test_unset_decision_edge_ends_workflow_with_warning(self, make_task):
        specs = [
            {"step_id": "d", "name": "Escalate?", "role": "decision", "order": 1, "next_if_yes": "t"},
            {"step_id": "t", "name": "Escalated", "role": "terminal", "order": 2},
        ]
        task = make_task(specs)
        d = step_of(task, "d").id

        result = engine.apply_action(task.id, d, "decide_no")
        assert result.success
        assert result.next_step_id is None
        assert result.warning_messages
        assert db.session.get(Task, task.id).status == "completed"

    def test_note_is_stored_on_step_and_as_task_note(self, make_task):
        task = make_task(_note_specs())
        s1 = step_of(task, "s1").id
        engine.apply_action(task.id, s1, "complete", "  Impact documented  ", actor="analyst")

        task = db.session.get(Task, task.id)
        assert step_of(task, "s1").notes == "Impact documented"
        assert [(n.step_id, n.content, n.created_by) for n in task.notes] == [
            (s1, "Impact documented", "analyst"),
        ]


# ═════════════════════════════════════════════════════════════════════════
# Preconditions
# ═════════════════════════════════════════════════════════════════════════


class TestPreconditions:
    def test_resubmitting_a_completed_step_is_a_step_mismatch(self, make_task):
        task = make_task()
        task_id = task.id
        s1, s2 = _ids(task, "s1", "s2")
        engine.apply_action(task_id, s1, "complete")

        result = engine.apply_action(task_id, s1, "complete")
        assert not result.success
        assert result.error_code == "STEP_MISMATCH"
        assert result.error.current_step_id == s2
        assert result.new_state["current_step"]["id"] == s2

    def test_skipping_ahead_is_a_step_mismatch(self, make_task):
        task = make_task()
        s3 = step_of(task, "s3").id
        result = engine.apply_action(task.id, s3, "complete")
        assert result.error_code == "STEP_MISMATCH"
        assert step_of(db.session.get(Task, task.id), "s3").status == "pending"

    def test_unknown_step_id_is_a_step_mismatch(self, make_task):
        task = make_task()
        result = engine.apply_action(task.id, "not-a-step", "complete")
        assert result.error_code == "STEP_MISMATCH"

    def test_action_must_fit_step_role(self, make_task):
        task = make_task()
        task_id = task.id
        s1, s2 = _ids(task, "s1", "s2")

        on_plain = engine.apply_action(task_id, s1, "decide_yes")
        assert on_plain.error_code == "ACTION_ROLE_MISMATCH"

        engine.apply_action(task_id, s1, "complete")
        on_decision = engine.apply_action(task_id, s2, "complete")
        assert on_decision.error_code == "ACTION_ROLE_MISMATCH"
        assert "decide_yes" in on_decision.error.allowed

        unknown = engine.apply_action(task_id, s2, "approve")
        assert unknown.error_code == "ACTION_ROLE_MISMATCH"

    def test_short_note_is_rejected_and_step_stays_pending(self, make_task):
        task = make_task(_note_specs())
        task_id = task.id
        s1 = step_of(task, "s1").id

        short = engine.apply_action(task_id, s1, "complete", "8 chars!")
        assert not short.success
        assert short.error_code == "VALIDATION_FAILED"
        assert [v.code for v in short.violations] == ["NOTE_TOO_SHORT"]
        assert short.to_dict()["violations"][0]["value"] == 8
        assert step_of(db.session.get(Task, task_id), "s1").status == "pending"

        row = get_audit_trail(task_id)[-1]
        assert (row.result, row.error_code, row.notes) == ("failure", "VALIDATION_FAILED", "8 chars!")

        ok = engine.apply_action(task_id, s1, "complete", "ten chars!")
        assert ok.success

    def test_invalid_decision_value_is_rejected(self, make_task):
        task = make_task()
        task_id = task.id
        s1, s2 = _ids(task, "s1", "s2")
        engine.apply_action(task_id, s1, "complete")

        result = engine.apply_action(task_id, s2, "decide", decision="Maybe")
        assert result.error_code == "VALIDATION_FAILED"
        assert [v.code for v in result.violations] == ["INVALID_DECISION"]
        assert get_audit_trail(task_id)[-1].decision == "Maybe"

    def test_non_text_note_is_a_validation_failure(self, make_task):
        task = make_task()
        task_id = task.id
        s1 = step_of(task, "s1").id

        result = engine.apply_action(task_id, s1, "complete", 12345)
        assert result.error_code == "VALIDATION_FAILED"
        assert [(v.code, v.value) for v in result.violations] == [("INVALID_NOTE", "int")]
        assert step_of(db.session.get(Task, task_id), "s1").status == "pending"

        row = get_audit_trail(task_id)[-1]
        assert (row.result, row.error_code, row.notes) == ("failure", "VALIDATION_FAILED", None)

    def test_completed_check_comes_before_step_check(self, make_task):
        task = make_task()
        task_id = task.id
        s1, s2 = _ids(task, "s1", "s2")
        engine.apply_action(task_id, s1, "complete")
        engine.apply_action(task_id, s2, "decide_no")

        result = engine.apply_action(task_id, s1, "decide_yes")
        assert result.error_code == "TASK_ALREADY_COMPLETE"

    def test_unknown_task_raises_not_found_and_is_not_audited(self):
        with pytest.raises(NotFoundError):
            engine.apply_action("does-not-exist", "s1", "complete")
        assert get_audit_trail("does-not-exist") == []


# ═════════════════════════════════════════════════════════════════════════
# Notes without advancing
# ═════════════════════════════════════════════════════════════════════════


class TestAddNote:
    def test_add_note_keeps_the_current_step(self, make_task):
        task = make_task()
        task_id = task.id
        s1 = step_of(task, "s1").id

        result = engine.apply_action(task_id, s1, "add_note", "Waiting on the product owner")
        assert result.success
        assert result.next_step_id == s1
        assert result.new_state["current_step"]["id"] == s1
        assert result.new_state["current_step"]["status"] == "pending"

        notes = db.session.query(TaskNote).filter_by(task_id=task_id).all()
        assert [n.content for n in notes] == ["Waiting on the product owner"]
        assert get_audit_trail(task_id)[-1].action == "add_note"

    def test_add_note_needs_content(self, make_task):
        task = make_task()
        s1 = step_of(task, "s1").id
        result = engine.apply_action(task.id, s1, "add_note", "   ")
        assert result.error_code == "VALIDATION_FAILED"


# ═════════════════════════════════════════════════════════════════════════
# Audit ordering & concurrency
# ═════════════════════════════════════════════════════════════════════════


class TestAuditAndConcurrency:
    def test_every_attempt_writes_exactly_one_ordered_row(self, make_task):
        task = make_task()
        task_id = task.id
        s1, s2 = _ids(task, "s1", "s2")

        attempts = [
            (s2, "decide_yes"),   # mismatch
            (s1, "decide_yes"),   # role mismatch
            (s1, "complete"),     # ok
            (s1, "complete"),     # mismatch
            (s2, "decide_no"),    # ok, completes
            (s2, "decide_no"),    # already complete
        ]
        results = [engine.apply_action(task_id, sid, action) for sid, action in attempts]

        trail = get_audit_trail(task_id)
        assert len(trail) == len(attempts)
        assert [r.sequence for r in trail] == list(range(1, len(attempts) + 1))
        assert [r.audit_sequence for r in results] == [r.sequence for r in trail]
        assert [r.result for r in trail] == [
            "failure", "failure", "success", "failure", "success", "failure",
        ]

    def test_success_row_records_transition(self, make_task):
        task = make_task()
        task_id = task.id
        s1, s2 = _ids(task, "s1", "s2")
        engine.apply_action(task_id, s1, "complete", actor="alice")

        row = get_audit_trail(task_id)[0]
        assert row.action == "complete"
        assert row.step_id == s1
        assert row.step_name == "Clone core bug"
        assert row.previous_step_id == s1
        assert row.next_step_id == s2
        assert row.actor == "alice"
        assert row.context_snapshot["current_step_id"] == s1
        assert row.context_snapshot["version"] == 1

    def test_expected_version_mismatch_is_a_conflict(self, make_task):
        task = make_task()
        task_id = task.id
        s1, s2 = _ids(task, "s1", "s2")
        version = task.version_id

        stale = engine.apply_action(task_id, s1, "complete", expected_version=version + 5)
        assert stale.error_code == "CONCURRENCY_CONFLICT"
        assert stale.error.actual_version == version

        fresh = engine.apply_action(task_id, s1, "complete", expected_version=version)
        assert fresh.success
        assert fresh.new_state["version"] > version

        again = engine.apply_action(task_id, s2, "decide_yes", expected_version=version)
        assert again.error_code == "CONCURRENCY_CONFLICT"

    def test_stale_write_is_rolled_back_and_reported(self, make_task, monkeypatch):
        task = make_task()
        task_id = task.id
        s1 = step_of(task, "s1").id

        real_commit = Session.commit
        calls = []

        def flaky_commit(self):
            calls.append(1)
            if len(calls) == 1:
                raise StaleDataError("task row was updated by another transaction")
            return real_commit(self)

        monkeypatch.setattr(Session, "commit", flaky_commit)

        result = engine.apply_action(task_id, s1, "complete")
        assert not result.success
        assert result.error_code == "CONCURRENCY_CONFLICT"

        monkeypatch.undo()
        task = db.session.get(Task, task_id)
        assert step_of(task, "s1").status == "pending"
        assert task.status == "open"
        trail = get_audit_trail(task_id)
        assert [(r.result, r.error_code) for r in trail] == [("failure", "CONCURRENCY_CONFLICT")]

    def test_concurrent_version_bump_fails_the_version_check(self, make_task, monkeypatch):
        task = make_task()
        task_id = task.id
        s1 = step_of(task, "s1").id

        real_write = engine.write_workflow_audit
        bumped = []

        def write_after_concurrent_update(**kwargs):
            # another writer commits a change to the task between load and flush
            if not bumped:
                bumped.append(1)
                with db.session.no_autoflush:
                    db.session.execute(
                        text("UPDATE tasks SET version_id = version_id + 1 WHERE id = :id"),
                        {"id": task_id},
                    )
            return real_write(**kwargs)

        monkeypatch.setattr(engine, "write_workflow_audit", write_after_concurrent_update)

        result = engine.apply_action(task_id, s1, "complete")
        assert not result.success
        assert result.error_code == "CONCURRENCY_CONFLICT"

        monkeypatch.undo()
        db.session.expire_all()
        task = db.session.get(Task, task_id)
        assert step_of(task, "s1").status == "pending"
        assert task.status == "open"
        trail = get_audit_trail(task_id)
        assert [(r.result, r.error_code) for r in trail] == [("failure", "CONCURRENCY_CONFLICT")]

    def test_database_error_on_commit_is_rolled_back_and_raised(self, make_task, monkeypatch):
        task = make_task()
        task_id = task.id
        s1 = step_of(task, "s1").id

        def failing_commit(self):
            raise OperationalError("COMMIT", {}, Exception("disk I/O error"))

        monkeypatch.setattr(Session, "commit", failing_commit)
        with pytest.raises(OperationalError):
            engine.apply_action(task_id, s1, "complete")

        monkeypatch.undo()
        task = db.session.get(Task, task_id)
        assert step_of(task, "s1").status == "pending"
        assert get_audit_trail(task_id) == []

    def test_overlong_step_id_is_clipped_in_the_audit_row(self, make_task):
        task = make_task()
        overlong = "x" * 40

        result = engine.apply_action(task.id, overlong, "complete", actor="a" * 150)
        assert result.error_code == "STEP_MISMATCH"

        (row,) = get_audit_trail(task.id)
        assert row.step_id == "x" * 36
        assert len(row.actor) == 100


# ═════════════════════════════════════════════════════════════════════════
# Computed state
# ═════════════════════════════════════════════════════════════════════════


class TestWorkflowState:
    def test_progress_counts_the_longest_remaining_path(self, make_task):
        task = make_task()
        task_id = task.id
        s1, s2 = _ids(task, "s1", "s2")

        state = engine.get_workflow_state(task_id)
        assert state["progress"] == {"completed": 0, "total": 3, "percent": 0, "status_text": "Step 1 of 3"}
        assert [s["id"] for s in state["completed_steps"]] == []
        assert len(state["upcoming_steps"]) == 3

        engine.apply_action(task_id, s1, "complete")
        state = engine.get_workflow_state(task_id)
        assert state["progress"]["status_text"] == "Step 2 of 3"
        assert [s["id"] for s in state["completed_steps"]] == [s1]
        assert sorted(s["id"] for s in state["possible_next_steps"]) == sorted(_ids(task, "s3", "t"))

        engine.apply_action(task_id, s2, "decide_no")
        state = engine.get_workflow_state(task_id)
        assert state["progress"] == {"completed": 3, "total": 3, "percent": 100, "status_text": "Complete"}
        assert state["available_actions"] == []
        assert state["current_step"]["template_step_id"] == "t"
        assert state["upcoming_steps"] == []

    def test_decision_offers_yes_no_and_note(self, make_task):
        task = make_task()
        s1 = step_of(task, "s1").id
        engine.apply_action(task.id, s1, "complete")

        actions = engine.get_workflow_state(task.id)["available_actions"]
        assert [a["action_type"] for a in actions] == ["decide_yes", "decide_no", "add_note"]
        assert all(a["is_enabled"] for a in actions)

    def test_required_note_disables_completion_until_drafted(self, make_task):
        task = make_task(_note_specs())
        task_id = task.id
        s1 = step_of(task, "s1").id

        state = engine.get_workflow_state(task_id)
        complete = state["available_actions"][0]
        assert complete["action_type"] == "complete"
        assert complete["is_enabled"] is False
        assert complete["disabled_reason"] == "Notes are required for this step"
        assert state["validation"]["min_note_length"] == 10

        state = engine.get_workflow_state(task_id, draft_note="too short")
        assert state["available_actions"][0]["is_enabled"] is False
        assert state["validation"]["errors"][0]["code"] == "NOTE_TOO_SHORT"

        state = engine.get_workflow_state(task_id, draft_note="long enough note")
        assert state["available_actions"][0]["is_enabled"] is True
        assert state["validation"]["errors"] == []

        engine.apply_action(task_id, s1, "complete", "Impact documented")
        actions = engine.get_workflow_state(task_id)["available_actions"]
        assert actions[0]["label"] == "Complete Workflow"

    def test_unknown_task_state_raises(self):
        with pytest.raises(NotFoundError):
            engine.get_workflow_state("missing")


# ═════════════════════════════════════════════════════════════════════════
# Auto-checks
# ═════════════════════════════════════════════════════════════════════════


def _auto_check_specs():
    return [
        {"step_id": "c", "name": "Version affected?", "role": "auto_check", "order": 1,
         "rule": {
             "conditions": [
                 {"condition_id": "v", "field": "versionAffected", "operator": "equals", "value": True},
             ],
             "note_field": "versionNote",
         },
         "next_if_true": "work", "next_if_false": "skip"},
        {"step_id": "work", "name": "Fix it", "role": "action", "order": 2},
        {"step_id": "skip", "name": "Not affected", "role": "terminal", "order": 3},
    ]


class TestAutoChecks:
    def test_auto_check_resolves_from_context(self, make_task):
        task = make_task(_auto_check_specs(), context={"versionAffected": False, "versionNote": "2.0 is fine"})
        task_id = task.id
        skip = step_of(task, "skip").id

        results = engine.run_auto_checks(task_id)
        assert len(results) == 1
        assert results[0].success
        assert results[0].next_step_id == skip
        assert db.session.get(Task, task_id).status == "completed"

        row = get_audit_trail(task_id)[0]
        assert row.action == "auto_check"
        assert row.actor == "system"
        assert row.decision == "false"
        assert row.notes == "2.0 is fine"
        assert row.conditions_evaluated[0]["actual"] is False

    def test_auto_check_true_moves_to_work_step(self, make_task):
        task = make_task(_auto_check_specs(), context={"versionAffected": True})
        work = step_of(task, "work").id

        results = engine.run_auto_checks(task.id)
        assert results[0].next_step_id == work
        assert engine.get_workflow_state(task.id)["current_step"]["id"] == work
        assert engine.run_auto_checks(task.id) == []

    def test_auto_check_submitted_by_hand_needs_boolean(self, make_task):
        task = make_task(_auto_check_specs())
        c = step_of(task, "c").id
        bad = engine.apply_action(task.id, c, "auto_check")
        assert bad.error_code == "VALIDATION_FAILED"
        good = engine.apply_action(task.id, c, "auto_check", auto_check_result=True)
        assert good.success

    def test_no_auto_checks_on_plain_step(self, make_task):
        task = make_task()
        assert engine.run_auto_checks(task.id) == []
        assert get_audit_trail(task.id) == []
