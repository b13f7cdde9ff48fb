"""Tests for the task lifecycle coordinator."""

from __future__ import annotations

import pytest

from foreman.config import CoordinatorConfig
from foreman.coordinator import Coordinator
from foreman.errors import ForemanError, InvalidStateTransitionError, NotFoundError
from foreman.models import QCCheck, QCResult, TaskDefinition
from foreman.store import KIND_TASK


def _failing_qc() -> QCResult:
    return QCResult.from_checks(
        [
            QCCheck(name="build", passed=False, message="syntax error"),
            QCCheck(name="lint", passed=True, message="OK"),
        ],
        "foreman/t",
    )


def _passing_qc() -> QCResult:
    return QCResult.from_checks([QCCheck(name="build", passed=True, message="OK")], "foreman/t")


def _coordinator(recorder=None, **config) -> Coordinator:
    return Coordinator(config or None, emit=recorder)


def _to_review(coord: Coordinator, task_id: str):
    assert coord.process_backlog() == task_id
    return coord.on_task_complete(task_id, "agent output")


def test_add_task_defaults_and_event(recorder):
    coord = _coordinator(recorder)
    task_id = coord.add_task("Build login", "Implement login", "webapp")

    task = coord.get_task(task_id)
    assert task.status == "backlog"
    assert task.priority == "medium"
    assert coord.get_state().queue_depth == 1
    assert recorder.of_type("task:status")[0]["status"] == "backlog"


def test_add_task_rejects_invalid_priority():
    coord = _coordinator()
    with pytest.raises(ValueError, match="Invalid task priority"):
        coord.add_task("t", "b", "p", priority="urgent")


def test_process_backlog_dispatches_and_assigns_default_agent():
    coord = _coordinator()
    task_id = coord.add_task("t", "b", "p")

    assert coord.process_backlog() == task_id
    task = coord.get_task(task_id)
    assert task.status == "in_progress"
    assert task.started_at is not None
    assert task.assigned_agent == "augment"
    assert coord.active_agents == 1
    assert coord.process_backlog() is None


def test_process_backlog_respects_capacity():
    coord = _coordinator(max_concurrent_agents=2)
    ids = [coord.add_task(f"t{i}", "b", "p") for i in range(3)]

    assert coord.process_backlog() == ids[0]
    assert coord.process_backlog() == ids[1]
    assert coord.is_at_capacity()
    assert coord.process_backlog() is None

    coord.on_task_complete(ids[0], "done")
    assert not coord.is_at_capacity()
    assert coord.process_backlog() == ids[2]


def test_active_agents_is_derived_from_task_states():
    coord = _coordinator(max_concurrent_agents=1)
    first = coord.add_task("a", "b", "p")
    second = coord.add_task("c", "d", "p")
    coord.process_backlog()

    coord.update_task_status(first, "failed")
    assert coord.active_agents == 0
    assert coord.process_backlog() == second


def test_on_task_complete_moves_to_review_and_returns_future():
    coord = _coordinator()
    task_id = coord.add_task("t", "b", "p")
    waiter = _to_review(coord, task_id)

    task = coord.get_task(task_id)
    assert task.status == "review"
    assert task.completed_at is not None
    assert task.output == "agent output"
    assert not waiter.done()

    qc = _passing_qc()
    assert coord.on_qc_complete(task_id, qc) is True
    assert waiter.result(timeout=0) is qc


def test_on_task_complete_unknown_id():
    coord = _coordinator()
    with pytest.raises(NotFoundError):
        coord.on_task_complete("task_missing", "")


def test_duplicate_completion_returns_same_future_and_stale_is_dropped():
    coord = _coordinator()
    task_id = coord.add_task("t", "b", "p")
    waiter = _to_review(coord, task_id)

    assert coord.on_task_complete(task_id, "again") is waiter
    coord.on_qc_complete(task_id, _passing_qc())
    assert coord.on_task_complete(task_id, "late") is None
    assert coord.get_task(task_id).status == "commit_review"


def test_qc_pass_goes_to_commit_review():
    coord = _coordinator()
    task_id = coord.add_task("t", "b", "p")
    _to_review(coord, task_id)

    coord.on_qc_complete(task_id, _passing_qc())
    task = coord.get_task(task_id)
    assert task.status == "commit_review"
    assert task.qc_result.passed


def test_qc_pass_auto_merges_when_configured():
    coord = _coordinator(auto_merge_on_qc_pass=True)
    task_id = coord.add_task("t", "b", "p")
    _to_review(coord, task_id)

    coord.on_qc_complete(task_id, _passing_qc())
    assert coord.get_task(task_id).status == "done"


def test_qc_failure_requeues_with_feedback():
    coord = _coordinator()
    task_id = coord.add_task("t", "Original briefing", "p")
    _to_review(coord, task_id)

    coord.on_qc_complete(task_id, _failing_qc())
    task = coord.get_task(task_id)
    assert task.status == "backlog"
    assert task.started_at is None
    assert task.completed_at is None
    assert task.briefing.startswith("Original briefing")
    assert "## QC Feedback" in task.briefing
    assert "build" in task.briefing
    assert "syntax error" in task.briefing
    assert "- lint" not in task.briefing
    assert coord.get_state().queue_depth == 1
    assert coord.process_backlog() == task_id


def test_qc_result_for_task_not_in_review_is_dropped():
    coord = _coordinator()
    task_id = coord.add_task("t", "b", "p")
    assert coord.on_qc_complete(task_id, _passing_qc()) is False
    assert coord.get_task(task_id).status == "backlog"


def test_approve_task_requires_commit_review():
    coord = _coordinator()
    task_id = coord.add_task("t", "b", "p")
    _to_review(coord, task_id)

    with pytest.raises(InvalidStateTransitionError):
        coord.approve_task(task_id)
    assert coord.get_task(task_id).status == "review"

    coord.on_qc_complete(task_id, _passing_qc())
    coord.approve_task(task_id)
    assert coord.get_task(task_id).status == "done"


def test_approving_dependency_unblocks_dependent():
    coord = _coordinator()
    t1 = coord.add_task("T1", "b", "p", priority="high")
    t2 = coord.add_task("T2", "b", "p", priority="critical", dependencies=[t1])

    assert coord.process_backlog() == t1
    assert coord.process_backlog() is None
    coord.on_task_complete(t1, "")
    coord.on_qc_complete(t1, _passing_qc())
    coord.approve_task(t1)

    assert coord.process_backlog() == t2


def test_reject_task_with_retry_appends_feedback():
    coord = _coordinator()
    task_id = coord.add_task("t", "b", "p")
    _to_review(coord, task_id)
    coord.on_qc_complete(task_id, _passing_qc())

    coord.reject_task(task_id, "Use the existing helper")
    task = coord.get_task(task_id)
    assert task.status == "backlog"
    assert "## Review Feedback" in task.briefing
    assert "Use the existing helper" in task.briefing


def test_reject_task_without_retry_fails():
    coord = _coordinator()
    task_id = coord.add_task("t", "b", "p")
    _to_review(coord, task_id)
    coord.on_qc_complete(task_id, _passing_qc())

    coord.reject_task(task_id, "Wrong approach", retry=False)
    task = coord.get_task(task_id)
    assert task.status == "failed"
    assert task.error == "Wrong approach"


def test_fail_and_retry_task():
    coord = _coordinator()
    task_id = coord.add_task("t", "b", "p")
    waiter = _to_review(coord, task_id)

    assert coord.fail_task(task_id, "verifier down") is True
    assert coord.fail_task(task_id, "again") is False
    assert isinstance(waiter.exception(timeout=0), ForemanError)
    assert coord.get_task(task_id).error == "verifier down"

    assert coord.retry_task(task_id) is True
    assert coord.retry_task(task_id) is False
    task = coord.get_task(task_id)
    assert task.status == "backlog"
    assert task.error is None
    assert coord.process_backlog() == task_id


def test_fail_done_task_is_invalid():
    coord = _coordinator(auto_merge_on_qc_pass=True)
    task_id = coord.add_task("t", "b", "p")
    _to_review(coord, task_id)
    coord.on_qc_complete(task_id, _passing_qc())

    with pytest.raises(InvalidStateTransitionError):
        coord.fail_task(task_id, "too late")

    task = coord.get_task(task_id)
    assert task.status == "done"
    assert task.error is None


def test_sub_agent_request_dispatches_child():
    coord = _coordinator()
    parent = coord.add_task("parent", "b", "webapp", priority="high")
    coord.process_backlog()

    dispatch = coord.handle_sub_agent_request(parent, "scrape", "pricing pages")
    assert dispatch
    assert dispatch.dispatched
    child = coord.get_task(dispatch.task_id)
    assert child.title == "Scrape: pricing pages"
    assert child.project == "webapp"
    assert child.priority == "high"
    assert f"Sub-agent request from task {parent}" in child.briefing
    assert child.status == "in_progress"


def test_sub_agent_request_may_only_queue_child():
    coord = _coordinator()
    parent = coord.add_task("parent", "b", "p", priority="low")
    coord.process_backlog()
    competitor = coord.add_task("urgent", "b", "p", priority="critical")

    dispatch = coord.handle_sub_agent_request(parent, "knowledge", "auth flow")
    assert dispatch.accepted
    assert not dispatch.dispatched
    assert dispatch.dispatched_task_id == competitor
    assert coord.get_task(dispatch.task_id).status == "backlog"


def test_sub_agent_request_rejected_at_capacity():
    coord = _coordinator(max_concurrent_agents=1)
    parent = coord.add_task("parent", "b", "p")
    coord.process_backlog()

    dispatch = coord.handle_sub_agent_request(parent, "scrape", "q")
    assert not dispatch
    assert dispatch.task_id is None
    assert len(coord.list_tasks()) == 1


def test_sub_agent_request_validation():
    coord = _coordinator()
    with pytest.raises(ValueError):
        coord.handle_sub_agent_request("task_x", "poetry", "q")
    with pytest.raises(NotFoundError):
        coord.handle_sub_agent_request("task_x", "scrape", "q")


def test_update_config_validates():
    coord = _coordinator()
    coord.update_config({"max_concurrent_agents": 2})
    coord.update_config(auto_qc=False)
    config = coord.get_config()
    assert config.max_concurrent_agents == 2
    assert config.auto_qc is False
    assert coord.get_state().max_agents == 2

    with pytest.raises(ValueError):
        coord.update_config({"max_agents": 3})
    with pytest.raises(ValueError):
        coord.update_config({"max_concurrent_agents": 0})


def test_get_config_returns_copy():
    coord = Coordinator(CoordinatorConfig(max_concurrent_agents=3), emit=None)
    config = coord.get_config()
    config.max_concurrent_agents = 99
    assert coord.get_config().max_concurrent_agents == 3


def test_update_task_status_override_keeps_queue_consistent():
    coord = _coordinator()
    task_id = coord.add_task("t", "b", "p")

    assert coord.update_task_status(task_id, "done") is True
    assert coord.update_task_status(task_id, "done") is False
    assert coord.get_state().queue_depth == 0

    coord.update_task_status(task_id, "backlog")
    assert coord.get_state().queue_depth == 1

    with pytest.raises(ValueError):
        coord.update_task_status(task_id, "archived")


def test_deleted_dependency_is_never_satisfied():
    coord = _coordinator()
    dep = coord.add_task("dep", "b", "p")
    child = coord.add_task("child", "b", "p", dependencies=[dep])
    coord.update_task_status(dep, "done")
    coord.delete_task(dep)

    assert coord.process_backlog() is None
    assert coord.get_task(child).status == "backlog"
    with pytest.raises(NotFoundError):
        coord.delete_task(dep)


def test_get_task_returns_snapshot():
    coord = _coordinator()
    task_id = coord.add_task("t", "b", "p")
    snapshot = coord.get_task(task_id)
    snapshot.status = "done"
    assert coord.get_task(task_id).status == "backlog"
    assert coord.get_task("task_missing") is None


def test_list_tasks_filters():
    coord = _coordinator()
    a = coord.add_task("a", "b", "alpha")
    coord.add_task("b", "b", "beta")
    coord.process_backlog()

    assert [t.id for t in coord.list_tasks(project="alpha")] == [a]
    assert [t.id for t in coord.list_tasks(status="in_progress")] == [a]


def test_mutations_persist_and_restore(store):
    coord = Coordinator(store=store, emit=None)
    task_id = coord.add_task("t", "b", "p")
    coord.process_backlog()

    saved = store.get(KIND_TASK, task_id)
    assert saved["status"] == "in_progress"

    restored = Coordinator(emit=None)
    restored.restore([TaskDefinition.from_dict(row) for row in store.list(KIND_TASK)])
    assert restored.active_agents == 1
    assert restored.get_task(task_id).status == "in_progress"


def test_clear_resets_everything():
    coord = _coordinator()
    task_id = coord.add_task("t", "b", "p")
    waiter = _to_review(coord, task_id)

    coord.clear()
    assert waiter.cancelled()
    assert coord.get_state().tasks == []
    assert coord.get_state().queue_depth == 0
