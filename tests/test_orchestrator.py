from __future__ import annotations

import re
import threading

import pytest

from governance_api.app.errors import (
    InvalidRequestError,
    RateLimitError,
    TaskConflictError,
    TaskNotFoundError,
)
from governance_api.app.models import (
    ApprovalAction,
    AuditEvent,
    RiskLevel,
    TaskStatus,
    Tier,
)
from governance_api.app.orchestrator import (
    APPROVAL_PROMPT,
    ELEVATED_EXPLANATION,
    HALT_REASON,
    HELD_LOW_RISK_EXPLANATION,
    TaskOrchestrator,
)


def test_low_risk_task_executes_silently(orchestrator, storage, generator) -> None:
    generator.queue("formatted")

    result = orchestrator.create_task("user-1", "Format this code")

    assert result.risk_level == RiskLevel.LOW
    assert result.assigned_tier == Tier.CHEAP
    assert result.status == TaskStatus.EXECUTED
    assert result.output == "formatted"
    assert result.auto_executed is True
    assert result.requires_approval is None
    assert generator.calls[0][1] == "gpt-3.5-turbo"

    detail = orchestrator.get_task(result.task_id)
    assert detail.status == TaskStatus.EXECUTED
    assert [execution.execution_id for execution in detail.executions] == [result.execution_id]
    assert detail.output == "formatted"


def test_low_risk_failure_is_silent(orchestrator, storage, generator) -> None:
    generator.queue(*(RateLimitError("busy") for _ in range(3)))

    result = orchestrator.create_task("user-1", "Format this code")

    assert result.status == TaskStatus.CREATED
    assert result.output is None
    assert result.execution_id is None
    assert result.requires_approval is None
    assert storage.list_executions(result.task_id) == []
    assert storage.get_task(result.task_id).status == TaskStatus.CREATED


def test_medium_risk_task_waits_for_approval(orchestrator, storage, generator) -> None:
    result = orchestrator.create_task("user-1", "Refactor the auth module")

    assert result.risk_level == RiskLevel.MEDIUM
    assert result.assigned_tier == Tier.MID
    assert result.status == TaskStatus.CREATED
    assert result.ui_interruption == "side_panel"
    assert result.requires_approval is True
    assert result.explanation == ELEVATED_EXPLANATION
    assert result.approval_prompt == APPROVAL_PROMPT
    assert generator.calls == []
    assert storage.list_executions(result.task_id) == []


def test_high_risk_task_is_locked(orchestrator, storage, generator) -> None:
    result = orchestrator.create_task("user-1", "Delete production database")

    assert result.risk_level == RiskLevel.HIGH
    assert result.assigned_tier == Tier.HIGH
    assert result.status == TaskStatus.LOCKED
    assert result.ui_interruption == "modal_blocking"
    assert result.halt_reason == HALT_REASON
    assert result.requires_admin is True
    assert result.kill_switch_visible is True
    assert generator.calls == []
    assert storage.get_task(result.task_id).status == TaskStatus.LOCKED

    events = [entry.event for entry in orchestrator.get_audit_trail(result.task_id)]
    assert events == [AuditEvent.TASK_CREATED, AuditEvent.TASK_LOCKED]


def test_preferred_tier_changes_model_not_policy(orchestrator, generator) -> None:
    low = orchestrator.create_task("user-1", "Format this code", preferred_tier="high")
    assert low.risk_level == RiskLevel.LOW
    assert low.assigned_tier == Tier.HIGH
    assert low.status == TaskStatus.EXECUTED
    assert generator.calls[-1][1] == "gpt-4-turbo"

    high = orchestrator.create_task("user-1", "Rotate the API key", preferred_tier="cheap")
    assert high.assigned_tier == Tier.CHEAP
    assert high.status == TaskStatus.LOCKED


def test_disabled_silent_execution_holds_low_risk(storage, invoker, generator) -> None:
    orchestrator = TaskOrchestrator(
        storage=storage, invoker=invoker, silent_execution_enabled=False
    )

    result = orchestrator.create_task("user-1", "Format this code")

    assert result.status == TaskStatus.CREATED
    assert result.requires_approval is True
    assert result.explanation == HELD_LOW_RISK_EXPLANATION
    assert generator.calls == []

    approved = orchestrator.approve_task(result.task_id, "APPROVE")
    assert approved.status == TaskStatus.EXECUTED


@pytest.mark.parametrize("prompt", ["", "   \n\t"])
def test_blank_prompt_is_rejected(orchestrator, storage, prompt) -> None:
    with pytest.raises(InvalidRequestError):
        orchestrator.create_task("user-1", prompt)
    assert orchestrator.list_tasks("user-1") == []


def test_overlong_prompt_is_rejected(storage, invoker) -> None:
    orchestrator = TaskOrchestrator(storage=storage, invoker=invoker, max_prompt_chars=10)
    with pytest.raises(InvalidRequestError, match="maximum of 10"):
        orchestrator.create_task("user-1", "Format this code please")


def test_invalid_submission_inputs(orchestrator) -> None:
    with pytest.raises(InvalidRequestError):
        orchestrator.create_task("", "Format this code")
    with pytest.raises(InvalidRequestError):
        orchestrator.create_task("user-1", "Format this code", context=["not", "a", "dict"])
    with pytest.raises(InvalidRequestError, match="preferred tier"):
        orchestrator.create_task("user-1", "Format this code", preferred_tier="premium")
    assert orchestrator.list_tasks("user-1") == []


def test_strategic_context_is_stored(orchestrator, storage) -> None:
    result = orchestrator.create_task("user-1", "Refactor and overhaul the config loader")

    context = storage.get_task(result.task_id).strategic_context
    assert context.dependencies == ["May require test updates"]
    assert context.scope_creep_risk == "high"
    assert context.long_term_cost == "moderate"


def test_context_is_forwarded_to_generation(orchestrator, generator) -> None:
    context = {"context_files": [{"path": "main.py", "content": "x=1"}]}

    orchestrator.create_task("user-1", "Format this code", context=context)

    assert "--- main.py ---\nx=1" in generator.calls[0][0]


def test_risk_and_tier_never_change(orchestrator, storage) -> None:
    result = orchestrator.create_task("user-1", "Update the README badges")
    orchestrator.approve_task(result.task_id, ApprovalAction.APPROVE)

    task = storage.get_task(result.task_id)
    assert task.status == TaskStatus.EXECUTED
    assert task.risk_level == RiskLevel.MEDIUM
    assert task.tier == Tier.MID


def test_list_tasks_newest_first_with_filters(orchestrator) -> None:
    executed = orchestrator.create_task("user-1", "Format this code")
    held = orchestrator.create_task("user-1", "Refactor the auth module")
    locked = orchestrator.create_task("user-1", "Delete production database")
    orchestrator.create_task("user-2", "Format that code")

    listed = orchestrator.list_tasks("user-1")
    assert [item.task_id for item in listed] == [locked.task_id, held.task_id, executed.task_id]

    only_locked = orchestrator.list_tasks("user-1", statuses=["locked"])
    assert [item.task_id for item in only_locked] == [locked.task_id]

    assert len(orchestrator.list_tasks("user-1", limit=0)) == 1
    assert len(orchestrator.list_tasks("user-1", limit=1000)) == 3

    with pytest.raises(InvalidRequestError):
        orchestrator.list_tasks("user-1", statuses=["DONE"])


def test_get_task_and_audit_for_unknown_task(orchestrator) -> None:
    assert orchestrator.get_task("task_missing") is None
    with pytest.raises(TaskNotFoundError):
        orchestrator.get_audit_trail("task_missing")


def test_concurrent_approvals_execute_once(orchestrator, storage, generator) -> None:
    result = orchestrator.create_task("user-1", "Refactor the auth module")
    outcomes: list[object] = []
    lock = threading.Lock()

    def approve() -> None:
        try:
            outcome = orchestrator.approve_task(result.task_id, "APPROVE")
        except TaskConflictError as exc:
            outcome = exc
        with lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=approve) for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    successes = [item for item in outcomes if not isinstance(item, TaskConflictError)]
    assert len(successes) == 1
    assert successes[0].status == TaskStatus.EXECUTED
    assert len(outcomes) == 5
    assert len(storage.list_executions(result.task_id)) == 1
    assert len(generator.calls) == 1


def test_identifier_formats(orchestrator, storage) -> None:
    result = orchestrator.create_task("user-1", "Format this code")

    assert re.fullmatch(r"task_\d{8}_\d{6}_[0-9a-f]{8}", result.task_id)
    assert re.fullmatch(r"exec_\d+_[0-9a-f]{6}", result.execution_id)
    [execution] = storage.list_executions(result.task_id)
    assert re.fullmatch(r"artifact_\d{8}_\d{6}_[0-9a-f]{8}", execution.artifact_id)
