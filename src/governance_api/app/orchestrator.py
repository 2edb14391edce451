"""Task orchestrator: risk-tiered submission pipeline plus read/approval operations.

Submission runs as a small LangGraph workflow:

    classify_risk -> route_tier -> evaluate_strategy -> persist_task
        -> execute_silently   (LOW)
        -> hold_for_approval  (MEDIUM, or LOW with silent execution disabled)
        -> lock_task          (HIGH)

Only the risk level picks the branch. The strategic context is stored with the
task but nothing downstream reads it.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any, Literal, TypedDict

from langgraph.graph import END, StateGraph

from . import risk as risk_classifier
from . import strategy
from .approval import ApprovalGate
from .errors import InvalidRequestError, TaskNotFoundError
from .identifiers import new_task_id
from .invoker import ExecutionInvoker
from .models import (
    ApprovalAction,
    ApprovalResult,
    AuditActor,
    AuditEntry,
    AuditEvent,
    PreferredTier,
    RiskLevel,
    StrategicContext,
    Task,
    TaskCreationResult,
    TaskDetail,
    TaskStatus,
    TaskSummary,
    Tier,
)
from .redaction import redact_payload
from .routing import resolve_tier
from .storage.base import GovernanceStorage

logger = logging.getLogger(__name__)

ELEVATED_EXPLANATION = "Multi-file change detected. Review before execution."
HELD_LOW_RISK_EXPLANATION = "Automatic execution is disabled. Review before execution."
APPROVAL_PROMPT = "Approve to execute. Reject to cancel."
HALT_REASON = "Production secrets or policy violation detected. Admin approval required."

DEFAULT_LIST_LIMIT = 20
MAX_LIST_LIMIT = 100

PolicyBranch = Literal["silent", "elevated", "locked"]


class SubmissionState(TypedDict, total=False):
    user_id: str
    prompt: str
    context: dict[str, Any] | None
    preferred_tier: str
    risk_level: RiskLevel
    matched_marker: str | None
    tier: Tier
    dependencies: list[str]
    strategic_context: StrategicContext
    task: Task
    result: TaskCreationResult


class TaskOrchestrator:
    def __init__(
        self,
        *,
        storage: GovernanceStorage,
        invoker: ExecutionInvoker,
        silent_execution_enabled: bool = True,
        max_prompt_chars: int = 20_000,
    ) -> None:
        self.storage = storage
        self.invoker = invoker
        self.gate = ApprovalGate(storage=storage, invoker=invoker)
        self.silent_execution_enabled = silent_execution_enabled
        self.max_prompt_chars = max_prompt_chars
        self._workflow = self._build_workflow()

    def create_task(
        self,
        user_id: str,
        prompt: str,
        context: dict[str, Any] | None = None,
        preferred_tier: PreferredTier | str = PreferredTier.AUTO,
    ) -> TaskCreationResult:
        self._validate_submission(user_id, prompt, context)
        try:
            preference = PreferredTier(preferred_tier)
        except ValueError as exc:
            raise InvalidRequestError(f"Unknown preferred tier {preferred_tier!r}") from exc
        final_state: SubmissionState = self._workflow.invoke(
            {
                "user_id": user_id,
                "prompt": prompt,
                "context": context,
                "preferred_tier": preference.value,
            }
        )
        return final_state["result"]

    def approve_task(
        self,
        task_id: str,
        action: ApprovalAction | str,
        target: str = "production",
        *,
        user_id: str | None = None,
    ) -> ApprovalResult:
        return self.gate.decide(task_id, action, target, user_id=user_id)

    def override_locked_task(
        self,
        task_id: str,
        action: ApprovalAction | str,
        *,
        admin_user_id: str | None,
        target: str = "production",
    ) -> ApprovalResult:
        return self.gate.override_locked(task_id, action, target, admin_user_id=admin_user_id)

    def get_task(self, task_id: str) -> TaskDetail | None:
        task = self.storage.get_task(task_id)
        if task is None:
            return None
        executions = self.storage.list_executions(task_id)
        output = None
        if executions and executions[0].artifact_id:
            artifact = self.storage.get_artifact(executions[0].artifact_id)
            output = artifact.content if artifact else None
        return TaskDetail(**task.model_dump(), executions=executions, output=output)

    def list_tasks(
        self,
        user_id: str,
        limit: int = DEFAULT_LIST_LIMIT,
        statuses: Iterable[TaskStatus | str] | None = None,
    ) -> list[TaskSummary]:
        bounded = max(1, min(MAX_LIST_LIMIT, int(limit)))
        wanted = _parse_statuses(statuses) if statuses is not None else None
        tasks = self.storage.list_tasks(user_id, limit=bounded, statuses=wanted or None)
        return [
            TaskSummary(
                task_id=task.task_id,
                prompt=task.prompt,
                risk_level=task.risk_level,
                tier=task.tier,
                status=task.status,
                created_at=task.created_at,
            )
            for task in tasks
        ]

    def get_audit_trail(self, task_id: str) -> list[AuditEntry]:
        if self.storage.get_task(task_id) is None:
            raise TaskNotFoundError(task_id)
        return self.storage.list_audit(task_id)

    def _validate_submission(
        self, user_id: str, prompt: str, context: dict[str, Any] | None
    ) -> None:
        if not isinstance(user_id, str) or not user_id.strip():
            raise InvalidRequestError("User id is required")
        if not isinstance(prompt, str) or not prompt.strip():
            raise InvalidRequestError("Prompt is required")
        if len(prompt) > self.max_prompt_chars:
            raise InvalidRequestError(
                f"Prompt exceeds the maximum of {self.max_prompt_chars} characters"
            )
        if context is not None and not isinstance(context, dict):
            raise InvalidRequestError("Context must be a JSON object")

    def _build_workflow(self):
        graph = StateGraph(SubmissionState)

        graph.add_node("classify_risk", self._classify_risk)
        graph.add_node("route_tier", self._route_tier)
        graph.add_node("evaluate_strategy", self._evaluate_strategy)
        graph.add_node("persist_task", self._persist_task)
        graph.add_node("execute_silently", self._execute_silently)
        graph.add_node("hold_for_approval", self._hold_for_approval)
        graph.add_node("lock_task", self._lock_task)

        graph.set_entry_point("classify_risk")
        graph.add_edge("classify_risk", "route_tier")
        graph.add_edge("route_tier", "evaluate_strategy")
        graph.add_edge("evaluate_strategy", "persist_task")
        graph.add_conditional_edges(
            "persist_task",
            self._select_policy,
            {
                "silent": "execute_silently",
                "elevated": "hold_for_approval",
                "locked": "lock_task",
            },
        )
        graph.add_edge("execute_silently", END)
        graph.add_edge("hold_for_approval", END)
        graph.add_edge("lock_task", END)

        return graph.compile()

    def _classify_risk(self, state: SubmissionState) -> SubmissionState:
        level, marker = risk_classifier.explain_classification(state["prompt"])
        return {"risk_level": level, "matched_marker": marker}

    def _route_tier(self, state: SubmissionState) -> SubmissionState:
        tier = resolve_tier(state["risk_level"], state.get("preferred_tier", PreferredTier.AUTO))
        return {"tier": tier}

    def _evaluate_strategy(self, state: SubmissionState) -> SubmissionState:
        dependencies = strategy.infer_dependencies(state["prompt"])
        return {
            "dependencies": dependencies,
            "strategic_context": strategy.evaluate(
                state["prompt"], state["risk_level"], dependencies
            ),
        }

    def _persist_task(self, state: SubmissionState) -> SubmissionState:
        now = datetime.now(UTC)
        task = self.storage.create_task(
            Task(
                task_id=new_task_id(now),
                user_id=state["user_id"],
                prompt=state["prompt"],
                context=state.get("context"),
                risk_level=state["risk_level"],
                tier=state["tier"],
                status=TaskStatus.CREATED,
                strategic_context=state["strategic_context"],
                created_at=now,
                updated_at=now,
            )
        )
        self.storage.append_audit(
            user_id=task.user_id,
            event=AuditEvent.TASK_CREATED,
            actor=AuditActor.SYSTEM,
            details=redact_payload(
                {
                    "task_id": task.task_id,
                    "risk_level": task.risk_level.value,
                    "tier": task.tier.value,
                    "matched_marker": state.get("matched_marker"),
                    "inferred_dependencies": state.get("dependencies", []),
                }
            ),
        )
        logger.info(
            "task_create event=persisted task_id=%s risk_level=%s tier=%s",
            task.task_id,
            task.risk_level.value,
            task.tier.value,
        )
        return {"task": task}

    def _select_policy(self, state: SubmissionState) -> PolicyBranch:
        level = state["task"].risk_level
        if level == RiskLevel.HIGH:
            return "locked"
        if level == RiskLevel.MEDIUM:
            return "elevated"
        return "silent" if self.silent_execution_enabled else "elevated"

    def _execute_silently(self, state: SubmissionState) -> SubmissionState:
        task = state["task"]
        try:
            invocation = self.invoker.invoke(task)
        except Exception as exc:  # noqa: BLE001
            # Low-risk work never interrupts the caller; the task stays CREATED.
            logger.warning(
                "task_create event=silent_execution_failed task_id=%s error=%s reason=%s",
                task.task_id,
                type(exc).__name__,
                exc,
            )
            return {
                "result": TaskCreationResult(
                    task_id=task.task_id,
                    risk_level=task.risk_level,
                    assigned_tier=task.tier,
                    status=TaskStatus.CREATED,
                )
            }
        return {
            "result": TaskCreationResult(
                task_id=task.task_id,
                risk_level=task.risk_level,
                assigned_tier=task.tier,
                status=TaskStatus.EXECUTED,
                output=invocation.output,
                execution_id=invocation.execution_id,
                auto_executed=True,
            )
        }

    def _hold_for_approval(self, state: SubmissionState) -> SubmissionState:
        task = state["task"]
        explanation = (
            ELEVATED_EXPLANATION
            if task.risk_level == RiskLevel.MEDIUM
            else HELD_LOW_RISK_EXPLANATION
        )
        return {
            "result": TaskCreationResult(
                task_id=task.task_id,
                risk_level=task.risk_level,
                assigned_tier=task.tier,
                status=TaskStatus.CREATED,
                ui_interruption="side_panel",
                requires_approval=True,
                explanation=explanation,
                approval_prompt=APPROVAL_PROMPT,
            )
        }

    def _lock_task(self, state: SubmissionState) -> SubmissionState:
        task = state["task"]
        locked = self.storage.transition_status(
            task.task_id, expected={TaskStatus.CREATED}, new=TaskStatus.LOCKED
        )
        if not locked:
            # A freshly created task cannot have moved yet; fail closed regardless.
            raise RuntimeError(f"Task {task.task_id} could not be locked")
        self.storage.append_audit(
            user_id=task.user_id,
            event=AuditEvent.TASK_LOCKED,
            actor=AuditActor.SYSTEM,
            details=redact_payload(
                {
                    "task_id": task.task_id,
                    "matched_marker": state.get("matched_marker"),
                    "halt_reason": HALT_REASON,
                }
            ),
        )
        logger.warning(
            "task_create event=locked task_id=%s matched_marker=%s",
            task.task_id,
            state.get("matched_marker"),
        )
        return {
            "result": TaskCreationResult(
                task_id=task.task_id,
                risk_level=task.risk_level,
                assigned_tier=task.tier,
                status=TaskStatus.LOCKED,
                ui_interruption="modal_blocking",
                halt_reason=HALT_REASON,
                requires_admin=True,
                kill_switch_visible=True,
            )
        }


def _parse_statuses(statuses: Iterable[TaskStatus | str]) -> set[TaskStatus]:
    parsed: set[TaskStatus] = set()
    for raw in statuses:
        value = str(raw).strip().upper()
        if not value:
            continue
        try:
            parsed.add(TaskStatus(value))
        except ValueError as exc:
            raise InvalidRequestError(f"Unknown task status filter {raw!r}") from exc
    return parsed
