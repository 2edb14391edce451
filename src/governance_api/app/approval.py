"""Approval gate: human decisions on held and locked tasks.

Ordinary approvals only act on CREATED tasks. LOCKED tasks are refused here and
must go through `override_locked`, which callers expose behind an admin check.
APPROVE runs the task straight away; if that run fails the task is put back in
the status it was approved from and the error propagates.

A task can be left in APPROVED when the process stops between approval and the
recorded execution. The admin path also accepts APPROVED tasks: APPROVE re-runs
the execution, REJECT and SAVE_ONLY close the task. An ordinary approval cannot
tell such a task from one whose execution is still running, so it refuses them.
"""

from __future__ import annotations

import logging
from typing import assert_never

from .errors import (
    AdminOverrideRequiredError,
    InvalidRequestError,
    TaskConflictError,
    TaskNotFoundError,
)
from .invoker import ExecutionInvoker
from .models import (
    ApprovalAction,
    ApprovalResult,
    AuditActor,
    AuditEvent,
    Task,
    TaskStatus,
)
from .redaction import redact_payload
from .storage.base import GovernanceStorage

logger = logging.getLogger(__name__)

OVERRIDABLE_STATUSES: frozenset[TaskStatus] = frozenset({TaskStatus.LOCKED, TaskStatus.APPROVED})


def parse_action(action: ApprovalAction | str) -> ApprovalAction:
    try:
        return ApprovalAction(action)
    except ValueError as exc:
        allowed = ", ".join(item.value for item in ApprovalAction)
        raise InvalidRequestError(
            f"Invalid approval action {action!r}; expected one of: {allowed}"
        ) from exc


def status_after(action: ApprovalAction) -> TaskStatus:
    match action:
        case ApprovalAction.APPROVE:
            return TaskStatus.APPROVED
        case ApprovalAction.REJECT:
            return TaskStatus.REJECTED
        case ApprovalAction.SAVE_ONLY:
            return TaskStatus.SAVED
        case _:
            assert_never(action)


class ApprovalGate:
    def __init__(self, *, storage: GovernanceStorage, invoker: ExecutionInvoker) -> None:
        self.storage = storage
        self.invoker = invoker

    def decide(
        self,
        task_id: str,
        action: ApprovalAction | str,
        target: str = "production",
        *,
        user_id: str | None = None,
    ) -> ApprovalResult:
        parsed = parse_action(action)
        task = self._load(task_id)
        if task.status == TaskStatus.LOCKED:
            raise AdminOverrideRequiredError(
                f"Task {task_id} is LOCKED; an admin override is required"
            )
        if task.status != TaskStatus.CREATED:
            raise TaskConflictError(
                f"Task {task_id} cannot take action {parsed.value} in status {task.status.value}"
            )
        return self._apply(
            task,
            parsed,
            target,
            from_status=TaskStatus.CREATED,
            event=AuditEvent(f"TASK_{parsed.value}"),
            actor=AuditActor.USER,
            user_id=user_id,
        )

    def override_locked(
        self,
        task_id: str,
        action: ApprovalAction | str,
        target: str = "production",
        *,
        admin_user_id: str | None = None,
    ) -> ApprovalResult:
        parsed = parse_action(action)
        task = self._load(task_id)
        if task.status not in OVERRIDABLE_STATUSES:
            raise TaskConflictError(
                f"Task {task_id} is {task.status.value}; admin override only applies to "
                "LOCKED or APPROVED tasks"
            )
        logger.warning(
            "task_override event=requested task_id=%s action=%s status=%s admin_user_id=%s",
            task_id,
            parsed.value,
            task.status.value,
            admin_user_id,
        )
        return self._apply(
            task,
            parsed,
            target,
            from_status=task.status,
            event=AuditEvent(f"ADMIN_OVERRIDE_{parsed.value}"),
            actor=AuditActor.ADMIN,
            user_id=admin_user_id,
        )

    def _load(self, task_id: str) -> Task:
        task = self.storage.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def _apply(
        self,
        task: Task,
        action: ApprovalAction,
        target: str,
        *,
        from_status: TaskStatus,
        event: AuditEvent,
        actor: AuditActor,
        user_id: str | None,
    ) -> ApprovalResult:
        new_status = status_after(action)
        if not self.storage.transition_status(task.task_id, expected={from_status}, new=new_status):
            raise TaskConflictError(
                f"Task {task.task_id} changed status before {action.value} could be applied"
            )
        self.storage.append_audit(
            user_id=user_id,
            event=event,
            actor=actor,
            details=redact_payload(
                {
                    "task_id": task.task_id,
                    "action": action.value,
                    "target": target,
                    "from_status": from_status.value,
                }
            ),
        )
        logger.info(
            "task_approval event=applied task_id=%s action=%s status=%s target=%s",
            task.task_id,
            action.value,
            new_status.value,
            target,
        )
        if action is not ApprovalAction.APPROVE:
            return ApprovalResult(
                task_id=task.task_id, action=action, status=new_status, target=target
            )

        try:
            invocation = self.invoker.invoke(task, eligible={TaskStatus.APPROVED})
        except Exception as exc:
            self._revert(task, from_status, exc, user_id=user_id, actor=actor)
            raise

        return ApprovalResult(
            task_id=task.task_id,
            action=action,
            status=TaskStatus.EXECUTED,
            target=target,
            execution_id=invocation.execution_id,
            output=invocation.output,
        )

    def _revert(
        self,
        task: Task,
        from_status: TaskStatus,
        exc: Exception,
        *,
        user_id: str | None,
        actor: AuditActor,
    ) -> None:
        # A re-run from APPROVED has nothing to go back to.
        if from_status == TaskStatus.APPROVED:
            logger.warning(
                "task_approval event=execution_failed task_id=%s status=APPROVED",
                task.task_id,
            )
            return
        reverted = self.storage.transition_status(
            task.task_id, expected={TaskStatus.APPROVED}, new=from_status
        )
        logger.warning(
            "task_approval event=execution_failed task_id=%s reverted_to=%s reverted=%s",
            task.task_id,
            from_status.value,
            reverted,
        )
        if not reverted:
            return
        self.storage.append_audit(
            user_id=user_id,
            event=AuditEvent.APPROVAL_REVERTED,
            actor=actor,
            details=redact_payload(
                {
                    "task_id": task.task_id,
                    "from_status": TaskStatus.APPROVED.value,
                    "to_status": from_status.value,
                    "error_code": getattr(exc, "error_code", type(exc).__name__),
                }
            ),
        )
