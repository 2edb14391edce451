"""Storage interface for governed tasks, executions, artifacts and audit entries.

Backends only promise single-statement atomicity plus two guarded writes:
`transition_status` and `record_execution` re-check the task's current status
inside the same atomic step that changes it, returning False instead of writing
when the status moved underneath the caller.
"""

from __future__ import annotations

from collections.abc import Collection
from typing import Any, Protocol

from governance_api.app.models import (
    Artifact,
    AuditActor,
    AuditEntry,
    AuditEvent,
    Execution,
    PriorInteraction,
    Task,
    TaskStatus,
)


class GovernanceStorage(Protocol):
    def migrate(self) -> None: ...

    def create_task(self, task: Task) -> Task: ...

    def get_task(self, task_id: str) -> Task | None: ...

    def list_tasks(
        self,
        user_id: str,
        *,
        limit: int,
        statuses: Collection[TaskStatus] | None = None,
    ) -> list[Task]: ...

    def transition_status(
        self,
        task_id: str,
        *,
        expected: Collection[TaskStatus],
        new: TaskStatus,
    ) -> bool: ...

    def record_execution(
        self,
        *,
        execution: Execution,
        artifact: Artifact,
        eligible: Collection[TaskStatus],
    ) -> bool: ...

    def list_executions(self, task_id: str) -> list[Execution]: ...

    def get_artifact(self, artifact_id: str) -> Artifact | None: ...

    def list_recent_outputs(
        self,
        user_id: str,
        *,
        exclude_task_id: str,
        limit: int,
    ) -> list[PriorInteraction]: ...

    def append_audit(
        self,
        *,
        user_id: str | None,
        event: AuditEvent,
        actor: AuditActor,
        details: dict[str, Any],
    ) -> AuditEntry: ...

    def list_audit(self, task_id: str) -> list[AuditEntry]: ...
