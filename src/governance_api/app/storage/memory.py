"""In-memory storage backend for tests and local runs."""

from __future__ import annotations

import threading
from collections.abc import Collection
from datetime import UTC, datetime
from typing import Any

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


class InMemoryGovernanceStorage:
    """Dict-backed implementation. One lock guards every read and makes guarded writes atomic."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tasks: dict[str, Task] = {}
        self._executions: list[Execution] = []
        self._artifacts: dict[str, Artifact] = {}
        self._audit: list[AuditEntry] = []

    def migrate(self) -> None:
        return None

    def create_task(self, task: Task) -> Task:
        with self._lock:
            if task.task_id in self._tasks:
                raise KeyError(f"Task {task.task_id} already exists")
            self._tasks[task.task_id] = task.model_copy(deep=True)
        return task.model_copy(deep=True)

    def get_task(self, task_id: str) -> Task | None:
        with self._lock:
            task = self._tasks.get(task_id)
            return task.model_copy(deep=True) if task else None

    def list_tasks(
        self,
        user_id: str,
        *,
        limit: int,
        statuses: Collection[TaskStatus] | None = None,
    ) -> list[Task]:
        wanted = set(statuses) if statuses else None
        with self._lock:
            matching = [
                task
                for task in reversed(self._tasks.values())
                if task.user_id == user_id and (wanted is None or task.status in wanted)
            ]
        # Stable sort over newest-inserted-first keeps same-timestamp rows newest first.
        matching.sort(key=lambda task: task.created_at, reverse=True)
        return [task.model_copy(deep=True) for task in matching[:limit]]

    def transition_status(
        self,
        task_id: str,
        *,
        expected: Collection[TaskStatus],
        new: TaskStatus,
    ) -> bool:
        with self._lock:
            current = self._tasks.get(task_id)
            if current is None or current.status not in expected:
                return False
            self._tasks[task_id] = current.model_copy(
                update={"status": new, "updated_at": datetime.now(UTC)}
            )
            return True

    def record_execution(
        self,
        *,
        execution: Execution,
        artifact: Artifact,
        eligible: Collection[TaskStatus],
    ) -> bool:
        with self._lock:
            current = self._tasks.get(execution.task_id)
            if current is None or current.status not in eligible:
                return False
            self._artifacts[artifact.artifact_id] = artifact.model_copy(deep=True)
            self._executions.append(execution.model_copy(deep=True))
            self._tasks[execution.task_id] = current.model_copy(
                update={"status": TaskStatus.EXECUTED, "updated_at": datetime.now(UTC)}
            )
            return True

    def list_executions(self, task_id: str) -> list[Execution]:
        with self._lock:
            return [
                execution.model_copy(deep=True)
                for execution in reversed(self._executions)
                if execution.task_id == task_id
            ]

    def get_artifact(self, artifact_id: str) -> Artifact | None:
        with self._lock:
            artifact = self._artifacts.get(artifact_id)
            return artifact.model_copy(deep=True) if artifact else None

    def list_recent_outputs(
        self,
        user_id: str,
        *,
        exclude_task_id: str,
        limit: int,
    ) -> list[PriorInteraction]:
        with self._lock:
            executed = [
                task
                for task in reversed(self._tasks.values())
                if task.user_id == user_id
                and task.task_id != exclude_task_id
                and task.status == TaskStatus.EXECUTED
            ]
            executed.sort(key=lambda task: task.created_at, reverse=True)
            interactions: list[PriorInteraction] = []
            for task in executed[:limit]:
                output = None
                for execution in reversed(self._executions):
                    if execution.task_id != task.task_id or execution.artifact_id is None:
                        continue
                    artifact = self._artifacts.get(execution.artifact_id)
                    output = artifact.content if artifact else None
                    break
                interactions.append(
                    PriorInteraction(task_id=task.task_id, prompt=task.prompt, output=output)
                )
        return interactions

    def append_audit(
        self,
        *,
        user_id: str | None,
        event: AuditEvent,
        actor: AuditActor,
        details: dict[str, Any],
    ) -> AuditEntry:
        with self._lock:
            entry = AuditEntry(
                entry_id=len(self._audit) + 1,
                user_id=user_id,
                event=event,
                actor=actor,
                details=dict(details),
                timestamp=datetime.now(UTC),
            )
            self._audit.append(entry)
        return entry.model_copy(deep=True)

    def list_audit(self, task_id: str) -> list[AuditEntry]:
        with self._lock:
            return [
                entry.model_copy(deep=True)
                for entry in self._audit
                if entry.details.get("task_id") == task_id
            ]
