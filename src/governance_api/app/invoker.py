"""Execution invoker: one governed call to the generation collaborator.

A successful call writes the execution row, the artifact row and the EXECUTED
status in a single guarded storage step. A failed call writes nothing except an
audit entry, and leaves the task's status untouched.
"""

from __future__ import annotations

import hashlib
import logging
import time
from collections.abc import Callable, Collection, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime

from .errors import GenerationError, TaskConflictError
from .identifiers import new_artifact_id, new_execution_id
from .llm import Generator
from .models import (
    EXECUTABLE_STATUSES,
    Artifact,
    ArtifactType,
    AuditActor,
    AuditEvent,
    Execution,
    ExecutionStatus,
    InvocationResult,
    Task,
    TaskStatus,
    Tier,
)
from .prompting import PRIOR_INTERACTIONS_LIMIT, build_generation_prompt
from .redaction import redact_payload
from .routing import model_for
from .storage.base import GovernanceStorage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for retryable generation failures."""

    max_attempts: int = 3
    base_delay_s: float = 0.5
    max_delay_s: float = 8.0

    def delay_for(self, attempt: int, exc: GenerationError) -> float:
        """Delay before the attempt that follows `attempt` (1-based)."""
        retry_after = getattr(exc, "retry_after", None)
        if retry_after is not None:
            delay = float(retry_after)
        else:
            delay = self.base_delay_s * (2 ** (attempt - 1))
        return max(0.0, min(delay, self.max_delay_s))


class ExecutionInvoker:
    def __init__(
        self,
        *,
        storage: GovernanceStorage,
        generator: Generator,
        tier_models: Mapping[Tier, str] | None = None,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.storage = storage
        self.generator = generator
        self.tier_models = dict(tier_models or {})
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep

    def invoke(
        self,
        task: Task,
        *,
        eligible: Collection[TaskStatus] = EXECUTABLE_STATUSES,
    ) -> InvocationResult:
        model = model_for(task.tier, self.tier_models)
        prior = self.storage.list_recent_outputs(
            task.user_id,
            exclude_task_id=task.task_id,
            limit=PRIOR_INTERACTIONS_LIMIT,
        )
        prompt = build_generation_prompt(task.prompt, task.context, prior)

        try:
            output, attempts = self._generate_with_retry(prompt, model, task_id=task.task_id)
        except GenerationError as exc:
            self.storage.append_audit(
                user_id=task.user_id,
                event=AuditEvent.EXECUTION_FAILED,
                actor=AuditActor.SYSTEM,
                details=redact_payload(
                    {
                        "task_id": task.task_id,
                        "model": model,
                        "error_code": exc.error_code,
                        "error": exc.message,
                        "attempts": exc.attempts,
                    }
                ),
            )
            raise

        now = datetime.now(UTC)
        artifact = Artifact(
            artifact_id=new_artifact_id(now),
            task_id=task.task_id,
            type=ArtifactType.CODE,
            content=output,
            checksum=hashlib.sha256(output.encode("utf-8")).hexdigest(),
            created_at=now,
        )
        execution = Execution(
            execution_id=new_execution_id(),
            task_id=task.task_id,
            model=model,
            artifact_id=artifact.artifact_id,
            status=ExecutionStatus.COMPLETED,
            created_at=now,
        )
        if not self.storage.record_execution(
            execution=execution, artifact=artifact, eligible=eligible
        ):
            logger.warning(
                "task_execute event=discarded task_id=%s model=%s reason=status_changed",
                task.task_id,
                model,
            )
            raise TaskConflictError(f"Task {task.task_id} is no longer eligible for execution")

        self.storage.append_audit(
            user_id=task.user_id,
            event=AuditEvent.EXECUTION_COMPLETED,
            actor=AuditActor.SYSTEM,
            details={
                "task_id": task.task_id,
                "execution_id": execution.execution_id,
                "artifact_id": artifact.artifact_id,
                "model": model,
                "attempts": attempts,
            },
        )
        logger.info(
            "task_execute event=completed task_id=%s execution_id=%s model=%s attempts=%d",
            task.task_id,
            execution.execution_id,
            model,
            attempts,
        )
        return InvocationResult(
            execution_id=execution.execution_id,
            model_used=model,
            artifact_id=artifact.artifact_id,
            output=output,
            status=ExecutionStatus.COMPLETED,
        )

    def _generate_with_retry(self, prompt: str, model: str, *, task_id: str) -> tuple[str, int]:
        policy = self.retry_policy
        for attempt in range(1, policy.max_attempts + 1):
            try:
                return self.generator.generate(prompt, model), attempt
            except GenerationError as exc:
                failure = exc
            except Exception as exc:  # noqa: BLE001
                failure = GenerationError(f"Generation failed: {exc}")
                failure.__cause__ = exc

            failure.attempts = attempt
            logger.warning(
                "generation_attempt event=failed task_id=%s model=%s attempt=%d/%d "
                "error_code=%s retryable=%s reason=%s",
                task_id,
                model,
                attempt,
                policy.max_attempts,
                failure.error_code,
                failure.retryable,
                failure.message,
            )
            if not failure.retryable or attempt >= policy.max_attempts:
                raise failure
            self._sleep(policy.delay_for(attempt, failure))

        raise GenerationError("Generation was not attempted")
