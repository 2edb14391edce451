"""Pydantic models shared across the API, orchestrator, invoker and storage.

Beginner terms used in this file:
- StrEnum: an enum whose members are also plain strings, so they serialize as
  their value ("LOW", "cheap") and compare equal to it.
- Model: a typed schema class used for validation/serialization.
- Field(default_factory=...): creates a fresh default object per instance.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class RiskLevel(StrEnum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class Tier(StrEnum):
    CHEAP = "cheap"
    MID = "mid"
    HIGH = "high"


class PreferredTier(StrEnum):
    """Tier requested by the caller; AUTO defers to the tier router."""

    AUTO = "auto"
    CHEAP = "cheap"
    MID = "mid"
    HIGH = "high"


class TaskStatus(StrEnum):
    CREATED = "CREATED"
    APPROVED = "APPROVED"
    EXECUTED = "EXECUTED"
    REJECTED = "REJECTED"
    SAVED = "SAVED"
    LOCKED = "LOCKED"


class ExecutionStatus(StrEnum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ApprovalAction(StrEnum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    SAVE_ONLY = "SAVE_ONLY"


class ArtifactType(StrEnum):
    CODE = "CODE"


class AuditActor(StrEnum):
    SYSTEM = "SYSTEM"
    USER = "USER"
    ADMIN = "ADMIN"


class AuditEvent(StrEnum):
    TASK_CREATED = "TASK_CREATED"
    TASK_LOCKED = "TASK_LOCKED"
    TASK_APPROVE = "TASK_APPROVE"
    TASK_REJECT = "TASK_REJECT"
    TASK_SAVE_ONLY = "TASK_SAVE_ONLY"
    ADMIN_OVERRIDE_APPROVE = "ADMIN_OVERRIDE_APPROVE"
    ADMIN_OVERRIDE_REJECT = "ADMIN_OVERRIDE_REJECT"
    ADMIN_OVERRIDE_SAVE_ONLY = "ADMIN_OVERRIDE_SAVE_ONLY"
    APPROVAL_REVERTED = "APPROVAL_REVERTED"
    EXECUTION_COMPLETED = "EXECUTION_COMPLETED"
    EXECUTION_FAILED = "EXECUTION_FAILED"


# Statuses the approval gate and invoker may still act on.
EXECUTABLE_STATUSES: frozenset[TaskStatus] = frozenset({TaskStatus.CREATED, TaskStatus.APPROVED})


class StrategicContext(BaseModel):
    """Advisory metadata stored with a task for audit and explanation only."""

    model_config = ConfigDict(frozen=True)

    execution_bias: str = "production-safe"
    approach: str = "one_optimal_path"
    suppress_exploration: bool = True
    dependencies: list[str] = Field(default_factory=list)
    roi_assessment: str = "medium"
    scope_creep_risk: str = "low"
    long_term_cost: str = "minimal"


class Task(BaseModel):
    """Canonical task record. Risk level and tier never change after creation."""

    task_id: str
    user_id: str
    prompt: str
    context: dict[str, Any] | None = None
    risk_level: RiskLevel
    tier: Tier
    status: TaskStatus = TaskStatus.CREATED
    strategic_context: StrategicContext = Field(default_factory=StrategicContext)
    created_at: datetime
    updated_at: datetime


class Execution(BaseModel):
    execution_id: str
    task_id: str
    model: str
    artifact_id: str | None = None
    status: ExecutionStatus = ExecutionStatus.PENDING
    created_at: datetime


class Artifact(BaseModel):
    artifact_id: str
    task_id: str
    type: ArtifactType = ArtifactType.CODE
    content: str
    checksum: str | None = None
    created_at: datetime


class AuditEntry(BaseModel):
    entry_id: int
    user_id: str | None = None
    event: AuditEvent
    actor: AuditActor
    details: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime


class TaskDetail(Task):
    """Task plus its executions (newest first) and the latest output, if any."""

    executions: list[Execution] = Field(default_factory=list)
    output: str | None = None


class TaskSummary(BaseModel):
    """Row shape for task listings."""

    task_id: str
    prompt: str
    risk_level: RiskLevel
    tier: Tier
    status: TaskStatus
    created_at: datetime


class PriorInteraction(BaseModel):
    """A previously executed task of the same user, used to build prompt history."""

    task_id: str
    prompt: str
    output: str | None = None


class InvocationResult(BaseModel):
    execution_id: str
    model_used: str
    artifact_id: str
    output: str
    status: ExecutionStatus = ExecutionStatus.COMPLETED


class TaskCreationResult(BaseModel):
    """Result of create_task. Optional fields depend on the policy branch taken."""

    task_id: str
    risk_level: RiskLevel
    assigned_tier: Tier
    status: TaskStatus
    # Silent branch.
    output: str | None = None
    execution_id: str | None = None
    auto_executed: bool | None = None
    # Elevated and locked branches.
    ui_interruption: str | None = None
    requires_approval: bool | None = None
    explanation: str | None = None
    approval_prompt: str | None = None
    halt_reason: str | None = None
    requires_admin: bool | None = None
    kill_switch_visible: bool | None = None


class ApprovalResult(BaseModel):
    task_id: str
    action: ApprovalAction
    status: TaskStatus
    target: str
    execution_id: str | None = None
    output: str | None = None


class CreateTaskRequest(BaseModel):
    """Request body for POST /tasks."""

    prompt: str = Field(min_length=1)
    context: dict[str, Any] | None = None
    # Plain string, validated by the orchestrator like `ApprovalRequest.action`.
    preferred_tier: str = PreferredTier.AUTO.value


class ApprovalRequest(BaseModel):
    """Request body for the approval and admin-override endpoints."""

    # Kept as a plain string so unknown actions reach the gate and are
    # reported with the engine's own error shape.
    action: str
    target: str = "production"


class TaskListResponse(BaseModel):
    tasks: list[TaskSummary]


class AuditTrailResponse(BaseModel):
    task_id: str
    entries: list[AuditEntry]
