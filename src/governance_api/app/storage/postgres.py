"""PostgreSQL-backed storage with automatic table bootstrap."""

from __future__ import annotations

import json
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
    StrategicContext,
    Task,
    TaskStatus,
)


class PostgresGovernanceStorage:
    """Persist tasks, executions, artifacts and audit entries in PostgreSQL."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("GOVERNANCE_DATABASE_URL is required")
        self.database_url = database_url
        self._lock = threading.Lock()
        self._psycopg, self._dict_row, self._json_wrapper = self._load_psycopg()

    def migrate(self) -> None:
        with self._lock, self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS tasks (
                    task_id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    prompt TEXT NOT NULL,
                    context_json JSONB,
                    risk_level TEXT NOT NULL,
                    tier TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'CREATED',
                    strategic_context_json JSONB NOT NULL DEFAULT '{}'::jsonb,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_tasks_user_created
                ON tasks(user_id, created_at DESC)
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS artifacts (
                    artifact_id TEXT PRIMARY KEY,
                    task_id TEXT NOT NULL REFERENCES tasks(task_id),
                    type TEXT NOT NULL,
                    content TEXT NOT NULL,
                    checksum TEXT,
                    created_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS executions (
                    execution_id TEXT PRIMARY KEY,
                    task_id TEXT NOT NULL REFERENCES tasks(task_id),
                    model TEXT NOT NULL,
                    artifact_id TEXT UNIQUE REFERENCES artifacts(artifact_id),
                    status TEXT NOT NULL DEFAULT 'PENDING',
                    created_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_executions_task_id
                ON executions(task_id, created_at DESC)
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS audit_logs (
                    entry_id BIGSERIAL PRIMARY KEY,
                    user_id TEXT,
                    event TEXT NOT NULL,
                    actor TEXT NOT NULL,
                    details JSONB NOT NULL DEFAULT '{}'::jsonb,
                    timestamp TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_audit_logs_task_id
                ON audit_logs((details->>'task_id'))
                """)
            conn.commit()

    def create_task(self, task: Task) -> Task:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO tasks (
                    task_id,
                    user_id,
                    prompt,
                    context_json,
                    risk_level,
                    tier,
                    status,
                    strategic_context_json,
                    created_at,
                    updated_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    task.task_id,
                    task.user_id,
                    task.prompt,
                    self._json_wrapper(task.context) if task.context is not None else None,
                    task.risk_level.value,
                    task.tier.value,
                    task.status.value,
                    self._json_wrapper(task.strategic_context.model_dump(mode="json")),
                    task.created_at,
                    task.updated_at,
                ),
            )
            conn.commit()
        created = self.get_task(task.task_id)
        if created is None:
            raise RuntimeError("Failed to load created task")
        return created

    def get_task(self, task_id: str) -> Task | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM tasks WHERE task_id = %s",
                (task_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    def list_tasks(
        self,
        user_id: str,
        *,
        limit: int,
        statuses: Collection[TaskStatus] | None = None,
    ) -> list[Task]:
        query = "SELECT * FROM tasks WHERE user_id = %s"
        params: list[Any] = [user_id]
        if statuses:
            query += " AND status = ANY(%s)"
            params.append([status.value for status in statuses])
        query += " ORDER BY created_at DESC LIMIT %s"
        params.append(int(limit))
        with self._lock, self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_task(row) for row in rows]

    def transition_status(
        self,
        task_id: str,
        *,
        expected: Collection[TaskStatus],
        new: TaskStatus,
    ) -> bool:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                UPDATE tasks
                SET status = %s,
                    updated_at = %s
                WHERE task_id = %s
                  AND status = ANY(%s)
                RETURNING task_id
                """,
                (new.value, datetime.now(tz=UTC), task_id, [item.value for item in expected]),
            ).fetchone()
            conn.commit()
        return row is not None

    def record_execution(
        self,
        *,
        execution: Execution,
        artifact: Artifact,
        eligible: Collection[TaskStatus],
    ) -> bool:
        # Status guard and both inserts share one transaction; a failed guard
        # rolls back so no execution or artifact row is left behind.
        with self._lock, self._connect() as conn:
            claimed = conn.execute(
                """
                UPDATE tasks
                SET status = %s,
                    updated_at = %s
                WHERE task_id = %s
                  AND status = ANY(%s)
                RETURNING task_id
                """,
                (
                    TaskStatus.EXECUTED.value,
                    datetime.now(tz=UTC),
                    execution.task_id,
                    [item.value for item in eligible],
                ),
            ).fetchone()
            if claimed is None:
                conn.rollback()
                return False
            conn.execute(
                """
                INSERT INTO artifacts (
                    artifact_id,
                    task_id,
                    type,
                    content,
                    checksum,
                    created_at
                ) VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    artifact.artifact_id,
                    artifact.task_id,
                    artifact.type.value,
                    artifact.content,
                    artifact.checksum,
                    artifact.created_at,
                ),
            )
            conn.execute(
                """
                INSERT INTO executions (
                    execution_id,
                    task_id,
                    model,
                    artifact_id,
                    status,
                    created_at
                ) VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    execution.execution_id,
                    execution.task_id,
                    execution.model,
                    execution.artifact_id,
                    execution.status.value,
                    execution.created_at,
                ),
            )
            conn.commit()
        return True

    def list_executions(self, task_id: str) -> list[Execution]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM executions
                WHERE task_id = %s
                ORDER BY created_at DESC
                """,
                (task_id,),
            ).fetchall()
        return [self._row_to_execution(row) for row in rows]

    def get_artifact(self, artifact_id: str) -> Artifact | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM artifacts WHERE artifact_id = %s",
                (artifact_id,),
            ).fetchone()
        if row is None:
            return None
        return Artifact(
            artifact_id=row["artifact_id"],
            task_id=row["task_id"],
            type=row["type"],
            content=row["content"],
            checksum=row["checksum"],
            created_at=self._parse_datetime(row["created_at"]),
        )

    def list_recent_outputs(
        self,
        user_id: str,
        *,
        exclude_task_id: str,
        limit: int,
    ) -> list[PriorInteraction]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT t.task_id,
                       t.prompt,
                       (
                           SELECT a.content
                           FROM executions e
                           JOIN artifacts a ON a.artifact_id = e.artifact_id
                           WHERE e.task_id = t.task_id
                           ORDER BY e.created_at DESC
                           LIMIT 1
                       ) AS output
                FROM tasks t
                WHERE t.user_id = %s
                  AND t.task_id <> %s
                  AND t.status = %s
                ORDER BY t.created_at DESC
                LIMIT %s
                """,
                (user_id, exclude_task_id, TaskStatus.EXECUTED.value, int(limit)),
            ).fetchall()
        return [
            PriorInteraction(task_id=row["task_id"], prompt=row["prompt"], output=row["output"])
            for row in rows
        ]

    def append_audit(
        self,
        *,
        user_id: str | None,
        event: AuditEvent,
        actor: AuditActor,
        details: dict[str, Any],
    ) -> AuditEntry:
        now = datetime.now(tz=UTC)
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO audit_logs (user_id, event, actor, details, timestamp)
                VALUES (%s, %s, %s, %s, %s)
                RETURNING entry_id
                """,
                (user_id, event.value, actor.value, self._json_wrapper(details), now),
            ).fetchone()
            conn.commit()
        if row is None or row.get("entry_id") is None:
            raise RuntimeError("Failed to persist audit entry")
        return AuditEntry(
            entry_id=int(row["entry_id"]),
            user_id=user_id,
            event=event,
            actor=actor,
            details=details,
            timestamp=now,
        )

    def list_audit(self, task_id: str) -> list[AuditEntry]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM audit_logs
                WHERE details->>'task_id' = %s
                ORDER BY entry_id ASC
                """,
                (task_id,),
            ).fetchall()
        return [
            AuditEntry(
                entry_id=int(row["entry_id"]),
                user_id=row["user_id"],
                event=row["event"],
                actor=row["actor"],
                details=self._parse_json_optional(row["details"]) or {},
                timestamp=self._parse_datetime(row["timestamp"]),
            )
            for row in rows
        ]

    def _connect(self) -> Any:
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any]:
        try:
            import psycopg
            from psycopg.rows import dict_row
            from psycopg.types.json import Json
        except ImportError as exc:  # pragma: no cover
            raise RuntimeError(
                "PostgreSQL storage requires psycopg. "
                'Install with: python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row, Json

    @staticmethod
    def _parse_json_optional(raw: Any) -> dict[str, Any] | None:
        if raw is None:
            return None
        if isinstance(raw, str):
            parsed = json.loads(raw)
        else:
            parsed = raw
        if isinstance(parsed, dict):
            return parsed
        return None

    @staticmethod
    def _parse_datetime(raw: Any) -> datetime:
        if isinstance(raw, datetime):
            return raw
        if isinstance(raw, str):
            return datetime.fromisoformat(raw)
        raise TypeError(f"Unsupported datetime value: {type(raw)!r}")

    @classmethod
    def _row_to_task(cls, row: Any) -> Task:
        strategic = cls._parse_json_optional(row["strategic_context_json"]) or {}
        return Task(
            task_id=row["task_id"],
            user_id=row["user_id"],
            prompt=row["prompt"],
            context=cls._parse_json_optional(row["context_json"]),
            risk_level=row["risk_level"],
            tier=row["tier"],
            status=row["status"],
            strategic_context=StrategicContext.model_validate(strategic),
            created_at=cls._parse_datetime(row["created_at"]),
            updated_at=cls._parse_datetime(row["updated_at"]),
        )

    @classmethod
    def _row_to_execution(cls, row: Any) -> Execution:
        return Execution(
            execution_id=row["execution_id"],
            task_id=row["task_id"],
            model=row["model"],
            artifact_id=row["artifact_id"],
            status=row["status"],
            created_at=cls._parse_datetime(row["created_at"]),
        )
