"""Opaque, time-sortable identifiers for tasks, executions and artifacts."""

from __future__ import annotations

import time
from datetime import UTC, datetime
from uuid import uuid4


def new_task_id(now: datetime | None = None) -> str:
    stamp = (now or datetime.now(UTC)).strftime("%Y%m%d_%H%M%S")
    return f"task_{stamp}_{uuid4().hex[:8]}"


def new_execution_id() -> str:
    return f"exec_{int(time.time())}_{uuid4().hex[:6]}"


def new_artifact_id(now: datetime | None = None) -> str:
    stamp = (now or datetime.now(UTC)).strftime("%Y%m%d_%H%M%S")
    return f"artifact_{stamp}_{uuid4().hex[:8]}"
