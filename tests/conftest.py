from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC, datetime

import pytest
from fastapi.testclient import TestClient

from governance_api.app.invoker import ExecutionInvoker, RetryPolicy
from governance_api.app.models import RiskLevel, StrategicContext, Task, TaskStatus, Tier
from governance_api.app.orchestrator import TaskOrchestrator
from governance_api.app.storage.memory import InMemoryGovernanceStorage
from governance_api.config.settings import Settings
from governance_api.main import create_app

ADMIN_TOKEN = "admin-override-secret"


class ScriptedGenerator:
    """Test double for the generation collaborator.

    Each queued item is either returned (str) or raised (exception). Once the
    script runs out, every call returns `default`.
    """

    def __init__(self, *responses: str | BaseException, default: str = "generated output") -> None:
        self.responses: list[str | BaseException] = list(responses)
        self.default = default
        self.calls: list[tuple[str, str]] = []

    def queue(self, *responses: str | BaseException) -> None:
        self.responses.extend(responses)

    def generate(self, prompt: str, model: str) -> str:
        self.calls.append((prompt, model))
        if self.responses:
            item = self.responses.pop(0)
            if isinstance(item, BaseException):
                raise item
            return item
        return self.default


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def make_task(
    storage: InMemoryGovernanceStorage,
    *,
    task_id: str = "task_20260101_000000_deadbeef",
    user_id: str = "user-1",
    prompt: str = "Format this code",
    risk_level: RiskLevel = RiskLevel.LOW,
    tier: Tier = Tier.CHEAP,
    status: TaskStatus = TaskStatus.CREATED,
) -> Task:
    now = datetime.now(UTC)
    return storage.create_task(
        Task(
            task_id=task_id,
            user_id=user_id,
            prompt=prompt,
            risk_level=risk_level,
            tier=tier,
            status=status,
            strategic_context=StrategicContext(),
            created_at=now,
            updated_at=now,
        )
    )


@pytest.fixture
def storage() -> InMemoryGovernanceStorage:
    return InMemoryGovernanceStorage()


@pytest.fixture
def generator() -> ScriptedGenerator:
    return ScriptedGenerator()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def invoker(
    storage: InMemoryGovernanceStorage, generator: ScriptedGenerator, sleep: RecordingSleep
) -> ExecutionInvoker:
    return ExecutionInvoker(
        storage=storage,
        generator=generator,
        retry_policy=RetryPolicy(max_attempts=3, base_delay_s=0.5, max_delay_s=8.0),
        sleep=sleep,
    )


@pytest.fixture
def orchestrator(
    storage: InMemoryGovernanceStorage, invoker: ExecutionInvoker
) -> TaskOrchestrator:
    return TaskOrchestrator(storage=storage, invoker=invoker)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        storage_backend="memory",
        generation_backoff_s=0.0,
        generation_max_backoff_s=0.0,
        admin_override_token=ADMIN_TOKEN,
    )


@pytest.fixture
def client(
    storage: InMemoryGovernanceStorage, generator: ScriptedGenerator, settings: Settings
) -> Iterator[TestClient]:
    app = create_app(storage=storage, generator=generator, settings_override=settings)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def task_factory(storage: InMemoryGovernanceStorage):
    def factory(**overrides) -> Task:
        return make_task(storage, **overrides)

    return factory


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-Admin-Token": ADMIN_TOKEN, "X-User-Id": "admin-1"}
