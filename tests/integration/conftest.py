from __future__ import annotations

import os

import pytest

from governance_api.app.storage.postgres import PostgresGovernanceStorage


@pytest.fixture
def storage() -> PostgresGovernanceStorage:
    if os.getenv("RUN_POSTGRES_INTEGRATION_TESTS") != "1":
        pytest.skip(
            "Set RUN_POSTGRES_INTEGRATION_TESTS=1 and GOVERNANCE_DATABASE_URL "
            "to run integration tests against PostgreSQL."
        )
    database_url = os.getenv("GOVERNANCE_DATABASE_URL")
    if not database_url:
        pytest.skip("GOVERNANCE_DATABASE_URL is required for integration tests.")

    postgres = PostgresGovernanceStorage(database_url)
    postgres.migrate()
    return postgres
