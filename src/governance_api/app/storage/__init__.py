"""Storage backends for the governance engine."""

from governance_api.app.storage.base import GovernanceStorage
from governance_api.app.storage.memory import InMemoryGovernanceStorage
from governance_api.app.storage.postgres import PostgresGovernanceStorage

__all__ = [
    "GovernanceStorage",
    "InMemoryGovernanceStorage",
    "PostgresGovernanceStorage",
]
