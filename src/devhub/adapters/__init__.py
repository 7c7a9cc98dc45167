"""Adapters module - infrastructure implementations."""

from devhub.adapters.machine.fly import FlyMachineProvider
from devhub.adapters.repository.github import GitHubArchiveClient
from devhub.adapters.storage.postgres import PostgresFileStore

__all__ = [
    "FlyMachineProvider",
    "GitHubArchiveClient",
    "PostgresFileStore",
]
