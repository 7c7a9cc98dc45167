"""Instance naming conventions.

Session instances:  ws-{project_id}               (truncated)
Pool instances:     ws-pool-{millis}-{token}      (truncated)

Both live under the workspace prefix. Reconciliation only adopts
session-named instances; pool-named ones belong to the warm pool.
"""

import secrets
import time

from devhub.app.config import PoolConfig, SessionConfig
from devhub.core.interfaces.machine import Machine


class ResourceNaming:
    """Centralized naming conventions for instances."""

    def __init__(self, session: SessionConfig, pool: PoolConfig) -> None:
        self._prefix = session.name_prefix
        self._max_length = session.name_max_length
        self._pool_prefix = pool.name_prefix

    @property
    def prefix(self) -> str:
        return self._prefix

    @property
    def pool_prefix(self) -> str:
        return self._pool_prefix

    def machine_name(self, project_id: str) -> str:
        return f"{self._prefix}{project_id}"[: self._max_length]

    def pool_machine_name(self) -> str:
        pool_id = f"{int(time.time() * 1000)}-{secrets.token_hex(3)}"
        return f"{self._pool_prefix}{pool_id}"[: self._max_length]

    def is_workspace_name(self, name: str) -> bool:
        return name.startswith(self._prefix) and not self.is_pool_name(name)

    def is_pool_name(self, name: str) -> bool:
        return name.startswith(self._pool_prefix)

    def project_id_from_machine(self, machine: Machine) -> str | None:
        # Names are truncated; the env var carries the full id
        if project_id := machine.env.get("PROJECT_ID"):
            return project_id
        if not machine.name.startswith(self._prefix):
            return None
        return machine.name[len(self._prefix) :] or None
