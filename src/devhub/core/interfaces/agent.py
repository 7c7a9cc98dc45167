"""On-instance agent interface.

Every instance runs a small HTTP agent (health, file write/read, exec).
Calls carry the instance id so the shared ingress can route them.
"""

from abc import ABC, abstractmethod

from devhub.core.interfaces.machine import ExecResult


class InstanceAgent(ABC):
    """Interface to the agent running inside an instance."""

    @abstractmethod
    async def health(
        self, endpoint: str, instance_id: str, *, timeout: float | None = None
    ) -> bool:
        """Liveness probe. Never raises; any failure is False."""
        ...

    @abstractmethod
    async def wait_until_healthy(
        self, endpoint: str, instance_id: str, *, deadline: float | None = None
    ) -> None:
        """Poll health until ok.

        Raises:
            ReadinessTimeoutError: Deadline elapsed first.
        """
        ...

    @abstractmethod
    async def write_file(
        self, endpoint: str, instance_id: str, path: str, content: str
    ) -> None: ...

    @abstractmethod
    async def read_file(self, endpoint: str, instance_id: str, path: str) -> str | None:
        """Read a file. None if it does not exist."""
        ...

    @abstractmethod
    async def delete_file(self, endpoint: str, instance_id: str, path: str) -> None: ...

    @abstractmethod
    async def exec(
        self,
        endpoint: str,
        instance_id: str,
        command: str,
        *,
        cwd: str | None = None,
        timeout: float | None = None,
    ) -> ExecResult: ...
