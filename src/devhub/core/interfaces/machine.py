"""Machine provider interface.

The control plane never talks to the hypervisor directly. Everything it
needs from the compute layer goes through MachineProvider:
- lifecycle (create, start, stop, destroy)
- observation (get, list, wait_until_started)
- command execution on a running instance
"""

from abc import ABC, abstractmethod
from enum import StrEnum

from pydantic import BaseModel, Field


class MachineState(StrEnum):
    """Provider-reported machine states."""

    CREATED = "created"
    STARTING = "starting"
    STARTED = "started"
    STOPPING = "stopping"
    STOPPED = "stopped"
    SUSPENDED = "suspended"
    FAILED = "failed"
    DESTROYING = "destroying"
    DESTROYED = "destroyed"


# Waiting for "started" is pointless once a machine reaches one of these
TERMINAL_STATES = frozenset({MachineState.FAILED, MachineState.DESTROYED})


class Machine(BaseModel):
    """Provider view of one compute instance."""

    id: str
    name: str
    state: str
    region: str = ""
    private_ip: str | None = None
    created_at: str | None = None
    env: dict[str, str] = Field(default_factory=dict)

    model_config = {"frozen": True}

    @property
    def is_started(self) -> bool:
        return self.state == MachineState.STARTED

    @property
    def is_gone(self) -> bool:
        return self.state in (MachineState.DESTROYING, MachineState.DESTROYED)


class MachineSpec(BaseModel):
    """Requested shape of a new machine."""

    image: str
    cpus: int = 2
    memory_mb: int = 2048
    cpu_kind: str = "shared"
    env: dict[str, str] = Field(default_factory=dict)

    model_config = {"frozen": True}


class ExecResult(BaseModel):
    """Result of a command run on an instance."""

    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0

    model_config = {"frozen": True}

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class MachineProvider(ABC):
    """Interface to the compute provider."""

    @abstractmethod
    async def create(self, name: str, spec: MachineSpec) -> Machine:
        """Create and boot a machine. Returns as soon as the provider accepts it."""
        ...

    @abstractmethod
    async def get(self, machine_id: str) -> Machine | None:
        """Get a machine. None if it does not exist."""
        ...

    @abstractmethod
    async def list_all(self) -> list[Machine]:
        """List every machine in the application."""
        ...

    @abstractmethod
    async def start(self, machine_id: str) -> None: ...

    @abstractmethod
    async def stop(self, machine_id: str) -> None: ...

    @abstractmethod
    async def destroy(self, machine_id: str) -> None:
        """Destroy a machine. Destroying a missing machine is not an error."""
        ...

    @abstractmethod
    async def wait_until_started(
        self,
        machine_id: str,
        *,
        deadline: float | None = None,
    ) -> Machine:
        """Poll until the machine reports started.

        Raises:
            ProvisioningError: Machine entered failed or destroyed state.
            ReadinessTimeoutError: Deadline elapsed first.
        """
        ...

    @abstractmethod
    async def exec(
        self,
        endpoint: str,
        instance_id: str,
        command: str,
        *,
        cwd: str | None = None,
        timeout: float | None = None,
    ) -> ExecResult:
        """Run a shell command on the instance."""
        ...
