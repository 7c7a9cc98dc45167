"""In-memory fakes for the control plane's collaborators."""

import asyncio
import itertools
from collections import Counter
from datetime import UTC, datetime
from typing import Any

from devhub.core.errors import BatchLimitExceededError, ProvisioningError, ReadinessTimeoutError
from devhub.core.interfaces import (
    ExecResult,
    FileStore,
    InstanceAgent,
    Machine,
    MachineProvider,
    MachineSpec,
    MachineState,
    ProjectFile,
    Session,
    SessionStore,
)

ENDPOINT = "https://devhub-workspaces.test"


# =============================================================================
# Fakes
# =============================================================================


class FakeAgent(InstanceAgent):
    """Agent fake holding a per-instance file tree.

    - unhealthy: instance ids whose health probe fails
    - never_healthy: instance ids whose wait_until_healthy times out
    - fail_writes: path -> remaining failures (-1 = always fails)
    - exec_results: command substring -> ExecResult
    """

    def __init__(self) -> None:
        self.files: dict[str, dict[str, str]] = {}
        self.unhealthy: set[str] = set()
        self.never_healthy: set[str] = set()
        self.fail_writes: dict[str, int] = {}
        self.exec_results: dict[str, ExecResult] = {}
        self.write_counts: Counter[tuple[str, str]] = Counter()
        self.commands: list[dict[str, Any]] = []
        self.health_calls = 0
        self.health_delay = 0.0
        self.write_delay = 0.0
        self.in_flight = 0
        self.max_in_flight = 0

    def tree(self, instance_id: str) -> dict[str, str]:
        return self.files.setdefault(instance_id, {})

    async def health(
        self, endpoint: str, instance_id: str, *, timeout: float | None = None
    ) -> bool:
        self.health_calls += 1
        await asyncio.sleep(self.health_delay)
        return instance_id not in self.unhealthy

    async def wait_until_healthy(
        self, endpoint: str, instance_id: str, *, deadline: float | None = None
    ) -> None:
        await asyncio.sleep(0)
        if instance_id in self.never_healthy:
            raise ReadinessTimeoutError(f"Agent on {instance_id} not healthy")

    async def write_file(
        self, endpoint: str, instance_id: str, path: str, content: str
    ) -> None:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.write_delay)
            remaining = self.fail_writes.get(path, 0)
            if remaining:
                if remaining > 0:
                    self.fail_writes[path] = remaining - 1
                raise ConnectionError(f"write of {path} failed")
            self.tree(instance_id)[path] = content
            self.write_counts[(instance_id, path)] += 1
        finally:
            self.in_flight -= 1

    async def read_file(self, endpoint: str, instance_id: str, path: str) -> str | None:
        return self.tree(instance_id).get(path)

    async def delete_file(self, endpoint: str, instance_id: str, path: str) -> None:
        self.tree(instance_id).pop(path, None)

    async def exec(
        self,
        endpoint: str,
        instance_id: str,
        command: str,
        *,
        cwd: str | None = None,
        timeout: float | None = None,
    ) -> ExecResult:
        self.commands.append(
            {"instance_id": instance_id, "command": command, "cwd": cwd, "timeout": timeout}
        )
        for fragment, result in self.exec_results.items():
            if fragment in command:
                return result
        tree = self.tree(instance_id)
        if command.startswith("find . -type f"):
            listed = [
                f"./{p}"
                for p in tree
                if not p.startswith(("node_modules/", ".git/"))
            ]
            return ExecResult(stdout="\n".join(listed))
        if command.startswith("test -d "):
            marker = command.removeprefix("test -d ").strip("'")
            present = any(p.startswith(f"{marker}/") for p in tree)
            return ExecResult(exit_code=0 if present else 1)
        return ExecResult()

    def commands_for(self, instance_id: str) -> list[str]:
        return [c["command"] for c in self.commands if c["instance_id"] == instance_id]


class FakeMachineProvider(MachineProvider):
    """Provider fake: machines boot instantly unless listed in never_ready."""

    def __init__(self, agent: FakeAgent) -> None:
        self.agent = agent
        self.machines: dict[str, Machine] = {}
        self.created: list[tuple[str, MachineSpec]] = []
        self.destroyed: list[str] = []
        self.started: list[str] = []
        self.never_ready: set[str] = set()
        self.fail_create = False
        self.fail_destroy = False
        self.create_delay = 0.0
        self._ids = itertools.count(1)

    def add(self, name: str, state: str = MachineState.STARTED, **kwargs: Any) -> Machine:
        machine_id = kwargs.pop("id", None) or f"m{next(self._ids)}"
        machine = Machine(id=machine_id, name=name, state=state, **kwargs)
        self.machines[machine_id] = machine
        return machine

    def set_state(self, machine_id: str, state: str) -> None:
        self.machines[machine_id] = self.machines[machine_id].model_copy(
            update={"state": state}
        )

    async def create(self, name: str, spec: MachineSpec) -> Machine:
        await asyncio.sleep(self.create_delay)
        if self.fail_create:
            raise ProvisioningError(f"Creating {name} failed")
        self.created.append((name, spec))
        return self.add(
            name,
            state=MachineState.CREATED,
            env=dict(spec.env),
            created_at=datetime.now(UTC).isoformat(),
        )

    async def get(self, machine_id: str) -> Machine | None:
        return self.machines.get(machine_id)

    async def list_all(self) -> list[Machine]:
        return list(self.machines.values())

    async def start(self, machine_id: str) -> None:
        self.started.append(machine_id)
        self.set_state(machine_id, MachineState.STARTED)

    async def stop(self, machine_id: str) -> None:
        self.set_state(machine_id, MachineState.STOPPED)

    async def destroy(self, machine_id: str) -> None:
        if self.fail_destroy:
            raise ConnectionError(f"destroy of {machine_id} failed")
        self.destroyed.append(machine_id)
        self.machines.pop(machine_id, None)

    async def wait_until_started(
        self, machine_id: str, *, deadline: float | None = None
    ) -> Machine:
        await asyncio.sleep(0)
        if machine_id in self.never_ready:
            raise ReadinessTimeoutError(f"Machine {machine_id} not started")
        if machine_id not in self.machines:
            raise ProvisioningError(f"Machine {machine_id} disappeared")
        self.set_state(machine_id, MachineState.STARTED)
        return self.machines[machine_id]

    async def exec(
        self,
        endpoint: str,
        instance_id: str,
        command: str,
        *,
        cwd: str | None = None,
        timeout: float | None = None,
    ) -> ExecResult:
        return await self.agent.exec(endpoint, instance_id, command, cwd=cwd, timeout=timeout)


class InMemoryFileStore(FileStore):
    """File store fake. fail_put_many: 1-based put_many call numbers that fail."""

    def __init__(self) -> None:
        self.files: dict[str, dict[str, ProjectFile]] = {}
        self.metadata: dict[str, dict[str, Any]] = {}
        self.put_many_calls: list[int] = []
        self.fail_put_many: set[int] = set()

    def seed(self, project_id: str, files: dict[str, str]) -> None:
        for path, content in files.items():
            self.files.setdefault(project_id, {})[path] = ProjectFile(
                path=path, content=content, size=len(content)
            )

    async def get_file(self, project_id: str, path: str) -> ProjectFile | None:
        return self.files.get(project_id, {}).get(path)

    async def put_file(self, project_id: str, path: str, content: str) -> ProjectFile:
        stored = ProjectFile(
            path=path, content=content, size=len(content), updated_at=datetime.now(UTC)
        )
        self.files.setdefault(project_id, {})[path] = stored
        return stored

    async def delete_file(self, project_id: str, path: str) -> bool:
        return self.files.get(project_id, {}).pop(path, None) is not None

    async def list_files(self, project_id: str) -> list[ProjectFile]:
        return list(self.files.get(project_id, {}).values())

    async def list_paths(self, project_id: str) -> set[str]:
        return set(self.files.get(project_id, {}))

    async def put_many(self, project_id: str, files: list[tuple[str, str]]) -> int:
        if len(files) > self.BATCH_LIMIT:
            raise BatchLimitExceededError(len(files), self.BATCH_LIMIT)
        self.put_many_calls.append(len(files))
        if len(self.put_many_calls) in self.fail_put_many:
            raise ConnectionError("transaction aborted")
        for path, content in files:
            await self.put_file(project_id, path, content)
        return len(files)

    async def get_metadata(self, project_id: str) -> dict[str, Any]:
        return dict(self.metadata.get(project_id, {}))

    async def set_metadata(self, project_id: str, values: dict[str, Any]) -> None:
        self.metadata.setdefault(project_id, {}).update(values)


class InMemorySessionStore(SessionStore):
    def __init__(self) -> None:
        self.sessions: dict[str, Session] = {}

    async def get(self, project_id: str) -> Session | None:
        return self.sessions.get(project_id)

    async def put(self, session: Session) -> None:
        self.sessions[session.project_id] = session

    async def delete(self, project_id: str) -> None:
        self.sessions.pop(project_id, None)

    async def list_all(self) -> list[Session]:
        return list(self.sessions.values())
