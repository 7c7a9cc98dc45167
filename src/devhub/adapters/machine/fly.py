"""Fly Machines implementation of MachineProvider.

Machines API: {api_url}/apps/{app}/machines
Every machine exposes its agent on agent_port behind the app's shared
ingress (https://{app}.fly.dev); requests reach a given machine through
the routing header, so the endpoint of every instance is the same URL.
"""

import asyncio
import logging
import time
from typing import Any

import httpx

from devhub.app.config import MachineConfig, get_settings
from devhub.core.errors import ProvisioningError, ReadinessTimeoutError
from devhub.core.interfaces import (
    TERMINAL_STATES,
    ExecResult,
    InstanceAgent,
    Machine,
    MachineProvider,
    MachineSpec,
)
from devhub.core.retryable import is_retryable, with_retry

logger = logging.getLogger(__name__)


class FlyMachineProvider(MachineProvider):
    """MachineProvider backed by the Fly Machines REST API."""

    def __init__(self, agent: InstanceAgent, config: MachineConfig | None = None) -> None:
        self._config = config or get_settings().machine
        self._agent = agent
        self._client: httpx.AsyncClient | None = None

    @property
    def _machines_path(self) -> str:
        return f"/apps/{self._config.app_name}/machines"

    def _get_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._config.api_token:
            headers["Authorization"] = f"Bearer {self._config.api_token}"
        return headers

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self._config.api_url,
                headers=self._get_headers(),
                timeout=self._config.api_timeout,
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    @staticmethod
    def _to_machine(data: dict[str, Any]) -> Machine:
        config = data.get("config") or {}
        return Machine(
            id=data["id"],
            name=data.get("name") or "",
            state=data.get("state") or "",
            region=data.get("region") or "",
            private_ip=data.get("private_ip"),
            created_at=data.get("created_at"),
            env={str(k): str(v) for k, v in (config.get("env") or {}).items()},
        )

    def _machine_config(self, spec: MachineSpec) -> dict[str, Any]:
        port = self._config.agent_port
        return {
            "image": spec.image,
            "guest": {
                "cpu_kind": spec.cpu_kind,
                "cpus": spec.cpus,
                "memory_mb": spec.memory_mb,
            },
            "auto_destroy": True,
            "restart": {"policy": "no"},
            "env": {"AGENT_PORT": str(port), **spec.env},
            "services": [
                {
                    "ports": [
                        {"port": 443, "handlers": ["tls", "http"]},
                        {"port": 80, "handlers": ["http"]},
                    ],
                    "protocol": "tcp",
                    "internal_port": port,
                }
            ],
        }

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def create(self, name: str, spec: MachineSpec) -> Machine:
        # Not retried: a repeated create after a lost response would conflict
        client = await self._get_client()
        started = time.monotonic()
        resp = await client.post(
            self._machines_path,
            json={
                "name": name,
                "region": self._config.region,
                "config": self._machine_config(spec),
            },
        )
        if resp.is_error:
            raise ProvisioningError(
                f"Create {name} rejected ({resp.status_code}): {resp.text[:200]}"
            )
        machine = self._to_machine(resp.json())
        logger.info(
            "Created machine %s (%s) in %.0fms",
            machine.name,
            machine.id,
            (time.monotonic() - started) * 1000,
        )
        return machine

    async def _get_once(self, machine_id: str) -> Machine | None:
        client = await self._get_client()
        resp = await client.get(f"{self._machines_path}/{machine_id}")
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        return self._to_machine(resp.json())

    async def get(self, machine_id: str) -> Machine | None:
        return await with_retry("get", lambda: self._get_once(machine_id))

    async def _list_once(self) -> list[Machine]:
        client = await self._get_client()
        resp = await client.get(self._machines_path)
        resp.raise_for_status()
        return [self._to_machine(item) for item in resp.json()]

    async def list_all(self) -> list[Machine]:
        return await with_retry("list", self._list_once)

    async def start(self, machine_id: str) -> None:
        client = await self._get_client()
        resp = await client.post(f"{self._machines_path}/{machine_id}/start")
        resp.raise_for_status()
        logger.info("Started machine %s", machine_id)

    async def stop(self, machine_id: str) -> None:
        client = await self._get_client()
        resp = await client.post(f"{self._machines_path}/{machine_id}/stop")
        resp.raise_for_status()
        logger.info("Stopped machine %s", machine_id)

    async def _destroy_once(self, machine_id: str) -> None:
        client = await self._get_client()
        resp = await client.delete(
            f"{self._machines_path}/{machine_id}", params={"force": "true"}
        )
        if resp.status_code == 404:
            logger.debug("Machine %s already gone", machine_id)
            return
        resp.raise_for_status()

    async def destroy(self, machine_id: str) -> None:
        await with_retry("destroy", lambda: self._destroy_once(machine_id))
        logger.info("Destroyed machine %s", machine_id)

    # =========================================================================
    # Observation
    # =========================================================================

    async def wait_until_started(
        self,
        machine_id: str,
        *,
        deadline: float | None = None,
    ) -> Machine:
        """Poll machine state until started.

        Transient API errors keep polling; terminal states fail fast.
        """
        budget = deadline if deadline is not None else self._config.start_deadline
        started = time.monotonic()
        expires = started + budget

        while True:
            try:
                machine = await self._get_once(machine_id)
            except Exception as exc:
                if not is_retryable(exc):
                    raise
                logger.debug("Transient error polling %s: %s", machine_id, exc)
                machine = None

            if machine is not None:
                if machine.is_started:
                    return machine
                if machine.state in TERMINAL_STATES:
                    raise ProvisioningError(
                        f"Machine {machine_id} entered state {machine.state}"
                    )

            now = time.monotonic()
            if now >= expires:
                raise ReadinessTimeoutError(
                    f"Machine {machine_id} not started after {budget:.0f}s"
                )
            interval = (
                self._config.start_poll_interval
                if now - started < self._config.start_slow_after
                else self._config.start_slow_poll_interval
            )
            await asyncio.sleep(min(interval, max(0.0, expires - now)))

    # =========================================================================
    # Exec
    # =========================================================================

    async def exec(
        self,
        endpoint: str,
        instance_id: str,
        command: str,
        *,
        cwd: str | None = None,
        timeout: float | None = None,
    ) -> ExecResult:
        return await self._agent.exec(
            endpoint, instance_id, command, cwd=cwd, timeout=timeout
        )

