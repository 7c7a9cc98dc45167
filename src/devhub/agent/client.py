"""Agent HTTP client for the control plane.

Talks to the agent process inside each instance. All instances share one
ingress; the routing header pins each request to a single instance.

Agent API:
    GET  /health            -> {"status": "ok"}
    POST /file              {path, content}
    GET  /file?path=...     -> {content} (404 if missing)
    POST /delete            {path}
    POST /exec              {command, cwd} -> {stdout, stderr, exitCode}
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Literal

import httpx

from devhub.app.config import AgentConfig, MachineConfig, get_settings
from devhub.core.errors import ReadinessTimeoutError
from devhub.core.interfaces import ExecResult, InstanceAgent

logger = logging.getLogger(__name__)


class HttpAgentClient(InstanceAgent):
    """HTTP client for the on-instance agent API."""

    def __init__(
        self,
        config: AgentConfig | None = None,
        machine_config: MachineConfig | None = None,
    ) -> None:
        settings = get_settings()
        self._config = config or settings.agent
        self._routing_header = (machine_config or settings.machine).routing_header
        self._client: httpx.AsyncClient | None = None

    def _get_headers(self, instance_id: str) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            self._routing_header: instance_id,
        }

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self._config.file_timeout)
        return self._client

    async def _request(
        self,
        method: Literal["get", "post"],
        endpoint: str,
        path: str,
        instance_id: str,
        *,
        on_404: Literal["raise", "none"] = "raise",
        timeout: float | None = None,
        **kwargs: Any,
    ) -> httpx.Response | None:
        """Make HTTP request to one instance's agent.

        Args:
            method: HTTP method (get, post).
            endpoint: Agent ingress base URL.
            path: URL path.
            instance_id: Machine ID used for routing.
            on_404: "raise" to raise HTTPStatusError, "none" to return None.
            timeout: Request timeout (uses default if not specified).
            **kwargs: Additional arguments for httpx request.
        """
        client = await self._get_client()
        if timeout:
            kwargs["timeout"] = timeout

        resp = await getattr(client, method)(
            f"{endpoint.rstrip('/')}{path}",
            headers=self._get_headers(instance_id),
            **kwargs,
        )

        if resp.status_code == 404 and on_404 == "none":
            return None

        resp.raise_for_status()
        return resp

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    # =========================================================================
    # Liveness
    # =========================================================================

    async def health(
        self, endpoint: str, instance_id: str, *, timeout: float | None = None
    ) -> bool:
        try:
            resp = await self._request(
                "get",
                endpoint,
                "/health",
                instance_id,
                timeout=timeout or self._config.health_timeout,
            )
        except (httpx.HTTPError, asyncio.TimeoutError) as exc:
            logger.debug("Health probe failed for %s: %s", instance_id, exc)
            return False

        try:
            data = resp.json() if resp is not None else None
        except ValueError:
            return False
        return isinstance(data, dict) and data.get("status") == "ok"

    async def wait_until_healthy(
        self, endpoint: str, instance_id: str, *, deadline: float | None = None
    ) -> None:
        """Poll /health until ok or deadline.

        Polls every poll_interval, backing off to slow_poll_interval once
        slow_after seconds have elapsed.
        """
        budget = deadline if deadline is not None else self._config.ready_deadline
        started = time.monotonic()
        expires = started + budget

        while True:
            if await self.health(endpoint, instance_id):
                logger.info(
                    "Agent ready on %s after %.1fs",
                    instance_id,
                    time.monotonic() - started,
                )
                return

            now = time.monotonic()
            if now >= expires:
                raise ReadinessTimeoutError(
                    f"Agent on {instance_id} not healthy after {budget:.0f}s"
                )
            interval = (
                self._config.poll_interval
                if now - started < self._config.slow_after
                else self._config.slow_poll_interval
            )
            await asyncio.sleep(min(interval, max(0.0, expires - now)))

    # =========================================================================
    # Files
    # =========================================================================

    async def write_file(
        self, endpoint: str, instance_id: str, path: str, content: str
    ) -> None:
        await self._request(
            "post",
            endpoint,
            "/file",
            instance_id,
            json={"path": path, "content": content},
        )

    async def read_file(self, endpoint: str, instance_id: str, path: str) -> str | None:
        resp = await self._request(
            "get",
            endpoint,
            "/file",
            instance_id,
            on_404="none",
            params={"path": path},
        )
        if resp is None:
            return None
        return resp.json().get("content")

    async def delete_file(self, endpoint: str, instance_id: str, path: str) -> None:
        await self._request(
            "post",
            endpoint,
            "/delete",
            instance_id,
            json={"path": path},
        )

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
        payload: dict[str, Any] = {"command": command}
        if cwd:
            payload["cwd"] = cwd

        resp = await self._request(
            "post",
            endpoint,
            "/exec",
            instance_id,
            json=payload,
            timeout=timeout or self._config.exec_timeout,
        )
        data = resp.json() if resp is not None else {}
        if not isinstance(data, dict):
            data = {}
        exit_code = data.get("exitCode")
        return ExecResult(
            stdout=data.get("stdout") or "",
            stderr=data.get("stderr") or "",
            # An answer without an exit code is not a success
            exit_code=int(exit_code) if exit_code is not None else -1,
        )
