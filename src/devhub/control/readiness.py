"""Readiness and liveness checks shared by the warm pool and the session orchestrator."""

import logging
import time

from devhub.app.metrics.collector import VM_PROVISION_TOTAL
from devhub.core.interfaces import InstanceAgent, Machine, MachineProvider
from devhub.core.logging_schema import LogEvent

logger = logging.getLogger(__name__)


async def wait_until_ready(
    provider: MachineProvider,
    agent: InstanceAgent,
    machine_id: str,
    endpoint: str,
) -> Machine:
    """Block until the machine is started and its agent answers /health.

    Both waits are bounded by their own deadlines.

    Raises:
        ProvisioningError: Machine failed or was destroyed while booting.
        ReadinessTimeoutError: A deadline elapsed.
    """
    started = time.monotonic()
    try:
        machine = await provider.wait_until_started(machine_id)
        await agent.wait_until_healthy(endpoint, machine_id)
    except Exception:
        VM_PROVISION_TOTAL.labels(result="failure").inc()
        logger.warning(
            "Instance %s never became ready",
            machine_id,
            extra={"event": LogEvent.VM_NOT_READY, "instance_id": machine_id},
        )
        raise

    VM_PROVISION_TOTAL.labels(result="success").inc()
    logger.info(
        "Instance %s ready in %.1fs",
        machine_id,
        time.monotonic() - started,
        extra={"event": LogEvent.VM_PROVISIONED, "instance_id": machine_id},
    )
    return machine


async def is_instance_live(
    provider: MachineProvider,
    agent: InstanceAgent,
    machine_id: str,
    endpoint: str,
) -> bool:
    """Fresh liveness check: provider reports the machine started and its agent answers.

    The agent alone is not enough: ingress may route to a replacement
    machine while the bound one is stopped.
    """
    try:
        machine = await provider.get(machine_id)
    except Exception as exc:
        logger.debug("Liveness lookup of %s failed: %s", machine_id, exc)
        return False
    if machine is None or not machine.is_started:
        return False
    return await agent.health(endpoint, machine_id)
