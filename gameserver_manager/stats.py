"""Point-in-time resource statistics for running servers."""

import logging

from docker.errors import DockerException, NotFound

from gameserver_manager.docker_client import RuntimeClient
from gameserver_manager.errors import ContainerOperationError, ServerNotRunningError
from gameserver_manager.lifecycle import ServerStateMachine
from gameserver_manager.models import ServerStatus, StatsSnapshot

logger = logging.getLogger(__name__)


def cpu_percent(stats: dict) -> float:
    """CPU usage between the two counters a Docker stats sample carries.

    (container CPU delta / system CPU delta) x cores x 100, where cores is the
    length of ``percpu_usage`` when reported (cgroup v1) and ``online_cpus``
    otherwise.
    """
    cpu_stats = stats.get("cpu_stats") or {}
    precpu_stats = stats.get("precpu_stats") or {}
    usage = cpu_stats.get("cpu_usage") or {}
    pre_usage = precpu_stats.get("cpu_usage") or {}

    cpu_delta = usage.get("total_usage", 0) - pre_usage.get("total_usage", 0)
    system_delta = cpu_stats.get("system_cpu_usage", 0) - precpu_stats.get("system_cpu_usage", 0)
    if system_delta <= 0 or cpu_delta < 0:
        return 0.0

    percpu = usage.get("percpu_usage")
    cores = len(percpu) if percpu else cpu_stats.get("online_cpus") or 1
    return (cpu_delta / system_delta) * cores * 100.0


def snapshot_from_stats(stats: dict) -> StatsSnapshot:
    """Normalize a raw Docker stats document into a StatsSnapshot."""
    memory_stats = stats.get("memory_stats") or {}
    used = memory_stats.get("usage", 0)
    limit = memory_stats.get("limit", 0)

    networks = stats.get("networks") or {}
    rx = sum(iface.get("rx_bytes", 0) for iface in networks.values())
    tx = sum(iface.get("tx_bytes", 0) for iface in networks.values())

    return StatsSnapshot(
        cpu_percent=round(cpu_percent(stats), 2),
        memory_used_bytes=used,
        memory_limit_bytes=limit,
        memory_percent=round(used / limit * 100.0, 2) if limit else 0.0,
        network_rx_bytes=rx,
        network_tx_bytes=tx,
    )


class StatsCollector:
    """Polls the runtime for one fresh sample per request. Nothing is cached."""

    def __init__(self, state: ServerStateMachine, runtime: RuntimeClient):
        self.state = state
        self.runtime = runtime

    def collect(self, server_id: str) -> StatsSnapshot:
        """Sample resource usage of a running server.

        Raises:
            ServerNotFoundError: If the server does not exist.
            ServerNotRunningError: If the server is not running or its container is gone.
            ContainerOperationError: If the runtime call fails otherwise.
        """
        server = self.state.get(server_id)
        if server.status != ServerStatus.RUNNING or not server.container_ref:
            raise ServerNotRunningError(
                f"Server '{server_id}' is {server.status.value}, not running", server_id
            )

        try:
            stats = self.runtime.get_container_stats(server.container_ref)
        except NotFound as e:
            raise ServerNotRunningError(
                f"Container of server '{server_id}' no longer exists", server_id
            ) from e
        except DockerException as e:
            logger.error(f"Failed to collect stats for server '{server_id}': {e}")
            raise ContainerOperationError(
                f"Stats poll failed for server '{server_id}': {e}", server_id, "stats"
            ) from e

        return snapshot_from_stats(stats)
