from __future__ import annotations

import tarfile
import threading
from collections.abc import Generator
from pathlib import Path
from typing import IO, Any, Optional

import pytest
from docker.errors import APIError, BuildError, NotFound

from gameserver_manager.manager import GameServerManager
from gameserver_manager.models import (
    BackupRecord,
    ManagerConfig,
    ScriptKind,
    ScriptRecord,
    ServerDescriptor,
    ServerEvent,
)
from gameserver_manager.store import InMemoryBackupStore, InMemoryScriptStore, InMemoryServerStore

DOCKERFILE_CONTENT = "FROM alpine:3.19\nCOPY start.sh /start.sh\nCMD [\"/start.sh\"]\n"
STARTUP_CONTENT = "#!/bin/sh\nexec ./server --port \"$SERVER_PORT\"\n"

SAMPLE_STATS: dict[str, Any] = {
    "cpu_stats": {
        "cpu_usage": {"total_usage": 400, "percpu_usage": [200, 200]},
        "system_cpu_usage": 2000,
        "online_cpus": 2,
    },
    "precpu_stats": {
        "cpu_usage": {"total_usage": 200},
        "system_cpu_usage": 1000,
    },
    "memory_stats": {"usage": 256 * 1024 * 1024, "limit": 1024 * 1024 * 1024},
    "networks": {
        "eth0": {"rx_bytes": 100, "tx_bytes": 50},
        "eth1": {"rx_bytes": 10, "tx_bytes": 5},
    },
}


class FakeRuntime:
    """In-process stand-in for DockerClient.

    Raises the same docker.errors exceptions the real client lets through.
    ``build_gate`` can be set to an Event to hold builds until it is set, and
    ``build_gates`` holds one queued Event per upcoming build;
    ``build_started`` is set whenever a build begins.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._next = 0
        self.containers: dict[str, dict[str, Any]] = {}
        self.builds: list[tuple[str, list[str]]] = []
        self.created: list[str] = []
        self.build_error: Optional[Exception] = None
        self.stop_error: Optional[Exception] = None
        self.build_gate: Optional[threading.Event] = None
        self.build_gates: list[threading.Event] = []
        self.build_started = threading.Event()
        self.build_calls = 0
        self.stats: dict[str, Any] = SAMPLE_STATS
        self.closed = False

    def _resolve(self, container_ref: str) -> str:
        if container_ref in self.containers:
            return container_ref
        for ref, container in self.containers.items():
            if container["name"] == container_ref:
                return ref
        raise NotFound(f"No such container: {container_ref}")

    def build_image(self, context: IO[bytes], tag: str) -> str:
        with tarfile.open(fileobj=context, mode="r") as tar:
            names = sorted(tar.getnames())
        self.build_calls += 1
        with self._lock:
            gate = self.build_gates.pop(0) if self.build_gates else None
        self.build_started.set()
        if gate is not None:
            gate.wait(timeout=5)
        if self.build_gate is not None:
            self.build_gate.wait(timeout=5)
        if self.build_error is not None:
            raise self.build_error
        with self._lock:
            self.builds.append((tag, names))
        return f"Successfully tagged {tag}"

    def create_container(self, image: str, name: str, **options: Any) -> str:
        with self._lock:
            if any(c["name"] == name for c in self.containers.values()):
                raise APIError(f"Conflict. The container name \"/{name}\" is already in use")
            self._next += 1
            ref = f"{self._next:064x}"
            self.containers[ref] = {
                "name": name,
                "image": image,
                "options": options,
                "running": False,
            }
            self.created.append(ref)
            return ref

    def start_container(self, container_ref: str) -> None:
        with self._lock:
            self.containers[self._resolve(container_ref)]["running"] = True

    def stop_container(self, container_ref: str, timeout: int = 10) -> None:
        if self.stop_error is not None:
            raise self.stop_error
        with self._lock:
            self.containers[self._resolve(container_ref)]["running"] = False

    def remove_container(self, container_ref: str, force: bool = True) -> None:
        with self._lock:
            del self.containers[self._resolve(container_ref)]

    def get_container_stats(self, container_ref: str) -> dict:
        with self._lock:
            self._resolve(container_ref)
        return self.stats

    def get_container_logs(self, container_ref: str, tail: int = 100) -> str:
        with self._lock:
            name = self.containers[self._resolve(container_ref)]["name"]
        return "\n".join(f"{name} line {i}" for i in range(tail))

    def close(self) -> None:
        self.closed = True


class FlakyBackupStore(InMemoryBackupStore):
    """Backup store that fails every call touching ``broken_server``."""

    def __init__(self, broken_server: str):
        super().__init__()
        self.broken_server = broken_server

    def list_for_server(self, server_id: str) -> list[BackupRecord]:
        if server_id == self.broken_server:
            raise OSError("database unavailable")
        return super().list_for_server(server_id)

    def create(self, backup: BackupRecord) -> BackupRecord:
        if backup.server_id == self.broken_server:
            raise OSError("database unavailable")
        return super().create(backup)


def failing_build(message: str = "exit code 1") -> BuildError:
    return BuildError(
        message,
        [{"stream": "Step 1/3 : FROM alpine:3.19\n"}, {"error": "returned a non-zero code: 1\n"}],
    )


def make_server(server_id: str, **fields: Any) -> ServerDescriptor:
    defaults: dict[str, Any] = {
        "id": server_id,
        "name": f"server-{server_id}",
        "game_type": "minecraft",
        "port": 25565,
    }
    defaults.update(fields)
    return ServerDescriptor(**defaults)


def make_scripts(server_id: str) -> list[ScriptRecord]:
    return [
        ScriptRecord(server_id=server_id, kind=ScriptKind.DOCKERFILE, content=DOCKERFILE_CONTENT),
        ScriptRecord(server_id=server_id, kind=ScriptKind.STARTUP, content=STARTUP_CONTENT),
    ]


@pytest.fixture()
def config(tmp_path: Path) -> ManagerConfig:
    return ManagerConfig(
        servers_root=tmp_path / "servers",
        backups_root=tmp_path / "backups",
        stop_timeout=1,
        max_backups_per_server=3,
        worker_threads=2,
    )


@pytest.fixture()
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture()
def servers() -> InMemoryServerStore:
    return InMemoryServerStore([make_server("alpha"), make_server("beta", port=25566)])


@pytest.fixture()
def scripts() -> InMemoryScriptStore:
    return InMemoryScriptStore(make_scripts("alpha") + make_scripts("beta"))


@pytest.fixture()
def backups() -> InMemoryBackupStore:
    return InMemoryBackupStore()


@pytest.fixture()
def manager(
    config: ManagerConfig,
    servers: InMemoryServerStore,
    scripts: InMemoryScriptStore,
    backups: InMemoryBackupStore,
    runtime: FakeRuntime,
) -> Generator[GameServerManager, None, None]:
    m = GameServerManager(config, servers, scripts, backups, runtime=runtime)
    yield m
    if runtime.build_gate is not None:
        runtime.build_gate.set()
    for gate in runtime.build_gates:
        gate.set()
    m.close()


@pytest.fixture()
def events(manager: GameServerManager) -> list[ServerEvent]:
    received: list[ServerEvent] = []
    manager.subscribe(received.append)
    return received
