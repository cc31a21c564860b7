from __future__ import annotations

from pathlib import Path

import yaml

from conftest import FakeRuntime
from gameserver_manager.events import EventBus
from gameserver_manager.locks import ServerLocks
from gameserver_manager.manager import GameServerManager, open_manager
from gameserver_manager.models import EventType, ServerEvent, ServerStatus
from gameserver_manager.store import InMemoryBackupStore, InMemoryScriptStore, InMemoryServerStore


def test_open_manager_loads_config_and_closes_runtime(
    tmp_path: Path,
    servers: InMemoryServerStore,
    scripts: InMemoryScriptStore,
    backups: InMemoryBackupStore,
) -> None:
    config_path = tmp_path / "config.yml"
    config_path.write_text(
        yaml.safe_dump(
            {
                "servers_root": str(tmp_path / "servers"),
                "backups_root": str(tmp_path / "backups"),
                "image_prefix": "arena",
            }
        )
    )
    runtime = FakeRuntime()

    with open_manager(servers, scripts, backups, config_path=str(config_path), runtime=runtime) as m:
        server = m.start_server("alpha")
        assert runtime.containers[server.container_ref]["name"] == "arena-alpha"
        assert (tmp_path / "servers" / "alpha" / "Dockerfile").is_file()

    assert runtime.closed is True


def test_unsubscribe_stops_delivery(manager: GameServerManager) -> None:
    received: list[ServerEvent] = []
    unsubscribe = manager.subscribe(received.append)
    manager.start_server("alpha")

    unsubscribe()
    manager.stop_server("alpha")

    assert [e.type for e in received] == [EventType.SERVER_START]


def test_failing_listener_does_not_fail_operation(manager: GameServerManager) -> None:
    def explode(event: ServerEvent) -> None:
        raise RuntimeError("listener bug")

    manager.subscribe(explode)

    assert manager.start_server("alpha").status == ServerStatus.RUNNING


def test_event_payload() -> None:
    bus = EventBus()

    event = bus.emit(EventType.BACKUP_DELETE, "Backup x deleted", "alpha", backup_id="x")

    assert event.server_id == "alpha"
    assert event.metadata == {"backup_id": "x"}
    assert event.timestamp.tzinfo is not None


def test_servers_are_independent(manager: GameServerManager, runtime: FakeRuntime) -> None:
    manager.start_server("alpha")
    manager.start_server("beta")

    manager.stop_server("alpha")

    assert manager.get_server("alpha").status == ServerStatus.STOPPED
    assert manager.get_server("beta").status == ServerStatus.RUNNING
    assert len(runtime.containers) == 2


def test_server_locks_are_per_server() -> None:
    locks = ServerLocks()

    assert locks.get("alpha") is locks.get("alpha")
    assert locks.get("alpha") is not locks.get("beta")
    with locks.hold("alpha"):
        assert locks.get("beta").acquire(blocking=False)
        locks.get("beta").release()
        assert not locks.get("alpha").acquire(blocking=False)
