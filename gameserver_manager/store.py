"""Persistence collaborators used by the engine.

The engine never talks to a database directly. It is handed repositories
with plain create/find/update/delete semantics keyed by id and filterable by
server id. The in-memory implementations here back the test suite and any
embedder that keeps records in process.
"""

import threading
from typing import Any, Optional, Protocol

from gameserver_manager.models import (
    BackupRecord,
    ScriptKind,
    ScriptRecord,
    ServerDescriptor,
)


class ServerRepository(Protocol):
    def get(self, server_id: str) -> Optional[ServerDescriptor]: ...

    def list_all(self, backup_enabled: Optional[bool] = None) -> list[ServerDescriptor]: ...

    def create(self, server: ServerDescriptor) -> ServerDescriptor: ...

    def update(self, server_id: str, **fields: Any) -> ServerDescriptor: ...

    def delete(self, server_id: str) -> None: ...


class ScriptRepository(Protocol):
    def get_active(self, server_id: str, kind: ScriptKind) -> Optional[ScriptRecord]: ...


class BackupRepository(Protocol):
    def get(self, backup_id: str) -> Optional[BackupRecord]: ...

    def list_for_server(self, server_id: str) -> list[BackupRecord]: ...

    def create(self, backup: BackupRecord) -> BackupRecord: ...

    def update(self, backup_id: str, **fields: Any) -> BackupRecord: ...

    def delete(self, backup_id: str) -> None: ...


class InMemoryServerStore:
    """Thread-safe dict-backed ServerRepository. Returns copies, never live objects."""

    def __init__(self, servers: Optional[list[ServerDescriptor]] = None):
        self._lock = threading.Lock()
        self._servers: dict[str, ServerDescriptor] = {}
        for server in servers or []:
            self._servers[server.id] = server.model_copy()

    def get(self, server_id: str) -> Optional[ServerDescriptor]:
        with self._lock:
            server = self._servers.get(server_id)
            return server.model_copy() if server else None

    def list_all(self, backup_enabled: Optional[bool] = None) -> list[ServerDescriptor]:
        with self._lock:
            return [
                server.model_copy()
                for server in self._servers.values()
                if backup_enabled is None or server.backup_enabled == backup_enabled
            ]

    def create(self, server: ServerDescriptor) -> ServerDescriptor:
        with self._lock:
            if server.id in self._servers:
                raise KeyError(f"Server '{server.id}' already exists")
            self._servers[server.id] = server.model_copy()
            return server.model_copy()

    def update(self, server_id: str, **fields: Any) -> ServerDescriptor:
        with self._lock:
            if server_id not in self._servers:
                raise KeyError(f"Server '{server_id}' not found")
            updated = self._servers[server_id].model_copy(update=fields)
            self._servers[server_id] = updated
            return updated.model_copy()

    def delete(self, server_id: str) -> None:
        with self._lock:
            self._servers.pop(server_id, None)


class InMemoryScriptStore:
    """Dict-backed ScriptRepository; the newest record of a kind is the active one."""

    def __init__(self, scripts: Optional[list[ScriptRecord]] = None):
        self._lock = threading.Lock()
        self._scripts: list[ScriptRecord] = list(scripts or [])

    def add(self, script: ScriptRecord) -> ScriptRecord:
        with self._lock:
            self._scripts.append(script)
            return script

    def get_active(self, server_id: str, kind: ScriptKind) -> Optional[ScriptRecord]:
        with self._lock:
            matches = [s for s in self._scripts if s.server_id == server_id and s.kind == kind]
        if not matches:
            return None
        return max(matches, key=lambda s: s.created_at)


class InMemoryBackupStore:
    """Thread-safe dict-backed BackupRepository."""

    def __init__(self):
        self._lock = threading.Lock()
        self._backups: dict[str, BackupRecord] = {}

    def get(self, backup_id: str) -> Optional[BackupRecord]:
        with self._lock:
            backup = self._backups.get(backup_id)
            return backup.model_copy() if backup else None

    def list_for_server(self, server_id: str) -> list[BackupRecord]:
        with self._lock:
            return [b.model_copy() for b in self._backups.values() if b.server_id == server_id]

    def create(self, backup: BackupRecord) -> BackupRecord:
        with self._lock:
            self._backups[backup.id] = backup.model_copy()
            return backup.model_copy()

    def update(self, backup_id: str, **fields: Any) -> BackupRecord:
        with self._lock:
            if backup_id not in self._backups:
                raise KeyError(f"Backup '{backup_id}' not found")
            updated = self._backups[backup_id].model_copy(update=fields)
            self._backups[backup_id] = updated
            return updated.model_copy()

    def delete(self, backup_id: str) -> None:
        with self._lock:
            self._backups.pop(backup_id, None)
