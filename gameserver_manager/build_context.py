"""Materializes a server's build scripts into its working directory."""

import logging
from pathlib import Path

from gameserver_manager.errors import ScriptWriteError
from gameserver_manager.models import ScriptKind
from gameserver_manager.store import ScriptRepository

logger = logging.getLogger(__name__)

DOCKERFILE = "Dockerfile"
STARTUP_FILE = "start.sh"
CONFIG_FILE = "server.config"

# Fixed file names the image build expects inside the server directory
BUILD_FILES: dict[ScriptKind, str] = {
    ScriptKind.DOCKERFILE: DOCKERFILE,
    ScriptKind.STARTUP: STARTUP_FILE,
    ScriptKind.CONFIG: CONFIG_FILE,
}


def server_directory(servers_root: Path, server_id: str) -> Path:
    """Directory holding a server's game files and build context."""
    return Path(servers_root) / server_id


class BuildContextAssembler:
    """Writes the active dockerfile/startup/config scripts of a server to disk."""

    def __init__(self, scripts: ScriptRepository, servers_root: Path):
        self.scripts = scripts
        self.servers_root = Path(servers_root)

    def assemble(self, server_id: str) -> Path:
        """Write the server's build context and return its directory.

        Any script kind may be absent; present ones fully overwrite their file
        on every call, so re-running is idempotent. The directory is created
        when missing and never cleared.

        Args:
            server_id: Server whose scripts are written.

        Returns:
            Path of the per-server directory.

        Raises:
            ScriptWriteError: If the directory or a file cannot be written.
                Files written before the failure are left in place.
        """
        directory = server_directory(self.servers_root, server_id)
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error(f"Failed to create server directory {directory}: {e}")
            raise ScriptWriteError(
                f"Cannot create server directory {directory}: {e}", server_id
            ) from e

        written = []
        for kind, filename in BUILD_FILES.items():
            script = self.scripts.get_active(server_id, kind)
            if script is None:
                continue

            path = directory / filename
            try:
                path.write_text(script.content, encoding="utf-8")
                if kind == ScriptKind.STARTUP:
                    path.chmod(0o755)
            except OSError as e:
                logger.error(f"Failed to write {filename} for server '{server_id}': {e}")
                raise ScriptWriteError(f"Cannot write {path}: {e}", server_id) from e
            written.append(filename)

        logger.info(f"Assembled build context for server '{server_id}': {written or 'no scripts'}")
        return directory
