"""YAML-backed ManagerConfig loading.

Lookup order for the file: explicit path, ``GAMESERVER_CONFIG_FILE``, then
``config.yml`` in the working directory. ``DOCKER_HOST`` wins over the
file's ``docker_base_url``, matching how the Docker CLI picks its daemon.
"""

import logging
import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import ValidationError

from gameserver_manager.models import ManagerConfig

logger = logging.getLogger(__name__)

CONFIG_ENV = "GAMESERVER_CONFIG_FILE"
DEFAULT_CONFIG_FILE = "config.yml"


def resolve_config_path(config_path: Optional[str] = None) -> Path:
    return Path(config_path or os.getenv(CONFIG_ENV, DEFAULT_CONFIG_FILE))


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    docker_host = os.getenv("DOCKER_HOST")
    if docker_host:
        logger.info(f"Using DOCKER_HOST={docker_host} instead of configured docker_base_url")
        data["docker_base_url"] = docker_host
    return data


def load_config(config_path: Optional[str] = None) -> ManagerConfig:
    """Read the engine configuration.

    An empty file yields the defaults.

    Raises:
        FileNotFoundError: The resolved file does not exist.
        yaml.YAMLError: The file is not YAML.
        ValidationError: A value is out of range or of the wrong type.
    """
    config_file = resolve_config_path(config_path)
    if not config_file.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_file}")

    logger.info(f"Loading configuration from {config_file}")

    try:
        with open(config_file, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        config = ManagerConfig(**_apply_env_overrides(data))
        logger.info(
            f"Servers under {config.servers_root}, backups under {config.backups_root}, "
            f"keeping {config.max_backups_per_server} backups per server"
        )
        return config

    except yaml.YAMLError as e:
        logger.error(f"Failed to parse YAML: {e}")
        raise
    except ValidationError as e:
        logger.error(f"Configuration validation failed: {e}")
        raise
    except Exception as e:
        logger.error(f"Unexpected error loading config: {e}")
        raise
