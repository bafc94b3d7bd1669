"""
Configuration Store Service

File-based persistence for named server/channel configurations.
Uses JSON format for human readability and easy editing.

Copyright: (c) 2026 B. Wynne
License: GPLv2 or later
"""

import json
import os
import logging
import fcntl
import re
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)

# Default config directory - can be overridden by SRTSYNC_CONFIG_DIR env var
DEFAULT_CONFIG_DIR = os.path.expanduser("~/.config/srtsync")
CONFIG_DIR = os.getenv("SRTSYNC_CONFIG_DIR", DEFAULT_CONFIG_DIR)

DEFAULT_CONFIG_NAME = "srt-config"

_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,63}$")


class ConfigStore:
    """
    File-based store of named configuration documents.

    Provides atomic read/write operations with file locking.
    Each configuration is stored as <name>.json in the config directory.
    """

    def __init__(self, config_dir: str = None):
        self.config_dir = Path(config_dir or CONFIG_DIR)
        self._ensure_config_dir()

    def _ensure_config_dir(self):
        """Create config directory if it doesn't exist."""
        try:
            self.config_dir.mkdir(parents=True, exist_ok=True)
            logger.info(f"Config directory: {self.config_dir}")
        except Exception as e:
            logger.error(f"Failed to create config directory {self.config_dir}: {e}")
            raise

    def _get_path(self, name: str) -> Path:
        """Get the file path for a named configuration."""
        if name.endswith(".json"):
            name = name[:-5]
        if not _NAME_RE.match(name):
            raise ValueError(f"Invalid config name: {name!r}")
        return self.config_dir / f"{name}.json"

    def load(self, name: str) -> Optional[Any]:
        """
        Load a configuration document.

        Args:
            name: Configuration name (with or without .json)

        Returns:
            The parsed JSON document, or None if it doesn't exist

        Raises:
            ValueError: if the file exists but is not valid JSON
        """
        path = self._get_path(name)

        if not path.exists():
            logger.debug(f"Config file {path} not found")
            return None

        with open(path, 'r') as f:
            # Acquire shared lock for reading
            fcntl.flock(f.fileno(), fcntl.LOCK_SH)
            try:
                data = json.load(f)
            except json.JSONDecodeError as e:
                logger.error(f"Invalid JSON in {path}: {e}")
                raise ValueError(f"Invalid JSON in {path.name}: {e}") from e
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)

        logger.debug(f"Loaded config: {name}")
        return data

    def save(self, name: str, data: Any) -> Path:
        """
        Save a configuration document atomically.

        Uses write-to-temp-then-rename pattern for atomic updates.

        Args:
            name: Configuration name
            data: Data to save (must be JSON serializable)

        Returns:
            Path of the written file
        """
        path = self._get_path(name)
        temp_path = path.with_suffix('.tmp')

        try:
            # Write to temp file first
            with open(temp_path, 'w') as f:
                # Acquire exclusive lock for writing
                fcntl.flock(f.fileno(), fcntl.LOCK_EX)
                try:
                    json.dump(data, f, indent=2)
                    f.flush()
                    os.fsync(f.fileno())
                finally:
                    fcntl.flock(f.fileno(), fcntl.LOCK_UN)

            # Atomic rename
            os.rename(temp_path, path)
            logger.info(f"Saved config: {name}")
            return path

        except Exception:
            # Clean up temp file if it exists
            if temp_path.exists():
                temp_path.unlink()
            raise

    def list(self) -> list[str]:
        """List saved configuration names, newest first."""
        files = sorted(
            self.config_dir.glob("*.json"),
            key=lambda p: p.stat().st_mtime,
            reverse=True
        )
        return [p.stem for p in files]
