"""Atomic JSON store for the notifier configuration document.

The document is shared with the notifier panel and the scheduling scripts,
which write it from other processes. Writes here are atomic (temp file and
rename) and serialized within the process by one lock; cross-process
safety relies only on the rename, so ``update`` always re-reads the file
before applying a change.
"""

from __future__ import annotations

import json
import os
import sys
import threading
from collections.abc import Mapping
from datetime import datetime
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import ValidationError

from rebootguard import __version__
from rebootguard.config import ConfigError
from rebootguard.models import ConfigPatch, NotifierConfig

CONFIG_FILE_MODE = 0o640


def timestamp() -> str:
    """Current local time as ISO-8601 with UTC offset."""
    return datetime.now().astimezone().isoformat(timespec="seconds")


class ConfigStore:
    """Owns the notifier config document and the mutex guarding it."""

    def __init__(self, path: Path, version: str = __version__, platform: str | None = None):
        self.path = Path(path)
        self.version = version
        self._platform = platform or sys.platform
        self._lock = threading.Lock()
        self._config = NotifierConfig.default(version)

    @property
    def config(self) -> NotifierConfig:
        """A copy of the in-memory document as of the last load or write."""
        with self._lock:
            return self._config.model_copy(deep=True)

    # Load & Save

    def load(self) -> NotifierConfig:
        """Read the document from disk, creating or migrating it if needed.

        Raises:
            ConfigError: if the file cannot be read, parsed or written
        """
        with self._lock:
            if not self.path.exists():
                logger.info(f"Config file not found at {self.path}, creating default")
                self._write_locked(NotifierConfig.default(self.version))
                return self._config.model_copy(deep=True)

            try:
                config = NotifierConfig.model_validate(self._read_locked("load config"))
            except ValidationError as e:
                raise ConfigError(f"load config failed: {self.path}: {e}") from e

            if config.version != self.version:
                logger.info(f"Migrating config version {config.version or '<none>'} -> {self.version}")
                config.version = self.version
                self._write_locked(config)
            else:
                self._config = config

            return self._config.model_copy(deep=True)

    def save(self) -> None:
        """Persist the full in-memory document.

        Raises:
            ConfigError: if the file cannot be written
        """
        with self._lock:
            self._write_locked(self._config)

    def update(self, patch: ConfigPatch | Mapping[str, Any]) -> NotifierConfig:
        """Apply a partial change to the on-disk document and persist it.

        The file is re-read first so fields changed by another process since
        the last load (for example the notifier's delay counter) survive.

        Raises:
            ConfigError: if the patch is invalid or the file cannot be read,
                parsed or written. The in-memory document is left unchanged.
        """
        if not isinstance(patch, ConfigPatch):
            try:
                patch = ConfigPatch.model_validate(dict(patch))
            except ValidationError as e:
                raise ConfigError(f"update config failed: invalid patch: {e}") from e

        changes = patch.changes()

        with self._lock:
            fields = self._read_locked("update config")
            fields.update(changes)
            fields["version"] = self.version

            try:
                config = NotifierConfig.model_validate(fields)
            except ValidationError as e:
                raise ConfigError(f"update config failed: {e}") from e

            self._write_locked(config)
            logger.debug(f"Updated config fields: {sorted(changes)}")
            return self._config.model_copy(deep=True)

    # Internal helpers, caller holds the lock

    def _read_locked(self, operation: str) -> dict[str, Any]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise ConfigError(f"{operation} failed: cannot read {self.path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError(
                f"{operation} failed: {self.path} holds {type(data).__name__}, expected an object"
            )
        return data

    def _write_locked(self, config: NotifierConfig) -> None:
        config = config.model_copy(update={"last_updated": timestamp()})

        try:
            validated = NotifierConfig.model_validate(config.model_dump(mode="json"))
        except ValidationError as e:
            raise ConfigError(f"save config failed: {e}") from e

        data = json.dumps(validated.model_dump(mode="json"), indent=2, ensure_ascii=False)
        tmp_path = self.path.with_name(self.path.name + ".tmp")

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(data, encoding="utf-8")
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise ConfigError(f"save config failed: cannot write {self.path}: {e}") from e

        if self._platform != "win32":
            try:
                self.path.chmod(CONFIG_FILE_MODE)
            except OSError as e:
                logger.warning(f"Could not set permissions on {self.path}: {e}")

        self._config = validated
        logger.debug(f"Config saved to {self.path}")
