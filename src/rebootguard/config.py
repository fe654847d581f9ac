"""Configuration loading and path resolution for rebootguard."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from pathlib import Path

import yaml
from loguru import logger

from rebootguard.models import RebootGuardConfig

SERVICE_DIR_NAME = "SecOpsNotifierService"
UNIX_BASE_DIR = Path("/usr/local/bin")
SETTINGS_FILE_NAME = "rebootguard.yaml"

DEBUG_ENV_VAR = "REBOOTGUARD_DEBUG"


class ConfigError(Exception):
    """Configuration error."""

    pass


def is_windows(platform: str | None = None) -> bool:
    return (platform or sys.platform) == "win32"


def is_macos(platform: str | None = None) -> bool:
    return (platform or sys.platform) == "darwin"


def is_linux(platform: str | None = None) -> bool:
    return (platform or sys.platform).startswith("linux")


def debug_enabled() -> bool:
    """Check whether verbose logging was requested through the environment."""
    return os.environ.get(DEBUG_ENV_VAR, "").strip().lower() in ("1", "true")


def default_secure_dir(platform: str | None = None) -> Path:
    """Get the per-OS storage directory shared with the notifier."""
    if is_windows(platform):
        program_data = os.environ.get("ProgramData", r"C:\ProgramData")
        return Path(program_data) / SERVICE_DIR_NAME
    if is_linux(platform) or is_macos(platform):
        return UNIX_BASE_DIR / SERVICE_DIR_NAME
    raise ConfigError(f"Unsupported platform: {platform or sys.platform}")


def ensure_secure_dir(path: Path | None = None, platform: str | None = None) -> Path:
    """Create the storage directory with owner/group-only permissions.

    Raises:
        ConfigError: if the directory cannot be created
    """
    secure_dir = path or default_secure_dir(platform)
    try:
        secure_dir.mkdir(mode=0o750, parents=True, exist_ok=True)
    except OSError as e:
        raise ConfigError(f"create secure directory {secure_dir} failed: {e}") from e

    if not is_windows(platform):
        try:
            secure_dir.chmod(0o750)
        except OSError as e:
            logger.warning(f"Could not set secure permissions on {secure_dir}: {e}")

    return secure_dir


@dataclass(frozen=True)
class HostPaths:
    """Every file location the controller touches on one host."""

    secure_dir: Path
    config_file: Path
    lock_file: Path
    log_file: Path
    task_script: Path
    mac_reboot_script: Path
    notifier: Path
    patch_binary: Path
    patch_binary_config: Path
    pending_reboot_flag: Path

    @classmethod
    def build(
        cls,
        secure_dir: Path,
        config: RebootGuardConfig | None = None,
        platform: str | None = None,
    ) -> HostPaths:
        files = (config or RebootGuardConfig()).files

        if is_windows(platform):
            notifier, binary = files.windows_notifier, files.windows_patch_binary
        elif is_macos(platform):
            notifier, binary = files.mac_notifier, files.mac_patch_binary
        elif is_linux(platform):
            notifier, binary = files.linux_notifier, files.linux_patch_binary
        else:
            raise ConfigError(f"Unsupported platform: {platform or sys.platform}")

        return cls(
            secure_dir=secure_dir,
            config_file=secure_dir / files.notifier_config,
            lock_file=secure_dir / files.lock_file,
            log_file=secure_dir / files.log_file,
            task_script=secure_dir / files.task_script,
            mac_reboot_script=secure_dir / files.mac_reboot_script,
            notifier=secure_dir / notifier,
            patch_binary=secure_dir / binary,
            patch_binary_config=secure_dir / files.patch_binary_config,
            pending_reboot_flag=secure_dir / files.pending_reboot_flag,
        )


def load_yaml_file(path: Path) -> dict:
    """Load a YAML file."""
    if not path.exists():
        return {}

    with open(path) as f:
        data = yaml.safe_load(f) or {}

    return data


def load_config(config_path: Path) -> RebootGuardConfig:
    """Load controller settings, falling back to defaults if the file is absent."""
    if not config_path.exists():
        logger.debug(f"Settings file not found at {config_path}, using defaults")
        return RebootGuardConfig()

    try:
        data = load_yaml_file(config_path)
        config = RebootGuardConfig.model_validate(data)
        logger.debug(f"Loaded settings from {config_path}")
        return config
    except Exception as e:
        raise ConfigError(f"Invalid settings file {config_path}: {e}") from e

