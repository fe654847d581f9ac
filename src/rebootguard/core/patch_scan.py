"""Post-reboot patch scan launcher.

After the reboot the external patch binary is run once more so the backend
learns the new patch state. Each run gets its own working directory with a
copy of the binary and its JSON config.
"""

from __future__ import annotations

import json
import shutil
import sys
import tempfile
from datetime import datetime
from pathlib import Path

from loguru import logger

from rebootguard.config import HostPaths
from rebootguard.core.executor import CommandExecutor
from rebootguard.models import NotifierConfig

PATCH_SCAN_ACTION = "Patch Scan"
WORKING_DIR_PREFIX = "Patch_Scan"
BINARY_MODE = 0o750
COPY_MODE = 0o640


class PatchScanError(Exception):
    """Raised when the patch scan cannot be started."""

    pass


class PatchScanLauncher:
    """Prepares a working directory and starts the patch binary detached."""

    def __init__(
        self,
        paths: HostPaths,
        executor: CommandExecutor | None = None,
        platform: str | None = None,
        now=datetime.now,
    ):
        self.paths = paths
        self.platform = platform or sys.platform
        self.executor = executor or CommandExecutor(platform=self.platform)
        self._now = now

    def create_working_dir(self, asset: str) -> Path:
        """Create a uniquely named directory for this run.

        Falls back to the system temp directory if the secure one is unusable.
        """
        stamp = self._now().strftime("%Y%m%d%H%M%S")
        working_dir = self.paths.secure_dir / f"{WORKING_DIR_PREFIX}_{asset}_{stamp}"
        try:
            working_dir.mkdir(mode=0o750, parents=True, exist_ok=True)
        except OSError as e:
            logger.error(f"Error creating working directory {working_dir}: {e}")
            return Path(tempfile.gettempdir())
        return working_dir

    def _load_binary_config(self) -> dict:
        try:
            data = json.loads(self.paths.patch_binary_config.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise PatchScanError(f"read patch binary config failed: {e}") from e
        if not isinstance(data, dict):
            raise PatchScanError("read patch binary config failed: expected a JSON object")
        return data

    def _copy(self, src: Path, dst: Path, mode: int) -> None:
        if not src.exists():
            raise PatchScanError(f"copy {src.name} failed: source file does not exist: {src}")
        try:
            shutil.copyfile(src, dst)
        except OSError as e:
            raise PatchScanError(f"copy {src.name} failed: {e}") from e

        if self.platform != "win32":
            try:
                dst.chmod(mode)
            except OSError as e:
                logger.warning(f"Could not set permissions on {dst}: {e}")

    def launch(self, config: NotifierConfig) -> Path:
        """Start a patch scan and return its working directory.

        Raises:
            PatchScanError: if the config, binary or launch fails
        """
        logger.info("Initiating Patch Scan...")

        binary_config = self._load_binary_config()
        asset = str(binary_config.get("asset") or config.asset)
        working_dir = self.create_working_dir(asset)

        binary_config["action"] = PATCH_SCAN_ACTION
        binary_config["secops_notifier_config"] = config.model_dump(mode="json")
        binary_config["working_dir"] = str(working_dir)

        try:
            self.paths.patch_binary_config.write_text(json.dumps(binary_config), encoding="utf-8")
        except OSError as e:
            raise PatchScanError(f"write patch binary config failed: {e}") from e

        binary = working_dir / self.paths.patch_binary.name
        self._copy(self.paths.patch_binary, binary, BINARY_MODE)
        self._copy(
            self.paths.patch_binary_config,
            working_dir / self.paths.patch_binary_config.name,
            COPY_MODE,
        )

        try:
            pid = self.executor.launch_detached([str(binary)], cwd=working_dir)
        except OSError as e:
            raise PatchScanError(f"start patch scan failed: {e}") from e

        logger.info(f"Started Patch Scan binary (PID {pid}) in {working_dir}")
        return working_dir
