"""Detection of a pending reboot on the host."""

from __future__ import annotations

import sys
from pathlib import Path

from loguru import logger

from rebootguard.config import is_linux, is_macos, is_windows
from rebootguard.core.executor import CommandExecutor
from rebootguard.models import ControllerSettings

WINDOWS_REBOOT_CHECK = (
    "$progressPreference = 'SilentlyContinue'; "
    "$rebootPending = Test-Path 'HKLM:\\SOFTWARE\\Microsoft\\Windows\\CurrentVersion\\Component Based Servicing\\RebootPending'; "
    "$rebootRequired = Test-Path 'HKLM:\\SOFTWARE\\Microsoft\\Windows\\CurrentVersion\\WindowsUpdate\\Auto Update\\RebootRequired'; "
    "if ($rebootPending -or $rebootRequired) { Write-Output 'A restart is required.' } "
    "else { Write-Output 'No restart required.' }"
)
WINDOWS_REBOOT_MARKER = "A restart is required."

LINUX_REBOOT_CHECK = """
if [ -f /var/run/reboot-required ] || [ -f /var/run/reboot-required.pkgs ]; then
    echo "System requires a reboot."; exit 0
fi
if command -v zypper >/dev/null 2>&1; then
    if zypper ps -sss 2>/dev/null | grep -q '(deleted)'; then echo "System requires a reboot."; exit 0; fi
fi
if command -v needs-restarting >/dev/null 2>&1; then
    if ! needs-restarting -r >/dev/null 2>&1; then echo "System requires a reboot."; exit 0; fi
fi
echo "No reboot"
"""
LINUX_REBOOT_MARKER = "System requires a reboot"

LINUX_PACKAGE_MANAGERS = ("apt", "yum", "zypper")

MAC_REBOOT_CHECK = "softwareupdate -l 2>&1 | grep -i 'restart required'"


class RebootCheckError(Exception):
    """Raised when the reboot status cannot be determined."""

    pass


class RebootDetector:
    """Answers whether this host needs a reboot to finish patching."""

    def __init__(
        self,
        settings: ControllerSettings | None = None,
        executor: CommandExecutor | None = None,
        pending_flag: Path | None = None,
        platform: str | None = None,
    ):
        self.settings = settings or ControllerSettings()
        self.platform = platform or sys.platform
        self.executor = executor or CommandExecutor(
            default_timeout=self.settings.command_timeout, platform=self.platform
        )
        self.pending_flag = pending_flag

    def is_reboot_required(self) -> bool:
        """Check the platform's reboot indicators.

        Raises:
            RebootCheckError: if the platform probe fails
        """
        if self.settings.always_require_reboot:
            logger.debug("always_require_reboot is set, skipping platform probe")
            return True

        if is_windows(self.platform):
            return self._check_windows()
        if is_linux(self.platform):
            return self._check_linux()
        if is_macos(self.platform):
            return self._check_macos()
        raise RebootCheckError(f"check reboot required failed: unsupported platform {self.platform}")

    def _check_windows(self) -> bool:
        result = self.executor.run_shell(WINDOWS_REBOOT_CHECK)
        if not result.ok:
            raise RebootCheckError(f"check Windows reboot status failed: {result.describe()}")
        return WINDOWS_REBOOT_MARKER in result.stdout

    def package_manager(self) -> str | None:
        """Detect the Linux package manager (apt, yum or zypper)."""
        for manager in LINUX_PACKAGE_MANAGERS:
            result = self.executor.run(["bash", "-c", f"command -v {manager}"])
            if result.ok and result.stdout.strip():
                return manager
        return None

    def _ensure_needs_restarting(self) -> None:
        # needs-restarting ships in yum-utils, which minimal images omit
        if self.package_manager() != "yum":
            return
        probe = self.executor.run(["bash", "-c", "command -v needs-restarting"])
        if probe.ok and probe.stdout.strip():
            return
        logger.info("Installing yum-utils for needs-restarting")
        result = self.executor.run(
            ["sudo", "-n", "yum", "install", "-y", "yum-utils"],
            timeout=self.settings.reboot_check_timeout,
        )
        if not result.ok:
            logger.warning(f"Installing yum-utils failed: {result.describe()}")

    def _check_linux(self) -> bool:
        self._ensure_needs_restarting()
        result = self.executor.run(["bash", "-c", LINUX_REBOOT_CHECK])
        if not result.ok:
            raise RebootCheckError(f"check Linux reboot status failed: {result.describe()}")
        return LINUX_REBOOT_MARKER in result.stdout

    def _check_macos(self) -> bool:
        # grep exits 1 when nothing matches, which is not a failure here
        result = self.executor.run(["bash", "-c", MAC_REBOOT_CHECK], timeout=self.settings.reboot_check_timeout)
        if result.error:
            raise RebootCheckError(f"check macOS software updates failed: {result.error}")
        if "restart required" in result.stdout.lower():
            return True

        return self.pending_flag is not None and self.pending_flag.exists()
