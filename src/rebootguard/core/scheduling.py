"""Platform scheduling adapters.

Each adapter turns "run the notifier/reboot workflow at time T" and
"cancel any pending workflow" into the native mechanism of one OS:

- Windows: a named Task Scheduler task, registered through PowerShell
- Linux: a detached bash script that sleeps until T, then sets reboot_now
- macOS: the same as Linux plus user notifications and the notifier app

All adapters keep at most one pending action per host: scheduling cancels
first, and cancelling twice is harmless.
"""

from __future__ import annotations

import os
import sys
from abc import ABC, abstractmethod
from pathlib import Path

import psutil
from loguru import logger

from rebootguard.config import HostPaths, is_linux, is_macos, is_windows
from rebootguard.core import scripts
from rebootguard.core.executor import CommandExecutor
from rebootguard.models import RebootGuardConfig

SCRIPT_MODE = 0o750

# Locations used by agents that kept their scripts in /tmp
LEGACY_SCRIPT_PATHS = (
    Path("/tmp/secops_notifier_task.sh"),
    Path("/tmp/secops_mac_reboot_now.sh"),
)


class SchedulingError(Exception):
    """Raised when a platform scheduling command fails."""

    pass


class SchedulingAdapter(ABC):
    """Abstract base class for platform scheduling adapters."""

    platform: str = ""

    # Whether an empty target time must be replaced by the caller. Adapters
    # that can express "now" natively leave it empty.
    requires_explicit_time: bool = False

    def __init__(
        self,
        paths: HostPaths,
        executor: CommandExecutor | None = None,
        config: RebootGuardConfig | None = None,
    ):
        self.paths = paths
        self.config = config or RebootGuardConfig()
        self.executor = executor or CommandExecutor(
            default_timeout=self.config.controller.command_timeout,
            platform=self.platform or None,
        )

    @property
    def grace_seconds(self) -> int:
        return self.config.controller.reboot_grace_seconds

    @abstractmethod
    def schedule_action(self, target_time: str, message: str) -> None:
        """Arrange for the notifier/reboot workflow to run at target_time.

        Any previously scheduled action is replaced.

        Raises:
            SchedulingError: if the action could not be registered
        """
        pass

    @abstractmethod
    def schedule_reboot_now(self, message: str) -> None:
        """Warn the user and reboot after the grace period.

        Raises:
            SchedulingError: if the reboot could not be started
        """
        pass

    @abstractmethod
    def cancel_action(self) -> None:
        """Remove any pending scheduled action. Idempotent.

        Raises:
            SchedulingError: if an existing action could not be removed
        """
        pass

    def startup(self) -> None:
        """Housekeeping run once when the controller starts. Best effort."""
        pass

    def prepare(self) -> None:
        """Platform setup when a reboot is required. Best effort."""
        pass

    def cleanup(self) -> None:
        """Remove lingering artifacts at termination. Best effort."""
        try:
            self.cancel_action()
        except SchedulingError as e:
            logger.warning(f"Cleanup: {e}")


class WindowsTaskAdapter(SchedulingAdapter):
    """Task Scheduler based adapter."""

    platform = "win32"

    @property
    def task_name(self) -> str:
        return self.config.task_name

    def _powershell(self, operation: str, command: str) -> None:
        result = self.executor.run_shell(command)
        if not result.ok:
            raise SchedulingError(f"{operation} failed: {result.describe()}")

    def schedule_action(self, target_time: str, message: str) -> None:
        self.cancel_action()
        self._powershell(
            "register scheduled task",
            scripts.build_windows_schedule_command(self.task_name, self.paths.notifier, target_time),
        )
        logger.info(f"Task '{self.task_name}' created for {target_time or 'now'}")

    def schedule_reboot_now(self, message: str) -> None:
        self.cancel_action()
        self._powershell(
            "register reboot task",
            scripts.build_windows_reboot_now_command(self.task_name, self.grace_seconds),
        )
        logger.info(f"Task '{self.task_name}' created for reboot in {self.grace_seconds}s")

    def cancel_action(self) -> None:
        self._powershell(
            "unregister scheduled task",
            scripts.build_windows_delete_task_command(self.task_name),
        )
        logger.debug(f"Scheduled task '{self.task_name}' removed")

    def prepare(self) -> None:
        # The notifier runs as the logged-in user and must write the config
        result = self.executor.run_shell(scripts.build_windows_grant_users_command(self.paths.secure_dir))
        if not result.ok:
            logger.warning(f"Setting permissions on {self.paths.secure_dir} failed: {result.describe()}")

    def cleanup(self) -> None:
        super().cleanup()
        result = self.executor.run_shell(scripts.build_windows_stop_service_command(self.config.service_name))
        if not result.ok:
            logger.warning(f"Stopping service '{self.config.service_name}' failed: {result.describe()}")
        else:
            logger.info(f"Service '{self.config.service_name}' stopped")


class UnixScriptAdapter(SchedulingAdapter):
    """Shared behaviour of the self-sleeping background script adapters."""

    @property
    def script_path(self) -> Path:
        return self.paths.task_script

    @abstractmethod
    def build_task_script(self, target_time: str, message: str) -> str:
        pass

    def _write_script(self, path: Path, content: str) -> None:
        try:
            path.write_text(content)
            path.chmod(SCRIPT_MODE)
        except OSError as e:
            raise SchedulingError(f"write script {path} failed: {e}") from e

    def _launch(self, operation: str, cmd: list[str]) -> int:
        try:
            return self.executor.launch_detached(cmd, cwd=self.paths.secure_dir)
        except OSError as e:
            raise SchedulingError(f"{operation} failed: {e}") from e

    def running_script_pids(self) -> list[int]:
        """PIDs of live processes whose command line mentions the task script."""
        needle = str(self.script_path)
        own_pid = os.getpid()
        pids = []
        for proc in psutil.process_iter(["pid", "cmdline", "status"]):
            try:
                if proc.info["pid"] == own_pid or proc.info["status"] == psutil.STATUS_ZOMBIE:
                    continue
                cmdline = proc.info["cmdline"] or []
                if any(needle in part for part in cmdline):
                    pids.append(proc.info["pid"])
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        return pids

    def _kill_script_processes(self) -> None:
        victims = []
        for pid in self.running_script_pids():
            try:
                proc = psutil.Process(pid)
                # The sleeping child would otherwise outlive the script
                family = proc.children(recursive=True) + [proc]
                for member in family:
                    try:
                        member.kill()
                    except psutil.NoSuchProcess:
                        continue
                victims.extend(family)
            except psutil.NoSuchProcess:
                continue
            except psutil.AccessDenied as e:
                logger.warning(f"Could not kill task script process {pid}: {e}")

        if victims:
            psutil.wait_procs(victims, timeout=3)
            logger.debug(f"Killed {len(victims)} task script process(es)")

    def schedule_action(self, target_time: str, message: str) -> None:
        self.cancel_action()
        self._write_script(self.script_path, self.build_task_script(target_time, message))
        pid = self._launch("start task script", ["bash", str(self.script_path)])
        logger.info(f"Scheduled task script '{self.script_path}' started (PID {pid}) for {target_time or 'now'}")

    def cancel_action(self) -> None:
        self._kill_script_processes()
        try:
            self.script_path.unlink()
            logger.info(f"Deleted task script '{self.script_path}'")
        except FileNotFoundError:
            pass
        except OSError as e:
            raise SchedulingError(f"delete task script {self.script_path} failed: {e}") from e


class LinuxScriptAdapter(UnixScriptAdapter):
    """Linux adapter: wall broadcast and a sleeping bash script."""

    platform = "linux"
    requires_explicit_time = True

    def build_task_script(self, target_time: str, message: str) -> str:
        return scripts.build_linux_task_script(self.paths.config_file, target_time, message)

    def schedule_reboot_now(self, message: str) -> None:
        command = scripts.build_linux_reboot_now_command(message, self.grace_seconds)
        self._launch("start reboot", ["bash", "-c", command])
        logger.info(f"Linux reboot scheduled in {self.grace_seconds}s")


class MacScriptAdapter(UnixScriptAdapter):
    """macOS adapter: notifications, the notifier app and a sleeping bash script."""

    platform = "darwin"

    @property
    def title(self) -> str:
        return self.config.notification_title

    def build_task_script(self, target_time: str, message: str) -> str:
        return scripts.build_mac_task_script(
            self.paths.config_file, target_time, message, self.paths.notifier, self.title
        )

    def schedule_reboot_now(self, message: str) -> None:
        script_path = self.paths.mac_reboot_script
        self._write_script(script_path, scripts.build_mac_reboot_script(message, self.grace_seconds, self.title))
        self._launch("start reboot script", ["bash", str(script_path)])
        logger.info(f"macOS reboot scheduled in {self.grace_seconds}s")

    def notifier_running(self) -> bool:
        result = self.executor.run(["pgrep", "-f", self.paths.notifier.stem])
        return result.ok and bool(result.stdout.strip())

    def notify(self, message: str) -> None:
        try:
            self.executor.launch_detached(scripts.osascript_notification_args(message, self.title))
        except OSError as e:
            logger.warning(f"Display notification failed: {e}")

    def prepare(self) -> None:
        if not self.notifier_running():
            if self.paths.notifier.exists():
                try:
                    self.executor.launch_detached(["/usr/bin/open", str(self.paths.notifier)])
                    logger.info("Launched macOS notifier app")
                except OSError as e:
                    logger.warning(f"Launch notifier app failed: {e}")
            else:
                logger.warning(f"Could not find macOS notifier app at {self.paths.notifier}")
        self.notify("Reboot required. Scheduling workflow started.")

    def startup(self) -> None:
        for path in LEGACY_SCRIPT_PATHS:
            try:
                path.unlink()
                logger.info(f"Removed old script: {path}")
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"Error removing old script {path}: {e}")


def select_adapter(
    paths: HostPaths,
    config: RebootGuardConfig | None = None,
    executor: CommandExecutor | None = None,
    platform: str | None = None,
) -> SchedulingAdapter:
    """Pick the adapter for the running OS."""
    platform = platform or sys.platform
    if is_windows(platform):
        return WindowsTaskAdapter(paths, executor=executor, config=config)
    if is_macos(platform):
        return MacScriptAdapter(paths, executor=executor, config=config)
    if is_linux(platform):
        return LinuxScriptAdapter(paths, executor=executor, config=config)
    raise SchedulingError(f"select scheduling adapter failed: unsupported platform {platform}")
