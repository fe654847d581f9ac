"""Timeout-bounded subprocess execution.

Every call to a platform tool goes through here so that a stuck
PowerShell or bash process can never wedge the decision loop.
"""

from __future__ import annotations

import shlex
import subprocess
import sys
import time
from pathlib import Path
from typing import Sequence

from loguru import logger

from rebootguard.models import CommandResult

DEFAULT_TIMEOUT = 30.0


def _format_command(cmd: Sequence[str] | str) -> str:
    if isinstance(cmd, str):
        return cmd
    return shlex.join(str(part) for part in cmd)


class CommandExecutor:
    """Runs platform commands with a deadline and captures their outcome."""

    def __init__(self, default_timeout: float = DEFAULT_TIMEOUT, platform: str | None = None):
        self.default_timeout = default_timeout
        self.platform = platform or sys.platform

    def run(
        self,
        cmd: Sequence[str],
        timeout: float | None = None,
        cwd: Path | None = None,
        input_data: str | None = None,
    ) -> CommandResult:
        """Run a command to completion.

        Never raises for command failures; inspect ``CommandResult.ok``.
        """
        timeout = timeout or self.default_timeout
        command = _format_command(cmd)
        logger.debug(f"Running command (timeout={timeout}s): {command}")

        start = time.monotonic()
        result = CommandResult(command=command)
        try:
            completed = subprocess.run(
                [str(part) for part in cmd],
                input=input_data,
                capture_output=True,
                text=True,
                timeout=timeout,
                cwd=cwd,
            )
            result.stdout = completed.stdout or ""
            result.stderr = completed.stderr or ""
            result.return_code = completed.returncode
        except subprocess.TimeoutExpired as e:
            result.stdout = e.stdout.decode(errors="replace") if isinstance(e.stdout, bytes) else (e.stdout or "")
            result.stderr = e.stderr.decode(errors="replace") if isinstance(e.stderr, bytes) else (e.stderr or "")
            result.error = f"command timed out after {timeout}s"
        except OSError as e:
            result.error = f"failed to start command: {e}"
        finally:
            result.duration = time.monotonic() - start

        logger.debug(
            f"Command finished in {result.duration:.2f}s rc={result.return_code} "
            f"stdout={len(result.stdout)}B stderr={len(result.stderr)}B"
            + (f" error={result.error}" if result.error else "")
        )
        return result

    def run_shell(self, script: str, timeout: float | None = None) -> CommandResult:
        """Run script text through the platform shell (PowerShell or bash)."""
        if self.platform == "win32":
            return self.run(["powershell", "-NoProfile", "-Command", script], timeout=timeout)
        return self.run(["bash", "-c", script], timeout=timeout)

    def launch_detached(self, cmd: Sequence[str], cwd: Path | None = None) -> int:
        """Start a command that outlives this process and return its PID.

        The child is not awaited.

        Raises:
            OSError: if the command could not be started
        """
        command = _format_command(cmd)
        kwargs: dict = {
            "stdin": subprocess.DEVNULL,
            "stdout": subprocess.DEVNULL,
            "stderr": subprocess.DEVNULL,
            "cwd": cwd,
            "close_fds": True,
        }
        if self.platform == "win32":
            kwargs["creationflags"] = getattr(subprocess, "DETACHED_PROCESS", 0) | getattr(
                subprocess, "CREATE_NEW_PROCESS_GROUP", 0
            )
        else:
            kwargs["start_new_session"] = True

        process = subprocess.Popen([str(part) for part in cmd], **kwargs)
        logger.debug(f"Launched detached process PID {process.pid}: {command}")
        return process.pid
