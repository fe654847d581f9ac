"""rebootguard CLI application."""

from __future__ import annotations

import json
import signal
import sys
from pathlib import Path
from typing import Optional

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from rebootguard import __version__
from rebootguard.config import (
    SETTINGS_FILE_NAME,
    ConfigError,
    HostPaths,
    debug_enabled,
    ensure_secure_dir,
    load_config,
)
from rebootguard.core.controller import RebootController
from rebootguard.core.executor import CommandExecutor
from rebootguard.core.locks import LockError, ProcessLock
from rebootguard.core.patch_scan import PatchScanLauncher
from rebootguard.core.reboot_check import RebootCheckError, RebootDetector
from rebootguard.core.scheduling import SchedulingError, select_adapter
from rebootguard.models import NotifierConfig, RebootGuardConfig
from rebootguard.patch_client import PatchTaskClient
from rebootguard.secrets import ObfuscationError, xor_decode, xor_encode
from rebootguard.store import ConfigStore

# Initialize
app = typer.Typer(
    name="rebootguard",
    help="rebootguard - reboot orchestration for patch cycles",
    no_args_is_help=True,
)
console = Console()

# Sub-commands
config_app = typer.Typer(help="Notifier config document commands")
app.add_typer(config_app, name="config")

identifier_app = typer.Typer(help="Backend identifier token commands")
app.add_typer(identifier_app, name="identifier")

HOME_OPTION_HELP = "Storage directory (default: the per-OS secure directory)"

STRING_FIELDS = {name for name, field in NotifierConfig.model_fields.items() if field.annotation is str}


def setup_logging(verbose: bool = False, log_file: Path | None = None) -> None:
    """Setup logging configuration."""
    logger.remove()

    level = "DEBUG" if verbose or debug_enabled() else "INFO"

    # Console logging
    logger.add(
        sys.stderr,
        format="<level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
        level=level,
        colorize=True,
    )

    if log_file is not None:
        logger.add(
            log_file,
            format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function} - {message}",
            level=level,
            rotation="10 MB",
            retention=5,
        )


def _resolve(home: Path | None) -> tuple[RebootGuardConfig, HostPaths]:
    """Resolve settings and paths, exiting on failure."""
    try:
        secure_dir = ensure_secure_dir(home)
        settings = load_config(secure_dir / SETTINGS_FILE_NAME)
        return settings, HostPaths.build(secure_dir, settings)
    except ConfigError as e:
        logger.error(f"Startup failed: {e}")
        raise typer.Exit(1)


def _read_config(path: Path) -> NotifierConfig | None:
    """Read the config document without creating or migrating it."""
    if not path.exists():
        return None
    try:
        return NotifierConfig.model_validate_json(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        console.print(f"[red]Cannot read {path}: {e}[/red]")
        raise typer.Exit(1)


def _parse_value(field: str, raw: str) -> object:
    if field in STRING_FIELDS:
        return raw
    try:
        return json.loads(raw)
    except ValueError:
        return raw


# ============================================================================
# Daemon
# ============================================================================


@app.command("run")
def run(
    home: Optional[Path] = typer.Option(None, "--home", help=HOME_OPTION_HELP),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """Run the reboot controller until the cycle completes."""
    setup_logging(verbose)
    settings, paths = _resolve(home)
    setup_logging(verbose, paths.log_file)
    logger.info(f"rebootguard {__version__} starting (debug={verbose or debug_enabled()})")

    lock = ProcessLock(paths.lock_file)
    try:
        acquired = lock.acquire()
    except LockError as e:
        logger.error(f"Could not acquire process lock: {e}")
        raise typer.Exit(1)

    if not acquired:
        console.print("[yellow]Another instance is already running. Exiting.[/yellow]")
        raise typer.Exit(1)

    try:
        store = ConfigStore(paths.config_file)
        store.load()

        executor = CommandExecutor(default_timeout=settings.controller.command_timeout)
        controller = RebootController(
            store=store,
            adapter=select_adapter(paths, config=settings, executor=executor),
            patch_client=PatchTaskClient(timeout=settings.patch_api.timeout),
            detector=RebootDetector(
                settings=settings.controller,
                executor=executor,
                pending_flag=paths.pending_reboot_flag,
            ),
            scan_launcher=PatchScanLauncher(paths, executor=executor),
            lock=lock,
            settings=settings.controller,
        )

        def handle_signal(signum: int, frame: object) -> None:
            logger.info(f"Received signal {signum}")
            controller.stop()

        signal.signal(signal.SIGTERM, handle_signal)
        signal.signal(signal.SIGINT, handle_signal)

        final_state = controller.run()
        logger.info(f"Controller finished in state {final_state.value}")

    except (ConfigError, RebootCheckError, SchedulingError) as e:
        logger.error(f"Daemon error: {e}")
        raise typer.Exit(1)
    finally:
        lock.release()


@app.command("status")
def status(
    home: Optional[Path] = typer.Option(None, "--home", help=HOME_OPTION_HELP),
) -> None:
    """Show controller and config status."""
    _, paths = _resolve(home)

    pid = ProcessLock(paths.lock_file).holder_pid()
    if pid:
        console.print(f"[green]● Controller is running (PID: {pid})[/green]")
    else:
        console.print("[red]○ Controller is not running[/red]")

    config = _read_config(paths.config_file)
    if config is None:
        console.print(f"[dim]No config document at {paths.config_file}[/dim]")
        return

    table = Table(title="Reboot cycle")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Policy", config.reboot_config)
    table.add_row("Scheduled time", config.scheduled_time or "-")
    table.add_row("Task scheduled", str(config.task_scheduled))
    table.add_row("Reboot now", str(config.reboot_now))
    table.add_row("Delays left", str(config.delay_counter))
    table.add_row("Asset", f"{config.asset or '-'} ({config.asset_type or '-'})")
    table.add_row("Last updated", config.last_updated or "-")
    table.add_row("Version", config.version or "-")
    console.print(table)


# ============================================================================
# Config Commands
# ============================================================================


@config_app.command("show")
def config_show(
    home: Optional[Path] = typer.Option(None, "--home", help=HOME_OPTION_HELP),
) -> None:
    """Print the config document."""
    _, paths = _resolve(home)
    config = _read_config(paths.config_file)
    if config is None:
        console.print(f"[yellow]No config document at {paths.config_file}[/yellow]")
        raise typer.Exit(1)
    console.print_json(config.model_dump_json())


@config_app.command("set")
def config_set(
    field: str = typer.Argument(..., help="Field name, e.g. reboot_now"),
    value: str = typer.Argument(..., help="New value (JSON literal or plain text)"),
    home: Optional[Path] = typer.Option(None, "--home", help=HOME_OPTION_HELP),
) -> None:
    """Change one field of the config document."""
    _, paths = _resolve(home)
    store = ConfigStore(paths.config_file)
    try:
        store.load()
        store.update({field: _parse_value(field, value)})
    except ConfigError as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]✓ Set {field}[/green]")


# ============================================================================
# Scheduling Commands
# ============================================================================


@app.command("schedule")
def schedule(
    when: str = typer.Argument("", help="Target time 'YYYY-MM-DD HH:MM:SS' (empty: now)"),
    home: Optional[Path] = typer.Option(None, "--home", help=HOME_OPTION_HELP),
) -> None:
    """Schedule the notifier workflow by hand."""
    settings, paths = _resolve(home)
    store = ConfigStore(paths.config_file)
    try:
        config = store.load()
        select_adapter(paths, config=settings).schedule_action(when, config.message)
    except (ConfigError, SchedulingError) as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]✓ Scheduled for {when or 'now'}[/green]")


@app.command("cancel")
def cancel(
    home: Optional[Path] = typer.Option(None, "--home", help=HOME_OPTION_HELP),
) -> None:
    """Cancel any pending scheduled action."""
    settings, paths = _resolve(home)
    try:
        select_adapter(paths, config=settings).cancel_action()
    except SchedulingError as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(1)
    console.print("[green]✓ Scheduled action cancelled[/green]")


@app.command("check-patch")
def check_patch(
    home: Optional[Path] = typer.Option(None, "--home", help=HOME_OPTION_HELP),
) -> None:
    """Ask the backend whether a patch task is running."""
    settings, paths = _resolve(home)
    config = _read_config(paths.config_file)
    if config is None:
        console.print(f"[yellow]No config document at {paths.config_file}[/yellow]")
        raise typer.Exit(1)

    running = PatchTaskClient(timeout=settings.patch_api.timeout).is_patch_task_running(config)
    if running:
        console.print("[yellow]Patch task is running[/yellow]")
    else:
        console.print("[green]No patch task running[/green]")


# ============================================================================
# Identifier Commands
# ============================================================================


@identifier_app.command("encode")
def identifier_encode(
    token: str = typer.Argument(..., help="Bearer token to obfuscate"),
) -> None:
    """Print the identifier value for a bearer token (obfuscation only, not encryption)."""
    console.print(xor_encode(token))


@identifier_app.command("show")
def identifier_show(
    home: Optional[Path] = typer.Option(None, "--home", help=HOME_OPTION_HELP),
    show: bool = typer.Option(False, "--show", help="Show the actual value"),
) -> None:
    """Decode the identifier stored in the config document."""
    _, paths = _resolve(home)
    config = _read_config(paths.config_file)
    if config is None or not config.identifier:
        console.print("[yellow]No identifier configured[/yellow]")
        raise typer.Exit(1)

    try:
        value = xor_decode(config.identifier)
    except ObfuscationError as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(1)

    if show:
        console.print(value)
    else:
        masked = value[:2] + "*" * (len(value) - 4) + value[-2:] if len(value) > 4 else "****"
        console.print(f"[dim]identifier[/dim] = {masked}")


@app.command("version")
def version() -> None:
    """Show the rebootguard version."""
    console.print(f"rebootguard {__version__}")


# ============================================================================
# Entry Point
# ============================================================================


def main() -> None:
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
