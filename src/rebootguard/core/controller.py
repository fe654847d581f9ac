"""Reboot decision loop for rebootguard.

The controller runs on a single thread. Once a reboot is known to be
required it polls the shared config document every second and reacts to
the flags the notifier (or the scheduling script) sets:

- ``reboot_now``: the user or the force policy wants the reboot now. Any
  pending action is cancelled and, unless a patch job is still running,
  the reboot is started.
- ``task_scheduled`` false: no action is registered for this cycle yet,
  so one is scheduled for ``scheduled_time``.

When no reboot is required the controller runs the post-reboot patch scan
and exits.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Callable

from loguru import logger

from rebootguard.config import ConfigError
from rebootguard.core.locks import ProcessLock
from rebootguard.core.patch_scan import PatchScanError, PatchScanLauncher
from rebootguard.core.reboot_check import RebootDetector
from rebootguard.core.scheduling import SchedulingAdapter, SchedulingError
from rebootguard.models import (
    SCHEDULED_TIME_FORMAT,
    ConfigPatch,
    ControllerSettings,
    LoopState,
    NotifierConfig,
    RebootPolicy,
)
from rebootguard.patch_client import PatchTaskClient
from rebootguard.store import ConfigStore


class RebootController:
    """Drives one host through a reboot cycle."""

    def __init__(
        self,
        store: ConfigStore,
        adapter: SchedulingAdapter,
        patch_client: PatchTaskClient,
        detector: RebootDetector,
        scan_launcher: PatchScanLauncher,
        lock: ProcessLock | None = None,
        settings: ControllerSettings | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.adapter = adapter
        self.patch_client = patch_client
        self.detector = detector
        self.scan_launcher = scan_launcher
        self.lock = lock
        self.settings = settings or ControllerSettings()
        self._clock = clock
        self._stop_event = threading.Event()
        self.state = LoopState.CHECK_REBOOT_REQUIRED

    # Lifecycle

    def run(self) -> LoopState:
        """Run until the cycle terminates or stop() is called.

        The reboot probe raising RebootCheckError is fatal and propagates.
        """
        self.adapter.startup()

        self.state = LoopState.CHECK_REBOOT_REQUIRED
        required = self.detector.is_reboot_required()
        logger.info(f"Reboot required: {required}")

        if required:
            self.state = LoopState.REBOOT_REQUIRED
            self.adapter.prepare()
            self._poll()
        else:
            self.state = LoopState.NO_REBOOT_NEEDED
            self.finish_cycle()

        return self.state

    def stop(self) -> None:
        """Signal the loop to exit after the current iteration."""
        logger.info("Shutdown requested")
        self._stop_event.set()

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def _sleep(self, seconds: float) -> None:
        self._stop_event.wait(seconds)

    def _poll(self) -> None:
        logger.info("Reboot workflow started")
        while not self._stop_event.is_set():
            state = self.tick()
            if state in (LoopState.REBOOT_REQUIRED, LoopState.GRACEFUL_SCHEDULE_PENDING):
                # Config or scheduling failure, back off before retrying
                self._sleep(self.settings.error_backoff)
            else:
                self._sleep(self.settings.poll_interval)
        logger.info("Reboot workflow stopped")

    # Decision loop

    def resolve_scheduled_time(self, config: NotifierConfig) -> str:
        """Normalize scheduled_time, deriving a default when the adapter needs one.

        Unparsable text is passed through; the scheduling scripts treat it
        as already due.
        """
        scheduled = config.scheduled_time.strip()
        if scheduled:
            try:
                return datetime.strptime(scheduled, SCHEDULED_TIME_FORMAT).strftime(SCHEDULED_TIME_FORMAT)
            except ValueError as e:
                logger.error(f"Error parsing scheduled time {scheduled!r}: {e}")
                return scheduled

        if not self.adapter.requires_explicit_time:
            return ""

        policy = config.policy
        if policy == RebootPolicy.FORCE_REBOOT:
            lead = self.settings.force_reboot_lead_minutes
        elif policy == RebootPolicy.GRACEFUL_REBOOT:
            lead = self.settings.graceful_reboot_lead_minutes
        else:
            return ""
        return (self._clock() + timedelta(minutes=lead)).strftime(SCHEDULED_TIME_FORMAT)

    def tick(self) -> LoopState:
        """Run one iteration of the decision loop and return the resulting state."""
        try:
            config = self.store.load()
        except ConfigError as e:
            logger.error(f"Error reloading config: {e}")
            self.state = LoopState.REBOOT_REQUIRED
            return self.state

        scheduled_time = self.resolve_scheduled_time(config)
        logger.debug(
            f"scheduled_time={scheduled_time!r} task_scheduled={config.task_scheduled} "
            f"reboot_now={config.reboot_now} policy={config.reboot_config!r}"
        )

        if config.reboot_now:
            self.state = self._handle_reboot_now(config)
        elif not config.task_scheduled:
            self.state = self._handle_unscheduled(config, scheduled_time)
        else:
            self.state = LoopState.TASK_SCHEDULED

        return self.state

    def _handle_reboot_now(self, config: NotifierConfig) -> LoopState:
        try:
            self.adapter.cancel_action()
        except SchedulingError as e:
            logger.error(f"Error while deleting task: {e}")

        if self.patch_client.is_patch_task_running(config):
            logger.info("Patch task still running, postponing reboot")
            return LoopState.WAITING_FOR_PATCH_IDLE

        try:
            self.adapter.schedule_reboot_now(config.message)
        except SchedulingError as e:
            logger.error(f"Error scheduling reboot: {e}")
            return LoopState.GRACEFUL_SCHEDULE_PENDING

        self._update(ConfigPatch(task_scheduled=True, reboot_now=False))
        return LoopState.FORCE_REBOOT_PENDING

    def _handle_unscheduled(self, config: NotifierConfig, scheduled_time: str) -> LoopState:
        # "No reboot" waits for the user instead of scheduling the notifier
        if self.settings.skip_schedule_on_no_reboot and config.policy == RebootPolicy.NO_REBOOT:
            logger.debug("Reboot policy is 'No reboot', not scheduling")
            return LoopState.TASK_SCHEDULED

        try:
            self.adapter.schedule_action(scheduled_time, config.message)
        except SchedulingError as e:
            logger.error(f"Error scheduling task: {e}")
            return LoopState.GRACEFUL_SCHEDULE_PENDING

        changes: dict = {"task_scheduled": True}
        if scheduled_time and scheduled_time != config.scheduled_time:
            changes["scheduled_time"] = scheduled_time
        self._update(ConfigPatch(**changes))
        return LoopState.TASK_SCHEDULED

    def _update(self, patch: ConfigPatch) -> None:
        try:
            self.store.update(patch)
        except ConfigError as e:
            logger.error(f"Error updating config: {e}")

    # Terminal branch

    def finish_cycle(self) -> None:
        """Run the post-reboot patch scan, clean up and release the lock.

        Raises:
            ConfigError: if the config cannot be loaded for the scan
        """
        logger.info("Machine rebooted successfully")
        self._sleep(self.settings.post_reboot_settle)

        try:
            config = self.store.load()
            self.state = LoopState.POST_REBOOT_PATCH_SCAN
            try:
                self.scan_launcher.launch(config)
            except PatchScanError as e:
                logger.error(f"Error running patch scan: {e}")
            self.adapter.cleanup()
        finally:
            if self.lock is not None:
                self.lock.release()
            self.state = LoopState.TERMINATED
