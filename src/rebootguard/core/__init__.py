"""rebootguard core components."""

from rebootguard.core.controller import RebootController
from rebootguard.core.executor import CommandExecutor
from rebootguard.core.locks import LockAcquisitionError, LockError, ProcessLock
from rebootguard.core.patch_scan import PatchScanError, PatchScanLauncher
from rebootguard.core.reboot_check import RebootCheckError, RebootDetector
from rebootguard.core.scheduling import SchedulingAdapter, SchedulingError, select_adapter

__all__ = [
    "CommandExecutor",
    "LockAcquisitionError",
    "LockError",
    "PatchScanError",
    "PatchScanLauncher",
    "ProcessLock",
    "RebootCheckError",
    "RebootController",
    "RebootDetector",
    "SchedulingAdapter",
    "SchedulingError",
    "select_adapter",
]
