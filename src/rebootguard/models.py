"""Pydantic models for rebootguard configuration and state."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class RebootPolicy(str, Enum):
    """Reboot policy pushed by the patch-management backend."""

    FORCE_REBOOT = "Force reboot after patch deployment"
    GRACEFUL_REBOOT = "Graceful reboot"
    SCHEDULE_REBOOT = "Schedule reboot"
    NO_REBOOT = "No reboot"

    @classmethod
    def parse(cls, value: str | None) -> RebootPolicy | None:
        """Match a policy string case-insensitively.

        The notifier panel writes "Graceful Reboot" while the backend sends
        "Graceful reboot", so an exact enum lookup is not enough.
        """
        if not value:
            return None
        wanted = value.strip().lower()
        for policy in cls:
            if policy.value.lower() == wanted:
                return policy
        return None


class LoopState(str, Enum):
    """State of the reboot decision loop."""

    CHECK_REBOOT_REQUIRED = "check_reboot_required"
    NO_REBOOT_NEEDED = "no_reboot_needed"
    REBOOT_REQUIRED = "reboot_required"
    WAITING_FOR_PATCH_IDLE = "waiting_for_patch_idle"  # reboot requested, patch job running
    FORCE_REBOOT_PENDING = "force_reboot_pending"  # immediate reboot issued
    GRACEFUL_SCHEDULE_PENDING = "graceful_schedule_pending"  # action not registered yet
    TASK_SCHEDULED = "task_scheduled"
    POST_REBOOT_PATCH_SCAN = "post_reboot_patch_scan"
    TERMINATED = "terminated"


DEFAULT_CUSTOM_MESSAGE = "Reboot required to complete important updates."
DEFAULT_DELAY_COUNTER = 3

# Format shared with the notifier panel and the scheduling scripts
SCHEDULED_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


class NotifierConfig(BaseModel):
    """The JSON document shared by the controller, backend and notifier.

    Fields this model does not declare are kept in the extra side-map and
    written back untouched, so a newer notifier can add keys safely.
    """

    model_config = ConfigDict(extra="allow")

    base_url: str = ""
    jump_host_base_url: str = ""
    task_scheduled: bool = False
    reboot_config: str = RebootPolicy.GRACEFUL_REBOOT.value
    reboot_now: bool = False
    scheduled_time: str = ""
    patch_record_id_list: list[str] = Field(default_factory=list)
    identifier: str = ""
    custom_message: str = ""
    delay_counter: int = 0
    asset: str = ""
    asset_type: str = ""
    last_updated: str = ""
    version: str = ""

    @field_validator(
        "base_url",
        "jump_host_base_url",
        "reboot_config",
        "scheduled_time",
        "identifier",
        "custom_message",
        "asset",
        "asset_type",
        "last_updated",
        "version",
        mode="before",
    )
    @classmethod
    def null_to_empty_string(cls, v: Any) -> Any:
        return "" if v is None else v

    @field_validator("patch_record_id_list", mode="before")
    @classmethod
    def null_to_empty_list(cls, v: Any) -> Any:
        # Older writers serialize an empty list as null
        return [] if v is None else v

    @field_validator("delay_counter", mode="before")
    @classmethod
    def null_to_zero(cls, v: Any) -> Any:
        return 0 if v is None else v

    @classmethod
    def default(cls, version: str) -> NotifierConfig:
        """Build the document written when none exists on disk."""
        return cls(
            reboot_config=RebootPolicy.GRACEFUL_REBOOT.value,
            custom_message=DEFAULT_CUSTOM_MESSAGE,
            delay_counter=DEFAULT_DELAY_COUNTER,
            version=version,
        )

    @property
    def policy(self) -> RebootPolicy | None:
        """The parsed reboot policy, or None if the text is unknown."""
        return RebootPolicy.parse(self.reboot_config)

    @property
    def message(self) -> str:
        """The user-facing message, falling back to the default text."""
        return self.custom_message.strip() or DEFAULT_CUSTOM_MESSAGE


class ConfigPatch(BaseModel):
    """A partial update of NotifierConfig.

    Only fields that were explicitly set are applied.
    """

    model_config = ConfigDict(extra="forbid")

    base_url: str | None = None
    jump_host_base_url: str | None = None
    task_scheduled: bool | None = None
    reboot_config: str | None = None
    reboot_now: bool | None = None
    scheduled_time: str | None = None
    patch_record_id_list: list[str] | None = None
    identifier: str | None = None
    custom_message: str | None = None
    delay_counter: int | None = None
    asset: str | None = None
    asset_type: str | None = None

    def changes(self) -> dict[str, Any]:
        """Fields to overlay, as JSON-ready values."""
        return self.model_dump(mode="json", exclude_unset=True)


@dataclass
class CommandResult:
    """Outcome of one subprocess invocation."""

    command: str
    stdout: str = ""
    stderr: str = ""
    return_code: int = -1
    duration: float = 0.0
    error: str | None = None  # Failed to run at all (timeout, missing binary)

    @property
    def ok(self) -> bool:
        """True when the command ran and exited with status 0."""
        return self.error is None and self.return_code == 0

    def describe(self) -> str:
        """Short failure description for log and error messages."""
        if self.error:
            return self.error
        detail = self.stderr.strip() or self.stdout.strip()
        return f"exit code {self.return_code}: {detail}" if detail else f"exit code {self.return_code}"


class ControllerSettings(BaseModel):
    """Timing and behaviour of the reboot decision loop."""

    poll_interval: float = 1.0  # seconds between loop iterations
    error_backoff: float = 5.0  # seconds to wait after a transient failure
    post_reboot_settle: float = 10.0  # seconds to wait before the patch scan
    force_reboot_lead_minutes: int = 5
    graceful_reboot_lead_minutes: int = 15
    reboot_grace_seconds: int = 120  # warning window before the forced reboot
    command_timeout: float = 30.0
    reboot_check_timeout: float = 600.0

    # Report "reboot required" without probing the OS. This is the
    # behaviour agents have shipped with; turn it off to use the probes.
    always_require_reboot: bool = True

    # Leave the notifier unscheduled while the policy is "No reboot". A
    # reboot_now set by the user is still carried out.
    skip_schedule_on_no_reboot: bool = True



class PatchApiSettings(BaseModel):
    """Patch-management backend call settings."""

    timeout: float = 30.0


class FileNamesConfig(BaseModel):
    """Names of files shared with the notifier and the patch binary."""

    notifier_config: str = "SecOpsNotifierConfig.json"
    lock_file: str = "secops_notifier.pid"
    log_file: str = "rebootguard.log"
    task_script: str = "secops_notifier_task.sh"
    mac_reboot_script: str = "secops_mac_reboot_now.sh"
    patch_binary_config: str = "SecOpsPatchBinaryConfig.json"
    windows_patch_binary: str = "SecOpsPatchWindowsBinary.exe"
    linux_patch_binary: str = "SecOpsPatchLinuxBinary"
    mac_patch_binary: str = "SecOpsPatchMacBinary"
    windows_notifier: str = "SecOpsNotifier.exe"
    linux_notifier: str = "SecOpsNotifier"
    mac_notifier: str = "SecOpsRebootNotifier.app"
    pending_reboot_flag: str = "pendingReboot.txt"


class RebootGuardConfig(BaseModel):
    """Main rebootguard configuration."""

    controller: ControllerSettings = Field(default_factory=ControllerSettings)
    patch_api: PatchApiSettings = Field(default_factory=PatchApiSettings)
    files: FileNamesConfig = Field(default_factory=FileNamesConfig)
    task_name: str = "SecOpsNotifierTask"
    service_name: str = "SecOpsNotifierService"
    notification_title: str = "SecOps Notifier"
