"""Script templates for the platform scheduling adapters.

Each builder takes plain parameters and returns script text, so quoting of
user-supplied values (the custom message in particular) is checked in one
place. Values go into bash through ``shlex.quote`` assignments, into
PowerShell as single-quoted literals, and into AppleScript as ``argv``.
"""

from __future__ import annotations

import shlex
from pathlib import Path

# Matches `"reboot_now": false` whether or not the writer puts a space before the colon
REBOOT_NOW_SED_EXPR = r's/"reboot_now" *: *[^,}][^,}]*/"reboot_now": true/'

APPLESCRIPT_NOTIFY = (
    "-e 'on run argv' "
    "-e 'display notification (item 1 of argv) with title (item 2 of argv)' "
    "-e 'end run'"
)


def describe_seconds(seconds: int) -> str:
    """Human wording for a grace period ("2 minutes", "90 seconds")."""
    if seconds >= 60 and seconds % 60 == 0:
        minutes = seconds // 60
        return f"{minutes} minute" if minutes == 1 else f"{minutes} minutes"
    return f"{seconds} seconds"


def ps_quote(value: str) -> str:
    """Quote a value as a PowerShell single-quoted string literal."""
    return "'" + value.replace("'", "''") + "'"


def osascript_notification_args(message: str, title: str) -> list[str]:
    """Arguments for osascript that display a notification without string splicing."""
    return [
        "/usr/bin/osascript",
        "-e", "on run argv",
        "-e", "display notification (item 1 of argv) with title (item 2 of argv)",
        "-e", "end run",
        message,
        title,
    ]


# Linux


def build_linux_task_script(config_path: Path, reboot_time: str, message: str) -> str:
    """Script that sets reboot_now in the config once reboot_time has passed.

    An empty or unparsable reboot_time is treated as already due.
    """
    q = shlex.quote
    return f"""#!/bin/bash
JSON_FILE={q(str(config_path))}
LOCK_FILE={q(str(config_path) + ".lock")}
REBOOT_TIME={q(reboot_time)}
MSG={q(message)}

echo "Reboot Required: $MSG. Your system is scheduled to reboot at $REBOOT_TIME." | wall 2>/dev/null

update_json() {{
    (
        flock -x 200
        sed -i '{REBOOT_NOW_SED_EXPR}' "$JSON_FILE"
    ) 200>"$LOCK_FILE"
}}

TARGET_TIMESTAMP=""
if [ -n "$REBOOT_TIME" ]; then
    TARGET_TIMESTAMP=$(date -d "$REBOOT_TIME" +%s 2>/dev/null)
fi
CURRENT_TIME=$(date +%s)

if [ -z "$TARGET_TIMESTAMP" ] || [ "$TARGET_TIMESTAMP" -le "$CURRENT_TIME" ]; then
    update_json
else
    sleep $((TARGET_TIMESTAMP - CURRENT_TIME))
    update_json
fi
"""


def build_linux_reboot_now_command(message: str, grace_seconds: int) -> str:
    """Shell command that warns logged-in users and reboots after the grace period."""
    q = shlex.quote
    grace = describe_seconds(grace_seconds)
    return (
        f"MSG={q(message)}; "
        f'echo "System will reboot in the next {grace}"; '
        f'wall "Device Will Reboot Shortly: $MSG. Your system will reboot in the next {grace}" 2>/dev/null; '
        f"sleep {int(grace_seconds)}; "
        'if [ "$(id -u)" -eq 0 ]; then reboot; else sudo -n reboot; fi'
    )


# macOS


def build_mac_task_script(
    config_path: Path,
    reboot_time: str,
    message: str,
    notifier_app: Path,
    title: str,
) -> str:
    """Script that notifies the user and, once due, sets reboot_now and opens the notifier."""
    q = shlex.quote
    return f"""#!/bin/bash
JSON_FILE={q(str(config_path))}
LOCK_FILE={q(str(config_path) + ".lock")}
REBOOT_TIME={q(reboot_time)}
NOTIFIER_APP={q(str(notifier_app))}
NOTIFIER_NAME={q(notifier_app.stem)}
MSG={q(message)}
TITLE={q(title)}

notify() {{
    /usr/bin/osascript {APPLESCRIPT_NOTIFY} "$1" "$TITLE" >/dev/null 2>&1
}}

notifier_running() {{
    pgrep -f "$NOTIFIER_NAME" >/dev/null 2>&1
}}

update_json() {{
    if command -v flock >/dev/null 2>&1; then
        (
            flock -x 200
            /usr/bin/sed -i '' '{REBOOT_NOW_SED_EXPR}' "$JSON_FILE"
        ) 200>"$LOCK_FILE"
    else
        /usr/bin/lockf -k "$LOCK_FILE" /usr/bin/sed -i '' '{REBOOT_NOW_SED_EXPR}' "$JSON_FILE"
    fi
}}

open_notifier() {{
    if [ -d "$NOTIFIER_APP" ] && ! notifier_running; then
        /usr/bin/open "$NOTIFIER_APP"
    fi
}}

notify "Reboot Required: $MSG. Your system is scheduled to reboot at $REBOOT_TIME."

TARGET_TIMESTAMP=""
if [ -n "$REBOOT_TIME" ]; then
    TARGET_TIMESTAMP=$(date -j -f "%Y-%m-%d %H:%M:%S" "$REBOOT_TIME" +%s 2>/dev/null)
fi
CURRENT_TIME=$(date +%s)

if [ -z "$TARGET_TIMESTAMP" ] || [ "$TARGET_TIMESTAMP" -le "$CURRENT_TIME" ]; then
    update_json
    open_notifier
else
    sleep $((TARGET_TIMESTAMP - CURRENT_TIME))
    update_json
    open_notifier
    notify "Launching reboot notifier..."
fi
"""


def build_mac_reboot_script(message: str, grace_seconds: int, title: str) -> str:
    """Script that warns the user and reboots after the grace period."""
    q = shlex.quote
    grace = describe_seconds(grace_seconds)
    return f"""#!/bin/bash
MSG={q(message)}
TITLE={q(title)}

notify() {{
    /usr/bin/osascript {APPLESCRIPT_NOTIFY} "$1" "$TITLE" >/dev/null 2>&1
}}

notify "Device Will Reboot Shortly: $MSG. Your system will reboot in {grace}."
sleep {int(grace_seconds)}
notify "Rebooting now..."
/sbin/shutdown -r now
"""


# Windows


def build_windows_delete_task_command(task_name: str) -> str:
    """PowerShell that unregisters the task if it exists."""
    return (
        f"$taskName = {ps_quote(task_name)}; "
        "if (Get-ScheduledTask -TaskName $taskName -ErrorAction SilentlyContinue) "
        "{ Unregister-ScheduledTask -TaskName $taskName -Confirm:$false }"
    )


def build_windows_schedule_command(task_name: str, notifier_path: Path, scheduled_time: str) -> str:
    """PowerShell that registers the notifier to run for logged-in users at scheduled_time.

    An empty scheduled_time triggers now and starts the task immediately.
    """
    trigger_at = ps_quote(scheduled_time) if scheduled_time else "(Get-Date)"
    command = (
        f"$taskName = {ps_quote(task_name)}; "
        f"$Action = New-ScheduledTaskAction -Execute {ps_quote(str(notifier_path))}; "
        "$Settings = New-ScheduledTaskSettingsSet -AllowStartIfOnBatteries -DontStopIfGoingOnBatteries -StartWhenAvailable; "
        f"$Trigger = New-ScheduledTaskTrigger -Once -At {trigger_at}; "
        "$Principal = New-ScheduledTaskPrincipal -GroupId 'Users' -RunLevel Highest; "
        "Register-ScheduledTask -Action $Action -Trigger $Trigger -Principal $Principal "
        "-Settings $Settings -TaskName $taskName -Description 'Reboot Notifier' | Out-Null"
    )
    if not scheduled_time:
        command += "; Start-ScheduledTask -TaskName $taskName"
    return command


def build_windows_reboot_now_command(task_name: str, grace_seconds: int) -> str:
    """PowerShell that registers and starts a SYSTEM task rebooting after the grace period."""
    grace = describe_seconds(grace_seconds)
    return (
        f"$taskName = {ps_quote(task_name)}; "
        f"$Action = New-ScheduledTaskAction -Execute 'shutdown.exe' -Argument '/F /R /T {int(grace_seconds)}'; "
        "$Trigger = New-ScheduledTaskTrigger -Once -At (Get-Date); "
        "$Settings = New-ScheduledTaskSettingsSet -AllowStartIfOnBatteries -DontStopIfGoingOnBatteries -StartWhenAvailable; "
        "$Principal = New-ScheduledTaskPrincipal -UserId 'SYSTEM' -RunLevel Highest; "
        "Register-ScheduledTask -Action $Action -Trigger $Trigger -Principal $Principal "
        f"-Settings $Settings -TaskName $taskName -Description {ps_quote(f'Reboot the machine with a {grace} delay')} | Out-Null; "
        "Start-ScheduledTask -TaskName $taskName"
    )


def build_windows_grant_users_command(directory: Path) -> str:
    """PowerShell granting BUILTIN\\Users full control over a directory tree."""
    return (
        f"$d = {ps_quote(str(directory))}; "
        "$rule = New-Object System.Security.AccessControl.FileSystemAccessRule('BUILTIN\\Users', 'FullControl', 'Allow'); "
        "Get-ChildItem -Path $d -Recurse | ForEach-Object { $acl = Get-Acl $_.FullName; $acl.SetAccessRule($rule); Set-Acl $_.FullName $acl }; "
        "$dirAcl = Get-Acl $d; $dirAcl.SetAccessRule($rule); Set-Acl $d $dirAcl"
    )


def build_windows_stop_service_command(service_name: str) -> str:
    """PowerShell that stops the notifier service if it is installed."""
    return (
        f"$svc = Get-Service -Name {ps_quote(service_name)} -ErrorAction SilentlyContinue; "
        "if ($svc) { Stop-Service -Name $svc.Name -Force }"
    )
