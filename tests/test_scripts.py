"""Tests for the scheduling script templates."""

import re
import shutil
import subprocess
from pathlib import Path

import pytest

from rebootguard.core import scripts

HAS_BASH = shutil.which("bash") is not None
HAS_SED = shutil.which("sed") is not None

TRICKY_MESSAGE = """Don't "panic"; $(touch /tmp/pwned) `id` & reboot"""
ASSIGNMENT = re.compile(r"^[A-Z_]+=")


class TestHelpers:
    @pytest.mark.parametrize(
        "seconds,expected",
        [(120, "2 minutes"), (60, "1 minute"), (90, "90 seconds"), (30, "30 seconds")],
    )
    def test_describe_seconds(self, seconds, expected):
        assert scripts.describe_seconds(seconds) == expected

    def test_ps_quote_doubles_single_quotes(self):
        assert scripts.ps_quote("it's") == "'it''s'"

    def test_osascript_args_keep_message_separate(self):
        args = scripts.osascript_notification_args(TRICKY_MESSAGE, "Title")

        assert args[0] == "/usr/bin/osascript"
        assert args[-2] == TRICKY_MESSAGE
        assert args[-1] == "Title"


@pytest.mark.skipif(not HAS_BASH, reason="bash not available")
class TestBashQuoting:
    """The message must reach bash as data, never as code."""

    def _eval_assignments(self, script: str, variable: str) -> str:
        # Run only the variable assignments at the top of the script
        header = "\n".join(line for line in script.splitlines() if ASSIGNMENT.match(line))
        result = subprocess.run(
            ["bash", "-c", f'{header}\nprintf "%s" "${variable}"'],
            capture_output=True,
            text=True,
            timeout=10,
        )
        return result.stdout

    def test_linux_task_script_message(self, tmp_path):
        script = scripts.build_linux_task_script(tmp_path / "c.json", "2030-01-01 00:00:00", TRICKY_MESSAGE)

        assert self._eval_assignments(script, "MSG") == TRICKY_MESSAGE
        assert self._eval_assignments(script, "REBOOT_TIME") == "2030-01-01 00:00:00"

    def test_mac_task_script_message(self, tmp_path):
        script = scripts.build_mac_task_script(
            tmp_path / "c.json", "", TRICKY_MESSAGE, Path("/Applications/My App.app"), "Title's"
        )

        assert self._eval_assignments(script, "MSG") == TRICKY_MESSAGE
        assert self._eval_assignments(script, "NOTIFIER_APP") == "/Applications/My App.app"
        assert self._eval_assignments(script, "TITLE") == "Title's"

    def test_linux_reboot_now_command_message(self):
        command = scripts.build_linux_reboot_now_command(TRICKY_MESSAGE, 120)
        assignment = command.split("; echo ")[0]

        result = subprocess.run(
            ["bash", "-c", f'{assignment}; printf "%s" "$MSG"'],
            capture_output=True,
            text=True,
            timeout=10,
        )
        assert result.stdout == TRICKY_MESSAGE


@pytest.mark.skipif(not HAS_SED, reason="sed not available")
class TestRebootNowSedExpr:
    @pytest.mark.parametrize(
        "line",
        [
            '  "reboot_now": false,',
            '  "reboot_now" : false,',
            '  "reboot_now":false',
            '  "reboot_now"  :  null',
        ],
    )
    def test_sets_flag_for_any_colon_spacing(self, line):
        result = subprocess.run(
            ["sed", "-e", scripts.REBOOT_NOW_SED_EXPR],
            input=line + "\n",
            capture_output=True,
            text=True,
            timeout=10,
        )

        assert result.stdout.strip().startswith('"reboot_now": true')

    def test_leaves_other_fields_alone(self):
        line = '  "reboot_nowish" : false, "task_scheduled" : true'
        result = subprocess.run(
            ["sed", "-e", scripts.REBOOT_NOW_SED_EXPR],
            input=line + "\n",
            capture_output=True,
            text=True,
            timeout=10,
        )

        assert result.stdout.rstrip("\n") == line


class TestTemplates:
    def test_linux_reboot_now_command_waits_grace(self):
        command = scripts.build_linux_reboot_now_command("msg", 120)

        assert "sleep 120" in command
        assert "2 minutes" in command
        assert command.rstrip().endswith("fi")

    def test_mac_reboot_script_ends_with_shutdown(self):
        script = scripts.build_mac_reboot_script("msg", 120, "Title")

        assert "sleep 120" in script
        assert script.rstrip().endswith("/sbin/shutdown -r now")

    def test_linux_task_script_uses_flock_and_sed(self, tmp_path):
        script = scripts.build_linux_task_script(tmp_path / "c.json", "", "msg")

        assert "flock -x 200" in script
        assert scripts.REBOOT_NOW_SED_EXPR in script

    def test_mac_task_script_parses_time_with_bsd_date(self, tmp_path):
        script = scripts.build_mac_task_script(tmp_path / "c.json", "", "msg", Path("/A.app"), "T")

        assert 'date -j -f "%Y-%m-%d %H:%M:%S"' in script


class TestWindowsCommands:
    def test_schedule_with_time(self):
        command = scripts.build_windows_schedule_command(
            "SecOpsNotifierTask", Path("C:/ProgramData/SecOpsNotifierService/SecOpsNotifier.exe"), "2030-01-01 10:00:00"
        )

        assert "-At '2030-01-01 10:00:00'" in command
        assert "Start-ScheduledTask" not in command
        assert "-GroupId 'Users'" in command

    def test_schedule_without_time_starts_now(self):
        command = scripts.build_windows_schedule_command("SecOpsNotifierTask", Path("C:/n.exe"), "")

        assert "-At (Get-Date)" in command
        assert command.endswith("Start-ScheduledTask -TaskName $taskName")

    def test_task_name_is_quoted(self):
        command = scripts.build_windows_delete_task_command("Bob's Task")

        assert "$taskName = 'Bob''s Task'" in command
        assert "Unregister-ScheduledTask" in command

    def test_reboot_now_runs_as_system(self):
        command = scripts.build_windows_reboot_now_command("SecOpsNotifierTask", 120)

        assert "/F /R /T 120" in command
        assert "-UserId 'SYSTEM'" in command
        assert "2 minutes" in command

    def test_stop_service(self):
        command = scripts.build_windows_stop_service_command("SecOpsNotifierService")

        assert "Get-Service -Name 'SecOpsNotifierService'" in command
        assert "Stop-Service" in command
