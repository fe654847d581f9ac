"""Tests for the notifier config document store."""

import json
import os
import sys
import threading

import pytest

from rebootguard.config import ConfigError
from rebootguard.models import (
    DEFAULT_CUSTOM_MESSAGE,
    DEFAULT_DELAY_COUNTER,
    ConfigPatch,
    NotifierConfig,
    RebootPolicy,
)
from rebootguard.store import ConfigStore, timestamp

from conftest import read_config, write_config


class TestLoad:
    """Loading, default creation and migration."""

    def test_missing_file_creates_default(self, tmp_path):
        path = tmp_path / "SecOpsNotifierConfig.json"
        store = ConfigStore(path, version="2.0.0", platform="linux")

        config = store.load()

        assert path.exists()
        assert config.reboot_config == RebootPolicy.GRACEFUL_REBOOT.value
        assert config.custom_message == DEFAULT_CUSTOM_MESSAGE
        assert config.delay_counter == DEFAULT_DELAY_COUNTER
        assert config.version == "2.0.0"
        assert config.task_scheduled is False
        assert config.reboot_now is False
        assert config.last_updated

        on_disk = read_config(path)
        assert on_disk["version"] == "2.0.0"
        assert on_disk["patch_record_id_list"] == []

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
    def test_written_file_is_group_readable_only(self, tmp_path):
        path = tmp_path / "config.json"
        ConfigStore(path, version="2.0.0", platform="linux").load()

        assert oct(path.stat().st_mode & 0o777) == oct(0o640)

    def test_existing_file_is_loaded(self, tmp_path):
        path = tmp_path / "config.json"
        write_config(
            path,
            base_url="https://patch.example.com",
            asset="host-1",
            asset_type="server",
            reboot_config="Force reboot after patch deployment",
            scheduled_time="2030-01-01 10:00:00",
            version="2.0.0",
        )

        config = ConfigStore(path, version="2.0.0").load()

        assert config.base_url == "https://patch.example.com"
        assert config.policy == RebootPolicy.FORCE_REBOOT
        assert config.scheduled_time == "2030-01-01 10:00:00"

    def test_version_mismatch_rewrites_file(self, tmp_path):
        path = tmp_path / "config.json"
        write_config(path, asset="host-1", version="1.0.0", delay_counter=1)

        config = ConfigStore(path, version="2.0.0").load()

        assert config.version == "2.0.0"
        on_disk = read_config(path)
        assert on_disk["version"] == "2.0.0"
        assert on_disk["asset"] == "host-1"
        assert on_disk["delay_counter"] == 1

    def test_matching_version_does_not_rewrite(self, tmp_path):
        path = tmp_path / "config.json"
        write_config(path, asset="host-1", version="2.0.0")
        before = path.read_text()

        ConfigStore(path, version="2.0.0").load()

        assert path.read_text() == before

    def test_null_list_loads_as_empty(self, tmp_path):
        path = tmp_path / "config.json"
        write_config(path, patch_record_id_list=None, custom_message=None, version="2.0.0")

        config = ConfigStore(path, version="2.0.0").load()

        assert config.patch_record_id_list == []
        assert config.message == DEFAULT_CUSTOM_MESSAGE

    def test_malformed_json_raises(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{not json")

        with pytest.raises(ConfigError, match="load config failed"):
            ConfigStore(path).load()

    def test_non_object_raises(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("[1, 2, 3]")

        with pytest.raises(ConfigError, match="expected an object"):
            ConfigStore(path).load()

    def test_wrong_field_type_raises(self, tmp_path):
        path = tmp_path / "config.json"
        write_config(path, delay_counter="many")

        with pytest.raises(ConfigError):
            ConfigStore(path).load()


class TestUpdate:
    """Partial updates of the on-disk document."""

    def test_update_changes_only_named_fields(self, store, linux_paths):
        store.update(ConfigPatch(task_scheduled=True))

        on_disk = read_config(linux_paths.config_file)
        assert on_disk["task_scheduled"] is True
        assert on_disk["reboot_config"] == RebootPolicy.GRACEFUL_REBOOT.value
        assert on_disk["custom_message"] == DEFAULT_CUSTOM_MESSAGE

    def test_update_rereads_disk_first(self, store, linux_paths):
        # Another process changes the delay counter after our load
        fields = read_config(linux_paths.config_file)
        fields["delay_counter"] = 0
        fields["scheduled_time"] = "2030-05-05 12:00:00"
        write_config(linux_paths.config_file, **fields)

        config = store.update({"reboot_now": False, "task_scheduled": True})

        assert config.delay_counter == 0
        assert config.scheduled_time == "2030-05-05 12:00:00"
        assert config.task_scheduled is True

    def test_unknown_fields_survive_update(self, store, linux_paths):
        fields = read_config(linux_paths.config_file)
        fields["panel_theme"] = "dark"
        write_config(linux_paths.config_file, **fields)

        store.update(ConfigPatch(reboot_now=True))

        on_disk = read_config(linux_paths.config_file)
        assert on_disk["panel_theme"] == "dark"
        assert on_disk["reboot_now"] is True

    def test_update_refreshes_last_updated(self, store, linux_paths):
        write_config(linux_paths.config_file, **{**read_config(linux_paths.config_file), "last_updated": "old"})

        config = store.update(ConfigPatch(asset="host-2"))

        assert config.last_updated != "old"
        assert read_config(linux_paths.config_file)["last_updated"] == config.last_updated

    def test_unknown_patch_field_raises(self, store):
        with pytest.raises(ConfigError, match="invalid patch"):
            store.update({"not_a_field": 1})

    def test_failed_update_keeps_memory_state(self, store, linux_paths):
        before = store.config
        linux_paths.config_file.write_text("garbage")

        with pytest.raises(ConfigError):
            store.update(ConfigPatch(reboot_now=True))

        assert store.config == before

    def test_no_temp_file_left_behind(self, store, linux_paths):
        store.update(ConfigPatch(task_scheduled=True))

        leftovers = [p for p in os.listdir(linux_paths.secure_dir) if p.endswith(".tmp")]
        assert leftovers == []

    def test_concurrent_updates_keep_valid_document(self, store, linux_paths):
        """Updates from several threads leave a parseable document."""
        def worker(i):
            store.update({"asset": f"host-{i}"})

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        on_disk = read_config(linux_paths.config_file)
        assert on_disk["asset"].startswith("host-")
        json.dumps(on_disk)  # still a valid document


class TestSave:
    def test_save_writes_memory_document(self, store, linux_paths):
        linux_paths.config_file.unlink()

        store.save()

        assert NotifierConfig.model_validate(read_config(linux_paths.config_file)).version == "2.0.0"

    def test_config_property_is_a_copy(self, store):
        copy = store.config
        copy.reboot_now = True

        assert store.config.reboot_now is False


def test_timestamp_has_offset():
    value = timestamp()
    assert "T" in value
    assert value[-6] in "+-"
