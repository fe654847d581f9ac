"""Shared fixtures for rebootguard tests."""

import json
from pathlib import Path

import pytest

from rebootguard.config import HostPaths
from rebootguard.store import ConfigStore


@pytest.fixture
def linux_paths(tmp_path):
    """Host paths rooted in a temp directory, laid out for Linux."""
    return HostPaths.build(tmp_path, platform="linux")


@pytest.fixture
def store(linux_paths):
    """A ConfigStore on a freshly created default document."""
    store = ConfigStore(linux_paths.config_file, version="2.0.0", platform="linux")
    store.load()
    return store


def write_config(path: Path, **fields) -> None:
    """Write a config document with the given fields."""
    path.write_text(json.dumps(fields, indent=2))


def read_config(path: Path) -> dict:
    return json.loads(path.read_text())
