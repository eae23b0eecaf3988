"""Shared fixtures built on the fakes in tests.helpers."""

import pytest

from device_reconcile.config import RunOptions
from tests.helpers import (
    ENV_VARS,
    FakeClock,
    FakeDeviceClient,
    directory_record,
    management_record,
    registry_record,
)


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """No Graph settings in the environment; returns an empty .env path"""
    for name in ENV_VARS:
        # setenv first so monkeypatch also undoes whatever load_dotenv writes
        monkeypatch.setenv(name, '')
        monkeypatch.delenv(name)
    env_file = tmp_path / '.env'
    env_file.write_text('')
    return env_file


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def device_records():
    """One laptop present in all three services plus an unrelated device"""
    return {
        'registry': [
            registry_record('ap-1', serial='SER001', name='LAPTOP-001'),
            registry_record('ap-2', serial='SER002'),
        ],
        'management': [
            management_record('md-1', serial='SER001', name='LAPTOP-001'),
            management_record('md-2', serial='SER002', name='LAPTOP-002'),
        ],
        'directory': [
            directory_record('en-1', name='LAPTOP-001', serial='SER001'),
            directory_record('en-2', name='LAPTOP-002'),
        ],
    }


@pytest.fixture
def fake_client(device_records):
    return FakeDeviceClient(**device_records)


@pytest.fixture
def options():
    return RunOptions(max_wait=100, poll_interval=10, wipe_timeout=200)
