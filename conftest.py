import time

import pytest

from taskmesh.config.settings import Settings
from taskmesh.runtime import Context
from taskmesh.scheduler.telemetry import ListSink


def make_settings(**overrides):
    values = dict(
        num_workers=2,
        worker_type="thread",
        threads_per_worker=2,
        monitor_interval=0.05,
        heartbeat_timeout=5.0,
        transfer_timeout=10.0,
        worker_shutdown_timeout=5.0,
        checkpoint_backend="none",
        default_task_timeout=None,
    )
    values.update(overrides)
    return Settings(**values)


def wait_until(predicate, timeout=10.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def test_settings():
    return make_settings()


@pytest.fixture
def events():
    return ListSink()


@pytest.fixture
def ctx(test_settings, events):
    context = Context(settings=test_settings, sinks=[events])
    yield context
    context.shutdown()


@pytest.fixture
def settings_factory():
    return make_settings


@pytest.fixture
def until():
    return wait_until
