"""
Shared pytest fixtures for contract tests.
"""
import shutil
import tempfile
import threading

import pytest

from turntable.config import TurntableConfig
from turntable.notifications import NotificationBus
from turntable.state import PlaybackStateTracker
from turntable.tests.contracts._fake_engine import EngineFarm, NotificationRecorder, wait_until


@pytest.fixture
def bus():
    notification_bus = NotificationBus()
    yield notification_bus
    notification_bus.close()


@pytest.fixture
def recorder(bus):
    rec = NotificationRecorder()
    bus.subscribe(rec)
    return rec


@pytest.fixture
def tracker(bus):
    return PlaybackStateTracker(bus)


@pytest.fixture
def socket_dir():
    # Short path: AF_UNIX socket paths are limited to ~100 bytes
    path = tempfile.mkdtemp(prefix="tt-")
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def fast_config(socket_dir):
    """Config with every delay shrunk so lifecycle tests run in milliseconds."""
    return TurntableConfig(
        socket_dir=socket_dir,
        kill_timeout_sec=0.5,
        connect_initial_delay_sec=0.01,
        connect_max_backoff_sec=0.05,
        connect_max_retries=20,
        connect_timeout_sec=0.5,
        request_timeout_sec=1.0,
        health_check_timeout_sec=0.3,
        health_retry_backoff_sec=0.05,
        file_load_timeout_sec=2.0,
        stall_check_interval_sec=0.05,
        stall_max_polls=3,
        recovery_settle_sec=0.01,
        recovery_ready_timeout_sec=3.0,
        recovery_unpause_delay_sec=0.01,
        recovery_backoff_ms=[10],
        recovery_max_attempts=3,
    )


@pytest.fixture
def engine_farm():
    """Patch process spawning so every engine is a FakeEngine."""
    with EngineFarm() as farm:
        yield farm


@pytest.fixture(autouse=False)  # Request explicitly in tests that must not leak threads
def thread_leak_guard():
    """
    Detect threads left running by a test.

    Daemon timers and engine threads must be gone once the owner is closed.
    """
    before = set(t.ident for t in threading.enumerate())
    yield
    wait_until(
        lambda: not [t for t in threading.enumerate() if t.ident not in before and t.is_alive()],
        timeout=2.0,
    )
    leaked = [t for t in threading.enumerate() if t.ident not in before and t.is_alive()]
    if leaked:
        thread_info = '\n'.join(f"  - {t.name} (daemon={t.daemon})" for t in leaked)
        assert False, f"Thread leak detected, shutdown incomplete.\nLeaked threads:\n{thread_info}"
