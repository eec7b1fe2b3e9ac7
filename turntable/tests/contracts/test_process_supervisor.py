"""
Contract tests for ProcessSupervisor.

Covers:
- Engine command line and unique socket addresses
- Process tree kill (children first, already-gone tolerated)
- start(): Buffering, connect, observe, FIFO flush of queued commands
- Spawn and connect failures surfaced as EngineFailed
- stop(): idempotent, re-entrant safe, always ends Idle
"""

import dataclasses
import os
import threading
from unittest.mock import MagicMock, Mock, patch

import psutil
import pytest

from turntable.engine.events import EventDispatcher
from turntable.engine.process import (
    ProcessSupervisor,
    build_engine_command,
    kill_process_tree,
    make_socket_path,
)
from turntable.errors import EngineConnectionError, EngineNotRunningError, EngineSpawnError
from turntable.ipc.commands import GetProperty, LoadFile, set_loop_file, set_pause
from turntable.notifications import EngineFailed
from turntable.state import PlayerPhase
from turntable.tests.contracts._fake_engine import wait_until


def make_supervisor(config, tracker, bus):
    dispatcher = EventDispatcher(tracker, bus, file_load_timeout=config.file_load_timeout_sec)
    return ProcessSupervisor(config, tracker, bus, dispatcher)


@pytest.fixture
def supervisor(fast_config, tracker, bus):
    sup = make_supervisor(fast_config, tracker, bus)
    yield sup
    sup.stop()


def alive_process_mock(pid=4_200_999):
    process = MagicMock()
    process.pid = pid
    process.poll.return_value = None
    process.wait.side_effect = lambda timeout=None: threading.Event().wait(timeout or 0.05)
    return process


class TestEngineCommandLine:

    def test_headless_audio_flags(self, fast_config):
        argv = build_engine_command(fast_config, "/tmp/x.sock")
        assert argv[0] == "mpv"
        assert "--input-ipc-server=/tmp/x.sock" in argv
        for flag in ("--idle=yes", "--no-video", "--no-terminal", "--reset-on-next-file=af", "--cache=yes"):
            assert flag in argv
        assert "--demuxer-max-bytes=64MiB" in argv

    def test_extra_args_are_appended(self, fast_config):
        config = dataclasses.replace(fast_config, engine_extra_args=["--ao=null"])
        assert build_engine_command(config, "/tmp/x.sock")[-1] == "--ao=null"

    def test_socket_paths_are_unique(self, socket_dir):
        paths = {make_socket_path(socket_dir) for _ in range(50)}
        assert len(paths) == 50
        assert all(p.startswith(socket_dir) and p.endswith(".sock") for p in paths)


class TestKillProcessTree:

    def test_kills_children_before_parent_and_reaps(self):
        order = []
        root = Mock(pid=100)
        root.kill.side_effect = lambda: order.append("root")
        child = Mock(pid=101)
        child.kill.side_effect = lambda: order.append("child")
        root.children.return_value = [child]
        process = Mock(pid=100)

        with patch("turntable.engine.process.psutil.Process", return_value=root), \
             patch("turntable.engine.process.psutil.wait_procs", return_value=([child], [])) as wait_procs:
            kill_process_tree(process, timeout=0.1)

        assert order == ["child", "root"]
        wait_procs.assert_called_once_with([child], timeout=0.1)
        process.wait.assert_called_once_with(timeout=0.1)

    def test_already_gone_counts_as_killed(self):
        process = Mock(pid=100)
        with patch("turntable.engine.process.psutil.Process", side_effect=psutil.NoSuchProcess(100)):
            kill_process_tree(process, timeout=0.1)
        process.wait.assert_called_once_with(timeout=0.1)

    def test_access_denied_child_does_not_stop_teardown(self, caplog):
        root = Mock(pid=100)
        child = Mock(pid=101)
        child.kill.side_effect = psutil.AccessDenied(101)
        root.children.return_value = [child]
        process = Mock(pid=100)
        with patch("turntable.engine.process.psutil.Process", return_value=root), \
             patch("turntable.engine.process.psutil.wait_procs", return_value=([], [])):
            kill_process_tree(process, timeout=0.1)
        root.kill.assert_called_once_with()
        assert "Not allowed to kill process 101" in caplog.text


class TestStartAndConnect:

    def test_start_announces_buffering_and_connects(self, engine_farm, supervisor, bus, recorder, socket_dir):
        session = supervisor.start()
        assert session.socket_path.startswith(socket_dir)
        assert wait_until(supervisor.is_ready)
        bus.flush(1.0)
        assert recorder.phases()[0] == PlayerPhase.BUFFERING
        assert engine_farm.latest.socket_path == session.socket_path

    def test_observes_properties_then_flushes_queue_in_order(self, fast_config, tracker, bus, engine_farm):
        config = dataclasses.replace(fast_config, connect_initial_delay_sec=0.2, connect_max_backoff_sec=0.4)
        supervisor = make_supervisor(config, tracker, bus)
        try:
            supervisor.start()
            queued = [LoadFile("file:///a.mp3"), set_pause(True), set_loop_file(False)]
            for command in queued:
                assert supervisor.send(command).result(timeout=0) is None
            assert wait_until(supervisor.is_ready)
            assert engine_farm.latest.received() == [
                ["observe_property", 1, "time-pos"],
                ["observe_property", 2, "duration"],
                ["observe_property", 3, "pause"],
                ["loadfile", "file:///a.mp3", "replace"],
                ["set_property", "pause", True],
                ["set_property", "loop-file", "no"],
            ]
        finally:
            supervisor.stop()

    def test_replies_and_events_are_routed(self, engine_farm, supervisor, tracker):
        supervisor.start()
        assert wait_until(supervisor.is_ready)
        assert supervisor.send(GetProperty("volume")).result(timeout=2) == 100.0

        engine_farm.latest.send_event({"event": "property-change", "id": 3, "name": "pause", "data": True})
        assert wait_until(lambda: tracker.phase == PlayerPhase.PAUSED)

    def test_send_without_session_fails(self, supervisor):
        with pytest.raises(EngineNotRunningError):
            supervisor.send(GetProperty("volume")).result(timeout=0)

    def test_start_replaces_existing_session(self, engine_farm, supervisor):
        first = supervisor.start()
        second = supervisor.start()
        assert first is not second
        assert first.closed.is_set()
        assert engine_farm.kills == 1
        assert supervisor.session is second


class TestFailures:

    def test_spawn_failure_publishes_and_raises(self, engine_farm, supervisor, tracker, bus, recorder):
        engine_farm.spawn_error = FileNotFoundError("No such file or directory: 'mpv'")
        with pytest.raises(EngineSpawnError):
            supervisor.start()
        bus.flush(1.0)
        failures = recorder.of_type(EngineFailed)
        assert len(failures) == 1
        assert isinstance(failures[0].error, EngineSpawnError)
        assert tracker.phase == PlayerPhase.IDLE
        assert supervisor.session is None

    def test_process_exit_before_connect_is_surfaced(self, fast_config, tracker, bus, recorder, engine_farm):
        config = dataclasses.replace(fast_config, connect_initial_delay_sec=0.2, connect_max_backoff_sec=0.4)
        supervisor = make_supervisor(config, tracker, bus)
        try:
            supervisor.start()
            engine_farm.latest.kill()
            assert recorder.wait_for(EngineFailed)
            assert isinstance(recorder.of_type(EngineFailed)[0].error, EngineConnectionError)
            assert not supervisor.is_alive()
        finally:
            supervisor.stop()

    def test_connect_retries_are_bounded(self, fast_config, tracker, bus, recorder):
        config = dataclasses.replace(fast_config, connect_max_retries=2, connect_max_backoff_sec=0.02)
        supervisor = make_supervisor(config, tracker, bus)
        with patch("turntable.engine.process.subprocess.Popen", return_value=alive_process_mock()), \
             patch("turntable.engine.process.kill_process_tree"):
            session = supervisor.start()
            assert recorder.wait_for(EngineFailed)
            assert "timed out after 2 retries" in str(recorder.of_type(EngineFailed)[0].error)
            assert session.closed.is_set()
            assert not supervisor.is_alive()
            supervisor.stop()

    def test_socket_loss_closes_session(self, engine_farm, supervisor):
        session = supervisor.start()
        assert wait_until(supervisor.is_ready)
        engine_farm.latest.kill()
        assert wait_until(session.closed.is_set)
        assert not supervisor.is_ready()
        assert not supervisor.is_alive()


class TestStop:

    def test_stop_ends_idle_and_removes_socket(self, engine_farm, supervisor, tracker, bus, recorder):
        session = supervisor.start()
        assert wait_until(supervisor.is_ready)
        supervisor.stop()
        bus.flush(1.0)
        assert recorder.phases()[-1] == PlayerPhase.IDLE
        assert supervisor.session is None
        assert session.closed.is_set()
        assert not os.path.exists(session.socket_path)

    def test_stop_without_session_still_announces_idle(self, supervisor, bus, recorder):
        supervisor.stop()
        supervisor.stop()
        bus.flush(1.0)
        assert recorder.phases() == [PlayerPhase.IDLE, PlayerPhase.IDLE]

    def test_reentrant_stop_tears_down_once(self, supervisor):
        kills = []

        def reenter(process, timeout=2.0):
            kills.append(process)
            supervisor.stop()

        with patch("turntable.engine.process.subprocess.Popen", return_value=alive_process_mock()), \
             patch("turntable.engine.process.kill_process_tree", side_effect=reenter):
            supervisor.start()
            supervisor.stop()
        assert len(kills) == 1

    def test_concurrent_stop_waits_for_running_teardown(self, supervisor):
        in_kill = threading.Event()
        release = threading.Event()
        kills = []

        def slow_kill(process, timeout=2.0):
            kills.append(process)
            in_kill.set()
            release.wait(2.0)

        with patch("turntable.engine.process.subprocess.Popen", return_value=alive_process_mock()), \
             patch("turntable.engine.process.kill_process_tree", side_effect=slow_kill):
            supervisor.start()
            first = threading.Thread(target=supervisor.stop)
            first.start()
            assert in_kill.wait(2.0)

            second = threading.Thread(target=supervisor.stop)
            second.start()
            second.join(0.2)
            assert second.is_alive()  # blocked behind the running teardown

            release.set()
            first.join(2.0)
            second.join(2.0)
        assert not second.is_alive()
        assert len(kills) == 1
        assert supervisor.session is None

    def test_start_during_foreign_stop_tears_down_old_session(self, engine_farm, supervisor):
        first = supervisor.start()
        assert wait_until(supervisor.is_ready)

        with supervisor._lifecycle_lock:
            stopper = threading.Thread(target=supervisor.stop)
            stopper.start()
            stopper.join(0.1)
            assert stopper.is_alive()  # waiting for the lock this thread holds

            second = supervisor.start()
            assert first.closed.is_set()
            assert engine_farm.engines[0].exited.is_set()
            assert supervisor.session is second
        stopper.join(2.0)

        assert not stopper.is_alive()
        # The stop requested before start() ran still applies to the new session
        assert second.closed.is_set()
        assert supervisor.session is None
        assert all(engine.exited.is_set() for engine in engine_farm.engines)

    def test_start_from_another_thread_waits_for_stop(self, engine_farm, supervisor):
        first = supervisor.start()
        assert wait_until(supervisor.is_ready)
        in_kill = threading.Event()
        release = threading.Event()
        farm_kill = engine_farm._kill_tree

        def slow_kill(process, timeout=2.0):
            in_kill.set()
            release.wait(2.0)
            farm_kill(process, timeout)

        started = []
        with patch("turntable.engine.process.kill_process_tree", side_effect=slow_kill):
            stopper = threading.Thread(target=supervisor.stop)
            stopper.start()
            assert in_kill.wait(2.0)
            starter = threading.Thread(target=lambda: started.append(supervisor.start()))
            starter.start()
            starter.join(0.2)
            assert starter.is_alive()
            release.set()
            stopper.join(2.0)
            starter.join(2.0)

        assert first.closed.is_set()
        assert engine_farm.engines[0].exited.is_set()
        assert len(started) == 1 and supervisor.session is started[0]
        assert not started[0].closed.is_set()
        live = [engine for engine in engine_farm.engines if not engine.exited.is_set()]
        assert len(live) == 1
