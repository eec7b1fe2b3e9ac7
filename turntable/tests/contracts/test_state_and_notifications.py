"""
Contract tests for PlaybackStateTracker, PlaybackIntent and NotificationBus.

Covers:
- Every phase change publishes StateChanged (no silent mutation)
- Progress is only surfaced once a non-zero duration is known
- Intent transitions are pure replacements
- Notifications are delivered in publish order, one listener failure
  does not stop delivery
"""

import logging
import threading

from turntable.notifications import (
    EngineFailed,
    Finished,
    NotificationBus,
    ProgressUpdated,
    StateChanged,
)
from turntable.state import PlaybackIntent, PlaybackStateTracker, PlayerPhase, ProgressSnapshot


class TestPhaseChanges:

    def test_phase_change_publishes_state_changed(self, tracker, bus, recorder):
        assert tracker.set_phase(PlayerPhase.BUFFERING)
        assert tracker.set_phase(PlayerPhase.PLAYING)
        bus.flush(1.0)
        assert recorder.phases() == [PlayerPhase.BUFFERING, PlayerPhase.PLAYING]
        assert tracker.phase == PlayerPhase.PLAYING

    def test_unchanged_phase_is_not_republished(self, tracker, bus, recorder):
        tracker.set_phase(PlayerPhase.PLAYING)
        assert tracker.set_phase(PlayerPhase.PLAYING) is False
        bus.flush(1.0)
        assert recorder.phases() == [PlayerPhase.PLAYING]

    def test_forced_phase_is_always_published(self, tracker, bus, recorder):
        assert tracker.set_phase(PlayerPhase.IDLE, force=True)
        bus.flush(1.0)
        assert recorder.phases() == [PlayerPhase.IDLE]

    def test_notification_kinds(self):
        assert StateChanged(PlayerPhase.IDLE).kind == "state-change"
        assert ProgressUpdated(1.0, 2.0).kind == "progress-update"
        assert Finished().kind == "finished"
        assert EngineFailed(RuntimeError("x")).kind == "error"


class TestProgress:

    def test_position_before_duration_is_not_published(self, tracker, bus, recorder):
        assert tracker.update_position(3.0) is False
        bus.flush(1.0)
        assert recorder.of_type(ProgressUpdated) == []
        assert tracker.progress == ProgressSnapshot(current_time=3.0, duration=0.0)

    def test_duration_alone_is_not_published(self, tracker, bus, recorder):
        tracker.update_duration(180.0)
        bus.flush(1.0)
        assert recorder.of_type(ProgressUpdated) == []

    def test_position_after_duration_publishes_exactly_one_update(self, tracker, bus, recorder):
        tracker.update_position(1.0)
        tracker.update_duration(180.0)
        assert tracker.update_position(4.5) is True
        bus.flush(1.0)
        assert recorder.of_type(ProgressUpdated) == [ProgressUpdated(current_time=4.5, duration=180.0)]

    def test_reset_progress(self, tracker):
        tracker.update_duration(100.0)
        tracker.update_position(50.0)
        tracker.reset_progress()
        assert tracker.progress == ProgressSnapshot(0.0, 0.0)


class TestPlaybackIntent:

    def test_transitions_return_new_values(self):
        intent = PlaybackIntent()
        playing = intent.with_track("file:///a.mp3", playing=True)
        assert intent == PlaybackIntent(url=None, loop=False, playing=False)
        assert playing == PlaybackIntent(url="file:///a.mp3", loop=False, playing=True)

    def test_cleared_keeps_loop_preference(self):
        intent = PlaybackIntent().with_loop(True).with_track("file:///a.mp3", playing=True)
        assert intent.cleared() == PlaybackIntent(url=None, loop=True, playing=False)

    def test_with_playing(self):
        intent = PlaybackIntent(url="file:///a.mp3", playing=True)
        assert intent.with_playing(False).playing is False
        assert intent.with_playing(False).url == "file:///a.mp3"


class TestNotificationBus:

    def test_delivers_in_publish_order(self, bus, recorder):
        published = [StateChanged(PlayerPhase.BUFFERING), ProgressUpdated(1.0, 10.0), Finished()]
        for n in published:
            bus.publish(n)
        assert bus.flush(1.0)
        assert recorder.snapshot() == published

    def test_listeners_run_on_dispatch_thread(self, bus):
        threads = []
        bus.subscribe(lambda n: threads.append(threading.current_thread().name))
        bus.publish(Finished())
        bus.flush(1.0)
        assert threads == ["NotificationDispatch"]

    def test_failing_listener_does_not_stop_delivery(self, bus, recorder, caplog):
        def broken(notification):
            raise RuntimeError("listener bug")

        bus.subscribe(broken)
        other = []
        bus.subscribe(other.append)
        with caplog.at_level(logging.ERROR, logger="turntable.notifications"):
            bus.publish(Finished())
            bus.publish(Finished())
            bus.flush(1.0)
        assert len(other) == 2
        assert len(recorder.of_type(Finished)) == 2
        assert "Notification listener failed" in caplog.text

    def test_unsubscribe(self, bus):
        received = []
        unsubscribe = bus.subscribe(received.append)
        bus.publish(Finished())
        bus.flush(1.0)
        unsubscribe()
        unsubscribe()
        bus.publish(Finished())
        bus.flush(1.0)
        assert len(received) == 1

    def test_close_delivers_queued_then_drops_later_publishes(self):
        bus = NotificationBus()
        received = []
        bus.subscribe(received.append)
        bus.publish(Finished())
        bus.close()
        bus.publish(Finished())
        assert len(received) == 1
        assert bus.flush(0.1) is False
        bus.close()

    def test_flush_from_listener_does_not_deadlock(self, bus):
        results = []
        bus.subscribe(lambda n: results.append(bus.flush(1.0)))
        bus.publish(Finished())
        bus.flush(1.0)
        assert results == [True]
