import threading
import time

import pytest

from torrentwatch.config import ProgramConfig
from torrentwatch.history import WatchRecord
from torrentwatch.metadata import ContentFile
from torrentwatch.session import (
    SessionController,
    SessionOutcome,
    SessionState,
    WatchSession,
)
from torrentwatch.streaming import BridgeCancelledError

from conftest import MAGNET, FakeBridge, FakeClient, FakeLauncher

EP1 = "Show/Show S01E01.mkv (350.00 MB)"
EP2 = "Show/Show S01E02.mkv (350.00 MB)"


def make_controller(config, history, launcher, states=None):
    bridge = FakeBridge(history)

    def record(state, session):
        if states is not None:
            states.append(state)

    controller = SessionController(
        config,
        bridge,
        history,
        launch_player=launcher,
        poll_interval=0.01,
        on_state_change=record,
    )
    return controller, bridge


def test_resume_seeks_once_to_saved_position(config, history):
    files = [ContentFile(f"Show/Show S01E0{i}.mkv (1.00 GB)", i) for i in range(1, 5)]
    history.upsert(MAGNET, 3, 600, files[2].display_name)
    record = history.find(MAGNET)
    session = WatchSession(MAGNET, record.file_index, files, resume=True)
    session.player.playback_time = record.playback_time

    client = FakeClient(position=0.0, duration=3000.0, ticks=3)
    controller, bridge = make_controller(config, history, FakeLauncher(client))

    outcome = controller.run(session)

    assert client.seeks == [600]
    assert session.resume is False
    assert outcome is SessionOutcome.STOPPED
    assert bridge.starts == [(MAGNET, 3)]
    assert history.find(MAGNET) == WatchRecord(MAGNET, 3, 600, files[2].display_name)


def test_two_episode_series_advances_after_completion(config, history, episode_files):
    history.upsert(MAGNET, 0, 95, EP1)
    session = WatchSession(MAGNET, 0, episode_files, resume=True)
    session.player.playback_time = 95

    first = FakeClient(position=0.0, duration=100.0, ticks=2)
    second = FakeClient(position=10.0, duration=100.0, ticks=2)
    launcher = FakeLauncher(first, second)
    states = []
    controller, bridge = make_controller(config, history, launcher, states)

    outcome = controller.run(session)

    assert bridge.starts == [(MAGNET, 0), (MAGNET, 1)]
    # the transition was persisted before the second bridge launch
    assert bridge.records_at_start[1] == WatchRecord(MAGNET, 1, 0, EP2)
    assert first.seeks == [95]
    assert second.seeks == []
    assert outcome is SessionOutcome.STOPPED
    assert session.file_index == 1
    assert history.find(MAGNET) == WatchRecord(MAGNET, 1, 10, EP2)
    assert SessionState.ADVANCING in states
    assert states[-1] is SessionState.TERMINATED
    assert bridge.stops == 1
    assert all(player.terminated for player in launcher.players)


def test_last_episode_ends_the_session(config, history, episode_files):
    session = WatchSession(MAGNET, 1, episode_files)
    client = FakeClient(position=99.0, duration=100.0, ticks=2)
    controller, bridge = make_controller(config, history, FakeLauncher(client))

    assert controller.run(session) is SessionOutcome.NO_MORE_EPISODES
    assert bridge.starts == [(MAGNET, 1)]
    assert bridge.stops == 1


def test_player_that_never_starts_is_not_completed(config, history, episode_files):
    session = WatchSession(MAGNET, 0, episode_files)
    client = FakeClient(alive=False)
    states = []
    controller, bridge = make_controller(config, history, FakeLauncher(client), states)

    assert controller.run(session) is SessionOutcome.PLAYER_FAILED
    assert SessionState.EPISODE_COMPLETE not in states
    assert history.get_all() == []
    assert bridge.stops == 1


def test_cancel_stops_pollers_and_bridge(config, history, episode_files):
    session = WatchSession(MAGNET, 0, episode_files)
    client = FakeClient(position=5.0, duration=100.0, ticks=10_000)
    launcher = FakeLauncher(client)
    controller, bridge = make_controller(config, history, launcher)

    result = {}
    worker = threading.Thread(target=lambda: result.update(outcome=controller.run(session)))
    worker.start()
    deadline = time.monotonic() + 5
    while history.find(MAGNET) is None and time.monotonic() < deadline:
        time.sleep(0.01)

    controller.cancel()
    worker.join(timeout=5)

    assert not worker.is_alive()
    assert result["outcome"] is SessionOutcome.CANCELLED
    assert bridge.stops == 1
    assert launcher.players[0].terminated
    assert history.find(MAGNET).playback_time == 5


def test_saved_speed_applied_when_enabled(history, episode_files):
    config = ProgramConfig(save_mpv_speed=True)
    session = WatchSession(MAGNET, 0, episode_files)
    session.player.speed = 1.5
    client = FakeClient(position=1.0, duration=100.0, ticks=2)
    controller, _ = make_controller(config, history, FakeLauncher(client))

    controller.run(session)

    assert ("speed", 1.5) in client.properties_set


def test_speed_not_applied_by_default(config, history, episode_files):
    session = WatchSession(MAGNET, 0, episode_files)
    client = FakeClient(position=1.0, duration=100.0, ticks=2)
    controller, _ = make_controller(config, history, FakeLauncher(client))

    controller.run(session)

    assert client.properties_set == []


@pytest.mark.parametrize(
    "threshold, advances",
    [(92, True), (93, False)],
)
def test_completion_threshold_is_inclusive(history, episode_files, threshold, advances):
    config = ProgramConfig(percentage_to_mark_completed=threshold)
    session = WatchSession(MAGNET, 0, episode_files)
    session.player.playback_time = 92
    session.player.duration = 100
    session.player.started = True
    controller, _ = make_controller(config, history, FakeLauncher())

    outcome = controller.evaluate_completion(session)

    if advances:
        assert outcome is None
        assert session.file_index == 1
        assert session.player.playback_time == 0
        assert history.find(MAGNET) == WatchRecord(MAGNET, 1, 0, EP2)
    else:
        assert outcome is SessionOutcome.STOPPED
        assert session.file_index == 0
        assert history.find(MAGNET) is None


def test_unknown_duration_never_completes(config, history, episode_files):
    session = WatchSession(MAGNET, 0, episode_files)
    session.player.playback_time = 500
    session.player.duration = 0
    controller, _ = make_controller(config, history, FakeLauncher())

    assert controller.evaluate_completion(session) is SessionOutcome.STOPPED


def test_sorted_episode_list_is_cached(config, history, episode_files):
    session = WatchSession(MAGNET, 0, episode_files)
    session.player.playback_time = 100
    session.player.duration = 100
    controller, _ = make_controller(config, history, FakeLauncher())

    controller.evaluate_completion(session)
    cached = session.sorted_episodes
    session.files.append(ContentFile("Show/Show S01E03.mkv (350.00 MB)", 3))
    session.player.playback_time = 100
    outcome = controller.evaluate_completion(session)

    assert session.sorted_episodes is cached
    assert cached == [EP1, EP2]
    assert outcome is SessionOutcome.NO_MORE_EPISODES


def test_file_outside_the_ordering_does_not_advance(config, history, episode_files):
    session = WatchSession(MAGNET, 2, episode_files)
    session.player.playback_time = 100
    session.player.duration = 100
    controller, _ = make_controller(config, history, FakeLauncher())

    assert controller.evaluate_completion(session) is SessionOutcome.NO_MORE_EPISODES
    assert session.file_index == 2


class CancellingBridge(FakeBridge):
    """Stands in for a bridge interrupted while waiting for the stream."""

    def __init__(self, history, controller_ref, raises=False):
        super().__init__(history)
        self.controller_ref = controller_ref
        self.raises = raises

    def get_stream_url(self, content_id, file_index):
        self.controller_ref[0].cancel()
        if self.raises:
            raise BridgeCancelledError("cancelled while waiting")
        return super().get_stream_url(content_id, file_index)


@pytest.mark.parametrize("raises", [False, True])
def test_cancel_during_startup_never_launches_player(
    config, history, episode_files, raises
):
    ref = []
    bridge = CancellingBridge(history, ref, raises=raises)
    launcher = FakeLauncher(FakeClient())
    controller = SessionController(
        config, bridge, history, launch_player=launcher, poll_interval=0.01
    )
    ref.append(controller)

    outcome = controller.run(WatchSession(MAGNET, 0, episode_files))

    assert outcome is SessionOutcome.CANCELLED
    assert launcher.urls == []
    assert bridge.stops == 1


def test_zero_threshold_with_unknown_duration_does_not_advance(history, episode_files):
    config = ProgramConfig()
    config.percentage_to_mark_completed = 0
    session = WatchSession(MAGNET, 0, episode_files)
    session.player.started = True
    controller, _ = make_controller(config, history, FakeLauncher())

    assert controller.evaluate_completion(session) is SessionOutcome.STOPPED
    assert session.file_index == 0
    assert history.find(MAGNET) is None


class LockProbingClient(FakeClient):
    """Records whether another thread could take the session lock during seek."""

    def __init__(self, session, **kwargs):
        super().__init__(**kwargs)
        self.session = session
        self.lock_free_during_seek = None

    def seek(self, seconds):
        result = []

        def try_lock():
            acquired = self.session.lock.acquire(timeout=0.5)
            if acquired:
                self.session.lock.release()
            result.append(acquired)

        other = threading.Thread(target=try_lock)
        other.start()
        other.join()
        self.lock_free_during_seek = result[0]
        super().seek(seconds)


def test_resume_seek_does_not_hold_session_lock(config, history, episode_files):
    session = WatchSession(MAGNET, 0, episode_files, resume=True)
    session.player.playback_time = 30
    client = LockProbingClient(session, position=0.0, duration=100.0, ticks=2)
    controller, _ = make_controller(config, history, FakeLauncher(client))

    controller.run(session)

    assert client.seeks == [30]
    assert client.lock_free_during_seek is True
