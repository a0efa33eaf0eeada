import threading
from typing import List, Optional, Tuple

import pytest

from torrentwatch.config import ProgramConfig
from torrentwatch.history import WatchHistory, WatchRecord
from torrentwatch.metadata import ContentFile
from torrentwatch.mpv import PlayerNotReadyError
from torrentwatch.streaming import StreamBackend, StreamHandle

MAGNET = "magnet:?xt=urn:btih:0123456789abcdef0123456789abcdef01234567&dn=Show"


class FakeClient:
    """Scripted stand-in for MPVClient.

    Reports ``position`` until ``seek`` moves it. After ``ticks`` speed polls
    (counted once the duration has been read) the player "exits" and every call
    fails like a closed socket.
    """

    timeout = 0.05

    def __init__(self, position=0.0, duration=100.0, ticks=2, alive=True):
        self.position = position
        self.duration = duration
        self.ticks = ticks
        self.alive = alive
        self.speed = 1.0
        self.seeks: List[int] = []
        self.properties_set: List[Tuple[str, object]] = []
        self.duration_read = False
        self._lock = threading.Lock()

    def _check(self):
        if not self.alive:
            raise PlayerNotReadyError("socket closed")

    def get_time_pos(self) -> Optional[float]:
        with self._lock:
            self._check()
            return self.position

    def get_duration(self) -> Optional[float]:
        with self._lock:
            self._check()
            self.duration_read = True
            return self.duration

    def get_speed(self) -> Optional[float]:
        with self._lock:
            self._check()
            if self.duration_read:
                self.ticks -= 1
                if self.ticks <= 0:
                    self.alive = False
            return self.speed

    def seek(self, seconds):
        with self._lock:
            self._check()
            self.seeks.append(seconds)
            self.position = float(seconds)

    def set_property(self, name, value):
        with self._lock:
            self._check()
            self.properties_set.append((name, value))


class FakePlayer:
    def __init__(self, client: FakeClient, socket_path: str):
        self._client = client
        self.socket_path = socket_path
        self.terminated = False

    def client(self, timeout: float = 2.0) -> FakeClient:
        return self._client

    def is_running(self) -> bool:
        return self._client.alive

    def terminate(self) -> None:
        self.terminated = True
        self._client.alive = False


class FakeLauncher:
    """Hands out one FakePlayer per launch, in order."""

    def __init__(self, *clients: FakeClient):
        self.clients = list(clients)
        self.urls: List[str] = []
        self.players: List[FakePlayer] = []

    def __call__(self, url: str) -> FakePlayer:
        self.urls.append(url)
        player = FakePlayer(self.clients.pop(0), f"/tmp/fake-{len(self.urls)}.sock")
        self.players.append(player)
        return player


class FakeBridge(StreamBackend):
    """Records launches together with the history state at launch time."""

    def __init__(self, history: WatchHistory):
        self.history = history
        self.starts: List[Tuple[str, int]] = []
        self.records_at_start: List[Optional[WatchRecord]] = []
        self.stops = 0

    def start(self, content_id: str, file_index: int) -> StreamHandle:
        self.starts.append((content_id, file_index))
        self.records_at_start.append(self.history.find(content_id))
        return StreamHandle(content_id, file_index)

    def get_stream_url(self, content_id: str, file_index: int) -> str:
        return f"http://localhost:8000/{file_index}"

    def stop(self) -> None:
        self.stops += 1


@pytest.fixture
def history(tmp_path) -> WatchHistory:
    return WatchHistory(tmp_path / "torrent_history.txt")


@pytest.fixture
def config() -> ProgramConfig:
    return ProgramConfig(percentage_to_mark_completed=92)


@pytest.fixture
def episode_files() -> List[ContentFile]:
    return [
        ContentFile("Show/Show S01E02.mkv (350.00 MB)", 1),
        ContentFile("Show/Show S01E01.mkv (350.00 MB)", 0),
        ContentFile("Show/Extras.mkv (20.00 MB)", 2),
    ]
