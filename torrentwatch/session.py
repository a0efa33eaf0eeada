"""
Playback session controller.

Drives one watch session through its states::

    STARTING -> AWAITING_PLAYER_START -> PLAYING -> EPISODE_COMPLETE
             -> ADVANCING -> STARTING (next episode)   or   TERMINATED

mpv never tells us that an episode ended. The session only learns it when the
IPC socket stops answering, so a failed position poll after playback started is
treated as "the player exited" and triggers the completion check.
"""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from torrentwatch.config import ProgramConfig
from torrentwatch.episodes import next_episode, sort_episodes
from torrentwatch.history import HistoryError, WatchHistory
from torrentwatch.metadata import ContentFile
from torrentwatch.mpv import (
    MPVClient,
    MPVPlayer,
    PlayerCommandError,
    PlayerError,
    percentage_watched,
)
from torrentwatch.streaming import BridgeCancelledError, StreamBackend

log = logging.getLogger(__name__)


class SessionState(Enum):
    STARTING = "starting"
    AWAITING_PLAYER_START = "awaiting player start"
    PLAYING = "playing"
    EPISODE_COMPLETE = "episode complete"
    ADVANCING = "advancing"
    TERMINATED = "terminated"


class SessionOutcome(Enum):
    """Why a session ended"""

    NO_MORE_EPISODES = "no more episodes"
    STOPPED = "stopped before completion"
    PLAYER_FAILED = "player exited before playback started"
    CANCELLED = "cancelled"


@dataclass
class PlaybackState:
    socket_path: str = ""
    playback_time: int = 0
    started: bool = False
    duration: int = 0
    speed: float = 1.0


@dataclass
class WatchSession:
    """
    Mutable state of one run, shared between the controller and its pollers.

    Every access from a poller thread must hold ``lock``.
    """

    content_id: str
    file_index: int
    files: List[ContentFile]
    resume: bool = False
    player: PlaybackState = field(default_factory=PlaybackState)
    sorted_episodes: Optional[List[str]] = None
    lock: threading.RLock = field(
        default_factory=threading.RLock, repr=False, compare=False
    )

    def current_title(self) -> str:
        """Display name of the file being watched."""
        for f in self.files:
            if f.actual_index == self.file_index:
                return f.display_name
        return ""


class SessionController:
    """Runs bridge and player for a WatchSession until it ends."""

    def __init__(
        self,
        config: ProgramConfig,
        bridge: StreamBackend,
        history: WatchHistory,
        launch_player: Callable[[str], MPVPlayer] = MPVPlayer.launch,
        poll_interval: float = 1.0,
        on_state_change: Optional[Callable[[SessionState, WatchSession], None]] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        """
        Args:
            config: Program configuration (completion threshold, speed saving)
            bridge: Streaming backend producing the URL mpv plays
            history: Store receiving every position update
            launch_player: Starts a player on a URL
            poll_interval: Seconds between player polls
            on_state_change: Called on every state transition
            cancel_event: Shared with the bridge so cancelling also ends its waits
        """
        self.config = config
        self.bridge = bridge
        self.history = history
        self.launch_player = launch_player
        self.poll_interval = poll_interval
        self.on_state_change = on_state_change
        self.state = SessionState.TERMINATED
        if cancel_event is None:
            cancel_event = threading.Event()
        self._cancelled = cancel_event
        self._episode_stop = threading.Event()

    def cancel(self) -> None:
        """Ask a running session to shut down. Safe to call from a signal handler."""
        self._cancelled.set()
        self._episode_stop.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def _set_state(self, state: SessionState, session: WatchSession) -> None:
        self.state = state
        log.debug("Session state: %s", state.value)
        if self.on_state_change is not None:
            self.on_state_change(state, session)

    def run(self, session: WatchSession) -> SessionOutcome:
        """
        Play ``session`` episode after episode until it ends.

        Bridge and player failures during startup propagate to the caller. The
        bridge is stopped on every exit path.
        """
        player = None
        try:
            while not self.cancelled:
                player = self._start_episode(session)
                if player is None:
                    break
                outcome = self._play_episode(session, player)
                player.terminate()
                if outcome is not None:
                    return outcome

                self._set_state(SessionState.ADVANCING, session)
                with session.lock:
                    session.player.duration = 0
                    session.player.started = False
            return SessionOutcome.CANCELLED
        finally:
            if player is not None:
                player.terminate()
            self._set_state(SessionState.TERMINATED, session)
            self.bridge.stop()

    def _start_episode(self, session: WatchSession) -> Optional[MPVPlayer]:
        """Bring up bridge and player. Returns None if cancelled before mpv starts."""
        self._set_state(SessionState.STARTING, session)
        with session.lock:
            content_id = session.content_id
            file_index = session.file_index
            title = session.current_title()

        log.debug("Starting file #%d: %s", file_index, title)
        self.bridge.start(content_id, file_index)
        if self.cancelled:
            return None
        try:
            url = self.bridge.get_stream_url(content_id, file_index)
        except BridgeCancelledError as e:
            log.debug("Stream startup cancelled: %s", e)
            return None
        if self.cancelled:
            return None
        player = self.launch_player(url)
        with session.lock:
            session.player.socket_path = player.socket_path
        log.debug("MPV socket path: %s", player.socket_path)
        return player

    def _play_episode(
        self, session: WatchSession, player: MPVPlayer
    ) -> Optional[SessionOutcome]:
        """Watch one episode. Returns None when the session advances."""
        self._episode_stop = threading.Event()
        if self.cancelled:
            self._episode_stop.set()
        stop = self._episode_stop

        self._set_state(SessionState.AWAITING_PLAYER_START, session)
        client = player.client()
        pollers = [
            threading.Thread(
                target=self._watch_duration,
                args=(session, client, stop),
                name="duration-watcher",
                daemon=True,
            ),
            threading.Thread(
                target=self._detect_start,
                args=(session, client, stop),
                name="start-detector",
                daemon=True,
            ),
        ]
        for poller in pollers:
            poller.start()

        try:
            return self._monitor(session, player, client)
        finally:
            stop.set()
            for poller in pollers:
                poller.join(timeout=client.timeout + self.poll_interval)

    def _watch_duration(
        self, session: WatchSession, client: MPVClient, stop: threading.Event
    ) -> None:
        """Poll ``duration`` until mpv reports a non-zero value."""
        while not stop.is_set():
            try:
                duration = client.get_duration()
            except PlayerError as e:
                log.debug("Error getting video duration: %s", e)
                duration = None

            if duration is not None:
                rounded = int(duration + 0.5)
                if rounded > 0:
                    with session.lock:
                        session.player.duration = rounded
                    log.debug("Video duration: %d seconds", rounded)
                    return
            stop.wait(self.poll_interval)

    def _detect_start(
        self, session: WatchSession, client: MPVClient, stop: threading.Event
    ) -> None:
        """Poll ``time-pos`` until mpv is producing frames, then apply resume state."""
        while not stop.is_set():
            try:
                position = client.get_time_pos()
            except PlayerError as e:
                log.debug("Error getting time position: %s", e)
                position = None

            if position is not None:
                self._on_player_started(session, client)
                return
            stop.wait(self.poll_interval)

    def _on_player_started(self, session: WatchSession, client: MPVClient) -> None:
        log.debug("Player started")
        with session.lock:
            resume = session.resume
            saved_time = session.player.playback_time
            session.resume = False

        # not started until the seek is done, a tick would record the old position
        if resume:
            log.debug("Seeking to playback time: %d", saved_time)
            try:
                client.seek(saved_time)
            except PlayerError as e:
                log.debug("Error seeking to playback time: %s", e)

        with session.lock:
            session.player.started = True
            speed = session.player.speed

        self._set_state(SessionState.PLAYING, session)
        if self.config.save_mpv_speed:
            try:
                client.set_property("speed", speed)
            except PlayerError as e:
                log.debug("Error setting playback speed: %s", e)

    def _monitor(
        self, session: WatchSession, player: MPVPlayer, client: MPVClient
    ) -> Optional[SessionOutcome]:
        """Record progress every tick until the player goes away."""
        while True:
            if self._cancelled.wait(self.poll_interval):
                return SessionOutcome.CANCELLED

            try:
                position = client.get_time_pos()
            except PlayerCommandError as e:
                # property unavailable while mpv is loading or seeking
                log.debug("Error getting time position: %s", e)
                continue
            except PlayerError as e:
                with session.lock:
                    started = session.player.started
                if started:
                    log.debug("Player closed: %s", e)
                    return self.evaluate_completion(session)
                if not player.is_running():
                    log.warning("mpv exited before playback started")
                    return SessionOutcome.PLAYER_FAILED
                continue

            if position is None:
                continue

            with session.lock:
                if not session.player.started:
                    continue
                session.player.playback_time = int(position + 0.5)

            try:
                speed = client.get_speed()
            except PlayerError as e:
                log.debug("Error getting playback speed: %s", e)
                speed = None

            with session.lock:
                if speed:
                    session.player.speed = speed
                content_id = session.content_id
                file_index = session.file_index
                playback_time = session.player.playback_time
                title = session.current_title()

            try:
                self.history.upsert(content_id, file_index, playback_time, title)
            except HistoryError as e:
                log.debug("Error updating history: %s", e)

    def evaluate_completion(self, session: WatchSession) -> Optional[SessionOutcome]:
        """
        Decide what follows a finished player.

        Returns None after selecting the next episode, otherwise the outcome that
        ends the session.
        """
        self._set_state(SessionState.EPISODE_COMPLETE, session)
        threshold = self.config.percentage_to_mark_completed
        with session.lock:
            if session.player.duration <= 0:
                log.info("Duration unknown, not marking as watched")
                return SessionOutcome.STOPPED
            # duration is the first reading of this episode, never refreshed
            percentage = percentage_watched(
                session.player.playback_time, session.player.duration
            )
            log.debug("Percentage watched: %f", percentage)
            log.debug("Percentage to mark complete: %d", threshold)
            if percentage < threshold:
                log.info("Stopped at %.0f%%, not marking as watched", percentage)
                return SessionOutcome.STOPPED

            if session.sorted_episodes is None:
                session.sorted_episodes = sort_episodes(
                    [f.display_name for f in session.files]
                )

            # matched by display name, files renamed between listings never advance
            following = next_episode(session.sorted_episodes, session.current_title())
            next_file = next(
                (f for f in session.files if f.display_name == following), None
            )
            if next_file is None:
                log.info("No more episodes in series")
                return SessionOutcome.NO_MORE_EPISODES

            session.file_index = next_file.actual_index
            session.player.playback_time = 0
            content_id = session.content_id

        log.info("Starting next episode: %s", next_file.display_name)
        try:
            self.history.upsert(
                content_id, next_file.actual_index, 0, next_file.display_name
            )
        except HistoryError as e:
            log.warning("Error updating history for next episode: %s", e)
        return None
