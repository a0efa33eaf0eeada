"""
mpv control.

``MPVClient`` talks to a running mpv through its JSON IPC socket. Every call
opens a new connection, performs one request/reply round trip and closes it, so
a long session never carries a half-read frame from one call into the next.

``MPVPlayer`` owns the mpv process itself.
"""

import itertools
import json
import logging
import os
import socket
import subprocess
import tempfile
import uuid
from typing import Any, List, Optional

log = logging.getLogger(__name__)

MPV_FLAGS = [
    "--force-seekable=yes",
    "--cache=yes",
    "--cache-secs=10",
    "--demuxer-max-bytes=50M",
    "--demuxer-readahead-secs=5",
    "--really-quiet",
]


class PlayerError(Exception):
    """Base class for mpv control errors"""

    pass


class PlayerNotReadyError(PlayerError):
    """The IPC socket is missing, refusing connections or not answering."""

    pass


class PlayerProtocolError(PlayerError):
    """mpv answered with something that is not a valid reply frame."""

    pass


class PlayerCommandError(PlayerError):
    """mpv understood the command but rejected it."""

    def __init__(self, command: List[Any], error: str):
        super().__init__(f"mpv rejected {command!r}: {error}")
        self.command = command
        self.error = error


def percentage_watched(playback_time: int, duration: int) -> float:
    """Share of ``duration`` covered by ``playback_time``, 0.0 for unknown duration."""
    if duration <= 0:
        return 0.0
    return playback_time * 100 / duration


class MPVClient:
    """Stateless client for one mpv IPC socket"""

    _request_ids = itertools.count(1)

    def __init__(self, socket_path: str, timeout: float = 2.0):
        self.socket_path = socket_path
        self.timeout = timeout

    def send_command(self, command: List[Any]) -> Any:
        """
        Send one command and return the ``data`` field of the reply.

        Returns None when the reply has no ``data``.

        Raises:
            PlayerNotReadyError: socket missing, refused or timed out
            PlayerProtocolError: reply could not be parsed
            PlayerCommandError: reply carried an error
        """
        request_id = next(self._request_ids)
        payload = json.dumps({"command": command, "request_id": request_id})

        try:
            with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
                sock.settimeout(self.timeout)
                sock.connect(self.socket_path)
                sock.sendall(payload.encode("utf-8") + b"\n")
                reply = self._read_reply(sock, request_id)
        except (FileNotFoundError, ConnectionError, socket.timeout) as e:
            raise PlayerNotReadyError(
                f"mpv socket {self.socket_path} not available: {e}"
            ) from e
        except OSError as e:
            raise PlayerNotReadyError(f"mpv socket {self.socket_path}: {e}") from e

        error = reply.get("error", "success")
        if error != "success":
            raise PlayerCommandError(command, str(error))
        return reply.get("data")

    def _read_reply(self, sock: socket.socket, request_id: int) -> dict:
        # mpv broadcasts events to every client, skip them until our reply shows up
        with sock.makefile("rb") as stream:
            for raw in stream:
                raw = raw.strip()
                if not raw:
                    continue
                try:
                    line = raw.decode("utf-8")
                    message = json.loads(line)
                except UnicodeDecodeError as e:
                    raise PlayerProtocolError(f"Undecodable mpv reply {raw!r}") from e
                except ValueError as e:
                    raise PlayerProtocolError(f"Malformed mpv reply {line!r}") from e
                if not isinstance(message, dict):
                    raise PlayerProtocolError(f"Unexpected mpv reply {line!r}")
                if "event" in message:
                    continue
                if message.get("request_id", request_id) != request_id:
                    continue
                return message
        raise PlayerProtocolError("mpv closed the connection without replying")

    def get_property(self, name: str) -> Any:
        return self.send_command(["get_property", name])

    def set_property(self, name: str, value: Any) -> Any:
        return self.send_command(["set_property", name, value])

    def seek(self, seconds: int) -> Any:
        """Seek to an absolute position in seconds."""
        return self.send_command(["seek", seconds, "absolute"])

    def quit(self) -> Any:
        return self.send_command(["quit"])

    def get_time_pos(self) -> Optional[float]:
        value = self.get_property("time-pos")
        return float(value) if isinstance(value, (int, float)) else None

    def get_duration(self) -> Optional[float]:
        value = self.get_property("duration")
        return float(value) if isinstance(value, (int, float)) else None

    def get_speed(self) -> Optional[float]:
        value = self.get_property("speed")
        return float(value) if isinstance(value, (int, float)) else None

    def is_paused(self) -> bool:
        return self.get_property("pause") is True


def new_socket_path() -> str:
    """Fresh IPC path so a still-exiting mpv never collides with the next one."""
    return os.path.join(tempfile.gettempdir(), f"torrentwatch-{uuid.uuid4().hex}.sock")


class MPVPlayer:
    """A running mpv process and its IPC socket path"""

    def __init__(self, process: subprocess.Popen, socket_path: str):
        self.process = process
        self.socket_path = socket_path

    @classmethod
    def launch(cls, url: str, executable: str = "mpv") -> "MPVPlayer":
        """
        Start mpv on ``url`` with a fresh IPC socket.

        Raises:
            PlayerError: if mpv cannot be started
        """
        socket_path = new_socket_path()
        cmd = [executable, f"--input-ipc-server={socket_path}", *MPV_FLAGS, url]
        try:
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except OSError as e:
            raise PlayerError(f"Failed to start {executable}: {e}") from e
        log.debug("Started mpv (PID %d) on %s", process.pid, socket_path)
        return cls(process, socket_path)

    def client(self, timeout: float = 2.0) -> MPVClient:
        return MPVClient(self.socket_path, timeout=timeout)

    def is_running(self) -> bool:
        return self.process.poll() is None

    def terminate(self, timeout: float = 3.0) -> None:
        """Stop mpv if it is still running and remove its socket."""
        if self.is_running():
            self.process.terminate()
            try:
                self.process.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                self.process.kill()
                self.process.wait()
        try:
            os.remove(self.socket_path)
        except FileNotFoundError:
            pass
