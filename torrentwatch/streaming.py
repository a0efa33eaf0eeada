"""
Streaming backends.

A backend turns (content id, file index) into a URL mpv can play. The
webtorrent bridge runs ``webtorrent`` as a local HTTP server on a fixed port.
Only one bridge may run per machine: every start kills whatever a previous run
left behind on that port first.
"""

import logging
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union
from urllib.parse import quote

import requests

from torrentwatch.metadata import MetadataError, TorrentInspector

log = logging.getLogger(__name__)

DEFAULT_PORT = 8000


class BridgeError(Exception):
    """Raised when the streaming bridge cannot be started or reached"""

    pass


class BridgeTimeoutError(BridgeError):
    """Raised when the bridge never started serving the selected file"""

    pass


class BridgeCancelledError(BridgeError):
    """Raised when the wait for the bridge was cancelled"""

    pass


@dataclass
class StreamHandle:
    content_id: str
    file_index: int
    process: Optional[subprocess.Popen] = None


class StreamBackend(ABC):
    """Capability interface for anything that can stream a torrent file."""

    @abstractmethod
    def start(self, content_id: str, file_index: int) -> StreamHandle:
        """Begin streaming ``file_index`` of ``content_id``."""

    @abstractmethod
    def get_stream_url(self, content_id: str, file_index: int) -> str:
        """Return a playable URL once the stream is available."""

    @abstractmethod
    def stop(self) -> None:
        """Stop streaming. Safe to call repeatedly."""


class WebtorrentBridge(StreamBackend):
    """Streams through a ``webtorrent`` child process serving HTTP on ``port``."""

    def __init__(
        self,
        storage_path: Union[str, Path],
        inspector: TorrentInspector,
        port: int = DEFAULT_PORT,
        executable: str = "webtorrent",
        ready_attempts: int = 60,
        ready_interval: float = 1.0,
        grace_period: float = 0.5,
        cancel_event: Optional[threading.Event] = None,
    ):
        """
        Args:
            storage_path: Directory webtorrent downloads into
            inspector: Source of torrent metadata used to build stream URLs
            port: Local port the bridge binds
            executable: webtorrent binary name or path
            ready_attempts: Number of readiness probes before giving up
            ready_interval: Seconds between readiness probes
            grace_period: Seconds to wait after cleanup for the port to be released
            cancel_event: Set to abandon metadata and readiness waits
        """
        self.storage_path = Path(storage_path)
        self.inspector = inspector
        self.port = port
        self.executable = executable
        self.ready_attempts = ready_attempts
        self.ready_interval = ready_interval
        self.grace_period = grace_period
        if cancel_event is None:
            cancel_event = threading.Event()
        self.cancel_event = cancel_event
        self.handle: Optional[StreamHandle] = None

    def start(self, content_id: str, file_index: int) -> StreamHandle:
        """
        Launch webtorrent for one file of ``content_id``.

        Raises:
            BridgeError: storage directory or process could not be created
        """
        self.stop()

        try:
            self.storage_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise BridgeError(f"Failed to create storage directory: {e}") from e

        cmd = [
            self.executable,
            content_id,
            "--select",
            str(file_index),
            "--keep-seeding",
            "--no-quit",
            "--quiet",
            "--port",
            str(self.port),
            "--out",
            str(self.storage_path),
        ]
        try:
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except OSError as e:
            raise BridgeError(f"Failed to start {self.executable}: {e}") from e

        log.debug(
            "Started webtorrent process (PID: %d) with storage path: %s",
            process.pid,
            self.storage_path,
        )
        self.handle = StreamHandle(content_id, file_index, process)
        return self.handle

    def get_stream_url(self, content_id: str, file_index: int) -> str:
        """
        Build the bridge URL for the file and wait until the bridge serves it.

        Raises:
            BridgeError: metadata could not be obtained
            BridgeTimeoutError: bridge never answered for the file
            BridgeCancelledError: ``cancel_event`` was set while waiting
        """
        try:
            metadata = self.inspector.inspect(content_id, stop=self.cancel_event)
            selected = metadata.file_at(file_index)
        except MetadataError as e:
            if self.cancel_event.is_set():
                raise BridgeCancelledError("Cancelled while fetching metadata") from e
            raise BridgeError(f"Cannot resolve stream URL: {e}") from e

        encoded = "/".join(quote(part, safe="") for part in selected.path.split("/"))
        url = f"http://localhost:{self.port}/webtorrent/{metadata.info_hash}/{encoded}"
        log.debug("Stream URL: %s", url)
        self.wait_until_ready(url)
        return url

    def wait_until_ready(self, url: str) -> None:
        """Probe ``url`` with a one-byte ranged GET until it answers."""
        last_error = None
        for attempt in range(1, self.ready_attempts + 1):
            if self.cancel_event.is_set():
                raise BridgeCancelledError(f"Cancelled while waiting for {url}")
            if self.handle and self.handle.process and self.handle.process.poll() is not None:
                raise BridgeError(
                    f"webtorrent exited with code {self.handle.process.returncode}"
                )
            try:
                with requests.get(
                    url, headers={"Range": "bytes=0-0"}, stream=True, timeout=5
                ) as response:
                    if response.status_code < 400:
                        log.debug("Bridge ready after %d attempt(s)", attempt)
                        return
                    last_error = f"HTTP {response.status_code}"
            except requests.RequestException as e:
                last_error = str(e)
            self.cancel_event.wait(self.ready_interval)
        raise BridgeTimeoutError(
            f"Bridge did not serve {url} after {self.ready_attempts} attempts "
            f"(last error: {last_error})"
        )

    def stop(self) -> None:
        """Terminate the tracked process, then clean up by name and port."""
        if self.handle and self.handle.process and self.handle.process.poll() is None:
            self.handle.process.terminate()
            try:
                self.handle.process.wait(timeout=3)
            except subprocess.TimeoutExpired:
                self.handle.process.kill()
                self.handle.process.wait()
        self.handle = None
        self.cleanup()

    def cleanup(self) -> None:
        """Kill any webtorrent instance or process holding the bridge port."""
        for cmd in (
            ["pkill", "-f", "webtorrent"],
            ["fuser", "-k", f"{self.port}/tcp"],
        ):
            try:
                subprocess.run(
                    cmd,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                    check=False,
                )
            except OSError as e:
                log.debug("Cleanup command %s unavailable: %s", cmd[0], e)
        time.sleep(self.grace_period)
