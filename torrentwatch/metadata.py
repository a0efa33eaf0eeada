"""
Torrent metadata lookup.

Fetches the info dictionary for a magnet link through libtorrent without
downloading any content, and exposes the video files it contains.
"""

import logging
import tempfile
import threading
import time
from dataclasses import dataclass
from typing import Dict, List, Optional

from torrentwatch.utils import format_size, is_video_file

log = logging.getLogger(__name__)


class MetadataError(Exception):
    """Raised when torrent metadata cannot be obtained"""

    pass


class MetadataTimeoutError(MetadataError):
    """Raised when no peer delivered the metadata in time"""

    pass


class MetadataCancelledError(MetadataError):
    """Raised when the metadata wait was abandoned"""

    pass


@dataclass
class TorrentFile:
    path: str
    size: int
    index: int


@dataclass
class ContentFile:
    """A playable file as shown to the user."""

    display_name: str
    actual_index: int


@dataclass
class TorrentMetadata:
    info_hash: str
    name: str
    files: List[TorrentFile]

    def file_at(self, index: int) -> TorrentFile:
        for f in self.files:
            if f.index == index:
                return f
        raise MetadataError(f"Torrent {self.name!r} has no file #{index}")

    def video_files(self) -> List[ContentFile]:
        return [
            ContentFile(
                display_name=f"{f.path} ({format_size(f.size)})",
                actual_index=f.index,
            )
            for f in self.files
            if is_video_file(f.path)
        ]


class TorrentInspector:
    """Resolves magnet links to their file lists, caching each result per magnet."""

    def __init__(self, timeout: float = 120.0, poll_interval: float = 0.1):
        """
        Args:
            timeout: Seconds to wait for a peer to deliver the metadata
            poll_interval: Seconds between metadata checks
        """
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._cache: Dict[str, TorrentMetadata] = {}
        self._lock = threading.Lock()

    def inspect(
        self, magnet_uri: str, stop: Optional[threading.Event] = None
    ) -> TorrentMetadata:
        """
        Return the metadata for ``magnet_uri``.

        Setting ``stop`` abandons a fetch in progress.

        Raises:
            MetadataError: invalid magnet link
            MetadataTimeoutError: metadata did not arrive within ``timeout``
            MetadataCancelledError: ``stop`` was set during the fetch
        """
        with self._lock:
            cached = self._cache.get(magnet_uri)
        if cached is not None:
            return cached

        if stop is None:
            stop = threading.Event()
        metadata = self._fetch(magnet_uri, stop)
        with self._lock:
            self._cache[magnet_uri] = metadata
        return metadata

    def get_files(self, magnet_uri: str) -> List[ContentFile]:
        """
        List the video files of a torrent.

        Raises:
            MetadataError: when the torrent contains no video file
        """
        files = self.inspect(magnet_uri).video_files()
        if not files:
            raise MetadataError("No video files found in torrent")
        return files

    def _fetch(self, magnet_uri: str, stop: threading.Event) -> TorrentMetadata:
        import libtorrent as lt

        try:
            params = lt.parse_magnet_uri(magnet_uri)
        except RuntimeError as e:
            raise MetadataError(f"Invalid magnet link: {e}") from e

        with tempfile.TemporaryDirectory(prefix="torrentwatch-meta-") as tmp:
            params.save_path = tmp
            ses = lt.session({"listen_interfaces": "0.0.0.0:6881"})
            handle = ses.add_torrent(params)
            try:
                log.debug("Fetching torrent metadata...")
                deadline = time.monotonic() + self.timeout
                while not handle.has_metadata():
                    if time.monotonic() >= deadline:
                        raise MetadataTimeoutError(
                            f"No metadata received after {self.timeout:.0f} seconds"
                        )
                    if stop.wait(self.poll_interval):
                        raise MetadataCancelledError("Metadata fetch cancelled")
                info = handle.torrent_file()
                storage = info.files()
                files = [
                    TorrentFile(
                        path=storage.file_path(i),
                        size=storage.file_size(i),
                        index=i,
                    )
                    for i in range(storage.num_files())
                ]
                info_hash = str(handle.info_hash())
                name = info.name()
            finally:
                ses.remove_torrent(handle)

        log.debug("Metadata fetched: %s (%d files)", name, len(files))
        return TorrentMetadata(info_hash=info_hash, name=name, files=files)
