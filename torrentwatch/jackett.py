"""
Jackett API Client
A client for searching every indexer configured in a Jackett server and
resolving releases to magnet links.
"""

import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests
from bs4 import BeautifulSoup

log = logging.getLogger(__name__)

RESULTS_PATH = "/api/v2.0/indexers/all/results"
TORZNAB_PATH = "/api/v2.0/indexers/all/results/torznab/api"
JACKETT_SERVER_CONFIG = Path.home() / ".config" / "Jackett" / "ServerConfig.json"

HEADERS = {
    "User-Agent": "torrentwatch/0.3",
    "Accept": "application/json",
    "Connection": "keep-alive",
}


class APIError(Exception):
    """Custom exception for Jackett API errors"""

    pass


def sanitize_query(query: str) -> str:
    """Trim, lower-case and collapse whitespace. URL encoding is left to requests."""
    return " ".join(query.strip().lower().split())


@dataclass
class Release:
    """Represents a search result from Jackett"""

    title: str
    guid: str
    magnet_uri: str
    size: int
    seeders: int
    peers: int
    tracker: str
    publish_date: str = ""

    @classmethod
    def from_api_response(cls, data: Dict[str, Any]) -> "Release":
        """Create a Release from one entry of the ``Results`` array"""
        if not data.get("Title"):
            raise ValueError("result has no title")
        return cls(
            title=data["Title"],
            guid=data.get("Guid") or "",
            magnet_uri=data.get("MagnetUri") or "",
            size=int(data.get("Size") or 0),
            seeders=int(data.get("Seeders") or 0),
            peers=int(data.get("Peers") or 0),
            tracker=data.get("Tracker") or "",
            publish_date=data.get("PublishDate") or "",
        )

    def has_magnet(self) -> bool:
        return self.magnet_uri.startswith("magnet:")


class JackettAPI:
    """Client for the Jackett aggregate search API"""

    def __init__(self, base_url: str, api_key: str, timeout: int = 60):
        """
        Initialize the Jackett client

        Args:
            base_url: Base URL of the Jackett server, e.g. http://127.0.0.1:9117
            api_key: Jackett API key
            timeout: Request timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.session = self._new_session()

    @staticmethod
    def _new_session() -> requests.Session:
        from requests.adapters import HTTPAdapter
        from urllib3.util.retry import Retry

        session = requests.Session()
        session.headers.update(HEADERS)
        retry_strategy = Retry(
            total=3,
            backoff_factor=1,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["HEAD", "GET", "OPTIONS"],
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        return session

    def _make_request(
        self, method: str, path: str, max_retries: int = 3, **kwargs
    ) -> requests.Response:
        """Make an HTTP request with consistent error handling and retry logic"""
        url = f"{self.base_url}{path}"
        kwargs.setdefault("timeout", self.timeout)

        last_error: Optional[Exception] = None
        for attempt in range(max_retries):
            try:
                response = self.session.request(method, url, **kwargs)
                response.raise_for_status()
                return response
            except requests.HTTPError as e:
                status = e.response.status_code
                if status in (401, 403):
                    raise APIError(
                        "Jackett rejected the API key, check jackett_api_key in the config"
                    )
                if status == 404:
                    raise APIError(f"Endpoint not found: {path}")
                if status >= 500 and attempt < max_retries - 1:
                    time.sleep(2**attempt)
                    continue
                raise APIError(f"Bad response from Jackett server: HTTP {status}")
            except (requests.ConnectionError, requests.Timeout) as e:
                last_error = e
                if attempt < max_retries - 1:
                    log.debug("Jackett request failed (%s), retrying", e)
                    time.sleep(2**attempt)
                    # Recreate session on connection error
                    self.session.close()
                    self.session = self._new_session()
                    continue
            except requests.RequestException as e:
                raise APIError(f"Request failed: {e}")

        raise APIError(
            f"Connection failed after {max_retries} attempts. Make sure Jackett is "
            f"running at {self.base_url}. Error: {last_error}"
        )

    def search(self, query: str) -> List[Release]:
        """
        Search across all indexers

        Args:
            query: Free-text search query

        Returns:
            List of Release objects
        """
        params = {"apikey": self.api_key, "Query": sanitize_query(query)}
        response = self._make_request("GET", RESULTS_PATH, params=params)
        try:
            data = response.json()
        except ValueError as e:
            raise APIError(f"Failed to parse Jackett response: {e}")
        log.debug("Search returned %d raw results", len(data.get("Results", [])))

        results = []
        for item in data.get("Results", []):
            try:
                results.append(Release.from_api_response(item))
            except (ValueError, TypeError, KeyError) as e:
                # Skip malformed results but continue
                log.warning("Skipped malformed result: %s", e)
        return results

    def is_available(self) -> bool:
        """Check whether the Jackett server answers at all"""
        try:
            self.session.get(
                f"{self.base_url}{TORZNAB_PATH}",
                params={"apikey": self.api_key},
                timeout=5,
            )
        except requests.RequestException as e:
            log.debug("Jackett not available: %s", e)
            return False
        return True

    def fetch_magnet_uri(self, page_url: str) -> str:
        """
        Find the magnet link on a tracker's release page

        Used for releases whose search result carries no MagnetUri.
        """
        try:
            response = self.session.get(
                page_url, timeout=self.timeout, headers={"Accept": "text/html"}
            )
            response.raise_for_status()
        except requests.RequestException as e:
            raise APIError(f"Failed to fetch torrent page: {e}")

        soup = BeautifulSoup(response.text, "html.parser")
        for link in soup.find_all("a", href=True):
            if link["href"].startswith("magnet:?xt="):
                return link["href"]
        raise APIError("Magnet link not found")

    def resolve_magnet(self, release: Release) -> str:
        """Return the release's magnet link, scraping the GUID page when needed"""
        if release.has_magnet():
            return release.magnet_uri
        if not release.guid:
            raise APIError(f"No magnet link or page for {release.title!r}")
        return self.fetch_magnet_uri(release.guid)

    def __del__(self):
        """Clean up session on deletion"""
        if hasattr(self, "session"):
            self.session.close()


def read_jackett_api_key(path: Path = JACKETT_SERVER_CONFIG) -> str:
    """Read the API key from a local Jackett installation's ServerConfig.json"""
    try:
        data = json.loads(Path(path).read_text())
    except OSError as e:
        raise APIError(f"Failed to read Jackett config: {e}")
    except ValueError as e:
        raise APIError(f"Failed to parse Jackett config: {e}")
    api_key = data.get("APIKey")
    if not api_key:
        raise APIError(f"No APIKey in {path}")
    return api_key
