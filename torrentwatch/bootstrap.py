"""
Installation helpers: Jackett setup, rofi theme files and self-update.

These shell out to the system and are only used from the CLI's setup paths.
"""

import logging
import subprocess
import sys
import time
from pathlib import Path
from typing import Iterable, Union

import requests

log = logging.getLogger(__name__)

JACKETT_INDEXERS_DIR = Path.home() / ".config" / "Jackett" / "Indexers"
DEFAULT_INDEXERS = ("1337x.json", "nyaasi.json")
RESOURCE_BASE_URL = "https://raw.githubusercontent.com/Wraient/buttercup/main"
ROFI_THEMES = ("selectPreview.rasi", "select.rasi", "userInput.rasi")
PACKAGE_NAME = "torrentwatch"

JACKETT_INSTALL_SCRIPT = """
curl -L -o /tmp/jackett.tar.gz https://github.com/Jackett/Jackett/releases/latest/download/Jackett.Binaries.LinuxAMDx64.tar.gz
cd /tmp && tar -xf jackett.tar.gz
sudo mv /tmp/Jackett /opt/
sudo ln -s /opt/Jackett/jackett /usr/local/bin/jackett
"""


class BootstrapError(Exception):
    """Raised when an installation step fails"""

    pass


def download_file(url: str, destination: Path, timeout: int = 60) -> Path:
    """Download ``url`` to ``destination``."""
    try:
        response = requests.get(url, stream=True, timeout=timeout)
        response.raise_for_status()
        with open(destination, "wb") as f:
            for chunk in response.iter_content(chunk_size=32768):
                if chunk:
                    f.write(chunk)
    except requests.RequestException as e:
        raise BootstrapError(f"Failed to download {url}: {e}") from e
    except OSError as e:
        raise BootstrapError(f"Failed to write {destination}: {e}") from e
    return destination


def ensure_files(
    directory: Union[str, Path], names: Iterable[str], base_url: str
) -> None:
    """Download every file of ``names`` missing from ``directory``."""
    directory = Path(directory)
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise BootstrapError(f"Failed to create {directory}: {e}") from e
    for name in names:
        target = directory / name
        if target.exists():
            continue
        log.info("Downloading %s", name)
        download_file(f"{base_url}/{name}", target)


def ensure_rofi_themes(storage_dir: Union[str, Path]) -> None:
    ensure_files(storage_dir, ROFI_THEMES, f"{RESOURCE_BASE_URL}/rofi")


def install_default_indexers() -> None:
    ensure_files(JACKETT_INDEXERS_DIR, DEFAULT_INDEXERS, f"{RESOURCE_BASE_URL}/jackett")


def install_jackett() -> None:
    """Download the Linux Jackett release into /opt and link it on the PATH."""
    log.info("Installing Jackett...")
    result = subprocess.run(["bash", "-c", JACKETT_INSTALL_SCRIPT], check=False)
    if result.returncode != 0:
        raise BootstrapError(f"Jackett install script exited with {result.returncode}")


def start_jackett(wait: float = 10.0) -> subprocess.Popen:
    """Start Jackett in the background and give it ``wait`` seconds to come up."""
    install_default_indexers()
    try:
        process = subprocess.Popen(
            ["jackett"],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
    except OSError as e:
        raise BootstrapError(f"Failed to start Jackett: {e}") from e
    log.info("Waiting for Jackett to start...")
    time.sleep(wait)
    return process


def self_update() -> None:
    """Upgrade the installed package with pip."""
    cmd = [sys.executable, "-m", "pip", "install", "--upgrade", PACKAGE_NAME]
    log.debug("Running %s", " ".join(cmd))
    result = subprocess.run(cmd, check=False)
    if result.returncode != 0:
        raise BootstrapError(f"pip exited with code {result.returncode}")
