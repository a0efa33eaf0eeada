"""
Configuration file handling.

The configuration lives in a plain ``key=value`` file. Lines starting with ``#``
are comments. Keys missing from the file are filled from ``DEFAULT_CONFIG`` and
the file is rewritten so the user can see every available setting.
"""

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Dict, Union

log = logging.getLogger(__name__)

# Set up configuration locations
HOME = Path.home()
CONFIG_DIR = HOME / ".config" / "torrentwatch"
CONFIG_PATH = CONFIG_DIR / "config"
HISTORY_FILENAME = "torrent_history.txt"

DEFAULT_CONFIG: Dict[str, str] = {
    "storage_path": "$HOME/.local/share/torrentwatch",
    "jackett_url": "127.0.0.1",
    "jackett_port": "9117",
    "jackett_api_key": "",
    "rofi_selection": "false",
    "percentage_to_mark_completed": "92",
    "save_mpv_speed": "false",
    "run_jackett_at_startup": "false",
}

TRUE_VALUES = ("1", "true", "yes", "on")


class ConfigError(Exception):
    """Raised when the configuration file cannot be read or written."""

    pass


@dataclass
class ProgramConfig:
    """Typed view of the configuration file."""

    storage_path: str = DEFAULT_CONFIG["storage_path"]
    jackett_url: str = DEFAULT_CONFIG["jackett_url"]
    jackett_port: str = DEFAULT_CONFIG["jackett_port"]
    jackett_api_key: str = DEFAULT_CONFIG["jackett_api_key"]
    rofi_selection: bool = False
    percentage_to_mark_completed: int = 92
    save_mpv_speed: bool = False
    run_jackett_at_startup: bool = False

    @classmethod
    def from_mapping(cls, values: Dict[str, str]) -> "ProgramConfig":
        """Build a config from raw string values, converting each to its field type."""
        config = cls()
        for f in fields(cls):
            if f.name not in values:
                continue
            raw = values[f.name].strip()
            if f.type is bool:
                setattr(config, f.name, raw.lower() in TRUE_VALUES)
            elif f.type is int:
                try:
                    setattr(config, f.name, int(raw))
                except ValueError:
                    log.warning(
                        "Invalid integer %r for %s, using %s",
                        raw,
                        f.name,
                        DEFAULT_CONFIG[f.name],
                    )
                    setattr(config, f.name, int(DEFAULT_CONFIG[f.name]))
            else:
                setattr(config, f.name, raw)

        if not 1 <= config.percentage_to_mark_completed <= 100:
            log.warning(
                "percentage_to_mark_completed must be between 1 and 100, using %s",
                DEFAULT_CONFIG["percentage_to_mark_completed"],
            )
            config.percentage_to_mark_completed = int(
                DEFAULT_CONFIG["percentage_to_mark_completed"]
            )
        return config

    def to_mapping(self) -> Dict[str, str]:
        values = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, bool):
                values[f.name] = "true" if value else "false"
            else:
                values[f.name] = str(value)
        return values

    @property
    def storage_dir(self) -> Path:
        """Storage path with ``$VARS`` and ``~`` expanded."""
        return Path(os.path.expanduser(os.path.expandvars(self.storage_path)))

    @property
    def history_file(self) -> Path:
        return self.storage_dir / HISTORY_FILENAME

    @property
    def jackett_base_url(self) -> str:
        host = self.jackett_url.rstrip("/")
        if not host.startswith(("http://", "https://")):
            host = f"http://{host}"
        return f"{host}:{self.jackett_port}"


def parse_config_text(text: str) -> Dict[str, str]:
    """Parse ``key=value`` lines, skipping blanks and ``#`` comments."""
    values: Dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if not sep:
            log.debug("Ignoring config line without '=': %r", line)
            continue
        values[key.strip()] = value.strip()
    return values


def write_config_file(path: Union[str, Path], values: Dict[str, str]) -> None:
    """Write ``values`` to ``path`` in ``key=value`` format."""
    path = Path(path)
    lines = ["# torrentwatch configuration"]
    lines.extend(f"{key}={value}" for key, value in values.items())
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("\n".join(lines) + "\n")
    except OSError as e:
        raise ConfigError(f"Cannot write config file {path}: {e}") from e


def load_config(path: Union[str, Path] = CONFIG_PATH) -> ProgramConfig:
    """
    Read the configuration file, creating it with defaults if it does not exist.

    Missing keys are added with their default values and the file is rewritten.
    Unknown keys are kept as they are.

    Raises:
        ConfigError: if the file cannot be read or written
    """
    path = Path(os.path.expandvars(str(path))).expanduser()
    if not path.exists():
        log.info("Config file not found. Creating default config at %s", path)
        write_config_file(path, dict(DEFAULT_CONFIG))
        return ProgramConfig.from_mapping(DEFAULT_CONFIG)

    try:
        values = parse_config_text(path.read_text())
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e

    missing = [key for key in DEFAULT_CONFIG if key not in values]
    if missing:
        for key in missing:
            values[key] = DEFAULT_CONFIG[key]
        log.debug("Adding missing config keys: %s", ", ".join(missing))
        write_config_file(path, values)

    return ProgramConfig.from_mapping(values)


def save_config(path: Union[str, Path], config: ProgramConfig) -> None:
    """Save ``config`` to ``path``, preserving keys this version does not know."""
    path = Path(os.path.expandvars(str(path))).expanduser()
    values: Dict[str, str] = {}
    if path.exists():
        try:
            values = parse_config_text(path.read_text())
        except OSError as e:
            raise ConfigError(f"Cannot read config file {path}: {e}") from e
    values.update(config.to_mapping())
    write_config_file(path, values)
