"""
Nostream - Configuration

Settings come from three layers, later ones winning:

1. DEFAULT_CONFIG below
2. A TOML file (``~/.nostream/config.toml`` unless another path is given)
3. Environment variables named ``NOSTREAM_<SECTION>_<KEY>``

Author: nostream contributors
Version: 0.3.0
"""

import copy
import json
import os
import tomllib
from pathlib import Path
from typing import Any, Dict, Optional, TextIO

from .constants import (
    CONFIG_FILENAME,
    DEFAULT_DATA_DIR,
    DEFAULT_MESSAGE_HISTORY_DAYS,
    DEFAULT_RELAYS,
    DEFAULT_TAG_SALT,
    MAX_CONSECUTIVE_FAILURES,
    MESSAGE_DEBOUNCE,
    PUBLISH_COOLDOWN,
    PUBLISH_TIMEOUT,
    RAPID_PUBLISH_COOLDOWN,
    REFRESH_INTERVAL_MINUTES,
    SUBSCRIPTION_TIMEOUT,
)
from .errors import ConfigError, ErrorCode

ENV_PREFIX = "NOSTREAM"

DEFAULT_CONFIG: Dict[str, Any] = {
    "relays": {
        "urls": list(DEFAULT_RELAYS),
    },
    "sync": {
        "lookback_days": DEFAULT_MESSAGE_HISTORY_DAYS,
        "freshness_minutes": REFRESH_INTERVAL_MINUTES,
        "tag_salt": DEFAULT_TAG_SALT,
    },
    "publish": {
        "cooldown": PUBLISH_COOLDOWN,
        "rapid_cooldown": RAPID_PUBLISH_COOLDOWN,
        "timeout": PUBLISH_TIMEOUT,
        "max_consecutive_failures": MAX_CONSECUTIVE_FAILURES,
    },
    "subscriptions": {
        "timeout": SUBSCRIPTION_TIMEOUT,
        "debounce": MESSAGE_DEBOUNCE,
    },
    "logging": {
        "level": "INFO",
        "file_logging": True,
        "console_logging": True,
    },
    "storage": {
        "data_dir": DEFAULT_DATA_DIR,
    },
}


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of ``base`` with ``override`` merged in, table by table."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def coerce_env_value(raw: str, current: Any) -> Any:
    """Convert an environment string to the type of the value it replaces.

    Raises:
        ValueError: If ``raw`` is not a valid number for a numeric setting
    """
    if isinstance(current, bool):
        return raw.strip().lower() in ("true", "1", "yes", "on")
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    if isinstance(current, list):
        return [item.strip() for item in raw.split(",") if item.strip()]
    return raw


def _toml_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, (list, tuple)):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    # A JSON string literal is also a valid TOML basic string
    return json.dumps(str(value), ensure_ascii=False)


def dump_toml(data: Dict[str, Any], out: TextIO) -> None:
    """Write a two-level ``{section: {key: value}}`` mapping as TOML."""
    for section, table in data.items():
        if not isinstance(table, dict):
            continue
        out.write(f"[{section}]\n")
        out.writelines(f"{key} = {_toml_value(value)}\n" for key, value in table.items())
        out.write("\n")


class Config:
    """Layered settings for one nostream installation.

    Attributes:
        config_path: TOML file the settings were read from and are saved to
        data: Effective settings, ``{section: {key: value}}``
    """

    def __init__(self, config_path: Optional[Path] = None):
        if config_path is None:
            config_path = Path(DEFAULT_DATA_DIR).expanduser() / CONFIG_FILENAME
        self.config_path = Path(config_path)
        self.data = self._apply_env_overrides(deep_merge(DEFAULT_CONFIG, self._read_file()))

    def _read_file(self) -> Dict[str, Any]:
        """Parse the TOML file; a missing file counts as empty.

        Raises:
            ConfigError: E701 if the file cannot be read, E704 if it is not valid TOML
        """
        if not self.config_path.exists():
            return {}
        try:
            with open(self.config_path, "rb") as f:
                return tomllib.load(f)
        except OSError as e:
            raise ConfigError(
                ErrorCode.E701_CONFIG_LOAD_FAILED,
                f"Cannot read {self.config_path}: {e}",
                {"path": str(self.config_path)},
            ) from e
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(
                ErrorCode.E704_CONFIG_PARSE_ERROR,
                f"Invalid TOML in {self.config_path}: {e}",
                {"path": str(self.config_path), "error": str(e)},
            ) from e

    @staticmethod
    def _apply_env_overrides(data: Dict[str, Any]) -> Dict[str, Any]:
        """Replace settings that have a ``NOSTREAM_<SECTION>_<KEY>`` variable.

        Lists take a comma-separated value, for example
        ``NOSTREAM_RELAYS_URLS=wss://a,wss://b``. A value that does not
        convert to the setting's type is ignored.
        """
        for section, table in data.items():
            if not isinstance(table, dict):
                continue
            for key, current in list(table.items()):
                raw = os.environ.get(f"{ENV_PREFIX}_{section.upper()}_{key.upper()}")
                if raw is None:
                    continue
                try:
                    table[key] = coerce_env_value(raw, current)
                except ValueError:
                    pass
        return data

    def get(self, section: str, key: str, default: Any = None) -> Any:
        return self.data.get(section, {}).get(key, default)

    def set(self, section: str, key: str, value: Any) -> None:
        self.data.setdefault(section, {})[key] = value

    @property
    def data_dir(self) -> Path:
        """Storage directory with ``~`` expanded."""
        return Path(self.get("storage", "data_dir", DEFAULT_DATA_DIR)).expanduser()

    def save(self) -> None:
        """Write the effective settings back to ``config_path``.

        Raises:
            ConfigError: If the file cannot be written
        """
        self._write(self.config_path, self.data)

    @staticmethod
    def _write(path: Path, data: Dict[str, Any], header: str = "") -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "w", encoding="utf-8") as f:
                f.write(header)
                dump_toml(data, f)
        except OSError as e:
            raise ConfigError(
                ErrorCode.E702_CONFIG_SAVE_FAILED,
                f"Cannot write {path}: {e}",
                {"path": str(path), "error": str(e)},
            ) from e

    def to_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self.data)

    @classmethod
    def create_example(cls, path: Path) -> None:
        """Write the default settings, with a short header, to ``path``."""
        header = (
            "# Nostream configuration\n"
            f"# Any setting can be overridden with {ENV_PREFIX}_<SECTION>_<KEY>\n\n"
        )
        cls._write(Path(path), DEFAULT_CONFIG, header)
