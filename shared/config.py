"""
Client configuration.

A single immutable ClientConfig is built once at process start (from a YAML
file, SHOWDOWN_* environment variables and explicit overrides, in that order
of precedence) and handed to the ConnectionManager. Nothing in the core reads
configuration from global state.

Example config.yaml:

    server: sim3.psim.us
    port: 8000
    nick: MyBot
    password: hunter2
    avatar: 167
    autojoin: [lobby, help, tournaments]
    reconnect_time: 30
    primary_room: lobby
"""

from __future__ import annotations
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from shared.log import get_logger
from shared.utils import split_rooms, to_room_id

logger = get_logger(__name__)

DEFAULT_LOGIN_URL = "https://play.pokemonshowdown.com/~~showdown/action.php"
DEFAULT_SEND_INTERVAL = 0.6

# Environment variable -> config key
_ENV_OVERRIDES: Dict[str, str] = {
    "SHOWDOWN_SERVER": "server",
    "SHOWDOWN_PORT": "port",
    "SHOWDOWN_NICK": "nick",
    "SHOWDOWN_PASSWORD": "password",
}


class ConfigError(ValueError):
    """Raised when the configuration file or overrides are invalid."""
    pass


@dataclass(frozen=True)
class ClientConfig:
    server: str
    nick: str
    port: int = 8000
    scheme: str = "ws"
    path: str = "/showdown/websocket"
    password: Optional[str] = None
    avatar: Optional[str] = None
    autojoin: Tuple[str, ...] = ()
    reconnect_time: float = 0.0         # seconds; 0 disables auto-reconnect
    primary_room: Optional[str] = None  # fallback room for collaborators
    send_interval: float = DEFAULT_SEND_INTERVAL
    login_url: str = DEFAULT_LOGIN_URL
    login_timeout: float = 10.0
    log_level: str = "INFO"

    @property
    def url(self) -> str:
        return f"{self.scheme}://{self.server}:{self.port}{self.path}"

    def with_overrides(self, **overrides: Any) -> "ClientConfig":
        """Return a validated copy with the non-None overrides applied"""
        data = {k: v for k, v in overrides.items() if v is not None}
        if not data:
            return self
        merged = {f.name: getattr(self, f.name) for f in fields(self)}
        merged.update(data)
        return replace(self, **_validate(merged))

    def redacted(self) -> Dict[str, Any]:
        """Field mapping safe to print (password masked)"""
        out = {f.name: getattr(self, f.name) for f in fields(self)}
        if out.get("password"):
            out["password"] = "********"
        return out


def default_config_path() -> Path:
    return Path(os.getenv("SHOWDOWN_CONFIG", "config.yaml"))


def load_config(path: Optional[Path] = None, **overrides: Any) -> ClientConfig:
    """
    Load configuration from YAML, then environment, then explicit overrides.

    A missing file is not an error as long as the required keys (server,
    nick) arrive from the environment or the overrides.

    Raises:
        ConfigError: on unreadable YAML or invalid values
    """
    config_path = Path(path) if path is not None else default_config_path()
    data: Dict[str, Any] = {}

    if config_path.exists():
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Error reading {config_path}: {e}") from e
        if not isinstance(loaded, dict):
            raise ConfigError(f"{config_path} must contain a mapping at the top level")
        data.update(loaded)
        logger.info(f"Loaded configuration from {config_path}")
    else:
        logger.info(f"No {config_path} found; using environment and defaults")

    for env_name, key in _ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if value:
            data[key] = value

    data.update({k: v for k, v in overrides.items() if v is not None})

    return ClientConfig(**_validate(data))


def _validate(data: Dict[str, Any]) -> Dict[str, Any]:
    known = {f.name for f in fields(ClientConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        logger.warning("Ignoring unknown config keys: %s", ", ".join(unknown))

    clean = {k: v for k, v in data.items() if k in known}

    for key in ("server", "nick"):
        value = clean.get(key)
        if value is None or not str(value).strip():
            raise ConfigError(f"'{key}' is required")
        clean[key] = str(value).strip()

    if "port" in clean:
        clean["port"] = _as_int("port", clean["port"])
        if not 0 < clean["port"] <= 65535:
            raise ConfigError(f"'port' out of range: {clean['port']}")

    for key in ("reconnect_time", "send_interval", "login_timeout"):
        if key in clean:
            clean[key] = _as_float(key, clean[key])
            if clean[key] < 0:
                raise ConfigError(f"'{key}' must not be negative")

    for key in ("password", "avatar", "primary_room"):
        if key in clean:
            value = clean[key]
            clean[key] = str(value) if value not in (None, "") else None

    if clean.get("primary_room"):
        clean["primary_room"] = to_room_id(clean["primary_room"]) or None

    if "autojoin" in clean:
        clean["autojoin"] = tuple(split_rooms(clean["autojoin"]))

    if "path" in clean and not str(clean["path"]).startswith("/"):
        clean["path"] = "/" + str(clean["path"])

    return clean


def _as_int(key: str, value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"'{key}' must be an integer, got {value!r}")


def _as_float(key: str, value: Any) -> float:
    if value is None:
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"'{key}' must be a number, got {value!r}")
