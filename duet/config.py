"""
Configuration for the relay server and the call client.

Settings are layered: the packaged ``configs/default.yaml`` first, then an
optional user YAML file, then environment overrides (``PORT``), then CLI
flags applied by :mod:`duet.main`.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

CONFIG_DIR = Path(__file__).resolve().parent / "configs"
DEFAULT_CONFIG_PATH = CONFIG_DIR / "default.yaml"

LOG = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Raised when a configuration file cannot be parsed."""


@dataclass
class IceServer:
    urls: str
    username: Optional[str] = None
    credential: Optional[str] = None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "IceServer":
        urls = payload.get("urls")
        if isinstance(urls, (list, tuple)):
            urls = urls[0] if urls else None
        if not urls:
            raise ConfigError("ice server entry requires 'urls'")
        return cls(
            urls=str(urls),
            username=payload.get("username"),
            credential=payload.get("credential"),
        )


@dataclass
class MediaConstraints:
    """Capture constraints handed to the media capture provider."""

    audio: bool = True
    video: bool = True
    width: int = 1280
    height: int = 720
    frame_rate: Optional[int] = None
    sample_rate: int = 44100

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "MediaConstraints":
        defaults = cls()
        frame_rate = payload.get("frame_rate")
        return cls(
            audio=bool(payload.get("audio", defaults.audio)),
            video=bool(payload.get("video", defaults.video)),
            width=max(1, int(payload.get("width", defaults.width))),
            height=max(1, int(payload.get("height", defaults.height))),
            frame_rate=int(frame_rate) if frame_rate is not None else None,
            sample_rate=max(8000, int(payload.get("sample_rate", defaults.sample_rate))),
        )

    @property
    def video_size(self) -> str:
        return f"{self.width}x{self.height}"


@dataclass
class RelayConfig:
    host: str = "0.0.0.0"
    port: int = 3001
    queue_size: int = 256
    ping_interval: float = 30.0
    pong_timeout: float = 60.0
    cors_origins: List[str] = field(default_factory=lambda: ["*"])

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "RelayConfig":
        defaults = cls()
        origins = payload.get("cors_origins", defaults.cors_origins)
        if isinstance(origins, str):
            origins = [origins]
        ping_interval = max(0.0, float(payload.get("ping_interval", defaults.ping_interval)))
        return cls(
            host=str(payload.get("host", defaults.host)),
            port=int(payload.get("port", defaults.port)),
            queue_size=max(1, int(payload.get("queue_size", defaults.queue_size))),
            ping_interval=ping_interval,
            pong_timeout=max(ping_interval, float(payload.get("pong_timeout", defaults.pong_timeout))),
            cors_origins=[str(origin) for origin in origins or []],
        )


@dataclass
class ClientConfig:
    server_url: str = "ws://localhost:3001/ws"
    open_timeout: float = 10.0
    negotiation_timeout: Optional[float] = None
    ice_servers: List[IceServer] = field(default_factory=list)
    media: MediaConstraints = field(default_factory=MediaConstraints)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ClientConfig":
        defaults = cls()
        timeout = payload.get("negotiation_timeout")
        if timeout is not None:
            timeout = float(timeout)
            if timeout <= 0:
                timeout = None
        servers = payload.get("ice_servers") or []
        return cls(
            server_url=str(payload.get("server_url", defaults.server_url)),
            open_timeout=max(0.1, float(payload.get("open_timeout", defaults.open_timeout))),
            negotiation_timeout=timeout,
            ice_servers=[IceServer.from_dict(entry) for entry in servers],
            media=MediaConstraints.from_dict(payload.get("media") or {}),
        )


@dataclass
class DuetConfig:
    relay: RelayConfig = field(default_factory=RelayConfig)
    client: ClientConfig = field(default_factory=ClientConfig)


def _deep_merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping at the top level")
    return data


def load_config(
    path: Optional[os.PathLike] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> DuetConfig:
    """
    Resolve the effective configuration.

    ``path`` is merged on top of the packaged defaults; a missing file is an
    error so typos do not silently fall back to defaults.
    """

    data = _read_yaml(DEFAULT_CONFIG_PATH)
    if path is not None:
        user_path = Path(path)
        if not user_path.is_file():
            raise ConfigError(f"Config file not found: {user_path}")
        data = _deep_merge(data, _read_yaml(user_path))
        LOG.debug("Loaded configuration overrides from %s", user_path)

    env = os.environ if environ is None else environ
    relay_section = dict(data.get("relay") or {})
    port_override = env.get("PORT")
    if port_override:
        try:
            relay_section["port"] = int(port_override)
        except ValueError:
            raise ConfigError(f"PORT must be an integer, got '{port_override}'") from None

    return DuetConfig(
        relay=RelayConfig.from_dict(relay_section),
        client=ClientConfig.from_dict(data.get("client") or {}),
    )


__all__ = [
    "ClientConfig",
    "ConfigError",
    "DuetConfig",
    "IceServer",
    "MediaConstraints",
    "RelayConfig",
    "load_config",
]
