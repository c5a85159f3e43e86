"""Configuration management for meshcall.

This module handles loading configuration from multiple sources with the following priority:
1. CLI arguments (handled by caller)
2. Environment variables (MESHCALL_PORT, MESHCALL_SIGNALING_URL, ...)
3. TOML configuration file
4. Default values

Configuration files are loaded from:
- meshcall.toml in current working directory
- ~/.meshcall/config.toml

Sections: [relay], [client], [media] and [environments.<name>]. The
environment is selected via MESHCALL_ENV (development, staging, production)
and its table overrides [client] keys. Defaults to production if not set.
"""

import os
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import List, Optional

from loguru import logger

# Production deployment defaults
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 3001
DEFAULT_MAX_MESSAGE_SIZE = 100_000_000  # 100 MB
DEFAULT_KEEPALIVE_INTERVAL = 25.0
DEFAULT_KEEPALIVE_TIMEOUT = 60.0
DEFAULT_SIGNALING_URL = "ws://localhost:3001"
DEFAULT_ICE_SERVERS = [
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
    "stun:stun2.l.google.com:19302",
    "stun:stun3.l.google.com:19302",
    "stun:stun4.l.google.com:19302",
]
DEFAULT_RECONNECT_DELAY = 2.0
DEFAULT_MAX_RECONNECT_ATTEMPTS = 1

# Valid environment names
VALID_ENVIRONMENTS = {"development", "staging", "production"}


@dataclass
class RelayConfig:
    """Settings for the signaling relay process.

    Attributes:
        host: Interface to listen on.
        port: TCP port serving both the WebSocket endpoint and /health.
        max_message_size: Largest accepted frame in bytes.
        keepalive_interval: Seconds between WebSocket pings.
        keepalive_timeout: Seconds to wait for a pong before dropping the channel.
    """

    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    max_message_size: int = DEFAULT_MAX_MESSAGE_SIZE
    keepalive_interval: float = DEFAULT_KEEPALIVE_INTERVAL
    keepalive_timeout: float = DEFAULT_KEEPALIVE_TIMEOUT

    def __post_init__(self):
        """Validate relay configuration after initialization."""
        if not 0 <= self.port <= 65535:
            raise ValueError(f"Port out of range: {self.port}")
        if self.max_message_size <= 0:
            raise ValueError("max_message_size must be positive")
        if self.keepalive_interval <= 0 or self.keepalive_timeout <= 0:
            raise ValueError("Keepalive interval and timeout must be positive")


@dataclass
class ClientConfig:
    """Settings for a call participant.

    Attributes:
        signaling_url: WebSocket URL of the relay.
        ice_servers: STUN/TURN URLs handed to every peer connection.
        reconnect_delay: Seconds between a transport failure and the retry.
        max_reconnect_attempts: Retries allowed per failure streak.
        max_message_size: Largest accepted frame in bytes.
        keepalive_interval: Seconds between WebSocket pings.
        keepalive_timeout: Seconds to wait for a pong before giving up.
    """

    signaling_url: str = DEFAULT_SIGNALING_URL
    ice_servers: List[str] = field(default_factory=lambda: list(DEFAULT_ICE_SERVERS))
    reconnect_delay: float = DEFAULT_RECONNECT_DELAY
    max_reconnect_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS
    max_message_size: int = DEFAULT_MAX_MESSAGE_SIZE
    keepalive_interval: float = DEFAULT_KEEPALIVE_INTERVAL
    keepalive_timeout: float = DEFAULT_KEEPALIVE_TIMEOUT

    def __post_init__(self):
        """Validate client configuration after initialization."""
        if not isinstance(self.signaling_url, str):
            raise TypeError(f"signaling_url must be a string, got {type(self.signaling_url).__name__}")
        if not self.signaling_url.startswith(("ws://", "wss://")):
            raise ValueError(f"signaling_url must be a ws:// or wss:// URL: {self.signaling_url}")
        if self.reconnect_delay < 0:
            raise ValueError("reconnect_delay cannot be negative")
        if self.max_reconnect_attempts < 0:
            raise ValueError("max_reconnect_attempts cannot be negative")


@dataclass
class MediaConfig:
    """Local capture source settings.

    ``play_from`` (a file or URL) takes precedence over the capture devices.
    A device set to ``None`` disables that kind of track.

    Attributes:
        play_from: Media file or URL to loop instead of capture devices.
        video_device: Video capture device (e.g. /dev/video0).
        video_format: FFmpeg input format for the video device (e.g. v4l2).
        audio_device: Audio capture device (e.g. default).
        audio_format: FFmpeg input format for the audio device (e.g. pulse).
        video_size: Requested capture resolution, WxH.
    """

    play_from: Optional[str] = None
    video_device: Optional[str] = "/dev/video0"
    video_format: Optional[str] = "v4l2"
    audio_device: Optional[str] = "default"
    audio_format: Optional[str] = "pulse"
    video_size: str = "640x480"


def _from_table(cls, table: dict, current):
    """Build a dataclass from a TOML table, keeping ``current`` values for absent keys."""
    known = {f.name for f in fields(cls)}
    values = {f.name: getattr(current, f.name) for f in fields(cls)}
    for key, value in table.items():
        if key not in known:
            logger.warning(f"Ignoring unknown {cls.__name__} key: {key}")
            continue
        # TOML has no null; "none" disables a media device
        if isinstance(value, str) and value.lower() == "none":
            value = None
        values[key] = value
    try:
        return cls(**values)
    except (TypeError, ValueError) as e:
        logger.warning(f"Invalid {cls.__name__} settings {table}: {e}. Keeping previous values.")
        return current


# Environment variable → (sections, key, converter)
ENV_OVERRIDES = {
    "MESHCALL_HOST": (("relay",), "host", str),
    "MESHCALL_PORT": (("relay",), "port", int),
    "MESHCALL_MAX_MESSAGE_SIZE": (("relay", "client"), "max_message_size", int),
    "MESHCALL_KEEPALIVE_INTERVAL": (("relay", "client"), "keepalive_interval", float),
    "MESHCALL_KEEPALIVE_TIMEOUT": (("relay", "client"), "keepalive_timeout", float),
    "MESHCALL_SIGNALING_URL": (("client",), "signaling_url", str),
    "MESHCALL_RECONNECT_DELAY": (("client",), "reconnect_delay", float),
}


class Config:
    """Configuration manager for meshcall."""

    def __init__(self):
        """Initialize configuration with defaults."""
        self.relay = RelayConfig()
        self.client = ClientConfig()
        self.media = MediaConfig()
        self.environment: str = "production"
        self.config_file: Optional[Path] = None
        self._config_data: dict = {}

    def load(self) -> None:
        """Load configuration from all sources.

        Priority order:
        1. Environment variables
        2. TOML configuration file
        3. Default values
        """
        self.environment = self._get_environment()

        config_file = self._find_config_file()
        if config_file:
            self._load_config_file(config_file)

        self._apply_env_overrides()

    def _get_environment(self) -> str:
        """Get the current environment from MESHCALL_ENV.

        Returns:
            Environment name (development, staging, or production).
            Defaults to production if not set or invalid.
        """
        env = os.getenv("MESHCALL_ENV", "production").lower()
        if env not in VALID_ENVIRONMENTS:
            logger.warning(
                f"Invalid MESHCALL_ENV value '{env}'. "
                f"Valid values are: {', '.join(sorted(VALID_ENVIRONMENTS))}. "
                f"Defaulting to 'production'."
            )
            env = "production"
        return env

    def _find_config_file(self) -> Optional[Path]:
        """Find the configuration file.

        Searches in order:
        1. meshcall.toml in current working directory
        2. ~/.meshcall/config.toml

        Returns:
            Path to config file if found, None otherwise.
        """
        cwd_config = Path.cwd() / "meshcall.toml"
        if cwd_config.exists():
            logger.info(f"Loading config from {cwd_config}")
            return cwd_config

        home_config = Path.home() / ".meshcall" / "config.toml"
        if home_config.exists():
            logger.info(f"Loading config from {home_config}")
            return home_config

        logger.debug("No config file found, using defaults")
        return None

    def _load_config_file(self, config_file: Path) -> None:
        """Load configuration from TOML file.

        Args:
            config_file: Path to the TOML configuration file.
        """
        try:
            with open(config_file, "rb") as f:
                self._config_data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            logger.warning(f"Failed to load config file {config_file}: {e}. Using defaults.")
            return

        self.config_file = config_file
        self.relay = _from_table(RelayConfig, self._config_data.get("relay", {}), self.relay)
        self.client = _from_table(ClientConfig, self._config_data.get("client", {}), self.client)
        self.media = _from_table(MediaConfig, self._config_data.get("media", {}), self.media)

        environments = self._config_data.get("environments", {})
        env_config = environments.get(self.environment, {})
        if not env_config:
            logger.debug(
                f"No configuration found for environment '{self.environment}' "
                f"in {config_file}, using [client] values"
            )
            return
        self.client = _from_table(ClientConfig, env_config, self.client)

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides.

        Environment variables take precedence over config file settings
        but are overridden by CLI arguments (handled by caller).
        """
        for var, (sections, key, convert) in ENV_OVERRIDES.items():
            raw = os.getenv(var)
            if not raw:
                continue
            try:
                value = convert(raw)
            except ValueError:
                logger.warning(f"Ignoring {var}={raw!r}: not a valid {convert.__name__}")
                continue
            for section in sections:
                try:
                    self.override(section, **{key: value})
                except ValueError as e:
                    logger.warning(f"Ignoring {var}={raw!r} for {section}: {e}")
                    continue
                logger.info(f"Overriding {section}.{key} from env: {value}")

    def override(self, section: str, **values) -> None:
        """Replace values in one section, skipping ``None`` (unset CLI options).

        Raises:
            ValueError: If the resulting section fails validation.
        """
        values = {k: v for k, v in values.items() if v is not None}
        if not values:
            return
        current = getattr(self, section)
        merged = {f.name: getattr(current, f.name) for f in fields(current)}
        merged.update(values)
        setattr(self, section, type(current)(**merged))

    def get_health_url(self) -> str:
        """Get the relay liveness URL derived from the client signaling URL."""
        url = self.client.signaling_url
        if url.startswith("wss://"):
            base = "https://" + url[len("wss://"):]
        else:
            base = "http://" + url[len("ws://"):]
        return base.rstrip("/") + "/health"


# Global configuration instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance.

    Loads configuration on first call.

    Returns:
        Global Config instance.
    """
    global _config
    if _config is None:
        _config = Config()
        _config.load()
    return _config


def reload_config() -> Config:
    """Reload configuration from sources.

    Useful for testing or runtime reconfiguration.

    Returns:
        Reloaded Config instance.
    """
    global _config
    _config = Config()
    _config.load()
    return _config
