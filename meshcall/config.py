"""Configuration management for meshcall.

This module handles loading configuration from multiple sources with the following priority:
1. CLI arguments (handled by caller)
2. Environment variables (MESHCALL_SERVER_URL)
3. TOML configuration file
4. Default values (production environment)

Configuration files are loaded from:
- meshcall.toml in current working directory
- ~/.meshcall/config.toml

Environment selection via MESHCALL_ENV (development, staging, production).
Defaults to production if not set.
"""

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional
from urllib.parse import urlsplit, urlunsplit

from loguru import logger


# Public STUN servers used when no [ice] table is configured. There is no
# default TURN relay; one is set through [ice].turn_url and its credentials.
DEFAULT_STUN_URLS = [
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
    "stun:stun2.l.google.com:19302",
    "stun:stun3.l.google.com:19302",
    "stun:stun4.l.google.com:19302",
]

DEFAULT_SERVER_URL = "http://localhost:8080"

# Path of the signaling WebSocket on the server origin
SIGNALING_PATH = "/signal"

# Valid environment names
VALID_ENVIRONMENTS = {"development", "staging", "production"}


@dataclass
class IceConfig:
    """ICE server settings handed to every peer connection.

    Attributes:
        stun_urls: STUN server URLs.
        turn_url: Optional TURN relay URL.
        turn_username: Username for the TURN relay.
        turn_credential: Credential for the TURN relay.
    """

    stun_urls: List[str] = field(default_factory=lambda: list(DEFAULT_STUN_URLS))
    turn_url: Optional[str] = None
    turn_username: Optional[str] = None
    turn_credential: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "IceConfig":
        """Create IceConfig from the TOML [ice] table."""
        stun_urls = data.get("stun_urls", DEFAULT_STUN_URLS)
        if not isinstance(stun_urls, list):
            logger.warning(f"Ignoring non-list ice.stun_urls: {stun_urls!r}")
            stun_urls = DEFAULT_STUN_URLS
        return cls(
            stun_urls=list(stun_urls),
            turn_url=data.get("turn_url"),
            turn_username=data.get("turn_username"),
            turn_credential=data.get("turn_credential"),
        )


@dataclass
class MediaConfig:
    """Capture device settings.

    Device names and formats are passed straight to FFmpeg through
    ``aiortc.contrib.media.MediaPlayer``. ``None`` selects a per-platform
    default (see ``meshcall.media.sources``).
    """

    camera_device: Optional[str] = None
    camera_format: Optional[str] = None
    microphone_device: Optional[str] = None
    microphone_format: Optional[str] = None
    screen_device: Optional[str] = None
    screen_format: Optional[str] = None
    video_size: str = "640x480"
    framerate: int = 30

    @classmethod
    def from_dict(cls, data: dict) -> "MediaConfig":
        """Create MediaConfig from the TOML [media] table."""
        known = {name for name in cls.__dataclass_fields__}
        unknown = set(data) - known
        if unknown:
            logger.warning(f"Ignoring unknown [media] keys: {', '.join(sorted(unknown))}")
        return cls(**{k: v for k, v in data.items() if k in known})


class Config:
    """Configuration manager for meshcall."""

    def __init__(self):
        """Initialize configuration with defaults."""
        self.server_url: str = DEFAULT_SERVER_URL
        self.environment: str = "production"
        self.ice: IceConfig = IceConfig()
        self.media: MediaConfig = MediaConfig()
        self._config_data: dict = {}

    def load(self) -> None:
        """Load configuration from all sources.

        Priority order:
        1. Environment variables (MESHCALL_SERVER_URL)
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

        home_config = self._home_config_path()
        if home_config.exists():
            logger.info(f"Loading config from {home_config}")
            return home_config

        logger.debug("No config file found, using defaults")
        return None

    def _home_config_path(self) -> Path:
        return Path.home() / ".meshcall" / "config.toml"

    def _load_config_file(self, config_file: Path) -> None:
        """Load configuration from TOML file.

        Args:
            config_file: Path to the TOML configuration file.
        """
        try:
            with open(config_file, "rb") as f:
                self._config_data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            logger.warning(
                f"Failed to load config file {config_file}: {e}. Using defaults."
            )
            self._config_data = {}
            return

        self.ice = IceConfig.from_dict(self._config_data.get("ice", {}))
        self.media = MediaConfig.from_dict(self._config_data.get("media", {}))

        environments = self._config_data.get("environments", {})
        env_config = environments.get(self.environment, {})

        if not env_config:
            logger.debug(
                f"No configuration found for environment '{self.environment}' "
                f"in {config_file}, using defaults"
            )
            return

        if "server_url" in env_config:
            self.server_url = env_config["server_url"]
            logger.debug(f"Loaded server_url from config: {self.server_url}")

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides.

        Environment variables take precedence over config file settings
        but are overridden by CLI arguments (handled by caller).
        """
        url_override = os.getenv("MESHCALL_SERVER_URL")
        if url_override:
            self.server_url = url_override
            logger.info(f"Overriding server_url from env: {self.server_url}")

    def get_signaling_url(self, server_url: Optional[str] = None) -> str:
        """Get the signaling WebSocket URL for a server origin.

        An ``https`` origin selects ``wss``, anything else ``ws``. A URL that
        is already ``ws``/``wss`` is returned unchanged.

        Args:
            server_url: Origin to derive from. Defaults to the configured one.

        Returns:
            WebSocket URL ending in the signaling path.
        """
        return signaling_url_for(server_url or self.server_url)

    def as_dict(self) -> dict:
        """Resolved settings, for display."""
        return {
            "environment": self.environment,
            "server_url": self.server_url,
            "signaling_url": self.get_signaling_url(),
            "ice": {
                "stun_urls": self.ice.stun_urls,
                "turn_url": self.ice.turn_url,
                "turn_username": self.ice.turn_username,
            },
            "media": dict(self.media.__dict__),
        }


def signaling_url_for(server_url: str) -> str:
    """Derive the signaling endpoint from a server origin.

    Examples:
        >>> signaling_url_for("https://call.example.org")
        'wss://call.example.org/signal'

        >>> signaling_url_for("localhost:8080")
        'ws://localhost:8080/signal'
    """
    if "//" not in server_url:
        server_url = f"http://{server_url}"
    parts = urlsplit(server_url)
    if parts.scheme in ("ws", "wss"):
        return server_url
    scheme = "wss" if parts.scheme == "https" else "ws"
    return urlunsplit((scheme, parts.netloc, SIGNALING_PATH, "", ""))


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
