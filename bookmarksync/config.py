"""Configuration loading for bookmarksync."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

BACKEND_KINDS = ("supabase", "memory")


@dataclass
class BackendConfig:
    """Connection settings for the hosted backend."""

    kind: str = "supabase"  # "supabase" or "memory"
    url: str = ""
    anon_key: str = ""
    table: str = "bookmarks"
    oauth_provider: str = "google"
    redirect_to: str | None = None
    session_file: str = "~/.bookmarksync/session.yaml"
    timeout: float = 30.0

    @property
    def is_configured(self) -> bool:
        """Whether enough is known to reach the backend."""
        if self.kind == "memory":
            return True
        return bool(self.url and self.anon_key)

    @property
    def session_path(self) -> Path:
        return Path(self.session_file).expanduser()


@dataclass
class RealtimeConfig:
    """MQTT broker that carries table change notifications."""

    broker: str = "localhost"
    port: int = 1883
    username: str | None = None
    password: str | None = None
    topic_prefix: str = "bookmarksync"


@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 8080


@dataclass
class Config:
    backend: BackendConfig = field(default_factory=BackendConfig)
    realtime: RealtimeConfig = field(default_factory=RealtimeConfig)
    server: ServerConfig = field(default_factory=ServerConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with BOOKMARKSYNC_ prefix."""
    return os.environ.get(f"BOOKMARKSYNC_{key}", default)


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    # Backend overrides
    if kind := _get_env("BACKEND"):
        config.backend.kind = kind.lower()
    if url := _get_env("URL", os.environ.get("SUPABASE_URL")):
        config.backend.url = url
    if anon_key := _get_env("ANON_KEY", os.environ.get("SUPABASE_ANON_KEY")):
        config.backend.anon_key = anon_key
    if table := _get_env("TABLE"):
        config.backend.table = table
    if redirect_to := _get_env("REDIRECT_TO"):
        config.backend.redirect_to = redirect_to
    if session_file := _get_env("SESSION_FILE"):
        config.backend.session_file = session_file

    # Realtime overrides
    if broker := _get_env("MQTT_BROKER"):
        config.realtime.broker = broker
    if port := _get_env("MQTT_PORT"):
        config.realtime.port = int(port)
    if username := _get_env("MQTT_USERNAME"):
        config.realtime.username = username
    if password := _get_env("MQTT_PASSWORD"):
        config.realtime.password = password

    # Server overrides
    if host := _get_env("SERVER_HOST"):
        config.server.host = host
    if port := _get_env("SERVER_PORT"):
        config.server.port = int(port)

    return config


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded Config object.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            # Parse backend config
            if "backend" in data:
                backend_data = data["backend"]
                defaults = config.backend
                config.backend = BackendConfig(
                    kind=backend_data.get("kind", defaults.kind),
                    url=backend_data.get("url", defaults.url),
                    anon_key=backend_data.get("anon_key", defaults.anon_key),
                    table=backend_data.get("table", defaults.table),
                    oauth_provider=backend_data.get(
                        "oauth_provider", defaults.oauth_provider
                    ),
                    redirect_to=backend_data.get("redirect_to", defaults.redirect_to),
                    session_file=backend_data.get(
                        "session_file", defaults.session_file
                    ),
                    timeout=backend_data.get("timeout", defaults.timeout),
                )

            # Parse realtime config
            if "realtime" in data:
                rt_data = data["realtime"]
                config.realtime = RealtimeConfig(
                    broker=rt_data.get("broker", config.realtime.broker),
                    port=rt_data.get("port", config.realtime.port),
                    username=rt_data.get("username"),
                    password=rt_data.get("password"),
                    topic_prefix=rt_data.get(
                        "topic_prefix", config.realtime.topic_prefix
                    ),
                )

            # Parse server config
            if "server" in data:
                server_data = data["server"]
                config.server = ServerConfig(
                    host=server_data.get("host", config.server.host),
                    port=server_data.get("port", config.server.port),
                )
        else:
            logger.warning(f"Config file not found: {path}, using defaults")

    config = _apply_env_overrides(config)

    if config.backend.kind not in BACKEND_KINDS:
        raise ValueError(
            f"Unknown backend kind '{config.backend.kind}', "
            f"expected one of: {', '.join(BACKEND_KINDS)}"
        )

    if not config.backend.is_configured:
        logger.warning(
            "Backend is not configured. Set BOOKMARKSYNC_URL and "
            "BOOKMARKSYNC_ANON_KEY or add them to the config file."
        )

    return config
