"""Configuration loading and saving.

Config file location: ~/.config/x-bookmarks/config.toml

Schema:
    [x]
    client_id = "..."
    client_secret = "..."          # optional for public clients
    redirect_uri = "http://127.0.0.1:8000/callback"
    api_base = "https://api.x.com"
    authorize_url = "https://x.com/i/oauth2/authorize"

    [storage]
    database_url = "sqlite:///bookmarks.db"
    media_dir = "media"
    media_base_url = "/media"

    [sync]
    max_pages = 10
    page_size = 100
    download_workers = 5
    token_refresh_skew = 300       # seconds
    rate_limit_max_wait = 0        # seconds; 0 = stop the run on 429
    media_max_bytes = 20971520
    auth_session_ttl = 600         # seconds

    [server]
    host = "127.0.0.1"
    port = 8000

X_CLIENT_ID, X_CLIENT_SECRET and X_REDIRECT_URI override the file.
"""

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

import tomli_w

CONFIG_DIR = Path.home() / ".config" / "x-bookmarks"
CONFIG_FILE = CONFIG_DIR / "config.toml"

DEFAULT_REDIRECT_URI = "http://127.0.0.1:8000/callback"


@dataclass
class XAppConfig:
    client_id: str
    client_secret: str | None = None
    redirect_uri: str = DEFAULT_REDIRECT_URI
    api_base: str = "https://api.x.com"
    authorize_url: str = "https://x.com/i/oauth2/authorize"


@dataclass
class StorageConfig:
    database_url: str = "sqlite:///bookmarks.db"
    media_dir: Path = Path("media")
    media_base_url: str = "/media"


@dataclass
class SyncConfig:
    max_pages: int = 10
    page_size: int = 100
    download_workers: int = 5
    token_refresh_skew: float = 300.0
    rate_limit_max_wait: float = 0.0
    media_max_bytes: int = 20 * 1024 * 1024
    auth_session_ttl: float = 600.0


@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 8000


@dataclass
class AppConfig:
    x: XAppConfig
    storage: StorageConfig = field(default_factory=StorageConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    server: ServerConfig = field(default_factory=ServerConfig)


def load_config(config_path: Path = CONFIG_FILE) -> AppConfig:
    """Load and validate config from TOML file."""
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    x_data = data.get("x", {})
    client_id = os.environ.get("X_CLIENT_ID") or x_data.get("client_id", "")
    if not client_id:
        raise ValueError("Config missing required x.client_id")

    storage_data = data.get("storage", {})
    sync_data = data.get("sync", {})
    server_data = data.get("server", {})
    sync_defaults = SyncConfig()

    return AppConfig(
        x=XAppConfig(
            client_id=client_id,
            client_secret=os.environ.get("X_CLIENT_SECRET") or x_data.get("client_secret") or None,
            redirect_uri=os.environ.get("X_REDIRECT_URI")
            or x_data.get("redirect_uri", DEFAULT_REDIRECT_URI),
            api_base=x_data.get("api_base", "https://api.x.com").rstrip("/"),
            authorize_url=x_data.get("authorize_url", "https://x.com/i/oauth2/authorize"),
        ),
        storage=StorageConfig(
            database_url=storage_data.get("database_url", "sqlite:///bookmarks.db"),
            media_dir=Path(storage_data.get("media_dir", "media")),
            media_base_url=storage_data.get("media_base_url", "/media").rstrip("/"),
        ),
        sync=SyncConfig(
            max_pages=int(sync_data.get("max_pages", sync_defaults.max_pages)),
            page_size=int(sync_data.get("page_size", sync_defaults.page_size)),
            download_workers=int(
                sync_data.get("download_workers", sync_defaults.download_workers)
            ),
            token_refresh_skew=float(
                sync_data.get("token_refresh_skew", sync_defaults.token_refresh_skew)
            ),
            rate_limit_max_wait=float(
                sync_data.get("rate_limit_max_wait", sync_defaults.rate_limit_max_wait)
            ),
            media_max_bytes=int(
                sync_data.get("media_max_bytes", sync_defaults.media_max_bytes)
            ),
            auth_session_ttl=float(
                sync_data.get("auth_session_ttl", sync_defaults.auth_session_ttl)
            ),
        ),
        server=ServerConfig(
            host=server_data.get("host", "127.0.0.1"),
            port=int(server_data.get("port", 8000)),
        ),
    )


def save_config(config: AppConfig, config_path: Path = CONFIG_FILE) -> None:
    """Write config to TOML file with restricted permissions."""
    config_path.parent.mkdir(parents=True, exist_ok=True)

    x_data = {
        "client_id": config.x.client_id,
        "redirect_uri": config.x.redirect_uri,
        "api_base": config.x.api_base,
        "authorize_url": config.x.authorize_url,
    }
    if config.x.client_secret:
        x_data["client_secret"] = config.x.client_secret

    data = {
        "x": x_data,
        "storage": {
            "database_url": config.storage.database_url,
            "media_dir": str(config.storage.media_dir),
            "media_base_url": config.storage.media_base_url,
        },
        "sync": {
            "max_pages": config.sync.max_pages,
            "page_size": config.sync.page_size,
            "download_workers": config.sync.download_workers,
            "token_refresh_skew": config.sync.token_refresh_skew,
            "rate_limit_max_wait": config.sync.rate_limit_max_wait,
            "media_max_bytes": config.sync.media_max_bytes,
            "auth_session_ttl": config.sync.auth_session_ttl,
        },
        "server": {
            "host": config.server.host,
            "port": config.server.port,
        },
    }

    with open(config_path, "wb") as f:
        tomli_w.dump(data, f)

    # Restrict permissions, file may contain the client secret
    os.chmod(config_path, 0o600)


def config_exists(config_path: Path = CONFIG_FILE) -> bool:
    """Check if config file exists."""
    return config_path.exists()
