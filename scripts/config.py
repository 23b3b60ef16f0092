"""
Centralized configuration management for the subscription feed aggregator.

Configuration is loaded from multiple sources with the following priority:
1. Config file (channels.yaml settings section) - highest priority for non-secrets
2. Environment variables - required for secrets, fallback for other settings
3. Default values - lowest priority

Secrets (OAuth access token, store auth token) ALWAYS come from environment variables.

Usage:
    from config import get_config

    config = get_config()
    ceiling = config.quota_limit
    cap = config.batch_concurrency
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml


# Default configuration values
DEFAULTS = {
    # Settings store
    "store_url": "file:data/settings.db",

    # Logging settings
    "log_dir": "logs",
    "log_level": "DEBUG",
    "console_log_level": "INFO",

    # API retry settings
    "api_max_retries": 3,
    "api_base_delay": 1.0,
    "api_max_delay": 60.0,
    "api_timeout": 30.0,

    # Store retry settings
    "db_max_retries": 5,
    "db_base_delay": 1.0,
    "db_max_delay": 30.0,
    "db_exponential_base": 2.0,

    # Quota settings
    "quota_limit": 10000,
    "quota_warn_threshold": 0.8,
    "quota_timezone": "America/Los_Angeles",
    "quota_reset_check_seconds": 60.0,

    # Fallback resolution
    "fallback_timeout": 15.0,
    "relay_delay": 1.0,

    # Batch fetching
    "batch_concurrency": 5,
    "videos_per_channel": 10,
    "max_subscriptions": 500,

    # Feed
    "feed_page_size": 24,

    # API constants
    "api_max_results_per_page": 50,
    "api_batch_size": 50,
}

DEFAULT_PIPED_INSTANCES = [
    "https://pipedapi.kavin.rocks",
    "https://api.piped.ot.ax",
    "https://pipedapi.system41.jio",
    "https://api.piped.privacy.com.de",
    "https://pipedapi.drgns.space",
]

DEFAULT_INVIDIOUS_INSTANCES = [
    "https://inv.tux.pizza",
    "https://vid.puffyan.us",
    "https://invidious.projectsegfau.lt",
    "https://yt.artemislena.eu",
    "https://invidious.flokinet.to",
    "https://invidious.privacyredirect.com",
]

# Each relay takes the URL-encoded target appended to the prefix
DEFAULT_CORS_RELAYS = [
    "https://api.allorigins.win/raw?url=",
    "https://api.codetabs.com/v1/proxy?quest=",
]


@dataclass
class Config:
    """
    Configuration container with typed access to all settings.

    Settings are loaded from config file with environment variable fallbacks.
    Secrets (tokens) always come from environment variables.
    """

    # Settings store
    store_url: str = DEFAULTS["store_url"]
    store_auth_token: str = ""  # Always from env var

    # Primary API credential (supplied by the OAuth flow)
    access_token: str = ""  # Always from env var

    # Logging settings
    log_dir: str = DEFAULTS["log_dir"]
    log_level: str = DEFAULTS["log_level"]
    console_log_level: str = DEFAULTS["console_log_level"]

    # API retry settings
    api_max_retries: int = DEFAULTS["api_max_retries"]
    api_base_delay: float = DEFAULTS["api_base_delay"]
    api_max_delay: float = DEFAULTS["api_max_delay"]
    api_timeout: float = DEFAULTS["api_timeout"]

    # Store retry settings
    db_max_retries: int = DEFAULTS["db_max_retries"]
    db_base_delay: float = DEFAULTS["db_base_delay"]
    db_max_delay: float = DEFAULTS["db_max_delay"]
    db_exponential_base: float = DEFAULTS["db_exponential_base"]

    # Quota settings
    quota_limit: int = DEFAULTS["quota_limit"]
    quota_warn_threshold: float = DEFAULTS["quota_warn_threshold"]
    quota_timezone: str = DEFAULTS["quota_timezone"]
    quota_reset_check_seconds: float = DEFAULTS["quota_reset_check_seconds"]

    # Fallback resolution
    fallback_timeout: float = DEFAULTS["fallback_timeout"]
    relay_delay: float = DEFAULTS["relay_delay"]
    piped_instances: list[str] = field(default_factory=lambda: list(DEFAULT_PIPED_INSTANCES))
    invidious_instances: list[str] = field(default_factory=lambda: list(DEFAULT_INVIDIOUS_INSTANCES))
    cors_relays: list[str] = field(default_factory=lambda: list(DEFAULT_CORS_RELAYS))

    # Batch fetching
    batch_concurrency: int = DEFAULTS["batch_concurrency"]
    videos_per_channel: int = DEFAULTS["videos_per_channel"]
    max_subscriptions: int = DEFAULTS["max_subscriptions"]

    # Feed
    feed_page_size: int = DEFAULTS["feed_page_size"]

    # API constants
    api_max_results_per_page: int = DEFAULTS["api_max_results_per_page"]
    api_batch_size: int = DEFAULTS["api_batch_size"]

    # Channels listed in the config file (used without a credential)
    channels: list = field(default_factory=list)

    # Source tracking (for debugging)
    _config_file: Optional[str] = None


# Global config instance (singleton pattern)
_config: Optional[Config] = None


def _load_yaml(config_path: str) -> dict:
    """Load the whole YAML config file."""
    try:
        with open(config_path, 'r') as f:
            return yaml.safe_load(f) or {}
    except FileNotFoundError:
        return {}
    except Exception as e:
        print(f"Warning: Could not load config file {config_path}: {e}")
        return {}


def _get_env_or_default(key: str, default, cast_type=None):
    """Get value from environment variable or return default."""
    env_value = os.environ.get(key)
    if env_value is None:
        return default
    if cast_type is not None:
        try:
            return cast_type(env_value)
        except (ValueError, TypeError):
            return default
    return env_value


def _split_list(value) -> list[str]:
    """Accept a YAML list or a comma-separated env string."""
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return list(value)


def load_config(config_path: Optional[str] = None) -> Config:
    """
    Load configuration from file and environment variables.

    Args:
        config_path: Path to YAML config file (optional).
                    If not provided, tries default locations.

    Returns:
        Config object with all settings loaded.
    """
    if config_path is None:
        candidates = [
            "config/channels.yaml",
            "../config/channels.yaml",
            "channels.yaml",
        ]
        for candidate in candidates:
            if Path(candidate).exists():
                config_path = candidate
                break

    raw = {}
    if config_path and Path(config_path).exists():
        raw = _load_yaml(config_path)
    yaml_settings = raw.get("settings", {}) or {}

    # Helper to get setting with priority: yaml > env > default
    def get_setting(yaml_key: str, env_key: str, default, cast_type=None):
        if yaml_key in yaml_settings:
            value = yaml_settings[yaml_key]
            if cast_type is not None:
                try:
                    return cast_type(value)
                except (ValueError, TypeError):
                    pass
            return value
        return _get_env_or_default(env_key, default, cast_type)

    config = Config(
        store_url=get_setting("store_url", "STORE_URL", DEFAULTS["store_url"]),
        store_auth_token=os.environ.get("STORE_AUTH_TOKEN", ""),  # Always from env
        access_token=os.environ.get("YOUTUBE_ACCESS_TOKEN", ""),  # Always from env

        log_dir=get_setting("log_dir", "LOG_DIR", DEFAULTS["log_dir"]),
        log_level=get_setting("log_level", "LOG_LEVEL", DEFAULTS["log_level"]),
        console_log_level=get_setting("console_log_level", "CONSOLE_LOG_LEVEL", DEFAULTS["console_log_level"]),

        api_max_retries=get_setting("api_max_retries", "API_MAX_RETRIES", DEFAULTS["api_max_retries"], int),
        api_base_delay=get_setting("api_base_delay", "API_BASE_DELAY", DEFAULTS["api_base_delay"], float),
        api_max_delay=get_setting("api_max_delay", "API_MAX_DELAY", DEFAULTS["api_max_delay"], float),
        api_timeout=get_setting("api_timeout", "API_TIMEOUT", DEFAULTS["api_timeout"], float),

        db_max_retries=get_setting("db_max_retries", "DB_MAX_RETRIES", DEFAULTS["db_max_retries"], int),
        db_base_delay=get_setting("db_base_delay", "DB_BASE_DELAY", DEFAULTS["db_base_delay"], float),
        db_max_delay=get_setting("db_max_delay", "DB_MAX_DELAY", DEFAULTS["db_max_delay"], float),
        db_exponential_base=get_setting("db_exponential_base", "DB_EXPONENTIAL_BASE", DEFAULTS["db_exponential_base"], float),

        quota_limit=get_setting("quota_limit", "YOUTUBE_QUOTA_LIMIT", DEFAULTS["quota_limit"], int),
        quota_warn_threshold=get_setting("quota_warn_threshold", "QUOTA_WARN_THRESHOLD", DEFAULTS["quota_warn_threshold"], float),
        quota_timezone=get_setting("quota_timezone", "QUOTA_TIMEZONE", DEFAULTS["quota_timezone"]),
        quota_reset_check_seconds=get_setting("quota_reset_check_seconds", "QUOTA_RESET_CHECK_SECONDS", DEFAULTS["quota_reset_check_seconds"], float),

        fallback_timeout=get_setting("fallback_timeout", "FALLBACK_TIMEOUT", DEFAULTS["fallback_timeout"], float),
        relay_delay=get_setting("relay_delay", "RELAY_DELAY", DEFAULTS["relay_delay"], float),
        piped_instances=get_setting("piped_instances", "PIPED_INSTANCES", list(DEFAULT_PIPED_INSTANCES), _split_list),
        invidious_instances=get_setting("invidious_instances", "INVIDIOUS_INSTANCES", list(DEFAULT_INVIDIOUS_INSTANCES), _split_list),
        cors_relays=get_setting("cors_relays", "CORS_RELAYS", list(DEFAULT_CORS_RELAYS), _split_list),

        batch_concurrency=get_setting("batch_concurrency", "BATCH_CONCURRENCY", DEFAULTS["batch_concurrency"], int),
        videos_per_channel=get_setting("videos_per_channel", "VIDEOS_PER_CHANNEL", DEFAULTS["videos_per_channel"], int),
        max_subscriptions=get_setting("max_subscriptions", "MAX_SUBSCRIPTIONS", DEFAULTS["max_subscriptions"], int),

        feed_page_size=get_setting("feed_page_size", "FEED_PAGE_SIZE", DEFAULTS["feed_page_size"], int),

        api_max_results_per_page=get_setting("api_max_results_per_page", "API_MAX_RESULTS_PER_PAGE", DEFAULTS["api_max_results_per_page"], int),
        api_batch_size=get_setting("api_batch_size", "API_BATCH_SIZE", DEFAULTS["api_batch_size"], int),

        channels=list(raw.get("channels", []) or []),

        _config_file=config_path,
    )

    return config


def get_config(config_path: Optional[str] = None, reload: bool = False) -> Config:
    """
    Get the global configuration instance.

    Uses singleton pattern - loads config once and reuses it.

    Args:
        config_path: Path to config file (only used on first load or reload)
        reload: If True, force reload of configuration

    Returns:
        Config object with all settings
    """
    global _config

    if _config is None or reload:
        _config = load_config(config_path)

    return _config


def set_config(config: Config) -> None:
    """
    Set the global configuration instance.

    Useful for testing or when config needs to be set programmatically.
    """
    global _config
    _config = config
