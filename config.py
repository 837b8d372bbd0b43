#!/usr/bin/env python3
"""
Configuration management for the feed poller.

This module centralizes all configuration loading, validation, and management.
It handles environment variables, validation, and provides a clean interface
for accessing configuration values throughout the application.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

def _setup_global_logger():
    """Setup a single global logger for the entire application.

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true

    The logger outputs to stdout with line buffering for real-time logging.
    All modules should use get_logger() to create module-specific loggers that inherit this configuration.
    """
    # Determine log level
    level_str = environ.get("LOG_LEVEL", "INFO").upper()
    level_map = {
        "DEBUG": DEBUG,
        "INFO": INFO,
        "WARNING": WARNING,
        "ERROR": ERROR
    }
    level = level_map.get(level_str, INFO)

    show_timestamps = environ.get("LOG_TIMESTAMPS", "true").lower() != "false"

    if show_timestamps:
        log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    else:
        log_format = '%(name)s - %(levelname)s - %(message)s'

    basicConfig(
        level=level,
        format=log_format,
        handlers=[StreamHandler(sys.stdout)],
        force=True  # Force reconfiguration if already configured
    )

    # aiohttp access/client noise is rarely useful at INFO
    getLogger("aiohttp").setLevel(max(level, WARNING))

    return getLogger("FeedPoller")

def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    This function creates a logger with a name in the format "FeedPoller.{name}".
    All loggers created this way inherit the global logging configuration set by _setup_global_logger().

    Args:
        name: The logger name (e.g., "reader", "fetcher", "store")

    Returns:
        A logger instance with the unified configuration
    """
    return getLogger(f"FeedPoller.{name}")

# Create single global logger instance
logger = _setup_global_logger()

DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; FeedPoller/1.0)"
STORE_KINDS = ("memory", "sqlite")

class Config:
    """Configuration manager for the feed poller.

    Values are loaded from, in order of precedence:
    1. YAML secrets file (if SECRETS_FILE environment variable is set)
    2. .env file (if present)
    3. Environment variables
    4. feeds.yaml (feed list and optional `polling` overrides)
    """

    def __init__(self):
        """Initialize configuration with environment variables and validation."""
        self._load_environment()
        self._validate_and_set_config()
        self._load_feed_sources()

    def _load_environment(self):
        """Load environment variables from .env file and secrets file if present."""
        dotenv_path = path.join(path.dirname(path.abspath(__file__)), '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path)
            logger.info(f"Loaded environment variables from {dotenv_path}")

        self._load_secrets_file()

    def _validate_positive_int(self, env_var: str, default: int, min_val: int = 1) -> int:
        """Validate and parse a positive integer environment variable."""
        try:
            value = int(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _validate_positive_float(self, env_var: str, default: float, min_val: float = 0.1) -> float:
        """Validate and parse a positive float environment variable."""
        try:
            value = float(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        base_dir = path.dirname(path.abspath(__file__))

        # Basic configuration
        self.USER_AGENT = environ.get("USER_AGENT", DEFAULT_USER_AGENT)
        self.DATABASE_PATH = environ.get("DATABASE_PATH", "feeds.db")
        self.FEEDS_CONFIG_PATH = environ.get("FEEDS_CONFIG_PATH", path.join(base_dir, "feeds.yaml"))
        self.SCHEMA_FILE_PATH = path.join(base_dir, "schema.sql")
        self.SCHEMA_FILE_SIZE_LIMIT_MB = self._validate_positive_int("SCHEMA_FILE_SIZE_LIMIT_MB", 10, 1)

        # Polling configuration
        self.POLL_INTERVAL_SECONDS = self._validate_positive_float("FEEDS_POLL_INTERVAL_SECONDS", 600.0, 1.0)
        self.POLL_CONCURRENCY = self._validate_positive_int("FEEDS_POLL_CONCURRENCY", 4, 1)
        self.POLL_TIMEOUT_SECONDS = self._validate_positive_int("FEEDS_POLL_TIMEOUT_SECONDS", 30, 1)
        self.MAX_REDIRECTS = self._validate_positive_int("MAX_REDIRECTS", 5, 0)

        # Backoff configuration (milliseconds)
        self.BACKOFF_TIME_MS = self._validate_positive_int("BACKOFF_TIME_MS", 5 * 1000, 1)
        self.BACKOFF_POW = self._validate_positive_float("BACKOFF_POW", 1.05, 1.0)
        self.BACKOFF_TIME_MAX_MS = self._validate_positive_int("BACKOFF_TIME_MAX_MS", 24 * 60 * 60 * 1000, 1)

        # Seen-item storage
        self.SEEN_STORE = environ.get("SEEN_STORE", "memory").strip().lower()
        if self.SEEN_STORE not in STORE_KINDS:
            logger.warning(f"Unknown SEEN_STORE '{self.SEEN_STORE}', using memory")
            self.SEEN_STORE = "memory"
        self.PERSIST_VALIDATORS = environ.get("PERSIST_VALIDATORS", "false").lower() == "true"

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        Expected YAML formats (both supported):
        ```yaml
        # Preferred: top-level mapping
        USER_AGENT: "MyPoller/2.0"

        # Backward-compatible: nested under `environment`
        # environment:
        #   USER_AGENT: "MyPoller/2.0"
        ```
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            logger.debug("SECRETS_FILE not set; relying on environment/.env")
            return

        secrets_config = self._safe_read_yaml(secrets_file_path, 2 * 1024 * 1024, 'secrets')
        if not secrets_config:
            return

        if not isinstance(secrets_config, dict):
            logger.warning(f"Secrets file {secrets_file_path} must be a YAML mapping at the top level")
            return
        if isinstance(secrets_config.get('environment'), dict):
            env_vars = secrets_config['environment']
        else:
            env_vars = secrets_config

        secrets_loaded = 0
        for key, value in env_vars.items():
            if isinstance(key, str) and value is not None:
                environ[key] = str(value)
                secrets_loaded += 1
            else:
                logger.warning(f"Skipping invalid environment variable in secrets file: {key}")
        logger.info(f"Loaded {secrets_loaded} environment variables from secrets file {secrets_file_path}")

    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str) -> Any | None:
        """Safely read a YAML file with consistent validation.

        Args:
            file_path: Path to the YAML file
            max_size: Maximum allowed file size in bytes
            kind: Short label for logging context (e.g. 'secrets', 'feeds')

        Returns:
            Parsed YAML (mapping/list/primitive) or None on failure.
        """
        try:
            if not path.isfile(file_path):
                logger.warning(f"{kind.capitalize()} file not found at {file_path}")
                return None
            if not access(file_path, R_OK):
                logger.error(f"No read permission for {kind} file at {file_path}")
                return None
            size = path.getsize(file_path)
            if size > max_size:
                logger.error(f"{kind.capitalize()} file too large: {size} bytes (limit: {max_size} bytes)")
                return None
            with open(file_path, 'r') as f:
                data = yaml.safe_load(f)
            if not data:
                logger.warning(f"Empty or invalid YAML in {kind} file {file_path}")
                return None
            return data
        except yaml.YAMLError as e:
            logger.error(f"Error parsing YAML in {kind} file {file_path}: {e}")
        except OSError as e:
            logger.error(f"Error loading {kind} file {file_path}: {e}")
        return None

    def _load_feed_sources(self) -> None:
        """Populate self.FEED_SOURCES from feeds.yaml.

        Any failure results in an empty mapping. A `polling` section may
        override the interval, concurrency and timeout read from the environment.
        """
        feeds_path = self.FEEDS_CONFIG_PATH
        config_data = self._safe_read_yaml(feeds_path, 5 * 1024 * 1024, 'feeds')
        if not isinstance(config_data, dict):
            self.FEED_SOURCES = {}
            return

        polling = config_data.get('polling')
        if isinstance(polling, dict):
            self._apply_polling_overrides(polling, feeds_path)

        feeds_section = config_data.get('feeds')
        if not isinstance(feeds_section, dict):
            logger.warning(f"No valid feeds found in {feeds_path}")
            self.FEED_SOURCES = {}
            return

        new_sources: Dict[str, str] = {}
        for feed_slug, feed_cfg in feeds_section.items():
            if isinstance(feed_cfg, dict) and 'url' in feed_cfg:
                new_sources[feed_slug] = feed_cfg['url']
                logger.debug(f"Loaded feed {feed_slug}: {feed_cfg['url']}")
            elif isinstance(feed_cfg, str):
                new_sources[feed_slug] = feed_cfg
            else:
                logger.warning(f"Skipping invalid feed configuration for '{feed_slug}': {feed_cfg}")

        self.FEED_SOURCES = new_sources
        logger.info(f"Successfully loaded {len(self.FEED_SOURCES)} feeds from {feeds_path}")

    def _apply_polling_overrides(self, polling: Dict[str, Any], feeds_path: str) -> None:
        """Apply `polling:` values from feeds.yaml, keeping current values on bad input."""
        fields = {
            'interval_seconds': ('POLL_INTERVAL_SECONDS', float, 1.0),
            'concurrency': ('POLL_CONCURRENCY', int, 1),
            'timeout_seconds': ('POLL_TIMEOUT_SECONDS', int, 1),
        }
        for key, (attr, cast, min_val) in fields.items():
            raw = polling.get(key)
            if raw is None:
                continue
            try:
                value = cast(str(raw).strip())
            except ValueError:
                logger.warning(f"Invalid polling.{key} value '{raw}' in {feeds_path}; keeping {getattr(self, attr)}")
                continue
            if value < min_val:
                logger.warning(f"polling.{key} must be >= {min_val}; keeping {getattr(self, attr)} (got {raw})")
                continue
            setattr(self, attr, value)
        logger.info(
            "Polling settings: interval=%ss concurrency=%s timeout=%ss",
            self.POLL_INTERVAL_SECONDS,
            self.POLL_CONCURRENCY,
            self.POLL_TIMEOUT_SECONDS,
        )

    def reload_feed_sources(self):
        """Reload feed sources from configuration file."""
        logger.info("Reloading feed sources configuration")
        self._load_feed_sources()

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "poll_interval_seconds": self.POLL_INTERVAL_SECONDS,
            "poll_concurrency": self.POLL_CONCURRENCY,
            "poll_timeout_seconds": self.POLL_TIMEOUT_SECONDS,
            "backoff_time_ms": self.BACKOFF_TIME_MS,
            "backoff_pow": self.BACKOFF_POW,
            "backoff_time_max_ms": self.BACKOFF_TIME_MAX_MS,
            "seen_store": self.SEEN_STORE,
            "database_path": self.DATABASE_PATH,
            "persist_validators": self.PERSIST_VALIDATORS,
            "feed_count": len(self.FEED_SOURCES),
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }

# Global configuration instance
config = Config()
