#!/usr/bin/env python3
"""
Configuration management for the Feed Poller.

This module centralizes all configuration loading, validation, and management.
It handles environment variables, validation, and provides a clean interface
for accessing configuration values throughout the application.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any, List
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

def _setup_global_logger():
    """Setup a single global logger for the entire application.

    It sets up a unified logging configuration that can be controlled via environment variables:

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true

    All modules should use get_logger() to create module-specific loggers that inherit this configuration.
    """
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

    # aiohttp access/client chatter is only useful when debugging
    getLogger("aiohttp").setLevel(level if level == DEBUG else WARNING)

    return getLogger("FeedPoller")

def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    Args:
        name: The logger name (e.g., "fetcher", "ingest", "scheduler")

    Returns:
        A logger instance named "FeedPoller.{name}"
    """
    return getLogger(f"FeedPoller.{name}")

# Create single global logger instance
logger = _setup_global_logger()

class Config:
    """Configuration manager for the Feed Poller.

    Values come from, in increasing order of precedence:
    1. Built-in defaults
    2. System environment variables
    3. .env file next to this module (if present)

    The list of feed URLs used for seeding is read from feeds.yaml.
    """

    def __init__(self):
        """Initialize configuration with environment variables and validation."""
        self._load_environment()
        self._validate_and_set_config()
        self._load_feed_sources()

    def _load_environment(self):
        """Load environment variables from .env file if present."""
        dotenv_path = path.join(path.dirname(path.abspath(__file__)), '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path, override=True)
            logger.info(f"Loaded environment variables from {dotenv_path}")

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
        # Basic configuration
        self.DATABASE_PATH = environ.get("DATABASE_PATH", "feeds.db")
        self.USER_AGENT = environ.get("USER_AGENT", "FeedPoller/1.0 (+polite feed poller)")

        # HTTP request configuration
        self.FETCH_TIMEOUT_MS = self._validate_positive_int("FETCH_TIMEOUT_MS", 10000, 100)
        self.MAX_REDIRECTS = self._validate_positive_int("MAX_REDIRECTS", 10, 0)
        self.MAX_PER_HOST = self._validate_positive_int("MAX_PER_HOST", 3, 1)

        # Scheduler configuration
        self.POLL_BATCH_SIZE = self._validate_positive_int("POLL_BATCH_SIZE", 20, 1)
        self.IDLE_SLEEP_SECONDS = self._validate_positive_float("IDLE_SLEEP_SECONDS", 2.0, 0.1)
        self.FEED_CYCLE_TIMEOUT = self._validate_positive_int("FEED_CYCLE_TIMEOUT", 300, 1)

        # Polling intervals (minutes)
        self.NOT_MODIFIED_INTERVAL_MINUTES = self._validate_positive_int("NOT_MODIFIED_INTERVAL_MINUTES", 10, 1)
        self.CHANGED_INTERVAL_MINUTES = self._validate_positive_int("CHANGED_INTERVAL_MINUTES", 10, 1)
        self.UNCHANGED_INTERVAL_MINUTES = self._validate_positive_int("UNCHANGED_INTERVAL_MINUTES", 60, 1)
        self.BACKOFF_BASE_MINUTES = self._validate_positive_int("BACKOFF_BASE_MINUTES", 5, 1)
        self.MAX_BACKOFF_MINUTES = self._validate_positive_int("MAX_BACKOFF_MINUTES", 1440, 1)

        # File size limits
        self.SCHEMA_FILE_SIZE_LIMIT_MB = self._validate_positive_int("SCHEMA_FILE_SIZE_LIMIT_MB", 10, 1)

        # File paths
        base_dir = path.dirname(path.abspath(__file__))
        self.SCHEMA_FILE_PATH = path.join(base_dir, "schema.sql")
        self.FEEDS_CONFIG_PATH = environ.get("FEEDS_CONFIG_PATH", path.join(base_dir, "feeds.yaml"))

    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str) -> Any | None:
        """Safely read a YAML file with consistent validation.

        Args:
            file_path: Path to the YAML file
            max_size: Maximum allowed file size in bytes
            kind: Short label for logging context (e.g. 'feeds')

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
        """Populate self.FEED_SOURCES (a list of feed URLs) from feeds.yaml.

        Accepts either a plain list of URLs or a mapping of slug -> {url: ...}.
        Any failure results in an empty list.
        """
        feeds_path = self.FEEDS_CONFIG_PATH
        config_data = self._safe_read_yaml(feeds_path, 5 * 1024 * 1024, 'feeds')
        if not isinstance(config_data, dict):
            self.FEED_SOURCES = []
            return

        feeds_section = config_data.get('feeds')
        new_sources: List[str] = []
        if isinstance(feeds_section, list):
            for item in feeds_section:
                if isinstance(item, str) and item.strip():
                    new_sources.append(item.strip())
                elif isinstance(item, dict) and isinstance(item.get('url'), str):
                    new_sources.append(item['url'].strip())
                else:
                    logger.warning(f"Skipping invalid feed entry in {feeds_path}: {item}")
        elif isinstance(feeds_section, dict):
            for feed_slug, feed_cfg in feeds_section.items():
                if isinstance(feed_cfg, dict) and isinstance(feed_cfg.get('url'), str):
                    new_sources.append(feed_cfg['url'].strip())
                    logger.debug(f"Loaded feed {feed_slug}: {feed_cfg['url']}")
                else:
                    logger.warning(f"Skipping invalid feed configuration for '{feed_slug}': {feed_cfg}")
        else:
            logger.warning(f"No valid feeds found in {feeds_path}")

        self.FEED_SOURCES = new_sources
        logger.info(f"Loaded {len(self.FEED_SOURCES)} feeds from {feeds_path}")

    def reload_feed_sources(self):
        """Reload feed sources from configuration file."""
        logger.info("Reloading feed sources configuration")
        self._load_feed_sources()

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "database_path": self.DATABASE_PATH,
            "fetch_timeout_ms": self.FETCH_TIMEOUT_MS,
            "max_per_host": self.MAX_PER_HOST,
            "poll_batch_size": self.POLL_BATCH_SIZE,
            "idle_sleep_seconds": self.IDLE_SLEEP_SECONDS,
            "feed_cycle_timeout": self.FEED_CYCLE_TIMEOUT,
            "max_backoff_minutes": self.MAX_BACKOFF_MINUTES,
            "feed_count": len(self.FEED_SOURCES),
        }

# Global configuration instance
config = Config()
