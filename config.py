#!/usr/bin/env python3
"""
Configuration management for RSS Insight.

This module centralizes logging setup and configuration loading. Static tunables
(timeouts, concurrency widths, thresholds) come from the environment, an optional
.env file and an optional YAML secrets file. Runtime settings that users may change
between runs (LLM endpoint/key/model and proxy URL) are resolved lazily with the
precedence environment > persisted config table > built-in default.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any, Optional
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
from dataclasses import dataclass
import sys
import yaml
from dotenv import load_dotenv

from errors import LLMNotConfiguredError


def _setup_global_logger():
    """Setup a single global logger for the entire application.

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true

    All modules should use get_logger() to create module-specific loggers that
    inherit this configuration.
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
        force=True
    )

    # Browser automation and HTTP client libraries are chatty at DEBUG
    for name in ("asyncio", "urllib3", "httpx", "openai", "playwright"):
        getLogger(name).setLevel(max(level, WARNING))

    return getLogger("RSSInsight")


def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    Args:
        name: The logger name (e.g., "fetcher", "analyzer", "pipeline")

    Returns:
        A logger named "RSSInsight.{name}"
    """
    return getLogger(f"RSSInsight.{name}")


logger = _setup_global_logger()


# Runtime settings that can be persisted in the database config table.
# key -> environment variable that overrides it
ENV_KEY_MAP: Dict[str, str] = {
    "llm_api_key": "LLM_API_KEY",
    "llm_base_url": "LLM_BASE_URL",
    "llm_model": "LLM_MODEL",
    "proxy_url": "PROXY_URL",
}

DEFAULT_SETTINGS: Dict[str, Optional[str]] = {
    "llm_api_key": None,
    "llm_base_url": None,
    "llm_model": "gpt-4o-mini",
    "proxy_url": None,
}

SECRET_KEYS = {"llm_api_key"}


class Config:
    """Configuration manager for RSS Insight.

    Loading order:
    1. Process environment
    2. .env file next to this module (does not override existing variables)
    3. YAML secrets file named by SECRETS_FILE (overrides both)

    Example secrets.yaml:
    ```yaml
    LLM_API_KEY: "sk-..."
    LLM_BASE_URL: "https://api.openai.com/v1"
    ```
    """

    def __init__(self):
        self._load_environment()
        self._validate_and_set_config()

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

    def _validate_positive_float(self, env_var: str, default: float, min_val: float = 0.0) -> float:
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

        # Storage
        self.DATA_DIR = path.expanduser(environ.get("DATA_DIR", path.join("~", ".rss-insight")))
        self.DATABASE_PATH = environ.get("DATABASE_PATH", path.join(self.DATA_DIR, "rss.db"))
        self.SCHEMA_FILE_PATH = path.join(base_dir, "schema.sql")
        self.SCHEMA_FILE_SIZE_LIMIT_MB = self._validate_positive_int("SCHEMA_FILE_SIZE_LIMIT_MB", 10, 1)
        self.PROMPT_CONFIG_PATH = environ.get("PROMPT_CONFIG_PATH", path.join(base_dir, "prompt.yaml"))

        # Feed fetching
        self.USER_AGENT = environ.get("USER_AGENT", "Mozilla/5.0 (compatible; RSS-Insight/1.0)")
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 30, 5)
        self.MAX_REDIRECTS = self._validate_positive_int("MAX_REDIRECTS", 5, 0)

        # Pipeline concurrency
        self.RSS_CONCURRENCY = self._validate_positive_int("RSS_CONCURRENCY", 5, 1)
        self.LLM_CONCURRENCY = self._validate_positive_int("LLM_CONCURRENCY", 1, 1)
        self.ANALYSIS_DAYS = self._validate_positive_int("ANALYSIS_DAYS", 3, 1)
        self.FORCE_REANALYZE_LIMIT = self._validate_positive_int("FORCE_REANALYZE_LIMIT", 100, 1)

        # LLM calls
        self.LLM_TIMEOUT = self._validate_positive_float("LLM_TIMEOUT", 120.0, 1.0)
        self.LLM_MAX_RETRIES = self._validate_positive_int("LLM_MAX_RETRIES", 2, 0)
        self.LLM_RETRY_DELAY_BASE = self._validate_positive_float("LLM_RETRY_DELAY_BASE", 1.0, 0.0)
        self.LLM_TEMPERATURE = self._validate_positive_float("LLM_TEMPERATURE", 0.3, 0.0)
        self.FILTER_CONTENT_CHARS = self._validate_positive_int("FILTER_CONTENT_CHARS", 1500, 100)
        self.SUMMARY_CONTENT_CHARS = self._validate_positive_int("SUMMARY_CONTENT_CHARS", 8000, 500)

        # Body scraper
        self.SCRAPER_CONCURRENCY = self._validate_positive_int("SCRAPER_CONCURRENCY", 2, 1)
        self.SCRAPER_MIN_INTERVAL = self._validate_positive_float("SCRAPER_MIN_INTERVAL", 3.0, 0.0)
        self.SCRAPER_TASK_TIMEOUT = self._validate_positive_float("SCRAPER_TASK_TIMEOUT", 30.0, 1.0)
        self.SCRAPER_NAVIGATION_TIMEOUT = self._validate_positive_float("SCRAPER_NAVIGATION_TIMEOUT", 20.0, 1.0)
        self.SCRAPER_HEADLESS = environ.get("SCRAPER_HEADLESS", "true").lower() != "false"
        self.MIN_SNAPSHOT_LENGTH = self._validate_positive_int("MIN_SNAPSHOT_LENGTH", 200, 0)

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        Supports a top-level mapping or one nested under an ``environment`` key.
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            return

        if not path.isfile(secrets_file_path):
            logger.warning(f"Secrets file not found at {secrets_file_path}")
            return
        if not access(secrets_file_path, R_OK):
            logger.error(f"No read permission for secrets file at {secrets_file_path}")
            return

        secrets_config = _safe_read_yaml(secrets_file_path)
        if not isinstance(secrets_config, dict) or not secrets_config:
            logger.warning(f"Secrets file {secrets_file_path} must be a non-empty YAML mapping")
            return

        env_vars = secrets_config.get('environment') if isinstance(secrets_config.get('environment'), dict) else secrets_config
        loaded = 0
        for key, value in env_vars.items():
            if value is None:
                continue
            environ[str(key)] = str(value)
            loaded += 1
        logger.info(f"Loaded {loaded} environment variables from secrets file {secrets_file_path}")


def _safe_read_yaml(file_path: str) -> Any:
    """Read a YAML file, returning None (and logging) on any read/parse problem."""
    try:
        with open(file_path, 'r', encoding='utf-8') as f:
            return yaml.safe_load(f)
    except FileNotFoundError:
        logger.error(f"YAML file not found: {file_path}")
    except yaml.YAMLError as e:
        logger.error(f"Invalid YAML in {file_path}: {e}")
    except OSError as e:
        logger.error(f"OS error reading {file_path}: {e}")
    return None


@dataclass
class LLMSettings:
    api_key: str
    base_url: str
    model: str


async def get_setting(db, key: str) -> Optional[str]:
    """Resolve a runtime setting: environment override > persisted config > default.

    Environment is read at call time so changes between fetches are picked up.
    """
    env_var = ENV_KEY_MAP.get(key)
    if env_var:
        value = environ.get(env_var)
        if value:
            return value
    if db is not None:
        stored = await db.execute('get_config_value', key=key)
        if stored:
            return stored
    return DEFAULT_SETTINGS.get(key)


async def get_all_settings(db) -> Dict[str, Dict[str, Optional[str]]]:
    """Return every known setting with its resolved value and source."""
    stored = await db.execute('get_all_config') if db is not None else {}
    resolved: Dict[str, Dict[str, Optional[str]]] = {}
    for key, env_var in ENV_KEY_MAP.items():
        if environ.get(env_var):
            resolved[key] = {"value": environ[env_var], "source": f"env:{env_var}"}
        elif stored.get(key):
            resolved[key] = {"value": stored[key], "source": "config"}
        else:
            resolved[key] = {"value": DEFAULT_SETTINGS.get(key), "source": "default"}
    return resolved


async def get_llm_settings(db) -> LLMSettings:
    """Resolve the LLM endpoint/key/model triple or raise LLMNotConfiguredError."""
    api_key = await get_setting(db, "llm_api_key")
    base_url = await get_setting(db, "llm_base_url")
    model = await get_setting(db, "llm_model")

    missing = [ENV_KEY_MAP[k] for k, v in (("llm_api_key", api_key), ("llm_base_url", base_url), ("llm_model", model)) if not v]
    if missing:
        raise LLMNotConfiguredError(missing)
    return LLMSettings(api_key=api_key, base_url=base_url.rstrip('/'), model=model)


def mask_secret(value: Optional[str], show: int = 4) -> str:
    """Mask a secret for display, keeping only the last few characters."""
    if not value:
        return "<unset>"
    if len(value) <= show:
        return "*" * len(value)
    return "*" * (len(value) - show) + value[-show:]


config = Config()
