#!/usr/bin/env python3
"""
Configuration management for the announcement harvester.

This module centralizes configuration loading and validation. It reads the
process environment, an optional .env file, an optional YAML secrets file and
the sources.yaml roster, and exposes a single `config` object to the rest of
the application together with the unified logger factory.
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

    Output goes to stdout with line buffering so scheduled runs stream their logs.
    All modules should use get_logger() to create module-specific loggers.
    """
    environ.setdefault("PYTHONUNBUFFERED", "1")

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

    sys.stdout.reconfigure(line_buffering=True)
    sys.stderr.reconfigure(line_buffering=True)

    # Keep chatty client libraries quiet unless explicitly debugging
    noisy_level = level_map.get(environ.get("LIBRARY_LOG_LEVEL", "WARNING").upper(), WARNING)
    for name in ("azure", "azure.monitor", "httpx", "openai", "readability.readability"):
        getLogger(name).setLevel(noisy_level)

    return getLogger("Harvester")

def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    Loggers are named "Harvester.{name}" and inherit the global configuration
    set by _setup_global_logger().

    Example:
        logger = get_logger("transport")
        logger.info("This will appear as 'Harvester.transport - INFO - ...'")
    """
    return getLogger(f"Harvester.{name}")

# Create single global logger instance
logger = _setup_global_logger()

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


class Config:
    """Configuration manager for the harvester.

    Loading order:
    1. Environment variables
    2. .env file (if present)
    3. YAML secrets file (if SECRETS_FILE environment variable is set)
    4. sources.yaml (source roster and schedule)

    Example secrets.yaml format:
    ```yaml
    OPENAI_API_KEY: "sk-..."
    WEBHOOK_URL: "https://qyapi.weixin.qq.com/cgi-bin/webhook/send?key=..."
    ```
    """

    def __init__(self):
        """Initialize configuration with environment variables and validation."""
        self._load_environment()
        self._validate_and_set_config()
        self._load_sources()

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
        # Storage and HTTP
        self.DATABASE_PATH = environ.get("DATABASE_PATH", "harvester.db")
        self.USER_AGENT = environ.get("USER_AGENT", DEFAULT_USER_AGENT)
        self.ACCEPT_LANGUAGE = environ.get("ACCEPT_LANGUAGE", "zh-CN,zh;q=0.9,en;q=0.8")
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 20, 5)
        self.MAX_REDIRECTS = self._validate_positive_int("MAX_REDIRECTS", 10, 0)

        # Per-domain pacing window (seconds); a random interval in [min, max] is enforced
        self.PACING_MIN_SECONDS = self._validate_positive_float("PACING_MIN_SECONDS", 1.0, 0.0)
        self.PACING_MAX_SECONDS = self._validate_positive_float("PACING_MAX_SECONDS", 3.0, 0.0)
        if self.PACING_MAX_SECONDS < self.PACING_MIN_SECONDS:
            logger.warning("PACING_MAX_SECONDS below PACING_MIN_SECONDS; using the minimum for both")
            self.PACING_MAX_SECONDS = self.PACING_MIN_SECONDS

        # Subprocess (curl) transport
        self.CURL_BINARY = environ.get("CURL_BINARY", "curl")
        self.CURL_MAX_CONCURRENCY = self._validate_positive_int("CURL_MAX_CONCURRENCY", 3, 1)
        self.CURL_TIMEOUT = self._validate_positive_int("CURL_TIMEOUT", 20, 1)

        # Push limits
        self.MAX_PUSH_PER_RUN = self._validate_positive_int("MAX_PUSH_PER_RUN", 10, 0)
        self.PUSH_PER_TASK_MAX = self._validate_positive_int("PUSH_PER_TASK_MAX", 10, 0)
        self.PUSH_PER_SOURCE_WINDOW_MINUTES = self._validate_positive_int("PUSH_PER_SOURCE_WINDOW_MINUTES", 10, 1)
        self.PUSH_PER_SOURCE_WINDOW_MAX = self._validate_positive_int("PUSH_PER_SOURCE_WINDOW_MAX", 10, 0)
        self.PUSH_BIG_BATCH_THRESHOLD = self._validate_positive_int("PUSH_BIG_BATCH_THRESHOLD", 50, 1)
        self.MAX_PUSH_AGE_DAYS = self._validate_positive_int("MAX_PUSH_AGE_DAYS", 30, 1)

        # Extraction service (OpenAI-compatible endpoint, DeepSeek by default)
        self.OPENAI_API_KEY = environ.get("OPENAI_API_KEY") or environ.get("DEEPSEEK_API_KEY")
        self.OPENAI_BASE_URL = environ.get("OPENAI_BASE_URL", "https://api.deepseek.com")
        self.LLM_MODEL = environ.get("LLM_MODEL", "deepseek-chat")
        # Optional Azure OpenAI deployment instead of the generic endpoint
        self.AZURE_ENDPOINT = environ.get("AZURE_ENDPOINT")
        if self.AZURE_ENDPOINT:
            normalized = self.AZURE_ENDPOINT.strip()
            if normalized.lower().startswith("https://"):
                normalized = normalized[8:]
            elif normalized.lower().startswith("http://"):
                normalized = normalized[7:]
            normalized = normalized.strip("/")
            if normalized != self.AZURE_ENDPOINT:
                logger.info(f"Normalized AZURE_ENDPOINT to '{normalized}'")
            self.AZURE_ENDPOINT = normalized
        self.DEPLOYMENT_NAME = environ.get("DEPLOYMENT_NAME")
        self.OPENAI_API_VERSION = environ.get("OPENAI_API_VERSION")
        self.LLM_HTTP_TIMEOUT = self._validate_positive_int("LLM_HTTP_TIMEOUT", 60, 10)
        self.LLM_RETRIES = self._validate_positive_int("LLM_RETRIES", 0, 0)
        self.LLM_RETRY_DELAY_BASE = self._validate_positive_float("LLM_RETRY_DELAY_BASE", 1.0, 0.0)
        self.EXTRACTION_MAX_ATTEMPTS = self._validate_positive_int("EXTRACTION_MAX_ATTEMPTS", 2, 1)
        self.EXTRACTION_INPUT_LIMIT = self._validate_positive_int("EXTRACTION_INPUT_LIMIT", 8000, 500)

        # Delivery webhook
        self.WEBHOOK_URL = environ.get("WEBHOOK_URL") or environ.get("WEWORK_WEBHOOK_URL")
        self.WEBHOOK_CANARY_URL = environ.get("WEBHOOK_CANARY_URL") or environ.get("WECOM_WEBHOOK_CANARY")
        self.PUSH_MODE = environ.get("PUSH_MODE", "prod").strip().lower()
        self.CANARY_SEND_DELAY = self._validate_positive_float("CANARY_SEND_DELAY", 4.2, 0.0)

        # Scheduler configuration
        self.SCHEDULER_TIMEZONE = environ.get("SCHEDULER_TIMEZONE", "Asia/Shanghai")
        self.SCHEDULER_RUN_IMMEDIATELY = environ.get("SCHEDULER_RUN_IMMEDIATELY", "false").lower() == "true"

        # File size limits
        self.SCHEMA_FILE_SIZE_LIMIT_MB = self._validate_positive_int("SCHEMA_FILE_SIZE_LIMIT_MB", 10, 1)

        # File paths
        base_dir = path.dirname(path.abspath(__file__))
        self.SCHEMA_FILE_PATH = path.join(base_dir, "schema.sql")
        self.SOURCES_CONFIG_PATH = environ.get("SOURCES_CONFIG_PATH", path.join(base_dir, "sources.yaml"))
        self.PROMPT_CONFIG_PATH = environ.get("PROMPT_CONFIG_PATH", path.join(base_dir, "prompt.yaml"))

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        If SECRETS_FILE is set, the file must hold a mapping, either at the top
        level or nested under `environment`. Each key becomes an environment
        variable before the rest of the configuration is read.
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            logger.debug("SECRETS_FILE not set; relying on environment/.env for secrets")
            return

        secrets_config = self._safe_read_yaml(secrets_file_path, 2 * 1024 * 1024, 'secrets')
        if not secrets_config:
            return
        if not isinstance(secrets_config, dict):
            logger.warning(f"Secrets file {secrets_file_path} must be a YAML mapping at the top level")
            return

        env_vars = secrets_config.get('environment') if isinstance(secrets_config.get('environment'), dict) else secrets_config
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
            kind: Short label for logging context (e.g. 'secrets', 'sources')

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
            with open(file_path, 'r', encoding='utf-8') as f:
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

    def _load_sources(self) -> None:
        """Populate self.SOURCES from sources.yaml.

        Each entry is kept as a raw mapping; validation into typed crawl
        configuration happens in source_config when sources are seeded.
        Any failure results in an empty mapping.
        """
        sources_path = self.SOURCES_CONFIG_PATH
        config_data = self._safe_read_yaml(sources_path, 5 * 1024 * 1024, 'sources')
        if not isinstance(config_data, dict):
            self.SOURCES = {}
            return

        sources_section = config_data.get('sources')
        if not isinstance(sources_section, dict):
            logger.warning(f"No valid sources found in {sources_path}")
            self.SOURCES = {}
            return

        loaded: Dict[str, Dict[str, Any]] = {}
        for name, source_cfg in sources_section.items():
            if isinstance(source_cfg, dict) and source_cfg.get('url'):
                loaded[str(name)] = source_cfg
            else:
                logger.warning(f"Skipping invalid source configuration for '{name}': {source_cfg}")

        self.SOURCES = loaded
        logger.info(f"Loaded {len(self.SOURCES)} sources from {sources_path}")

    def reload_sources(self):
        """Reload the source roster from the configuration file."""
        logger.info("Reloading sources configuration")
        self._load_sources()

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "database_path": self.DATABASE_PATH,
            "http_timeout": self.HTTP_TIMEOUT,
            "source_count": len(self.SOURCES),
            "push_mode": self.PUSH_MODE,
            "max_push_per_run": self.MAX_PUSH_PER_RUN,
            "push_per_task_max": self.PUSH_PER_TASK_MAX,
            "push_window": f"{self.PUSH_PER_SOURCE_WINDOW_MAX}/{self.PUSH_PER_SOURCE_WINDOW_MINUTES}m",
            "big_batch_threshold": self.PUSH_BIG_BATCH_THRESHOLD,
            "max_push_age_days": self.MAX_PUSH_AGE_DAYS,
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
            "has_llm_key": bool(self.OPENAI_API_KEY),
            "has_webhook": bool(self.WEBHOOK_URL),
        }

# Global configuration instance
config = Config()
