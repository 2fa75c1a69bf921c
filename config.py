#!/usr/bin/env python3
"""
Configuration management for the content aggregator.

This module centralizes all configuration loading, validation, and management.
It handles environment variables, validation, and provides a clean interface
for accessing configuration values throughout the application, including the
per-domain scope/strategy layout read from sources.yaml.
"""

from dataclasses import dataclass, field
from os import environ, path, access, R_OK
from typing import Dict, Any, List, Optional
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

from errors import ConfigurationError


def _setup_global_logger():
    """Setup a single global logger for the entire application.

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true

    The logger outputs to stdout with line buffering for real-time logging.
    All modules should use get_logger() to create module-specific loggers that inherit this configuration.
    """
    try:
        environ["PYTHONUNBUFFERED"] = "1"
    except Exception:
        pass

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

    sys.stdout.reconfigure(line_buffering=True)
    sys.stderr.reconfigure(line_buffering=True)

    # Keep exporter and client libraries quiet unless explicitly overridden
    azure_level_str = environ.get("AZURE_LOG_LEVEL", "WARNING").upper()
    azure_level = level_map.get(azure_level_str, WARNING)
    try:
        for name in (
            "azure",
            "azure.core.pipeline.policies.http_logging_policy",
            "azure.monitor.opentelemetry.exporter",
            "aiohttp.access",
        ):
            getLogger(name).setLevel(azure_level)
    except Exception:
        # Never fail app startup due to logging tweaks
        pass

    return getLogger("ContentAggregator")


def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    Args:
        name: The logger name (e.g., "fetcher", "taskqueue", "scheduler")

    Returns:
        A logger named "ContentAggregator.{name}"
    """
    return getLogger(f"ContentAggregator.{name}")


logger = _setup_global_logger()

# Strategies that cannot run without an upstream credential
STRATEGY_API_KEYS = {
    "newsapi": "NEWS_API_KEY",
    "gnews": "GNEWS_API_KEY",
    "youtube": "YOUTUBE_API_KEY",
}

# Used when sources.yaml is missing or empty
DEFAULT_SOURCES: Dict[str, Any] = {
    "domains": {
        "news": {
            "max_pages": 4,
            "max_items": 33,
            "page_size": 20,
            "scopes": [
                {"region": "us", "strategy": "newsapi"},
                {"region": "in", "strategy": "newsapi", "sources": "the-times-of-india,the-hindu"},
                {"region": "de", "strategy": "newsapi", "sources": "spiegel-online,der-tagesspiegel,focus"},
            ],
        },
        "videos": {
            "max_pages": 1,
            "max_items": 20,
            "page_size": 20,
            "strategy": "youtube",
            "regions": ["US", "IN", "DE", "GB", "CA"],
            "categories": ["10", "24", "25"],
        },
        "viral": {
            "max_pages": 1,
            "max_items": 50,
            "page_size": 25,
            "scopes": [
                {"region": "reddit", "category": "worldnews", "strategy": "reddit", "min_score": 100},
                {"region": "reddit", "category": "news", "strategy": "reddit", "min_score": 100},
                {"region": "reddit", "category": "technology", "strategy": "reddit", "min_score": 100},
                {"region": "hackernews", "category": "technology", "strategy": "hackernews"},
            ],
        },
        "memes": {
            "max_pages": 1,
            "max_items": 50,
            "page_size": 25,
            "scopes": [
                {"region": "imgflip", "strategy": "imgflip"},
                {"region": "reddit", "category": "memes", "strategy": "reddit", "images_only": True},
                {"region": "reddit", "category": "dankmemes", "strategy": "reddit", "images_only": True},
            ],
        },
    }
}


@dataclass
class ScopeSettings:
    """One fetch target of a domain and the strategy that serves it."""
    region: str
    category: str = ""
    strategy: str = ""
    options: Dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return f"{self.region}:{self.category}" if self.category else self.region


@dataclass
class DomainSettings:
    """Fetch bounds and configured scopes for one content domain."""
    name: str
    scopes: List[ScopeSettings] = field(default_factory=list)
    max_pages: int = 4
    max_items: int = 33
    page_size: int = 20

    def find_scope(self, scope_key: str) -> Optional[ScopeSettings]:
        for scope in self.scopes:
            if scope.key == scope_key:
                return scope
        return None


class Config:
    """Configuration manager for the content aggregator.

    Loading order:
    1. Environment variables
    2. .env file (if present)
    3. YAML secrets file (if SECRETS_FILE environment variable is set)
    4. sources.yaml domain/scope configuration

    Construction never fails; call validate() at startup to enforce mandatory
    settings such as upstream API keys.
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
        # Storage
        self.DATABASE_PATH = environ.get("DATABASE_PATH", "content.db")
        self.QUEUE_PATH = environ.get("QUEUE_PATH", "queue.db")
        self.USER_AGENT = environ.get("USER_AGENT", "ContentAggregator/1.0 (+https://github.com/content-aggregator)")

        # Upstream credentials and endpoints
        self.NEWS_API_KEY = environ.get("NEWS_API_KEY")
        self.NEWS_API_BASE_URL = environ.get("NEWS_API_BASE_URL", "https://newsapi.org/v2/top-headlines")
        self.GNEWS_API_KEY = environ.get("GNEWS_API_KEY")
        self.GNEWS_API_BASE_URL = environ.get("GNEWS_API_BASE_URL", "https://gnews.io/api/v4/top-headlines")
        self.YOUTUBE_API_KEY = environ.get("YOUTUBE_API_KEY")
        self.YOUTUBE_API_BASE_URL = environ.get("YOUTUBE_API_BASE_URL", "https://www.googleapis.com/youtube/v3/videos")

        # Timing configuration
        self.FETCH_INTERVAL_MINUTES = self._validate_positive_int("FETCH_INTERVAL_MINUTES", 240, 1)
        self.SCHEDULER_DEDUPE_MINUTES = self._validate_positive_int(
            "SCHEDULER_DEDUPE_MINUTES", max(1, self.FETCH_INTERVAL_MINUTES // 2), 0
        )
        self.SCHEDULE_SPACING_SECONDS = self._validate_positive_float("SCHEDULE_SPACING_SECONDS", 0.0, 0.0)
        self.RATE_LIMIT_SECONDS = self._validate_positive_float("RATE_LIMIT_SECONDS", 2.0, 0.0)
        self.UPSTREAM_REQUESTS_PER_MINUTE = self._validate_positive_int("UPSTREAM_REQUESTS_PER_MINUTE", 60, 0)

        # Fetch bounds (domain defaults, sources.yaml may override per domain)
        self.MAX_PAGES = self._validate_positive_int("MAX_PAGES", 4, 1)
        self.MAX_ITEMS = self._validate_positive_int("MAX_ITEMS", 33, 1)
        self.PAGE_SIZE = self._validate_positive_int("PAGE_SIZE", 20, 1)

        # Worker pool and queue delivery
        self.WORKER_COUNT = self._validate_positive_int("WORKER_COUNT", 3, 1)
        self.MAX_DELIVER = self._validate_positive_int("MAX_DELIVER", 3, 1)
        self.ACK_WAIT_SECONDS = self._validate_positive_float("ACK_WAIT_SECONDS", 30.0, 1.0)
        self.QUEUE_MAX_AGE_HOURS = self._validate_positive_float("QUEUE_MAX_AGE_HOURS", 24.0, 0.1)
        self.QUEUE_POLL_SECONDS = self._validate_positive_float("QUEUE_POLL_SECONDS", 5.0, 0.1)
        self.RETRY_DELAY = self._validate_positive_float("RETRY_DELAY", 30.0, 0.0)

        # HTTP request configuration
        self.MAX_RETRIES = self._validate_positive_int("MAX_RETRIES", 2, 0)
        self.RETRY_DELAY_BASE = self._validate_positive_float("RETRY_DELAY_BASE", 1.0, 0.1)
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 30, 1)

        # Deadlines
        self.STORE_TIMEOUT = self._validate_positive_float("STORE_TIMEOUT", 10.0, 0.5)
        self.REQUEST_TIMEOUT = self._validate_positive_float("REQUEST_TIMEOUT", 300.0, 1.0)

        # Read API
        self.API_HOST = environ.get("API_HOST", "0.0.0.0")
        self.API_PORT = self._validate_positive_int("API_PORT", 8080, 1)
        self.API_MAX_LIMIT = self._validate_positive_int("API_MAX_LIMIT", 100, 1)

        base_dir = path.dirname(path.abspath(__file__))
        self.SCHEMA_FILE_PATH = path.join(base_dir, "schema.sql")
        self.QUEUE_SCHEMA_FILE_PATH = path.join(base_dir, "queue_schema.sql")
        self.SCHEMA_FILE_SIZE_LIMIT_MB = self._validate_positive_int("SCHEMA_FILE_SIZE_LIMIT_MB", 10, 1)
        self.SOURCES_CONFIG_PATH = environ.get("SOURCES_CONFIG_PATH", path.join(base_dir, "sources.yaml"))

        enabled = environ.get("ENABLED_DOMAINS", "")
        self.ENABLED_DOMAINS = [d.strip() for d in enabled.split(",") if d.strip()]

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        If SECRETS_FILE is set, loads the specified YAML file and sets
        environment variables from it. Both a top-level mapping and a mapping
        nested under `environment` are accepted.
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            logger.debug("SECRETS_FILE not set; relying on environment/.env for secrets")
            return

        secrets_config = self._safe_read_yaml(secrets_file_path, 2 * 1024 * 1024, 'secrets')
        if not isinstance(secrets_config, dict):
            if secrets_config is not None:
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

    def _load_sources(self) -> None:
        """Populate self.DOMAINS from sources.yaml (or built-in defaults)."""
        config_data = self._safe_read_yaml(self.SOURCES_CONFIG_PATH, 5 * 1024 * 1024, 'sources')
        if not isinstance(config_data, dict) or not isinstance(config_data.get('domains'), dict):
            logger.info("Using built-in domain configuration")
            config_data = DEFAULT_SOURCES

        domains: Dict[str, DomainSettings] = {}
        for name, domain_cfg in config_data['domains'].items():
            if not isinstance(domain_cfg, dict):
                logger.warning(f"Skipping invalid domain configuration for '{name}'")
                continue
            if self.ENABLED_DOMAINS and name not in self.ENABLED_DOMAINS:
                continue
            domain = self._parse_domain(str(name), domain_cfg)
            if domain.scopes:
                domains[domain.name] = domain
            else:
                logger.warning(f"Domain '{name}' has no valid scopes; ignoring")

        self.DOMAINS = domains
        logger.info(
            "Loaded %d domains: %s",
            len(self.DOMAINS),
            ", ".join(f"{d.name}({len(d.scopes)} scopes)" for d in self.DOMAINS.values()),
        )

    def _parse_domain(self, name: str, domain_cfg: Dict[str, Any]) -> DomainSettings:
        def _bound(key: str, default: int) -> int:
            raw = domain_cfg.get(key, default)
            try:
                value = int(raw)
                return value if value >= 1 else default
            except (TypeError, ValueError):
                logger.warning(f"Invalid {key} '{raw}' for domain {name}; using {default}")
                return default

        domain = DomainSettings(
            name=name,
            max_pages=_bound('max_pages', self.MAX_PAGES),
            max_items=_bound('max_items', self.MAX_ITEMS),
            page_size=_bound('page_size', self.PAGE_SIZE),
        )

        # Grid form: one strategy across regions x categories
        if domain_cfg.get('strategy') and domain_cfg.get('regions'):
            regions = self._env_list(f"{name.upper()}_REGIONS") or [str(r) for r in domain_cfg.get('regions') or []]
            categories = self._env_list(f"{name.upper()}_CATEGORIES") or [str(c) for c in domain_cfg.get('categories') or []]
            options = {k: v for k, v in domain_cfg.items()
                       if k not in ('strategy', 'regions', 'categories', 'max_pages', 'max_items', 'page_size', 'scopes')}
            for region in regions:
                for category in categories or [""]:
                    domain.scopes.append(ScopeSettings(region, category, str(domain_cfg['strategy']), dict(options)))

        for scope_cfg in domain_cfg.get('scopes') or []:
            if not isinstance(scope_cfg, dict) or not scope_cfg.get('region') or not scope_cfg.get('strategy'):
                logger.warning(f"Skipping invalid scope in domain {name}: {scope_cfg}")
                continue
            options = {k: v for k, v in scope_cfg.items() if k not in ('region', 'category', 'strategy')}
            domain.scopes.append(ScopeSettings(
                region=str(scope_cfg['region']),
                category=str(scope_cfg.get('category') or ""),
                strategy=str(scope_cfg['strategy']),
                options=options,
            ))
        return domain

    def _env_list(self, env_var: str) -> List[str]:
        raw = environ.get(env_var, "")
        return [v.strip() for v in raw.split(",") if v.strip()]

    def reload_sources(self):
        """Reload domain configuration from sources.yaml."""
        logger.info("Reloading sources configuration")
        self._load_sources()

    def get_domain(self, name: str) -> Optional[DomainSettings]:
        return self.DOMAINS.get(name)

    def validate(self, require_keys: bool = True) -> None:
        """Enforce startup-time requirements.

        Args:
            require_keys: also check upstream API keys (processes that fetch)

        Raises:
            ConfigurationError: no domains configured, or a configured
                strategy needs an API key that is not set.
        """
        if not self.DOMAINS:
            raise ConfigurationError("No content domains configured")
        if not require_keys:
            return
        missing = set()
        for domain in self.DOMAINS.values():
            for scope in domain.scopes:
                key_var = STRATEGY_API_KEYS.get(scope.strategy)
                if key_var and not getattr(self, key_var, None):
                    missing.add(key_var)
        if missing:
            raise ConfigurationError(f"Missing required API key(s): {', '.join(sorted(missing))}")

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "database_path": self.DATABASE_PATH,
            "queue_path": self.QUEUE_PATH,
            "domains": {name: len(d.scopes) for name, d in self.DOMAINS.items()},
            "fetch_interval_minutes": self.FETCH_INTERVAL_MINUTES,
            "rate_limit_seconds": self.RATE_LIMIT_SECONDS,
            "worker_count": self.WORKER_COUNT,
            "max_deliver": self.MAX_DELIVER,
            "ack_wait_seconds": self.ACK_WAIT_SECONDS,
            "http_timeout": self.HTTP_TIMEOUT,
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
            "has_news_api_key": bool(self.NEWS_API_KEY),
            "has_gnews_api_key": bool(self.GNEWS_API_KEY),
            "has_youtube_api_key": bool(self.YOUTUBE_API_KEY),
        }


# Global configuration instance
config = Config()
