"""
Configuration Manager for the Threat Intelligence Scraper

Handles YAML/JSON settings files and environment variable integration, and
defines the immutable per-crawl CrawlConfig.
"""

import os
import re
import json
import yaml
from typing import Dict, Any, Optional, Tuple
from dataclasses import dataclass, field, fields, asdict
from pathlib import Path

from threat_scraper.core.base import ConfigurationError, InvalidInputError


EXTRACTION_RULES = ("link", "article", "headline", "clickable")

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

# Sites that need longer load waits before their content settles
STRICT_SITE_DOMAINS = (
    "bloomberg.com", "wsj.com", "ft.com", "reuters.com", "nytimes.com", "washingtonpost.com",
    "economist.com", "forbes.com", "cnbc.com", "marketwatch.com", "barrons.com", "investopedia.com",
)

TUPLE_OPTIONS = ('extraction_rules', 'strict_site_domains')


def _snake_case(name: str) -> str:
    name = name.replace("AI", "Ai")
    return re.sub(r'(?<!^)(?=[A-Z])', '_', name).lower()


@dataclass(frozen=True)
class CrawlConfig:
    """Per-crawl settings; never mutated once a session starts"""
    max_concurrency: int = 5
    max_requests_per_crawl: int = 50
    max_request_retries: int = 3
    request_handler_timeout_secs: float = 180
    retry_base_delay_secs: float = 1.0
    headless: bool = True
    max_sessions_per_crawler: int = 1
    use_session_pool: bool = True
    session_pool_max_pool_size: int = 10
    persist_cookies_per_session: bool = True
    max_crawling_depth: int = 3
    max_pagination_pages: Optional[int] = None
    max_scroll_attempts: int = 3
    same_domain_delay: int = 1000
    request_delay: int = 500
    enable_javascript: bool = True
    enable_images: bool = False
    user_agent: str = DEFAULT_USER_AGENT
    viewport_width: int = 1920
    viewport_height: int = 1080
    enable_screenshots: bool = True
    screenshot_quality: int = 80
    screenshot_timeout_secs: float = 30
    enable_ai_processing: bool = True
    ai_batch_size: int = 20
    max_ai_batches: int = 5
    ai_batch_timeout_secs: float = 120
    stealth_mode: bool = True
    bot_detection_bypass: bool = True
    random_delays: bool = True
    rotate_user_agents: bool = True
    human_behavior: bool = True
    handle_consent_popups: bool = True
    strict_site_domains: Tuple[str, ...] = STRICT_SITE_DOMAINS
    extraction_rules: Tuple[str, ...] = ("link", "article", "headline")
    min_title_length: int = 20
    min_content_length: int = 20
    enable_full_text_extraction: bool = False
    full_text_max_words: int = 1000

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'CrawlConfig':
        """
        Build a config from control-plane input.

        Accepts camelCase (``maxConcurrency``) or snake_case keys and rejects
        anything unknown.
        """
        known = {f.name for f in fields(cls)}
        values = {}
        for key, value in (data or {}).items():
            name = key if key in known else _snake_case(key)
            if name not in known:
                raise InvalidInputError(f"Unknown crawl config option: {key}")
            values[name] = value
        try:
            for name in TUPLE_OPTIONS:
                if name in values:
                    if isinstance(values[name], str):
                        raise TypeError(f"{name} must be a list of strings")
                    values[name] = tuple(values[name])
            config = cls(**values)
        except TypeError as e:
            raise InvalidInputError(f"Invalid crawl config: {e}")
        config.validate()
        return config

    @property
    def pagination_limit(self) -> int:
        """Maximum number of pages fetched per seed URL"""
        if self.max_pagination_pages is not None:
            return max(1, self.max_pagination_pages)
        return max(1, self.max_crawling_depth)

    @property
    def max_ai_items(self) -> int:
        return self.ai_batch_size * self.max_ai_batches

    def validate(self) -> None:
        """Raise InvalidInputError when a value has the wrong type or is out of range"""
        positive = (
            'max_concurrency', 'max_requests_per_crawl', 'max_sessions_per_crawler',
            'session_pool_max_pool_size', 'ai_batch_size', 'max_ai_batches', 'full_text_max_words',
        )
        non_negative = (
            'max_request_retries', 'max_scroll_attempts', 'same_domain_delay',
            'request_delay', 'retry_base_delay_secs', 'max_crawling_depth',
        )
        timeouts = ('request_handler_timeout_secs', 'screenshot_timeout_secs', 'ai_batch_timeout_secs')

        numeric = positive + non_negative + timeouts + (
            'viewport_width', 'viewport_height', 'screenshot_quality', 'min_title_length', 'min_content_length',
        )
        for name in numeric:
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise InvalidInputError(f"{name} must be a number, got {value!r}")
        if self.max_pagination_pages is not None and (
                isinstance(self.max_pagination_pages, bool) or not isinstance(self.max_pagination_pages, int)):
            raise InvalidInputError(f"max_pagination_pages must be an integer, got {self.max_pagination_pages!r}")
        for name in TUPLE_OPTIONS:
            if not all(isinstance(value, str) for value in getattr(self, name)):
                raise InvalidInputError(f"{name} must contain only strings")

        for name in positive:
            if getattr(self, name) < 1:
                raise InvalidInputError(f"{name} must be greater than 0")

        for name in non_negative:
            if getattr(self, name) < 0:
                raise InvalidInputError(f"{name} must be non-negative")

        for name in timeouts:
            if getattr(self, name) <= 0:
                raise InvalidInputError(f"{name} must be greater than 0")

        if self.max_pagination_pages is not None and self.max_pagination_pages < 1:
            raise InvalidInputError("max_pagination_pages must be greater than 0")

        if not 1 <= self.screenshot_quality <= 100:
            raise InvalidInputError("screenshot_quality must be between 1 and 100")

        unknown_rules = set(self.extraction_rules) - set(EXTRACTION_RULES)
        if unknown_rules:
            raise InvalidInputError(f"Unknown extraction rules: {sorted(unknown_rules)}")

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for name in TUPLE_OPTIONS:
            data[name] = list(getattr(self, name))
        return data


@dataclass
class AIConfig:
    """AI classification gateway configuration"""
    provider: str = "openai"
    model: str = "gpt-4o-mini"
    api_key_env: str = "OPENAI_API_KEY"
    azure_endpoint: Optional[str] = None
    azure_deployment: Optional[str] = None
    azure_api_version: str = "2024-10-21"
    temperature: float = 0.1
    max_tokens: int = 16000

    @property
    def api_key(self) -> Optional[str]:
        return os.getenv(self.api_key_env)


@dataclass
class StorageConfig:
    """Persistence gateway configuration"""
    mode: str = "file"
    base_path: str = "./data/articles"
    api_url: str = "http://localhost:8000"
    api_key_env: str = "THREAT_INTEL_API_KEY"
    max_retries: int = 3


@dataclass
class ScreenshotConfig:
    """Screenshot retention"""
    ttl_seconds: float = 300
    sweep_interval_seconds: float = 30


@dataclass
class LoggingConfig:
    """Logging system configuration"""
    level: str = "INFO"
    file: str = "./logs/threat_scraper.log"
    max_size: str = "100MB"
    backup_count: int = 5


@dataclass
class Settings:
    """Process-wide settings loaded from the configuration file"""
    crawl: CrawlConfig = field(default_factory=CrawlConfig)
    ai: AIConfig = field(default_factory=AIConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    screenshots: ScreenshotConfig = field(default_factory=ScreenshotConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


class ConfigManager:
    """
    Centralized configuration manager with support for YAML/JSON files
    and environment variable integration.
    """

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path or "config/config.yaml"
        self._config_data: Dict[str, Any] = {}
        self.settings: Optional[Settings] = None

    def load_config(self, config_path: Optional[str] = None) -> Settings:
        """Load configuration from file with environment variable override"""
        if config_path:
            self.config_path = config_path

        config_file = Path(self.config_path)

        # Load default configuration if file doesn't exist
        if not config_file.exists():
            self._config_data = self._get_default_config()
            self._create_default_config_file()
        else:
            try:
                with open(config_file, 'r', encoding='utf-8') as f:
                    if config_file.suffix.lower() == '.json':
                        self._config_data = json.load(f)
                    else:  # Assume YAML
                        self._config_data = yaml.safe_load(f) or {}
            except (OSError, ValueError, yaml.YAMLError) as e:
                raise ConfigurationError(f"Failed to load config from {config_file}: {e}")

        self._apply_env_overrides()
        self.settings = self._parse_config()
        return self.settings

    def _get_default_config(self) -> Dict[str, Any]:
        """Get default configuration dictionary"""
        return {
            'crawl': CrawlConfig().to_dict(),
            'ai': asdict(AIConfig()),
            'storage': asdict(StorageConfig()),
            'screenshots': asdict(ScreenshotConfig()),
            'logging': asdict(LoggingConfig()),
        }

    def _create_default_config_file(self) -> None:
        """Create default configuration file"""
        config_dir = Path(self.config_path).parent
        config_dir.mkdir(parents=True, exist_ok=True)

        with open(self.config_path, 'w', encoding='utf-8') as f:
            yaml.dump(self._config_data, f, default_flow_style=False, indent=2)

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides"""
        if os.getenv('THREAT_SCRAPER_STORAGE_MODE'):
            self._config_data.setdefault('storage', {})['mode'] = os.getenv('THREAT_SCRAPER_STORAGE_MODE')

        if os.getenv('THREAT_SCRAPER_MAX_CONCURRENCY'):
            try:
                self._config_data.setdefault('crawl', {})['max_concurrency'] = int(
                    os.getenv('THREAT_SCRAPER_MAX_CONCURRENCY')
                )
            except ValueError:
                pass

        if os.getenv('LOG_LEVEL'):
            self._config_data.setdefault('logging', {})['level'] = os.getenv('LOG_LEVEL')

        # Azure credentials switch the AI provider
        if os.getenv('AZURE_OPENAI_ENDPOINT'):
            ai_data = self._config_data.setdefault('ai', {})
            ai_data['provider'] = 'azure'
            ai_data['azure_endpoint'] = os.getenv('AZURE_OPENAI_ENDPOINT')
            ai_data.setdefault('api_key_env', 'AZURE_OPENAI_API_KEY')
            if os.getenv('AZURE_OPENAI_DEPLOYMENT'):
                ai_data['azure_deployment'] = os.getenv('AZURE_OPENAI_DEPLOYMENT')

    def _parse_config(self) -> Settings:
        """Parse configuration into dataclass objects"""
        try:
            crawl = CrawlConfig.from_dict(self._config_data.get('crawl', {}))
        except InvalidInputError as e:
            raise ConfigurationError(f"Invalid crawl section: {e}")

        return Settings(
            crawl=crawl,
            ai=self._build(AIConfig, 'ai'),
            storage=self._build(StorageConfig, 'storage'),
            screenshots=self._build(ScreenshotConfig, 'screenshots'),
            logging=self._build(LoggingConfig, 'logging'),
        )

    def _build(self, cls, section: str):
        data = self._config_data.get(section) or {}
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigurationError(f"Unknown options in '{section}' section: {sorted(unknown)}")
        return cls(**data)

    def validate_config(self) -> bool:
        """Validate configuration for the selected storage mode"""
        if not self.settings:
            raise ConfigurationError("Configuration not loaded")

        storage = self.settings.storage
        if storage.mode not in ('file', 'api'):
            raise ConfigurationError(f"Invalid storage mode: {storage.mode}")

        if storage.mode == 'api' and not os.getenv(storage.api_key_env):
            raise ConfigurationError(
                f"API key not found in environment variable: {storage.api_key_env}"
            )

        if storage.mode == 'file':
            Path(storage.base_path).mkdir(parents=True, exist_ok=True)

        if self.settings.ai.provider not in ('openai', 'azure'):
            raise ConfigurationError(f"Invalid AI provider: {self.settings.ai.provider}")

        return True

