"""
Tests for configuration management

Covers the per-crawl CrawlConfig and the YAML-backed ConfigManager.
"""

import os
from unittest.mock import patch

import pytest
import yaml

from threat_scraper.core.base import ConfigurationError, InvalidInputError
from threat_scraper.core.config import ConfigManager, CrawlConfig


class TestCrawlConfig:
    """Test suite for CrawlConfig"""

    def test_defaults(self):
        config = CrawlConfig()

        assert config.max_concurrency == 5
        assert config.max_requests_per_crawl == 50
        assert config.max_request_retries == 3
        assert config.ai_batch_size == 20
        assert config.max_ai_batches == 5
        assert config.extraction_rules == ("link", "article", "headline")

    def test_from_dict_accepts_camel_case(self):
        config = CrawlConfig.from_dict({
            'maxConcurrency': 2,
            'maxPaginationPages': 4,
            'enableAIProcessing': False,
            'extractionRules': ['article'],
        })

        assert config.max_concurrency == 2
        assert config.max_pagination_pages == 4
        assert config.enable_ai_processing is False
        assert config.extraction_rules == ("article",)

    def test_from_dict_accepts_snake_case(self):
        config = CrawlConfig.from_dict({'max_scroll_attempts': 1})
        assert config.max_scroll_attempts == 1

    def test_unknown_option_rejected(self):
        with pytest.raises(InvalidInputError, match="Unknown crawl config option"):
            CrawlConfig.from_dict({'maxWidgets': 3})

    @pytest.mark.parametrize("options", [
        {'maxConcurrency': 0},
        {'aiBatchSize': 0},
        {'maxRequestRetries': -1},
        {'requestHandlerTimeoutSecs': 0},
        {'screenshotQuality': 101},
        {'extractionRules': ['link', 'banner']},
        {'maxPaginationPages': 0},
    ])
    def test_invalid_values_rejected(self, options):
        with pytest.raises(InvalidInputError):
            CrawlConfig.from_dict(options)

    @pytest.mark.parametrize("options", [
        {'maxConcurrency': '5'},
        {'maxConcurrency': None},
        {'requestDelay': True},
        {'aiBatchTimeoutSecs': [30]},
        {'maxPaginationPages': '2'},
        {'maxPaginationPages': 2.5},
        {'extractionRules': 'article'},
        {'extractionRules': 5},
        {'extractionRules': [1, 2]},
        {'strictSiteDomains': 'wsj.com'},
    ])
    def test_wrongly_typed_values_rejected(self, options):
        with pytest.raises(InvalidInputError):
            CrawlConfig.from_dict(options)

    def test_wrong_type_message_names_the_option(self):
        with pytest.raises(InvalidInputError, match="max_concurrency must be a number"):
            CrawlConfig.from_dict({'maxConcurrency': '5'})

    def test_enrichment_and_loading_options(self):
        config = CrawlConfig.from_dict({
            'enableFullTextExtraction': True,
            'fullTextMaxWords': 200,
            'handleConsentPopups': False,
            'strictSiteDomains': ['example-paywall.test'],
        })

        assert config.enable_full_text_extraction is True
        assert config.full_text_max_words == 200
        assert config.handle_consent_popups is False
        assert config.strict_site_domains == ("example-paywall.test",)
        assert config.to_dict()['strict_site_domains'] == ["example-paywall.test"]

    def test_full_text_extraction_is_off_by_default(self):
        config = CrawlConfig()
        assert config.enable_full_text_extraction is False
        assert "wsj.com" in config.strict_site_domains

    def test_pagination_limit(self):
        assert CrawlConfig(max_crawling_depth=3).pagination_limit == 3
        assert CrawlConfig(max_crawling_depth=3, max_pagination_pages=2).pagination_limit == 2
        assert CrawlConfig(max_crawling_depth=0).pagination_limit == 1

    def test_max_ai_items(self):
        assert CrawlConfig(ai_batch_size=10, max_ai_batches=3).max_ai_items == 30

    def test_config_is_immutable(self):
        config = CrawlConfig()
        with pytest.raises(Exception):
            config.max_concurrency = 10


class TestConfigManager:
    """Test suite for ConfigManager"""

    def test_creates_default_config_file(self, tmp_path):
        config_path = tmp_path / "config" / "config.yaml"

        with patch.dict(os.environ, {}, clear=True):
            settings = ConfigManager(str(config_path)).load_config()

        assert config_path.exists()
        assert settings.crawl == CrawlConfig()
        assert settings.storage.mode == "file"
        assert settings.ai.model == "gpt-4o-mini"

        written = yaml.safe_load(config_path.read_text())
        assert written['crawl']['max_concurrency'] == 5

    def test_loads_yaml_sections(self, tmp_path):
        config_path = tmp_path / "config.yaml"
        config_path.write_text(yaml.dump({
            'crawl': {'maxConcurrency': 3, 'enable_ai_processing': False},
            'storage': {'mode': 'api', 'api_url': 'http://ingest.local'},
            'screenshots': {'ttl_seconds': 60},
            'logging': {'level': 'DEBUG'},
        }))

        with patch.dict(os.environ, {}, clear=True):
            settings = ConfigManager(str(config_path)).load_config()

        assert settings.crawl.max_concurrency == 3
        assert settings.crawl.enable_ai_processing is False
        assert settings.storage.mode == 'api'
        assert settings.storage.api_url == 'http://ingest.local'
        assert settings.screenshots.ttl_seconds == 60
        assert settings.logging.level == 'DEBUG'

    def test_env_overrides(self, tmp_path):
        config_path = tmp_path / "config.yaml"
        env = {
            'THREAT_SCRAPER_STORAGE_MODE': 'api',
            'THREAT_SCRAPER_MAX_CONCURRENCY': '7',
            'LOG_LEVEL': 'WARNING',
            'AZURE_OPENAI_ENDPOINT': 'https://example.openai.azure.com',
            'AZURE_OPENAI_DEPLOYMENT': 'gpt-4o',
        }

        with patch.dict(os.environ, env, clear=True):
            settings = ConfigManager(str(config_path)).load_config()

        assert settings.storage.mode == 'api'
        assert settings.crawl.max_concurrency == 7
        assert settings.logging.level == 'WARNING'
        assert settings.ai.provider == 'azure'
        assert settings.ai.azure_deployment == 'gpt-4o'

    def test_invalid_crawl_section(self, tmp_path):
        config_path = tmp_path / "config.yaml"
        config_path.write_text(yaml.dump({'crawl': {'maxConcurrency': 0}}))

        with patch.dict(os.environ, {}, clear=True):
            with pytest.raises(ConfigurationError, match="Invalid crawl section"):
                ConfigManager(str(config_path)).load_config()

    def test_unknown_section_option(self, tmp_path):
        config_path = tmp_path / "config.yaml"
        config_path.write_text(yaml.dump({'storage': {'bucket': 'x'}}))

        with patch.dict(os.environ, {}, clear=True):
            with pytest.raises(ConfigurationError, match="Unknown options"):
                ConfigManager(str(config_path)).load_config()

    def test_validate_api_mode_requires_key(self, tmp_path):
        config_path = tmp_path / "config.yaml"
        config_path.write_text(yaml.dump({'storage': {'mode': 'api'}}))

        with patch.dict(os.environ, {}, clear=True):
            manager = ConfigManager(str(config_path))
            manager.load_config()
            with pytest.raises(ConfigurationError, match="API key not found"):
                manager.validate_config()

    def test_validate_file_mode_creates_directory(self, tmp_path):
        config_path = tmp_path / "config.yaml"
        articles_dir = tmp_path / "articles"
        config_path.write_text(yaml.dump({'storage': {'mode': 'file', 'base_path': str(articles_dir)}}))

        with patch.dict(os.environ, {}, clear=True):
            manager = ConfigManager(str(config_path))
            manager.load_config()
            assert manager.validate_config()

        assert articles_dir.is_dir()
