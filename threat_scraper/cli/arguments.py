"""
Command Line Argument Parsing for the Threat Intelligence Scraper

Handles URL input options and per-run overrides of the crawl settings.
"""

import argparse
import csv
import json
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, TextIO


class CLIManager:
    """
    Command line interface manager for the scraper

    Parses URL sources and configuration overrides and turns them into
    crawl config overrides.
    """

    def __init__(self):
        self.parser = self._create_parser()

    def _create_parser(self) -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(
            prog="threat_scraper",
            description="Threat intelligence crawler: extracts and classifies cybersecurity content from web sources",
            formatter_class=argparse.ArgumentDefaultsHelpFormatter,
            epilog=self._get_epilog()
        )

        url_group = parser.add_argument_group("URL Sources")
        url_source = url_group.add_mutually_exclusive_group(required=True)
        url_source.add_argument(
            "--urls",
            nargs="+",
            help="One or more seed URLs to crawl"
        )
        url_source.add_argument(
            "--url-file",
            help="Path to file containing URLs (supports TXT, CSV, JSON formats)"
        )

        config_group = parser.add_argument_group("Configuration")
        config_group.add_argument(
            "--config",
            default="config/config.yaml",
            help="Path to configuration file (created with defaults when missing)"
        )
        config_group.add_argument(
            "--log-level",
            choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
            help="Logging level"
        )
        config_group.add_argument(
            "--max-concurrency",
            type=int,
            help="Maximum number of parallel page fetches"
        )
        config_group.add_argument(
            "--max-pages",
            type=int,
            help="Maximum number of page fetches for the whole crawl"
        )
        config_group.add_argument(
            "--pagination-pages",
            type=int,
            help="Maximum number of pages followed per seed URL"
        )

        advanced_group = parser.add_argument_group("Advanced Options")
        advanced_group.add_argument(
            "--no-ai",
            action="store_true",
            help="Skip AI classification"
        )
        advanced_group.add_argument(
            "--no-screenshots",
            action="store_true",
            help="Do not capture page screenshots"
        )
        advanced_group.add_argument(
            "--full-text",
            action="store_true",
            help="Fetch each classified article for its full text and published date"
        )
        advanced_group.add_argument(
            "--no-consent",
            action="store_true",
            help="Do not click cookie/consent banners"
        )
        advanced_group.add_argument(
            "--output",
            help="Write the crawl result as JSON to this file"
        )

        parser.add_argument(
            "--version",
            action="version",
            version="threat_scraper v0.1.0"
        )

        return parser

    def _get_epilog(self) -> str:
        return """
Examples:
  # Crawl two news sites
  python -m threat_scraper --urls https://thehackernews.com https://www.bleepingcomputer.com

  # Crawl URLs from a file without AI classification
  python -m threat_scraper --url-file=sources.txt --no-ai

  # Follow up to 5 listing pages per site and save the result
  python -m threat_scraper --urls https://example.com/news --pagination-pages=5 --output=result.json

Notes:
  - AI classification reads OPENAI_API_KEY (or AZURE_OPENAI_API_KEY with AZURE_OPENAI_ENDPOINT)
  - Storage mode 'api' reads the ingest API key from THREAT_INTEL_API_KEY
  - URL files can be TXT (one URL per line), CSV, or JSON format
"""

    def parse_arguments(self, args: Optional[List[str]] = None) -> argparse.Namespace:
        parsed_args = self.parser.parse_args(args)
        self.validate_arguments(parsed_args)
        return parsed_args

    def validate_arguments(self, args: argparse.Namespace) -> bool:
        """
        Validate parsed arguments for consistency

        Exits through the parser with a usage error when invalid.
        """
        if args.url_file and not Path(args.url_file).is_file():
            self.parser.error(f"URL file not found: {args.url_file}")

        if args.max_concurrency is not None and args.max_concurrency <= 0:
            self.parser.error("Maximum concurrency must be greater than 0")

        if args.max_pages is not None and args.max_pages <= 0:
            self.parser.error("Maximum pages must be greater than 0")

        if args.pagination_pages is not None and args.pagination_pages <= 0:
            self.parser.error("Pagination pages must be greater than 0")

        return True

    def get_urls_from_args(self, args: argparse.Namespace) -> List[str]:
        if args.urls:
            return args.urls
        if args.url_file:
            return self._load_urls_from_file(args.url_file)
        return []

    def get_config_overrides(self, args: argparse.Namespace) -> Dict[str, Any]:
        """Crawl config fields overridden on the command line"""
        overrides: Dict[str, Any] = {}
        if args.max_concurrency is not None:
            overrides['max_concurrency'] = args.max_concurrency
        if args.max_pages is not None:
            overrides['max_requests_per_crawl'] = args.max_pages
        if args.pagination_pages is not None:
            overrides['max_pagination_pages'] = args.pagination_pages
        if args.no_ai:
            overrides['enable_ai_processing'] = False
        if args.no_screenshots:
            overrides['enable_screenshots'] = False
        if args.full_text:
            overrides['enable_full_text_extraction'] = True
        if args.no_consent:
            overrides['handle_consent_popups'] = False
        return overrides

    def _load_urls_from_file(self, file_path: str) -> List[str]:
        """
        Read seed URLs from a TXT, CSV or JSON source list

        Blank lines and lines starting with '#' are skipped; duplicates keep
        their first position.

        Raises:
            ValueError: unreadable file, unexpected JSON shape, or no URLs
        """
        path = Path(file_path)
        reader = self._readers.get(path.suffix.lower(), self._read_text_urls)
        try:
            with open(path, 'r', encoding='utf-8', newline='') as f:
                candidates = list(reader(f))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ValueError(f"Cannot read URL file {path}: {e}")

        urls = list(dict.fromkeys(url for url in candidates if url))
        if not urls:
            raise ValueError(f"No URLs found in {path}")
        return urls

    @property
    def _readers(self) -> Dict[str, Callable[[TextIO], Iterable[str]]]:
        return {
            '.json': self._read_json_urls,
            '.csv': self._read_csv_urls,
        }

    @staticmethod
    def _is_comment(value: str) -> bool:
        return value.startswith('#')

    def _read_text_urls(self, f: TextIO) -> Iterable[str]:
        for line in f:
            line = line.strip()
            if line and not self._is_comment(line):
                yield line

    def _read_csv_urls(self, f: TextIO) -> Iterable[str]:
        # First column holds the URL; extra columns are labels
        for row in csv.reader(f):
            cell = row[0].strip() if row else ''
            if cell and not self._is_comment(cell):
                yield cell

    def _read_json_urls(self, f: TextIO) -> Iterable[str]:
        """Accepts ``[...]``, ``{"urls": [...]}`` and entries shaped ``{"url": ...}``"""
        data = json.load(f)
        if isinstance(data, dict):
            data = data.get('urls')
        if not isinstance(data, list):
            raise ValueError("JSON URL file must be a list or an object with a 'urls' list")

        urls = []
        for entry in data:
            if isinstance(entry, dict):
                entry = entry.get('url')
            if isinstance(entry, str) and entry.strip():
                urls.append(entry.strip())
        return urls

    def print_help(self) -> None:
        self.parser.print_help()
