#!/usr/bin/env python3
"""
Threat Intelligence Scraper - Main Entry Point

Loads configuration, sets up logging and runs one crawl over the given seed
URLs, printing a summary report when it finishes.
"""

import sys
import json
import asyncio
import signal
from pathlib import Path

from threat_scraper.core.base import CrawlPhase, ScraperError
from threat_scraper.core.config import ConfigManager
from threat_scraper.core.logging import get_logger, logging_manager, setup_logging
from threat_scraper.cli.arguments import CLIManager
from threat_scraper.utils.component_factory import apply_overrides, create_coordinator


CLI_CLIENT_ID = "cli"


async def main() -> int:
    """Main entry point for the scraper"""
    cli_manager = CLIManager()
    args = cli_manager.parse_arguments()

    # Load configuration
    config_manager = ConfigManager(args.config)
    try:
        settings = config_manager.load_config()
    except ScraperError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    # Set up logging
    logging_config = settings.logging
    try:
        setup_logging(
            level=args.log_level or logging_config.level,
            log_file=logging_config.file,
            max_size=logging_config.max_size,
            backup_count=logging_config.backup_count
        )
    except (ScraperError, OSError) as e:
        print(f"Logging setup failed: {e}", file=sys.stderr)
        return 1
    logger = get_logger()

    try:
        config_manager.validate_config()
        crawl_config = apply_overrides(settings.crawl, cli_manager.get_config_overrides(args))
    except ScraperError as e:
        logger.error(f"Configuration validation failed: {e}")
        return 1

    # Get URLs to process
    try:
        urls = cli_manager.get_urls_from_args(args)
    except ValueError as e:
        logger.error(f"Failed to get URLs: {e}")
        return 1
    logger.info(f"Processing {len(urls)} URLs")

    coordinator = create_coordinator(settings, crawl_config)
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, lambda: asyncio.ensure_future(coordinator.cancel(CLI_CLIENT_ID)))
    except (NotImplementedError, RuntimeError):
        # Windows event loops have no signal handler support
        pass

    try:
        try:
            await coordinator.start_crawl(CLI_CLIENT_ID, urls, crawl_config)
        except ScraperError as e:
            logger.error(f"Could not start crawl: {e}")
            return 1

        result = await coordinator.wait(CLI_CLIENT_ID)
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass
        await coordinator.shutdown()
        await coordinator.orchestrator.close()

    stats = result.stats.to_dict()
    if result.database_save_result and result.database_save_result.errors:
        stats['errors'] = result.database_save_result.errors
    report = logging_manager.generate_summary_report(stats)
    print(report)

    if args.output:
        output_path = Path(args.output)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with open(output_path, 'w', encoding='utf-8') as f:
            json.dump(result.to_dict(), f, indent=2, ensure_ascii=False)
        logger.info(f"Crawl result written to {output_path}")

    if result.phase == CrawlPhase.CANCELLED:
        return 130
    if not result.success:
        logger.error(f"Crawl failed: {result.error}")
        return 1
    return 0


def run() -> None:
    try:
        exit_code = asyncio.run(main())
        sys.exit(exit_code)
    except KeyboardInterrupt:
        print("\nScraper interrupted by user")
        sys.exit(130)


if __name__ == "__main__":
    run()
