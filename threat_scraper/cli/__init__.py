"""
Command Line Interface for the Threat Intelligence Scraper

This package provides command line argument parsing and validation. It
handles URL input options and crawl configuration overrides.

Classes:
    CLIManager: Command line interface manager for the scraper
"""

from threat_scraper.cli.arguments import CLIManager

__all__ = ['CLIManager']
