"""
Threat Intelligence Scraper

A browser-driven crawler built on crawl4ai that harvests candidate
cybersecurity articles from news and security sites, filters them,
classifies them with an LLM into structured threat intelligence and
persists the results, streaming progress to observers while it runs.

Features:
- Headless browser crawling with pagination, scrolling and screenshots
- Rule-based fragment extraction from listing pages
- Quality filtering and deduplication
- Batched AI classification with keyword fallback
- File or HTTP API persistence
- Cancellable sessions with live progress events
"""

__version__ = "0.1.0"
