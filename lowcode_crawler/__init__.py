"""Structural web extraction engine: region detection, selector extraction,
crawl orchestration and archive packaging behind a FastAPI service."""

__version__ = "1.0.0"
