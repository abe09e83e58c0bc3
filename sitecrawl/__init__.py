"""
Site Crawler

Breadth-first website crawling with a resilience layer and
store-backed coordination across cooperating worker processes.
"""

__version__ = "1.0.0"
__description__ = "A resilient, distributable breadth-first web crawler"
