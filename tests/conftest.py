"""Shared fixtures for the crawler tests."""

import asyncio
from typing import Dict, List, Optional

import pytest

from sitecrawl.crawler.fetcher import PageFetcher, PageResult
from sitecrawl.errors import FetchError
from sitecrawl.models import CrawlConfiguration, CrawlResult
from sitecrawl.utils.monitoring import CrawlerMonitor


class FakePageFetcher(PageFetcher):
    """
    In-memory fetcher over a link graph.

    ``failures`` maps a URL to an exception, or to a list of exceptions
    raised on successive calls before the page starts succeeding.
    """

    def __init__(self, graph: Optional[Dict[str, List[str]]] = None, failures=None,
                 robots: Optional[Dict[str, object]] = None, latency: float = 0.0):
        self.graph = graph or {}
        self.failures = dict(failures or {})
        self.robots = robots or {}
        self.latency = latency
        self.fetched: List[str] = []
        self.robots_requests: List[str] = []
        self.active = 0
        self.max_active = 0

    async def fetch(self, url: str) -> PageResult:
        self.fetched.append(url)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.latency)

            failure = self.failures.get(url)
            if isinstance(failure, list):
                failure = failure.pop(0) if failure else None
            if failure is not None:
                raise failure

            if url not in self.graph:
                raise FetchError(url, "HTTP 404", status_code=404)
            return PageResult(url=url, outbound_links=list(self.graph[url]))
        finally:
            self.active -= 1

    async def fetch_robots(self, origin: str) -> Optional[str]:
        self.robots_requests.append(origin)
        rules = self.robots.get(origin)
        if isinstance(rules, Exception):
            raise rules
        return rules


class ScriptedFrontier:
    """Stands in for BreadthFirstFrontier, replaying a list of outcomes."""

    def __init__(self, outcomes=None, fetcher: Optional[PageFetcher] = None):
        self.outcomes = list(outcomes or [])
        self.calls: List[CrawlConfiguration] = []
        self.fetcher = fetcher or FakePageFetcher()
        self.monitor = CrawlerMonitor()

    async def crawl(self, config: CrawlConfiguration) -> CrawlResult:
        self.calls.append(config)
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if isinstance(outcome, Exception):
            raise outcome
        return outcome or CrawlResult(pages_visited=1, urls=[config.start_url])


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def site_graph():
    """Small site: home links to two sections, one of which links deeper."""
    return {
        "https://a.test": ["https://a.test/p1", "https://a.test/p2", "https://other.test/x"],
        "https://a.test/p1": ["https://a.test/p1/deep", "https://a.test"],
        "https://a.test/p2": ["https://a.test/p1"],
        "https://a.test/p1/deep": [],
    }


@pytest.fixture
def fake_fetcher(site_graph):
    return FakePageFetcher(site_graph)


@pytest.fixture
def crawl_config():
    return CrawlConfiguration(
        start_url="https://a.test/",
        max_depth=2,
        max_pages=10,
        crawl_delay=0,
        allowed_domains=["a.test"],
        respect_robots_txt=False
    )


@pytest.fixture
def fake_clock():
    return FakeClock()
