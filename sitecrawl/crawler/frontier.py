"""
Breadth-first URL frontier.

Implements URL normalization, politeness policies (robots.txt, allowed
domains, minimum dispatch interval) and strict level-by-level traversal
with bounded concurrency.
"""

import asyncio
import logging
import time
from collections import deque
from typing import Deque, Dict, Iterable, List, Optional, Set, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit
from urllib.robotparser import RobotFileParser

from ..models import CrawlConfiguration, CrawlError, CrawlNode, CrawlResult
from ..utils.monitoring import CrawlerMonitor
from .fetcher import PageFetcher
from .parser import LinkExtractor


DEFAULT_PORTS = {'http': 80, 'https': 443}


def normalize_url(url: str) -> str:
    """
    Canonical form of a URL used for visited-set membership.

    Lowercases scheme and host, strips a leading "www.", default ports,
    the fragment and trailing slashes, and sorts query parameters.
    """
    try:
        parsed = urlsplit(url.strip())
        scheme = parsed.scheme.lower()
        host = parsed.hostname or ''
        port = parsed.port
    except ValueError:
        return url

    if host.startswith('www.'):
        host = host[4:]
    if ':' in host:
        host = f"[{host}]"

    netloc = host
    if port is not None and DEFAULT_PORTS.get(scheme) != port:
        netloc = f"{host}:{port}"

    path = parsed.path.rstrip('/')
    query = urlencode(sorted(parse_qsl(parsed.query, keep_blank_values=True)))

    return urlunsplit((scheme, netloc, path, query, ''))


def _bare_domain(domain: str) -> str:
    domain = domain.strip().lower()
    return domain[4:] if domain.startswith('www.') else domain


def is_allowed_domain(url: str, allowed_domains: Iterable[str]) -> bool:
    """An empty allow-list admits everything; otherwise exact or subdomain matches only."""
    allowed = [_bare_domain(domain) for domain in allowed_domains if domain]
    if not allowed:
        return True

    try:
        hostname = _bare_domain(urlsplit(url).hostname or '')
    except ValueError:
        return False

    if not hostname:
        return False

    return any(hostname == domain or hostname.endswith(f".{domain}") for domain in allowed)


def get_origin(url: str) -> str:
    parsed = urlsplit(url)
    return f"{parsed.scheme}://{parsed.netloc}"


class RobotsPolicy:
    """Manages robots.txt checking for origins, with a per-origin cache."""

    def __init__(self, fetcher: PageFetcher, cache_ttl: float = 3600):
        self.fetcher = fetcher
        self.cache_ttl = cache_ttl
        self.robots_cache: Dict[str, Tuple[RobotFileParser, float]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self.logger = logging.getLogger(__name__)

    async def can_fetch(self, url: str, user_agent: str) -> bool:
        """Check if URL can be fetched according to robots.txt. Fails open."""
        origin = get_origin(url)
        lock = self._locks.setdefault(origin, asyncio.Lock())

        async with lock:
            cached = self.robots_cache.get(origin)
            if cached and time.time() - cached[1] < self.cache_ttl:
                rules = cached[0]
            else:
                try:
                    body = await self.fetcher.fetch_robots(origin)
                except Exception as e:
                    self.logger.warning(f"Could not fetch robots.txt for {origin}, allowing: {e}")
                    return True

                rules = RobotFileParser()
                rules.set_url(f"{origin}/robots.txt")
                rules.parse((body or '').splitlines())
                self.robots_cache[origin] = (rules, time.time())

        return rules.can_fetch(user_agent, url)


class DispatchLimiter:
    """Enforces a minimum interval between consecutive dispatches."""

    def __init__(self, interval: float):
        self.interval = interval
        self._last_dispatch: Optional[float] = None
        self._lock = asyncio.Lock()

    async def wait(self):
        async with self._lock:
            loop = asyncio.get_running_loop()
            if self._last_dispatch is not None and self.interval > 0:
                remaining = self._last_dispatch + self.interval - loop.time()
                if remaining > 0:
                    await asyncio.sleep(remaining)
            self._last_dispatch = loop.time()


class BreadthFirstFrontier:
    """
    Traverses one origin's link graph in strict breadth-first order.

    All queued nodes at the current minimum depth are dispatched (with
    bounded concurrency and a minimum dispatch interval) before any node
    of the next depth. The queue, visited set and result are fields of the
    instance and are reset at the start of every run; one instance runs one
    crawl at a time.
    """

    DEFAULT_CONCURRENCY = 5

    def __init__(self, fetcher: PageFetcher, robots_policy: Optional[RobotsPolicy] = None,
                 monitor: Optional[CrawlerMonitor] = None):
        self.fetcher = fetcher
        self.robots_policy = robots_policy or RobotsPolicy(fetcher)
        self.monitor = monitor or CrawlerMonitor()
        self.link_filter = LinkExtractor()
        self.logger = logging.getLogger(__name__)

        self.config: Optional[CrawlConfiguration] = None
        self.queue: Deque[CrawlNode] = deque()
        self.visited: Set[str] = set()
        self.result = CrawlResult()
        self._in_flight = 0
        self._deferred: List[CrawlNode] = []
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._limiter: Optional[DispatchLimiter] = None

    def _reset(self, config: CrawlConfiguration):
        self.config = config
        self.queue = deque()
        self.visited = set()
        self.result = CrawlResult()
        self._in_flight = 0
        self._deferred = []
        self._semaphore = asyncio.Semaphore(config.parallel_workers or self.DEFAULT_CONCURRENCY)
        self._limiter = DispatchLimiter(config.crawl_delay)

    async def crawl(self, config: CrawlConfiguration) -> CrawlResult:
        """
        Run a breadth-first crawl.

        Raises:
            ConfigurationError: if the configuration is invalid

        Returns:
            CrawlResult; page-level failures are recorded in its errors
        """
        config.validate()
        self._reset(config)
        start_time = time.time()

        start_url = normalize_url(config.start_url)
        self.queue.append(CrawlNode(url=start_url, depth=0))
        self.logger.info(
            f"Starting BFS crawl of {start_url} "
            f"(max_depth={config.max_depth}, max_pages={config.max_pages})"
        )

        while self.queue and self._has_budget():
            batch = self._take_current_depth()
            if batch:
                await self._process_batch(batch)

        self.result.duration = time.time() - start_time
        self.logger.info(
            f"Crawl completed: {self.result.pages_visited} pages, "
            f"{len(self.result.errors)} errors in {self.result.duration:.2f}s"
        )
        return self.result

    def _has_budget(self) -> bool:
        return self.result.pages_visited < self.config.max_pages

    def _take_current_depth(self) -> List[CrawlNode]:
        """Remove and return every queued node at the depth of the queue head."""
        nodes = []
        taken = set()
        current_depth = self.queue[0].depth

        while self.queue and self.queue[0].depth == current_depth:
            node = self.queue.popleft()
            if node.url in self.visited or node.url in taken or node.depth > self.config.max_depth:
                continue
            taken.add(node.url)
            nodes.append(node)

        return nodes

    async def _process_batch(self, nodes: List[CrawlNode]):
        self._deferred = []
        await asyncio.gather(*(self._dispatch(node) for node in nodes))

        # Nodes turned away while other fetches held the remaining budget
        if self._deferred and self._has_budget():
            for node in reversed(self._deferred):
                self.queue.appendleft(node)
        self._deferred = []

    async def _dispatch(self, node: CrawlNode):
        async with self._semaphore:
            if node.url in self.visited:
                return
            if not self._reserve():
                if self._has_budget():
                    self._deferred.append(node)
                return
            self.visited.add(node.url)
            await self._limiter.wait()
            await self._process_node(node)

    def _reserve(self) -> bool:
        """Claim one page of budget for an in-flight fetch."""
        if self.result.pages_visited + self._in_flight >= self.config.max_pages:
            return False
        self._in_flight += 1
        return True

    async def _process_node(self, node: CrawlNode):
        """Fetch one node, record it, and queue its children."""
        try:
            if self.config.respect_robots_txt and \
                    not await self.robots_policy.can_fetch(node.url, self.config.user_agent):
                self.logger.info(f"Skipping URL due to robots.txt: {node.url}")
                return

            self.logger.debug(f"Crawling {node.url} (depth {node.depth})")
            page = await self.fetcher.fetch(node.url)

            self.result.pages_visited += 1
            self.result.urls.append(node.url)
            self.monitor.record_url_crawled(node.url, page.fetch_time)

            children = self.result.crawl_tree.setdefault(node.url, [])
            if node.depth < self.config.max_depth:
                discovered = self._discover_children(node, page.outbound_links)
                children.extend(discovered)
                self.queue.extend(child for child in discovered if child.url not in self.visited)

        except Exception as e:
            self.logger.error(f"Error crawling {node.url}: {e}")
            self.monitor.record_error(type(e).__name__)
            self.result.errors.append(CrawlError(url=node.url, error=str(e)))

        finally:
            self._in_flight -= 1

    def _discover_children(self, node: CrawlNode, links: Iterable[str]) -> List[CrawlNode]:
        """Normalize, filter and dedupe the outbound links of a page."""
        children = []
        seen = {node.url}

        for link in links:
            url = normalize_url(link)
            if url in seen:
                continue
            seen.add(url)

            if not self.link_filter.is_crawlable(url):
                continue
            if not is_allowed_domain(url, self.config.allowed_domains):
                continue

            children.append(CrawlNode(url=url, depth=node.depth + 1, parent_url=node.url))

        return children
