"""
Page fetcher interface and its aiohttp implementation.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from urllib.parse import urljoin

import aiohttp
from aiohttp import ClientError, ClientSession, ClientTimeout

from ..errors import FetchError
from ..models import DEFAULT_USER_AGENT
from .parser import LinkExtractor


@dataclass
class PageResult:
    """Outcome of fetching one page."""
    url: str
    status_code: int = 200
    outbound_links: List[str] = field(default_factory=list)
    fetch_time: float = 0.0
    content_type: Optional[str] = None


class PageFetcher(ABC):
    """Given a URL, returns the outbound links discovered on that page."""

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def start(self):
        """Acquire resources (sessions, browsers...)."""

    async def close(self):
        """Release resources."""

    @abstractmethod
    async def fetch(self, url: str) -> PageResult:
        """Fetch a page, raising FetchError when it cannot be retrieved."""

    @abstractmethod
    async def fetch_robots(self, origin: str) -> Optional[str]:
        """
        Return the robots.txt body for an origin ("scheme://host").

        None or an empty string means no rules apply. Raises FetchError when
        the file could not be retrieved at all.
        """


class HttpPageFetcher(PageFetcher):
    """
    Fetches web pages over HTTP with bounded concurrency and size limits.
    """

    TEXT_TYPES = (
        'text/html',
        'text/plain',
        'application/xhtml+xml',
    )

    def __init__(self, user_agent: str = DEFAULT_USER_AGENT, request_timeout: float = 30,
                 max_concurrent_requests: int = 10, custom_headers: Optional[Dict[str, str]] = None,
                 max_content_size: int = 10 * 1024 * 1024,
                 link_extractor: Optional[LinkExtractor] = None):
        self.user_agent = user_agent
        self.request_timeout = request_timeout
        self.max_concurrent_requests = max_concurrent_requests
        self.custom_headers = dict(custom_headers or {})
        self.max_content_size = max_content_size
        self.link_extractor = link_extractor or LinkExtractor()

        self.logger = logging.getLogger(__name__)

        # Session management
        self.session: Optional[ClientSession] = None
        self.semaphore = asyncio.Semaphore(max_concurrent_requests)

        # Statistics
        self.stats = {
            'total_requests': 0,
            'successful_requests': 0,
            'failed_requests': 0,
            'total_bytes_downloaded': 0
        }

    async def start(self):
        """Initialize the fetcher session."""
        if self.session is None:
            timeout = ClientTimeout(total=self.request_timeout)
            headers = {'User-Agent': self.user_agent}
            headers.update(self.custom_headers)

            self.session = aiohttp.ClientSession(
                timeout=timeout,
                headers=headers,
                connector=aiohttp.TCPConnector(
                    limit=self.max_concurrent_requests * 2,
                    limit_per_host=10,
                    ttl_dns_cache=300,
                    use_dns_cache=True
                )
            )
            self.logger.info("HttpPageFetcher session started")

    async def close(self):
        """Close the fetcher session."""
        if self.session:
            await self.session.close()
            self.session = None
            self.logger.info("HttpPageFetcher session closed")

    async def fetch(self, url: str) -> PageResult:
        """
        Fetch a single URL and extract its links.

        Args:
            url: The URL to fetch

        Returns:
            PageResult with the page's outbound links

        Raises:
            FetchError: on timeouts, connection failures and HTTP error statuses
        """
        await self.start()
        start_time = time.time()

        async with self.semaphore:
            self.stats['total_requests'] += 1
            try:
                async with self.session.get(url) as response:
                    content_type = response.headers.get('content-type', '').lower()

                    if response.status >= 400:
                        raise FetchError(url, f"HTTP {response.status}", status_code=response.status)

                    if not any(text_type in content_type for text_type in self.TEXT_TYPES):
                        self.logger.debug(f"Skipping non-HTML content: {url} ({content_type})")
                        self.stats['successful_requests'] += 1
                        return PageResult(
                            url=url,
                            status_code=response.status,
                            fetch_time=time.time() - start_time,
                            content_type=content_type
                        )

                    content = await self._read_content_safely(response)
                    links = self.link_extractor.extract_links(str(response.url), content)

                    self.stats['successful_requests'] += 1
                    self.logger.debug(f"Fetched {url}: {response.status} ({len(links)} links)")
                    return PageResult(
                        url=url,
                        status_code=response.status,
                        outbound_links=links,
                        fetch_time=time.time() - start_time,
                        content_type=content_type
                    )

            except FetchError:
                self.stats['failed_requests'] += 1
                raise

            except asyncio.TimeoutError as e:
                self.stats['failed_requests'] += 1
                self.logger.warning(f"Timeout fetching {url}")
                raise FetchError(url, "Request timeout") from e

            except ClientError as e:
                self.stats['failed_requests'] += 1
                self.logger.warning(f"Client error fetching {url}: {e}")
                raise FetchError(url, f"Client error: {e}") from e

    async def fetch_robots(self, origin: str) -> Optional[str]:
        """Fetch robots.txt for an origin; missing files mean no rules."""
        await self.start()
        robots_url = urljoin(origin, '/robots.txt')

        try:
            async with self.session.get(robots_url, timeout=ClientTimeout(total=10)) as response:
                if response.status == 200:
                    return await response.text()
                return None
        except (asyncio.TimeoutError, ClientError) as e:
            raise FetchError(robots_url, f"Could not fetch robots.txt: {e}") from e

    async def _read_content_safely(self, response) -> Optional[str]:
        """
        Read response content with size limit.

        Returns:
            Content string or None if too large
        """
        content_length = response.headers.get('content-length')
        if content_length and content_length.isdigit() and int(content_length) > self.max_content_size:
            self.logger.warning(f"Content too large ({content_length} bytes): {response.url}")
            return None

        content_bytes = b''
        async for chunk in response.content.iter_chunked(8192):
            content_bytes += chunk
            if len(content_bytes) > self.max_content_size:
                self.logger.warning(f"Content exceeded size limit during reading: {response.url}")
                return None

        self.stats['total_bytes_downloaded'] += len(content_bytes)

        encoding = response.charset or 'utf-8'
        try:
            return content_bytes.decode(encoding)
        except (UnicodeDecodeError, LookupError):
            return content_bytes.decode('utf-8', errors='ignore')

    def get_stats(self) -> Dict[str, int]:
        """Get fetcher statistics."""
        return self.stats.copy()
