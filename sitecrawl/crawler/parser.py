"""
HTML link extraction for discovered pages.
"""

import logging
from typing import List, Optional
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup


SKIP_EXTENSIONS = (
    '.jpg', '.jpeg', '.png', '.gif', '.bmp', '.svg', '.webp',
    '.pdf', '.doc', '.docx', '.xls', '.xlsx', '.ppt', '.pptx',
    '.zip', '.rar', '.tar', '.gz', '.exe', '.dmg', '.iso',
    '.mp3', '.mp4', '.avi', '.mov', '.wmv', '.flv',
    '.css', '.js', '.ico', '.woff', '.woff2', '.ttf', '.eot'
)

SKIP_SCHEMES = ('javascript:', 'vbscript:', 'mailto:', 'tel:', 'data:')


class LinkExtractor:
    """
    Extracts outbound links from HTML documents.

    Relative links are resolved against the page URL; fragments-only links,
    script pseudo-links and links to binary assets are dropped.
    """

    def __init__(self, parser: str = 'lxml'):
        self.parser = parser
        self.logger = logging.getLogger(__name__)

    def extract_links(self, base_url: str, html_content: Optional[str]) -> List[str]:
        """Return absolute http(s) links in document order, without duplicates."""
        if not html_content:
            return []

        soup = BeautifulSoup(html_content, self.parser)

        base_tag = soup.find('base', href=True)
        if base_tag:
            base_url = urljoin(base_url, base_tag['href'].strip())

        links = []
        seen = set()
        for anchor in soup.find_all('a', href=True):
            href = anchor['href'].strip()
            if not href or href.startswith('#'):
                continue
            if href.lower().startswith(SKIP_SCHEMES):
                continue

            absolute_url = urljoin(base_url, href)
            if not self.is_crawlable(absolute_url) or absolute_url in seen:
                continue

            seen.add(absolute_url)
            links.append(absolute_url)

        self.logger.debug(f"Extracted {len(links)} links from {base_url}")
        return links

    def is_crawlable(self, url: str) -> bool:
        """Check if URL is an http(s) page worth fetching."""
        try:
            parsed = urlparse(url)
        except ValueError:
            return False

        if parsed.scheme not in ('http', 'https') or not parsed.netloc:
            return False

        return not parsed.path.lower().endswith(SKIP_EXTENSIONS)
