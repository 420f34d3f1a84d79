"""Breadth-first same-domain crawler."""
import asyncio
from collections import deque
from dataclasses import dataclass
from typing import AsyncIterator, Callable, List, Optional, Union
from urllib.parse import urldefrag, urlparse

import httpx
import structlog

from sitechat import config
from sitechat.models import CrawledPage, CrawlProgress, FallbackOutcome
from sitechat.rag.extractor import ContentExtractor, extract_links

logger = structlog.get_logger()

CrawlEvent = Union[CrawlProgress, CrawledPage]


@dataclass(frozen=True)
class FetchedPage:
    html: str
    final_url: str


def normalize_url(url: str) -> str:
    """Strip the fragment so URLs differing only by #anchor dedupe."""
    return urldefrag(url)[0]


def _hostname(url: str) -> Optional[str]:
    return urlparse(url).hostname


class PageFetcher:
    """Fetches HTML pages; every failure is reported as None."""

    def __init__(
        self,
        user_agent: str = None,
        timeout: float = None,
        transport: httpx.AsyncBaseTransport = None,
    ):
        self.user_agent = user_agent or config.CRAWL_USER_AGENT
        self.timeout = timeout or config.CRAWL_TIMEOUT
        self.transport = transport

    async def fetch(self, url: str) -> Optional[FetchedPage]:
        """Fetch a page, following redirects.

        Args:
            url: Page URL

        Returns:
            FetchedPage with the HTML and post-redirect URL, or None on
            timeout, transport error, malformed URL, non-2xx status or
            non-HTML content. The body is only downloaded for HTML pages.
        """
        try:
            # Bounds the whole exchange, including slow bodies and redirect chains
            async with asyncio.timeout(self.timeout):
                async with httpx.AsyncClient(
                    timeout=self.timeout,
                    follow_redirects=True,
                    headers={"User-Agent": self.user_agent},
                    transport=self.transport,
                ) as client:
                    async with client.stream("GET", url) as response:
                        if not response.is_success:
                            logger.info(
                                "page_fetch_rejected",
                                url=url,
                                status_code=response.status_code,
                            )
                            return None

                        content_type = response.headers.get("content-type", "")
                        if "text/html" not in content_type:
                            logger.info("page_not_html", url=url, content_type=content_type)
                            return None

                        await response.aread()
                        return FetchedPage(html=response.text, final_url=str(response.url))
        except TimeoutError:
            logger.warning("page_fetch_timeout", url=url, timeout=self.timeout)
            return None
        except (httpx.HTTPError, httpx.InvalidURL, ValueError) as e:
            # Malformed URLs count as unreachable
            logger.warning("page_fetch_failed", url=url, error=str(e))
            return None


class Crawler:
    """Bounded BFS over a site, yielding pages with extracted text."""

    def __init__(
        self,
        fetcher: PageFetcher = None,
        extractor: ContentExtractor = None,
        min_page_chars: int = None,
    ):
        self.fetcher = fetcher or PageFetcher()
        self.extractor = extractor or ContentExtractor()
        self.min_page_chars = min_page_chars or config.MIN_PAGE_CHARS

    async def crawl_events(
        self,
        start_url: str,
        max_pages: int = None,
        same_domain: bool = True,
    ) -> AsyncIterator[CrawlEvent]:
        """Crawl from start_url, yielding progress events and pages.

        A CrawlProgress precedes every fetch attempt; a final CrawlProgress
        reports (pages, pages). Pages are yielded in BFS order.

        Args:
            start_url: Seed URL
            max_pages: Stop after this many kept pages
            same_domain: Only follow links to the start URL's host

        Yields:
            CrawlProgress and CrawledPage events
        """
        max_pages = max_pages or config.DEFAULT_MAX_PAGES
        queue = deque([start_url])
        visited = set()
        allowed_hosts = {_hostname(start_url)}
        pages_found = 0
        outcomes = {outcome.value: 0 for outcome in FallbackOutcome}

        logger.info("crawl_started", start_url=start_url, max_pages=max_pages)

        while queue and pages_found < max_pages:
            url = queue.popleft()
            normalized = normalize_url(url)
            if normalized in visited:
                continue
            visited.add(normalized)

            yield CrawlProgress(crawled=pages_found, total=max_pages, current_url=url)

            fetched = await self.fetcher.fetch(url)
            if fetched is None:
                continue

            visited.add(normalize_url(fetched.final_url))
            if url == start_url and same_domain:
                # e.g. example.com -> www.example.com
                allowed_hosts.add(_hostname(fetched.final_url))

            result = await self.extractor.extract_with_fallback(
                fetched.html, fetched.final_url
            )
            outcomes[result.outcome.value] += 1
            extracted = result.value

            if len(extracted.content) >= self.min_page_chars:
                pages_found += 1
                logger.debug(
                    "crawl_page_extracted",
                    url=fetched.final_url,
                    content_length=len(extracted.content),
                    outcome=result.outcome.value,
                )
                yield CrawledPage(
                    url=fetched.final_url,
                    title=extracted.title or fetched.final_url,
                    content=extracted.content,
                )
            else:
                logger.info(
                    "crawl_page_skipped",
                    url=fetched.final_url,
                    content_length=len(extracted.content),
                )

            for link in extract_links(fetched.html, fetched.final_url):
                if normalize_url(link) in visited:
                    continue
                if same_domain and _hostname(link) not in allowed_hosts:
                    continue
                queue.append(link)

        logger.info(
            "crawl_completed",
            start_url=start_url,
            pages=pages_found,
            urls_visited=len(visited),
            extraction_outcomes=outcomes,
        )

        yield CrawlProgress(crawled=pages_found, total=pages_found)

    async def crawl(
        self,
        start_url: str,
        max_pages: int = None,
        same_domain: bool = True,
        on_progress: Optional[Callable[[CrawlProgress], None]] = None,
    ) -> List[CrawledPage]:
        """Crawl and collect pages (convenience wrapper over crawl_events)."""
        pages: List[CrawledPage] = []
        async for event in self.crawl_events(start_url, max_pages, same_domain):
            if isinstance(event, CrawledPage):
                pages.append(event)
            elif on_progress:
                on_progress(event)
        return pages
