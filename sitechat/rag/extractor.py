"""Main-content extraction from HTML with a readability-service fallback."""
import re
from dataclasses import dataclass
from typing import List, Optional, Tuple
from urllib.parse import urljoin, urldefrag, urlparse

import httpx
import structlog
from bs4 import BeautifulSoup

from sitechat import config
from sitechat.models import FallbackOutcome, TieredResult

logger = structlog.get_logger()

# Boilerplate removed before looking for the main content
NOISE_SELECTORS = (
    "script, style, nav, header, footer, .sidebar, .navigation, .menu, .ad, "
    ".advertisement, noscript, [role='navigation'], [role='banner'], "
    "[role='contentinfo']"
)

# Main-content candidates, most specific first
CONTENT_SELECTORS = [
    "article",
    "main",
    ".article-content",
    ".content",
    "#content",
    ".post-content",
    ".entry-content",
    "[role='main']",
    ".blog-post",
    ".post",
]

MIN_SELECTOR_CHARS = 100

_WHITESPACE = re.compile(r"\s+")

_MARKDOWN_CLEANUP = [
    (re.compile(r"!\[.*?\]\(.*?\)"), ""),  # images
    (re.compile(r"\[([^\]]+)\]\([^)]+\)"), r"\1"),  # links -> link text
    (re.compile(r"#{1,6}\s+"), ""),  # headings
    (re.compile(r"\*\*([^*]+)\*\*"), r"\1"),  # bold
    (re.compile(r"\*([^*]+)\*"), r"\1"),  # italic
    (re.compile(r"`{1,3}[^`]*`{1,3}"), ""),  # inline code and fences
    (re.compile(r"\n{3,}"), "\n\n"),
]

_READER_HEADER_PREFIXES = ("URL Source:", "Markdown Content:")


@dataclass(frozen=True)
class ExtractedContent:
    title: str
    content: str


@dataclass(frozen=True)
class JunkHeuristics:
    """Thresholds for spotting navigation spam and JS-rendered shells."""

    large_html_chars: int = config.JUNK_LARGE_HTML_CHARS
    min_text_ratio: float = config.JUNK_MIN_TEXT_RATIO
    nav_window_chars: int = config.JUNK_NAV_WINDOW_CHARS
    nav_keyword_threshold: int = config.JUNK_NAV_KEYWORD_THRESHOLD
    nav_keywords: Tuple[str, ...] = (
        "sign in",
        "sign up",
        "login",
        "menu",
        "navigation",
        "pricing",
        "docs",
        "blog",
    )
    placeholder_marker: str = "Loading..."
    placeholder_max_chars: int = 500


def _collapse(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip()


def extract(html: str) -> ExtractedContent:
    """Extract the page title and main text content from HTML.

    Args:
        html: Raw page HTML

    Returns:
        ExtractedContent with whitespace-collapsed text
    """
    soup = BeautifulSoup(html, "html.parser")
    title = _collapse(soup.title.get_text()) if soup.title else ""

    for element in soup.select(NOISE_SELECTORS):
        element.decompose()

    for selector in CONTENT_SELECTORS:
        element = soup.select_one(selector)
        if element is None:
            continue
        content = _collapse(element.get_text(" "))
        if len(content) > MIN_SELECTOR_CHARS:
            return ExtractedContent(title=title, content=content)

    # Full body often includes navigation text, callers check for junk
    root = soup.body or soup
    return ExtractedContent(title=title, content=_collapse(root.get_text(" ")))


def extract_links(html: str, base_url: str) -> List[str]:
    """Collect absolute http(s) links from HTML.

    Links are resolved against base_url, stripped of fragments and
    deduplicated in document order. Navigation elements are included, so
    the crawl can follow site menus.
    """
    soup = BeautifulSoup(html, "html.parser")
    links: List[str] = []
    seen = set()

    for anchor in soup.select("a[href]"):
        href = anchor.get("href", "").strip()
        if not href:
            continue
        try:
            absolute, _ = urldefrag(urljoin(base_url, href))
            parsed = urlparse(absolute)
        except ValueError:
            continue
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            continue
        if absolute not in seen:
            seen.add(absolute)
            links.append(absolute)

    return links


def is_likely_junk_content(
    content: str, html_length: int, heuristics: JunkHeuristics = None
) -> bool:
    """Detect navigation spam or JS-framework placeholders.

    Args:
        content: Extracted text
        html_length: Length of the raw HTML the text came from
        heuristics: Thresholds (defaults from config)

    Returns:
        True if the text is probably not the page's real content
    """
    heuristics = heuristics or JunkHeuristics()

    # Large HTML with little text is usually a client-rendered shell
    if (
        html_length > heuristics.large_html_chars
        and len(content) < html_length * heuristics.min_text_ratio
    ):
        return True

    window = content[: heuristics.nav_window_chars].lower()
    nav_hits = sum(1 for keyword in heuristics.nav_keywords if keyword in window)
    if nav_hits >= heuristics.nav_keyword_threshold:
        return True

    if (
        heuristics.placeholder_marker in content
        and len(content) < heuristics.placeholder_max_chars
    ):
        return True

    return False


class ReaderClient:
    """Client for a remote readability service returning plain text."""

    def __init__(
        self,
        base_url: str = None,
        timeout: float = None,
        min_content_chars: int = None,
        transport: httpx.AsyncBaseTransport = None,
    ):
        self.base_url = (base_url or config.READER_BASE_URL).rstrip("/")
        self.timeout = timeout or config.READER_TIMEOUT
        self.min_content_chars = min_content_chars or config.MIN_READER_CONTENT_CHARS
        self.transport = transport

    async def fetch(self, url: str) -> Optional[ExtractedContent]:
        """Fetch a readable rendition of a page.

        Returns:
            ExtractedContent, or None when the service fails or the text is
            too short to be useful. The title is empty when the service did
            not report one.
        """
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self.transport
            ) as client:
                response = await client.get(
                    f"{self.base_url}/{url}",
                    headers={"Accept": "text/plain"},
                )
        except httpx.HTTPError as e:
            logger.warning("reader_request_failed", url=url, error=str(e))
            return None

        if response.status_code >= 400:
            logger.warning(
                "reader_request_rejected", url=url, status_code=response.status_code
            )
            return None

        result = self.parse(response.text)
        if len(result.content) < self.min_content_chars:
            logger.info(
                "reader_content_too_short", url=url, content_length=len(result.content)
            )
            return None

        return result

    @staticmethod
    def parse(text: str) -> ExtractedContent:
        """Split reader output into title and markdown-free content."""
        lines = text.split("\n")
        title = ""

        if lines and lines[0].startswith("# "):
            title = lines[0][2:].strip()
            lines = lines[1:]
        elif lines and lines[0].startswith("Title: "):
            title = lines[0][len("Title: "):].strip()
            lines = lines[1:]

        lines = [line for line in lines if not line.startswith(_READER_HEADER_PREFIXES)]
        content = "\n".join(lines).strip()

        for pattern, replacement in _MARKDOWN_CLEANUP:
            content = pattern.sub(replacement, content)

        return ExtractedContent(title=title, content=content.strip())


class ContentExtractor:
    """Local extraction first, readability service when that looks poor."""

    def __init__(
        self,
        reader: ReaderClient = None,
        heuristics: JunkHeuristics = None,
        min_primary_chars: int = None,
    ):
        self.reader = reader or ReaderClient()
        self.heuristics = heuristics or JunkHeuristics()
        self.min_primary_chars = min_primary_chars or config.MIN_PRIMARY_CONTENT_CHARS

    def needs_fallback(self, extracted: ExtractedContent, html_length: int) -> bool:
        return len(extracted.content) < self.min_primary_chars or is_likely_junk_content(
            extracted.content, html_length, self.heuristics
        )

    async def extract_with_fallback(
        self, html: str, url: str
    ) -> TieredResult[ExtractedContent]:
        """Extract page content, trying the reader for thin or junk pages.

        Args:
            html: Raw page HTML
            url: Page URL, passed to the readability service

        Returns:
            TieredResult tagged primary, fallback, or both_failed. On
            both_failed the value is the local extraction.
        """
        primary = extract(html)

        if not self.needs_fallback(primary, len(html)):
            return TieredResult(primary, FallbackOutcome.PRIMARY)

        logger.info(
            "extraction_trying_reader",
            url=url,
            content_length=len(primary.content),
            html_length=len(html),
        )
        fallback = await self.reader.fetch(url)

        if fallback is None:
            return TieredResult(primary, FallbackOutcome.BOTH_FAILED)

        return TieredResult(
            ExtractedContent(
                title=fallback.title or primary.title, content=fallback.content
            ),
            FallbackOutcome.FALLBACK,
        )
