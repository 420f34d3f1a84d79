import asyncio

import httpx
import pytest

from sitechat.models import CrawledPage, CrawlProgress
from sitechat.rag.crawler import Crawler, PageFetcher, normalize_url
from sitechat.rag.extractor import ContentExtractor, ReaderClient
from tests.fakes import long_text


def make_crawler(web, **kwargs) -> Crawler:
    return Crawler(
        fetcher=PageFetcher(transport=web.transport),
        extractor=ContentExtractor(reader=ReaderClient(transport=web.transport)),
        **kwargs,
    )


async def collect(crawler, *args, **kwargs):
    return [event async for event in crawler.crawl_events(*args, **kwargs)]


def test_normalize_url_strips_fragment():
    assert normalize_url("https://a.test/page#section") == "https://a.test/page"
    assert normalize_url("https://a.test/page") == "https://a.test/page"


@pytest.mark.asyncio
async def test_crawl_is_breadth_first_and_same_domain(docs_site):
    pages = await make_crawler(docs_site).crawl("https://docs.example.com/")

    assert [page.url for page in pages] == [
        "https://docs.example.com/",
        "https://docs.example.com/guide",
        "https://docs.example.com/api",
    ]
    assert [page.title for page in pages] == ["Example Docs", "Guide", "API Reference"]
    assert "https://other.example.org/" not in docs_site.requested


@pytest.mark.asyncio
async def test_each_url_is_fetched_once(docs_site):
    await make_crawler(docs_site).crawl("https://docs.example.com/")

    # "/api" and "/api#auth" are linked from two pages
    assert docs_site.requested.count("https://docs.example.com/api") == 1
    assert len(docs_site.requested) == 3


@pytest.mark.asyncio
async def test_progress_precedes_each_fetch_and_ends_with_totals(docs_site):
    events = await collect(make_crawler(docs_site), "https://docs.example.com/", 20)

    assert events == [
        CrawlProgress(0, 20, "https://docs.example.com/"),
        events[1],
        CrawlProgress(1, 20, "https://docs.example.com/guide"),
        events[3],
        CrawlProgress(2, 20, "https://docs.example.com/api"),
        events[5],
        CrawlProgress(3, 3),
    ]
    assert all(isinstance(events[i], CrawledPage) for i in (1, 3, 5))


@pytest.mark.asyncio
async def test_max_pages_bounds_the_crawl(docs_site):
    events = await collect(make_crawler(docs_site), "https://docs.example.com/", 2)

    pages = [event for event in events if isinstance(event, CrawledPage)]
    assert len(pages) == 2
    assert events[-1] == CrawlProgress(2, 2)
    assert "https://docs.example.com/api" not in docs_site.requested


@pytest.mark.asyncio
async def test_cross_domain_crawl_follows_external_links(docs_site):
    pages = await make_crawler(docs_site).crawl(
        "https://docs.example.com/", same_domain=False
    )

    assert [page.url for page in pages][-1] == "https://other.example.org/"
    assert len(pages) == 4


@pytest.mark.asyncio
async def test_failed_and_non_html_pages_are_skipped(docs_site):
    docs_site.add_response(
        "https://docs.example.com/api",
        httpx.Response(200, headers={"content-type": "application/json"}, json={}),
    )
    docs_site.add_html("https://docs.example.com/guide", "oops", status=500)

    pages = await make_crawler(docs_site).crawl("https://docs.example.com/")

    assert [page.url for page in pages] == ["https://docs.example.com/"]


@pytest.mark.asyncio
async def test_unreachable_start_url_yields_no_pages(fake_web):
    events = await collect(make_crawler(fake_web), "https://nowhere.test/")

    assert events == [CrawlProgress(0, 20, "https://nowhere.test/"), CrawlProgress(0, 0)]


@pytest.mark.asyncio
async def test_thin_pages_are_skipped_but_their_links_followed(fake_web):
    fake_web.add_page("https://site.test/", "Hub", "Hi", links=("/deep",))
    fake_web.add_page("https://site.test/deep", "Deep", long_text("deep"))

    pages = await make_crawler(fake_web).crawl("https://site.test/")

    assert [page.url for page in pages] == ["https://site.test/deep"]
    # Thin local extraction asked the reader first
    assert fake_web.reader_requested == ["https://site.test/"]


@pytest.mark.asyncio
async def test_untitled_page_is_titled_by_its_url(fake_web):
    fake_web.add_html(
        "https://site.test/",
        f"<html><body><article>{long_text('untitled')}</article></body></html>",
    )

    pages = await make_crawler(fake_web).crawl("https://site.test/")

    assert pages[0].title == "https://site.test/"


@pytest.mark.asyncio
async def test_start_redirect_allows_the_final_host(fake_web):
    fake_web.add_redirect("https://example.com/", "https://www.example.com/")
    fake_web.add_page(
        "https://www.example.com/", "Home", long_text("home"), links=("/about",)
    )
    fake_web.add_page("https://www.example.com/about", "About", long_text("about"))

    pages = await make_crawler(fake_web).crawl("https://example.com/")

    assert [page.url for page in pages] == [
        "https://www.example.com/",
        "https://www.example.com/about",
    ]


@pytest.mark.asyncio
async def test_redirect_target_is_not_fetched_again(fake_web):
    fake_web.add_redirect("https://site.test/old", "https://site.test/new")
    fake_web.add_page(
        "https://site.test/", "Home", long_text("home"), links=("/old", "/new")
    )
    fake_web.add_page("https://site.test/new", "New", long_text("new"))

    pages = await make_crawler(fake_web).crawl("https://site.test/")

    assert [page.url for page in pages] == ["https://site.test/", "https://site.test/new"]
    assert fake_web.requested.count("https://site.test/new") == 1


@pytest.mark.asyncio
async def test_crawl_reports_progress_to_callback(docs_site):
    seen = []

    await make_crawler(docs_site).crawl("https://docs.example.com/", on_progress=seen.append)

    assert [event.crawled for event in seen] == [0, 1, 2, 3]


@pytest.mark.asyncio
async def test_fetcher_sends_user_agent():
    headers = []

    def handler(request):
        headers.append(request.headers["user-agent"])
        return httpx.Response(200, headers={"content-type": "text/html"}, text="<p>x</p>")

    fetcher = PageFetcher(user_agent="TestBot/1.0", transport=httpx.MockTransport(handler))
    page = await fetcher.fetch("https://site.test/")

    assert headers == ["TestBot/1.0"]
    assert page.html == "<p>x</p>"
    assert page.final_url == "https://site.test/"


@pytest.mark.asyncio
async def test_fetcher_gives_up_after_timeout():
    async def slow_handler(request):
        await asyncio.sleep(5)
        return httpx.Response(200, headers={"content-type": "text/html"}, text="late")

    fetcher = PageFetcher(timeout=0.05, transport=httpx.MockTransport(slow_handler))

    assert await fetcher.fetch("https://slow.test/") is None


@pytest.mark.asyncio
async def test_fetcher_treats_malformed_urls_as_unreachable():
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200, headers={"content-type": "text/html"}, text="<p>x</p>")

    fetcher = PageFetcher(transport=httpx.MockTransport(handler))

    assert await fetcher.fetch("not a url") is None
    assert await fetcher.fetch("https://example.com:99999/") is None
    assert requests == []


@pytest.mark.asyncio
async def test_fetcher_skips_non_html_bodies_without_downloading_them():
    consumed = []

    async def pdf_body():
        for _ in range(1000):
            consumed.append(1)
            yield b"%PDF" * 16384

    def handler(request):
        return httpx.Response(
            200, headers={"content-type": "application/pdf"}, content=pdf_body()
        )

    fetcher = PageFetcher(transport=httpx.MockTransport(handler))

    assert await fetcher.fetch("https://site.test/manual.pdf") is None
    assert consumed == []


@pytest.mark.asyncio
async def test_fetcher_skips_error_bodies_without_downloading_them():
    consumed = []

    async def error_body():
        consumed.append(1)
        yield b"<html>gone</html>"

    def handler(request):
        return httpx.Response(
            410, headers={"content-type": "text/html"}, content=error_body()
        )

    fetcher = PageFetcher(transport=httpx.MockTransport(handler))

    assert await fetcher.fetch("https://site.test/old") is None
    assert consumed == []


@pytest.mark.asyncio
async def test_fetcher_reads_streamed_html_bodies():
    async def html_body():
        yield b"<html><body><p>first "
        yield b"second</p></body></html>"

    def handler(request):
        return httpx.Response(
            200, headers={"content-type": "text/html; charset=utf-8"}, content=html_body()
        )

    fetcher = PageFetcher(transport=httpx.MockTransport(handler))
    page = await fetcher.fetch("https://site.test/")

    assert page.html == "<html><body><p>first second</p></body></html>"
