import json
from dataclasses import asdict
from unittest.mock import MagicMock, patch

import httpx
import pytest
from bs4 import BeautifulSoup
from openai import OpenAIError

from knowledge.models import KnowledgeBaseDocument, ScrapeJob
from knowledge.serializers import AdvancedScrapeOptions, AIScrapeOptions, ScrapeOptions
from knowledge.services.scraping import (
    content_roots,
    crawl,
    export_job,
    extract_images,
    extract_links,
    extract_lists,
    extract_page_metadata,
    extract_structured_data,
    extract_tables,
    extract_text,
    extract_videos,
    fetch_page,
    run_scrape_job,
    scrape_page,
    search_scraped_documents,
)

PAGE = """
<html>
<head>
  <title>Acme Pricing</title>
  <meta name="description" content="Plans and prices">
  <meta name="keywords" content="pricing, plans ,">
  <script type="application/ld+json">{"@type": "Organization", "name": "Acme"}</script>
  <script type="application/ld+json">not json</script>
</head>
<body>
  <header><p>Header text</p></header>
  <main>
    <h1>Pricing</h1>
    <p>Our plans start at $10.</p>
    <div>Leaf div text</div>
    <img src="/img/logo.png" alt="Acme logo">
    <img src="data:image/png;base64,AAAA">
    <iframe src="https://www.youtube.com/embed/dQw4w9WgXcQ"></iframe>
    <iframe src="https://player.vimeo.com/video/76979871"></iframe>
    <video src="/media/intro.mp4" poster="/media/poster.jpg"><source src="/media/intro.webm"></video>
    <table>
      <caption>Plans</caption>
      <thead><tr><th>Plan</th><th>Price</th></tr></thead>
      <tbody><tr><td>Basic</td><td>$10</td></tr></tbody>
    </table>
    <ol><li>Sign up</li><li>Pay</li></ol>
    <a href="/features">Features</a>
    <a href="https://blog.example.com/post#comments">Blog</a>
    <a href="https://other.com/x">Other</a>
    <a href="#top">Top</a>
    <a href="mailto:sales@example.com">Mail</a>
    <a href="/logout">Logout</a>
  </main>
  <footer><p>Footer text</p></footer>
</body>
</html>
"""

BASE_URL = "https://example.com/pricing"


def soup():
    return BeautifulSoup(PAGE, "html.parser")


# =============================================================================
# Extraction
# =============================================================================


def test_extract_page_metadata():
    assert extract_page_metadata(soup()) == {
        "page_title": "Acme Pricing",
        "page_description": "Plans and prices",
        "page_keywords": ["pricing", "plans"],
    }


def test_content_roots_strip_header_and_footer():
    roots = content_roots(soup(), ScrapeOptions())
    assert extract_text(roots) == ["[h1] Pricing", "Our plans start at $10.", "Leaf div text"]

    roots = content_roots(soup(), ScrapeOptions(include_header=True, include_footer=True))
    assert "Header text" in extract_text(roots)
    assert "Footer text" in extract_text(roots)

    roots = content_roots(soup(), ScrapeOptions(selector="table"))
    assert [root.name for root in roots] == ["table"]


def test_extract_media():
    roots = content_roots(soup(), ScrapeOptions())
    assert extract_images(roots, BASE_URL) == ["https://example.com/img/logo.png#alt=Acme%20logo"]
    assert extract_videos(roots) == [
        "/media/intro.mp4",
        "/media/intro.mp4#poster=/media/poster.jpg",
        "/media/intro.webm",
        "https://www.youtube.com/watch?v=dQw4w9WgXcQ",
        "https://vimeo.com/76979871",
    ]


def test_extract_tables_and_lists():
    roots = content_roots(soup(), ScrapeOptions())
    assert extract_tables(roots) == [
        {"id": "table-0", "caption": "Plans", "headers": ["Plan", "Price"], "rows": [["Basic", "$10"]]}
    ]
    assert extract_lists(roots) == [{"id": "list-0", "type": "ordered", "items": ["Sign up", "Pay"]}]


def test_extract_structured_data():
    assert extract_structured_data(soup()) == {"Organization": {"@type": "Organization", "name": "Acme"}}


def test_extract_links():
    options = ScrapeOptions(advanced_options=AdvancedScrapeOptions(follow_links=True, exclude_urls=["logout"]))
    assert extract_links(soup(), BASE_URL, options) == [
        "https://example.com/features",
        "https://blog.example.com/post",
    ]

    options = ScrapeOptions(advanced_options=AdvancedScrapeOptions(allowed_domains=["other.com"]))
    assert extract_links(soup(), BASE_URL, options) == ["https://other.com/x"]


def test_scrape_page_accumulates_into_job(scrape_job_factory):
    job = scrape_job_factory(url=BASE_URL)
    options = ScrapeOptions(scrape_images=True, scrape_videos=True)
    page, links = scrape_page(PAGE, BASE_URL, job, options, is_first=True)

    assert page.title == "Acme Pricing"
    assert page.text == ["[h1] Pricing", "Our plans start at $10.", "Leaf div text"]
    assert links == []
    assert job.metadata["page_title"] == "Acme Pricing"
    assert job.metadata["total_elements"] == 3 + 1 + 5 + 1 + 1
    assert job.data["structured_data"] == {"Organization": {"@type": "Organization", "name": "Acme"}}


# =============================================================================
# Crawling
# =============================================================================


def test_fetch_page_retries():
    client = MagicMock()
    page = MagicMock(text="<html></html>")
    client.get.side_effect = [httpx.ConnectError("reset"), page]
    with patch("knowledge.services.scraping.time.sleep") as mock_sleep:
        assert fetch_page(client, "https://example.com/", retries=2) == "<html></html>"
    mock_sleep.assert_called_once_with(2)

    client.get.side_effect = httpx.ConnectError("down")
    with patch("knowledge.services.scraping.time.sleep"), pytest.raises(httpx.ConnectError):
        fetch_page(client, "https://example.com/", retries=1)
    assert client.get.call_count == 4

    client.get.reset_mock()
    with patch("knowledge.services.scraping.time.sleep") as mock_sleep, pytest.raises(httpx.ConnectError):
        fetch_page(client, "https://example.com/", retries=0)
    assert client.get.call_count == 1
    mock_sleep.assert_not_called()


SITE = {
    "https://example.com/": '<html><title>Home</title><body><p>Welcome home</p><a href="/about">About</a>'
    '<a href="/broken">Broken</a></body></html>',
    "https://example.com/about": '<html><title>About</title><body><p>About us</p><a href="/deep">Deep</a></body></html>',
}


def fake_fetch(client, url, retries):
    if url not in SITE:
        raise httpx.HTTPStatusError("404", request=httpx.Request("GET", url), response=httpx.Response(404))
    return SITE[url]


def test_crawl_follows_links(scrape_job_factory):
    job = scrape_job_factory(url="https://example.com/")
    options = ScrapeOptions(advanced_options=AdvancedScrapeOptions(follow_links=True, max_depth=1))
    with patch("knowledge.services.scraping.fetch_page", side_effect=fake_fetch) as mock_fetch:
        pages = crawl(job, options)

    assert [call.args[1] for call in mock_fetch.call_args_list] == [
        "https://example.com/",
        "https://example.com/about",
        "https://example.com/broken",
    ]
    assert [page.url for page in pages] == ["https://example.com/", "https://example.com/about"]
    assert job.data["text"] == ["Welcome home", "About us"]
    assert job.data["links"] == ["https://example.com/about", "https://example.com/broken"]
    assert "Failed to scrape https://example.com/broken" in job.error
    assert job.metadata["page_title"] == "Home"
    assert job.metadata["scraped_pages"] == 2
    assert job.progress == 90


def test_crawl_respects_max_pages(scrape_job_factory):
    job = scrape_job_factory(url="https://example.com/")
    options = ScrapeOptions(max_pages=1, advanced_options=AdvancedScrapeOptions(follow_links=True, max_depth=3))
    with patch("knowledge.services.scraping.fetch_page", side_effect=fake_fetch):
        pages = crawl(job, options)
    assert [page.url for page in pages] == ["https://example.com/"]


def test_run_scrape_job(scrape_job_factory, knowledge_base_factory):
    knowledge_base = knowledge_base_factory()
    options = ScrapeOptions(ai_options=AIScrapeOptions(generate_summary=True, extract_keywords=True))
    job = scrape_job_factory(url="https://example.com/", knowledge_base=knowledge_base, options=asdict(options))
    with (
        patch("knowledge.services.scraping.fetch_page", side_effect=fake_fetch),
        patch(
            "knowledge.services.scraping.chat_completion",
            side_effect=[(" A welcoming home page. ", 10, 5), ("home, welcome ,", 10, 3)],
        ),
    ):
        run_scrape_job(str(job.id))

    job.refresh_from_db()
    assert job.status == ScrapeJob.Status.COMPLETED
    assert job.progress == 100
    assert job.ai_analysis == {"summary": "A welcoming home page.", "keywords": ["home", "welcome"]}
    document = KnowledgeBaseDocument.objects.get(knowledge_base=knowledge_base)
    assert document.title == "Home"
    assert document.content == "Welcome home"
    assert document.metadata == {"source": "scrape", "scrape_job_id": str(job.id)}


def test_run_scrape_job_survives_ai_failure(scrape_job_factory):
    options = ScrapeOptions(ai_options=AIScrapeOptions(generate_summary=True))
    job = scrape_job_factory(url="https://example.com/", options=asdict(options))
    with (
        patch("knowledge.services.scraping.fetch_page", side_effect=fake_fetch),
        patch("knowledge.services.scraping.chat_completion", side_effect=OpenAIError("quota exceeded")),
    ):
        run_scrape_job(str(job.id))

    job.refresh_from_db()
    assert job.status == ScrapeJob.Status.COMPLETED
    assert "AI analysis failed: quota exceeded" in job.error


def test_run_scrape_job_failure(scrape_job_factory):
    job = scrape_job_factory()
    with (
        patch("knowledge.services.scraping.crawl", side_effect=RuntimeError("boom")),
        pytest.raises(RuntimeError),
    ):
        run_scrape_job(str(job.id))

    job.refresh_from_db()
    assert job.status == ScrapeJob.Status.FAILED
    assert job.error == "boom"


# =============================================================================
# Search and export
# =============================================================================


def test_search_scraped_documents(user_factory, knowledge_base_factory, knowledge_base_document_factory):
    owner = user_factory()
    mine = knowledge_base_factory(owner=owner)
    scraped = knowledge_base_document_factory(
        knowledge_base=mine, content="Shipping takes 3 days.", metadata={"source": "scrape"}
    )
    knowledge_base_document_factory(knowledge_base=mine, content="Shipping is free.", metadata={})
    knowledge_base_document_factory(content="Shipping to Mars.", metadata={"source": "scrape"})

    assert [result.id for result in search_scraped_documents("shipping", owner=owner)] == [str(scraped.id)]
    assert len(search_scraped_documents("shipping")) == 2


@pytest.fixture
def finished_job(scrape_job_factory):
    job = scrape_job_factory(url="https://example.com/", status=ScrapeJob.Status.COMPLETED)
    job.data["text"] = ["Hello, world"]
    job.data["images"] = ["https://example.com/a.png"]
    job.data["links"] = ["https://example.com/about"]
    job.metadata["page_title"] = "Home"
    job.save()
    return job


def test_export_csv(finished_job):
    body, content_type = export_job(finished_job, "csv")
    assert content_type == "text/csv"
    assert body.splitlines() == [
        "Content,Type",
        '"Hello, world",text',
        "https://example.com/a.png,image",
        "https://example.com/about,link",
    ]


def test_export_json_and_xml(finished_job):
    body, content_type = export_job(finished_job, "json")
    assert content_type == "application/json"
    assert json.loads(body)["data"]["text"] == ["Hello, world"]

    body, content_type = export_job(finished_job, "xml")
    assert content_type == "application/xml"
    assert body.startswith("<?xml")
    assert "<title>Home</title>" in body
    assert "<image>https://example.com/a.png</image>" in body


def test_export_unknown_format(finished_job):
    with pytest.raises(ValueError):
        export_job(finished_job, "pdf")
