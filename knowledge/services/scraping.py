import csv
import io
import json
import logging
import re
import time
import xml.etree.ElementTree as ET
from collections import deque
from dataclasses import dataclass
from urllib.parse import quote, urljoin, urlparse

import httpx
from bs4 import BeautifulSoup
from celery import shared_task
from django.conf import settings
from openai import OpenAIError

from chat.services.completion import chat_completion
from knowledge.models import KnowledgeBaseDocument, ScrapeJob
from knowledge.serializers import ScrapeJobSerializer, ScrapeOptions, ScrapeOptionsSerializer
from .query import search_documents

logger = logging.getLogger(__name__)

RETRY_WAIT_SECONDS = 2
ANALYSIS_TEXT_LIMIT = 12000

YOUTUBE_ID = re.compile(r"^.*(youtu\.be/|v/|e/|u/\w+/|embed/|v=)([^#&?]*).*")
VIMEO_ID = re.compile(
    r"vimeo\.com/(?:channels/(?:\w+/)?|groups/(?:[^/]*)/videos/|album/(?:\d+)/video/|video/|)(\d+)(?:$|/|\?)"
)

EXPORT_CONTENT_TYPES = {
    "json": "application/json",
    "csv": "text/csv",
    "xml": "application/xml",
}


@dataclass
class ScrapedPage:
    url: str
    title: str
    text: list[str]


# =============================================================================
# Extraction
# =============================================================================


def extract_page_metadata(soup: BeautifulSoup) -> dict:
    description = soup.find("meta", attrs={"name": "description"})
    keywords = soup.find("meta", attrs={"name": "keywords"})
    return {
        "page_title": soup.title.get_text(strip=True) if soup.title else "",
        "page_description": description.get("content", "") if description else "",
        "page_keywords": [k.strip() for k in keywords.get("content", "").split(",") if k.strip()] if keywords else [],
    }


def content_roots(soup: BeautifulSoup, options: ScrapeOptions) -> list:
    if not options.include_header:
        for header in soup.find_all("header"):
            header.decompose()
    if not options.include_footer:
        for footer in soup.find_all("footer"):
            footer.decompose()
    if options.selector:
        return soup.select(options.selector)
    return [soup.body or soup]


def extract_text(roots: list) -> list[str]:
    texts = []
    for root in roots:
        for heading in root.find_all(["h1", "h2", "h3", "h4", "h5", "h6"]):
            text = heading.get_text(" ", strip=True)
            if text:
                texts.append(f"[{heading.name}] {text}")
        for paragraph in root.find_all("p"):
            text = paragraph.get_text(" ", strip=True)
            if text:
                texts.append(text)
        # leaf containers only, nested text is already covered by their children
        for element in root.find_all(["div", "span", "article", "section"]):
            if element.find(True) is None:
                text = element.get_text(" ", strip=True)
                if text:
                    texts.append(text)
    return texts


def extract_images(roots: list, base_url: str) -> list[str]:
    images = []
    for root in roots:
        for img in root.find_all("img"):
            src = img.get("src")
            if not src or src.startswith("data:"):
                continue
            alt = img.get("alt", "")
            url = urljoin(base_url, src)
            images.append(f"{url}#alt={quote(alt)}" if alt else url)
    return images


def _canonical_video_url(src: str) -> str:
    if "youtube" in src or "youtu.be" in src:
        match = YOUTUBE_ID.match(src)
        if match and len(match.group(2)) == 11:
            return f"https://www.youtube.com/watch?v={match.group(2)}"
    elif "vimeo" in src:
        match = VIMEO_ID.search(src)
        if match:
            return f"https://vimeo.com/{match.group(1)}"
    return src


def extract_videos(roots: list) -> list[str]:
    videos = []
    for root in roots:
        for video in root.find_all("video"):
            src = video.get("src")
            if src:
                videos.append(src)
                if video.get("poster"):
                    videos.append(f"{src}#poster={video['poster']}")
            for source in video.find_all("source"):
                if source.get("src"):
                    videos.append(source["src"])
        for iframe in root.find_all("iframe"):
            if iframe.get("src"):
                videos.append(_canonical_video_url(iframe["src"]))
    return videos


def extract_tables(roots: list) -> list[dict]:
    tables = []
    for root in roots:
        for index, table in enumerate(root.find_all("table")):
            caption = table.find("caption")
            thead = table.find("thead")
            rows = table.find_all("tr")
            if thead is not None:
                headers = [cell.get_text(strip=True) for cell in thead.find_all(["th", "td"])]
                body_rows = [row for row in rows if row.find_parent("thead") is None]
            elif rows:
                headers = [cell.get_text(strip=True) for cell in rows[0].find_all(["th", "td"])]
                body_rows = rows[1:]
            else:
                headers, body_rows = [], []
            data_rows = [
                [cell.get_text(strip=True) for cell in row.find_all(["td", "th"])]
                for row in body_rows
                if row.find(["td", "th"])
            ]
            if headers or data_rows:
                tables.append(
                    {
                        "id": f"table-{index}",
                        "caption": caption.get_text(strip=True) if caption else None,
                        "headers": headers,
                        "rows": data_rows,
                    }
                )
    return tables


def extract_lists(roots: list) -> list[dict]:
    lists = []
    for root in roots:
        for index, element in enumerate(root.find_all(["ul", "ol"])):
            items = [item.get_text(" ", strip=True) for item in element.find_all("li")]
            items = [item for item in items if item]
            if items:
                lists.append(
                    {
                        "id": f"list-{index}",
                        "type": "ordered" if element.name == "ol" else "unordered",
                        "items": items,
                    }
                )
    return lists


def extract_structured_data(soup: BeautifulSoup) -> dict:
    structured = {}
    for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
        try:
            data = json.loads(script.string or "")
        except json.JSONDecodeError:
            logger.debug("Skipping unparsable JSON-LD block")
            continue
        items = data if isinstance(data, list) else [data]
        for item in items:
            if isinstance(item, dict) and item.get("@type"):
                structured[str(item["@type"])] = item
    return structured


def extract_links(soup: BeautifulSoup, base_url: str, options: ScrapeOptions) -> list[str]:
    advanced = options.advanced_options
    allowed_domains = advanced.allowed_domains or [urlparse(base_url).hostname]
    links = []
    for anchor in soup.find_all("a", href=True):
        href = anchor["href"].strip()
        if not href or href.startswith(("#", "javascript:", "mailto:")):
            continue
        full_url = urljoin(base_url, href).split("#")[0]
        hostname = urlparse(full_url).hostname or ""
        if not any(hostname == domain or hostname.endswith(f".{domain}") for domain in allowed_domains):
            continue
        if any(pattern in full_url for pattern in advanced.exclude_urls):
            continue
        if full_url not in links:
            links.append(full_url)
    return links


# =============================================================================
# Crawling
# =============================================================================


def fetch_page(client: httpx.Client, url: str, retries: int) -> str:
    for attempt in range(retries + 1):
        try:
            response = client.get(url)
            response.raise_for_status()
            return response.text
        except httpx.HTTPError as exc:
            logger.warning(f"Error scraping {url} (attempt {attempt + 1}/{retries + 1}): {exc}")
            if attempt == retries:
                raise
            time.sleep(RETRY_WAIT_SECONDS)


def scrape_page(html: str, url: str, job: ScrapeJob, options: ScrapeOptions, is_first: bool) -> tuple[ScrapedPage, list[str]]:
    soup = BeautifulSoup(html, "html.parser")
    page_metadata = extract_page_metadata(soup)
    if is_first:
        job.metadata.update(page_metadata)

    # read before content_roots strips header and footer
    structured = extract_structured_data(soup)
    links = extract_links(soup, url, options) if options.advanced_options.follow_links else []

    roots = content_roots(soup, options)
    text = extract_text(roots) if options.scrape_text else []
    job.data["text"].extend(text)
    if options.scrape_images:
        job.data["images"].extend(extract_images(roots, url))
    if options.scrape_videos:
        job.data["videos"].extend(extract_videos(roots))
    job.data["tables"].extend(extract_tables(roots))
    job.data["lists"].extend(extract_lists(roots))
    job.data["structured_data"].update(structured)

    job.metadata["total_elements"] = sum(
        len(job.data[key]) for key in ("text", "images", "videos", "tables", "lists")
    )
    return ScrapedPage(url=url, title=page_metadata["page_title"], text=text), links


def crawl(job: ScrapeJob, options: ScrapeOptions) -> list[ScrapedPage]:
    advanced = options.advanced_options
    retries = max(advanced.retries if advanced.retries is not None else settings.SCRAPER_MAX_RETRIES, 0)
    headers = {"User-Agent": advanced.user_agent or settings.SCRAPER_USER_AGENT, **advanced.headers}
    max_depth = max(advanced.max_depth, 1)

    pending = deque([(job.url, 0)])
    visited = {job.url}
    pages: list[ScrapedPage] = []
    processed = 0

    with httpx.Client(
        headers=headers, timeout=advanced.timeout or settings.SCRAPER_TIMEOUT_SECONDS, follow_redirects=True
    ) as client:
        while pending and processed < options.max_pages:
            url, depth = pending.popleft()
            processed += 1
            try:
                html = fetch_page(client, url, retries)
                page, links = scrape_page(html, url, job, options, is_first=not pages)
                pages.append(page)
                if depth < max_depth:
                    job.data["links"].extend(link for link in links if link not in visited)
                    for link in links:
                        if link not in visited:
                            visited.add(link)
                            pending.append((link, depth + 1))
            except httpx.HTTPError as exc:
                # a failing page is recorded but does not fail the job
                job.add_error(f"Failed to scrape {url}: {exc}")

            total = processed + len(pending)
            job.progress = min(90, 10 + (processed * 80) // max(total, 1))
            job.metadata["scraped_pages"] = len(pages)
            job.save(update_fields=["progress", "data", "metadata", "error", "updated_at"])

            if advanced.request_delay and pending:
                time.sleep(advanced.request_delay / 1000)
    return pages


# =============================================================================
# Post-processing
# =============================================================================


def analyze_content(job: ScrapeJob, options: ScrapeOptions):
    ai_options = options.ai_options
    if not (ai_options.generate_summary or ai_options.extract_keywords):
        return
    text = "\n".join(job.data["text"])[:ANALYSIS_TEXT_LIMIT]
    if not text:
        return
    try:
        if ai_options.generate_summary:
            summary, _, _ = chat_completion(
                "Goal: Summarize the following web page content in a short paragraph. "
                "Output format: just the summary.\n\nContent: " + text
            )
            job.ai_analysis["summary"] = summary.strip()
        if ai_options.extract_keywords:
            keywords, _, _ = chat_completion(
                "Goal: Extract up to 10 keywords from the following web page content. "
                "Output format: a comma-separated list of keywords.\n\nContent: " + text
            )
            job.ai_analysis["keywords"] = [k.strip() for k in keywords.split(",") if k.strip()]
    except OpenAIError as exc:
        logger.error(f"AI analysis failed for scrape job {job.id}: {exc}")
        job.add_error(f"AI analysis failed: {exc}")


def store_in_knowledge_base(job: ScrapeJob, pages: list[ScrapedPage]) -> int:
    if job.knowledge_base is None:
        return 0
    documents = [
        KnowledgeBaseDocument(
            knowledge_base=job.knowledge_base,
            title=(page.title or page.url)[:255],
            content="\n".join(page.text),
            source_url=page.url,
            metadata={"source": "scrape", "scrape_job_id": str(job.id)},
        )
        for page in pages
        if page.text
    ]
    KnowledgeBaseDocument.objects.bulk_create(documents)
    logger.info(f"Stored {len(documents)} scraped pages in knowledge base {job.knowledge_base_id}")
    return len(documents)


@shared_task
def run_scrape_job(job_id: str):
    job = ScrapeJob.objects.select_related("knowledge_base").get(id=job_id)
    serializer = ScrapeOptionsSerializer(data=job.options)
    serializer.is_valid(raise_exception=True)
    options: ScrapeOptions = serializer.validated_data
    try:
        job.progress = 10
        job.save(update_fields=["progress", "updated_at"])

        pages = crawl(job, options)

        job.progress = 90
        analyze_content(job, options)
        store_in_knowledge_base(job, pages)

        job.status = ScrapeJob.Status.COMPLETED
        job.progress = 100
        job.save()
        logger.info(f"Scrape job {job.id} completed with {len(pages)} pages")
    except Exception as exc:
        job.status = ScrapeJob.Status.FAILED
        job.add_error(str(exc))
        job.save()
        logger.exception(f"Scrape job {job.id} failed")
        raise


def search_scraped_documents(query: str, limit: int = 5, owner=None):
    documents = KnowledgeBaseDocument.objects.filter(metadata__source="scrape")
    if owner is not None:
        documents = documents.filter(knowledge_base__owner=owner)
    return search_documents(documents, query, limit)


# =============================================================================
# Export
# =============================================================================


def _export_rows(job: ScrapeJob):
    for key, row_type in (("text", "text"), ("images", "image"), ("videos", "video"), ("links", "link")):
        for value in job.data.get(key, []):
            yield value, row_type


def export_job(job: ScrapeJob, export_format: str) -> tuple[str, str]:
    """Render a job as json, csv or xml. Returns the body and its content type."""
    if export_format not in EXPORT_CONTENT_TYPES:
        raise ValueError(f"Unsupported export format '{export_format}'")

    if export_format == "json":
        body = json.dumps(ScrapeJobSerializer(job).data, indent=2, default=str)
    elif export_format == "csv":
        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(["Content", "Type"])
        writer.writerows(_export_rows(job))
        body = buffer.getvalue()
    else:
        root = ET.Element("scrape")
        ET.SubElement(root, "url").text = job.url
        ET.SubElement(root, "title").text = job.metadata.get("page_title", "")
        content = ET.SubElement(root, "content")
        for value, row_type in _export_rows(job):
            ET.SubElement(content, row_type).text = value
        body = ET.tostring(root, encoding="unicode", xml_declaration=True)
    return body, EXPORT_CONTENT_TYPES[export_format]
