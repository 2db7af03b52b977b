"""
Publication Discovery — crawl analyst / publisher sites for new publications.

For every analyst we derive candidate source URLs (email domain, personal
website, known publisher domains for their firm), then per source:
  1. Fetch the page and run a site-specific parser (Aptitude, Bersin) or the
     generic one over ``article`` / ``.post`` / ``.research-item`` blocks.
  2. Follow any RSS/Atom feeds the page advertises (feedparser).
  3. Read the site's ``sitemap.xml`` once per host and keep the best-scoring
     URLs (``score_candidate_url``) as extra candidates.

Candidates are deduplicated (URL, then title similarity), scored by
``publication_analyzer`` and sorted by impact.  Progress is streamed to a
``ProgressRun`` as ``{type, data}`` events; with ``save=True`` high-impact
finds are stored as ``publications`` rows.
"""

import asyncio
import logging
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional
from urllib.parse import urljoin, urlparse

import feedparser
import httpx
from bs4 import BeautifulSoup
from sqlalchemy import select

from config import (
    DISCOVERY_MAX_PAGES_PER_SOURCE,
    DISCOVERY_MAX_SITEMAP_URLS,
    DISCOVERY_MIN_IMPACT,
    DISCOVERY_USER_AGENT,
    KNOWN_PUBLISHER_DOMAINS,
    REQUEST_TIMEOUT,
)
from db import async_session
from db.models import Analyst, Publication
from models import DiscoveredPublication, PublicationType, SearchResult
from progress import ProgressRun, RunRegistry
from publication_analyzer import (
    analyze_result,
    estimate_publish_date,
    generate_summary,
    is_duplicate,
    to_publication_type,
)
from utils import as_utc, email_domain, extract_domain, parse_datetime

logger = logging.getLogger(__name__)

discovery_runs = RunRegistry("publication_discovery")

FREE_MAIL_DOMAINS = {
    "gmail.com", "googlemail.com", "yahoo.com", "outlook.com", "hotmail.com",
    "live.com", "icloud.com", "me.com", "aol.com", "protonmail.com", "proton.me",
}

FEED_TYPES = ("application/rss+xml", "application/atom+xml", "application/feed+json")

# Path keywords → points
URL_KEYWORDS = {
    "research": 30,
    "report": 25,
    "whitepaper": 25,
    "white-paper": 25,
    "insight": 20,
    "publication": 20,
    "study": 15,
    "survey": 15,
    "blog": 15,
    "article": 15,
    "webinar": 10,
    "podcast": 10,
    "news": 5,
}

URL_PENALTIES = (
    "login", "signin", "sign-in", "register", "cart", "checkout", "careers", "jobs",
    "privacy", "terms", "cookie", "contact", "/about", "/tag/", "/category/",
    "/author/", "/page/", "wp-admin", "wp-content", "/feed",
)

ASSET_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif", ".svg", ".webp", ".css", ".js", ".ico", ".zip")

_YEAR_IN_PATH = re.compile(r"/20\d{2}/|-20\d{2}\b|\b20\d{2}-")

ProgressCallback = Callable[[str, Optional[str]], Awaitable[None]]


# ──────────────────────────────────────────────
# Sources
# ──────────────────────────────────────────────

@dataclass(frozen=True)
class AnalystProfile:
    """Detached analyst fields the crawler needs."""
    id: str
    first_name: str
    last_name: str
    email: str = ""
    company: Optional[str] = None
    personal_website: Optional[str] = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @classmethod
    def from_row(cls, analyst: Analyst) -> "AnalystProfile":
        return cls(
            id=analyst.id,
            first_name=analyst.first_name,
            last_name=analyst.last_name,
            email=analyst.email or "",
            company=analyst.company,
            personal_website=analyst.personal_website,
        )


def generate_potential_urls(domain: str) -> list[str]:
    """Likely publication entry points for a bare domain."""
    domain = extract_domain(domain)
    if not domain:
        return []
    return [
        f"https://www.{domain}",
        f"https://www.{domain}/research",
        f"https://www.{domain}/insights",
        f"https://www.{domain}/publications",
        f"https://research.{domain}",
        f"https://blog.{domain}",
    ]


def known_domains_for(company: Optional[str]) -> list[str]:
    if not company:
        return []
    return KNOWN_PUBLISHER_DOMAINS.get(company.strip().lower(), [])


def build_analyst_sources(analyst: AnalystProfile) -> list[str]:
    """Ordered, de-duplicated source URLs for one analyst."""
    domains: list[str] = []
    mail_domain = email_domain(analyst.email)
    if mail_domain and mail_domain not in FREE_MAIL_DOMAINS:
        domains.append(mail_domain)
    if analyst.personal_website:
        website = analyst.personal_website.strip()
        if "://" not in website:
            website = f"https://{website}"
        host = urlparse(website).hostname
        if host:
            domains.append(host)
    domains.extend(known_domains_for(analyst.company))

    sources: list[str] = []
    for domain in domains:
        for url in generate_potential_urls(domain):
            if url not in sources:
                sources.append(url)
    return sources


# ──────────────────────────────────────────────
# URL scoring
# ──────────────────────────────────────────────

def score_candidate_url(url: str, lastmod: Optional[datetime] = None, now: Optional[datetime] = None) -> int:
    """Heuristic 'looks like a publication' score for a URL path (can be negative)."""
    path = urlparse(url).path.lower()
    if not path or path == "/":
        return 0
    if path.endswith(ASSET_EXTENSIONS):
        return -100

    score = 0
    for keyword, points in URL_KEYWORDS.items():
        if keyword in path:
            score += points
    for penalty in URL_PENALTIES:
        if penalty in path:
            score -= 40

    segments = [s for s in path.split("/") if s]
    slug = segments[-1] if segments else ""
    if len(segments) >= 2:
        score += 5
    if slug.count("-") >= 2:
        score += 10  # article-style slug
    if _YEAR_IN_PATH.search(path):
        score += 10
    if path.endswith(".pdf"):
        score += 15

    if lastmod is not None:
        now = as_utc(now) or datetime.now(timezone.utc)
        if (now - as_utc(lastmod)).days <= 365:
            score += 10
    return score


def rank_candidate_urls(
    entries: list[tuple[str, Optional[datetime]]],
    limit: int = DISCOVERY_MAX_SITEMAP_URLS,
    now: Optional[datetime] = None,
) -> list[tuple[str, Optional[datetime], int]]:
    """Best-first ``(url, lastmod, score)``, positive scores only."""
    seen: set[str] = set()
    scored = []
    for url, lastmod in entries:
        if url in seen:
            continue
        seen.add(url)
        score = score_candidate_url(url, lastmod, now)
        if score > 0:
            scored.append((url, lastmod, score))
    epoch = datetime.min.replace(tzinfo=timezone.utc)
    scored.sort(key=lambda item: (item[2], as_utc(item[1]) or epoch), reverse=True)
    return scored[:limit]


def title_from_url(url: str) -> str:
    """'/research/2024-talent-acquisition-study.pdf' → '2024 Talent Acquisition Study'."""
    segments = [s for s in urlparse(url).path.split("/") if s]
    if not segments:
        return extract_domain(url)
    slug = re.sub(r"\.[a-z0-9]{2,4}$", "", segments[-1], flags=re.IGNORECASE)
    words = re.sub(r"[-_]+", " ", slug).strip()
    return words.title() if words else extract_domain(url)


# ──────────────────────────────────────────────
# Parsers
# ──────────────────────────────────────────────

def _element_date(element) -> Optional[datetime]:
    time_el = element.find("time")
    if time_el is None:
        return None
    raw = time_el.get("datetime") or time_el.get_text(strip=True)
    try:
        return parse_datetime(raw)
    except ValueError:
        return None


def _parse_items(
    html: str,
    base_url: str,
    item_selector: str,
    title_selector: str,
    summary_selector: Optional[str],
    hinted_type: PublicationType,
) -> list[SearchResult]:
    soup = BeautifulSoup(html, "lxml")
    results: list[SearchResult] = []
    seen: set[str] = set()
    for element in soup.select(item_selector):
        title_el = element.select_one(title_selector)
        link_el = element.find("a", href=True)
        title = title_el.get_text(" ", strip=True) if title_el else ""
        if not title or link_el is None:
            continue
        url = urljoin(base_url, link_el["href"])
        if url in seen:
            continue  # nested matches (article inside .post-item)
        seen.add(url)
        summary_el = element.select_one(summary_selector) if summary_selector else None
        results.append(SearchResult(
            title=title,
            url=url,
            snippet=summary_el.get_text(" ", strip=True) if summary_el else "",
            domain=extract_domain(url),
            published_at=_element_date(element),
            source="html",
            hinted_type=hinted_type,
        ))
    return results


def parse_aptitude(html: str, base_url: str) -> list[SearchResult]:
    return _parse_items(
        html, base_url,
        ".research-item, .post-item, article",
        "h2, h3, .title",
        "p, .excerpt, .summary",
        PublicationType.RESEARCH_REPORT,
    )


def parse_bersin(html: str, base_url: str) -> list[SearchResult]:
    return _parse_items(
        html, base_url,
        ".post, .research-item, article, .content-item",
        "h1, h2, h3, .post-title, .title",
        "p, .excerpt, .summary",
        PublicationType.BLOG_POST,
    )


def parse_generic(html: str, base_url: str) -> list[SearchResult]:
    return _parse_items(
        html, base_url,
        "article, .post, .research-item",
        "h1, h2, h3",
        "p",
        PublicationType.ARTICLE,
    )


SITE_PARSERS: list[tuple[tuple[str, ...], Callable[[str, str], list[SearchResult]]]] = [
    (("aptituderesearch.com",), parse_aptitude),
    (("joshbersin.com", "bersinpartners.com"), parse_bersin),
]


def parse_page(html: str, url: str) -> list[SearchResult]:
    """Pick the parser for *url*'s site and run it."""
    domain = extract_domain(url)
    for domains, parser in SITE_PARSERS:
        if any(domain == d or domain.endswith("." + d) for d in domains):
            return parser(html, url)
    return parse_generic(html, url)


def find_feed_links(html: str, base_url: str) -> list[str]:
    soup = BeautifulSoup(html, "lxml")
    links = []
    for link in soup.find_all("link", href=True):
        rel = link.get("rel") or []
        rel = rel if isinstance(rel, list) else [rel]
        if "alternate" in rel and (link.get("type") or "").lower() in FEED_TYPES:
            href = urljoin(base_url, link["href"])
            if href not in links:
                links.append(href)
    return links


def parse_feed(text: str, feed_url: str) -> list[SearchResult]:
    parsed = feedparser.parse(text)
    results = []
    for entry in parsed.entries:
        title = (entry.get("title") or "").strip()
        link = entry.get("link")
        if not title or not link:
            continue
        summary_html = entry.get("summary") or ""
        summary = BeautifulSoup(summary_html, "lxml").get_text(" ", strip=True) if summary_html else ""
        stamp = entry.get("published_parsed") or entry.get("updated_parsed")
        published = datetime(*stamp[:6], tzinfo=timezone.utc) if stamp else None
        url = urljoin(feed_url, link)
        results.append(SearchResult(
            title=title,
            url=url,
            snippet=summary,
            domain=extract_domain(url),
            published_at=published,
            source="feed",
        ))
    return results


def parse_sitemap(xml: str) -> tuple[list[tuple[str, Optional[datetime]]], list[str]]:
    """Return ``(page entries, child sitemap urls)`` from a sitemap or sitemap index."""
    soup = BeautifulSoup(xml, "xml")
    children = [
        loc.get_text(strip=True)
        for sitemap in soup.find_all("sitemap")
        if (loc := sitemap.find("loc")) is not None
    ]
    entries: list[tuple[str, Optional[datetime]]] = []
    for node in soup.find_all("url"):
        loc = node.find("loc")
        if loc is None:
            continue
        lastmod_el = node.find("lastmod")
        lastmod = None
        if lastmod_el is not None:
            try:
                lastmod = parse_datetime(lastmod_el.get_text(strip=True))
            except ValueError:
                lastmod = None
        entries.append((loc.get_text(strip=True), lastmod))
    return entries, children


# ──────────────────────────────────────────────
# Crawler
# ──────────────────────────────────────────────

class DiscoveryCrawler:
    """Shared HTTP client for one discovery run.

    Usage:
        async with DiscoveryCrawler() as crawler:
            results = await crawler.discover_for_analyst(urls, on_progress)
    """

    def __init__(
        self,
        timeout: float = REQUEST_TIMEOUT,
        max_pages: int = DISCOVERY_MAX_PAGES_PER_SOURCE,
        max_sitemap_urls: int = DISCOVERY_MAX_SITEMAP_URLS,
    ):
        self.timeout = timeout
        self.max_pages = max_pages
        self.max_sitemap_urls = max_sitemap_urls
        self._client: Optional[httpx.AsyncClient] = None
        self._sitemaps_seen: set[str] = set()
        self._feeds_seen: set[str] = set()

    async def __aenter__(self):
        self._client = httpx.AsyncClient(
            timeout=self.timeout,
            follow_redirects=True,
            headers={"User-Agent": DISCOVERY_USER_AGENT},
        )
        await self._client.__aenter__()
        return self

    async def __aexit__(self, *exc):
        if self._client is not None:
            await self._client.__aexit__(*exc)
            self._client = None
        return False

    async def fetch(self, url: str) -> Optional[str]:
        """Body of a 200 response, else None.  Network errors propagate."""
        if self._client is None:
            raise RuntimeError("DiscoveryCrawler used outside 'async with'")
        resp = await self._client.get(url)
        if resp.status_code != 200:
            logger.debug("Skipping %s (HTTP %s)", url, resp.status_code)
            return None
        return resp.text

    async def discover_sitemap(self, page_url: str) -> list[SearchResult]:
        """Best sitemap URLs for the host of *page_url* (once per host per run)."""
        parts = urlparse(page_url)
        root = f"{parts.scheme}://{parts.netloc}"
        if root in self._sitemaps_seen:
            return []
        self._sitemaps_seen.add(root)

        try:
            xml = await self.fetch(f"{root}/sitemap.xml")
            if not xml:
                return []
            entries, children = parse_sitemap(xml)
            # Sitemap index: follow the most publication-looking children, one level
            children.sort(key=lambda u: score_candidate_url(u), reverse=True)
            for child in children[:3]:
                child_xml = await self.fetch(child)
                if child_xml:
                    entries.extend(parse_sitemap(child_xml)[0])
        except httpx.HTTPError as e:
            logger.debug("Sitemap fetch failed for %s: %s", root, e)
            return []

        return [
            SearchResult(
                title=title_from_url(url),
                url=url,
                domain=extract_domain(url),
                published_at=lastmod,
                source="sitemap",
            )
            for url, lastmod, _score in rank_candidate_urls(entries, limit=self.max_sitemap_urls)
        ]

    async def discover_feeds(self, html: str, page_url: str) -> list[SearchResult]:
        """Entries of the feeds *page_url* advertises, else the host's ``/feed``."""
        feed_urls = find_feed_links(html, page_url)[:2]
        if not feed_urls:
            parts = urlparse(page_url)
            root = f"{parts.scheme}://{parts.netloc}"
            if root not in self._feeds_seen:
                self._feeds_seen.add(root)
                feed_urls = [f"{root}/feed"]

        results: list[SearchResult] = []
        for feed_url in feed_urls:
            try:
                text = await self.fetch(feed_url)
            except httpx.HTTPError as e:
                logger.debug("Feed fetch failed for %s: %s", feed_url, e)
                continue
            if text:
                results.extend(parse_feed(text, feed_url))
        return results

    async def discover_for_analyst(
        self,
        sources: list[str],
        on_progress: Optional[ProgressCallback] = None,
    ) -> list[SearchResult]:
        """Crawl an analyst's source URLs; per-URL failures are reported and skipped."""

        async def _report(message: str, url: Optional[str] = None):
            if on_progress is not None:
                await on_progress(message, url)

        results: list[SearchResult] = []
        for url in sources[: self.max_pages]:
            await _report(f"Checking {url}...", url)
            try:
                html = await self.fetch(url)
            except httpx.HTTPError as e:
                await _report(f"Error checking {url}: {e or type(e).__name__}", url)
                continue
            if html is None:
                continue

            found = parse_page(html, url)
            found.extend(await self.discover_feeds(html, url))
            found.extend(await self.discover_sitemap(url))
            if found:
                await _report(f"Found {len(found)} publications", url)
            results.extend(found)
        return results


# ──────────────────────────────────────────────
# Scoring & persistence
# ──────────────────────────────────────────────

def score_publications(
    results: list[SearchResult],
    analyst: AnalystProfile,
    now: Optional[datetime] = None,
) -> list[DiscoveredPublication]:
    """Dedupe, analyze and rank crawl results for one analyst (highest impact first)."""
    seen: list[tuple[str, str, Optional[datetime]]] = []
    publications: list[DiscoveredPublication] = []
    for result in results:
        if is_duplicate(result.title, result.url, result.published_at, seen):
            continue
        seen.append((result.title, result.url, result.published_at))

        # Pages come from the analyst's own sites, so every candidate is kept and ranked
        analysis = analyze_result(result, analyst.full_name, analyst.company, min_relevance=0)
        publications.append(DiscoveredPublication(
            analyst_id=analyst.id,
            title=result.title,
            url=result.url,
            summary=generate_summary(result.snippet, analysis),
            type=to_publication_type(analysis.publication_type),
            published_at=result.published_at or estimate_publish_date(result.snippet, now),
            domain=result.domain,
            source=result.source,
            relevance_score=analysis.relevance_score,
            impact_score=analysis.impact_score,
            significance=analysis.significance,
            themes=analysis.themes,
        ))
    publications.sort(key=lambda p: (p.impact_score, p.relevance_score), reverse=True)
    return publications


async def save_publications(
    publications: list[DiscoveredPublication],
    session_factory=None,
    min_impact: int = DISCOVERY_MIN_IMPACT,
) -> int:
    """Store high-impact finds not already tracked for that analyst.  Returns the count saved."""
    session_factory = session_factory or async_session
    saved = 0
    async with session_factory() as db:
        for pub in publications:
            if pub.impact_score < min_impact:
                continue
            exists = (await db.execute(
                select(Publication.id)
                .where(Publication.analyst_id == pub.analyst_id, Publication.url == pub.url)
                .limit(1)
            )).scalar_one_or_none()
            if exists:
                continue
            db.add(Publication(
                analyst_id=pub.analyst_id,
                title=pub.title[:1000],
                url=pub.url,
                summary=pub.summary,
                type=pub.type,
                published_at=pub.published_at,
                is_tracked=True,
                source="discovery",
                relevance_score=pub.relevance_score,
                impact_score=pub.impact_score,
                significance=pub.significance.value,
            ))
            saved += 1
        await db.commit()
    return saved


# ──────────────────────────────────────────────
# Background job
# ──────────────────────────────────────────────

async def run_publication_discovery(
    run: ProgressRun,
    analyst_ids: Optional[list[str]] = None,
    save: bool = False,
    session_factory=None,
    crawler_factory: Callable[[], DiscoveryCrawler] = DiscoveryCrawler,
    active_only: bool = False,
) -> list[DiscoveredPublication]:
    """Discover publications for the given (default: all non-archived) analysts.

    ``active_only`` narrows the default set to ACTIVE analysts.
    """
    session_factory = session_factory or async_session

    async def emit(kind: str, **data):
        await run.emit({"type": kind, "data": data})

    try:
        async with session_factory() as db:
            query = select(Analyst).where(Analyst.status != "ARCHIVED").order_by(Analyst.last_name)
            if analyst_ids:
                query = query.where(Analyst.id.in_(analyst_ids))
            if active_only:
                query = query.where(Analyst.status == "ACTIVE")
            analysts = [AnalystProfile.from_row(a) for a in (await db.execute(query)).scalars()]

        if not analysts:
            await emit("complete", publications=[], total_found=0, analysts_processed=0, saved=0,
                       message="No analysts found")
            return []

        await emit("progress", message=f"Starting discovery for {len(analysts)} analysts...",
                   total_analysts=len(analysts), current_analyst=0)

        sources = [(a, build_analyst_sources(a)) for a in analysts]
        sources = [(a, urls) for a, urls in sources if urls]
        total = len(sources)

        found: list[DiscoveredPublication] = []
        async with crawler_factory() as crawler:
            for index, (analyst, urls) in enumerate(sources):
                await emit(
                    "analyst_start",
                    analyst=analyst.full_name,
                    company=analyst.company,
                    progress=round(index / total * 100),
                    current_analyst=index + 1,
                    total_analysts=total,
                )

                async def on_progress(message: str, url: Optional[str], _name=analyst.full_name):
                    await emit("progress", analyst=_name, url=url, message=message)

                results = await crawler.discover_for_analyst(urls, on_progress)
                publications = score_publications(results, analyst)
                found.extend(publications)

                await emit(
                    "analyst_complete",
                    analyst=analyst.full_name,
                    publications_found=len(publications),
                    progress=round((index + 1) / total * 100),
                    current_analyst=index + 1,
                    total_analysts=total,
                )

        saved = await save_publications(found, session_factory) if save else 0
        await emit(
            "complete",
            publications=[p.model_dump(mode="json") for p in found],
            total_found=len(found),
            analysts_processed=total,
            saved=saved,
        )
        logger.info("Publication discovery finished: %d found, %d saved", len(found), saved)
        return found
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.error("Publication discovery failed: %s", e, exc_info=True)
        await emit("error", message="Publication discovery failed", error=str(e))
        return []


def start_publication_discovery(analyst_ids: Optional[list[str]] = None, save: bool = False) -> ProgressRun:
    """Launch discovery as a background task; returns its run (``run.key`` is the run id)."""
    discovery_runs.cleanup_old()
    run = discovery_runs.start(str(uuid.uuid4()))
    task = asyncio.create_task(run_publication_discovery(run, analyst_ids=analyst_ids, save=save))
    discovery_runs.set_task(run.key, task)
    return run
