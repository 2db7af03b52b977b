"""
Publication Analyzer — rule-based scoring of candidate publications.

Given a ``SearchResult`` (title + snippet + url) and the analyst it may belong
to, decides:
  - relevance (0-100): does this look like *their* work, in *our* space?
  - publication type: Magic Quadrant, Wave, report, survey, blog post, ...
  - significance: critical / high / medium / low
  - themes & key topics
  - impact (0-100): type base score × significance, plus a domain bonus

All matching is case-insensitive.  Short keywords ("ai", "ats", "hcm") match
on word boundaries only; longer phrases match as substrings.
"""

import logging
import re
from datetime import datetime, timezone
from typing import Optional

from config import DISCOVERY_MIN_RELEVANCE, DUPLICATE_SIMILARITY_THRESHOLD, DUPLICATE_WINDOW_HOURS
from models import PublicationAnalysis, PublicationType, SearchResult, Significance
from utils import as_utc

logger = logging.getLogger(__name__)

# ──────────────────────────────────────────────
# Vocabulary
# ──────────────────────────────────────────────

SIGNIFICANCE_INDICATORS: dict[Significance, list[str]] = {
    Significance.CRITICAL: [
        "magic quadrant", "forrester wave", "market leader", "top 10", "top 20",
        "industry report", "market analysis", "survey results", "research findings",
    ],
    Significance.HIGH: [
        "market guide", "analyst report", "research paper", "whitepaper",
        "study results", "industry insights", "market trends", "competitive landscape",
    ],
    Significance.MEDIUM: [
        "blog post", "article", "opinion piece", "interview", "webinar",
        "conference presentation", "panel discussion",
    ],
    Significance.LOW: [
        "social media post", "brief mention", "comment", "quote", "reference",
    ],
}

SIGNIFICANCE_POINTS = {
    Significance.CRITICAL: 15,
    Significance.HIGH: 10,
    Significance.MEDIUM: 5,
    Significance.LOW: 2,
}

# Order matters: the first type with a matching pattern wins
PUBLICATION_PATTERNS: dict[PublicationType, list[str]] = {
    PublicationType.MAGIC_QUADRANT: [
        "magic quadrant", "gartner magic quadrant", "mq for", "leaders quadrant", "challengers quadrant",
    ],
    PublicationType.FORRESTER_WAVE: [
        "forrester wave", "wave report", "wave evaluation", "forrester wave report",
    ],
    PublicationType.RESEARCH_REPORT: [
        "research report", "market research", "industry report", "analysis report", "market study",
    ],
    PublicationType.SURVEY_RESULTS: [
        "survey results", "survey findings", "study results", "research findings", "poll results",
    ],
    PublicationType.TOP_LIST: [
        "top 10", "top 20", "top 50", "top 100", "best companies", "leading vendors", "top performers",
    ],
    PublicationType.MARKET_ANALYSIS: [
        "market analysis", "market overview", "market trends", "market insights", "competitive analysis",
    ],
    PublicationType.WHITEPAPER: [
        "white paper", "whitepaper", "technical paper", "research paper",
    ],
    PublicationType.WEBINAR: [
        "webinar", "online seminar", "virtual event", "live session",
    ],
    PublicationType.INTERVIEW: [
        "interview", "q&a", "conversation with", "speaks with", "discussion with",
    ],
    PublicationType.LINKEDIN_POST: [
        "linkedin.com", "linkedin post", "linkedin article",
    ],
}

RELEVANT_TOPICS = [
    "hr technology", "human resources", "talent management", "employee experience",
    "workforce analytics", "people analytics", "hr analytics", "talent acquisition",
    "recruitment", "onboarding", "performance management", "learning management",
    "succession planning", "compensation management", "benefits administration",
    "payroll", "hris", "hrms", "hcm", "ats", "lms", "employee engagement", "culture",
    "diversity", "inclusion", "dei", "remote work", "hybrid work", "future of work",
    "digital transformation", "ai in hr", "machine learning", "automation", "chatbots",
    "employee self-service", "mobile hr", "cloud hr",
]

THEME_KEYWORDS: dict[str, list[str]] = {
    "AI and Automation": ["ai", "artificial intelligence", "automation", "machine learning"],
    "Digital Transformation": ["digital transformation", "digitization", "cloud"],
    "Employee Experience": ["employee experience", "engagement", "culture"],
    "Future of Work": ["future of work", "remote work", "hybrid work"],
    "Talent Management": ["talent management", "recruitment", "hiring"],
    "Analytics": ["analytics", "data", "insights", "metrics"],
    "Performance Management": ["performance", "review", "feedback"],
    "Learning and Development": ["learning", "training", "development"],
    "Compensation": ["compensation", "benefits", "payroll"],
    "HR Technology": ["hr technology", "hrtech", "hris", "hcm"],
}

TYPE_IMPACT_SCORES: dict[PublicationType, int] = {
    PublicationType.MAGIC_QUADRANT: 90,
    PublicationType.FORRESTER_WAVE: 85,
    PublicationType.RESEARCH_REPORT: 70,
    PublicationType.MARKET_GUIDE: 70,
    PublicationType.SURVEY_RESULTS: 65,
    PublicationType.TOP_LIST: 60,
    PublicationType.MARKET_ANALYSIS: 55,
    PublicationType.WHITEPAPER: 45,
    PublicationType.WEBINAR: 40,
    PublicationType.INTERVIEW: 40,
    PublicationType.PODCAST: 35,
    PublicationType.ARTICLE: 30,
    PublicationType.LINKEDIN_POST: 30,
    PublicationType.BLOG_POST: 25,
    PublicationType.MEDIUM_ARTICLE: 25,
    PublicationType.OTHER: 20,
}

SIGNIFICANCE_MULTIPLIERS = {
    Significance.CRITICAL: 1.2,
    Significance.HIGH: 1.1,
    Significance.MEDIUM: 1.0,
    Significance.LOW: 0.8,
}

AUTHORITY_DOMAINS = ["gartner.com", "forrester.com", "idc.com", "harvard.edu"]

# User-facing aliases accepted by the publications API
PUBLICATION_TYPE_ALIASES = {
    "report": "RESEARCH_REPORT",
    "research": "RESEARCH_REPORT",
    "research_report": "RESEARCH_REPORT",
    "blog": "BLOG_POST",
    "blog_post": "BLOG_POST",
    "article": "ARTICLE",
    "whitepaper": "WHITEPAPER",
    "white_paper": "WHITEPAPER",
    "webinar": "WEBINAR",
    "podcast": "PODCAST",
    "other": "OTHER",
}

STORED_PUBLICATION_TYPES = ("RESEARCH_REPORT", "BLOG_POST", "WHITEPAPER", "WEBINAR", "PODCAST", "ARTICLE", "OTHER")

_MONTH_DATE = re.compile(
    r"(january|february|march|april|may|june|july|august|september|october|november|december)"
    r"\s+(\d{1,2}),?\s+(\d{4})",
    re.IGNORECASE,
)
_SLASH_DATE = re.compile(r"\b(\d{1,2})/(\d{1,2})/(\d{4})\b")
_YEAR = re.compile(r"\b(20\d{2})\b")


# ──────────────────────────────────────────────
# Matching helpers
# ──────────────────────────────────────────────

_boundary_cache: dict[str, re.Pattern] = {}


def _contains(content: str, phrase: str) -> bool:
    phrase = phrase.lower()
    if len(phrase) > 4 or not phrase.isalnum():
        return phrase in content
    pattern = _boundary_cache.get(phrase)
    if pattern is None:
        pattern = _boundary_cache[phrase] = re.compile(rf"\b{re.escape(phrase)}\b")
    return pattern.search(content) is not None


def _content(title: str, snippet: str) -> str:
    return f"{title or ''} {snippet or ''}".lower()


def calculate_similarity(a: str, b: str) -> float:
    """Positional character similarity: matching positions / longer length."""
    max_len = max(len(a), len(b))
    if max_len == 0:
        return 1.0
    matches = sum(1 for x, y in zip(a, b) if x == y)
    return matches / max_len


# ──────────────────────────────────────────────
# Scoring
# ──────────────────────────────────────────────

def calculate_relevance_score(content: str, analyst_name: str, analyst_company: Optional[str]) -> int:
    content = content.lower()
    score = 0
    name = (analyst_name or "").strip().lower()
    company = (analyst_company or "").strip().lower()

    if name and f'"{name}"' in content:
        score += 40
    elif name and name in content:
        score += 25

    if company and company in content:
        score += 15

    topic_matches = sum(1 for topic in RELEVANT_TOPICS if _contains(content, topic))
    score += min(topic_matches * 3, 25)

    for patterns in PUBLICATION_PATTERNS.values():
        score += 5 * sum(1 for p in patterns if _contains(content, p))

    for level, indicators in SIGNIFICANCE_INDICATORS.items():
        score += SIGNIFICANCE_POINTS[level] * sum(1 for i in indicators if _contains(content, i))

    return min(100, score)


def identify_publication_type(content: str, domain: str = "") -> PublicationType:
    content = content.lower()
    for pub_type, patterns in PUBLICATION_PATTERNS.items():
        if any(_contains(content, p) for p in patterns):
            return pub_type

    domain = (domain or "").lower()
    if "linkedin.com" in domain:
        return PublicationType.LINKEDIN_POST
    if "medium.com" in domain:
        return PublicationType.MEDIUM_ARTICLE
    if "twitter.com" in domain:
        return PublicationType.BLOG_POST
    if "gartner.com" in domain or "forrester.com" in domain:
        return PublicationType.RESEARCH_REPORT
    return PublicationType.OTHER


def determine_significance(content: str, pub_type: PublicationType) -> Significance:
    if pub_type in (PublicationType.MAGIC_QUADRANT, PublicationType.FORRESTER_WAVE):
        return Significance.CRITICAL
    if pub_type in (
        PublicationType.RESEARCH_REPORT,
        PublicationType.SURVEY_RESULTS,
        PublicationType.TOP_LIST,
        PublicationType.MARKET_GUIDE,
    ):
        return Significance.HIGH
    if pub_type in (PublicationType.MARKET_ANALYSIS, PublicationType.WHITEPAPER):
        return Significance.MEDIUM

    content = content.lower()
    for level, indicators in SIGNIFICANCE_INDICATORS.items():
        if any(_contains(content, i) for i in indicators):
            return level
    return Significance.LOW


def extract_themes(content: str) -> list[str]:
    content = content.lower()
    return [
        theme for theme, keywords in THEME_KEYWORDS.items()
        if any(_contains(content, k) for k in keywords)
    ]


def extract_key_topics(content: str, limit: int = 10) -> list[str]:
    content = content.lower()
    return [t for t in RELEVANT_TOPICS if _contains(content, t)][:limit]


def calculate_impact_score(pub_type: PublicationType, significance: Significance, domain: str = "") -> int:
    score = TYPE_IMPACT_SCORES.get(pub_type, 20) * SIGNIFICANCE_MULTIPLIERS[significance]
    domain = (domain or "").lower()
    if any(d in domain for d in AUTHORITY_DOMAINS):
        score += 10
    return min(100, round(score))


def analyze_result(
    result: SearchResult,
    analyst_name: str,
    analyst_company: Optional[str] = None,
    min_relevance: int = DISCOVERY_MIN_RELEVANCE,
) -> PublicationAnalysis:
    """Score one search result.  ``is_relevant`` is False below *min_relevance*."""
    content = _content(result.title, result.snippet)
    analysis = PublicationAnalysis(
        relevance_score=calculate_relevance_score(content, analyst_name, analyst_company)
    )
    analysis.is_relevant = analysis.relevance_score >= min_relevance
    if not analysis.is_relevant:
        analysis.reason = f"Low relevance score: {analysis.relevance_score}"
        return analysis

    pub_type = identify_publication_type(content, result.domain)
    if pub_type == PublicationType.OTHER and result.hinted_type is not None:
        pub_type = result.hinted_type
    analysis.publication_type = pub_type
    analysis.significance = determine_significance(content, pub_type)
    analysis.themes = extract_themes(content)
    analysis.key_topics = extract_key_topics(content)
    analysis.impact_score = calculate_impact_score(pub_type, analysis.significance, result.domain)
    return analysis


def generate_summary(snippet: str, analysis: PublicationAnalysis, excerpt_length: int = 150) -> str:
    type_label = analysis.publication_type.value.replace("_", " ").lower()
    summary = f"{analysis.significance.value.capitalize()} significance {type_label}"
    if analysis.themes:
        summary += f" covering {', '.join(analysis.themes[:3])}"
    clean = re.sub(r"[^\w\s.,!?]", "", snippet or "").strip()
    if len(clean) > excerpt_length:
        summary += f". {clean[:excerpt_length]}..."
    elif clean:
        summary += f". {clean}"
    return summary


def estimate_publish_date(snippet: str, now: Optional[datetime] = None) -> datetime:
    """Best-effort date from snippet text; falls back to *now*."""
    now = as_utc(now) or datetime.now(timezone.utc)
    text = snippet or ""

    m = _MONTH_DATE.search(text)
    if m:
        try:
            found = datetime.strptime(f"{m.group(1)} {m.group(2)} {m.group(3)}", "%B %d %Y")
            if 2020 <= found.year <= now.year:
                return found.replace(tzinfo=timezone.utc)
        except ValueError:
            pass

    m = _SLASH_DATE.search(text)
    if m:
        try:
            found = datetime(int(m.group(3)), int(m.group(1)), int(m.group(2)), tzinfo=timezone.utc)
            if 2020 <= found.year <= now.year:
                return found
        except ValueError:
            pass

    for year in _YEAR.findall(text):
        if 2020 <= int(year) <= now.year:
            return datetime(int(year), 1, 1, tzinfo=timezone.utc)
    return now


def is_duplicate(
    title: str,
    url: str,
    published_at: Optional[datetime],
    existing: list[tuple[str, str, Optional[datetime]]],
) -> bool:
    """True if (title, url, published_at) repeats one of *existing*.

    Same URL, or a near-identical title published within the duplicate window.
    """
    title_l = (title or "").lower()
    for other_title, other_url, other_published in existing:
        if url and other_url == url:
            return True
        if calculate_similarity((other_title or "").lower(), title_l) > DUPLICATE_SIMILARITY_THRESHOLD:
            if published_at is None or other_published is None:
                return True
            hours = abs((as_utc(other_published) - as_utc(published_at)).total_seconds()) / 3600
            if hours <= DUPLICATE_WINDOW_HOURS:
                return True
    return False


def to_publication_type(pub_type: PublicationType) -> str:
    """Collapse analyzer types onto the stored ``publications.type`` values."""
    if pub_type in (
        PublicationType.MAGIC_QUADRANT,
        PublicationType.FORRESTER_WAVE,
        PublicationType.MARKET_GUIDE,
        PublicationType.RESEARCH_REPORT,
        PublicationType.SURVEY_RESULTS,
        PublicationType.MARKET_ANALYSIS,
        PublicationType.TOP_LIST,
    ):
        return "RESEARCH_REPORT"
    if pub_type in (PublicationType.BLOG_POST, PublicationType.MEDIUM_ARTICLE, PublicationType.LINKEDIN_POST):
        return "BLOG_POST"
    if pub_type in (PublicationType.WEBINAR, PublicationType.PODCAST, PublicationType.INTERVIEW):
        return "WEBINAR"
    if pub_type == PublicationType.WHITEPAPER:
        return "WHITEPAPER"
    return "ARTICLE"


def normalize_publication_type(value: Optional[str]) -> Optional[str]:
    """Map API input (``report``, ``Blog Post``, ``RESEARCH_REPORT``) to a stored type.

    Returns None for unknown values.
    """
    if not value:
        return None
    key = value.strip().lower().replace(" ", "_").replace("-", "_")
    if key in PUBLICATION_TYPE_ALIASES:
        return PUBLICATION_TYPE_ALIASES[key]
    upper = key.upper()
    return upper if upper in STORED_PUBLICATION_TYPES else None
