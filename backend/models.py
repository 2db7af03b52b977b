"""
Pydantic Data Models

Structured data passed between the discovery crawler and the analyzer:
  - PublicationType: Fine-grained kind detected by the analyzer
  - Significance: critical / high / medium / low
  - SearchResult: One candidate page found by the crawler (title, url, snippet)
  - PublicationAnalysis: Analyzer output (relevance, type, impact, themes)
  - DiscoveredPublication: Candidate + analysis, ready to store as a Publication
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class PublicationType(str, Enum):
    """Kinds of analyst output the analyzer can recognise."""
    RESEARCH_REPORT = "RESEARCH_REPORT"
    MAGIC_QUADRANT = "MAGIC_QUADRANT"
    FORRESTER_WAVE = "FORRESTER_WAVE"
    MARKET_ANALYSIS = "MARKET_ANALYSIS"
    SURVEY_RESULTS = "SURVEY_RESULTS"
    TOP_LIST = "TOP_LIST"
    MARKET_GUIDE = "MARKET_GUIDE"
    WHITEPAPER = "WHITEPAPER"
    WEBINAR = "WEBINAR"
    BLOG_POST = "BLOG_POST"
    LINKEDIN_POST = "LINKEDIN_POST"
    MEDIUM_ARTICLE = "MEDIUM_ARTICLE"
    INTERVIEW = "INTERVIEW"
    PODCAST = "PODCAST"
    ARTICLE = "ARTICLE"
    OTHER = "OTHER"


class Significance(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class SearchResult(BaseModel):
    """A candidate publication page found by the crawler."""
    title: str
    url: str
    snippet: str = ""
    domain: str = ""
    published_at: Optional[datetime] = None
    source: str = Field(default="html", description="html | feed | sitemap")
    hinted_type: Optional[PublicationType] = Field(
        default=None,
        description="Type suggested by a site-specific parser, used when the text gives no signal",
    )


class PublicationAnalysis(BaseModel):
    """Analyzer verdict for one SearchResult."""
    is_relevant: bool = False
    relevance_score: int = Field(default=0, ge=0, le=100)
    publication_type: PublicationType = PublicationType.OTHER
    significance: Significance = Significance.LOW
    themes: list[str] = Field(default_factory=list)
    key_topics: list[str] = Field(default_factory=list)
    impact_score: int = Field(default=0, ge=0, le=100)
    reason: Optional[str] = None


class DiscoveredPublication(BaseModel):
    """Candidate + analysis, shaped like the ``publications`` table."""
    analyst_id: str
    title: str
    url: str
    summary: str
    type: str  # stored publication type (RESEARCH_REPORT, BLOG_POST, ...)
    published_at: datetime
    domain: str = ""
    source: str = "html"
    relevance_score: int = 0
    impact_score: int = 0
    significance: Significance = Significance.LOW
    themes: list[str] = Field(default_factory=list)
