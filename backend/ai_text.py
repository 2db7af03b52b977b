"""
AI Text — expertise suggestions, social replies and briefing summaries.

Every generator has a deterministic keyword/template implementation that needs
no API key.  ``TextGenerator`` tries an OpenAI chat completion first when
``OPENAI_API_KEY`` is configured and falls back to the templates on any
failure, so the routes always return something.
"""

import hashlib
import json
import logging
import re
from typing import Optional

from openai import AsyncOpenAI

from config import COMPANY_NAME, OPENAI_API_KEY, TEXT_MODEL

logger = logging.getLogger(__name__)

MAX_EXPERTISE = 6

EXPERTISE_KEYWORDS = {
    # Technology
    "ai": ["Artificial Intelligence", "Machine Learning", "AI Strategy"],
    "artificial intelligence": ["Artificial Intelligence", "Machine Learning", "AI Strategy"],
    "machine learning": ["Machine Learning", "AI/ML", "Data Science"],
    "cloud": ["Cloud Computing", "Cloud Strategy", "Digital Infrastructure"],
    "cybersecurity": ["Cybersecurity", "Information Security", "Risk Management"],
    "analytics": ["Data Analytics", "Business Intelligence", "Predictive Analytics"],
    "digital transformation": ["Digital Transformation", "Digital Strategy", "Change Management"],
    "automation": ["Process Automation", "RPA", "Workflow Optimization"],
    "robotics": ["Robotics", "Automation", "Manufacturing Technology"],
    # Business
    "customer experience": ["Customer Experience", "CX Strategy", "User Experience"],
    "employee experience": ["Employee Experience", "HR Technology", "Workplace Analytics"],
    "future of work": ["Future of Work", "Remote Work", "Workplace Technology"],
    "talent": ["Talent Acquisition", "Talent Management", "HR Technology"],
    "supply chain": ["Supply Chain Management", "Logistics", "Operations"],
    "finance": ["Financial Technology", "FinTech", "Financial Services"],
    "healthcare": ["Healthcare Technology", "Digital Health", "Health IT"],
    "retail": ["Retail Technology", "E-commerce", "Digital Commerce"],
    "manufacturing": ["Manufacturing Technology", "Industry 4.0", "Smart Manufacturing"],
    # Research
    "market research": ["Market Research", "Competitive Intelligence", "Industry Analysis"],
    "forecast": ["Market Forecasting", "Trend Analysis", "Predictive Research"],
    "strategy": ["Business Strategy", "Technology Strategy", "Strategic Planning"],
    "innovation": ["Innovation Management", "Emerging Technologies", "R&D Strategy"],
}

COMPANY_EXPERTISE = {
    "gartner": ["Technology Research", "Magic Quadrant Analysis", "Hype Cycle Research"],
    "forrester": ["Customer Experience", "Digital Business Strategy", "Forrester Wave Research"],
    "idc": ["Market Forecasting", "Technology Spending", "Enterprise Software"],
}

TITLE_EXPERTISE = {
    "hr": ["HR Technology", "Talent Management"],
    "human resources": ["HR Technology", "Talent Management"],
    "security": ["Cybersecurity", "Risk Management"],
    "data": ["Data Analytics", "Business Intelligence"],
}

DEFAULT_EXPERTISE = ["Industry Analysis", "Market Research", "Technology Trends"]

# theme → phrases that signal it in a post
SOCIAL_THEMES = {
    "ai": ["ai", "artificial intelligence", "machine learning"],
    "automation": ["automation", "automated"],
    "analytics": ["analytics", "data"],
    "hiring": ["hiring", "recruitment", "recruiting", "talent acquisition"],
    "employee_experience": ["employee experience", "employee engagement"],
    "performance": ["performance"],
    "onboarding": ["onboarding"],
    "retention": ["retention", "turnover"],
    "future_of_work": ["hybrid work", "remote work", "future of work"],
}

REPLY_TEMPLATES = {
    "ai": [
        "Great insights, {first}! At {company} we're seeing the same trend with AI-assisted hiring. "
        "The key is balancing automation with human judgment. Would love to share our research with you.",
        "{first}, your point about AI really resonates with what we're building at {company}. "
        "Happy to compare notes on what we're seeing in the data!",
    ],
    "employee_experience": [
        "{first}, this aligns with our mission at {company}. Great employee experience starts with the "
        "hiring process and carries through onboarding. Would love to share some case studies!",
        "Excellent point about employee experience, {first}! We see organizations that invest here "
        "keep their people longer.",
    ],
    "performance": [
        "{first}, continuous feedback beats the annual review every time. It's exactly what our "
        "customers at {company} are moving toward.",
    ],
    "hiring": [
        "Spot on, {first}. Hiring teams that lean on structured data make faster, fairer decisions. "
        "We'd love to show you what we're seeing at {company}.",
    ],
    "analytics": [
        "{first}, the shift to data-driven HR decisions is real. Our analytics work at {company} "
        "points the same way. Happy to share more.",
    ],
}

GENERIC_REPLIES = [
    "Thanks for sharing, {first}! This is a valuable perspective for the HR technology community.",
    "Great post, {first}. We're seeing similar conversations with our customers at {company}.",
    "{first}, really appreciate this take. Would love to continue the conversation.",
]

SHARE_TEMPLATES = [
    "Must-read from {name} on {topic}. Their analysis matches what we see with our customers at {company}.",
    "{name} nails it on {topic}. Worth a read for every HR leader.",
    "Sharing this from {name}: a sharp look at {topic} and where the market is heading.",
]

THEME_LABELS = {
    "ai": "AI in HR",
    "automation": "automation",
    "analytics": "people analytics",
    "hiring": "hiring",
    "employee_experience": "employee experience",
    "performance": "performance management",
    "onboarding": "onboarding",
    "retention": "retention",
    "future_of_work": "the future of work",
}


def _mentions(text: str, phrase: str) -> bool:
    return re.search(rf"\b{re.escape(phrase)}\b", text) is not None


def _pick(options: list[str], seed: str) -> str:
    """Stable choice: the same post always gets the same template."""
    index = int(hashlib.sha256(seed.encode()).hexdigest(), 16) % len(options)
    return options[index]


# ──────────────────────────────────────────────
# Template generators
# ──────────────────────────────────────────────

def suggest_expertise(
    name: str,
    company: Optional[str] = None,
    title: Optional[str] = None,
    bio: Optional[str] = None,
) -> list[str]:
    """Keyword-mapped expertise areas for an analyst (at most 6)."""
    found: list[str] = []

    def add(items):
        for item in items:
            if item not in found:
                found.append(item)

    text = " ".join(filter(None, [title, bio])).lower()
    for keyword, areas in EXPERTISE_KEYWORDS.items():
        if _mentions(text, keyword):
            add(areas[:2])

    company_l = (company or "").lower()
    for firm, areas in COMPANY_EXPERTISE.items():
        if firm in company_l:
            add(areas)

    title_l = (title or "").lower()
    for keyword, areas in TITLE_EXPERTISE.items():
        if _mentions(title_l, keyword):
            add(areas)

    if not found:
        add(DEFAULT_EXPERTISE)
    return found[:MAX_EXPERTISE]


def detect_social_themes(content: str) -> list[str]:
    text = (content or "").lower()
    return [theme for theme, phrases in SOCIAL_THEMES.items() if any(_mentions(text, p) for p in phrases)]


def generate_social_response(
    analyst_name: str,
    post_content: str,
    response_type: str = "reply",
    company: Optional[str] = None,
) -> str:
    """Reply to, or share, an analyst's post.  ``response_type`` is ``reply`` or ``share``.

    ``company`` is who we speak for (default ``COMPANY_NAME``).
    """
    company = company or COMPANY_NAME
    if response_type not in ("reply", "share"):
        raise ValueError("response_type must be 'reply' or 'share'")

    first = (analyst_name or "").split(" ")[0] or "there"
    themes = detect_social_themes(post_content)
    seed = post_content or analyst_name or ""

    if response_type == "share":
        topic = THEME_LABELS[themes[0]] if themes else "the HR technology market"
        return _pick(SHARE_TEMPLATES, seed).format(name=analyst_name, topic=topic, company=company)

    options: list[str] = []
    for theme in themes:
        options.extend(REPLY_TEMPLATES.get(theme, []))
    return _pick(options or GENERIC_REPLIES, seed).format(first=first, company=company)


def _first_sentences(text: str, count: int = 2) -> str:
    sentences = re.split(r"(?<=[.!?])\s+", text.strip())
    return " ".join(sentences[:count])


def summarize_briefing(briefing: dict) -> str:
    """Bullet summary built from a serialized briefing's fields."""
    lines = [f"Briefing: {briefing.get('title') or 'Untitled'}"]
    when = briefing.get("scheduled_at")
    if when:
        lines.append(f"Date: {str(when)[:10]}")
    analysts = [a.get("name") for a in briefing.get("analysts") or [] if a.get("name")]
    if analysts:
        lines.append(f"Analysts: {', '.join(analysts)}")
    if briefing.get("agenda"):
        lines.append(f"- Agenda: {_first_sentences(briefing['agenda'])}")
    if briefing.get("notes"):
        lines.append(f"- Key points: {_first_sentences(briefing['notes'])}")
    for outcome in briefing.get("outcomes") or []:
        lines.append(f"- Outcome: {outcome}")
    for action in briefing.get("follow_up_actions") or []:
        lines.append(f"- Follow-up: {action}")
    if len(lines) <= 3:
        lines.append("- No notes recorded yet.")
    return "\n".join(lines)


# ──────────────────────────────────────────────
# OpenAI-backed generator with template fallback
# ──────────────────────────────────────────────

class TextGenerator:
    """Uses OpenAI when a key is configured, templates otherwise."""

    def __init__(self, api_key: Optional[str] = None, model: str = TEXT_MODEL):
        key = OPENAI_API_KEY if api_key is None else api_key
        self.client: Optional[AsyncOpenAI] = AsyncOpenAI(api_key=key) if key else None
        self.model = model

    async def _complete(self, prompt: str, max_tokens: int = 400) -> Optional[str]:
        if self.client is None:
            return None
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                temperature=0.4,
                max_tokens=max_tokens,
            )
            text = response.choices[0].message.content
            return text.strip() if text else None
        except Exception as e:
            logger.warning("OpenAI text generation failed, using templates: %s", e)
            return None

    async def suggest_expertise(self, name: str, company=None, title=None, bio=None) -> list[str]:
        prompt = (
            "List up to 6 short expertise areas for this industry analyst as a JSON array of strings.\n"
            f"Name: {name}\nCompany: {company or ''}\nTitle: {title or ''}\nBio: {bio or ''}"
        )
        text = await self._complete(prompt, max_tokens=200)
        if text:
            cleaned = re.sub(r"^```(?:json)?\s*|\s*```$", "", text)
            try:
                items = json.loads(cleaned)
                if isinstance(items, list) and items:
                    return [str(i) for i in items][:MAX_EXPERTISE]
            except json.JSONDecodeError:
                logger.warning("Expertise completion was not JSON, using templates")
        return suggest_expertise(name, company, title, bio)

    async def social_response(
        self, analyst_name: str, post_content: str, response_type: str = "reply", company: Optional[str] = None,
    ) -> str:
        if response_type not in ("reply", "share"):
            raise ValueError("response_type must be 'reply' or 'share'")
        verb = "a short, friendly reply to" if response_type == "reply" else "a short post sharing"
        prompt = (
            f"Write {verb} this post by industry analyst {analyst_name}, on behalf of {company or COMPANY_NAME}. "
            f"No hashtags.\n\nPost:\n{post_content}"
        )
        return await self._complete(prompt) or generate_social_response(
            analyst_name, post_content, response_type, company
        )

    async def briefing_summary(self, briefing: dict) -> str:
        prompt = (
            "Summarize this analyst briefing as 3-6 bullet points covering key points, outcomes "
            f"and follow-ups.\n\n{json.dumps(briefing, default=str)}"
        )
        return await self._complete(prompt, max_tokens=500) or summarize_briefing(briefing)
