"""
Analyst Import — read a CSV/XLSX contact sheet and turn it into analysts.

Flow used by the import dialog:
  1. ``preview_import``  → headers, first rows, suggested column mapping
  2. user adjusts the mapping
  3. ``rows_to_analysts`` → normalized records (+ per-row errors)
  4. ``bulk_create_analysts`` → inserts, skipping emails we already have
"""

import io
import logging
import re
from pathlib import Path
from typing import Optional

import pandas as pd
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Analyst, AnalystTopic

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = (".csv", ".xlsx")

# field → header spellings (compared lowercased, trimmed)
FIELD_VARIANTS = {
    "email": ["email", "e-mail", "email address", "contact email", "work email"],
    "first_name": ["first name", "firstname", "fname", "given name", "first_name"],
    "last_name": ["last name", "lastname", "lname", "surname", "family name", "last_name"],
    "full_name": ["name", "full name", "analyst name", "contact name"],
    "company": ["company", "organization", "organisation", "firm", "employer"],
    "title": ["title", "job title", "position", "role"],
    "phone": ["phone", "telephone", "mobile", "phone number"],
    "linkedin_url": ["linkedin", "linkedin url", "linkedin profile"],
    "twitter_handle": ["twitter", "twitter handle", "x handle"],
    "personal_website": ["website", "web site", "homepage", "url", "blog"],
    "bio": ["bio", "biography", "description", "about"],
    "expertise": ["expertise", "topics", "coverage", "skills", "focus areas"],
    "influence": ["influence", "tier", "influence level"],
    "status": ["status"],
    "type": ["type", "category", "classification"],
}

# Matched only on an exact header, never as a substring
EXACT_ONLY = {"full_name"}

INFLUENCE_ALIASES = {
    "very high": "VERY_HIGH",
    "very_high": "VERY_HIGH",
    "tier 1": "VERY_HIGH",
    "tier_1": "VERY_HIGH",
    "1": "VERY_HIGH",
    "high": "HIGH",
    "tier 2": "HIGH",
    "tier_2": "HIGH",
    "2": "HIGH",
    "medium": "MEDIUM",
    "med": "MEDIUM",
    "tier 3": "MEDIUM",
    "tier_3": "MEDIUM",
    "3": "MEDIUM",
    "low": "LOW",
    "tier 4": "LOW",
    "tier_4": "LOW",
    "4": "LOW",
}

STATUSES = ("ACTIVE", "INACTIVE", "ARCHIVED")
ANALYST_TYPES = ("ANALYST", "PRESS", "INVESTOR", "PRACTITIONER", "INFLUENCER")

ANALYST_COLUMNS = {c.key for c in Analyst.__table__.columns} - {"id", "created_at", "updated_at"}

_EMAIL = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class ImportFileError(ValueError):
    """The uploaded sheet can't be read."""


def read_table(filename: str, content: bytes) -> pd.DataFrame:
    """Load a CSV or XLSX file into a string-typed DataFrame (blank cells → "")."""
    ext = Path(filename or "").suffix.lower()
    if ext not in SUPPORTED_EXTENSIONS:
        raise ImportFileError(f"Unsupported file type '{ext or filename}'. Upload a .csv or .xlsx file")
    try:
        if ext == ".csv":
            frame = pd.read_csv(io.BytesIO(content), dtype=str, keep_default_na=False)
        else:
            frame = pd.read_excel(io.BytesIO(content), dtype=str, engine="openpyxl")
    except Exception as e:
        raise ImportFileError(f"Could not read {filename}: {e}") from e

    frame = frame.fillna("")
    frame.columns = [str(c).strip() for c in frame.columns]
    frame = frame[~(frame == "").all(axis=1)].reset_index(drop=True)
    return frame


def suggest_column_mapping(columns: list[str]) -> dict:
    """Guess which analyst field each header holds.

    Returns ``{"mapping": {column: field}, "unmapped_columns": [...], "confidence": 0..1}``.
    Each field is assigned at most once, first column wins.
    """
    mapping: dict[str, str] = {}
    used: set[str] = set()

    def assign(column: str, field: str) -> bool:
        if field in used:
            return False
        mapping[column] = field
        used.add(field)
        return True

    normalized = {c: c.lower().strip().replace("_", " ") for c in columns}

    # Exact header matches first so "Name" never steals "First Name"
    for column, norm in normalized.items():
        for field, variants in FIELD_VARIANTS.items():
            if norm in variants or norm.replace(" ", "_") in variants:
                if assign(column, field):
                    break

    for column, norm in normalized.items():
        if column in mapping:
            continue
        for field, variants in FIELD_VARIANTS.items():
            if field in EXACT_ONLY or field in used:
                continue
            if any(v in norm for v in variants):
                assign(column, field)
                break
        else:
            if "mail" in norm:
                assign(column, "email")
            elif "tel" in norm:
                assign(column, "phone")
            elif "expert" in norm or "skill" in norm:
                assign(column, "expertise")

    unmapped = [c for c in columns if c not in mapping]
    confidence = round(len(mapping) / len(columns), 2) if columns else 0.0
    return {"mapping": mapping, "unmapped_columns": unmapped, "confidence": confidence}


def preview_import(filename: str, content: bytes, sample_size: int = 5) -> dict:
    frame = read_table(filename, content)
    headers = list(frame.columns)
    return {
        "headers": headers,
        "rows": frame.head(sample_size).to_dict(orient="records"),
        "total_rows": len(frame),
        "suggested_mapping": suggest_column_mapping(headers),
    }


def normalize_influence(value: Optional[str]) -> str:
    """'Very High' / 'tier 1' / '1' → VERY_HIGH; anything unrecognised → MEDIUM."""
    return INFLUENCE_ALIASES.get((value or "").strip().lower(), "MEDIUM")


def normalize_status(value: Optional[str]) -> str:
    key = (value or "").strip().upper()
    return key if key in STATUSES else "ACTIVE"


def normalize_type(value: Optional[str]) -> str:
    key = (value or "").strip().upper()
    return key if key in ANALYST_TYPES else "ANALYST"


def split_topics(value: Optional[str]) -> list[str]:
    topics = []
    for part in re.split(r"[,;]", value or ""):
        part = part.strip()
        if part and part not in topics:
            topics.append(part)
    return topics


def rows_to_analysts(frame: pd.DataFrame, mapping: dict[str, str]) -> tuple[list[dict], list[dict]]:
    """Apply *mapping* to every row.

    Returns ``(records, errors)``; ``errors`` entries are ``{"row", "reason"}``
    with 1-based spreadsheet row numbers (header is row 1).
    """
    records: list[dict] = []
    errors: list[dict] = []
    seen_emails: set[str] = set()

    for index, row in enumerate(frame.to_dict(orient="records")):
        row_number = index + 2
        values: dict[str, str] = {}
        for column, field in mapping.items():
            if field and column in row:
                values[field] = str(row[column] or "").strip()

        if values.get("full_name") and not (values.get("first_name") and values.get("last_name")):
            parts = values["full_name"].split()
            if len(parts) >= 2:
                values["first_name"] = values.get("first_name") or parts[0]
                values["last_name"] = values.get("last_name") or " ".join(parts[1:])

        first = values.get("first_name", "")
        last = values.get("last_name", "")
        email = values.get("email", "").lower()
        if not first or not last or not email:
            errors.append({"row": row_number, "reason": "Missing first name, last name or email"})
            continue
        if not _EMAIL.match(email):
            errors.append({"row": row_number, "reason": f"Invalid email '{email}'"})
            continue
        if email in seen_emails:
            errors.append({"row": row_number, "reason": f"Duplicate email '{email}' in file"})
            continue
        seen_emails.add(email)

        records.append({
            "first_name": first,
            "last_name": last,
            "email": email,
            "company": values.get("company") or None,
            "title": values.get("title") or None,
            "phone": values.get("phone") or None,
            "linkedin_url": values.get("linkedin_url") or None,
            "twitter_handle": values.get("twitter_handle") or None,
            "personal_website": values.get("personal_website") or None,
            "bio": values.get("bio") or None,
            "influence": normalize_influence(values.get("influence")),
            "status": normalize_status(values.get("status")),
            "type": normalize_type(values.get("type")),
            "covered_topics": split_topics(values.get("expertise")),
        })
    return records, errors


async def bulk_create_analysts(db: AsyncSession, records: list[dict]) -> dict:
    """Insert analyst records, skipping emails already in the table.

    Returns ``{"created", "skipped", "errors", "ids"}``.
    """
    emails = [r["email"].lower() for r in records if r.get("email")]
    existing: set[str] = set()
    if emails:
        existing = {
            e.lower() for e in (await db.execute(
                select(Analyst.email).where(func.lower(Analyst.email).in_(emails))
            )).scalars()
        }

    created_ids: list[str] = []
    skipped = 0
    errors: list[dict] = []
    for record in records:
        email = (record.get("email") or "").lower()
        if not email or not record.get("first_name") or not record.get("last_name"):
            errors.append({"email": email or None, "reason": "Missing first name, last name or email"})
            continue
        if email in existing:
            skipped += 1
            continue
        existing.add(email)

        fields = {k: v for k, v in record.items() if k in ANALYST_COLUMNS}
        fields["email"] = email
        analyst = Analyst(
            **fields,
            covered_topics=[AnalystTopic(topic=t) for t in record.get("covered_topics") or []],
        )
        db.add(analyst)
        await db.flush()
        created_ids.append(analyst.id)

    await db.commit()
    logger.info("Bulk import: %d created, %d skipped, %d errors", len(created_ids), skipped, len(errors))
    return {"created": len(created_ids), "skipped": skipped, "errors": errors, "ids": created_ids}
