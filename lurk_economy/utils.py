"""Shared utility helpers for lurk-economy."""

from __future__ import annotations

import re
from datetime import datetime, timezone

# Same pattern the music overlay uses to accept a link.
_YOUTUBE_RE = re.compile(r"^.*(youtu\.be/|v/|u/\w/|embed/|shorts/|watch\?v=|&v=)([^#&?]*).*")
_YOUTUBE_ID_RE = re.compile(r"^[A-Za-z0-9_-]{11}$")


def normalize_login(name: str) -> str:
    """Normalize a channel or user login (lowercase, no leading '#' or '@')."""
    return name.strip().lstrip("#@").lower()


def parse_timestamp(ts: str | None) -> datetime | None:
    """Parse SQLite TIMESTAMP string to timezone-aware datetime, or None."""
    if not ts:
        return None
    try:
        dt = datetime.fromisoformat(ts)
        # SQLite stores naive timestamps as UTC
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt
    except (ValueError, TypeError):
        return None


def now_utc() -> datetime:
    """Return current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


def format_timestamp(dt: datetime) -> str:
    """Serialize a datetime for storage (UTC, ISO-8601, microseconds kept)."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def extract_youtube_id(text: str) -> str | None:
    """Return the 11-character YouTube video id from a link or bare id."""
    candidate = text.strip()
    if _YOUTUBE_ID_RE.match(candidate):
        return candidate
    match = _YOUTUBE_RE.match(candidate)
    if match and len(match.group(2)) == 11:
        return match.group(2)
    return None
