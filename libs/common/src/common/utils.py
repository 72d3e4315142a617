from __future__ import annotations

import html
import re
from datetime import UTC, datetime

_TAG_PATTERN = re.compile(r"<[^>]+>")


def now_utc_iso() -> str:
    return datetime.now(UTC).isoformat()


def tokenize(text: str) -> set[str]:
    punctuation = ".,!?;:\"'()[]{}"
    tokens = {token.strip(punctuation) for token in text.lower().split()}
    return {token for token in tokens if token}


def normalize_whitespace(text: str) -> str:
    return " ".join(text.split())


def normalize_text(text: str) -> str:
    squashed = normalize_whitespace(text).lower()
    alnum_only = re.sub(r"[^a-z0-9\s]+", " ", squashed)
    return normalize_whitespace(alnum_only)


def parse_iso_datetime(value: str | None) -> datetime | None:
    """Parse an ISO-8601 string into an aware datetime.

    Naive values are assumed to be UTC. Empty or malformed input yields None.
    """
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def strip_html(raw: str | None) -> str:
    if not raw:
        return ""
    without_tags = _TAG_PATTERN.sub(" ", raw)
    return normalize_whitespace(html.unescape(without_tags))
