from __future__ import annotations

import re

from common.utils import normalize_text

from jobboard.models import VisaAnalysis

NEGATIVE_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    (
        "no sponsorship",
        re.compile(
            r"\b(?:no|not|not\s+able\s+to|unable\s+to|cannot|can\s*not|will\s+not|won'?t|"
            r"does\s+not|doesn'?t|do\s+not|don'?t)\s+(?:offer\s+|provide\s+)?"
            r"(?:visa\s+|h-?1-?b\s+)?sponsor(?:ship)?\b",
            re.IGNORECASE,
        ),
    ),
    (
        "sponsorship not available",
        re.compile(
            r"\bsponsorship\s+(?:is\s+)?not\s+(?:available|offered|provided)\b",
            re.IGNORECASE,
        ),
    ),
    ("without sponsorship", re.compile(r"\bwithout\s+(?:visa\s+)?sponsorship\b", re.IGNORECASE)),
    (
        "not eligible for sponsorship",
        re.compile(r"\bnot\s+eligible\s+for\s+(?:visa\s+)?sponsorship\b", re.IGNORECASE),
    ),
    (
        "citizenship required",
        re.compile(
            r"\b(?:must\s+be\s+(?:a\s+)?u\.?\s?s\.?\s+citizen|"
            r"u\.?\s?s\.?\s+citizens?\s+only|us\s+citizenship\s+(?:is\s+)?required|"
            r"requires?\s+u\.?\s?s\.?\s+citizenship)",
            re.IGNORECASE,
        ),
    ),
    ("security clearance", re.compile(r"\bsecurity\s+clearance\b", re.IGNORECASE)),
    (
        "green card holders only",
        re.compile(r"\bgreen\s+card\s+holders?\s+only\b", re.IGNORECASE),
    ),
)

H1B_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("h1b", re.compile(r"\bh-?1-?b\b", re.IGNORECASE)),
    (
        "visa sponsorship available",
        re.compile(r"\b(?:visa\s+)?sponsorship\s+(?:is\s+)?(?:available|offered|provided)\b", re.IGNORECASE),
    ),
    ("will sponsor", re.compile(r"\bwill(?:ing\s+to)?\s+sponsor\b", re.IGNORECASE)),
)

OPT_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("opt", re.compile(r"\bOPT\b")),
    ("optional practical training", re.compile(r"\boptional\s+practical\s+training\b", re.IGNORECASE)),
    ("cpt/opt", re.compile(r"\bcpt\s*/\s*opt\b", re.IGNORECASE)),
    ("f-1", re.compile(r"\bf-?1\s+(?:students?|visa)\b", re.IGNORECASE)),
)

STEM_OPT_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("stem opt", re.compile(r"\bstem[\s-]+opt\b", re.IGNORECASE)),
    ("stem extension", re.compile(r"\bstem\s+extension\b", re.IGNORECASE)),
    ("24-month extension", re.compile(r"\b24[\s-]+month\s+(?:opt\s+)?extension\b", re.IGNORECASE)),
)

KNOWN_SPONSORS = frozenset(
    {
        "amazon",
        "apple",
        "cognizant",
        "deloitte",
        "google",
        "ibm",
        "infosys",
        "intel",
        "meta",
        "microsoft",
        "oracle",
        "salesforce",
        "tata consultancy services",
        "wipro",
    }
)


def _matches(
    patterns: tuple[tuple[str, re.Pattern[str]], ...],
    text: str,
) -> list[str]:
    return [label for label, pattern in patterns if pattern.search(text)]


def is_known_sponsor(company: str | None) -> bool:
    normalized = normalize_text(company or "")
    if not normalized:
        return False
    return any(
        normalized == sponsor or normalized.startswith(f"{sponsor} ")
        for sponsor in KNOWN_SPONSORS
    )


def detect_visa_sponsorship(
    title: str,
    description: str,
    company: str | None = None,
) -> VisaAnalysis:
    """Classify posting text for H-1B, OPT and STEM OPT friendliness.

    Any explicit refusal (no sponsorship, citizenship or clearance requirement)
    wins over positive mentions. A company on the known-sponsor list only
    produces a low-confidence H-1B signal when the text says nothing either way.
    """
    text = f"{title}\n{description}"

    negative_signals = _matches(NEGATIVE_PATTERNS, text)
    if negative_signals:
        return VisaAnalysis(
            h1b=False,
            opt=False,
            stem_opt=False,
            confidence=0.9,
            negative_signals=negative_signals,
        )

    h1b_matches = _matches(H1B_PATTERNS, text)
    opt_matches = _matches(OPT_PATTERNS, text)
    stem_matches = _matches(STEM_OPT_PATTERNS, text)
    if stem_matches:
        # "STEM OPT" also satisfies the plain OPT pattern.
        opt_matches = [label for label in opt_matches if label != "opt"]
    matched_keywords = h1b_matches + opt_matches + stem_matches

    if matched_keywords:
        return VisaAnalysis(
            h1b=bool(h1b_matches),
            opt=bool(opt_matches or stem_matches),
            stem_opt=bool(stem_matches),
            confidence=round(min(0.5 + 0.15 * len(matched_keywords), 0.95), 2),
            matched_keywords=matched_keywords,
        )

    if is_known_sponsor(company):
        return VisaAnalysis(
            h1b=True,
            opt=False,
            stem_opt=False,
            confidence=0.4,
            matched_keywords=["known sponsor"],
        )

    return VisaAnalysis(h1b=False, opt=False, stem_opt=False, confidence=0.0)
