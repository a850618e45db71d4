"""Entity extraction from recognized text.

Each matcher is a pure function over the same input text. The extractor
runs them independently and merges their output into one bag of five
ordered, de-duplicated lists. Nothing here performs I/O or raises on
malformed input.
"""

from __future__ import annotations

import re
from collections import Counter
from dataclasses import asdict, dataclass, field
from typing import Any, Iterable

# === Patterns ===

_ENGLISH_MONTHS = (
    "January|February|March|April|May|June|July|August|"
    "September|October|November|December"
)
_RUSSIAN_MONTHS = (
    "января|февраля|марта|апреля|мая|июня|июля|августа|"
    "сентября|октября|ноября|декабря"
)

DATE_PATTERNS: list[re.Pattern[str]] = [
    # DD.MM.YYYY, DD-MM-YYYY, DD/MM/YYYY
    re.compile(r"\b\d{1,2}[./-]\d{1,2}[./-]\d{2,4}\b"),
    # YYYY-MM-DD and friends
    re.compile(r"\b\d{4}[./-]\d{1,2}[./-]\d{1,2}\b"),
    re.compile(rf"\b\d{{1,2}}\s+(?:{_RUSSIAN_MONTHS})\s+\d{{4}}\b", re.IGNORECASE),
    re.compile(rf"\b\d{{1,2}}\s+(?:{_ENGLISH_MONTHS})\s+\d{{4}}\b", re.IGNORECASE),
]

# Digit group: digits with ',' '.' or single spaces between digits
_DIGITS = r"\d(?:[\d,.]|[ \u00a0](?=\d))*"
_CURRENCY_CODE = r"(?:USD|EUR|GBP|RUB|CHF)\b"
_CURRENCY_WORD = r"руб(?:лей|ля|ль)?\b\.?"
_CURRENCY_SYMBOL = r"[$€£₽]"

AMOUNT_PATTERNS: list[re.Pattern[str]] = [
    # 100 USD, 1 500,00 руб., 20€
    re.compile(
        rf"{_DIGITS}[ \u00a0]?(?:{_CURRENCY_CODE}|{_CURRENCY_WORD}|{_CURRENCY_SYMBOL})",
        re.IGNORECASE,
    ),
    # $100, € 20.50, USD 100
    re.compile(
        rf"(?:{_CURRENCY_SYMBOL}|\b{_CURRENCY_CODE})[ \u00a0]?{_DIGITS}",
        re.IGNORECASE,
    ),
]

EMAIL_PATTERN = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")

PHONE_PATTERN = re.compile(
    r"(?<![\w+])"
    r"(?P<cc>(?:\+\d{1,3}|8)[ \-]?)?"
    r"(?:\(\d{2,5}\)[ \-]?)?"
    r"\d{2,4}(?:[ \-]?\d{2,4}){1,4}"
    r"(?![\w])"
)
PHONE_MIN_DIGITS = 7
PHONE_MAX_DIGITS = 11

STOP_WORDS = frozenset({
    # English
    "the", "and", "for", "with", "this", "that", "from", "have", "were", "been",
    "will", "your", "into", "than", "then", "them", "they", "their", "there",
    "what", "when", "which", "while", "about", "also", "only", "over", "such",
    "some", "would", "could", "should", "shall", "these", "those", "other",
    "page", "here", "where", "whom", "upon", "each", "very", "more", "most",
    # Russian
    "для", "что", "как", "это", "этот", "эта", "эти", "того", "также", "только",
    "или", "при", "после", "перед", "между", "если", "когда", "чтобы", "было",
    "были", "быть", "будет", "есть", "нет", "его", "её", "них", "они", "оно",
    "она", "мы", "вы", "ваш", "наш", "который", "которые", "которая", "своей",
    "более", "менее", "даже", "уже", "ещё", "еще", "всех", "всего", "весь",
})
KEYWORD_MIN_LENGTH = 4
KEYWORD_LIMIT = 10

FIELDS = ("dates", "amounts", "emails", "phones", "keywords")


# === Result ===


@dataclass
class ExtractedEntities:
    """The entity bag stored in ``Page.extracted_data``."""

    dates: list[str] = field(default_factory=list)
    amounts: list[str] = field(default_factory=list)
    emails: list[str] = field(default_factory=list)
    phones: list[str] = field(default_factory=list)
    keywords: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, list[str]]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ExtractedEntities":
        data = data or {}
        return cls(**{name: list(data.get(name) or []) for name in FIELDS})

    def is_empty(self) -> bool:
        return not any(getattr(self, name) for name in FIELDS)

    def as_text(self) -> str:
        """Render the bag back to plain text, one entity per line."""
        lines: list[str] = []
        for name in FIELDS:
            lines.extend(getattr(self, name))
        return "\n".join(lines)

    def merge(self, other: "ExtractedEntities") -> "ExtractedEntities":
        """Union of two bags, keeping first-seen order."""
        return ExtractedEntities(**{
            name: unique(getattr(self, name) + getattr(other, name)) for name in FIELDS
        })


# === Matchers ===


def unique(values: Iterable[str]) -> list[str]:
    """De-duplicate by exact string, keeping insertion order."""
    return list(dict.fromkeys(v for v in values if v))


def extract_dates(text: str) -> list[str]:
    found: list[str] = []
    for pattern in DATE_PATTERNS:
        found.extend(m.group(0) for m in pattern.finditer(text))
    return unique(found)


def extract_amounts(text: str) -> list[str]:
    found: list[str] = []
    for pattern in AMOUNT_PATTERNS:
        found.extend(m.group(0).strip() for m in pattern.finditer(text))
    return unique(found)


def extract_emails(text: str) -> list[str]:
    return unique(m.group(0) for m in EMAIL_PATTERN.finditer(text))


def extract_phones(text: str) -> list[str]:
    found: list[str] = []
    for match in PHONE_PATTERN.finditer(text):
        candidate = match.group(0).strip()
        country_code = match.group("cc") or ""
        national = re.sub(r"\D", "", candidate[len(country_code):])
        if not PHONE_MIN_DIGITS <= len(national) <= PHONE_MAX_DIGITS:
            continue
        if _is_date(candidate) or _precedes_currency(text, match.end()):
            continue
        found.append(candidate)
    return unique(found)


def extract_keywords(text: str, limit: int = KEYWORD_LIMIT) -> list[str]:
    """Most frequent words, ties broken by first occurrence."""
    counts: Counter[str] = Counter()
    for word in text.lower().split():
        cleaned = "".join(ch for ch in word if ch.isalpha())
        if len(cleaned) >= KEYWORD_MIN_LENGTH and cleaned not in STOP_WORDS:
            counts[cleaned] += 1
    # most_common is stable, so equal counts keep insertion order
    return [word for word, _ in counts.most_common(limit)]


def _is_date(candidate: str) -> bool:
    return any(p.fullmatch(candidate) for p in DATE_PATTERNS[:2])


def _precedes_currency(text: str, end: int) -> bool:
    tail = text[end:end + 8].lstrip(" \u00a0")
    return bool(re.match(rf"{_CURRENCY_CODE}|{_CURRENCY_WORD}|{_CURRENCY_SYMBOL}", tail, re.IGNORECASE))


class EntityExtractor:
    """Extract dates, amounts, emails, phones and keywords from text.

    Deterministic: the same text always yields the same ordered bag, and
    empty or non-string input yields an empty bag.
    """

    def __init__(self, keyword_limit: int = KEYWORD_LIMIT):
        self.keyword_limit = keyword_limit

    def extract(self, text: str | None) -> ExtractedEntities:
        if not text or not isinstance(text, str):
            return ExtractedEntities()

        return ExtractedEntities(
            dates=extract_dates(text),
            amounts=extract_amounts(text),
            emails=extract_emails(text),
            phones=extract_phones(text),
            keywords=extract_keywords(text, self.keyword_limit),
        )

    def extract_pages(self, texts: Iterable[str | None]) -> ExtractedEntities:
        """Merge the bags of several pages into one document-level bag."""
        merged = ExtractedEntities()
        for text in texts:
            merged = merged.merge(self.extract(text))
        return merged
