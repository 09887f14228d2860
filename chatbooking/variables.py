"""Booking field extraction and completeness checks.

Free text and button payloads are normalized into typed booking fields
(ISO dates, ``HH:MM`` times, positive guest counts ...).  Parsing is
forgiving: a date or time that cannot be understood is kept verbatim and
later reported as missing by the strict check in ``missing_fields``.
"""

from __future__ import annotations

import math
import re
from datetime import date, timedelta
from typing import Any, Iterable, Optional

from pydantic import BaseModel

# Field names the extractor knows how to normalize
DATE = "date"
TIME = "time"
GUEST_COUNT = "guestCount"
NAME = "name"
PHONE = "phone"
EMAIL = "email"
SPECIAL_REQUESTS = "specialRequests"
REVIEW_RATING = "reviewRating"
REVIEW_FEEDBACK = "reviewFeedback"
GOOGLE_REVIEW_URL = "googleReviewUrl"

KNOWN_FIELDS = frozenset(
    {
        DATE,
        TIME,
        GUEST_COUNT,
        NAME,
        PHONE,
        EMAIL,
        SPECIAL_REQUESTS,
        REVIEW_RATING,
        REVIEW_FEEDBACK,
    }
)

MAX_GUEST_COUNT = 100

_ISO_DATE_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")
_DMY_RE = re.compile(r"(?<!\d)(\d{1,2})[.\-/](\d{1,2})(?:[.\-/](\d{2,4}))?(?!\d)")
_CLOCK_RE = re.compile(r"(?<![\d.:])(\d{1,2})[.:](\d{2})(?![.:]?\d)")
# "16.03." or "16.03.2025": a day, never a clock time
_EXPLICIT_DATE_RE = re.compile(r"(?<![\d.])(\d{1,2})\.(\d{1,2})\.(\d{2}|\d{4})?(?![\d.:])")
_HOUR_RE = re.compile(r"(?<!\d)(\d{1,2})\s*uhr\b", re.IGNORECASE)
_STRICT_TIME_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")
_LEADING_INT_RE = re.compile(r"^\s*(\d+)")
_COUNT_WORD_RE = re.compile(
    r"(?<!\d)(\d+)\s*(?:person|personen|leute|gäste|gaeste|pax)\b", re.IGNORECASE
)
_PHONE_RE = re.compile(r"^\+?\d{6,15}$")
_EMAIL_RE = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
_PLACEHOLDER_RE = re.compile(r"\{\{(\w+)\}\}")

_RELATIVE_DAYS = (("übermorgen", 2), ("uebermorgen", 2), ("heute", 0), ("morgen", 1))
_WEEKDAYS = ("montag", "dienstag", "mittwoch", "donnerstag", "freitag", "samstag", "sonntag")

_NAME_WORD = r"[A-Za-zÄÖÜäöüß][A-Za-zÄÖÜäöüß'.\-]*"
_NAME_PATTERNS = [
    re.compile(rf"ich\s+(?:heiße|heisse|bin)\s+({_NAME_WORD}(?:\s+{_NAME_WORD})?)", re.IGNORECASE),
    re.compile(rf"mein\s+name\s+ist\s+({_NAME_WORD}(?:\s+{_NAME_WORD})?)", re.IGNORECASE),
    re.compile(rf"name[:\s]+({_NAME_WORD}(?:\s+{_NAME_WORD})?)", re.IGNORECASE),
]
_NAME_BLACKLIST = (
    "ich weiß nicht",
    "ich weiss nicht",
    "weiß ich nicht",
    "weiss ich nicht",
    "keine ahnung",
    "keine idee",
)
_NAME_STOP_WORDS = frozenset(
    {"ich", "bin", "weiß", "weiss", "nicht", "keine", "kein", "mein", "meine", "name", "ja", "nein"}
)
_NAME_WORD_RE = re.compile(rf"^{_NAME_WORD}$")

_RATING_EXPLICIT_RE = re.compile(r"\b([1-5])\b\s*(?:/\s*5|von\s*5|sterne?)\b")
_RATING_COMPACT_RE = re.compile(r"^([1-5])[.!]?$")


# ── Dates & times ─────────────────────────────────────────────


def _valid_date(year: int, month: int, day: int) -> Optional[date]:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def parse_date(raw: str, today: Optional[date] = None) -> str:
    """Normalize a German-style date to ISO ``YYYY-MM-DD``.

    Accepts ``DD.MM.YYYY``, ``DD/MM/YY``, ``DD-MM-YYYY``, ``DD.MM`` (current
    year), ISO dates, ``heute``/``morgen``/``übermorgen`` and weekday names
    (next occurrence, never today).  Anything else is returned stripped but
    otherwise unchanged.
    """
    text = (raw or "").strip()
    if not text:
        return text
    today = today or date.today()

    iso = _ISO_DATE_RE.match(text)
    if iso:
        return text

    match = _DMY_RE.search(text)
    if match:
        day, month, year_raw = match.group(1), match.group(2), match.group(3)
        if year_raw is None:
            year = today.year
        elif len(year_raw) == 2:
            year = 2000 + int(year_raw)
        elif len(year_raw) == 4:
            year = int(year_raw)
        else:
            return text
        parsed = _valid_date(year, int(month), int(day))
        return parsed.isoformat() if parsed else text

    lower = text.lower()
    words = set(re.findall(r"[a-zäöüß]+", lower))
    for word, offset in _RELATIVE_DAYS:
        if word in words:
            return (today + timedelta(days=offset)).isoformat()
    for weekday, name in enumerate(_WEEKDAYS):
        if name in words:
            days_until = (weekday - today.weekday()) % 7 or 7
            return (today + timedelta(days=days_until)).isoformat()

    return text


def parse_time(raw: str) -> str:
    """Normalize ``HH:MM``, ``HH.MM`` or ``<N> Uhr`` to zero-padded ``HH:MM``."""
    text = (raw or "").strip()
    clock_text = _EXPLICIT_DATE_RE.sub(" ", text)
    match = _CLOCK_RE.search(clock_text)
    if match:
        hour, minute = int(match.group(1)), int(match.group(2))
        if hour <= 23 and minute <= 59:
            return f"{hour:02d}:{minute:02d}"
        return text
    match = _HOUR_RE.search(clock_text)
    if match:
        hour = int(match.group(1))
        if hour <= 23:
            return f"{hour:02d}:00"
    return text


def is_iso_date(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    match = _ISO_DATE_RE.match(value)
    return bool(match) and _valid_date(*(int(g) for g in match.groups())) is not None


def is_clock_time(value: Any) -> bool:
    return isinstance(value, str) and bool(_STRICT_TIME_RE.match(value))


# ── Counts, contact data, ratings ─────────────────────────────


def parse_guest_count(raw: Any) -> Optional[int]:
    """Positive guest count from an int or a digit-leading string, else None."""
    if isinstance(raw, bool) or raw is None:
        return None
    if isinstance(raw, float):
        if math.isnan(raw) or not raw.is_integer():
            return None
        raw = int(raw)
    if isinstance(raw, int):
        count = raw
    else:
        text = str(raw)
        match = _LEADING_INT_RE.match(text) or _COUNT_WORD_RE.search(text)
        if not match:
            return None
        count = int(match.group(1))
    if 0 < count <= MAX_GUEST_COUNT:
        return count
    return None


def looks_like_name(value: str) -> bool:
    trimmed = (value or "").strip()
    if not trimmed or len(trimmed) > 60:
        return False
    lower = trimmed.lower()
    if any(phrase in lower for phrase in _NAME_BLACKLIST):
        return False
    if re.search(r"[0-9@]", trimmed):
        return False
    words = trimmed.split()
    if len(words) > 4:
        return False
    if any(w.lower() in _NAME_STOP_WORDS for w in words):
        return False
    return all(_NAME_WORD_RE.match(w) for w in words)


def extract_name(raw: str) -> Optional[str]:
    """Pull a name out of "Ich heiße Maria" style text, or accept a bare name."""
    text = (raw or "").strip()
    if not text:
        return None
    for pattern in _NAME_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(1).strip()
    if looks_like_name(text):
        return text
    return None


def parse_phone(raw: str) -> Optional[str]:
    cleaned = re.sub(r"[\s\-/()]", "", (raw or "").strip())
    return cleaned if _PHONE_RE.match(cleaned) else None


def parse_email(raw: str) -> Optional[str]:
    match = _EMAIL_RE.search(raw or "")
    return match.group(0) if match else None


def parse_review_rating(raw: Any) -> Optional[int]:
    """Star rating 1-5 from "4", "4/5", "4 Sterne" or a row of ⭐."""
    if isinstance(raw, int) and not isinstance(raw, bool):
        return raw if 1 <= raw <= 5 else None
    text = str(raw or "")
    if not text:
        return None
    lower = text.lower()
    match = _RATING_EXPLICIT_RE.search(lower)
    if match:
        return int(match.group(1))
    match = _RATING_COMPACT_RE.match(re.sub(r"\s+", "", lower))
    if match:
        return int(match.group(1))
    stars = text.count("⭐")
    if 0 < stars <= 5:
        return stars
    return None


# ── Field dispatch ────────────────────────────────────────────


def normalize(field: Optional[str], raw: Any, today: Optional[date] = None) -> Any:
    """Typed value for *field* parsed from *raw*; None means "do not store"."""
    if raw is None:
        return None
    if field == GUEST_COUNT:
        return parse_guest_count(raw)
    if field == REVIEW_RATING:
        return parse_review_rating(raw)

    text = str(raw).strip()
    if not text:
        return None
    if field == DATE:
        return parse_date(text, today=today)
    if field == TIME:
        return parse_time(text)
    if field == NAME:
        return extract_name(text) or text
    if field == PHONE:
        return parse_phone(text)
    if field == EMAIL:
        return parse_email(text)
    return text


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    return False


def field_is_valid(field: str, value: Any) -> bool:
    """Strict format check applied before a booking is attempted."""
    if _is_blank(value):
        return False
    if field == DATE:
        return is_iso_date(value)
    if field == TIME:
        return is_clock_time(value)
    if field == GUEST_COUNT:
        if isinstance(value, bool):
            return False
        if isinstance(value, int):
            return value > 0
        return isinstance(value, str) and value.isdigit() and int(value) > 0
    return True


def missing_fields(variables: dict[str, Any], required: Iterable[str]) -> list[str]:
    """Required fields that are absent, blank, NaN or malformed, in order."""
    return [f for f in required if not field_is_valid(f, variables.get(f))]


def merge_variables(existing: dict[str, Any], incoming: dict[str, Any]) -> dict[str, Any]:
    """Return *existing* updated with the non-blank values of *incoming*.

    Keys are never removed and blank values never overwrite.
    """
    merged = dict(existing)
    for key, value in incoming.items():
        if not _is_blank(value):
            merged[key] = value
    return merged


def substitute_variables(text: str, variables: dict[str, Any]) -> str:
    """Replace ``{{key}}`` placeholders; unknown keys are left in place.

    ISO dates are shown as ``DD.MM.YYYY``.
    """

    def _replace(match: re.Match) -> str:
        key = match.group(1)
        value = variables.get(key)
        if value is None:
            return match.group(0)
        if isinstance(value, str) and key == DATE and is_iso_date(value):
            year, month, day = value.split("-")
            return f"{day}.{month}.{year}"
        return str(value)

    return _PLACEHOLDER_RE.sub(_replace, text or "")


def format_display_date(value: str) -> str:
    if is_iso_date(value):
        year, month, day = value.split("-")
        return f"{day}.{month}.{year}"
    return value


# ── Requirements per business vertical ────────────────────────


class BookingRequirements(BaseModel):
    """Which fields a booking needs and what to assume when one is not asked."""

    required_fields: list[str] = [NAME, DATE, TIME, GUEST_COUNT]
    defaults: dict[str, Any] = {}

    @classmethod
    def for_vertical(cls, vertical: str) -> "BookingRequirements":
        if vertical in ("fitness", "beauty"):
            return cls(required_fields=[NAME, DATE, TIME], defaults={GUEST_COUNT: 1})
        return cls()

    def apply_defaults(self, variables: dict[str, Any]) -> dict[str, Any]:
        result = dict(variables)
        for key, value in self.defaults.items():
            if _is_blank(result.get(key)):
                result[key] = value
        return result

    def missing(self, variables: dict[str, Any]) -> list[str]:
        return missing_fields(self.apply_defaults(variables), self.required_fields)


def extract_explicit_date(text: str, today: Optional[date] = None) -> Optional[str]:
    """ISO date for an unambiguous ``DD.MM.`` / ``DD.MM.YYYY`` inside *text*, else None.

    Used when a time answer also names a day ("16.03. um 19 Uhr").  A bare
    ``12.10`` is read as a time, never as a date.
    """
    match = _EXPLICIT_DATE_RE.search(text or "")
    if not match:
        return None
    parsed = parse_date(match.group(0), today=today)
    return parsed if is_iso_date(parsed) else None
