from __future__ import annotations

import secrets
import string
from datetime import date, datetime


DEFAULT_CERT_PREFIX = "CERT"
CERT_SUFFIX_LENGTH = 6
_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits

ROMAN_MONTHS: tuple[str, ...] = (
    "I",
    "II",
    "III",
    "IV",
    "V",
    "VI",
    "VII",
    "VIII",
    "IX",
    "X",
    "XI",
    "XII",
)

MONTH_NAMES: dict[str, tuple[str, ...]] = {
    "id": (
        "Januari",
        "Februari",
        "Maret",
        "April",
        "Mei",
        "Juni",
        "Juli",
        "Agustus",
        "September",
        "Oktober",
        "November",
        "Desember",
    ),
    "en": (
        "January",
        "February",
        "March",
        "April",
        "May",
        "June",
        "July",
        "August",
        "September",
        "October",
        "November",
        "December",
    ),
}

DEFAULT_LOCALE = "id"


def _normalize_locale(locale: str | None) -> str:
    value = (locale or DEFAULT_LOCALE).strip().lower().replace("_", "-")
    base = value.split("-")[0]
    if base not in MONTH_NAMES:
        raise ValueError(f"Unsupported locale: {locale!r}")
    return base


def generate_certificate_number(
    prefix: str = DEFAULT_CERT_PREFIX, now: datetime | date | None = None
) -> str:
    """Return ``PREFIX-YYYYMM-XXXXXX``; sortable by period, not guaranteed unique."""
    cleaned = (prefix or "").strip().upper()
    if not cleaned:
        raise ValueError("Certificate number prefix required")
    reference = now or datetime.now()
    suffix = "".join(
        secrets.choice(_SUFFIX_ALPHABET) for _ in range(CERT_SUFFIX_LENGTH)
    )
    return f"{cleaned}-{reference.year:04d}{reference.month:02d}-{suffix}"


def format_certificate_date(
    value: date | datetime | None = None, locale: str | None = DEFAULT_LOCALE
) -> str:
    """Format a date with target-locale month names and ordering."""
    lang = _normalize_locale(locale)
    value = value or date.today()
    month = MONTH_NAMES[lang][value.month - 1]
    if lang == "en":
        return f"{month} {value.day}, {value.year}"
    return f"{value.day} {month} {value.year}"


def format_month_year_roman(month: int | None = None, year: int | None = None) -> str:
    today = date.today()
    month = today.month if month is None else int(month)
    year = today.year if year is None else int(year)
    if not 1 <= month <= 12:
        raise ValueError(f"Month out of range: {month}")
    return f"{ROMAN_MONTHS[month - 1]}/{year}"


def format_program_duration(
    meetings: int | None, minutes_per_meeting: int = 90, unit: str = "Jam"
) -> str:
    """Render a course length given in meetings as total hours, e.g. ``12 Jam``."""
    count = int(meetings or 0)
    if count <= 0:
        return ""
    hours = count * minutes_per_meeting / 60
    if abs(hours - round(hours)) < 0.01:
        return f"{int(round(hours))} {unit}"
    return f"{hours:.1f} {unit}"
