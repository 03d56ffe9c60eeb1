import re
from datetime import date, datetime

import pytest

from coursecert.shared.identifiers import (
    format_certificate_date,
    format_month_year_roman,
    format_program_duration,
    generate_certificate_number,
)


def test_certificate_number_shape():
    number = generate_certificate_number("CERT", datetime(2026, 3, 5))
    assert re.fullmatch(r"CERT-202603-[A-Z0-9]{6}", number)


def test_certificate_number_uses_current_period_and_custom_prefix():
    today = date.today()
    number = generate_certificate_number("lkp")
    assert number.startswith(f"LKP-{today.year:04d}{today.month:02d}-")


def test_certificate_numbers_do_not_collide_in_practice():
    numbers = {generate_certificate_number() for _ in range(500)}
    assert len(numbers) == 500


def test_certificate_number_requires_prefix():
    with pytest.raises(ValueError):
        generate_certificate_number("  ")


def test_roman_month_year():
    assert format_month_year_roman(3, 2026) == "III/2026"
    assert format_month_year_roman(12, 2025) == "XII/2025"
    assert format_month_year_roman(9, 2024) == "IX/2024"


def test_roman_month_year_defaults_to_today():
    today = date.today()
    assert format_month_year_roman().endswith(f"/{today.year}")


def test_roman_month_out_of_range():
    with pytest.raises(ValueError):
        format_month_year_roman(13, 2026)


def test_certificate_date_locales():
    value = date(2026, 10, 19)
    assert format_certificate_date(value) == "19 Oktober 2026"
    assert format_certificate_date(value, "id-ID") == "19 Oktober 2026"
    assert format_certificate_date(value, "en") == "October 19, 2026"


def test_certificate_date_unknown_locale():
    with pytest.raises(ValueError):
        format_certificate_date(date(2026, 1, 1), "fr")


def test_program_duration_in_hours():
    assert format_program_duration(8) == "12 Jam"
    assert format_program_duration(3) == "4.5 Jam"
    assert format_program_duration(4, 60, unit="hours") == "4 hours"
    assert format_program_duration(0) == ""
    assert format_program_duration(None) == ""
