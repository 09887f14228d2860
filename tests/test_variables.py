"""Tests for booking field extraction and substitution."""

from datetime import date

import pytest

from chatbooking import variables as fields
from chatbooking.variables import (
    BookingRequirements,
    extract_explicit_date,
    extract_name,
    merge_variables,
    missing_fields,
    normalize,
    parse_date,
    parse_guest_count,
    parse_review_rating,
    parse_time,
    substitute_variables,
)

# A Wednesday
TODAY = date(2025, 3, 12)


class TestParseDate:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("15.03.2025", "2025-03-15"),
            ("15.3.25", "2025-03-15"),
            ("15/03/2025", "2025-03-15"),
            ("15.03.", "2025-03-15"),
            ("2025-03-15", "2025-03-15"),
            ("am 15.03. bitte", "2025-03-15"),
        ],
    )
    def test_numeric_forms(self, raw, expected):
        assert parse_date(raw, today=TODAY) == expected

    def test_relative_words(self):
        assert parse_date("heute", today=TODAY) == "2025-03-12"
        assert parse_date("Morgen Abend", today=TODAY) == "2025-03-13"
        assert parse_date("übermorgen", today=TODAY) == "2025-03-14"

    def test_weekday_is_next_occurrence_never_today(self):
        assert parse_date("Samstag", today=TODAY) == "2025-03-15"
        assert parse_date("mittwoch", today=TODAY) == "2025-03-19"

    def test_invalid_calendar_date_kept_verbatim(self):
        assert parse_date("31.02.2025", today=TODAY) == "31.02.2025"

    def test_unparseable_kept_verbatim(self):
        assert parse_date("  irgendwann  ", today=TODAY) == "irgendwann"


class TestParseTime:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("19:00", "19:00"),
            ("7:30", "07:30"),
            ("19.30", "19:30"),
            ("19 Uhr", "19:00"),
            ("um 8 uhr", "08:00"),
            ("16.03. um 19 Uhr", "19:00"),
            ("16.03.2025 19:30", "19:30"),
        ],
    )
    def test_forms(self, raw, expected):
        assert parse_time(raw) == expected

    def test_out_of_range_kept_verbatim(self):
        assert parse_time("25:00") == "25:00"
        assert parse_time("abends") == "abends"

    def test_explicit_date_in_time_answer(self):
        assert extract_explicit_date("16.03. um 19 Uhr", today=TODAY) == "2025-03-16"
        assert extract_explicit_date("12.10", today=TODAY) is None
        assert extract_explicit_date("19 Uhr", today=TODAY) is None


class TestGuestCount:
    @pytest.mark.parametrize(
        "raw,expected",
        [(4, 4), ("4", 4), ("4 Personen", 4), ("wir sind 6 leute", 6), (4.0, 4), ("100", 100)],
    )
    def test_valid(self, raw, expected):
        assert parse_guest_count(raw) == expected

    @pytest.mark.parametrize("raw", [0, -2, "0", "101", "viele", None, True, 2.5, float("nan")])
    def test_invalid(self, raw):
        assert parse_guest_count(raw) is None


class TestNames:
    def test_bare_name(self):
        assert extract_name("Maria") == "Maria"
        assert extract_name("Maria Rossi") == "Maria Rossi"

    def test_phrases(self):
        assert extract_name("Ich heiße Maria") == "Maria"
        assert extract_name("mein Name ist Anna Schmidt") == "Anna Schmidt"

    def test_not_a_name(self):
        assert extract_name("keine Ahnung") is None
        assert extract_name("4 Personen") is None

    def test_name_field_falls_back_to_text(self):
        assert normalize(fields.NAME, "keine Ahnung") == "keine Ahnung"


class TestRating:
    @pytest.mark.parametrize("raw,expected", [("5", 5), ("4/5", 4), ("3 Sterne", 3), ("⭐⭐", 2), (1, 1)])
    def test_valid(self, raw, expected):
        assert parse_review_rating(raw) == expected

    @pytest.mark.parametrize("raw", ["6", "super", "", 0])
    def test_invalid(self, raw):
        assert parse_review_rating(raw) is None


class TestNormalize:
    def test_dispatch(self):
        assert normalize(fields.DATE, "morgen", today=TODAY) == "2025-03-13"
        assert normalize(fields.TIME, "19 Uhr") == "19:00"
        assert normalize(fields.GUEST_COUNT, "2") == 2
        assert normalize(fields.PHONE, "+49 170 1234567") == "+491701234567"
        assert normalize(fields.EMAIL, "mail: maria@example.com") == "maria@example.com"
        assert normalize("lieblingsfarbe", " blau ") == "blau"

    def test_unusable_values_are_not_stored(self):
        assert normalize(fields.GUEST_COUNT, "viele") is None
        assert normalize(fields.PHONE, "abc") is None
        assert normalize(fields.DATE, "   ") is None
        assert normalize(fields.DATE, None) is None


class TestMissingAndMerge:
    def test_missing_fields_uses_strict_formats(self):
        variables = {"name": "Maria", "date": "irgendwann", "time": "19:00", "guestCount": 0}
        assert missing_fields(variables, ["name", "date", "time", "guestCount"]) == ["date", "guestCount"]

    def test_blank_and_nan_are_missing(self):
        assert missing_fields({"name": "  ", "time": float("nan")}, ["name", "time"]) == ["name", "time"]

    def test_merge_never_blanks_or_removes(self):
        merged = merge_variables({"name": "Maria", "date": "2025-03-15"}, {"name": "", "time": "19:00"})
        assert merged == {"name": "Maria", "date": "2025-03-15", "time": "19:00"}

    def test_requirements_per_vertical(self):
        fitness = BookingRequirements.for_vertical("fitness")
        assert fitness.missing({"name": "Jo", "date": "2025-03-15", "time": "10:00"}) == []
        assert fitness.apply_defaults({})["guestCount"] == 1
        assert BookingRequirements.for_vertical("gastro").missing({"name": "Jo"}) == [
            "date",
            "time",
            "guestCount",
        ]


class TestSubstitution:
    def test_replaces_known_and_formats_dates(self):
        text = "Danke {{name}}! {{guestCount}} Personen am {{date}} um {{time}} Uhr"
        variables = {"name": "Maria", "guestCount": 4, "date": "2025-03-15", "time": "19:00"}
        assert substitute_variables(text, variables) == "Danke Maria! 4 Personen am 15.03.2025 um 19:00 Uhr"

    def test_unknown_placeholders_kept(self):
        assert substitute_variables("Hallo {{name}}", {}) == "Hallo {{name}}"
