"""Tests for shared utility functions."""

from tutor_scheduler.utils import (
    normalize_day,
    normalize_mode,
    slot_start,
    time_matches,
    whole_word_pattern,
)


class TestNormalizeDay:
    def test_title_cases_weekday(self):
        assert normalize_day("wednesday") == "Wednesday"

    def test_strips_whitespace(self):
        assert normalize_day("  FRIDAY ") == "Friday"

    def test_unknown_day_is_none(self):
        assert normalize_day("tomorrow") is None


class TestNormalizeMode:
    def test_online_synonyms(self):
        for value in ("online", "Remote", "virtual", "zoom"):
            assert normalize_mode(value) == "online"

    def test_in_person_spellings(self):
        for value in ("in-person", "In Person", "on_campus", "onsite"):
            assert normalize_mode(value) == "in-person"

    def test_unknown_mode_is_none(self):
        assert normalize_mode("hybrid") is None


class TestTimeMatches:
    def test_start_time_matches(self):
        assert time_matches("10:00", "10:00-10:30")

    def test_end_time_does_not_match(self):
        assert not time_matches("10:00", "9:30-10:00")

    def test_leading_zero_ignored(self):
        assert time_matches("09:30", "9:30-10:00")

    def test_full_range_matches(self):
        assert time_matches("4:00 - 4:30", "4:00-4:30")

    def test_blank_request_never_matches(self):
        assert not time_matches("  ", "4:00-4:30")

    def test_slot_start(self):
        assert slot_start("11:30-12:00") == "11:30"


class TestWholeWordPattern:
    def test_matches_case_insensitively(self):
        assert whole_word_pattern("Python").search("I like PYTHON a lot")

    def test_does_not_match_inside_longer_word(self):
        assert not whole_word_pattern("Java").search("JavaScript help")

    def test_symbol_suffix_phrase(self):
        assert whole_word_pattern("C++").search("need c++ help")
        assert not whole_word_pattern("C++").search("abc++ code")

    def test_multi_word_phrase(self):
        assert whole_word_pattern("MIPS Assembly").search("stuck on mips assembly loops")
