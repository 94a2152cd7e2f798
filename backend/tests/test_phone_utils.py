"""
Phone normalization tests.
The same function feeds contact.phone_normalized and call.to_number_normalized,
so a contact and a call match exactly when these outputs are equal.
"""

import pytest
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from phone_utils import normalize_phone


class TestInternationalNumbers:

    def test_plus_prefix_with_punctuation(self):
        assert normalize_phone("+1 (555) 010-2030") == "15550102030"

    def test_double_zero_prefix_counts_as_plus(self):
        assert normalize_phone("00972501234567") == "972501234567"
        assert normalize_phone("00 972 50 123 4567") == "972501234567"

    def test_country_coded_without_plus(self):
        """11-15 digits without a trunk zero are already country-coded."""
        assert normalize_phone("15550102030") == "15550102030"
        assert normalize_phone("972501234567") == "972501234567"

    def test_contact_and_call_forms_match(self):
        """Call logs store bare digits, contacts store E.164 with punctuation."""
        assert normalize_phone("+1 (555) 010-2030") == normalize_phone("15550102030")

    def test_extension_is_dropped(self):
        assert normalize_phone("+1 555 010 2030 ext. 12") == "15550102030"
        assert normalize_phone("+1 555 010 2030 x12") == "15550102030"
        assert normalize_phone("+1 555 010 2030 #12") == "15550102030"

    def test_default_country_code_not_applied_to_international(self):
        assert normalize_phone("+44 20 7946 0958", default_country_code="1") == "442079460958"


class TestNationalNumbers:

    def test_trunk_zero_with_default_country(self):
        assert normalize_phone("050-123-4567", default_country_code="972") == "972501234567"

    def test_trunk_zero_matches_international_form(self):
        assert normalize_phone("050-123-4567", "972") == normalize_phone("+972 50 123 4567")

    def test_ten_digits_with_default_country(self):
        assert normalize_phone("(555) 010-2030", default_country_code="1") == "15550102030"

    def test_default_country_code_with_plus(self):
        assert normalize_phone("(555) 010-2030", default_country_code="+1") == "15550102030"

    def test_trunk_zero_without_default_is_unmatched(self):
        assert normalize_phone("050-123-4567") is None

    def test_ten_digits_without_default_is_unmatched(self):
        """Ambiguous national numbers are never guessed."""
        assert normalize_phone("(555) 010-2030") is None

    def test_integer_input(self):
        assert normalize_phone(5550102030, default_country_code="1") == "15550102030"


class TestMalformed:

    @pytest.mark.parametrize("raw", [None, "", "   ", "n/a", "unknown", "--"])
    def test_empty_or_no_digits(self, raw):
        assert normalize_phone(raw) is None

    def test_too_short(self):
        assert normalize_phone("+1234567") is None
        assert normalize_phone("12345", default_country_code="1") is None

    def test_too_long(self):
        assert normalize_phone("+1234567890123456") is None

    def test_nine_digit_national_without_trunk_is_unmatched(self):
        assert normalize_phone("501234567", default_country_code="972") is None
