"""
Extraction engine and label lookup
"""

import re
from datetime import datetime
from decimal import Decimal

import pytest

from expensor.extractor import TIMESTAMP_FORMAT, extract, format_timestamp, parse_amount
from expensor.models import ExtractedRecord, LabelTable

AMOUNT = re.compile(r"Rs\.?\s*([\d,]+\.\d{2})")
MERCHANT = re.compile(r"at\s+([A-Z0-9 ]+?)\s+on")
RECEIVED = datetime(2024, 3, 5, 14, 30, 15)


class TestExtract:
    """Pattern-driven extraction of amount, merchant and timestamp"""

    def test_card_alert(self):
        body = "Rs.1,234.56 spent on your card ending 1234 at AMAZON on 05-03-2024."
        record = extract(body, AMOUNT, MERCHANT, RECEIVED)

        assert record.amount == Decimal("1234.56")
        assert record.merchant_info == "AMAZON"
        assert record.timestamp == "2024-03-05 14:30:15"

    def test_documented_rule_scenario(self):
        record = extract(
            "Spent Rs.1,234.56 at AMAZON on 1 Jan",
            re.compile(r"Rs\.([\d,]+\.\d{2})"),
            re.compile(r"at (\w+) on"),
            RECEIVED,
        )
        assert record.amount == Decimal("1234.56")
        assert record.merchant_info == "AMAZON"

    def test_indian_digit_grouping(self):
        body = "Rs. 12,34,567.89 debited at ZERODHA BROKING on 01-04-2024"
        record = extract(body, AMOUNT, MERCHANT, RECEIVED)

        assert record.amount == Decimal("1234567.89")
        assert record.merchant_info == "ZERODHA BROKING"

    def test_no_match_leaves_zero_values(self):
        record = extract("Your statement is ready", AMOUNT, MERCHANT, RECEIVED)

        assert record.amount == Decimal("0")
        assert record.merchant_info == ""
        assert record.timestamp == "2024-03-05 14:30:15"

    def test_first_match_wins(self):
        body = "Rs.10.00 at SWIGGY on Monday, refund Rs.5.00 at ZOMATO on Tuesday"
        record = extract(body, AMOUNT, MERCHANT, RECEIVED)

        assert record.amount == Decimal("10.00")
        assert record.merchant_info == "SWIGGY"

    def test_merchant_is_trimmed(self):
        merchant = re.compile(r"Merchant:(.*)\n")
        record = extract("Rs.1.00\nMerchant:   BESCOM  \n", AMOUNT, merchant, RECEIVED)
        assert record.merchant_info == "BESCOM"

    def test_pattern_without_group_yields_empty(self):
        record = extract("Rs.1.00 at AMAZON on", re.compile(r"Rs"), re.compile(r"AMAZON"), RECEIVED)
        assert record.amount == Decimal("0")
        assert record.merchant_info == ""

    def test_unparseable_amount_is_zero(self):
        record = extract("Amount: ,,, at X on", re.compile(r"Amount: ([\d,]+)"), MERCHANT, RECEIVED)
        assert record.amount == Decimal("0")

    def test_returns_fresh_record(self):
        record = extract("nothing", AMOUNT, MERCHANT, RECEIVED)
        assert isinstance(record, ExtractedRecord)
        assert record.message_id == ""
        assert record.category == ""
        assert record.labels == frozenset()


@pytest.mark.parametrize("raw, expected", [
    ("1,234.56", Decimal("1234.56")),
    ("12,34,567.89", Decimal("1234567.89")),
    ("500", Decimal("500")),
    (" 42.00 ", Decimal("42.00")),
    ("abc", Decimal("0")),
    ("", Decimal("0")),
    ("NaN", Decimal("0")),
    ("Infinity", Decimal("0")),
])
def test_parse_amount(raw, expected):
    assert parse_amount(raw) == expected


def test_format_timestamp():
    assert TIMESTAMP_FORMAT == "%Y-%m-%d %H:%M:%S"
    assert format_timestamp(datetime(2023, 12, 31, 23, 59, 1)) == "2023-12-31 23:59:01"


class TestLabelTable:

    @pytest.fixture
    def table(self):
        return LabelTable({
            "AMAZON": ("Shopping", "Want"),
            "BESCOM": ("Utilities", "Need"),
        })

    def test_known_merchant(self, table):
        assert table.lookup("AMAZON") == ("Shopping", "Want")

    def test_unknown_merchant(self, table):
        assert table.lookup("FLIPKART") == ("", "")

    def test_lookup_is_case_sensitive(self, table):
        assert table.lookup("amazon") == ("", "")

    def test_empty_merchant(self, table):
        assert table.lookup("") == ("", "")

    def test_table_is_read_only(self, table):
        source = {"X": ("a", "Need")}
        copy = LabelTable(source)
        source["Y"] = ("b", "Want")

        assert copy.lookup("Y") == ("", "")
        assert len(copy) == 1
        with pytest.raises(TypeError):
            copy._entries["Z"] = ("c", "Want")
