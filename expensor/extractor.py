"""
Extraction Engine
Turns a message body into a transaction record using a rule's two patterns.
No I/O: safe to call from anywhere, including tests without fixtures.
"""

import re
from datetime import datetime
from decimal import Decimal, InvalidOperation

from .models import ExtractedRecord

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
ZERO = Decimal("0")


def format_timestamp(received_at: datetime) -> str:
    """Canonical, sink-agnostic timestamp string"""
    return received_at.strftime(TIMESTAMP_FORMAT)


def parse_amount(raw: str) -> Decimal:
    """
    Parse an amount capture such as ``12,34,567.89``.

    Grouping commas are removed first. Anything that is not a finite decimal
    yields zero instead of raising.
    """
    cleaned = raw.replace(",", "").strip()
    try:
        amount = Decimal(cleaned)
    except (InvalidOperation, ValueError):
        return ZERO
    if not amount.is_finite():
        return ZERO
    return amount


def _first_group(pattern: re.Pattern, body: str) -> str:
    if pattern.groups < 1:
        return ""
    match = pattern.search(body)
    if match is None:
        return ""
    return match.group(1) or ""


def extract(
    body: str,
    amount_pattern: re.Pattern,
    merchant_pattern: re.Pattern,
    received_at: datetime,
) -> ExtractedRecord:
    """
    Extract a transaction from a message body.

    Args:
        body: Decoded message body
        amount_pattern: Pattern whose first group captures the amount
        merchant_pattern: Pattern whose first group captures the merchant
        received_at: Receipt time of the source message

    Returns:
        ExtractedRecord with amount, merchant_info and timestamp set; fields
        whose pattern did not match keep their zero value
    """
    record = ExtractedRecord(timestamp=format_timestamp(received_at))

    amount_text = _first_group(amount_pattern, body)
    if amount_text:
        record.amount = parse_amount(amount_text)

    record.merchant_info = _first_group(merchant_pattern, body).strip()
    return record
