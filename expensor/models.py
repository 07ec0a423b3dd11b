"""
Core data types for the extraction pipeline
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

DEFAULT_CURRENCY = "INR"


class Bucket(str, Enum):
    """Budget classification of a transaction"""

    NEED = "Need"
    WANT = "Want"
    INVESTMENT = "Investment"


@dataclass(frozen=True)
class Rule:
    """A source query plus the two patterns used to pull a transaction out of a message"""

    name: str
    query: str
    amount_pattern: re.Pattern
    merchant_pattern: re.Pattern
    enabled: bool
    source: str
    currency: str = DEFAULT_CURRENCY
    labels: FrozenSet[str] = frozenset()


@dataclass
class ExtractedRecord:
    """Structured transaction derived from one source message"""

    amount: Decimal = Decimal("0")
    timestamp: str = ""
    merchant_info: str = ""
    currency: str = DEFAULT_CURRENCY
    original_amount: Optional[Decimal] = None
    original_currency: Optional[str] = None
    exchange_rate: Optional[Decimal] = None
    category: str = ""
    bucket: str = ""
    source: str = ""
    message_id: str = ""
    description: Optional[str] = None
    labels: FrozenSet[str] = frozenset()
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message_id": self.message_id,
            "amount": str(self.amount),
            "currency": self.currency,
            "original_amount": _optional_str(self.original_amount),
            "original_currency": self.original_currency,
            "exchange_rate": _optional_str(self.exchange_rate),
            "timestamp": self.timestamp,
            "merchant_info": self.merchant_info,
            "category": self.category,
            "bucket": self.bucket,
            "source": self.source,
            "description": self.description,
            "labels": sorted(self.labels),
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "ExtractedRecord":
        return cls(
            amount=Decimal(payload.get("amount") or "0"),
            timestamp=payload.get("timestamp", ""),
            merchant_info=payload.get("merchant_info", ""),
            currency=payload.get("currency") or DEFAULT_CURRENCY,
            original_amount=_optional_decimal(payload.get("original_amount")),
            original_currency=payload.get("original_currency"),
            exchange_rate=_optional_decimal(payload.get("exchange_rate")),
            category=payload.get("category", ""),
            bucket=payload.get("bucket", ""),
            source=payload.get("source", ""),
            message_id=payload.get("message_id", ""),
            description=payload.get("description"),
            labels=frozenset(payload.get("labels") or ()),
            metadata=dict(payload.get("metadata") or {}),
        )


@dataclass(frozen=True)
class SourceMessage:
    """A message as returned by a source adapter's fetch"""

    message_id: str
    body: str
    received_at: datetime
    subject: str = ""


class LabelTable:
    """Read-only merchant -> (category, bucket) lookup.

    Keys are matched exactly and case-sensitively. Unknown merchants resolve
    to a pair of empty strings.
    """

    _MISSING: Tuple[str, str] = ("", "")

    def __init__(self, entries: Optional[Mapping[str, Tuple[str, str]]] = None):
        self._entries = MappingProxyType(dict(entries or {}))

    def lookup(self, merchant: str) -> Tuple[str, str]:
        return self._entries.get(merchant, self._MISSING)

    def __len__(self) -> int:
        return len(self._entries)


def _optional_str(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(value)


def _optional_decimal(value: Any) -> Optional[Decimal]:
    return None if value in (None, "") else Decimal(str(value))
