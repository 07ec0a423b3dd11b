"""Shared pytest configuration for the project test suite."""
from __future__ import annotations

import json
import re
import sys
import threading
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Dict, List

import pytest
import requests


# Ensure the repository root (which contains the ``expensor`` package) is importable.
ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from expensor.models import ExtractedRecord, Rule, SourceMessage  # noqa: E402

RECEIVED_AT = datetime(2024, 3, 5, 14, 30, 15, tzinfo=timezone.utc)


def make_rule(name: str = "card", query: str = "from:bank", enabled: bool = True, **overrides) -> Rule:
    fields = dict(
        name=name,
        query=query,
        amount_pattern=re.compile(r"Rs\.?\s*([\d,]+\.\d{2})"),
        merchant_pattern=re.compile(r"at\s+([A-Z0-9 ]+?)\s+on"),
        enabled=enabled,
        source=f"{name} source",
    )
    fields.update(overrides)
    return Rule(**fields)


def make_record(message_id: str, amount: str = "10.00", merchant: str = "AMAZON", **overrides) -> ExtractedRecord:
    fields = dict(
        amount=Decimal(amount),
        timestamp="2024-03-05 14:30:15",
        merchant_info=merchant,
        category="Shopping",
        bucket="Want",
        source="HDFC",
        message_id=message_id,
    )
    fields.update(overrides)
    return ExtractedRecord(**fields)


class FakeSource:
    """In-memory source: query -> ids, id -> body"""

    def __init__(self, queries: Dict[str, List[str]] = None, bodies: Dict[str, str] = None):
        self.queries = queries or {}
        self.bodies = bodies or {}
        self.failing_queries = set()
        self.failing_fetches = set()
        self.failing_marks = set()
        self.consumed: List[str] = []
        self.fetched: List[str] = []
        self._lock = threading.Lock()

    def list_matching(self, query: str) -> List[str]:
        if query in self.failing_queries:
            raise RuntimeError(f"listing {query} failed")
        with self._lock:
            return [i for i in self.queries.get(query, []) if i not in self.consumed]

    def fetch(self, message_id: str) -> SourceMessage:
        if message_id in self.failing_fetches:
            raise RuntimeError(f"fetching {message_id} failed")
        with self._lock:
            self.fetched.append(message_id)
        return SourceMessage(
            message_id=message_id,
            body=self.bodies.get(message_id, ""),
            received_at=RECEIVED_AT,
            subject=f"Alert {message_id}",
        )

    def mark_consumed(self, message_id: str) -> None:
        if message_id in self.failing_marks:
            raise RuntimeError(f"marking {message_id} failed")
        with self._lock:
            self.consumed.append(message_id)


@pytest.fixture
def fake_source():
    return FakeSource()


@pytest.fixture
def rule_factory():
    return make_rule


@pytest.fixture
def record_factory():
    return make_record


def make_response(status_code: int = 200, payload=None, url: str = "https://example.test") -> requests.Response:
    response = requests.Response()
    response.status_code = status_code
    response.url = url
    response._content = json.dumps(payload).encode() if payload is not None else b""
    return response


class FakeSession:
    """requests-compatible session answering from a queue of scripted responses"""

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        if not self.responses:
            raise AssertionError(f"unexpected {method} {url}")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def response_factory():
    return make_response


@pytest.fixture
def session_factory():
    return FakeSession
