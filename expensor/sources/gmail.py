"""
Gmail source adapter
Lists messages matching a search query, fetches bodies and removes the
UNREAD label once a message's record has been persisted.
"""

import base64
import binascii
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests

from ..config import GmailReaderConfig, build_reader_config, parse_payload
from ..errors import SourceError
from ..models import SourceMessage

logger = logging.getLogger(__name__)

GMAIL_API_URL = "https://gmail.googleapis.com/gmail/v1/users/me"
GMAIL_READONLY_SCOPE = "https://www.googleapis.com/auth/gmail.readonly"
GMAIL_MODIFY_SCOPE = "https://www.googleapis.com/auth/gmail.modify"


class GmailSource:
    """Source adapter backed by the Gmail REST API"""

    def __init__(
        self,
        session: requests.Session,
        base_url: str = GMAIL_API_URL,
        max_results: int = 100,
        timeout: float = 30.0,
    ):
        """
        Args:
            session: Authorised HTTP session (credential handling lives outside this class)
            base_url: Gmail users/me endpoint
            max_results: Upper bound on ids returned per query
            timeout: Per-request timeout in seconds
        """
        self.session = session
        self.base_url = base_url.rstrip("/")
        self.max_results = max_results
        self.timeout = timeout

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        url = f"{self.base_url}/{path}"
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
            response.raise_for_status()
        except requests.RequestException as e:
            raise SourceError(f"Gmail {method} {path} failed: {e}") from e
        return response.json() if response.content else {}

    def list_matching(self, query: str) -> List[str]:
        """Return ids of messages matching ``query`` in the order Gmail returns them"""
        ids: List[str] = []
        page_token: Optional[str] = None
        while len(ids) < self.max_results:
            params: Dict[str, Any] = {"q": query, "maxResults": self.max_results - len(ids)}
            if page_token:
                params["pageToken"] = page_token
            payload = self._request("GET", "messages", params=params)
            ids.extend(m["id"] for m in payload.get("messages", []) if m.get("id"))
            page_token = payload.get("nextPageToken")
            if not page_token:
                break
        return ids[: self.max_results]

    def fetch(self, message_id: str) -> SourceMessage:
        try:
            payload = self._request("GET", f"messages/{message_id}", params={"format": "full"})
        except SourceError as e:
            e.message_id = message_id
            raise

        message = payload.get("payload") or {}
        subject = ""
        for header in message.get("headers", []):
            if header.get("name") == "Subject":
                subject = header.get("value", "")
                break

        try:
            received_ms = int(payload.get("internalDate", 0))
        except (TypeError, ValueError) as e:
            raise SourceError(f"Invalid internalDate for {message_id}: {e}", message_id) from e
        received_at = datetime.fromtimestamp(received_ms / 1000, tz=timezone.utc).astimezone()

        return SourceMessage(
            message_id=message_id,
            body=extract_body(message),
            received_at=received_at,
            subject=subject,
        )

    def mark_consumed(self, message_id: str) -> None:
        try:
            self._request("POST", f"messages/{message_id}/modify", json={"removeLabelIds": ["UNREAD"]})
        except SourceError as e:
            e.message_id = message_id
            raise


def _decode(data: str) -> Optional[str]:
    padded = data + "=" * (-len(data) % 4)
    try:
        return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError):
        return None


def extract_body(payload: Dict[str, Any]) -> str:
    """Prefer a text/html part; fall back to the payload's own body data"""
    for part in payload.get("parts", []) or []:
        if part.get("mimeType") == "text/html":
            decoded = _decode((part.get("body") or {}).get("data", ""))
            if decoded is not None:
                return decoded

    data = (payload.get("body") or {}).get("data", "")
    if data:
        decoded = _decode(data)
        if decoded is not None:
            return decoded
    return ""


class GmailPlugin:
    """Reader plugin: builds a GmailSource and its validated rule set"""

    name = "gmail"
    description = "Read expense transactions from Gmail messages"
    required_scopes = (GMAIL_READONLY_SCOPE, GMAIL_MODIFY_SCOPE)
    config_model = GmailReaderConfig

    def config_schema(self) -> Dict[str, Any]:
        return self.config_model.model_json_schema(by_alias=True)

    def create(self, session, raw_config: Any, base_currency: str = "INR", shutdown_timeout: float = 10.0):
        config = parse_payload(GmailReaderConfig, raw_config, "gmail reader config")
        reader_config = build_reader_config(config, base_currency, shutdown_timeout)
        return GmailSource(session, max_results=config.max_results), reader_config
