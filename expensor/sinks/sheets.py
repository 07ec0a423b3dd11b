"""
Google Sheets sink
Keeps one row per transaction through the Sheets v4 REST API. Known message
ids are overwritten in place, new ones are appended. Writes are wrapped in the
rate-limit retry policy because Sheets enforces a per-minute quota.
"""

import logging
import re
import threading
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests

from ..config import SheetsWriterConfig, parse_payload
from ..errors import RateLimitError, SinkFlushError
from ..models import ExtractedRecord
from ..retry import call_with_rate_limit_retry

logger = logging.getLogger(__name__)

SHEETS_API_URL = "https://sheets.googleapis.com/v4/spreadsheets"
SPREADSHEETS_SCOPE = "https://www.googleapis.com/auth/spreadsheets"

HEADERS = ["Date/Time", "Expense", "Amount", "Category", "Needs/Wants/Investments", "Source", "Message ID"]
MESSAGE_ID_COLUMN = "G"
FIRST_ROW_PATTERN = re.compile(r"![A-Z]+(\d+)")


class SheetsSink:
    """Spreadsheet sink keyed on the message id column"""

    name = "sheets"

    def __init__(
        self,
        session: requests.Session,
        config: SheetsWriterConfig,
        base_url: str = SHEETS_API_URL,
        timeout: float = 30.0,
        sleep=None,
    ):
        self.session = session
        self.config = config
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.sheet_name = config.sheet_name
        self.spreadsheet_id: Optional[str] = None
        self._sleep = sleep
        self._row_numbers: Dict[str, int] = {}
        self._stale = False
        self._lock = threading.Lock()

    def _call(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        if response.status_code == 429:
            raise RateLimitError(f"Sheets API rate limited: {response.text[:200]}")
        response.raise_for_status()
        return response.json() if response.content else {}

    def _range_url(self, cell_range: str, suffix: str = "") -> str:
        return f"{self.base_url}/{self.spreadsheet_id}/values/{quote(cell_range, safe='!:')}{suffix}"

    def open(self) -> None:
        self.init_spreadsheet()

    def init_spreadsheet(self) -> str:
        """Use the configured spreadsheet when readable, otherwise create one with headers"""
        if self.config.sheet_id:
            try:
                sheet = self._call("GET", f"{self.base_url}/{self.config.sheet_id}")
                self.spreadsheet_id = sheet.get("spreadsheetId", self.config.sheet_id)
                title = (sheet.get("properties") or {}).get("title")
                logger.info(f"Using existing spreadsheet {title!r} ({self.spreadsheet_id})")
                self._load_existing_ids()
                return self.spreadsheet_id
            except (requests.RequestException, RateLimitError) as e:
                if not self.config.sheet_title:
                    raise SinkFlushError(self.name, 0, f"cannot open spreadsheet {self.config.sheet_id}: {e}") from e
                logger.warning(f"Failed to get spreadsheet {self.config.sheet_id}, will create new one: {e}")

        try:
            sheet = self._call("POST", self.base_url, json={
                "properties": {"title": self.config.sheet_title},
                "sheets": [{"properties": {"title": self.sheet_name}}],
            })
            self.spreadsheet_id = sheet["spreadsheetId"]
            logger.info(f"Created new spreadsheet {self.config.sheet_title!r} ({self.spreadsheet_id})")
            self._write_headers()
        except (requests.RequestException, RateLimitError, KeyError) as e:
            raise SinkFlushError(self.name, 0, f"cannot create spreadsheet: {e}") from e
        return self.spreadsheet_id

    def _write_headers(self) -> None:
        header_range = f"{self.sheet_name}!A1:{MESSAGE_ID_COLUMN}1"
        self._call(
            "PUT",
            self._range_url(header_range),
            params={"valueInputOption": "RAW"},
            json={"values": [HEADERS]},
        )
        logger.info("Wrote headers to spreadsheet")

    def _load_existing_ids(self) -> None:
        id_range = f"{self.sheet_name}!{MESSAGE_ID_COLUMN}2:{MESSAGE_ID_COLUMN}"
        payload = self._call("GET", self._range_url(id_range))
        self._row_numbers = {}
        for offset, row in enumerate(payload.get("values", [])):
            if row and row[0]:
                self._row_numbers[row[0]] = offset + 2
        self._stale = False
        logger.info(f"Loaded {len(self._row_numbers)} existing message id(s) from spreadsheet")

    @staticmethod
    def to_row(record: ExtractedRecord) -> List[Any]:
        return [
            record.timestamp,
            record.merchant_info,
            float(record.amount),
            record.category,
            record.bucket,
            record.source,
            record.message_id,
        ]

    def _row_range(self, row_number: int) -> str:
        return f"{self.sheet_name}!A{row_number}:{MESSAGE_ID_COLUMN}{row_number}"

    def _with_retry(self, call):
        retry_kwargs: Dict[str, Any] = {
            "attempts": self.config.retry_attempts,
            "delay": self.config.retry_delay,
        }
        if self._sleep is not None:
            retry_kwargs["sleep"] = self._sleep
        return call_with_rate_limit_retry(call, **retry_kwargs)

    def flush(self, batch: List[ExtractedRecord]) -> None:
        """Overwrite rows whose message id is already in the sheet, append the rest"""
        if self.spreadsheet_id is None:
            self.init_spreadsheet()

        with self._lock:
            latest: Dict[str, ExtractedRecord] = {}
            anonymous: List[ExtractedRecord] = []
            for record in batch:
                if record.message_id:
                    latest[record.message_id] = record
                else:
                    anonymous.append(record)

            try:
                if self._stale:
                    self._load_existing_ids()
                updates = [r for key, r in latest.items() if key in self._row_numbers]
                appends = [r for key, r in latest.items() if key not in self._row_numbers] + anonymous
                if updates:
                    self._update_rows(updates)
                if appends:
                    self._append_rows(appends)
            except (requests.RequestException, RateLimitError) as e:
                raise SinkFlushError(self.name, len(batch), f"writing batch to sheet: {e}") from e

            logger.info(f"Wrote batch to sheet {self.sheet_name} (updated={len(updates)}, appended={len(appends)})")

    def _update_rows(self, records: List[ExtractedRecord]) -> None:
        body = {
            "valueInputOption": "USER_ENTERED",
            "data": [
                {"range": self._row_range(self._row_numbers[r.message_id]), "values": [self.to_row(r)]}
                for r in records
            ],
        }
        self._with_retry(lambda: self._call("POST", f"{self.base_url}/{self.spreadsheet_id}/values:batchUpdate", json=body))

    def _append_rows(self, records: List[ExtractedRecord]) -> None:
        write_range = f"{self.sheet_name}!A2:{MESSAGE_ID_COLUMN}2"
        body = {"values": [self.to_row(r) for r in records]}
        result = self._with_retry(lambda: self._call(
            "POST",
            self._range_url(write_range, ":append"),
            params={"valueInputOption": "USER_ENTERED", "insertDataOption": "INSERT_ROWS"},
            json=body,
        ))

        updated_range = (result.get("updates") or {}).get("updatedRange", "")
        match = FIRST_ROW_PATTERN.search(updated_range)
        if match is None:
            logger.warning(f"Append response had no usable range ({updated_range!r}), reloading message ids on next flush")
            self._stale = True
            return
        first_row = int(match.group(1))
        for offset, record in enumerate(records):
            if record.message_id:
                self._row_numbers[record.message_id] = first_row + offset

    def close(self) -> None:
        logger.info(f"Sheets sink closed ({self.spreadsheet_id})")


class SheetsPlugin:
    name = "sheets"
    description = "Write expense transactions to Google Sheets"
    required_scopes = (SPREADSHEETS_SCOPE,)
    config_model = SheetsWriterConfig

    def config_schema(self) -> Dict[str, Any]:
        return self.config_model.model_json_schema(by_alias=True)

    def create(self, session, raw_config: Any, base_currency: str = "INR"):
        config = parse_payload(SheetsWriterConfig, raw_config, "sheets writer config")
        return SheetsSink(session, config), config
