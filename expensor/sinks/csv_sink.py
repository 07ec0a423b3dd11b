"""
CSV file sink
Holds one row per message id. A re-flushed id replaces its earlier row in
place and the whole file is rewritten atomically.
"""

import csv
import logging
import os
import tempfile
import threading
from typing import Any, Dict, List

from ..config import CsvWriterConfig, parse_payload
from ..errors import SinkFlushError
from ..models import ExtractedRecord

logger = logging.getLogger(__name__)

HEADERS = ["Timestamp", "Merchant", "Amount", "Category", "Bucket", "Source", "MessageID"]
MESSAGE_ID_INDEX = HEADERS.index("MessageID")


def to_row(record: ExtractedRecord) -> List[str]:
    return [
        record.timestamp,
        record.merchant_info,
        f"{record.amount:.2f}",
        record.category,
        record.bucket,
        record.source,
        record.message_id,
    ]


class CsvSink:
    name = "csv"

    def __init__(self, file_path: str):
        self.file_path = file_path
        self._rows: List[List[str]] = []
        self._index: Dict[str, int] = {}
        self._opened = False
        self._lock = threading.Lock()

    def open(self) -> None:
        """Load existing rows and create the file with its header if missing"""
        with self._lock:
            self._rows, self._index = [], {}
            for row in self._load_rows():
                self._keep(row)
            if not os.path.exists(self.file_path) or os.path.getsize(self.file_path) == 0:
                self._write()
            self._opened = True
        logger.info(f"CSV sink opened {self.file_path} ({len(self._rows)} existing row(s))")

    def _load_rows(self) -> List[List[str]]:
        if not os.path.exists(self.file_path):
            return []
        with open(self.file_path, newline="", encoding="utf-8") as f:
            rows = [row for row in csv.reader(f) if row]
        if rows and rows[0] == HEADERS:
            rows = rows[1:]
        return rows

    def _keep(self, row: List[str]) -> None:
        key = row[MESSAGE_ID_INDEX] if len(row) > MESSAGE_ID_INDEX else ""
        if key and key in self._index:
            self._rows[self._index[key]] = row
            return
        if key:
            self._index[key] = len(self._rows)
        self._rows.append(row)

    @property
    def row_count(self) -> int:
        return len(self._rows)

    def flush(self, batch: List[ExtractedRecord]) -> None:
        if not self._opened:
            self.open()
        with self._lock:
            previous = list(self._rows), dict(self._index)
            for record in batch:
                self._keep(to_row(record))
            try:
                self._write()
            except (OSError, ValueError, csv.Error) as e:
                self._rows, self._index = previous
                raise SinkFlushError(self.name, len(batch), f"writing {self.file_path}: {e}") from e
        logger.debug(f"Wrote {len(batch)} transaction(s) to {self.file_path} (total_count={len(self._rows)})")

    def _write(self) -> None:
        directory = os.path.dirname(os.path.abspath(self.file_path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".expensor-", suffix=".csv")
        try:
            with os.fdopen(fd, "w", newline="", encoding="utf-8") as f:
                writer = csv.writer(f)
                writer.writerow(HEADERS)
                writer.writerows(self._rows)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.file_path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def close(self) -> None:
        self._opened = False
        logger.info(f"CSV sink closed ({self.file_path})")


class CsvPlugin:
    name = "csv"
    description = "Write expense transactions to a CSV file"
    required_scopes = ()
    config_model = CsvWriterConfig

    def config_schema(self) -> Dict[str, Any]:
        return self.config_model.model_json_schema(by_alias=True)

    def create(self, session, raw_config: Any, base_currency: str = "INR"):
        config = parse_payload(CsvWriterConfig, raw_config, "csv writer config")
        return CsvSink(config.file_path), config
