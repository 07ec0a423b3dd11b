"""
JSON file sink
Keeps an in-memory snapshot keyed by message id and rewrites the whole file
on every flush, since JSON arrays cannot be appended to.
"""

import json
import logging
import os
import tempfile
import threading
from typing import Any, Dict, List

from ..config import JsonWriterConfig, parse_payload
from ..errors import SinkFlushError
from ..models import ExtractedRecord

logger = logging.getLogger(__name__)


class JsonSink:
    name = "json"

    def __init__(self, file_path: str):
        self.file_path = file_path
        self._snapshot: Dict[str, Dict[str, Any]] = {}
        self._anonymous: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def open(self) -> None:
        """Load existing transactions if the file exists"""
        with self._lock:
            try:
                with open(self.file_path, encoding="utf-8") as f:
                    data = f.read()
            except FileNotFoundError:
                data = ""
            except OSError as e:
                logger.warning(f"Could not load existing transactions from {self.file_path}: {e}")
                data = ""
            if data.strip():
                try:
                    rows = json.loads(data)
                except json.JSONDecodeError as e:
                    logger.warning(f"Could not parse existing transactions in {self.file_path}: {e}")
                    rows = []
                if not isinstance(rows, list):
                    logger.warning(f"Existing transactions in {self.file_path} are not a JSON array; starting empty")
                    rows = []
                for row in rows:
                    if isinstance(row, dict):
                        self._keep(row)
        logger.info(f"JSON sink initialized {self.file_path} (existing_count={self.transaction_count})")

    def _keep(self, row: Dict[str, Any]) -> None:
        key = row.get("message_id")
        if key:
            self._snapshot[key] = row
        else:
            self._anonymous.append(row)

    @property
    def transaction_count(self) -> int:
        return len(self._snapshot) + len(self._anonymous)

    def flush(self, batch: List[ExtractedRecord]) -> None:
        with self._lock:
            previous = dict(self._snapshot), list(self._anonymous)
            for record in batch:
                self._keep(record.to_dict())
            rows = list(self._snapshot.values()) + self._anonymous
            try:
                self._write(rows)
            except (OSError, TypeError, ValueError) as e:
                self._snapshot, self._anonymous = previous
                raise SinkFlushError(self.name, len(batch), f"writing {self.file_path}: {e}") from e
            logger.debug(f"Wrote transactions to json (batch_count={len(batch)}, total_count={len(rows)})")

    def _write(self, rows: List[Dict[str, Any]]) -> None:
        directory = os.path.dirname(os.path.abspath(self.file_path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".expensor-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(rows, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.file_path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def close(self) -> None:
        logger.info(f"JSON sink closed ({self.file_path}, {self.transaction_count} transaction(s))")


class JsonPlugin:
    name = "json"
    description = "Write expense transactions to a JSON file"
    required_scopes = ()
    config_model = JsonWriterConfig

    def config_schema(self) -> Dict[str, Any]:
        return self.config_model.model_json_schema(by_alias=True)

    def create(self, session, raw_config: Any, base_currency: str = "INR"):
        config = parse_payload(JsonWriterConfig, raw_config, "json writer config")
        return JsonSink(config.file_path), config
