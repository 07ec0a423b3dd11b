"""
Configuration loading
Process settings come from environment variables; rule, label and plugin
payloads are validated against strict schemas before anything starts.
"""

import json
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional, Sequence, Tuple, Type, TypeVar

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PositiveInt,
    StrictBool,
    StrictStr,
    ValidationError,
    model_validator,
)
from pydantic.alias_generators import to_camel

from .errors import ConfigurationError
from .models import DEFAULT_CURRENCY, Bucket, LabelTable, Rule

ModelT = TypeVar("ModelT", bound=BaseModel)


class _Schema(BaseModel):
    model_config = ConfigDict(extra="forbid", alias_generator=to_camel, populate_by_name=True)


class RuleConfig(_Schema):
    """One entry of the rules file"""

    name: StrictStr = ""
    query: StrictStr
    amount_regex: StrictStr
    merchant_info_regex: StrictStr
    enabled: StrictBool
    source: StrictStr
    currency: Optional[StrictStr] = None
    labels: List[StrictStr] = Field(default_factory=list)


class LabelEntry(_Schema):
    category: StrictStr
    bucket: Bucket


class BufferConfig(_Schema):
    """Batching knobs shared by every writer plugin"""

    batch_size: PositiveInt = 10
    flush_interval: PositiveInt = 30
    dead_letter_path: Optional[StrictStr] = None


class GmailReaderConfig(_Schema):
    rules: List[RuleConfig]
    labels: Dict[str, LabelEntry]
    interval: PositiveInt = 10
    max_concurrent_rules: PositiveInt = 4
    max_results: PositiveInt = 100


class SheetsWriterConfig(BufferConfig):
    sheet_title: Optional[StrictStr] = None
    sheet_id: Optional[StrictStr] = None
    sheet_name: StrictStr
    retry_attempts: PositiveInt = 3
    retry_delay: float = Field(default=60.0, ge=0)

    @model_validator(mode="after")
    def _spreadsheet_target(self) -> "SheetsWriterConfig":
        if not self.sheet_name:
            raise ValueError("sheetName is required")
        if not self.sheet_id and not self.sheet_title:
            raise ValueError("either sheetId or sheetTitle is required")
        return self


class CsvWriterConfig(BufferConfig):
    file_path: StrictStr


class JsonWriterConfig(BufferConfig):
    file_path: StrictStr


class PostgresWriterConfig(BufferConfig):
    host: StrictStr
    port: PositiveInt = 5432
    database: StrictStr
    user: StrictStr
    password: StrictStr
    sslmode: Literal["disable", "require", "verify-ca", "verify-full"] = "disable"
    max_pool_size: PositiveInt = 10


@dataclass(frozen=True)
class ReaderConfig:
    """Immutable rule set and label table handed to the poller"""

    rules: Tuple[Rule, ...]
    labels: LabelTable
    interval: float = 10.0
    max_concurrent_rules: int = 4
    shutdown_timeout: float = 10.0


def parse_payload(model: Type[ModelT], payload: Any, what: str) -> ModelT:
    """Validate a decoded payload, turning schema errors into ConfigurationError"""
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise ConfigurationError(f"invalid {what}: {e}") from e


def load_json(value: str, what: str) -> Any:
    """
    Decode JSON given either inline or as a path to a file.

    Args:
        value: JSON text or file path
        what: Human readable name used in error messages
    """
    path = Path(value)
    try:
        if not value.lstrip().startswith(("{", "[")) and path.exists():
            text = path.read_text(encoding="utf-8")
        else:
            text = value
        return json.loads(text)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"cannot load {what} from {value!r}: {e}") from e


def compile_rule(index: int, config: RuleConfig, base_currency: str = DEFAULT_CURRENCY) -> Rule:
    label = f"rule {index} ({config.name or config.source})"
    patterns = {}
    for field_name, raw in (("amountRegex", config.amount_regex),
                            ("merchantInfoRegex", config.merchant_info_regex)):
        try:
            pattern = re.compile(raw)
        except re.error as e:
            raise ConfigurationError(f"{label}: compiling {field_name}: {e}") from e
        if pattern.groups < 1:
            raise ConfigurationError(f"{label}: {field_name} must define a capture group")
        patterns[field_name] = pattern

    return Rule(
        name=config.name,
        query=config.query,
        amount_pattern=patterns["amountRegex"],
        merchant_pattern=patterns["merchantInfoRegex"],
        enabled=config.enabled,
        source=config.source,
        currency=config.currency or base_currency,
        labels=frozenset(config.labels),
    )


def compile_rules(configs: Sequence[RuleConfig], base_currency: str = DEFAULT_CURRENCY) -> Tuple[Rule, ...]:
    """Build the full rule set or fail; a partial rule set is never returned"""
    return tuple(compile_rule(i, cfg, base_currency) for i, cfg in enumerate(configs))


def build_label_table(entries: Mapping[str, LabelEntry]) -> LabelTable:
    return LabelTable({merchant: (e.category, e.bucket.value) for merchant, e in entries.items()})


def build_reader_config(
    config: GmailReaderConfig,
    base_currency: str = DEFAULT_CURRENCY,
    shutdown_timeout: float = 10.0,
) -> ReaderConfig:
    return ReaderConfig(
        rules=compile_rules(config.rules, base_currency),
        labels=build_label_table(config.labels),
        interval=float(config.interval),
        max_concurrent_rules=config.max_concurrent_rules,
        shutdown_timeout=shutdown_timeout,
    )


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from e


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from e


@dataclass(frozen=True)
class Settings:
    """Process settings read from the environment"""

    reader: str = "gmail"
    writer: str = "sheets"
    reader_config: Optional[str] = None
    writer_config: Optional[str] = None
    rules_file: str = "config/rules.json"
    labels_file: str = "config/labels.json"
    token_file: str = "data/token.json"
    sheet_title: Optional[str] = None
    sheet_id: Optional[str] = None
    sheet_name: Optional[str] = None
    poll_interval: int = 10
    queue_size: int = 100
    base_currency: str = DEFAULT_CURRENCY
    shutdown_timeout: float = 10.0
    log_level: str = "INFO"
    log_dir: Optional[str] = None
    health_port: Optional[int] = None

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            reader=os.getenv("EXPENSOR_READER") or "gmail",
            writer=os.getenv("EXPENSOR_WRITER") or "sheets",
            reader_config=os.getenv("EXPENSOR_READER_CONFIG") or None,
            writer_config=os.getenv("EXPENSOR_WRITER_CONFIG") or None,
            rules_file=os.getenv("EXPENSOR_RULES_FILE", "config/rules.json"),
            labels_file=os.getenv("EXPENSOR_LABELS_FILE", "config/labels.json"),
            token_file=os.getenv("EXPENSOR_TOKEN_FILE", "data/token.json"),
            sheet_title=os.getenv("GSHEETS_TITLE") or None,
            sheet_id=os.getenv("GSHEETS_ID") or None,
            sheet_name=os.getenv("GSHEETS_NAME") or None,
            poll_interval=_env_int("EXPENSOR_POLL_INTERVAL", 10),
            queue_size=_env_int("EXPENSOR_QUEUE_SIZE", 100),
            base_currency=os.getenv("EXPENSOR_BASE_CURRENCY", DEFAULT_CURRENCY),
            shutdown_timeout=_env_float("EXPENSOR_SHUTDOWN_TIMEOUT", 10.0),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_dir=os.getenv("LOG_DIR") or None,
            health_port=_env_int("HEALTH_PORT", None),
        )

    def reader_payload(self) -> Dict[str, Any]:
        """Reader payload: explicit JSON, or assembled from the rules and labels files"""
        if self.reader_config:
            return load_json(self.reader_config, "reader config")
        return {
            "rules": load_json(self.rules_file, "rules"),
            "labels": load_json(self.labels_file, "labels"),
            "interval": self.poll_interval,
        }

    def writer_payload(self) -> Dict[str, Any]:
        """Writer payload: explicit JSON, or the GSHEETS_* variables for the sheets writer"""
        if self.writer_config:
            return load_json(self.writer_config, "writer config")
        if self.writer != "sheets":
            raise ConfigurationError(f"EXPENSOR_WRITER_CONFIG is required for writer {self.writer!r}")
        if not self.sheet_name:
            raise ConfigurationError("GSHEETS_NAME environment variable is required")
        if not self.sheet_id and not self.sheet_title:
            raise ConfigurationError("either GSHEETS_ID or GSHEETS_TITLE environment variable is required")

        payload: Dict[str, Any] = {"sheetName": self.sheet_name}
        if self.sheet_title:
            payload["sheetTitle"] = self.sheet_title
        if self.sheet_id:
            payload["sheetId"] = self.sheet_id
        return payload
