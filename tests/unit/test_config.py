"""
Rule, label and plugin configuration loading
"""

import json

import pytest

from expensor.config import (
    GmailReaderConfig,
    PostgresWriterConfig,
    Settings,
    SheetsWriterConfig,
    build_reader_config,
    load_json,
    parse_payload,
)
from expensor.errors import ConfigurationError
from expensor.models import Bucket


def rule_payload(**overrides):
    payload = {
        "name": "hdfc",
        "query": "from:alerts@hdfcbank.net",
        "amountRegex": r"Rs\.?\s*([\d,]+\.\d{2})",
        "merchantInfoRegex": r"at\s+(\w+)",
        "enabled": True,
        "source": "HDFC Credit Card",
    }
    payload.update(overrides)
    return payload


def load_reader(rules=None, labels=None, base_currency="INR"):
    payload = {"rules": [rule_payload()] if rules is None else rules, "labels": {} if labels is None else labels}
    config = parse_payload(GmailReaderConfig, payload, "gmail reader config")
    return build_reader_config(config, base_currency)


class TestRules:

    def test_valid_rules(self):
        rules = load_reader([rule_payload(), rule_payload(name="icici", enabled=False, labels=["upi"])]).rules

        assert len(rules) == 2
        assert rules[0].amount_pattern.search("Rs.1,200.00").group(1) == "1,200.00"
        assert rules[0].currency == "INR"
        assert rules[1].enabled is False
        assert rules[1].labels == frozenset({"upi"})

    def test_base_currency_and_override(self):
        rules = load_reader([rule_payload(), rule_payload(currency="USD")], base_currency="EUR").rules
        assert [r.currency for r in rules] == ["EUR", "USD"]

    @pytest.mark.parametrize("missing", ["query", "amountRegex", "merchantInfoRegex", "enabled", "source"])
    def test_missing_field_rejected(self, missing):
        payload = rule_payload()
        del payload[missing]
        with pytest.raises(ConfigurationError):
            load_reader([payload])

    def test_wrong_type_rejected(self):
        with pytest.raises(ConfigurationError):
            load_reader([rule_payload(enabled="yes")])

    def test_unknown_field_rejected(self):
        with pytest.raises(ConfigurationError):
            load_reader([rule_payload(amountRegexp="x")])

    def test_invalid_regex_rejected(self):
        with pytest.raises(ConfigurationError, match="amountRegex"):
            load_reader([rule_payload(amountRegex="Rs([0-9")])

    def test_pattern_without_capture_group_rejected(self):
        with pytest.raises(ConfigurationError, match="capture group"):
            load_reader([rule_payload(merchantInfoRegex=r"at \w+")])

    def test_no_partial_rule_set(self):
        with pytest.raises(ConfigurationError):
            load_reader([rule_payload(), rule_payload(query=None)])

    def test_rules_must_be_a_list(self):
        with pytest.raises(ConfigurationError):
            load_reader(rule_payload())


class TestLabels:

    def test_valid_labels(self):
        table = load_reader(labels={"AMAZON": {"category": "Shopping", "bucket": "Want"}}).labels
        assert table.lookup("AMAZON") == ("Shopping", "Want")
        assert len(table) == 1

    def test_bucket_is_parsed_to_enum(self):
        config = parse_payload(
            GmailReaderConfig,
            {"rules": [], "labels": {"SIP": {"category": "Mutual funds", "bucket": "Investment"}}},
            "gmail reader config",
        )
        assert config.labels["SIP"].bucket is Bucket.INVESTMENT

    def test_unknown_bucket_rejected(self):
        with pytest.raises(ConfigurationError):
            load_reader(labels={"AMAZON": {"category": "Shopping", "bucket": "Luxury"}})

    def test_missing_category_rejected(self):
        with pytest.raises(ConfigurationError):
            load_reader(labels={"AMAZON": {"bucket": "Want"}})

    def test_labels_must_be_an_object(self):
        with pytest.raises(ConfigurationError):
            load_reader(labels=[])


class TestPluginConfigs:

    def test_reader_config_defaults(self):
        config = parse_payload(GmailReaderConfig, {"rules": [rule_payload()], "labels": {}}, "reader")
        reader = build_reader_config(config, shutdown_timeout=2.5)

        assert reader.interval == 10.0
        assert reader.max_concurrent_rules == 4
        assert reader.shutdown_timeout == 2.5
        assert len(reader.rules) == 1
        assert len(reader.labels) == 0

    def test_sheets_requires_target(self):
        with pytest.raises(ConfigurationError, match="sheetId or sheetTitle"):
            parse_payload(SheetsWriterConfig, {"sheetName": "Expenses"}, "sheets")

    def test_sheets_defaults(self):
        config = parse_payload(SheetsWriterConfig, {"sheetName": "Expenses", "sheetId": "abc"}, "sheets")
        assert config.batch_size == 10
        assert config.flush_interval == 30
        assert config.retry_attempts == 3
        assert config.retry_delay == 60.0

    def test_postgres_requires_connection_fields(self):
        with pytest.raises(ConfigurationError):
            parse_payload(PostgresWriterConfig, {"host": "db"}, "postgres")

    def test_postgres_snake_case_accepted(self):
        config = parse_payload(PostgresWriterConfig, {
            "host": "db", "database": "expenses", "user": "u", "password": "p",
            "max_pool_size": 3, "batchSize": 50,
        }, "postgres")
        assert config.max_pool_size == 3
        assert config.batch_size == 50
        assert config.port == 5432

    def test_non_positive_batch_size_rejected(self):
        with pytest.raises(ConfigurationError):
            parse_payload(PostgresWriterConfig, {
                "host": "db", "database": "d", "user": "u", "password": "p", "batchSize": 0,
            }, "postgres")


class TestLoadJson:

    def test_inline(self):
        assert load_json('{"a": 1}', "x") == {"a": 1}

    def test_file(self, tmp_path):
        path = tmp_path / "rules.json"
        path.write_text(json.dumps([1, 2]))
        assert load_json(str(path), "rules") == [1, 2]

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_json(str(tmp_path / "absent.json"), "rules")

    def test_malformed_json(self):
        with pytest.raises(ConfigurationError):
            load_json("{not json", "rules")


class TestSettings:

    @pytest.fixture(autouse=True)
    def clean_env(self, monkeypatch):
        for name in ("EXPENSOR_READER", "EXPENSOR_WRITER", "EXPENSOR_WRITER_CONFIG", "EXPENSOR_READER_CONFIG",
                     "GSHEETS_TITLE", "GSHEETS_ID", "GSHEETS_NAME", "EXPENSOR_QUEUE_SIZE",
                     "HEALTH_PORT", "LOG_LEVEL", "LOG_DIR"):
            monkeypatch.delenv(name, raising=False)

    def test_defaults(self):
        settings = Settings.from_env()
        assert settings.reader == "gmail"
        assert settings.writer == "sheets"
        assert settings.queue_size == 100
        assert settings.health_port is None

    def test_bad_integer(self, monkeypatch):
        monkeypatch.setenv("EXPENSOR_QUEUE_SIZE", "lots")
        with pytest.raises(ConfigurationError, match="EXPENSOR_QUEUE_SIZE"):
            Settings.from_env()

    def test_sheets_payload_from_env(self, monkeypatch):
        monkeypatch.setenv("GSHEETS_NAME", "Expenses")
        monkeypatch.setenv("GSHEETS_TITLE", "Budget 2024")
        payload = Settings.from_env().writer_payload()
        assert payload == {"sheetName": "Expenses", "sheetTitle": "Budget 2024"}

    def test_sheets_payload_requires_name(self, monkeypatch):
        monkeypatch.setenv("GSHEETS_ID", "abc")
        with pytest.raises(ConfigurationError, match="GSHEETS_NAME"):
            Settings.from_env().writer_payload()

    def test_other_writers_need_explicit_config(self, monkeypatch):
        monkeypatch.setenv("EXPENSOR_WRITER", "csv")
        with pytest.raises(ConfigurationError, match="EXPENSOR_WRITER_CONFIG"):
            Settings.from_env().writer_payload()

    def test_reader_payload_from_files(self, tmp_path):
        rules = tmp_path / "rules.json"
        labels = tmp_path / "labels.json"
        rules.write_text(json.dumps([rule_payload()]))
        labels.write_text(json.dumps({"AMAZON": {"category": "Shopping", "bucket": "Want"}}))

        settings = Settings(rules_file=str(rules), labels_file=str(labels), poll_interval=5)
        payload = settings.reader_payload()

        assert payload["interval"] == 5
        assert payload["rules"][0]["name"] == "hdfc"
        assert "AMAZON" in payload["labels"]
