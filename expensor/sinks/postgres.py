"""
PostgreSQL sink
Batch upserts keyed on message_id inside a single transaction, plus an
idempotent many-to-many label write. A batch commits completely or not at all.
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List

import psycopg2
import psycopg2.pool
from psycopg2.extras import execute_values

from ..config import PostgresWriterConfig, parse_payload
from ..errors import SinkFlushError
from ..extractor import TIMESTAMP_FORMAT
from ..models import DEFAULT_CURRENCY, ExtractedRecord

logger = logging.getLogger(__name__)

SCHEMA_SQL = [
    """
    CREATE TABLE IF NOT EXISTS transactions (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        message_id VARCHAR(255) UNIQUE NOT NULL,
        amount NUMERIC(19,4) NOT NULL,
        currency VARCHAR(3) NOT NULL DEFAULT 'INR',
        original_amount NUMERIC(19,4),
        original_currency VARCHAR(3),
        exchange_rate NUMERIC(10,6),
        timestamp TIMESTAMPTZ NOT NULL,
        merchant_info TEXT NOT NULL,
        category VARCHAR(100),
        bucket VARCHAR(50),
        source VARCHAR(100) NOT NULL,
        description TEXT,
        metadata JSONB DEFAULT '{}',
        created_at TIMESTAMPTZ DEFAULT NOW(),
        updated_at TIMESTAMPTZ DEFAULT NOW()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS transaction_labels (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        transaction_id UUID REFERENCES transactions(id) ON DELETE CASCADE,
        label VARCHAR(100) NOT NULL,
        created_at TIMESTAMPTZ DEFAULT NOW(),
        UNIQUE(transaction_id, label)
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_transactions_timestamp ON transactions(timestamp DESC);",
    "CREATE INDEX IF NOT EXISTS idx_transactions_currency ON transactions(currency);",
    "CREATE INDEX IF NOT EXISTS idx_transactions_category ON transactions(category);",
    "CREATE INDEX IF NOT EXISTS idx_transactions_bucket ON transactions(bucket);",
    "CREATE INDEX IF NOT EXISTS idx_transaction_labels_label ON transaction_labels(label);",
    "CREATE INDEX IF NOT EXISTS idx_transaction_labels_transaction_id ON transaction_labels(transaction_id);",
]

UPSERT_SQL = """
    INSERT INTO transactions (
        message_id, amount, currency, original_amount, original_currency,
        exchange_rate, timestamp, merchant_info, category, bucket, source,
        description, metadata
    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
    ON CONFLICT (message_id) DO UPDATE SET
        amount = EXCLUDED.amount,
        currency = EXCLUDED.currency,
        original_amount = EXCLUDED.original_amount,
        original_currency = EXCLUDED.original_currency,
        exchange_rate = EXCLUDED.exchange_rate,
        timestamp = EXCLUDED.timestamp,
        merchant_info = EXCLUDED.merchant_info,
        category = EXCLUDED.category,
        bucket = EXCLUDED.bucket,
        source = EXCLUDED.source,
        description = EXCLUDED.description,
        metadata = EXCLUDED.metadata,
        updated_at = NOW()
    RETURNING id
"""

LABELS_SQL = """
    INSERT INTO transaction_labels (transaction_id, label)
    VALUES %s
    ON CONFLICT (transaction_id, label) DO NOTHING
"""


def local_timestamp(value: str) -> datetime:
    """Naive local ``YYYY-MM-DD HH:MM:SS`` -> aware datetime carrying this host's UTC offset"""
    return datetime.strptime(value, TIMESTAMP_FORMAT).astimezone()


class PostgresSink:
    """Relational sink backed by a bounded psycopg2 connection pool"""

    name = "postgres"

    def __init__(self, config: PostgresWriterConfig, base_currency: str = DEFAULT_CURRENCY, pool=None):
        self.config = config
        self.base_currency = base_currency
        self.pool = pool

    def _connect(self) -> None:
        if self.pool is not None:
            return
        try:
            self.pool = psycopg2.pool.ThreadedConnectionPool(
                minconn=1,
                maxconn=self.config.max_pool_size,
                host=self.config.host,
                port=self.config.port,
                dbname=self.config.database,
                user=self.config.user,
                password=self.config.password,
                sslmode=self.config.sslmode,
            )
        except psycopg2.Error as e:
            logger.error(f"Connecting to PostgreSQL at {self.config.host}:{self.config.port} failed: {e}")
            raise
        logger.info(f"Connected to PostgreSQL {self.config.host}:{self.config.port}/{self.config.database}")

    def open(self) -> None:
        self._connect()
        try:
            self.init_database()
        except psycopg2.Error:
            self.close()
            raise

    def init_database(self) -> None:
        """Create tables and indexes if they don't exist"""
        conn = self.pool.getconn()
        try:
            with conn:
                with conn.cursor() as cursor:
                    for statement in SCHEMA_SQL:
                        cursor.execute(statement)
            logger.info("Database initialized successfully")
        except psycopg2.Error as e:
            logger.error(f"Database initialization error: {e}")
            raise
        finally:
            self.pool.putconn(conn)

    def _row(self, record: ExtractedRecord) -> tuple:
        return (
            record.message_id,
            record.amount,
            record.currency or self.base_currency,
            record.original_amount,
            record.original_currency,
            record.exchange_rate,
            local_timestamp(record.timestamp),
            record.merchant_info,
            record.category,
            record.bucket,
            record.source,
            record.description,
            json.dumps(record.metadata or {}),
        )

    def _upsert_transaction(self, cursor, record: ExtractedRecord) -> Any:
        """Insert or update one transaction and return its row id"""
        cursor.execute(UPSERT_SQL, self._row(record))
        row = cursor.fetchone()
        return row[0]

    def _insert_labels(self, cursor, transaction_id: Any, labels: Iterable[str]) -> None:
        values = [(transaction_id, label) for label in sorted(labels)]
        if values:
            execute_values(cursor, LABELS_SQL, values)

    def flush(self, batch: List[ExtractedRecord]) -> None:
        """
        Write a batch in one transaction.

        Raises:
            SinkFlushError: any row or label failed; nothing from the batch is committed
        """
        if not batch:
            return
        self._connect()
        conn = self.pool.getconn()
        try:
            # psycopg2's connection context commits on success and rolls back on error
            with conn:
                with conn.cursor() as cursor:
                    for i, record in enumerate(batch):
                        try:
                            transaction_id = self._upsert_transaction(cursor, record)
                            if record.labels:
                                self._insert_labels(cursor, transaction_id, record.labels)
                        except (psycopg2.Error, ValueError) as e:
                            raise SinkFlushError(
                                self.name, len(batch), f"record {i} ({record.message_id}): {e}"
                            ) from e
        except psycopg2.Error as e:
            raise SinkFlushError(self.name, len(batch), f"committing transaction: {e}") from e
        finally:
            self.pool.putconn(conn)
        logger.info(f"Wrote transaction batch to PostgreSQL (count={len(batch)})")

    def close(self) -> None:
        if self.pool is not None:
            self.pool.closeall()
            self.pool = None
            logger.info("Closed PostgreSQL connection pool")


class PostgresPlugin:
    name = "postgres"
    description = "Write expense transactions to PostgreSQL with multi-currency support"
    required_scopes = ()
    config_model = PostgresWriterConfig

    def config_schema(self) -> Dict[str, Any]:
        return self.config_model.model_json_schema(by_alias=True)

    def create(self, session, raw_config: Any, base_currency: str = DEFAULT_CURRENCY):
        config = parse_payload(PostgresWriterConfig, raw_config, "postgres writer config")
        return PostgresSink(config, base_currency), config
