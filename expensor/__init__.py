"""
Expensor
Extracts expense transactions from email notifications and writes them to a
spreadsheet, a local file or PostgreSQL.
"""

from .errors import (
    ConfigurationError,
    ExpensorError,
    RateLimitError,
    ShutdownRequested,
    SinkFlushError,
    SourceError,
)
from .extractor import extract
from .models import Bucket, ExtractedRecord, LabelTable, Rule, SourceMessage

__version__ = '0.1.0'

__all__ = [
    'Bucket',
    'ConfigurationError',
    'ExpensorError',
    'ExtractedRecord',
    'LabelTable',
    'RateLimitError',
    'Rule',
    'ShutdownRequested',
    'SinkFlushError',
    'SourceError',
    'SourceMessage',
    'extract',
]
