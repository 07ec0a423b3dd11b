"""
Exception types shared across the pipeline
"""

from typing import Optional


class ExpensorError(Exception):
    """Base class for pipeline errors"""


class ConfigurationError(ExpensorError):
    """Rule, label or plugin configuration is malformed; aborts startup"""


class SourceError(ExpensorError):
    """A source adapter call failed for a single message or query"""

    def __init__(self, message: str, message_id: Optional[str] = None):
        super().__init__(message)
        self.message_id = message_id


class RateLimitError(ExpensorError):
    """The sink answered with HTTP 429"""


class SinkFlushError(ExpensorError):
    """A batch could not be persisted; the writer run loop ends"""

    def __init__(self, sink: str, batch_size: int, reason: str):
        super().__init__(f"{sink} flush of {batch_size} record(s) failed: {reason}")
        self.sink = sink
        self.batch_size = batch_size


class ShutdownRequested(ExpensorError):
    """The writer stopped because the stop signal fired"""
