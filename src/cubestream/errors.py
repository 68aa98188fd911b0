from __future__ import annotations


class IngestError(Exception):
    retryable: bool = False


class ConfigurationError(IngestError):
    """Operator has to fix something (partition set changed, unknown parser, missing source)."""


class TransientSourceError(IngestError):
    retryable = True


class DataError(IngestError):
    """A single message could not be decoded. Skipped and counted by the caller."""


class RejectionThresholdExceeded(DataError):
    def __init__(self, rejected: int, total: int, ceiling: float):
        self.rejected = rejected
        self.total = total
        self.ceiling = ceiling
        super().__init__(
            f"rejected {rejected} of {total} messages, above ceiling {ceiling:.4f}"
        )


class ConsistencyError(IngestError):
    """Offset ranges do not line up (gap, overlap, start > end) or committed state was violated."""
