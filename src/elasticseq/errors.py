"""Errors raised by elasticseq."""


class ElasticSeqError(Exception):
    """Base class for all elasticseq errors."""


class StoreUnavailable(ElasticSeqError):
    """Raised when the backing Elasticsearch cluster cannot serve a request.

    Covers connection failures as well as API errors returned by the
    cluster. The original client exception is chained as ``__cause__``.
    """


class SequenceConflict(StoreUnavailable):
    """Raised when a version conflict is reported for a counter document.

    Atomic increments should never conflict, so this is surfaced the same
    way as an unavailable store.
    """


class SequenceTimeout(ElasticSeqError):
    """Raised when no ID became available before the caller's deadline."""

    def __init__(self, sequence: str, timeout: float) -> None:
        self.sequence = sequence
        self.timeout = timeout
        super().__init__(
            f"No ID available for sequence {sequence!r} within {timeout:g}s"
        )


class DocumentNotFound(ElasticSeqError, KeyError):
    """Raised when a document is requested by id and does not exist."""

    def __init__(self, index: str, id: str) -> None:
        self.index = index
        self.id = id
        super().__init__(f"Document {id!r} not found in index {index!r}")

    def __str__(self) -> str:
        return self.args[0]


class MissingIdError(ElasticSeqError, ValueError):
    """Raised when an operation needs a document id and none was given."""


class NotAcknowledged(ElasticSeqError):
    """Raised when Elasticsearch does not acknowledge an admin operation."""
