"""
Exceptions raised by the ingestion pipeline.

Row-level errors (RowNormalizationFailure, RowSkipped) never leave an
ingester: they are caught in the row loop and counted. Batch and
orchestration errors propagate exactly one level.
"""


class IngestionError(Exception):
    """Base exception for all ingestion errors."""
    pass


class FileParseError(IngestionError):
    """Uploaded bytes could not be turned into rows."""
    pass


class ClassificationError(IngestionError):
    """File did not match any known record type."""

    def __init__(self, file_name: str, message: str | None = None):
        self.file_name = file_name
        super().__init__(message or (
            f"Unknown file type for {file_name!r}. "
            "Please ensure this is a valid Remedii export or a supported leads file."
        ))


class RowNormalizationFailure(IngestionError):
    """A required field on a single row is missing or unparseable."""
    pass


class RowSkipped(IngestionError):
    """A row deliberately excluded by a business rule."""
    pass


class StorageError(IngestionError):
    """The storage layer refused an operation."""
    pass


class BatchTransactionFailure(StorageError):
    """A transactional chunk was rolled back."""

    def __init__(self, message: str, rows_affected: int = 0):
        self.rows_affected = rows_affected
        super().__init__(message)


class OrchestrationFailure(IngestionError):
    """Anything uncaught that terminates processing of one upload."""
    pass
