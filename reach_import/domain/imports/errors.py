"""
Exceptions raised by the normalized route import.

Mapping and parse errors are raised before any store mutation. Write errors
are raised by the storage client and consumed by the orchestrator, which turns
them into a failed ``ImportResult`` after rolling the batch back.
"""
from typing import List, Optional


class ImportPipelineError(Exception):
    """Base class for import pipeline failures."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class MappingIncomplete(ImportPipelineError):
    """Raised when required fields have no source column."""

    def __init__(self, missing_fields: List[str], message: str = None):
        self.missing_fields = list(missing_fields)
        super().__init__(
            message or f"Column mapping is incomplete. Missing required fields: {', '.join(self.missing_fields)}"
        )


class ParseError(ImportPipelineError):
    """Raised when uploaded content cannot be read as rows."""


class WriteError(ImportPipelineError):
    """Base class for failures while writing a batch to the store."""

    def __init__(self, table_name: str, message: str = None, cause: Optional[BaseException] = None):
        self.table_name = table_name
        self.cause = cause
        super().__init__(message or f"Write to '{table_name}' failed: {cause}")


class TransientWriteError(WriteError):
    """A batch write failed for a reason worth retrying (timeout, lock, dropped connection)."""


class FatalWriteError(WriteError):
    """A batch write failed permanently, or transient retries were exhausted."""


class ImportCancelled(ImportPipelineError):
    """Raised when an operator cancels a running import."""

    def __init__(self, batch_id: Optional[str] = None, message: str = None):
        self.batch_id = batch_id
        super().__init__(message or (f"Import {batch_id} was cancelled" if batch_id else "Import was cancelled"))


class ImportAlreadyRunning(ImportPipelineError):
    """Raised when a tenant submits an import while another one is in flight."""

    def __init__(self, company_id: str, batch_id: str, message: str = None):
        self.company_id = company_id
        self.batch_id = batch_id
        super().__init__(
            message or f"Company '{company_id}' already has an import in progress (batch {batch_id})"
        )
