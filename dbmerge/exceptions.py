# dbmerge/exceptions.py
"""
Exceptions raised by the bulk write engine.

Driver exceptions (the DB-API ``DatabaseError`` hierarchy) are never wrapped;
they reach the caller exactly as the driver raised them.
"""

from typing import Optional


class BulkOperationError(Exception):
    """Base class for errors raised by dbmerge."""


class UnsupportedShapeError(BulkOperationError, ValueError):
    """Record metadata cannot support the requested operation."""


class RecordTooWideError(BulkOperationError, ValueError):
    """A single record needs more bound parameters than one statement allows."""

    def __init__(self, parameters_per_record: int, max_parameters: int):
        self.parameters_per_record = parameters_per_record
        self.max_parameters = max_parameters
        super().__init__(
            f"A record needs {parameters_per_record} parameters but a statement "
            f"allows at most {max_parameters}"
        )


class OutputCorrelationError(BulkOperationError):
    """Output rows returned for a batch do not line up with the records submitted."""

    def __init__(self, message: str, batch_number: Optional[int] = None,
                 expected: Optional[int] = None, received: Optional[int] = None):
        self.batch_number = batch_number
        self.expected = expected
        self.received = received
        super().__init__(message)


class ExecutionError(BulkOperationError):
    """A statement ran but did not behave the way its template requires."""

    def __init__(self, message: str, batch_number: Optional[int] = None, affected: int = 0):
        self.batch_number = batch_number
        self.affected = affected
        super().__init__(message)


class BulkCancelledError(ExecutionError):
    """The operation was cancelled or timed out before all batches ran."""
