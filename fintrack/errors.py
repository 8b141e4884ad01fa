from __future__ import annotations


class LedgerError(Exception):
    """Base class for errors raised by the ledger."""


class ValidationError(LedgerError, ValueError):
    """Raised when a record or rate is rejected before it is stored."""


class ConversionError(LedgerError, ValueError):
    """Raised for a missing or unsupported currency pair."""


class PersistenceError(LedgerError):
    """Raised when the record store fails. The underlying error is chained."""


class RecordNotFound(PersistenceError):
    """Raised when a record does not exist for the requesting user."""


class PartialAggregationWarning(UserWarning):
    """Reported alongside totals when some records could not be converted."""

    def __init__(self, skipped_records: int, reasons: list[str] | None = None) -> None:
        self.skipped_records = skipped_records
        self.reasons = list(reasons or [])
        super().__init__(f"{skipped_records} record(s) skipped during aggregation.")
