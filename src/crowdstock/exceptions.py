"""Custom exception hierarchy for crowdstock."""

from __future__ import annotations


class CrowdStockError(Exception):
    """Base exception for all crowdstock errors."""


class CrowdStockConfigError(CrowdStockError):
    """Invalid or missing configuration."""


class InvalidReport(CrowdStockError):
    """Report rejected at the boundary (bad status, confidence, key or timestamp).

    Invalid reports never reach the ledger.
    """

    def __init__(self, message: str, *, field: str = "") -> None:
        self.field = field
        super().__init__(message)


class DuplicateSubmission(CrowdStockError):
    """Submitter already contributed to this entity within the cooldown window.

    This is a policy rejection, not a data error.  Retrying the same
    submission is harmless: it keeps being rejected until ``retry_after``
    seconds have passed.
    """

    def __init__(
        self,
        message: str,
        *,
        entity_key: str = "",
        submitter_token: str = "",
        retry_after: float = 0.0,
    ) -> None:
        self.entity_key = entity_key
        self.submitter_token = submitter_token
        self.retry_after = retry_after
        super().__init__(message)


class UnknownEntity(CrowdStockError):
    """No aggregate exists for the requested entity key.

    Only raised by callers that explicitly require an entity to exist;
    the query service resolves unknown keys to an ``unknown`` view instead.
    """

    def __init__(self, message: str, *, entity_key: str = "") -> None:
        self.entity_key = entity_key
        super().__init__(message)


class HistoryLogError(CrowdStockError):
    """Writing a report through to the history log failed."""


class InvalidEntityKey(InvalidReport):
    """An entity key string or mapping could not be parsed."""

    def __init__(self, message: str, *, value: str = "") -> None:
        self.value = value
        super().__init__(message, field="entity_key")
