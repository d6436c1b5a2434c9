"""Exception hierarchy for the copy-trade tracker."""


class CopyTradeError(Exception):
    """Base exception for all tracker errors."""


class ConfigurationError(CopyTradeError):
    """Raised when settings are present but unusable for a command."""


class UpstreamError(CopyTradeError):
    """Raised when an upstream exchange request cannot produce a value."""

    def __init__(self, message: str, *, endpoint: str | None = None, status_code: int | None = None) -> None:
        super().__init__(message)
        self.endpoint = endpoint
        self.status_code = status_code


class UpstreamTimeoutError(UpstreamError):
    """Raised when an upstream request exceeds its timeout."""


class StorageError(CopyTradeError):
    """Raised when persisting a lead's ingest fails."""

    def __init__(self, message: str, *, lead_id: str | None = None) -> None:
        super().__init__(message)
        self.lead_id = lead_id


class SchedulerError(CopyTradeError):
    """Raised for invalid scheduler lifecycle transitions."""
