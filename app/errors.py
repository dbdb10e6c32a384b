"""Error taxonomy shared by the storage layer, the upstream executor and the routes."""

from typing import Any


class RelayError(Exception):
    """Base class; `status_code` is the HTTP status the routes answer with."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(RelayError):
    """Rejected request input (missing command, malformed body). Never persisted."""

    status_code = 400


class UpstreamError(RelayError):
    """Transport failure, timeout or non-2xx answer from the command API."""

    def __init__(self, message: str, details: Any = "Unknown error occurred"):
        super().__init__(message)
        self.details = details


class StorageError(RelayError):
    """Any persistence fault surfaced from SQLAlchemy."""
