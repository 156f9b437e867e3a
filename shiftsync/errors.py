from __future__ import annotations


class SyncError(Exception):
    status_code = 500
    kind = "sync_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFound(SyncError):
    status_code = 404
    kind = "not_found"


class InvalidUrl(SyncError):
    status_code = 400
    kind = "invalid_url"


class ValidationError(SyncError):
    status_code = 400
    kind = "validation_error"


class FetchTimeout(SyncError):
    status_code = 504
    kind = "fetch_timeout"


class FetchFailed(SyncError):
    status_code = 502
    kind = "fetch_failed"


class ParseError(SyncError):
    status_code = 422
    kind = "parse_error"


class PersistenceError(SyncError):
    status_code = 500
    kind = "persistence_error"
