"""
Domain errors raised by the ledger services and mapped to JSON responses
by the handlers registered in main.py.
"""
from typing import List, Optional


class LedgerError(Exception):
    status_code = 400

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.message = message
        self.errors = errors or []

    def to_dict(self):
        body = {"success": False, "message": self.message}
        if self.errors:
            body["errors"] = self.errors
        return body


class ValidationError(LedgerError):
    status_code = 400


class NotFoundError(LedgerError):
    status_code = 404


class ConflictError(LedgerError):
    status_code = 409


class NoDataError(LedgerError):
    """A report window with nothing to group."""
    status_code = 404


class DependencyError(LedgerError):
    status_code = 503
