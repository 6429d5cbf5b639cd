"""Error kinds raised by the ledger services.

Every error carries a machine-readable ``code`` and the HTTP status the API
layer renders it with, so handlers never parse messages.
"""

from typing import Any


class LedgerError(Exception):
    code = "ledger_error"
    status_code = 500

    def __init__(self, detail: str, **data: Any) -> None:
        super().__init__(detail)
        self.detail = detail
        self.data = data


class InvalidArgument(LedgerError):
    """Malformed input: non-positive amount, unparseable date, bad id."""

    code = "invalid_argument"
    status_code = 400


class NotFound(LedgerError):
    """Referenced entity is absent or owned by somebody else."""

    code = "not_found"
    status_code = 404


class Conflict(LedgerError):
    """Business-rule refusal, e.g. deleting an account that still has transactions."""

    code = "conflict"
    status_code = 409


class StorageError(LedgerError):
    code = "storage_error"
    status_code = 500


class DeadlineExceeded(LedgerError):
    """The caller's deadline fired before the unit of work committed."""

    code = "deadline_exceeded"
    status_code = 504
