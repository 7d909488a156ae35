from typing import Any

from fastapi import HTTPException


class LedgerError(HTTPException):
    """Base of every failure the core raises.

    Subclasses pin the HTTP status and a stable machine code so the web edge
    can render them without a lookup table.
    """

    status_code = 400
    code = "LEDGER_ERROR"

    def __init__(self, detail: str) -> None:
        super().__init__(status_code=type(self).status_code, detail=detail)

    def __str__(self) -> str:
        return str(self.detail)


class ValidationError(LedgerError):
    status_code = 422
    code = "VALIDATION_ERROR"


class NotFound(LedgerError):
    status_code = 404
    code = "NOT_FOUND"


class AccountNotFound(NotFound):
    code = "ACCOUNT_NOT_FOUND"


class InactiveAccount(LedgerError):
    status_code = 409
    code = "INACTIVE_ACCOUNT"


class Conflict(LedgerError):
    status_code = 409
    code = "CONFLICT"


class Timeout(LedgerError):
    status_code = 504
    code = "TIMEOUT"


class StorageUnavailable(LedgerError):
    status_code = 503
    code = "STORAGE_UNAVAILABLE"


class PartialBatchFailure(LedgerError):
    status_code = 207
    code = "PARTIAL_BATCH_FAILURE"

    def __init__(self, result: Any) -> None:
        self.result = result
        super().__init__(f"{result.failed} recurring transaction(s) failed to process")
