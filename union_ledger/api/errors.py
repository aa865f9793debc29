"""
Translation of ledger errors into HTTP responses
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..exceptions import (
    AccountAlreadyExists, AccountInactive, ConcurrencyConflict, DataIntegrityError,
    InsufficientFunds, InvalidAmount, InvalidImportFile, InvalidLoanParameters,
    InvalidLoanState, InvalidTransactionState, InvalidTransfer, PersistenceFailure,
    RecordNotFound, UnionLedgerError
)
from ..logging_config import get_logger, log_action

logger = get_logger("union_ledger.api")

# First match wins
STATUS_CODES = (
    (RecordNotFound, 404),
    (InsufficientFunds, 402),
    (InvalidTransactionState, 409),
    (InvalidLoanState, 409),
    (ConcurrencyConflict, 409),
    (AccountAlreadyExists, 409),
    (AccountInactive, 409),
    (InvalidAmount, 422),
    (InvalidLoanParameters, 422),
    (InvalidTransfer, 422),
    (InvalidImportFile, 422),
    (PersistenceFailure, 503),
    (DataIntegrityError, 500),
)


def status_for(exc: UnionLedgerError) -> int:
    for error_cls, status_code in STATUS_CODES:
        if isinstance(exc, error_cls):
            return status_code
    return 400


async def ledger_error_handler(request: Request, exc: UnionLedgerError) -> JSONResponse:
    status_code = status_for(exc)
    log_action(
        logger, "error" if status_code >= 500 else "warning", str(exc),
        actor_id=request.headers.get("x-actor-id"),
        action=f"{request.method} {request.url.path}",
        extra={"error": type(exc).__name__, "status_code": status_code}
    )
    return JSONResponse(
        status_code=status_code,
        content={
            "error": type(exc).__name__,
            "message": exc.user_message,
            "retryable": exc.retryable,
        },
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(UnionLedgerError, ledger_error_handler)
