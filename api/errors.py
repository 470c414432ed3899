"""Error responses for the API.

Every domain error renders as ``{"success": false, "error": ..., "details": ...}``
with a status code chosen by exception type.
"""
import logging
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from chain import RPCError
from database.exceptions import DatabaseError
from ledger import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    LedgerError,
    NotFoundError,
)
from payments import PaymentError
from wallet import TransactionFailedError, WalletError

logger = logging.getLogger(__name__)

# Most specific first
ERROR_STATUS = [
    (NotFoundError, status.HTTP_404_NOT_FOUND, "Not found"),
    (ForbiddenError, status.HTTP_403_FORBIDDEN, "Forbidden"),
    (InvalidStateError, status.HTTP_409_CONFLICT, "Invalid state"),
    (ConflictError, status.HTTP_409_CONFLICT, "Conflict"),
    (LedgerError, status.HTTP_400_BAD_REQUEST, "Invalid request"),
    (TransactionFailedError, status.HTTP_502_BAD_GATEWAY, "Transaction failed"),
    (WalletError, status.HTTP_400_BAD_REQUEST, "Wallet error"),
    (PaymentError, status.HTTP_502_BAD_GATEWAY, "Payment unavailable"),
    (RPCError, status.HTTP_502_BAD_GATEWAY, "Chain endpoint error"),
    (DatabaseError, status.HTTP_500_INTERNAL_SERVER_ERROR, "Database error"),
]

def error_response(status_code: int, error: str, details: Any) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={'success': False, 'error': error, 'details': details}
    )

async def domain_error_handler(request: Request, exc: Exception) -> JSONResponse:
    for exc_type, status_code, error in ERROR_STATUS:
        if isinstance(exc, exc_type):
            if status_code >= 500:
                logger.error(f"{request.method} {request.url.path} failed: {exc}")
            return error_response(status_code, error, str(exc))
    raise exc

async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
        for err in exc.errors()
    ]
    return error_response(status.HTTP_400_BAD_REQUEST, "Validation error", details)

def register_error_handlers(app: FastAPI) -> None:
    for exc_type in (LedgerError, WalletError, PaymentError, RPCError, DatabaseError):
        app.add_exception_handler(exc_type, domain_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
