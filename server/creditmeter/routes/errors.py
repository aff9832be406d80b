from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from server.creditmeter.ledger.errors import (
    CreditValidationError,
    InsufficientCreditsError,
    LedgerError,
    LedgerIntegrityError,
    LedgerWriteConflict,
    ReservationNotFoundError,
    UnknownModelError,
    WorkspaceNotFoundError,
)

log = logging.getLogger(__name__)


def _error(status_code: int, code: str, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": code, "detail": message, **extra})


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(InsufficientCreditsError)
    async def _insufficient(_request: Request, exc: InsufficientCreditsError):
        return _error(402, "insufficient_credits", str(exc), required=exc.required, available=exc.available)

    @app.exception_handler(UnknownModelError)
    async def _unknown_model(_request: Request, exc: UnknownModelError):
        return _error(400, "unknown_model", str(exc), model=exc.model, capability=exc.capability)

    @app.exception_handler(CreditValidationError)
    async def _invalid(_request: Request, exc: CreditValidationError):
        return _error(422, exc.code.lower(), str(exc))

    @app.exception_handler(WorkspaceNotFoundError)
    async def _no_workspace(_request: Request, exc: WorkspaceNotFoundError):
        return _error(404, "workspace_not_found", str(exc))

    @app.exception_handler(ReservationNotFoundError)
    async def _no_reservation(_request: Request, exc: ReservationNotFoundError):
        return _error(404, "reservation_not_found", str(exc))

    @app.exception_handler(LedgerWriteConflict)
    async def _conflict(_request: Request, exc: LedgerWriteConflict):
        return _error(503, "write_conflict", "The ledger is busy; retry the request.")

    @app.exception_handler(LedgerIntegrityError)
    async def _integrity(_request: Request, exc: LedgerIntegrityError):
        log.error("Refused ledger write: %s", exc)
        return _error(500, "integrity_violation", "The operation was refused to protect ledger integrity.")

    @app.exception_handler(LedgerError)
    async def _ledger(_request: Request, exc: LedgerError):
        return _error(409, "ledger_error", str(exc))
