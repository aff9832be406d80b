from __future__ import annotations

MAX_CREDITS = 1_000_000_000


class LedgerError(RuntimeError):
    """Base class for credit ledger failures."""


class InsufficientCreditsError(LedgerError):
    def __init__(self, *, workspace_id: str, required: int, available: int) -> None:
        self.workspace_id = workspace_id
        self.required = int(required)
        self.available = int(available)
        super().__init__(f"Insufficient credits: required {self.required}, available {self.available}")


class UnknownModelError(LedgerError):
    def __init__(self, model: str, capability: str | None = None) -> None:
        self.model = model
        self.capability = capability
        if capability:
            message = f"Model {model!r} is not registered for capability {capability!r}"
        else:
            message = f"Model {model!r} is not registered"
        super().__init__(message)


class WorkspaceNotFoundError(LedgerError):
    def __init__(self, workspace_id: str) -> None:
        self.workspace_id = workspace_id
        super().__init__(f"Workspace not found: {workspace_id}")


class ReservationNotFoundError(LedgerError):
    def __init__(self, reservation_id: str) -> None:
        self.reservation_id = reservation_id
        super().__init__(f"Reservation not found: {reservation_id}")


class AlreadyTerminalReservation(LedgerError):
    def __init__(self, reservation_id: str, status: str) -> None:
        self.reservation_id = reservation_id
        self.status = status
        super().__init__(f"Reservation {reservation_id} is already {status}")


class LedgerWriteConflict(LedgerError):
    """Raised when a balance write keeps losing the race after all retries."""


class LedgerIntegrityError(LedgerError):
    """Raised when a mutation would commit a state that breaks conservation."""


class InvoiceCollaboratorUnavailable(LedgerError):
    pass


class CreditValidationError(ValueError):
    def __init__(self, message: str, code: str) -> None:
        self.code = code
        super().__init__(message)


def validate_credit_amount(amount, context: str, *, allow_zero: bool = False) -> int:
    if isinstance(amount, float):
        raise CreditValidationError(f"{context}: credit amount must be an integer", "NOT_INTEGER")
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise CreditValidationError(f"{context}: credit amount must be a number", "INVALID_TYPE")
    if amount < 0:
        raise CreditValidationError(f"{context}: credit amount cannot be negative", "NEGATIVE")
    if amount == 0 and not allow_zero:
        raise CreditValidationError(f"{context}: credit amount must be positive", "NOT_POSITIVE")
    if amount > MAX_CREDITS:
        raise CreditValidationError(
            f"{context}: credit amount exceeds maximum allowed ({MAX_CREDITS})",
            "EXCEEDS_MAXIMUM",
        )
    return amount
