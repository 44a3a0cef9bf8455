"""Typed rejections raised by the lending core."""

from typing import Any, Dict


class LendingError(Exception):
    """Base class for guard failures. Never raised after a partial write."""

    status_code = 400
    code = "error"

    def __init__(self, detail: str, **extra: Any) -> None:
        super().__init__(detail)
        self.detail = detail
        self.extra: Dict[str, Any] = extra

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.detail, "code": self.code, **self.extra}


class NotFound(LendingError):
    """Referenced loan, book, member or payment does not exist."""

    status_code = 404
    code = "not_found"


class NoActiveLoan(NotFound):
    code = "no_active_loan"


class Conflict(LendingError):
    """Loan already open, or the record moved on before this transition."""

    status_code = 409
    code = "conflict"


class FineOutstanding(Conflict):
    """Plain return refused because a fine is due; settle it instead."""

    code = "fine_outstanding"


class Cooldown(LendingError):
    status_code = 409
    code = "cooldown"


class OutOfStock(LendingError):
    status_code = 409
    code = "out_of_stock"


class StaleQuote(LendingError):
    """Settlement amount differs from the fine computed at settlement time."""

    status_code = 409
    code = "stale_quote"


class Forbidden(LendingError):
    status_code = 403
    code = "forbidden"


class Invalid(LendingError):
    status_code = 400
    code = "invalid"
