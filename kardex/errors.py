"""Error taxonomy shared by the ledger, the stock projection and the audit manager.

Services raise these; the API layer turns them into
``{"success": false, "error": {"code": ..., "message": ...}}`` bodies.
"""


class LedgerError(Exception):
    code = "LEDGER_ERROR"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class ValidationError(LedgerError):
    code = "VALIDATION_ERROR"
    status_code = 400


class NotFound(LedgerError):
    code = "NOT_FOUND"
    status_code = 404


class InsufficientStock(LedgerError):
    code = "INSUFFICIENT_STOCK"
    status_code = 409

    def __init__(self, message: str, product_id: str | None = None):
        super().__init__(message)
        self.product_id = product_id

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.product_id:
            data["product_id"] = self.product_id
        return data


class StockConflict(InsufficientStock):
    """Reversing a historical movement would drive stock negative."""

    code = "STOCK_CONFLICT"


class SessionConflict(LedgerError):
    code = "SESSION_CONFLICT"
    status_code = 409


class PersistenceFailure(LedgerError):
    code = "PERSISTENCE_FAILURE"
    status_code = 503


class Unauthenticated(LedgerError):
    code = "UNAUTHENTICATED"
    status_code = 401


class Forbidden(LedgerError):
    """The acting operator lacks the permission the operation needs."""

    code = "FORBIDDEN"
    status_code = 403
