"""
Error taxonomy for payment confirmation and reconciliation.

Every class carries a stable ``code`` so HTTP handlers and result
consumers can branch on the kind of failure without string matching.
"""


class CheckoutError(Exception):
    code = "error"

    def __init__(self, message: str = "", order_id: str | None = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.order_id = order_id

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "order_id": self.order_id}


class InvalidRequest(CheckoutError):
    code = "invalid_request"


class OrderNotFound(CheckoutError):
    code = "not_found"


class PaymentConflict(CheckoutError):
    """A confirmed order already carries a different payment reference."""
    code = "conflict"

    def __init__(self, message: str = "", order_id: str | None = None,
                 existing_reference: str | None = None, supplied_reference: str | None = None):
        super().__init__(message, order_id)
        self.existing_reference = existing_reference
        self.supplied_reference = supplied_reference

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["existing_reference"] = self.existing_reference
        data["supplied_reference"] = self.supplied_reference
        return data


class OrderCancelled(CheckoutError):
    code = "cancelled"


class InvalidTransition(CheckoutError):
    code = "invalid_transition"


class UnknownRail(CheckoutError):
    code = "unknown_rail"


# --- Transient (retryable) ---

class TransientError(CheckoutError):
    code = "transient"


class StoreUnavailable(TransientError):
    code = "store_unavailable"


class LedgerUnavailable(TransientError):
    code = "ledger_unavailable"


class OverrideRateLimited(TransientError):
    code = "override_rate_limited"


class AtomicPrimitiveUnavailable(CheckoutError):
    """The store cannot run the single-statement confirm."""
    code = "atomic_unavailable"


# --- Ledger verification ---

class VerificationMismatch(CheckoutError):
    code = "verification_mismatch"


class TransactionNotFound(VerificationMismatch):
    code = "transaction_not_found"
