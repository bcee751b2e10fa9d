"""
Billing core error taxonomy.

Every failure the transaction engine reports to its callers is one of these.
A raised error always means nothing was persisted by the failing operation.
"""

from typing import Any, Dict, List, Optional


class BillingError(Exception):
    """Base class for billing core failures"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationError(BillingError):
    """Request rejected before any store access (empty cart, unknown customer...)"""
    pass


class MalformedLineError(ValidationError):
    """An invoice line is structurally invalid (missing product, bad quantity)"""
    pass


class BillNotFoundError(BillingError):
    """The invoice being edited, cancelled or read does not exist"""

    def __init__(self, invoice_id: str):
        self.invoice_id = invoice_id
        super().__init__(f"Invoice not found: {invoice_id}", {"invoice_id": invoice_id})


class StockShortfall:
    """One over-requested product in an InsufficientStockError"""

    def __init__(self, product_id: str, requested: int, available: int):
        self.product_id = product_id
        self.requested = requested
        self.available = available

    @property
    def shortfall(self) -> int:
        return self.requested - self.available

    def to_dict(self) -> Dict[str, Any]:
        return {
            "product_id": self.product_id,
            "requested": self.requested,
            "available": self.available,
            "shortfall": self.shortfall,
        }

    def __eq__(self, other):
        if not isinstance(other, StockShortfall):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __repr__(self):
        return (
            f"StockShortfall(product_id={self.product_id!r}, "
            f"requested={self.requested}, available={self.available})"
        )


class InsufficientStockError(BillingError):
    """One or more products over-requested; the whole commit is aborted"""

    def __init__(self, shortfalls: List[StockShortfall]):
        self.shortfalls = list(shortfalls)
        summary = ", ".join(
            f"{s.product_id} (requested {s.requested}, available {s.available})"
            for s in self.shortfalls
        )
        super().__init__(
            f"Insufficient stock for: {summary}",
            {"shortfalls": [s.to_dict() for s in self.shortfalls]}
        )


class ConflictError(BillingError):
    """Concurrent modification detected; re-fetch current state and retry"""
    pass


class StoreUnavailableError(BillingError):
    """Transport or backing-store failure; the operation did not happen"""
    pass


class ProductNotFoundError(BillingError):
    """The product whose stock is being adjusted does not exist"""

    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Product not found: {product_id}", {"product_id": product_id})
