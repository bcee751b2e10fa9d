"""
BILLING STORE CONTRACT

The transaction engine talks to persistence only through these two
interfaces:

- BillStore: plain reads and transaction(). All writes, including the
  append-only payment and ledger records, go through a transaction.
- BillTransaction: the handle for one atomic unit of work. Every read made
  through it comes from the same snapshot the writes are checked against;
  either every write made through it commits, or none does.

Implementations:
- core.mongo_store.MongoBillStore    (MongoDB multi-document transactions)
- core.memory_store.InMemoryBillStore (optimistic, version-checked commits)

Usage:
    async with store.transaction() as txn:
        product = await txn.get_product(product_id)
        await txn.set_stock(product_id, expected=product.stock, new=product.stock - 2)
"""

from abc import ABC, abstractmethod
from typing import Any, AsyncContextManager, Dict, List, Optional
import re

from models import Customer, Invoice, LedgerEntry, PaymentRecord, Product


class PaymentFilter:
    """Filter for list_payments. None means 'any'."""

    def __init__(
        self,
        type: Optional[str] = None,
        related_invoice_id: Optional[str] = None,
        iso_date: Optional[str] = None,
        status: Optional[str] = None
    ):
        self.type = type
        self.related_invoice_id = related_invoice_id
        self.iso_date = iso_date
        self.status = status

    def matches(self, payment: PaymentRecord) -> bool:
        if self.type and payment.type != self.type:
            return False
        if self.related_invoice_id and payment.related_invoice_id != self.related_invoice_id:
            return False
        if self.iso_date and (payment.iso_date or "")[:10] != self.iso_date[:10]:
            return False
        if self.status and payment.status != self.status:
            return False
        return True

    def to_query(self) -> Dict[str, Any]:
        query: Dict[str, Any] = {}
        if self.type:
            query["type"] = self.type
        if self.related_invoice_id:
            query["related_invoice_id"] = self.related_invoice_id
        if self.iso_date:
            query["iso_date"] = {"$regex": f"^{re.escape(self.iso_date[:10])}"}
        if self.status:
            query["status"] = self.status
        return query


class BillTransaction(ABC):
    """One atomic unit of work against the billing store"""

    @abstractmethod
    async def get_product(self, product_id: str) -> Optional[Product]:
        ...

    @abstractmethod
    async def get_customer(self, customer_id: str) -> Optional[Customer]:
        ...

    @abstractmethod
    async def get_invoice(self, invoice_id: str) -> Optional[Invoice]:
        ...

    @abstractmethod
    async def next_sequence(self, prefix: str) -> int:
        """Increment and return the counter for prefix"""
        ...

    @abstractmethod
    async def invoice_number_exists(self, invoice_number: str) -> bool:
        ...

    @abstractmethod
    async def insert_invoice(self, invoice: Invoice) -> str:
        """Insert a new invoice, returning its id"""
        ...

    @abstractmethod
    async def replace_invoice(self, invoice: Invoice, expected_version: int) -> None:
        """
        Overwrite an invoice only if its stored version still equals
        expected_version; otherwise raise ConflictError.
        """
        ...

    @abstractmethod
    async def set_stock(self, product_id: str, expected: int, new: int) -> None:
        """
        Set a product's stock only if it still equals expected; otherwise
        raise ConflictError.
        """
        ...

    @abstractmethod
    async def insert_payment(self, payment: PaymentRecord) -> str:
        ...

    @abstractmethod
    async def list_payments(self, payment_filter: PaymentFilter) -> List[PaymentRecord]:
        ...

    @abstractmethod
    async def insert_ledger_entry(self, entry: LedgerEntry) -> str:
        """Append a daily ledger entry, returning its id"""
        ...

    @abstractmethod
    async def insert_audit_entry(self, entry: Dict[str, Any]) -> None:
        ...


class BillStore(ABC):
    """Backing store for the billing core"""

    @abstractmethod
    def transaction(self) -> AsyncContextManager[BillTransaction]:
        """
        Open an atomic unit of work. Leaving the block normally commits;
        leaving it with an exception aborts and re-raises. Snapshot conflicts
        surface as ConflictError, transport failures as StoreUnavailableError.
        """
        ...

    @abstractmethod
    async def get_product(self, product_id: str) -> Optional[Product]:
        ...

    @abstractmethod
    async def list_products(self) -> List[Product]:
        ...

    @abstractmethod
    async def get_customer(self, customer_id: str) -> Optional[Customer]:
        ...

    @abstractmethod
    async def get_invoice(self, invoice_id: str) -> Optional[Invoice]:
        ...

    @abstractmethod
    async def list_invoices(self, limit: Optional[int] = 500) -> List[Invoice]:
        ...

    @abstractmethod
    async def list_payments(self, payment_filter: Optional[PaymentFilter] = None) -> List[PaymentRecord]:
        ...

    @abstractmethod
    async def list_ledger_entries(self, iso_date: Optional[str] = None, limit: int = 500) -> List[LedgerEntry]:
        """Newest first; iso_date (YYYY-MM-DD) restricts to one day"""
        ...

    @abstractmethod
    async def list_audit_logs(self, entity_id: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        ...

    async def ensure_indexes(self) -> None:
        """Create unique constraints where the backend supports them"""
        return None

    def close(self) -> None:
        return None
