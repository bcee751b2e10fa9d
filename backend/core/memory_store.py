"""
IN-MEMORY BILLING STORE

Optimistic concurrency control:
- every document carries a version number
- a transaction records the version of each document it reads
- writes are buffered inside the transaction (read-your-writes)
- commit re-checks every recorded version under a lock; any change since the
  read raises ConflictError and nothing is applied

Used by the test suite and for running the API without MongoDB
(STORE_BACKEND=memory).
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from bson import ObjectId
import asyncio
import copy
import logging

from core.errors import ConflictError
from core.store import BillStore, BillTransaction, PaymentFilter
from models import Customer, Invoice, LedgerEntry, PaymentRecord, Product

logger = logging.getLogger(__name__)

PRODUCTS = "products"
CUSTOMERS = "customers"
INVOICES = "invoices"
PAYMENTS = "payments"
SEQUENCES = "document_sequences"
LEDGER = "ledger_entries"

Key = Tuple[str, str]


class InMemoryBillTransaction(BillTransaction):
    """Buffered unit of work over an InMemoryBillStore"""

    def __init__(self, store: "InMemoryBillStore"):
        self._store = store
        self.read_versions: Dict[Key, int] = {}
        self.writes: Dict[Key, Any] = {}
        self.audit_entries: List[Dict[str, Any]] = []

    def _read(self, collection: str, doc_id: str) -> Any:
        key = (collection, doc_id)
        if key in self.writes:
            return copy.deepcopy(self.writes[key])
        if key not in self.read_versions:
            self.read_versions[key] = self._store._version(key)
        return copy.deepcopy(self._store._data[collection].get(doc_id))

    def _write(self, collection: str, doc_id: str, value: Any) -> None:
        self.writes[(collection, doc_id)] = copy.deepcopy(value)

    def _scan(self, collection: str) -> Dict[str, Any]:
        view = dict(self._store._data[collection])
        for (c, doc_id), value in self.writes.items():
            if c == collection:
                view[doc_id] = value
        return view

    async def get_product(self, product_id: str) -> Optional[Product]:
        return self._read(PRODUCTS, product_id)

    async def get_customer(self, customer_id: str) -> Optional[Customer]:
        return self._read(CUSTOMERS, customer_id)

    async def get_invoice(self, invoice_id: str) -> Optional[Invoice]:
        return self._read(INVOICES, invoice_id)

    async def next_sequence(self, prefix: str) -> int:
        current = self._read(SEQUENCES, prefix) or 0
        self._write(SEQUENCES, prefix, current + 1)
        return current + 1

    async def invoice_number_exists(self, invoice_number: str) -> bool:
        return any(
            inv.invoice_number == invoice_number
            for inv in self._scan(INVOICES).values()
        )

    async def insert_invoice(self, invoice: Invoice) -> str:
        invoice_id = invoice.invoice_id or str(ObjectId())
        stored = invoice.model_copy(update={"invoice_id": invoice_id}, deep=True)
        self._write(INVOICES, invoice_id, stored)
        return invoice_id

    async def replace_invoice(self, invoice: Invoice, expected_version: int) -> None:
        current = self._read(INVOICES, invoice.invoice_id)
        if current is None or current.version != expected_version:
            raise ConflictError(
                f"Invoice {invoice.invoice_id} changed concurrently",
                {"invoice_id": invoice.invoice_id, "expected_version": expected_version}
            )
        self._write(INVOICES, invoice.invoice_id, invoice)

    async def set_stock(self, product_id: str, expected: int, new: int) -> None:
        current = self._read(PRODUCTS, product_id)
        if current is None or current.stock != expected:
            raise ConflictError(
                f"Stock for {product_id} changed concurrently",
                {"product_id": product_id, "expected": expected}
            )
        self._write(PRODUCTS, product_id, current.model_copy(
            update={"stock": new, "updated_at": datetime.utcnow()}
        ))

    async def insert_payment(self, payment: PaymentRecord) -> str:
        payment_id = payment.payment_id or str(ObjectId())
        self._write(PAYMENTS, payment_id, payment.model_copy(update={"payment_id": payment_id}))
        return payment_id

    async def list_payments(self, payment_filter: PaymentFilter) -> List[PaymentRecord]:
        return [
            copy.deepcopy(p) for p in self._scan(PAYMENTS).values()
            if payment_filter.matches(p)
        ]

    async def insert_ledger_entry(self, entry: LedgerEntry) -> str:
        entry_id = entry.entry_id or str(ObjectId())
        self._write(LEDGER, entry_id, entry.model_copy(update={"entry_id": entry_id}, deep=True))
        return entry_id

    async def insert_audit_entry(self, entry: Dict[str, Any]) -> None:
        self.audit_entries.append(copy.deepcopy(entry))


class InMemoryBillStore(BillStore):
    """Process-local store with optimistic, version-checked commits"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Any]] = {
            PRODUCTS: {}, CUSTOMERS: {}, INVOICES: {}, PAYMENTS: {}, SEQUENCES: {}, LEDGER: {}
        }
        self._versions: Dict[Key, int] = {}
        self._audit_logs: List[Dict[str, Any]] = []
        self._commit_lock = asyncio.Lock()

    def _version(self, key: Key) -> int:
        return self._versions.get(key, 0)

    # =========================================================================
    # SEEDING (catalog and customer CRUD live outside the billing core)
    # =========================================================================

    def add_product(self, product: Product) -> Product:
        key = (PRODUCTS, product.product_id)
        self._data[PRODUCTS][product.product_id] = product.model_copy(deep=True)
        self._versions[key] = self._version(key) + 1
        return product

    def add_customer(self, customer: Customer) -> Customer:
        key = (CUSTOMERS, customer.customer_id)
        self._data[CUSTOMERS][customer.customer_id] = customer.model_copy(deep=True)
        self._versions[key] = self._version(key) + 1
        return customer

    # =========================================================================
    # TRANSACTIONS
    # =========================================================================

    @asynccontextmanager
    async def transaction(self):
        txn = InMemoryBillTransaction(self)
        yield txn
        await self._commit(txn)

    async def _commit(self, txn: InMemoryBillTransaction) -> None:
        async with self._commit_lock:
            stale = [
                key for key, version in txn.read_versions.items()
                if self._version(key) != version
            ]
            if stale:
                logger.warning(f"[TRANSACTION] Snapshot conflict on {stale}")
                raise ConflictError(
                    "Concurrent modification detected; re-fetch and retry",
                    {"documents": [f"{c}/{doc_id}" for c, doc_id in stale]}
                )

            for key, value in txn.writes.items():
                collection, doc_id = key
                self._data[collection][doc_id] = value
                self._versions[key] = self._version(key) + 1
            self._audit_logs.extend(txn.audit_entries)

        logger.debug(f"[TRANSACTION] Committed {len(txn.writes)} writes")

    # =========================================================================
    # READS
    # =========================================================================

    async def get_product(self, product_id: str) -> Optional[Product]:
        return copy.deepcopy(self._data[PRODUCTS].get(product_id))

    async def list_products(self) -> List[Product]:
        return [copy.deepcopy(p) for p in self._data[PRODUCTS].values()]

    async def get_customer(self, customer_id: str) -> Optional[Customer]:
        return copy.deepcopy(self._data[CUSTOMERS].get(customer_id))

    async def get_invoice(self, invoice_id: str) -> Optional[Invoice]:
        return copy.deepcopy(self._data[INVOICES].get(invoice_id))

    async def list_invoices(self, limit: Optional[int] = 500) -> List[Invoice]:
        invoices = sorted(
            self._data[INVOICES].values(),
            key=lambda inv: (inv.created_iso_date, inv.invoice_number),
            reverse=True
        )
        return [copy.deepcopy(inv) for inv in invoices[:limit]]

    async def list_payments(self, payment_filter: Optional[PaymentFilter] = None) -> List[PaymentRecord]:
        payment_filter = payment_filter or PaymentFilter()
        return [
            copy.deepcopy(p) for p in self._data[PAYMENTS].values()
            if payment_filter.matches(p)
        ]

    async def list_ledger_entries(self, iso_date: Optional[str] = None, limit: int = 500) -> List[LedgerEntry]:
        entries = sorted(
            (e for e in self._data[LEDGER].values() if iso_date is None or e.date == iso_date[:10]),
            key=lambda e: (e.date, e.created_at),
            reverse=True
        )
        return [copy.deepcopy(e) for e in entries[:limit]]

    async def list_audit_logs(self, entity_id: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        logs = [
            copy.deepcopy(entry) for entry in reversed(self._audit_logs)
            if entity_id is None or entry.get("entity_id") == entity_id
        ]
        return logs[:limit]
