"""
MONGODB BILLING STORE

Motor implementation of the store contract.

- transaction() opens a client session and a multi-document transaction;
  leaving the block commits, an exception aborts
- stock and invoice writes are compare-and-set on the value read inside the
  transaction: {"_id", "stock": expected} / {"_id", "version": expected}
- money is stored as Decimal128, never float
- driver errors are translated at this boundary:
  write conflicts / CAS misses / duplicate numbers -> ConflictError,
  everything else -> StoreUnavailableError

Requires a replica set (transactions are not available on a standalone mongod).
"""

from contextlib import asynccontextmanager, contextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional, Type
from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import (
    ConnectionFailure, DuplicateKeyError, OperationFailure, PyMongoError
)
import logging

from core.errors import ConflictError, StoreUnavailableError
from core.financial_precision import to_decimal128, from_decimal128
from core.store import BillStore, BillTransaction, PaymentFilter
from models import BillingModel, Customer, Invoice, LedgerEntry, PaymentRecord, Product

logger = logging.getLogger(__name__)

WRITE_CONFLICT = 112


# =============================================================================
# DOCUMENT MAPPING
# =============================================================================

def _oid(value: str) -> Any:
    """ObjectId when the id looks like one, otherwise the raw string"""
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return value


def encode(model: BillingModel, id_field: str) -> Dict[str, Any]:
    doc = model.model_dump(exclude={id_field})
    doc_id = getattr(model, id_field)
    if doc_id:
        doc["_id"] = _oid(doc_id)
    return to_decimal128(doc)


def decode(doc: Optional[Dict[str, Any]], model_cls: Type[BillingModel], id_field: str):
    if doc is None:
        return None
    data = from_decimal128(dict(doc))
    data[id_field] = str(data.pop("_id"))
    return model_cls(**data)


def translate_store_error(exc: PyMongoError) -> Exception:
    """Map a driver error onto the billing error taxonomy"""
    if isinstance(exc, ConnectionFailure):
        return StoreUnavailableError(f"Database unreachable: {exc}")
    if isinstance(exc, DuplicateKeyError):
        return ConflictError("Duplicate key on write; re-fetch and retry", {"error": str(exc)})
    if isinstance(exc, OperationFailure) and (
        exc.has_error_label("TransientTransactionError") or exc.code == WRITE_CONFLICT
    ):
        return ConflictError("Write conflict; re-fetch and retry", {"error": str(exc)})
    return StoreUnavailableError(f"Store operation failed: {exc}")


@contextmanager
def store_errors():
    try:
        yield
    except PyMongoError as e:
        logger.error(f"[STORE] {type(e).__name__}: {e}")
        raise translate_store_error(e) from e


# =============================================================================
# TRANSACTION HANDLE
# =============================================================================

class MongoBillTransaction(BillTransaction):
    """Every call is bound to the session's open transaction"""

    def __init__(self, db: AsyncIOMotorDatabase, session):
        self.db = db
        self.session = session

    async def get_product(self, product_id: str) -> Optional[Product]:
        doc = await self.db.products.find_one({"_id": _oid(product_id)}, session=self.session)
        return decode(doc, Product, "product_id")

    async def get_customer(self, customer_id: str) -> Optional[Customer]:
        doc = await self.db.customers.find_one({"_id": _oid(customer_id)}, session=self.session)
        return decode(doc, Customer, "customer_id")

    async def get_invoice(self, invoice_id: str) -> Optional[Invoice]:
        doc = await self.db.invoices.find_one({"_id": _oid(invoice_id)}, session=self.session)
        return decode(doc, Invoice, "invoice_id")

    async def next_sequence(self, prefix: str) -> int:
        """
        Uses findOneAndUpdate with $inc; the counter document joins the
        transaction, so two concurrent creations conflict instead of sharing
        a number.
        """
        result = await self.db.document_sequences.find_one_and_update(
            {"prefix": prefix},
            {
                "$inc": {"current_sequence": 1},
                "$set": {"updated_at": datetime.utcnow()},
                "$setOnInsert": {"created_at": datetime.utcnow()}
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
            session=self.session
        )
        return result["current_sequence"]

    async def invoice_number_exists(self, invoice_number: str) -> bool:
        existing = await self.db.invoices.find_one(
            {"invoice_number": invoice_number}, {"_id": 1}, session=self.session
        )
        return existing is not None

    async def insert_invoice(self, invoice: Invoice) -> str:
        result = await self.db.invoices.insert_one(encode(invoice, "invoice_id"), session=self.session)
        return str(result.inserted_id)

    async def replace_invoice(self, invoice: Invoice, expected_version: int) -> None:
        doc = encode(invoice, "invoice_id")
        doc.pop("_id", None)
        result = await self.db.invoices.replace_one(
            {"_id": _oid(invoice.invoice_id), "version": expected_version},
            doc,
            session=self.session
        )
        if result.matched_count == 0:
            raise ConflictError(
                f"Invoice {invoice.invoice_id} changed concurrently",
                {"invoice_id": invoice.invoice_id, "expected_version": expected_version}
            )

    async def set_stock(self, product_id: str, expected: int, new: int) -> None:
        result = await self.db.products.update_one(
            {"_id": _oid(product_id), "stock": expected},
            {"$set": {"stock": new, "updated_at": datetime.utcnow()}},
            session=self.session
        )
        if result.matched_count == 0:
            raise ConflictError(
                f"Stock for {product_id} changed concurrently",
                {"product_id": product_id, "expected": expected}
            )

    async def insert_payment(self, payment: PaymentRecord) -> str:
        result = await self.db.payments.insert_one(encode(payment, "payment_id"), session=self.session)
        return str(result.inserted_id)

    async def list_payments(self, payment_filter: PaymentFilter) -> List[PaymentRecord]:
        docs = await self.db.payments.find(
            payment_filter.to_query(), session=self.session
        ).to_list(length=None)
        return [decode(doc, PaymentRecord, "payment_id") for doc in docs]

    async def insert_ledger_entry(self, entry: LedgerEntry) -> str:
        result = await self.db.ledger_entries.insert_one(encode(entry, "entry_id"), session=self.session)
        return str(result.inserted_id)

    async def insert_audit_entry(self, entry: Dict[str, Any]) -> None:
        await self.db.audit_logs.insert_one(to_decimal128(dict(entry)), session=self.session)


# =============================================================================
# STORE
# =============================================================================

class MongoBillStore(BillStore):
    """
    Example:
        client = AsyncIOMotorClient(settings.mongo_url)
        store = MongoBillStore(client, client[settings.db_name])
        async with store.transaction() as txn:
            ...
    """

    def __init__(self, client: AsyncIOMotorClient, db: AsyncIOMotorDatabase):
        self.client = client
        self.db = db

    @asynccontextmanager
    async def transaction(self):
        with store_errors():
            async with await self.client.start_session() as session:
                async with session.start_transaction():
                    yield MongoBillTransaction(self.db, session)

    async def get_product(self, product_id: str) -> Optional[Product]:
        with store_errors():
            doc = await self.db.products.find_one({"_id": _oid(product_id)})
        return decode(doc, Product, "product_id")

    async def list_products(self) -> List[Product]:
        with store_errors():
            docs = await self.db.products.find().sort("name", ASCENDING).to_list(length=None)
        return [decode(doc, Product, "product_id") for doc in docs]

    async def get_customer(self, customer_id: str) -> Optional[Customer]:
        with store_errors():
            doc = await self.db.customers.find_one({"_id": _oid(customer_id)})
        return decode(doc, Customer, "customer_id")

    async def get_invoice(self, invoice_id: str) -> Optional[Invoice]:
        with store_errors():
            doc = await self.db.invoices.find_one({"_id": _oid(invoice_id)})
        return decode(doc, Invoice, "invoice_id")

    async def list_invoices(self, limit: Optional[int] = 500) -> List[Invoice]:
        with store_errors():
            docs = await self.db.invoices.find().sort(
                [("created_iso_date", DESCENDING), ("_id", DESCENDING)]
            ).to_list(length=limit)
        return [decode(doc, Invoice, "invoice_id") for doc in docs]

    async def list_payments(self, payment_filter: Optional[PaymentFilter] = None) -> List[PaymentRecord]:
        payment_filter = payment_filter or PaymentFilter()
        with store_errors():
            docs = await self.db.payments.find(payment_filter.to_query()).to_list(length=None)
        return [decode(doc, PaymentRecord, "payment_id") for doc in docs]

    async def list_ledger_entries(self, iso_date: Optional[str] = None, limit: int = 500) -> List[LedgerEntry]:
        query = {"date": iso_date[:10]} if iso_date else {}
        with store_errors():
            docs = await self.db.ledger_entries.find(query).sort(
                [("date", DESCENDING), ("created_at", DESCENDING)]
            ).to_list(length=limit)
        return [decode(doc, LedgerEntry, "entry_id") for doc in docs]

    async def list_audit_logs(self, entity_id: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        query = {"entity_id": entity_id} if entity_id else {}
        with store_errors():
            docs = await self.db.audit_logs.find(query).sort(
                "timestamp", DESCENDING
            ).to_list(length=limit)
        for doc in docs:
            doc["_id"] = str(doc["_id"])
        return [from_decimal128(doc) for doc in docs]

    async def ensure_indexes(self) -> None:
        """
        Create unique invoice number / sequence constraints and lookup indexes.
        """
        try:
            await self.db.invoices.create_index(
                [("invoice_number", ASCENDING)],
                unique=True,
                name="unique_invoice_number"
            )
            await self.db.document_sequences.create_index(
                [("prefix", ASCENDING)],
                unique=True,
                name="unique_sequence_key"
            )
            await self.db.payments.create_index("related_invoice_id")
            await self.db.payments.create_index("iso_date")
            await self.db.ledger_entries.create_index([("date", DESCENDING), ("created_at", DESCENDING)])
            await self.db.audit_logs.create_index([("entity_id", ASCENDING), ("timestamp", DESCENDING)])
            logger.info("Created billing indexes")
        except PyMongoError as e:
            logger.warning(f"Index creation result: {str(e)}")

    def close(self) -> None:
        self.client.close()
