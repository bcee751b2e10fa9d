"""
Shared fixtures for the billing core tests.

Async code is driven with asyncio.run; the in-memory store stands in for
MongoDB so the suite runs without a replica set.
"""
import asyncio
import os
from decimal import Decimal

os.environ.setdefault("STORE_BACKEND", "memory")

import pytest

from audit_service import AuditService
from core.bill_transaction import BillTransactionCoordinator, TaxInputs
from core.memory_store import InMemoryBillStore
from models import Customer, Product

HOME_JURISDICTION = "29"

# Registered in the home jurisdiction -> CGST + SGST
INTRA_CUSTOMER = "cust-blr"
# Registered elsewhere -> IGST
INTER_CUSTOMER = "cust-mum"
# No GSTIN on file -> untaxed
WALKIN_CUSTOMER = "cust-walkin"

MIXER = "prod-mixer"      # 500.00, stock 10
KETTLE = "prod-kettle"    # 100.00, stock 50
TOASTER = "prod-toaster"  # 250.00, stock 20


def run(coro):
    return asyncio.run(coro)


def seed(store: InMemoryBillStore) -> InMemoryBillStore:
    store.add_customer(Customer(customer_id=INTRA_CUSTOMER, name="Bengaluru Traders", gstin="29ABCDE1234F1Z5"))
    store.add_customer(Customer(customer_id=INTER_CUSTOMER, name="Mumbai Retail", gstin="27PQRSX6789K1Z2"))
    store.add_customer(Customer(customer_id=WALKIN_CUSTOMER, name="Walk-in Customer"))
    store.add_product(Product(product_id=MIXER, name="Mixer Grinder", sku="MX-01", unit_price=Decimal("500.00"), stock=10))
    store.add_product(Product(product_id=KETTLE, name="Electric Kettle", sku="KT-01", unit_price=Decimal("100.00"), stock=50))
    store.add_product(Product(product_id=TOASTER, name="Pop-up Toaster", sku="TS-01", unit_price=Decimal("250.00"), stock=20))
    return store


@pytest.fixture
def store():
    return seed(InMemoryBillStore())


@pytest.fixture
def audit_service(store):
    return AuditService(store)


@pytest.fixture
def coordinator(store, audit_service):
    return BillTransactionCoordinator(
        store,
        audit_service,
        TaxInputs(home_jurisdiction=HOME_JURISDICTION, rate="0.18")
    )


def stock_of(store: InMemoryBillStore, product_id: str) -> int:
    return run(store.get_product(product_id)).stock
