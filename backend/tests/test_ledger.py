"""
Daily ledger tests: walk-in sales and purchases move stock in the same
transaction as the ledger entry.
"""
from decimal import Decimal

import pytest

from conftest import run, stock_of, MIXER, KETTLE, TOASTER
from core.errors import InsufficientStockError, ValidationError
from models import LedgerEntryCreate


def entry(type, *items, **fields):
    fields.setdefault("entity_name", "Counter sale" if type == "sale" else "Acme Wholesale")
    fields.setdefault("entity_type", "customer" if type == "sale" else "seller")
    return LedgerEntryCreate(
        type=type,
        items=[{"product_id": pid, "quantity": qty} for pid, qty in items],
        **fields
    )


class TestLedgerSale:

    def test_sale_takes_stock_and_is_taxed(self, coordinator, store):
        record = run(coordinator.record_ledger_entry(entry("sale", (MIXER, 2)), user_id="u-1"))

        assert record.entry_id
        assert record.type == "sale"
        assert record.items[0].product_name == "Mixer Grinder"
        assert record.items[0].total_price == Decimal("1000.00")
        assert record.sub_total == Decimal("1000.00")
        assert record.tax_amount == Decimal("180.00")
        assert record.grand_total == Decimal("1180.00")
        assert record.created_by == "u-1"
        assert stock_of(store, MIXER) == 8

    def test_sale_shortfall_writes_nothing(self, coordinator, store):
        with pytest.raises(InsufficientStockError) as exc_info:
            run(coordinator.record_ledger_entry(entry("sale", (KETTLE, 5), (MIXER, 11))))

        assert [s.product_id for s in exc_info.value.shortfalls] == [MIXER]
        assert stock_of(store, KETTLE) == 50
        assert stock_of(store, MIXER) == 10
        assert run(store.list_ledger_entries()) == []
        assert run(store.list_audit_logs()) == []

    def test_repeated_product_is_summed_for_stock(self, coordinator, store):
        with pytest.raises(InsufficientStockError):
            run(coordinator.record_ledger_entry(entry("sale", (MIXER, 6), (MIXER, 5))))
        assert stock_of(store, MIXER) == 10

        run(coordinator.record_ledger_entry(entry("sale", (MIXER, 6), (MIXER, 4))))
        assert stock_of(store, MIXER) == 0

    def test_unknown_customer_gets_placeholder_name(self, coordinator):
        record = run(coordinator.record_ledger_entry(
            entry("sale", (KETTLE, 1), entity_type="unknown_customer", entity_name=None)
        ))
        assert record.entity_name == "Unknown Customer"
        assert record.entity_type == "unknown_customer"


class TestLedgerPurchase:

    def test_purchase_restocks_without_tax(self, coordinator, store):
        record = run(coordinator.record_ledger_entry(entry(
            "purchase", (TOASTER, 5), (KETTLE, 10), payment_status="pending"
        )))

        assert record.tax_amount == Decimal("0")
        assert record.sub_total == Decimal("2250.00")
        assert record.grand_total == Decimal("2250.00")
        assert record.payment_status == "pending"
        assert stock_of(store, TOASTER) == 25
        assert stock_of(store, KETTLE) == 60

    def test_purchase_price_overrides_catalog(self, coordinator):
        record = run(coordinator.record_ledger_entry(LedgerEntryCreate(
            type="purchase",
            entity_type="seller",
            entity_name="Acme Wholesale",
            items=[{"product_id": MIXER, "quantity": 2, "unit_price": "320.00"}]
        )))
        assert record.items[0].unit_price == Decimal("320.00")
        assert record.grand_total == Decimal("640.00")

    def test_purchase_is_audited(self, coordinator, store):
        record = run(coordinator.record_ledger_entry(entry("purchase", (MIXER, 1)), user_id="u-2"))

        logs = run(store.list_audit_logs(entity_id=record.entry_id))
        assert len(logs) == 1
        assert logs[0]["entity_type"] == "LEDGER_ENTRY"
        assert logs[0]["action_type"] == "CREATE"
        assert logs[0]["user_id"] == "u-2"


class TestLedgerValidation:

    def test_no_items(self, coordinator):
        with pytest.raises(ValidationError):
            run(coordinator.record_ledger_entry(entry("sale")))

    @pytest.mark.parametrize("quantity", [0, -1])
    def test_quantity_below_one(self, coordinator, store, quantity):
        with pytest.raises(ValidationError):
            run(coordinator.record_ledger_entry(entry("purchase", (MIXER, quantity))))
        assert stock_of(store, MIXER) == 10

    def test_negative_unit_price(self, coordinator):
        with pytest.raises(ValidationError):
            run(coordinator.record_ledger_entry(LedgerEntryCreate(
                type="sale", entity_name="Counter sale",
                items=[{"product_id": MIXER, "quantity": 1, "unit_price": "-1"}]
            )))

    def test_unknown_product(self, coordinator, store):
        with pytest.raises(ValidationError):
            run(coordinator.record_ledger_entry(entry("purchase", (KETTLE, 1), ("missing", 1))))
        assert stock_of(store, KETTLE) == 50

    def test_named_entity_required(self, coordinator):
        with pytest.raises(ValidationError):
            run(coordinator.record_ledger_entry(entry("purchase", (MIXER, 1), entity_name="  ")))

    def test_bad_date(self, coordinator):
        with pytest.raises(ValidationError):
            run(coordinator.record_ledger_entry(entry("sale", (MIXER, 1), date="15/03/2026")))


class TestLedgerReads:

    def test_list_by_date_newest_first(self, coordinator, store):
        run(coordinator.record_ledger_entry(entry("sale", (KETTLE, 1), date="2026-03-14")))
        run(coordinator.record_ledger_entry(entry("purchase", (KETTLE, 2), date="2026-03-15")))
        run(coordinator.record_ledger_entry(entry("sale", (KETTLE, 3), date="2026-03-15")))

        day = run(store.list_ledger_entries(iso_date="2026-03-15"))
        assert [e.items[0].quantity for e in day] == [3, 2]
        assert len(run(store.list_ledger_entries())) == 3
        assert stock_of(store, KETTLE) == 48
