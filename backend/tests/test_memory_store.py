"""
In-memory store tests: buffered writes, optimistic conflict detection.
"""
import asyncio

import pytest

from conftest import run, stock_of, KETTLE, MIXER, INTRA_CUSTOMER
from core.errors import ConflictError, InsufficientStockError
from core.store import PaymentFilter


class TestTransactions:

    def test_writes_are_invisible_until_commit(self, store):
        async def scenario():
            async with store.transaction() as txn:
                await txn.set_stock(KETTLE, expected=50, new=40)
                assert (await txn.get_product(KETTLE)).stock == 40
                assert (await store.get_product(KETTLE)).stock == 50
            return (await store.get_product(KETTLE)).stock

        assert run(scenario()) == 40

    def test_exception_discards_writes(self, store):
        async def scenario():
            async with store.transaction() as txn:
                await txn.set_stock(KETTLE, expected=50, new=0)
                raise RuntimeError("abort")

        with pytest.raises(RuntimeError):
            run(scenario())
        assert stock_of(store, KETTLE) == 50

    def test_compare_and_set_miss(self, store):
        async def scenario():
            async with store.transaction() as txn:
                await txn.set_stock(KETTLE, expected=49, new=40)

        with pytest.raises(ConflictError):
            run(scenario())

    def test_concurrent_write_to_read_document_conflicts(self, store):
        async def scenario():
            async with store.transaction() as outer:
                product = await outer.get_product(KETTLE)
                async with store.transaction() as inner:
                    await inner.set_stock(KETTLE, expected=product.stock, new=product.stock - 1)
                await outer.set_stock(KETTLE, expected=product.stock, new=product.stock - 2)

        with pytest.raises(ConflictError):
            run(scenario())
        # the inner transaction won
        assert stock_of(store, KETTLE) == 49

    def test_disjoint_transactions_both_commit(self, store):
        async def scenario():
            async with store.transaction() as first:
                await first.set_stock(KETTLE, expected=50, new=45)
                async with store.transaction() as second:
                    await second.set_stock(MIXER, expected=10, new=9)

        run(scenario())
        assert stock_of(store, KETTLE) == 45
        assert stock_of(store, MIXER) == 9

    def test_sequence_is_per_prefix(self, store):
        async def scenario():
            async with store.transaction() as txn:
                return [
                    await txn.next_sequence("INV"),
                    await txn.next_sequence("INV"),
                    await txn.next_sequence("CN"),
                ]

        assert run(scenario()) == [1, 2, 1]

    def test_reads_return_copies(self, store):
        product = run(store.get_product(KETTLE))
        product.stock = 0
        assert stock_of(store, KETTLE) == 50


class TestConcurrentBills:

    def test_racing_bills_never_oversell(self, coordinator, store):
        async def sell(quantity):
            try:
                await coordinator.commit_bill(
                    INTRA_CUSTOMER, [], [{"product_id": MIXER, "quantity": quantity}]
                )
                return "ok"
            except (ConflictError, InsufficientStockError) as e:
                return type(e).__name__

        async def scenario():
            return await asyncio.gather(sell(6), sell(6), sell(6))

        outcomes = run(scenario())
        sold = 6 * outcomes.count("ok")
        assert outcomes.count("ok") >= 1
        assert stock_of(store, MIXER) == 10 - sold
        assert stock_of(store, MIXER) >= 0
        assert len(run(store.list_invoices())) == outcomes.count("ok")


class TestReads:

    def test_list_payments_filter(self, coordinator, store):
        from decimal import Decimal
        from models import PaymentCreate

        run(coordinator.record_payment(PaymentCreate(amount_paid=Decimal("10"), iso_date="2026-03-01")))
        run(coordinator.record_payment(PaymentCreate(amount_paid=Decimal("20"), iso_date="2026-03-02")))
        run(coordinator.record_payment(PaymentCreate(
            type="supplier", amount_paid=Decimal("30"), status="Sent", iso_date="2026-03-02"
        )))

        assert len(run(store.list_payments())) == 3
        assert len(run(store.list_payments(PaymentFilter(iso_date="2026-03-02")))) == 2
        assert len(run(store.list_payments(PaymentFilter(type="customer", iso_date="2026-03-02")))) == 1

    def test_list_invoices_newest_first_with_limit(self, coordinator, store):
        for _ in range(3):
            run(coordinator.commit_bill(INTRA_CUSTOMER, [], [{"product_id": KETTLE, "quantity": 1}]))

        invoices = run(store.list_invoices(limit=2))
        assert [inv.invoice_number for inv in invoices] == ["INV-000003", "INV-000002"]
