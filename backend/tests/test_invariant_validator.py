"""
Invoice invariant validator tests.
"""
from decimal import Decimal

import pytest

from core.invariant_validator import BillInvariantValidator, InvariantViolationError
from models import Invoice, InvoiceLine


def invoice(**overrides):
    fields = dict(
        invoice_number="INV-000001",
        customer_id="cust-1",
        lines=[InvoiceLine(product_id="p-1", quantity=2, unit_price=Decimal("500.00"))],
        sub_total=Decimal("1000.00"),
        cgst=Decimal("90.00"),
        sgst=Decimal("90.00"),
        igst=Decimal("0.00"),
        grand_total=Decimal("1180.00"),
        created_iso_date="2026-03-15T10:00:00",
    )
    fields.update(overrides)
    return Invoice(**fields)


@pytest.fixture
def validator():
    return BillInvariantValidator()


class TestInvoiceInvariants:

    def test_valid_invoice(self, validator):
        assert validator.validate_invoice(invoice())

    def test_grand_total_mismatch(self, validator):
        with pytest.raises(InvariantViolationError) as exc_info:
            validator.validate_invoice(invoice(grand_total=Decimal("1180.01")))
        assert exc_info.value.violation_type == "GRAND_TOTAL_MISMATCH"

    def test_subtotal_mismatch(self, validator):
        with pytest.raises(InvariantViolationError) as exc_info:
            validator.validate_invoice(invoice(sub_total=Decimal("999.00"), grand_total=Decimal("1179.00")))
        assert exc_info.value.violation_type == "SUBTOTAL_MISMATCH"

    def test_mixed_tax_regime(self, validator):
        with pytest.raises(InvariantViolationError) as exc_info:
            validator.validate_invoice(invoice(igst=Decimal("1.00"), grand_total=Decimal("1181.00")))
        assert exc_info.value.violation_type == "MIXED_TAX_REGIME"

    def test_all_violations_reported(self, validator):
        with pytest.raises(InvariantViolationError) as exc_info:
            validator.validate_invoice(invoice(
                igst=Decimal("1.00"), sub_total=Decimal("10.00"), grand_total=Decimal("5.00")
            ))
        assert exc_info.value.violation_type == "MULTIPLE_VIOLATIONS"
        types = {v["type"] for v in exc_info.value.details["violations"]}
        assert types == {"SUBTOTAL_MISMATCH", "GRAND_TOTAL_MISMATCH", "MIXED_TAX_REGIME"}

    def test_non_positive_quantity(self, validator):
        bad = invoice(
            lines=[InvoiceLine(product_id="p-1", quantity=0, unit_price=Decimal("500.00"))],
            sub_total=Decimal("0"), cgst=Decimal("0"), sgst=Decimal("0"), grand_total=Decimal("0")
        )
        assert [v["type"] for v in validator.invoice_violations(bad)] == ["NON_POSITIVE_QUANTITY"]


class TestStockInvariants:

    def test_non_negative_levels_pass(self, validator):
        assert validator.validate_stock_levels({"a": 0, "b": 5})

    def test_negative_level_rejected(self, validator):
        with pytest.raises(InvariantViolationError) as exc_info:
            validator.validate_stock_levels({"a": 1, "b": -1})
        assert exc_info.value.details["violations"] == [
            {"type": "NEGATIVE_STOCK", "product_id": "b", "stock": -1}
        ]
