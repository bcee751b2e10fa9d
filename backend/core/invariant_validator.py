"""
BILLING CORE - INVOICE INVARIANT VALIDATOR

Enforces the constraints every committed invoice and stock write must hold:
1. sub_total = SUM(line_total), rounded once
2. grand_total = sub_total + cgst + sgst + igst
3. never both {cgst, sgst} and {igst} non-zero
4. no negative amounts, no non-positive quantities
5. stock >= 0 after every write

Runs inside the transaction, before write-back. A violation is a programming
error: the transaction is aborted and nothing persists.
"""

from decimal import Decimal
from typing import Any, Dict, List, Mapping
import logging

from core.financial_precision import to_decimal, round_financial, to_float, ZERO
from models import Invoice

logger = logging.getLogger(__name__)


class InvariantViolationError(Exception):
    """Raised when a billing invariant is violated"""
    def __init__(self, violation_type: str, message: str, details: dict = None):
        self.violation_type = violation_type
        self.message = message
        self.details = details or {}
        super().__init__(message)


class BillInvariantValidator:
    """
    Centralized invoice / stock invariant enforcement.

    Used before EVERY invoice or stock write-back.
    """

    def invoice_violations(self, invoice: Invoice) -> List[Dict[str, Any]]:
        violations = []

        line_sum = ZERO
        for line in invoice.lines:
            if line.quantity < 1:
                violations.append({
                    "type": "NON_POSITIVE_QUANTITY",
                    "message": f"Line for {line.product_id} has quantity {line.quantity}",
                    "product_id": line.product_id
                })
            if to_decimal(line.unit_price) < ZERO:
                violations.append({
                    "type": "NEGATIVE_UNIT_PRICE",
                    "message": f"Line for {line.product_id} has a negative unit price",
                    "product_id": line.product_id
                })
            line_sum += to_decimal(line.line_total)

        sub_total = to_decimal(invoice.sub_total)
        cgst = to_decimal(invoice.cgst)
        sgst = to_decimal(invoice.sgst)
        igst = to_decimal(invoice.igst)
        grand_total = to_decimal(invoice.grand_total)

        # INVARIANT 1: sub_total matches its lines
        if round_financial(line_sum) != round_financial(sub_total):
            violations.append({
                "type": "SUBTOTAL_MISMATCH",
                "message": f"sub_total ({to_float(sub_total)}) != sum of lines ({to_float(line_sum)})",
                "sub_total": to_float(sub_total),
                "line_sum": to_float(line_sum)
            })

        # INVARIANT 2: grand_total is the sum of its parts
        expected_total = sub_total + cgst + sgst + igst
        if round_financial(expected_total) != round_financial(grand_total):
            violations.append({
                "type": "GRAND_TOTAL_MISMATCH",
                "message": f"grand_total ({to_float(grand_total)}) != sub_total + taxes ({to_float(expected_total)})",
                "grand_total": to_float(grand_total),
                "expected": to_float(expected_total)
            })

        # INVARIANT 3: one tax regime only
        if (cgst != ZERO or sgst != ZERO) and igst != ZERO:
            violations.append({
                "type": "MIXED_TAX_REGIME",
                "message": "Invoice carries both CGST/SGST and IGST",
                "cgst": to_float(cgst),
                "sgst": to_float(sgst),
                "igst": to_float(igst)
            })

        # INVARIANT 4: no negative amounts
        for field, value in (("sub_total", sub_total), ("cgst", cgst), ("sgst", sgst),
                             ("igst", igst), ("grand_total", grand_total)):
            if value < ZERO:
                violations.append({
                    "type": "NEGATIVE_AMOUNT",
                    "message": f"{field} ({to_float(value)}) is negative",
                    field: to_float(value)
                })

        return violations

    def validate_invoice(self, invoice: Invoice) -> bool:
        """
        Raises InvariantViolationError with ALL violations found.
        Returns True if all constraints pass.
        """
        violations = self.invoice_violations(invoice)
        if violations:
            logger.error(
                f"[INVARIANT] Invoice {invoice.invoice_number} rejected: "
                f"{[v['type'] for v in violations]}"
            )
            raise InvariantViolationError(
                violation_type="MULTIPLE_VIOLATIONS" if len(violations) > 1 else violations[0]["type"],
                message="Invoice invariant violation(s) detected",
                details={
                    "invoice_number": invoice.invoice_number,
                    "violations": violations
                }
            )
        return True

    def validate_stock_levels(self, new_levels: Mapping[str, int]) -> bool:
        """INVARIANT 5: stock >= 0 for every product about to be written"""
        negative = {pid: level for pid, level in new_levels.items() if level < 0}
        if negative:
            logger.error(f"[INVARIANT] Negative stock about to be written: {negative}")
            raise InvariantViolationError(
                violation_type="NEGATIVE_STOCK",
                message="Stock would become negative",
                details={"violations": [
                    {"type": "NEGATIVE_STOCK", "product_id": pid, "stock": level}
                    for pid, level in negative.items()
                ]}
            )
        return True
