"""
Jurisdiction-aware GST split.

Intra-jurisdiction sales (customer registered in the home jurisdiction) carry
CGST + SGST at half the rate each; inter-jurisdiction sales carry the full
rate as IGST. Customers without a registration on file are not taxed.
"""

from decimal import Decimal
from typing import Optional, Union

from core.financial_precision import (
    to_decimal, round_financial, safe_multiply,
    validate_non_negative, FinancialPrecisionError, ZERO
)

JURISDICTION_CODE_LENGTH = 2
NIL = Decimal('0.00')


class TaxBreakdown:
    """Rounded CGST/SGST/IGST components for one invoice"""

    __slots__ = ("cgst", "sgst", "igst")

    def __init__(self, cgst: Decimal = NIL, sgst: Decimal = NIL, igst: Decimal = NIL):
        self.cgst = cgst
        self.sgst = sgst
        self.igst = igst

    @property
    def total(self) -> Decimal:
        return self.cgst + self.sgst + self.igst

    def to_dict(self) -> dict:
        return {"cgst": self.cgst, "sgst": self.sgst, "igst": self.igst}

    def __eq__(self, other):
        if not isinstance(other, TaxBreakdown):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __repr__(self):
        return f"TaxBreakdown(cgst={self.cgst}, sgst={self.sgst}, igst={self.igst})"


def jurisdiction_prefix(code: Optional[str]) -> Optional[str]:
    """Normalise a jurisdiction code or registration id to its two-character prefix"""
    if code is None:
        return None
    code = code.strip().upper()
    if not code:
        return None
    return code[:JURISDICTION_CODE_LENGTH]


def compute_tax(
    sub_total: Union[Decimal, int, float, str],
    customer_jurisdiction: Optional[str],
    home_jurisdiction: str,
    rate: Union[Decimal, int, float, str]
) -> TaxBreakdown:
    """
    Split tax on a subtotal.

    LOCKED FORMULAS:
    - no customer jurisdiction: cgst = sgst = igst = 0
    - same jurisdiction: cgst = sgst = sub_total * rate / 2, igst = 0
    - different jurisdiction: igst = sub_total * rate, cgst = sgst = 0

    Rounding (half-even, 2 places) is applied once, on the final components.
    """
    validate_non_negative(sub_total, 'sub_total')
    rate_value = to_decimal(rate)
    if rate_value < ZERO or rate_value > Decimal('1'):
        raise FinancialPrecisionError(f"Tax rate must be between 0 and 1: {rate}")

    customer_code = jurisdiction_prefix(customer_jurisdiction)
    if customer_code is None:
        return TaxBreakdown()

    home_code = jurisdiction_prefix(home_jurisdiction)
    tax = safe_multiply(sub_total, rate_value)

    if customer_code == home_code:
        half = tax / 2
        return TaxBreakdown(
            cgst=round_financial(half),
            sgst=round_financial(half),
            igst=NIL
        )

    return TaxBreakdown(igst=round_financial(tax))
