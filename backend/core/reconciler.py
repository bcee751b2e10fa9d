"""
PAYMENT / BALANCE RECONCILER

Read-only projections over invoices and payment records.

Payment records are append-only evidence: nothing here mutates an invoice or
a payment. Every aggregate is recomputed from the records handed in, on each
read, so dashboard figures cannot drift from the stored payments.

Usage:
    from core.reconciler import reconcile, dashboard_metrics

    balance = reconcile(invoice, payments)
    metrics = dashboard_metrics(invoices, payments, products, today=date.today())
"""

from collections import defaultdict
from datetime import date
from decimal import Decimal
from typing import Dict, Any, Iterable, List, Optional
import logging

from core.financial_precision import to_decimal, round_financial, ZERO
from core.status_projection import (
    derive_invoice_status, effective_status, stock_status,
    DEFAULT_LOW_STOCK_THRESHOLD, LOW_STOCK, OUT_OF_STOCK
)
from models import (
    BalanceProjection, Invoice, InvoiceStatus, PaymentRecord,
    PaymentStatus, PaymentType, Product
)

logger = logging.getLogger(__name__)

# Statuses whose amount counts as money actually moved
COUNTED_STATUSES = {
    PaymentType.CUSTOMER.value: {
        PaymentStatus.COMPLETED.value,
        PaymentStatus.RECEIVED.value,
        PaymentStatus.PARTIAL.value,
    },
    PaymentType.SUPPLIER.value: {
        PaymentStatus.COMPLETED.value,
        PaymentStatus.SENT.value,
        PaymentStatus.PARTIAL.value,
    },
}

OPEN_INVOICE_STATUSES = {
    InvoiceStatus.PENDING.value,
    InvoiceStatus.PARTIALLY_PAID.value,
    InvoiceStatus.OVERDUE.value,
}


def is_counted(payment: PaymentRecord, payment_type: Optional[str] = None) -> bool:
    payment_type = payment_type or payment.type
    if payment.type != payment_type:
        return False
    return payment.status in COUNTED_STATUSES[payment_type]


def _on_day(iso_value: Optional[str], day: date) -> bool:
    return bool(iso_value) and iso_value[:10] == day.isoformat()


# =============================================================================
# PER-INVOICE BALANCE
# =============================================================================

def reconcile(
    invoice: Invoice,
    payments: Iterable[PaymentRecord],
    payment_type: str = PaymentType.CUSTOMER.value
) -> BalanceProjection:
    """
    Derive amount paid, remaining balance and status for one invoice.

    LOCKED FORMULAS:
    - amount_paid = SUM(amount_paid) over counted payments linked to the invoice
    - remaining_balance = max(0, grand_total - amount_paid)

    Payments linked to a different invoice are ignored; unlinked payments
    handed in explicitly are counted.
    """
    counted: List[PaymentRecord] = []
    for payment in payments:
        if payment.related_invoice_id and invoice.invoice_id \
                and payment.related_invoice_id != invoice.invoice_id:
            continue
        if is_counted(payment, payment_type):
            counted.append(payment)

    amount_paid = sum((to_decimal(p.amount_paid) for p in counted), ZERO)
    grand_total = to_decimal(invoice.grand_total)
    remaining = grand_total - amount_paid
    if remaining < ZERO:
        remaining = ZERO

    derived = derive_invoice_status(grand_total, amount_paid, has_payments=bool(counted))

    logger.debug(
        f"[RECONCILE] invoice={invoice.invoice_id} paid={amount_paid} "
        f"remaining={remaining} derived={derived}"
    )

    return BalanceProjection(
        invoice_id=invoice.invoice_id,
        grand_total=round_financial(grand_total),
        amount_paid=round_financial(amount_paid),
        remaining_balance=round_financial(remaining),
        derived_status=derived,
        payment_count=len(counted)
    )


def projected_status(invoice: Invoice, balance: BalanceProjection) -> str:
    """Status to show for an invoice: stored status moved along by payment evidence"""
    return effective_status(invoice.status, balance.derived_status)


def group_payments_by_invoice(payments: Iterable[PaymentRecord]) -> Dict[str, List[PaymentRecord]]:
    grouped: Dict[str, List[PaymentRecord]] = defaultdict(list)
    for payment in payments:
        if payment.related_invoice_id:
            grouped[payment.related_invoice_id].append(payment)
    return grouped


# =============================================================================
# AGGREGATES
# =============================================================================

def _empty_totals() -> Dict[str, Any]:
    return {
        "received": ZERO,
        "pending": ZERO,
        "sent": ZERO,
        "customer_payment_count": 0,
        "supplier_payment_count": 0,
    }


def _fold_payment(totals: Dict[str, Any], payment: PaymentRecord) -> Dict[str, Any]:
    amount = to_decimal(payment.amount_paid)
    result = dict(totals)
    if payment.type == PaymentType.CUSTOMER.value:
        result["customer_payment_count"] += 1
        if is_counted(payment):
            result["received"] += amount
        elif payment.status == PaymentStatus.PENDING.value:
            result["pending"] += amount
    else:
        result["supplier_payment_count"] += 1
        if is_counted(payment):
            result["sent"] += amount
    return result


def _rounded(totals: Dict[str, Any]) -> Dict[str, Any]:
    return {
        k: round_financial(v) if isinstance(v, Decimal) else v
        for k, v in totals.items()
    }


def payment_metrics(payments: Iterable[PaymentRecord], today: date) -> Dict[str, Any]:
    """
    Received / pending / sent totals, today and all-time.
    A pure fold over the payment records.
    """
    all_time = _empty_totals()
    todays = _empty_totals()
    for payment in payments:
        all_time = _fold_payment(all_time, payment)
        if _on_day(payment.iso_date, today):
            todays = _fold_payment(todays, payment)
    return {"today": _rounded(todays), "all_time": _rounded(all_time)}


def dashboard_metrics(
    invoices: Iterable[Invoice],
    payments: Iterable[PaymentRecord],
    products: Iterable[Product],
    today: date,
    low_stock_threshold: int = DEFAULT_LOW_STOCK_THRESHOLD
) -> Dict[str, Any]:
    """
    Build the dashboard projection:
    - payment totals (today / all-time)
    - today's bills (count, value)
    - open invoices and outstanding receivables
    - low / out-of-stock counts
    """
    payments = list(payments)
    by_invoice = group_payments_by_invoice(payments)

    bills_today = 0
    value_today = ZERO
    total_billed = ZERO
    outstanding = ZERO
    open_count = 0

    for invoice in invoices:
        if invoice.status == InvoiceStatus.CANCELLED.value:
            continue
        grand_total = to_decimal(invoice.grand_total)
        total_billed += grand_total
        if _on_day(invoice.created_iso_date, today):
            bills_today += 1
            value_today += grand_total

        balance = reconcile(invoice, by_invoice.get(invoice.invoice_id, []))
        if projected_status(invoice, balance) in OPEN_INVOICE_STATUSES:
            open_count += 1
            outstanding += balance.remaining_balance

    low_stock = 0
    out_of_stock = 0
    for product in products:
        label = stock_status(product.stock, low_stock_threshold)
        if label == LOW_STOCK:
            low_stock += 1
        elif label == OUT_OF_STOCK:
            out_of_stock += 1

    return {
        "as_of": today.isoformat(),
        "payments": payment_metrics(payments, today),
        "bills": {
            "today_count": bills_today,
            "today_value": round_financial(value_today),
            "total_billed": round_financial(total_billed),
            "open_count": open_count,
            "outstanding_receivables": round_financial(outstanding),
        },
        "stock": {
            "low_stock_count": low_stock,
            "out_of_stock_count": out_of_stock,
            "threshold": low_stock_threshold,
        },
    }
