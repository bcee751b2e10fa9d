"""
STATUS PROJECTION

Small state machines surfaced as badges:
- invoice status (transition table + derivation from payments)
- payment status badge
- stock status
"""

from typing import Optional

from core.state_machine import StateMachine, TransitionHandler
from core.financial_precision import to_decimal, ZERO
from models import InvoiceStatus, PaymentStatus

DEFAULT_LOW_STOCK_THRESHOLD = 50

IN_STOCK = "In Stock"
LOW_STOCK = "Low Stock"
OUT_OF_STOCK = "Out of Stock"

# Transition table for Invoice.status
INVOICE_TRANSITIONS = {
    InvoiceStatus.PENDING.value: [
        InvoiceStatus.PARTIALLY_PAID.value,
        InvoiceStatus.PAID.value,
        InvoiceStatus.OVERDUE.value,
        InvoiceStatus.CANCELLED.value,
    ],
    InvoiceStatus.PARTIALLY_PAID.value: [
        InvoiceStatus.PAID.value,
        InvoiceStatus.OVERDUE.value,
        InvoiceStatus.CANCELLED.value,
    ],
    InvoiceStatus.OVERDUE.value: [
        InvoiceStatus.PARTIALLY_PAID.value,
        InvoiceStatus.PAID.value,
        InvoiceStatus.CANCELLED.value,
    ],
    InvoiceStatus.PAID.value: [],
    InvoiceStatus.CANCELLED.value: [],
}


def build_invoice_status_machine(handler: Optional[TransitionHandler] = None) -> StateMachine:
    """Build the invoice status machine; handler runs on every transition"""
    machine = StateMachine("invoice", status_field="status", handler=handler)
    for from_state, targets in INVOICE_TRANSITIONS.items():
        machine.add_state(from_state)
        for to_state in targets:
            machine.register(from_state, to_state)
    return machine


INVOICE_STATUS_MACHINE = build_invoice_status_machine()


def derive_invoice_status(
    grand_total,
    amount_paid,
    has_payments: bool,
    manual_override: Optional[str] = None
) -> str:
    """
    Derive invoice status from payment evidence.

    - manual_override, when given, wins
    - Paid: at least one counted payment and nothing remains
    - Pending: nothing paid
    - PartiallyPaid: anything in between
    Overdue and Cancelled are never derived.
    """
    if manual_override:
        return InvoiceStatus(manual_override).value

    total = to_decimal(grand_total)
    paid = to_decimal(amount_paid)

    if has_payments and paid >= total:
        return InvoiceStatus.PAID.value
    if paid == ZERO:
        return InvoiceStatus.PENDING.value
    return InvoiceStatus.PARTIALLY_PAID.value


def effective_status(current: str, derived: str) -> str:
    """
    Combine stored status with derived status.

    Derivation never leaves Paid or Cancelled and only moves along registered
    transitions; otherwise the stored status stands.
    """
    if current == derived or INVOICE_STATUS_MACHINE.is_terminal(current):
        return current
    if INVOICE_STATUS_MACHINE.can_transition(current, derived):
        return derived
    return current


def stock_status(stock: int, threshold: int = DEFAULT_LOW_STOCK_THRESHOLD) -> str:
    if stock <= 0:
        return OUT_OF_STOCK
    if stock < threshold:
        return LOW_STOCK
    return IN_STOCK


def payment_badge(status: str) -> str:
    if status in (PaymentStatus.COMPLETED.value, PaymentStatus.RECEIVED.value, PaymentStatus.SENT.value):
        return "success"
    if status in (PaymentStatus.PENDING.value, PaymentStatus.PARTIAL.value):
        return "warning"
    return "danger"
