"""
BILLING CORE - ATOMIC INVOICE NUMBERING

Provides:
1. Atomic per-prefix sequence, incremented inside the bill transaction
2. Number assigned ONLY at creation, never changed by an edit
3. Unique invoice number constraint (see MongoBillStore.ensure_indexes)
4. Collision retry mechanism
"""

import logging

from core.errors import ConflictError
from core.store import BillTransaction

logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "INV"
SEQUENCE_WIDTH = 6


class SequenceCollisionError(ConflictError):
    """Raised when sequence collision occurs after max retries"""
    pass


MAX_RETRIES = 5


def format_invoice_number(prefix: str, sequence: int) -> str:
    return f"{prefix}-{sequence:0{SEQUENCE_WIDTH}d}"


async def generate_invoice_number(txn: BillTransaction, prefix: str = DEFAULT_PREFIX) -> tuple:
    """
    Generate a unique invoice number inside an open transaction.

    Returns:
        tuple: (invoice_number, sequence_number)

    Raises:
        SequenceCollisionError: If max retries exceeded
    """
    for attempt in range(MAX_RETRIES):
        sequence = await txn.next_sequence(prefix)
        invoice_number = format_invoice_number(prefix, sequence)

        # Verify uniqueness; only triggers if numbers were imported or the
        # counter was reset
        if await txn.invoice_number_exists(invoice_number):
            logger.warning(f"Invoice number collision: {invoice_number}, retry {attempt + 1}")
            continue

        logger.info(f"Generated invoice number: {invoice_number}")
        return invoice_number, sequence

    raise SequenceCollisionError(
        f"Failed to generate unique invoice number after {MAX_RETRIES} attempts"
    )
