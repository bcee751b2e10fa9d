"""
Billing Core: Bill Transaction Engine Modules
"""
from .financial_precision import (
    to_decimal,
    round_financial,
    to_float,
    validate_non_negative,
    validate_positive,
    safe_multiply,
    FinancialPrecisionError,
    NegativeValueError
)

from .errors import (
    BillingError,
    ValidationError,
    MalformedLineError,
    BillNotFoundError,
    ProductNotFoundError,
    StockShortfall,
    InsufficientStockError,
    ConflictError,
    StoreUnavailableError
)

from .tax_calculator import (
    TaxBreakdown,
    compute_tax
)

from .stock_delta import (
    normalize_lines,
    quantities_by_product,
    resolve_deltas
)

from .invariant_validator import (
    BillInvariantValidator,
    InvariantViolationError
)

from .atomic_numbering import (
    generate_invoice_number,
    SequenceCollisionError
)

from .state_machine import (
    StateMachine,
    StateMachineError,
    InvalidTransitionError
)

__all__ = [
    # Financial Precision
    'to_decimal',
    'round_financial',
    'to_float',
    'validate_non_negative',
    'validate_positive',
    'safe_multiply',
    'FinancialPrecisionError',
    'NegativeValueError',
    # Errors
    'BillingError',
    'ValidationError',
    'MalformedLineError',
    'BillNotFoundError',
    'ProductNotFoundError',
    'StockShortfall',
    'InsufficientStockError',
    'ConflictError',
    'StoreUnavailableError',
    # Tax / Stock
    'TaxBreakdown',
    'compute_tax',
    'normalize_lines',
    'quantities_by_product',
    'resolve_deltas',
    # Invariant Validator
    'BillInvariantValidator',
    'InvariantViolationError',
    # Atomic Numbering
    'generate_invoice_number',
    'SequenceCollisionError',
    # State Machine
    'StateMachine',
    'StateMachineError',
    'InvalidTransitionError',
]
