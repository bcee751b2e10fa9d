from pydantic import BaseModel, Field, model_validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from decimal import Decimal
from enum import Enum


# ============================================
# STATUS ENUMS
# ============================================
class InvoiceStatus(str, Enum):
    PENDING = "Pending"
    PAID = "Paid"
    PARTIALLY_PAID = "PartiallyPaid"
    OVERDUE = "Overdue"
    CANCELLED = "Cancelled"


class PaymentType(str, Enum):
    CUSTOMER = "customer"
    SUPPLIER = "supplier"


class PaymentStatus(str, Enum):
    COMPLETED = "Completed"
    PENDING = "Pending"
    FAILED = "Failed"
    SENT = "Sent"
    RECEIVED = "Received"
    PARTIAL = "Partial"


class StockAdjustmentType(str, Enum):
    SET = "set"
    ADD = "add"
    SUBTRACT = "subtract"


class LedgerEntryType(str, Enum):
    SALE = "sale"  # Stock out, taxed
    PURCHASE = "purchase"  # Stock in, untaxed


class LedgerEntityType(str, Enum):
    CUSTOMER = "customer"
    SELLER = "seller"
    UNKNOWN_CUSTOMER = "unknown_customer"


class LedgerPaymentStatus(str, Enum):
    PAID = "paid"
    PENDING = "pending"
    PARTIAL = "partial"


class BillingModel(BaseModel):
    class Config:
        populate_by_name = True
        use_enum_values = True
        validate_default = True
        json_encoders = {Decimal: float}


# ============================================
# CATALOG & CUSTOMER MODELS (read-only to the billing core)
# ============================================
class Product(BillingModel):
    product_id: str
    name: str
    sku: str = ""
    unit_price: Decimal = Decimal("0")
    stock: int = 0  # Must be >= 0
    unit_of_measure: str = "pcs"
    category: Optional[str] = None
    updated_at: Optional[datetime] = None


class Customer(BillingModel):
    customer_id: str
    name: str
    gstin: Optional[str] = None  # Tax registration identifier
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None

    @property
    def jurisdiction_code(self) -> Optional[str]:
        """First two characters of the GSTIN, None when no registration is on file"""
        if not self.gstin or not self.gstin.strip():
            return None
        return self.gstin.strip()[:2].upper()


# ============================================
# INVOICE MODELS
# ============================================
class InvoiceLine(BillingModel):
    product_id: str
    name: Optional[str] = None
    quantity: int
    unit_price: Decimal  # Snapshot at time of sale
    line_total: Decimal = Decimal("0")  # Calculated: quantity * unit_price
    unit_of_measure: Optional[str] = None

    @model_validator(mode="after")
    def _compute_line_total(self):
        self.line_total = self.unit_price * self.quantity
        return self


class Invoice(BillingModel):
    invoice_id: Optional[str] = None
    invoice_number: str  # Generated: PREFIX-SEQUENCE, immutable after creation
    customer_id: str
    customer_name: Optional[str] = None
    lines: List[InvoiceLine]
    sub_total: Decimal
    cgst: Decimal
    sgst: Decimal
    igst: Decimal
    grand_total: Decimal  # sub_total + cgst + sgst + igst
    status: InvoiceStatus = InvoiceStatus.PENDING
    created_iso_date: str
    updated_at: datetime = Field(default_factory=lambda: datetime.utcnow())
    version: int = 1
    state_history: List[Dict[str, Any]] = Field(default_factory=list)


# ============================================
# PAYMENT MODELS
# ============================================
class PaymentRecord(BillingModel):
    payment_id: Optional[str] = None
    type: PaymentType
    related_invoice_id: Optional[str] = None
    related_entity_name: Optional[str] = None
    amount_paid: Decimal
    original_amount: Optional[Decimal] = None  # Snapshot when recorded
    remaining_balance: Optional[Decimal] = None  # Snapshot when recorded, never read back
    status: PaymentStatus
    iso_date: str  # YYYY-MM-DD
    method: Optional[str] = None
    transaction_id: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.utcnow())


class BalanceProjection(BillingModel):
    invoice_id: Optional[str] = None
    grand_total: Decimal
    amount_paid: Decimal
    remaining_balance: Decimal
    derived_status: InvoiceStatus
    payment_count: int = 0


# ============================================
# DAILY LEDGER MODELS
# ============================================
class LedgerItem(BillingModel):
    product_id: str
    product_name: Optional[str] = None
    quantity: int  # >= 1
    unit_price: Decimal  # >= 0
    total_price: Decimal = Decimal("0")  # Calculated: quantity * unit_price
    unit_of_measure: Optional[str] = None

    @model_validator(mode="after")
    def _compute_total_price(self):
        self.total_price = self.unit_price * self.quantity
        return self


class LedgerEntry(BillingModel):
    entry_id: Optional[str] = None
    date: str  # YYYY-MM-DD
    type: LedgerEntryType
    entity_type: LedgerEntityType
    entity_id: Optional[str] = None
    entity_name: str
    items: List[LedgerItem]
    payment_method: Optional[str] = None
    payment_status: LedgerPaymentStatus = LedgerPaymentStatus.PAID
    notes: Optional[str] = None
    sub_total: Decimal
    tax_amount: Decimal  # Sales only; purchases carry 0
    grand_total: Decimal
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.utcnow())


# ============================================
# REQUEST MODELS
# ============================================
class CartLine(BaseModel):
    product_id: str
    quantity: int
    unit_price: Optional[Decimal] = None  # If None, use product's current price


class BillCreate(BaseModel):
    customer_id: str
    lines: List[CartLine]


class BillUpdate(BaseModel):
    customer_id: str
    lines: List[CartLine]
    previous_lines: Optional[List[CartLine]] = None  # If None, use stored lines
    expected_version: Optional[int] = None


class StatusUpdate(BaseModel):
    status: InvoiceStatus
    manual_override: bool = False


class PaymentCreate(BaseModel):
    type: PaymentType = PaymentType.CUSTOMER
    related_invoice_id: Optional[str] = None
    related_entity_name: Optional[str] = None
    amount_paid: Decimal
    status: PaymentStatus = PaymentStatus.COMPLETED
    iso_date: Optional[str] = None  # Defaults to today
    method: Optional[str] = None
    transaction_id: Optional[str] = None
    notes: Optional[str] = None


class StockAdjustment(BaseModel):
    adjustment_type: StockAdjustmentType
    value: int


class LedgerItemCreate(BaseModel):
    product_id: str
    quantity: int
    unit_price: Optional[Decimal] = None  # If None, use product's current price


class LedgerEntryCreate(BaseModel):
    type: LedgerEntryType
    entity_type: LedgerEntityType = LedgerEntityType.CUSTOMER
    entity_id: Optional[str] = None
    entity_name: Optional[str] = None
    items: List[LedgerItemCreate]
    date: Optional[str] = None  # Defaults to today
    payment_method: Optional[str] = None
    payment_status: LedgerPaymentStatus = LedgerPaymentStatus.PAID
    notes: Optional[str] = None
