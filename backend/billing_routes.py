# Billing API Endpoints
#
# To integrate: Add to main server.py with:
# from billing_routes import create_billing_routes
# billing_router = create_billing_routes(store, coordinator, audit_service, permission_checker)
# app.include_router(billing_router)

from fastapi import APIRouter, HTTPException, status, Depends, Query
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from typing import Optional, Dict, Any
import logging

from models import (
    BillCreate, BillUpdate, StatusUpdate, PaymentCreate, StockAdjustment,
    LedgerEntryCreate, PaymentType, BillingModel
)
from audit_service import AuditService
from permissions import PermissionChecker
from auth import get_current_user
from core.bill_transaction import BillTransactionCoordinator
from core.errors import (
    BillingError, BillNotFoundError, ProductNotFoundError,
    InsufficientStockError, ConflictError, StoreUnavailableError
)
from core.financial_precision import to_float, FinancialPrecisionError, NegativeValueError
from core.invariant_validator import InvariantViolationError
from core.reconciler import (
    reconcile, projected_status, group_payments_by_invoice, dashboard_metrics
)
from core.state_machine import StateMachineError
from core.status_projection import stock_status, payment_badge, DEFAULT_LOW_STOCK_THRESHOLD
from core.store import BillStore, PaymentFilter

logger = logging.getLogger(__name__)


def serialize_doc(doc: Any) -> Any:
    """Serialize a model / dict for JSON response (handles Decimal, datetime)"""
    if doc is None:
        return None
    if isinstance(doc, BillingModel):
        doc = doc.model_dump()
    if isinstance(doc, Decimal):
        return to_float(doc)
    if isinstance(doc, datetime):
        return doc.isoformat()
    if isinstance(doc, dict):
        return {key: serialize_doc(value) for key, value in doc.items()}
    if isinstance(doc, list):
        return [serialize_doc(item) for item in doc]
    return doc


def to_http_exception(exc: Exception) -> HTTPException:
    """Map a typed billing failure onto an HTTP status"""
    if isinstance(exc, (BillNotFoundError, ProductNotFoundError)):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, (InsufficientStockError, ConflictError)):
        code = status.HTTP_409_CONFLICT
    elif isinstance(exc, StoreUnavailableError):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    elif isinstance(exc, InvariantViolationError):
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    else:
        code = status.HTTP_400_BAD_REQUEST

    detail: Dict[str, Any] = {"error": type(exc).__name__, "message": str(exc)}
    details = getattr(exc, "details", None)
    if details:
        detail.update(serialize_doc(details))
    return HTTPException(status_code=code, detail=detail)


@contextmanager
def billing_errors(operation: str):
    try:
        yield
    except (BillingError, StateMachineError, InvariantViolationError,
            FinancialPrecisionError, NegativeValueError) as e:
        if isinstance(e, (InvariantViolationError, StoreUnavailableError)):
            logger.error(f"[API] {operation} failed: {e}")
        else:
            logger.info(f"[API] {operation} rejected: {type(e).__name__}: {e}")
        raise to_http_exception(e) from e


def create_billing_routes(
    store: BillStore,
    coordinator: BillTransactionCoordinator,
    audit_service: AuditService,
    permission_checker: PermissionChecker,
    low_stock_threshold: int = DEFAULT_LOW_STOCK_THRESHOLD
) -> APIRouter:
    """Create billing API router with all transaction-engine endpoints"""

    router = APIRouter(prefix="/api/billing", tags=["Billing - Transaction Engine"])

    async def _billing_user(current_user: dict) -> dict:
        user = await permission_checker.get_authenticated_user(current_user)
        await permission_checker.check_billing_access(user)
        return user

    def _bill_view(invoice, payments) -> Dict[str, Any]:
        balance = reconcile(invoice, payments)
        view = serialize_doc(invoice)
        view["amount_paid"] = to_float(balance.amount_paid)
        view["remaining_balance"] = to_float(balance.remaining_balance)
        view["effective_status"] = projected_status(invoice, balance)
        return view

    @router.get("/health")
    async def health():
        return {"status": "ok", "service": "billing"}

    # ============================================
    # BILL ENDPOINTS
    # ============================================

    @router.post("/bills", status_code=status.HTTP_201_CREATED)
    async def create_bill(
        bill_data: BillCreate,
        current_user: dict = Depends(get_current_user)
    ):
        """
        Commit a new bill: invoice + stock decrement + audit entry, atomically.
        """
        user = await _billing_user(current_user)
        with billing_errors("create bill"):
            invoice = await coordinator.commit_bill(
                bill_data.customer_id,
                None,
                bill_data.lines,
                user_id=user["user_id"]
            )
        return serialize_doc(invoice)

    @router.put("/bills/{invoice_id}")
    async def edit_bill(
        invoice_id: str,
        bill_data: BillUpdate,
        current_user: dict = Depends(get_current_user)
    ):
        """
        Edit a bill. Stock moves by the difference between the saved lines and
        the new cart; the invoice number and status are preserved.
        """
        user = await _billing_user(current_user)
        with billing_errors("edit bill"):
            invoice = await coordinator.commit_bill(
                bill_data.customer_id,
                bill_data.previous_lines,
                bill_data.lines,
                invoice_id=invoice_id,
                expected_version=bill_data.expected_version,
                user_id=user["user_id"]
            )
        return serialize_doc(invoice)

    @router.get("/bills")
    async def list_bills(
        status_filter: Optional[str] = Query(None, alias="status"),
        limit: int = 500,
        current_user: dict = Depends(get_current_user)
    ):
        """List bills with balance and effective (payment-derived) status"""
        await _billing_user(current_user)
        with billing_errors("list bills"):
            invoices = await store.list_invoices(limit=limit)
            payments = await store.list_payments(PaymentFilter(type=PaymentType.CUSTOMER.value))

        by_invoice = group_payments_by_invoice(payments)
        bills = [_bill_view(inv, by_invoice.get(inv.invoice_id, [])) for inv in invoices]
        if status_filter:
            bills = [b for b in bills if b["effective_status"] == status_filter]
        return bills

    @router.get("/bills/{invoice_id}")
    async def get_bill(
        invoice_id: str,
        current_user: dict = Depends(get_current_user)
    ):
        """Get a bill with its payments and balance projection"""
        await _billing_user(current_user)
        with billing_errors("get bill"):
            invoice = await store.get_invoice(invoice_id)
            if invoice is None:
                raise BillNotFoundError(invoice_id)
            payments = await store.list_payments(PaymentFilter(related_invoice_id=invoice_id))

        view = _bill_view(invoice, payments)
        view["payments"] = serialize_doc(payments)
        return view

    @router.post("/bills/{invoice_id}/cancel")
    async def cancel_bill(
        invoice_id: str,
        manual_override: bool = False,
        current_user: dict = Depends(get_current_user)
    ):
        """Cancel a bill and restock its lines. Cancelling a Paid bill requires Admin override."""
        user = await _billing_user(current_user)
        if manual_override:
            await permission_checker.check_admin_role(user)
        with billing_errors("cancel bill"):
            invoice = await coordinator.cancel_bill(
                invoice_id, user_id=user["user_id"], manual_override=manual_override
            )
        return serialize_doc(invoice)

    @router.patch("/bills/{invoice_id}/status")
    async def update_bill_status(
        invoice_id: str,
        status_data: StatusUpdate,
        current_user: dict = Depends(get_current_user)
    ):
        """Manual "Mark as" status change. manual_override is Admin only."""
        user = await _billing_user(current_user)
        if status_data.manual_override:
            await permission_checker.check_admin_role(user)
        with billing_errors("update bill status"):
            invoice = await coordinator.set_status(
                invoice_id,
                status_data.status,
                user_id=user["user_id"],
                manual_override=status_data.manual_override
            )
        return serialize_doc(invoice)

    @router.delete("/bills/{invoice_id}")
    async def delete_bill(
        invoice_id: str,
        current_user: dict = Depends(get_current_user)
    ):
        """Invoices are never deleted; cancel instead"""
        await _billing_user(current_user)
        audit_service.enforce_financial_delete_guard("INVOICE", "DELETE")

    # ============================================
    # PAYMENT ENDPOINTS
    # ============================================

    @router.post("/payments", status_code=status.HTTP_201_CREATED)
    async def record_payment(
        payment_data: PaymentCreate,
        current_user: dict = Depends(get_current_user)
    ):
        """Record a payment (append-only). The invoice itself is not modified."""
        user = await _billing_user(current_user)
        with billing_errors("record payment"):
            payment = await coordinator.record_payment(payment_data, user_id=user["user_id"])
        result = serialize_doc(payment)
        result["badge"] = payment_badge(payment.status)
        return result

    @router.get("/payments")
    async def list_payments(
        type: Optional[PaymentType] = None,
        related_invoice_id: Optional[str] = None,
        iso_date: Optional[str] = None,
        status_filter: Optional[str] = Query(None, alias="status"),
        current_user: dict = Depends(get_current_user)
    ):
        await _billing_user(current_user)
        payment_filter = PaymentFilter(
            type=type.value if type else None,
            related_invoice_id=related_invoice_id,
            iso_date=iso_date,
            status=status_filter
        )
        with billing_errors("list payments"):
            payments = await store.list_payments(payment_filter)

        payments.sort(key=lambda p: (p.iso_date, p.created_at), reverse=True)
        results = []
        for payment in payments:
            item = serialize_doc(payment)
            item["badge"] = payment_badge(payment.status)
            results.append(item)
        return results

    # ============================================
    # DAILY LEDGER
    # ============================================

    @router.post("/ledger", status_code=status.HTTP_201_CREATED)
    async def record_ledger_entry(
        entry_data: LedgerEntryCreate,
        current_user: dict = Depends(get_current_user)
    ):
        """Record a walk-in sale or a purchase; stock moves with the entry."""
        user = await _billing_user(current_user)
        with billing_errors("record ledger entry"):
            entry = await coordinator.record_ledger_entry(entry_data, user_id=user["user_id"])
        return serialize_doc(entry)

    @router.get("/ledger")
    async def list_ledger_entries(
        date_filter: Optional[str] = Query(None, alias="date"),
        current_user: dict = Depends(get_current_user)
    ):
        await _billing_user(current_user)
        if date_filter:
            try:
                date.fromisoformat(date_filter)
            except ValueError:
                raise HTTPException(status_code=400, detail="Invalid date format. Use YYYY-MM-DD")

        with billing_errors("list ledger"):
            entries = await store.list_ledger_entries(iso_date=date_filter)
        return serialize_doc(entries)

    # ============================================
    # DASHBOARD
    # ============================================

    @router.get("/dashboard/metrics")
    async def get_dashboard_metrics(
        today: Optional[str] = None,
        current_user: dict = Depends(get_current_user)
    ):
        """
        Aggregate metrics, recomputed from the stored records on every call.
        """
        await _billing_user(current_user)
        if today:
            try:
                as_of = date.fromisoformat(today)
            except ValueError:
                raise HTTPException(status_code=400, detail="Invalid date format. Use YYYY-MM-DD")
        else:
            as_of = datetime.utcnow().date()

        with billing_errors("dashboard metrics"):
            invoices = await store.list_invoices(limit=None)
            payments = await store.list_payments()
            products = await store.list_products()

        return serialize_doc(dashboard_metrics(
            invoices, payments, products, today=as_of, low_stock_threshold=low_stock_threshold
        ))

    # ============================================
    # STOCK ENDPOINTS
    # ============================================

    @router.get("/products/stock")
    async def list_product_stock(
        current_user: dict = Depends(get_current_user)
    ):
        await _billing_user(current_user)
        with billing_errors("list stock"):
            products = await store.list_products()

        results = []
        for product in products:
            item = serialize_doc(product)
            item["stock_status"] = stock_status(product.stock, low_stock_threshold)
            results.append(item)
        return results

    @router.patch("/products/{product_id}/stock")
    async def adjust_product_stock(
        product_id: str,
        adjustment: StockAdjustment,
        current_user: dict = Depends(get_current_user)
    ):
        """Admin / store manager stock adjustment (set / add / subtract)"""
        user = await permission_checker.get_authenticated_user(current_user)
        await permission_checker.check_stock_access(user)
        with billing_errors("adjust stock"):
            product = await coordinator.adjust_stock(
                product_id,
                adjustment.adjustment_type,
                adjustment.value,
                user_id=user["user_id"]
            )
        result = serialize_doc(product)
        result["stock_status"] = stock_status(product.stock, low_stock_threshold)
        return result

    # ============================================
    # AUDIT
    # ============================================

    @router.get("/audit-logs")
    async def get_audit_logs(
        entity_id: Optional[str] = None,
        limit: int = 100,
        current_user: dict = Depends(get_current_user)
    ):
        """Audit trail (Admin only, READ ONLY)"""
        user = await permission_checker.get_authenticated_user(current_user)
        await permission_checker.check_admin_role(user)
        with billing_errors("audit logs"):
            logs = await audit_service.get_audit_logs(entity_id=entity_id, limit=limit)
        return serialize_doc(logs)

    return router
