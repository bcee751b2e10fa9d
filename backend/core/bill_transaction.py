"""
BILL TRANSACTION COORDINATOR

The only code path that writes invoices or stock.

Every operation follows the same protocol:
1. Validate the request before touching the store
2. Open one store transaction
3. Read everything the decision depends on through that transaction
4. Validate invariants
5. Write invoice + stock + audit entry through that transaction
6. Commit (all writes) or abort (none)

Store failures propagate unchanged (ConflictError, StoreUnavailableError);
retrying is the caller's decision.

Usage:
    coordinator = BillTransactionCoordinator(store, AuditService(store), TaxInputs("29", "0.18"))
    invoice = await coordinator.commit_bill("cust-1", [], [{"product_id": "p-1", "quantity": 2}])
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional
import logging

from audit_service import AuditService
from core.atomic_numbering import generate_invoice_number, DEFAULT_PREFIX
from core.errors import (
    BillNotFoundError, ConflictError, InsufficientStockError,
    ProductNotFoundError, StockShortfall, ValidationError
)
from core.financial_precision import (
    to_decimal, round_financial, validate_positive,
    FinancialPrecisionError, NegativeValueError, ZERO
)
from core.invariant_validator import BillInvariantValidator
from core.reconciler import reconcile
from core.state_machine import InvalidTransitionError
from core.status_projection import build_invoice_status_machine
from core.stock_delta import (
    line_field, normalize_lines, quantities_by_product, resolve_deltas
)
from core.store import BillStore, BillTransaction, PaymentFilter
from core.tax_calculator import compute_tax
from models import (
    BalanceProjection, Invoice, InvoiceLine, InvoiceStatus, LedgerEntityType,
    LedgerEntry, LedgerEntryCreate, LedgerEntryType, LedgerItem, PaymentCreate,
    PaymentRecord, Product, StockAdjustmentType
)

logger = logging.getLogger(__name__)

UNKNOWN_CUSTOMER_NAME = "Unknown Customer"


class TaxInputs:
    """Home jurisdiction and GST rate applied to every bill"""

    def __init__(self, home_jurisdiction: str = "29", rate: Any = "0.18"):
        self.home_jurisdiction = home_jurisdiction
        self.rate = to_decimal(rate)
        if self.rate < ZERO or self.rate > Decimal("1"):
            raise FinancialPrecisionError(f"Tax rate must be between 0 and 1: {rate}")

    def __repr__(self):
        return f"TaxInputs(home_jurisdiction={self.home_jurisdiction!r}, rate={self.rate})"


def _invoice_summary(invoice: Invoice) -> Dict[str, Any]:
    return {
        "invoice_number": invoice.invoice_number,
        "customer_id": invoice.customer_id,
        "status": invoice.status,
        "lines": {l.product_id: l.quantity for l in invoice.lines},
        "grand_total": invoice.grand_total,
        "version": invoice.version,
    }


class BillTransactionCoordinator:
    """
    Atomic bill commit, cancel, status change, stock adjustment, payment
    recording and daily ledger entries over a BillStore.
    """

    def __init__(
        self,
        store: BillStore,
        audit_service: AuditService,
        tax_inputs: Optional[TaxInputs] = None,
        invoice_prefix: str = DEFAULT_PREFIX
    ):
        self.store = store
        self.audit_service = audit_service
        self.tax_inputs = tax_inputs or TaxInputs()
        self.invoice_prefix = invoice_prefix
        self.validator = BillInvariantValidator()
        self.status_machine = build_invoice_status_machine(handler=self._persist_status)

    # =========================================================================
    # VALIDATION (no store access)
    # =========================================================================

    def _validate_request(
        self,
        customer_id: str,
        previous_lines: Optional[Iterable[Any]],
        target_lines: Iterable[Any],
        invoice_id: Optional[str]
    ) -> List[Any]:
        if not customer_id or not str(customer_id).strip():
            raise ValidationError("Customer is required")

        if previous_lines and not invoice_id:
            raise ValidationError("previous_lines only apply when editing an existing invoice")
        if previous_lines is not None:
            quantities_by_product(previous_lines, allow_negative=False)

        target = normalize_lines(target_lines)
        if not target:
            raise ValidationError("Bill must contain at least one line with quantity >= 1")

        for line in target:
            unit_price = line_field(line, "unit_price")
            if unit_price is None:
                continue
            try:
                if to_decimal(unit_price) < ZERO:
                    raise ValidationError(
                        f"Unit price for {line_field(line, 'product_id')} cannot be negative",
                        {"product_id": line_field(line, "product_id")}
                    )
            except FinancialPrecisionError as e:
                raise ValidationError(str(e), {"product_id": line_field(line, "product_id")})
        return target

    # =========================================================================
    # SHARED TRANSACTION STEPS
    # =========================================================================

    async def _load_products(self, txn: BillTransaction, product_ids: Iterable[str]) -> Dict[str, Product]:
        products: Dict[str, Product] = {}
        for product_id in product_ids:
            if product_id in products:
                continue
            product = await txn.get_product(product_id)
            if product is None:
                raise ValidationError(f"Unknown product: {product_id}", {"product_id": product_id})
            products[product_id] = product
        return products

    def _check_stock(self, products: Dict[str, Product], deltas: Dict[str, int]) -> Dict[str, int]:
        """
        Reject the whole operation if any product would go below zero.
        Returns the new stock level per product.
        """
        shortfalls = []
        new_levels = {}
        for product_id, delta in deltas.items():
            available = products[product_id].stock
            if available + delta < 0:
                shortfalls.append(StockShortfall(product_id, requested=-delta, available=available))
            new_levels[product_id] = available + delta

        if shortfalls:
            logger.warning(f"[STOCK] Insufficient stock: {shortfalls}")
            raise InsufficientStockError(shortfalls)
        return new_levels

    async def _write_stock(
        self,
        txn: BillTransaction,
        products: Dict[str, Product],
        new_levels: Dict[str, int]
    ) -> None:
        self.validator.validate_stock_levels(new_levels)
        for product_id, level in new_levels.items():
            await txn.set_stock(product_id, expected=products[product_id].stock, new=level)

    def _build_lines(
        self,
        target: List[Any],
        products: Dict[str, Product],
        stored_prices: Dict[str, Decimal]
    ) -> List[InvoiceLine]:
        lines = []
        for line in target:
            product_id = line_field(line, "product_id")
            product = products[product_id]
            unit_price = line_field(line, "unit_price")
            if unit_price is None:
                unit_price = stored_prices.get(product_id, product.unit_price)
            lines.append(InvoiceLine(
                product_id=product_id,
                name=product.name,
                quantity=line_field(line, "quantity"),
                unit_price=to_decimal(unit_price),
                unit_of_measure=product.unit_of_measure
            ))
        return lines

    def _totals(self, lines: List[InvoiceLine], customer, tax_inputs: TaxInputs) -> Dict[str, Decimal]:
        """
        LOCKED FORMULAS:
        - sub_total = SUM(line_total), rounded once
        - tax on sub_total per jurisdiction
        - grand_total = sub_total + cgst + sgst + igst
        """
        sub_total = round_financial(sum((l.line_total for l in lines), ZERO))
        tax = compute_tax(
            sub_total,
            customer.jurisdiction_code,
            tax_inputs.home_jurisdiction,
            tax_inputs.rate
        )
        return {
            "sub_total": sub_total,
            "cgst": tax.cgst,
            "sgst": tax.sgst,
            "igst": tax.igst,
            "grand_total": sub_total + tax.total,
        }

    # =========================================================================
    # COMMIT (create / edit)
    # =========================================================================

    async def commit_bill(
        self,
        customer_id: str,
        previous_lines: Optional[Iterable[Any]],
        target_lines: Iterable[Any],
        tax_inputs: Optional[TaxInputs] = None,
        invoice_id: Optional[str] = None,
        expected_version: Optional[int] = None,
        user_id: Optional[str] = None
    ) -> Invoice:
        """
        Create (invoice_id=None) or edit an invoice, adjusting stock by the
        difference between the saved lines and the new cart.

        On edit, previous_lines is what the caller believes is saved; it must
        match the stored lines or the commit is rejected as stale. Pass None
        to edit against whatever is stored.
        """
        if previous_lines is not None:
            previous_lines = list(previous_lines)
        target = self._validate_request(customer_id, previous_lines, target_lines, invoice_id)
        tax_inputs = tax_inputs or self.tax_inputs

        async with self.store.transaction() as txn:
            stored = None
            previous: List[Any] = []
            if invoice_id:
                stored = await txn.get_invoice(invoice_id)
                if stored is None:
                    raise BillNotFoundError(invoice_id)
                if stored.status == InvoiceStatus.CANCELLED.value:
                    raise ValidationError(
                        f"Invoice {stored.invoice_number} is cancelled and cannot be edited",
                        {"invoice_id": invoice_id}
                    )
                if expected_version is not None and expected_version != stored.version:
                    raise ConflictError(
                        f"Invoice {stored.invoice_number} is at version {stored.version}, "
                        f"not {expected_version}; re-fetch and retry",
                        {"invoice_id": invoice_id, "current_version": stored.version}
                    )
                if previous_lines is not None and \
                        quantities_by_product(previous_lines) != quantities_by_product(stored.lines):
                    raise ConflictError(
                        f"Saved lines of {stored.invoice_number} changed since they were read; re-fetch and retry",
                        {"invoice_id": invoice_id, "current_version": stored.version}
                    )
                previous = stored.lines

            deltas = resolve_deltas(previous, target)

            customer = await txn.get_customer(customer_id)
            if customer is None:
                raise ValidationError(f"Unknown customer: {customer_id}", {"customer_id": customer_id})

            products = await self._load_products(
                txn, [line_field(l, "product_id") for l in target] + list(deltas)
            )
            new_levels = self._check_stock(products, deltas)

            stored_prices = {l.product_id: l.unit_price for l in previous} if stored else {}
            lines = self._build_lines(target, products, stored_prices)
            totals = self._totals(lines, customer, tax_inputs)
            now = datetime.utcnow()

            if stored is None:
                invoice_number, _ = await generate_invoice_number(txn, self.invoice_prefix)
                invoice = Invoice(
                    invoice_number=invoice_number,
                    customer_id=customer.customer_id,
                    customer_name=customer.name,
                    lines=lines,
                    status=InvoiceStatus.PENDING,
                    created_iso_date=now.isoformat(),
                    updated_at=now,
                    version=1,
                    **totals
                )
                self.validator.validate_invoice(invoice)
                await self._write_stock(txn, products, new_levels)
                invoice.invoice_id = await txn.insert_invoice(invoice)
                await self.audit_service.log_action(
                    txn, "INVOICE", invoice.invoice_id, "CREATE", user_id,
                    new_value=_invoice_summary(invoice)
                )
                logger.info(
                    f"[TRANSACTION] Bill created: {invoice.invoice_number} "
                    f"total={invoice.grand_total} stock_deltas={deltas}"
                )
            else:
                invoice = stored.model_copy(update={
                    "customer_id": customer.customer_id,
                    "customer_name": customer.name,
                    "lines": lines,
                    "updated_at": now,
                    "version": stored.version + 1,
                    **totals
                })
                self.validator.validate_invoice(invoice)
                await self._write_stock(txn, products, new_levels)
                await txn.replace_invoice(invoice, expected_version=stored.version)
                await self.audit_service.log_action(
                    txn, "INVOICE", invoice.invoice_id, "UPDATE", user_id,
                    old_value=_invoice_summary(stored),
                    new_value=_invoice_summary(invoice)
                )
                logger.info(
                    f"[TRANSACTION] Bill edited: {invoice.invoice_number} "
                    f"v{stored.version}->v{invoice.version} stock_deltas={deltas}"
                )

        return invoice

    # =========================================================================
    # STATUS
    # =========================================================================

    async def _persist_status(self, entity_doc: Dict[str, Any], context: Dict[str, Any], txn) -> Dict[str, Any]:
        """Transition handler: write the new status, history entry and audit entry"""
        stored = Invoice(**entity_doc)
        history_entry = self.status_machine.get_history_entry(
            context["from_state"],
            context["to_state"],
            user_id=context.get("user_id"),
            metadata={"forced": context["forced"], "action": context.get("action", "STATUS_CHANGE")}
        )
        invoice = stored.model_copy(update={
            "status": context["to_state"],
            "updated_at": datetime.utcnow(),
            "version": stored.version + 1,
            "state_history": stored.state_history + [history_entry],
        })
        await txn.replace_invoice(invoice, expected_version=stored.version)
        await self.audit_service.log_action(
            txn, "INVOICE", invoice.invoice_id, context.get("action", "STATUS_CHANGE"),
            context.get("user_id"),
            old_value={"status": context["from_state"]},
            new_value={"status": context["to_state"], "forced": context["forced"]}
        )
        return {"invoice": invoice}

    async def set_status(
        self,
        invoice_id: str,
        status: str,
        user_id: Optional[str] = None,
        manual_override: bool = False
    ) -> Invoice:
        """
        Move an invoice along the status machine. manual_override (authorised
        actor only; enforced by the route) skips the transition table.
        Same-state requests are a no-op.

        Cancelled is stock-bearing: moving to it goes through cancel_bill
        (restock), and nothing leaves it, override included. A voided bill is
        re-issued through commit_bill, which deducts stock again.
        """
        status = InvoiceStatus(status).value
        if status == InvoiceStatus.CANCELLED.value:
            return await self.cancel_bill(invoice_id, user_id=user_id, manual_override=manual_override)

        async with self.store.transaction() as txn:
            stored = await txn.get_invoice(invoice_id)
            if stored is None:
                raise BillNotFoundError(invoice_id)
            if stored.status == status:
                return stored
            if stored.status == InvoiceStatus.CANCELLED.value:
                raise InvalidTransitionError(self.status_machine.entity_name, stored.status, status)

            result = await self.status_machine.transition(
                stored.model_dump(),
                status,
                session=txn,
                context={"user_id": user_id, "action": "STATUS_CHANGE"},
                force=manual_override
            )
            invoice = result["handler_result"]["invoice"]

        logger.info(f"[TRANSACTION] Status {invoice.invoice_number}: {stored.status} -> {status}")
        return invoice

    async def cancel_bill(
        self,
        invoice_id: str,
        user_id: Optional[str] = None,
        manual_override: bool = False
    ) -> Invoice:
        """
        Void an invoice: restore the stock of every saved line and mark it
        Cancelled, atomically.
        """
        async with self.store.transaction() as txn:
            stored = await txn.get_invoice(invoice_id)
            if stored is None:
                raise BillNotFoundError(invoice_id)
            # A cancelled bill has already been restocked, override or not
            if not manual_override or stored.status == InvoiceStatus.CANCELLED.value:
                self.status_machine.validate_transition(stored.status, InvoiceStatus.CANCELLED.value)

            deltas = resolve_deltas(stored.lines, [])
            products = await self._load_products(txn, list(deltas))
            new_levels = self._check_stock(products, deltas)
            await self._write_stock(txn, products, new_levels)

            result = await self.status_machine.transition(
                stored.model_dump(),
                InvoiceStatus.CANCELLED.value,
                session=txn,
                context={"user_id": user_id, "action": "CANCEL", "restocked": deltas},
                force=manual_override
            )
            invoice = result["handler_result"]["invoice"]

        logger.info(f"[TRANSACTION] Bill cancelled: {invoice.invoice_number} restocked={deltas}")
        return invoice

    # =========================================================================
    # STOCK ADJUSTMENT
    # =========================================================================

    async def adjust_stock(
        self,
        product_id: str,
        adjustment_type: str,
        value: int,
        user_id: Optional[str] = None
    ) -> Product:
        """
        Admin stock write path.
        - set: stock = value
        - add: stock + value
        - subtract: max(0, stock - value)
        """
        try:
            adjustment_type = StockAdjustmentType(adjustment_type).value
        except ValueError:
            raise ValidationError(f"Unknown adjustment type: {adjustment_type}")
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ValidationError(
                f"Adjustment value must be a non-negative integer: {value!r}",
                {"product_id": product_id}
            )

        async with self.store.transaction() as txn:
            product = await txn.get_product(product_id)
            if product is None:
                raise ProductNotFoundError(product_id)

            if adjustment_type == StockAdjustmentType.SET.value:
                new_stock = value
            elif adjustment_type == StockAdjustmentType.ADD.value:
                new_stock = product.stock + value
            else:
                new_stock = max(0, product.stock - value)

            await self._write_stock(txn, {product_id: product}, {product_id: new_stock})
            await self.audit_service.log_action(
                txn, "PRODUCT", product_id, "STOCK_ADJUST", user_id,
                old_value={"stock": product.stock},
                new_value={"stock": new_stock, "adjustment_type": adjustment_type, "value": value}
            )

        logger.info(f"[STOCK] {product_id}: {product.stock} -> {new_stock} ({adjustment_type} {value})")
        return product.model_copy(update={"stock": new_stock})

    # =========================================================================
    # PAYMENTS
    # =========================================================================

    async def record_payment(self, payment: PaymentCreate, user_id: Optional[str] = None) -> PaymentRecord:
        """
        Append a payment record. The invoice is never modified; its balance
        and status are projections over the payment records.
        """
        try:
            validate_positive(payment.amount_paid, "amount_paid")
        except (NegativeValueError, FinancialPrecisionError) as e:
            raise ValidationError(str(e), {"amount_paid": str(payment.amount_paid)})

        iso_date = payment.iso_date or datetime.utcnow().date().isoformat()
        try:
            date.fromisoformat(iso_date[:10])
        except ValueError:
            raise ValidationError(f"iso_date must be YYYY-MM-DD: {iso_date!r}")

        record = PaymentRecord(
            type=payment.type,
            related_invoice_id=payment.related_invoice_id,
            related_entity_name=payment.related_entity_name,
            amount_paid=to_decimal(payment.amount_paid),
            status=payment.status,
            iso_date=iso_date[:10],
            method=payment.method,
            transaction_id=payment.transaction_id,
            notes=payment.notes
        )

        async with self.store.transaction() as txn:
            if payment.related_invoice_id:
                invoice = await txn.get_invoice(payment.related_invoice_id)
                if invoice is None:
                    raise BillNotFoundError(payment.related_invoice_id)
                existing = await txn.list_payments(
                    PaymentFilter(related_invoice_id=payment.related_invoice_id)
                )
                # Informational snapshot only; never read back
                after = reconcile(invoice, existing + [record], payment_type=record.type)
                record = record.model_copy(update={
                    "related_entity_name": record.related_entity_name or invoice.customer_name,
                    "original_amount": after.grand_total,
                    "remaining_balance": after.remaining_balance,
                })

            record.payment_id = await txn.insert_payment(record)
            await self.audit_service.log_action(
                txn, "PAYMENT", record.payment_id, "CREATE", user_id,
                new_value={
                    "type": record.type,
                    "related_invoice_id": record.related_invoice_id,
                    "amount_paid": record.amount_paid,
                    "status": record.status,
                }
            )

        logger.info(
            f"[TRANSACTION] Payment recorded: {record.payment_id} {record.type} "
            f"{record.amount_paid} invoice={record.related_invoice_id}"
        )
        return record

    # =========================================================================
    # DAILY LEDGER
    # =========================================================================

    def _validate_ledger_request(self, entry: LedgerEntryCreate) -> str:
        """Returns the entry's YYYY-MM-DD date"""
        if not entry.items:
            raise ValidationError("Ledger entry must contain at least one item")
        for item in entry.items:
            product_id = line_field(item, "product_id")
            quantity = line_field(item, "quantity")
            if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
                raise ValidationError(
                    f"Quantity for {product_id} must be an integer >= 1: {quantity!r}",
                    {"product_id": product_id, "quantity": quantity}
                )
            if item.unit_price is not None:
                try:
                    if to_decimal(item.unit_price) < ZERO:
                        raise ValidationError(
                            f"Unit price for {product_id} cannot be negative",
                            {"product_id": product_id}
                        )
                except FinancialPrecisionError as e:
                    raise ValidationError(str(e), {"product_id": product_id})

        if not (entry.entity_name or "").strip() and \
                entry.entity_type != LedgerEntityType.UNKNOWN_CUSTOMER:
            raise ValidationError("Entity name is required", {"entity_type": entry.entity_type.value})

        entry_date = entry.date or datetime.utcnow().date().isoformat()
        try:
            date.fromisoformat(entry_date[:10])
        except ValueError:
            raise ValidationError(f"date must be YYYY-MM-DD: {entry_date!r}")
        return entry_date[:10]

    async def record_ledger_entry(self, entry: LedgerEntryCreate, user_id: Optional[str] = None) -> LedgerEntry:
        """
        Append a daily ledger entry and move stock for its items, atomically.
        A sale takes stock out (and is rejected whole on any shortfall); a
        purchase puts stock in.

        LOCKED FORMULAS:
        - total_price = quantity * unit_price
        - sub_total = SUM(total_price), rounded once
        - tax_amount = sub_total * rate for a sale, 0 for a purchase
        - grand_total = sub_total + tax_amount
        """
        entry_date = self._validate_ledger_request(entry)
        is_sale = entry.type == LedgerEntryType.SALE
        # Same sign convention as a bill: a sale is a new cart, a purchase a removed one
        deltas = resolve_deltas([], entry.items) if is_sale else resolve_deltas(entry.items, [])

        async with self.store.transaction() as txn:
            products = await self._load_products(txn, list(deltas))
            new_levels = self._check_stock(products, deltas)

            items = []
            for item in entry.items:
                product = products[item.product_id]
                unit_price = item.unit_price if item.unit_price is not None else product.unit_price
                items.append(LedgerItem(
                    product_id=item.product_id,
                    product_name=product.name,
                    quantity=item.quantity,
                    unit_price=to_decimal(unit_price),
                    unit_of_measure=product.unit_of_measure
                ))
            sub_total = round_financial(sum((i.total_price for i in items), ZERO))
            tax_amount = round_financial(sub_total * self.tax_inputs.rate) if is_sale else ZERO

            record = LedgerEntry(
                date=entry_date,
                type=entry.type,
                entity_type=entry.entity_type,
                entity_id=entry.entity_id,
                entity_name=(entry.entity_name or "").strip() or UNKNOWN_CUSTOMER_NAME,
                items=items,
                payment_method=entry.payment_method,
                payment_status=entry.payment_status,
                notes=entry.notes,
                sub_total=sub_total,
                tax_amount=tax_amount,
                grand_total=sub_total + tax_amount,
                created_by=user_id
            )

            await self._write_stock(txn, products, new_levels)
            record.entry_id = await txn.insert_ledger_entry(record)
            await self.audit_service.log_action(
                txn, "LEDGER_ENTRY", record.entry_id, "CREATE", user_id,
                new_value={
                    "type": record.type,
                    "date": record.date,
                    "items": {i.product_id: i.quantity for i in items},
                    "grand_total": record.grand_total,
                }
            )

        logger.info(
            f"[TRANSACTION] Ledger {record.type} recorded: {record.entry_id} "
            f"total={record.grand_total} stock_deltas={deltas}"
        )
        return record

    async def invoice_balance(self, invoice_id: str) -> BalanceProjection:
        invoice = await self.store.get_invoice(invoice_id)
        if invoice is None:
            raise BillNotFoundError(invoice_id)
        payments = await self.store.list_payments(PaymentFilter(related_invoice_id=invoice_id))
        return reconcile(invoice, payments)
