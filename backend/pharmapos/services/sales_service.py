# Overview: Service-layer operations for sales; atomic sale capture, lifecycle and compensating cancellation.

# backend/pharmapos/services/sales_service.py

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime

from flask import current_app
from sqlalchemy import func

from ..errors import (
    InsufficientStockError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from ..extensions import db
from ..models import (
    Customer,
    InventoryBatch,
    Product,
    Sale,
    SaleEditRequest,
    SaleLineItem,
    SalePayment,
    SaleReturn,
)
from ..models.enums import (
    CreditStatus,
    EditRequestStatus,
    PaymentMethod,
    PaymentStatus,
    ReturnStatus,
    SalePaymentStatus,
    SaleReturnStatus,
    SaleStatus,
    SourceType,
    TENDER_METHODS,
    TransactionType,
)
from ..time_utils import today, utcnow
from ..validation import (
    MAX_PRICE_CENTS,
    MAX_QUANTITY,
    optional_bool,
    optional_date,
    optional_int,
    optional_list,
    optional_str,
    parse_enum,
    require_int,
)
from . import credit_service, document_service, sale_payments, tax_service
from .commission_service import CommissionPolicy, default_policy
from .concurrency import lock_for_update, run_in_unit_of_work
from .inventory_service import _adjust_locked, available_batches, get_branch
from .state_machine import ensure_transition
"""
Sale Transaction Processor rules (authoritative)

- A sale is created in ONE unit of work: every line's stock deduction, its
  audit entry, the sale header, lines, tenders and (for credit sales) the
  credit account commit together or not at all. There is no "stock deducted
  but sale failed" outcome.
- Non-credit sales must be tendered exactly (tolerance 0 cents).
- Credit sales may be tendered partially; the shortfall opens a CreditAccount
  whose total is the sale total and whose paid amount is the upfront tender.
- A product may appear on only one line of a sale; the ledger idempotency key
  is (product, branch, sale_number, SALE).
- MPESA tenders without a receipt reference start PENDING and are confirmed by
  the STK callback.
"""


@dataclass
class LineDraft:
    product: Product
    batch: InventoryBatch
    quantity: int
    unit_price_cents: int
    discount_cents: int
    tax_rate_bps: int
    amounts: tax_service.LineAmounts


@dataclass
class TenderDraft:
    method: PaymentMethod
    amount_cents: int
    reference_number: str | None = None
    notes: str | None = None

    @property
    def initial_status(self) -> PaymentStatus:
        if self.method is PaymentMethod.MPESA and not self.reference_number:
            return PaymentStatus.PENDING
        return PaymentStatus.COMPLETED


def _get_sale_locked(tenant_id: int, sale_id: int) -> Sale:
    sale = lock_for_update(db.session.query(Sale).filter_by(id=sale_id, tenant_id=tenant_id)).first()
    if sale is None:
        raise NotFoundError("Sale not found", details={"sale_id": sale_id})
    return sale


def _get_customer(tenant_id: int, customer_id: int) -> Customer:
    customer = db.session.query(Customer).filter_by(id=customer_id, tenant_id=tenant_id).first()
    if customer is None:
        raise NotFoundError("Customer not found", details={"customer_id": customer_id})
    if not customer.is_active:
        raise ValidationError("Customer is inactive", details={"customer_id": customer_id})
    return customer


def parse_tenders(raw_payments: list) -> list[TenderDraft]:
    tenders = []
    for index, raw in enumerate(raw_payments):
        method = parse_enum(PaymentMethod, raw.get("payment_method"), f"payments[{index}].payment_method")
        if method not in TENDER_METHODS:
            raise ValidationError(
                "ADJUSTMENT payments are system-generated",
                details={"index": index, "allowed": [m.value for m in TENDER_METHODS]},
            )
        tenders.append(
            TenderDraft(
                method=method,
                amount_cents=require_int(raw, "amount_cents", minimum=1, maximum=MAX_PRICE_CENTS * MAX_QUANTITY),
                reference_number=optional_str(raw, "reference_number", max_length=64),
                notes=optional_str(raw, "notes"),
            )
        )
    return tenders


def _check_tenders(tenders: list[TenderDraft], total_cents: int, is_credit_sale: bool) -> int:
    paid = sum(t.amount_cents for t in tenders)
    if is_credit_sale:
        if paid > total_cents:
            raise ValidationError(
                "Payments exceed the sale total",
                details={"paid_cents": paid, "total_amount_cents": total_cents},
            )
        return paid
    if not tenders and total_cents > 0:
        raise ValidationError("At least one payment is required for a non-credit sale")
    if paid != total_cents:
        raise ValidationError(
            "Payments must equal the sale total",
            details={"paid_cents": paid, "total_amount_cents": total_cents, "difference_cents": total_cents - paid},
        )
    return paid


def _resolve_batch(tenant_id: int, branch_id: int, product: Product, raw: dict, quantity: int, index: int) -> InventoryBatch:
    batch_id = optional_int(raw, "inventory_id")
    if batch_id is None:
        batch_id = optional_int(raw, "batch_id")

    if batch_id is None:
        # First-expiry-first-out when the cashier did not scan a specific batch
        for candidate in available_batches(tenant_id, product.id, branch_id):
            if candidate.quantity >= quantity:
                return candidate
        raise InsufficientStockError(
            "No batch can cover the requested quantity",
            details={"index": index, "product_id": product.id, "branch_id": branch_id, "requested": quantity},
        )

    batch = db.session.query(InventoryBatch).filter_by(id=batch_id, tenant_id=tenant_id).first()
    if batch is None:
        raise NotFoundError("Inventory batch not found", details={"index": index, "inventory_id": batch_id})
    if batch.product_id != product.id:
        raise ValidationError(
            "Batch does not belong to the product",
            details={"index": index, "inventory_id": batch_id, "product_id": product.id},
        )
    if batch.branch_id != branch_id:
        raise ValidationError(
            "Batch is held at a different branch",
            details={"index": index, "inventory_id": batch_id, "branch_id": branch_id},
        )
    return batch


def _check_batch_sellable(batch: InventoryBatch, *, as_of: date, index: int | None = None) -> None:
    if not batch.is_active:
        raise ValidationError("Batch is inactive", details={"index": index, "inventory_id": batch.id})
    if batch.expiry_date is not None and batch.expiry_date < as_of:
        raise ValidationError(
            "Batch has expired",
            details={"index": index, "inventory_id": batch.id, "expiry_date": batch.expiry_date.isoformat()},
        )


def _draft_lines(tenant_id: int, branch_id: int, raw_lines: list, context: tax_service.TaxContext) -> list[LineDraft]:
    if not raw_lines:
        raise ValidationError("A sale needs at least one line item")

    as_of = today()
    seen_products = set()
    drafts = []
    for index, raw in enumerate(raw_lines):
        product_id = require_int(raw, "product_id")
        if product_id in seen_products:
            raise ValidationError(
                "Each product may appear on only one line; combine the quantities",
                details={"index": index, "product_id": product_id},
            )
        seen_products.add(product_id)

        product = db.session.query(Product).filter_by(id=product_id, tenant_id=tenant_id).first()
        if product is None:
            raise NotFoundError("Product not found", details={"index": index, "product_id": product_id})
        if not product.is_active:
            raise ValidationError("Product is inactive", details={"index": index, "product_id": product_id})

        quantity = require_int(raw, "quantity", minimum=1, maximum=MAX_QUANTITY)
        batch = _resolve_batch(tenant_id, branch_id, product, raw, quantity, index)
        _check_batch_sellable(batch, as_of=as_of, index=index)

        unit_price = optional_int(raw, "unit_price_cents")
        if unit_price is None:
            unit_price = batch.selling_price_cents if batch.selling_price_cents is not None else product.selling_price_cents
        if unit_price is None or unit_price <= 0:
            raise ValidationError(
                "unit_price_cents must be > 0",
                details={"index": index, "product_id": product_id, "unit_price_cents": unit_price},
            )
        if unit_price > MAX_PRICE_CENTS:
            raise ValidationError("unit_price_cents is too large", details={"index": index})

        discount = optional_int(raw, "discount_amount_cents", default=0)
        gross = quantity * unit_price
        if discount < 0 or discount > gross:
            raise ValidationError(
                "discount_amount_cents must be between 0 and quantity x unit price",
                details={"index": index, "discount_amount_cents": discount, "gross_cents": gross},
            )

        rate = tax_service.rate_for_product(context, product)
        drafts.append(
            LineDraft(
                product=product,
                batch=batch,
                quantity=quantity,
                unit_price_cents=unit_price,
                discount_cents=discount,
                tax_rate_bps=rate,
                amounts=tax_service.price_line(quantity, unit_price, discount, rate, context.pricing_mode),
            )
        )
    return drafts


def _complete_locked(
    sale: Sale,
    tenders: list[TenderDraft],
    *,
    performed_by: int | None,
    expected_payment_date: date | None = None,
) -> Sale:
    """
    Deduct stock, record tenders and open credit for a priced sale.

    Runs inside the caller's unit of work; never commits.
    """
    ensure_transition(sale.status, SaleStatus.COMPLETED, entity_id=sale.id)
    paid = _check_tenders(tenders, sale.total_amount_cents, sale.is_credit_sale)
    if sale.is_credit_sale and sale.customer_id is None:
        raise ValidationError("Credit sales require a registered customer")

    as_of = today()
    for line in sale.active_lines:
        batch = db.session.get(InventoryBatch, line.batch_id)
        _check_batch_sellable(batch, as_of=as_of, index=line.line_number - 1)
        _adjust_locked(
            sale.tenant_id,
            line.product_id,
            sale.branch_id,
            -line.quantity,
            batch_id=line.batch_id,
            transaction_type=TransactionType.SALE,
            source_reference=sale.sale_number,
            source_type=SourceType.SALE,
            performed_by=performed_by,
        )

    for tender in tenders:
        sale_payments.add_payment(
            sale,
            payment_method=tender.method,
            amount_cents=tender.amount_cents,
            status=tender.initial_status,
            reference_number=tender.reference_number,
            notes=tender.notes,
            created_by=performed_by,
        )

    sale.status = SaleStatus.COMPLETED.value
    sale.completed_at = utcnow()
    db.session.flush()

    if sale.is_credit_sale:
        shortfall = sale.total_amount_cents - paid
        if shortfall > 0:
            credit_service._open_locked(
                sale,
                customer_id=sale.customer_id,
                total_cents=sale.total_amount_cents,
                paid_cents=paid,
                expected_payment_date=expected_payment_date,
                created_by=performed_by,
                upfront_method=tenders[0].method if tenders else None,
            )
        else:
            # Fully tendered at the counter; nothing left to carry on credit
            sale.is_credit_sale = False

    sale_payments.refresh_payment_status(sale)
    sale_payments.assert_payment_invariant(sale)
    return sale


def serialize_sale(sale: Sale) -> dict:
    account = sale_payments.credit_account_for(sale)
    return {
        "sale": sale.to_dict(),
        "lines": [line.to_dict() for line in sale.lines],
        "payments": [payment.to_dict() for payment in sale.payments],
        "credit_account": account.to_dict() if account is not None else None,
    }


def create_sale(tenant_id: int, request: dict, cashier_id: int | None = None) -> dict:
    """
    Validate, price and (unless held) complete a sale atomically.

    request keys: branch_id, lines[{product_id, inventory_id, quantity,
    unit_price_cents, discount_amount_cents}], payments[{payment_method,
    amount_cents, reference_number}], is_credit_sale, customer_id,
    customer_name, customer_phone, expected_payment_date, notes, hold.
    """
    if not isinstance(request, dict):
        raise ValidationError("Sale request must be an object")

    branch_id = require_int(request, "branch_id")
    is_credit_sale = optional_bool(request, "is_credit_sale", False)
    hold = optional_bool(request, "hold", False)
    customer_id = optional_int(request, "customer_id")
    expected_payment_date = optional_date(request, "expected_payment_date")
    raw_lines = optional_list(request, "lines")
    tenders = parse_tenders(optional_list(request, "payments"))
    if hold and tenders:
        raise ValidationError("Held sales are tendered when they are completed")
    if is_credit_sale and customer_id is None:
        raise ValidationError("Credit sales require customer_id")

    def _op():
        branch = get_branch(tenant_id, branch_id)
        if not branch.is_active:
            raise ValidationError("Branch is inactive", details={"branch_id": branch_id})
        if customer_id is not None:
            _get_customer(tenant_id, customer_id)

        context = tax_service.tax_context(tenant_id)
        drafts = _draft_lines(tenant_id, branch_id, raw_lines, context)
        totals = tax_service.summarize([d.amounts for d in drafts])
        if not hold:
            _check_tenders(tenders, totals.total_cents, is_credit_sale)
        else:
            for index, draft in enumerate(drafts):
                if draft.batch.quantity < draft.quantity:
                    raise InsufficientStockError(
                        "Insufficient stock in batch",
                        details={
                            "index": index,
                            "batch_id": draft.batch.id,
                            "available": draft.batch.quantity,
                            "requested": draft.quantity,
                        },
                    )

        sale = Sale(
            tenant_id=tenant_id,
            branch_id=branch_id,
            sale_number=document_service.allocate(tenant_id, document_service.SALE),
            cashier_id=cashier_id,
            customer_id=customer_id,
            customer_name=optional_str(request, "customer_name"),
            customer_phone=optional_str(request, "customer_phone", max_length=32),
            subtotal_cents=totals.subtotal_cents,
            tax_amount_cents=totals.tax_cents,
            discount_amount_cents=totals.discount_cents,
            total_amount_cents=totals.total_cents,
            pricing_mode=context.pricing_mode.value,
            status=SaleStatus.PENDING.value,
            return_status=SaleReturnStatus.NONE.value,
            payment_status=SalePaymentStatus.AWAITING_PAYMENT.value,
            is_credit_sale=is_credit_sale,
            notes=optional_str(request, "notes", max_length=2000),
        )
        db.session.add(sale)

        for number, draft in enumerate(drafts, start=1):
            db.session.add(
                SaleLineItem(
                    tenant_id=tenant_id,
                    sale=sale,
                    line_number=number,
                    product_id=draft.product.id,
                    batch_id=draft.batch.id,
                    batch_number=draft.batch.batch_number,
                    expiry_date=draft.batch.expiry_date,
                    quantity=draft.quantity,
                    returned_quantity=0,
                    unit_price_cents=draft.unit_price_cents,
                    unit_cost_cents=(
                        draft.batch.unit_cost_cents
                        if draft.batch.unit_cost_cents is not None
                        else draft.product.unit_cost_cents
                    ),
                    discount_amount_cents=draft.discount_cents,
                    tax_rate_bps=draft.tax_rate_bps,
                    tax_amount_cents=draft.amounts.tax_cents,
                    line_total_cents=draft.amounts.line_total_cents,
                )
            )
        db.session.flush()

        if hold:
            return sale
        return _complete_locked(
            sale,
            tenders,
            performed_by=cashier_id,
            expected_payment_date=expected_payment_date,
        )

    sale = run_in_unit_of_work(_op, label="create sale")
    current_app.logger.info(
        "Sale %s %s: total=%s credit=%s",
        sale.sale_number, sale.status, sale.total_amount_cents, sale.is_credit_sale,
    )
    return serialize_sale(sale)


def complete_sale(
    tenant_id: int,
    sale_id: int,
    payments: list,
    *,
    is_credit_sale: bool | None = None,
    customer_id: int | None = None,
    expected_payment_date: date | None = None,
    performed_by: int | None = None,
) -> dict:
    """Complete a held (PENDING) sale: deduct stock and record tenders now."""
    tenders = parse_tenders(payments or [])

    def _op():
        sale = _get_sale_locked(tenant_id, sale_id)
        if sale.status != SaleStatus.PENDING:
            raise InvalidStateError(
                f"Only PENDING sales can be completed (sale is {sale.status})",
                details={"sale_id": sale.id, "status": sale.status},
            )
        if customer_id is not None:
            _get_customer(tenant_id, customer_id)
            sale.customer_id = customer_id
        if is_credit_sale is not None:
            sale.is_credit_sale = bool(is_credit_sale)
        return _complete_locked(
            sale,
            tenders,
            performed_by=performed_by,
            expected_payment_date=expected_payment_date,
        )

    sale = run_in_unit_of_work(_op, label="complete sale")
    current_app.logger.info("Held sale %s completed", sale.sale_number)
    return serialize_sale(sale)


def _append_note(sale: Sale, note: str | None) -> None:
    if note:
        sale.notes = f"{sale.notes}\n{note}" if sale.notes else note


def suspend_sale(tenant_id: int, sale_id: int, performed_by: int | None = None, reason: str | None = None) -> dict:
    def _op():
        sale = _get_sale_locked(tenant_id, sale_id)
        ensure_transition(sale.status, SaleStatus.SUSPENDED, entity_id=sale.id)
        sale.status = SaleStatus.SUSPENDED.value
        _append_note(sale, reason)
        return sale

    sale = run_in_unit_of_work(_op, label="suspend sale")
    current_app.logger.info("Sale %s suspended by user %s", sale.sale_number, performed_by)
    return serialize_sale(sale)


def resume_sale(tenant_id: int, sale_id: int, performed_by: int | None = None) -> dict:
    def _op():
        sale = _get_sale_locked(tenant_id, sale_id)
        ensure_transition(sale.status, SaleStatus.PENDING, entity_id=sale.id)
        sale.status = SaleStatus.PENDING.value
        return sale

    sale = run_in_unit_of_work(_op, label="resume sale")
    current_app.logger.info("Sale %s resumed by user %s", sale.sale_number, performed_by)
    return serialize_sale(sale)


def cancel_sale(tenant_id: int, sale_id: int, reason: str, performed_by: int | None = None) -> dict:
    """
    Cancel a PENDING, SUSPENDED or COMPLETED sale.

    For a COMPLETED sale this is a compensating action: every line's
    un-returned quantity goes back to its batch (RETURN / SALE_CANCEL),
    tenders are VOIDED, an open credit account is CLOSED and open returns
    and edit requests are rejected.
    """
    if not reason or not str(reason).strip():
        raise ValidationError("A cancellation reason is required")
    reason = str(reason).strip()[:255]

    def _op():
        sale = _get_sale_locked(tenant_id, sale_id)
        was_completed = sale.status == SaleStatus.COMPLETED
        ensure_transition(sale.status, SaleStatus.CANCELLED, entity_id=sale.id)

        if was_completed:
            for line in sale.active_lines:
                restore = line.quantity - (line.returned_quantity or 0)
                if restore <= 0:
                    continue
                _adjust_locked(
                    tenant_id,
                    line.product_id,
                    sale.branch_id,
                    restore,
                    batch_id=line.batch_id,
                    transaction_type=TransactionType.RETURN,
                    source_reference=sale.sale_number,
                    source_type=SourceType.SALE_CANCEL,
                    performed_by=performed_by,
                    notes=f"Cancelled: {reason}",
                )

            for payment in sale.payments:
                if payment.status != PaymentStatus.VOIDED:
                    payment.status = PaymentStatus.VOIDED.value

            account = sale_payments.credit_account_for(sale)
            if account is not None and account.status in (
                CreditStatus.ACTIVE, CreditStatus.OVERDUE, CreditStatus.SUSPENDED
            ):
                ensure_transition(account.status, CreditStatus.CLOSED, entity_id=account.id)
                account.status = CreditStatus.CLOSED.value
                account.closed_at = utcnow()
                account.notes = f"{account.notes}\nSale cancelled: {reason}" if account.notes else f"Sale cancelled: {reason}"

            now = utcnow()
            open_returns = db.session.query(SaleReturn).filter(
                SaleReturn.original_sale_id == sale.id,
                SaleReturn.status.in_([ReturnStatus.PENDING.value, ReturnStatus.APPROVED.value]),
            ).all()
            for sale_return in open_returns:
                sale_return.status = ReturnStatus.REJECTED.value
                sale_return.rejected_by = performed_by
                sale_return.rejected_at = now
                sale_return.rejection_reason = "Sale cancelled"

            pending_edits = db.session.query(SaleEditRequest).filter_by(
                sale_id=sale.id, status=EditRequestStatus.PENDING.value,
            ).all()
            for edit in pending_edits:
                edit.status = EditRequestStatus.REJECTED.value
                edit.decided_by = performed_by
                edit.decided_at = now
                edit.rejection_reason = "Sale cancelled"

        sale.status = SaleStatus.CANCELLED.value
        sale.cancelled_at = utcnow()
        sale.cancelled_by = performed_by
        sale.cancel_reason = reason
        sale_payments.refresh_payment_status(sale)
        return sale

    sale = run_in_unit_of_work(_op, label="cancel sale")
    current_app.logger.info("Sale %s cancelled by user %s: %s", sale.sale_number, performed_by, reason)
    return serialize_sale(sale)


def replace_failed_payment(
    tenant_id: int,
    sale_id: int,
    payment_id: int,
    payment_method,
    reference_number: str | None = None,
    performed_by: int | None = None,
) -> dict:
    """
    Re-tender a FAILED payment (typically an M-Pesa push that did not go
    through), or settle the PENDING adjustment an approved price increase
    left behind, with a real tender for the same amount. The replaced row is
    VOIDED so the sale balances again.
    """
    method = parse_enum(PaymentMethod, payment_method, "payment_method")
    if method not in TENDER_METHODS:
        raise ValidationError("ADJUSTMENT payments are system-generated")

    def _op():
        sale = _get_sale_locked(tenant_id, sale_id)
        if sale.status != SaleStatus.COMPLETED:
            raise InvalidStateError(
                "Payments can only be replaced on COMPLETED sales",
                details={"sale_id": sale.id, "status": sale.status},
            )
        failed = db.session.query(SalePayment).filter_by(id=payment_id, sale_id=sale.id, tenant_id=tenant_id).first()
        if failed is None:
            raise NotFoundError("Payment not found", details={"payment_id": payment_id})
        outstanding_adjustment = (
            failed.payment_method == PaymentMethod.ADJUSTMENT and failed.status == PaymentStatus.PENDING
        )
        if failed.status != PaymentStatus.FAILED and not outstanding_adjustment:
            raise InvalidStateError(
                "Only FAILED payments or outstanding adjustments can be replaced",
                details={"payment_id": failed.id, "status": failed.status},
            )

        failed.status = PaymentStatus.VOIDED.value
        failed.notes = "Settled" if outstanding_adjustment else "Replaced after failure"
        tender = TenderDraft(method=method, amount_cents=failed.amount_cents, reference_number=reference_number)
        sale_payments.add_payment(
            sale,
            payment_method=tender.method,
            amount_cents=tender.amount_cents,
            status=tender.initial_status,
            reference_number=tender.reference_number,
            notes=f"Replaces payment {failed.id}",
            created_by=performed_by,
        )
        db.session.flush()
        sale_payments.refresh_payment_status(sale)
        sale_payments.assert_payment_invariant(sale)
        return sale

    sale = run_in_unit_of_work(_op, label="replace payment")
    current_app.logger.info("Failed payment %s on sale %s re-tendered as %s", payment_id, sale.sale_number, method)
    return serialize_sale(sale)


def get_sale(tenant_id: int, sale_id: int) -> dict:
    sale = db.session.query(Sale).filter_by(id=sale_id, tenant_id=tenant_id).first()
    if sale is None:
        raise NotFoundError("Sale not found", details={"sale_id": sale_id})
    return serialize_sale(sale)


def scan_barcode(tenant_id: int, barcode: str, branch_id: int) -> dict:
    """Product by barcode plus its sellable batches at the branch, soonest expiry first."""
    if not barcode or not str(barcode).strip():
        raise ValidationError("barcode is required")
    get_branch(tenant_id, branch_id)
    product = db.session.query(Product).filter_by(tenant_id=tenant_id, barcode=str(barcode).strip()).first()
    if product is None:
        raise NotFoundError("No product with this barcode", details={"barcode": barcode})

    batches = available_batches(tenant_id, product.id, branch_id)
    return {
        "product": product.to_dict(),
        "batches": [batch.to_dict() for batch in batches],
        "total_available": sum(batch.quantity for batch in batches),
    }


def search_sales(
    tenant_id: int,
    filters: dict | None = None,
    page: int = 1,
    size: int = 20,
    *,
    include_commission: bool = False,
    commission_policy: CommissionPolicy | None = None,
) -> dict:
    """
    Filterable, newest-first sale listing.

    filters: branch_id, status, payment_status, cashier_id, customer_id,
    sale_number (substring), payment_method, start, end (datetimes on created_at).
    """
    filters = filters or {}
    query = db.session.query(Sale).filter(Sale.tenant_id == tenant_id)

    if filters.get("branch_id") is not None:
        query = query.filter(Sale.branch_id == filters["branch_id"])
    if filters.get("status"):
        query = query.filter(Sale.status == parse_enum(SaleStatus, filters["status"], "status").value)
    if filters.get("payment_status"):
        query = query.filter(
            Sale.payment_status == parse_enum(SalePaymentStatus, filters["payment_status"], "payment_status").value
        )
    if filters.get("cashier_id") is not None:
        query = query.filter(Sale.cashier_id == filters["cashier_id"])
    if filters.get("customer_id") is not None:
        query = query.filter(Sale.customer_id == filters["customer_id"])
    if filters.get("sale_number"):
        query = query.filter(Sale.sale_number.ilike(f"%{filters['sale_number']}%"))
    if filters.get("payment_method"):
        method = parse_enum(PaymentMethod, filters["payment_method"], "payment_method")
        paid_with = db.session.query(SalePayment.sale_id).filter(
            SalePayment.tenant_id == tenant_id,
            SalePayment.payment_method == method.value,
        )
        query = query.filter(Sale.id.in_(paid_with))
    start = filters.get("start")
    end = filters.get("end")
    if isinstance(start, datetime):
        query = query.filter(Sale.created_at >= start)
    if isinstance(end, datetime):
        query = query.filter(Sale.created_at <= end)

    page = max(page, 1)
    size = max(1, min(size, 200))
    total = query.count()
    total_filtered_cents = query.with_entities(func.coalesce(func.sum(Sale.total_amount_cents), 0)).scalar()
    rows = (
        query.order_by(Sale.created_at.desc(), Sale.id.desc())
        .offset((page - 1) * size)
        .limit(size)
        .all()
    )

    policy = None
    if include_commission:
        policy = commission_policy or default_policy()
    items = []
    for sale in rows:
        data = sale.to_dict()
        if policy is not None:
            data["commission_cents"] = policy.commission_for(sale)
        items.append(data)

    return {
        "items": items,
        "page": page,
        "size": size,
        "total": total,
        "total_filtered_cents": int(total_filtered_cents or 0),
    }
