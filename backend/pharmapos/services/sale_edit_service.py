# Overview: Service-layer operations for sale edit requests; maker-checker approval of price changes and line deletions.

from __future__ import annotations

from flask import current_app

from ..errors import InvalidStateError, NotFoundError, ValidationError
from ..extensions import db
from ..models import Sale, SaleEditRequest, SaleLineItem
from ..models.enums import (
    CreditStatus,
    EditRequestStatus,
    EditRequestType,
    PaymentMethod,
    PaymentStatus,
    SaleStatus,
    SourceType,
    TransactionType,
)
from ..time_utils import utcnow
from ..validation import MAX_PRICE_CENTS, coerce_int, parse_enum
from . import sale_payments, tax_service
from .concurrency import lock_for_update, run_in_unit_of_work
from .inventory_service import _adjust_locked
from .state_machine import ensure_transition
"""
Maker-checker rules

- Requests target a non-deleted, never-returned line of a COMPLETED sale.
- At most one PENDING request per line.
- The requester may not decide their own request; a request is decided once.
- Approval recomputes the line and sale totals from stored snapshots and
  reconciles the total delta against the sale's payments or credit account,
  so payments + credit remaining still equal the new total. An increase
  outside an open credit account is booked as a PENDING adjustment that
  leaves the sale AWAITING_PAYMENT until it is re-tendered.
"""

OPEN_CREDIT_STATUSES = (CreditStatus.ACTIVE.value, CreditStatus.OVERDUE.value, CreditStatus.SUSPENDED.value)


def _get_request_locked(tenant_id: int, request_id: int) -> SaleEditRequest:
    edit = lock_for_update(
        db.session.query(SaleEditRequest).filter_by(id=request_id, tenant_id=tenant_id)
    ).first()
    if edit is None:
        raise NotFoundError("Edit request not found", details={"request_id": request_id})
    return edit


def _check_line_editable(sale: Sale, line: SaleLineItem) -> None:
    if sale.status != SaleStatus.COMPLETED:
        raise InvalidStateError(
            f"Only COMPLETED sales can be edited (sale is {sale.status})",
            details={"sale_id": sale.id, "status": sale.status},
        )
    if line.is_deleted:
        raise InvalidStateError("Sale line has been deleted", details={"sale_line_item_id": line.id})
    if line.returned_quantity:
        raise InvalidStateError(
            "Sale line has returns recorded against it",
            details={"sale_line_item_id": line.id, "returned_quantity": line.returned_quantity},
        )


def create_edit_request(
    tenant_id: int,
    sale_id: int,
    sale_line_item_id: int,
    request_type,
    requested_by: int,
    new_unit_price_cents: int | None = None,
    reason: str | None = None,
) -> dict:
    request_type = parse_enum(EditRequestType, request_type, "request_type")
    if requested_by is None:
        raise ValidationError("requested_by is required")
    if request_type is EditRequestType.PRICE_CHANGE:
        if new_unit_price_cents is None:
            raise ValidationError("new_unit_price_cents is required for PRICE_CHANGE")
        new_unit_price_cents = coerce_int(new_unit_price_cents, "new_unit_price_cents")
        if new_unit_price_cents <= 0 or new_unit_price_cents > MAX_PRICE_CENTS:
            raise ValidationError(
                "new_unit_price_cents must be > 0",
                details={"new_unit_price_cents": new_unit_price_cents},
            )
    else:
        new_unit_price_cents = None

    def _op():
        sale = lock_for_update(db.session.query(Sale).filter_by(id=sale_id, tenant_id=tenant_id)).first()
        if sale is None:
            raise NotFoundError("Sale not found", details={"sale_id": sale_id})
        line = db.session.query(SaleLineItem).filter_by(id=sale_line_item_id, sale_id=sale.id).first()
        if line is None:
            raise NotFoundError(
                "Sale line not found on this sale",
                details={"sale_id": sale.id, "sale_line_item_id": sale_line_item_id},
            )
        _check_line_editable(sale, line)

        if request_type is EditRequestType.PRICE_CHANGE:
            if new_unit_price_cents == line.unit_price_cents:
                raise ValidationError("New price is the same as the current price")
            if line.discount_amount_cents > line.quantity * new_unit_price_cents:
                raise ValidationError(
                    "New price would leave the line discount larger than the line amount",
                    details={"discount_amount_cents": line.discount_amount_cents},
                )

        pending = db.session.query(SaleEditRequest.id).filter_by(
            sale_line_item_id=line.id, status=EditRequestStatus.PENDING.value,
        ).first()
        if pending is not None:
            raise InvalidStateError(
                "Sale line already has a pending edit request",
                details={"sale_line_item_id": line.id, "request_id": pending[0]},
            )

        edit = SaleEditRequest(
            tenant_id=tenant_id,
            sale_id=sale.id,
            sale_line_item_id=line.id,
            request_type=request_type.value,
            new_unit_price_cents=new_unit_price_cents,
            reason=reason,
            status=EditRequestStatus.PENDING.value,
            requested_by=requested_by,
            requested_at=utcnow(),
        )
        db.session.add(edit)
        return edit

    edit = run_in_unit_of_work(_op, label="create edit request")
    current_app.logger.info(
        "Edit request %s (%s) on sale %s by user %s",
        edit.id, edit.request_type, sale_id, requested_by,
    )
    return edit.to_dict()


def _reconcile_total_delta(sale: Sale, delta: int, *, decided_by: int | None, note: str) -> None:
    """Keep payments + credit remaining equal to the sale total after it moved by delta."""
    if delta == 0:
        return

    account = sale_payments.credit_account_for(sale)
    if account is not None and account.status in OPEN_CREDIT_STATUSES:
        remaining = account.remaining_amount_cents + delta
        excess = 0
        if remaining < 0:
            # Customer has already paid more than the new total
            excess = remaining
            remaining = 0
        account.remaining_amount_cents = remaining
        account.total_amount_cents = account.paid_amount_cents + remaining
        if excess:
            sale_payments.add_payment(
                sale,
                payment_method=PaymentMethod.ADJUSTMENT,
                amount_cents=excess,
                notes=note,
                created_by=decided_by,
            )
        if remaining == 0 and account.status != CreditStatus.SUSPENDED:
            ensure_transition(account.status, CreditStatus.PAID, entity_id=account.id)
            account.status = CreditStatus.PAID.value
            account.closed_at = utcnow()
        return

    # An increase is owed by the customer until it is re-tendered; a decrease is a refund already due
    sale_payments.add_payment(
        sale,
        payment_method=PaymentMethod.ADJUSTMENT,
        amount_cents=delta,
        status=PaymentStatus.PENDING if delta > 0 else PaymentStatus.COMPLETED,
        notes=note,
        created_by=decided_by,
    )


def _apply_locked(edit: SaleEditRequest, sale: Sale, line: SaleLineItem, *, decided_by: int | None) -> None:
    _check_line_editable(sale, line)
    previous_total = sale.total_amount_cents

    if edit.request_type == EditRequestType.PRICE_CHANGE:
        line.unit_price_cents = edit.new_unit_price_cents
    else:
        line.is_deleted = True
        line.deleted_at = utcnow()
        _adjust_locked(
            sale.tenant_id,
            line.product_id,
            sale.branch_id,
            line.quantity,
            batch_id=line.batch_id,
            transaction_type=TransactionType.RETURN,
            source_reference=f"{sale.sale_number}/EDIT-{edit.id}",
            source_type=SourceType.SALE_EDIT,
            performed_by=decided_by,
            notes=edit.reason,
        )

    tax_service.reprice_sale(sale)
    db.session.flush()

    edit.previous_total_cents = previous_total
    edit.new_total_cents = sale.total_amount_cents
    _reconcile_total_delta(
        sale,
        sale.total_amount_cents - previous_total,
        decided_by=decided_by,
        note=f"Edit request {edit.id} ({edit.request_type})",
    )
    db.session.flush()
    sale_payments.refresh_payment_status(sale)
    sale_payments.assert_payment_invariant(sale)


def approve_or_reject(
    tenant_id: int,
    request_id: int,
    approved: bool,
    decided_by: int,
    rejection_reason: str | None = None,
) -> dict:
    """
    Decide a PENDING request exactly once.

    The decider must differ from the requester. Approval applies the change
    to the sale in the same unit of work; rejection leaves the sale untouched.
    """
    if decided_by is None:
        raise ValidationError("decided_by is required")
    target = EditRequestStatus.APPROVED if approved else EditRequestStatus.REJECTED

    def _op():
        edit = _get_request_locked(tenant_id, request_id)
        ensure_transition(edit.status, target, entity_id=edit.id)
        if edit.requested_by == decided_by:
            raise ValidationError(
                "Edit requests must be decided by a different user than the requester",
                details={"request_id": edit.id, "requested_by": edit.requested_by},
            )

        if approved:
            sale = lock_for_update(db.session.query(Sale).filter_by(id=edit.sale_id, tenant_id=tenant_id)).first()
            line = db.session.get(SaleLineItem, edit.sale_line_item_id)
            _apply_locked(edit, sale, line, decided_by=decided_by)
        else:
            edit.rejection_reason = rejection_reason

        edit.status = target.value
        edit.decided_by = decided_by
        edit.decided_at = utcnow()
        return edit

    edit = run_in_unit_of_work(_op, label="decide edit request")
    current_app.logger.info(
        "Edit request %s %s by user %s (total %s -> %s)",
        edit.id, edit.status, decided_by, edit.previous_total_cents, edit.new_total_cents,
    )
    return edit.to_dict()


def _pending_query(tenant_id: int, branch_id: int | None = None):
    query = db.session.query(SaleEditRequest).filter(
        SaleEditRequest.tenant_id == tenant_id,
        SaleEditRequest.status == EditRequestStatus.PENDING.value,
    )
    if branch_id is not None:
        query = query.join(Sale, Sale.id == SaleEditRequest.sale_id).filter(Sale.branch_id == branch_id)
    return query


def list_pending_requests(tenant_id: int, branch_id: int | None = None) -> list[dict]:
    rows = _pending_query(tenant_id, branch_id).order_by(SaleEditRequest.requested_at.asc(), SaleEditRequest.id.asc()).all()
    return [row.to_dict() for row in rows]


def pending_count(tenant_id: int, branch_id: int | None = None) -> int:
    return _pending_query(tenant_id, branch_id).count()


def get_edit_request(tenant_id: int, request_id: int) -> dict:
    edit = db.session.query(SaleEditRequest).filter_by(id=request_id, tenant_id=tenant_id).first()
    if edit is None:
        raise NotFoundError("Edit request not found", details={"request_id": request_id})
    return edit.to_dict()
