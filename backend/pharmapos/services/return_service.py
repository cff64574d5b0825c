# Overview: Service-layer operations for customer returns; watermark validation, approval and stock restoration.

from __future__ import annotations

from flask import current_app
from sqlalchemy import func

from ..errors import InvalidStateError, NotFoundError, ValidationError
from ..extensions import db
from ..models import Sale, SaleLineItem, SaleReturn, SaleReturnLineItem
from ..models.enums import (
    ReturnStatus,
    SaleReturnStatus,
    SaleStatus,
    SourceType,
    TransactionType,
)
from ..time_utils import utcnow
from ..validation import MAX_QUANTITY, optional_bool, optional_str, parse_enum, require_int
from . import document_service
from .concurrency import lock_for_update, run_in_unit_of_work
from .inventory_service import _adjust_locked
from .state_machine import ensure_transition
"""
Return rules

- Only COMPLETED sales that are not fully returned accept returns.
- quantity_returned <= quantity - returned_quantity - quantity held by other
  open (PENDING / APPROVED) returns on the same line.
- Refunds use the original unit price of the sale line.
- Processing restores stock to the batch the line was sold from, bumps each
  line's returned_quantity and recomputes the sale's return_status from all
  of its non-deleted lines. A FULL return moves the sale to REFUNDED.
"""

OPEN_STATUSES = (ReturnStatus.PENDING.value, ReturnStatus.APPROVED.value)


def _get_return_locked(tenant_id: int, return_id: int) -> SaleReturn:
    sale_return = lock_for_update(
        db.session.query(SaleReturn).filter_by(id=return_id, tenant_id=tenant_id)
    ).first()
    if sale_return is None:
        raise NotFoundError("Return not found", details={"return_id": return_id})
    return sale_return


def _lock_sale(tenant_id: int, sale_id: int) -> Sale:
    sale = lock_for_update(db.session.query(Sale).filter_by(id=sale_id, tenant_id=tenant_id)).first()
    if sale is None:
        raise NotFoundError("Sale not found", details={"sale_id": sale_id})
    return sale


def _held_by_open_returns(line_item_id: int, exclude_return_id: int | None = None) -> int:
    query = (
        db.session.query(func.coalesce(func.sum(SaleReturnLineItem.quantity_returned), 0))
        .join(SaleReturn, SaleReturn.id == SaleReturnLineItem.return_id)
        .filter(
            SaleReturnLineItem.original_line_item_id == line_item_id,
            SaleReturn.status.in_(OPEN_STATUSES),
        )
    )
    if exclude_return_id is not None:
        query = query.filter(SaleReturn.id != exclude_return_id)
    return int(query.scalar() or 0)


def _check_sale_returnable(sale: Sale) -> None:
    if sale.status != SaleStatus.COMPLETED:
        raise InvalidStateError(
            f"Only COMPLETED sales can be returned (sale is {sale.status})",
            details={"sale_id": sale.id, "status": sale.status},
        )
    if sale.return_status == SaleReturnStatus.FULL:
        raise InvalidStateError("Sale has already been fully returned", details={"sale_id": sale.id})


def _check_watermark(line: SaleLineItem, quantity: int, *, exclude_return_id: int | None = None) -> None:
    held = _held_by_open_returns(line.id, exclude_return_id=exclude_return_id)
    available = line.quantity - (line.returned_quantity or 0) - held
    if quantity > available:
        raise ValidationError(
            "Return quantity exceeds what can still be returned",
            details={
                "sale_line_item_id": line.id,
                "requested": quantity,
                "sold": line.quantity,
                "already_returned": line.returned_quantity or 0,
                "held_by_open_returns": held,
                "returnable": max(available, 0),
            },
        )


def _recompute_return_status(sale: Sale) -> SaleReturnStatus:
    lines = sale.active_lines
    returned = sum(line.returned_quantity or 0 for line in lines)
    if returned == 0:
        status = SaleReturnStatus.NONE
    elif all((line.returned_quantity or 0) >= line.quantity for line in lines):
        status = SaleReturnStatus.FULL
    else:
        status = SaleReturnStatus.PARTIAL
    sale.return_status = status.value
    return status


def _process_locked(sale_return: SaleReturn, sale: Sale, *, processed_by: int | None) -> SaleReturn:
    ensure_transition(sale_return.status, ReturnStatus.PROCESSED, entity_id=sale_return.id)
    _check_sale_returnable(sale)

    for item in sale_return.lines:
        line = item.original_line_item
        if line.is_deleted:
            raise InvalidStateError(
                "Sale line was removed after the return was recorded",
                details={"sale_line_item_id": line.id},
            )
        _check_watermark(line, item.quantity_returned, exclude_return_id=sale_return.id)

        if item.restore_to_inventory:
            _adjust_locked(
                sale.tenant_id,
                line.product_id,
                sale.branch_id,
                item.quantity_returned,
                batch_id=line.batch_id,
                transaction_type=TransactionType.RETURN,
                source_reference=sale_return.return_number,
                source_type=SourceType.RETURN,
                performed_by=processed_by,
                notes=sale_return.return_reason,
            )
        line.returned_quantity = (line.returned_quantity or 0) + item.quantity_returned

    db.session.flush()
    if _recompute_return_status(sale) is SaleReturnStatus.FULL:
        ensure_transition(sale.status, SaleStatus.REFUNDED, entity_id=sale.id)
        sale.status = SaleStatus.REFUNDED.value

    sale_return.status = ReturnStatus.PROCESSED.value
    sale_return.processed_by = processed_by
    sale_return.processed_at = utcnow()
    return sale_return


def create_return(
    tenant_id: int,
    original_sale_id: int,
    reason: str,
    lines: list,
    processed_by: int | None = None,
    notes: str | None = None,
    auto_process: bool | None = None,
) -> dict:
    """
    Record a return against a completed sale.

    lines: [{sale_line_item_id, quantity_returned, restore_to_inventory=True, notes}]
    Processed immediately unless auto_process is False (or, when it is None,
    RETURNS_REQUIRE_APPROVAL is set), in which case it stays PENDING.
    """
    if not reason or not str(reason).strip():
        raise ValidationError("A return reason is required")
    if not lines:
        raise ValidationError("A return needs at least one line")
    if auto_process is None:
        auto_process = not current_app.config["RETURNS_REQUIRE_APPROVAL"]

    parsed = []
    seen = set()
    for index, raw in enumerate(lines):
        if not isinstance(raw, dict):
            raise ValidationError("each return line must be an object", details={"index": index})
        line_id = require_int(raw, "sale_line_item_id")
        if line_id in seen:
            raise ValidationError(
                "A sale line may appear only once per return",
                details={"index": index, "sale_line_item_id": line_id},
            )
        seen.add(line_id)
        parsed.append(
            (
                line_id,
                require_int(raw, "quantity_returned", minimum=1, maximum=MAX_QUANTITY),
                optional_bool(raw, "restore_to_inventory", True),
                optional_str(raw, "notes"),
            )
        )

    def _op():
        sale = _lock_sale(tenant_id, original_sale_id)
        _check_sale_returnable(sale)

        sale_return = SaleReturn(
            tenant_id=tenant_id,
            return_number=document_service.allocate(tenant_id, document_service.RETURN),
            original_sale_id=sale.id,
            branch_id=sale.branch_id,
            return_reason=str(reason).strip()[:255],
            status=ReturnStatus.PENDING.value,
            notes=notes,
            created_by=processed_by,
        )
        db.session.add(sale_return)

        total_refund = 0
        for line_id, quantity, restore, line_notes in parsed:
            line = db.session.query(SaleLineItem).filter_by(id=line_id, sale_id=sale.id, tenant_id=tenant_id).first()
            if line is None:
                raise NotFoundError(
                    "Sale line not found on this sale",
                    details={"sale_line_item_id": line_id, "sale_id": sale.id},
                )
            if line.is_deleted:
                raise ValidationError("Deleted sale lines cannot be returned", details={"sale_line_item_id": line_id})
            _check_watermark(line, quantity)

            refund = quantity * line.unit_price_cents
            total_refund += refund
            db.session.add(
                SaleReturnLineItem(
                    tenant_id=tenant_id,
                    sale_return=sale_return,
                    original_line_item=line,
                    product_id=line.product_id,
                    quantity_returned=quantity,
                    unit_price_cents=line.unit_price_cents,
                    refund_amount_cents=refund,
                    restore_to_inventory=restore,
                    notes=line_notes,
                )
            )

        sale_return.total_refund_cents = total_refund
        db.session.flush()

        if auto_process:
            sale_return.status = ReturnStatus.APPROVED.value
            sale_return.approved_by = processed_by
            sale_return.approved_at = utcnow()
            _process_locked(sale_return, sale, processed_by=processed_by)
        return sale_return

    sale_return = run_in_unit_of_work(_op, label="create return")
    current_app.logger.info(
        "Return %s (%s) against sale %s: refund=%s",
        sale_return.return_number, sale_return.status, original_sale_id, sale_return.total_refund_cents,
    )
    return sale_return.to_dict()


def approve_return(tenant_id: int, return_id: int, approved_by: int | None = None) -> dict:
    def _op():
        sale_return = _get_return_locked(tenant_id, return_id)
        ensure_transition(sale_return.status, ReturnStatus.APPROVED, entity_id=sale_return.id)
        sale_return.status = ReturnStatus.APPROVED.value
        sale_return.approved_by = approved_by
        sale_return.approved_at = utcnow()
        return sale_return

    sale_return = run_in_unit_of_work(_op, label="approve return")
    current_app.logger.info("Return %s approved by user %s", sale_return.return_number, approved_by)
    return sale_return.to_dict()


def process_return(tenant_id: int, return_id: int, processed_by: int | None = None) -> dict:
    def _op():
        sale_return = _get_return_locked(tenant_id, return_id)
        sale = _lock_sale(tenant_id, sale_return.original_sale_id)
        return _process_locked(sale_return, sale, processed_by=processed_by)

    sale_return = run_in_unit_of_work(_op, label="process return")
    current_app.logger.info("Return %s processed by user %s", sale_return.return_number, processed_by)
    return sale_return.to_dict()


def reject_return(tenant_id: int, return_id: int, rejected_by: int | None = None, reason: str | None = None) -> dict:
    def _op():
        sale_return = _get_return_locked(tenant_id, return_id)
        ensure_transition(sale_return.status, ReturnStatus.REJECTED, entity_id=sale_return.id)
        sale_return.status = ReturnStatus.REJECTED.value
        sale_return.rejected_by = rejected_by
        sale_return.rejected_at = utcnow()
        sale_return.rejection_reason = reason
        return sale_return

    sale_return = run_in_unit_of_work(_op, label="reject return")
    current_app.logger.info("Return %s rejected by user %s", sale_return.return_number, rejected_by)
    return sale_return.to_dict()


def get_return(tenant_id: int, return_id: int) -> dict:
    sale_return = db.session.query(SaleReturn).filter_by(id=return_id, tenant_id=tenant_id).first()
    if sale_return is None:
        raise NotFoundError("Return not found", details={"return_id": return_id})
    return sale_return.to_dict()


def list_sale_returns(tenant_id: int, sale_id: int | None = None, status: str | None = None, limit: int = 100) -> list[dict]:
    query = db.session.query(SaleReturn).filter(SaleReturn.tenant_id == tenant_id)
    if sale_id is not None:
        query = query.filter(SaleReturn.original_sale_id == sale_id)
    if status:
        query = query.filter(SaleReturn.status == parse_enum(ReturnStatus, status, "status").value)
    rows = query.order_by(SaleReturn.created_at.desc(), SaleReturn.id.desc()).limit(limit).all()
    return [row.to_dict(include_lines=False) for row in rows]
