# Overview: Service-layer operations for inventory; batch quantities and the audited adjustment ledger.

# backend/pharmapos/services/inventory_service.py

from __future__ import annotations

from dataclasses import dataclass
from datetime import date

from flask import current_app

from ..errors import (
    InsufficientStockError,
    NotFoundError,
    ValidationError,
)
from ..extensions import db
from ..models import Branch, InventoryAuditLog, InventoryBatch, Product
from ..models.enums import SourceType, TransactionType
from ..time_utils import today
from ..validation import coerce_int
from . import audit_service, document_service
from .concurrency import lock_for_update, run_in_unit_of_work
"""
Inventory Ledger invariants (authoritative)

- InventoryBatch.quantity is the stored on-hand figure per batch and never
  goes below zero (checked here first, CHECK constraint as the backstop).
- Every change to a quantity goes through _adjust_locked, which writes exactly
  one audit entry in the same unit of work. No other code assigns
  InventoryBatch.quantity after creation.
- Batch rows are locked (SELECT ... FOR UPDATE, BEGIN IMMEDIATE on SQLite) and
  versioned (version_id_col); a lost update surfaces as StaleDataError and the
  unit of work is retried.
- A retried mutation with the same idempotency key is a no-op that records a
  duplicate audit entry and returns the current quantity.

Batch selection when no batch is named:
- soonest expiry first, batches without expiry last, then lowest id
- for deductions, the first active batch that can absorb the whole delta
"""


RECEIVE_SOURCE_TYPES = {
    TransactionType.PURCHASE: SourceType.PURCHASE_ORDER,
    TransactionType.INITIAL_STOCK: SourceType.INITIAL_STOCK,
}


@dataclass
class AdjustmentResult:
    batch: InventoryBatch
    quantity: int
    entry: InventoryAuditLog
    duplicate: bool = False


def get_product(tenant_id: int, product_id: int) -> Product:
    product = db.session.query(Product).filter_by(id=product_id, tenant_id=tenant_id).first()
    if product is None:
        raise NotFoundError("Product not found", details={"product_id": product_id})
    return product


def get_branch(tenant_id: int, branch_id: int) -> Branch:
    branch = db.session.query(Branch).filter_by(id=branch_id, tenant_id=tenant_id).first()
    if branch is None:
        raise NotFoundError("Branch not found", details={"branch_id": branch_id})
    return branch


def _expiry_order():
    return (
        InventoryBatch.expiry_date.is_(None).asc(),
        InventoryBatch.expiry_date.asc(),
        InventoryBatch.id.asc(),
    )


def _lock_batch(tenant_id: int, batch_id: int) -> InventoryBatch:
    batch = lock_for_update(
        db.session.query(InventoryBatch).filter_by(id=batch_id, tenant_id=tenant_id)
    ).first()
    if batch is None:
        raise NotFoundError("Inventory batch not found", details={"batch_id": batch_id})
    return batch


def _select_batch(
    tenant_id: int,
    product_id: int,
    branch_id: int,
    delta: int,
    *,
    batch_id: int | None,
    batch_number: str | None,
) -> InventoryBatch:
    if batch_id is not None:
        batch = _lock_batch(tenant_id, batch_id)
        if batch.product_id != product_id or batch.branch_id != branch_id:
            raise NotFoundError(
                "Inventory batch does not belong to this product and branch",
                details={"batch_id": batch_id, "product_id": product_id, "branch_id": branch_id},
            )
        return batch

    query = db.session.query(InventoryBatch).filter_by(
        tenant_id=tenant_id,
        product_id=product_id,
        branch_id=branch_id,
    )
    if batch_number is not None:
        batch = lock_for_update(
            query.filter(InventoryBatch.batch_number == batch_number).order_by(
                InventoryBatch.is_active.desc(), InventoryBatch.id.asc()
            )
        ).first()
        if batch is None:
            raise NotFoundError(
                "Inventory batch not found",
                details={"product_id": product_id, "branch_id": branch_id, "batch_number": batch_number},
            )
        return batch

    candidates = lock_for_update(
        query.filter(InventoryBatch.is_active.is_(True)).order_by(*_expiry_order())
    ).all()
    if not candidates:
        if delta < 0:
            raise InsufficientStockError(
                "No stock available for product at this branch",
                details={"product_id": product_id, "branch_id": branch_id, "available": 0, "requested": -delta},
            )
        raise NotFoundError(
            "No active batch for product at this branch",
            details={"product_id": product_id, "branch_id": branch_id},
        )
    if delta > 0:
        return candidates[0]
    for batch in candidates:
        if batch.quantity >= -delta:
            return batch
    raise InsufficientStockError(
        "No single batch can cover the requested quantity",
        details={
            "product_id": product_id,
            "branch_id": branch_id,
            "available": max(b.quantity for b in candidates),
            "requested": -delta,
        },
    )


def _adjust_locked(
    tenant_id: int,
    product_id: int,
    branch_id: int,
    delta: int,
    *,
    batch_id: int | None = None,
    batch_number: str | None = None,
    transaction_type,
    source_reference: str,
    source_type,
    performed_by: int | None = None,
    notes: str | None = None,
) -> AdjustmentResult:
    """
    Apply one audited quantity change inside the caller's unit of work.

    Never commits. Any exception leaves the caller to roll back.
    """
    delta = coerce_int(delta, "delta")
    if delta == 0:
        raise ValidationError("Quantity change must be non-zero", details={"delta": delta})
    try:
        transaction_type = TransactionType.parse(transaction_type)
    except ValueError:
        raise ValidationError(f"Unknown transaction type: {transaction_type}")
    try:
        source_type = SourceType.parse(source_type)
    except ValueError:
        raise ValidationError(f"Unknown source type: {source_type}")
    if not source_reference:
        raise ValidationError("source_reference is required")

    get_product(tenant_id, product_id)
    get_branch(tenant_id, branch_id)

    original = audit_service.find_original(tenant_id, product_id, branch_id, source_reference, source_type)
    if original is not None:
        if original.quantity_changed != delta or original.transaction_type != transaction_type.value:
            raise ValidationError(
                "Source reference already recorded a different mutation",
                details={
                    "source_reference": source_reference,
                    "source_type": source_type.value,
                    "recorded_delta": original.quantity_changed,
                    "requested_delta": delta,
                },
            )
        batch = _lock_batch(tenant_id, original.batch_id)
        entry = audit_service.record_duplicate(original, performed_by=performed_by)
        return AdjustmentResult(batch=batch, quantity=batch.quantity, entry=entry, duplicate=True)

    batch = _select_batch(
        tenant_id, product_id, branch_id, delta,
        batch_id=batch_id, batch_number=batch_number,
    )
    if delta < 0 and not batch.is_active:
        raise ValidationError("Cannot deduct from an inactive batch", details={"batch_id": batch.id})

    before = batch.quantity
    after = before + delta
    if after < 0:
        raise InsufficientStockError(
            "Insufficient stock in batch",
            details={
                "product_id": product_id,
                "branch_id": branch_id,
                "batch_id": batch.id,
                "batch_number": batch.batch_number,
                "available": before,
                "requested": -delta,
            },
        )

    batch.quantity = after
    db.session.flush()

    entry = audit_service.record_entry(
        tenant_id=tenant_id,
        product_id=product_id,
        branch_id=branch_id,
        batch_id=batch.id,
        transaction_type=transaction_type,
        quantity_changed=delta,
        quantity_before=before,
        quantity_after=after,
        source_reference=source_reference,
        source_type=source_type,
        performed_by=performed_by,
        notes=notes,
        batch_number=batch.batch_number,
        unit_cost_cents=batch.unit_cost_cents,
        selling_price_cents=batch.selling_price_cents,
    )
    return AdjustmentResult(batch=batch, quantity=after, entry=entry)


def adjust(
    tenant_id: int,
    product_id: int,
    branch_id: int,
    delta: int,
    *,
    batch_id: int | None = None,
    batch_number: str | None = None,
    transaction_type,
    source_reference: str,
    source_type,
    performed_by: int | None = None,
    notes: str | None = None,
) -> int:
    """
    Change a batch quantity by delta and append the matching audit entry.

    One unit of work: the quantity change and the audit row commit together
    or not at all. Returns the batch's new quantity.
    """
    def _op():
        return _adjust_locked(
            tenant_id, product_id, branch_id, delta,
            batch_id=batch_id,
            batch_number=batch_number,
            transaction_type=transaction_type,
            source_reference=source_reference,
            source_type=source_type,
            performed_by=performed_by,
            notes=notes,
        ).quantity

    return run_in_unit_of_work(_op, label="inventory adjustment")


def transfer(
    tenant_id: int,
    product_id: int,
    from_branch_id: int,
    to_branch_id: int,
    quantity: int,
    *,
    batch_number: str | None = None,
    performed_by: int | None = None,
    notes: str | None = None,
) -> dict:
    """
    Move stock between branches: TRANSFER_OUT then TRANSFER_IN, one unit of work.

    The destination batch mirrors the source batch (number, expiry, cost,
    price) and is created when missing.
    """
    quantity = coerce_int(quantity, "quantity")
    if quantity <= 0:
        raise ValidationError("Transfer quantity must be positive", details={"quantity": quantity})
    if from_branch_id == to_branch_id:
        raise ValidationError("Source and destination branch must differ")

    def _op():
        get_branch(tenant_id, from_branch_id)
        get_branch(tenant_id, to_branch_id)
        reference = document_service.allocate(tenant_id, document_service.TRANSFER)

        out = _adjust_locked(
            tenant_id, product_id, from_branch_id, -quantity,
            batch_number=batch_number,
            transaction_type=TransactionType.TRANSFER_OUT,
            source_reference=reference,
            source_type=SourceType.INVENTORY_TRANSFER,
            performed_by=performed_by,
            notes=notes,
        )
        source = out.batch

        dest_query = db.session.query(InventoryBatch).filter_by(
            tenant_id=tenant_id,
            product_id=product_id,
            branch_id=to_branch_id,
            is_active=True,
        )
        if source.batch_number is None:
            dest_query = dest_query.filter(InventoryBatch.batch_number.is_(None))
        else:
            dest_query = dest_query.filter(InventoryBatch.batch_number == source.batch_number)
        dest = lock_for_update(dest_query.order_by(InventoryBatch.id.asc())).first()
        if dest is None:
            dest = InventoryBatch(
                tenant_id=tenant_id,
                product_id=product_id,
                branch_id=to_branch_id,
                batch_number=source.batch_number,
                expiry_date=source.expiry_date,
                quantity=0,
                unit_cost_cents=source.unit_cost_cents,
                selling_price_cents=source.selling_price_cents,
                is_active=True,
            )
            db.session.add(dest)
            db.session.flush()

        into = _adjust_locked(
            tenant_id, product_id, to_branch_id, quantity,
            batch_id=dest.id,
            transaction_type=TransactionType.TRANSFER_IN,
            source_reference=reference,
            source_type=SourceType.INVENTORY_TRANSFER,
            performed_by=performed_by,
            notes=notes,
        )
        return reference, out.batch, into.batch

    reference, source, dest = run_in_unit_of_work(_op, label="inventory transfer")
    current_app.logger.info(
        "Transferred %s of product %s from branch %s to %s (%s)",
        quantity, product_id, from_branch_id, to_branch_id, reference,
    )
    return {
        "transfer_reference": reference,
        "quantity": quantity,
        "from_batch": source.to_dict(),
        "to_batch": dest.to_dict(),
    }


def receive_stock(
    tenant_id: int,
    product_id: int,
    branch_id: int,
    quantity: int,
    *,
    batch_number: str | None = None,
    expiry_date: date | None = None,
    unit_cost_cents: int | None = None,
    selling_price_cents: int | None = None,
    transaction_type=TransactionType.PURCHASE,
    source_reference: str | None = None,
    performed_by: int | None = None,
    notes: str | None = None,
) -> dict:
    """
    Create or top up a batch from a purchase receipt or initial stock entry.
    """
    quantity = coerce_int(quantity, "quantity")
    if quantity <= 0:
        raise ValidationError("Received quantity must be positive", details={"quantity": quantity})
    try:
        transaction_type = TransactionType.parse(transaction_type)
    except ValueError:
        raise ValidationError(f"Unknown transaction type: {transaction_type}")
    if transaction_type not in RECEIVE_SOURCE_TYPES:
        raise ValidationError("Stock can only be received as PURCHASE or INITIAL_STOCK")
    source_type = RECEIVE_SOURCE_TYPES[transaction_type]
    for field, value in (("unit_cost_cents", unit_cost_cents), ("selling_price_cents", selling_price_cents)):
        if value is not None and coerce_int(value, field) < 0:
            raise ValidationError(f"{field} must be >= 0")

    def _op():
        product = get_product(tenant_id, product_id)
        get_branch(tenant_id, branch_id)
        reference = source_reference or document_service.allocate(tenant_id, document_service.RECEIPT)

        original = audit_service.find_original(tenant_id, product_id, branch_id, reference, source_type)
        if original is not None:
            # Replayed receipt: let the ledger record the duplicate against the original batch
            return _adjust_locked(
                tenant_id, product_id, branch_id, quantity,
                batch_id=original.batch_id,
                transaction_type=transaction_type,
                source_reference=reference,
                source_type=source_type,
                performed_by=performed_by,
                notes=notes,
            ).batch

        batch = None
        if batch_number:
            batch = lock_for_update(
                db.session.query(InventoryBatch).filter_by(
                    tenant_id=tenant_id,
                    product_id=product_id,
                    branch_id=branch_id,
                    batch_number=batch_number,
                ).order_by(InventoryBatch.id.asc())
            ).first()
            if batch is not None:
                if not batch.is_active:
                    raise ValidationError("Batch is inactive", details={"batch_id": batch.id})
                if expiry_date is not None and batch.expiry_date is not None and batch.expiry_date != expiry_date:
                    raise ValidationError(
                        "Expiry date does not match the existing batch",
                        details={"batch_id": batch.id, "expiry_date": batch.expiry_date.isoformat()},
                    )
        if batch is None:
            batch = InventoryBatch(
                tenant_id=tenant_id,
                product_id=product_id,
                branch_id=branch_id,
                batch_number=batch_number,
                expiry_date=expiry_date,
                quantity=0,
                unit_cost_cents=unit_cost_cents if unit_cost_cents is not None else product.unit_cost_cents,
                selling_price_cents=(
                    selling_price_cents if selling_price_cents is not None else product.selling_price_cents
                ),
                is_active=True,
            )
            db.session.add(batch)
            db.session.flush()

        return _adjust_locked(
            tenant_id, product_id, branch_id, quantity,
            batch_id=batch.id,
            transaction_type=transaction_type,
            source_reference=reference,
            source_type=source_type,
            performed_by=performed_by,
            notes=notes,
        ).batch

    batch = run_in_unit_of_work(_op, label="stock receipt")
    return batch.to_dict()


def deactivate_batch(tenant_id: int, batch_id: int, *, performed_by: int | None = None) -> dict:
    """
    Soft-deactivate an empty batch. Batches are never deleted once created.
    """
    def _op():
        batch = _lock_batch(tenant_id, batch_id)
        if not batch.is_active:
            return batch
        if batch.quantity > 0:
            raise ValidationError(
                "Batch still holds stock; write it off before deactivating",
                details={"batch_id": batch.id, "quantity": batch.quantity},
            )
        batch.is_active = False
        return batch

    batch = run_in_unit_of_work(_op, label="batch deactivation")
    current_app.logger.info("Batch %s deactivated by user %s", batch_id, performed_by)
    return batch.to_dict()


def get_batch(tenant_id: int, batch_id: int) -> InventoryBatch:
    batch = db.session.query(InventoryBatch).filter_by(id=batch_id, tenant_id=tenant_id).first()
    if batch is None:
        raise NotFoundError("Inventory batch not found", details={"batch_id": batch_id})
    return batch


def list_batches(
    tenant_id: int,
    branch_id: int,
    product_id: int | None = None,
    include_inactive: bool = False,
) -> list[InventoryBatch]:
    query = db.session.query(InventoryBatch).filter_by(tenant_id=tenant_id, branch_id=branch_id)
    if product_id is not None:
        query = query.filter(InventoryBatch.product_id == product_id)
    if not include_inactive:
        query = query.filter(InventoryBatch.is_active.is_(True))
    return query.order_by(InventoryBatch.product_id.asc(), *_expiry_order()).all()


def available_batches(tenant_id: int, product_id: int, branch_id: int, as_of: date | None = None) -> list[InventoryBatch]:
    """Sellable batches: active, in stock, not expired. Soonest expiry first."""
    as_of = as_of or today()
    return (
        db.session.query(InventoryBatch)
        .filter(
            InventoryBatch.tenant_id == tenant_id,
            InventoryBatch.product_id == product_id,
            InventoryBatch.branch_id == branch_id,
            InventoryBatch.is_active.is_(True),
            InventoryBatch.quantity > 0,
            (InventoryBatch.expiry_date.is_(None)) | (InventoryBatch.expiry_date >= as_of),
        )
        .order_by(*_expiry_order())
        .all()
    )
