# Overview: Service-layer operations for the inventory audit log; append-only writer and reconciliation queries.

from __future__ import annotations

from datetime import datetime

from flask import current_app
from sqlalchemy import func

from ..errors import InvariantViolationError, ValidationError
from ..extensions import db
from ..models import InventoryAuditLog, InventoryBatch
from ..models.enums import TransactionType, SourceType
from ..time_utils import utcnow

"""
Audit log rules (authoritative)

- Rows are only ever inserted. There is no update or delete function here and
  nothing else in the code base writes to inventory_audit_logs.
- quantity_after = quantity_before + quantity_changed, quantity_changed != 0.
  A violation is a programming error, never corrected silently: the whole unit
  of work is aborted with InvariantViolationError.
- Idempotency key: (tenant, product, branch, source_reference, source_type).
  At most one non-duplicate row per key (partial unique index). A retried
  mutation is recorded as is_duplicate=True pointing at the original.
"""


def find_original(
    tenant_id: int,
    product_id: int,
    branch_id: int,
    source_reference: str,
    source_type: str,
) -> InventoryAuditLog | None:
    """Return the non-duplicate entry for an idempotency key, if any."""
    return (
        db.session.query(InventoryAuditLog)
        .filter(
            InventoryAuditLog.tenant_id == tenant_id,
            InventoryAuditLog.product_id == product_id,
            InventoryAuditLog.branch_id == branch_id,
            InventoryAuditLog.source_reference == source_reference,
            InventoryAuditLog.source_type == str(source_type),
            InventoryAuditLog.is_duplicate.is_(False),
        )
        .first()
    )


def record_entry(
    *,
    tenant_id: int,
    product_id: int,
    branch_id: int,
    batch_id: int | None,
    transaction_type: TransactionType,
    quantity_changed: int,
    quantity_before: int,
    quantity_after: int,
    source_reference: str,
    source_type: SourceType,
    performed_by: int | None = None,
    notes: str | None = None,
    batch_number: str | None = None,
    unit_cost_cents: int | None = None,
    selling_price_cents: int | None = None,
) -> InventoryAuditLog:
    """
    Append one audit entry inside the caller's unit of work.

    Never commits. Raises InvariantViolationError if the arithmetic does not
    hold or the idempotency key already has an original entry.
    """
    details = {
        "product_id": product_id,
        "branch_id": branch_id,
        "batch_id": batch_id,
        "quantity_before": quantity_before,
        "quantity_changed": quantity_changed,
        "quantity_after": quantity_after,
        "source_reference": source_reference,
        "source_type": str(source_type),
    }
    if quantity_changed == 0:
        raise InvariantViolationError("Audit entry with zero quantity change", details=details)
    if quantity_after != quantity_before + quantity_changed:
        raise InvariantViolationError("Audit entry arithmetic does not balance", details=details)
    if quantity_after < 0:
        raise InvariantViolationError("Audit entry would record negative stock", details=details)
    if not source_reference:
        raise InvariantViolationError("Audit entry without source reference", details=details)

    if find_original(tenant_id, product_id, branch_id, source_reference, source_type) is not None:
        raise InvariantViolationError("Idempotency key already recorded", details=details)

    entry = InventoryAuditLog(
        tenant_id=tenant_id,
        product_id=product_id,
        branch_id=branch_id,
        batch_id=batch_id,
        transaction_type=TransactionType(transaction_type).value,
        quantity_changed=quantity_changed,
        quantity_before=quantity_before,
        quantity_after=quantity_after,
        source_reference=source_reference,
        source_type=SourceType(source_type).value,
        performed_by=performed_by,
        performed_at=utcnow(),
        notes=notes,
        batch_number=batch_number,
        unit_cost_cents=unit_cost_cents,
        selling_price_cents=selling_price_cents,
        is_duplicate=False,
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def record_duplicate(original: InventoryAuditLog, *, performed_by: int | None = None, notes: str | None = None) -> InventoryAuditLog:
    """
    Record a suppressed retry of an already-applied mutation.

    The quantities are copied from the original so every row still satisfies
    after = before + changed; the batch itself is not touched again.
    """
    entry = InventoryAuditLog(
        tenant_id=original.tenant_id,
        product_id=original.product_id,
        branch_id=original.branch_id,
        batch_id=original.batch_id,
        transaction_type=original.transaction_type,
        quantity_changed=original.quantity_changed,
        quantity_before=original.quantity_before,
        quantity_after=original.quantity_after,
        source_reference=original.source_reference,
        source_type=original.source_type,
        performed_by=performed_by,
        performed_at=utcnow(),
        notes=notes or f"Duplicate of audit entry {original.id}",
        batch_number=original.batch_number,
        unit_cost_cents=original.unit_cost_cents,
        selling_price_cents=original.selling_price_cents,
        is_duplicate=True,
        duplicate_of_id=original.id,
    )
    db.session.add(entry)
    db.session.flush()
    current_app.logger.warning(
        "Duplicate inventory mutation suppressed: %s/%s product=%s branch=%s (original entry %s)",
        original.source_type, original.source_reference, original.product_id, original.branch_id, original.id,
    )
    return entry


def query_entries(
    tenant_id: int,
    *,
    product_id: int | None = None,
    branch_id: int | None = None,
    transaction_type: str | None = None,
    source_reference: str | None = None,
    source_type: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    include_duplicates: bool = True,
    limit: int = 500,
) -> list[InventoryAuditLog]:
    """Read-only query for reconciliation and reporting. Oldest first."""
    query = db.session.query(InventoryAuditLog).filter(InventoryAuditLog.tenant_id == tenant_id)
    if product_id is not None:
        query = query.filter(InventoryAuditLog.product_id == product_id)
    if branch_id is not None:
        query = query.filter(InventoryAuditLog.branch_id == branch_id)
    if transaction_type:
        try:
            query = query.filter(InventoryAuditLog.transaction_type == TransactionType.parse(transaction_type).value)
        except ValueError:
            raise ValidationError(f"Unknown transaction type: {transaction_type}")
    if source_reference:
        query = query.filter(InventoryAuditLog.source_reference == source_reference)
    if source_type:
        try:
            query = query.filter(InventoryAuditLog.source_type == SourceType.parse(source_type).value)
        except ValueError:
            raise ValidationError(f"Unknown source type: {source_type}")
    if start is not None:
        query = query.filter(InventoryAuditLog.performed_at >= start)
    if end is not None:
        query = query.filter(InventoryAuditLog.performed_at <= end)
    if not include_duplicates:
        query = query.filter(InventoryAuditLog.is_duplicate.is_(False))

    limit = max(1, min(limit, 5000))
    return query.order_by(InventoryAuditLog.id.asc()).limit(limit).all()


def reconcile(tenant_id: int) -> dict:
    """
    Re-check the audit trail against itself and against current batch quantities.

    - every row balances (after = before + changed, changed != 0)
    - no batch is negative
    - each batch's quantity equals quantity_after of its latest original entry
    """
    arithmetic_violations = [
        row.id
        for row in db.session.query(InventoryAuditLog)
        .filter(
            InventoryAuditLog.tenant_id == tenant_id,
            (InventoryAuditLog.quantity_after != InventoryAuditLog.quantity_before + InventoryAuditLog.quantity_changed)
            | (InventoryAuditLog.quantity_changed == 0),
        )
        .all()
    ]

    negative_batches = [
        row.id
        for row in db.session.query(InventoryBatch.id)
        .filter(InventoryBatch.tenant_id == tenant_id, InventoryBatch.quantity < 0)
        .all()
    ]

    latest = (
        db.session.query(
            InventoryAuditLog.batch_id,
            func.max(InventoryAuditLog.id).label("last_id"),
        )
        .filter(
            InventoryAuditLog.tenant_id == tenant_id,
            InventoryAuditLog.batch_id.isnot(None),
            InventoryAuditLog.is_duplicate.is_(False),
        )
        .group_by(InventoryAuditLog.batch_id)
        .subquery()
    )
    rows = (
        db.session.query(InventoryBatch.id, InventoryBatch.quantity, InventoryAuditLog.quantity_after)
        .join(latest, latest.c.batch_id == InventoryBatch.id)
        .join(InventoryAuditLog, InventoryAuditLog.id == latest.c.last_id)
        .filter(InventoryBatch.tenant_id == tenant_id)
        .all()
    )
    batch_mismatches = [
        {"batch_id": batch_id, "quantity": quantity, "last_audit_quantity": audit_quantity}
        for batch_id, quantity, audit_quantity in rows
        if quantity != audit_quantity
    ]

    entries_checked = (
        db.session.query(func.count(InventoryAuditLog.id))
        .filter(InventoryAuditLog.tenant_id == tenant_id)
        .scalar()
    ) or 0

    ok = not (arithmetic_violations or negative_batches or batch_mismatches)
    if not ok:
        current_app.logger.critical(
            "Inventory reconciliation failed for tenant %s: %s bad rows, %s negative batches, %s mismatches",
            tenant_id, len(arithmetic_violations), len(negative_batches), len(batch_mismatches),
        )
    return {
        "tenant_id": tenant_id,
        "entries_checked": int(entries_checked),
        "arithmetic_violations": arithmetic_violations,
        "negative_batches": negative_batches,
        "batch_mismatches": batch_mismatches,
        "ok": ok,
    }
