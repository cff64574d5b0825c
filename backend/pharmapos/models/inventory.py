from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, to_iso_date
from .enums import TaxClassification


class Product(db.Model):
    """
    Product master data, tenant-scoped.

    Product CRUD lives outside this service; the engine reads products for
    barcode lookup, pricing defaults and tax classification.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "barcode", name="uq_products_tenant_barcode"),
        db.Index("ix_products_tenant_name", "tenant_id", "name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)

    name = db.Column(db.String(255), nullable=False)
    barcode = db.Column(db.String(64), nullable=True)

    # Authoritative storage in cents
    unit_cost_cents = db.Column(db.Integer, nullable=True)
    selling_price_cents = db.Column(db.Integer, nullable=True)

    tax_classification = db.Column(db.String(16), nullable=False, default=TaxClassification.STANDARD.value)
    tax_rate_bps = db.Column(db.Integer, nullable=True)  # overrides the classification default

    requires_prescription = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def __repr__(self) -> str:
        return f"<Product id={self.id} name={self.name!r} tenant_id={self.tenant_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "barcode": self.barcode,
            "unit_cost_cents": self.unit_cost_cents,
            "selling_price_cents": self.selling_price_cents,
            "tax_classification": self.tax_classification,
            "tax_rate_bps": self.tax_rate_bps,
            "requires_prescription": self.requires_prescription,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class InventoryBatch(db.Model):
    """
    Stock of one product at one branch, optionally tied to a lot/expiry.

    INVARIANTS:
    - quantity never goes below zero (CHECK constraint is the last line of defence;
      the ledger refuses the mutation first)
    - quantity is only changed by inventory_service, which writes an audit entry
      in the same unit of work
    - batches referenced by sale lines are soft-deactivated, never deleted

    version_id gives optimistic locking on top of SELECT ... FOR UPDATE.
    """
    __tablename__ = "inventory_batches"
    __table_args__ = (
        db.CheckConstraint("quantity >= 0", name="ck_inventory_batches_quantity_nonneg"),
        db.Index("ix_inventory_batches_lookup", "tenant_id", "branch_id", "product_id"),
        db.Index("ix_inventory_batches_batch_number", "tenant_id", "product_id", "branch_id", "batch_number"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=False, index=True)

    batch_number = db.Column(db.String(64), nullable=True)
    expiry_date = db.Column(db.Date, nullable=True)

    quantity = db.Column(db.Integer, nullable=False, default=0)
    unit_cost_cents = db.Column(db.Integer, nullable=True)
    selling_price_cents = db.Column(db.Integer, nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    product = db.relationship("Product")
    branch = db.relationship("Branch")
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return (
            f"<InventoryBatch id={self.id} product_id={self.product_id} "
            f"branch_id={self.branch_id} batch={self.batch_number!r} qty={self.quantity}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "product_id": self.product_id,
            "branch_id": self.branch_id,
            "batch_number": self.batch_number,
            "expiry_date": to_iso_date(self.expiry_date),
            "quantity": self.quantity,
            "unit_cost_cents": self.unit_cost_cents,
            "selling_price_cents": self.selling_price_cents,
            "is_active": self.is_active,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class InventoryAuditLog(db.Model):
    """
    Append-only record of one inventory quantity mutation.

    IMMUTABLE: rows are never updated or deleted.

    INVARIANTS:
    - quantity_after = quantity_before + quantity_changed
    - quantity_changed != 0
    - at most one non-duplicate row per
      (tenant_id, product_id, branch_id, source_reference, source_type);
      retried writes are kept as is_duplicate=True rows pointing at the original
    """
    __tablename__ = "inventory_audit_logs"
    __table_args__ = (
        db.Index(
            "uq_inventory_audit_logs_idempotency",
            "tenant_id", "product_id", "branch_id", "source_reference", "source_type",
            unique=True,
            sqlite_where=db.text("is_duplicate = 0"),
            postgresql_where=db.text("is_duplicate = false"),
        ),
        db.Index("ix_inventory_audit_logs_product_branch", "tenant_id", "product_id", "branch_id", "performed_at"),
        db.Index("ix_inventory_audit_logs_source", "tenant_id", "source_reference"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=False)
    batch_id = db.Column(db.Integer, db.ForeignKey("inventory_batches.id"), nullable=True, index=True)

    transaction_type = db.Column(db.String(32), nullable=False, index=True)
    quantity_changed = db.Column(db.Integer, nullable=False)
    quantity_before = db.Column(db.Integer, nullable=False)
    quantity_after = db.Column(db.Integer, nullable=False)

    unit_cost_cents = db.Column(db.Integer, nullable=True)
    selling_price_cents = db.Column(db.Integer, nullable=True)
    batch_number = db.Column(db.String(64), nullable=True)

    source_reference = db.Column(db.String(128), nullable=False)
    source_type = db.Column(db.String(32), nullable=False)

    performed_by = db.Column(db.Integer, nullable=True)
    performed_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    notes = db.Column(db.String(255), nullable=True)

    is_duplicate = db.Column(db.Boolean, nullable=False, default=False)
    duplicate_of_id = db.Column(db.Integer, db.ForeignKey("inventory_audit_logs.id"), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "product_id": self.product_id,
            "branch_id": self.branch_id,
            "batch_id": self.batch_id,
            "transaction_type": self.transaction_type,
            "quantity_changed": self.quantity_changed,
            "quantity_before": self.quantity_before,
            "quantity_after": self.quantity_after,
            "unit_cost_cents": self.unit_cost_cents,
            "selling_price_cents": self.selling_price_cents,
            "batch_number": self.batch_number,
            "source_reference": self.source_reference,
            "source_type": self.source_type,
            "performed_by": self.performed_by,
            "performed_at": to_utc_z(self.performed_at),
            "notes": self.notes,
            "is_duplicate": self.is_duplicate,
            "duplicate_of_id": self.duplicate_of_id,
        }
