from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, to_iso_date
from .enums import (
    PricingMode,
    SaleStatus,
    SaleReturnStatus,
    SalePaymentStatus,
    PaymentStatus,
)


class Sale(db.Model):
    """
    Point-of-sale transaction header.

    LIFECYCLE:
    1. PENDING: held at the counter, priced but no stock moved yet
    2. SUSPENDED: parked PENDING sale (e.g. customer stepped away)
    3. COMPLETED: stock deducted, tenders recorded
    4. CANCELLED: terminal; a cancelled COMPLETED sale has its stock restored
    5. REFUNDED: terminal; every unit has been returned

    INVARIANTS:
    - total_amount_cents = sum(line_total_cents) over non-deleted lines
    - for COMPLETED sales: sum(non-VOIDED payments)
      + credit_account.remaining_amount_cents == total_amount_cents
    - pricing_mode is a snapshot; later tenant changes do not reprice old sales
    """
    __tablename__ = "sales"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "sale_number", name="uq_sales_tenant_number"),
        db.CheckConstraint("subtotal_cents >= 0", name="ck_sales_subtotal_nonneg"),
        db.CheckConstraint("tax_amount_cents >= 0", name="ck_sales_tax_nonneg"),
        db.CheckConstraint("discount_amount_cents >= 0", name="ck_sales_discount_nonneg"),
        db.CheckConstraint("total_amount_cents >= 0", name="ck_sales_total_nonneg"),
        db.Index("ix_sales_tenant_branch_created", "tenant_id", "branch_id", "created_at"),
        db.Index("ix_sales_tenant_status", "tenant_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=False, index=True)

    # Human-readable number, e.g. "SALE-001-000042"
    sale_number = db.Column(db.String(64), nullable=False)

    cashier_id = db.Column(db.Integer, nullable=True, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True, index=True)
    customer_name = db.Column(db.String(255), nullable=True)  # walk-in
    customer_phone = db.Column(db.String(32), nullable=True)

    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    total_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    pricing_mode = db.Column(db.String(16), nullable=False, default=PricingMode.EXCLUSIVE.value)

    status = db.Column(db.String(16), nullable=False, default=SaleStatus.PENDING.value, index=True)
    return_status = db.Column(db.String(16), nullable=False, default=SaleReturnStatus.NONE.value)
    payment_status = db.Column(db.String(24), nullable=False, default=SalePaymentStatus.AWAITING_PAYMENT.value)
    is_credit_sale = db.Column(db.Boolean, nullable=False, default=False)

    notes = db.Column(db.Text, nullable=True)

    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_by = db.Column(db.Integer, nullable=True)
    cancel_reason = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    branch = db.relationship("Branch")
    customer = db.relationship("Customer")
    lines = db.relationship(
        "SaleLineItem",
        back_populates="sale",
        order_by="SaleLineItem.line_number",
        lazy=True,
    )
    payments = db.relationship(
        "SalePayment",
        back_populates="sale",
        order_by="SalePayment.id",
        lazy=True,
    )
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def active_lines(self) -> list["SaleLineItem"]:
        return [line for line in self.lines if not line.is_deleted]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "branch_id": self.branch_id,
            "sale_number": self.sale_number,
            "cashier_id": self.cashier_id,
            "customer_id": self.customer_id,
            "customer_name": self.customer_name,
            "customer_phone": self.customer_phone,
            "subtotal_cents": self.subtotal_cents,
            "tax_amount_cents": self.tax_amount_cents,
            "discount_amount_cents": self.discount_amount_cents,
            "total_amount_cents": self.total_amount_cents,
            "pricing_mode": self.pricing_mode,
            "status": self.status,
            "return_status": self.return_status,
            "payment_status": self.payment_status,
            "is_credit_sale": self.is_credit_sale,
            "notes": self.notes,
            "completed_at": to_utc_z(self.completed_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "cancel_reason": self.cancel_reason,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class SaleLineItem(db.Model):
    """
    One product line on a sale, bound to the batch it was sold from.

    Prices, cost and tax rate are snapshots taken at sale time. Lines removed
    by an approved LINE_DELETE edit are soft-deleted and excluded from totals.
    """
    __tablename__ = "sale_line_items"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_sale_line_items_quantity_positive"),
        db.CheckConstraint(
            "returned_quantity >= 0 AND returned_quantity <= quantity",
            name="ck_sale_line_items_returned_range",
        ),
        db.CheckConstraint("unit_price_cents > 0", name="ck_sale_line_items_price_positive"),
        db.CheckConstraint("discount_amount_cents >= 0", name="ck_sale_line_items_discount_nonneg"),
        db.UniqueConstraint("sale_id", "line_number", name="uq_sale_line_items_sale_line"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    line_number = db.Column(db.Integer, nullable=False)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    batch_id = db.Column(db.Integer, db.ForeignKey("inventory_batches.id"), nullable=False, index=True)
    batch_number = db.Column(db.String(64), nullable=True)
    expiry_date = db.Column(db.Date, nullable=True)

    quantity = db.Column(db.Integer, nullable=False)
    returned_quantity = db.Column(db.Integer, nullable=False, default=0)

    unit_price_cents = db.Column(db.Integer, nullable=False)
    unit_cost_cents = db.Column(db.Integer, nullable=True)
    discount_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_rate_bps = db.Column(db.Integer, nullable=False, default=0)
    tax_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    line_total_cents = db.Column(db.Integer, nullable=False, default=0)

    is_deleted = db.Column(db.Boolean, nullable=False, default=False)
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    sale = db.relationship("Sale", back_populates="lines")
    product = db.relationship("Product")
    batch = db.relationship("InventoryBatch")

    @property
    def returnable_quantity(self) -> int:
        return self.quantity - (self.returned_quantity or 0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "line_number": self.line_number,
            "product_id": self.product_id,
            "product_name": self.product.name if self.product else None,
            "batch_id": self.batch_id,
            "batch_number": self.batch_number,
            "expiry_date": to_iso_date(self.expiry_date),
            "quantity": self.quantity,
            "returned_quantity": self.returned_quantity,
            "unit_price_cents": self.unit_price_cents,
            "unit_cost_cents": self.unit_cost_cents,
            "discount_amount_cents": self.discount_amount_cents,
            "tax_rate_bps": self.tax_rate_bps,
            "tax_amount_cents": self.tax_amount_cents,
            "line_total_cents": self.line_total_cents,
            "is_deleted": self.is_deleted,
            "deleted_at": to_utc_z(self.deleted_at),
        }


class SalePayment(db.Model):
    """
    One tender applied to a sale.

    Amounts are positive except for system-generated ADJUSTMENT rows, which
    carry the delta of an approved sale edit (negative = refund owed).
    """
    __tablename__ = "sale_payments"
    __table_args__ = (
        db.CheckConstraint("amount_cents <> 0", name="ck_sale_payments_amount_nonzero"),
        db.CheckConstraint(
            "amount_cents > 0 OR payment_method = 'ADJUSTMENT'",
            name="ck_sale_payments_negative_only_adjustment",
        ),
        db.Index("ix_sale_payments_sale_status", "sale_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)

    payment_method = db.Column(db.String(16), nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)
    reference_number = db.Column(db.String(64), nullable=True)
    status = db.Column(db.String(16), nullable=False, default=PaymentStatus.COMPLETED.value)
    notes = db.Column(db.String(255), nullable=True)

    created_by = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    sale = db.relationship("Sale", back_populates="payments")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "payment_method": self.payment_method,
            "amount_cents": self.amount_cents,
            "reference_number": self.reference_number,
            "status": self.status,
            "notes": self.notes,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
        }
