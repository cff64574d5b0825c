from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z
from .enums import ReturnStatus


class SaleReturn(db.Model):
    """
    Customer return against a completed sale.

    LIFECYCLE:
    1. PENDING: recorded, awaiting manager approval (only when approval is required)
    2. APPROVED: approved, stock not yet restored
    3. PROCESSED: stock restored, refund issued, sale return_status updated
    4. REJECTED: terminal, nothing changed on the sale

    Refunds always use the ORIGINAL unit price of the sale line, never the
    current product price.
    """
    __tablename__ = "sale_returns"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "return_number", name="uq_sale_returns_tenant_number"),
        db.CheckConstraint("total_refund_cents >= 0", name="ck_sale_returns_refund_nonneg"),
        db.Index("ix_sale_returns_tenant_status", "tenant_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    return_number = db.Column(db.String(64), nullable=False)

    original_sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=False, index=True)

    return_reason = db.Column(db.String(255), nullable=False)
    total_refund_cents = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(16), nullable=False, default=ReturnStatus.PENDING.value, index=True)
    notes = db.Column(db.Text, nullable=True)

    created_by = db.Column(db.Integer, nullable=True)
    approved_by = db.Column(db.Integer, nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    processed_by = db.Column(db.Integer, nullable=True)
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejected_by = db.Column(db.Integer, nullable=True)
    rejected_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejection_reason = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    original_sale = db.relationship("Sale", backref=db.backref("returns", lazy=True))
    lines = db.relationship(
        "SaleReturnLineItem",
        back_populates="sale_return",
        order_by="SaleReturnLineItem.id",
        lazy=True,
    )
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self, include_lines: bool = True) -> dict:
        data = {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "return_number": self.return_number,
            "original_sale_id": self.original_sale_id,
            "sale_number": self.original_sale.sale_number if self.original_sale else None,
            "branch_id": self.branch_id,
            "return_reason": self.return_reason,
            "total_refund_cents": self.total_refund_cents,
            "status": self.status,
            "notes": self.notes,
            "created_by": self.created_by,
            "approved_by": self.approved_by,
            "approved_at": to_utc_z(self.approved_at),
            "processed_by": self.processed_by,
            "processed_at": to_utc_z(self.processed_at),
            "rejected_by": self.rejected_by,
            "rejected_at": to_utc_z(self.rejected_at),
            "rejection_reason": self.rejection_reason,
            "created_at": to_utc_z(self.created_at),
        }
        if include_lines:
            data["lines"] = [line.to_dict() for line in self.lines]
        return data


class SaleReturnLineItem(db.Model):
    __tablename__ = "sale_return_line_items"
    __table_args__ = (
        db.CheckConstraint("quantity_returned > 0", name="ck_sale_return_lines_quantity_positive"),
        db.CheckConstraint("refund_amount_cents >= 0", name="ck_sale_return_lines_refund_nonneg"),
        db.UniqueConstraint("return_id", "original_line_item_id", name="uq_sale_return_lines_return_line"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    return_id = db.Column(db.Integer, db.ForeignKey("sale_returns.id"), nullable=False, index=True)
    original_line_item_id = db.Column(db.Integer, db.ForeignKey("sale_line_items.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)

    quantity_returned = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    refund_amount_cents = db.Column(db.Integer, nullable=False)
    restore_to_inventory = db.Column(db.Boolean, nullable=False, default=True)
    notes = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    sale_return = db.relationship("SaleReturn", back_populates="lines")
    original_line_item = db.relationship("SaleLineItem")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "return_id": self.return_id,
            "original_line_item_id": self.original_line_item_id,
            "product_id": self.product_id,
            "quantity_returned": self.quantity_returned,
            "unit_price_cents": self.unit_price_cents,
            "refund_amount_cents": self.refund_amount_cents,
            "restore_to_inventory": self.restore_to_inventory,
            "notes": self.notes,
        }
