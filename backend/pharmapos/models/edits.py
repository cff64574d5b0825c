from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z
from .enums import EditRequestStatus


class SaleEditRequest(db.Model):
    """
    Maker-checker request to change a line of a completed sale.

    The requester (maker) and decider (checker) must be different users.
    A request is decided exactly once; APPROVED and REJECTED are terminal.
    previous_total_cents / new_total_cents record the sale total around the
    approved change.
    """
    __tablename__ = "sale_edit_requests"
    __table_args__ = (
        db.Index("ix_sale_edit_requests_tenant_status", "tenant_id", "status"),
        db.Index("ix_sale_edit_requests_line_status", "sale_line_item_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    sale_line_item_id = db.Column(db.Integer, db.ForeignKey("sale_line_items.id"), nullable=False)

    request_type = db.Column(db.String(16), nullable=False)
    new_unit_price_cents = db.Column(db.Integer, nullable=True)
    reason = db.Column(db.String(255), nullable=True)

    status = db.Column(db.String(16), nullable=False, default=EditRequestStatus.PENDING.value)
    requested_by = db.Column(db.Integer, nullable=False)
    requested_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    decided_by = db.Column(db.Integer, nullable=True)
    decided_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejection_reason = db.Column(db.String(255), nullable=True)

    previous_total_cents = db.Column(db.Integer, nullable=True)
    new_total_cents = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    sale = db.relationship("Sale")
    line_item = db.relationship("SaleLineItem")
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        line = self.line_item
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "sale_id": self.sale_id,
            "sale_number": self.sale.sale_number if self.sale else None,
            "sale_line_item_id": self.sale_line_item_id,
            "product_id": line.product_id if line else None,
            "product_name": line.product.name if line and line.product else None,
            "current_unit_price_cents": line.unit_price_cents if line else None,
            "request_type": self.request_type,
            "new_unit_price_cents": self.new_unit_price_cents,
            "reason": self.reason,
            "status": self.status,
            "requested_by": self.requested_by,
            "requested_at": to_utc_z(self.requested_at),
            "decided_by": self.decided_by,
            "decided_at": to_utc_z(self.decided_at),
            "rejection_reason": self.rejection_reason,
            "previous_total_cents": self.previous_total_cents,
            "new_total_cents": self.new_total_cents,
        }
