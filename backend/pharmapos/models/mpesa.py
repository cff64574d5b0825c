from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z
from .enums import MpesaStatus


class MpesaTransaction(db.Model):
    """
    One STK push attempt and its asynchronous outcome.

    PENDING until the Daraja callback arrives; COMPLETED / CANCELLED / FAILED
    are terminal and never revert. The callback only ever touches this row
    and the linked sale payment, never inventory.
    """
    __tablename__ = "mpesa_transactions"
    __table_args__ = (
        db.Index("ix_mpesa_transactions_tenant_status", "tenant_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    sale_payment_id = db.Column(db.Integer, db.ForeignKey("sale_payments.id"), nullable=True, index=True)

    phone_number = db.Column(db.String(16), nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)
    till_number = db.Column(db.String(32), nullable=False)

    merchant_request_id = db.Column(db.String(64), nullable=True)
    checkout_request_id = db.Column(db.String(64), nullable=True, unique=True)

    status = db.Column(db.String(16), nullable=False, default=MpesaStatus.PENDING.value)
    mpesa_receipt_number = db.Column(db.String(32), nullable=True)
    error_code = db.Column(db.String(16), nullable=True)
    error_message = db.Column(db.String(255), nullable=True)
    callback_received = db.Column(db.Boolean, nullable=False, default=False)

    requested_by = db.Column(db.Integer, nullable=True)
    requested_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    sale = db.relationship("Sale")
    sale_payment = db.relationship("SalePayment")
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "sale_id": self.sale_id,
            "sale_payment_id": self.sale_payment_id,
            "phone_number": self.phone_number,
            "amount_cents": self.amount_cents,
            "till_number": self.till_number,
            "merchant_request_id": self.merchant_request_id,
            "checkout_request_id": self.checkout_request_id,
            "status": self.status,
            "mpesa_receipt_number": self.mpesa_receipt_number,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "callback_received": self.callback_received,
            "requested_at": to_utc_z(self.requested_at),
            "completed_at": to_utc_z(self.completed_at),
        }
