from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, to_iso_date
from .enums import CreditStatus


class CreditAccount(db.Model):
    """
    Receivable opened for the unpaid balance of a credit sale (1:1 with Sale).

    INVARIANTS (enforced by CHECK constraints and credit_service):
    - paid_amount_cents >= 0, remaining_amount_cents >= 0
    - paid_amount_cents + remaining_amount_cents == total_amount_cents
    - PAID and CLOSED are terminal
    """
    __tablename__ = "credit_accounts"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "credit_number", name="uq_credit_accounts_tenant_number"),
        db.CheckConstraint("paid_amount_cents >= 0", name="ck_credit_accounts_paid_nonneg"),
        db.CheckConstraint("remaining_amount_cents >= 0", name="ck_credit_accounts_remaining_nonneg"),
        db.CheckConstraint(
            "paid_amount_cents + remaining_amount_cents = total_amount_cents",
            name="ck_credit_accounts_balance",
        ),
        db.Index("ix_credit_accounts_tenant_status_due", "tenant_id", "status", "expected_payment_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    credit_number = db.Column(db.String(64), nullable=False)

    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, unique=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=False, index=True)

    total_amount_cents = db.Column(db.Integer, nullable=False)
    paid_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    remaining_amount_cents = db.Column(db.Integer, nullable=False)

    expected_payment_date = db.Column(db.Date, nullable=True)
    status = db.Column(db.String(16), nullable=False, default=CreditStatus.ACTIVE.value, index=True)
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_by = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    sale = db.relationship("Sale", backref=db.backref("credit_account", uselist=False, lazy=True))
    customer = db.relationship("Customer")
    payments = db.relationship(
        "CreditPayment",
        back_populates="credit_account",
        order_by="CreditPayment.id",
        lazy=True,
    )
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self, include_payments: bool = False) -> dict:
        data = {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "credit_number": self.credit_number,
            "sale_id": self.sale_id,
            "sale_number": self.sale.sale_number if self.sale else None,
            "customer_id": self.customer_id,
            "customer_name": self.customer.display_name if self.customer else None,
            "branch_id": self.branch_id,
            "total_amount_cents": self.total_amount_cents,
            "paid_amount_cents": self.paid_amount_cents,
            "remaining_amount_cents": self.remaining_amount_cents,
            "expected_payment_date": to_iso_date(self.expected_payment_date),
            "status": self.status,
            "closed_at": to_utc_z(self.closed_at),
            "notes": self.notes,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_payments:
            data["payments"] = [p.to_dict() for p in self.payments]
        return data


class CreditPayment(db.Model):
    """Repayment collected against a credit account. Append-only."""
    __tablename__ = "credit_payments"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "payment_number", name="uq_credit_payments_tenant_number"),
        db.CheckConstraint("amount_cents > 0", name="ck_credit_payments_amount_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    credit_account_id = db.Column(db.Integer, db.ForeignKey("credit_accounts.id"), nullable=False, index=True)

    payment_number = db.Column(db.String(64), nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)
    payment_method = db.Column(db.String(16), nullable=False)
    reference_number = db.Column(db.String(64), nullable=True)
    received_by = db.Column(db.Integer, nullable=True)
    payment_date = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    notes = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    credit_account = db.relationship("CreditAccount", back_populates="payments")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "credit_account_id": self.credit_account_id,
            "payment_number": self.payment_number,
            "amount_cents": self.amount_cents,
            "payment_method": self.payment_method,
            "reference_number": self.reference_number,
            "received_by": self.received_by,
            "payment_date": to_utc_z(self.payment_date),
            "notes": self.notes,
        }
