# Overview: Service-layer helpers for sale payment state; derived status and the payment invariant.

from __future__ import annotations

from ..errors import InvariantViolationError
from ..extensions import db
from ..models import CreditAccount, Sale, SalePayment
from ..models.enums import (
    CreditStatus,
    PaymentMethod,
    PaymentStatus,
    SalePaymentStatus,
    SaleStatus,
)

# Tenders allocated against the sale total. A FAILED tender stays allocated
# until it is re-tendered (the failed row is then VOIDED).
COUNTED_STATUSES = (PaymentStatus.COMPLETED.value, PaymentStatus.PENDING.value, PaymentStatus.FAILED.value)


def credit_account_for(sale: Sale) -> CreditAccount | None:
    return db.session.query(CreditAccount).filter_by(sale_id=sale.id, tenant_id=sale.tenant_id).first()


def counted_payments_cents(sale: Sale) -> int:
    return sum(p.amount_cents for p in sale.payments if p.status in COUNTED_STATUSES)


def payment_balance_cents(sale: Sale) -> int:
    """
    total - (counted payments + credit remaining). Zero when the sale balances.
    """
    account = credit_account_for(sale)
    remaining = account.remaining_amount_cents if account is not None else 0
    return sale.total_amount_cents - counted_payments_cents(sale) - remaining


def assert_payment_invariant(sale: Sale) -> None:
    """Raise InvariantViolationError if a COMPLETED sale does not balance to the cent."""
    if sale.status != SaleStatus.COMPLETED:
        return
    db.session.flush()
    balance = payment_balance_cents(sale)
    if balance != 0:
        raise InvariantViolationError(
            "Sale payments do not balance with the sale total",
            details={
                "sale_id": sale.id,
                "sale_number": sale.sale_number,
                "total_amount_cents": sale.total_amount_cents,
                "unbalanced_cents": balance,
            },
        )


def refresh_payment_status(sale: Sale) -> str:
    """
    Derive Sale.payment_status from its payments and credit account.

    CANCELLED -> VOIDED; any FAILED tender -> PAYMENT_FAILED; any PENDING
    tender -> AWAITING_PAYMENT; open credit balance -> CREDIT; else PAID.
    """
    if sale.status == SaleStatus.CANCELLED:
        status = SalePaymentStatus.VOIDED
    elif sale.status in (SaleStatus.PENDING, SaleStatus.SUSPENDED):
        status = SalePaymentStatus.AWAITING_PAYMENT
    else:
        statuses = {p.status for p in sale.payments}
        account = credit_account_for(sale)
        if PaymentStatus.FAILED.value in statuses:
            status = SalePaymentStatus.PAYMENT_FAILED
        elif PaymentStatus.PENDING.value in statuses:
            status = SalePaymentStatus.AWAITING_PAYMENT
        elif (
            account is not None
            and account.remaining_amount_cents > 0
            and account.status != CreditStatus.PAID
        ):
            status = SalePaymentStatus.CREDIT
        else:
            status = SalePaymentStatus.PAID
    sale.payment_status = status.value
    return sale.payment_status


def add_payment(
    sale: Sale,
    *,
    payment_method: PaymentMethod,
    amount_cents: int,
    status: PaymentStatus = PaymentStatus.COMPLETED,
    reference_number: str | None = None,
    notes: str | None = None,
    created_by: int | None = None,
) -> SalePayment:
    payment = SalePayment(
        tenant_id=sale.tenant_id,
        sale=sale,
        payment_method=PaymentMethod(payment_method).value,
        amount_cents=amount_cents,
        status=PaymentStatus(status).value,
        reference_number=reference_number,
        notes=notes,
        created_by=created_by,
    )
    db.session.add(payment)
    return payment
