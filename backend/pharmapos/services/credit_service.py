# Overview: Service-layer operations for customer credit accounts; opening, repayments and status sweeps.

from __future__ import annotations

import threading
from datetime import date, timedelta

from flask import current_app
from sqlalchemy import func, update

from ..errors import InvalidStateError, NotFoundError, ValidationError
from ..extensions import db
from ..models import CreditAccount, CreditPayment, Customer, Sale
from ..models.enums import CreditStatus, PaymentMethod, SaleStatus, TENDER_METHODS
from ..time_utils import today as business_today, utcnow
from ..validation import coerce_int
from . import document_service, sale_payments
from .concurrency import lock_for_update, run_in_unit_of_work
from .state_machine import ensure_transition
"""
Credit account rules

- total_amount_cents is the full sale total; paid_amount_cents starts at the
  upfront tender and grows with each repayment.
- paid + remaining == total, both >= 0, at all times.
- Each repayment is also written to the sale as a SalePayment, so the sale's
  payments plus the account's remaining balance always equal the sale total.
- Overpayment is rejected, never clamped.
"""

# Statuses an administrator may set directly
ADMIN_STATUSES = {CreditStatus.ACTIVE, CreditStatus.CLOSED, CreditStatus.SUSPENDED}
PAYABLE_STATUSES = {CreditStatus.ACTIVE.value, CreditStatus.OVERDUE.value}


def _get_account_locked(tenant_id: int, credit_account_id: int) -> CreditAccount:
    account = lock_for_update(
        db.session.query(CreditAccount).filter_by(id=credit_account_id, tenant_id=tenant_id)
    ).first()
    if account is None:
        raise NotFoundError("Credit account not found", details={"credit_account_id": credit_account_id})
    return account


def _parse_tender(method) -> PaymentMethod:
    try:
        method = PaymentMethod.parse(method)
    except ValueError:
        raise ValidationError(f"Invalid payment method: {method!r}", details={"allowed": [m.value for m in TENDER_METHODS]})
    if method not in TENDER_METHODS:
        raise ValidationError("ADJUSTMENT is not a tender", details={"allowed": [m.value for m in TENDER_METHODS]})
    return method


def default_expected_payment_date(start: date | None = None) -> date:
    start = start or business_today()
    return start + timedelta(days=current_app.config["CREDIT_DEFAULT_TERM_DAYS"])


def _open_locked(
    sale: Sale,
    *,
    customer_id: int,
    total_cents: int,
    paid_cents: int = 0,
    expected_payment_date: date | None = None,
    created_by: int | None = None,
    upfront_method: PaymentMethod | None = None,
    notes: str | None = None,
) -> CreditAccount:
    """
    Open the credit account of a sale inside the caller's unit of work.

    An upfront paid amount is recorded as the initial CreditPayment; it
    mirrors tenders already on the sale, so no SalePayment is added here.
    """
    if total_cents <= 0:
        raise ValidationError("Credit total must be positive", details={"total_amount_cents": total_cents})
    if paid_cents < 0:
        raise ValidationError("Paid amount cannot be negative", details={"paid_amount_cents": paid_cents})
    if paid_cents > total_cents:
        raise ValidationError(
            "Paid amount exceeds credit total",
            details={"paid_amount_cents": paid_cents, "total_amount_cents": total_cents},
        )

    customer = db.session.query(Customer).filter_by(id=customer_id, tenant_id=sale.tenant_id).first()
    if customer is None:
        raise NotFoundError("Customer not found", details={"customer_id": customer_id})
    if not customer.is_active:
        raise ValidationError("Customer is inactive", details={"customer_id": customer_id})

    existing = db.session.query(CreditAccount.id).filter_by(sale_id=sale.id).first()
    if existing is not None:
        raise InvalidStateError(
            "Sale already has a credit account",
            details={"sale_id": sale.id, "credit_account_id": existing[0]},
        )

    account = CreditAccount(
        tenant_id=sale.tenant_id,
        credit_number=document_service.allocate(sale.tenant_id, document_service.CREDIT_ACCOUNT),
        sale=sale,
        customer_id=customer_id,
        branch_id=sale.branch_id,
        total_amount_cents=total_cents,
        paid_amount_cents=paid_cents,
        remaining_amount_cents=total_cents - paid_cents,
        expected_payment_date=expected_payment_date or default_expected_payment_date(),
        status=CreditStatus.ACTIVE.value,
        notes=notes,
        created_by=created_by,
    )
    db.session.add(account)
    db.session.flush()

    if paid_cents > 0:
        db.session.add(
            CreditPayment(
                tenant_id=sale.tenant_id,
                credit_account=account,
                payment_number=document_service.allocate(sale.tenant_id, document_service.CREDIT_PAYMENT),
                amount_cents=paid_cents,
                payment_method=(upfront_method or PaymentMethod.CASH).value,
                reference_number=sale.sale_number,
                received_by=created_by,
                payment_date=utcnow(),
                notes="Upfront payment at sale",
            )
        )
    db.session.flush()
    current_app.logger.info(
        "Credit account %s opened for sale %s: total=%s paid=%s remaining=%s",
        account.credit_number, sale.sale_number, total_cents, paid_cents, account.remaining_amount_cents,
    )
    return account


def open_credit_account(
    tenant_id: int,
    sale_id: int,
    customer_id: int,
    total_cents: int,
    paid_cents: int = 0,
    expected_payment_date: date | None = None,
    created_by: int | None = None,
    notes: str | None = None,
) -> dict:
    total_cents = coerce_int(total_cents, "total_amount_cents")
    paid_cents = coerce_int(paid_cents, "paid_amount_cents")

    def _op():
        sale = lock_for_update(db.session.query(Sale).filter_by(id=sale_id, tenant_id=tenant_id)).first()
        if sale is None:
            raise NotFoundError("Sale not found", details={"sale_id": sale_id})
        if sale.status == SaleStatus.COMPLETED and (
            total_cents != sale.total_amount_cents
            or paid_cents != sale_payments.counted_payments_cents(sale)
        ):
            raise ValidationError(
                "Credit account must cover exactly the unpaid balance of the sale",
                details={
                    "total_amount_cents": sale.total_amount_cents,
                    "paid_amount_cents": sale_payments.counted_payments_cents(sale),
                },
            )
        account = _open_locked(
            sale,
            customer_id=customer_id,
            total_cents=total_cents,
            paid_cents=paid_cents,
            expected_payment_date=expected_payment_date,
            created_by=created_by,
            notes=notes,
        )
        sale.is_credit_sale = True
        if sale.customer_id is None:
            sale.customer_id = customer_id
        sale_payments.refresh_payment_status(sale)
        return account

    account = run_in_unit_of_work(_op, label="open credit account")
    return account.to_dict(include_payments=True)


def _status_after_partial_payment(account: CreditAccount, today: date) -> CreditStatus:
    current = CreditStatus(account.status)
    if (
        current is CreditStatus.ACTIVE
        and account.expected_payment_date is not None
        and account.expected_payment_date < today
    ):
        return CreditStatus.OVERDUE
    return current


def make_payment(
    tenant_id: int,
    credit_account_id: int,
    amount_cents: int,
    payment_method,
    reference_number: str | None = None,
    received_by: int | None = None,
    notes: str | None = None,
) -> dict:
    """
    Apply a repayment.

    Rejected without touching the account when amount <= 0, amount exceeds
    the remaining balance, or the account is PAID / CLOSED / SUSPENDED.
    """
    amount_cents = coerce_int(amount_cents, "amount_cents")
    method = _parse_tender(payment_method)

    def _op():
        account = _get_account_locked(tenant_id, credit_account_id)
        if account.status not in PAYABLE_STATUSES:
            raise InvalidStateError(
                f"Cannot accept payments on a {account.status} credit account",
                details={"credit_account_id": account.id, "status": account.status},
            )
        if amount_cents <= 0:
            raise ValidationError("Payment amount must be positive", details={"amount_cents": amount_cents})
        if amount_cents > account.remaining_amount_cents:
            raise ValidationError(
                "Payment exceeds remaining balance",
                details={
                    "amount_cents": amount_cents,
                    "remaining_amount_cents": account.remaining_amount_cents,
                },
            )

        payment_number = document_service.allocate(tenant_id, document_service.CREDIT_PAYMENT)
        payment = CreditPayment(
            tenant_id=tenant_id,
            credit_account=account,
            payment_number=payment_number,
            amount_cents=amount_cents,
            payment_method=method.value,
            reference_number=reference_number,
            received_by=received_by,
            payment_date=utcnow(),
            notes=notes,
        )
        db.session.add(payment)

        account.paid_amount_cents += amount_cents
        account.remaining_amount_cents -= amount_cents

        sale = lock_for_update(db.session.query(Sale).filter_by(id=account.sale_id, tenant_id=tenant_id)).first()
        sale_payments.add_payment(
            sale,
            payment_method=method,
            amount_cents=amount_cents,
            reference_number=reference_number or payment_number,
            notes=f"Credit repayment {payment_number} on {account.credit_number}",
            created_by=received_by,
        )

        if account.remaining_amount_cents == 0:
            ensure_transition(account.status, CreditStatus.PAID, entity_id=account.id)
            account.status = CreditStatus.PAID.value
            account.closed_at = utcnow()
        else:
            new_status = _status_after_partial_payment(account, business_today())
            if new_status.value != account.status:
                ensure_transition(account.status, new_status, entity_id=account.id)
                account.status = new_status.value
        sale_payments.refresh_payment_status(sale)

        db.session.flush()
        sale_payments.assert_payment_invariant(sale)
        return account

    account = run_in_unit_of_work(_op, label="credit payment")
    current_app.logger.info(
        "Credit payment of %s applied to %s; remaining=%s status=%s",
        amount_cents, account.credit_number, account.remaining_amount_cents, account.status,
    )
    return account.to_dict(include_payments=True)


def update_overdue_accounts(tenant_id: int | None = None, today: date | None = None) -> int:
    """
    Move every ACTIVE account past its expected payment date to OVERDUE.

    Each row is claimed with its own conditional UPDATE (WHERE status =
    'ACTIVE'), so concurrent sweeps and repayments never double-apply and
    rerunning the sweep changes nothing. Returns the number of rows moved.
    """
    today = today or business_today()

    def _op():
        query = db.session.query(CreditAccount.id).filter(
            CreditAccount.status == CreditStatus.ACTIVE.value,
            CreditAccount.expected_payment_date.isnot(None),
            CreditAccount.expected_payment_date < today,
        )
        if tenant_id is not None:
            query = query.filter(CreditAccount.tenant_id == tenant_id)
        candidate_ids = [row.id for row in query.order_by(CreditAccount.id.asc()).all()]

        moved = 0
        for account_id in candidate_ids:
            stmt = (
                update(CreditAccount)
                .where(
                    CreditAccount.id == account_id,
                    CreditAccount.status == CreditStatus.ACTIVE.value,
                )
                .values(
                    status=CreditStatus.OVERDUE.value,
                    version_id=CreditAccount.version_id + 1,
                    updated_at=func.now(),
                )
                .execution_options(synchronize_session=False)
            )
            moved += db.session.execute(stmt).rowcount or 0
        return moved

    moved = run_in_unit_of_work(_op, label="overdue sweep")
    if moved:
        current_app.logger.info("Overdue sweep moved %s credit account(s) to OVERDUE", moved)
    return moved


def update_account_status(
    tenant_id: int,
    credit_account_id: int,
    status,
    performed_by: int | None = None,
    notes: str | None = None,
) -> dict:
    """
    Administrative status change: ACTIVE/OVERDUE -> CLOSED or SUSPENDED,
    SUSPENDED -> ACTIVE or CLOSED. PAID and CLOSED are terminal.
    """
    try:
        target = CreditStatus.parse(status)
    except ValueError:
        raise ValidationError(f"Invalid credit status: {status!r}", details={"allowed": CreditStatus.values()})
    if target not in ADMIN_STATUSES:
        raise ValidationError(
            f"Status {target} cannot be set directly",
            details={"allowed": sorted(s.value for s in ADMIN_STATUSES)},
        )

    def _op():
        account = _get_account_locked(tenant_id, credit_account_id)
        ensure_transition(account.status, target, entity_id=account.id)
        account.status = target.value
        if target is CreditStatus.CLOSED:
            account.closed_at = utcnow()
        if notes:
            account.notes = f"{account.notes}\n{notes}" if account.notes else notes
        return account

    account = run_in_unit_of_work(_op, label="credit status change")
    current_app.logger.info(
        "Credit account %s set to %s by user %s", account.credit_number, account.status, performed_by,
    )
    return account.to_dict()


def get_credit_account(tenant_id: int, credit_account_id: int) -> dict:
    account = db.session.query(CreditAccount).filter_by(id=credit_account_id, tenant_id=tenant_id).first()
    if account is None:
        raise NotFoundError("Credit account not found", details={"credit_account_id": credit_account_id})
    return account.to_dict(include_payments=True)


def list_credit_accounts(
    tenant_id: int,
    *,
    status: str | None = None,
    customer_id: int | None = None,
    branch_id: int | None = None,
    page: int = 1,
    size: int = 20,
) -> dict:
    query = db.session.query(CreditAccount).filter(CreditAccount.tenant_id == tenant_id)
    if status:
        try:
            query = query.filter(CreditAccount.status == CreditStatus.parse(status).value)
        except ValueError:
            raise ValidationError(f"Invalid credit status: {status!r}", details={"allowed": CreditStatus.values()})
    if customer_id is not None:
        query = query.filter(CreditAccount.customer_id == customer_id)
    if branch_id is not None:
        query = query.filter(CreditAccount.branch_id == branch_id)

    page = max(page, 1)
    size = max(1, min(size, 200))
    total = query.count()
    rows = (
        query.order_by(CreditAccount.created_at.desc(), CreditAccount.id.desc())
        .offset((page - 1) * size)
        .limit(size)
        .all()
    )
    return {
        "items": [row.to_dict() for row in rows],
        "page": page,
        "size": size,
        "total": total,
    }


def get_credit_summary(tenant_id: int, branch_id: int | None = None) -> dict:
    """Counts and amounts per status for the credit dashboard."""
    query = db.session.query(
        CreditAccount.status,
        func.count(CreditAccount.id),
        func.coalesce(func.sum(CreditAccount.total_amount_cents), 0),
        func.coalesce(func.sum(CreditAccount.paid_amount_cents), 0),
        func.coalesce(func.sum(CreditAccount.remaining_amount_cents), 0),
    ).filter(CreditAccount.tenant_id == tenant_id)
    if branch_id is not None:
        query = query.filter(CreditAccount.branch_id == branch_id)

    by_status = {
        s.value: {"count": 0, "total_amount_cents": 0, "paid_amount_cents": 0, "remaining_amount_cents": 0}
        for s in CreditStatus
    }
    for status, count, total, paid, remaining in query.group_by(CreditAccount.status).all():
        by_status[status] = {
            "count": int(count),
            "total_amount_cents": int(total),
            "paid_amount_cents": int(paid),
            "remaining_amount_cents": int(remaining),
        }

    open_statuses = (CreditStatus.ACTIVE.value, CreditStatus.OVERDUE.value, CreditStatus.SUSPENDED.value)
    return {
        "by_status": by_status,
        "total_outstanding_cents": sum(by_status[s]["remaining_amount_cents"] for s in open_statuses),
        "overdue_count": by_status[CreditStatus.OVERDUE.value]["count"],
        "open_count": sum(by_status[s]["count"] for s in open_statuses),
    }


class OverdueSweeper(threading.Thread):
    """
    Background timer that runs update_overdue_accounts every interval_seconds.

    Started by create_app when OVERDUE_SWEEP_INTERVAL_SECONDS > 0. Errors in
    one sweep are logged and the next sweep still runs.
    """

    def __init__(self, app, interval_seconds: int):
        super().__init__(name="credit-overdue-sweeper", daemon=True)
        self.app = app
        self.interval_seconds = interval_seconds
        self._stopped = threading.Event()

    def run(self) -> None:
        while not self._stopped.wait(self.interval_seconds):
            self.sweep_once()

    def sweep_once(self) -> int:
        with self.app.app_context():
            try:
                return update_overdue_accounts()
            except Exception:
                self.app.logger.exception("Overdue credit sweep failed")
                return 0
            finally:
                db.session.remove()

    def stop(self) -> None:
        self._stopped.set()


def start_overdue_sweeper(app) -> OverdueSweeper | None:
    interval = int(app.config.get("OVERDUE_SWEEP_INTERVAL_SECONDS") or 0)
    if interval <= 0:
        return None
    sweeper = OverdueSweeper(app, interval)
    sweeper.start()
    app.logger.info("Overdue credit sweeper started (every %ss)", interval)
    return sweeper
