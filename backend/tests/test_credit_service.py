# Overview: Pytest coverage for customer credit accounts.

"""
Credit Account Manager Tests

paid + remaining == total at all times; repayments never overshoot; every
repayment is mirrored on the sale so payments + remaining == sale total.
"""

from datetime import timedelta

import pytest

from pharmapos.errors import InvalidStateError, NotFoundError, ValidationError
from pharmapos.models import CreditAccount, Sale
from pharmapos.services import credit_service, sale_payments, sales_service
from pharmapos.time_utils import today


@pytest.fixture
def credit_sale(db_session, tenant, branch, product, stock, customer):
    """KES 1,000.00 sale, KES 400.00 paid upfront, KES 600.00 on credit."""
    return sales_service.create_sale(tenant.id, {
        "branch_id": branch.id,
        "lines": [{"product_id": product.id, "inventory_id": stock["id"], "quantity": 10}],
        "payments": [{"payment_method": "CASH", "amount_cents": 40000}],
        "is_credit_sale": True,
        "customer_id": customer.id,
        "expected_payment_date": (today() + timedelta(days=7)).isoformat(),
    })


def _account_id(credit_sale):
    return credit_sale["credit_account"]["id"]


class TestOpenAccount:

    def test_upfront_payment_recorded_on_account(self, db_session, credit_sale):
        account = credit_sale["credit_account"]
        assert account["credit_number"].startswith("CR-")
        tenant_id = credit_sale["sale"]["tenant_id"]
        detail = credit_service.get_credit_account(tenant_id, account["id"])
        assert [p["amount_cents"] for p in detail["payments"]] == [40000]
        assert detail["payments"][0]["notes"] == "Upfront payment at sale"
        assert detail["customer_name"] == "Wanjiku Kamau"

    def test_second_account_for_sale_rejected(self, db_session, tenant, customer, credit_sale):
        with pytest.raises(InvalidStateError):
            credit_service.open_credit_account(tenant.id, credit_sale["sale"]["id"], customer.id, 100000, 40000)

    def test_open_for_completed_sale_must_match_unpaid_balance(self, db_session, tenant, branch, product, stock, customer):
        sale = sales_service.create_sale(tenant.id, {
            "branch_id": branch.id,
            "lines": [{"product_id": product.id, "inventory_id": stock["id"], "quantity": 1}],
            "payments": [{"payment_method": "CASH", "amount_cents": 10000}],
        })["sale"]
        with pytest.raises(ValidationError):
            credit_service.open_credit_account(tenant.id, sale["id"], customer.id, 10000, 0)

    def test_paid_cannot_exceed_total(self, db_session, tenant, branch, product, stock, customer):
        held = sales_service.create_sale(tenant.id, {
            "branch_id": branch.id,
            "lines": [{"product_id": product.id, "inventory_id": stock["id"], "quantity": 1}],
            "hold": True,
        })["sale"]
        with pytest.raises(ValidationError):
            credit_service.open_credit_account(tenant.id, held["id"], customer.id, 10000, 10001)

    def test_unknown_customer(self, db_session, tenant, branch, product, stock):
        held = sales_service.create_sale(tenant.id, {
            "branch_id": branch.id,
            "lines": [{"product_id": product.id, "inventory_id": stock["id"], "quantity": 1}],
            "hold": True,
        })["sale"]
        with pytest.raises(NotFoundError):
            credit_service.open_credit_account(tenant.id, held["id"], 999999, 10000, 0)


class TestMakePayment:

    def test_partial_then_final_payment(self, db_session, tenant, credit_sale):
        account_id = _account_id(credit_sale)

        account = credit_service.make_payment(tenant.id, account_id, 25000, "MPESA", reference_number="QAB12CD34")
        assert account["paid_amount_cents"] == 65000
        assert account["remaining_amount_cents"] == 35000
        assert account["status"] == "ACTIVE"

        account = credit_service.make_payment(tenant.id, account_id, 35000, "cash")
        assert account["remaining_amount_cents"] == 0
        assert account["status"] == "PAID"
        assert account["closed_at"] is not None

        sale = db_session.get(Sale, credit_sale["sale"]["id"])
        assert sale.payment_status == "PAID"
        assert sale_payments.payment_balance_cents(sale) == 0
        mirrored = [p for p in sale.payments if p.notes and p.notes.startswith("Credit repayment")]
        assert sorted(p.amount_cents for p in mirrored) == [25000, 35000]
        assert any(p.reference_number == "QAB12CD34" for p in mirrored)

    def test_overpayment_rejected_without_change(self, db_session, tenant, credit_sale):
        account_id = _account_id(credit_sale)
        with pytest.raises(ValidationError) as exc:
            credit_service.make_payment(tenant.id, account_id, 60001, "CASH")
        assert exc.value.details["remaining_amount_cents"] == 60000

        account = db_session.get(CreditAccount, account_id)
        assert account.paid_amount_cents == 40000
        assert account.remaining_amount_cents == 60000
        assert len(account.payments) == 1

    @pytest.mark.parametrize("amount", [0, -100])
    def test_non_positive_amount_rejected(self, db_session, tenant, credit_sale, amount):
        with pytest.raises(ValidationError):
            credit_service.make_payment(tenant.id, _account_id(credit_sale), amount, "CASH")

    def test_paid_account_rejects_payments(self, db_session, tenant, credit_sale):
        account_id = _account_id(credit_sale)
        credit_service.make_payment(tenant.id, account_id, 60000, "CASH")
        with pytest.raises(InvalidStateError):
            credit_service.make_payment(tenant.id, account_id, 1, "CASH")

    def test_suspended_account_rejects_payments(self, db_session, tenant, credit_sale):
        account_id = _account_id(credit_sale)
        credit_service.update_account_status(tenant.id, account_id, "SUSPENDED", notes="Disputed")
        with pytest.raises(InvalidStateError):
            credit_service.make_payment(tenant.id, account_id, 100, "CASH")

    def test_invalid_method_rejected(self, db_session, tenant, credit_sale):
        with pytest.raises(ValidationError):
            credit_service.make_payment(tenant.id, _account_id(credit_sale), 100, "BITCOIN")

    def test_other_tenant_cannot_pay(self, db_session, other_tenant, credit_sale):
        with pytest.raises(NotFoundError):
            credit_service.make_payment(other_tenant.id, _account_id(credit_sale), 100, "CASH")


class TestOverdue:

    def test_sweep_moves_past_due_accounts_once(self, db_session, tenant, credit_sale):
        account_id = _account_id(credit_sale)
        later = today() + timedelta(days=8)

        assert credit_service.update_overdue_accounts(tenant.id, today=today()) == 0
        assert credit_service.update_overdue_accounts(tenant.id, today=later) == 1
        assert credit_service.update_overdue_accounts(tenant.id, today=later) == 0
        assert credit_service.get_credit_account(tenant.id, account_id)["status"] == "OVERDUE"

    def test_sweep_is_tenant_scoped(self, db_session, other_tenant, credit_sale):
        assert credit_service.update_overdue_accounts(other_tenant.id, today=today() + timedelta(days=30)) == 0

    def test_overdue_account_accepts_payment_and_can_be_paid_off(self, db_session, tenant, credit_sale):
        account_id = _account_id(credit_sale)
        credit_service.update_overdue_accounts(tenant.id, today=today() + timedelta(days=8))

        account = credit_service.make_payment(tenant.id, account_id, 10000, "CASH")
        assert account["status"] == "OVERDUE"
        account = credit_service.make_payment(tenant.id, account_id, 50000, "CASH")
        assert account["status"] == "PAID"

    def test_sweeper_thread_runs_one_sweep(self, app, db_session, tenant, credit_sale):
        account = db_session.get(CreditAccount, _account_id(credit_sale))
        account.expected_payment_date = today() - timedelta(days=1)
        db_session.commit()

        sweeper = credit_service.OverdueSweeper(app, interval_seconds=3600)
        assert sweeper.sweep_once() == 1


class TestStatusChanges:

    def test_suspend_and_reactivate(self, db_session, tenant, credit_sale):
        account_id = _account_id(credit_sale)
        assert credit_service.update_account_status(tenant.id, account_id, "suspended")["status"] == "SUSPENDED"
        assert credit_service.update_account_status(tenant.id, account_id, "ACTIVE")["status"] == "ACTIVE"

    def test_paid_cannot_be_set_directly(self, db_session, tenant, credit_sale):
        with pytest.raises(ValidationError):
            credit_service.update_account_status(tenant.id, _account_id(credit_sale), "PAID")

    def test_closed_is_terminal(self, db_session, tenant, credit_sale):
        account_id = _account_id(credit_sale)
        credit_service.update_account_status(tenant.id, account_id, "CLOSED")
        with pytest.raises(InvalidStateError):
            credit_service.update_account_status(tenant.id, account_id, "ACTIVE")


class TestReporting:

    def test_list_and_summary(self, db_session, tenant, branch, credit_sale):
        listing = credit_service.list_credit_accounts(tenant.id, status="active")
        assert listing["total"] == 1
        assert listing["items"][0]["id"] == _account_id(credit_sale)

        assert credit_service.list_credit_accounts(tenant.id, status="PAID")["total"] == 0
        with pytest.raises(ValidationError):
            credit_service.list_credit_accounts(tenant.id, status="LATE")

        summary = credit_service.get_credit_summary(tenant.id, branch_id=branch.id)
        assert summary["total_outstanding_cents"] == 60000
        assert summary["open_count"] == 1
        assert summary["by_status"]["ACTIVE"]["paid_amount_cents"] == 40000
        assert summary["by_status"]["PAID"]["count"] == 0
