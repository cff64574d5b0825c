"""
CLI command tests (flask system/credit/inventory/mpesa groups).
"""

from datetime import timedelta

from pharmapos.models import InventoryBatch, MpesaTransaction
from pharmapos.services import mpesa_service, sales_service
from pharmapos.time_utils import today, utcnow


def test_init_db_is_idempotent(app, db_session):
    result = app.test_cli_runner().invoke(args=['system', 'init-db'])
    assert result.exit_code == 0
    assert "PASS" in result.output


def test_reconcile_passes_on_clean_ledger(app, db_session, tenant, stock):
    result = app.test_cli_runner().invoke(args=['inventory', 'reconcile', '--tenant-id', str(tenant.id)])
    assert result.exit_code == 0
    assert "Checked 1 audit entries" in result.output
    assert "PASS Ledger is consistent" in result.output


def test_reconcile_fails_on_out_of_band_change(app, db_session, tenant, stock):
    batch = db_session.get(InventoryBatch, stock["id"])
    batch.quantity = 7
    db_session.commit()

    result = app.test_cli_runner().invoke(args=['inventory', 'reconcile', '--tenant-id', str(tenant.id)])
    assert result.exit_code == 1
    assert f"FAIL Batch {stock['id']}: quantity 7 but last audit entry says 50" in result.output


def test_sweep_overdue(app, db_session, tenant, branch, product, stock, customer):
    sales_service.create_sale(tenant.id, {
        "branch_id": branch.id,
        "lines": [{"product_id": product.id, "inventory_id": stock["id"], "quantity": 1}],
        "is_credit_sale": True,
        "customer_id": customer.id,
        "expected_payment_date": (today() + timedelta(days=3)).isoformat(),
    })
    runner = app.test_cli_runner()

    as_of = (today() + timedelta(days=4)).isoformat()
    result = runner.invoke(args=['credit', 'sweep-overdue', '--tenant-id', str(tenant.id), '--as-of', as_of])
    assert result.exit_code == 0
    assert "PASS 1 account(s) moved to OVERDUE" in result.output


def test_sweep_overdue_rejects_bad_date(app, db_session):
    result = app.test_cli_runner().invoke(args=['credit', 'sweep-overdue', '--as-of', 'tomorrow'])
    assert result.exit_code != 0


def test_expire_pending_stk_pushes(app, db_session, tenant, branch, product, stock, gateway):
    sale = sales_service.create_sale(tenant.id, {
        "branch_id": branch.id,
        "lines": [{"product_id": product.id, "inventory_id": stock["id"], "quantity": 1}],
        "payments": [{"payment_method": "MPESA", "amount_cents": 10000}],
    })
    txn = mpesa_service.initiate_stk_push(tenant.id, sale["sale"]["id"], "0712345678")
    row = db_session.get(MpesaTransaction, txn["id"])
    row.requested_at = utcnow() - timedelta(hours=1)
    db_session.commit()

    result = app.test_cli_runner().invoke(args=['mpesa', 'expire-pending', '--tenant-id', str(tenant.id)])
    assert result.exit_code == 0
    assert "PASS 1 STK push(es) expired" in result.output
    assert db_session.get(MpesaTransaction, txn["id"]).status == "FAILED"
