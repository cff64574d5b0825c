# Overview: Pytest coverage for the HTTP layer: tenant headers, status codes and error bodies.

"""
API Route Tests

Routes only parse input and translate domain errors:
ValidationError 400, NotFoundError 404, InsufficientStock/InvalidState 409.
The M-Pesa callback always answers 200 with the Daraja ACK body.
"""

from conftest import cash_sale, tenant_headers


def _sale_body(branch, product, stock, quantity=1, amount=10000):
    return {
        "branch_id": branch.id,
        "lines": [{"product_id": product.id, "inventory_id": stock["id"], "quantity": quantity}],
        "payments": [{"payment_method": "CASH", "amount_cents": amount}],
    }


class TestSystem:

    def test_health(self, client, db_session):
        response = client.get('/api/health')
        assert response.status_code == 200
        body = response.get_json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["status"] == "healthy"


class TestTenantHeaders:

    def test_missing_tenant_header_is_401(self, client, db_session):
        response = client.get('/api/sales/')
        assert response.status_code == 401

    def test_non_integer_tenant_header_is_400(self, client, db_session):
        response = client.get('/api/sales/', headers={'X-Tenant-Id': 'abc'})
        assert response.status_code == 400

    def test_non_integer_user_header_is_400(self, client, db_session, tenant):
        response = client.get('/api/sales/', headers={'X-Tenant-Id': str(tenant.id), 'X-User-Id': 'bob'})
        assert response.status_code == 400


class TestSalesRoutes:

    def test_create_sale(self, client, db_session, tenant, branch, product, stock):
        response = client.post('/api/sales/', json=_sale_body(branch, product, stock, 2, 20000), headers=tenant_headers(tenant.id, 7))
        assert response.status_code == 201
        body = response.get_json()
        assert body["sale"]["status"] == "COMPLETED"
        assert body["sale"]["cashier_id"] == 7
        assert body["sale"]["total_amount_cents"] == 20000

        fetched = client.get(f'/api/sales/{body["sale"]["id"]}', headers=tenant_headers(tenant.id))
        assert fetched.status_code == 200
        assert fetched.get_json()["sale"]["sale_number"] == body["sale"]["sale_number"]

    def test_insufficient_stock_is_409(self, client, db_session, tenant, branch, product, stock):
        response = client.post('/api/sales/', json=_sale_body(branch, product, stock, 51, 510000), headers=tenant_headers(tenant.id))
        assert response.status_code == 409
        body = response.get_json()
        assert body["error_type"] == "InsufficientStockError"
        assert body["retryable"] is False

    def test_underpayment_is_400(self, client, db_session, tenant, branch, product, stock):
        response = client.post('/api/sales/', json=_sale_body(branch, product, stock, 1, 9999), headers=tenant_headers(tenant.id))
        assert response.status_code == 400
        assert response.get_json()["error_type"] == "ValidationError"

    def test_other_tenant_sale_is_404(self, client, db_session, tenant, other_tenant, branch, product, stock):
        sale = cash_sale(tenant.id, branch.id, [{"product_id": product.id, "inventory_id": stock["id"], "quantity": 1}])
        response = client.get(f'/api/sales/{sale["sale"]["id"]}', headers=tenant_headers(other_tenant.id))
        assert response.status_code == 404

    def test_cancel_twice_is_409(self, client, db_session, tenant, branch, product, stock):
        sale = cash_sale(tenant.id, branch.id, [{"product_id": product.id, "inventory_id": stock["id"], "quantity": 1}])
        url = f'/api/sales/{sale["sale"]["id"]}/cancel'
        assert client.post(url, json={"reason": "Wrong customer"}, headers=tenant_headers(tenant.id)).status_code == 200
        assert client.post(url, json={"reason": "Again"}, headers=tenant_headers(tenant.id)).status_code == 409


class TestInventoryRoutes:

    def test_adjust_then_audit_log_and_reconcile(self, client, db_session, tenant, branch, product, stock):
        response = client.post('/api/inventory/adjust', json={
            "product_id": product.id,
            "branch_id": branch.id,
            "batch_id": stock["id"],
            "delta": -2,
            "transaction_type": "DAMAGE_WRITE_OFF",
            "source_reference": "WO-0001",
            "notes": "Broken bottles",
        }, headers=tenant_headers(tenant.id))
        assert response.status_code == 201
        assert response.get_json()["quantity"] == 48

        log = client.get('/api/inventory/audit-log?source_reference=WO-0001', headers=tenant_headers(tenant.id))
        assert log.status_code == 200
        [entry] = log.get_json()["entries"]
        assert entry["quantity_changed"] == -2
        assert entry["quantity_after"] == 48

        report = client.get('/api/inventory/reconcile', headers=tenant_headers(tenant.id)).get_json()
        assert report["ok"] is True

    def test_bad_audit_log_dates_are_400(self, client, db_session, tenant):
        response = client.get('/api/inventory/audit-log?start=yesterday', headers=tenant_headers(tenant.id))
        assert response.status_code == 400

    def test_receive_stock(self, client, db_session, tenant, branch, product):
        response = client.post('/api/inventory/receive', json={
            "product_id": product.id,
            "branch_id": branch.id,
            "quantity": 24,
            "batch_number": "LOT-Z",
            "expiry_date": "2030-06-30",
        }, headers=tenant_headers(tenant.id))
        assert response.status_code == 201
        batch = response.get_json()["batch"]
        assert batch["quantity"] == 24
        assert batch["expiry_date"] == "2030-06-30"


class TestCreditRoutes:

    def test_repayment_and_overpayment(self, client, db_session, tenant, branch, product, stock, customer):
        created = client.post('/api/sales/', json={
            "branch_id": branch.id,
            "lines": [{"product_id": product.id, "inventory_id": stock["id"], "quantity": 3}],
            "is_credit_sale": True,
            "customer_id": customer.id,
        }, headers=tenant_headers(tenant.id)).get_json()
        account_id = created["credit_account"]["id"]
        url = f'/api/credit/accounts/{account_id}/payments'

        over = client.post(url, json={"amount_cents": 30001, "payment_method": "CASH"}, headers=tenant_headers(tenant.id))
        assert over.status_code == 400

        paid = client.post(url, json={"amount_cents": 30000, "payment_method": "MPESA", "reference_number": "QX1"}, headers=tenant_headers(tenant.id))
        assert paid.status_code == 201
        assert paid.get_json()["account"]["status"] == "PAID"

        again = client.post(url, json={"amount_cents": 1, "payment_method": "CASH"}, headers=tenant_headers(tenant.id))
        assert again.status_code == 409


class TestSaleEditRoutes:

    def test_maker_checker_over_http(self, client, db_session, tenant, branch, product, stock):
        sale = cash_sale(tenant.id, branch.id, [{"product_id": product.id, "inventory_id": stock["id"], "quantity": 1}])
        created = client.post('/api/sale-edits/', json={
            "sale_id": sale["sale"]["id"],
            "sale_line_item_id": sale["lines"][0]["id"],
            "request_type": "PRICE_CHANGE",
            "new_unit_price_cents": 9000,
        }, headers=tenant_headers(tenant.id, user_id=5))
        assert created.status_code == 201
        request_id = created.get_json()["request"]["id"]

        count = client.get('/api/sale-edits/pending/count', headers=tenant_headers(tenant.id))
        assert count.get_json()["count"] == 1

        url = f'/api/sale-edits/{request_id}/decide'
        assert client.post(url, json={"approved": True}, headers=tenant_headers(tenant.id, user_id=None)).status_code == 400
        assert client.post(url, json={}, headers=tenant_headers(tenant.id, user_id=6)).status_code == 400
        assert client.post(url, json={"approved": True}, headers=tenant_headers(tenant.id, user_id=5)).status_code == 400

        decided = client.post(url, json={"approved": True}, headers=tenant_headers(tenant.id, user_id=6))
        assert decided.status_code == 200
        assert decided.get_json()["request"]["new_total_cents"] == 9000

    def test_request_requires_user(self, client, db_session, tenant):
        response = client.post('/api/sale-edits/', json={}, headers=tenant_headers(tenant.id, user_id=None))
        assert response.status_code == 400


class TestReturnRoutes:

    def test_create_and_list(self, client, db_session, tenant, branch, product, stock):
        sale = cash_sale(tenant.id, branch.id, [{"product_id": product.id, "inventory_id": stock["id"], "quantity": 2}])
        response = client.post('/api/returns/', json={
            "original_sale_id": sale["sale"]["id"],
            "reason": "Wrong strength",
            "lines": [{"sale_line_item_id": sale["lines"][0]["id"], "quantity_returned": 1}],
        }, headers=tenant_headers(tenant.id))
        assert response.status_code == 201
        assert response.get_json()["return"]["status"] == "PROCESSED"

        listing = client.get(f'/api/returns/?sale_id={sale["sale"]["id"]}', headers=tenant_headers(tenant.id))
        assert len(listing.get_json()["returns"]) == 1

    def test_lines_must_be_a_list(self, client, db_session, tenant):
        response = client.post('/api/returns/', json={"original_sale_id": 1, "reason": "x", "lines": "all"}, headers=tenant_headers(tenant.id))
        assert response.status_code == 400


class TestMpesaRoutes:

    def test_push_and_callback(self, client, db_session, tenant, branch, product, stock, gateway):
        sale = client.post('/api/sales/', json={
            "branch_id": branch.id,
            "lines": [{"product_id": product.id, "inventory_id": stock["id"], "quantity": 1}],
            "payments": [{"payment_method": "MPESA", "amount_cents": 10000}],
        }, headers=tenant_headers(tenant.id)).get_json()

        pushed = client.post('/api/mpesa/stk-push', json={
            "sale_id": sale["sale"]["id"],
            "phone_number": "0712345678",
        }, headers=tenant_headers(tenant.id))
        assert pushed.status_code == 201
        checkout_id = pushed.get_json()["transaction"]["checkout_request_id"]

        ack = client.post('/api/mpesa/callback', json={"Body": {"stkCallback": {
            "CheckoutRequestID": checkout_id,
            "ResultCode": 0,
            "ResultDesc": "The service request is processed successfully.",
            "CallbackMetadata": {"Item": [{"Name": "MpesaReceiptNumber", "Value": "RKT12ABC34"}]},
        }}})
        assert ack.status_code == 200
        assert ack.get_json()["ResultCode"] == "0"

        fetched = client.get(f'/api/sales/{sale["sale"]["id"]}', headers=tenant_headers(tenant.id)).get_json()
        assert fetched["sale"]["payment_status"] == "PAID"

    def test_callback_acknowledges_garbage(self, client, db_session):
        response = client.post('/api/mpesa/callback', data="not json", content_type="text/plain")
        assert response.status_code == 200
        assert response.get_json()["ResultCode"] == "0"

    def test_push_without_tenant_is_401(self, client, db_session):
        assert client.post('/api/mpesa/stk-push', json={}).status_code == 401
