# Overview: Pytest coverage for the sale transaction processor.

"""
Sale Transaction Processor Tests

A sale either commits completely (stock deducted, audit entries, header,
lines, tenders, credit account) or leaves no trace at all.
"""

from datetime import timedelta

import pytest

from conftest import cash_sale
from pharmapos.errors import InsufficientStockError, InvalidStateError, NotFoundError, ValidationError
from pharmapos.models import CreditAccount, InventoryAuditLog, InventoryBatch, Sale, SalePayment
from pharmapos.services import audit_service, sale_payments, sales_service
from pharmapos.time_utils import today


def _batch_qty(db_session, batch_id):
    return db_session.get(InventoryBatch, batch_id).quantity


class TestCreateSale:

    def test_cash_sale_deducts_stock_and_balances(self, db_session, tenant, branch, product, stock):
        result = cash_sale(tenant.id, branch.id, [{"product_id": product.id, "inventory_id": stock["id"], "quantity": 3}])

        sale = result["sale"]
        assert sale["status"] == "COMPLETED"
        assert sale["payment_status"] == "PAID"
        assert sale["total_amount_cents"] == 30000
        assert sale["sale_number"] == f"SALE-{tenant.id:03d}-000001"
        assert result["lines"][0]["batch_number"] == "LOT-A"
        assert result["lines"][0]["unit_cost_cents"] == 6000
        assert result["credit_account"] is None
        assert _batch_qty(db_session, stock["id"]) == 47

        entries = audit_service.query_entries(tenant.id, source_reference=sale["sale_number"])
        assert len(entries) == 1
        assert entries[0].transaction_type == "SALE"
        assert entries[0].source_type == "SALE"
        assert entries[0].quantity_changed == -3

    def test_multi_line_sale(self, db_session, tenant, branch, product, second_product, stock, second_stock):
        result = cash_sale(tenant.id, branch.id, [
            {"product_id": product.id, "inventory_id": stock["id"], "quantity": 1},
            {"product_id": second_product.id, "inventory_id": second_stock["id"], "quantity": 4, "discount_amount_cents": 1000},
        ])
        assert result["sale"]["subtotal_cents"] == 10000 + 10000
        assert result["sale"]["discount_amount_cents"] == 1000
        assert result["sale"]["total_amount_cents"] == 19000
        assert [line["line_number"] for line in result["lines"]] == [1, 2]

    def test_two_line_cash_sale_moves_both_batches(self, db_session, tenant, branch, product, second_product, stock, second_stock):
        # 3 @ 100.00 + 1 @ 50.00, one CASH tender of 350.00
        result = sales_service.create_sale(tenant.id, {
            "branch_id": branch.id,
            "lines": [
                {"product_id": product.id, "inventory_id": stock["id"], "quantity": 3},
                {"product_id": second_product.id, "inventory_id": second_stock["id"], "quantity": 1, "unit_price_cents": 5000},
            ],
            "payments": [{"payment_method": "CASH", "amount_cents": 35000}],
        })

        sale = result["sale"]
        assert sale["subtotal_cents"] == 35000
        assert sale["total_amount_cents"] == 35000
        assert sale["payment_status"] == "PAID"
        assert _batch_qty(db_session, stock["id"]) == 47
        assert _batch_qty(db_session, second_stock["id"]) == 199

        entries = audit_service.query_entries(tenant.id, source_reference=sale["sale_number"])
        assert sorted((e.transaction_type, e.batch_id, e.quantity_changed) for e in entries) == sorted([
            ("SALE", stock["id"], -3),
            ("SALE", second_stock["id"], -1),
        ])
        assert audit_service.reconcile(tenant.id)["ok"] is True

    def test_fefo_batch_when_none_scanned(self, db_session, tenant, branch, product, stock):
        from pharmapos.services import inventory_service

        sooner = inventory_service.receive_stock(
            tenant.id, product.id, branch.id, 5,
            batch_number="LOT-SOON", expiry_date=today() + timedelta(days=20), source_reference="GRN-SOON",
        )
        result = cash_sale(tenant.id, branch.id, [{"product_id": product.id, "quantity": 2}])
        assert result["lines"][0]["batch_id"] == sooner["id"]
        assert _batch_qty(db_session, sooner["id"]) == 3

    def test_vat_exclusive_pricing(self, db_session, tenant, branch, product, stock, vat_exclusive):
        result = sales_service.create_sale(tenant.id, {
            "branch_id": branch.id,
            "lines": [{"product_id": product.id, "inventory_id": stock["id"], "quantity": 1, "unit_price_cents": 999}],
            "payments": [{"payment_method": "CASH", "amount_cents": 1159}],
        })
        # 999 x 16% = 159.84, rounded half-up to 160
        assert result["sale"]["tax_amount_cents"] == 160
        assert result["sale"]["total_amount_cents"] == 1159
        assert result["lines"][0]["tax_rate_bps"] == 1600

    def test_underpayment_rejected_without_side_effects(self, db_session, tenant, branch, product, stock):
        audit_before = db_session.query(InventoryAuditLog).count()
        with pytest.raises(ValidationError) as exc:
            sales_service.create_sale(tenant.id, {
                "branch_id": branch.id,
                "lines": [{"product_id": product.id, "inventory_id": stock["id"], "quantity": 2}],
                "payments": [{"payment_method": "CASH", "amount_cents": 19999}],
            })
        assert exc.value.details["difference_cents"] == 1
        assert db_session.query(Sale).count() == 0
        assert db_session.query(InventoryAuditLog).count() == audit_before
        assert _batch_qty(db_session, stock["id"]) == 50

    def test_overpayment_rejected(self, db_session, tenant, branch, product, stock):
        with pytest.raises(ValidationError):
            sales_service.create_sale(tenant.id, {
                "branch_id": branch.id,
                "lines": [{"product_id": product.id, "inventory_id": stock["id"], "quantity": 1}],
                "payments": [{"payment_method": "CASH", "amount_cents": 10001}],
            })

    def test_insufficient_stock_on_second_line_rolls_back_first(
        self, db_session, tenant, branch, product, second_product, stock, second_stock
    ):
        with pytest.raises(InsufficientStockError):
            sales_service.create_sale(tenant.id, {
                "branch_id": branch.id,
                "lines": [
                    {"product_id": product.id, "inventory_id": stock["id"], "quantity": 5},
                    {"product_id": second_product.id, "inventory_id": second_stock["id"], "quantity": 201},
                ],
                "payments": [{"payment_method": "CASH", "amount_cents": 5 * 10000 + 201 * 2500}],
            })
        assert _batch_qty(db_session, stock["id"]) == 50
        assert _batch_qty(db_session, second_stock["id"]) == 200
        assert db_session.query(Sale).count() == 0

    def test_failed_sale_releases_its_number(self, db_session, tenant, branch, product, stock):
        with pytest.raises(InsufficientStockError):
            cash_sale(tenant.id, branch.id, [{"product_id": product.id, "inventory_id": stock["id"], "quantity": 51}])
        result = cash_sale(tenant.id, branch.id, [{"product_id": product.id, "inventory_id": stock["id"], "quantity": 1}])
        assert result["sale"]["sale_number"].endswith("-000001")

    def test_duplicate_product_lines_rejected(self, db_session, tenant, branch, product, stock):
        with pytest.raises(ValidationError):
            cash_sale(tenant.id, branch.id, [
                {"product_id": product.id, "inventory_id": stock["id"], "quantity": 1},
                {"product_id": product.id, "inventory_id": stock["id"], "quantity": 1},
            ])

    def test_expired_batch_rejected(self, db_session, tenant, branch, product):
        expired = InventoryBatch(
            tenant_id=tenant.id, product_id=product.id, branch_id=branch.id,
            batch_number="EXP", expiry_date=today() - timedelta(days=1), quantity=0,
        )
        db_session.add(expired)
        db_session.commit()
        with pytest.raises(ValidationError):
            cash_sale(tenant.id, branch.id, [{"product_id": product.id, "inventory_id": expired.id, "quantity": 1}])

    def test_batch_from_other_branch_rejected(self, db_session, tenant, branch, second_branch, product, stock):
        with pytest.raises(ValidationError):
            cash_sale(tenant.id, second_branch.id, [{"product_id": product.id, "inventory_id": stock["id"], "quantity": 1}])

    def test_product_of_other_tenant_not_found(self, db_session, tenant, branch, other_product, stock):
        with pytest.raises(NotFoundError):
            sales_service.create_sale(tenant.id, {
                "branch_id": branch.id,
                "lines": [{"product_id": other_product.id, "quantity": 1, "unit_price_cents": 100}],
                "payments": [{"payment_method": "CASH", "amount_cents": 100}],
            })

    def test_empty_sale_rejected(self, db_session, tenant, branch):
        with pytest.raises(ValidationError):
            sales_service.create_sale(tenant.id, {"branch_id": branch.id, "lines": [], "payments": []})

    def test_adjustment_is_not_a_tender(self, db_session, tenant, branch, product, stock):
        with pytest.raises(ValidationError):
            sales_service.create_sale(tenant.id, {
                "branch_id": branch.id,
                "lines": [{"product_id": product.id, "inventory_id": stock["id"], "quantity": 1}],
                "payments": [{"payment_method": "ADJUSTMENT", "amount_cents": 10000}],
            })

    def test_mpesa_without_receipt_awaits_payment(self, db_session, tenant, branch, product, stock):
        result = sales_service.create_sale(tenant.id, {
            "branch_id": branch.id,
            "lines": [{"product_id": product.id, "inventory_id": stock["id"], "quantity": 1}],
            "payments": [{"payment_method": "MPESA", "amount_cents": 10000}],
        })
        assert result["payments"][0]["status"] == "PENDING"
        assert result["sale"]["payment_status"] == "AWAITING_PAYMENT"
        assert result["sale"]["status"] == "COMPLETED"


class TestCreditSale:

    def test_partial_tender_opens_credit_account(self, db_session, tenant, branch, product, stock, customer):
        due = today() + timedelta(days=14)
        result = sales_service.create_sale(tenant.id, {
            "branch_id": branch.id,
            "lines": [{"product_id": product.id, "inventory_id": stock["id"], "quantity": 10}],
            "payments": [{"payment_method": "CASH", "amount_cents": 40000}],
            "is_credit_sale": True,
            "customer_id": customer.id,
            "expected_payment_date": due.isoformat(),
        })

        account = result["credit_account"]
        assert account["total_amount_cents"] == 100000
        assert account["paid_amount_cents"] == 40000
        assert account["remaining_amount_cents"] == 60000
        assert account["status"] == "ACTIVE"
        assert account["expected_payment_date"] == due.isoformat()
        assert result["sale"]["payment_status"] == "CREDIT"
        assert result["sale"]["is_credit_sale"] is True

        sale = db_session.get(Sale, result["sale"]["id"])
        assert sale_payments.payment_balance_cents(sale) == 0

    def test_credit_without_upfront_payment(self, db_session, tenant, branch, product, stock, customer):
        result = sales_service.create_sale(tenant.id, {
            "branch_id": branch.id,
            "lines": [{"product_id": product.id, "inventory_id": stock["id"], "quantity": 1}],
            "is_credit_sale": True,
            "customer_id": customer.id,
        })
        account = result["credit_account"]
        assert account["paid_amount_cents"] == 0
        assert account["remaining_amount_cents"] == 10000
        assert account["expected_payment_date"] == (today() + timedelta(days=30)).isoformat()
        assert result["payments"] == []

    def test_fully_tendered_credit_sale_opens_no_account(self, db_session, tenant, branch, product, stock, customer):
        result = sales_service.create_sale(tenant.id, {
            "branch_id": branch.id,
            "lines": [{"product_id": product.id, "inventory_id": stock["id"], "quantity": 1}],
            "payments": [{"payment_method": "CASH", "amount_cents": 10000}],
            "is_credit_sale": True,
            "customer_id": customer.id,
        })
        assert result["credit_account"] is None
        assert result["sale"]["is_credit_sale"] is False
        assert result["sale"]["payment_status"] == "PAID"

    def test_credit_sale_requires_customer(self, db_session, tenant, branch, product, stock):
        with pytest.raises(ValidationError):
            sales_service.create_sale(tenant.id, {
                "branch_id": branch.id,
                "lines": [{"product_id": product.id, "inventory_id": stock["id"], "quantity": 1}],
                "is_credit_sale": True,
            })

    def test_credit_overpayment_rejected(self, db_session, tenant, branch, product, stock, customer):
        with pytest.raises(ValidationError):
            sales_service.create_sale(tenant.id, {
                "branch_id": branch.id,
                "lines": [{"product_id": product.id, "inventory_id": stock["id"], "quantity": 1}],
                "payments": [{"payment_method": "CASH", "amount_cents": 10001}],
                "is_credit_sale": True,
                "customer_id": customer.id,
            })
        assert db_session.query(CreditAccount).count() == 0


class TestHeldSales:

    def _hold(self, tenant, branch, product, stock, quantity=2):
        return sales_service.create_sale(tenant.id, {
            "branch_id": branch.id,
            "lines": [{"product_id": product.id, "inventory_id": stock["id"], "quantity": quantity}],
            "hold": True,
        })

    def test_hold_does_not_move_stock(self, db_session, tenant, branch, product, stock):
        result = self._hold(tenant, branch, product, stock)
        assert result["sale"]["status"] == "PENDING"
        assert result["sale"]["payment_status"] == "AWAITING_PAYMENT"
        assert _batch_qty(db_session, stock["id"]) == 50

    def test_hold_with_payments_rejected(self, db_session, tenant, branch, product, stock):
        with pytest.raises(ValidationError):
            sales_service.create_sale(tenant.id, {
                "branch_id": branch.id,
                "lines": [{"product_id": product.id, "inventory_id": stock["id"], "quantity": 1}],
                "payments": [{"payment_method": "CASH", "amount_cents": 10000}],
                "hold": True,
            })

    def test_suspend_resume_complete(self, db_session, tenant, branch, product, stock):
        sale_id = self._hold(tenant, branch, product, stock)["sale"]["id"]

        assert sales_service.suspend_sale(tenant.id, sale_id, reason="Customer went to ATM")["sale"]["status"] == "SUSPENDED"
        with pytest.raises(InvalidStateError):
            sales_service.complete_sale(tenant.id, sale_id, [{"payment_method": "CASH", "amount_cents": 20000}])

        assert sales_service.resume_sale(tenant.id, sale_id)["sale"]["status"] == "PENDING"
        result = sales_service.complete_sale(tenant.id, sale_id, [{"payment_method": "CASH", "amount_cents": 20000}])
        assert result["sale"]["status"] == "COMPLETED"
        assert result["sale"]["payment_status"] == "PAID"
        assert _batch_qty(db_session, stock["id"]) == 48

    def test_complete_twice_rejected(self, db_session, tenant, branch, product, stock):
        sale_id = self._hold(tenant, branch, product, stock)["sale"]["id"]
        sales_service.complete_sale(tenant.id, sale_id, [{"payment_method": "CASH", "amount_cents": 20000}])
        with pytest.raises(InvalidStateError):
            sales_service.complete_sale(tenant.id, sale_id, [{"payment_method": "CASH", "amount_cents": 20000}])
        assert _batch_qty(db_session, stock["id"]) == 48

    def test_held_sale_completed_on_credit(self, db_session, tenant, branch, product, stock, customer):
        sale_id = self._hold(tenant, branch, product, stock)["sale"]["id"]
        result = sales_service.complete_sale(
            tenant.id, sale_id, [{"payment_method": "CASH", "amount_cents": 5000}],
            is_credit_sale=True, customer_id=customer.id,
        )
        assert result["credit_account"]["remaining_amount_cents"] == 15000

    def test_cancel_held_sale_touches_no_stock(self, db_session, tenant, branch, product, stock):
        sale_id = self._hold(tenant, branch, product, stock)["sale"]["id"]
        result = sales_service.cancel_sale(tenant.id, sale_id, "Customer left")
        assert result["sale"]["status"] == "CANCELLED"
        assert result["sale"]["payment_status"] == "VOIDED"
        assert audit_service.query_entries(tenant.id, source_type="SALE_CANCEL") == []


class TestCancelCompletedSale:

    def test_cancel_restores_stock_and_voids_payments(self, db_session, tenant, branch, product, stock):
        sale = cash_sale(tenant.id, branch.id, [{"product_id": product.id, "inventory_id": stock["id"], "quantity": 4}])["sale"]
        result = sales_service.cancel_sale(tenant.id, sale["id"], "Rung up by mistake", performed_by=9)

        assert result["sale"]["status"] == "CANCELLED"
        assert result["sale"]["cancel_reason"] == "Rung up by mistake"
        assert all(p["status"] == "VOIDED" for p in result["payments"])
        assert _batch_qty(db_session, stock["id"]) == 50

        entries = audit_service.query_entries(tenant.id, source_type="SALE_CANCEL")
        assert len(entries) == 1
        assert entries[0].transaction_type == "RETURN"
        assert entries[0].quantity_changed == 4
        assert audit_service.reconcile(tenant.id)["ok"] is True

    def test_cancel_closes_credit_account(self, db_session, tenant, branch, product, stock, customer):
        result = sales_service.create_sale(tenant.id, {
            "branch_id": branch.id,
            "lines": [{"product_id": product.id, "inventory_id": stock["id"], "quantity": 1}],
            "is_credit_sale": True,
            "customer_id": customer.id,
        })
        cancelled = sales_service.cancel_sale(tenant.id, result["sale"]["id"], "Duplicate sale")
        assert cancelled["credit_account"]["status"] == "CLOSED"

    def test_cancel_requires_reason(self, db_session, tenant, branch, product, stock):
        sale = cash_sale(tenant.id, branch.id, [{"product_id": product.id, "inventory_id": stock["id"], "quantity": 1}])["sale"]
        with pytest.raises(ValidationError):
            sales_service.cancel_sale(tenant.id, sale["id"], "  ")

    def test_cancel_twice_rejected(self, db_session, tenant, branch, product, stock):
        sale = cash_sale(tenant.id, branch.id, [{"product_id": product.id, "inventory_id": stock["id"], "quantity": 1}])["sale"]
        sales_service.cancel_sale(tenant.id, sale["id"], "Mistake")
        with pytest.raises(InvalidStateError):
            sales_service.cancel_sale(tenant.id, sale["id"], "Mistake again")
        assert _batch_qty(db_session, stock["id"]) == 50


class TestReplaceFailedPayment:

    def test_failed_mpesa_replaced_with_cash(self, db_session, tenant, branch, product, stock):
        result = sales_service.create_sale(tenant.id, {
            "branch_id": branch.id,
            "lines": [{"product_id": product.id, "inventory_id": stock["id"], "quantity": 1}],
            "payments": [{"payment_method": "MPESA", "amount_cents": 10000}],
        })
        payment = db_session.get(SalePayment, result["payments"][0]["id"])
        payment.status = "FAILED"
        db_session.commit()

        replaced = sales_service.replace_failed_payment(tenant.id, result["sale"]["id"], payment.id, "CASH")
        statuses = sorted((p["payment_method"], p["status"]) for p in replaced["payments"])
        assert statuses == [("CASH", "COMPLETED"), ("MPESA", "VOIDED")]
        assert replaced["sale"]["payment_status"] == "PAID"

    def test_only_failed_payments_can_be_replaced(self, db_session, tenant, branch, product, stock):
        result = cash_sale(tenant.id, branch.id, [{"product_id": product.id, "inventory_id": stock["id"], "quantity": 1}])
        with pytest.raises(InvalidStateError):
            sales_service.replace_failed_payment(
                tenant.id, result["sale"]["id"], result["payments"][0]["id"], "CARD",
            )


class TestLookups:

    def test_scan_barcode_lists_sellable_batches(self, db_session, tenant, branch, product, stock):
        result = sales_service.scan_barcode(tenant.id, " 6001234567890 ", branch.id)
        assert result["product"]["id"] == product.id
        assert result["total_available"] == 50
        assert [b["id"] for b in result["batches"]] == [stock["id"]]

    def test_scan_unknown_barcode(self, db_session, tenant, branch):
        with pytest.raises(NotFoundError):
            sales_service.scan_barcode(tenant.id, "0000", branch.id)

    def test_search_filters_and_commission(self, db_session, tenant, branch, product, second_product, stock, second_stock):
        cash_sale(tenant.id, branch.id, [{"product_id": product.id, "inventory_id": stock["id"], "quantity": 2}], cashier_id=7)
        cash_sale(tenant.id, branch.id, [{"product_id": second_product.id, "inventory_id": second_stock["id"], "quantity": 4}], cashier_id=8)

        everything = sales_service.search_sales(tenant.id)
        assert everything["total"] == 2
        assert everything["total_filtered_cents"] == 20000 + 10000

        mine = sales_service.search_sales(tenant.id, {"cashier_id": 7}, include_commission=True)
        assert mine["total"] == 1
        # (10000 - 6000) * 2 = 8000 profit at 15% = 1200
        assert mine["items"][0]["commission_cents"] == 1200

        with pytest.raises(ValidationError):
            sales_service.search_sales(tenant.id, {"status": "LOST"})

    def test_get_sale_is_tenant_scoped(self, db_session, tenant, other_tenant, branch, product, stock):
        sale = cash_sale(tenant.id, branch.id, [{"product_id": product.id, "inventory_id": stock["id"], "quantity": 1}])["sale"]
        assert sales_service.get_sale(tenant.id, sale["id"])["sale"]["id"] == sale["id"]
        with pytest.raises(NotFoundError):
            sales_service.get_sale(other_tenant.id, sale["id"])
