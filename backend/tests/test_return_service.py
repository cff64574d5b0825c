# Overview: Pytest coverage for customer returns.

"""
Return Processor Tests

Returns restore stock to the batch the line was sold from, never exceed
what is still returnable (counting other open returns), refund at the
original price, and move a fully returned sale to REFUNDED.
"""

import pytest

from conftest import cash_sale
from pharmapos.errors import InvalidStateError, NotFoundError, ValidationError
from pharmapos.models import InventoryBatch, Sale
from pharmapos.services import audit_service, return_service, sales_service


@pytest.fixture
def sold(db_session, tenant, branch, product, second_product, stock, second_stock):
    """Completed cash sale: 5 x Amoxicillin (LOT-A), 10 x Paracetamol (PCM-1)."""
    return cash_sale(tenant.id, branch.id, [
        {"product_id": product.id, "inventory_id": stock["id"], "quantity": 5},
        {"product_id": second_product.id, "inventory_id": second_stock["id"], "quantity": 10},
    ])


def _line(sold, index):
    return sold["lines"][index]["id"]


def _qty(db_session, batch_id):
    return db_session.get(InventoryBatch, batch_id).quantity


class TestCreateReturn:

    def test_partial_return_restores_stock(self, db_session, tenant, sold, stock):
        result = return_service.create_return(
            tenant.id, sold["sale"]["id"], "Wrong strength",
            [{"sale_line_item_id": _line(sold, 0), "quantity_returned": 2}],
            processed_by=3,
        )
        assert result["status"] == "PROCESSED"
        assert result["return_number"] == f"RET-{tenant.id:03d}-000001"
        assert result["total_refund_cents"] == 20000
        assert result["lines"][0]["unit_price_cents"] == 10000
        assert _qty(db_session, stock["id"]) == 47

        sale = db_session.get(Sale, sold["sale"]["id"])
        assert sale.status == "COMPLETED"
        assert sale.return_status == "PARTIAL"

        entries = audit_service.query_entries(tenant.id, source_reference=result["return_number"])
        assert [(e.transaction_type, e.source_type, e.quantity_changed) for e in entries] == [("RETURN", "RETURN", 2)]

    def test_full_return_refunds_sale(self, db_session, tenant, sold):
        return_service.create_return(
            tenant.id, sold["sale"]["id"], "Adverse reaction",
            [
                {"sale_line_item_id": _line(sold, 0), "quantity_returned": 5},
                {"sale_line_item_id": _line(sold, 1), "quantity_returned": 10},
            ],
        )
        sale = db_session.get(Sale, sold["sale"]["id"])
        assert sale.return_status == "FULL"
        assert sale.status == "REFUNDED"

        with pytest.raises(InvalidStateError):
            return_service.create_return(
                tenant.id, sold["sale"]["id"], "Again",
                [{"sale_line_item_id": _line(sold, 0), "quantity_returned": 1}],
            )

    def test_returns_accumulate_to_full(self, db_session, tenant, sold):
        sale_id = sold["sale"]["id"]
        return_service.create_return(tenant.id, sale_id, "First", [{"sale_line_item_id": _line(sold, 0), "quantity_returned": 5}])
        return_service.create_return(tenant.id, sale_id, "Second", [{"sale_line_item_id": _line(sold, 1), "quantity_returned": 4}])
        assert db_session.get(Sale, sale_id).return_status == "PARTIAL"
        return_service.create_return(tenant.id, sale_id, "Third", [{"sale_line_item_id": _line(sold, 1), "quantity_returned": 6}])
        assert db_session.get(Sale, sale_id).status == "REFUNDED"

    def test_over_return_rejected(self, db_session, tenant, sold, stock):
        return_service.create_return(
            tenant.id, sold["sale"]["id"], "First", [{"sale_line_item_id": _line(sold, 0), "quantity_returned": 3}],
        )
        with pytest.raises(ValidationError) as exc:
            return_service.create_return(
                tenant.id, sold["sale"]["id"], "Too many", [{"sale_line_item_id": _line(sold, 0), "quantity_returned": 3}],
            )
        assert exc.value.details["returnable"] == 2
        assert _qty(db_session, stock["id"]) == 48

    def test_no_restock_for_damaged_goods(self, db_session, tenant, sold, stock):
        result = return_service.create_return(
            tenant.id, sold["sale"]["id"], "Opened and contaminated",
            [{"sale_line_item_id": _line(sold, 0), "quantity_returned": 1, "restore_to_inventory": False}],
        )
        assert result["total_refund_cents"] == 10000
        assert _qty(db_session, stock["id"]) == 45
        assert db_session.get(Sale, sold["sale"]["id"]).lines[0].returned_quantity == 1

    def test_line_from_other_sale_not_found(self, db_session, tenant, branch, product, stock, sold):
        other = cash_sale(tenant.id, branch.id, [{"product_id": product.id, "inventory_id": stock["id"], "quantity": 1}])
        with pytest.raises(NotFoundError):
            return_service.create_return(
                tenant.id, sold["sale"]["id"], "Mixed up", [{"sale_line_item_id": other["lines"][0]["id"], "quantity_returned": 1}],
            )

    def test_same_line_twice_rejected(self, db_session, tenant, sold):
        with pytest.raises(ValidationError):
            return_service.create_return(
                tenant.id, sold["sale"]["id"], "Dup",
                [
                    {"sale_line_item_id": _line(sold, 0), "quantity_returned": 1},
                    {"sale_line_item_id": _line(sold, 0), "quantity_returned": 1},
                ],
            )

    def test_reason_required(self, db_session, tenant, sold):
        with pytest.raises(ValidationError):
            return_service.create_return(tenant.id, sold["sale"]["id"], "", [{"sale_line_item_id": _line(sold, 0), "quantity_returned": 1}])

    def test_cancelled_sale_cannot_be_returned(self, db_session, tenant, sold):
        sales_service.cancel_sale(tenant.id, sold["sale"]["id"], "Void")
        with pytest.raises(InvalidStateError):
            return_service.create_return(
                tenant.id, sold["sale"]["id"], "Late", [{"sale_line_item_id": _line(sold, 0), "quantity_returned": 1}],
            )


class TestApprovalWorkflow:

    def test_pending_return_holds_quantity_until_processed(self, app, db_session, tenant, sold, stock):
        app.config["RETURNS_REQUIRE_APPROVAL"] = True
        pending = return_service.create_return(
            tenant.id, sold["sale"]["id"], "Needs manager",
            [{"sale_line_item_id": _line(sold, 0), "quantity_returned": 4}],
        )
        assert pending["status"] == "PENDING"
        assert _qty(db_session, stock["id"]) == 45

        # The open return holds 4 of the 5 units
        with pytest.raises(ValidationError):
            return_service.create_return(
                tenant.id, sold["sale"]["id"], "Second", [{"sale_line_item_id": _line(sold, 0), "quantity_returned": 2}],
                auto_process=True,
            )

        with pytest.raises(InvalidStateError):
            return_service.process_return(tenant.id, pending["id"])

        assert return_service.approve_return(tenant.id, pending["id"], approved_by=2)["status"] == "APPROVED"
        processed = return_service.process_return(tenant.id, pending["id"], processed_by=2)
        assert processed["status"] == "PROCESSED"
        assert processed["processed_by"] == 2
        assert _qty(db_session, stock["id"]) == 49

    def test_rejected_return_releases_quantity(self, db_session, tenant, sold):
        pending = return_service.create_return(
            tenant.id, sold["sale"]["id"], "Unsure",
            [{"sale_line_item_id": _line(sold, 0), "quantity_returned": 5}],
            auto_process=False,
        )
        rejected = return_service.reject_return(tenant.id, pending["id"], rejected_by=2, reason="Seal broken")
        assert rejected["status"] == "REJECTED"
        assert rejected["rejection_reason"] == "Seal broken"

        with pytest.raises(InvalidStateError):
            return_service.approve_return(tenant.id, pending["id"])

        again = return_service.create_return(
            tenant.id, sold["sale"]["id"], "Retry", [{"sale_line_item_id": _line(sold, 0), "quantity_returned": 5}],
        )
        assert again["status"] == "PROCESSED"

    def test_cancelling_sale_rejects_open_returns(self, db_session, tenant, sold, stock):
        pending = return_service.create_return(
            tenant.id, sold["sale"]["id"], "Unsure",
            [{"sale_line_item_id": _line(sold, 0), "quantity_returned": 1}],
            auto_process=False,
        )
        sales_service.cancel_sale(tenant.id, sold["sale"]["id"], "Void")
        assert return_service.get_return(tenant.id, pending["id"])["status"] == "REJECTED"
        assert _qty(db_session, stock["id"]) == 50


class TestQueries:

    def test_list_and_get(self, db_session, tenant, other_tenant, sold):
        created = return_service.create_return(
            tenant.id, sold["sale"]["id"], "One", [{"sale_line_item_id": _line(sold, 1), "quantity_returned": 1}],
        )
        listing = return_service.list_sale_returns(tenant.id, sale_id=sold["sale"]["id"])
        assert [r["id"] for r in listing] == [created["id"]]
        assert "lines" not in listing[0]

        assert return_service.list_sale_returns(tenant.id, status="pending") == []
        with pytest.raises(ValidationError):
            return_service.list_sale_returns(tenant.id, status="DONE")

        with pytest.raises(NotFoundError):
            return_service.get_return(other_tenant.id, created["id"])
