"""
Pytest fixtures for pharmapos backend tests.

Provides the test application (in-memory SQLite), a per-test clean
database, two tenants for isolation checks, and stocked batches created
through the ledger so audit reconciliation always holds.
"""

from datetime import timedelta

import pytest

from pharmapos import create_app
from pharmapos.extensions import db
from pharmapos.models import Branch, Customer, Product, Tenant, TenantTaxSettings
from pharmapos.services import inventory_service
from pharmapos.time_utils import today


GATEWAY_KEY = "pharmapos.mpesa_gateway"


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite://',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'RETURNS_REQUIRE_APPROVAL': False,
        'CREDIT_DEFAULT_TERM_DAYS': 30,
        'CASHIER_COMMISSION_RATE_BPS': 1500,
        'MPESA_SHORTCODE': '174379',
        'MPESA_TRANSACTION_TYPE': 'CustomerBuyGoodsOnline',
        'MPESA_CALLBACK_URL': 'https://pos.example.test/api/mpesa/callback',
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()
        app.config['RETURNS_REQUIRE_APPROVAL'] = False
        app.extensions.pop(GATEWAY_KEY, None)

        yield db.session

        # Cleanup after test
        db.session.rollback()
        app.extensions.pop(GATEWAY_KEY, None)


@pytest.fixture(scope='function')
def tenant(db_session):
    """Tenant A (pharmacy under test)."""
    tenant = Tenant(name="Afya Pharmacy", code="AFYA", is_active=True)
    db_session.add(tenant)
    db_session.commit()
    return tenant


@pytest.fixture(scope='function')
def other_tenant(db_session):
    """Tenant B, used to prove nothing crosses tenant boundaries."""
    tenant = Tenant(name="Baraka Chemists", code="BARAKA", is_active=True)
    db_session.add(tenant)
    db_session.commit()
    return tenant


@pytest.fixture(scope='function')
def branch(db_session, tenant):
    branch = Branch(tenant_id=tenant.id, name="Westlands", code="WL", mpesa_till_number="5550001")
    db_session.add(branch)
    db_session.commit()
    return branch


@pytest.fixture(scope='function')
def second_branch(db_session, tenant):
    branch = Branch(tenant_id=tenant.id, name="Kilimani", code="KL")
    db_session.add(branch)
    db_session.commit()
    return branch


@pytest.fixture(scope='function')
def other_branch(db_session, other_tenant):
    branch = Branch(tenant_id=other_tenant.id, name="Nakuru Town", code="NK")
    db_session.add(branch)
    db_session.commit()
    return branch


@pytest.fixture(scope='function')
def product(db_session, tenant):
    """Amoxicillin 500mg: sells at KES 100.00, costs KES 60.00."""
    product = Product(
        tenant_id=tenant.id,
        name="Amoxicillin 500mg",
        barcode="6001234567890",
        unit_cost_cents=6000,
        selling_price_cents=10000,
    )
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def second_product(db_session, tenant):
    """Paracetamol 500mg: sells at KES 25.00, costs KES 10.00."""
    product = Product(
        tenant_id=tenant.id,
        name="Paracetamol 500mg",
        barcode="6009876543210",
        unit_cost_cents=1000,
        selling_price_cents=2500,
    )
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def other_product(db_session, other_tenant):
    product = Product(tenant_id=other_tenant.id, name="Cetirizine 10mg", barcode="6000000000001", selling_price_cents=5000)
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def stock(db_session, tenant, branch, product):
    """50 units of LOT-A, expiring in a year (batch dict)."""
    return inventory_service.receive_stock(
        tenant.id,
        product.id,
        branch.id,
        50,
        batch_number="LOT-A",
        expiry_date=today() + timedelta(days=365),
        source_reference="GRN-TEST-A",
    )


@pytest.fixture(scope='function')
def second_stock(db_session, tenant, branch, second_product):
    """200 units of PCM-1, no expiry tracked."""
    return inventory_service.receive_stock(
        tenant.id,
        second_product.id,
        branch.id,
        200,
        batch_number="PCM-1",
        source_reference="GRN-TEST-B",
    )


@pytest.fixture(scope='function')
def customer(db_session, tenant):
    customer = Customer(tenant_id=tenant.id, customer_number="C-0001", first_name="Wanjiku", last_name="Kamau", phone="0712345678")
    db_session.add(customer)
    db_session.commit()
    return customer


@pytest.fixture(scope='function')
def vat_exclusive(db_session, tenant):
    """16% VAT added on top of prices."""
    settings = TenantTaxSettings(tenant_id=tenant.id, charge_vat=True, default_vat_rate_bps=1600, pricing_mode="EXCLUSIVE")
    db_session.add(settings)
    db_session.commit()
    return settings


class FakeGateway:
    """Stands in for DarajaClient; records every STK push."""

    def __init__(self, error=None):
        self.error = error
        self.calls = []

    def stk_push(self, **fields):
        self.calls.append(fields)
        if self.error is not None:
            raise self.error
        n = len(self.calls)
        return {
            "MerchantRequestID": f"MR-{n}",
            "CheckoutRequestID": f"ws_CO_TEST_{n}",
            "ResponseCode": "0",
            "ResponseDescription": "Success. Request accepted for processing",
        }


@pytest.fixture(scope='function')
def gateway(app, db_session):
    fake = FakeGateway()
    app.extensions[GATEWAY_KEY] = fake
    return fake


def tenant_headers(tenant_id: int, user_id: int | None = 1) -> dict:
    """Helper to create the gateway-supplied tenant headers."""
    headers = {'X-Tenant-Id': str(tenant_id)}
    if user_id is not None:
        headers['X-User-Id'] = str(user_id)
    return headers


def cash_sale(tenant_id: int, branch_id: int, lines: list, cashier_id: int | None = 7, **extra) -> dict:
    """Create a fully cash-tendered sale for the given lines (no VAT tenant)."""
    from pharmapos.services import sales_service

    total = 0
    for line in lines:
        product = db.session.get(Product, line["product_id"])
        price = line.get("unit_price_cents", product.selling_price_cents)
        total += line["quantity"] * price - line.get("discount_amount_cents", 0)
    request = {
        "branch_id": branch_id,
        "lines": lines,
        "payments": [{"payment_method": "CASH", "amount_cents": total}],
    }
    request.update(extra)
    return sales_service.create_sale(tenant_id, request, cashier_id=cashier_id)
