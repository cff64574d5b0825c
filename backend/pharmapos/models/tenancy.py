from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z
from .enums import PricingMode


class Tenant(db.Model):
    """
    Multi-tenant root: every pharmacy business is a Tenant.

    Tenants are provisioned outside this service; rows here are the minimum
    the consistency engine needs to scope its data. Every other table carries
    tenant_id and no query may cross tenant boundaries.
    """
    __tablename__ = "tenants"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    code = db.Column(db.String(32), nullable=True, unique=True, index=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def __repr__(self) -> str:
        return f"<Tenant id={self.id} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class Branch(db.Model):
    """
    Branch (shop) within a tenant. Stock is held per branch.
    """
    __tablename__ = "branches"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "name", name="uq_branches_tenant_name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)
    code = db.Column(db.String(32), nullable=True, index=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    # Branch-specific Buy Goods till; falls back to the tenant shortcode
    mpesa_till_number = db.Column(db.String(32), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    tenant = db.relationship("Tenant", backref=db.backref("branches", lazy=True))

    def __repr__(self) -> str:
        return f"<Branch id={self.id} name={self.name!r} tenant_id={self.tenant_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "code": self.code,
            "is_active": self.is_active,
            "mpesa_till_number": self.mpesa_till_number,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class TenantTaxSettings(db.Model):
    """
    VAT configuration for a tenant.

    charge_vat=False (or no row at all) means no tax is charged.
    default_vat_rate_bps is in basis points (1600 = 16.00%).
    """
    __tablename__ = "tenant_tax_settings"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, unique=True)
    charge_vat = db.Column(db.Boolean, nullable=False, default=True)
    default_vat_rate_bps = db.Column(db.Integer, nullable=False, default=1600)
    pricing_mode = db.Column(db.String(16), nullable=False, default=PricingMode.EXCLUSIVE.value)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "charge_vat": self.charge_vat,
            "default_vat_rate_bps": self.default_vat_rate_bps,
            "pricing_mode": self.pricing_mode,
            "updated_at": to_utc_z(self.updated_at),
        }
