# Overview: Service-layer operations for VAT; rate resolution and integer-cent line pricing.

from __future__ import annotations

from dataclasses import dataclass

from ..extensions import db
from ..models import Product, TenantTaxSettings
from ..models.enums import PricingMode, TaxClassification


BPS_DENOMINATOR = 10_000
REDUCED_RATE_BPS = 800  # Kenya reduced VAT rate (8%)


@dataclass(frozen=True)
class TaxContext:
    charge_vat: bool
    default_rate_bps: int
    pricing_mode: PricingMode


@dataclass(frozen=True)
class LineAmounts:
    gross_cents: int
    discount_cents: int
    tax_cents: int
    line_total_cents: int


@dataclass(frozen=True)
class SaleTotals:
    subtotal_cents: int
    discount_cents: int
    tax_cents: int
    total_cents: int


def half_up_div(numerator: int, denominator: int) -> int:
    """Integer division rounded half-up (numerator >= 0, denominator > 0)."""
    return (numerator + denominator // 2) // denominator


def tax_context(tenant_id: int) -> TaxContext:
    """
    Tenant VAT settings. A tenant with no settings row charges no VAT.
    """
    settings = db.session.query(TenantTaxSettings).filter_by(tenant_id=tenant_id).first()
    if settings is None:
        return TaxContext(charge_vat=False, default_rate_bps=0, pricing_mode=PricingMode.EXCLUSIVE)
    return TaxContext(
        charge_vat=bool(settings.charge_vat),
        default_rate_bps=settings.default_vat_rate_bps,
        pricing_mode=PricingMode.parse(settings.pricing_mode),
    )


def rate_for_product(context: TaxContext, product: Product) -> int:
    if not context.charge_vat:
        return 0
    classification = TaxClassification.parse(product.tax_classification or TaxClassification.STANDARD)
    if classification is TaxClassification.STANDARD:
        return product.tax_rate_bps if product.tax_rate_bps is not None else context.default_rate_bps
    if classification is TaxClassification.REDUCED:
        return product.tax_rate_bps if product.tax_rate_bps is not None else REDUCED_RATE_BPS
    # ZERO-rated and EXEMPT supplies carry no output VAT
    return 0


def price_line(
    quantity: int,
    unit_price_cents: int,
    discount_cents: int,
    rate_bps: int,
    pricing_mode: PricingMode,
) -> LineAmounts:
    """
    EXCLUSIVE: tax is added on top of the discounted amount.
    INCLUSIVE: tax is extracted from the discounted amount, which is the line total.
    """
    gross = quantity * unit_price_cents
    discounted = gross - discount_cents
    if PricingMode(pricing_mode) is PricingMode.INCLUSIVE:
        tax = half_up_div(discounted * rate_bps, BPS_DENOMINATOR + rate_bps) if rate_bps else 0
        total = discounted
    else:
        tax = half_up_div(discounted * rate_bps, BPS_DENOMINATOR) if rate_bps else 0
        total = discounted + tax
    return LineAmounts(gross_cents=gross, discount_cents=discount_cents, tax_cents=tax, line_total_cents=total)


def summarize(lines: list[LineAmounts]) -> SaleTotals:
    return SaleTotals(
        subtotal_cents=sum(line.gross_cents for line in lines),
        discount_cents=sum(line.discount_cents for line in lines),
        tax_cents=sum(line.tax_cents for line in lines),
        total_cents=sum(line.line_total_cents for line in lines),
    )


def reprice_sale(sale) -> SaleTotals:
    """
    Recompute every non-deleted line and the sale header from stored snapshots
    (line tax_rate_bps and the sale's pricing_mode). Mutates in place.
    """
    amounts = []
    for line in sale.lines:
        if line.is_deleted:
            continue
        line_amounts = price_line(
            line.quantity,
            line.unit_price_cents,
            line.discount_amount_cents,
            line.tax_rate_bps,
            PricingMode.parse(sale.pricing_mode),
        )
        line.tax_amount_cents = line_amounts.tax_cents
        line.line_total_cents = line_amounts.line_total_cents
        amounts.append(line_amounts)

    totals = summarize(amounts)
    sale.subtotal_cents = totals.subtotal_cents
    sale.discount_amount_cents = totals.discount_cents
    sale.tax_amount_cents = totals.tax_cents
    sale.total_amount_cents = totals.total_cents
    return totals
