# Overview: Service-layer operations for cashier commission; pluggable per-sale commission policies.

from __future__ import annotations

from typing import Protocol

from flask import current_app

from ..models import Sale
from .tax_service import BPS_DENOMINATOR, half_up_div


class CommissionPolicy(Protocol):
    def commission_for(self, sale: Sale) -> int:
        """Commission in cents earned on a sale."""
        ...


class ProfitShareCommissionPolicy:
    """
    rate_bps of the gross profit on what the customer kept:
    max(0, unit_price - unit_cost) x (quantity - returned), summed over
    non-deleted lines, rounded half-up to the cent. Lines without a cost
    snapshot earn nothing.
    """

    def __init__(self, rate_bps: int):
        if rate_bps < 0:
            raise ValueError("rate_bps must be >= 0")
        self.rate_bps = rate_bps

    def commission_for(self, sale: Sale) -> int:
        profit = 0
        for line in sale.lines:
            if line.is_deleted or line.unit_cost_cents is None:
                continue
            kept = line.quantity - (line.returned_quantity or 0)
            profit += max(0, line.unit_price_cents - line.unit_cost_cents) * kept
        return half_up_div(profit * self.rate_bps, BPS_DENOMINATOR)


def default_policy() -> CommissionPolicy:
    return ProfitShareCommissionPolicy(current_app.config["CASHIER_COMMISSION_RATE_BPS"])
