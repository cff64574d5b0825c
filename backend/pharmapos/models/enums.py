"""
Status and type enums.

Stored in String columns by value; members compare equal to their value, so
rows loaded from the database (plain strings) can be checked against them
directly.
"""

from __future__ import annotations

import enum


class StrEnum(str, enum.Enum):
    def __str__(self) -> str:
        return self.value

    @classmethod
    def values(cls) -> list[str]:
        return [member.value for member in cls]

    @classmethod
    def parse(cls, value):
        """Lenient lookup by value (case-insensitive); raises ValueError."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            raise ValueError(f"invalid {cls.__name__}: {value!r}")
        return cls(value.strip().upper())


class PricingMode(StrEnum):
    INCLUSIVE = "INCLUSIVE"  # Prices include VAT
    EXCLUSIVE = "EXCLUSIVE"  # VAT added on top


class TaxClassification(StrEnum):
    STANDARD = "STANDARD"
    REDUCED = "REDUCED"
    ZERO = "ZERO"
    EXEMPT = "EXEMPT"


class TransactionType(StrEnum):
    PURCHASE = "PURCHASE"
    SALE = "SALE"
    ADJUSTMENT = "ADJUSTMENT"
    TRANSFER_IN = "TRANSFER_IN"
    TRANSFER_OUT = "TRANSFER_OUT"
    RETURN = "RETURN"
    EXPIRY_WRITE_OFF = "EXPIRY_WRITE_OFF"
    DAMAGE_WRITE_OFF = "DAMAGE_WRITE_OFF"
    INITIAL_STOCK = "INITIAL_STOCK"


class SourceType(StrEnum):
    SALE = "SALE"
    SALE_CANCEL = "SALE_CANCEL"
    SALE_EDIT = "SALE_EDIT"
    RETURN = "RETURN"
    PURCHASE_ORDER = "PURCHASE_ORDER"
    INVENTORY_ADJUSTMENT = "INVENTORY_ADJUSTMENT"
    INVENTORY_TRANSFER = "INVENTORY_TRANSFER"
    INITIAL_STOCK = "INITIAL_STOCK"
    EXPIRY_WRITE_OFF = "EXPIRY_WRITE_OFF"
    DAMAGE_WRITE_OFF = "DAMAGE_WRITE_OFF"


class SaleStatus(StrEnum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    SUSPENDED = "SUSPENDED"
    REFUNDED = "REFUNDED"


class SaleReturnStatus(StrEnum):
    NONE = "NONE"
    PARTIAL = "PARTIAL"
    FULL = "FULL"


class SalePaymentStatus(StrEnum):
    """Aggregate payment state of a sale."""
    AWAITING_PAYMENT = "AWAITING_PAYMENT"
    PAID = "PAID"
    CREDIT = "CREDIT"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    VOIDED = "VOIDED"


class PaymentMethod(StrEnum):
    CASH = "CASH"
    MPESA = "MPESA"
    TILL = "TILL"
    CARD = "CARD"
    BANK_TRANSFER = "BANK_TRANSFER"
    CHEQUE = "CHEQUE"
    ADJUSTMENT = "ADJUSTMENT"  # system-generated by approved sale edits


TENDER_METHODS = [m for m in PaymentMethod if m is not PaymentMethod.ADJUSTMENT]


class PaymentStatus(StrEnum):
    """State of a single SalePayment row."""
    COMPLETED = "COMPLETED"
    PENDING = "PENDING"
    FAILED = "FAILED"
    VOIDED = "VOIDED"


class CreditStatus(StrEnum):
    ACTIVE = "ACTIVE"
    OVERDUE = "OVERDUE"
    PAID = "PAID"
    CLOSED = "CLOSED"
    SUSPENDED = "SUSPENDED"


class ReturnStatus(StrEnum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    PROCESSED = "PROCESSED"
    REJECTED = "REJECTED"


class EditRequestType(StrEnum):
    PRICE_CHANGE = "PRICE_CHANGE"
    LINE_DELETE = "LINE_DELETE"


class EditRequestStatus(StrEnum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class MpesaStatus(StrEnum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"
