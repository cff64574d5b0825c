# Overview: Service-layer operations for M-Pesa STK payments; initiation, callback state machine and lookups.

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone

from flask import current_app

from ..errors import InvalidStateError, NotFoundError, PaymentGatewayError, ValidationError
from ..extensions import db
from ..models import MpesaTransaction, Sale, SalePayment
from ..models.enums import MpesaStatus, PaymentMethod, PaymentStatus, SaleStatus
from ..time_utils import utcnow
from ..validation import coerce_int, parse_enum
from . import sale_payments
from .concurrency import lock_for_update, run_in_unit_of_work
from .mpesa_client import DarajaClient
from .state_machine import ensure_transition
"""
M-Pesa bridge rules

- PENDING -> COMPLETED (ResultCode 0) | CANCELLED (ResultCode 1) | FAILED
  (anything else). Terminal states never revert; late or repeated callbacks
  are acknowledged and ignored.
- The callback touches only the MpesaTransaction, its linked SalePayment
  (while that payment is still PENDING) and the sale's derived payment
  status. It never touches inventory.
- The gateway is called outside any database transaction: the PENDING
  transaction is committed first, the outcome is recorded afterwards.
- A PENDING transaction with no matching callback is failed by
  expire_stale_transactions once MPESA_PENDING_TIMEOUT_SECONDS pass.
"""

PHONE_PATTERN = re.compile(r"^254[17]\d{8}$")
EAT = timezone(timedelta(hours=3))
ACK = {"ResultCode": "0", "ResultDesc": "Accepted"}
GATEWAY_EXTENSION_KEY = "pharmapos.mpesa_gateway"

RESULT_CANCELLED_BY_USER = 1


def normalize_phone_number(raw) -> str:
    """07XXXXXXXX, 7XXXXXXXX, +2547XXXXXXXX (and 01/1 prefixes) -> 2547XXXXXXXX."""
    if raw is None:
        raise ValidationError("phone_number is required")
    phone = re.sub(r"[\s\-()]", "", str(raw)).lstrip("+")
    if phone.startswith("0") and len(phone) == 10:
        phone = "254" + phone[1:]
    elif len(phone) == 9 and phone[0] in "17":
        phone = "254" + phone
    if not PHONE_PATTERN.match(phone):
        raise ValidationError(
            "phone_number must be a Kenyan mobile number (e.g. 0712345678)",
            details={"phone_number": str(raw)},
        )
    return phone


def get_gateway(gateway=None):
    """
    The gateway for this app. The first call builds a DarajaClient from
    config and keeps it in app.extensions, so its OAuth token is reused
    across pushes.
    """
    if gateway is not None:
        return gateway
    configured = current_app.extensions.get(GATEWAY_EXTENSION_KEY)
    if configured is None:
        configured = DarajaClient.from_config(current_app.config)
        current_app.extensions[GATEWAY_EXTENSION_KEY] = configured
    return configured


def _resolve_payment(sale: Sale, sale_payment_id: int | None) -> SalePayment | None:
    retryable = (PaymentStatus.PENDING.value, PaymentStatus.FAILED.value)
    if sale_payment_id is not None:
        payment = db.session.query(SalePayment).filter_by(id=sale_payment_id, sale_id=sale.id).first()
        if payment is None:
            raise NotFoundError("Payment not found on this sale", details={"sale_payment_id": sale_payment_id})
        if payment.payment_method != PaymentMethod.MPESA:
            raise ValidationError("Only MPESA payments can be pushed", details={"sale_payment_id": payment.id})
        if payment.status not in retryable:
            raise InvalidStateError(
                f"Payment is already {payment.status}",
                details={"sale_payment_id": payment.id, "status": payment.status},
            )
        return payment

    candidates = [
        p for p in sale.payments
        if p.payment_method == PaymentMethod.MPESA and p.status in retryable
    ]
    if len(candidates) > 1:
        raise ValidationError(
            "Sale has several unconfirmed M-Pesa payments; pass sale_payment_id",
            details={"sale_payment_ids": [p.id for p in candidates]},
        )
    return candidates[0] if candidates else None


def _shillings(amount_cents: int) -> int:
    # Daraja only accepts whole shillings; never undercharge
    return (amount_cents + 99) // 100


def initiate_stk_push(
    tenant_id: int,
    sale_id: int,
    phone_number,
    amount_cents: int | None = None,
    sale_payment_id: int | None = None,
    requested_by: int | None = None,
    gateway=None,
) -> dict:
    """
    Send an STK prompt for a sale and record a PENDING MpesaTransaction.

    On gateway failure the transaction (and its linked payment) is marked
    FAILED, committed, and PaymentGatewayError is raised.
    """
    phone = normalize_phone_number(phone_number)
    if amount_cents is not None:
        amount_cents = coerce_int(amount_cents, "amount_cents")
        if amount_cents <= 0:
            raise ValidationError("amount_cents must be > 0", details={"amount_cents": amount_cents})

    def _record_pending():
        sale = lock_for_update(db.session.query(Sale).filter_by(id=sale_id, tenant_id=tenant_id)).first()
        if sale is None:
            raise NotFoundError("Sale not found", details={"sale_id": sale_id})
        if sale.status not in (SaleStatus.COMPLETED, SaleStatus.PENDING):
            raise InvalidStateError(
                f"Cannot collect payment for a {sale.status} sale",
                details={"sale_id": sale.id, "status": sale.status},
            )

        payment = _resolve_payment(sale, sale_payment_id)
        if payment is not None:
            if amount_cents is not None and amount_cents != payment.amount_cents:
                raise ValidationError(
                    "amount_cents does not match the payment being collected",
                    details={"amount_cents": amount_cents, "payment_amount_cents": payment.amount_cents},
                )
            in_flight = db.session.query(MpesaTransaction.id).filter_by(
                sale_payment_id=payment.id, status=MpesaStatus.PENDING.value,
            ).first()
            if in_flight is not None:
                raise InvalidStateError(
                    "An STK push for this payment is already awaiting confirmation",
                    details={"transaction_id": in_flight[0]},
                )
            if payment.status == PaymentStatus.FAILED:
                payment.status = PaymentStatus.PENDING.value
                sale_payments.refresh_payment_status(sale)
            amount = payment.amount_cents
        elif sale.status == SaleStatus.COMPLETED:
            # A completed sale is already allocated; only its own M-Pesa tenders can be collected
            raise InvalidStateError(
                "Sale has no unconfirmed M-Pesa payment to collect",
                details={"sale_id": sale.id, "payment_status": sale.payment_status},
            )
        else:
            amount = amount_cents if amount_cents is not None else sale.total_amount_cents
            if amount <= 0:
                raise ValidationError("Nothing to collect on this sale", details={"sale_id": sale.id})

        till = (sale.branch.mpesa_till_number if sale.branch else None) or current_app.config["MPESA_SHORTCODE"]
        txn = MpesaTransaction(
            tenant_id=tenant_id,
            sale_id=sale.id,
            sale_payment_id=payment.id if payment is not None else None,
            phone_number=phone,
            amount_cents=amount,
            till_number=till,
            status=MpesaStatus.PENDING.value,
            requested_by=requested_by,
            requested_at=utcnow(),
        )
        db.session.add(txn)
        db.session.flush()
        return txn, sale.sale_number

    txn, sale_number = run_in_unit_of_work(_record_pending, label="record STK push")
    txn_id = txn.id
    config = current_app.config

    try:
        response = get_gateway(gateway).stk_push(
            business_short_code=config["MPESA_SHORTCODE"],
            till_number=txn.till_number,
            phone_number=phone,
            amount=_shillings(txn.amount_cents),
            timestamp=datetime.now(EAT).strftime("%Y%m%d%H%M%S"),
            transaction_type=config["MPESA_TRANSACTION_TYPE"],
            callback_url=config["MPESA_CALLBACK_URL"],
            account_reference=sale_number,
            description=f"Sale {sale_number}",
        )
    except PaymentGatewayError as e:
        _record_gateway_failure(txn_id, e)
        raise

    def _record_accepted():
        row = lock_for_update(db.session.query(MpesaTransaction).filter_by(id=txn_id)).first()
        row.merchant_request_id = response.get("MerchantRequestID")
        row.checkout_request_id = response.get("CheckoutRequestID")
        return row

    txn = run_in_unit_of_work(_record_accepted, label="record STK acceptance")
    current_app.logger.info(
        "STK push %s sent for sale %s (%s cents to %s)",
        txn.checkout_request_id, sale_number, txn.amount_cents, txn.till_number,
    )
    return txn.to_dict()


def _record_gateway_failure(txn_id: int, error: PaymentGatewayError) -> None:
    def _op():
        txn = lock_for_update(db.session.query(MpesaTransaction).filter_by(id=txn_id)).first()
        if txn.status != MpesaStatus.PENDING:
            return txn
        txn.status = MpesaStatus.FAILED.value
        txn.error_code = str(error.details.get("error_code") or "GATEWAY")[:16]
        txn.error_message = error.message[:255]
        txn.completed_at = utcnow()
        _mark_payment(txn, PaymentStatus.FAILED)
        return txn

    run_in_unit_of_work(_op, label="record STK failure")
    current_app.logger.warning("STK push for transaction %s failed: %s", txn_id, error.message)


def _mark_payment(txn: MpesaTransaction, status: PaymentStatus, receipt: str | None = None) -> None:
    payment = txn.sale_payment
    if payment is None or payment.status != PaymentStatus.PENDING:
        return
    payment.status = status.value
    if receipt:
        payment.reference_number = receipt
    sale = lock_for_update(db.session.query(Sale).filter_by(id=txn.sale_id)).first()
    sale_payments.refresh_payment_status(sale)


def _receipt_from_metadata(callback: dict) -> str | None:
    metadata = callback.get("CallbackMetadata") or {}
    for item in metadata.get("Item") or []:
        if isinstance(item, dict) and item.get("Name") == "MpesaReceiptNumber":
            value = item.get("Value")
            return str(value) if value is not None else None
    return None


def handle_stk_callback(payload) -> dict:
    """
    Apply a Daraja STK callback. Always answers the ACK body; unknown,
    malformed and late callbacks are logged and ignored.
    """
    callback = None
    if isinstance(payload, dict) and isinstance(payload.get("Body"), dict):
        callback = payload["Body"].get("stkCallback")
    if not isinstance(callback, dict) or not callback.get("CheckoutRequestID"):
        current_app.logger.warning("Ignoring malformed M-Pesa callback")
        return dict(ACK)

    checkout_id = str(callback["CheckoutRequestID"])
    try:
        result_code = int(callback.get("ResultCode"))
    except (TypeError, ValueError):
        current_app.logger.warning("Ignoring M-Pesa callback %s with bad ResultCode %r", checkout_id, callback.get("ResultCode"))
        return dict(ACK)

    if result_code == 0:
        target = MpesaStatus.COMPLETED
    elif result_code == RESULT_CANCELLED_BY_USER:
        target = MpesaStatus.CANCELLED
    else:
        target = MpesaStatus.FAILED
    description = str(callback.get("ResultDesc") or "")[:255]

    def _op():
        txn = lock_for_update(
            db.session.query(MpesaTransaction).filter_by(checkout_request_id=checkout_id)
        ).first()
        if txn is None:
            current_app.logger.warning("Ignoring M-Pesa callback for unknown checkout %s", checkout_id)
            return None
        if txn.status != MpesaStatus.PENDING:
            current_app.logger.info(
                "Ignoring M-Pesa callback for %s: transaction already %s", checkout_id, txn.status
            )
            return None

        ensure_transition(txn.status, target, entity_id=txn.id)
        txn.status = target.value
        txn.callback_received = True
        txn.completed_at = utcnow()
        if target is MpesaStatus.COMPLETED:
            txn.mpesa_receipt_number = _receipt_from_metadata(callback)
            _mark_payment(txn, PaymentStatus.COMPLETED, receipt=txn.mpesa_receipt_number)
        else:
            txn.error_code = str(result_code)
            txn.error_message = description
            _mark_payment(txn, PaymentStatus.FAILED)
        return txn

    txn = run_in_unit_of_work(_op, label="M-Pesa callback")
    if txn is not None:
        current_app.logger.info(
            "M-Pesa checkout %s -> %s (receipt=%s)", checkout_id, txn.status, txn.mpesa_receipt_number
        )
    return dict(ACK)


def expire_stale_transactions(
    tenant_id: int | None = None,
    older_than_seconds: int | None = None,
    now: datetime | None = None,
) -> int:
    """
    Fail PENDING transactions that never got a matching callback.

    A callback can be lost, or arrive before the CheckoutRequestID from the
    push response is stored, in which case it is ignored as unknown. Expiring
    the row moves its payment to FAILED so the cashier can push again or
    re-tender. Returns how many transactions were expired.
    """
    if older_than_seconds is None:
        older_than_seconds = int(current_app.config["MPESA_PENDING_TIMEOUT_SECONDS"])
    cutoff = (now or utcnow()) - timedelta(seconds=older_than_seconds)

    def _op():
        query = db.session.query(MpesaTransaction).filter(
            MpesaTransaction.status == MpesaStatus.PENDING.value,
            MpesaTransaction.requested_at < cutoff,
        )
        if tenant_id is not None:
            query = query.filter(MpesaTransaction.tenant_id == tenant_id)
        stale = lock_for_update(query.order_by(MpesaTransaction.id)).all()
        for txn in stale:
            ensure_transition(txn.status, MpesaStatus.FAILED, entity_id=txn.id)
            txn.status = MpesaStatus.FAILED.value
            txn.error_code = "TIMEOUT"
            txn.error_message = "No callback received"
            txn.completed_at = utcnow()
            _mark_payment(txn, PaymentStatus.FAILED)
        return [txn.checkout_request_id or str(txn.id) for txn in stale]

    expired = run_in_unit_of_work(_op, label="expire STK pushes")
    if expired:
        current_app.logger.warning("Expired %s unconfirmed STK push(es): %s", len(expired), ", ".join(expired))
    return len(expired)


def get_transaction_status(tenant_id: int, transaction_id: int) -> dict:
    txn = db.session.query(MpesaTransaction).filter_by(id=transaction_id, tenant_id=tenant_id).first()
    if txn is None:
        raise NotFoundError("M-Pesa transaction not found", details={"transaction_id": transaction_id})
    return txn.to_dict()


def list_transactions(tenant_id: int, sale_id: int | None = None, status: str | None = None, limit: int = 100) -> list[dict]:
    query = db.session.query(MpesaTransaction).filter(MpesaTransaction.tenant_id == tenant_id)
    if sale_id is not None:
        query = query.filter(MpesaTransaction.sale_id == sale_id)
    if status:
        query = query.filter(MpesaTransaction.status == parse_enum(MpesaStatus, status, "status").value)
    rows = query.order_by(MpesaTransaction.requested_at.desc(), MpesaTransaction.id.desc()).limit(limit).all()
    return [row.to_dict() for row in rows]
