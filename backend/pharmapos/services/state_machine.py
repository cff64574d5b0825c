# Overview: Allowed status transitions for every state machine, checked at the point of mutation.

from __future__ import annotations

from ..errors import InvalidStateError
from ..models.enums import (
    SaleStatus,
    CreditStatus,
    ReturnStatus,
    EditRequestStatus,
    MpesaStatus,
)


SALE_TRANSITIONS = {
    SaleStatus.PENDING: {SaleStatus.COMPLETED, SaleStatus.SUSPENDED, SaleStatus.CANCELLED},
    SaleStatus.SUSPENDED: {SaleStatus.PENDING, SaleStatus.CANCELLED},
    SaleStatus.COMPLETED: {SaleStatus.CANCELLED, SaleStatus.REFUNDED},
    SaleStatus.CANCELLED: set(),
    SaleStatus.REFUNDED: set(),
}

CREDIT_TRANSITIONS = {
    CreditStatus.ACTIVE: {CreditStatus.OVERDUE, CreditStatus.PAID, CreditStatus.CLOSED, CreditStatus.SUSPENDED},
    CreditStatus.OVERDUE: {CreditStatus.PAID, CreditStatus.CLOSED, CreditStatus.SUSPENDED},
    CreditStatus.SUSPENDED: {CreditStatus.ACTIVE, CreditStatus.CLOSED},
    CreditStatus.PAID: set(),
    CreditStatus.CLOSED: set(),
}

RETURN_TRANSITIONS = {
    ReturnStatus.PENDING: {ReturnStatus.APPROVED, ReturnStatus.REJECTED},
    ReturnStatus.APPROVED: {ReturnStatus.PROCESSED, ReturnStatus.REJECTED},
    ReturnStatus.PROCESSED: set(),
    ReturnStatus.REJECTED: set(),
}

EDIT_REQUEST_TRANSITIONS = {
    EditRequestStatus.PENDING: {EditRequestStatus.APPROVED, EditRequestStatus.REJECTED},
    EditRequestStatus.APPROVED: set(),
    EditRequestStatus.REJECTED: set(),
}

MPESA_TRANSITIONS = {
    MpesaStatus.PENDING: {MpesaStatus.COMPLETED, MpesaStatus.CANCELLED, MpesaStatus.FAILED},
    MpesaStatus.COMPLETED: set(),
    MpesaStatus.CANCELLED: set(),
    MpesaStatus.FAILED: set(),
}

_MACHINES = {
    SaleStatus: ("sale", SALE_TRANSITIONS),
    CreditStatus: ("credit account", CREDIT_TRANSITIONS),
    ReturnStatus: ("return", RETURN_TRANSITIONS),
    EditRequestStatus: ("edit request", EDIT_REQUEST_TRANSITIONS),
    MpesaStatus: ("M-Pesa transaction", MPESA_TRANSITIONS),
}


def can_transition(current, target) -> bool:
    enum_cls = type(target)
    _, table = _MACHINES[enum_cls]
    return enum_cls(current) in table and enum_cls(target) in table[enum_cls(current)]


def is_terminal(status) -> bool:
    enum_cls = type(status)
    _, table = _MACHINES[enum_cls]
    return not table[status]


def ensure_transition(current, target, *, entity_id=None) -> None:
    """Raise InvalidStateError unless current -> target is allowed for target's machine."""
    enum_cls = type(target)
    name, _ = _MACHINES[enum_cls]
    if not can_transition(current, target):
        raise InvalidStateError(
            f"Cannot move {name} from {current} to {target}",
            details={"id": entity_id, "current_status": str(current), "requested_status": str(target)},
        )
