# Overview: Service-layer operations for document numbering; per-tenant atomic sequences.

from __future__ import annotations

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..errors import ValidationError
from ..extensions import db
from ..models import DocumentSequence


# document_type -> number prefix
SALE = ("SALE", "SALE")
RETURN = ("RETURN", "RET")
CREDIT_ACCOUNT = ("CREDIT_ACCOUNT", "CR")
CREDIT_PAYMENT = ("CREDIT_PAYMENT", "CRP")
TRANSFER = ("TRANSFER", "TRF")
RECEIPT = ("RECEIPT", "GRN")


def _bump(tenant_id: int, document_type: str) -> int | None:
    stmt = (
        update(DocumentSequence)
        .where(
            DocumentSequence.tenant_id == tenant_id,
            DocumentSequence.document_type == document_type,
        )
        .values(next_number=DocumentSequence.next_number + 1)
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    if not result.rowcount:
        return None
    current = (
        db.session.query(DocumentSequence.next_number)
        .filter_by(tenant_id=tenant_id, document_type=document_type)
        .scalar()
    )
    return current - 1


def next_document_number(
    *,
    tenant_id: int,
    document_type: str,
    prefix: str,
    pad: int = 6,
) -> str:
    """
    Atomically allocate the next document number for a tenant/type.

    Must be called inside the caller's unit of work: the UPDATE holds the
    sequence row until that unit commits, and a rolled-back sale gives its
    number back.
    """
    if not tenant_id:
        raise ValidationError("tenant_id is required")
    if not document_type:
        raise ValidationError("document_type is required")

    next_num = _bump(tenant_id, document_type)
    if next_num is None:
        if db.engine.dialect.name == "sqlite":
            # Writers are already serialized by BEGIN IMMEDIATE
            db.session.add(DocumentSequence(tenant_id=tenant_id, document_type=document_type, next_number=2))
            db.session.flush()
            next_num = 1
        else:
            try:
                with db.session.begin_nested():
                    db.session.add(DocumentSequence(tenant_id=tenant_id, document_type=document_type, next_number=2))
                next_num = 1
            except IntegrityError:
                # Another transaction created the row first
                next_num = _bump(tenant_id, document_type)
                if next_num is None:
                    raise

    return f"{prefix}-{tenant_id:03d}-{next_num:0{pad}d}"


def allocate(tenant_id: int, kind: tuple[str, str]) -> str:
    document_type, prefix = kind
    return next_document_number(tenant_id=tenant_id, document_type=document_type, prefix=prefix)
