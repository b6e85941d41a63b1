"""Agency balance and withdrawal requests.

available = completed rent payments - (pending + processing + completed withdrawals)

Every write that can lower the balance first bumps the agency's wallet row.
That UPDATE holds the row lock until commit (PostgreSQL) or runs inside a
BEGIN IMMEDIATE transaction (SQLite), so the balance read that follows
already includes every competing request.
"""

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.errors import (
    BillingError,
    ConsistencyError,
    InsufficientBalanceError,
    InvalidStateError,
    NotFoundError,
    ProviderError,
    ValidationError,
)
from app.models.withdrawal import AgencyWallet, OnlineRentPayment, WithdrawalRequest
from app.services.payout_client import PayoutClient, PayoutResult
from app.utils import mask_phone

logger = logging.getLogger("immopay")

WITHDRAWAL_METHODS = ("wave", "orange_money", "mtn_money", "moov")
RESERVED_STATUSES = ("pending", "processing", "completed")
WITHDRAWAL_STATUSES = ("pending", "processing", "completed", "failed", "cancelled")


@dataclass(frozen=True)
class WithdrawalStats:
    received_total: int
    pending_total: int
    pending_count: int
    processing_total: int
    completed_total: int
    total_requests: int
    available_balance: int


def received_total(db: Session, agency_id: int) -> int:
    total = (
        db.query(func.coalesce(func.sum(OnlineRentPayment.amount), 0))
        .filter(OnlineRentPayment.agency_id == agency_id, OnlineRentPayment.status == "completed")
        .scalar()
    )
    return int(total)


def _withdrawn_total(db: Session, agency_id: int, statuses: tuple[str, ...]) -> int:
    total = (
        db.query(func.coalesce(func.sum(WithdrawalRequest.amount), 0))
        .filter(WithdrawalRequest.agency_id == agency_id, WithdrawalRequest.status.in_(statuses))
        .scalar()
    )
    return int(total)


def available_balance(db: Session, agency_id: int) -> int:
    return received_total(db, agency_id) - _withdrawn_total(db, agency_id, RESERVED_STATUSES)


def _lock_wallet(db: Session, agency_id: int) -> None:
    bump = (
        update(AgencyWallet)
        .where(AgencyWallet.agency_id == agency_id)
        .values(version=AgencyWallet.version + 1, updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    if db.execute(bump).rowcount:
        return

    try:
        with db.begin_nested():
            db.add(AgencyWallet(agency_id=agency_id, version=1))
    except IntegrityError:
        # another request created the row first; wait on its lock instead
        db.execute(bump)


def _get_withdrawal(db: Session, withdrawal_id: int, agency_id: int | None = None) -> WithdrawalRequest:
    withdrawal = db.get(WithdrawalRequest, withdrawal_id, populate_existing=True)
    if withdrawal is None or (agency_id is not None and withdrawal.agency_id != agency_id):
        raise NotFoundError(f"Demande de reversement {withdrawal_id} introuvable")
    return withdrawal


def _move(db: Session, withdrawal_id: int, from_status: str, to_status: str, **values) -> bool:
    result = db.execute(
        update(WithdrawalRequest)
        .where(WithdrawalRequest.id == withdrawal_id, WithdrawalRequest.status == from_status)
        .values(status=to_status, updated_at=datetime.utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def list_withdrawals(
    db: Session, agency_id: int, status: str | None = None, limit: int = 100
) -> list[WithdrawalRequest]:
    query = db.query(WithdrawalRequest).filter(WithdrawalRequest.agency_id == agency_id)
    if status:
        query = query.filter(WithdrawalRequest.status == status)
    return query.order_by(WithdrawalRequest.created_at.desc(), WithdrawalRequest.id.desc()).limit(limit).all()


def create_withdrawal(
    db: Session,
    agency_id: int,
    amount: int,
    recipient_phone: str,
    payment_method: str,
    recipient_name: str | None = None,
    notes: str | None = None,
) -> WithdrawalRequest:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError("Le montant doit être un entier positif")
    if not recipient_phone or not recipient_phone.strip():
        raise ValidationError("Numéro du bénéficiaire requis")
    if payment_method not in WITHDRAWAL_METHODS:
        raise ValidationError(f"Mode de réception non pris en charge: {payment_method}")

    _lock_wallet(db, agency_id)
    available = available_balance(db, agency_id)
    if amount > available:
        db.rollback()
        logger.warning(
            "Withdrawal refused: agency_id=%d requested=%d available=%d",
            agency_id, amount, available,
        )
        raise InsufficientBalanceError(amount, available)

    withdrawal = WithdrawalRequest(
        agency_id=agency_id,
        amount=amount,
        recipient_phone=recipient_phone.strip(),
        recipient_name=recipient_name or None,
        payment_method=payment_method,
        notes=notes or None,
        status="pending",
    )
    db.add(withdrawal)
    db.commit()
    db.refresh(withdrawal)

    logger.info(
        "Withdrawal created: id=%d agency_id=%d amount=%d phone=%s",
        withdrawal.id, agency_id, amount, mask_phone(withdrawal.recipient_phone),
    )
    return withdrawal


def cancel_withdrawal(db: Session, withdrawal_id: int, agency_id: int | None = None) -> WithdrawalRequest:
    withdrawal = _get_withdrawal(db, withdrawal_id, agency_id)
    if not _move(db, withdrawal_id, "pending", "cancelled"):
        db.rollback()
        current = _get_withdrawal(db, withdrawal_id)
        raise InvalidStateError(
            f"Seules les demandes en attente peuvent être annulées (statut: {current.status})"
        )
    db.commit()
    logger.info("Withdrawal cancelled: id=%d agency_id=%d", withdrawal_id, withdrawal.agency_id)
    return _get_withdrawal(db, withdrawal_id)


def _start_processing(db: Session, withdrawal: WithdrawalRequest, payout_client: PayoutClient) -> None:
    if withdrawal.status == "pending":
        moved = _move(db, withdrawal.id, "pending", "processing", failure_reason=None)
    elif withdrawal.status == "failed":
        # a failed request released its reservation: take it again
        _lock_wallet(db, withdrawal.agency_id)
        available = available_balance(db, withdrawal.agency_id)
        if withdrawal.amount > available:
            db.rollback()
            raise InsufficientBalanceError(withdrawal.amount, available)
        moved = _move(db, withdrawal.id, "failed", "processing", failure_reason=None)
    elif withdrawal.status == "processing" and withdrawal.failure_reason and payout_client.idempotent:
        # timed out earlier, funds still reserved; the payout API drops a duplicate send
        moved = db.execute(
            update(WithdrawalRequest)
            .where(
                WithdrawalRequest.id == withdrawal.id,
                WithdrawalRequest.status == "processing",
                WithdrawalRequest.failure_reason.isnot(None),
            )
            .values(failure_reason=None, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        ).rowcount == 1
    else:
        moved = False

    if not moved:
        db.rollback()
        current = _get_withdrawal(db, withdrawal.id)
        raise InvalidStateError(f"Demande {withdrawal.id} non traitable (statut: {current.status})")
    db.commit()


def process_withdrawal(
    db: Session, payout_client: PayoutClient, withdrawal_id: int, agency_id: int | None = None
) -> WithdrawalRequest:
    """Dispatch the payout of a pending (or previously failed) request.

    A payout timeout leaves the request processing with its funds reserved,
    since the transfer may have gone through. It can be re-sent only through
    an idempotent payout client.
    """
    withdrawal = _get_withdrawal(db, withdrawal_id, agency_id)
    _start_processing(db, withdrawal, payout_client)
    withdrawal = _get_withdrawal(db, withdrawal_id)
    # no transaction is held during the payout call
    db.expunge(withdrawal)
    db.rollback()

    try:
        result = payout_client.send_payout(withdrawal)
    except ProviderError as exc:
        if exc.timeout:
            db.execute(
                update(WithdrawalRequest)
                .where(WithdrawalRequest.id == withdrawal_id, WithdrawalRequest.status == "processing")
                .values(failure_reason=exc.message, updated_at=datetime.utcnow())
                .execution_options(synchronize_session=False)
            )
            db.commit()
            logger.warning("Withdrawal %d left processing after payout timeout", withdrawal_id)
            raise
        result = PayoutResult(success=False, failure_reason=exc.message)
    except Exception as exc:
        _move(db, withdrawal_id, "processing", "failed", failure_reason=str(exc), processed_at=datetime.utcnow())
        db.commit()
        logger.error("Payout crashed for withdrawal=%d: %s", withdrawal_id, exc)
        raise

    now = datetime.utcnow()
    if result.success:
        _move(db, withdrawal_id, "processing", "completed", payout_reference=result.reference, processed_at=now)
        logger.info("Withdrawal completed: id=%d ref=%s", withdrawal_id, result.reference)
    else:
        _move(db, withdrawal_id, "processing", "failed", failure_reason=result.failure_reason, processed_at=now)
        logger.warning("Withdrawal failed: id=%d reason=%s", withdrawal_id, result.failure_reason)
    db.commit()
    return _get_withdrawal(db, withdrawal_id)


def process_pending_withdrawals(
    db: Session, payout_client: PayoutClient, agency_id: int | None = None, limit: int = 50
) -> list[WithdrawalRequest]:
    """Operator batch: process pending requests oldest first."""
    query = db.query(WithdrawalRequest.id).filter(WithdrawalRequest.status == "pending")
    if agency_id is not None:
        query = query.filter(WithdrawalRequest.agency_id == agency_id)
    ids = [row.id for row in query.order_by(WithdrawalRequest.created_at, WithdrawalRequest.id).limit(limit)]
    db.rollback()

    processed = []
    for withdrawal_id in ids:
        try:
            processed.append(process_withdrawal(db, payout_client, withdrawal_id))
        except BillingError as exc:
            # cancelled or picked up by someone else since the listing
            logger.info("Skipped withdrawal %d in batch: %s", withdrawal_id, exc.message)
    return processed


def withdrawal_stats(db: Session, agency_id: int) -> WithdrawalStats:
    received = received_total(db, agency_id)
    pending_total = _withdrawn_total(db, agency_id, ("pending",))
    processing_total = _withdrawn_total(db, agency_id, ("processing",))
    completed_total = _withdrawn_total(db, agency_id, ("completed",))
    pending_count = (
        db.query(WithdrawalRequest)
        .filter(WithdrawalRequest.agency_id == agency_id, WithdrawalRequest.status == "pending")
        .count()
    )
    total_requests = db.query(WithdrawalRequest).filter(WithdrawalRequest.agency_id == agency_id).count()
    return WithdrawalStats(
        received_total=received,
        pending_total=pending_total,
        pending_count=pending_count,
        processing_total=processing_total,
        completed_total=completed_total,
        total_requests=total_requests,
        available_balance=received - pending_total - processing_total - completed_total,
    )


def record_rent_payment(
    db: Session,
    agency_id: int,
    amount: int,
    external_reference: str,
    tenant_id: int | None = None,
    payment_method: str | None = None,
    status: str = "completed",
    paid_at: datetime | None = None,
) -> OnlineRentPayment:
    """Record rent received online. Idempotent on ``external_reference``."""
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError("Le montant doit être un entier positif")
    if status not in ("pending", "completed", "failed"):
        raise ValidationError(f"Statut de paiement inconnu: {status}")
    if not external_reference:
        raise ValidationError("Référence du paiement requise")

    existing = (
        db.query(OnlineRentPayment)
        .filter(OnlineRentPayment.external_reference == external_reference)
        .first()
    )
    if existing is None:
        payment = OnlineRentPayment(
            agency_id=agency_id,
            tenant_id=tenant_id,
            amount=amount,
            payment_method=payment_method,
            external_reference=external_reference,
            status=status,
            paid_at=paid_at or datetime.utcnow(),
        )
        try:
            with db.begin_nested():
                db.add(payment)
        except IntegrityError:
            existing = (
                db.query(OnlineRentPayment)
                .filter(OnlineRentPayment.external_reference == external_reference)
                .one()
            )
        else:
            db.commit()
            logger.info(
                "Rent payment recorded: agency_id=%d amount=%d ref=%s status=%s",
                agency_id, amount, external_reference, status,
            )
            return payment

    if existing.agency_id != agency_id or existing.amount != amount:
        db.rollback()
        raise ConsistencyError(f"Le paiement {external_reference} existe avec d'autres données")
    if existing.status == "pending" and status != "pending":
        existing.status = status
        db.commit()
        logger.info("Rent payment %s now %s", external_reference, status)
    return existing
