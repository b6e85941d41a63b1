"""Payment transaction ledger.

States: pending → completed | failed, completed → refunded. Transitions are
applied with a conditional UPDATE on the current status, so two deliveries
of the same webhook cannot both win. A losing delivery re-reads the row and
is a no-op when it repeats the stored outcome. Any other transition raises
InvalidTransitionError, in both directions. ConsistencyError is kept for a
confirmation that disagrees with the ledger (reference or amount).
"""

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.errors import (
    ConsistencyError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
    WebhookSignatureError,
)
from app.models.transaction import PaymentTransaction
from app.services.payment_providers import CallbackEvent
from app.services.proration import ProrationResult
from app.services.provider_registry import ProviderRegistry, parse_provider_name
from app.services.subscription_service import apply_completed_transaction

logger = logging.getLogger("immopay")

TRANSITIONS = {
    "pending": {"completed", "failed"},
    "completed": {"refunded"},
    "failed": set(),
    "refunded": set(),
}


@dataclass(frozen=True)
class Customer:
    phone: str | None = None
    name: str | None = None
    email: str | None = None


def get_transaction(db: Session, transaction_id: int) -> PaymentTransaction:
    tx = db.get(PaymentTransaction, transaction_id, populate_existing=True)
    if tx is None:
        raise NotFoundError(f"Transaction {transaction_id} introuvable")
    return tx


def find_by_reference(db: Session, provider_name: str, reference: str) -> PaymentTransaction | None:
    return (
        db.query(PaymentTransaction)
        .filter(
            PaymentTransaction.provider_name == provider_name,
            PaymentTransaction.external_reference == reference,
        )
        .first()
    )


def check_transition(current: str, target: str) -> None:
    if target not in TRANSITIONS.get(current, set()):
        raise InvalidTransitionError(f"Transition {current} → {target} interdite")


def _conditional_update(db: Session, transaction_id: int, from_status: str, **values) -> bool:
    values["updated_at"] = datetime.utcnow()
    result = db.execute(
        update(PaymentTransaction)
        .where(PaymentTransaction.id == transaction_id, PaymentTransaction.status == from_status)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def create_pending(
    db: Session,
    *,
    agency_id: int,
    plan_id: int,
    billing_cycle: str,
    amount: int,
    currency: str,
    payment_method: str,
    provider_name: str,
    customer: Customer,
    proration: ProrationResult | None = None,
    subscription_id: int | None = None,
    previous_plan_id: int | None = None,
) -> PaymentTransaction:
    if amount < 0:
        raise ValidationError("Le montant d'une transaction ne peut pas être négatif")

    tx = PaymentTransaction(
        agency_id=agency_id,
        plan_id=plan_id,
        subscription_id=subscription_id,
        billing_cycle=billing_cycle,
        amount=amount,
        currency=currency,
        payment_method=payment_method,
        provider_name=provider_name,
        status="pending",
        customer_phone=customer.phone,
        customer_name=customer.name,
        customer_email=customer.email,
        is_prorated=proration is not None,
        proration_credit=proration.current_plan_credit if proration else None,
        remaining_days=proration.remaining_days if proration else None,
        previous_plan_id=previous_plan_id,
    )
    db.add(tx)
    db.flush()
    logger.info(
        "Transaction created: id=%d agency_id=%d amount=%d provider=%s",
        tx.id, agency_id, amount, provider_name,
    )
    return tx


def attach_reference(db: Session, transaction_id: int, reference: str) -> PaymentTransaction:
    tx = get_transaction(db, transaction_id)
    if tx.external_reference and tx.external_reference != reference:
        raise ConsistencyError(
            f"Transaction {transaction_id} a déjà la référence {tx.external_reference}"
        )
    tx.external_reference = reference
    db.commit()
    return tx


def mark_completed(
    db: Session,
    transaction_id: int,
    external_reference: str | None,
    completed_at: datetime | None = None,
) -> PaymentTransaction:
    """Record a provider confirmation and activate the subscription.

    Idempotent on (transaction_id, external_reference).
    """
    tx = get_transaction(db, transaction_id)
    reference = external_reference or tx.external_reference
    if tx.status == "pending" and tx.external_reference and reference != tx.external_reference:
        logger.error(
            "Completion for tx=%d carries reference %s, expected %s",
            transaction_id, reference, tx.external_reference,
        )
        raise ConsistencyError(f"Référence inattendue pour la transaction {transaction_id}")

    won = _conditional_update(
        db,
        transaction_id,
        "pending",
        status="completed",
        external_reference=reference,
        completed_at=completed_at or datetime.utcnow(),
    )
    tx = get_transaction(db, transaction_id)

    if not won:
        if tx.status in ("completed", "refunded") and tx.external_reference == reference:
            logger.info("Duplicate completion ignored: tx=%d ref=%s", transaction_id, reference)
            db.rollback()
            return tx
        if tx.status in ("completed", "refunded"):
            logger.error(
                "Conflicting completion for tx=%d: stored ref=%s, received ref=%s",
                transaction_id, tx.external_reference, reference,
            )
            db.rollback()
            raise ConsistencyError(
                f"La transaction {transaction_id} est déjà confirmée avec une autre référence"
            )
        logger.error("Completion received for tx=%d in status %s", transaction_id, tx.status)
        db.rollback()
        check_transition(tx.status, "completed")

    apply_completed_transaction(db, tx)
    db.commit()
    logger.info("Transaction completed: id=%d ref=%s", transaction_id, reference)
    return tx


def mark_failed(db: Session, transaction_id: int, reason: str | None) -> PaymentTransaction:
    won = _conditional_update(db, transaction_id, "pending", status="failed", error_message=reason)
    tx = get_transaction(db, transaction_id)

    if not won:
        db.rollback()
        if tx.status == "failed":
            logger.info("Duplicate failure ignored: tx=%d", transaction_id)
            return tx
        logger.error(
            "Failure received for tx=%d already %s (reason=%s)", transaction_id, tx.status, reason
        )
        check_transition(tx.status, "failed")

    db.commit()
    logger.warning("Transaction failed: id=%d reason=%s", transaction_id, reason)
    return tx


def mark_refunded(db: Session, transaction_id: int) -> PaymentTransaction:
    won = _conditional_update(db, transaction_id, "completed", status="refunded")
    tx = get_transaction(db, transaction_id)
    if not won:
        db.rollback()
        check_transition(tx.status, "refunded")
    db.commit()
    logger.info("Transaction refunded: id=%d", transaction_id)
    return tx


def _locate(db: Session, provider: str, event: CallbackEvent) -> PaymentTransaction:
    tx = None
    if event.transaction_id is not None:
        tx = db.get(PaymentTransaction, event.transaction_id)
    if tx is None and event.external_reference:
        tx = find_by_reference(db, provider, event.external_reference)
    if tx is None or tx.provider_name != provider:
        logger.warning(
            "Callback from %s for unknown transaction (id=%s ref=%s)",
            provider, event.transaction_id, event.external_reference,
        )
        raise NotFoundError("Transaction introuvable")
    return tx


def handle_callback(
    db: Session,
    registry: ProviderRegistry,
    provider: str,
    payload: dict,
    headers: dict | None = None,
    body: bytes = b"",
) -> PaymentTransaction:
    """Apply a provider webhook to the ledger."""
    name = parse_provider_name(provider)
    adapter = registry.adapter_named(name)
    if not adapter.verify_signature(headers or {}, body):
        logger.warning("Rejected %s callback: bad signature", name.value)
        raise WebhookSignatureError("Signature invalide")

    event = adapter.parse_callback(payload)
    tx = _locate(db, name.value, event)

    if event.status == "completed":
        if event.amount is not None and event.amount != tx.amount:
            logger.error(
                "Amount mismatch on tx=%d: expected %d, provider reported %d",
                tx.id, tx.amount, event.amount,
            )
            raise ConsistencyError("Montant confirmé différent du montant facturé")
        return mark_completed(db, tx.id, event.external_reference)
    if event.status == "failed":
        return mark_failed(db, tx.id, event.reason or "Paiement refusé par le fournisseur")

    logger.info("Callback from %s for tx=%d still pending", name.value, tx.id)
    return tx
