import logging

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from app.config import RATE_LIMIT_WITHDRAWAL
from app.database import get_db
from app.dependencies import (
    get_payout_client,
    require_agency_admin,
    require_agency_user,
    require_integration_key,
)
from app.models.withdrawal import WithdrawalRequest
from app.rate_limit import limiter
from app.schemas.withdrawal import (
    BalanceResponse,
    RentPaymentCreate,
    RentPaymentResponse,
    WithdrawalCreate,
    WithdrawalItem,
    WithdrawalListResponse,
    WithdrawalResponse,
)
from app.services.payout_client import PayoutClient
from app.services.withdrawal_service import (
    cancel_withdrawal,
    create_withdrawal,
    list_withdrawals,
    process_withdrawal,
    record_rent_payment,
    withdrawal_stats,
)

logger = logging.getLogger("immopay")

router = APIRouter(prefix="/api/withdrawals", tags=["withdrawals"])


def withdrawal_item(w: WithdrawalRequest) -> WithdrawalItem:
    return WithdrawalItem(
        id=w.id,
        agency_id=w.agency_id,
        amount=w.amount,
        recipient_phone=w.recipient_phone,
        recipient_name=w.recipient_name,
        payment_method=w.payment_method,
        status=w.status,
        notes=w.notes,
        payout_reference=w.payout_reference,
        failure_reason=w.failure_reason,
        created_at=w.created_at.isoformat(),
        processed_at=w.processed_at.isoformat() if w.processed_at else None,
    )


@router.get("/balance", response_model=BalanceResponse)
def balance(db: Session = Depends(get_db), user: dict = Depends(require_agency_user)):
    stats = withdrawal_stats(db, user["agency_id"])
    return BalanceResponse(
        success=True,
        available_balance=stats.available_balance,
        received_total=stats.received_total,
        pending_total=stats.pending_total,
        pending_count=stats.pending_count,
        processing_total=stats.processing_total,
        completed_total=stats.completed_total,
        total_requests=stats.total_requests,
    )


@router.get("", response_model=WithdrawalListResponse)
def list_requests(
    status: str | None = Query(None),
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
    user: dict = Depends(require_agency_user),
):
    withdrawals = list_withdrawals(db, user["agency_id"], status=status, limit=limit)
    return WithdrawalListResponse(success=True, withdrawals=[withdrawal_item(w) for w in withdrawals])


@router.post("", response_model=WithdrawalResponse, status_code=201)
@limiter.limit(RATE_LIMIT_WITHDRAWAL)
def create_request(
    req: WithdrawalCreate,
    request: Request,
    db: Session = Depends(get_db),
    user: dict = Depends(require_agency_admin),
):
    withdrawal = create_withdrawal(
        db,
        agency_id=user["agency_id"],
        amount=req.amount,
        recipient_phone=req.recipient_phone,
        payment_method=req.payment_method,
        recipient_name=req.recipient_name,
        notes=req.notes,
    )
    return WithdrawalResponse(success=True, withdrawal=withdrawal_item(withdrawal))


@router.post("/rent-payments", response_model=RentPaymentResponse)
def record_rent(
    req: RentPaymentCreate,
    db: Session = Depends(get_db),
    _: None = Depends(require_integration_key),
):
    """Rent received online for an agency, posted by the tenant portal."""
    payment = record_rent_payment(
        db,
        agency_id=req.agency_id,
        amount=req.amount,
        external_reference=req.external_reference,
        tenant_id=req.tenant_id,
        payment_method=req.payment_method,
        status=req.status,
    )
    return RentPaymentResponse(success=True, id=payment.id, status=payment.status)


@router.post("/{withdrawal_id}/cancel", response_model=WithdrawalResponse)
def cancel_request(
    withdrawal_id: int,
    db: Session = Depends(get_db),
    user: dict = Depends(require_agency_admin),
):
    withdrawal = cancel_withdrawal(db, withdrawal_id, agency_id=user["agency_id"])
    return WithdrawalResponse(success=True, withdrawal=withdrawal_item(withdrawal))


@router.post("/{withdrawal_id}/process", response_model=WithdrawalResponse)
def process_request(
    withdrawal_id: int,
    db: Session = Depends(get_db),
    payout_client: PayoutClient = Depends(get_payout_client),
    user: dict = Depends(require_agency_admin),
):
    withdrawal = process_withdrawal(db, payout_client, withdrawal_id, agency_id=user["agency_id"])
    return WithdrawalResponse(success=True, withdrawal=withdrawal_item(withdrawal))
