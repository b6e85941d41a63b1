"""Super admin endpoints: platform reports and operator actions."""

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.database import get_db
from app.dependencies import get_payout_client, require_super_admin
from app.routers.withdrawals import withdrawal_item
from app.schemas.billing import RefundResponse
from app.schemas.withdrawal import BatchProcessResponse
from app.services.payout_client import PayoutClient
from app.services.reporting_service import transaction_stats, withdrawal_aggregates
from app.services.transaction_ledger import mark_refunded
from app.services.withdrawal_service import process_pending_withdrawals

logger = logging.getLogger("immopay")

router = APIRouter(prefix="/super", tags=["super-admin"])


@router.get("/reports/transactions")
def transaction_report(
    start: datetime | None = Query(None),
    end: datetime | None = Query(None),
    db: Session = Depends(get_db),
    user: dict = Depends(require_super_admin),
):
    """Revenue, success rate and breakdowns over subscription payments."""
    return {"success": True, "stats": transaction_stats(db, start=start, end=end)}


@router.get("/reports/withdrawals")
def withdrawal_report(
    agency_id: int | None = Query(None),
    db: Session = Depends(get_db),
    user: dict = Depends(require_super_admin),
):
    return {"success": True, "stats": withdrawal_aggregates(db, agency_id=agency_id)}


@router.post("/withdrawals/process-pending", response_model=BatchProcessResponse)
def process_pending(
    agency_id: int | None = Query(None),
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    payout_client: PayoutClient = Depends(get_payout_client),
    user: dict = Depends(require_super_admin),
):
    processed = process_pending_withdrawals(db, payout_client, agency_id=agency_id, limit=limit)
    logger.info("Batch payout by user=%s: %d processed", user.get("sub"), len(processed))
    return BatchProcessResponse(
        success=True,
        processed=len(processed),
        withdrawals=[withdrawal_item(w) for w in processed],
    )


@router.post("/transactions/{transaction_id}/refund", response_model=RefundResponse)
def refund_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user: dict = Depends(require_super_admin),
):
    """Record a refund made at the provider. The subscription is not altered."""
    tx = mark_refunded(db, transaction_id)
    logger.info("Transaction %d marked refunded by user=%s", transaction_id, user.get("sub"))
    return RefundResponse(success=True, transaction_id=tx.id, status=tx.status)
