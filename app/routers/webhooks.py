"""Asynchronous payment confirmations from the providers."""

import json
import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.database import get_db
from app.dependencies import get_provider_registry
from app.errors import ValidationError
from app.services.provider_registry import ProviderRegistry
from app.services.transaction_ledger import handle_callback

logger = logging.getLogger("immopay")

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


@router.post("/{provider}")
async def provider_callback(
    provider: str,
    request: Request,
    db: Session = Depends(get_db),
    registry: ProviderRegistry = Depends(get_provider_registry),
):
    # the raw body is needed as-is for signature checks
    body = await request.body()
    try:
        payload = json.loads(body or b"{}")
    except ValueError:
        raise ValidationError("Corps de requête JSON invalide")
    if not isinstance(payload, dict):
        raise ValidationError("Corps de requête JSON invalide")

    return await run_in_threadpool(
        _apply_callback, db, registry, provider, payload, dict(request.headers), body
    )


def _apply_callback(
    db: Session, registry: ProviderRegistry, provider: str, payload: dict, headers: dict, body: bytes
) -> dict:
    # blocking database work, kept off the event loop
    tx = handle_callback(db, registry, provider, payload, headers, body)
    logger.info("Callback %s applied: tx=%d status=%s", provider, tx.id, tx.status)
    return {"success": True, "transaction_id": tx.id, "status": tx.status}
