"""Outbound payouts to an agency's mobile-money account."""

import logging
from dataclasses import dataclass

import httpx

from app.config import PAYOUT_API_KEY, PAYOUT_BASE_URL, PROVIDER_TIMEOUT_SECONDS
from app.errors import ConfigurationError, ProviderError
from app.models.withdrawal import WithdrawalRequest
from app.utils import format_ivorian_phone, mask_phone

logger = logging.getLogger("immopay")


@dataclass(frozen=True)
class PayoutResult:
    success: bool
    reference: str | None = None
    failure_reason: str | None = None


class PayoutClient:
    """Interface of the payout collaborator.

    ``idempotent`` clients let the payout API drop a repeated send of the
    same withdrawal, so a request left processing after a timeout can be
    re-sent safely.
    """

    idempotent = False

    def send_payout(self, withdrawal: WithdrawalRequest) -> PayoutResult:
        raise NotImplementedError


class HttpPayoutClient(PayoutClient):
    idempotent = True

    def __init__(
        self,
        api_key: str = PAYOUT_API_KEY,
        base_url: str = PAYOUT_BASE_URL,
        timeout: float = PROVIDER_TIMEOUT_SECONDS,
        client: httpx.Client | None = None,
    ):
        if not api_key or not base_url:
            raise ConfigurationError("API de reversement non configurée")
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    def _payload(self, withdrawal: WithdrawalRequest) -> dict:
        return {
            "amount": withdrawal.amount,
            "phone_number": format_ivorian_phone(withdrawal.recipient_phone),
            "recipient_name": withdrawal.recipient_name,
            "method": withdrawal.payment_method,
            "reference": f"withdrawal_{withdrawal.id}",
            "reason": withdrawal.notes or f"Reversement #{withdrawal.id}",
        }

    def send_payout(self, withdrawal: WithdrawalRequest) -> PayoutResult:
        payload = self._payload(withdrawal)
        if not payload["phone_number"]:
            return PayoutResult(success=False, failure_reason="Numéro de téléphone invalide")

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Idempotency-Key": payload["reference"],
        }
        url = f"{self.base_url}/payouts"
        logger.info(
            "Payout request: withdrawal=%d amount=%d phone=%s",
            withdrawal.id, withdrawal.amount, mask_phone(withdrawal.recipient_phone),
        )
        try:
            if self._client is not None:
                resp = self._client.post(url, json=payload, headers=headers, timeout=self.timeout)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    resp = client.post(url, json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            # the transfer may have gone through: the outcome is unknown
            logger.error("Payout timed out for withdrawal=%d: %s", withdrawal.id, exc)
            raise ProviderError(f"Délai dépassé: {exc}", provider="payout", timeout=True) from exc
        except httpx.HTTPError as exc:
            logger.error("Payout transport error for withdrawal=%d: %s", withdrawal.id, exc)
            return PayoutResult(success=False, failure_reason=f"Erreur réseau: {exc}")

        try:
            data = resp.json()
        except ValueError:
            data = {}

        if not resp.is_success or not isinstance(data, dict):
            logger.error("Payout rejected for withdrawal=%d: %s", withdrawal.id, resp.text)
            message = data.get("message") if isinstance(data, dict) else None
            return PayoutResult(success=False, failure_reason=message or f"HTTP {resp.status_code}")

        status = str(data.get("status", "")).lower()
        if status in ("failed", "rejected", "declined"):
            return PayoutResult(success=False, failure_reason=data.get("message") or status)

        reference = data.get("id") or data.get("reference")
        return PayoutResult(success=True, reference=str(reference) if reference else None)
