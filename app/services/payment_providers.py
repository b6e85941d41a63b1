"""Payment provider adapters.

Each adapter turns a provider-neutral ``CheckoutRequest`` into its
provider's request payload, sends it with httpx, and interprets the answer
as a ``Redirect`` or a ``PushPending`` outcome. Anything else is a
``ProviderError``. Adapters also parse the provider's asynchronous callback
into a ``CallbackEvent``, so webhook handling needs no per-provider code.
"""

import hashlib
import hmac
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Mapping

import httpx

from app.config import PROVIDER_TIMEOUT_SECONDS
from app.errors import ConfigurationError, ProviderError, ValidationError
from app.services.proration import ProrationResult
from app.utils import digits_only, format_ivorian_phone, format_msisdn, mask_phone

logger = logging.getLogger("immopay")


class PaymentMethod(str, Enum):
    CARD = "card"
    ORANGE_MONEY = "orange_money"
    MTN_MONEY = "mtn_money"
    WAVE = "wave"
    WAVE_DIRECT = "wave_direct"
    MOOV = "moov"
    PAWAPAY_MTN = "pawapay_mtn"
    PAWAPAY_ORANGE = "pawapay_orange"
    KKIAPAY = "kkiapay"


class ProviderName(str, Enum):
    FEDAPAY = "fedapay"
    WAVE_CI = "wave_ci"
    PAWAPAY = "pawapay"
    KKIAPAY = "kkiapay"


@dataclass(frozen=True)
class ProviderSettings:
    name: ProviderName
    api_key: str
    base_url: str
    api_version: str = "v1"
    sandbox: bool = False
    webhook_secret: str = ""
    callback_url: str = ""
    public_key: str = ""
    timeout: float = PROVIDER_TIMEOUT_SECONDS


@dataclass(frozen=True)
class CheckoutRequest:
    transaction_id: int
    plan_id: int
    plan_name: str
    billing_cycle: str
    payment_method: PaymentMethod
    amount: int
    currency: str
    customer_phone: str | None = None
    customer_name: str | None = None
    customer_email: str | None = None
    return_url: str | None = None
    country_code: str = "CI"
    proration: ProrationResult | None = None

    @property
    def cycle_label(self) -> str:
        return "Annuel" if self.billing_cycle == "yearly" else "Mensuel"


@dataclass(frozen=True)
class Redirect:
    url: str
    external_reference: str | None = None
    kind: str = field(default="redirect", init=False)


@dataclass(frozen=True)
class PushPending:
    external_reference: str | None = None
    message: str = "Une notification de paiement a été envoyée sur votre téléphone. Veuillez confirmer le paiement."
    kind: str = field(default="push_pending", init=False)


@dataclass(frozen=True)
class ImmediateSuccess:
    credit_amount: int = 0
    message: str = "Forfait activé"
    external_reference: str | None = field(default=None, init=False)
    kind: str = field(default="immediate_success", init=False)


CheckoutOutcome = Redirect | PushPending | ImmediateSuccess


@dataclass(frozen=True)
class CallbackEvent:
    status: str  # completed, failed, pending
    external_reference: str | None = None
    transaction_id: int | None = None
    amount: int | None = None
    reason: str | None = None


def _as_int(value) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def _lower_headers(headers: Mapping[str, str]) -> dict[str, str]:
    return {k.lower(): v for k, v in headers.items()}


def _parse_signature_header(value: str) -> dict[str, str]:
    parts = {}
    for item in value.split(","):
        key, _, val = item.strip().partition("=")
        if key and val:
            parts[key] = val
    return parts


def _hmac_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


class ProviderAdapter:
    name: ProviderName

    def __init__(self, settings: ProviderSettings, client: httpx.Client | None = None):
        if not settings.api_key:
            raise ConfigurationError(f"Identifiants {settings.name.value} manquants")
        self.settings = settings
        self._client = client

    # --- hooks ---

    def endpoint(self) -> str:
        raise NotImplementedError

    def build_payload(self, request: CheckoutRequest) -> dict:
        raise NotImplementedError

    def interpret_response(self, data: dict) -> Redirect | PushPending:
        raise NotImplementedError

    def parse_callback(self, payload: dict) -> CallbackEvent:
        raise NotImplementedError

    def check_supported(self, method: PaymentMethod, country_code: str, currency: str) -> None:
        """Raise ConfigurationError when this provider cannot serve the request."""

    def verify_signature(self, headers: Mapping[str, str], body: bytes) -> bool:
        return True

    def headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.settings.api_key}",
            "Content-Type": "application/json",
        }

    # --- transport ---

    def _post(self, url: str, payload: dict) -> dict:
        provider = self.name.value
        try:
            if self._client is not None:
                resp = self._client.post(
                    url, json=payload, headers=self.headers(), timeout=self.settings.timeout
                )
            else:
                with httpx.Client(timeout=self.settings.timeout) as client:
                    resp = client.post(url, json=payload, headers=self.headers())
        except httpx.TimeoutException as exc:
            logger.warning("%s request timed out: %s", provider, exc)
            raise ProviderError(
                f"Délai dépassé en attendant {provider}", provider=provider, timeout=True
            ) from exc
        except httpx.HTTPError as exc:
            logger.error("%s transport error: %s", provider, exc)
            raise ProviderError(f"Erreur réseau {provider}: {exc}", provider=provider) from exc

        try:
            data = resp.json()
        except ValueError:
            data = None

        if not resp.is_success:
            logger.error("%s responded %d: %s", provider, resp.status_code, resp.text)
            message = None
            if isinstance(data, dict):
                error = data.get("error")
                message = data.get("message") or (error.get("message") if isinstance(error, dict) else error)
            raise ProviderError(
                f"Erreur {provider} ({resp.status_code}): {message or resp.text}", provider=provider
            )

        if not isinstance(data, dict):
            logger.error("%s returned a non-JSON body: %s", provider, resp.text)
            raise ProviderError(f"Réponse {provider} inattendue", provider=provider)
        return data

    def dispatch(self, request: CheckoutRequest) -> Redirect | PushPending:
        payload = self.build_payload(request)
        logger.info(
            "%s checkout: tx=%d amount=%d %s method=%s phone=%s sandbox=%s",
            self.name.value,
            request.transaction_id,
            request.amount,
            request.currency,
            request.payment_method.value,
            mask_phone(request.customer_phone),
            self.settings.sandbox,
        )
        data = self._post(self.endpoint(), payload)
        return self.interpret_response(data)

    def _unexpected(self, data: dict) -> ProviderError:
        logger.error("Unexpected %s response: %s", self.name.value, data)
        return ProviderError(f"Réponse {self.name.value} inattendue", provider=self.name.value)


# ──────────────────────────────────────────────
# FedaPay (agrégateur, page hébergée)
# ──────────────────────────────────────────────

FEDAPAY_MODES = {
    PaymentMethod.ORANGE_MONEY: "orange_ci",
    PaymentMethod.MTN_MONEY: "mtn_open_ci",
    PaymentMethod.WAVE: "wave_ci",
    PaymentMethod.MOOV: "moov_ci",
    PaymentMethod.CARD: None,
}

FEDAPAY_STATUSES = {
    "approved": "completed",
    "transferred": "completed",
    "declined": "failed",
    "canceled": "failed",
    "cancelled": "failed",
    "expired": "failed",
    "pending": "pending",
}


class FedapayAdapter(ProviderAdapter):
    name = ProviderName.FEDAPAY

    @property
    def base_url(self) -> str:
        if self.settings.base_url:
            return self.settings.base_url.rstrip("/")
        if self.settings.sandbox or self.settings.api_key.startswith("sk_sandbox_"):
            return "https://sandbox-api.fedapay.com"
        return "https://api.fedapay.com"

    def endpoint(self) -> str:
        return f"{self.base_url}/{self.settings.api_version}/transactions"

    def build_payload(self, request: CheckoutRequest) -> dict:
        name = (request.customer_name or "").strip()
        if request.proration is not None:
            description = (
                f"Changement forfait vers {request.plan_name} "
                f"(prorata {request.proration.remaining_days} jours)"
            )
        else:
            description = f"Abonnement {request.plan_name} - {request.cycle_label}"

        payload = {
            "description": description,
            "amount": request.amount,
            "currency": {"iso": request.currency},
            "callback_url": request.return_url or self.settings.callback_url,
            "customer": {
                "firstname": name.split(" ")[0] if name else "",
                "lastname": " ".join(name.split(" ")[1:]),
                "email": request.customer_email,
                "phone_number": {
                    "number": format_ivorian_phone(request.customer_phone),
                    "country": request.country_code,
                },
            },
            "metadata": {
                "transaction_id": request.transaction_id,
                "plan_id": request.plan_id,
                "billing_cycle": request.billing_cycle,
                "is_prorated": request.proration is not None,
            },
        }
        mode = FEDAPAY_MODES.get(request.payment_method)
        if mode:
            payload["mode"] = mode
        if request.proration is not None:
            # shown on the hosted page only; the amount above is authoritative
            payload["proration"] = request.proration.as_dict()
        return payload

    def interpret_response(self, data: dict) -> Redirect | PushPending:
        transaction = data.get(f"{self.settings.api_version}/transaction")
        if not isinstance(transaction, dict) or transaction.get("id") is None:
            raise self._unexpected(data)

        reference = str(transaction["id"])
        payment_url = transaction.get("payment_url")
        if not payment_url:
            try:
                token = self._post(f"{self.endpoint()}/{reference}/token", {})
            except ProviderError:
                # the transaction exists at FedaPay: keep its id for reconciliation
                logger.error("FedaPay token request failed for FedaPay transaction %s", reference)
                raise
            payment_url = token.get("url")
        if not payment_url:
            logger.error("FedaPay transaction %s has no payment URL", reference)
            raise self._unexpected(data)
        return Redirect(url=payment_url, external_reference=reference)

    def parse_callback(self, payload: dict) -> CallbackEvent:
        entity = payload.get("entity") or {}
        if not isinstance(entity, dict) or entity.get("id") is None:
            raise ValidationError("Événement FedaPay sans transaction")

        status = entity.get("status") or str(payload.get("name", "")).rpartition(".")[2]
        metadata = entity.get("metadata") or {}
        return CallbackEvent(
            status=FEDAPAY_STATUSES.get(str(status).lower(), "pending"),
            external_reference=str(entity["id"]),
            transaction_id=_as_int(metadata.get("transaction_id")),
            amount=_as_int(entity.get("amount")),
            reason=entity.get("last_error_code"),
        )

    def verify_signature(self, headers: Mapping[str, str], body: bytes) -> bool:
        if not self.settings.webhook_secret:
            return True
        parts = _parse_signature_header(_lower_headers(headers).get("x-fedapay-signature", ""))
        if "t" not in parts or "s" not in parts:
            return False
        expected = _hmac_hex(self.settings.webhook_secret, f"{parts['t']}.".encode() + body)
        return hmac.compare_digest(expected, parts["s"])


# ──────────────────────────────────────────────
# Wave (opérateur direct)
# ──────────────────────────────────────────────


class WaveAdapter(ProviderAdapter):
    name = ProviderName.WAVE_CI

    def endpoint(self) -> str:
        return f"{self.settings.base_url.rstrip('/')}/{self.settings.api_version}/checkout/sessions"

    def check_supported(self, method: PaymentMethod, country_code: str, currency: str) -> None:
        if currency != "XOF":
            raise ConfigurationError(f"Wave ne prend pas en charge la devise {currency}")

    def build_payload(self, request: CheckoutRequest) -> dict:
        phone = format_ivorian_phone(request.customer_phone)
        if not phone:
            raise ValidationError("Numéro Wave invalide")
        return_url = request.return_url or self.settings.callback_url
        return {
            "amount": str(request.amount),
            "currency": request.currency,
            "client_reference": str(request.transaction_id),
            "success_url": return_url,
            "error_url": return_url,
            "restrict_payer_mobile": phone,
        }

    def interpret_response(self, data: dict) -> Redirect | PushPending:
        url = data.get("wave_launch_url")
        if not url:
            raise self._unexpected(data)
        session_id = data.get("id")
        return Redirect(url=url, external_reference=str(session_id) if session_id else None)

    def parse_callback(self, payload: dict) -> CallbackEvent:
        data = payload.get("data") or {}
        if payload.get("type") != "checkout.session.completed" or not isinstance(data, dict):
            return CallbackEvent(status="pending")

        checkout_status = data.get("checkout_status")
        if checkout_status == "complete":
            status, reason = "completed", None
        elif checkout_status == "cancelled":
            status, reason = "failed", "Paiement annulé par l'utilisateur"
        elif checkout_status == "expired":
            status, reason = "failed", "Session de paiement expirée"
        else:
            status, reason = "pending", None

        return CallbackEvent(
            status=status,
            external_reference=str(data["id"]) if data.get("id") else None,
            transaction_id=_as_int(data.get("client_reference")),
            amount=_as_int(data.get("amount")),
            reason=data.get("last_payment_error") or reason,
        )

    def verify_signature(self, headers: Mapping[str, str], body: bytes) -> bool:
        if not self.settings.webhook_secret:
            return True
        parts = _parse_signature_header(_lower_headers(headers).get("wave-signature", ""))
        if "t" not in parts or "v1" not in parts:
            return False
        expected = _hmac_hex(self.settings.webhook_secret, parts["t"].encode() + body)
        return hmac.compare_digest(expected, parts["v1"])


# ──────────────────────────────────────────────
# PawaPay (push USSD)
# ──────────────────────────────────────────────

PAWAPAY_METHOD_ALIASES = {
    PaymentMethod.PAWAPAY_MTN: "mtn_money",
    PaymentMethod.PAWAPAY_ORANGE: "orange_money",
}

PAWAPAY_CORRESPONDENTS = {
    "CI": {"mtn_money": "MTN_MOMO_CIV", "orange_money": "ORANGE_CIV", "moov": "MOOV_CIV"},
    "SN": {"orange_money": "ORANGE_SEN", "mtn_money": "MTN_MOMO_SEN"},
    "BF": {"orange_money": "ORANGE_BFA", "moov": "MOOV_BFA"},
    "BJ": {"mtn_money": "MTN_MOMO_BEN", "moov": "MOOV_BEN"},
    "CM": {"mtn_money": "MTN_MOMO_CMR", "orange_money": "ORANGE_CMR"},
    "GH": {"mtn_money": "MTN_MOMO_GHA", "airtel": "AIRTELTIGO_GHA"},
    "UG": {"mtn_money": "MTN_MOMO_UGA", "airtel": "AIRTEL_UGA"},
    "ZM": {"mtn_money": "MTN_MOMO_ZMB", "airtel": "AIRTEL_ZMB"},
}

PAWAPAY_COUNTRIES = {
    # country: (currency, dialing code)
    "CI": ("XOF", "225"),
    "SN": ("XOF", "221"),
    "BF": ("XOF", "226"),
    "BJ": ("XOF", "229"),
    "CM": ("XAF", "237"),
    "GH": ("GHS", "233"),
    "UG": ("UGX", "256"),
    "ZM": ("ZMW", "260"),
}


def normalize_pawapay_method(method: PaymentMethod) -> str:
    """Rewrite a UI selector (``pawapay_mtn``) into PawaPay's own vocabulary."""
    try:
        return PAWAPAY_METHOD_ALIASES[method]
    except KeyError:
        raise ConfigurationError(f"{method.value} n'est pas une méthode PawaPay") from None


class PawapayAdapter(ProviderAdapter):
    name = ProviderName.PAWAPAY

    @property
    def base_url(self) -> str:
        if self.settings.base_url:
            return self.settings.base_url.rstrip("/")
        return "https://api.sandbox.pawapay.io" if self.settings.sandbox else "https://api.pawapay.io"

    def endpoint(self) -> str:
        if self.settings.api_version == "v1":
            return f"{self.base_url}/deposits"
        return f"{self.base_url}/{self.settings.api_version}/deposits"

    def correspondent(self, method: PaymentMethod, country_code: str) -> str:
        network = normalize_pawapay_method(method)
        correspondents = PAWAPAY_CORRESPONDENTS.get(country_code)
        if correspondents is None:
            raise ConfigurationError(f"Pays non supporté: {country_code}")
        if network not in correspondents:
            raise ConfigurationError(
                f"Méthode de paiement {network} non disponible pour {country_code}"
            )
        return correspondents[network]

    def check_supported(self, method: PaymentMethod, country_code: str, currency: str) -> None:
        self.correspondent(method, country_code)
        country_currency, _ = PAWAPAY_COUNTRIES[country_code]
        if country_currency != currency:
            raise ConfigurationError(
                f"Le forfait est facturé en {currency}, {country_code} encaisse en {country_currency}"
            )

    def build_payload(self, request: CheckoutRequest) -> dict:
        self.check_supported(request.payment_method, request.country_code, request.currency)
        _, dialing_code = PAWAPAY_COUNTRIES[request.country_code]
        msisdn = format_msisdn(request.customer_phone, dialing_code)
        if not msisdn:
            raise ValidationError("Numéro de téléphone requis pour le paiement mobile")

        return {
            "depositId": str(uuid.uuid4()),
            "amount": str(request.amount),
            "currency": request.currency,
            "country": request.country_code,
            "correspondent": self.correspondent(request.payment_method, request.country_code),
            "payer": {"type": "MSISDN", "address": {"value": msisdn}},
            "customerTimestamp": datetime.utcnow().isoformat(timespec="seconds") + "Z",
            "statementDescription": f"{request.plan_name} - {request.cycle_label}"[:22],
            "metadata": [
                {"fieldName": "transaction_id", "fieldValue": str(request.transaction_id)},
                {"fieldName": "plan_id", "fieldValue": str(request.plan_id)},
                {"fieldName": "country_code", "fieldValue": request.country_code},
            ],
        }

    def interpret_response(self, data: dict) -> Redirect | PushPending:
        status = data.get("status")
        deposit_id = data.get("depositId")
        if status == "REJECTED":
            rejection = data.get("rejectionReason") or {}
            message = rejection.get("rejectionMessage") if isinstance(rejection, dict) else rejection
            raise ProviderError(f"Dépôt PawaPay refusé: {message}", provider=self.name.value)
        if status != "ACCEPTED" or not deposit_id:
            raise self._unexpected(data)
        if data.get("redirectUrl"):
            return Redirect(url=data["redirectUrl"], external_reference=str(deposit_id))
        return PushPending(external_reference=str(deposit_id))

    def parse_callback(self, payload: dict) -> CallbackEvent:
        deposit_id = payload.get("depositId")
        if not deposit_id:
            raise ValidationError("depositId manquant")

        status = payload.get("status")
        if status == "COMPLETED":
            mapped = "completed"
        elif status in ("FAILED", "REJECTED"):
            mapped = "failed"
        else:
            mapped = "pending"

        failure = payload.get("failureReason") or {}
        metadata = payload.get("metadata") or {}
        return CallbackEvent(
            status=mapped,
            external_reference=str(deposit_id),
            transaction_id=_as_int(metadata.get("transaction_id")) if isinstance(metadata, dict) else None,
            amount=_as_int(payload.get("depositedAmount") or payload.get("requestedAmount")),
            reason=failure.get("failureMessage") if isinstance(failure, dict) else str(failure),
        )


# ──────────────────────────────────────────────
# KKiaPay (widget carte / mobile money)
# ──────────────────────────────────────────────

KKIAPAY_STATUSES = {
    "success": "completed",
    "successful": "completed",
    "completed": "completed",
    "approved": "completed",
    "failed": "failed",
    "declined": "failed",
    "rejected": "failed",
    "pending": "pending",
    "processing": "pending",
}


class KkiapayAdapter(ProviderAdapter):
    name = ProviderName.KKIAPAY

    @property
    def base_url(self) -> str:
        if self.settings.base_url:
            return self.settings.base_url.rstrip("/")
        return "https://api-sandbox.kkiapay.me" if self.settings.sandbox else "https://api.kkiapay.me"

    def endpoint(self) -> str:
        return f"{self.base_url}/api/{self.settings.api_version}/payments/request"

    def headers(self) -> dict:
        return {"X-API-KEY": self.settings.api_key, "Content-Type": "application/json"}

    def build_payload(self, request: CheckoutRequest) -> dict:
        return {
            "amount": request.amount,
            "reason": f"Abonnement {request.plan_name} - {request.cycle_label}",
            "data": {
                "transaction_id": request.transaction_id,
                "plan_id": request.plan_id,
                "billing_cycle": request.billing_cycle,
            },
            "callback": self.settings.callback_url,
            "name": request.customer_name,
            "email": request.customer_email,
            "phone": digits_only(request.customer_phone),
            "sandbox": self.settings.sandbox,
        }

    def interpret_response(self, data: dict) -> Redirect | PushPending:
        reference = data.get("transactionId") or data.get("transaction_id")
        reference = str(reference) if reference else None
        if data.get("payment_url"):
            return Redirect(url=data["payment_url"], external_reference=reference)
        if reference:
            return PushPending(
                external_reference=reference,
                message="Finalisez le paiement dans la fenêtre KKiaPay.",
            )
        raise self._unexpected(data)

    def parse_callback(self, payload: dict) -> CallbackEvent:
        data = payload.get("data") or {}
        if not isinstance(data, dict):
            data = {}
        reference = payload.get("transactionId") or payload.get("transaction_id")
        status = str(payload.get("status") or payload.get("state") or "").lower()
        return CallbackEvent(
            status=KKIAPAY_STATUSES.get(status, "pending"),
            external_reference=str(reference) if reference else None,
            transaction_id=_as_int(data.get("transaction_id")),
            amount=_as_int(payload.get("amount") or data.get("amount")),
            reason=payload.get("failureMessage"),
        )

    def verify_signature(self, headers: Mapping[str, str], body: bytes) -> bool:
        if not self.settings.webhook_secret:
            return True
        received = _lower_headers(headers).get("x-kkiapay-secret", "")
        return hmac.compare_digest(received, self.settings.webhook_secret)


ADAPTER_CLASSES: dict[ProviderName, type[ProviderAdapter]] = {
    ProviderName.FEDAPAY: FedapayAdapter,
    ProviderName.WAVE_CI: WaveAdapter,
    ProviderName.PAWAPAY: PawapayAdapter,
    ProviderName.KKIAPAY: KkiapayAdapter,
}
