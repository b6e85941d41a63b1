import hmac
from functools import lru_cache

from fastapi import Cookie, Header, HTTPException, Request

from app.config import INTEGRATION_API_KEY
from app.services.jwt_service import decode_token
from app.services.payout_client import HttpPayoutClient, PayoutClient
from app.services.provider_registry import ProviderRegistry, build_registry, load_provider_settings

AGENCY_ADMIN_ROLES = ("owner", "manager", "super_admin")


def _extract_token(request: Request, session_token: str | None = Cookie(None)) -> str | None:
    """Extract JWT from Authorization header or fallback to cookie."""
    auth_header = request.headers.get("authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:]
    return session_token


def require_auth(request: Request, session_token: str | None = Cookie(None)) -> dict:
    """Require any authenticated user via JWT."""
    token = _extract_token(request, session_token)
    if not token:
        raise HTTPException(status_code=401, detail="Authentification requise.")
    payload = decode_token(token)
    if not payload:
        raise HTTPException(status_code=401, detail="Session expirée, veuillez vous reconnecter.")
    return payload


def require_agency_user(request: Request, session_token: str | None = Cookie(None)) -> dict:
    """Require a user attached to an agency."""
    user = require_auth(request, session_token)
    if not user.get("agency_id"):
        raise HTTPException(status_code=403, detail="Aucune agence associée à ce compte.")
    return user


def require_agency_admin(request: Request, session_token: str | None = Cookie(None)) -> dict:
    """Require an agency owner or manager (money-moving actions)."""
    user = require_agency_user(request, session_token)
    if user.get("role", "viewer") not in AGENCY_ADMIN_ROLES:
        raise HTTPException(status_code=403, detail="Droits d'administration de l'agence requis.")
    return user


def require_super_admin(request: Request, session_token: str | None = Cookie(None)) -> dict:
    """Require super_admin role."""
    user = require_auth(request, session_token)
    if user.get("role", "viewer") != "super_admin":
        raise HTTPException(status_code=403, detail="Droits super administrateur requis.")
    return user


def require_integration_key(x_integration_key: str | None = Header(None)) -> None:
    """Require the shared key of the rent-payment integration."""
    if not INTEGRATION_API_KEY:
        raise HTTPException(status_code=503, detail="Intégration des loyers non configurée.")
    if not x_integration_key or not hmac.compare_digest(x_integration_key, INTEGRATION_API_KEY):
        raise HTTPException(status_code=401, detail="Clé d'intégration invalide.")


@lru_cache
def get_provider_registry() -> ProviderRegistry:
    return build_registry(load_provider_settings())


def get_payout_client() -> PayoutClient:
    return HttpPayoutClient()
