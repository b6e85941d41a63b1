import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = BASE_DIR / "data"
DATA_DIR.mkdir(exist_ok=True)

# Application
APP_ENV = os.getenv("APP_ENV", "development")
DEBUG = os.getenv("DEBUG", "true").lower() in ("true", "1", "yes")

# Database
DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{DATA_DIR / 'immopay.db'}")
SQLITE_BUSY_TIMEOUT = float(os.getenv("SQLITE_BUSY_TIMEOUT", "30"))

# CORS
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")

# Trusted Hosts
TRUSTED_HOSTS = os.getenv("TRUSTED_HOSTS", "").split(",") if os.getenv("TRUSTED_HOSTS") else []

# Rate Limiting
RATE_LIMIT_CHECKOUT = os.getenv("RATE_LIMIT_CHECKOUT", "20/minute")
RATE_LIMIT_WITHDRAWAL = os.getenv("RATE_LIMIT_WITHDRAWAL", "10/minute")

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

SITE_URL = os.getenv("SITE_URL", "http://localhost:8000")

# JWT: issued by the dashboard auth service, only verified here
_jwt_secret_raw = os.getenv("JWT_SECRET_KEY", "").strip()
if not _jwt_secret_raw and APP_ENV != "development":
    raise RuntimeError(
        "JWT_SECRET_KEY n'est pas défini. "
        "En production, une clé secrète aléatoire forte est obligatoire."
    )
JWT_SECRET_KEY = _jwt_secret_raw or "immopay-dev-secret-change-in-production"  # dev-only fallback
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRE_HOURS = int(os.getenv("JWT_EXPIRE_HOURS", "24"))

# Billing
DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "XOF")
DEFAULT_COUNTRY_CODE = os.getenv("DEFAULT_COUNTRY_CODE", "CI")
PROVIDER_TIMEOUT_SECONDS = float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "30"))

# FedaPay
FEDAPAY_SECRET_KEY = os.getenv("FEDAPAY_SECRET_KEY", "")
FEDAPAY_API_VERSION = os.getenv("FEDAPAY_API_VERSION", "v1")
FEDAPAY_BASE_URL = os.getenv("FEDAPAY_BASE_URL", "")
FEDAPAY_WEBHOOK_SECRET = os.getenv("FEDAPAY_WEBHOOK_SECRET", "")

# Wave (direct)
WAVE_API_KEY = os.getenv("WAVE_API_KEY", "")
WAVE_API_VERSION = os.getenv("WAVE_API_VERSION", "v1")
WAVE_BASE_URL = os.getenv("WAVE_BASE_URL", "https://api.wave.com")
WAVE_WEBHOOK_SECRET = os.getenv("WAVE_WEBHOOK_SECRET", "")

# PawaPay
PAWAPAY_API_TOKEN = os.getenv("PAWAPAY_API_TOKEN", "")
PAWAPAY_API_VERSION = os.getenv("PAWAPAY_API_VERSION", "v1")
PAWAPAY_SANDBOX = os.getenv("PAWAPAY_SANDBOX", "true").lower() in ("true", "1", "yes")
PAWAPAY_BASE_URL = os.getenv("PAWAPAY_BASE_URL", "")

# KKiaPay
KKIAPAY_PRIVATE_KEY = os.getenv("KKIAPAY_PRIVATE_KEY", "")
KKIAPAY_PUBLIC_KEY = os.getenv("KKIAPAY_PUBLIC_KEY", "")
KKIAPAY_API_VERSION = os.getenv("KKIAPAY_API_VERSION", "v1")
KKIAPAY_SANDBOX = os.getenv("KKIAPAY_SANDBOX", "true").lower() in ("true", "1", "yes")
KKIAPAY_BASE_URL = os.getenv("KKIAPAY_BASE_URL", "")
KKIAPAY_WEBHOOK_SECRET = os.getenv("KKIAPAY_WEBHOOK_SECRET", "")

# Payouts (withdrawals to agency mobile-money accounts)
PAYOUT_API_KEY = os.getenv("PAYOUT_API_KEY", "")
PAYOUT_BASE_URL = os.getenv("PAYOUT_BASE_URL", "")

# Rent-payment integration (tenant portal posting received rent)
INTEGRATION_API_KEY = os.getenv("INTEGRATION_API_KEY", "")
