# handoff_escrow/config.py
import os
from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./handoff_escrow.db")
REDIS_URL = os.getenv("REDIS_URL", "redis://redis:6379/0")

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
GATEWAY_TIMEOUT_SECONDS = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "10"))

HANDOFF_TTL_HOURS = int(os.getenv("HANDOFF_TTL_HOURS", "24"))
SWEEP_INTERVAL_SECONDS = int(os.getenv("SWEEP_INTERVAL_SECONDS", "300"))
CAPTURE_RETRY_INTERVALS = [
    int(x) for x in os.getenv("CAPTURE_RETRY_INTERVALS", "60,300,900").split(",") if x.strip()
]
# a capture claim older than this is presumed dead and may be taken over
CAPTURE_LEASE_SECONDS = int(os.getenv("CAPTURE_LEASE_SECONDS", "300"))

APP_ENV = os.getenv("APP_ENV", "production")
APP_URL = os.getenv("APP_URL", "http://localhost:8000")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# platform cap, minor units
MAX_AMOUNT = 1_000_000
ALLOWED_CURRENCIES = ("usd", "eur", "gbp", "cad", "aud")
CONFIRMATION_CODE_LENGTH = 6


def is_development():
    return APP_ENV.lower() == "development"
