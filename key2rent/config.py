import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from key2rent.errors import ConfigurationError

# Force-load .env from the project root
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./key2rent.db")
JWT_SECRET = os.getenv("JWT_SECRET", "")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
RATE_LIMIT_BACKEND = os.getenv("RATE_LIMIT_BACKEND", "database")
RECONCILE_AFTER_MINUTES = int(os.getenv("RECONCILE_AFTER_MINUTES", "10"))

BASE_URLS = {
    "sandbox": "https://sandbox.safaricom.co.ke",
    "production": "https://api.safaricom.co.ke",
}

MPESA_ENDPOINTS = {
    "oauth": "/oauth/v1/generate?grant_type=client_credentials",
    "stk_push": "/mpesa/stkpush/v1/processrequest",
    "stk_query": "/mpesa/stkpushquery/v1/query",
}

REQUIRED_KEYS = ("consumer_key", "consumer_secret", "shortcode", "passkey", "callback_url")


@dataclass
class MpesaConfig:
    consumer_key: str = ""
    consumer_secret: str = ""
    shortcode: str = ""
    passkey: str = ""
    environment: str = "sandbox"
    callback_url: str = ""
    timeout: float = 30.0

    def validate(self):
        missing = [key for key in REQUIRED_KEYS if not getattr(self, key)]
        if missing:
            raise ConfigurationError(f"Missing M-Pesa configuration: {', '.join(missing)}")
        if self.environment not in BASE_URLS:
            raise ConfigurationError(
                f"MPESA_ENVIRONMENT must be 'sandbox' or 'production', got '{self.environment}'"
            )

    @property
    def base_url(self) -> str:
        return BASE_URLS[self.environment]


def get_mpesa_config() -> MpesaConfig:
    return MpesaConfig(
        consumer_key=os.getenv("MPESA_CONSUMER_KEY", ""),
        consumer_secret=os.getenv("MPESA_CONSUMER_SECRET", ""),
        shortcode=os.getenv("MPESA_SHORTCODE", ""),
        passkey=os.getenv("MPESA_PASSKEY", ""),
        environment=os.getenv("MPESA_ENVIRONMENT", "sandbox").lower(),
        callback_url=os.getenv("MPESA_CALLBACK_URL", ""),
        timeout=float(os.getenv("MPESA_TIMEOUT", "30")),
    )
