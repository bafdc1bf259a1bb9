"""
Provider configuration loaded from the environment.

Each adapter receives its own config instance; nothing here mutates SDK-wide
state (``stripe.api_key`` is never set, the key is passed per call).
"""

import os
from dataclasses import dataclass


def _frontend_url() -> str:
    return os.getenv("FRONTEND_URL", "http://localhost:3000").rstrip("/")


@dataclass
class ProviderCallConfig:
    """Timeout / retry budget shared by every outbound provider call"""

    timeout_seconds: float = 10.0
    max_attempts: int = 3
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 4.0
    circuit_failure_threshold: int = 5
    circuit_reset_seconds: float = 30.0

    @classmethod
    def from_env(cls) -> "ProviderCallConfig":
        return cls(
            timeout_seconds=float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "10")),
            max_attempts=int(os.getenv("PROVIDER_MAX_RETRIES", "3")),
            backoff_base_seconds=float(os.getenv("PROVIDER_BACKOFF_SECONDS", "0.5")),
            circuit_failure_threshold=int(os.getenv("PROVIDER_CB_FAILURE_THRESHOLD", "5")),
            circuit_reset_seconds=float(os.getenv("PROVIDER_CB_RESET_SECONDS", "30")),
        )

    def backoff(self, attempt: int) -> float:
        return min(self.backoff_base_seconds * (2 ** (attempt - 1)), self.backoff_max_seconds)


@dataclass
class StripeConfig:
    secret_key: str
    webhook_secret: str
    frontend_url: str = "http://localhost:3000"

    @classmethod
    def from_env(cls) -> "StripeConfig":
        return cls(
            secret_key=os.getenv("STRIPE_SECRET_KEY", ""),
            webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET", ""),
            frontend_url=_frontend_url(),
        )

    @classmethod
    def wallet_from_env(cls) -> "StripeConfig":
        """Wallet payments may run on a separate Stripe account / endpoint secret."""
        return cls(
            secret_key=os.getenv("WALLET_STRIPE_SECRET_KEY") or os.getenv("STRIPE_SECRET_KEY", ""),
            webhook_secret=os.getenv("WALLET_WEBHOOK_SECRET") or os.getenv("STRIPE_WEBHOOK_SECRET", ""),
            frontend_url=_frontend_url(),
        )


PAYPAL_URLS = {
    "sandbox": "https://api-m.sandbox.paypal.com",
    "live": "https://api-m.paypal.com",
}


@dataclass
class PayPalConfig:
    client_id: str
    client_secret: str
    webhook_id: str = ""
    environment: str = "sandbox"
    frontend_url: str = "http://localhost:3000"
    brand_name: str = "OLYS HAIR"

    @classmethod
    def from_env(cls) -> "PayPalConfig":
        return cls(
            client_id=os.getenv("PAYPAL_CLIENT_ID", ""),
            client_secret=os.getenv("PAYPAL_CLIENT_SECRET", ""),
            webhook_id=os.getenv("PAYPAL_WEBHOOK_ID", ""),
            environment=detect_paypal_environment(os.getenv("PAYPAL_ENVIRONMENT")),
            frontend_url=_frontend_url(),
            brand_name=os.getenv("PAYPAL_BRAND_NAME", "OLYS HAIR"),
        )

    @property
    def base_url(self) -> str:
        return PAYPAL_URLS[self.environment]


def detect_paypal_environment(value) -> str:
    """``live``/``production`` select the live API; anything else is sandbox."""
    if value and value.strip().lower() in ("live", "production"):
        return "live"
    return "sandbox"
