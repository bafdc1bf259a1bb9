# payments/__init__.py
# ============================================================================
# STOREFRONT FULFILLMENT - PAYMENTS MODULE
# ============================================================================
# Provider adapters (card, wallet, redirect) behind one capability interface
# ============================================================================

from payments.base import (
    CaptureOutcome,
    CaptureResult,
    EventKind,
    PaymentProvider,
    ProviderRegistry,
    ProviderSession,
    VerifiedEvent,
)

from payments.card import CardProvider
from payments.wallet import WalletProvider
from payments.redirect import RedirectProvider

__all__ = [
    "CaptureOutcome",
    "CaptureResult",
    "EventKind",
    "PaymentProvider",
    "ProviderRegistry",
    "ProviderSession",
    "VerifiedEvent",
    "CardProvider",
    "WalletProvider",
    "RedirectProvider",
]
