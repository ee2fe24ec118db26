"""
Payment provider integrations for Screen Guard.

Provides the provider protocol and its Stripe implementation.
"""

from .provider import ChargeDetails, ChargeIntent, PaymentProvider
from .stripe_provider import StripePaymentProvider

__all__ = ["ChargeDetails", "ChargeIntent", "PaymentProvider", "StripePaymentProvider"]
