"""
Payment provider interface.

The unlock coordinator and the refund scheduler only talk to a provider
through this protocol; adapters raise PaymentProviderError for every
provider-side failure.
"""

from dataclasses import dataclass
from typing import Dict, Optional, Protocol


@dataclass(frozen=True)
class ChargeIntent:
    """A created (not yet confirmed) charge."""
    payment_intent_id: str
    client_token: str
    amount: int


@dataclass(frozen=True)
class ChargeDetails:
    """A settled charge as the provider sees it."""
    payment_intent_id: str
    charge_id: str
    amount: int


class PaymentProvider(Protocol):
    """Charge and refund capability."""

    def create_charge(
        self,
        amount: int,
        metadata: Dict[str, str],
        idempotency_key: Optional[str] = None
    ) -> ChargeIntent:
        ...

    def confirm_charge(self, intent: ChargeIntent) -> bool:
        ...

    def retrieve_charge(self, payment_intent_id: str) -> ChargeDetails:
        ...

    def existing_refund(self, payment_intent_id: str) -> Optional[str]:
        """Id of a refund already issued for the charge, if any."""
        ...

    def refund(
        self,
        charge_id: str,
        amount: int,
        metadata: Dict[str, str],
        idempotency_key: Optional[str] = None
    ) -> str:
        ...
