from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Dict

from ..core.recurring.models import Quote, SubmissionResult


class Provider(ABC):
    """Base provider interface"""

    name: str
    timeout_s: int = 10

    @abstractmethod
    async def ready(self) -> bool:
        """Check if provider is ready to serve requests"""
        pass

    @abstractmethod
    async def health_check(self) -> Dict[str, Any]:
        """Return provider health status"""
        pass


class QuoteProvider(Provider):
    """Price/route source for a token pair. Must be safe to retry."""

    @abstractmethod
    async def get_quote(self, source_token: str, target_token: str, amount: Decimal) -> Quote:
        """Quote swapping `amount` of source_token into target_token"""
        pass


class TransactionSubmitter(Provider):
    """Signs and broadcasts a swap for a wallet.

    Implementations must honor at-most-once semantics per idempotency key: a
    retried submit with a key that already went through returns the original
    result instead of broadcasting again.
    """

    @abstractmethod
    async def submit(self, wallet_address: str, quote: Quote, idempotency_key: str) -> SubmissionResult:
        """Submit the quoted swap and return its transaction reference"""
        pass
