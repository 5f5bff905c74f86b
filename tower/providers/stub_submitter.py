"""
Placeholder transaction submitter.

Stands in for wallet signing and broadcast until a signer is wired in. It
does no network I/O: the transaction reference is derived from the
idempotency key, and a repeated key returns the first result.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from collections import OrderedDict
from typing import Any, Dict

from .base import TransactionSubmitter
from ..core.recurring.models import Quote, SubmissionResult

logger = logging.getLogger(__name__)


class StubTransactionSubmitter(TransactionSubmitter):
    """Deterministic, at-most-once submitter."""

    name = "stub_submitter"

    def __init__(self, max_remembered: int = 10_000) -> None:
        # Bounded memory of sent keys, oldest forgotten first
        self._results: "OrderedDict[str, SubmissionResult]" = OrderedDict()
        self._max_remembered = max_remembered
        self._lock = asyncio.Lock()
        self.broadcast_count = 0

    @staticmethod
    def tx_ref_for(idempotency_key: str) -> str:
        return "0x" + hashlib.sha256(f"tx:{idempotency_key}".encode()).hexdigest()

    async def submit(self, wallet_address: str, quote: Quote, idempotency_key: str) -> SubmissionResult:
        async with self._lock:
            existing = self._results.get(idempotency_key)
            if existing is not None:
                logger.info(f"Submission {idempotency_key[:12]} already sent, returning {existing.tx_ref}")
                return existing

            result = SubmissionResult(tx_ref=self.tx_ref_for(idempotency_key))
            self._results[idempotency_key] = result
            if len(self._results) > self._max_remembered:
                self._results.popitem(last=False)
            self.broadcast_count += 1
            logger.info(
                f"Stub submit {quote.input_amount} {quote.source_token} -> {quote.target_token} "
                f"for {wallet_address}: {result.tx_ref}"
            )
            return result

    async def ready(self) -> bool:
        return True

    async def health_check(self) -> Dict[str, Any]:
        return {"name": self.name, "status": "ok", "submitted": self.broadcast_count}
