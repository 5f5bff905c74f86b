"""Async client for the QuantumExchange swap quote API."""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Optional

import httpx

from .base import QuoteProvider
from ..config import settings
from ..core.recovery import ErrorCategory, RecoverableError, UnrecoverableError
from ..core.recurring.models import Quote
from ..core.recurring.tokens import TokenRegistry


class QuantumExchangeQuoteProvider(QuoteProvider):
    """Thin wrapper around the QuantumExchange /quote endpoint.

    Amounts go out in base units; the expected output comes back in base
    units of the target token and is converted with the token registry.
    Transport and 5xx/429 failures are raised as recoverable so the engine's
    retry policy handles them; other 4xx answers will not improve on retry.
    """

    name = "quantum_exchange"

    def __init__(
        self,
        tokens: TokenRegistry,
        *,
        api_url: Optional[str] = None,
        network_name: Optional[str] = None,
        timeout_s: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.tokens = tokens
        self.api_url = (api_url or settings.quantum_exchange_api_url).rstrip("/")
        self.network_name = network_name or settings.network_name
        self.timeout_s = timeout_s or settings.recurring_api_call_timeout_seconds
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        return {
            "accept": "application/json",
            "user-agent": "TowerRecurringOrders/1.0",
        }

    async def _get(self, params: Dict[str, Any]) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout_s, transport=self._transport) as client:
                response = await client.get(self.api_url, params=params, headers=self._headers())
                response.raise_for_status()
                return response.json()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            detail = f"quote API returned {status}: {exc.response.text[:200]}"
            if status == 429:
                raise RecoverableError(detail, ErrorCategory.RATE_LIMIT) from exc
            if status >= 500:
                raise RecoverableError(detail, ErrorCategory.NETWORK) from exc
            raise UnrecoverableError(detail) from exc
        except httpx.TimeoutException as exc:
            raise RecoverableError(f"quote API timed out: {exc}", ErrorCategory.TIMEOUT) from exc
        except httpx.RequestError as exc:
            raise RecoverableError(f"quote API unreachable: {exc}", ErrorCategory.NETWORK) from exc

    async def get_quote(self, source_token: str, target_token: str, amount: Decimal) -> Quote:
        source = source_token.upper()
        target = target_token.upper()
        params = {
            "tokenIn": source,
            "tokenOut": target,
            "amountIn": str(self.tokens.to_base_units(source, amount)),
            "network": self.network_name,
        }

        data = await self._get(params)
        payload = data.get("data") if isinstance(data.get("data"), dict) else data

        raw_out = payload.get("amountOut", payload.get("expectedOutput"))
        if raw_out is None:
            raise RecoverableError("quote response missing amountOut")

        return Quote(
            source_token=source,
            target_token=target,
            input_amount=amount,
            expected_output=self.tokens.from_base_units(target, int(Decimal(str(raw_out)))),
            route=payload.get("route"),
            raw=data,
        )

    async def ready(self) -> bool:
        return bool(self.api_url)

    async def health_check(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": "ok" if await self.ready() else "not_configured",
            "url": self.api_url,
        }
