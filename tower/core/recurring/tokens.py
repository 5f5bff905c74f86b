"""
Token Registry

Supported-token set with per-token decimal precision. Injected into the
engine and service so neither is tied to a particular token list.
"""

from __future__ import annotations

from decimal import ROUND_DOWN, Decimal, localcontext
from typing import Dict, Iterable, Mapping

from ..recovery import UnsupportedTokenError


class TokenRegistry:
    """Lookup table of supported symbols and their decimals."""

    def __init__(self, decimals: Mapping[str, int]):
        self._decimals: Dict[str, int] = {
            symbol.upper(): int(places) for symbol, places in decimals.items()
        }

    @classmethod
    def from_settings(cls, settings) -> "TokenRegistry":
        return cls(settings.supported_tokens)

    @property
    def symbols(self) -> Iterable[str]:
        return tuple(self._decimals)

    def is_supported(self, symbol: str) -> bool:
        return (symbol or "").upper() in self._decimals

    def decimals(self, symbol: str) -> int:
        try:
            return self._decimals[(symbol or "").upper()]
        except KeyError:
            raise UnsupportedTokenError(symbol) from None

    def require_supported(self, *symbols: str) -> None:
        for symbol in symbols:
            if not self.is_supported(symbol):
                raise UnsupportedTokenError(symbol)

    def quantize(self, symbol: str, amount: Decimal) -> Decimal:
        """Truncate `amount` to the token's precision."""
        places = self.decimals(symbol)
        with localcontext() as ctx:
            ctx.prec = 78
            return Decimal(amount).quantize(Decimal(1).scaleb(-places), rounding=ROUND_DOWN)

    def to_base_units(self, symbol: str, amount: Decimal) -> int:
        """Human amount -> integer smallest units."""
        places = self.decimals(symbol)
        return int((Decimal(amount) * (Decimal(10) ** places)).to_integral_value(rounding=ROUND_DOWN))

    def from_base_units(self, symbol: str, units: int) -> Decimal:
        places = self.decimals(symbol)
        return Decimal(int(units)) / (Decimal(10) ** places)
