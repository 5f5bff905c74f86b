from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


BASE_DIR = Path(__file__).resolve().parents[1]


DEFAULT_TOKEN_DECIMALS: Dict[str, int] = {
    "USDC": 18,  # native gas token on Arc, 18 decimals
    "WUSDC": 6,
    "QTM": 18,
    "EURC": 6,
    "SWPRC": 6,
    "USDT": 6,
    "UNI": 18,
    "HYPE": 18,
    "ETH": 18,
}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=BASE_DIR / ".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Server Settings
    host: str = Field(default="127.0.0.1", description="Server host")
    port: int = Field(default=8000, description="Server port")
    log_level: str = Field(default="INFO", description="Logging level")

    # Persistence (Supabase PostgREST)
    supabase_url: str = Field(default="", description="Supabase project URL")
    supabase_service_key: str = Field(default="", description="Supabase service role key")
    supabase_timeout_seconds: float = Field(default=30.0, description="Store query timeout")

    # External services
    quantum_exchange_api_url: str = Field(
        default="https://www.quantumexchange.app/api/v1/quote",
        description="QuantumExchange quote endpoint",
    )
    arc_rpc_url: str = Field(
        default="https://rpc.testnet.arc.network",
        description="Arc RPC endpoint used by the transaction submitter",
    )
    network_name: str = Field(default="Arc", description="Network label written to activity records")

    # Internal trigger auth
    internal_api_key: str = Field(default="", description="Key required by the internal run endpoint")

    # Recurring order execution
    recurring_max_orders_per_run: int = Field(
        default=100,
        ge=1,
        description="Maximum number of due orders processed in a single run",
    )
    recurring_concurrency: int = Field(
        default=1,
        ge=1,
        description="Orders processed in parallel (1 = sequential)",
    )
    recurring_order_execution_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Timeout for a single transaction submission attempt",
    )
    recurring_api_call_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Timeout for a single quote request",
    )
    recurring_max_attempts: int = Field(
        default=3,
        ge=1,
        description="Attempts per quote / submission phase before failing the cycle",
    )
    recurring_retry_initial_delay_seconds: float = Field(
        default=1.0,
        ge=0,
        description="Delay before the first retry",
    )
    recurring_retry_backoff_multiplier: float = Field(
        default=2.0,
        ge=1,
        description="Exponential backoff multiplier between retries",
    )
    recurring_run_timeout_seconds: Optional[float] = Field(
        default=None,
        description="Stop starting new orders once a run has been going this long",
    )
    recurring_run_lock_ttl_seconds: float = Field(
        default=900.0,
        gt=0,
        description="Expiry of the run lease guarding against overlapping runs",
    )
    recurring_claim_ttl_seconds: float = Field(
        default=300.0,
        gt=0,
        description="How long a claimed order stays hidden from other runs",
    )
    recurring_max_consecutive_failures: int = Field(
        default=5,
        ge=0,
        description="Deactivate an order after this many failed cycles in a row (0 = never)",
    )
    recurring_use_run_lock: bool = Field(default=True, description="Acquire the run lease before each run")
    recurring_trigger_interval_seconds: int = Field(
        default=3600,
        ge=1,
        description="Tick interval for the built-in run loop",
    )
    recurring_trigger_cron: str = Field(
        default="0 * * * *",
        description="Cron cadence for external schedulers (documentation only)",
    )

    # Tokens
    supported_tokens: Dict[str, int] = Field(
        default_factory=lambda: dict(DEFAULT_TOKEN_DECIMALS),
        description="Supported token symbols mapped to their decimals",
    )
    min_order_amount: Decimal = Field(
        default=Decimal("0"),
        ge=0,
        description="Smallest amount accepted when creating an order",
    )

    @field_validator("supported_tokens")
    @classmethod
    def _upper_symbols(cls, value: Dict[str, int]) -> Dict[str, int]:
        return {symbol.upper(): int(decimals) for symbol, decimals in value.items()}

    @property
    def has_supabase(self) -> bool:
        return bool(self.supabase_url and self.supabase_service_key)

    def engine_overrides(self) -> Dict[str, Any]:
        """Subset of settings consumed by the execution engine."""
        return {
            "max_orders_per_run": self.recurring_max_orders_per_run,
            "concurrency": self.recurring_concurrency,
            "order_execution_timeout_seconds": self.recurring_order_execution_timeout_seconds,
            "api_call_timeout_seconds": self.recurring_api_call_timeout_seconds,
            "max_attempts": self.recurring_max_attempts,
            "retry_initial_delay_seconds": self.recurring_retry_initial_delay_seconds,
            "retry_backoff_multiplier": self.recurring_retry_backoff_multiplier,
            "run_timeout_seconds": self.recurring_run_timeout_seconds,
            "run_lock_ttl_seconds": self.recurring_run_lock_ttl_seconds,
            "claim_ttl_seconds": self.recurring_claim_ttl_seconds,
            "max_consecutive_failures": self.recurring_max_consecutive_failures,
            "use_run_lock": self.recurring_use_run_lock,
            "network_name": self.network_name,
        }


# Global settings instance
settings = Settings()
