"""
Recurring Order Models

Data models for recurring swap orders, their execution history and the
per-run summary. Store rows use the snake_case column names of the
recurring_orders / recurring_order_executions tables.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 column value (or pass a datetime through) as aware UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat()


class OrderType(str, Enum):
    """Swap direction of a recurring order."""
    BUY = "buy"
    SELL = "sell"

    @property
    def label(self) -> str:
        return self.value.capitalize()


class Frequency(str, Enum):
    """Recurring order frequency."""
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    BIWEEKLY = "bi-weekly"
    MONTHLY = "monthly"

    @classmethod
    def parse(cls, value: Any) -> Optional["Frequency"]:
        """Case-insensitive lookup; returns None for unrecognized tokens."""
        if isinstance(value, Frequency):
            return value
        token = str(value or "").strip().lower().replace("_", "-")
        if token == "biweekly":
            token = "bi-weekly"
        try:
            return cls(token)
        except ValueError:
            return None


class ExecutionStatus(str, Enum):
    """Execution record status, as shown to end users."""
    PENDING = "Pending"
    SUCCESSFUL = "Successful"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self is not ExecutionStatus.PENDING


class OrderState(str, Enum):
    """Per-order state machine within one run."""
    DUE = "due"
    QUOTING = "quoting"
    SUBMITTING = "submitting"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class ActivityStatus(str, Enum):
    PENDING = "Pending"
    SUCCESSFUL = "Successful"
    FAILED = "Failed"


@dataclass
class RecurringOrder:
    """A standing instruction to repeatedly swap `amount` of source into target."""
    id: str
    wallet_address: str
    order_type: OrderType
    source_token: str
    target_token: str
    amount: Decimal
    frequency: str  # kept raw; unrecognized values fall back to weekly
    start_date: datetime
    next_execution_date: datetime
    end_date: Optional[datetime] = None
    is_active: bool = True
    execution_count: int = 0
    consecutive_failures: int = 0
    # Due time of the cycle in flight; set by a claim, cleared on advance
    claimed_cycle_at: Optional[datetime] = None
    signature: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def order_label(self) -> str:
        return f"Recurring {self.order_type.label}"

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "wallet_address": self.wallet_address,
            "order_type": self.order_type.value,
            "source_token": self.source_token,
            "target_token": self.target_token,
            "amount": str(self.amount),
            "frequency": self.frequency,
            "start_date": format_timestamp(self.start_date),
            "end_date": format_timestamp(self.end_date),
            "next_execution_date": format_timestamp(self.next_execution_date),
            "is_active": self.is_active,
            "execution_count": self.execution_count,
            "consecutive_failures": self.consecutive_failures,
            "claimed_cycle_at": format_timestamp(self.claimed_cycle_at),
            "signature": self.signature,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
        }

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "RecurringOrder":
        """Create from a recurring_orders row."""
        created_at = parse_timestamp(data.get("created_at")) or utcnow()
        return cls(
            id=str(data["id"]),
            wallet_address=data["wallet_address"],
            order_type=OrderType(str(data["order_type"]).lower()),
            source_token=data["source_token"],
            target_token=data["target_token"],
            amount=Decimal(str(data["amount"])),
            frequency=data["frequency"],
            start_date=parse_timestamp(data.get("start_date")) or created_at,
            next_execution_date=parse_timestamp(data["next_execution_date"]),
            end_date=parse_timestamp(data.get("end_date")),
            is_active=bool(data.get("is_active", True)),
            execution_count=int(data.get("execution_count") or 0),
            consecutive_failures=int(data.get("consecutive_failures") or 0),
            claimed_cycle_at=parse_timestamp(data.get("claimed_cycle_at")),
            signature=data.get("signature"),
            created_at=created_at,
            updated_at=parse_timestamp(data.get("updated_at")) or created_at,
        )


@dataclass
class Execution:
    """One attempt to fulfil a due cycle. Append-only."""
    id: str
    recurring_order_id: str
    wallet_address: str
    execution_date: datetime
    amount: Decimal
    source_token: str
    target_token: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    transaction_hash: Optional[str] = None
    error_message: Optional[str] = None
    cycle_key: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "recurring_order_id": self.recurring_order_id,
            "wallet_address": self.wallet_address,
            "execution_date": format_timestamp(self.execution_date),
            "amount": str(self.amount),
            "source_token": self.source_token,
            "target_token": self.target_token,
            "status": self.status.value,
            "transaction_hash": self.transaction_hash,
            "error_message": self.error_message,
            "cycle_key": self.cycle_key,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
        }

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "Execution":
        """Create from a recurring_order_executions row."""
        created_at = parse_timestamp(data.get("created_at")) or utcnow()
        return cls(
            id=str(data["id"]),
            recurring_order_id=str(data["recurring_order_id"]),
            wallet_address=data["wallet_address"],
            execution_date=parse_timestamp(data.get("execution_date")) or created_at,
            amount=Decimal(str(data["amount"])),
            source_token=data["source_token"],
            target_token=data["target_token"],
            status=ExecutionStatus(data.get("status", "Pending")),
            transaction_hash=data.get("transaction_hash"),
            error_message=data.get("error_message"),
            cycle_key=data.get("cycle_key"),
            created_at=created_at,
            updated_at=parse_timestamp(data.get("updated_at")) or created_at,
        )


@dataclass
class Activity:
    """Human-facing audit event."""
    wallet_address: str
    type: str
    source_token: str
    target_token: Optional[str]
    amount: Decimal
    status: ActivityStatus
    network_name: str = "Arc"
    transaction_hash: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_record(self) -> Dict[str, Any]:
        return {
            "wallet_address": self.wallet_address,
            "type": self.type,
            "source_currency_ticker": self.source_token,
            "source_network_name": self.network_name,
            "destination_currency_ticker": self.target_token,
            "destination_network_name": self.network_name,
            "status": self.status.value,
            "amount": str(self.amount),
            "transaction_hash": self.transaction_hash,
            "timestamp": format_timestamp(self.timestamp),
        }


@dataclass
class Quote:
    """Price/route returned by the quote provider."""
    source_token: str
    target_token: str
    input_amount: Decimal
    expected_output: Decimal
    route: Any = None
    raw: Optional[Dict[str, Any]] = None


@dataclass
class SubmissionResult:
    """Transaction reference returned by the submitter."""
    tx_ref: str


@dataclass
class OrderOutcome:
    """Result of processing one due order within a run."""
    order_id: str
    wallet_address: str
    state: OrderState
    execution_id: Optional[str] = None
    tx_ref: Optional[str] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    amount: Decimal = Decimal("0")
    source_token: str = ""
    next_execution_date: Optional[datetime] = None
    deactivated: bool = False
    claimed: bool = True
    store_error: bool = False
    duration_seconds: float = 0.0
    submitted_at: Optional[datetime] = None
    resumed: bool = False

    @property
    def succeeded(self) -> bool:
        return self.state == OrderState.CONFIRMED and not self.store_error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "orderId": self.order_id,
            "walletAddress": self.wallet_address,
            "state": self.state.value,
            "executionId": self.execution_id,
            "txRef": self.tx_ref,
            "errorKind": self.error_kind,
            "errorMessage": self.error_message,
            "amount": str(self.amount),
            "nextExecutionDate": format_timestamp(self.next_execution_date),
            "deactivated": self.deactivated,
            "claimed": self.claimed,
            "storeError": self.store_error,
            "resumed": self.resumed,
            "submittedAt": format_timestamp(self.submitted_at),
            "durationSeconds": round(self.duration_seconds, 3),
        }


@dataclass
class RunSummary:
    """Aggregate result of one engine run. Reported, never persisted."""
    run_id: str
    started_at: datetime
    ended_at: Optional[datetime] = None
    due_count: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    deferred: int = 0
    store_errors: int = 0
    total_volume: Decimal = Decimal("0")
    volume_by_token: Dict[str, Decimal] = field(default_factory=dict)
    total_order_seconds: float = 0.0
    skipped_reason: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    outcomes: List[OrderOutcome] = field(default_factory=list)

    @property
    def duration_seconds(self) -> float:
        if self.ended_at is None:
            return 0.0
        return (self.ended_at - self.started_at).total_seconds()

    @property
    def average_order_seconds(self) -> float:
        if not self.processed:
            return 0.0
        return self.total_order_seconds / self.processed

    def record(self, outcome: OrderOutcome) -> None:
        self.outcomes.append(outcome)
        if not outcome.claimed:
            self.skipped += 1
            return
        self.processed += 1
        self.total_order_seconds += outcome.duration_seconds
        if outcome.store_error:
            self.store_errors += 1
        if outcome.succeeded:
            self.succeeded += 1
            self.total_volume += outcome.amount
            self.volume_by_token[outcome.source_token] = (
                self.volume_by_token.get(outcome.source_token, Decimal("0")) + outcome.amount
            )
        else:
            self.failed += 1
            if outcome.error_message:
                self.errors.append(f"{outcome.order_id}: {outcome.error_message}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "runId": self.run_id,
            "startedAt": format_timestamp(self.started_at),
            "endedAt": format_timestamp(self.ended_at),
            "durationSeconds": round(self.duration_seconds, 3),
            "dueCount": self.due_count,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "deferred": self.deferred,
            "storeErrors": self.store_errors,
            "totalVolume": str(self.total_volume),
            "volumeByToken": {k: str(v) for k, v in self.volume_by_token.items()},
            "averageOrderSeconds": round(self.average_order_seconds, 3),
            "skippedReason": self.skipped_reason,
            "errors": self.errors,
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


@dataclass(frozen=True)
class EngineConfig:
    """Tunables for one engine instance. Passed in at construction."""
    max_orders_per_run: int = 100
    concurrency: int = 1
    order_execution_timeout_seconds: float = 30.0
    api_call_timeout_seconds: float = 10.0
    max_attempts: int = 3
    retry_initial_delay_seconds: float = 1.0
    retry_backoff_multiplier: float = 2.0
    run_timeout_seconds: Optional[float] = None
    run_lock_ttl_seconds: float = 900.0
    claim_ttl_seconds: float = 300.0
    max_consecutive_failures: int = 5
    use_run_lock: bool = True
    network_name: str = "Arc"

    def __post_init__(self) -> None:
        if self.max_orders_per_run < 1:
            raise ValueError("max_orders_per_run must be at least 1")
        if self.concurrency < 1:
            raise ValueError("concurrency must be at least 1")

    @classmethod
    def from_settings(cls, settings: Any, **overrides: Any) -> "EngineConfig":
        values = dict(settings.engine_overrides())
        values.update(overrides)
        return cls(**values)
