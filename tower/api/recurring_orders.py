"""
Recurring Order API Endpoints

REST API for managing recurring orders, plus the internal trigger used by the
external scheduler to start an engine run.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel, Field

from tower.config import settings
from tower.core.recovery import (
    OrderNotFoundError,
    OrderOwnershipError,
    StoreError,
    UnsupportedTokenError,
)
from tower.core.recurring import (
    Execution,
    RecurringOrder,
    RecurringOrderEngine,
    RecurringOrderService,
    RecurringScheduler,
    TokenRegistry,
)
from tower.db.factory import get_activity_logger, get_order_store
from tower.workers.recurring_order_worker import build_engine

router = APIRouter(prefix="/recurring-orders", tags=["Recurring Orders"])


# =============================================================================
# Request/Response Models
# =============================================================================


class CreateRecurringOrderRequest(BaseModel):
    """Request to create a recurring order."""
    wallet_address: str = Field(..., alias="walletAddress", description="Owner wallet address")
    order_type: str = Field(..., alias="orderType", description="buy or sell")
    source_token: str = Field(..., alias="sourceToken", description="Token spent each cycle")
    target_token: str = Field(..., alias="targetToken", description="Token received each cycle")
    amount: Decimal = Field(..., description="Amount of source token per cycle")
    frequency: str = Field(..., description="hourly, daily, weekly, bi-weekly or monthly")
    end_date: Optional[datetime] = Field(None, alias="endDate", description="Stop after this time")
    signature: Optional[str] = Field(None, description="Wallet authorization signature")

    class Config:
        populate_by_name = True


class CancelRecurringOrderRequest(BaseModel):
    """Request to cancel a recurring order."""
    wallet_address: str = Field(..., alias="walletAddress", description="Requesting wallet")

    class Config:
        populate_by_name = True


class RecurringOrderResponse(BaseModel):
    """Recurring order response."""
    id: str
    wallet_address: str = Field(..., alias="walletAddress")
    order_type: str = Field(..., alias="orderType")
    source_token: str = Field(..., alias="sourceToken")
    target_token: str = Field(..., alias="targetToken")
    amount: str
    frequency: str
    schedule_description: str = Field(..., alias="scheduleDescription")
    start_date: datetime = Field(..., alias="startDate")
    end_date: Optional[datetime] = Field(None, alias="endDate")
    next_execution_date: datetime = Field(..., alias="nextExecutionDate")
    is_active: bool = Field(..., alias="isActive")
    execution_count: int = Field(..., alias="executionCount")
    created_at: datetime = Field(..., alias="createdAt")
    updated_at: datetime = Field(..., alias="updatedAt")

    class Config:
        populate_by_name = True


class CancelRecurringOrderResponse(BaseModel):
    """Cancellation result."""
    order: RecurringOrderResponse
    already_cancelled: bool = Field(..., alias="alreadyCancelled")

    class Config:
        populate_by_name = True


class ExecutionResponse(BaseModel):
    """Recurring order execution response."""
    id: str
    recurring_order_id: str = Field(..., alias="recurringOrderId")
    wallet_address: str = Field(..., alias="walletAddress")
    execution_date: datetime = Field(..., alias="executionDate")
    amount: str
    source_token: str = Field(..., alias="sourceToken")
    target_token: str = Field(..., alias="targetToken")
    status: str
    transaction_hash: Optional[str] = Field(None, alias="transactionHash")
    error_message: Optional[str] = Field(None, alias="errorMessage")

    class Config:
        populate_by_name = True


# =============================================================================
# Dependencies
# =============================================================================


def get_recurring_service() -> RecurringOrderService:
    """Get the recurring order service wired to the configured store."""
    return RecurringOrderService(
        store=get_order_store(),
        tokens=TokenRegistry.from_settings(settings),
        activity_logger=get_activity_logger(),
        min_amount=settings.min_order_amount,
    )


def get_engine() -> RecurringOrderEngine:
    return build_engine(settings)


def verify_internal_key(x_internal_key: str = Header(None, alias="X-Internal-Key")) -> bool:
    """Verify internal API key for cron-triggered endpoints."""
    if not settings.internal_api_key or x_internal_key != settings.internal_api_key:
        raise HTTPException(status_code=401, detail="Invalid internal API key")
    return True


# =============================================================================
# Helper Functions
# =============================================================================


def _order_to_response(order: RecurringOrder) -> RecurringOrderResponse:
    return RecurringOrderResponse(
        id=order.id,
        walletAddress=order.wallet_address,
        orderType=order.order_type.value,
        sourceToken=order.source_token,
        targetToken=order.target_token,
        amount=str(order.amount),
        frequency=order.frequency,
        scheduleDescription=RecurringScheduler.format_schedule_description(order.frequency),
        startDate=order.start_date,
        endDate=order.end_date,
        nextExecutionDate=order.next_execution_date,
        isActive=order.is_active,
        executionCount=order.execution_count,
        createdAt=order.created_at,
        updatedAt=order.updated_at,
    )


def _execution_to_response(execution: Execution) -> ExecutionResponse:
    return ExecutionResponse(
        id=execution.id,
        recurringOrderId=execution.recurring_order_id,
        walletAddress=execution.wallet_address,
        executionDate=execution.execution_date,
        amount=str(execution.amount),
        sourceToken=execution.source_token,
        targetToken=execution.target_token,
        status=execution.status.value,
        transactionHash=execution.transaction_hash,
        errorMessage=execution.error_message,
    )


# =============================================================================
# Public Endpoints
# =============================================================================


@router.post("", response_model=RecurringOrderResponse)
async def create_recurring_order(
    request: CreateRecurringOrderRequest,
    service: RecurringOrderService = Depends(get_recurring_service),
):
    """Create a new active recurring order."""
    try:
        order = await service.create_order(
            wallet_address=request.wallet_address,
            order_type=request.order_type,
            source_token=request.source_token,
            target_token=request.target_token,
            amount=request.amount,
            frequency=request.frequency,
            end_date=request.end_date,
            signature=request.signature,
        )
        return _order_to_response(order)

    except (ValueError, UnsupportedTokenError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StoreError as e:
        raise HTTPException(status_code=503, detail=str(e))


@router.get("/wallet/{wallet_address}", response_model=List[RecurringOrderResponse])
async def list_wallet_orders(
    wallet_address: str,
    active_only: bool = Query(True, alias="activeOnly"),
    service: RecurringOrderService = Depends(get_recurring_service),
):
    """List a wallet's recurring orders, newest first."""
    orders = await service.list_orders(wallet_address, active_only=active_only)
    return [_order_to_response(o) for o in orders]


@router.get("/wallet/{wallet_address}/executions", response_model=List[ExecutionResponse])
async def get_wallet_executions(
    wallet_address: str,
    limit: Optional[int] = Query(None, ge=1, le=500),
    service: RecurringOrderService = Depends(get_recurring_service),
):
    """Execution history across all of a wallet's orders."""
    executions = await service.get_wallet_executions(wallet_address, limit=limit)
    return [_execution_to_response(e) for e in executions]


@router.get("/{order_id}", response_model=RecurringOrderResponse)
async def get_recurring_order(
    order_id: str,
    service: RecurringOrderService = Depends(get_recurring_service),
):
    """Get a recurring order by ID."""
    order = await service.get_order(order_id)
    if not order:
        raise HTTPException(status_code=404, detail="Recurring order not found")
    return _order_to_response(order)


@router.get("/{order_id}/executions", response_model=List[ExecutionResponse])
async def get_order_executions(
    order_id: str,
    limit: Optional[int] = Query(None, ge=1, le=500),
    service: RecurringOrderService = Depends(get_recurring_service),
):
    """Execution history for one order, most recent first."""
    executions = await service.get_order_executions(order_id, limit=limit)
    return [_execution_to_response(e) for e in executions]


@router.post("/{order_id}/cancel", response_model=CancelRecurringOrderResponse)
async def cancel_recurring_order(
    order_id: str,
    request: CancelRecurringOrderRequest,
    service: RecurringOrderService = Depends(get_recurring_service),
):
    """Cancel a recurring order. Cancelling twice is not an error."""
    try:
        result = await service.cancel_order(order_id, request.wallet_address)
    except OrderNotFoundError:
        raise HTTPException(status_code=404, detail="Recurring order not found")
    except OrderOwnershipError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except StoreError as e:
        raise HTTPException(status_code=503, detail=str(e))

    return CancelRecurringOrderResponse(
        order=_order_to_response(result.order),
        alreadyCancelled=result.already_cancelled,
    )


# =============================================================================
# Internal Endpoints
# =============================================================================


@router.post("/internal/run")
async def internal_run(
    _: bool = Depends(verify_internal_key),
    engine: RecurringOrderEngine = Depends(get_engine),
) -> Dict[str, Any]:
    """Internal endpoint called by the scheduler to run the engine once."""
    summary = await engine.run()
    return summary.to_dict()
