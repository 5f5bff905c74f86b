from fastapi import APIRouter
from typing import Dict, Any

from ..config import settings
from ..core.recurring import TokenRegistry
from ..providers.quantum_exchange import QuantumExchangeQuoteProvider
from ..workers.recurring_order_worker import get_submitter

router = APIRouter()


@router.get("/healthz")
async def health_check() -> Dict[str, Any]:
    """Health check endpoint that verifies provider status"""

    quotes = QuantumExchangeQuoteProvider(TokenRegistry.from_settings(settings))
    submitter = get_submitter()

    provider_status = {
        "quote_provider": await quotes.health_check(),
        "submitter": await submitter.health_check(),
    }

    all_healthy = all(status["status"] == "ok" for status in provider_status.values())

    return {
        "status": "healthy" if all_healthy else "degraded",
        "store": "supabase" if settings.has_supabase else "memory",
        "providers": provider_status,
    }
