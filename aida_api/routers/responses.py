from __future__ import annotations

from dataclasses import asdict

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status

from aida_api.models import MemoryContextRequest, ResponseRequest, ResponseResult
from aida_api.orchestrators.request_coordinator import RequestCoordinator
from aida_api.tools.context_aggregator import AggregatedContext
from aida_libs.common.errors import EngineError, ValidationError

logger = structlog.get_logger(__name__)
router = APIRouter()


def get_coordinator(request: Request) -> RequestCoordinator:
    """Coordinator built during application startup."""
    coordinator = getattr(request.app.state, "coordinator", None)
    if coordinator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Engine is not initialized",
        )
    return coordinator


@router.post("/v1/responses", response_model=ResponseResult, tags=["Responses"])
async def create_response(
    payload: ResponseRequest,
    coordinator: RequestCoordinator = Depends(get_coordinator),
) -> ResponseResult:
    """Generate a reply to a customer message.

    Always answers 200 with the result envelope; failures are reported in
    ``success``/``error`` and, where possible, a fallback reply.

    Example:
        ```bash
        curl -X POST http://localhost:8000/v1/responses \\
          -H "Content-Type: application/json" \\
          -d '{"message": "Do you open on Sundays?", "conversation_id": "c1",
               "assistant_id": "a1", "business_id": "b1"}'
        ```
    """
    return await coordinator.generate_response(payload)


@router.post("/v1/memory-context", response_model=AggregatedContext, tags=["Responses"])
async def memory_context(
    payload: MemoryContextRequest,
    coordinator: RequestCoordinator = Depends(get_coordinator),
) -> AggregatedContext:
    """Retrieve the aggregated context for a message without generating a reply."""
    try:
        return await coordinator.get_memory_context(
            payload.conversation_id,
            payload.message,
            payload.assistant_id,
            payload.business_id,
        )
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message) from e
    except EngineError as e:
        logger.error("Memory context retrieval failed", error=e.message, error_type=e.error_type)
        code = status.HTTP_503_SERVICE_UNAVAILABLE if e.retryable else status.HTTP_502_BAD_GATEWAY
        raise HTTPException(status_code=code, detail=e.to_dict()) from e


@router.get("/v1/stats", tags=["Responses"])
async def engine_stats(coordinator: RequestCoordinator = Depends(get_coordinator)) -> dict:
    """Counters for the coordinator and its caches."""
    return {
        "requests": coordinator.get_stats().to_dict(),
        "in_flight": coordinator.in_flight_count(),
        "embeddings": coordinator.embeddings.get_stats().to_dict(),
        "windows": asdict(coordinator.windows.get_stats()),
        "quality": asdict(coordinator.quality.get_stats()),
    }
