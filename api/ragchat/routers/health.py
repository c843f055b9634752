"""
Health router — GET /health endpoint.

Used by Container Apps liveness/readiness probes and
load balancer health checks.
"""

from fastapi import APIRouter, Request

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(request: Request):
    """Return a simple health status for probes."""
    registry = getattr(request.app.state, "connection_registry", None)
    return {
        "status": "healthy",
        "service": "rag-chat-service",
        "connections": len(registry) if registry is not None else 0,
    }
