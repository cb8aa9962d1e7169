"""
FastAPI server for Routewise.

Exposes routing decisions, per-user usage, and admin endpoints for the
policy table, quota maintenance and analytics.
"""

from __future__ import annotations

import asyncio
import secrets
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
import structlog

from routewise import __version__
from routewise.core.config import get_settings
from routewise.core.errors import (
    InvalidPolicyTableError,
    NoEligibleProviderError,
    QuotaExceededError,
    StaleReloadError,
)
from routewise.core.models import PrivacyLevel, RequestContext
from routewise.service import RoutingService
from routewise.utils.logging import bind_request_context, clear_request_context, setup_logging

logger = structlog.get_logger()

# Global instances
routing_service: RoutingService | None = None


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan handler."""
    global routing_service

    setup_logging()
    logger.info("Starting Routewise API server")

    if routing_service is None:
        routing_service = RoutingService()
    await routing_service.start()

    logger.info(
        "Routing services initialized",
        policy_version=routing_service.policy_store.table.version,
        quota_store=type(routing_service.quota_store).__name__,
        jobs=list(routing_service.scheduler.jobs),
    )

    yield

    await routing_service.stop()
    logger.info("Shutting down Routewise API server")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Routewise API",
        description="Policy-driven model routing with daily tier quotas",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.server.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    return app


app = create_app()


# Request/Response models

class RouteRequest(BaseModel):
    user_id: str = Field(min_length=1)
    request_type: str
    region: str | None = None
    emergency: bool = False
    required_accuracy: float | None = Field(default=None, ge=0, le=100)
    privacy_level: PrivacyLevel | None = None
    contains_sensitive_data: bool = False
    estimated_cost: float | None = Field(default=None, ge=0)
    estimated_tokens: int | None = Field(default=None, ge=0)
    current_time: datetime | None = None


class PolicyRuleRequest(BaseModel):
    rule: dict[str, Any]
    modified_by: str = "admin"


class PolicyTableRequest(BaseModel):
    table: dict[str, Any]
    modified_by: str = "admin"


# Dependencies

def get_service() -> RoutingService:
    """Get the routing service instance."""
    if routing_service is None:
        raise HTTPException(status_code=503, detail="Routing service not initialized")
    return routing_service


async def verify_admin_key(
    x_admin_key: str | None = Header(default=None),
    service: RoutingService = Depends(get_service),
) -> bool:
    """Verify admin API key."""
    settings = service.settings

    if not settings.server.admin_api_enabled:
        raise HTTPException(status_code=404, detail="Admin API not enabled")

    if not settings.server.admin_api_key:
        raise HTTPException(status_code=503, detail="Admin API key not configured")

    if not x_admin_key:
        raise HTTPException(status_code=401, detail="Admin API key required")

    if not secrets.compare_digest(
        x_admin_key,
        settings.server.admin_api_key.get_secret_value(),
    ):
        raise HTTPException(status_code=403, detail="Invalid admin API key")

    return True


def _quota_response(error: QuotaExceededError, service: RoutingService) -> JSONResponse:
    headers = {}
    if error.reset_at is not None:
        retry_after = max(0, int((error.reset_at - service.clock.now()).total_seconds()))
        headers["Retry-After"] = str(retry_after)
    return JSONResponse(status_code=429, content=error.to_dict(), headers=headers)


# Routes

@app.get("/health")
async def health_check(
    service: RoutingService = Depends(get_service),
) -> dict[str, Any]:
    """Health check endpoint."""
    snapshot = service.policy_store.snapshot
    return {
        "status": "healthy",
        "version": __version__,
        "policy_version": snapshot.table.version,
        "policy_revision": snapshot.revision,
        "quota_store": type(service.quota_store).__name__,
        "scheduler": service.scheduler.running,
    }


@app.post("/v1/route")
async def route_request(
    request: RouteRequest,
    service: RoutingService = Depends(get_service),
) -> Any:
    """Route a request to a provider under policy and quota constraints."""
    context = RequestContext(**request.model_dump())
    bind_request_context(user_id=context.user_id, request_type=context.request_type)
    try:
        decision = await service.route(context)
    except QuotaExceededError as e:
        return _quota_response(e, service)
    except NoEligibleProviderError as e:
        raise HTTPException(status_code=503, detail=str(e))
    finally:
        clear_request_context()
    return decision.model_dump(mode="json")


@app.get("/v1/usage/{user_id}")
async def get_usage(
    user_id: str,
    service: RoutingService = Depends(get_service),
) -> dict[str, Any]:
    """Today's usage record for a user."""
    record = await service.ledger.get_usage(user_id)
    return record.to_dict()


@app.get("/admin/policy")
async def get_policy(
    service: RoutingService = Depends(get_service),
    _: bool = Depends(verify_admin_key),
) -> dict[str, Any]:
    """Active policy table and recent changes (admin only)."""
    snapshot = service.policy_store.snapshot
    return {
        "snapshot": snapshot.to_dict(),
        "history": service.policy_store.history(),
    }


@app.put("/admin/policy")
async def replace_policy(
    request: PolicyTableRequest,
    service: RoutingService = Depends(get_service),
    _: bool = Depends(verify_admin_key),
) -> dict[str, Any]:
    """Replace the whole policy table (admin only)."""
    loop = asyncio.get_running_loop()
    try:
        snapshot = await loop.run_in_executor(
            None, service.policy_store.update_table, request.table, request.modified_by
        )
    except InvalidPolicyTableError as e:
        raise HTTPException(status_code=422, detail={"message": str(e), "errors": e.errors})
    return snapshot.to_dict()


@app.put("/admin/policy/rules/{rule_id}")
async def upsert_rule(
    rule_id: str,
    request: PolicyRuleRequest,
    service: RoutingService = Depends(get_service),
    _: bool = Depends(verify_admin_key),
) -> dict[str, Any]:
    """Insert or replace one rule (admin only)."""
    rule = {**request.rule, "id": rule_id}
    loop = asyncio.get_running_loop()
    try:
        snapshot = await loop.run_in_executor(
            None, service.policy_store.update_rule, rule, request.modified_by
        )
    except InvalidPolicyTableError as e:
        raise HTTPException(status_code=422, detail={"message": str(e), "errors": e.errors})
    return snapshot.to_dict()


@app.post("/admin/policy/reload")
async def reload_policy(
    service: RoutingService = Depends(get_service),
    _: bool = Depends(verify_admin_key),
) -> dict[str, Any]:
    """Re-read the backing store (admin only)."""
    loop = asyncio.get_running_loop()
    try:
        changed = await loop.run_in_executor(None, service.policy_store.reconcile)
    except StaleReloadError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"changed": changed, "snapshot": service.policy_store.snapshot.to_dict()}


@app.post("/admin/quota/reset")
async def reset_quota(
    service: RoutingService = Depends(get_service),
    _: bool = Depends(verify_admin_key),
) -> dict[str, Any]:
    """Purge quota records from previous days (admin only)."""
    removed = await service.ledger.reset_daily_limits()
    return {"removed": removed}


@app.get("/admin/usage/stats")
async def usage_stats(
    service: RoutingService = Depends(get_service),
    _: bool = Depends(verify_admin_key),
) -> dict[str, Any]:
    """Aggregate usage for the current quota day (admin only)."""
    return await service.ledger.get_usage_stats()


@app.get("/admin/analytics")
async def analytics(
    limit: int = Query(default=100, ge=1, le=1000),
    service: RoutingService = Depends(get_service),
    _: bool = Depends(verify_admin_key),
) -> dict[str, Any]:
    """Routing outcome counters and recent decisions (admin only)."""
    return {
        "summary": service.metrics.get_summary(),
        "recent": service.metrics.get_recent(limit),
        "scheduler": service.scheduler.get_status(),
    }


@app.get("/admin/evaluations")
async def evaluations(
    provider: str | None = Query(default=None),
    dataset_id: str | None = Query(default=None),
    limit: int | None = Query(default=None, ge=1),
    service: RoutingService = Depends(get_service),
    _: bool = Depends(verify_admin_key),
) -> dict[str, Any]:
    """Evaluation history and latest measured accuracy (admin only)."""
    registry = service.evaluations
    return {
        "datasets": registry.list_datasets(),
        "latest_accuracy": registry.latest_accuracy(),
        "results": [r.to_dict() for r in registry.history(provider, dataset_id, limit)],
    }


def run_server(
    host: str = "0.0.0.0",
    port: int = 8000,
    reload: bool = False,
    workers: int = 1,
) -> None:
    """Run the API server."""
    import uvicorn
    uvicorn.run(
        "routewise.api.server:app",
        host=host,
        port=port,
        reload=reload,
        workers=workers,
    )


if __name__ == "__main__":
    run_server()
