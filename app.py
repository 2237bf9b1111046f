"""
app.py - Administrative API of the rollout controller
"""
import time
import uuid
from datetime import datetime
from contextlib import asynccontextmanager
from typing import Optional, Dict, Any

from fastapi import FastAPI, APIRouter, Request, Depends, Body, Query, HTTPException, status, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator
from starlette.middleware.base import BaseHTTPMiddleware
from prometheus_client import CONTENT_TYPE_LATEST

from config import settings
from logger import get_logger
from metrics import track_request, interaction_failures, get_metrics
from circuit_breaker import CircuitBreakerError
from deployment import (
    DeploymentError,
    DeploymentOrchestrator,
    InteractionType,
    SQLConfigStore,
    ValidationError,
)

logger = get_logger(__name__)


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Add unique request ID to each request"""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        request.state.request_id = request_id

        start_time = time.time()
        response = await call_next(request)
        process_time = time.time() - start_time

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = str(process_time)

        if request.url.path != "/metrics":
            logger.info(
                f"Request {request_id}: {request.method} {request.url.path} "
                f"- {response.status_code} - {process_time:.3f}s"
            )

        return response


# Request/Response Models

class RolloutRequest(BaseModel):
    percentage: int = Field(..., description="New rollout percentage (0-100)")


class RollbackRequest(BaseModel):
    reason: str = Field(default="Manual rollback", max_length=500)


class InteractionRequest(BaseModel):
    userId: Optional[str] = None
    sessionId: Optional[str] = None
    variant: Optional[str] = None
    type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: Optional[str] = None

    @field_validator('type')
    @classmethod
    def validate_type(cls, v):
        valid_types = {t.value for t in InteractionType}
        if v not in valid_types:
            raise ValueError(f"Invalid interaction type. Valid types: {sorted(valid_types)}")
        return v


class HealthResponse(BaseModel):
    status: str
    version: str
    timestamp: str
    environment: str
    services: Dict[str, str]
    current_deployment: Optional[str] = None
    active_monitors: int = 0


def create_error_response(status_code: int, detail: str, request_id: str = None,
                          errors: Optional[list] = None) -> JSONResponse:
    """Create standardized error response"""
    content = {"detail": detail}
    if errors:
        content["errors"] = errors
    if request_id:
        content["request_id"] = request_id

    return JSONResponse(
        status_code=status_code,
        content=content
    )


def get_orchestrator(request: Request) -> DeploymentOrchestrator:
    return request.app.state.orchestrator


router = APIRouter()


# System

@router.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check(orchestrator: DeploymentOrchestrator = Depends(get_orchestrator)):
    """Health check endpoint with service checks"""
    services = {}

    if isinstance(orchestrator.store, SQLConfigStore):
        services["database"] = "healthy" if orchestrator.store.storage.check_connection() else "unhealthy"
    else:
        services["database"] = "memory"

    cache_stats = orchestrator.cache.get_stats()
    services["cache"] = "redis" if cache_stats.get('redis_available') else "memory-only"

    overall_status = "healthy"
    if "unhealthy" in services.values():
        overall_status = "unhealthy"

    current = orchestrator.get_current_deployment()
    return HealthResponse(
        status=overall_status,
        version=settings.version,
        environment=settings.environment,
        timestamp=datetime.utcnow().isoformat(),
        services=services,
        current_deployment=current.deployment_id if current else None,
        active_monitors=orchestrator.monitor.running_count,
    )


@router.get("/metrics", tags=["System"])
async def metrics():
    """Prometheus metrics endpoint"""
    if not settings.enable_metrics:
        raise HTTPException(status_code=404)

    return Response(content=get_metrics(), media_type=CONTENT_TYPE_LATEST)


# Deployments

@router.post("/deployments", status_code=status.HTTP_201_CREATED, tags=["Deployments"])
@track_request("POST", "/deployments")
async def create_deployment(
    payload: Dict[str, Any] = Body(default_factory=dict),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator)
):
    partial = dict(payload)
    created_by = partial.pop("createdBy", None) or "admin"
    deployment_id = orchestrator.create_deployment(partial, created_by=created_by)
    return {"deploymentId": deployment_id}


@router.get("/deployments", tags=["Deployments"])
@track_request("GET", "/deployments")
async def list_deployments(
    status_filter: Optional[str] = Query(None, alias="status"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator)
):
    deployments, total = orchestrator.list_deployments(status_filter, limit=limit, offset=offset)
    current = orchestrator.get_current_deployment()
    return {
        "deployments": [d.to_dict() for d in deployments],
        "total": total,
        "limit": limit,
        "offset": offset,
        "current": current.deployment_id if current else None,
    }


@router.get("/deployments/current", tags=["Deployments"])
@track_request("GET", "/deployments/current")
async def get_current_deployment(orchestrator: DeploymentOrchestrator = Depends(get_orchestrator)):
    """Currently served deployment, or null"""
    return {"deployment": orchestrator.get_served_config()}


@router.get("/deployments/current/assignment", tags=["Assignment"])
async def get_assignment(
    userId: Optional[str] = None,
    sessionId: Optional[str] = None,
    userGroup: Optional[str] = None,
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator)
):
    """Inclusion and A/B variant of a user for the current deployment"""
    return orchestrator.assign(userId, sessionId, userGroup).to_dict()


@router.get("/deployments/current/features", tags=["Assignment"])
async def get_enabled_features(orchestrator: DeploymentOrchestrator = Depends(get_orchestrator)):
    return {"features": orchestrator.get_enabled_features()}


@router.get("/rollbacks", tags=["Rollback"])
@track_request("GET", "/rollbacks")
async def get_rollback_history(
    deployment_id: Optional[str] = Query(None, alias="deploymentId"),
    limit: int = Query(10, ge=1, le=100),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator)
):
    history = orchestrator.executor.get_rollback_history(deployment_id, limit=limit)
    return {
        "rollbacks": [r.to_dict() for r in history],
        "stats": orchestrator.executor.get_rollback_stats(),
    }


@router.get("/deployments/{deployment_id}", tags=["Deployments"])
@track_request("GET", "/deployments/{id}")
async def get_deployment(deployment_id: str,
                         orchestrator: DeploymentOrchestrator = Depends(get_orchestrator)):
    stored = orchestrator.get_deployment(deployment_id)
    data = stored.to_dict()
    monitor_state = orchestrator.monitor.get_state(deployment_id)
    data["monitorState"] = monitor_state.value if monitor_state else None
    return data


@router.post("/deployments/{deployment_id}/start", tags=["Deployments"])
@track_request("POST", "/deployments/{id}/start")
async def start_rollout(deployment_id: str,
                        orchestrator: DeploymentOrchestrator = Depends(get_orchestrator)):
    stored = await orchestrator.start_rollout(deployment_id)
    return stored.to_dict()


@router.post("/deployments/{deployment_id}/rollout", tags=["Deployments"])
@track_request("POST", "/deployments/{id}/rollout")
async def increase_rollout(deployment_id: str, request: RolloutRequest,
                           orchestrator: DeploymentOrchestrator = Depends(get_orchestrator)):
    stored = await orchestrator.increase_rollout(deployment_id, request.percentage)
    return stored.to_dict()


@router.post("/deployments/{deployment_id}/pause", tags=["Deployments"])
@track_request("POST", "/deployments/{id}/pause")
async def pause_deployment(deployment_id: str,
                           orchestrator: DeploymentOrchestrator = Depends(get_orchestrator)):
    stored = await orchestrator.pause_deployment(deployment_id)
    return stored.to_dict()


@router.post("/deployments/{deployment_id}/resume", tags=["Deployments"])
@track_request("POST", "/deployments/{id}/resume")
async def resume_deployment(deployment_id: str,
                            orchestrator: DeploymentOrchestrator = Depends(get_orchestrator)):
    stored = await orchestrator.resume_deployment(deployment_id)
    return stored.to_dict()


@router.post("/deployments/{deployment_id}/complete", tags=["Deployments"])
@track_request("POST", "/deployments/{id}/complete")
async def complete_deployment(deployment_id: str,
                              orchestrator: DeploymentOrchestrator = Depends(get_orchestrator)):
    report = await orchestrator.complete_deployment(deployment_id)
    return report.to_dict()


@router.post("/deployments/{deployment_id}/rollback", tags=["Rollback"])
@track_request("POST", "/deployments/{id}/rollback")
async def rollback_deployment(deployment_id: str,
                              request: Optional[RollbackRequest] = None,
                              orchestrator: DeploymentOrchestrator = Depends(get_orchestrator)):
    reason = request.reason if request else "Manual rollback"
    result = await orchestrator.rollback(deployment_id, reason)
    return result.to_dict()


@router.patch("/deployments/{deployment_id}/config", tags=["Deployments"])
@track_request("PATCH", "/deployments/{id}/config")
async def update_config(deployment_id: str,
                        updates: Dict[str, Any] = Body(...),
                        orchestrator: DeploymentOrchestrator = Depends(get_orchestrator)):
    stored = orchestrator.update_config(deployment_id, updates)
    return stored.to_dict()


@router.delete("/deployments/{deployment_id}", tags=["Deployments"])
@track_request("DELETE", "/deployments/{id}")
async def delete_deployment(deployment_id: str,
                            orchestrator: DeploymentOrchestrator = Depends(get_orchestrator)):
    return {"deleted": orchestrator.delete_deployment(deployment_id)}


@router.post("/deployments/{deployment_id}/interactions", tags=["Metrics"])
async def record_interaction(deployment_id: str, request: InteractionRequest,
                             orchestrator: DeploymentOrchestrator = Depends(get_orchestrator)):
    """
    Report a user interaction

    Always answers success: a failure to record must never surface to the
    calling application.
    """
    identifier = request.userId or request.sessionId or "anonymous"
    try:
        orchestrator.record_interaction(
            deployment_id, identifier, request.variant, request.type, request.payload,
            timestamp=request.timestamp,
        )
    except Exception as e:
        interaction_failures.inc()
        logger.warning(f"Interaction for deployment {deployment_id} not recorded: {e}")

    return {"success": True}


@router.get("/deployments/{deployment_id}/metrics", tags=["Metrics"])
@track_request("GET", "/deployments/{id}/metrics")
async def get_deployment_metrics(deployment_id: str,
                                 orchestrator: DeploymentOrchestrator = Depends(get_orchestrator)):
    return orchestrator.get_metrics(deployment_id).to_dict()


@router.get("/deployments/{deployment_id}/report", tags=["Metrics"])
@track_request("GET", "/deployments/{id}/report")
async def get_deployment_report(deployment_id: str,
                                orchestrator: DeploymentOrchestrator = Depends(get_orchestrator)):
    return orchestrator.get_report(deployment_id).to_dict()


# Error handlers

async def deployment_error_handler(request: Request, exc: DeploymentError):
    request_id = getattr(request.state, "request_id", "unknown")
    if exc.status_code >= 500:
        logger.error(f"Collaborator failure in request {request_id}: {exc}")
        return create_error_response(
            exc.status_code, "A dependent service failed, please retry", request_id
        )

    logger.warning(f"Request {request_id} rejected: {exc}")
    errors = exc.details if isinstance(exc, ValidationError) else None
    return create_error_response(exc.status_code, exc.message, request_id, errors)


async def request_validation_handler(request: Request, exc: RequestValidationError):
    request_id = getattr(request.state, "request_id", "unknown")
    errors = [
        f"{'.'.join(str(p) for p in error.get('loc', ()))}: {error.get('msg')}"
        for error in exc.errors()
    ]
    return create_error_response(
        status.HTTP_400_BAD_REQUEST, "Invalid request", request_id, errors
    )


async def value_error_handler(request: Request, exc: ValueError):
    request_id = getattr(request.state, "request_id", "unknown")
    logger.warning(f"Validation error in request {request_id}: {str(exc)}")
    return create_error_response(status.HTTP_400_BAD_REQUEST, str(exc), request_id)


async def circuit_breaker_handler(request: Request, exc: CircuitBreakerError):
    request_id = getattr(request.state, "request_id", "unknown")
    return create_error_response(
        status.HTTP_503_SERVICE_UNAVAILABLE,
        "Service temporarily unavailable. Please try again later.",
        request_id
    )


async def general_exception_handler(request: Request, exc: Exception):
    request_id = getattr(request.state, "request_id", "unknown")
    logger.error(f"Unhandled exception in request {request_id}: {str(exc)}",
                 exc_info=settings.debug)

    return create_error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "An unexpected error occurred",
        request_id
    )


def create_app(orchestrator: Optional[DeploymentOrchestrator] = None) -> FastAPI:
    """
    Build the API

    Args:
        orchestrator: Controller to serve; built from settings at startup when omitted
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.orchestrator is None:
            try:
                app.state.orchestrator = DeploymentOrchestrator.from_settings(settings)
            except Exception as e:
                logger.critical(f"Failed to initialize rollout controller: {e}")
                raise

        await app.state.orchestrator.recover()
        logger.info(
            f"Application {settings.get('app_name')} v{settings.get('version')} "
            f"started in {settings.get('environment')} mode"
        )

        yield

        logger.info("Application shutting down gracefully...")
        try:
            await app.state.orchestrator.shutdown()
        except Exception as e:
            logger.error(f"Error during controller shutdown: {e}")
        logger.info("Shutdown complete")

    app = FastAPI(
        title=settings.get('app_name'),
        version=settings.get('version'),
        lifespan=lifespan,
        docs_url="/api/docs" if settings.get('debug') else None,
        redoc_url="/api/redoc" if settings.get('debug') else None,
        openapi_url="/openapi.json" if settings.get('debug') else None
    )
    app.state.orchestrator = orchestrator

    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get('cors_origins', []),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Process-Time"]
    )

    app.add_exception_handler(DeploymentError, deployment_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(ValueError, value_error_handler)
    app.add_exception_handler(CircuitBreakerError, circuit_breaker_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    log_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            },
        },
        "handlers": {
            "default": {
                "formatter": "default",
                "class": "logging.StreamHandler",
            },
        },
        "root": {
            "level": settings.log_level,
            "handlers": ["default"],
        },
    }

    uvicorn.run(
        "app:app",
        host=settings.host,
        port=settings.port,
        log_config=log_config,
        reload=(settings.environment == "development"),
    )
