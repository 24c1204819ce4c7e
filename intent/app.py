"""
Intent Classification Microservice - FastAPI Application

Provides the HTTP REST API for cascading intent classification, user
corrections and accuracy statistics.

Endpoints:
    POST /api/v1/classify      - classify an utterance
    POST /api/v1/corrections   - apply a user correction
    GET  /api/v1/stats         - accuracy metrics and performance statistics
    GET  /health               - Redis and backend health
    GET  /metrics              - Prometheus exposition
    POST /admin/clear_cache    - clear classification and completion caches
"""

import os
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse

from shared.health_check import check_backends_health, check_redis_health
from shared.observability import get_metrics_response, setup_metrics
from shared.redis_client import RedisConfig, close_redis_client, create_redis_client

from .config import IntentConfig
from .intent_classifier import InvalidInputError
from .models import (
    ClassifyRequest,
    ClassifyResponse,
    ClearCacheResponse,
    CorrectionRequest,
    CorrectionResponse,
    HealthResponse,
)
from .runtime import ServiceRuntime, build_runtime

logger = logging.getLogger(__name__)

SERVICE_NAME = "assistant-intent-service"
SERVICE_VERSION = "1.0.0"


# ============================================================================
# Lifespan Management
# ============================================================================

async def _start_runtime() -> ServiceRuntime:
    config = IntentConfig.from_env()
    logger.info("✅ Configuration loaded")

    redis_client = None
    try:
        redis_client = await create_redis_client(RedisConfig.from_env(config.redis_url))
    except Exception as e:
        logger.warning(f"⚠️ Redis unavailable ({e}) - continuing without persistence")

    return await build_runtime(config, redis_client=redis_client)


async def _warm_up(runtime: ServiceRuntime) -> None:
    results = await runtime.router.warm_up(runtime.config.warmup_models or None)
    ready = [name for name, outcome in results.items() if outcome.get("ok")]
    logger.info(f"🔥 Warm-up finished: {len(ready)}/{len(results)} backends ready")


def create_app(runtime: Optional[ServiceRuntime] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        runtime: Pre-built runtime (tests). When omitted the lifespan builds one
            from environment configuration and owns its shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("🚀 Starting Intent Classification service...")
        setup_metrics(SERVICE_NAME, SERVICE_VERSION)

        owned = runtime is None
        active = runtime if runtime is not None else await _start_runtime()
        app.state.runtime = active
        app.state.warmup_task = None

        if active.config.warmup_enabled:
            app.state.warmup_task = asyncio.create_task(_warm_up(active))

        logger.info("✅ Intent Classification service ready")

        yield

        logger.info("🛑 Shutting down Intent Classification service...")
        task = app.state.warmup_task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        if owned:
            await active.aclose()
            await close_redis_client(active.redis_client)

        logger.info("Service stopped")

    app = FastAPI(
        title="Intent Classification Service",
        description="Cascading intent classification: cache → nearest neighbor → completion → rules",
        version=SERVICE_VERSION,
        lifespan=lifespan,
    )
    app.state.runtime = runtime
    _register_routes(app)
    return app


def _get_runtime(request: Request) -> ServiceRuntime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Intent classification service unavailable")
    return runtime


# ============================================================================
# API Endpoints
# ============================================================================

def _register_routes(app: FastAPI) -> None:

    @app.post("/api/v1/classify", response_model=ClassifyResponse, response_model_by_alias=True)
    async def classify_intent_endpoint(body: ClassifyRequest, request: Request):
        """
        Classify user intent.

        Runs the classification cascade and returns the intent, its
        confidence, extracted slots and whether the user should confirm.
        """
        runtime = _get_runtime(request)
        try:
            result = await runtime.classifier.classify_intent(
                body.text, context=body.context, expected_intent=body.expected_intent
            )
        except InvalidInputError as e:
            raise HTTPException(status_code=422, detail=str(e))
        except Exception as e:
            logger.error(f"❌ Classification error: {e}", exc_info=True)
            raise HTTPException(status_code=503, detail="Intent classification service unavailable")

        return ClassifyResponse(
            success=True,
            intent=result.intent,
            confidence=result.confidence,
            slots=result.slots,
            llm_fallback=result.llm_fallback,
            needs_confirmation=result.needs_confirmation,
            source=result.source.value,
            metadata=result.metadata,
        )

    @app.post("/api/v1/corrections", response_model=CorrectionResponse, response_model_by_alias=True)
    async def submit_correction(body: CorrectionRequest, request: Request):
        """Apply a user correction; the next identical utterance is classified as corrected."""
        runtime = _get_runtime(request)
        try:
            outcome = await runtime.classifier.apply_correction(
                body.original_text,
                body.predicted_intent,
                body.corrected_intent,
                predicted_slots=body.predicted_slots,
                corrected_slots=body.corrected_slots,
                user_id=body.user_id,
                predicted_confidence=body.predicted_confidence,
            )
        except ValueError as e:
            logger.warning(f"⚠️ Correction rejected: {e}")
            return JSONResponse(status_code=422, content={"success": False, "message": str(e)})
        except Exception as e:
            logger.error(f"❌ Correction failed: {e}", exc_info=True)
            return JSONResponse(status_code=500, content={"success": False, "message": str(e)})

        message = "Correction applied"
        if outcome.error:
            message = f"Correction applied; persistence failed: {outcome.error}"
        return CorrectionResponse(
            success=True,
            message=message,
            persisted=outcome.persisted,
            correction_type=outcome.record.correction_type,
        )

    @app.get("/api/v1/stats")
    async def get_stats(request: Request, hours: float = Query(24.0, gt=0)) -> Dict[str, Any]:
        """Accuracy metrics from the persistence log plus live performance statistics."""
        runtime = _get_runtime(request)
        return {
            "accuracy": await runtime.store.get_accuracy_metrics(hours),
            "recent_failures": await runtime.store.get_recent_failures(),
            "index": {
                "size": runtime.index.size,
                "per_intent": runtime.index.intent_counts(),
            },
            "performance": runtime.classifier.get_performance_stats(),
            "backends": runtime.router.get_backend_stats(),
        }

    @app.get("/health", response_model=HealthResponse)
    async def health_check(request: Request):
        """
        Health check endpoint.

        healthy: Redis reachable and every registered backend healthy
        degraded: anything less; classification still works through the
        nearest-neighbor index and rule-based fallback
        """
        runtime = _get_runtime(request)
        redis_health = await check_redis_health(runtime.redis_client)
        backend_health = check_backends_health(runtime.router)

        overall = "healthy"
        if not (redis_health.is_healthy() and backend_health.is_healthy()):
            overall = "degraded"

        return HealthResponse(
            status=overall,
            redis=redis_health.to_dict(),
            backends=backend_health.to_dict(),
            index_size=runtime.index.size,
            healthy_backends=runtime.router.healthy_backends(),
        )

    @app.get("/metrics")
    async def metrics():
        """Prometheus metrics exposition"""
        content, content_type = get_metrics_response()
        return Response(content=content, media_type=content_type)

    @app.post("/admin/clear_cache", response_model=ClearCacheResponse)
    async def clear_cache(request: Request):
        """Clear the classification cache and the completion response cache."""
        runtime = _get_runtime(request)
        classification_cleared = runtime.classifier.clear_cache()
        completion_cleared = runtime.router.clear_cache()
        logger.info(
            f"🧹 Cache cleared: {classification_cleared} classifications, "
            f"{completion_cleared} completions"
        )
        return ClearCacheResponse(
            status="cleared",
            classification_entries_cleared=classification_cleared,
            completion_entries_cleared=completion_cleared,
        )

    @app.get("/")
    async def root():
        """Service information endpoint"""
        return {
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "architecture": "Cascade (Cache → Nearest Neighbor → Completion → Rules)",
            "status": "operational",
            "endpoints": {
                "classify": "POST /api/v1/classify",
                "corrections": "POST /api/v1/corrections",
                "stats": "GET /api/v1/stats",
                "health": "GET /health",
                "metrics": "GET /metrics",
                "clear_cache": "POST /admin/clear_cache",
            },
        }


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

app = create_app()


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", "8002"))

    uvicorn.run(
        "intent.app:app",
        host="0.0.0.0",
        port=port,
        workers=1,
        log_level="info"
    )
