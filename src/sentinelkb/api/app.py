"""FastAPI application exposing sentinel-kb services."""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from uuid import uuid4

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from sentinelkb.api.schemas import (
    CaptureAcceptedResponse,
    CaptureCreateRequest,
    CaptureModel,
    CapturePageResponse,
    InsightModel,
    SearchHit,
    SearchResponse,
    SemanticSearchRequest,
    TagSearchRequest,
)
from sentinelkb.config import Settings, get_settings
from sentinelkb.errors import CaptureNotFoundError, CaptureStateError, QueueClosedError, QueueFullError
from sentinelkb.metrics.observability import bind_correlation_id, clear_correlation_id, configure_logging, get_logger
from sentinelkb.models import CaptureRequest
from sentinelkb.queue.memory import WorkQueue
from sentinelkb.queue.worker import queue_health
from sentinelkb.runtime import Runtime, build_runtime
from sentinelkb.services.capture import CaptureService
from sentinelkb.services.search import SearchService


@dataclass(frozen=True)
class AppDependencies:
    capture_service: CaptureService
    search_service: SearchService
    queue: WorkQueue
    runtime: Runtime | None = None

    @classmethod
    def from_runtime(cls, runtime: Runtime) -> "AppDependencies":
        return cls(
            capture_service=runtime.capture_service,
            search_service=runtime.search_service,
            queue=runtime.queue,
            runtime=runtime,
        )


def _build_dependencies(settings: Settings) -> AppDependencies:
    return AppDependencies.from_runtime(build_runtime(settings))


def create_app(*, settings: Settings | None = None, dependencies: AppDependencies | None = None) -> FastAPI:
    settings = settings or get_settings()
    deps = dependencies or _build_dependencies(settings)

    configure_logging()
    logger = get_logger("api")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if deps.runtime is not None:
            deps.runtime.start()
        try:
            yield
        finally:
            if deps.runtime is not None:
                abandoned = deps.runtime.stop()
                if abandoned:
                    logger.warning("shutdown.abandoned", count=len(abandoned))

    app = FastAPI(title="Sentinel KB API", version="0.1.0", lifespan=lifespan)
    app.state.dependencies = deps

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):  # type: ignore[override]
        correlation_id = request.headers.get("X-Request-ID", uuid4().hex)
        request.state.correlation_id = correlation_id
        bind_correlation_id(correlation_id)
        try:
            response = await call_next(request)
        finally:
            clear_correlation_id()
        response.headers["X-Correlation-ID"] = correlation_id
        return response

    def require_api_key(request: Request) -> None:
        expected = settings.api_key
        if not expected:
            return
        provided = request.headers.get("X-API-Key")
        if provided != expected:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")

    def _error(request: Request, status_code: int, detail: str) -> JSONResponse:
        correlation_id = getattr(request.state, "correlation_id", uuid4().hex)
        return JSONResponse(status_code=status_code, content={"detail": detail, "correlation_id": correlation_id})

    @app.exception_handler(CaptureNotFoundError)
    async def handle_not_found(request: Request, exc: CaptureNotFoundError) -> JSONResponse:
        return _error(request, status.HTTP_404_NOT_FOUND, str(exc))

    @app.exception_handler(CaptureStateError)
    async def handle_state_error(request: Request, exc: CaptureStateError) -> JSONResponse:
        return _error(request, status.HTTP_409_CONFLICT, str(exc))

    @app.exception_handler(QueueClosedError)
    @app.exception_handler(QueueFullError)
    async def handle_queue_unavailable(request: Request, exc: Exception) -> JSONResponse:
        logger.error("queue.unavailable", detail=str(exc))
        return _error(request, status.HTTP_503_SERVICE_UNAVAILABLE, str(exc))

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        correlation_id = getattr(request.state, "correlation_id", uuid4().hex)
        logger.error("unhandled.error", correlation_id=correlation_id, detail=str(exc))
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Internal Server Error", "correlation_id": correlation_id},
        )

    def get_dependencies(request: Request) -> AppDependencies:
        return request.app.state.dependencies

    def get_capture_service(dep: AppDependencies = Depends(get_dependencies)) -> CaptureService:
        return dep.capture_service

    def get_search_service(dep: AppDependencies = Depends(get_dependencies)) -> SearchService:
        return dep.search_service

    @app.post("/api/v1/capture", response_model=CaptureAcceptedResponse, status_code=status.HTTP_202_ACCEPTED)
    def create_capture(
        payload: CaptureCreateRequest,
        service: CaptureService = Depends(get_capture_service),
        _auth: None = Depends(require_api_key),
    ) -> CaptureAcceptedResponse:
        capture = service.submit_capture(
            CaptureRequest(
                source_url=str(payload.source_url),
                content_type=payload.content_type,
                raw_content=payload.raw_content,
                tags=tuple(payload.tags),
                metadata=dict(payload.metadata),
            )
        )
        return CaptureAcceptedResponse(
            id=capture.capture_id,
            status=capture.status,
            message="Capture accepted for processing",
        )

    @app.get("/api/v1/capture", response_model=CapturePageResponse)
    def list_captures(
        page: int = Query(default=1, ge=1),
        page_size: int = Query(default=20, ge=1, le=100),
        service: CaptureService = Depends(get_capture_service),
        _auth: None = Depends(require_api_key),
    ) -> CapturePageResponse:
        result = service.list_captures(page=page, page_size=page_size)
        return CapturePageResponse(
            items=[CaptureModel.from_capture(capture) for capture in result.items],
            total_count=result.total_count,
            page=result.page,
            page_size=result.page_size,
        )

    @app.get("/api/v1/capture/{capture_id}", response_model=CaptureModel)
    def get_capture(
        capture_id: str,
        service: CaptureService = Depends(get_capture_service),
        _auth: None = Depends(require_api_key),
    ) -> CaptureModel:
        capture = service.get_capture(capture_id)
        if capture is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Capture {capture_id} not found")
        return CaptureModel.from_capture(capture)

    @app.delete("/api/v1/capture/{capture_id}", status_code=status.HTTP_204_NO_CONTENT)
    def delete_capture(
        capture_id: str,
        service: CaptureService = Depends(get_capture_service),
        _auth: None = Depends(require_api_key),
    ) -> Response:
        if not service.delete_capture(capture_id):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Capture {capture_id} not found")
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.post(
        "/api/v1/capture/{capture_id}/reprocess",
        response_model=CaptureAcceptedResponse,
        status_code=status.HTTP_202_ACCEPTED,
    )
    def reprocess_capture(
        capture_id: str,
        service: CaptureService = Depends(get_capture_service),
        _auth: None = Depends(require_api_key),
    ) -> CaptureAcceptedResponse:
        capture = service.reprocess_capture(capture_id)
        return CaptureAcceptedResponse(
            id=capture.capture_id,
            status=capture.status,
            message="Capture queued for reprocessing",
        )

    @app.post("/api/v1/search/semantic", response_model=SearchResponse)
    def semantic_search(
        payload: SemanticSearchRequest,
        service: SearchService = Depends(get_search_service),
        _auth: None = Depends(require_api_key),
    ) -> SearchResponse:
        top_k = payload.top_k if payload.top_k is not None else settings.search_default_top_k
        threshold = payload.threshold if payload.threshold is not None else settings.search_default_threshold
        results = service.semantic_search(payload.query, top_k=top_k, threshold=threshold)
        hits = [
            SearchHit(insight=InsightModel.from_insight(result.insight), similarity=result.similarity)
            for result in results
        ]
        return SearchResponse(results=hits, count=len(hits))

    @app.post("/api/v1/search/tags", response_model=SearchResponse)
    def tag_search(
        payload: TagSearchRequest,
        service: SearchService = Depends(get_search_service),
        _auth: None = Depends(require_api_key),
    ) -> SearchResponse:
        results = service.search_by_tags(payload.tags, match_all=payload.match_all, newest_first=True)
        hits = [SearchHit(insight=InsightModel.from_insight(result.insight)) for result in results]
        return SearchResponse(results=hits, count=len(hits))

    @app.get("/metrics")
    async def metrics() -> Response:
        payload = generate_latest()
        return Response(content=payload, media_type=CONTENT_TYPE_LATEST)

    @app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        from sentinelkb import __version__

        return {"status": "ok", "version": __version__, "environment": settings.environment}

    @app.head("/healthz")
    async def healthcheck_head() -> Response:
        return Response(status_code=status.HTTP_200_OK)

    @app.get("/livez")
    async def liveness() -> dict[str, str]:
        return {"status": "alive"}

    @app.get("/healthz/ready")
    def readiness(dep: AppDependencies = Depends(get_dependencies)) -> JSONResponse:
        health = queue_health(dep.queue, settings.health_max_queue_length)
        body = {
            "status": "ready" if health.healthy else "degraded",
            "queue_depth": health.depth,
            "max_queue_length": health.max_length,
        }
        code = status.HTTP_200_OK if health.healthy else status.HTTP_503_SERVICE_UNAVAILABLE
        return JSONResponse(status_code=code, content=body)

    return app


app = create_app()
