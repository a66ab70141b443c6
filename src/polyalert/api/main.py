"""FastAPI request layer - market search, alert creation/listing and live trigger channel."""

from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path

import httpx
import structlog
from fastapi import FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from polyalert import __version__
from polyalert.api.schemas import AlertCreateRequest, ErrorResponse, HealthResponse
from polyalert.config import get_settings
from polyalert.errors import AlertError, DuplicateAlert, InvalidAlert, StoreFailure, UnknownMarket
from polyalert.models import Alert, MarketDetail, MarketSummary
from polyalert.service import Service

log = structlog.get_logger(__name__)

# Set by run_api() so the default app's lifespan picks the right config.
_config_profile: str | None = None
_config_dir: Path | None = None

_STATUS_BY_ERROR: dict[type[AlertError], int] = {
    InvalidAlert: 400,
    UnknownMarket: 400,
    DuplicateAlert: 409,
    StoreFailure: 503,
}


def _error_json(code: str, message: str, status_code: int = 404) -> JSONResponse:
    """Return consistent error JSON: { detail, code }."""
    return JSONResponse(
        status_code=status_code,
        content={"detail": message, "code": code},
    )


def _service(request: Request) -> Service:
    return request.app.state.service


def create_app(service: Service | None = None, manage_lifecycle: bool = True) -> FastAPI:
    """Build the app. With manage_lifecycle the service's loops run for the app's lifetime."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        svc = service or Service(get_settings(_config_profile, _config_dir))
        app.state.service = svc
        if manage_lifecycle:
            await svc.start()
        try:
            yield
        finally:
            if manage_lifecycle:
                await svc.stop()

    app = FastAPI(title="polyalert API", version=__version__, lifespan=lifespan)
    app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])
    if service is not None:
        app.state.service = service

    @app.exception_handler(AlertError)
    async def alert_error_handler(request: Request, exc: AlertError) -> JSONResponse:
        status = _STATUS_BY_ERROR.get(type(exc), 500)
        if status >= 500:
            log.error("request_failed", path=request.url.path, code=exc.code, error=exc.message)
        return _error_json(exc.code, exc.message, status)

    @app.exception_handler(RequestValidationError)
    async def request_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        """A malformed alert body is an invalid alert, not a 422."""
        if request.method == "POST" and request.url.path == "/alerts":
            return _error_json(InvalidAlert.code, "Request body must be a JSON object describing the alert.", 400)
        return await request_validation_exception_handler(request, exc)

    @app.get("/health", response_model=HealthResponse)
    async def health(request: Request) -> HealthResponse:
        svc = _service(request)
        return HealthResponse(
            markets=svc.cache.size,
            market_cache_refreshed_at=svc.cache.last_refreshed,
            active_alerts=len(svc.engine.active_alerts()),
        )

    @app.get("/markets", response_model=list[MarketSummary])
    async def markets_search(
        request: Request,
        q: str | None = Query(None, description="Case-insensitive substring of the question"),
        limit: int | None = Query(None, ge=1, le=500),
    ) -> list[MarketSummary]:
        """Active markets from the cache, truncated to the display limit."""
        svc = _service(request)
        found = svc.cache.search(q)
        return list(found[: limit or svc.settings.search_limit])

    @app.get(
        "/markets/{market_id}",
        response_model=MarketDetail,
        responses={502: {"model": ErrorResponse}},
    )
    async def market_detail(request: Request, market_id: str):
        """Live outcomes and prices for one market."""
        svc = _service(request)
        try:
            return await svc.source.get_market_detail(market_id)
        except httpx.HTTPStatusError as e:
            return _error_json("gamma_error", f"Gamma /markets/{market_id} -> {e.response.status_code}", 502)
        except (httpx.HTTPError, ValueError) as e:
            log.warning("market_detail_failed", market_id=market_id, error=str(e))
            return _error_json("gamma_error", f"Gamma /markets/{market_id} unavailable", 502)

    @app.post(
        "/alerts",
        status_code=201,
        response_model=Alert,
        responses={400: {"model": ErrorResponse}, 409: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    )
    async def alerts_create(request: Request, body: AlertCreateRequest) -> Alert:
        """Create an active alert. 409 when the same alert is already active."""
        svc = _service(request)
        return await svc.engine.create_from_payload(body.model_dump(by_alias=True))

    @app.get("/alerts", response_model=list[Alert])
    async def alerts_active(request: Request) -> list[Alert]:
        """Active alerts that are still valid and whose market is still listed."""
        return _service(request).engine.valid_active_alerts()

    @app.get("/alerts/completed", response_model=list[Alert], responses={503: {"model": ErrorResponse}})
    async def alerts_completed(request: Request) -> list[Alert]:
        return _service(request).engine.completed_alerts()

    @app.websocket("/ws/{recipient}")
    async def trigger_channel(websocket: WebSocket, recipient: str) -> None:
        """Live channel for one recipient id. Triggers are pushed while connected."""
        hub = websocket.app.state.service.hub
        await websocket.accept()
        hub.register(recipient, websocket)
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            hub.unregister(recipient, websocket)

    return app


app = create_app()


def run_api(
    host: str = "127.0.0.1",
    port: int = 8000,
    profile: str | None = None,
    config_dir: Path | None = None,
) -> None:
    global _config_profile, _config_dir
    _config_profile = profile
    _config_dir = config_dir
    import uvicorn

    uvicorn.run("polyalert.api.main:app", host=host, port=port, reload=False)
