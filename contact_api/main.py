"""Contact API FastAPI application."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from contact_api.api import api_router, debug_router
from contact_api.core.config import Settings
from contact_api.core.errors import ContactApiError, MalformedRequestBody, OriginNotAllowed, RateLimited
from contact_api.core.logging_config import setup_logging
from contact_api.services.delivery import DeliveryChain, build_delivery_chain
from contact_api.services.origin_policy import OriginPolicy
from contact_api.services.rate_limit import RateLimiter, get_client_ip
from contact_api.services.store import SubmissionStore, build_store
from contact_api.services.submission import SubmissionService

logger = logging.getLogger(__name__)

Middleware = Callable[[Request, Callable[[Request], Awaitable[Response]]], Awaitable[Response]]


def error_response(exc: ContactApiError) -> JSONResponse:
    headers = {}
    if isinstance(exc, RateLimited):
        headers["Retry-After"] = str(exc.retry_after)
    return JSONResponse(exc.to_body(), status_code=exc.status_code, headers=headers)


def server_error_response() -> JSONResponse:
    return JSONResponse({"ok": False, "error": "Server error"}, status_code=500)


def make_cors_middleware(policy: OriginPolicy) -> Middleware:
    async def cors_middleware(request: Request, call_next):
        decision = policy.evaluate(request.headers.get("origin"))
        if not decision.allowed:
            return error_response(OriginNotAllowed())
        if request.method == "OPTIONS":
            return Response(status_code=204, headers=decision.headers())
        try:
            response = await call_next(request)
        except Exception:
            # Errors escaping the routes would otherwise be rendered outside this middleware
            logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=True)
            response = server_error_response()
        response.headers.update(decision.headers())
        return response

    return cors_middleware


def make_rate_limit_middleware(limiter: RateLimiter, prefix: str) -> Middleware:
    async def rate_limit_middleware(request: Request, call_next):
        if request.url.path.startswith(f"{prefix}/"):
            client_ip = get_client_ip(request)
            if client_ip is None:
                logger.warning("No client address for %s %s; rate limit not applied", request.method, request.url.path)
                return await call_next(request)
            allowed, retry_after = limiter.hit(client_ip)
            if not allowed:
                logger.warning("Rate limit exceeded for %s", client_ip)
                return error_response(RateLimited(retry_after))
        return await call_next(request)

    return rate_limit_middleware


async def log_middleware(request: Request, call_next):
    response = await call_next(request)
    logger.info("%s %s -> %s", request.method, request.url.path, response.status_code)
    return response


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ContactApiError)
    async def _contact_api_error(request: Request, exc: ContactApiError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.error)
        return error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def _request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        return error_response(MalformedRequestBody())

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(
            {"ok": False, "error": str(exc.detail)},
            status_code=exc.status_code,
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def _unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
        return server_error_response()


def _warn_on_misconfiguration(settings: Settings) -> None:
    if not settings.admin_token:
        logger.warning("ADMIN_TOKEN is not set; listing submissions is disabled")
    if settings.is_production and settings.supabase_key and len(settings.supabase_key) < 20:
        logger.warning("SUPABASE_KEY is set but seems short; ensure you are using a server-side key")


def create_app(
    settings: Settings | None = None,
    *,
    store: SubmissionStore | None = None,
    chain: DeliveryChain | None = None,
    rate_limiter: RateLimiter | None = None,
) -> FastAPI:
    """Build the application with its clients constructed once and injected."""

    settings = settings or Settings()
    setup_logging(settings.log_level, settings.service_name)
    _warn_on_misconfiguration(settings)

    http_client = httpx.AsyncClient(timeout=settings.channel_timeout_seconds)
    store = store or build_store(settings)
    chain = chain or build_delivery_chain(settings, http_client)
    service = SubmissionService(store, chain, admin_token=settings.admin_token)
    policy = OriginPolicy.from_settings(settings)
    limiter = rate_limiter or RateLimiter(settings.rate_limit_max_requests, settings.rate_limit_window_seconds)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("Starting %s (%s mode)", settings.app_name, settings.environment)
        try:
            yield
        finally:
            await http_client.aclose()
            await store.close()

    app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
    app.state.settings = settings
    app.state.submission_service = service

    app.include_router(api_router, prefix=settings.api_prefix)
    if not settings.is_production or settings.debug_echo_enabled:
        app.include_router(debug_router, prefix=settings.api_prefix)

    @app.get("/", include_in_schema=False)
    async def root() -> dict[str, Any]:
        return {"ok": True, "message": "Contact API is running"}

    # Last registered runs first: CORS, then rate limiting, then request logging
    app.middleware("http")(log_middleware)
    app.middleware("http")(make_rate_limit_middleware(limiter, settings.api_prefix))
    app.middleware("http")(make_cors_middleware(policy))
    _register_exception_handlers(app)
    return app


app = create_app()


if __name__ == "__main__":  # pragma: no cover - manual launch helper
    import uvicorn

    uvicorn.run("contact_api.main:app", host="0.0.0.0", port=app.state.settings.port, reload=False)
