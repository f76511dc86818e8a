import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

import sentry_sdk
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

from . import __version__
from .auth import JwtTokenVerifier
from .blobs import BlobStore, MemoryBlobStore, SqlBlobStore
from .config import Settings, settings as default_settings
from .database import make_engine
from .errors import ChatError, ServiceUnavailable
from .gateway import ChatGateway, build_quota, build_webhooks
from .middleware_request_id import RequestIDMiddleware, request_id_of
from .models import Base
from .quota import MessageQuota
from .routers import blobs as blobs_router
from .routers import conversations as conversations_router
from .routers import messages as messages_router
from .routers import presence as presence_router
from .routers import users as users_router
from .routers import ws as ws_router
from .sql_store import SqlStore
from .store import DocumentStore, MemoryStore


logger = logging.getLogger("chat.app")

REQ = Counter("http_requests_total", "HTTP requests", ["method", "path", "status"])
REQ_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10),
)


async def chat_error_handler(request: Request, exc: ChatError):
    request.state.error_code = exc.code
    if isinstance(exc, ServiceUnavailable):
        logger.warning(json.dumps({"event": "service_unavailable", "request_id": request_id_of(request), "path": request.url.path, "message": exc.message}))
    else:
        logger.info(json.dumps({"event": "chat_error", "request_id": request_id_of(request), "code": exc.code, "message": exc.message}))
    headers = None
    if "retry_after" in exc.details:
        headers = {"Retry-After": str(exc.details["retry_after"])}
    return JSONResponse(status_code=exc.http_status, content={"error": exc.to_dict()}, headers=headers)


async def request_validation_handler(request: Request, exc: RequestValidationError):
    details = {"fields": [".".join(str(p) for p in e.get("loc", ())) for e in exc.errors()]}
    return JSONResponse(status_code=400, content={"error": {"code": "validation_error", "message": "Invalid request", "details": details}})


def build_backends(cfg: Settings):
    if cfg.STORE_BACKEND.lower() == "memory":
        return None, MemoryStore(), MemoryBlobStore(cfg.BLOB_PUBLIC_BASE_URL)
    engine = make_engine(cfg.DB_URL)
    return engine, SqlStore(engine), SqlBlobStore(engine, cfg.BLOB_PUBLIC_BASE_URL)


def create_app(
    store: Optional[DocumentStore] = None,
    *,
    cfg: Optional[Settings] = None,
    verifier: Optional[JwtTokenVerifier] = None,
    blobs: Optional[BlobStore] = None,
    quota: Optional[MessageQuota] = None,
) -> FastAPI:
    cfg = cfg or default_settings
    if cfg.SENTRY_DSN:
        sentry_sdk.init(dsn=cfg.SENTRY_DSN, traces_sample_rate=0.0)

    engine = None
    if store is None:
        engine, store, default_blobs = build_backends(cfg)
        blobs = blobs or default_blobs
    gateway = ChatGateway(
        store,
        cfg=cfg,
        verifier=verifier,
        blobs=blobs,
        quota=quota if quota is not None else build_quota(cfg),
        webhooks=build_webhooks(cfg),
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if engine is not None and cfg.AUTO_CREATE_SCHEMA:
            await asyncio.to_thread(Base.metadata.create_all, engine)
        await gateway.start()
        logger.info(json.dumps({"event": "startup", "env": cfg.ENV, "store": type(store).__name__}))
        try:
            yield
        finally:
            await gateway.close()

    app = FastAPI(title="Chat Core API", version=__version__, lifespan=lifespan)
    app.state.gateway = gateway

    allowed_origins = cfg.ALLOWED_ORIGINS or ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestIDMiddleware)
    app.add_exception_handler(ChatError, chat_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    @app.middleware("http")
    async def _metrics_mw(request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start
        route = getattr(request.scope.get("route"), "path", None) or request.url.path
        REQ.labels(request.method, route, str(response.status_code)).inc()
        REQ_DURATION.labels(request.method, route).observe(duration)
        return response

    @app.get("/health")
    def health():
        return {"status": "ok", "env": cfg.ENV}

    @app.get("/metrics")
    def metrics():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(conversations_router.router)
    app.include_router(messages_router.router)
    app.include_router(users_router.router)
    app.include_router(presence_router.router)
    app.include_router(blobs_router.router)
    app.include_router(ws_router.router)
    return app


app = create_app()


def run() -> None:
    import uvicorn

    uvicorn.run("chatcore.main:app", host=default_settings.APP_HOST, port=default_settings.APP_PORT)
