"""
askdocs gateway
FastAPI application relaying the document chat backend as rendered spans
"""
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import structlog
from prometheus_client import Counter, Histogram, Gauge, generate_latest
from starlette.responses import Response

from askdocs.routers import chat
from askdocs.services.chat_client import ChatClient
from askdocs.services.config import Settings
from askdocs.services.files import StorageFileResolver
from askdocs.services.history import InMemoryHistoryStore
from askdocs.utils.errors import AskDocsError, MessageFinalizedError, NetworkError
from askdocs.utils.logging import setup_logging

# Load settings
settings = Settings()

# Configure structured logging
setup_logging(level=settings.LOG_LEVEL, json_logs=settings.LOG_JSON)
logger = structlog.get_logger()

# Metrics
request_counter = Counter(
    'askdocs_requests_total',
    'Total number of requests',
    ['method', 'endpoint', 'status']
)
request_duration = Histogram(
    'askdocs_request_duration_seconds',
    'Request duration',
    ['method', 'endpoint']
)
active_connections = Gauge(
    'askdocs_active_connections',
    'Number of active connections'
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle"""
    # Startup
    logger.info("Starting askdocs gateway",
                version=settings.API_VERSION,
                environment=settings.ENVIRONMENT,
                backend=settings.BACKEND_URL)

    history = InMemoryHistoryStore()
    chat_client = ChatClient(settings, history=history)

    # Set services in app state
    app.state.settings = settings
    app.state.history = history
    app.state.chat_client = chat_client
    app.state.file_resolver = StorageFileResolver(settings.STORAGE_URL, settings.STORAGE_BUCKET)

    logger.info("API initialization complete")

    yield

    # Shutdown
    logger.info("Shutting down askdocs gateway")
    await app.state.chat_client.close()
    logger.info("Shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="askdocs gateway",
    description="Streaming document Q&A with inline citations",
    version=settings.API_VERSION,
    lifespan=lifespan,
    docs_url="/docs" if settings.ENVIRONMENT == "development" else None,
    redoc_url="/redoc" if settings.ENVIRONMENT == "development" else None,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)


def _endpoint(request: Request) -> str:
    """Route template used as the metrics label"""
    route = request.scope.get("route")
    return getattr(route, "path_format", None) or "unmatched"


@app.middleware("http")
async def track_requests(request: Request, call_next):
    """Bind the request id for logs and count the request by route"""
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    structlog.contextvars.bind_contextvars(request_id=request_id)
    active_connections.inc()
    start_time = time.time()
    status = 500

    try:
        response = await call_next(request)
        status = response.status_code
        response.headers["X-Request-ID"] = request_id
        return response

    finally:
        duration = time.time() - start_time
        endpoint = _endpoint(request)
        request_counter.labels(method=request.method, endpoint=endpoint, status=status).inc()
        request_duration.labels(method=request.method, endpoint=endpoint).observe(duration)
        # Chat streams keep running after this point; only the headers are timed
        logger.info(
            "Request completed",
            method=request.method,
            endpoint=endpoint,
            status_code=status,
            duration=duration
        )
        active_connections.dec()
        structlog.contextvars.unbind_contextvars("request_id")


app.include_router(chat.router, prefix="/api/v1")


@app.get("/health")
async def health_check(req: Request):
    """Gateway status with the backend it relays and the rooms it holds"""
    rooms = await req.app.state.history.list_rooms()
    return {
        "status": "healthy",
        "version": settings.API_VERSION,
        "backend": settings.get_chat_url(),
        "rooms": len(rooms)
    }


@app.get("/health/live")
async def liveness_check():
    return {"status": "alive"}


@app.get("/metrics")
async def metrics():
    if not settings.ENABLE_METRICS:
        raise HTTPException(status_code=404, detail="Metrics disabled")
    return Response(content=generate_latest(), media_type="text/plain")


@app.get("/")
async def root():
    return {
        "name": "askdocs gateway",
        "version": settings.API_VERSION,
        "environment": settings.ENVIRONMENT,
        "chat": "/api/v1/chat",
        "ask": "/api/v1/chat/ask",
        "render": "/api/v1/render",
        "docs": "/docs" if settings.ENVIRONMENT == "development" else None
    }


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    logger.warning("HTTP exception", status_code=exc.status_code, detail=exc.detail)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail, "status_code": exc.status_code}
    )


@app.exception_handler(AskDocsError)
async def askdocs_error_handler(request: Request, exc: AskDocsError):
    """
    Pipeline errors that reach a route. Backend failures show the fixed
    notice; the backend's own text only goes to the log.
    """
    if isinstance(exc, NetworkError):
        status_code, detail = 502, settings.ERROR_MESSAGE
    elif isinstance(exc, MessageFinalizedError):
        status_code, detail = 409, str(exc)
    else:
        status_code, detail = 400, str(exc)

    logger.error("Chat pipeline error", error=str(exc), error_type=type(exc).__name__)
    return JSONResponse(
        status_code=status_code,
        content={"error": detail, "status_code": status_code}
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error("Unhandled exception", error=str(exc), path=request.url.path, exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "status_code": 500}
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "askdocs.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.ENVIRONMENT == "development",
        log_config=None,  # Use structlog instead
        access_log=False,  # Handled by middleware
    )
