"""Entry point for the Strata Files orchestrator service."""

import time
import uuid

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from common.logging_config import setup_logging
from orchestrator.config import ORCHESTRATOR_HOST, ORCHESTRATOR_PORT
from orchestrator.database import init_database
from orchestrator.exceptions import (
    BackendUnavailableError,
    InvalidTokenError,
    NotFoundError,
    RateLimitError,
    RetrievalFailedError,
    StrataError,
    TransformError,
    UnauthorizedAccessError,
    UploadFailedError,
    ValidationError,
)
from orchestrator.routes.backend_routes import router as backend_router
from orchestrator.routes.file_routes import router as file_router
from orchestrator.runtime import StorageRuntime
from orchestrator.service_locator import get_runtime, set_runtime

logger = setup_logging('orchestrator')

app = FastAPI(
    title="Strata Files Orchestrator",
    description="Multi-backend file storage orchestration service",
    version="1.0.0"
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """
    Middleware to log all HTTP requests and responses.
    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id

    start_time = time.time()

    logger.info(
        f"Request started: {request.method} {request.url.path} [request_id={request_id}]"
    )

    response = await call_next(request)

    duration = time.time() - start_time
    user_id = getattr(request.state, 'user_id', None)

    logger.info(
        f"Request completed: {request.method} {request.url.path} "
        f"status={response.status_code} duration={duration:.3f}s "
        f"[request_id={request_id}] [user_id={user_id or 'anonymous'}]"
    )

    response.headers["X-Request-ID"] = request_id

    return response


@app.on_event("startup")
async def startup_event():
    """
    Initialize database, assemble the storage runtime and start background tasks.
    """
    logger.info("Orchestrator service starting up...")

    init_database()
    logger.info("Database initialized")

    runtime = StorageRuntime()
    set_runtime(runtime)
    await runtime.start()
    logger.info("Background tasks started")


@app.on_event("shutdown")
async def shutdown_event():
    """
    Stop background tasks on application shutdown.
    """
    logger.info("Orchestrator service shutting down...")
    try:
        runtime = get_runtime()
    except RuntimeError:
        return
    await runtime.stop()
    set_runtime(None)
    logger.info("Background tasks stopped")


def _error_body(exc: StrataError) -> dict:
    return {"detail": str(exc), "code": exc.code}


def _request_id(request: Request) -> str:
    return getattr(request.state, 'request_id', 'unknown')


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    logger.warning(
        f"Validation error: {exc} [request_id={_request_id(request)}] path={request.url.path}"
    )
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={**_error_body(exc), "reasons": exc.reasons}
    )


@app.exception_handler(TransformError)
async def transform_error_handler(request: Request, exc: TransformError):
    logger.error(
        f"Transform error: {exc} [request_id={_request_id(request)}] path={request.url.path}"
    )
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=_error_body(exc)
    )


@app.exception_handler(BackendUnavailableError)
async def backend_unavailable_handler(request: Request, exc: BackendUnavailableError):
    logger.error(
        f"Backend unavailable error: {exc} [request_id={_request_id(request)}] path={request.url.path}"
    )
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content=_error_body(exc)
    )


@app.exception_handler(UploadFailedError)
async def upload_failed_handler(request: Request, exc: UploadFailedError):
    logger.error(
        f"Upload failed error: {exc} [request_id={_request_id(request)}] path={request.url.path}"
    )
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content={**_error_body(exc), "causes": exc.causes}
    )


@app.exception_handler(RetrievalFailedError)
async def retrieval_failed_handler(request: Request, exc: RetrievalFailedError):
    logger.error(
        f"Retrieval failed error: {exc} [request_id={_request_id(request)}] path={request.url.path}"
    )
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content={**_error_body(exc), "causes": exc.causes}
    )


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    logger.warning(
        f"File not found error: {exc} [request_id={_request_id(request)}] path={request.url.path}"
    )
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content=_error_body(exc)
    )


@app.exception_handler(RateLimitError)
async def rate_limit_handler(request: Request, exc: RateLimitError):
    logger.warning(
        f"Rate limit error: {exc} [request_id={_request_id(request)}] path={request.url.path}"
    )
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content=_error_body(exc),
        headers={"Retry-After": str(exc.retry_after)}
    )


@app.exception_handler(UnauthorizedAccessError)
async def unauthorized_access_handler(request: Request, exc: UnauthorizedAccessError):
    user_id = getattr(request.state, 'user_id', 'unknown')
    logger.warning(
        f"Unauthorized access error: {exc} [request_id={_request_id(request)}] [user_id={user_id}] path={request.url.path}"
    )
    return JSONResponse(
        status_code=status.HTTP_403_FORBIDDEN,
        content=_error_body(exc)
    )


@app.exception_handler(InvalidTokenError)
async def invalid_token_handler(request: Request, exc: InvalidTokenError):
    logger.warning(
        f"Invalid token error: {exc} [request_id={_request_id(request)}] path={request.url.path}"
    )
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        content=_error_body(exc),
        headers={"WWW-Authenticate": "Bearer"}
    )


@app.exception_handler(StrataError)
async def strata_error_handler(request: Request, exc: StrataError):
    logger.error(
        f"Unhandled storage error: {exc} [request_id={_request_id(request)}] path={request.url.path}",
        exc_info=True
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error", "code": exc.code}
    )


app.include_router(file_router)
app.include_router(backend_router)


@app.get("/")
async def root():
    """
    Root endpoint for health check.
    """
    return {"message": "Strata Files Orchestrator API", "status": "running"}


@app.get("/health")
async def health_check():
    """
    Health check endpoint for Docker healthcheck.
    Returns 200 if service is alive.
    """
    return {"status": "healthy", "service": "orchestrator"}


@app.get("/ready")
async def ready_check():
    """
    Readiness check endpoint.
    Verifies database connectivity and that at least one backend is healthy.
    """
    from orchestrator.database import get_db_connection

    try:
        with get_db_connection() as conn:
            conn.execute("SELECT 1")
        db_status = "ok"
    except Exception as e:
        db_status = f"error: {str(e)}"

    try:
        healthy = get_runtime().health_table.healthy_backends()
        backend_status = "ok" if healthy else "error: no healthy backend"
    except RuntimeError as e:
        healthy = []
        backend_status = f"error: {str(e)}"

    ready = db_status == "ok" and backend_status == "ok"
    status_code = status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE

    return JSONResponse(
        status_code=status_code,
        content={
            "ready": ready,
            "database": db_status,
            "backends": backend_status,
            "healthy_backends": list(healthy)
        }
    )


def main() -> None:
    """
    Start the FastAPI server with uvicorn.
    """
    uvicorn.run(
        "orchestrator.main:app",
        host=ORCHESTRATOR_HOST,
        port=ORCHESTRATOR_PORT
    )


if __name__ == "__main__":
    main()
