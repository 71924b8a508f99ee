from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from contextlib import asynccontextmanager
import asyncio
import logging

from core.config import settings
from core.errors import AppError, ErrorCode
from auth.auth_routes import router as auth_router
from schemas.auth import ApiResponse, HealthData, error_body, validation_details
from services.container import build_container, run_periodic_cleanup

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    container = getattr(app.state, "container", None)
    if container is None:
        container = build_container(settings)
        app.state.container = container
    await container.startup()
    config = container.settings

    if config.STORAGE_BACKEND.lower() == "memory" and config.ENVIRONMENT.lower() != "development":
        logger.warning("STORAGE_BACKEND=memory keeps state in this process only; run a single instance")

    cleanup_task = None
    if config.CLEANUP_INTERVAL_SECONDS > 0:
        cleanup_task = asyncio.create_task(
            run_periodic_cleanup(container.auth_service, config.CLEANUP_INTERVAL_SECONDS)
        )

    logger.info(f"{config.APP_NAME} started ({config.ENVIRONMENT})")
    yield

    # Shutdown
    if cleanup_task is not None:
        cleanup_task.cancel()
        try:
            await cleanup_task
        except asyncio.CancelledError:
            pass
    await container.shutdown()


app = FastAPI(
    title=settings.APP_NAME,
    description="Passwordless email OTP authentication with JWT access and refresh tokens",
    version=settings.APP_VERSION,
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error handlers
@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} -> {exc.code.value}: {exc.message}")
    else:
        logger.warning(f"{request.method} {request.url.path} -> {exc.code.value}: {exc.message}")

    headers = None
    if exc.retry_after is not None:
        headers = {"Retry-After": str(exc.retry_after)}
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(exc.code.value, exc.message, exc.details),
        headers=headers,
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    details = validation_details(exc.errors())
    fields = {detail["field"] for detail in details}

    code, message = ErrorCode.VALIDATION_ERROR, "Invalid request"
    if fields == {"email"}:
        code, message = ErrorCode.INVALID_EMAIL, "Please provide a valid email address"
    elif fields == {"code"}:
        code, message = ErrorCode.INVALID_OTP_CODE, "Please provide the code from your email"

    logger.warning(f"{request.method} {request.url.path} -> {code.value}")
    return JSONResponse(status_code=400, content=error_body(code.value, message, details))


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    code = ErrorCode.ENDPOINT_NOT_FOUND if exc.status_code == 404 else ErrorCode.INTERNAL_SERVER_ERROR
    if exc.status_code == 401:
        code = ErrorCode.UNAUTHORIZED
    elif 400 <= exc.status_code < 500 and exc.status_code != 404:
        code = ErrorCode.VALIDATION_ERROR
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(code.value, str(exc.detail)),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=500,
        content=error_body(ErrorCode.INTERNAL_SERVER_ERROR.value, "An unexpected error occurred, please try again"),
    )


# Include routers
app.include_router(auth_router, prefix="/auth", tags=["Authentication"])


@app.get("/")
async def root():
    return {"message": f"{settings.APP_NAME} is running!"}


@app.get("/health", response_model=ApiResponse[HealthData])
async def health_check():
    return ApiResponse(
        data=HealthData(status="healthy", environment=settings.ENVIRONMENT, version=settings.APP_VERSION)
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=True
    )
