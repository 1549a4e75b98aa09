from fastapi import FastAPI, Depends, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import HTTPException, RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import structlog

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from sourcing.config import settings
from sourcing.database import init_db, close_db, get_db
from sourcing.exceptions import SourcingError
from sourcing.logging_config import setup_logging
from sourcing.middleware.correlation import CorrelationIdMiddleware
from sourcing.services.chat_service import close_http_client

# Import models so they are registered with Base.metadata
import sourcing.models  # noqa: F401

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    logger.info("starting_sourcing", env=settings.ENVIRONMENT)
    await init_db()
    yield
    await close_http_client()
    await close_db()


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# Global exception handlers: normalize all errors to structured format:
# {"error": {"code": "...", "message": "..."}}
# ---------------------------------------------------------------------------

@app.exception_handler(SourcingError)
async def sourcing_error_handler(request: Request, exc: SourcingError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("sourcing_error", code=exc.code, error=exc.message, path=request.url.path)
    else:
        logger.info("sourcing_error", code=exc.code, error=exc.message, path=request.url.path)
    return JSONResponse(status_code=exc.status_code, content=exc.to_detail())


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail
    if isinstance(detail, str):
        detail = {"error": {"code": "HTTP_ERROR", "message": detail}}
    elif isinstance(detail, dict) and "error" not in detail:
        detail = {"error": detail}
    return JSONResponse(status_code=exc.status_code, content=detail, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={
            "error": {
                "code": "VALIDATION_ERROR",
                "message": "Request validation failed",
                "details": jsonable_encoder(exc.errors()),
            }
        },
    )


app.add_middleware(CorrelationIdMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_origin_regex=settings.CORS_ORIGIN_REGEX,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Requested-With", "X-Request-ID"],
)


@app.get("/health", tags=["System"])
async def health(response: Response, db: AsyncSession = Depends(get_db)):
    health_status = {"status": "healthy", "version": settings.APP_VERSION, "checks": {}}

    try:
        await db.execute(text("SELECT 1"))
        health_status["checks"]["db"] = "ok"
    except Exception as e:
        logger.error("health_check_db_failed", error=str(e))
        health_status["checks"]["db"] = "error"
        health_status["status"] = "unhealthy"

    if health_status["status"] == "unhealthy":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return health_status


# --- Routers ---
from sourcing.routes.solicitations import router as solicitations_router  # noqa: E402
from sourcing.routes.quotes import router as quotes_router  # noqa: E402
from sourcing.routes.fulfillment import router as fulfillment_router  # noqa: E402
from sourcing.routes.reports import router as reports_router  # noqa: E402
from sourcing.jobs.scheduled import router as jobs_router  # noqa: E402

app.include_router(solicitations_router, prefix="/api/v1/solicitations", tags=["Solicitations"])
app.include_router(quotes_router, prefix="/api/v1/solicitations", tags=["Quotes"])
app.include_router(fulfillment_router, prefix="/api/v1/fulfillment", tags=["Fulfillment"])
app.include_router(reports_router, prefix="/api/v1/reports", tags=["Reports"])
app.include_router(jobs_router, prefix="/internal/jobs", tags=["Internal Jobs"])
