from fastapi import FastAPI, HTTPException, Request, Depends, Body
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import StrictInt
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from typing import List
import logging
import structlog
import time
from contextlib import asynccontextmanager

from config import Settings, get_settings
from exceptions import LedgerError
from locks import get_lock_registry
from models import AccountBalance, TransactionRecord, ErrorResponse, HealthResponse
from services import LedgerService, get_ledger_service
from repositories import get_balance_repository, get_history_repository


def configure_logging(settings: Settings) -> None:
    """Configure stdlib logging and structlog from settings."""
    logging.basicConfig(format="%(message)s", level=settings.log_level.upper())

    renderer = (
        structlog.processors.JSONRenderer()
        if settings.log_format == "json"
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


settings = get_settings()
configure_logging(settings)

logger = structlog.get_logger()

# Rate limiting
limiter = Limiter(key_func=get_remote_address)


def mutation_rate_limit() -> str:
    return f"{get_settings().rate_limit_per_minute}/minute"


# Application lifespan
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Point Ledger API")
    yield
    # Shutdown
    logger.info("Shutting down Point Ledger API")

# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="Per-account point balances and history with concurrency-safe charge and use",
    version=settings.app_version,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# Add rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=settings.allowed_methods,
    allow_headers=settings.allowed_headers,
)

# Request logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()

    logger.info(
        "Request started",
        method=request.method,
        url=str(request.url),
        client_ip=request.client.host if request.client else None
    )

    response = await call_next(request)

    process_time = time.time() - start_time
    logger.info(
        "Request completed",
        method=request.method,
        url=str(request.url),
        status_code=response.status_code,
        process_time=round(process_time, 4)
    )

    return response

# Dependency injection
def get_service(
    balance_repo=Depends(get_balance_repository),
    history_repo=Depends(get_history_repository),
    lock_registry=Depends(get_lock_registry)
) -> LedgerService:
    return get_ledger_service(balance_repo, history_repo, lock_registry)

# Health check endpoint
@app.get(
    "/health",
    response_model=HealthResponse,
    summary="Health Check",
    description="Check API health and get ledger statistics"
)
async def health_check(
    balance_repo=Depends(get_balance_repository),
    history_repo=Depends(get_history_repository)
):
    try:
        accounts_count = await balance_repo.get_accounts_count()
        records_count = await history_repo.get_records_count()

        return HealthResponse(
            status="healthy",
            accounts_count=accounts_count,
            transactions_processed=records_count
        )
    except Exception as e:
        logger.error("Health check failed", error=str(e))
        raise HTTPException(
            status_code=500,
            detail="Health check failed"
        )

@app.get(
    "/point/{account_id}",
    response_model=AccountBalance,
    summary="Get Balance",
    description="Current point balance of an account, 0 for unknown accounts"
)
async def get_point(account_id: int, service: LedgerService = Depends(get_service)):
    return await service.get_balance(account_id)

@app.get(
    "/point/{account_id}/histories",
    response_model=List[TransactionRecord],
    summary="Get History",
    description="Charge and use records of an account, oldest first"
)
async def get_histories(account_id: int, service: LedgerService = Depends(get_service)):
    return await service.get_history(account_id)

@app.patch(
    "/point/{account_id}/charge",
    response_model=AccountBalance,
    summary="Charge Points",
    responses={
        200: {"description": "Points charged"},
        400: {"model": ErrorResponse, "description": "Invalid amount"},
        422: {"description": "Body is not an integer"},
        429: {"description": "Rate limit exceeded"}
    }
)
@limiter.limit(mutation_rate_limit)
async def charge_points(
    request: Request,
    account_id: int,
    amount: StrictInt = Body(..., description="Points to charge"),
    service: LedgerService = Depends(get_service)
):
    logger.info("Charge request received", account_id=account_id, amount=amount)
    try:
        return await service.charge(account_id, amount)
    except LedgerError as e:
        logger.warning(
            "Charge request rejected",
            account_id=account_id,
            error_code=e.error_code,
            detail=e.detail
        )
        raise

@app.patch(
    "/point/{account_id}/use",
    response_model=AccountBalance,
    summary="Use Points",
    responses={
        200: {"description": "Points used"},
        400: {"model": ErrorResponse, "description": "Invalid amount or insufficient balance"},
        422: {"description": "Body is not an integer"},
        429: {"description": "Rate limit exceeded"}
    }
)
@limiter.limit(mutation_rate_limit)
async def use_points(
    request: Request,
    account_id: int,
    amount: StrictInt = Body(..., description="Points to use"),
    service: LedgerService = Depends(get_service)
):
    logger.info("Use request received", account_id=account_id, amount=amount)
    try:
        return await service.use(account_id, amount)
    except LedgerError as e:
        logger.warning(
            "Use request rejected",
            account_id=account_id,
            error_code=e.error_code,
            detail=e.detail
        )
        raise

# Exception handlers
@app.exception_handler(LedgerError)
async def ledger_exception_handler(request: Request, exc: LedgerError):
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            detail=exc.detail,
            error_code=exc.error_code
        ).model_dump(mode="json")
    )

@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            detail=exc.detail,
            error_code=f"HTTP_{exc.status_code}"
        ).model_dump(mode="json")
    )

@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        error=str(exc),
        url=str(request.url),
        method=request.method,
        exc_info=True
    )

    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            detail="Internal server error",
            error_code="INTERNAL_ERROR"
        ).model_dump(mode="json")
    )

# Root endpoint
@app.get("/", include_in_schema=False)
async def root():
    return {"message": settings.app_name, "docs": "/docs"}

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )
