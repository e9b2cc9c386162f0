from fastapi import FastAPI, HTTPException, Request, Depends, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
import structlog
import time
from contextlib import asynccontextmanager

from config import get_settings
from engine import PaymentsEngine, get_payments_engine
from errors import ErrorKind, TransactionError
from logging_setup import configure_logging
from models import AccountSnapshot, AccountsResponse, ErrorResponse, HealthResponse, TransactionEvent

settings = get_settings()

configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger()

# Rate limiting
limiter = Limiter(key_func=get_remote_address, enabled=settings.enable_rate_limit)

ERROR_STATUS = {
    ErrorKind.UNKNOWN_TRANSACTION: status.HTTP_404_NOT_FOUND,
    ErrorKind.MALFORMED_AMOUNT: status.HTTP_422_UNPROCESSABLE_ENTITY,
}


# Application lifespan
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Payments Engine API", precision=settings.amount_precision)
    yield
    # Shutdown
    logger.info("Shutting down Payments Engine API")


# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="Apply deposits, withdrawals and disputes to client accounts",
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
def get_engine() -> PaymentsEngine:
    return get_payments_engine(settings.amount_precision, settings.rejection_log_size)


# Health check endpoint
@app.get(
    "/health",
    response_model=HealthResponse,
    summary="Health Check",
    description="Check API health and get engine statistics"
)
async def health_check(engine: PaymentsEngine = Depends(get_engine)):
    return HealthResponse(
        status="healthy",
        accounts_count=engine.account_repo.count(),
        transactions_recorded=engine.transaction_repo.count(),
        transactions_rejected=engine.stats().rejected
    )


# Handlers are coroutines that never await inside the engine, so events are
# applied one at a time on the event loop.
@app.post(
    "/transactions",
    response_model=AccountSnapshot,
    status_code=status.HTTP_201_CREATED,
    summary="Apply Transaction",
    description="Apply a deposit, withdrawal, dispute, resolve or chargeback",
    responses={
        201: {"description": "Transaction applied, returns the client's account"},
        404: {"description": "Referenced transaction not found"},
        409: {"description": "Transaction refused in the account's current state"},
        422: {"description": "Validation error or malformed amount"},
        429: {"description": "Rate limit exceeded"},
    }
)
@limiter.limit(f"{settings.rate_limit_per_minute}/minute")
async def create_transaction(
    request: Request,
    event: TransactionEvent,
    engine: PaymentsEngine = Depends(get_engine)
):
    logger.info(
        "Transaction request received",
        client=event.client_id,
        tx=event.tx_id,
        type=event.transaction_type.value
    )

    account = engine.execute(event)
    return account.snapshot(engine.precision)


@app.get(
    "/accounts",
    response_model=AccountsResponse,
    summary="List Accounts",
    description="Current state of every known account, ordered by client id"
)
async def list_accounts(engine: PaymentsEngine = Depends(get_engine)):
    return AccountsResponse(accounts=list(engine.accounts().values()))


@app.get(
    "/accounts/{client_id}",
    response_model=AccountSnapshot,
    summary="Get Account",
    responses={404: {"description": "Account not found"}}
)
async def get_account(client_id: int, engine: PaymentsEngine = Depends(get_engine)):
    account = engine.account_repo.get(client_id)
    if account is None:
        raise HTTPException(status_code=404, detail="Account not found")
    return account.snapshot(engine.precision)


@app.exception_handler(TransactionError)
async def transaction_error_handler(request: Request, exc: TransactionError):
    return JSONResponse(
        status_code=ERROR_STATUS.get(exc.kind, status.HTTP_409_CONFLICT),
        content=ErrorResponse(
            detail=exc.detail,
            error_code=exc.kind.value
        ).model_dump(mode="json")
    )


# Global exception handler
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
