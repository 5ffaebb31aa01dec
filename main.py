from fastapi import FastAPI, HTTPException, Header, Request, Depends, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from starlette.exceptions import HTTPException as StarletteHTTPException
from typing import Optional
import logging
import sys
import structlog
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass

from config import Settings, get_settings
from errors import BankingError, MissingIdempotencyKey
from idempotency import IDEMPOTENCY_HEADER, IdempotencyCoordinator, IdempotencyMiddleware
from models import (
    Account,
    CreateAccountRequest,
    ErrorResponse,
    HealthResponse,
    Transaction,
    TransactionPage,
    TransactionRequest,
)
from repositories import (
    SQLiteAccountRepository,
    SQLiteOperationTypeRepository,
    SQLiteTransactionRepository,
)
from services import (
    DEFAULT_PAGE_LIMIT,
    AccountService,
    TransactionService,
    validate_transaction_request,
)
from storage import Database

logger = structlog.get_logger()


def configure_logging(settings: Settings) -> None:
    """Route structlog through stdlib logging, rendered as JSON or plain text."""
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=settings.log_level.upper(),
        force=True,
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if settings.log_format == "json"
        else structlog.dev.ConsoleRenderer(colors=False)
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
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


@dataclass
class Container:
    db: Database
    account_service: AccountService
    transaction_service: TransactionService
    idempotency: IdempotencyCoordinator


def build_container(settings: Settings) -> Container:
    db = Database(settings.database_path)
    db.migrate()

    account_repo = SQLiteAccountRepository(db)
    operation_type_repo = SQLiteOperationTypeRepository(db)
    transaction_repo = SQLiteTransactionRepository(db)

    operation_type_repo.seed()

    return Container(
        db=db,
        account_service=AccountService(account_repo, timezone=settings.timezone),
        transaction_service=TransactionService(
            transaction_repo,
            account_repo,
            operation_type_repo,
            timezone=settings.timezone,
        ),
        idempotency=IdempotencyCoordinator(
            wait_timeout=settings.idempotency_wait_timeout,
            ttl_seconds=settings.idempotency_ttl_seconds,
        ),
    )


# Dependency injection
def get_container(request: Request) -> Container:
    return request.app.state.container


def get_account_service(container: Container = Depends(get_container)) -> AccountService:
    return container.account_service


def get_transaction_service(container: Container = Depends(get_container)) -> TransactionService:
    return container.transaction_service


def register_routes(app: FastAPI) -> None:
    """Attach the API routes to app.

    Routes go straight onto the application so SlowAPIMiddleware can resolve
    each request to its endpoint and apply the default limits.
    """

    # Health check endpoint
    @app.get(
        "/health",
        response_model=HealthResponse,
        summary="Health Check",
        description="Check API and database health",
    )
    async def health_check(container: Container = Depends(get_container)):
        try:
            container.db.ping()
        except Exception as e:
            logger.error("Health check failed", error=str(e))
            raise HTTPException(
                status_code=500,
                detail="Health check failed"
            )
        return HealthResponse(status="healthy")

    @app.post(
        "/accounts",
        response_model=Account,
        status_code=status.HTTP_201_CREATED,
        summary="Create Account",
        responses={
            400: {"model": ErrorResponse, "description": "Invalid document number"},
            409: {"model": ErrorResponse, "description": "Document number already registered"},
        },
    )
    async def create_account(
        account_request: CreateAccountRequest,
        service: AccountService = Depends(get_account_service),
    ):
        return await service.create_account(account_request.document_number)

    @app.get(
        "/accounts/{account_id}",
        response_model=Account,
        summary="Get Account",
        responses={
            400: {"model": ErrorResponse, "description": "Invalid account id"},
            404: {"model": ErrorResponse, "description": "Account not found"},
        },
    )
    async def get_account(
        account_id: int,
        service: AccountService = Depends(get_account_service),
    ):
        return await service.get_account(account_id)

    @app.get(
        "/accounts/{account_id}/transactions",
        response_model=TransactionPage,
        summary="List Account Transactions",
        responses={
            400: {"model": ErrorResponse, "description": "Invalid account id, limit or offset"},
            404: {"model": ErrorResponse, "description": "Account not found"},
        },
    )
    async def list_account_transactions(
        account_id: int,
        limit: int = DEFAULT_PAGE_LIMIT,
        offset: int = 0,
        service: TransactionService = Depends(get_transaction_service),
    ):
        return await service.list_transactions(account_id, limit=limit, offset=offset)

    @app.post(
        "/transactions",
        response_model=Transaction,
        status_code=status.HTTP_201_CREATED,
        summary="Create Transaction",
        description="Create a transaction; the amount sign follows the operation type",
        responses={
            201: {"description": "Transaction created"},
            400: {"model": ErrorResponse, "description": "Missing Idempotency-Key or validation error"},
            404: {"model": ErrorResponse, "description": "Account not found"},
            409: {"model": ErrorResponse, "description": "Same Idempotency-Key still in flight"},
            500: {"model": ErrorResponse, "description": "Persistence failure"},
        },
    )
    async def create_transaction(
        transaction_request: TransactionRequest,
        idempotency_key: Optional[str] = Header(None, alias=IDEMPOTENCY_HEADER),
        service: TransactionService = Depends(get_transaction_service),
    ):
        if not idempotency_key:
            raise MissingIdempotencyKey()

        # Reject what needs no storage lookup before touching the service
        validate_transaction_request(transaction_request)

        return await service.create_transaction(transaction_request)

    # Root endpoint
    @app.get("/", include_in_schema=False)
    async def root():
        return {"message": "Simple Banking API", "docs": "/docs"}


def _error_response(status_code: int, detail: str, error_code: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(detail=detail, error_code=error_code).model_dump(mode="json"),
    )


async def banking_error_handler(request: Request, exc: BankingError):
    if exc.status_code >= 500:
        logger.error(
            "Request failed",
            error_code=exc.error_code,
            method=request.method,
            url=str(request.url),
            cause=repr(exc.__cause__),
            exc_info=exc,
        )
    else:
        logger.warning(
            "Request rejected",
            error_code=exc.error_code,
            detail=exc.message,
            method=request.method,
            url=str(request.url),
        )
    return _error_response(exc.status_code, exc.message, exc.error_code)


async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        first = errors[0]
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        detail = f"{location}: {first.get('msg')}" if location else str(first.get("msg"))
    else:
        detail = "Invalid request"
    return _error_response(status.HTTP_400_BAD_REQUEST, detail, "INVALID_REQUEST")


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return _error_response(exc.status_code, str(exc.detail), f"HTTP_{exc.status_code}")


async def general_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        error=str(exc),
        url=str(request.url),
        method=request.method,
        exc_info=exc,
    )
    return _error_response(500, "Internal server error", "INTERNAL_ERROR")


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)

    container = build_container(settings)

    # Application lifespan
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting Simple Banking API", database=settings.database_path)
        yield
        logger.info("Shutting down Simple Banking API")
        container.db.close()

    app = FastAPI(
        title=settings.app_name,
        description="Accounts and transactions with Idempotency-Key support",
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.container = container
    register_routes(app)

    app.add_exception_handler(BankingError, banking_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    # Middleware added last runs first: CORS, logging, rate limit, idempotency
    app.add_middleware(IdempotencyMiddleware, coordinator=container.idempotency)

    app.state.limiter = Limiter(
        key_func=get_remote_address,
        default_limits=[f"{settings.rate_limit_per_minute}/minute"],
        enabled=settings.rate_limit_enabled,
    )
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

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

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=settings.allowed_methods,
        allow_headers=settings.allowed_headers,
    )

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    settings = get_settings()
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )
