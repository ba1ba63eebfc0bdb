from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
import structlog
import time
from contextlib import asynccontextmanager

from models import StatementResponse, ErrorResponse, HealthResponse
from services import process_statement
from records import CsvRecordSource, with_lookup_strategy
from errors import InvariantViolation, MalformedRecordError
from logging_config import configure_logging
from config import get_settings

settings = get_settings()
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger()

def error_response(status_code: int, detail: str, error_code: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(detail=detail, error_code=error_code).model_dump(mode="json")
    )


# Rate limiting
limiter = Limiter(key_func=get_remote_address)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Transaction Ledger API", lookup_strategy=settings.lookup_strategy)
    yield
    logger.info("Shutting down Transaction Ledger API")

app = FastAPI(
    title=settings.app_name,
    description="Applies CSV transaction statements to client accounts and returns final balances",
    version=settings.app_version,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=settings.allowed_methods,
    allow_headers=settings.allowed_headers,
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    request_log = logger.bind(
        method=request.method,
        path=request.url.path,
        client_ip=request.client.host if request.client else None,
        content_length=request.headers.get("content-length")
    )
    start_time = time.perf_counter()

    response = await call_next(request)

    request_log.info(
        "Request handled",
        status_code=response.status_code,
        process_time=round(time.perf_counter() - start_time, 4)
    )
    return response


@app.get(
    "/health",
    response_model=HealthResponse,
    summary="Health Check",
    description="Check API health"
)
async def health_check():
    return HealthResponse(status="healthy", lookup_strategy=settings.lookup_strategy)


@app.post(
    "/statements",
    response_model=StatementResponse,
    summary="Process Statement",
    description="Apply a CSV body of transactions (type, client, tx, amount) and return the final account balances",
    responses={
        200: {"description": "Statement processed"},
        413: {"description": "Statement too large"},
        422: {"description": "Malformed transaction record"},
        429: {"description": "Rate limit exceeded"},
        500: {"description": "Internal server error"}
    }
)
@limiter.limit(lambda: f"{get_settings().rate_limit_per_minute}/minute")
async def create_statement(request: Request):
    body = await request.body()
    if len(body) > settings.max_request_size:
        raise HTTPException(
            status_code=413,
            detail="Statement too large"
        )

    # Undecodable bytes are reported per row by the record source.
    text = body.decode("utf-8", errors="surrogateescape")

    source = with_lookup_strategy(CsvRecordSource.from_text(text), settings.lookup_strategy)

    try:
        ledger, summary = process_statement(
            source, log_ignored=settings.log_ignored_transactions
        )
    except MalformedRecordError as e:
        logger.warning("Malformed statement", line=e.line, detail=e.detail)
        return error_response(422, str(e), "MALFORMED_RECORD")
    except InvariantViolation as e:
        logger.error("Internal invariant violated", error=str(e), exc_info=True)
        raise HTTPException(
            status_code=500,
            detail="Internal server error"
        )

    logger.info(
        "Statement processed",
        records=summary.records,
        applied=summary.applied,
        ignored=summary.ignored_count,
        accounts=len(ledger)
    )

    return StatementResponse(accounts=list(ledger.snapshots()), summary=summary)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return error_response(exc.status_code, exc.detail, f"HTTP_{exc.status_code}")


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        error=str(exc),
        url=str(request.url),
        method=request.method,
        exc_info=True
    )

    return error_response(500, "Internal server error", "INTERNAL_ERROR")


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
