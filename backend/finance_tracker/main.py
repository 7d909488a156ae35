import asyncio
import logging
from datetime import datetime, timezone

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .config import settings
from .errors import LedgerError, PartialBatchFailure
from .persistence import SqlPersistence, get_persistence
from .schemas import (
    ApiErrorDetail,
    ApiErrorPayload,
    ApiErrorResponse,
    HealthResponse,
    RecurringProcessRequest,
    RecurringProcessResponse,
)
from .services.categories import CategoryService
from .services.scheduler import RecurringScheduler
from .services.transactions import TransactionService

logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Finance Tracker API",
    version="0.1.0",
    description="Ledger core for accounts, transactions and recurring schedules.",
)

persistence = get_persistence()
transactions = TransactionService(persistence)
categories = CategoryService(persistence)
scheduler = RecurringScheduler(persistence, transactions)
scheduler_task: asyncio.Task | None = None


def build_error_response(
    code: str,
    message: str,
    status_code: int,
    details: list[ApiErrorDetail] | None = None,
) -> JSONResponse:
    payload = ApiErrorResponse(error=ApiErrorPayload(code=code, message=message, details=details or []))
    return JSONResponse(status_code=status_code, content=payload.model_dump())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details: list[ApiErrorDetail] = []
    for err in exc.errors():
        loc = ".".join(str(item) for item in err.get("loc", []) if item != "body")
        details.append(ApiErrorDetail(field=loc or "body", message=err.get("msg", "validation error")))
    return build_error_response("VALIDATION_ERROR", "Invalid request payload", status.HTTP_422_UNPROCESSABLE_ENTITY, details)


@app.exception_handler(PartialBatchFailure)
async def partial_batch_exception_handler(request: Request, exc: PartialBatchFailure) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.result.as_response()))


@app.exception_handler(LedgerError)
async def ledger_exception_handler(request: Request, exc: LedgerError) -> JSONResponse:
    return build_error_response(exc.code, str(exc), exc.status_code)


@app.get("/api/v1/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    backend = "sql" if isinstance(persistence, SqlPersistence) else "memory"
    return HealthResponse(status="ok", storageBackend=backend, checkedAt=datetime.now(timezone.utc))


@app.post("/api/v1/recurring-transactions/process", response_model=RecurringProcessResponse)
def process_recurring(payload: RecurringProcessRequest | None = None) -> RecurringProcessResponse:
    # Blocks on store locks and I/O, so FastAPI runs it in its threadpool.
    now = payload.now if payload is not None else None
    return scheduler.process_due(now, strict=True).as_response()


async def _recurring_loop() -> None:
    while True:
        try:
            await asyncio.to_thread(scheduler.process_due)
        except LedgerError:
            logger.exception("Scheduled recurring transaction run failed")
        await asyncio.sleep(settings.scheduler_interval_seconds)


@app.on_event("startup")
async def on_startup() -> None:
    global scheduler_task
    categories.initialize_system_categories()
    if settings.scheduler_enabled and scheduler_task is None:
        scheduler_task = asyncio.create_task(_recurring_loop())


@app.on_event("shutdown")
async def on_shutdown() -> None:
    global scheduler_task
    if scheduler_task is not None:
        scheduler_task.cancel()
        scheduler_task = None
    persistence.close()
