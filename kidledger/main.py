import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.concurrency import run_in_threadpool

from kidledger.core.config import GetEnv
from kidledger.core.logging import BindRequestId, ResetRequestId, setup_logging
from kidledger.core.migrations import RunMigrations
from kidledger.modules.core.router import router as core_router
from kidledger.modules.ledger.router import router as ledger_router

setup_logging()

logger = logging.getLogger("ledger.request")
startup_logger = logging.getLogger("ledger.startup")


def _ParseOrigins(raw: str | None) -> list[str]:
    return [origin.strip() for origin in (raw or "").split(",") if origin.strip()]


def _StatusLevel(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


@asynccontextmanager
async def lifespan(_: FastAPI):
    if (GetEnv("RUN_MIGRATIONS_ON_STARTUP", "false") or "").lower() in {"1", "true", "yes"}:
        await run_in_threadpool(RunMigrations)
    startup_logger.info("ledger api ready")
    yield
    startup_logger.info("ledger api stopped")


app = FastAPI(title="Kid Ledger API", lifespan=lifespan)

origin_list = _ParseOrigins(GetEnv("ALLOWED_ORIGINS"))
if origin_list:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origin_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["Authorization", "Content-Type", "Idempotency-Key", "X-Request-Id"],
        expose_headers=["X-Request-Id"],
    )


@app.middleware("http")
async def request_logger(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or uuid.uuid4().hex
    token = BindRequestId(request_id)
    started = time.perf_counter()
    try:
        response = await call_next(request)
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        fields = [f"{request.method} {request.url.path}", f"status={response.status_code}"]
        idempotency_key = request.headers.get("Idempotency-Key")
        if idempotency_key:
            fields.append(f"idempotency_key={idempotency_key}")
        fields.append(f"{elapsed_ms}ms")
        logger.log(_StatusLevel(response.status_code), " | ".join(fields))
    finally:
        ResetRequestId(token)
    response.headers["X-Request-Id"] = request_id
    return response


app.include_router(core_router)
app.include_router(ledger_router)
