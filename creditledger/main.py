from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from creditledger.core.exceptions import AppError, LedgerError
from creditledger.core.logging import configure_logging
from creditledger.db.session import engine
from creditledger.ledger.router import router as ledger_router
from creditledger.settlement.router import router as settlement_router


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    configure_logging()
    yield
    await engine.dispose()


app = FastAPI(
    title="Credit Ledger",
    version="1.0.0",
    description="Credit and wallet ledger for the real-estate marketplace: purchases, transfers, spends and rewards.",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    content = {"detail": exc.message}
    if isinstance(exc, LedgerError):
        content["code"] = exc.code
    headers = {"Retry-After": "1"} if getattr(exc, "retryable", False) else None
    return JSONResponse(status_code=exc.status_code, content=content, headers=headers)


app.include_router(ledger_router)
app.include_router(settlement_router)


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok", "version": "1.0.0"}
