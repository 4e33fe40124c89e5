"""
Salesflow - FastAPI Backend
REST API for contacts, outreach sequences and the call-priority engine.

Run: uvicorn salesflow.api.app:app --reload --port 8000
"""

import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from salesflow.agents.scheduler import SequenceScheduler
from salesflow.api.deps import get_services
from salesflow.api.routers import calls, contacts, sequences
from salesflow.errors import ConfigurationError, DeliveryError, EnrollmentConflict, NotFound
from salesflow.logging_config import setup_logging

ALLOWED_ORIGINS = os.environ.get("SALESFLOW_CORS_ORIGINS", "http://localhost:3000,http://localhost:8000").split(",")
RUN_SCHEDULER = os.environ.get("SALESFLOW_RUN_SCHEDULER", "false").lower() == "true"

setup_logging()

# ─── SCHEDULER ───────────────────────────────────────────────

_scheduler = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _scheduler
    if RUN_SCHEDULER:
        _scheduler = SequenceScheduler(get_services().engine)
        _scheduler.start()
    try:
        yield
    finally:
        if _scheduler is not None:
            _scheduler.stop()
            _scheduler = None


app = FastAPI(
    title="Salesflow",
    description="Outreach sequences and adaptive call prioritization.",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ─── ROUTERS ─────────────────────────────────────────────────
app.include_router(contacts.router)
app.include_router(sequences.router)
app.include_router(calls.router)


# ─── ERROR MAPPING ───────────────────────────────────────────

@app.exception_handler(NotFound)
def not_found_handler(request: Request, exc: NotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ConfigurationError)
def configuration_handler(request: Request, exc: ConfigurationError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(EnrollmentConflict)
def conflict_handler(request: Request, exc: EnrollmentConflict):
    return JSONResponse(status_code=409, content={"detail": str(exc),
                                                  "enrollment_id": exc.enrollment_id})


@app.exception_handler(DeliveryError)
def delivery_handler(request: Request, exc: DeliveryError):
    return JSONResponse(status_code=502, content={"detail": str(exc)})


@app.exception_handler(ValueError)
def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


# ─── HEALTH ──────────────────────────────────────────────────

@app.get("/api/health")
def health():
    services = get_services()
    return {
        "status": "healthy",
        "sending_enabled": services.engine.sending_enabled,
        "scheduler_running": bool(_scheduler and _scheduler.running),
        "throughput": services.governor.snapshot(),
    }


if __name__ == "__main__":
    import uvicorn
    from salesflow.config import API_HOST, API_PORT
    uvicorn.run(app, host=API_HOST, port=API_PORT)
