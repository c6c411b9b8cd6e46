import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from backend.config import (
    CORS_ALLOW_CREDENTIALS,
    CORS_ALLOW_HEADERS,
    CORS_ALLOW_METHODS,
    CORS_ALLOW_ORIGINS,
    ENABLE_SCHEDULER,
    LOG_LEVEL,
)
from backend.errors import CheckInError
from backend.routers import admin, attendance, auth, core, gatherings, leaves, organization
from backend.services.reconciler import ReconciliationScheduler
from database.db import create_tables

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Rollcall API")
reconciliation_scheduler = ReconciliationScheduler()

# -----------------------------
# CORS
# -----------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_credentials=CORS_ALLOW_CREDENTIALS,
    allow_methods=CORS_ALLOW_METHODS,
    allow_headers=CORS_ALLOW_HEADERS,
)


@app.exception_handler(CheckInError)
def _check_in_error_handler(_request: Request, exc: CheckInError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


# -----------------------------
# Startup / shutdown
# -----------------------------
@app.on_event("startup")
def _startup():
    create_tables()
    if ENABLE_SCHEDULER:
        reconciliation_scheduler.start()
    else:
        logger.info("Reconciliation scheduler disabled")


@app.on_event("shutdown")
def _shutdown():
    reconciliation_scheduler.shutdown()


app.include_router(core.router)
app.include_router(auth.router)
app.include_router(organization.router)
app.include_router(gatherings.router)
app.include_router(attendance.router)
app.include_router(leaves.router)
app.include_router(admin.router)
