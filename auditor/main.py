import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

# Load env from auditor/.env
auditor_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(auditor_dir, ".env"))

# Import after dotenv is loaded
from auditor.core.config import settings, validate_config
from auditor.core.database import create_all_tables, get_database_url
from auditor.core.logging import configure_logging
from auditor.core.middleware.request_id import RequestIdMiddleware
from auditor.core.validation import validate_env
from auditor.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from auditor.api import admin_billing, billing, entitlements, health

configure_logging(settings.ENV)
validate_env()
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("auditor")
    logger.info("Starting Reality Auditor entitlement service...")
    app.state.startup_time = time.time()
    if get_database_url():
        create_all_tables()
    else:
        logger.warning("DATABASE_URL not set; skipping table creation")
    try:
        yield
    finally:
        logger.info("Stopping Reality Auditor entitlement service...")


app = FastAPI(title="Reality Auditor - Entitlements", lifespan=lifespan)

# Middlewares
app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(StarletteHTTPException, http_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.PUBLIC_BASE_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.root_router)
app.include_router(billing.router)
app.include_router(entitlements.router)
app.include_router(admin_billing.router)
