import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

# Load env from unlocks/.env
package_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(package_dir, ".env"))

# Import after dotenv is loaded
from unlocks.core.config import get_base_url, settings, validate_config
from unlocks.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from unlocks.core.logging import configure_logging
from unlocks.core.middleware.metrics import MetricsMiddleware
from unlocks.core.middleware.request_id import RequestIdMiddleware
from unlocks.core.validation import validate_env
from unlocks.api import admin_purchases, credits, entitlements, health, metrics, purchases

configure_logging(settings.ENV)
validate_env()
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("unlocks")
    logger.info("Starting unlocks service...")
    app.state.startup_time = time.time()
    try:
        yield
    finally:
        logging.getLogger("unlocks").info("Stopping unlocks service...")


app = FastAPI(title="Unlocks - Purchases & Entitlements", lifespan=lifespan)

# Middlewares
app.add_middleware(RequestIdMiddleware)
app.add_middleware(MetricsMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[get_base_url()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(purchases.router, prefix="/api", tags=["purchases"])
app.include_router(entitlements.router, prefix="/api", tags=["entitlements"])
app.include_router(credits.router, prefix="/api", tags=["credits"])
app.include_router(admin_purchases.router, tags=["admin-purchases"])
app.include_router(health.root_router, tags=["health"])
app.include_router(metrics.router, tags=["metrics"])
