import logging
import os
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException
from dotenv import load_dotenv

# Load env from backend/.env
backend_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(backend_dir, ".env"))

# Import after dotenv is loaded
from backend.core.config import settings, validate_config
from backend.core.database import create_all_tables
from backend.core.logging import configure_logging
from backend.core.middleware.request_id import RequestIdMiddleware
from backend.core.middleware.metrics import MetricsMiddleware
from backend.core.validation import validate_env
from backend.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    validation_error_handler,
    unhandled_exception_handler,
)
from backend.api import account, admin_billing, billing, health, metrics, realtime

configure_logging(settings.ENV)
validate_env()
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("logedin")
    logger.info("Starting Loged.in billing backend...")
    app.state.startup_time = time.time()
    try:
        create_all_tables()
    except Exception as e:
        # /readyz reports the missing tables
        logger.error(f"Table bootstrap failed: {e}")
    try:
        yield
    finally:
        logging.getLogger("logedin").info("Stopping Loged.in billing backend...")


app = FastAPI(title="Loged.in - Billing Backend", lifespan=lifespan)

# Middlewares
app.add_middleware(RequestIdMiddleware)
app.add_middleware(MetricsMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(StarletteHTTPException, http_error_handler)
app.add_exception_handler(RequestValidationError, validation_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(billing.router, tags=["billing"])
app.include_router(account.router, tags=["account"])
app.include_router(admin_billing.router, tags=["admin-billing"])
app.include_router(realtime.router, tags=["realtime"])
app.include_router(health.root_router, tags=["health"])
app.include_router(metrics.router, tags=["metrics"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("backend.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
