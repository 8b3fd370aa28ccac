import logging
import os
import traceback
import uuid
from collections import deque
from datetime import datetime
from logging.handlers import RotatingFileHandler
from typing import List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request as StarletteRequest

from oob import config

# ─────────────────────────── LOGGING SETUP ───────────────────────────
LOG_BUFFER_SIZE = 1000
LOG_FORMAT = '%(asctime)s | %(levelname)-8s | %(name)-20s | %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


class BufferHandler(logging.Handler):
    """Keeps recent records as dicts for GET /logs"""
    def __init__(self, buffer: deque):
        super().__init__()
        self.buffer = buffer

    def emit(self, record):
        try:
            exc_text = None
            if record.exc_info:
                exc_text = ''.join(traceback.format_exception(*record.exc_info))
            self.buffer.append({
                "time": datetime.fromtimestamp(record.created).isoformat(),
                "level": record.levelname,
                "module": record.module,
                "name": record.name,
                "message": record.getMessage(),
                "formatted": self.format(record),
                "exc_info": exc_text,
            })
        except Exception:
            self.handleError(record)


def configure_logging(
    level_name: str,
    log_file: Optional[str] = None,
    test_mode: bool = False,
    target: Optional[logging.Logger] = None,
) -> deque:
    """
    Attach console, in-memory and (outside tests) rotating file handlers.

    ``target`` defaults to the root logger so uvicorn and fastapi output is
    captured too. Handlers from an earlier call on the same target are
    replaced. Returns the buffer that backs GET /logs.
    """
    root = logging.getLogger()
    target = target if target is not None else root
    level = getattr(logging, level_name.upper(), logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    for handler in [h for h in target.handlers if getattr(h, "oob_managed", False)]:
        target.removeHandler(handler)
        handler.close()

    buffer: deque = deque(maxlen=LOG_BUFFER_SIZE)
    handlers: List[logging.Handler] = [logging.StreamHandler(), BufferHandler(buffer)]

    file_error = None
    if log_file and not test_mode:
        try:
            os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)
            # 10MB per file, keep 5 backups
            handlers.append(RotatingFileHandler(log_file, maxBytes=10*1024*1024, backupCount=5))
        except OSError as e:
            file_error = e

    target.setLevel(level)
    for handler in handlers:
        handler.oob_managed = True
        handler.setFormatter(formatter)
        handler.setLevel(level)
        target.addHandler(handler)

    if target is root:
        logging.getLogger("oob").setLevel(level)
    if file_error is not None:
        logger.warning(f"Could not enable file logging: {file_error}")
    elif len(handlers) > 2:
        logger.info(f"File logging enabled: {log_file}")
    return buffer


logger = logging.getLogger("oob")
log_buffer = configure_logging(config.LOG_LEVEL, config.LOG_FILE, config.TEST_MODE)
logger.info(f"Logging initialized at level {config.LOG_LEVEL}")

# Imported after logging is configured so import-time warnings are captured
from oob.auth import create_token_cache, load_api_keys  # noqa: E402
from oob.cron import CronRunner  # noqa: E402
from oob.database import init_db  # noqa: E402
from oob.events import create_publisher  # noqa: E402
from oob.files import create_file_store  # noqa: E402
from oob.reaper import run_operation_cleanup  # noqa: E402
from oob.routes_edge import router as edge_router  # noqa: E402
from oob.routes_management import router as management_router  # noqa: E402

# ─────────────────────────── APP ───────────────────────────

app = FastAPI(title=config.APP_TITLE, version=config.APP_VERSION)


class ExceptionLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: StarletteRequest, call_next):
        try:
            response = await call_next(request)
            return response
        except Exception as e:
            logger.error(
                f"Unhandled exception on {request.method} {request.url.path}: {e}",
                exc_info=True
            )
            raise


app.add_middleware(ExceptionLoggingMiddleware)

# Shared per-process components, handed to routes through app.state
app.state.log_buffer = log_buffer
app.state.token_cache = create_token_cache()
app.state.api_keys = load_api_keys(config.OOB_API_KEYS)
app.state.publisher = create_publisher()
app.state.file_store = create_file_store()
app.state.cron = CronRunner()

if not app.state.api_keys:
    logger.warning("OOB_API_KEYS is empty, management routes will reject every request")

app.include_router(edge_router)
app.include_router(management_router)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    logger.warning(f"HTTP {exc.status_code} on {request.method} {request.url.path}: {exc.detail}")
    return JSONResponse({"detail": exc.detail}, status_code=exc.status_code, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"HTTP 400 on {request.method} {request.url.path}: {exc.errors()}")
    return JSONResponse({"detail": "Invalid request", "errors": jsonable_errors(exc)}, status_code=400)


def jsonable_errors(exc: RequestValidationError):
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    logger.error(
        f"Unhandled exception on {request.method} {request.url.path}: {exc}",
        exc_info=True
    )
    error_id = str(uuid.uuid4())[:8]
    return JSONResponse({"detail": "Internal server error", "error_id": error_id}, status_code=500)


@app.get("/health")
async def health():
    return {"status": "ok", "version": config.APP_VERSION}


# ─────────────────────────── LIFECYCLE ───────────────────────────

def register_cron_jobs(cron: CronRunner) -> None:
    cron.register_job(
        config.CRON_OPERATION_CLEANUP_NAME,
        config.CRON_OPERATION_CLEANUP_INTERVAL,
        config.CRON_OPERATION_CLEANUP_TIMEOUT,
        lambda checkpoint: run_operation_cleanup(checkpoint, app.state.publisher, app.state.file_store),
    )


@app.on_event("startup")
def _startup():
    init_db()
    if config.CRON_ENABLED:
        register_cron_jobs(app.state.cron)
        app.state.cron.start()
    logger.info(f"{config.APP_TITLE} {config.APP_VERSION} started")


@app.on_event("shutdown")
def _shutdown():
    app.state.cron.stop()
    app.state.publisher.close()
