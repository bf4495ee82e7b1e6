import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from stockengine.app.api.v1.router import router as v1_router
from stockengine.app.core.config import settings
from stockengine.app.core.logging_config import setup_logging
from stockengine.services.errors import (
    ActiveCheckExists,
    ConcurrentModification,
    InsufficientStock,
    InvalidQuantity,
    InvalidStateTransition,
    LockTimeout,
    NotFound,
    StockEngineError,
)
from stockengine.services.events import register_default_subscribers

setup_logging()
register_default_subscribers()

logger = logging.getLogger(__name__)

# premier match gagne (NotFound couvre UnknownProduct / UnknownMaterial)
ERROR_STATUS = (
    (NotFound, 404),
    (InsufficientStock, 400),
    (InvalidQuantity, 400),
    (LockTimeout, 503),
    (InvalidStateTransition, 409),
    (ConcurrentModification, 409),
    (ActiveCheckExists, 409),
)


def status_for(exc: StockEngineError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 409


app = FastAPI(title=settings.PROJECT_NAME, version="0.1.0")


@app.exception_handler(StockEngineError)
async def stock_engine_error_handler(request: Request, exc: StockEngineError):
    status_code = status_for(exc)
    if status_code >= 500:
        logger.warning("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=status_code, content={"detail": exc.message, "code": exc.code})


app.include_router(v1_router, prefix=settings.API_V1_STR)
