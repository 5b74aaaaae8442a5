import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from backend.config import (
    CORS_ALLOW_CREDENTIALS,
    CORS_ALLOW_HEADERS,
    CORS_ALLOW_METHODS,
    CORS_ALLOW_ORIGINS,
    LOG_LEVEL,
)
from backend.engine import get_engine, start_background
from backend.errors import EngineError
from backend.routers.admin import router as admin_router
from backend.routers.auth import router as auth_router
from backend.routers.chains import router as chains_router
from backend.routers.core import router as core_router
from backend.routers.scan import router as scan_router
from backend.routers.sessions import router as sessions_router
from database.store import StoreUnavailable, VersionConflict

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("backend")


@asynccontextmanager
async def lifespan(_: FastAPI):
    engine = get_engine()
    started = start_background(engine)
    try:
        yield
    finally:
        if started:
            engine.sweeper.stop()


app = FastAPI(title="QR Chain Attendance API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_credentials=CORS_ALLOW_CREDENTIALS,
    allow_methods=CORS_ALLOW_METHODS,
    allow_headers=CORS_ALLOW_HEADERS,
)


@app.exception_handler(EngineError)
async def engine_error_handler(_: Request, exc: EngineError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_detail()})


@app.exception_handler(VersionConflict)
async def version_conflict_handler(_: Request, exc: VersionConflict):
    logger.warning("gave up after repeated write conflicts: %s", exc)
    return JSONResponse(status_code=409, content={"detail": "Concurrent update, please retry."})


@app.exception_handler(StoreUnavailable)
async def store_unavailable_handler(_: Request, exc: StoreUnavailable):
    logger.error("record store unavailable: %s", exc)
    return JSONResponse(
        status_code=503,
        content={"detail": "Storage temporarily unavailable. Please retry."},
        headers={"Retry-After": "1"},
    )


app.include_router(core_router)
app.include_router(auth_router)
app.include_router(sessions_router)
app.include_router(chains_router)
app.include_router(scan_router)
app.include_router(admin_router)
