"""
dotevm remote store: FastAPI app holding encrypted env files per user.

The server never sees plaintext. Services raise NotFoundError and ConflictError;
they are turned into 404 and 409 here so the routes stay free of HTTP mapping.
"""

import logging
from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.routing import APIRoute
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from evm_server import __version__
from evm_server.config import Settings, get_settings
from evm_server.db.session import close_db, init_db
from evm_server.envs.routes import router as envs_router
from evm_server.errors import ConflictError, NotFoundError
from evm_server.limiter import limiter
from evm_server.users.routes import router as users_router

log = logging.getLogger(__name__)

API_VERSION_HEADER = "X-Evm-Api-Version"


def _setup_logging(settings: Settings) -> None:
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    fmt = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    logger = logging.getLogger("evm_server")
    logger.setLevel(level)
    logger.handlers.clear()
    stream = logging.StreamHandler()
    stream.setFormatter(fmt)
    logger.addHandler(stream)
    if settings.log_file.strip():
        try:
            fh = logging.FileHandler(settings.log_file, encoding="utf-8")
        except OSError as e:
            logger.warning("Could not open log file %s: %s", settings.log_file, e)
        else:
            fh.setFormatter(fmt)
            logger.addHandler(fh)


def route_table(app: FastAPI) -> List[str]:
    """'METHOD /path' lines for every API route, sorted by path."""
    lines = []
    for route in app.routes:
        if isinstance(route, APIRoute):
            methods = ",".join(sorted(route.methods - {"HEAD"}))
            lines.append(f"{methods} {route.path}")
    return sorted(lines, key=lambda line: line.split(" ", 1)[1])


settings = get_settings()
_setup_logging(settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if not settings.jwt_secret:
        log.warning("EVM_JWT_SECRET is empty; tokens are signed with an empty key")
    log.info("dotevm remote store %s, database %s", __version__, settings.db_path)
    await init_db()
    for line in route_table(app):
        log.info("route %s", line)
    yield
    await close_db()
    log.info("Shutdown")


app = FastAPI(title="dotevm remote store", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Authorization", "Content-Type"],
)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    """Responses carry ciphertext and tokens: never cache them, never frame them."""
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Cache-Control"] = "no-store"
    response.headers["Referrer-Policy"] = "no-referrer"
    response.headers[API_VERSION_HEADER] = __version__
    return response


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    log.info("%s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ConflictError)
async def conflict_handler(request: Request, exc: ConflictError):
    log.info("%s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """500 without stack trace; the payload may hold ciphertext so it is never echoed."""
    if isinstance(exc, HTTPException):
        raise exc
    log.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.include_router(users_router)
app.include_router(envs_router)


@app.get("/health")
@limiter.exempt
def health() -> dict:
    """Liveness check used by clients to decide between online and offline mode."""
    return {"status": "ok", "version": __version__}


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    uvicorn.run("evm_server.main:app", host="0.0.0.0", port=settings.port)
