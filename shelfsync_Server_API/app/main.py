# main.py
# Description: FastAPI application serving the shelfsync incremental sync API.
#
# Imports
import logging
import os
import sys
from contextlib import asynccontextmanager
#
# 3rd-party Libraries
import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
#
# Local Imports
from shelfsync_Server_API.app.api.v1.API_Deps.DB_Deps import close_all_cached_dbs
from shelfsync_Server_API.app.api.v1.endpoints.sync import add_sync_exception_handlers
from shelfsync_Server_API.app.api.v1.endpoints.sync import router as sync_router
from shelfsync_Server_API.app.core.config import ALLOWED_ORIGINS, settings
#
########################################################################################################################
#
# Functions:


# --- Loguru Configuration with Intercept Handler ---

class InterceptHandler(logging.Handler):
    """Routes standard logging records (uvicorn) into loguru."""

    def emit(self, record):
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Find caller from where originated the logged message
        frame, depth = logging.currentframe(), 2
        while frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


logger.remove()
logger.add(
    sys.stderr,
    level=settings["LOG_LEVEL"],
    format="<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
    colorize=True,
)

loggers_to_intercept = ["uvicorn", "uvicorn.error", "uvicorn.access"]
for logger_name in loggers_to_intercept:
    mod_logger = logging.getLogger(logger_name)
    mod_logger.handlers = [InterceptHandler()]
    mod_logger.propagate = False


@asynccontextmanager
async def lifespan(app: FastAPI):
    mode = "single-user" if settings["SINGLE_USER_MODE"] else "multi-user"
    logger.info(f"shelfsync starting in {mode} mode; record stores under {settings['USER_DB_BASE_DIR']}")
    yield
    logger.info("App Shutdown: Closing cached record stores")
    close_all_cached_dbs()


app = FastAPI(
    title="shelfsync API",
    version="0.1.0",
    description="Incremental sync of books, configs, notes, reading sessions and goals between devices",
    lifespan=lifespan,
)

# Use configured origins, everything when none is set
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS or ["*"],
    allow_credentials=bool(ALLOWED_ORIGINS),
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

add_sync_exception_handlers(app)


@app.get("/")
async def root():
    return {"message": "shelfsync API", "docs": "/docs"}


@app.get("/health")
async def health():
    return {"status": "ok", "mode": settings["APP_MODE_STR"]}


# Router for the sync endpoint
app.include_router(sync_router, prefix="/api/v1/sync", tags=["sync"])


def run():
    """Entry point of the shelfsync-server script."""
    uvicorn.run(
        "shelfsync_Server_API.app.main:app",
        host=os.getenv("SHELFSYNC_HOST", "127.0.0.1"),
        port=int(os.getenv("SHELFSYNC_PORT", "8000")),
        log_config=None,
    )


if __name__ == "__main__":
    run()

#
# End of main.py
########################################################################################################################
