from __future__ import annotations

import os
import time
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.errors import install_error_handlers
from api.routes import get_api_router
from blockbench import __version__
from blockbench.core.config import Config
from blockbench.core.exceptions import ConfigError
from blockbench.core.logs import configure_logging


def create_app() -> FastAPI:
    start = time.monotonic()

    # Security check: refuse to start with empty auth_token unless explicitly overridden
    config = Config.from_repo_defaults(Path.cwd())
    auth_token = str(config.api.auth_token or "")
    insecure_ok = os.environ.get("BLOCKBENCH_INSECURE_OK", "").lower() in ("1", "true", "yes")

    if not auth_token and not insecure_ok:
        msg = (
            "SECURITY ERROR: API auth_token is empty\n"
            "\n"
            "Set BLOCKBENCH_API__AUTH_TOKEN environment variable or add to config:\n"
            "  api:\n"
            "    auth_token: your-secret-token\n"
            "\n"
            "To run without auth (dev/test only), set BLOCKBENCH_INSECURE_OK=1"
        )
        raise RuntimeError(msg)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.started_at = start

        # Expose config/store in app state for dependency injection + tests.
        app.state.config = getattr(app.state, "config", None) or config
        configure_logging(app.state.config.logging)

        from api.deps import open_store
        from blockbench.backtest.runner import close_engine

        created_store = False
        if getattr(app.state, "store", None) is None:
            app.state.store = open_store(app.state.config)
            created_store = True

        yield

        engine = getattr(app.state, "engine", None)
        if engine is not None:
            await close_engine(engine)
        if created_store:
            app.state.store.close()

    openapi_tags = [
        {"name": "health", "description": "Liveness and version metadata."},
        {"name": "strategies", "description": "Saved strategies, validation, forks and fork trees."},
        {"name": "backtests", "description": "Run a saved strategy over history and list past runs."},
        {"name": "leaderboard", "description": "Strategies ranked by risk-adjusted return."},
        {"name": "config", "description": "Runtime configuration inspection."},
    ]

    app = FastAPI(
        title="blockbench API",
        description="DeFi strategy backtesting with a fork-aware leaderboard",
        version=__version__,
        openapi_tags=openapi_tags,
        lifespan=lifespan,
    )

    install_error_handlers(app)

    # CORS: only enable if origins explicitly configured
    if config.api.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.api.cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.include_router(get_api_router(), prefix="/api/v1")
    return app


# Module-level app for uvicorn (e.g. `uvicorn api.main:app`).
# Guarded so test imports don't crash when auth_token isn't configured.
try:
    app = create_app()
except (RuntimeError, ConfigError):
    app = None
