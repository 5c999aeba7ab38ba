from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from blockbench.core.exceptions import (
    BacktestFailedError,
    BlockbenchError,
    ConfigurationError,
    SchedulerBusyError,
    StrategyNotFoundError,
)


class ApiError(Exception):
    def __init__(self, code: str, message: str, status: int = 400, **extra: object) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status = status
        self.extra = extra


async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    body = {"error": {"code": exc.code, "message": exc.message, **exc.extra}}
    return JSONResponse(status_code=exc.status, content=body)


# most specific first; first isinstance match wins
_DOMAIN_ERRORS: tuple[tuple[type[BlockbenchError], str, int], ...] = (
    (StrategyNotFoundError, "strategy.not_found", 404),
    (ConfigurationError, "backtest.invalid_config", 422),
    (SchedulerBusyError, "backtest.busy", 409),
    (BacktestFailedError, "backtest.failed", 500),
)


async def domain_error_handler(request: Request, exc: BlockbenchError) -> JSONResponse:
    code, status = "internal", 500
    for cls, c, s in _DOMAIN_ERRORS:
        if isinstance(exc, cls):
            code, status = c, s
            break
    message = str(exc)
    if isinstance(exc, StrategyNotFoundError):
        message = f"Strategy not found: {exc}"
    return JSONResponse(status_code=status, content={"error": {"code": code, "message": message}})


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ApiError, api_error_handler)
    app.add_exception_handler(BlockbenchError, domain_error_handler)
