"""FastAPI application entry point."""

import logging
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from task_package.api import edt_mode, task_packages
from task_package.api.deps import TaskPackageHTTPError
from task_package.config import TaskPackageConfig
from task_package.runtime import TaskPackageRuntime

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stdout,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup and shutdown."""
    runtime: TaskPackageRuntime = app.state.runtime
    await runtime.startup()

    yield

    await runtime.shutdown()


async def _task_package_error(request: Request, exc: TaskPackageHTTPError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.body())


async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})


async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
    return JSONResponse(status_code=400, content={"error": message})


async def _unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


def create_app(
    config: TaskPackageConfig | None = None,
    runtime: TaskPackageRuntime | None = None,
) -> FastAPI:
    """Build the HTTP app around a runtime.

    Args:
        config: Configuration for a new runtime (defaults to the environment)
        runtime: An existing runtime to serve instead of building one
    """
    if runtime is None:
        runtime = TaskPackageRuntime(config or TaskPackageConfig.from_env())

    app = FastAPI(
        title="Task Package",
        description="Lifecycle control plane for cancellable task packages",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(TaskPackageHTTPError, _task_package_error)
    app.add_exception_handler(StarletteHTTPException, _http_error)
    app.add_exception_handler(RequestValidationError, _validation_error)
    app.add_exception_handler(Exception, _unexpected_error)

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "healthy"}

    app.include_router(task_packages.router, prefix="/task-package", tags=["task-package"])
    app.include_router(edt_mode.router, prefix="/task-package/edt/mode", tags=["edt-mode"])

    return app


def build_default_app() -> FastAPI:
    config = TaskPackageConfig.from_env()
    configure_logging(config.log_level)
    return create_app(config)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(build_default_app(), host="0.0.0.0", port=8000)
