"""FastAPI application for the work note retrieval service.

The service graph (engine, Qdrant client, embedding client, background
runner) is built in the lifespan by a container factory and torn down after
outstanding background embedding work has drained. Every error response uses
the ``{"error": {message, code, status_code, details}}`` envelope.
"""

from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from worknote_retrieval import __version__
from worknote_retrieval.api.v1.router import router as v1_router
from worknote_retrieval.config import get_settings
from worknote_retrieval.container import ServiceContainer, build_container
from worknote_retrieval.database.session import init_db
from worknote_retrieval.middleware import setup_middleware
from worknote_retrieval.utils.errors import RetrievalException
from worknote_retrieval.utils.logging import get_logger, log_error, setup_logging

setup_logging()
logger = get_logger("main")


def error_response(
    status_code: int,
    message: Any,
    code: str,
    details: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": {
                "message": message,
                "code": code,
                "status_code": status_code,
                "details": details or {},
            }
        },
    )


def register_exception_handlers(app: FastAPI) -> None:
    settings = get_settings()

    @app.exception_handler(RetrievalException)
    async def retrieval_exception_handler(request: Request, exc: RetrievalException) -> JSONResponse:
        context = {"path": request.url.path, "status_code": exc.status_code}
        if exc.status_code >= 500:
            log_error(exc, context=context)
        else:
            logger.warning(f"{exc.code} on {request.method} {request.url.path}: {exc.message}", extra=context)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        logger.warning(f"HTTP {exc.status_code} on {request.method} {request.url.path}")
        return error_response(exc.status_code, exc.detail, "HTTP_ERROR")

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = [
            {
                "field": ".".join(str(part) for part in error.get("loc", ())),
                "message": error.get("msg"),
                "type": error.get("type"),
            }
            for error in exc.errors()
        ]
        logger.warning(
            f"Invalid request on {request.method} {request.url.path}",
            extra={"validation_errors": errors},
        )
        return error_response(
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            "Validation failed",
            "VALIDATION_ERROR",
            {"validation_errors": errors},
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        log_error(exc, context={"path": request.url.path, "unhandled": True})
        if settings.is_production:
            return error_response(500, "An internal server error occurred", "INTERNAL_SERVER_ERROR")
        return error_response(
            500, str(exc), "INTERNAL_SERVER_ERROR", {"exception_type": type(exc).__name__}
        )


def create_app(container_factory: Optional[Callable[[], ServiceContainer]] = None) -> FastAPI:
    """
    Build the application.

    Args:
        container_factory: Builds the service graph at startup; defaults to
            :func:`build_container` driven by environment settings
    """
    settings = get_settings()
    factory = container_factory or build_container

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting work note retrieval service...")
        container = factory()
        try:
            await init_db(container.engine)
            app.state.container = container
            logger.info("Work note retrieval service started successfully")
            yield
        finally:
            logger.info("Shutting down work note retrieval service...")
            try:
                await container.close()
                logger.info("Work note retrieval service shut down successfully")
            except Exception as e:
                logger.error(f"Error during shutdown: {e}", exc_info=True)

    app = FastAPI(
        title="Work Note Retrieval",
        description="Embedding consistency and hybrid retrieval for work notes.",
        version=__version__,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        debug=settings.debug,
        lifespan=lifespan,
    )

    setup_middleware(app)
    app.include_router(v1_router)
    register_exception_handlers(app)
    return app


app = create_app()


def run() -> None:
    """Run the service with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "worknote_retrieval.main:app",
        host=settings.server.host,
        port=settings.server.port,
        reload=settings.server.reload,
    )


if __name__ == "__main__":
    run()
