"""
FastAPI application

Entry point of the fleet agent: registers with the backend on startup,
runs the control loops for the lifetime of the server and serves the
local inspection API.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from fleet_agent import __version__
from fleet_agent.application.agent import Agent
from fleet_agent.errors import AgentError, RegistrationError, TaskNotFoundError
from fleet_agent.infrastructure.config import AgentSettings, get_settings
from fleet_agent.infrastructure.logging import configure_logging, get_logger
from fleet_agent.interfaces.http.middleware import RequestLoggingMiddleware
from fleet_agent.interfaces.http.routes import router


logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Start the agent before serving and stop it on shutdown.

    A failed registration propagates, so the server never starts without
    being known to the backend.
    """
    agent: Agent = app.state.agent
    logger.info("Starting fleet agent", version=__version__)

    try:
        await agent.start()
    except RegistrationError as e:
        logger.error("Agent registration failed, refusing to start", error=e.message)
        await agent.backend.close()
        raise

    yield

    logger.info("Shutting down fleet agent")
    await agent.stop()


def create_app(agent: Optional[Agent] = None, settings: Optional[AgentSettings] = None) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        agent: Pre-built agent (tests inject one with a fake backend)
        settings: Settings used to build the agent when none is given
    """
    if agent is None:
        agent = Agent(settings or get_settings())

    app = FastAPI(
        title="Fleet Agent",
        description="Worker agent executing jobs for the backend controller",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.agent = agent

    _register_exception_handlers(app)
    app.add_middleware(RequestLoggingMiddleware)
    app.include_router(router)
    return app


def _register_exception_handlers(app: FastAPI) -> None:

    @app.exception_handler(TaskNotFoundError)
    async def not_found_exception_handler(request: Request, exc: TaskNotFoundError) -> JSONResponse:
        logger.warning("Task not found", path=request.url.path, task_id=exc.task_id)
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={
                "error": "Not Found",
                "message": exc.message,
                "detail": exc.to_json(),
            },
        )

    @app.exception_handler(AgentError)
    async def agent_exception_handler(request: Request, exc: AgentError) -> JSONResponse:
        logger.error("Request failed", path=request.url.path, error=exc.message)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal Server Error",
                "message": exc.message,
                "detail": exc.to_json(),
            },
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "Unhandled exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=exc,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal Server Error",
                "message": "An unexpected error occurred",
                "detail": None,
            },
        )


def main() -> None:
    """Console entry point: `fleet-agent`."""
    settings = get_settings()
    configure_logging(log_level=settings.log_level, log_format=settings.log_format)

    app = create_app(settings=settings)
    logger.info("Agent server listening", host=settings.host, port=settings.port)
    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
