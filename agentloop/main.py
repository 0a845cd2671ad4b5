"""Main FastAPI application."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agentloop import __version__
from agentloop.api.endpoints import router
from agentloop.config import AgentConfig
from agentloop.services.orchestrator import AgentOrchestrator, create_orchestrator
from agentloop.utils.logging import get_logger, setup_logging

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the orchestrator from the environment unless one was injected."""
    if app.state.orchestrator is None:
        config = AgentConfig.from_env()
        setup_logging(config.log)
        app.state.orchestrator = create_orchestrator(config)
        logger.info(f"Agent service started with {config.backend.driver} backend ({config.backend.resolved_model})")
    yield


def create_app(orchestrator: AgentOrchestrator | None = None) -> FastAPI:
    """Create the FastAPI application.

    Args:
        orchestrator: Preconfigured orchestrator; built from the environment at startup when omitted

    Returns:
        The application
    """
    app = FastAPI(
        title="Agent Loop",
        description="Tool-calling AI agent with security policy and conversation memory.",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
        openapi_tags=[
            {
                "name": "Chat",
                "description": "Send a message through the agent loop, optionally streaming progress events.",
            },
            {
                "name": "Conversations",
                "description": "Inspect and delete stored conversations.",
            },
            {
                "name": "Health",
                "description": "Service health monitoring and status checks.",
            },
        ],
    )
    app.state.orchestrator = orchestrator

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("agentloop.main:app", host="0.0.0.0", port=8000, reload=True, log_level="info")
