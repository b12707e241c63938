import asyncio
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from cobra_chat.config import get_settings
from cobra_chat.routes import admin, chat, documents
from cobra_chat.services.container import ServiceContainer, build_services
from cobra_chat.utils.logger import logger, set_log_level


def _log_task_failure(task: asyncio.Task) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.error(f"Background task failed: {task.exception()}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Missing credentials fail here, at startup, not on the first request
    if getattr(app.state, "services", None) is None:
        app.state.services = build_services(get_settings())
    set_log_level(app.state.services.settings.LOG_LEVEL)

    # Warm the knowledge-base index without delaying startup
    warmup = asyncio.create_task(app.state.services.guidelines.build_index())
    warmup.add_done_callback(_log_task_failure)
    yield
    if not warmup.done():
        warmup.cancel()


def create_app(services: Optional[ServiceContainer] = None) -> FastAPI:
    app = FastAPI(
        title="Cobra Chat API",
        description="Study-assistant chat with semantic response caching, usage quotas and guideline retrieval",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.services = services

    # Allow CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Chat-Id", "X-Cache"],
    )

    app.include_router(chat.router)
    app.include_router(documents.router)
    app.include_router(admin.router)

    @app.get("/")
    async def root():
        """Health check endpoint."""
        return {"status": "running", "environment": app.state.services.settings.ENVIRONMENT}

    return app


app = create_app()
