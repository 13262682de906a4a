# app/main.py
from fastapi import FastAPI

from app.api.routes import health, internal, meetings, webhooks
from app.core.config import get_settings
from app.core.logging_config import configure_logging
from app.db.session import init_db
from app.services.runtime import get_runtime


def create_app() -> FastAPI:
    """
    Application factory for the attendance ledger service.
    """
    settings = get_settings()

    app = FastAPI(
        title=settings.APP_NAME,
        description=(
            "Ingests Zoom meeting lifecycle events, reconciles them against the\n"
            "post-meeting participant report and serves per-participant\n"
            "attendance verdicts."
        ),
        version="0.1.0",
    )

    # Routers
    app.include_router(health.router)
    app.include_router(webhooks.router)
    app.include_router(meetings.router)
    app.include_router(internal.router)

    @app.on_event("startup")
    async def on_startup() -> None:  # pragma: no cover
        configure_logging(settings.LOG_LEVEL)
        await init_db()
        await get_runtime().start()

    @app.on_event("shutdown")
    async def on_shutdown() -> None:  # pragma: no cover
        await get_runtime().shutdown()

    return app


app = create_app()
