from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from dotenv import load_dotenv
from fastapi import FastAPI

from agentrelay.api import relay
from agentrelay.api.router import api_router
from agentrelay.config import Settings, get_settings
from agentrelay.console import LocalConsole
from agentrelay.sessions.hub import SessionHub

logger = structlog.get_logger()

load_dotenv()


def build_hub(settings: Settings, console: LocalConsole | None = None) -> SessionHub:
    """Construct the session hub described by settings."""
    return SessionHub(
        command=settings.command,
        args=settings.command_args,
        cols=settings.pty_cols,
        rows=settings.pty_rows,
        backlog_size=settings.backlog_size,
        window_size=settings.classifier_window,
        frame_delay=settings.frame_delay_ms / 1000,
        sync_hold=settings.sync_hold_ms / 1000,
        mirror=console.write if console is not None else None,
    )


@asynccontextmanager
async def lifespan(
    app: FastAPI,
) -> AsyncGenerator[None]:
    settings = get_settings()
    logger.info("starting_up", version=settings.app_version)

    console: LocalConsole | None = getattr(app.state, "console", None)
    hub: SessionHub | None = getattr(app.state, "hub", None)
    owns_hub = hub is None
    if hub is None:
        hub = build_hub(settings, console)
        app.state.hub = hub
    if console is not None:
        console.attach(hub.accept_local_input)

    logger.info(
        "relay_ready",
        command=hub.session.command,
        args=hub.session.args,
    )

    yield

    if console is not None:
        console.detach()
    await hub.shutdown()
    if owns_hub:
        # One token per run: the next startup builds a fresh hub.
        app.state.hub = None
    logger.info("shutting_down")


def create_app(
    hub: SessionHub | None = None,
    console: LocalConsole | None = None,
) -> FastAPI:
    """Build and return the FastAPI application.

    A prebuilt ``hub`` is used as is; otherwise one is built
    from settings when the app starts.
    """
    settings = get_settings()
    application = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
    )
    if hub is not None:
        application.state.hub = hub
    if console is not None:
        application.state.console = console
    application.include_router(api_router, prefix="/api/v1")
    application.include_router(relay.router)
    return application


app = create_app()
