"""FastAPI application factory.

Run with: uvicorn --factory sindiboleto.api.factory:create_app
"""

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from sindiboleto.billing.lytex_client import LytexClient
from sindiboleto.infra.repositories.pg_stores import pg_unit_of_work
from sindiboleto.infra.settings import Settings
from sindiboleto.observability.correlation import (
    CORRELATION_ID_HEADER,
    generate_correlation_id,
    reset_correlation_id,
    set_correlation_id,
)
from sindiboleto.services.orchestrator import ConversationOrchestrator

from .routers import public
from .routes import boleto_flow, webhooks_whatsapp

CORS_ALLOW_HEADERS = ["authorization", "x-client-info", "apikey", "content-type"]


def build_orchestrator(settings: Settings) -> ConversationOrchestrator:
    """Wire the Postgres stores and, when configured, the Lytex client."""
    invoices = LytexClient(settings.lytex) if settings.lytex else None
    return ConversationOrchestrator(settings, pg_unit_of_work(settings), invoices=invoices)


def create_app(
    settings: Settings | None = None,
    orchestrator: ConversationOrchestrator | None = None,
) -> FastAPI:
    """Create the FastAPI app.

    Args:
        settings: Explicit settings. If None, read from the environment.
        orchestrator: Explicit orchestrator (tests). If None, built from settings.

    Raises:
        ConfigurationError: If settings are read from an incomplete environment.
    """
    if settings is None:
        settings = Settings.from_env()
    if orchestrator is None:
        orchestrator = build_orchestrator(settings)

    app = FastAPI(
        title="Sindiboleto",
        docs_url=None,
        redoc_url=None,
    )
    app.state.settings = settings
    app.state.orchestrator = orchestrator

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=CORS_ALLOW_HEADERS,
    )

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next) -> Response:
        cid = request.headers.get(CORRELATION_ID_HEADER) or generate_correlation_id()
        token = set_correlation_id(cid)
        try:
            response = await call_next(request)
            response.headers[CORRELATION_ID_HEADER] = cid
            return response
        finally:
            reset_correlation_id(token)

    app.include_router(public.router)
    app.include_router(webhooks_whatsapp.router)
    app.include_router(boleto_flow.router)

    return app
