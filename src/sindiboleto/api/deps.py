"""Request-scoped dependencies."""

from fastapi import Request

from sindiboleto.infra.settings import Settings
from sindiboleto.services.orchestrator import ConversationOrchestrator


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_orchestrator(request: Request) -> ConversationOrchestrator:
    return request.app.state.orchestrator
