"""WhatsApp webhook route - Evolution API integration.

The provider retries anything that is not 2xx, so every request with a
valid secret is acknowledged with 200 and a status: ok, duplicate or
ignored (plus error when the turn failed unexpectedly).

Security: phone and text exist only in memory for the turn. Logs carry
hashes and message id prefixes only.
"""

import hmac
from typing import Any

from fastapi import APIRouter, Depends, Header, Request, Response
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from sindiboleto.api.deps import get_orchestrator, get_settings
from sindiboleto.infra.settings import Settings
from sindiboleto.observability.correlation import get_correlation_id
from sindiboleto.observability.logging import get_logger
from sindiboleto.observability.redaction import safe_log_context
from sindiboleto.services.orchestrator import ConversationOrchestrator, InboundTurn
from sindiboleto.whatsapp.evolution_adapter import InvalidPayloadError, normalize

router = APIRouter(prefix="/webhooks/whatsapp", tags=["webhooks"])

logger = get_logger(__name__)


def _ack(status: str) -> JSONResponse:
    return JSONResponse(status_code=200, content={"status": status})


@router.post("/evolution")
async def evolution_webhook(
    request: Request,
    x_webhook_secret: str | None = Header(None, alias="X-Webhook-Secret"),
    settings: Settings = Depends(get_settings),
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
) -> Response:
    """Receive an Evolution API messages.upsert webhook and run one turn.

    Returns:
        200 with {"status": ok|duplicate|ignored|error}.
        401 if EVOLUTION_WEBHOOK_SECRET is set and the header does not match.
    """
    correlation_id = get_correlation_id()

    expected_secret = settings.webhook_secret
    if expected_secret and (
        not x_webhook_secret or not hmac.compare_digest(x_webhook_secret, expected_secret)
    ):
        logger.warning(
            "evolution webhook secret mismatch",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return Response(status_code=401, content="unauthorized")

    try:
        payload: dict[str, Any] = await request.json()
    except ValueError:
        logger.warning(
            "invalid json body",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return _ack("ignored")

    try:
        msg = normalize(payload)
    except InvalidPayloadError as exc:
        logger.info(
            "evolution payload ignored",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id, reason=str(exc))},
        )
        return _ack("ignored")

    log_ctx = safe_log_context(
        correlationId=correlation_id,
        instance=msg.instance,
        message_id_prefix=msg.message_id[:8],
        kind=msg.kind,
    )

    if not msg.is_processable:
        logger.info(
            "evolution message skipped",
            extra={
                "extra_fields": safe_log_context(
                    **log_ctx, from_me=msg.from_me, is_group=msg.is_group
                )
            },
        )
        return _ack("ignored")

    logger.info("evolution webhook received", extra={"extra_fields": log_ctx})

    turn = InboundTurn(
        phone=msg.phone,
        text=msg.text or "",
        message_id=msg.message_id,
        instance=msg.instance,
    )
    try:
        outcome = await run_in_threadpool(orchestrator.handle_inbound, turn)
    except Exception:
        # Acknowledge anyway: a provider retry would replay the same failure
        logger.exception("boleto turn failed", extra={"extra_fields": log_ctx})
        return _ack("error")

    # A lost version race is acknowledged as a duplicate delivery
    status = "duplicate" if outcome.status == "stale" else outcome.status
    return _ack(status)
