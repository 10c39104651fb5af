"""Direct invocation of the boleto flow.

Used by other services (e.g. a main WhatsApp menu) that already know the
tenant: {clinic_id, phone, message, message_id?, action?}. action "start"
discards any conversation in progress.
"""

from typing import Literal

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from sindiboleto.api.deps import get_orchestrator
from sindiboleto.observability.correlation import get_correlation_id
from sindiboleto.observability.logging import get_logger
from sindiboleto.observability.redaction import safe_log_context
from sindiboleto.services.orchestrator import ConversationOrchestrator, InboundTurn

router = APIRouter(tags=["boleto"])

logger = get_logger(__name__)


class BoletoFlowRequest(BaseModel):
    clinic_id: str | None = None
    phone: str | None = None
    message: str | None = None
    message_id: str | None = None
    action: Literal["start", "message"] | None = None


@router.post("/boleto-flow")
def boleto_flow(
    body: BoletoFlowRequest,
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """Run one turn for (clinic_id, phone).

    Returns:
        200 {success, response, session_id, state}.
        400 if clinic_id or phone is missing.
        404 if clinic_id is not a known tenant.
        409 if a concurrent turn for the same phone won.
        500 on unexpected failure.
    """
    if not body.clinic_id or not body.phone:
        return JSONResponse(
            status_code=400,
            content={"error": "clinic_id and phone are required"},
        )

    turn = InboundTurn(
        phone=body.phone,
        text=body.message or "",
        message_id=body.message_id,
        clinic_id=body.clinic_id,
        force_restart=body.action == "start",
    )
    try:
        outcome = orchestrator.handle_inbound(turn)
    except Exception:
        logger.exception(
            "direct boleto turn failed",
            extra={"extra_fields": safe_log_context(correlationId=get_correlation_id())},
        )
        return JSONResponse(status_code=500, content={"success": False, "error": "internal error"})

    if outcome.status == "ignored":
        return JSONResponse(status_code=404, content={"success": False, "error": "clinic not found"})
    if outcome.status == "stale":
        return JSONResponse(
            status_code=409,
            content={"success": False, "error": "concurrent message for this phone"},
        )

    return JSONResponse(
        status_code=200,
        content={
            "success": True,
            "response": outcome.response,
            "session_id": outcome.session_id,
            "state": outcome.state,
        },
    )
