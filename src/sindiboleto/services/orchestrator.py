"""Conversation orchestrator: one inbound message, one transaction.

resolve tenant -> lock or create the (tenant, phone) session -> redelivery
check -> restart if finished/failed/expired -> engine -> versioned save ->
commit -> send replies.

Replies go out only after the commit: a turn that rolls back (stale write,
database fault) sends nothing and leaves no trace. Delivery failures are
logged, the turn stays committed.

Security: NEVER log phone numbers or message text.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, ContextManager, Literal

from sindiboleto.domain.boleto_flow import FlowContext, TurnResult, advance, restart
from sindiboleto.domain.errors import ConfigurationError, StaleSessionError
from sindiboleto.domain.ports import FlowStores, InvoiceIssuer, Tenant
from sindiboleto.infra.settings import Settings
from sindiboleto.infra.time import local_today, utc_now
from sindiboleto.observability.correlation import get_correlation_id
from sindiboleto.observability.logging import get_logger
from sindiboleto.observability.redaction import hash_identifier, safe_log_context
from sindiboleto.whatsapp.models import EvolutionConfig
from sindiboleto.whatsapp.outbound import send_text_via_evolution

logger = get_logger(__name__)

OutcomeStatus = Literal["ok", "duplicate", "ignored", "stale"]

UnitOfWork = Callable[[], ContextManager[FlowStores]]


@dataclass(frozen=True)
class InboundTurn:
    """One user message, from the webhook (instance) or a direct call (clinic_id)."""

    phone: str
    text: str
    message_id: str | None = None
    instance: str | None = None
    clinic_id: str | None = None
    force_restart: bool = False


@dataclass(frozen=True)
class TurnOutcome:
    status: OutcomeStatus
    session_id: str | None = None
    state: str | None = None
    replies: tuple[str, ...] = ()
    delivered: bool = False
    contribution_id: str | None = None

    @property
    def response(self) -> str:
        return "\n\n".join(self.replies)


class ConversationOrchestrator:
    def __init__(
        self,
        settings: Settings,
        unit_of_work: UnitOfWork,
        *,
        invoices: InvoiceIssuer | None = None,
        send_text: Callable[..., None] = send_text_via_evolution,
        clock: Callable[[], datetime] = utc_now,
        new_id: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        self._settings = settings
        self._unit_of_work = unit_of_work
        self._invoices = invoices
        self._send_text = send_text
        self._clock = clock
        self._new_id = new_id

    def handle_inbound(self, turn: InboundTurn) -> TurnOutcome:
        """Run one turn of the boleto conversation.

        Returns:
            TurnOutcome. "ignored" when the tenant cannot be resolved,
            "stale" when a concurrent turn won the version check.

        Raises:
            Exception: Database faults outside the billing calls propagate
                after the transaction is rolled back.
        """
        now = self._clock()
        ttl = self._settings.session_ttl
        log_ctx = safe_log_context(
            correlationId=get_correlation_id(),
            phone_hash=hash_identifier(turn.phone),
            message_id=turn.message_id,
        )

        try:
            with self._unit_of_work() as stores:
                tenant = _resolve_tenant(stores, turn)
                session = stores.sessions.load_or_create(
                    clinic_id=tenant.clinic_id,
                    phone=turn.phone,
                    new_session_id=self._new_id(),
                    expires_at=now + ttl,
                )
                loaded_version = session.version

                if not session.has_processed(turn.message_id) and (
                    turn.force_restart or session.is_terminal() or session.is_expired(now)
                ):
                    logger.info(
                        "starting new boleto session",
                        extra={
                            "extra_fields": safe_log_context(
                                **log_ctx,
                                previous_state=session.state_name,
                                expired=session.is_expired(now),
                            )
                        },
                    )
                    session = restart(session, new_session_id=self._new_id(), expires_at=now + ttl)

                ctx = FlowContext(
                    clinic_id=tenant.clinic_id,
                    today=local_today(now, self._settings.timezone),
                    now=now,
                    session_ttl=ttl,
                    billing=stores.billing,
                    audit=stores.audit,
                    invoices=self._invoices,
                    max_invalid_attempts=self._settings.max_invalid_attempts,
                )
                result = advance(session, turn.text, ctx, message_id=turn.message_id)

                if not result.duplicate:
                    stores.sessions.save(result.session, expected_version=loaded_version)
        except ConfigurationError as exc:
            logger.warning(
                "tenant not resolved, turn ignored",
                extra={"extra_fields": safe_log_context(**log_ctx, reason=str(exc))},
            )
            return TurnOutcome(status="ignored")
        except StaleSessionError:
            logger.warning(
                "concurrent turn won the session write, turn discarded",
                extra={"extra_fields": log_ctx},
            )
            return TurnOutcome(status="stale")

        delivered = self._deliver(tenant.gateway, turn.phone, result.replies, log_ctx)
        return _outcome(result, delivered)

    def _deliver(
        self,
        gateway: EvolutionConfig | None,
        phone: str,
        replies: tuple[str, ...],
        log_ctx: dict[str, str],
    ) -> bool:
        if gateway is None or not replies:
            return False
        for reply in replies:
            try:
                self._send_text(
                    gateway,
                    to_ref=phone,
                    text=reply,
                    correlation_id=get_correlation_id() or None,
                )
            except OSError as exc:
                # urllib errors and timeouts; the turn is already committed
                logger.error(
                    "reply delivery failed",
                    extra={"extra_fields": safe_log_context(**log_ctx, error_type=type(exc).__name__)},
                )
                return False
        return True


def _resolve_tenant(stores: FlowStores, turn: InboundTurn) -> Tenant:
    """Raises ConfigurationError when no tenant matches."""
    if turn.instance:
        tenant = stores.tenants.by_instance(turn.instance)
        if tenant is None:
            raise ConfigurationError("no active evolution config for instance")
        return tenant
    if turn.clinic_id:
        tenant = stores.tenants.by_clinic(turn.clinic_id)
        if tenant is None:
            raise ConfigurationError("unknown clinic")
        return tenant
    raise ConfigurationError("turn has neither instance nor clinic_id")


def _outcome(result: TurnResult, delivered: bool) -> TurnOutcome:
    return TurnOutcome(
        status="duplicate" if result.duplicate else "ok",
        session_id=result.session.id,
        state=result.session.state_name,
        replies=result.replies,
        delivered=delivered,
        contribution_id=result.contribution_id,
    )
