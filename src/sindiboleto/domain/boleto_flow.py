"""Boleto flow engine: one inbound message in, next session and replies out.

The engine is synchronous and transport-agnostic. It never commits, never
sends messages and never touches the clock: the orchestrator hands it a
FlowContext bound to the current transaction and persists the returned
session with a version guard.

Security: NEVER log message text, phone numbers or CNPJs.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta
from typing import Any, Callable

from sindiboleto.domain.due_dates import base_due_date
from sindiboleto.domain.errors import (
    BillingError,
    InvoiceFailure,
    LookupNotFound,
    ValidationError,
)
from sindiboleto.domain.parsing import (
    detect_command,
    extract_cnpj,
    format_cnpj,
    parse_boleto_type,
    parse_competence,
    parse_currency_cents,
    parse_due_date,
    parse_menu_choice,
    parse_yes_no,
    wants_resend,
)
from sindiboleto.domain.ports import AuditLog, BillingRepository, Invoice, InvoiceIssuer
from sindiboleto.domain.states import (
    BoletoSession,
    Competence,
    ConfirmBoleto,
    ConfirmEmployer,
    Employer,
    Error,
    Finished,
    FlowState,
    Init,
    NewIssuance,
    Reissue,
    SelectBoletoType,
    SelectContribution,
    SelectContributionType,
    WaitingCnpj,
    WaitingCompetence,
    WaitingNewDueDate,
    WaitingReissueValue,
    WaitingValue,
)
from sindiboleto.observability.logging import get_logger
from sindiboleto.observability.redaction import hash_identifier, safe_log_context
from sindiboleto.whatsapp.templates import (
    competence_label,
    format_brl,
    format_date,
    numbered_contributions,
    numbered_types,
    pix_block,
    render,
)

logger = get_logger(__name__)

DEFAULT_MAX_INVALID_ATTEMPTS = 5

REISSUE_NOTE = "2ª via emitida via WhatsApp"

_KIND_NEW = "🆕 Novo boleto"
_KIND_REISSUE = "🔄 2ª via com nova data de vencimento"


@dataclass(frozen=True)
class FlowContext:
    """Everything a turn may read or write besides the session itself."""

    clinic_id: str
    today: date
    now: datetime
    session_ttl: timedelta
    billing: BillingRepository
    audit: AuditLog
    invoices: InvoiceIssuer | None = None
    max_invalid_attempts: int = DEFAULT_MAX_INVALID_ATTEMPTS


@dataclass(frozen=True)
class TurnResult:
    """Outcome of advance().

    Attributes:
        session: Session to persist (unchanged when duplicate).
        replies: Messages to send, in order.
        duplicate: True when message_id was already processed.
        contribution_id: Billing record written this turn, if any.
    """

    session: BoletoSession
    replies: tuple[str, ...]
    duplicate: bool = False
    contribution_id: str | None = None


@dataclass(frozen=True)
class _Step:
    state: FlowState
    replies: tuple[str, ...]
    invalid: bool = False
    neutral: bool = False
    contribution_id: str | None = None


def _invalid(state: FlowState, reply: str) -> _Step:
    return _Step(state=state, replies=(reply,), invalid=True)


def _audit(
    ctx: FlowContext,
    session: BoletoSession,
    action: str,
    details: dict[str, Any],
    *,
    success: bool = True,
    error_message: str | None = None,
    contribution_id: str | None = None,
) -> None:
    ctx.audit.record(
        session_id=session.id,
        clinic_id=ctx.clinic_id,
        phone=session.phone,
        action=action,
        details=details,
        success=success,
        error_message=error_message,
        contribution_id=contribution_id,
    )


def restart(session: BoletoSession, *, new_session_id: str, expires_at: datetime) -> BoletoSession:
    """Replace a finished, failed or expired conversation with a fresh INIT one.

    Conversation fields are discarded. The row version and the dedup window
    are carried over: the row is the same, only the conversation is new.
    """
    return BoletoSession(
        id=new_session_id,
        clinic_id=session.clinic_id,
        phone=session.phone,
        state=Init(),
        expires_at=expires_at,
        version=session.version,
        recent_message_ids=session.recent_message_ids,
    )


def advance(
    session: BoletoSession,
    text: str,
    ctx: FlowContext,
    *,
    message_id: str | None = None,
) -> TurnResult:
    """Apply one inbound message to a live session.

    Args:
        session: Current session, not terminal and not expired.
        text: Raw message text (never logged).
        ctx: Tenant-bound stores and clock for this turn.
        message_id: Provider message id used for redelivery detection.

    Returns:
        TurnResult with the next session. A redelivered message_id yields
        the previous replies and the session untouched.

    Raises:
        ValueError: If the session is terminal (restart it first).
    """
    if session.has_processed(message_id):
        logger.info(
            "duplicate delivery, re-emitting last replies",
            extra={
                "extra_fields": safe_log_context(
                    session_id=session.id,
                    state=session.state_name,
                )
            },
        )
        return TurnResult(session=session, replies=session.last_replies, duplicate=True)

    if session.is_terminal():
        raise ValueError(f"session {session.id} is terminal ({session.state_name})")

    try:
        step = _dispatch(session, text, ctx)
    except BillingError as exc:
        logger.error(
            "billing lookup failed",
            extra={
                "extra_fields": safe_log_context(
                    session_id=session.id,
                    state=session.state_name,
                    error_type=type(exc).__name__,
                )
            },
        )
        step = _Step(state=Error(reason="repository_failure"), replies=(render("boleto_error"),))

    if step.invalid:
        retries = session.retries + 1
        if retries >= ctx.max_invalid_attempts:
            _audit(
                ctx,
                session,
                "too_many_attempts",
                {"state": session.state_name, "attempts": retries},
                success=False,
            )
            step = _Step(state=Error(reason="too_many_attempts"), replies=(render("too_many_attempts"),))
    elif step.neutral:
        retries = session.retries
    else:
        retries = 0

    updated = replace(
        session,
        state=step.state,
        expires_at=ctx.now + ctx.session_ttl,
        turn=session.turn + 1,
        retries=retries,
        recent_message_ids=session.remember(message_id),
        last_replies=step.replies,
    )

    logger.info(
        "boleto turn applied",
        extra={
            "extra_fields": safe_log_context(
                session_id=session.id,
                from_state=session.state_name,
                to_state=updated.state_name,
                turn=updated.turn,
                retries=retries,
                invalid=step.invalid,
            )
        },
    )

    return TurnResult(session=updated, replies=step.replies, contribution_id=step.contribution_id)


def _dispatch(session: BoletoSession, text: str, ctx: FlowContext) -> _Step:
    state = session.state

    if not isinstance(state, Init):
        command = detect_command(text)
        if command == "menu":
            return _Step(state=SelectBoletoType(), replies=(render("welcome"),))
        if command == "cancel":
            _audit(ctx, session, "cancelled", {"state": session.state_name})
            return _Step(state=Finished(), replies=(render("cancelled"),))
        if command == "help":
            return _Step(state=state, replies=(render("help"),), neutral=True)

    handler = _HANDLERS[type(state)]
    return handler(session, state, text, ctx)


# ── Handlers ─────────────────────────────────────────────────────────────────


def _on_init(session: BoletoSession, state: Init, text: str, ctx: FlowContext) -> _Step:
    return _Step(state=SelectBoletoType(), replies=(render("welcome"),))


def _on_select_boleto_type(
    session: BoletoSession, state: SelectBoletoType, text: str, ctx: FlowContext
) -> _Step:
    if wants_resend(text):
        return _Step(
            state=WaitingCnpj(boleto_type="vencido", resend=True),
            replies=(render("ask_cnpj_resend"),),
        )
    try:
        boleto_type = parse_boleto_type(text)
    except ValidationError:
        return _invalid(state, render("welcome_invalid"))
    return _Step(state=WaitingCnpj(boleto_type=boleto_type), replies=(render("ask_cnpj"),))


def _lookup_employer(ctx: FlowContext, cnpj: str) -> Employer:
    employer = ctx.billing.find_employer_by_cnpj(ctx.clinic_id, cnpj)
    if employer is None:
        raise LookupNotFound("employer_not_found")
    return employer


def _on_waiting_cnpj(
    session: BoletoSession, state: WaitingCnpj, text: str, ctx: FlowContext
) -> _Step:
    try:
        cnpj = extract_cnpj(text)
        employer = _lookup_employer(ctx, cnpj)
    except LookupNotFound:
        _audit(ctx, session, "cnpj_not_found", {"cnpj": cnpj}, success=False)
        logger.info(
            "employer not found",
            extra={
                "extra_fields": safe_log_context(
                    session_id=session.id,
                    cnpj_hash=hash_identifier(cnpj),
                )
            },
        )
        return _invalid(state, render("employer_not_found", {"cnpj": format_cnpj(cnpj)}))
    except ValidationError:
        return _invalid(state, render("invalid_cnpj"))

    _audit(
        ctx,
        session,
        "employer_found",
        {"employer_id": employer.id, "boleto_type": state.boleto_type, "resend": state.resend},
    )

    if state.resend:
        latest = ctx.billing.find_latest_invoiced(ctx.clinic_id, employer.id)
        if latest is not None and latest.invoice_url:
            _audit(ctx, session, "link_resent", {"employer_id": employer.id}, contribution_id=latest.id)
            reply = render(
                "resend_found",
                {
                    "employer_name": employer.name,
                    "competence": competence_label(latest.competence),
                    "value": format_brl(latest.value_cents),
                    "due_date": format_date(latest.due_date),
                    "invoice_url": latest.invoice_url,
                    "pix_block": pix_block(latest.pix_code),
                },
            )
            return _Step(state=Finished(), replies=(reply,))

    return _Step(
        state=ConfirmEmployer(boleto_type=state.boleto_type, employer=employer),
        replies=(
            render(
                "confirm_employer",
                {"employer_name": employer.name, "cnpj": format_cnpj(employer.cnpj)},
            ),
        ),
    )


def _on_confirm_employer(
    session: BoletoSession, state: ConfirmEmployer, text: str, ctx: FlowContext
) -> _Step:
    try:
        confirmed = parse_yes_no(text)
    except ValidationError:
        return _invalid(state, render("confirm_employer_unclear", {"employer_name": state.employer.name}))

    if not confirmed:
        return _Step(state=WaitingCnpj(boleto_type=state.boleto_type), replies=(render("retry_cnpj"),))

    employer = state.employer
    if state.boleto_type == "a_vencer":
        types = ctx.billing.list_contribution_types(ctx.clinic_id)
        if not types:
            _audit(ctx, session, "no_contribution_types", {}, success=False)
            return _Step(state=Error(reason="no_contribution_types"), replies=(render("no_contribution_types"),))
        return _Step(
            state=SelectContributionType(employer=employer, types=tuple(types)),
            replies=(render("select_contribution_type", {"options": numbered_types(types)}),),
        )

    overdue = ctx.billing.list_overdue_contributions(ctx.clinic_id, employer.id, today=ctx.today)
    if not overdue:
        return _Step(state=Finished(), replies=(render("no_overdue", {"employer_name": employer.name}),))
    return _Step(
        state=SelectContribution(employer=employer, available=tuple(overdue)),
        replies=(
            render(
                "select_contribution",
                {"count": len(overdue), "options": numbered_contributions(overdue)},
            ),
        ),
    )


def _on_select_contribution_type(
    session: BoletoSession, state: SelectContributionType, text: str, ctx: FlowContext
) -> _Step:
    try:
        index = parse_menu_choice(text, len(state.types))
    except ValidationError:
        return _invalid(
            state,
            render(
                "invalid_contribution_type",
                {"count": len(state.types), "options": numbered_types(state.types)},
            ),
        )

    chosen = state.types[index]
    return _Step(
        state=WaitingCompetence(employer=state.employer, contribution_type=chosen),
        replies=(render("ask_competence", {"type_name": chosen.name}),),
    )


def _on_waiting_competence(
    session: BoletoSession, state: WaitingCompetence, text: str, ctx: FlowContext
) -> _Step:
    try:
        competence = parse_competence(text, today=ctx.today)
    except ValidationError:
        return _invalid(state, render("invalid_competence"))

    employer = state.employer
    existing = ctx.billing.find_active_contribution(
        ctx.clinic_id, employer.id, state.contribution_type.id, competence
    )
    if existing is None:
        return _Step(
            state=WaitingValue(
                employer=employer,
                contribution_type=state.contribution_type,
                competence=competence,
            ),
            replies=(render("ask_value"),),
        )

    label = competence_label(competence)
    if existing.status == "paid":
        return _Step(state=Finished(), replies=(render("already_paid", {"competence": label}),))

    if existing.invoice_url:
        _audit(ctx, session, "link_resent", {"employer_id": employer.id}, contribution_id=existing.id)
        reply = render(
            "already_issued",
            {
                "competence": label,
                "value": format_brl(existing.value_cents),
                "invoice_url": existing.invoice_url,
            },
        )
        return _Step(state=Finished(), replies=(reply,))

    # Existing record without a boleto: reissue it instead of duplicating the competence
    if not existing.has_value:
        return _Step(
            state=WaitingReissueValue(employer=employer, contribution=existing),
            replies=(render("existing_needs_value", {"competence": label}),),
        )
    return _Step(
        state=WaitingNewDueDate(
            employer=employer,
            contribution=existing,
            value_cents=existing.value_cents or 0,
        ),
        replies=(
            render(
                "existing_needs_due_date",
                {"competence": label, "value": format_brl(existing.value_cents)},
            ),
        ),
    )


def _on_waiting_value(
    session: BoletoSession, state: WaitingValue, text: str, ctx: FlowContext
) -> _Step:
    try:
        value_cents = parse_currency_cents(text)
    except ValidationError as exc:
        # reason is either invalid_value or ambiguous_value
        return _invalid(state, render(exc.reason))

    issuance = NewIssuance(
        contribution_type=state.contribution_type,
        competence=state.competence,
        value_cents=value_cents,
        due_date=base_due_date(state.competence),
    )
    return _Step(
        state=ConfirmBoleto(employer=state.employer, issuance=issuance),
        replies=(_confirm_prompt(state.employer, issuance),),
    )


def _on_waiting_reissue_value(
    session: BoletoSession, state: WaitingReissueValue, text: str, ctx: FlowContext
) -> _Step:
    try:
        value_cents = parse_currency_cents(text)
    except ValidationError as exc:
        return _invalid(state, render(exc.reason))

    return _Step(
        state=WaitingNewDueDate(
            employer=state.employer,
            contribution=state.contribution,
            value_cents=value_cents,
        ),
        replies=(render("value_then_due_date", {"value": format_brl(value_cents)}),),
    )


def _on_select_contribution(
    session: BoletoSession, state: SelectContribution, text: str, ctx: FlowContext
) -> _Step:
    try:
        index = parse_menu_choice(text, len(state.available))
    except ValidationError:
        return _invalid(
            state,
            render(
                "invalid_contribution",
                {
                    "count": len(state.available),
                    "options": numbered_contributions(state.available),
                },
            ),
        )

    chosen = state.available[index]
    if not chosen.has_value:
        return _Step(
            state=WaitingReissueValue(employer=state.employer, contribution=chosen),
            replies=(render("ask_value"),),
        )
    return _Step(
        state=WaitingNewDueDate(
            employer=state.employer,
            contribution=chosen,
            value_cents=chosen.value_cents or 0,
        ),
        replies=(render("ask_new_due_date", {"current_due_date": format_date(chosen.due_date)}),),
    )


def _on_waiting_new_due_date(
    session: BoletoSession, state: WaitingNewDueDate, text: str, ctx: FlowContext
) -> _Step:
    try:
        new_due_date = parse_due_date(text, today=ctx.today)
    except ValidationError:
        return _invalid(state, render("invalid_due_date"))

    reissue = Reissue(
        contribution=state.contribution,
        value_cents=state.value_cents,
        new_due_date=new_due_date,
    )
    return _Step(
        state=ConfirmBoleto(employer=state.employer, issuance=reissue),
        replies=(_confirm_prompt(state.employer, reissue),),
    )


def _on_confirm_boleto(
    session: BoletoSession, state: ConfirmBoleto, text: str, ctx: FlowContext
) -> _Step:
    try:
        confirmed = parse_yes_no(text)
    except ValidationError:
        return _invalid(state, render("invalid_confirmation"))

    if not confirmed:
        return _Step(state=SelectBoletoType(), replies=(render("welcome"),))

    issuance = state.issuance
    _, _, value_cents, due_date = _summary(issuance)

    try:
        contribution_id, invoice = _issue(state, ctx)
    except BillingError as exc:
        logger.error(
            "boleto issuance failed",
            extra={
                "extra_fields": safe_log_context(
                    session_id=session.id,
                    boleto_type=state.boleto_type,
                    error_type=type(exc).__name__,
                )
            },
        )
        _audit(
            ctx,
            session,
            "boleto_error",
            {"boleto_type": state.boleto_type},
            success=False,
            error_message=str(exc),
        )
        return _Step(state=Error(reason="billing_failure"), replies=(render("boleto_error"),))

    _audit(
        ctx,
        session,
        "boleto_generated",
        {
            "boleto_type": state.boleto_type,
            "value_cents": value_cents,
            "due_date": due_date.isoformat(),
            "invoice_id": invoice.id if invoice else None,
        },
        contribution_id=contribution_id,
    )

    if isinstance(issuance, Reissue) and invoice is not None:
        _cancel_previous_invoice(ctx, issuance)

    if invoice is not None and invoice.url:
        reply = render(
            "boleto_generated",
            {"invoice_url": invoice.url, "pix_block": pix_block(invoice.pix_code)},
        )
    else:
        reply = render(
            "boleto_registered",
            {"due_date": format_date(due_date), "value": format_brl(value_cents)},
        )
    return _Step(state=Finished(), replies=(reply,), contribution_id=contribution_id)


# ── Issuance ─────────────────────────────────────────────────────────────────


def _summary(issuance: NewIssuance | Reissue) -> tuple[str, Competence, int, date]:
    """(type name, competence, value, due date) of a draft."""
    if isinstance(issuance, Reissue):
        contribution = issuance.contribution
        type_name = (
            contribution.contribution_type.name if contribution.contribution_type else "Contribuição"
        )
        return type_name, contribution.competence, issuance.value_cents, issuance.new_due_date
    return (
        issuance.contribution_type.name,
        issuance.competence,
        issuance.value_cents,
        issuance.due_date,
    )


def _confirm_prompt(employer: Employer, issuance: NewIssuance | Reissue) -> str:
    type_name, competence, value_cents, due_date = _summary(issuance)
    return render(
        "confirm_boleto",
        {
            "employer_name": employer.name,
            "type_name": type_name,
            "competence": competence_label(competence),
            "value": format_brl(value_cents),
            "due_date": format_date(due_date),
            "kind": _KIND_REISSUE if isinstance(issuance, Reissue) else _KIND_NEW,
        },
    )


def _issue(state: ConfirmBoleto, ctx: FlowContext) -> tuple[str, Invoice | None]:
    """Write the billing record and, when configured, its invoice. All or nothing.

    Raises:
        BillingError: If the record or the invoice could not be written.
    """
    issuance = state.issuance
    type_name, competence, value_cents, due_date = _summary(issuance)

    with ctx.billing.atomic():
        if isinstance(issuance, Reissue):
            contribution_id = ctx.billing.reissue_contribution(
                ctx.clinic_id, issuance, note=f"{REISSUE_NOTE} em {format_date(ctx.today)}"
            )
        else:
            contribution_id = ctx.billing.create_contribution(
                ctx.clinic_id, state.employer.id, issuance
            )

        invoice = None
        if ctx.invoices is not None:
            invoice = ctx.invoices.create_invoice(
                employer=state.employer,
                value_cents=value_cents,
                due_date=due_date,
                description=f"{type_name} - {competence_label(competence)}",
                reference_id=contribution_id,
            )
            ctx.billing.attach_invoice(ctx.clinic_id, contribution_id, invoice)

    return contribution_id, invoice


def _cancel_previous_invoice(ctx: FlowContext, reissue: Reissue) -> None:
    old_invoice_id = reissue.contribution.invoice_id
    if not old_invoice_id or ctx.invoices is None:
        return
    try:
        ctx.invoices.cancel_invoice(old_invoice_id)
    except InvoiceFailure:
        # New invoice is already stored; the old one expires on its own
        logger.warning(
            "previous invoice cancellation failed",
            extra={
                "extra_fields": safe_log_context(
                    contribution_id=reissue.contribution.id,
                    invoice_id=old_invoice_id,
                )
            },
        )


_HANDLERS: dict[type, Callable[..., _Step]] = {
    Init: _on_init,
    SelectBoletoType: _on_select_boleto_type,
    WaitingCnpj: _on_waiting_cnpj,
    ConfirmEmployer: _on_confirm_employer,
    SelectContributionType: _on_select_contribution_type,
    WaitingCompetence: _on_waiting_competence,
    WaitingValue: _on_waiting_value,
    WaitingReissueValue: _on_waiting_reissue_value,
    SelectContribution: _on_select_contribution,
    WaitingNewDueDate: _on_waiting_new_due_date,
    ConfirmBoleto: _on_confirm_boleto,
}
