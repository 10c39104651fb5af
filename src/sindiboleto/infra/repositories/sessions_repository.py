"""WhatsApp boleto sessions (whatsapp_boleto_sessions).

One row per (clinic_id, phone). The row is created race-free with
INSERT ... ON CONFLICT DO NOTHING, read under FOR UPDATE, and written back
only if its version is still the one that was read.

The state variant is flattened into the reporting columns (employer_*,
competence_*, value_cents, new_due_date, ...). Everything needed to rebuild
it, plus the turn bookkeeping, also goes into flow_context.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Any

from psycopg2.extensions import cursor as PgCursor
from psycopg2.extras import Json

from sindiboleto.domain.due_dates import base_due_date
from sindiboleto.domain.errors import StaleSessionError
from sindiboleto.domain.ports import SessionStore
from sindiboleto.domain.states import (
    BoletoSession,
    Competence,
    ConfirmBoleto,
    ConfirmEmployer,
    Contribution,
    ContributionType,
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
from sindiboleto.infra.db import for_update
from sindiboleto.observability.logging import get_logger
from sindiboleto.observability.redaction import safe_log_context

logger = get_logger(__name__)

_STATE_COLUMNS = (
    "state",
    "boleto_type",
    "employer_id",
    "employer_cnpj",
    "employer_name",
    "contribution_id",
    "contribution_type_id",
    "competence_month",
    "competence_year",
    "value_cents",
    "new_due_date",
    "available_contributions",
)

_COLUMNS = ("id", "clinic_id", "phone") + _STATE_COLUMNS + ("flow_context", "expires_at", "version")


# ── Codec ────────────────────────────────────────────────────────────────────


def _put_type(cols: dict[str, Any], ctx: dict[str, Any], contribution_type: ContributionType) -> None:
    cols["contribution_type_id"] = contribution_type.id
    ctx["contribution_type"] = contribution_type.to_dict()


def _put_competence(cols: dict[str, Any], competence: Competence) -> None:
    cols["competence_month"] = competence.month
    cols["competence_year"] = competence.year


def _put_contribution(cols: dict[str, Any], ctx: dict[str, Any], contribution: Contribution) -> None:
    cols["contribution_id"] = contribution.id
    if contribution.contribution_type is not None:
        cols["contribution_type_id"] = contribution.contribution_type.id
    _put_competence(cols, contribution.competence)
    ctx["contribution"] = contribution.to_dict()


def encode_state(state: FlowState) -> tuple[dict[str, Any], dict[str, Any]]:
    """Flatten a state into (columns, flow_context entries)."""
    cols: dict[str, Any] = dict.fromkeys(_STATE_COLUMNS)
    ctx: dict[str, Any] = {}

    cols["state"] = state.name
    cols["boleto_type"] = getattr(state, "boleto_type", None)

    employer = getattr(state, "employer", None)
    if employer is not None:
        cols["employer_id"] = employer.id
        cols["employer_cnpj"] = employer.cnpj
        cols["employer_name"] = employer.name
        ctx["employer"] = employer.to_dict()

    if isinstance(state, WaitingCnpj):
        ctx["resend_mode"] = state.resend
    elif isinstance(state, SelectContributionType):
        ctx["contribution_types"] = [t.to_dict() for t in state.types]
    elif isinstance(state, WaitingCompetence):
        _put_type(cols, ctx, state.contribution_type)
    elif isinstance(state, WaitingValue):
        _put_type(cols, ctx, state.contribution_type)
        _put_competence(cols, state.competence)
    elif isinstance(state, WaitingReissueValue):
        _put_contribution(cols, ctx, state.contribution)
    elif isinstance(state, SelectContribution):
        cols["available_contributions"] = [c.to_dict() for c in state.available]
    elif isinstance(state, WaitingNewDueDate):
        _put_contribution(cols, ctx, state.contribution)
        cols["value_cents"] = state.value_cents
    elif isinstance(state, ConfirmBoleto):
        issuance = state.issuance
        cols["value_cents"] = issuance.value_cents
        if isinstance(issuance, Reissue):
            _put_contribution(cols, ctx, issuance.contribution)
            cols["new_due_date"] = issuance.new_due_date
        else:
            _put_type(cols, ctx, issuance.contribution_type)
            _put_competence(cols, issuance.competence)
    elif isinstance(state, Error):
        ctx["error_reason"] = state.reason

    return cols, ctx


def decode_state(row: dict[str, Any]) -> FlowState:
    """Rebuild the state variant from a session row.

    Raises:
        KeyError, TypeError, ValueError: If the row is inconsistent.
    """
    name = row["state"]
    ctx = row.get("flow_context") or {}

    if name == "INIT":
        return Init()
    if name == "SELECT_BOLETO_TYPE":
        return SelectBoletoType()
    if name == "WAITING_CNPJ":
        return WaitingCnpj(
            boleto_type=row["boleto_type"] or "a_vencer",
            resend=bool(ctx.get("resend_mode")),
        )
    if name == "FINISHED":
        return Finished()
    if name == "ERROR":
        return Error(reason=ctx.get("error_reason") or "unknown")

    employer = Employer.from_dict(ctx["employer"])

    if name == "CONFIRM_EMPLOYER":
        return ConfirmEmployer(boleto_type=row["boleto_type"], employer=employer)
    if name == "SELECT_CONTRIBUTION_TYPE":
        types = tuple(ContributionType.from_dict(t) for t in ctx["contribution_types"])
        return SelectContributionType(employer=employer, types=types)
    if name == "SELECT_CONTRIBUTION":
        available = tuple(Contribution.from_dict(c) for c in row["available_contributions"])
        return SelectContribution(employer=employer, available=available)

    if "contribution" in ctx:
        contribution = Contribution.from_dict(ctx["contribution"])
        if name == "WAITING_VALUE":
            return WaitingReissueValue(employer=employer, contribution=contribution)
        if name == "WAITING_NEW_DUE_DATE":
            return WaitingNewDueDate(
                employer=employer,
                contribution=contribution,
                value_cents=int(row["value_cents"]),
            )
        if name == "CONFIRM_BOLETO":
            reissue = Reissue(
                contribution=contribution,
                value_cents=int(row["value_cents"]),
                new_due_date=row["new_due_date"],
            )
            return ConfirmBoleto(employer=employer, issuance=reissue)

    contribution_type = ContributionType.from_dict(ctx["contribution_type"])
    if name == "WAITING_COMPETENCE":
        return WaitingCompetence(employer=employer, contribution_type=contribution_type)

    competence = Competence(month=int(row["competence_month"]), year=int(row["competence_year"]))
    if name == "WAITING_VALUE":
        return WaitingValue(employer=employer, contribution_type=contribution_type, competence=competence)
    if name == "CONFIRM_BOLETO":
        issuance = NewIssuance(
            contribution_type=contribution_type,
            competence=competence,
            value_cents=int(row["value_cents"]),
            due_date=base_due_date(competence),
        )
        return ConfirmBoleto(employer=employer, issuance=issuance)

    raise ValueError(f"unknown session state {name!r}")


def decode_session(row: dict[str, Any]) -> BoletoSession:
    """Row dict -> BoletoSession. An undecodable state becomes ERROR."""
    ctx = row.get("flow_context") or {}
    try:
        state = decode_state(row)
    except (KeyError, TypeError, ValueError) as exc:
        logger.warning(
            "session row could not be decoded",
            extra={
                "extra_fields": safe_log_context(
                    session_id=str(row["id"]),
                    state=row.get("state"),
                    error_type=type(exc).__name__,
                )
            },
        )
        state = Error(reason="corrupt_session")

    return BoletoSession(
        id=str(row["id"]),
        clinic_id=str(row["clinic_id"]),
        phone=row["phone"],
        state=state,
        expires_at=row["expires_at"],
        version=int(row["version"]),
        turn=int(ctx.get("turn", 0)),
        retries=int(ctx.get("retries", 0)),
        recent_message_ids=tuple(ctx.get("recent_message_ids", ())),
        last_replies=tuple(ctx.get("last_replies", ())),
    )


def encode_session(session: BoletoSession) -> dict[str, Any]:
    """BoletoSession -> column values (flow_context as a plain dict)."""
    cols, ctx = encode_state(session.state)
    ctx.update(
        turn=session.turn,
        retries=session.retries,
        recent_message_ids=list(session.recent_message_ids),
        last_replies=list(session.last_replies),
    )
    return {
        "id": session.id,
        "clinic_id": session.clinic_id,
        "phone": session.phone,
        **cols,
        "flow_context": ctx,
        "expires_at": session.expires_at,
        "version": session.version,
    }


# ── SQL ──────────────────────────────────────────────────────────────────────


def load_or_create(
    cur: PgCursor,
    *,
    clinic_id: str,
    phone: str,
    new_session_id: str,
    expires_at: datetime,
) -> BoletoSession:
    """Lock and return the session row for (clinic_id, phone), inserting INIT if absent."""
    cur.execute(
        """
        INSERT INTO whatsapp_boleto_sessions (id, clinic_id, phone, state, flow_context, expires_at)
        VALUES (%s, %s, %s, 'INIT', %s, %s)
        ON CONFLICT (clinic_id, phone) DO NOTHING
        """,
        (new_session_id, clinic_id, phone, Json({}), expires_at),
    )
    row = for_update(
        cur,
        f"""
        SELECT {", ".join(_COLUMNS)}
        FROM whatsapp_boleto_sessions
        WHERE clinic_id = %s AND phone = %s
        """,
        (clinic_id, phone),
    )
    if row is None:
        raise RuntimeError("session row missing after insert")
    return decode_session(dict(zip(_COLUMNS, row)))


def save(cur: PgCursor, session: BoletoSession, *, expected_version: int) -> BoletoSession:
    """Write the session back if nobody else did since it was read.

    Raises:
        StaleSessionError: If the stored version differs from expected_version.
    """
    values = encode_session(session)
    cur.execute(
        """
        UPDATE whatsapp_boleto_sessions
        SET id = %s,
            state = %s,
            boleto_type = %s,
            employer_id = %s,
            employer_cnpj = %s,
            employer_name = %s,
            contribution_id = %s,
            contribution_type_id = %s,
            competence_month = %s,
            competence_year = %s,
            value_cents = %s,
            new_due_date = %s,
            available_contributions = %s,
            flow_context = %s,
            expires_at = %s,
            version = version + 1,
            updated_at = now()
        WHERE clinic_id = %s AND phone = %s AND version = %s
        """,
        (
            values["id"],
            values["state"],
            values["boleto_type"],
            values["employer_id"],
            values["employer_cnpj"],
            values["employer_name"],
            values["contribution_id"],
            values["contribution_type_id"],
            values["competence_month"],
            values["competence_year"],
            values["value_cents"],
            values["new_due_date"],
            Json(values["available_contributions"])
            if values["available_contributions"] is not None
            else None,
            Json(values["flow_context"]),
            values["expires_at"],
            session.clinic_id,
            session.phone,
            expected_version,
        ),
    )
    if cur.rowcount != 1:
        raise StaleSessionError(f"session {session.id} changed since version {expected_version}")
    return replace(session, version=expected_version + 1)


class PgSessionStore(SessionStore):
    def __init__(self, cur: PgCursor) -> None:
        self._cur = cur

    def load_or_create(
        self,
        *,
        clinic_id: str,
        phone: str,
        new_session_id: str,
        expires_at: datetime,
    ) -> BoletoSession:
        return load_or_create(
            self._cur,
            clinic_id=clinic_id,
            phone=phone,
            new_session_id=new_session_id,
            expires_at=expires_at,
        )

    def save(self, session: BoletoSession, *, expected_version: int) -> BoletoSession:
        return save(self._cur, session, expected_version=expected_version)
