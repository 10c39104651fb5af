"""Employer contributions (billing records), tenant-scoped.

Uses raw SQL with psycopg2 (no ORM). Callers run inside a transaction.
Statuses: pending, overdue, processing, paid, cancelled.
"""

from datetime import date
from typing import Any

from psycopg2.extensions import cursor as PgCursor

from sindiboleto.domain.errors import RepositoryFailure
from sindiboleto.domain.ports import Invoice
from sindiboleto.domain.states import Competence, Contribution, ContributionType, NewIssuance, Reissue
from sindiboleto.infra.db import fetchall, fetchone

OPEN_STATUSES = ("pending", "overdue")

CREATED_NOTE = "Criado via WhatsApp"

_SELECT = """
    SELECT c.id, c.competence_month, c.competence_year, c.due_date, c.status,
           c.value_cents, c.contribution_type_id, t.name,
           c.lytex_invoice_id, c.lytex_invoice_url, c.lytex_pix_code,
           c.reissue_count, c.notes
    FROM employer_contributions c
    LEFT JOIN contribution_types t ON t.id = c.contribution_type_id
"""


def _to_contribution(row: tuple[Any, ...]) -> Contribution:
    (
        contribution_id,
        month,
        year,
        due_date,
        status,
        value_cents,
        type_id,
        type_name,
        invoice_id,
        invoice_url,
        pix_code,
        reissue_count,
        notes,
    ) = row
    return Contribution(
        id=str(contribution_id),
        competence=Competence(month=int(month), year=int(year)),
        due_date=due_date,
        status=status,
        value_cents=int(value_cents) if value_cents is not None else None,
        contribution_type=ContributionType(id=str(type_id), name=type_name) if type_id else None,
        invoice_id=invoice_id,
        invoice_url=invoice_url,
        pix_code=pix_code,
        reissue_count=reissue_count or 0,
        notes=notes,
    )


def list_overdue(
    cur: PgCursor, *, clinic_id: str, employer_id: str, today: date, limit: int = 10
) -> list[Contribution]:
    """Open contributions past their due date, most recent first."""
    rows = fetchall(
        cur,
        _SELECT
        + """
        WHERE c.clinic_id = %s
          AND c.employer_id = %s
          AND c.due_date < %s
          AND c.status IN %s
        ORDER BY c.due_date DESC
        LIMIT %s
        """,
        (clinic_id, employer_id, today, OPEN_STATUSES, limit),
    )
    return [_to_contribution(row) for row in rows]


def find_active(
    cur: PgCursor,
    *,
    clinic_id: str,
    employer_id: str,
    contribution_type_id: str,
    competence: Competence,
) -> Contribution | None:
    """Non-cancelled contribution for this employer, type and competence."""
    row = fetchone(
        cur,
        _SELECT
        + """
        WHERE c.clinic_id = %s
          AND c.employer_id = %s
          AND c.contribution_type_id = %s
          AND c.competence_month = %s
          AND c.competence_year = %s
          AND c.status <> 'cancelled'
        LIMIT 1
        """,
        (clinic_id, employer_id, contribution_type_id, competence.month, competence.year),
    )
    return _to_contribution(row) if row else None


def find_latest_invoiced(cur: PgCursor, *, clinic_id: str, employer_id: str) -> Contribution | None:
    """Most recently created open contribution that has a payment link."""
    row = fetchone(
        cur,
        _SELECT
        + """
        WHERE c.clinic_id = %s
          AND c.employer_id = %s
          AND c.lytex_invoice_url IS NOT NULL
          AND c.status IN %s
        ORDER BY c.created_at DESC
        LIMIT 1
        """,
        (clinic_id, employer_id, OPEN_STATUSES),
    )
    return _to_contribution(row) if row else None


def insert_contribution(
    cur: PgCursor, *, clinic_id: str, employer_id: str, issuance: NewIssuance
) -> str:
    row = fetchone(
        cur,
        """
        INSERT INTO employer_contributions (
            clinic_id, employer_id, contribution_type_id,
            competence_month, competence_year, value_cents, due_date,
            status, notes, origin
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s, 'pending', %s, 'whatsapp')
        RETURNING id
        """,
        (
            clinic_id,
            employer_id,
            issuance.contribution_type.id,
            issuance.competence.month,
            issuance.competence.year,
            issuance.value_cents,
            issuance.due_date,
            CREATED_NOTE,
        ),
    )
    if row is None:
        raise RepositoryFailure("contribution insert returned no id")
    return str(row[0])


def reissue_contribution(cur: PgCursor, *, clinic_id: str, reissue: Reissue, note: str) -> str:
    """Move the record to its new due date and value, dropping the old invoice data."""
    row = fetchone(
        cur,
        """
        UPDATE employer_contributions
        SET due_date = %s,
            value_cents = %s,
            status = 'pending',
            lytex_invoice_id = NULL,
            lytex_invoice_url = NULL,
            lytex_pix_code = NULL,
            lytex_pix_qrcode = NULL,
            lytex_boleto_barcode = NULL,
            lytex_boleto_digitable_line = NULL,
            notes = CASE WHEN coalesce(notes, '') = '' THEN %s ELSE notes || ' | ' || %s END,
            reissue_count = reissue_count + 1,
            updated_at = now()
        WHERE id = %s AND clinic_id = %s AND status <> 'paid'
        RETURNING id
        """,
        (
            reissue.new_due_date,
            reissue.value_cents,
            note,
            note,
            reissue.contribution.id,
            clinic_id,
        ),
    )
    if row is None:
        raise RepositoryFailure("contribution to reissue not found or already paid")
    return str(row[0])


def attach_invoice(cur: PgCursor, *, clinic_id: str, contribution_id: str, invoice: Invoice) -> None:
    cur.execute(
        """
        UPDATE employer_contributions
        SET lytex_invoice_id = %s,
            lytex_invoice_url = %s,
            lytex_pix_code = %s,
            lytex_pix_qrcode = %s,
            lytex_boleto_barcode = %s,
            lytex_boleto_digitable_line = %s,
            updated_at = now()
        WHERE id = %s AND clinic_id = %s
        """,
        (
            invoice.id,
            invoice.url,
            invoice.pix_code,
            invoice.pix_qrcode,
            invoice.barcode,
            invoice.digitable_line,
            contribution_id,
            clinic_id,
        ),
    )
    if cur.rowcount != 1:
        raise RepositoryFailure("contribution to attach invoice not found")
