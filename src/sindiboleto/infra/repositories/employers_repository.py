"""Employers and contribution types, tenant-scoped.

Uses raw SQL with psycopg2 (no ORM). Callers run inside a transaction.
"""

from psycopg2.extensions import cursor as PgCursor

from sindiboleto.domain.parsing import format_cnpj
from sindiboleto.domain.states import ContributionType, Employer
from sindiboleto.infra.db import fetchall, fetchone


def find_employer_by_cnpj(cur: PgCursor, *, clinic_id: str, cnpj: str) -> Employer | None:
    """Active employer of this tenant whose CNPJ is `cnpj` (digits or formatted)."""
    row = fetchone(
        cur,
        """
        SELECT id, cnpj, name, email, phone
        FROM employers
        WHERE clinic_id = %s
          AND cnpj IN (%s, %s)
          AND is_active
        ORDER BY created_at
        LIMIT 1
        """,
        (clinic_id, cnpj, format_cnpj(cnpj)),
    )
    if row is None:
        return None
    employer_id, stored_cnpj, name, email, phone = row
    return Employer(
        id=str(employer_id),
        cnpj="".join(c for c in stored_cnpj if c.isdigit()),
        name=name,
        email=email,
        phone=phone,
    )


def list_contribution_types(cur: PgCursor, *, clinic_id: str) -> list[ContributionType]:
    rows = fetchall(
        cur,
        """
        SELECT id, name
        FROM contribution_types
        WHERE clinic_id = %s AND is_active
        ORDER BY name
        """,
        (clinic_id,),
    )
    return [ContributionType(id=str(type_id), name=name) for type_id, name in rows]
