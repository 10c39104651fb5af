"""Append-only audit trail of the boleto flow (whatsapp_boleto_logs)."""

from typing import Any

from psycopg2.extensions import cursor as PgCursor
from psycopg2.extras import Json


def insert_log(
    cur: PgCursor,
    *,
    session_id: str,
    clinic_id: str,
    phone: str,
    action: str,
    details: dict[str, Any],
    success: bool,
    error_message: str | None = None,
    contribution_id: str | None = None,
) -> None:
    cur.execute(
        """
        INSERT INTO whatsapp_boleto_logs (
            session_id, clinic_id, phone, action, details,
            success, error_message, contribution_id
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
        """,
        (
            session_id,
            clinic_id,
            phone,
            action,
            Json(details),
            success,
            error_message,
            contribution_id,
        ),
    )
