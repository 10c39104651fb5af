"""Boleto flow schema (SQL-only).

Revision ID: 001_boleto_schema
Revises:
Create Date: 2026-10-17
"""

from __future__ import annotations

from pathlib import Path

from alembic import op

revision = "001_boleto_schema"
down_revision = None
branch_labels = None
depends_on = None

_TABLES = (
    "whatsapp_boleto_logs",
    "whatsapp_boleto_sessions",
    "employer_contributions",
    "contribution_types",
    "employers",
    "evolution_configs",
    "clinics",
)


def upgrade() -> None:
    sql_path = Path(__file__).resolve().parents[1] / "sql" / "001_boleto_schema.sql"
    conn = op.get_bind()
    conn.exec_driver_sql(sql_path.read_text(encoding="utf-8"))


def downgrade() -> None:
    conn = op.get_bind()
    for table in _TABLES:
        conn.exec_driver_sql(f"DROP TABLE IF EXISTS {table} CASCADE;")
