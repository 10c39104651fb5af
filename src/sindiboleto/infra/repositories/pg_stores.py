"""Postgres implementations of the flow ports, bound to one cursor.

Every call runs under its own savepoint: a failed statement is rolled back
alone and surfaces as RepositoryFailure, leaving the turn's transaction
usable for the session write and the audit entry.
"""

from contextlib import contextmanager
from datetime import date
from typing import Any, Callable, ContextManager, Iterator

import psycopg2
from psycopg2.extensions import connection as PgConnection, cursor as PgCursor

from sindiboleto.domain.errors import RepositoryFailure
from sindiboleto.domain.ports import (
    AuditLog,
    BillingRepository,
    FlowStores,
    Invoice,
    Tenant,
    TenantDirectory,
)
from sindiboleto.domain.states import (
    Competence,
    Contribution,
    ContributionType,
    Employer,
    NewIssuance,
    Reissue,
)
from sindiboleto.infra.db import get_conn, savepoint, txn
from sindiboleto.infra.repositories import (
    boleto_logs_repository,
    contributions_repository,
    employers_repository,
    tenants_repository,
)
from sindiboleto.infra.repositories.sessions_repository import PgSessionStore
from sindiboleto.infra.settings import Settings
from sindiboleto.observability.logging import get_logger
from sindiboleto.observability.redaction import safe_log_context

logger = get_logger(__name__)


@contextmanager
def guarded(cur: PgCursor, operation: str) -> Iterator[None]:
    """Run statements under a savepoint; psycopg2 errors become RepositoryFailure."""
    try:
        with savepoint(cur):
            yield
    except psycopg2.Error as exc:
        logger.error(
            "repository operation failed",
            extra={
                "extra_fields": safe_log_context(
                    operation=operation,
                    error_type=type(exc).__name__,
                    pgcode=getattr(exc, "pgcode", None),
                )
            },
        )
        raise RepositoryFailure(f"{operation} failed") from exc


class PgBillingRepository(BillingRepository):
    def __init__(self, cur: PgCursor) -> None:
        self._cur = cur

    def atomic(self) -> ContextManager[None]:
        return guarded(self._cur, "atomic")

    def find_employer_by_cnpj(self, clinic_id: str, cnpj: str) -> Employer | None:
        with guarded(self._cur, "find_employer_by_cnpj"):
            return employers_repository.find_employer_by_cnpj(self._cur, clinic_id=clinic_id, cnpj=cnpj)

    def list_contribution_types(self, clinic_id: str) -> list[ContributionType]:
        with guarded(self._cur, "list_contribution_types"):
            return employers_repository.list_contribution_types(self._cur, clinic_id=clinic_id)

    def list_overdue_contributions(
        self, clinic_id: str, employer_id: str, *, today: date, limit: int = 10
    ) -> list[Contribution]:
        with guarded(self._cur, "list_overdue_contributions"):
            return contributions_repository.list_overdue(
                self._cur, clinic_id=clinic_id, employer_id=employer_id, today=today, limit=limit
            )

    def find_active_contribution(
        self,
        clinic_id: str,
        employer_id: str,
        contribution_type_id: str,
        competence: Competence,
    ) -> Contribution | None:
        with guarded(self._cur, "find_active_contribution"):
            return contributions_repository.find_active(
                self._cur,
                clinic_id=clinic_id,
                employer_id=employer_id,
                contribution_type_id=contribution_type_id,
                competence=competence,
            )

    def find_latest_invoiced(self, clinic_id: str, employer_id: str) -> Contribution | None:
        with guarded(self._cur, "find_latest_invoiced"):
            return contributions_repository.find_latest_invoiced(
                self._cur, clinic_id=clinic_id, employer_id=employer_id
            )

    def create_contribution(self, clinic_id: str, employer_id: str, issuance: NewIssuance) -> str:
        with guarded(self._cur, "create_contribution"):
            return contributions_repository.insert_contribution(
                self._cur, clinic_id=clinic_id, employer_id=employer_id, issuance=issuance
            )

    def reissue_contribution(self, clinic_id: str, reissue: Reissue, *, note: str) -> str:
        with guarded(self._cur, "reissue_contribution"):
            return contributions_repository.reissue_contribution(
                self._cur, clinic_id=clinic_id, reissue=reissue, note=note
            )

    def attach_invoice(self, clinic_id: str, contribution_id: str, invoice: Invoice) -> None:
        with guarded(self._cur, "attach_invoice"):
            contributions_repository.attach_invoice(
                self._cur, clinic_id=clinic_id, contribution_id=contribution_id, invoice=invoice
            )


class PgAuditLog(AuditLog):
    def __init__(self, cur: PgCursor) -> None:
        self._cur = cur

    def record(
        self,
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
        with guarded(self._cur, "audit_log"):
            boleto_logs_repository.insert_log(
                self._cur,
                session_id=session_id,
                clinic_id=clinic_id,
                phone=phone,
                action=action,
                details=details,
                success=success,
                error_message=error_message,
                contribution_id=contribution_id,
            )


class PgTenantDirectory(TenantDirectory):
    def __init__(self, cur: PgCursor) -> None:
        self._cur = cur

    def by_instance(self, instance_name: str) -> Tenant | None:
        return tenants_repository.find_by_instance(self._cur, instance_name=instance_name)

    def by_clinic(self, clinic_id: str) -> Tenant | None:
        return tenants_repository.find_by_clinic(self._cur, clinic_id=clinic_id)


def stores_for(cur: PgCursor) -> FlowStores:
    return FlowStores(
        sessions=PgSessionStore(cur),
        billing=PgBillingRepository(cur),
        audit=PgAuditLog(cur),
        tenants=PgTenantDirectory(cur),
    )


def pg_unit_of_work(settings: Settings) -> Callable[[], ContextManager[FlowStores]]:
    """Factory of per-turn transactions: commit on success, rollback on error."""

    @contextmanager
    def unit_of_work() -> Iterator[FlowStores]:
        conn: PgConnection = get_conn(settings.database_url, settings.db_password)
        try:
            with txn(conn) as cur:
                yield stores_for(cur)
        finally:
            conn.close()

    return unit_of_work
