"""Interfaces the flow depends on.

Postgres implementations live in sindiboleto.infra.repositories; tests use
in-memory ones. Every billing call takes clinic_id explicitly: there is no
query that is not tenant-scoped.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, ContextManager

from sindiboleto.domain.states import (
    BoletoSession,
    Competence,
    Contribution,
    ContributionType,
    Employer,
    NewIssuance,
    Reissue,
)
from sindiboleto.whatsapp.models import EvolutionConfig


@dataclass(frozen=True)
class Invoice:
    """Payment document issued by the payment provider."""

    id: str
    url: str | None
    pix_code: str | None = None
    pix_qrcode: str | None = None
    barcode: str | None = None
    digitable_line: str | None = None


@dataclass(frozen=True)
class Tenant:
    """Clinic/union plus its WhatsApp gateway credentials, when configured."""

    clinic_id: str
    gateway: EvolutionConfig | None = None


class SessionStore(ABC):
    """Single-writer-per-key store of BoletoSession rows."""

    @abstractmethod
    def load_or_create(
        self,
        *,
        clinic_id: str,
        phone: str,
        new_session_id: str,
        expires_at: datetime,
    ) -> BoletoSession:
        """Return the (locked) session row for (clinic_id, phone), creating an INIT one."""

    @abstractmethod
    def save(self, session: BoletoSession, *, expected_version: int) -> BoletoSession:
        """Persist session if its stored version still equals expected_version.

        Raises:
            StaleSessionError: If another writer got there first.
        """


class BillingRepository(ABC):
    """Employer and contribution access, always scoped by clinic_id."""

    @abstractmethod
    def atomic(self) -> ContextManager[None]:
        """Group writes: if the block raises, none of them persist."""

    @abstractmethod
    def find_employer_by_cnpj(self, clinic_id: str, cnpj: str) -> Employer | None: ...

    @abstractmethod
    def list_contribution_types(self, clinic_id: str) -> list[ContributionType]: ...

    @abstractmethod
    def list_overdue_contributions(
        self, clinic_id: str, employer_id: str, *, today: date, limit: int = 10
    ) -> list[Contribution]: ...

    @abstractmethod
    def find_active_contribution(
        self,
        clinic_id: str,
        employer_id: str,
        contribution_type_id: str,
        competence: Competence,
    ) -> Contribution | None: ...

    @abstractmethod
    def find_latest_invoiced(self, clinic_id: str, employer_id: str) -> Contribution | None: ...

    @abstractmethod
    def create_contribution(
        self, clinic_id: str, employer_id: str, issuance: NewIssuance
    ) -> str:
        """Insert a pending contribution and return its id."""

    @abstractmethod
    def reissue_contribution(self, clinic_id: str, reissue: Reissue, *, note: str) -> str:
        """Move an existing contribution to its new due date and return its id."""

    @abstractmethod
    def attach_invoice(self, clinic_id: str, contribution_id: str, invoice: Invoice) -> None: ...


class AuditLog(ABC):
    """Append-only log of flow actions (whatsapp_boleto_logs)."""

    @abstractmethod
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
    ) -> None: ...


class TenantDirectory(ABC):
    """Resolves which tenant a gateway instance or direct call belongs to."""

    @abstractmethod
    def by_instance(self, instance_name: str) -> Tenant | None: ...

    @abstractmethod
    def by_clinic(self, clinic_id: str) -> Tenant | None: ...


class InvoiceIssuer(ABC):
    """Payment provider that turns a contribution into a payable boleto/PIX."""

    @abstractmethod
    def create_invoice(
        self,
        *,
        employer: Employer,
        value_cents: int,
        due_date: date,
        description: str,
        reference_id: str,
    ) -> Invoice: ...

    @abstractmethod
    def cancel_invoice(self, invoice_id: str) -> None: ...


@dataclass(frozen=True)
class FlowStores:
    """Stores bound to one transaction."""

    sessions: SessionStore
    billing: BillingRepository
    audit: AuditLog
    tenants: TenantDirectory
