"""Boleto conversation states.

Each state is its own frozen dataclass carrying only the data that is valid
while the conversation sits in it, so a session can never be "waiting for a
value" without an employer, or "confirming a reissue" without the record
being reissued. The persisted row is flat; the sessions repository flattens
and rebuilds these variants.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, ClassVar, Literal, Union

BoletoType = Literal["a_vencer", "vencido"]

BOLETO_STATES: tuple[str, ...] = (
    "INIT",
    "SELECT_BOLETO_TYPE",
    "WAITING_CNPJ",
    "CONFIRM_EMPLOYER",
    "SELECT_CONTRIBUTION_TYPE",
    "WAITING_COMPETENCE",
    "WAITING_VALUE",
    "SELECT_CONTRIBUTION",
    "WAITING_NEW_DUE_DATE",
    "CONFIRM_BOLETO",
    "FINISHED",
    "ERROR",
)

TERMINAL_STATES: frozenset[str] = frozenset({"FINISHED", "ERROR"})


# ── Value objects ────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Competence:
    """Billing period (month/year) a contribution refers to."""

    month: int
    year: int


@dataclass(frozen=True)
class Employer:
    """Employer resolved from a CNPJ within one tenant."""

    id: str
    cnpj: str
    name: str
    email: str | None = None
    phone: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "cnpj": self.cnpj,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Employer:
        return cls(
            id=str(data["id"]),
            cnpj=data["cnpj"],
            name=data["name"],
            email=data.get("email"),
            phone=data.get("phone"),
        )


@dataclass(frozen=True)
class ContributionType:
    """Tenant-configured contribution category (e.g. mensalidade sindical)."""

    id: str
    name: str

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ContributionType:
        return cls(id=str(data["id"]), name=data["name"])


@dataclass(frozen=True)
class Contribution:
    """Existing billing record (employer_contributions row)."""

    id: str
    competence: Competence
    due_date: date
    status: str
    value_cents: int | None = None
    contribution_type: ContributionType | None = None
    invoice_id: str | None = None
    invoice_url: str | None = None
    pix_code: str | None = None
    reissue_count: int = 0
    notes: str | None = None

    @property
    def has_value(self) -> bool:
        return self.value_cents is not None and self.value_cents > 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "competence_month": self.competence.month,
            "competence_year": self.competence.year,
            "due_date": self.due_date.isoformat(),
            "status": self.status,
            "value_cents": self.value_cents,
            "contribution_type": self.contribution_type.to_dict()
            if self.contribution_type
            else None,
            "invoice_id": self.invoice_id,
            "invoice_url": self.invoice_url,
            "pix_code": self.pix_code,
            "reissue_count": self.reissue_count,
            "notes": self.notes,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Contribution:
        ctype = data.get("contribution_type")
        value = data.get("value_cents")
        return cls(
            id=str(data["id"]),
            competence=Competence(
                month=int(data["competence_month"]),
                year=int(data["competence_year"]),
            ),
            due_date=date.fromisoformat(data["due_date"]),
            status=data["status"],
            value_cents=int(value) if value is not None else None,
            contribution_type=ContributionType.from_dict(ctype) if ctype else None,
            invoice_id=data.get("invoice_id"),
            invoice_url=data.get("invoice_url"),
            pix_code=data.get("pix_code"),
            reissue_count=int(data.get("reissue_count") or 0),
            notes=data.get("notes"),
        )


@dataclass(frozen=True)
class NewIssuance:
    """Draft of a brand-new contribution (a_vencer path)."""

    contribution_type: ContributionType
    competence: Competence
    value_cents: int
    due_date: date


@dataclass(frozen=True)
class Reissue:
    """Draft of a due-date renegotiation of an existing record (vencido path)."""

    contribution: Contribution
    value_cents: int
    new_due_date: date


# ── States ───────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Init:
    name: ClassVar[str] = "INIT"


@dataclass(frozen=True)
class SelectBoletoType:
    name: ClassVar[str] = "SELECT_BOLETO_TYPE"


@dataclass(frozen=True)
class WaitingCnpj:
    name: ClassVar[str] = "WAITING_CNPJ"

    boleto_type: BoletoType
    resend: bool = False


@dataclass(frozen=True)
class ConfirmEmployer:
    name: ClassVar[str] = "CONFIRM_EMPLOYER"

    boleto_type: BoletoType
    employer: Employer


@dataclass(frozen=True)
class SelectContributionType:
    name: ClassVar[str] = "SELECT_CONTRIBUTION_TYPE"
    boleto_type: ClassVar[BoletoType] = "a_vencer"

    employer: Employer
    types: tuple[ContributionType, ...]


@dataclass(frozen=True)
class WaitingCompetence:
    name: ClassVar[str] = "WAITING_COMPETENCE"
    boleto_type: ClassVar[BoletoType] = "a_vencer"

    employer: Employer
    contribution_type: ContributionType


@dataclass(frozen=True)
class WaitingValue:
    """Waiting for the amount of a new contribution."""

    name: ClassVar[str] = "WAITING_VALUE"
    boleto_type: ClassVar[BoletoType] = "a_vencer"

    employer: Employer
    contribution_type: ContributionType
    competence: Competence


@dataclass(frozen=True)
class WaitingReissueValue:
    """Waiting for the amount of an existing record that has none yet."""

    name: ClassVar[str] = "WAITING_VALUE"
    boleto_type: ClassVar[BoletoType] = "vencido"

    employer: Employer
    contribution: Contribution


@dataclass(frozen=True)
class SelectContribution:
    name: ClassVar[str] = "SELECT_CONTRIBUTION"
    boleto_type: ClassVar[BoletoType] = "vencido"

    employer: Employer
    available: tuple[Contribution, ...]


@dataclass(frozen=True)
class WaitingNewDueDate:
    name: ClassVar[str] = "WAITING_NEW_DUE_DATE"
    boleto_type: ClassVar[BoletoType] = "vencido"

    employer: Employer
    contribution: Contribution
    value_cents: int


@dataclass(frozen=True)
class ConfirmBoleto:
    name: ClassVar[str] = "CONFIRM_BOLETO"

    employer: Employer
    issuance: Union[NewIssuance, Reissue]

    @property
    def boleto_type(self) -> BoletoType:
        return "vencido" if isinstance(self.issuance, Reissue) else "a_vencer"


@dataclass(frozen=True)
class Finished:
    name: ClassVar[str] = "FINISHED"


@dataclass(frozen=True)
class Error:
    name: ClassVar[str] = "ERROR"

    reason: str = "unknown"


FlowState = Union[
    Init,
    SelectBoletoType,
    WaitingCnpj,
    ConfirmEmployer,
    SelectContributionType,
    WaitingCompetence,
    WaitingValue,
    WaitingReissueValue,
    SelectContribution,
    WaitingNewDueDate,
    ConfirmBoleto,
    Finished,
    Error,
]


# ── Session envelope ─────────────────────────────────────────────────────────

# Dedup window for redelivered webhook messages
RECENT_MESSAGE_WINDOW = 20


@dataclass(frozen=True)
class BoletoSession:
    """One conversation for a (clinic_id, phone) pair.

    `turn`, `retries`, `recent_message_ids` and `last_replies` are the
    bookkeeping persisted in the flow_context column. `version` is the
    compare-and-swap token checked on every write.
    """

    id: str
    clinic_id: str
    phone: str
    state: FlowState
    expires_at: datetime
    version: int = 0
    turn: int = 0
    retries: int = 0
    recent_message_ids: tuple[str, ...] = field(default_factory=tuple)
    last_replies: tuple[str, ...] = field(default_factory=tuple)

    @property
    def state_name(self) -> str:
        return self.state.name

    @property
    def boleto_type(self) -> BoletoType | None:
        return getattr(self.state, "boleto_type", None)

    def is_terminal(self) -> bool:
        return self.state.name in TERMINAL_STATES

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def has_processed(self, message_id: str | None) -> bool:
        return bool(message_id) and message_id in self.recent_message_ids

    def remember(self, message_id: str | None) -> tuple[str, ...]:
        """Return the dedup window with message_id appended."""
        if not message_id:
            return self.recent_message_ids
        window = self.recent_message_ids + (message_id,)
        return window[-RECENT_MESSAGE_WINDOW:]
