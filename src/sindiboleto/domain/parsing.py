"""Deterministic parsing of user replies in the boleto flow.

NO LLM. Uses regex and fixed vocabularies; explicit formats only, never
locale sniffing. Ambiguous amounts are rejected instead of guessed.
Security: NEVER log raw text (PII).
"""

import re
import unicodedata
from datetime import date
from typing import Literal

from sindiboleto.domain.errors import ValidationError
from sindiboleto.domain.states import BoletoType, Competence

Command = Literal["menu", "cancel", "help"]

CNPJ_LENGTH = 14

# Oldest competence year still billable
MIN_COMPETENCE_YEAR = 2000

# R$ 100.000.000,00
MAX_VALUE_CENTS = 10_000_000_000

MONTH_ALIASES: dict[str, int] = {
    "janeiro": 1,
    "jan": 1,
    "fevereiro": 2,
    "fev": 2,
    "marco": 3,
    "mar": 3,
    "abril": 4,
    "abr": 4,
    "maio": 5,
    "mai": 5,
    "junho": 6,
    "jun": 6,
    "julho": 7,
    "jul": 7,
    "agosto": 8,
    "ago": 8,
    "setembro": 9,
    "set": 9,
    "outubro": 10,
    "out": 10,
    "novembro": 11,
    "nov": 11,
    "dezembro": 12,
    "dez": 12,
}

_COMMANDS: dict[str, Command] = {
    "menu": "menu",
    "reiniciar": "menu",
    "recomecar": "menu",
    "voltar": "menu",
    "inicio": "menu",
    "sair": "cancel",
    "cancelar": "cancel",
    "desistir": "cancel",
    "ajuda": "help",
    "help": "help",
    "?": "help",
}

_AFFIRMATIVE = frozenset(
    {
        "1",
        "s",
        "sim",
        "yes",
        "isso",
        "ok",
        "certo",
        "correto",
        "confirmo",
        "confirma",
        "confirmar",
        "pode",
        "pode gerar",
        "ta certo",
        "esta certo",
    }
)

_NEGATIVE = frozenset(
    {
        "2",
        "n",
        "nao",
        "no",
        "errado",
        "errada",
        "outro",
        "outra",
        "nao e essa",
        "empresa errada",
    }
)

_RESEND_PATTERN = re.compile(
    r"\b(reenviar|reenvia|nao recebi|manda de novo|cade o link|link)\b"
)

_A_VENCER_PATTERN = re.compile(r"\ba\s*vencer\b|\bnovo\s+boleto\b")
_VENCIDO_PATTERN = re.compile(r"\bvencid[oa]s?\b|\batrasad[oa]s?\b")

_NUMERIC_COMPETENCE = re.compile(r"^(\d{1,2})\s*[/\-]\s*(\d{4})$")
_NAMED_COMPETENCE = re.compile(r"^([a-z]+)\s*(?:de|/|-)?\s*(\d{4})$")

_DUE_DATE = re.compile(r"^(\d{1,2})[/\-](\d{1,2})[/\-](\d{4})$")

# Amount shapes, after the "R$" prefix and whitespace are removed
_PLAIN_INTEGER = re.compile(r"^\d+$")
_COMMA_DECIMAL = re.compile(r"^(\d+),(\d{1,2})$")
_DOT_DECIMAL = re.compile(r"^(\d+)\.(\d{1,2})$")
_GROUPED = re.compile(r"^(\d{1,3}(?:\.\d{3})+)(?:,(\d{1,2}))?$")


def normalize_text(text: str) -> str:
    """Lowercase, strip accents and collapse whitespace."""
    decomposed = unicodedata.normalize("NFD", text or "")
    stripped = "".join(c for c in decomposed if unicodedata.category(c) != "Mn")
    return " ".join(stripped.lower().split())


def detect_command(text: str) -> Command | None:
    """Return the global command in text, if the whole reply is one."""
    return _COMMANDS.get(normalize_text(text))


def wants_resend(text: str) -> bool:
    """True when the user asks for a previously issued boleto link."""
    return bool(_RESEND_PATTERN.search(normalize_text(text)))


def parse_boleto_type(text: str) -> BoletoType:
    """Parse the initial menu: 1 = a vencer, 2 = vencido."""
    normalized = normalize_text(text)
    if normalized == "1" or _A_VENCER_PATTERN.search(normalized):
        return "a_vencer"
    if normalized == "2" or _VENCIDO_PATTERN.search(normalized):
        return "vencido"
    raise ValidationError("invalid_option")


def parse_menu_choice(text: str, option_count: int) -> int:
    """Parse a 1-based numeric menu choice. Returns the 0-based index."""
    normalized = normalize_text(text)
    if not normalized.isdigit():
        raise ValidationError("invalid_option")
    choice = int(normalized)
    if not 1 <= choice <= option_count:
        raise ValidationError("invalid_option")
    return choice - 1


def parse_yes_no(text: str) -> bool:
    """Parse a confirmation reply. `1`/`2` or the yes/no vocabulary."""
    normalized = normalize_text(text)
    if normalized in _AFFIRMATIVE or normalized.startswith("sim "):
        return True
    if normalized in _NEGATIVE or normalized.startswith("nao "):
        return False
    raise ValidationError("invalid_confirmation")


def extract_cnpj(text: str) -> str:
    """Strip non-digits and require exactly 14 digits."""
    digits = re.sub(r"\D", "", text or "")
    if len(digits) != CNPJ_LENGTH:
        raise ValidationError("invalid_cnpj")
    return digits


def format_cnpj(cnpj: str) -> str:
    """12345678000199 -> 12.345.678/0001-99"""
    if len(cnpj) != CNPJ_LENGTH or not cnpj.isdigit():
        return cnpj
    return f"{cnpj[:2]}.{cnpj[2:5]}.{cnpj[5:8]}/{cnpj[8:12]}-{cnpj[12:]}"


def parse_competence(text: str, *, today: date) -> Competence:
    """Parse `MM/YYYY` (also `M-YYYY` and `janeiro/2025`).

    Month must be 1..12 and the year between MIN_COMPETENCE_YEAR and next
    year relative to `today`.
    """
    normalized = normalize_text(text)

    month: int | None = None
    year: int | None = None

    match = _NUMERIC_COMPETENCE.match(normalized)
    if match:
        month, year = int(match.group(1)), int(match.group(2))
    else:
        match = _NAMED_COMPETENCE.match(normalized)
        if match and match.group(1) in MONTH_ALIASES:
            month, year = MONTH_ALIASES[match.group(1)], int(match.group(2))

    if month is None or year is None:
        raise ValidationError("invalid_competence")
    if not 1 <= month <= 12:
        raise ValidationError("invalid_competence")
    if not MIN_COMPETENCE_YEAR <= year <= today.year + 1:
        raise ValidationError("invalid_competence")

    return Competence(month=month, year=year)


def parse_currency_cents(text: str) -> int:
    """Parse a BRL amount into integer cents.

    Accepted: `150`, `150,5`, `150,00`, `1.500,00`, `1.500.000`, `150.00`.
    Rejected as ambiguous: `1.500` (thousands or decimal?), `1,500`,
    mixed `1,500.00`. Zero and negatives are rejected.
    """
    value = (text or "").strip().lower()
    if value.startswith("r$"):
        value = value[2:]
    value = "".join(value.split())

    grouped = _GROUPED.match(value)
    decimal = _COMMA_DECIMAL.match(value) or _DOT_DECIMAL.match(value)

    if _PLAIN_INTEGER.match(value):
        cents = int(value) * 100
    elif grouped:
        integer_part, fraction = grouped.group(1), grouped.group(2)
        if fraction is None and integer_part.count(".") == 1:
            raise ValidationError("ambiguous_value")
        cents = int(integer_part.replace(".", "")) * 100
        if fraction:
            cents += int(fraction.ljust(2, "0"))
    elif decimal:
        cents = int(decimal.group(1)) * 100 + int(decimal.group(2).ljust(2, "0"))
    else:
        raise ValidationError("invalid_value")

    if cents <= 0 or cents > MAX_VALUE_CENTS:
        raise ValidationError("invalid_value")
    return cents


def parse_due_date(text: str, *, today: date) -> date:
    """Parse `DD/MM/YYYY` (or `DD-MM-YYYY`); must be strictly after today."""
    match = _DUE_DATE.match(normalize_text(text))
    if not match:
        raise ValidationError("invalid_date")

    day, month, year = (int(g) for g in match.groups())
    try:
        parsed = date(year, month, day)
    except ValueError:
        raise ValidationError("invalid_date") from None

    if parsed <= today:
        raise ValidationError("past_date")
    return parsed
