"""WhatsApp message templates for the boleto flow.

Menus are rendered as numbered plain-text lines. Templates contain static
text with placeholders; only params listed in allowed_params are accepted.
Text is rendered in-memory per turn.
"""

from datetime import date
from typing import Any, Iterable

from sindiboleto.domain.states import Competence, Contribution, ContributionType

MONTH_NAMES = (
    "Janeiro",
    "Fevereiro",
    "Março",
    "Abril",
    "Maio",
    "Junho",
    "Julho",
    "Agosto",
    "Setembro",
    "Outubro",
    "Novembro",
    "Dezembro",
)

_WELCOME = (
    "🏢 *Boleto de Contribuição*\n\n"
    "Vou te ajudar a emitir o boleto da sua empresa.\n\n"
    "O boleto é:\n\n"
    "1 - *A vencer* (novo boleto)\n"
    "2 - *Vencido* (atualizar data)\n\n"
    "_Digite o número da opção desejada._"
)

_ASK_CNPJ = (
    "📋 Informe o *CNPJ* da empresa.\n\n"
    "Pode digitar só os números ou no formato com pontos e barras.\n"
    "_Exemplo: 12345678000199_"
)

TEMPLATES: dict[str, dict[str, Any]] = {
    "welcome": {
        "text": _WELCOME,
        "allowed_params": [],
    },
    "welcome_invalid": {
        "text": "❌ Opção inválida.\n\n" + _WELCOME,
        "allowed_params": [],
    },
    "help": {
        "text": (
            "❓ *Precisa de ajuda?*\n\n"
            "Responda com o número da opção ou com o dado pedido na mensagem anterior.\n\n"
            "• Digite *MENU* para recomeçar\n"
            "• Digite *CANCELAR* para encerrar\n"
            "• Digite *REENVIAR* no menu inicial para receber de novo o link de um boleto"
        ),
        "allowed_params": [],
    },
    "ask_cnpj": {
        "text": _ASK_CNPJ,
        "allowed_params": [],
    },
    "ask_cnpj_resend": {
        "text": "📨 *Reenvio de boleto*\n\n" + _ASK_CNPJ,
        "allowed_params": [],
    },
    "retry_cnpj": {
        "text": "Ok! Vamos tentar novamente.\n\n" + _ASK_CNPJ,
        "allowed_params": [],
    },
    "invalid_cnpj": {
        "text": (
            "❌ *CNPJ inválido*\n\n"
            "Digite novamente os *14 números* do CNPJ.\n"
            "_Exemplo: 12345678000199_"
        ),
        "allowed_params": [],
    },
    "employer_not_found": {
        "text": (
            "❌ *Empresa não encontrada*\n\n"
            "Não localizamos nenhuma empresa cadastrada com o CNPJ *{cnpj}*.\n\n"
            "Verifique o CNPJ e tente novamente, ou entre em contato com o sindicato."
        ),
        "allowed_params": ["cnpj"],
    },
    "confirm_employer": {
        "text": (
            "✅ *Empresa identificada*\n\n"
            "🏢 *{employer_name}*\n"
            "📋 CNPJ: {cnpj}\n\n"
            "Esta é a empresa correta?\n\n"
            "1 - *Sim, continuar*\n"
            "2 - *Não, informar outro CNPJ*"
        ),
        "allowed_params": ["employer_name", "cnpj"],
    },
    "confirm_employer_unclear": {
        "text": (
            "🤔 Não consegui entender sua resposta.\n\n"
            "A empresa *{employer_name}* está correta?\n\n"
            "1 - Sim\n"
            "2 - Não"
        ),
        "allowed_params": ["employer_name"],
    },
    "select_contribution_type": {
        "text": (
            "📝 *Tipo de Contribuição*\n\n"
            "Qual contribuição deseja gerar?\n\n"
            "{options}\n\n"
            "_Digite o número da opção._"
        ),
        "allowed_params": ["options"],
    },
    "invalid_contribution_type": {
        "text": "❌ Opção inválida.\n\nEscolha um número de 1 a {count}.\n\n{options}",
        "allowed_params": ["count", "options"],
    },
    "no_contribution_types": {
        "text": (
            "❌ Nenhum tipo de contribuição disponível no momento.\n\n"
            "Entre em contato com o sindicato para mais informações."
        ),
        "allowed_params": [],
    },
    "ask_competence": {
        "text": (
            "✅ *{type_name}*\n\n"
            "📅 Informe a *competência* (mês/ano) do boleto:\n\n"
            "_Exemplos: 01/2025, Janeiro/2025_"
        ),
        "allowed_params": ["type_name"],
    },
    "invalid_competence": {
        "text": (
            "❌ Não consegui entender a competência.\n\n"
            "Informe no formato *mês/ano*.\n"
            "_Exemplos: 01/2025, Janeiro/2025_"
        ),
        "allowed_params": [],
    },
    "ask_value": {
        "text": "💰 Qual o *valor* a recolher?\n\n_Exemplo: 150,00 ou R$ 150,00_",
        "allowed_params": [],
    },
    "invalid_value": {
        "text": (
            "❌ Valor inválido.\n\n"
            "Informe um valor maior que zero.\n"
            "_Exemplo: 150,00 ou R$ 1.500,00_"
        ),
        "allowed_params": [],
    },
    "ambiguous_value": {
        "text": (
            "❌ Não tenho certeza do valor informado.\n\n"
            "Use vírgula para os centavos.\n"
            "_Exemplo: 1.500,00 ou 1,50_"
        ),
        "allowed_params": [],
    },
    "select_contribution": {
        "text": (
            "📋 *Contribuições Pendentes*\n\n"
            "Encontramos {count} contribuição(ões) vencida(s):\n\n"
            "{options}\n\n"
            "_Digite o número da contribuição desejada._"
        ),
        "allowed_params": ["count", "options"],
    },
    "invalid_contribution": {
        "text": (
            "❌ Opção inválida.\n\n"
            "Escolha um número de 1 a {count}:\n\n"
            "{options}"
        ),
        "allowed_params": ["count", "options"],
    },
    "no_overdue": {
        "text": (
            "ℹ️ *Nenhuma pendência encontrada!*\n\n"
            "Não encontramos contribuições vencidas para *{employer_name}*.\n\n"
            "Se deseja gerar um novo boleto, envie uma nova mensagem e escolha a opção 1."
        ),
        "allowed_params": ["employer_name"],
    },
    "ask_new_due_date": {
        "text": (
            "📅 Informe a *nova data de vencimento*:\n\n"
            "Data atual: {current_due_date}\n\n"
            "_Formato: DD/MM/AAAA (ex: 15/02/2025)_"
        ),
        "allowed_params": ["current_due_date"],
    },
    "invalid_due_date": {
        "text": (
            "❌ Data inválida.\n\n"
            "A data deve ser uma data *futura* no formato DD/MM/AAAA.\n"
            "_Exemplo: 15/02/2025_"
        ),
        "allowed_params": [],
    },
    "confirm_boleto": {
        "text": (
            "✅ *Confirmação do Boleto*\n\n"
            "🏢 Empresa: *{employer_name}*\n"
            "📋 Tipo: *{type_name}*\n"
            "📅 Competência: *{competence}*\n"
            "💰 Valor: *{value}*\n"
            "📆 Vencimento: *{due_date}*\n"
            "{kind}\n\n"
            "Confirma a geração do boleto?\n\n"
            "1 - *Confirmar*\n"
            "2 - *Cancelar*"
        ),
        "allowed_params": ["employer_name", "type_name", "competence", "value", "due_date", "kind"],
    },
    "invalid_confirmation": {
        "text": "❌ Opção inválida.\n\nDigite *1* para confirmar ou *2* para cancelar.",
        "allowed_params": [],
    },
    "boleto_generated": {
        "text": (
            "✅ *Boleto gerado com sucesso!*\n\n"
            "🔗 *Link do boleto:*\n"
            "{invoice_url}\n"
            "{pix_block}\n"
            "Obrigado por utilizar nosso serviço! 😊"
        ),
        "allowed_params": ["invoice_url", "pix_block"],
    },
    "boleto_registered": {
        "text": (
            "✅ *Boleto registrado com sucesso!*\n\n"
            "📆 Vencimento: *{due_date}*\n"
            "💰 Valor: *{value}*\n\n"
            "O sindicato enviará o documento de pagamento em breve."
        ),
        "allowed_params": ["due_date", "value"],
    },
    "boleto_error": {
        "text": (
            "❌ *Erro ao gerar boleto*\n\n"
            "Não foi possível concluir agora. Tente novamente mais tarde "
            "ou entre em contato com o sindicato.\n\n"
            "_Envie qualquer mensagem para recomeçar._"
        ),
        "allowed_params": [],
    },
    "cancelled": {
        "text": "❌ Operação cancelada.\n\nSe precisar, envie uma nova mensagem para recomeçar.",
        "allowed_params": [],
    },
    "too_many_attempts": {
        "text": (
            "⚠️ Muitas tentativas inválidas.\n\n"
            "Encerramos este atendimento. Envie uma nova mensagem para recomeçar."
        ),
        "allowed_params": [],
    },
    "already_paid": {
        "text": (
            "✅ *Contribuição já quitada!*\n\n"
            "A contribuição de *{competence}* já foi paga."
        ),
        "allowed_params": ["competence"],
    },
    "already_issued": {
        "text": (
            "⚠️ *Contribuição já cadastrada!*\n\n"
            "Já existe um boleto para *{competence}* no valor de *{value}*.\n\n"
            "🔗 Link: {invoice_url}\n\n"
            "Para uma 2ª via com nova data, escolha a opção *2 (Vencido)* no menu inicial."
        ),
        "allowed_params": ["competence", "value", "invoice_url"],
    },
    "existing_needs_value": {
        "text": (
            "📋 *Contribuição já cadastrada!*\n\n"
            "Já existe uma contribuição para *{competence}* aguardando o valor.\n\n"
            "💰 Informe o *valor* a recolher:\n"
            "_Exemplo: 150,00 ou R$ 150,00_"
        ),
        "allowed_params": ["competence"],
    },
    "existing_needs_due_date": {
        "text": (
            "📋 *Contribuição já cadastrada!*\n\n"
            "Já existe uma contribuição para *{competence}* no valor de *{value}* "
            "aguardando geração do boleto.\n\n"
            "📅 Informe a *data de vencimento* desejada:\n"
            "_Exemplo: 15/02/2025_"
        ),
        "allowed_params": ["competence", "value"],
    },
    "value_then_due_date": {
        "text": (
            "💰 Valor: *{value}*\n\n"
            "📅 Agora informe a *data de vencimento* desejada:\n"
            "_Exemplo: 15/02/2025_"
        ),
        "allowed_params": ["value"],
    },
    "resend_found": {
        "text": (
            "✅ *Boleto Encontrado!*\n\n"
            "🏢 Empresa: *{employer_name}*\n"
            "📅 Competência: *{competence}*\n"
            "💰 Valor: *{value}*\n"
            "📆 Vencimento: *{due_date}*\n\n"
            "🔗 *Link do boleto:*\n"
            "{invoice_url}\n"
            "{pix_block}"
        ),
        "allowed_params": [
            "employer_name",
            "competence",
            "value",
            "due_date",
            "invoice_url",
            "pix_block",
        ],
    },
}


def render(template_key: str, params: dict[str, Any] | None = None) -> str:
    """Render template with params. Validates allowed_params.

    Raises:
        ValueError: If template_key unknown or params contains disallowed keys.
    """
    if template_key not in TEMPLATES:
        raise ValueError(f"Unknown template: {template_key}")

    params = params or {}
    template = TEMPLATES[template_key]
    extras = set(params) - set(template["allowed_params"])
    if extras:
        raise ValueError(f"Disallowed params for {template_key}: {extras}")

    return template["text"].format(**params)


def format_brl(cents: int | None) -> str:
    """Integer cents -> 'R$ 1.234,56'. Pure integer arithmetic."""
    if not cents:
        return "Valor não definido"
    reais, centavos = divmod(cents, 100)
    grouped = f"{reais:,}".replace(",", ".")
    return f"R$ {grouped},{centavos:02d}"


def format_date(value: date) -> str:
    return value.strftime("%d/%m/%Y")


def competence_label(competence: Competence) -> str:
    return f"{MONTH_NAMES[competence.month - 1]}/{competence.year}"


def pix_block(pix_code: str | None) -> str:
    if not pix_code:
        return ""
    return f"\n📱 *Código PIX:*\n{pix_code}\n"


def numbered_types(types: Iterable[ContributionType]) -> str:
    return "\n".join(f"{i} - {t.name}" for i, t in enumerate(types, start=1))


def numbered_contributions(contributions: Iterable[Contribution]) -> str:
    lines = []
    for i, c in enumerate(contributions, start=1):
        type_name = c.contribution_type.name if c.contribution_type else "Contribuição"
        lines.append(
            f"{i} - {type_name}\n"
            f"   📅 {competence_label(c.competence)} | Venc: {format_date(c.due_date)}\n"
            f"   💰 {format_brl(c.value_cents)}"
        )
    return "\n\n".join(lines)
