"""System prompt composition.

``compose_system_prompt`` is a pure function of its ``PromptContext``: the
same snapshot, aliases, memory, clock and receipts always yield the same text.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta

from fiscalia.models import FinancialSnapshot, UserProfile
from fiscalia.orchestration.actions import ACTION_DEFINITIONS
from fiscalia.orchestration.aliases import AliasTable
from fiscalia.orchestration.receipts import ReceiptData
from fiscalia.orchestration.state_changes import StateChange

ASSISTANT_NAME = "Fiscalia"

_WEEKDAYS = ["lundi", "mardi", "mercredi", "jeudi", "vendredi", "samedi", "dimanche"]
_RULE = "═" * 43


@dataclass(frozen=True)
class TemporalContext:
    today: date
    week_start: date
    week_end: date
    month_start: date
    month_end: date
    greeting: str
    weekday: str

    @classmethod
    def from_datetime(cls, now: datetime) -> "TemporalContext":
        """ISO week (Monday to Sunday) and calendar month around ``now``."""
        today = now.date()
        week_start = today - timedelta(days=today.weekday())
        month_start = today.replace(day=1)
        next_month = (month_start + timedelta(days=32)).replace(day=1)
        if now.hour < 12:
            greeting = "Bonjour"
        elif now.hour < 18:
            greeting = "Bon après-midi"
        else:
            greeting = "Bonsoir"
        return cls(
            today=today,
            week_start=week_start,
            week_end=week_start + timedelta(days=6),
            month_start=month_start,
            month_end=next_month - timedelta(days=1),
            greeting=greeting,
            weekday=_WEEKDAYS[today.weekday()],
        )


@dataclass
class PromptContext:
    snapshot: FinancialSnapshot
    aliases: AliasTable
    temporal: TemporalContext
    memory: str | None = None
    state_changes: list[StateChange] = field(default_factory=list)
    receipts: list[ReceiptData] = field(default_factory=list)


def _money(value: float) -> str:
    return str(int(value)) if value == int(value) else f"{value:.2f}"


def summarise_jobs(snapshot: FinancialSnapshot, aliases: AliasTable) -> list[str]:
    lines = []
    for job in snapshot.jobs:
        token = aliases.token_for(job.id)
        if token is None:
            continue
        lines.append(
            f"- {token} | nom={job.name} | revenu={_money(job.revenue)} "
            f"| dépenses={_money(job.expenses)} | profit={_money(job.profit)} "
            f"| statut={job.status.value} "
            f"| période={job.start_date or 'n/a'} → {job.end_date or 'n/a'}"
        )
    return lines


def summarise_expenses(snapshot: FinancialSnapshot, aliases: AliasTable) -> list[str]:
    lines = []
    for expense in snapshot.expenses:
        token = aliases.token_for(expense.id)
        if token is None:
            continue
        job_token = aliases.token_for(expense.job_id) if expense.job_id else None
        parts = [
            token,
            f"contrat={job_token or 'SANS_CONTRAT'}",
            f"montant={_money(expense.amount)}",
            f"categorie={expense.category}",
            f"date={expense.date or 'Inconnue'}",
            f"libelle={expense.name}",
        ]
        if expense.vendor:
            parts.append(f"fournisseur={expense.vendor}")
        if expense.notes:
            parts.append(f"notes={expense.notes}")
        if expense.receipt_path:
            parts.append("reçu=oui")
        lines.append("- " + " | ".join(parts))
    return lines


def _identity_section(profile: UserProfile | None) -> str:
    first_name = profile.name.split()[0] if profile and profile.name else None
    owner = f" de {first_name}" if first_name else ""
    return f"""TU ES {ASSISTANT_NAME.upper()} - Adjointe financière intelligente

TON IDENTITÉ:
• Nom: {ASSISTANT_NAME}
• Rôle: Adjointe financière personnelle{owner}
• Expertise: Gestion financière pour travailleurs autonomes québécois
• Personnalité: Professionnelle, chaleureuse, proactive, précise
• Langue: Français québécois EXCLUSIVEMENT

RÈGLE ABSOLUE: Tu réponds TOUJOURS en français québécois, même si on te parle en anglais."""


def _profile_section(profile: UserProfile | None) -> str:
    if profile is None:
        return ""
    lines = [f"• Nom: {profile.name or 'Non renseigné'}"]
    if profile.email:
        lines.append(f"• Courriel: {profile.email}")
    if profile.company_name:
        lines.append(f"• Entreprise: {profile.company_name}")
    if profile.tax_rate is not None:
        lines.append(f"• Taux de taxe: {profile.tax_rate}%")
    body = "\n".join(lines)
    return f"""
{_RULE}
PROFIL UTILISATEUR
{_RULE}
{body}

Utilise ces infos quand c'est pertinent, sans forcer."""


def _memory_section(memory: str | None) -> str:
    if not memory:
        return ""
    return f"""
{_RULE}
MÉMOIRE DES CONVERSATIONS PASSÉES
{_RULE}
{memory}

Utilise ce contexte quand l'utilisateur fait référence à « comme avant » ou « la dernière fois »."""


_LANGUAGE_RULES = f"""
{_RULE}
FRANÇAIS QUÉBÉCOIS - RÈGLES STRICTES
{_RULE}
✓ « courriel » (JAMAIS « email »)
✓ « dépense » (pas « frais »)
✓ « contrat » (pas « job »)
✓ « revenu » (pas « revenue »)
• Tutoiement naturel et chaleureux
• 2-3 phrases maximum par réponse
• Confirmations explicites avec noms ET montants exacts
• Expressions: « Parfait! », « Aucun problème », « C'est fait! », « Super! », « D'accord! »"""


def _state_change_section(changes: list[StateChange]) -> str:
    if not changes:
        return ""
    lines = []
    for change in changes:
        label = "Contrat" if change.kind == "job" else "Dépense"
        if change.status == "deleted":
            lines.append(f"- {label} « {change.name} » supprimé récemment: il n'existe plus.")
        elif change.recreated:
            lines.append(
                f"- {label} « {change.name} » supprimé puis recréé: la version actuelle est "
                f"{change.token or change.entity_id}. Toute référence à « {change.name} » vise "
                "cette version."
            )
        else:
            lines.append(
                f"- {label} « {change.name} » créé récemment ({change.token or change.entity_id})."
            )
    body = "\n".join(lines)
    return f"""
CHANGEMENTS RÉCENTS DANS LA CONVERSATION:
{body}"""


def _receipt_section(receipts: list[ReceiptData]) -> str:
    if not receipts:
        return ""
    body = "\n".join(f"- Reçu {i}: {r.describe()}" for i, r in enumerate(receipts, start=1))
    return f"""
{_RULE}
REÇUS JOINTS À CE MESSAGE
{_RULE}
{body}

Pour chaque reçu, crée la dépense avec create_expense en reprenant EXACTEMENT le fournisseur,
le total (amount), la date et le chemin du reçu (receiptPath). Ne redemande pas ces informations."""


def _action_section() -> str:
    return "\n".join(
        f"• {definition.name.value}: {definition.parameters}\n  → {definition.description}"
        for definition in ACTION_DEFINITIONS
    )


def compose_system_prompt(context: PromptContext) -> str:
    """Build the full instruction block for one turn."""
    snapshot = context.snapshot
    temporal = context.temporal
    job_lines = summarise_jobs(snapshot, context.aliases)
    expense_lines = summarise_expenses(snapshot, context.aliases)
    today = temporal.today.isoformat()

    job_section = (
        "CONTRATS (alias JOB_XX):\n" + "\n".join(job_lines) if job_lines else "Aucun contrat actif."
    )
    expense_section = (
        "DÉPENSES (alias EXP_XX):\n" + "\n".join(expense_lines)
        if expense_lines
        else "Aucune dépense enregistrée."
    )

    return f"""{_identity_section(snapshot.profile)}
{_profile_section(snapshot.profile)}
{_memory_section(context.memory)}
{_LANGUAGE_RULES}

CONTEXTE ACTUEL ({temporal.greeting}, {temporal.weekday} {today}):

RÉSUMÉ FINANCIER:
- Contrats: {len(snapshot.jobs)} | Revenu total: {_money(snapshot.total_revenue)}$ | Dépenses: {_money(snapshot.total_expenses)}$ | Profit: {_money(snapshot.total_profit)}$
- Dépenses sans contrat: {_money(snapshot.unlinked_expenses)}$
- Catégories: {", ".join(snapshot.categories) or "Aucune"}
- Cette semaine: {temporal.week_start.isoformat()} au {temporal.week_end.isoformat()}
- Ce mois: {temporal.month_start.isoformat()} au {temporal.month_end.isoformat()}

DONNÉES FINANCIÈRES (alias internes pour actions seulement):
{job_section}
{expense_section}
{_state_change_section(context.state_changes)}
{_receipt_section(context.receipts)}

{_RULE}
RÈGLES DE COMPORTEMENT
{_RULE}
1. Quand l'utilisateur dit « ce contrat », « cette dépense » ou « le dernier », regarde les derniers
   messages et utilise l'alias de l'entité ACTUELLE.
2. Si une information manque et que l'historique n'aide pas, pose UNE question précise, actions: [].
3. Montants toujours > 0. Pour ramener une dépense à zéro, supprime-la (delete_expense).
4. Dates au format AAAA-MM-JJ (date du jour si non précisée).

FORMAT JSON STRICT (aucun markdown, aucun texte avant ou après):
{{"text": "Réponse en français québécois naturel", "actions": [{{"action": "nom_action", "data": {{...}}}}]}}

• Le champ « text » contient seulement du français conversationnel avec les noms et montants exacts.
• Les alias (JOB_XX, EXP_XX) sont UNIQUEMENT pour les actions, JAMAIS dans « text ».

ACTIONS DISPONIBLES:
{_action_section()}

EXEMPLES CORRECTS:
{{"text":"Parfait! J'ai créé le contrat Plomberie Laval avec un revenu de 5000$ et ajouté la dépense Matériel de 1200$.","actions":[{{"action":"create_job","data":{{"name":"Plomberie Laval","revenue":5000}}}},{{"action":"create_expense","data":{{"name":"Matériel","amount":1200,"category":"Matériel","date":"{today}","jobName":"Plomberie Laval"}}}}]}}

{{"text":"C'est fait! La dépense Essence est maintenant supprimée.","actions":[{{"action":"delete_expense","data":{{"expenseId":"EXP_02"}}}}]}}

{{"text":"Super! J'ai changé le montant de la dépense Outils à 75$.","actions":[{{"action":"update_expense","data":{{"expenseId":"EXP_05","updates":{{"amount":75}}}}}}]}}

{{"text":"D'accord! Ton revenu total est de {_money(snapshot.total_revenue)}$ et ton profit de {_money(snapshot.total_profit)}$.","actions":[{{"action":"query","data":{{}}}}]}}
"""
