# ankie/orchestration/step_builder.py

"""
Humanized, localized progress steps for graph node transitions.

Templates are looked up by (locale, node type). An unknown locale falls back to
DEFAULT_LOCALE and an unknown node type falls back to that locale's "default"
template, so building a step never fails.
"""

import itertools
import time
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel, Field

from ankie.orchestration.schema import ExecutionStep, StepAction

DEFAULT_LOCALE = "es"
SUPPORTED_LOCALES = ("es", "en", "fr", "de")

# Monotonic suffix so two steps built in the same millisecond never share an id
_STEP_SEQ = itertools.count(1)


class StepConfig(BaseModel):
    agent_id: str
    node_type: str
    agent_name: Optional[str] = None
    locale: Optional[str] = None
    # Locale taken from the request context when the caller did not pick one
    context_locale: Optional[str] = None
    target_agent_id: Optional[str] = None
    target_agent_name: Optional[str] = None
    tool_name: Optional[str] = None
    tool_count: Optional[int] = None
    timestamp_ms: Optional[int] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


Template = Callable[[StepConfig], str]


# ──────────────────────────────────────────────────────────────────────────────
# Static tables
# ──────────────────────────────────────────────────────────────────────────────

AGENT_EXPERTISE: Dict[str, Dict[str, str]] = {
    "ami-creative": {
        "es": "asistencia ejecutiva y productividad",
        "en": "executive assistance and productivity",
        "fr": "assistance exécutive et productivité",
        "de": "Assistenz der Geschäftsführung und Produktivität",
    },
    "astra-email": {
        "es": "gestión de email y comunicación profesional",
        "en": "email management and professional communication",
        "fr": "gestion des emails et communication professionnelle",
        "de": "E-Mail-Verwaltung und professionelle Kommunikation",
    },
    "jenn-community": {
        "es": "gestión de redes sociales y comunidades",
        "en": "social media and community management",
        "fr": "gestion des réseaux sociaux et des communautés",
        "de": "Social-Media- und Community-Management",
    },
    "emma-ecommerce": {
        "es": "comercio electrónico y optimización Shopify",
        "en": "e-commerce and Shopify optimization",
        "fr": "commerce électronique et optimisation Shopify",
        "de": "E-Commerce und Shopify-Optimierung",
    },
    "apu-support": {
        "es": "soporte técnico y éxito del cliente",
        "en": "technical support and customer success",
        "fr": "support technique et succès client",
        "de": "technischer Support und Kundenerfolg",
    },
    "toby-technical": {
        "es": "ingeniería de software e IoT",
        "en": "software engineering and IoT",
        "fr": "ingénierie logicielle et IoT",
        "de": "Software-Engineering und IoT",
    },
    "notion-agent": {
        "es": "gestión de workspace y bases de conocimiento Notion",
        "en": "Notion workspace and knowledge base management",
        "fr": "gestion de l'espace de travail et base de connaissances Notion",
        "de": "Notion-Workspace- und Wissensdatenbank-Verwaltung",
    },
    "cleo-supervisor": {
        "es": "coordinación y orquestación de equipos",
        "en": "team coordination and orchestration",
        "fr": "coordination et orchestration d'équipe",
        "de": "Teamkoordination und Orchestrierung",
    },
}

TOOL_NAMES: Dict[str, Dict[str, str]] = {
    "webSearch": {"es": "búsqueda web", "en": "web search", "fr": "recherche web", "de": "Websuche"},
    "memoryAddNote": {"es": "memoria a largo plazo", "en": "long-term memory", "fr": "mémoire à long terme", "de": "Langzeitgedächtnis"},
    "createCalendarEvent": {"es": "crear evento", "en": "calendar event creation", "fr": "création d'événement", "de": "Termin anlegen"},
    "listCalendarEvents": {"es": "consulta de calendario", "en": "calendar lookup", "fr": "consultation du calendrier", "de": "Kalenderabfrage"},
    "sendGmailMessage": {"es": "envío de correo", "en": "email sending", "fr": "envoi d'email", "de": "E-Mail-Versand"},
    "createGmailDraft": {"es": "borrador de correo", "en": "email draft", "fr": "brouillon d'email", "de": "E-Mail-Entwurf"},
    "postTweet": {"es": "publicación en Twitter/X", "en": "Twitter/X post", "fr": "publication Twitter/X", "de": "Twitter/X-Beitrag"},
    "googleSheets": {"es": "Google Sheets", "en": "Google Sheets", "fr": "Google Sheets", "de": "Google Sheets"},
    "notion": {"es": "Notion", "en": "Notion", "fr": "Notion", "de": "Notion"},
    "shopify": {"es": "Shopify", "en": "Shopify", "fr": "Shopify", "de": "Shopify"},
}

NODE_ACTIONS: Dict[str, StepAction] = {
    "router": "routing",
    "agent": "analyzing",
    "delegation": "delegating",
    "tools": "analyzing",
    "interrupt": "interrupt",
    "end": "completing",
}

NODE_PROGRESS: Dict[str, int] = {
    "router": 5,
    "delegation": 20,
    "agent": 40,
    "tools": 60,
    "interrupt": 70,
    "end": 100,
}


def humanize_tool_name(tool_name: str, locale: str) -> str:
    return TOOL_NAMES.get(tool_name, {}).get(locale, tool_name)


def _name(cfg: StepConfig) -> str:
    return cfg.agent_name or cfg.agent_id


def _target(cfg: StepConfig, fallback: str) -> str:
    return cfg.target_agent_name or cfg.target_agent_id or fallback


def _expertise(agent_id: Optional[str], locale: str) -> Optional[str]:
    if not agent_id:
        return None
    return AGENT_EXPERTISE.get(agent_id, {}).get(locale)


# ──────────────────────────────────────────────────────────────────────────────
# Templates per locale
# ──────────────────────────────────────────────────────────────────────────────

def _agent(locale: str, with_expertise: str, plain: str) -> Template:
    def render(cfg: StepConfig) -> str:
        expertise = _expertise(cfg.agent_id, locale)
        if expertise:
            return with_expertise.format(name=_name(cfg), expertise=expertise)
        return plain.format(name=_name(cfg))
    return render


def _delegation(locale: str, with_expertise: str, plain: str, fallback: str) -> Template:
    def render(cfg: StepConfig) -> str:
        expertise = _expertise(cfg.target_agent_id, locale)
        if expertise:
            return with_expertise.format(target=_target(cfg, fallback), expertise=expertise)
        return plain.format(target=_target(cfg, fallback))
    return render


def _tools(locale: str, single: str, many: str, generic: str) -> Template:
    def render(cfg: StepConfig) -> str:
        if cfg.tool_count and cfg.tool_count > 1:
            return many.format(count=cfg.tool_count)
        if cfg.tool_name:
            return single.format(tool=humanize_tool_name(cfg.tool_name, locale))
        return generic
    return render


def _interrupt(locale: str, with_tool: str, generic: str) -> Template:
    def render(cfg: StepConfig) -> str:
        if cfg.tool_name:
            return with_tool.format(tool=humanize_tool_name(cfg.tool_name, locale))
        return generic
    return render


TEMPLATES: Dict[str, Dict[str, Template]] = {
    "es": {
        "router": lambda cfg: "🧭 Analizando tu solicitud para determinar el mejor enfoque…",
        "agent": _agent("es", "🤖 {name} procesando (experto en {expertise})…", "🤖 {name} procesando tu solicitud…"),
        "delegation": _delegation("es", "🤝 Delegando a {target}, experto en {expertise}…", "🤝 Delegando a {target}…", "especialista"),
        "tools": _tools("es", "🔧 Usando herramienta: {tool}…", "🔧 Ejecutando {count} herramientas en paralelo…", "🔧 Ejecutando herramientas necesarias…"),
        "interrupt": _interrupt("es", "⏸️ Esperando tu aprobación para: {tool}", "⏸️ Esperando tu aprobación…"),
        "end": lambda cfg: f"✅ {_name(cfg)} completó su trabajo",
        "default": lambda cfg: f"⚙️ Procesando: {cfg.node_type}…",
    },
    "en": {
        "router": lambda cfg: "🧭 Analyzing your request to determine the best approach…",
        "agent": _agent("en", "🤖 {name} processing (expert in {expertise})…", "🤖 {name} processing your request…"),
        "delegation": _delegation("en", "🤝 Delegating to {target}, expert in {expertise}…", "🤝 Delegating to {target}…", "specialist"),
        "tools": _tools("en", "🔧 Using tool: {tool}…", "🔧 Executing {count} tools in parallel…", "🔧 Executing necessary tools…"),
        "interrupt": _interrupt("en", "⏸️ Waiting for your approval: {tool}", "⏸️ Waiting for your approval…"),
        "end": lambda cfg: f"✅ {_name(cfg)} completed its work",
        "default": lambda cfg: f"⚙️ Processing: {cfg.node_type}…",
    },
    "fr": {
        "router": lambda cfg: "🧭 Analyse de votre demande pour déterminer la meilleure approche…",
        "agent": _agent("fr", "🤖 {name} en cours de traitement (expert en {expertise})…", "🤖 {name} traite votre demande…"),
        "delegation": _delegation("fr", "🤝 Délégation à {target}, expert en {expertise}…", "🤝 Délégation à {target}…", "spécialiste"),
        "tools": _tools("fr", "🔧 Utilisation de l'outil: {tool}…", "🔧 Exécution de {count} outils en parallèle…", "🔧 Exécution des outils nécessaires…"),
        "interrupt": _interrupt("fr", "⏸️ En attente de votre approbation: {tool}", "⏸️ En attente de votre approbation…"),
        "end": lambda cfg: f"✅ {_name(cfg)} a terminé son travail",
        "default": lambda cfg: f"⚙️ Traitement: {cfg.node_type}…",
    },
    "de": {
        "router": lambda cfg: "🧭 Analyse Ihrer Anfrage zur Bestimmung des besten Ansatzes…",
        "agent": _agent("de", "🤖 {name} in Bearbeitung (Experte für {expertise})…", "🤖 {name} bearbeitet Ihre Anfrage…"),
        "delegation": _delegation("de", "🤝 Delegierung an {target}, Experte für {expertise}…", "🤝 Delegierung an {target}…", "Spezialist"),
        "tools": _tools("de", "🔧 Verwendung des Tools: {tool}…", "🔧 Ausführung von {count} Tools parallel…", "🔧 Ausführung der erforderlichen Tools…"),
        "interrupt": _interrupt("de", "⏸️ Warte auf Ihre Freigabe: {tool}", "⏸️ Warte auf Ihre Freigabe…"),
        "end": lambda cfg: f"✅ {_name(cfg)} hat die Arbeit abgeschlossen",
        "default": lambda cfg: f"⚙️ Verarbeitung: {cfg.node_type}…",
    },
}


def normalize_locale(locale: Optional[str]) -> Optional[str]:
    """'es-MX' -> 'es'; unsupported or empty -> None."""
    if not locale:
        return None
    short = locale.replace("_", "-").split("-", 1)[0].strip().lower()
    return short if short in SUPPORTED_LOCALES else None


def resolve_locale(cfg: StepConfig) -> str:
    return normalize_locale(cfg.locale) or normalize_locale(cfg.context_locale) or DEFAULT_LOCALE


def lookup_template(locale: str, node_type: str) -> Template:
    """Template for (locale, node_type), falling back to DEFAULT_LOCALE and then 'default'."""
    table = TEMPLATES.get(locale) or TEMPLATES[DEFAULT_LOCALE]
    return table.get(node_type) or table["default"]


# ──────────────────────────────────────────────────────────────────────────────
# Ids
# ──────────────────────────────────────────────────────────────────────────────

def _now_ms() -> int:
    return int(time.time() * 1000)


def semantic_step_id(agent_id: str, node_type: str, timestamp_ms: Optional[int] = None) -> str:
    """`{agentId}:{nodeType}:{timestampMs}-{seq}`"""
    ts = timestamp_ms if timestamp_ms is not None else _now_ms()
    return f"{agent_id}:{node_type}:{ts}-{next(_STEP_SEQ)}"


def delegation_step_id(from_agent: str, to_agent: str, timestamp_ms: Optional[int] = None) -> str:
    """`{fromAgentId}→{toAgentId}:delegate:{timestampMs}-{seq}`"""
    ts = timestamp_ms if timestamp_ms is not None else _now_ms()
    return f"{from_agent}→{to_agent}:delegate:{ts}-{next(_STEP_SEQ)}"


# ──────────────────────────────────────────────────────────────────────────────
# Builders
# ──────────────────────────────────────────────────────────────────────────────

def build_humanized_step(cfg: StepConfig) -> ExecutionStep:
    """
    Build a localized step for one node transition.

    The returned step carries `metadata.canonical = True`: its text is final and must
    not be rephrased downstream.
    """
    locale = resolve_locale(cfg)
    content = lookup_template(locale, cfg.node_type)(cfg)
    ts = cfg.timestamp_ms if cfg.timestamp_ms is not None else _now_ms()

    if cfg.node_type == "delegation" and cfg.target_agent_id:
        step_id = delegation_step_id(cfg.agent_id, cfg.target_agent_id, ts)
    else:
        step_id = semantic_step_id(cfg.agent_id, cfg.node_type, ts)

    metadata = {"node_type": cfg.node_type, "locale": locale}
    if cfg.target_agent_id:
        metadata["target_agent_id"] = cfg.target_agent_id
    if cfg.tool_name:
        metadata["tool_name"] = cfg.tool_name
    metadata.update(cfg.metadata)
    metadata["canonical"] = True

    return ExecutionStep(
        id=step_id,
        agent=cfg.agent_id,
        agent_name=cfg.agent_name,
        action=NODE_ACTIONS.get(cfg.node_type, "analyzing"),
        content=content,
        progress=NODE_PROGRESS.get(cfg.node_type, 0),
        metadata=metadata,
    )


def build_delegation_step(cfg: StepConfig) -> ExecutionStep:
    return build_humanized_step(cfg.model_copy(update={"node_type": "delegation"}))


def build_tool_step(cfg: StepConfig) -> ExecutionStep:
    return build_humanized_step(cfg.model_copy(update={"node_type": "tools"}))


def build_interrupt_step(cfg: StepConfig) -> ExecutionStep:
    return build_humanized_step(cfg.model_copy(update={"node_type": "interrupt"}))


def build_node_completed_step(cfg: StepConfig) -> ExecutionStep:
    return build_humanized_step(cfg.model_copy(update={"node_type": "end"}))
