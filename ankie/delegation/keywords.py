# ankie/delegation/keywords.py

"""
Static lexical tables used by the delegation scorers.

HEURISTIC_KEYWORDS feeds the lightweight heuristic scorer (weights default to 1).
ANALYZER_PATTERNS feeds the fuzzy analyzer (primary/secondary/contextual/exclusions).
All entries are lowercase.
"""

from typing import Dict, List, NamedTuple, Optional, Tuple


class KeywordEntry(NamedTuple):
    k: str
    w: int = 1
    # "word" requires a whole-word match; None is a plain substring match
    match: Optional[str] = None


def _plain(*words: str) -> List[KeywordEntry]:
    return [KeywordEntry(w) for w in words]


HEURISTIC_KEYWORDS: Dict[str, List[KeywordEntry]] = {
    "ami-creative": _plain(
        "agenda", "agendar", "calendario", "calendar", "schedule", "scheduling", "meeting", "reunión",
        "recordatorio", "reminder", "organiza", "organización", "follow up", "minutes", "acta",
        "asistente", "assistant", "secretaria",
    ),
    "notion-agent": _plain(
        "notion", "workspace", "página", "page", "database", "db", "tabla", "base de datos",
        "propiedad", "properties", "block",
    ),
    "apu-support": _plain(
        "ticket", "tickets", "incidencia", "incidencias", "soporte", "support", "helpdesk", "sla",
        "cliente", "clientes", "investiga", "research", "buscar", "trend", "tendencia", "web", "news",
        "noticias", "análisis", "comparar", "fuentes",
    ),
    "emma-ecommerce": _plain(
        "shopify", "ecommerce", "tienda", "producto", "inventario", "ventas", "carrito", "sku",
        "catalogo", "checkout",
    ),
    "toby-technical": [
        KeywordEntry("debug", 2), KeywordEntry("código", 2), KeywordEntry("code", 2),
        KeywordEntry("api", 2), KeywordEntry("endpoint", 2), KeywordEntry("deploy", 2),
        KeywordEntry("docker", 2), KeywordEntry("typescript", 3), KeywordEntry("javascript", 3),
        KeywordEntry("next.js", 3), KeywordEntry("error stack", 2), KeywordEntry("refactor", 2),
        KeywordEntry("architecture", 2), KeywordEntry("base de código", 2), KeywordEntry("build error", 3),
        KeywordEntry("integration tests", 2), KeywordEntry("docker compose", 2), KeywordEntry("fix", 2),
        KeywordEntry("failing", 2),
    ],
    "astra-email": [
        KeywordEntry("email", 2), KeywordEntry("correo", 2), KeywordEntry("gmail", 2),
        KeywordEntry("enviar correo", 3), KeywordEntry("enviar email", 3),
    ] + _plain(
        "compose email", "draft email", "responder correo", "reply email", "firma email", "inbox",
        "bandeja entrada", "resumen correo", "resumen email", "correos", "emails", "asunto",
        "subject line", "destinatario", "cc", "bcc", "adjunto", "attachment",
    ),
    "jenn-community": _plain(
        "comunidad", "community", "engagement", "social strategy", "campaña", "followers", "audiencia",
    ) + [
        KeywordEntry("redes sociales", 2), KeywordEntry("social media", 2),
    ] + _plain(
        "contenido social", "analytics social", "schedule post", "programar publicación",
    ) + [
        KeywordEntry("tweet", 3), KeywordEntry("twitter", 3), KeywordEntry("x.com", 3),
        KeywordEntry("publicar tweet", 3), KeywordEntry("post tweet", 3),
    ] + _plain("hilo twitter", "thread", "trending", "hashtag") + [
        KeywordEntry("instagram", 3), KeywordEntry("ig", 2), KeywordEntry("insta", 2),
        KeywordEntry("facebook", 3), KeywordEntry("fb", 2),
        KeywordEntry("telegram", 4, "word"),
        KeywordEntry("canal telegram", 4), KeywordEntry("channel telegram", 4),
        KeywordEntry("publicar telegram", 4), KeywordEntry("enviar telegram", 4),
        KeywordEntry("mensaje telegram", 4), KeywordEntry("telegram channel", 4),
        KeywordEntry("telegram message", 4), KeywordEntry("post telegram", 4),
    ],
}


class AgentPatterns(NamedTuple):
    primary: Tuple[str, ...]
    secondary: Tuple[str, ...]
    contextual: Tuple[str, ...]
    exclusions: Tuple[str, ...] = ()


ANALYZER_PATTERNS: Dict[str, AgentPatterns] = {
    "toby-technical": AgentPatterns(
        primary=(
            "code", "debug", "api", "database", "sql", "script", "programming", "development", "technical",
            "bug", "backend", "frontend", "typescript", "javascript", "python", "golang", "rust", "kotlin",
            "graphql", "react", "next.js", "docker", "kubernetes", "terraform", "redis", "kafka", "websocket",
            "postgres", "mysql", "sqlite", "migration", "endpoint", "iot", "firmware", "esp32", "arduino", "mqtt",
        ),
        secondary=(
            "performance", "optimization", "security", "deployment", "server", "framework", "library",
            "algorithm", "latency", "refactor", "unit test", "integration test", "ci/cd", "build failure",
            "compile error", "stack trace", "traceback", "memory leak", "deadlock", "pull request", "oauth",
            "webhook", "rate limit", "observability",
        ),
        contextual=(
            "how to build", "how to implement", "not working", "type error", "failed build",
            "unit tests failing", "deployment failed", "cannot connect to database", "flash firmware",
            "docker build fails", "analyze logs", "optimize query", "improve performance",
        ),
        exclusions=(
            "design", "creative", "marketing", "shopify", "ecommerce", "calendar", "meeting", "google docs",
            "tweet", "twitter", "social media",
        ),
    ),
    "apu-support": AgentPatterns(
        primary=(
            "research", "investigación", "investigar", "analyze", "analizar", "investigate", "trends",
            "tendencias", "market", "mercado", "news", "intelligence", "study", "estudio", "stocks",
        ),
        secondary=(
            "industry", "industria", "insights", "report", "reporte", "statistics", "estadísticas",
            "forecast", "whitepaper", "citation", "source", "dataset", "press release",
        ),
        contextual=(
            "what are the trends", "analyze the market", "analizar el mercado", "latest data",
            "industry analysis", "find sources", "encontrar fuentes",
        ),
        exclusions=(
            "design", "creative", "marketing", "shopify", "ecommerce", "tienda", "ventas", "calendar", "meeting",
        ),
    ),
    "ami-creative": AgentPatterns(
        primary=(
            "task", "tarea", "project", "proyecto", "organize", "organizar", "schedule", "scheduling",
            "planning", "calendar", "calendario", "meeting", "reunión", "appointment", "cita", "agenda",
            "restaurant", "restaurante", "hotel", "booking", "reserva", "flight", "vuelo", "travel", "viaje",
            "contact", "contacto", "linkedin", "invite", "invitación",
        ),
        secondary=(
            "productivity", "productividad", "workflow", "deadline", "tomorrow", "mañana", "google maps",
            "directions", "recommendations", "recomendaciones",
        ),
        contextual=(
            "help me organize", "ayúdame a organizar", "schedule a meeting", "agendar una reunión",
            "book a table", "reservar mesa", "plan a trip", "planificar viaje", "find flights",
            "manage my calendar", "gestionar mi calendario",
        ),
        exclusions=("technical", "programming", "sql", "shopify", "ecommerce", "tweet", "twitter", "hashtag"),
    ),
    "emma-ecommerce": AgentPatterns(
        primary=(
            "shopify", "store", "tienda", "products", "productos", "sales", "ventas", "inventory",
            "inventario", "ecommerce", "e-commerce", "catalog", "catálogo", "orders", "pedidos",
            "bestsellers", "discounts", "abandoned checkout",
        ),
        secondary=(
            "analytics", "conversion rate", "customers", "shipping", "envío", "dashboard", "metrics",
            "métricas", "average order value", "lifetime value", "roas",
        ),
        contextual=(
            "my store", "mi tienda", "bestselling products", "productos más vendidos", "sales data",
            "product performance", "store analytics", "increase conversion", "review abandoned checkouts",
        ),
    ),
    "astra-email": AgentPatterns(
        primary=("send", "enviar", "draft", "borrador", "reply", "responder", "compose", "email", "correo"),
        secondary=("communication", "comunicación", "correspondence", "mail", "letter", "carta"),
        contextual=(
            "send email", "enviar correo", "draft reply", "write message", "compose email",
            "email him", "email her", "reply to this email",
        ),
        exclusions=("tweet", "twitter"),
    ),
    "notion-agent": AgentPatterns(
        primary=("notion", "workspace", "page", "database", "notes", "notas", "knowledge", "conocimiento"),
        secondary=("template", "plantilla", "wiki", "documentation", "documentación", "structure"),
        contextual=("create notion page", "organize workspace", "notion database", "knowledge base", "take notes"),
        exclusions=("email", "calendar", "google"),
    ),
    "jenn-community": AgentPatterns(
        primary=(
            "twitter", "tweet", "tweets", "social media", "community", "publish", "publicar",
            "redes sociales", "hashtag", "hashtags", "telegram", "instagram",
        ),
        secondary=(
            "engagement", "brand", "audience", "followers", "seguidores", "viral", "trending", "content",
            "publishing",
        ),
        contextual=(
            "create tweet", "post to twitter", "tweet about", "social media strategy", "community management",
            "twitter campaign", "include hashtags", "schedule posts",
        ),
        exclusions=("email", "calendar", "shopify", "google docs", "technical analysis"),
    ),
}

# Hand-written clarification prompts for commonly confused pairs
CLARIFICATIONS: Dict[Tuple[str, str], str] = {
    ("apu-support", "ami-creative"): (
        "Are you looking for research and support or practical assistance like scheduling and coordination?"
    ),
    ("ami-creative", "emma-ecommerce"): "Is this about general organization or about your Shopify store?",
    ("astra-email", "ami-creative"): "Is this specifically about email management or broader administrative tasks?",
    ("notion-agent", "ami-creative"): (
        "Is this about Notion workspace organization or general administrative coordination?"
    ),
    ("toby-technical", "ami-creative"): (
        "Is this a technical coding/devops issue or more of an administrative/productivity request?"
    ),
    ("toby-technical", "apu-support"): (
        "Do you need hands-on implementation/debugging or research and support assistance?"
    ),
}
