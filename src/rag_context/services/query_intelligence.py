"""Query intent classification and dynamic context sizing.

Everything here is a pure function of the query string: no I/O, no clock,
no randomness. Any string (including empty) yields a result.
"""

import logging
import re
from typing import Literal

from rag_context.models.intent import ContextSizeConfig, QueryComplexity, QueryIntent

logger = logging.getLogger(__name__)

MIN_MAX_TOKENS = 300
MAX_MAX_TOKENS = 4000
MIN_CHUNK_COUNT = 1
MAX_CHUNK_COUNT = 20
MIN_TOP_K_MULTIPLIER = 0.5

# Polish and English triggers per intent, tested in this order (first match wins)
_INTENT_PATTERNS: list[tuple[QueryIntent, re.Pattern[str], re.Pattern[str]]] = [
    (
        QueryIntent.SYNTHESIS,
        re.compile(
            r"co potrafisz|jakie są.*umiejętności|analiz|syntez|umiejętności|kompetencj"
            r"|przegląd|podsumuj|oceń|jak wyglądają|przedstaw|scharakteryzuj",
            re.IGNORECASE,
        ),
        re.compile(
            r"what.*(can|are|do)|competenc|skill|capabilit|overview|summariz|review"
            r"|present|characterize|analyz|assess|evaluat",
            re.IGNORECASE,
        ),
    ),
    (
        QueryIntent.EXPLORATION,
        re.compile(
            r"opowiedz|więcej|szczegół|jak.*proces|dlaczego|historia|metodologia|rozwin"
            r"|wyjaśnij|opisz|co się działo|jak to|w jaki sposób",
            re.IGNORECASE,
        ),
        re.compile(
            r"tell.*more|detail|how.*(process|work)|why|history|methodology|explain"
            r"|describe|expand|elaborate|what.*happen",
            re.IGNORECASE,
        ),
    ),
    (
        QueryIntent.COMPARISON,
        re.compile(
            r"porównaj|versus|vs|różnic|lepsze|gorsze|wybór|alternatyw|zestawiaj"
            r"|różnią się|podobne|inne",
            re.IGNORECASE,
        ),
        re.compile(
            r"versus|vs|differ|better|worse|choice|alternative|compare|contrast|similar"
            r"|different|between",
            re.IGNORECASE,
        ),
    ),
    (
        QueryIntent.FACTUAL,
        re.compile(
            r"ile(?!\s+razy)|kiedy|gdzie|kto|która|które|jakie(?!\s+są)|jaki(?!\s+sposób)"
            r"|data|rok|liczba|wiek|czas|długo|dużo|mało|konkretnie|dokładnie"
            r"|precyzyjnie|faktycznie",
            re.IGNORECASE,
        ),
        re.compile(
            r"how\s+(much|many|long|old)|when|where|who|what(?!\s+are)|which|date|year"
            r"|number|age|time|specific|exact|precise|fact",
            re.IGNORECASE,
        ),
    ),
]

_BASE_CONFIGS: dict[QueryIntent, ContextSizeConfig] = {
    QueryIntent.FACTUAL: ContextSizeConfig(600, 3, False, False, 1.0),
    QueryIntent.CASUAL: ContextSizeConfig(400, 2, False, False, 0.8),
    QueryIntent.EXPLORATION: ContextSizeConfig(1200, 6, True, True, 1.5),
    QueryIntent.COMPARISON: ContextSizeConfig(1800, 8, True, True, 2.0),
    QueryIntent.SYNTHESIS: ContextSizeConfig(2000, 10, True, True, 2.5),
}

# (tokens, chunks, top-k) multipliers
_COMPLEXITY_SCALES: dict[QueryComplexity, tuple[float, float, float]] = {
    QueryComplexity.HIGH: (1.5, 1.3, 1.2),
    QueryComplexity.MEDIUM: (1.0, 1.0, 1.0),
    QueryComplexity.LOW: (0.7, 0.8, 0.9),
}

_CONJUNCTIONS_RE = re.compile(r"\b(and|or|but|oraz|ale|czy|lub|i )\b", re.IGNORECASE)
_SPECIFIC_TERMS_RE = re.compile(
    r"\b(specific|dokładnie|konkretnie|precyzyjnie|exactly|detailed|szczegółowo)\b",
    re.IGNORECASE,
)
_COMPARISON_WORDS_RE = re.compile(
    r"\b(versus|vs|compared|różnice|podobieństwa|lepsze|gorsze)\b", re.IGNORECASE
)
_TOPIC_WORDS_RE = re.compile(
    r"\b(projekt|project|team|zespół|design|experience|doświadczenie)\b", re.IGNORECASE
)

_POLISH_CHARS_RE = re.compile(r"[ąćęłńóśźżĄĆĘŁŃÓŚŹŻ]")
_POLISH_GREETINGS = ("cześć", "dzień")

_THEME_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    ("leadership", re.compile(r"zespół|lead|manag|przywództwo|team|leadership")),
    ("projects", re.compile(r"projekt|aplikacja|system|platforma|product")),
    ("technology", re.compile(r"technologia|react|typescript|ai|ml|tech")),
    ("design", re.compile(r"design|ui|ux|interface|visual")),
    ("achievements", re.compile(r"osiągnięcie|wynik|sukces|achievement|result")),
]

_INTENT_INSTRUCTIONS: dict[QueryIntent, tuple[str, str]] = {
    QueryIntent.SYNTHESIS: (
        "Połącz informacje z całego kontekstu, wskaż wzorce i przedstaw kompetencje "
        "w uporządkowany sposób, opierając się na konkretnych przykładach.",
        "Combine information from the whole context, point out patterns and present "
        "competencies in a structured way backed by concrete examples.",
    ),
    QueryIntent.EXPLORATION: (
        "Rozwiń temat szczegółami z kontekstu, opisz proces i decyzje oraz ich skutki.",
        "Develop the topic with details from the context and describe the process, "
        "the decisions and their effects.",
    ),
    QueryIntent.COMPARISON: (
        "Wskaż podobieństwa i różnice, porównaj podejścia oraz wyniki i podsumuj wnioski.",
        "Identify similarities and differences, compare approaches and results, and "
        "state the conclusions.",
    ),
    QueryIntent.FACTUAL: (
        "Odpowiadaj zwięźle i bezpośrednio, używając liczb, dat i faktów z kontekstu.",
        "Answer concisely and directly using numbers, dates and facts from the context.",
    ),
    QueryIntent.CASUAL: (
        "Prowadź swobodną rozmowę i korzystaj z kontekstu, gdy pomaga w odpowiedzi.",
        "Keep the conversation natural and use the context where it helps the answer.",
    ),
}


def classify_intent(query: str) -> QueryIntent:
    """Classify a query into one of five intents.

    Patterns are tested in priority order SYNTHESIS > EXPLORATION >
    COMPARISON > FACTUAL; CASUAL is the default.

    Args:
        query: Raw user query

    Returns:
        The detected intent
    """
    if not query or not query.strip():
        return QueryIntent.CASUAL

    for intent, polish, english in _INTENT_PATTERNS:
        if polish.search(query) or english.search(query):
            return intent
    return QueryIntent.CASUAL


def calculate_query_complexity(query: str, query_length: int | None = None) -> QueryComplexity:
    """Score query complexity from six binary indicators.

    Three or more indicators make a query HIGH, one or two MEDIUM.

    Args:
        query: Raw user query
        query_length: Length override (defaults to `len(query)`)

    Returns:
        Complexity level
    """
    length = query_length if query_length is not None else len(query)
    indicators = (
        query.count("?") > 1,
        bool(_CONJUNCTIONS_RE.search(query)),
        bool(_SPECIFIC_TERMS_RE.search(query)),
        bool(_COMPARISON_WORDS_RE.search(query)),
        length > 100,
        len(_TOPIC_WORDS_RE.findall(query)) >= 2,
    )
    score = sum(indicators)
    if score >= 3:
        return QueryComplexity.HIGH
    if score >= 1:
        return QueryComplexity.MEDIUM
    return QueryComplexity.LOW


def size_context(query: str, query_length: int | None = None) -> ContextSizeConfig:
    """Derive the context budget for a query.

    Args:
        query: Raw user query
        query_length: Length override used for the long-query indicator

    Returns:
        Clamped context size configuration
    """
    query = query or ""
    intent = classify_intent(query)
    complexity = calculate_query_complexity(query, query_length)
    base = _BASE_CONFIGS[intent]
    token_scale, chunk_scale, top_k_scale = _COMPLEXITY_SCALES[complexity]

    max_tokens = int(base.max_tokens * token_scale)
    chunk_count = int(base.chunk_count * chunk_scale)
    top_k_multiplier = base.top_k_multiplier * top_k_scale

    config = ContextSizeConfig(
        max_tokens=min(max(max_tokens, MIN_MAX_TOKENS), MAX_MAX_TOKENS),
        chunk_count=min(max(chunk_count, MIN_CHUNK_COUNT), MAX_CHUNK_COUNT),
        diversity_boost=base.diversity_boost,
        query_expansion=base.query_expansion,
        top_k_multiplier=max(top_k_multiplier, MIN_TOP_K_MULTIPLIER),
    )
    logger.debug(
        "Sized context for intent=%s complexity=%s: %s", intent.value, complexity.value, config
    )
    return config


def detect_language(query: str) -> Literal["pl", "en"]:
    """Detect whether a query is Polish (diacritics or a Polish greeting)."""
    if _POLISH_CHARS_RE.search(query):
        return "pl"
    lowered = query.lower()
    if any(greeting in lowered for greeting in _POLISH_GREETINGS):
        return "pl"
    return "en"


def infer_topic(text: str) -> str:
    """Classify text into a coarse theme.

    Returns:
        One of leadership, projects, technology, design, achievements, general
    """
    lowered = text.lower()
    for theme, pattern in _THEME_PATTERNS:
        if pattern.search(lowered):
            return theme
    return "general"


def extract_topics(text: str) -> list[str]:
    """Every theme the text touches, in theme order."""
    lowered = text.lower()
    return [theme for theme, pattern in _THEME_PATTERNS if pattern.search(lowered)]


def build_system_prompt(
    intent: QueryIntent, context: str, query: str, history: str = ""
) -> str:
    """Build the instruction block handed to the language model.

    Args:
        intent: Classified query intent
        context: Assembled context text
        query: Raw user query (used for language detection)
        history: Rendered conversation history, appended after the context

    Returns:
        System prompt text
    """
    language = detect_language(query)
    polish, english = _INTENT_INSTRUCTIONS[intent]
    if language == "pl":
        header = "Odpowiadaj po polsku, wyłącznie na podstawie kontekstu."
        instructions = polish
        context_label = "KONTEKST"
        history_label = "HISTORIA ROZMOWY"
    else:
        header = "Answer in English, using only the provided context."
        instructions = english
        context_label = "CONTEXT"
        history_label = "CONVERSATION HISTORY"

    prompt = (
        f"{header}\n"
        f"INTENT: {intent.value}\n"
        f"{instructions}\n"
        "If the context does not contain the answer, say so openly.\n\n"
        f"{context_label}:\n{context}"
    )
    if history:
        prompt += f"\n\n{history_label}:\n{history}"
    return prompt
