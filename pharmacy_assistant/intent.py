from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from functools import lru_cache
import json
import logging
import re
from threading import Lock
from typing import Any, Callable, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError

from pharmacy_assistant.core.concurrency import call_with_timeout
from pharmacy_assistant.core.context import normalize_subject
from pharmacy_assistant.logging_utils import log_llm_usage
from pharmacy_assistant.types import Intent, IntentType, NeedTag, SourceTag

LOGGER = logging.getLogger("pipeline.intent")

INTENT_SYSTEM_PROMPT = " ".join(
    [
        "You are an assistant that extracts intent from a pharmacy user query.",
        "Return STRICT JSON only with keys: intent, drugName, needs, sources.",
        "intent must be one of: 'drug_info' | 'stock_check' | 'dosage' | 'alternatives' | 'other'",
        "drugName is a string or null (e.g., 'Paracetamol 500 mg')",
        "needs is an array of strings from: 'stock','dosage','warnings','alternatives','price','expiry','local_name'",
        "sources is an array containing any of: 'internal_db','external_db','web_search'",
        "Do not include any extra fields or text. No markdown. JSON only.",
    ]
)

STOP_WORDS: frozenset[str] = frozenset(
    {
        "do", "we", "have", "in", "stock", "the", "a", "an", "is", "there", "any", "of",
        "for", "and", "please", "you", "how", "many", "much", "mg", "ml", "mcg", "g",
        "what", "whats", "what's", "when", "where", "which", "who", "why", "does", "can",
        "are", "it", "its", "this", "that", "about", "tell", "me", "show", "give", "check",
        "available", "availability", "dosage", "dose", "dosing", "price", "cost", "expiry",
        "expire", "expiration", "warning", "warnings", "side", "effect", "effects",
        "alternative", "alternatives", "substitute", "equivalent", "brand", "generic",
        "take", "use", "used", "usage", "still", "our", "with", "should",
    }
)

_STRENGTH_SUBJECT_RE = re.compile(
    r"([A-Za-z][A-Za-z\s\-]{1,80}?)\s*(\d{2,4})\s?(mg|ml|mcg|g)\b",
    flags=re.IGNORECASE,
)
_CAPITALIZED_RUN_RE = re.compile(r"\b[A-Z][a-zA-Z]{2,}(?:\s+[A-Z][a-zA-Z]{2,}){0,2}\b")

_DOSAGE_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern)
    for pattern in (
        r"\bdosage\b",
        r"\bdose\b",
        r"\bhow\s+much\b",
        r"\bhow\s+many\b",
        r"\bhow\s+to\s+take\b",
        r"\bhow\s+often\b",
        r"\bposology\b",
        r"\badministration\b",
        r"\buse\b.*\bdirections?\b",
        r"\bdirections?\s+for\s+use\b",
        r"\btake\b.*\b\d{2,4}\s*mg\b",
        r"\bevery\s+\d{1,2}\s*(hours|hrs|h)\b",
    )
)


def _contains_any(*phrases: str) -> Callable[[str], bool]:
    def predicate(text: str) -> bool:
        return any(phrase in text for phrase in phrases)

    return predicate


def _matches_any(patterns: tuple[re.Pattern[str], ...]) -> Callable[[str], bool]:
    def predicate(text: str) -> bool:
        return any(pattern.search(text) for pattern in patterns)

    return predicate


# Ordered (predicate, effect) rule tables; predicates receive lower-cased text.
NEED_RULES: tuple[tuple[Callable[[str], bool], NeedTag], ...] = (
    (_contains_any("stock", "available", "do you have", "do we have"), NeedTag.STOCK),
    (_matches_any(_DOSAGE_PATTERNS), NeedTag.DOSAGE),
    (_contains_any("warning", "contraindication", "side effect"), NeedTag.WARNINGS),
    (
        _contains_any(
            "alternative", "substitute", "substitution", "other brand", "another brand",
            "generic equivalent", "equivalent",
        ),
        NeedTag.ALTERNATIVES,
    ),
    (_contains_any("price", "cost"), NeedTag.PRICE),
    (_contains_any("expiry", "expire", "expiration"), NeedTag.EXPIRY),
    (
        _contains_any("philippines", "ph ", "ph brand", "brand in ph", "local name"),
        NeedTag.LOCAL_NAME,
    ),
)

INTENT_RULES: tuple[tuple[Callable[[frozenset[NeedTag]], bool], IntentType], ...] = (
    (lambda needs: NeedTag.ALTERNATIVES in needs, IntentType.ALTERNATIVES),
    (lambda needs: NeedTag.STOCK in needs and NeedTag.DOSAGE in needs, IntentType.DRUG_INFO),
    (lambda needs: NeedTag.STOCK in needs, IntentType.STOCK_CHECK),
    (lambda needs: NeedTag.DOSAGE in needs, IntentType.DOSAGE),
    (lambda needs: bool(needs), IntentType.DRUG_INFO),
)

_NEED_VALUES = frozenset(need.value for need in NeedTag)
_INTERNAL_NEEDS = frozenset({NeedTag.STOCK, NeedTag.PRICE, NeedTag.EXPIRY, NeedTag.LOCAL_NAME})
_EXTERNAL_NEEDS = frozenset({NeedTag.DOSAGE, NeedTag.WARNINGS})

SOURCE_RULES: tuple[tuple[Callable[[frozenset[NeedTag], str], bool], SourceTag], ...] = (
    (lambda needs, _text: bool(needs & _INTERNAL_NEEDS), SourceTag.INTERNAL_DB),
    (lambda needs, _text: bool(needs & _EXTERNAL_NEEDS), SourceTag.EXTERNAL_DB),
    (lambda needs, _text: NeedTag.ALTERNATIVES in needs, SourceTag.INTERNAL_DB),
    (
        lambda _needs, text: _contains_any("advisory", "recall", "update", "ph vs us", "difference")(text),
        SourceTag.WEB_SEARCH,
    ),
)

FALLBACK_INTENT = Intent(
    intent=IntentType.OTHER,
    subject=None,
    needs=frozenset(),
    sources=frozenset({SourceTag.INTERNAL_DB}),
    origin="fallback",
)


class IntentPayload(BaseModel):
    """Schema the remote classifier must satisfy."""

    intent: Literal["drug_info", "stock_check", "dosage", "alternatives", "other"]
    drugName: str | None = None
    needs: list[str] = Field(default_factory=list)
    sources: list[Literal["internal_db", "external_db", "web_search"]] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore")


@dataclass
class IntentClassifier:
    """Remote-first intent classifier with a deterministic heuristic fallback."""

    llm: Any | None = None
    timeout_seconds: float = 8.0
    log_enabled: bool = False
    cache_size: int = 512

    def __post_init__(self) -> None:
        self._cache: OrderedDict[str, Intent] = OrderedDict()
        self._cache_lock = Lock()

    def classify(self, text: str) -> Intent:
        try:
            return self._classify(text)
        except Exception:
            LOGGER.exception("Intent classification failed; using fallback intent")
            return FALLBACK_INTENT

    def classify_with_context(self, text: str, active_topic_hint: str | None) -> Intent:
        """Classify and carry the active topic forward when the text names no subject."""
        intent = self.classify(text)
        hint = (active_topic_hint or "").strip()
        if not hint or intent.subject:
            return intent
        return Intent(
            intent=intent.intent,
            subject=hint,
            needs=intent.needs,
            sources=intent.sources,
            origin=intent.origin,
        )

    def _classify(self, text: str) -> Intent:
        normalized = _normalize(text)
        if not normalized:
            return FALLBACK_INTENT

        cached = self._cache_get(normalized)
        if cached is not None:
            self._log(cached, cache_hit=True, query=normalized)
            return cached

        if self.llm is not None:
            remote = self._classify_with_llm(text)
            if remote is not None:
                self._cache_put(normalized, remote)
                self._log(remote, cache_hit=False, query=normalized)
                return remote

        result = classify_heuristic(str(text).strip())
        self._log(result, cache_hit=False, query=normalized)
        return result

    def _classify_with_llm(self, text: str) -> Intent | None:
        try:
            raw = call_with_timeout(
                _invoke_llm,
                self.llm,
                [("system", INTENT_SYSTEM_PROMPT), ("human", str(text))],
                timeout_seconds=self.timeout_seconds,
                source="intent-llm",
            )
        except Exception as exc:
            LOGGER.info("[PIPELINE] Remote intent unavailable, using heuristics | reason=%s", exc)
            return None
        parsed = _parse_json_block(raw or "")
        if parsed is None:
            return None
        try:
            payload = IntentPayload.model_validate(parsed)
        except PydanticValidationError:
            LOGGER.info("[PIPELINE] Remote intent payload failed schema validation")
            return None
        return _intent_from_payload(payload)

    def _cache_get(self, normalized: str) -> Intent | None:
        with self._cache_lock:
            intent = self._cache.get(normalized)
            if intent is not None:
                self._cache.move_to_end(normalized)
            return intent

    def _cache_put(self, normalized: str, intent: Intent) -> None:
        with self._cache_lock:
            self._cache[normalized] = intent
            self._cache.move_to_end(normalized)
            while len(self._cache) > max(1, self.cache_size):
                self._cache.popitem(last=False)

    def _log(self, intent: Intent, *, cache_hit: bool, query: str) -> None:
        if not self.log_enabled:
            return
        LOGGER.info(
            "[PIPELINE] Intent classification | intent=%s subject=%s needs=%s sources=%s origin=%s cache_hit=%s query='%s'",
            intent.intent.value,
            intent.subject,
            sorted(need.value for need in intent.needs),
            sorted(source.value for source in intent.sources),
            intent.origin,
            cache_hit,
            _trim(query),
        )


@lru_cache(maxsize=1024)
def classify_heuristic(text: str) -> Intent:
    lowered = str(text or "").lower()
    needs = compute_needs(lowered)
    intent = decide_intent(needs)
    return Intent(
        intent=intent,
        subject=extract_subject(text),
        needs=needs,
        sources=decide_sources(needs, lowered),
        origin="heuristic",
    )


def compute_needs(lowered_text: str) -> frozenset[NeedTag]:
    return frozenset(need for predicate, need in NEED_RULES if predicate(lowered_text))


def decide_intent(needs: frozenset[NeedTag]) -> IntentType:
    for predicate, intent in INTENT_RULES:
        if predicate(needs):
            return intent
    return IntentType.OTHER


def decide_sources(needs: frozenset[NeedTag], lowered_text: str) -> frozenset[SourceTag]:
    sources = frozenset(source for predicate, source in SOURCE_RULES if predicate(needs, lowered_text))
    return sources or frozenset({SourceTag.INTERNAL_DB})


def extract_subject(text: str) -> str | None:
    raw = str(text or "").strip()
    if not raw:
        return None

    strength = _STRENGTH_SUBJECT_RE.search(raw)
    if strength:
        name = _strip_stop_words(strength.group(1))
        if name:
            return f"{name} {strength.group(2)} {strength.group(3).lower()}"

    for match in _CAPITALIZED_RUN_RE.finditer(raw):
        words = [word for word in match.group(0).split() if word.lower() not in STOP_WORDS]
        if words:
            return " ".join(words)

    cleaned = " ".join(re.sub(r"[^a-z\s\-]", " ", raw.lower()).split())
    words = [word for word in cleaned.split(" ") if len(word) >= 3 and word not in STOP_WORDS]
    if not words:
        return None
    # Stable sort keeps the earliest of equally long tokens.
    return sorted(words, key=len, reverse=True)[0]


def _strip_stop_words(name: str) -> str:
    # Contraction tails ("s" from "what's") arrive as single letters.
    words = [
        word
        for word in name.replace("-", " - ").split()
        if word.lower() not in STOP_WORDS and not (len(word) == 1 and word.isalpha())
    ]
    return " ".join(words).replace(" - ", "-").strip(" -")


def _intent_from_payload(payload: IntentPayload) -> Intent:
    needs = frozenset(NeedTag(item) for item in payload.needs if item in _NEED_VALUES)
    sources = frozenset(SourceTag(item) for item in payload.sources)
    subject = (payload.drugName or "").strip() or None
    return Intent(
        intent=IntentType(payload.intent),
        subject=subject,
        needs=needs,
        sources=sources or frozenset({SourceTag.INTERNAL_DB}),
        origin="llm",
    )


def _invoke_llm(llm: Any, messages: list[tuple[str, str]]) -> str:
    result = llm.invoke(messages)
    log_llm_usage("intent.invoke", result)
    return extract_text(result)


def extract_text(result: Any) -> str:
    content = getattr(result, "content", None)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, str):
                parts.append(item)
            elif isinstance(item, dict) and item.get("text"):
                parts.append(str(item["text"]))
        return "".join(parts)
    return str(result or "")


def _parse_json_block(text: str) -> dict[str, Any] | None:
    raw = str(text or "").strip()
    if not raw:
        return None
    raw = re.sub(r"^```(?:json)?\s*|\s*```$", "", raw, flags=re.IGNORECASE | re.DOTALL).strip()
    try:
        parsed = json.loads(raw)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass
    match = re.search(r"\{.*\}", raw, flags=re.DOTALL)
    if not match:
        return None
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def _normalize(text: str) -> str:
    return normalize_subject(text)


def _trim(text: str, limit: int = 120) -> str:
    if len(text) <= limit:
        return text
    return text[:limit].rstrip() + "..."
