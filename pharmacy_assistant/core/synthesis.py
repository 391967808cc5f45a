from __future__ import annotations

from dataclasses import dataclass
import logging
import re
import time
from typing import Any, Sequence, Union

from langchain_core.exceptions import OutputParserException

from pharmacy_assistant.core.chains import build_formulary_prompt, get_formulary_parser
from pharmacy_assistant.core.concurrency import call_with_timeout
from pharmacy_assistant.core.context import ConversationContext, normalize_subject, split_turn
from pharmacy_assistant.core.retrieval import build_context_text
from pharmacy_assistant.errors import GenerationError
from pharmacy_assistant.intent import extract_text
from pharmacy_assistant.logging_utils import log_llm_usage
from pharmacy_assistant.types import (
    NOT_COVERED,
    NOT_REQUESTED,
    SECTION_KEYS,
    SECTION_LABELS,
    AggregatedFacts,
    RetrievedChunk,
    StructuredAnswer,
    empty_sections,
)

LOGGER = logging.getLogger("pipeline.synthesis")

FALLBACK_MESSAGE = "I could not locate that information in the formulary."
NO_STRUCTURED_ANSWER_NOTE = "No structured answer returned by LLM"

_NUMBER_RE = re.compile(r"\d+(?:[.,]\d+)*")
_CITATION_TAG_RE = re.compile(r"\[#\d+\]")
_SUBJECT_AFTER_KEYWORD_RE = re.compile(
    r"(?:for|about|regarding|of|on|info on|information on)\s+([a-z0-9\s+\-]+)",
    flags=re.IGNORECASE,
)

# (patterns, sections) pairs; a question matching any pattern requests those sections.
SECTION_INTENTS: tuple[tuple[tuple[str, ...], tuple[str, ...]], ...] = (
    (
        (r"\b(dosage|dose|dosing|posology)\b", r"\bhow\s+(?:many|much)\s+(?:mg|milligrams|tablet|tablets)\b", r"\bmaintenance\s+dose\b"),
        ("dosage", "dose_adjustment", "administration"),
    ),
    (
        (r"\b(renal|hepatic|liver|kidney)\s+(?:dose|dosing|adjustment)\b", r"\b(?:adjust|modify|reduce)\s+(?:the\s+)?dose\b"),
        ("dose_adjustment", "dosage"),
    ),
    (
        (r"\b(indication|indications|uses?|used for|treat|treating|therapy for)\b", r"\bwhat\s+is\s+it\s+for\b"),
        ("indications",),
    ),
    (
        (r"\bcontra[\s-]?indications?\b", r"\bshould\s+not\s+(?:be\s+)?(?:use|used|take|taken)\b", r"\bwhen\s+not\s+(?:to\s+)?(?:use|give|take)\b"),
        ("contraindications",),
    ),
    (
        (r"\bside\s+effects?\b", r"\badverse\s+(?:reactions?|effects?)\b"),
        ("adverse_reactions",),
    ),
    (
        (r"\b(precautions?|warnings?|cautions?)\b", r"\buse\s+with\s+caution\b"),
        ("precautions",),
    ),
    (
        (r"\binteractions?\b", r"\binteracts?\s+with\b", r"\bcompatible\s+with\b"),
        ("interactions",),
    ),
    (
        (r"\b(formulations?|available\s+forms?|presentation|strengths?|dosage\s+forms?)\b",),
        ("formulations",),
    ),
    (
        (r"\badministration\b", r"\bhow\s+(?:is|to)\s+(?:give|take|administer)\b"),
        ("administration",),
    ),
    (
        (r"\bmonitor(?:ing)?\b", r"\bparameters?\s+to\s+check\b"),
        ("monitoring",),
    ),
    (
        (r"\bpregnan(?:cy|t)\b", r"\blactation\b", r"\bbreast\s*feeding\b"),
        ("pregnancy",),
    ),
    (
        (r"\bclassification\b", r"\b(?:rx|otc)\b", r"\bover\s+the\s+counter\b"),
        ("classification",),
    ),
    (
        (r"\bnotes?\b", r"\badditional\s+information\b"),
        ("notes",),
    ),
)

_METADATA_SECTION_NAMES: dict[str, tuple[str, ...]] = {
    "dose_adjustment": ("doseAdjustment", "dose_adjustment"),
    "adverse_reactions": ("adverseReactions", "adverse_reactions"),
    "interactions": ("drugInteractions", "interactions"),
    "atc_code": ("atcCode", "atc_code"),
}

_DOC_FALLBACK_SECTIONS = (
    "adverse_reactions",
    "contraindications",
    "precautions",
    "interactions",
    "dosage",
    "dose_adjustment",
    "administration",
    "indications",
    "formulations",
    "notes",
    "monitoring",
)

_CLASSIFICATION_DETAILS = {
    "Rx": "Rx (prescription only).",
    "OTC": "OTC (over the counter).",
    "Unknown": "Unknown (OTC/Rx not specified).",
}


@dataclass(frozen=True)
class SynthesisOk:
    answer: StructuredAnswer
    answer_text: str


@dataclass(frozen=True)
class SchemaError:
    reason: str
    answer: StructuredAnswer
    answer_text: str


SynthesisResult = Union[SynthesisOk, SchemaError]


class ResponseSynthesizer:
    """Schema-constrained answer generation over merged formulary chunks."""

    def __init__(self, llm: Any, *, timeout_seconds: float = 15.0, log_pipeline: bool = False) -> None:
        self.llm = llm
        self.timeout_seconds = timeout_seconds
        self.log_pipeline = log_pipeline
        self.parser = get_formulary_parser()
        self.prompt = build_formulary_prompt(self.parser.get_format_instructions())

    def synthesize(
        self,
        question: str,
        context: ConversationContext,
        chunks: Sequence[RetrievedChunk],
    ) -> SynthesisResult:
        """Generate a structured answer.

        An empty chunk list is a valid input: every section is the not-covered
        sentinel and the model is not called. GenerationError is raised when
        the model call itself fails; an unparseable reply yields SchemaError.
        """
        started = time.perf_counter()
        if not chunks:
            answer = StructuredAnswer(
                resolved_subject=context.active_topic_hint,
                notes="No formulary extracts matched the question.",
            )
            answer.latency_ms = _elapsed_ms(started)
            return SynthesisOk(answer=answer, answer_text=FALLBACK_MESSAGE)

        requested = detect_requested_sections(question)
        active = resolve_active_subject(question, context.history, chunks, context.active_topic_hint)
        working = select_working_chunks(chunks, active, requested)
        related = unique_subjects(working)
        resolved_subject = active or (related[0] if related else context.active_topic_hint)
        classification = resolve_classification(working)

        messages = self.prompt.format_messages(
            question=question,
            context=build_context_text(working),
            chat_history=context.history_text(),
        )
        try:
            raw = call_with_timeout(
                self._invoke,
                messages,
                timeout_seconds=self.timeout_seconds,
                source="generation",
            )
        except Exception as exc:
            raise GenerationError(f"Answer generation failed: {exc}") from exc

        try:
            payload = self.parser.parse(raw)
        except OutputParserException as exc:
            LOGGER.warning("[PIPELINE] Structured answer failed schema validation | error=%s", exc)
            answer = fallback_answer(working, chunks, requested, notes=NO_STRUCTURED_ANSWER_NOTE)
            answer.resolved_subject = resolved_subject
            answer.related_subjects = related
            answer.latency_ms = _elapsed_ms(started)
            return SchemaError(reason=str(exc), answer=answer, answer_text=FALLBACK_MESSAGE)

        sections = {key: str(getattr(payload.sections, key) or "").strip() or NOT_COVERED for key in SECTION_KEYS}
        sections = apply_requested_sections(sections, requested)
        sections = fill_sections_from_chunks(sections, working, chunks, requested)
        sections = enforce_numeric_grounding(sections, chunks)
        sections["overview"] = enforce_classification_in_overview(sections["overview"], classification)
        sections["classification"] = (
            _CLASSIFICATION_DETAILS[classification]
            if requested and "classification" in requested
            else NOT_REQUESTED
        )
        sections["pregnancy"] = NOT_REQUESTED

        answer = StructuredAnswer(
            sections=sections,
            overview=sections["overview"],
            follow_up_questions=[str(item).strip() for item in payload.follow_up_questions if str(item).strip()],
            citations=select_citations(working, payload.citations),
            notes=str(payload.notes or "").strip(),
            resolved_subject=resolved_subject,
            related_subjects=related,
        )
        answer.latency_ms = _elapsed_ms(started)
        answer_text = format_answer_text(sections, payload.answer, requested)
        if self.log_pipeline:
            LOGGER.info(
                "[PIPELINE] Synthesized answer | subject=%s chunks=%s citations=%s latency_ms=%s",
                resolved_subject,
                len(working),
                len(answer.citations),
                answer.latency_ms,
            )
        return SynthesisOk(answer=answer, answer_text=answer_text)

    def _invoke(self, messages: list[Any]) -> str:
        result = self.llm.invoke(messages)
        log_llm_usage("synthesis.invoke", result)
        return extract_text(result)


def detect_requested_sections(question: str) -> list[str] | None:
    text = str(question or "").strip()
    if not text:
        return None
    matched: set[str] = set()
    for patterns, sections in SECTION_INTENTS:
        if any(re.search(pattern, text, flags=re.IGNORECASE) for pattern in patterns):
            matched.update(sections)
    if not matched:
        return None
    matched.add("overview")
    return [key for key in SECTION_KEYS if key in matched]


def unique_subjects(chunks: Sequence[RetrievedChunk]) -> list[str]:
    seen: set[str] = set()
    names: list[str] = []
    for chunk in chunks:
        name = (chunk.metadata.subject_name or "").strip()
        key = normalize_subject(name)
        if not key or key in seen:
            continue
        seen.add(key)
        names.append(name)
    return names


def match_subject_in_text(text: str, candidates: Sequence[str]) -> str | None:
    if not text:
        return None
    lowered = text.lower()
    ordered = sorted(candidates, key=len, reverse=True)
    for candidate in ordered:
        if candidate.lower() in lowered:
            return candidate
    keyword = _SUBJECT_AFTER_KEYWORD_RE.search(text)
    if keyword:
        raw = keyword.group(1).strip().lower()
        for candidate in ordered:
            normalized = candidate.lower()
            if raw and (raw in normalized or normalized in raw):
                return candidate
    return None


def resolve_active_subject(
    question: str,
    history: Sequence[str],
    chunks: Sequence[RetrievedChunk],
    preferred: str | None = None,
) -> str | None:
    """Pick the drug under discussion: hint, then question, then history, then first chunk."""
    candidates = unique_subjects(chunks)
    if not candidates:
        return None
    if preferred:
        target = normalize_subject(preferred)
        for candidate in candidates:
            if normalize_subject(candidate) == target:
                return candidate
    direct = match_subject_in_text(question, candidates)
    if direct:
        return direct
    for entry in reversed(list(history)):
        _, content = split_turn(entry)
        match = match_subject_in_text(content, candidates)
        if match:
            return match
    return candidates[0]


def select_working_chunks(
    chunks: Sequence[RetrievedChunk],
    active_subject: str | None,
    requested: list[str] | None,
) -> list[RetrievedChunk]:
    working = list(chunks)
    if active_subject:
        target = normalize_subject(active_subject)
        focused = []
        for chunk in working:
            name = normalize_subject(chunk.metadata.subject_name or "")
            if name and (name == target or target in name or name in target):
                focused.append(chunk)
        if focused:
            working = focused

    if requested and len(working) > 1:
        allowed = {name.lower() for key in requested for name in metadata_section_names(key)}
        by_section = [
            chunk
            for chunk in working
            if not chunk.metadata.section or chunk.metadata.section.lower() in allowed
        ]
        if by_section:
            working = by_section

    working = working[: 4 if requested else 6]

    seen: set[tuple[str, str]] = set()
    distinct: list[RetrievedChunk] = []
    for chunk in working:
        name = normalize_subject(chunk.metadata.subject_name or "")
        section = str(chunk.metadata.section or "").lower()
        if name and section:
            if (name, section) in seen:
                continue
            seen.add((name, section))
        distinct.append(chunk)
    return distinct


def metadata_section_names(section_key: str) -> tuple[str, ...]:
    return _METADATA_SECTION_NAMES.get(section_key, (section_key,))


def resolve_classification(chunks: Sequence[RetrievedChunk]) -> str:
    for chunk in chunks:
        if chunk.metadata.classification in ("Rx", "OTC"):
            return str(chunk.metadata.classification)
    return "Unknown"


def enforce_classification_in_overview(overview: str, classification: str) -> str:
    sentence = f"Classification: {_CLASSIFICATION_DETAILS.get(classification, _CLASSIFICATION_DETAILS['Unknown'])}"
    trimmed = str(overview or "").strip()
    if not trimmed or trimmed in (NOT_COVERED, NOT_REQUESTED):
        return sentence
    lowered = trimmed.lower()
    if "classification" in lowered or classification.lower() in lowered:
        return trimmed
    return f"{sentence} {trimmed}"


def apply_requested_sections(sections: dict[str, str], requested: list[str] | None) -> dict[str, str]:
    if not requested:
        return dict(sections)
    return {key: (value if key in requested else NOT_REQUESTED) for key, value in sections.items()}


def fill_sections_from_chunks(
    sections: dict[str, str],
    working: Sequence[RetrievedChunk],
    all_chunks: Sequence[RetrievedChunk],
    requested: list[str] | None,
) -> dict[str, str]:
    """Fill empty sections from chunks whose section metadata matches."""
    filled = dict(sections)
    targets = [key for key in _DOC_FALLBACK_SECTIONS if not requested or key in requested]
    for key in targets:
        if filled.get(key, NOT_COVERED) not in (NOT_COVERED, NOT_REQUESTED, ""):
            continue
        content = _section_content(working, key) or _section_content(all_chunks, key)
        if content:
            filled[key] = content
    return filled


def enforce_numeric_grounding(sections: dict[str, str], chunks: Sequence[RetrievedChunk]) -> dict[str, str]:
    """Reset any section quoting a number that no chunk contains verbatim."""
    grounded_numbers: set[str] = set()
    for chunk in chunks:
        grounded_numbers.update(_NUMBER_RE.findall(chunk.content or ""))
    checked: dict[str, str] = {}
    for key, value in sections.items():
        if value in (NOT_COVERED, NOT_REQUESTED):
            checked[key] = value
            continue
        numbers = _NUMBER_RE.findall(_CITATION_TAG_RE.sub(" ", value))
        ungrounded = [number for number in numbers if number not in grounded_numbers]
        if ungrounded:
            LOGGER.info("[PIPELINE] Section '%s' dropped: ungrounded numbers %s", key, ungrounded[:5])
            checked[key] = NOT_COVERED
        else:
            checked[key] = value
    return checked


def select_citations(working: Sequence[RetrievedChunk], tags: Sequence[int]) -> list[dict[str, Any]]:
    picked: list[dict[str, Any]] = []
    seen: set[int] = set()
    for tag in tags:
        try:
            index = int(tag)
        except (TypeError, ValueError):
            continue
        if 1 <= index <= len(working) and index not in seen:
            seen.add(index)
            picked.append(working[index - 1].citation())
    if picked:
        return picked
    return [chunk.citation() for chunk in working]


def format_answer_text(
    sections: dict[str, str],
    fallback: str | None = None,
    requested: list[str] | None = None,
) -> str:
    parts: list[str] = []
    for key in requested or SECTION_KEYS:
        content = str(sections.get(key) or "").strip()
        if not content or content in (NOT_COVERED, NOT_REQUESTED):
            continue
        parts.append(f"{SECTION_LABELS[key]}:\n{content}")
    if parts:
        return "\n\n".join(parts)
    return str(fallback or "").strip() or FALLBACK_MESSAGE


def fallback_answer(
    working: Sequence[RetrievedChunk],
    all_chunks: Sequence[RetrievedChunk],
    requested: list[str] | None,
    *,
    notes: str,
) -> StructuredAnswer:
    sections = empty_sections()
    sections = fill_sections_from_chunks(sections, working, all_chunks, requested)
    sections["overview"] = FALLBACK_MESSAGE
    sections["classification"] = NOT_REQUESTED
    sections["pregnancy"] = NOT_REQUESTED
    return StructuredAnswer(
        sections=sections,
        overview=FALLBACK_MESSAGE,
        citations=[chunk.citation() for chunk in working],
        notes=notes,
        degraded=True,
    )


def templated_text(facts: AggregatedFacts, subject: str | None) -> str:
    """Plain-text answer assembled from inventory and external facts only."""
    lines: list[str] = []
    label = subject or "the requested product"
    if facts.inventory:
        for item in facts.inventory:
            status = "In Stock" if item.in_stock else "Out of Stock"
            line = f"Available in pharmacy: {item.name} - {status} ({item.quantity} {item.unit or 'piece'}) - PHP {item.selling_price}"
            if item.expiry_date:
                line += f" - expires {item.expiry_date}"
            lines.append(line)
    elif facts.sources or facts.external is not None:
        lines.append(f"No matching product for {label} was found in pharmacy inventory.")

    external = facts.external
    if external is not None:
        if external.mapped_name:
            lines.append(f"US generic name: {external.mapped_name}")
        if external.dosage:
            lines.append(f"Dosage: {external.dosage}")
        if external.indications:
            lines.append(f"Usage: {external.indications}")
        if external.side_effects:
            lines.append(f"Side effects: {external.side_effects}")
        if external.warnings:
            lines.append(f"Warnings: {external.warnings}")
        lines.append(f"Source: {external.source}")

    if not lines:
        lines.append(
            f"Unable to generate an answer about {label} right now. Please consult the formulary or a pharmacist."
        )
    return "\n".join(lines)


def templated_answer(
    facts: AggregatedFacts,
    chunks: Sequence[RetrievedChunk],
    *,
    subject: str | None,
    notes: str,
) -> tuple[StructuredAnswer, str]:
    answer = fallback_answer(list(chunks), list(chunks), None, notes=notes)
    answer.resolved_subject = subject
    answer.related_subjects = unique_subjects(chunks)
    return answer, templated_text(facts, subject)


def _section_content(chunks: Sequence[RetrievedChunk], section_key: str) -> str | None:
    names = {name.lower() for name in metadata_section_names(section_key)}
    for chunk in chunks:
        if str(chunk.metadata.section or "").lower() in names:
            content = (chunk.content or "").strip()
            if content:
                return content
    return None


def _elapsed_ms(started: float) -> int:
    return int(round((time.perf_counter() - started) * 1000))
