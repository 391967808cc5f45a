from __future__ import annotations

from threading import Event
from time import perf_counter
from typing import Any, Mapping
from uuid import uuid4
import logging

from pharmacy_assistant.core.aggregator import SourceAggregator
from pharmacy_assistant.core.concurrency import RequestCancelled, run_parallel
from pharmacy_assistant.core.config import AppConfig
from pharmacy_assistant.core.context import ConversationContext, build_query
from pharmacy_assistant.core.expansion import expand
from pharmacy_assistant.core.merge import merge
from pharmacy_assistant.core.retrieval import FormularyRetriever
from pharmacy_assistant.core.synthesis import (
    FALLBACK_MESSAGE,
    ResponseSynthesizer,
    SchemaError,
    templated_answer,
    templated_text,
)
from pharmacy_assistant.errors import ConfigurationError, GenerationError, RetrievalError, ValidationError
from pharmacy_assistant.integrations.cache import build_cache
from pharmacy_assistant.integrations.inventory import InventoryStore
from pharmacy_assistant.integrations.nvidia import get_nvidia_embeddings, get_nvidia_llm
from pharmacy_assistant.integrations.openfda import OpenFDAClient
from pharmacy_assistant.integrations.rxnorm import RxNormClient
from pharmacy_assistant.integrations.storage import get_formulary_store, safe_collection_count
from pharmacy_assistant.intent import IntentClassifier
from pharmacy_assistant.logging_utils import hash_query_text, log_event
from pharmacy_assistant.observability.tracing import annotate_span, start_span
from pharmacy_assistant.types import (
    NOT_COVERED,
    NOT_REQUESTED,
    AggregatedFacts,
    ChatReply,
    FormularyResult,
    Intent,
    PipelineStage,
    Query,
    SourceTag,
    StructuredAnswer,
)

LOGGER = logging.getLogger("pipeline.main")

FORMULARY_SOURCE = "Formulary"
FORMULARY_UNAVAILABLE_MESSAGE = "Formulary data is currently unavailable."
CLINICAL_SECTIONS = ("dosage", "indications", "adverse_reactions", "precautions", "contraindications")

CHAT_UNCONFIGURED_MESSAGE = "Chatbot service unavailable - AI configuration missing. Use manual processes."
CHAT_INVALID_MESSAGE = "Invalid request format detected. Check query structure."
CHAT_ERROR_MESSAGE = "System error occurred. Manual processes required."

BASE_CONFIDENCE = 0.5
CLINICAL_CONFIDENCE = 0.3
INVENTORY_CONFIDENCE = 0.2
MULTI_SOURCE_CONFIDENCE = 0.1
DEGRADED_CONFIDENCE_CAP = 0.5


class FormularyAssistant:
    """Request orchestrator; every collaborator is injected at construction."""

    def __init__(
        self,
        config: AppConfig,
        *,
        classifier: IntentClassifier,
        retriever: FormularyRetriever | None = None,
        aggregator: SourceAggregator | None = None,
        synthesizer: ResponseSynthesizer | None = None,
    ) -> None:
        self.config = config
        self.classifier = classifier
        self.retriever = retriever
        self.aggregator = aggregator
        self.synthesizer = synthesizer

    def classify_intent(self, text: str) -> Intent:
        if not str(text or "").strip():
            raise ValidationError(["text must not be empty"])
        with start_span("assistant.classify_intent") as span:
            intent = self.classifier.classify(text)
            annotate_span(span, intent=intent.intent, subject=intent.subject)
            return intent

    def answer_formulary(
        self,
        query: Query,
        *,
        pharmacy_id: int | None = None,
        include_facts: bool = False,
        cancel_event: Event | None = None,
    ) -> FormularyResult:
        """Run classify, expand, retrieve and aggregate, merge, then synthesize.

        Retrieval and generation failures degrade the answer instead of
        raising. RequestCancelled propagates when ``cancel_event`` is set.
        """
        started = perf_counter()
        request_id = uuid4().hex
        try:
            return self._answer_formulary_impl(
                query,
                pharmacy_id=pharmacy_id,
                include_facts=include_facts,
                cancel_event=cancel_event,
                request_id=request_id,
                started=started,
            )
        except Exception as exc:
            self._log_request_error(request_id, query, started, exc)
            raise

    def _answer_formulary_impl(
        self,
        query: Query,
        *,
        pharmacy_id: int | None,
        include_facts: bool,
        cancel_event: Event | None,
        request_id: str,
        started: float,
    ) -> FormularyResult:
        context = ConversationContext.from_query(query)
        log_pipeline = self.config.log_pipeline

        span_fields = {
            "request_id": request_id,
            "pharmacy_id": pharmacy_id,
            "active_topic_hint": context.active_topic_hint,
            "max_results": query.max_results,
            "history_turns": len(context.history),
        }
        with start_span("assistant.answer_formulary", attributes=span_fields) as span:
            intent = self.classifier.classify_with_context(query.text, context.active_topic_hint)
            annotate_span(span, intent=intent.intent, subject=intent.subject, needs=intent.needs, sources=intent.sources)
            stage = PipelineStage.CLASSIFIED
            _pipeline_log(log_pipeline, "[PIPELINE] Stage %s | intent=%s subject=%s", stage.value, intent.intent.value, intent.subject)

            variants = expand(query.text, context, log_pipeline=log_pipeline)
            stage = PipelineStage.EXPANDED

            wants_facts = include_facts and self.aggregator is not None and (
                SourceTag.INTERNAL_DB in intent.sources or SourceTag.EXTERNAL_DB in intent.sources
            )
            tasks = [lambda: self._retrieve(variants, cancel_event)]
            if wants_facts:
                tasks.append(
                    lambda: self.aggregator.aggregate(intent, pharmacy_id=pharmacy_id, cancel_event=cancel_event)
                )
            stage = PipelineStage.RETRIEVING
            outcomes = run_parallel(tasks, max_workers=len(tasks), cancel_event=cancel_event, thread_name_prefix="request")

            notes: list[str] = []
            retrieval_failed = False
            per_variant: list[list[Any]] = []
            if outcomes[0].ok:
                per_variant = outcomes[0].value or []
            elif isinstance(outcomes[0].error, RequestCancelled):
                raise outcomes[0].error
            else:
                retrieval_failed = True
                notes.append(FORMULARY_UNAVAILABLE_MESSAGE)
                LOGGER.warning("[PIPELINE] Retrieval degraded | request_id=%s error=%s", request_id, outcomes[0].error)

            facts = AggregatedFacts()
            if wants_facts:
                if outcomes[1].ok:
                    facts = outcomes[1].value or AggregatedFacts()
                elif isinstance(outcomes[1].error, RequestCancelled):
                    raise outcomes[1].error
                else:
                    notes.append("External and inventory lookups failed.")
                    LOGGER.warning("[PIPELINE] Aggregation failed | request_id=%s error=%s", request_id, outcomes[1].error)
                notes.extend(facts.notes)

            chunks = merge(
                per_variant,
                active_topic_hint=context.active_topic_hint,
                max_results=query.max_results,
                log_pipeline=log_pipeline,
            )
            stage = PipelineStage.AGGREGATING if wants_facts else PipelineStage.MERGED
            _pipeline_log(log_pipeline, "[PIPELINE] Stage %s | chunks=%s facts=%s", stage.value, len(chunks), wants_facts)

            if retrieval_failed:
                stage = PipelineStage.DEGRADED
                answer, answer_text = templated_answer(
                    facts,
                    chunks,
                    subject=intent.subject or context.active_topic_hint,
                    notes="Templated answer",
                )
                if facts.inventory or facts.external is not None:
                    answer_text = f"{FORMULARY_UNAVAILABLE_MESSAGE}\n{answer_text}"
                else:
                    answer_text = FORMULARY_UNAVAILABLE_MESSAGE
            else:
                stage = PipelineStage.SYNTHESIZING
                answer, answer_text, stage = self._synthesize(query, context, chunks, facts, intent, notes)
            annotate_span(span, variant_count=len(variants), chunk_count=len(chunks), stage=stage)

        answer.latency_ms = int(round((perf_counter() - started) * 1000))
        if notes:
            answer.notes = "; ".join(item for item in [answer.notes, *notes] if item)
        drug_context = answer.resolved_subject or context.active_topic_hint or ""
        result = FormularyResult(
            answer=answer,
            answer_text=answer_text,
            drug_context=drug_context,
            stage=stage,
            chunks=chunks,
            variants=variants,
            intent=intent,
            facts=facts,
            error=FORMULARY_UNAVAILABLE_MESSAGE if retrieval_failed else None,
        )
        self._audit(request_id, query, result)
        return result

    def answer_chat(
        self,
        message: str,
        pharmacy_id: int,
        *,
        session_id: str | None = None,
        user_id: str | None = None,
        cancel_event: Event | None = None,
    ) -> ChatReply:
        if not self.config.generation_configured:
            raise ConfigurationError(CHAT_UNCONFIGURED_MESSAGE)
        query = build_query(message, default_max_results=self.config.retrieval_k)
        started = perf_counter()
        result = self.answer_formulary(
            query,
            pharmacy_id=pharmacy_id,
            include_facts=True,
            cancel_event=cancel_event,
        )
        reply = build_chat_reply(result, processing_ms=int(round((perf_counter() - started) * 1000)))
        log_event(
            "chat.reply",
            session_id=session_id,
            user_id=user_id,
            pharmacy_id=pharmacy_id,
            query_hash=hash_query_text(message),
            stage=result.stage.value,
            sources=reply.sources,
            confidence=reply.confidence,
            store_path=str(self.config.audit_log_path) if self.config.audit_mode else None,
        )
        return reply

    def health(self) -> dict[str, Any]:
        return {
            "status": "ok",
            "generation_configured": self.config.generation_configured and self.synthesizer is not None,
            "embeddings_configured": self.retriever is not None,
            "inventory_configured": bool(self.config.inventory_database_url),
            "hasApiKey": bool(self.config.nvidia_api_key),
            "hasDbUrl": bool(self.config.inventory_database_url),
            "model": self.config.nvidia_model,
            "embedding_model": self.config.embedding_model,
            "formulary_chunks": safe_collection_count(self.retriever.store) if self.retriever is not None else None,
            "warnings": list(self.config.config_warnings),
        }

    def _retrieve(self, variants: list[Any], cancel_event: Event | None) -> list[list[Any]]:
        if self.retriever is None:
            raise RetrievalError("Embeddings are not configured.")
        return self.retriever.retrieve_all(variants, cancel_event=cancel_event)

    def _synthesize(
        self,
        query: Query,
        context: ConversationContext,
        chunks: list[Any],
        facts: AggregatedFacts,
        intent: Intent,
        notes: list[str],
    ) -> tuple[StructuredAnswer, str, PipelineStage]:
        subject = intent.subject or context.active_topic_hint
        if self.synthesizer is None:
            notes.append("Answer generation is not configured.")
            answer, text = templated_answer(facts, chunks, subject=subject, notes="Templated answer")
            return answer, text, PipelineStage.DEGRADED
        try:
            result = self.synthesizer.synthesize(query.text, context, chunks)
        except GenerationError as exc:
            LOGGER.warning("[PIPELINE] Generation failed; using templated answer | error=%s", exc)
            answer, text = templated_answer(facts, chunks, subject=subject, notes="Generation failed; templated answer")
            return answer, text, PipelineStage.DEGRADED
        if isinstance(result, SchemaError):
            text = result.answer_text
            if facts.inventory or facts.external is not None:
                text = templated_text(facts, subject)
            return result.answer, text, PipelineStage.DEGRADED
        return result.answer, result.answer_text, PipelineStage.ANSWERED

    def _audit(self, request_id: str, query: Query, result: FormularyResult) -> None:
        log_event(
            "formulary.answer",
            request_id=request_id,
            query_hash=hash_query_text(query.text),
            question=query.text if self.config.audit_mode else None,
            answer=result.answer_text if self.config.audit_mode else None,
            stage=result.stage.value,
            drug_context=result.drug_context,
            citations=[item.get("id") for item in result.answer.citations],
            chunk_count=len(result.chunks),
            latency_ms=result.answer.latency_ms,
            store_path=str(self.config.audit_log_path) if self.config.audit_mode else None,
        )

    def _log_request_error(self, request_id: str, query: Query, started: float, error: Exception) -> None:
        log_event(
            "request.error",
            request_id=request_id,
            query_hash=hash_query_text(query.text),
            error_type=error.__class__.__name__,
            error_message=str(error),
            total_ms=round((perf_counter() - started) * 1000.0, 3),
            store_path=str(self.config.audit_log_path) if self.config.audit_mode else None,
        )


def build_chat_reply(result: FormularyResult, *, processing_ms: int = 0) -> ChatReply:
    facts = result.facts
    degraded = result.stage is PipelineStage.DEGRADED
    sources = list(facts.sources)
    if result.chunks and not degraded:
        sources.insert(0, FORMULARY_SOURCE)
    has_inventory = bool(facts.inventory)
    has_clinical = facts.external is not None or (
        not degraded and _has_clinical_sections(result.answer.sections)
    )
    confidence = compute_confidence(
        has_clinical=has_clinical,
        has_inventory=has_inventory,
        source_count=len(sources),
        degraded=degraded,
    )
    staff_message = result.answer_text.strip() or FALLBACK_MESSAGE
    return ChatReply(
        staff_message=staff_message,
        detailed_notes=format_detailed_notes(
            sources=sources,
            confidence=confidence,
            degraded=degraded,
            has_inventory=has_inventory,
            has_clinical=has_clinical,
            processing_ms=processing_ms,
        ),
        inventory=list(facts.inventory) if facts.inventory else None,
        clinical=facts.external,
        sources=sources,
        confidence=confidence,
    )


def compute_confidence(
    *,
    has_clinical: bool,
    has_inventory: bool,
    source_count: int,
    degraded: bool = False,
) -> float:
    confidence = BASE_CONFIDENCE
    if has_clinical:
        confidence += CLINICAL_CONFIDENCE
    if has_inventory:
        confidence += INVENTORY_CONFIDENCE
    if source_count > 2:
        confidence += MULTI_SOURCE_CONFIDENCE
    confidence = min(confidence, 1.0)
    if degraded:
        confidence = min(confidence, DEGRADED_CONFIDENCE_CAP)
    return round(confidence, 2)


def format_detailed_notes(
    *,
    sources: list[str],
    confidence: float,
    degraded: bool,
    has_inventory: bool,
    has_clinical: bool,
    processing_ms: int,
) -> str:
    lines = [
        f"• Sources: {', '.join(sources) or 'None'}",
        f"• Confidence: {confidence * 100:.0f}%",
        f"• Processing: {'Templated fallback' if degraded else 'RAG Pipeline'} ({processing_ms} ms)",
        f"• Inventory: {'Found' if has_inventory else 'Not found'}",
        f"• Clinical: {'Available' if has_clinical else 'Not available'}",
    ]
    return "\n".join(lines)


def error_reply(message: str) -> dict[str, Any]:
    return {
        "ui": {"staffMessage": message, "detailedNotes": ""},
        "inventory": None,
        "clinical": None,
        "sources": [],
        "confidence": 0.0,
    }


def build_assistant(config: AppConfig) -> FormularyAssistant:
    """Wire collaborators from configuration; missing credentials disable features."""
    for warning in config.config_warnings:
        LOGGER.warning(warning)

    llm = None
    retriever = None
    synthesizer = None
    if config.generation_configured:
        llm = get_nvidia_llm(config)
        synthesizer = ResponseSynthesizer(
            llm,
            timeout_seconds=config.generation_timeout_seconds,
            log_pipeline=config.log_pipeline,
        )
        embeddings = get_nvidia_embeddings(config)
        retriever = FormularyRetriever(
            embeddings=embeddings,
            store=get_formulary_store(config, embeddings),
            k=config.retrieval_k,
            similarity_floor=config.similarity_floor,
            embedding_timeout_seconds=config.embedding_timeout_seconds,
            log_pipeline=config.log_pipeline,
        )

    inventory = None
    if config.inventory_database_url:
        inventory = InventoryStore.from_url(
            config.inventory_database_url,
            max_results=config.max_inventory_results,
        )

    aggregator = SourceAggregator(
        inventory=inventory,
        rxnorm=RxNormClient(
            cache=_external_cache(config, "rxnorm"),
            timeout_seconds=config.external_timeout_seconds,
        ),
        openfda=OpenFDAClient(
            cache=_external_cache(config, "openfda"),
            timeout_seconds=config.external_timeout_seconds,
        ),
        timeout_seconds=config.external_timeout_seconds * 2,
        log_pipeline=config.log_pipeline,
    )
    classifier = IntentClassifier(
        llm=llm,
        timeout_seconds=min(8.0, config.generation_timeout_seconds),
        log_enabled=config.log_pipeline,
    )
    return FormularyAssistant(
        config,
        classifier=classifier,
        retriever=retriever,
        aggregator=aggregator,
        synthesizer=synthesizer,
    )


def _external_cache(config: AppConfig, name: str):
    return build_cache(
        name=name,
        backend_name=config.cache_backend,
        ttl_seconds=config.external_cache_ttl_seconds,
        data_dir=config.data_dir,
    )


def _has_clinical_sections(sections: Mapping[str, str]) -> bool:
    return any(sections.get(key) not in (None, "", NOT_COVERED, NOT_REQUESTED) for key in CLINICAL_SECTIONS)


def _pipeline_log(enabled: bool, message: str, *args: Any) -> None:
    if not enabled:
        return
    LOGGER.info(message, *args)
