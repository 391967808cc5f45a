from __future__ import annotations

from dataclasses import dataclass
import logging
from threading import Event
from typing import Any, Sequence

from pharmacy_assistant.core.concurrency import call_with_timeout, run_parallel
from pharmacy_assistant.core.expansion import QUESTION_WEIGHT
from pharmacy_assistant.errors import RetrievalError
from pharmacy_assistant.integrations.storage import search_by_vector
from pharmacy_assistant.types import QueryVariant, RetrievedChunk

LOGGER = logging.getLogger("pipeline.retrieval")


@dataclass
class FormularyRetriever:
    """Embeds query variants and searches the formulary collection."""

    embeddings: Any
    store: Any
    k: int = 6
    similarity_floor: float = 0.3
    embedding_timeout_seconds: float = 10.0
    log_pipeline: bool = False

    def retrieve(self, variant: QueryVariant) -> list[RetrievedChunk]:
        vector = call_with_timeout(
            self.embeddings.embed_query,
            variant.text,
            timeout_seconds=self.embedding_timeout_seconds,
            source="embedding",
        )
        chunks = search_by_vector(
            self.store,
            vector,
            k=self.k,
            similarity_floor=self.similarity_floor,
        )
        if self.log_pipeline:
            LOGGER.info(
                "[PIPELINE] Retrieved %s chunks | variant='%s' weight=%s floor=%.2f",
                len(chunks),
                variant.text[:80],
                variant.weight,
                self.similarity_floor,
            )
        return chunks

    def retrieve_all(
        self,
        variants: Sequence[QueryVariant],
        *,
        cancel_event: Event | None = None,
    ) -> list[list[RetrievedChunk]]:
        """Retrieve every variant concurrently; results keep variant order.

        The raw question (see primary_variant_index) is the primary variant.
        If it fails the whole retrieval fails with RetrievalError; other
        failures contribute no chunks.
        """
        if not variants:
            return []
        outcomes = run_parallel(
            [lambda variant=variant: self.retrieve(variant) for variant in variants],
            max_workers=len(variants),
            cancel_event=cancel_event,
            thread_name_prefix="retrieval",
        )
        primary = primary_variant_index(variants)
        results: list[list[RetrievedChunk]] = []
        for index, outcome in enumerate(outcomes):
            if outcome.ok:
                results.append(list(outcome.value or []))
                continue
            if index == primary:
                raise RetrievalError(f"Primary retrieval failed: {outcome.error}") from outcome.error
            LOGGER.warning(
                "[PIPELINE] Secondary retrieval failed; continuing without it | variant='%s' error=%s",
                variants[index].text[:80],
                outcome.error,
            )
            results.append([])
        return results


def primary_variant_index(variants: Sequence[QueryVariant]) -> int:
    """Index of the weight-1 raw question, or 0 when it was not selected."""
    for index, variant in enumerate(variants):
        if variant.weight == QUESTION_WEIGHT:
            return index
    return 0


def build_context_text(chunks: Sequence[RetrievedChunk]) -> str:
    """Render chunks as numbered, provenance-tagged context blocks."""
    blocks: list[str] = []
    for index, chunk in enumerate(chunks, start=1):
        metadata = chunk.metadata
        header = (
            f"[#{index}] Drug: {metadata.subject_name or 'Unknown'} | "
            f"Classification: {metadata.classification or 'Unknown'} | "
            f"Entries: {metadata.source_range or 'n/a'}"
        )
        if metadata.section:
            header += f" | Section: {metadata.section}"
        blocks.append(f"{header}\n{chunk.content.strip()}")
    return "\n\n".join(blocks)
