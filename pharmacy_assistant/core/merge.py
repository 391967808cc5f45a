from __future__ import annotations

import logging
from typing import Iterable, Sequence

from pharmacy_assistant.core.context import normalize_subject
from pharmacy_assistant.types import RetrievedChunk

LOGGER = logging.getLogger("pipeline.merge")

CONTENT_KEY_CHARS = 80


def dedup_key(chunk: RetrievedChunk) -> str:
    if str(chunk.id or "").strip():
        return f"id:{str(chunk.id).strip()}"
    metadata = chunk.metadata
    parts = [
        str(metadata.subject_name or "").strip(),
        str(metadata.section or "").strip(),
        str(metadata.source_range or "").strip(),
    ]
    if any(parts):
        return "meta:" + "|".join(parts).lower()
    return "content:" + str(chunk.content or "")[:CONTENT_KEY_CHARS]


def deduplicate(chunks: Iterable[RetrievedChunk]) -> list[RetrievedChunk]:
    seen: set[str] = set()
    unique: list[RetrievedChunk] = []
    for chunk in chunks:
        key = dedup_key(chunk)
        if key in seen:
            continue
        seen.add(key)
        unique.append(chunk)
    return unique


def boost_topic(chunks: Sequence[RetrievedChunk], active_topic_hint: str | None) -> list[RetrievedChunk]:
    """Move chunks about the active topic to the front, keeping relative order."""
    target = normalize_subject(active_topic_hint or "")
    if not target:
        return list(chunks)
    matching = [chunk for chunk in chunks if normalize_subject(chunk.metadata.subject_name or "") == target]
    others = [chunk for chunk in chunks if normalize_subject(chunk.metadata.subject_name or "") != target]
    return matching + others


def merge(
    per_variant_results: Sequence[Sequence[RetrievedChunk]],
    *,
    active_topic_hint: str | None = None,
    max_results: int = 6,
    log_pipeline: bool = False,
) -> list[RetrievedChunk]:
    concatenated = [chunk for results in per_variant_results for chunk in results]
    unique = deduplicate(concatenated)
    ranked = boost_topic(unique, active_topic_hint)
    limited = ranked[: max(1, int(max_results))]
    if log_pipeline:
        LOGGER.info(
            "[PIPELINE] Merge | raw=%s unique=%s returned=%s hint=%s",
            len(concatenated),
            len(unique),
            len(limited),
            active_topic_hint or "",
        )
    return limited
