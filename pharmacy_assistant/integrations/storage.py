from __future__ import annotations

import logging
from pathlib import Path
from threading import Lock
from typing import Any

from langchain_community.vectorstores import Chroma
from langchain_core.documents import Document

from pharmacy_assistant.core.config import AppConfig
from pharmacy_assistant.types import ChunkMetadata, RetrievedChunk

LOGGER = logging.getLogger("pipeline.storage")

_STORE_BUILD_LOCK = Lock()
_CLASSIFICATIONS = {"rx": "Rx", "otc": "OTC"}


def get_formulary_store(config: AppConfig, embeddings: Any) -> Chroma:
    """Open the persisted formulary collection. Indexing happens elsewhere."""
    persist_path = Path(config.chroma_dir).expanduser().absolute()
    with _STORE_BUILD_LOCK:
        persist_path.mkdir(parents=True, exist_ok=True)
    return Chroma(
        collection_name=config.formulary_collection,
        persist_directory=str(persist_path),
        embedding_function=embeddings,
        collection_metadata={"hnsw:space": "cosine"},
    )


def search_by_vector(
    store: Any,
    vector: list[float],
    *,
    k: int,
    similarity_floor: float,
) -> list[RetrievedChunk]:
    """Nearest-neighbour search returning chunks at or above the similarity floor."""
    pairs = store.similarity_search_by_vector_with_relevance_scores(vector, k=max(1, int(k)))
    chunks: list[RetrievedChunk] = []
    for doc, distance in pairs:
        similarity = distance_to_similarity(distance)
        if similarity < similarity_floor:
            continue
        chunks.append(document_to_chunk(doc, similarity))
    return chunks


def distance_to_similarity(distance: float) -> float:
    return max(0.0, min(1.0, 1.0 - float(distance)))


def document_to_chunk(doc: Document, similarity: float) -> RetrievedChunk:
    metadata = dict(getattr(doc, "metadata", {}) or {})
    chunk_id = getattr(doc, "id", None) or metadata.get("id") or metadata.get("chunk_id") or ""
    return RetrievedChunk(
        id=str(chunk_id).strip(),
        content=str(getattr(doc, "page_content", "") or ""),
        similarity=similarity,
        metadata=ChunkMetadata(
            subject_name=_first_text(metadata, "drug_name", "drugName", "subject_name"),
            section=_first_text(metadata, "section"),
            source_range=_first_text(metadata, "entry_range", "entryRange", "page_range", "source"),
            classification=normalize_classification(metadata.get("classification")),
        ),
    )


def normalize_classification(value: Any) -> str:
    return _CLASSIFICATIONS.get(str(value or "").strip().lower(), "Unknown")


def safe_collection_count(store: Any) -> int | None:
    collection = getattr(store, "_collection", None)
    if collection is None or not hasattr(collection, "count"):
        return None
    try:
        return int(collection.count())
    except Exception:
        LOGGER.debug("Unable to count formulary collection", exc_info=True)
        return None


def _first_text(metadata: dict[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = str(metadata.get(key) or "").strip()
        if value:
            return value
    return None
