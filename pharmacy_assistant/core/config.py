from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any
import os

from dotenv import load_dotenv

DEFAULT_NVIDIA_MODEL = "meta/llama-3.1-8b-instruct"
DEFAULT_EMBEDDING_MODEL = "nvidia/nv-embedqa-e5-v5"
DEFAULT_FORMULARY_COLLECTION = "formulary_chunks"


class ConfigValidationError(ValueError):
    """Raised when enabled features are missing required configuration."""


@dataclass(frozen=True)
class AppConfig:
    app_title: str
    nvidia_api_key: str | None
    nvidia_base_url: str | None
    nvidia_model: str
    embedding_model: str
    data_dir: Path
    formulary_collection: str
    inventory_database_url: str | None
    log_level: str
    log_pipeline: bool
    embedding_timeout_seconds: float
    generation_timeout_seconds: float
    external_timeout_seconds: float
    retrieval_k: int
    similarity_floor: float
    max_inventory_results: int
    external_cache_ttl_seconds: int
    cache_backend: str
    audit_mode: bool
    audit_log_path: Path
    frontend_origin: str
    config_errors: tuple[str, ...]
    config_warnings: tuple[str, ...]

    @property
    def generation_configured(self) -> bool:
        return bool(self.nvidia_api_key)

    @property
    def chroma_dir(self) -> Path:
        return self.data_dir / "chroma"

    def masked_summary(self) -> dict[str, Any]:
        return {
            "app_title": self.app_title,
            "nvidia_api_key": "SET" if self.nvidia_api_key else "NOT_SET",
            "nvidia_base_url": self.nvidia_base_url or "",
            "nvidia_model": self.nvidia_model,
            "embedding_model": self.embedding_model,
            "data_dir": str(self.data_dir),
            "formulary_collection": self.formulary_collection,
            "inventory_database_url": "SET" if self.inventory_database_url else "NOT_SET",
            "log_level": self.log_level,
            "embedding_timeout_seconds": self.embedding_timeout_seconds,
            "generation_timeout_seconds": self.generation_timeout_seconds,
            "external_timeout_seconds": self.external_timeout_seconds,
            "retrieval_k": self.retrieval_k,
            "similarity_floor": self.similarity_floor,
            "max_inventory_results": self.max_inventory_results,
            "external_cache_ttl_seconds": self.external_cache_ttl_seconds,
            "cache_backend": self.cache_backend,
            "audit_mode": self.audit_mode,
            "audit_log_path": str(self.audit_log_path),
            "config_errors": list(self.config_errors),
            "config_warnings": list(self.config_warnings),
        }

    def require_valid(self) -> None:
        if self.config_errors:
            raise ConfigValidationError("\n".join(self.config_errors))


def load_config() -> AppConfig:
    """Load environment variables and return app configuration."""
    load_dotenv(override=False)

    app_title = os.getenv("APP_TITLE", "Pharmacy Formulary Assistant")
    nvidia_api_key = (os.getenv("NVIDIA_API_KEY") or "").strip() or None
    nvidia_base_url = (os.getenv("NVIDIA_BASE_URL") or "").strip() or None
    nvidia_model = os.getenv("NVIDIA_MODEL", DEFAULT_NVIDIA_MODEL).strip() or DEFAULT_NVIDIA_MODEL
    embedding_model = (
        os.getenv("NVIDIA_EMBEDDING_MODEL", DEFAULT_EMBEDDING_MODEL).strip()
        or DEFAULT_EMBEDDING_MODEL
    )
    data_dir = Path(os.getenv("DATA_DIR", "./data")).expanduser().absolute()
    formulary_collection = (
        os.getenv("FORMULARY_COLLECTION", DEFAULT_FORMULARY_COLLECTION).strip()
        or DEFAULT_FORMULARY_COLLECTION
    )
    inventory_database_url = (os.getenv("INVENTORY_DATABASE_URL") or "").strip() or None
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_pipeline = _parse_bool(os.getenv("LOG_PIPELINE", "false"))
    embedding_timeout_seconds = _parse_float(os.getenv("EMBEDDING_TIMEOUT_SECONDS"), default=10.0)
    generation_timeout_seconds = _parse_float(
        os.getenv("GENERATION_TIMEOUT_SECONDS"), default=15.0
    )
    external_timeout_seconds = _parse_float(os.getenv("EXTERNAL_TIMEOUT_SECONDS"), default=10.0)
    retrieval_k = _parse_int(os.getenv("RETRIEVAL_K"), default=6)
    similarity_floor = _parse_float(os.getenv("SIMILARITY_FLOOR"), default=0.3)
    max_inventory_results = _parse_int(os.getenv("MAX_INVENTORY_RESULTS"), default=5)
    external_cache_ttl_seconds = _parse_int(
        os.getenv("EXTERNAL_CACHE_TTL_SECONDS"), default=86400
    )
    cache_backend = os.getenv("CACHE_BACKEND", "memory").strip().lower() or "memory"
    audit_mode = _parse_bool(os.getenv("AUDIT_MODE", "false"))
    audit_log_path = Path(
        os.getenv("AUDIT_LOG_PATH", "./data/audit/formulary_chat.jsonl")
    ).expanduser().absolute()
    frontend_origin = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000").strip() or "http://localhost:3000"

    config_errors: list[str] = []
    config_warnings: list[str] = []
    if not nvidia_api_key:
        config_warnings.append(
            "NVIDIA_API_KEY is not set. Intent heuristics and inventory lookups will work, "
            "but embeddings and answer generation are disabled."
        )
    if not inventory_database_url:
        config_warnings.append(
            "INVENTORY_DATABASE_URL is not set. Stock, price and expiry lookups are disabled."
        )
    if cache_backend not in {"memory", "sqlite"}:
        config_warnings.append(
            f"Invalid CACHE_BACKEND='{cache_backend}'. Falling back to 'memory'."
        )
        cache_backend = "memory"
    if not 0.0 <= similarity_floor <= 1.0:
        config_warnings.append(
            f"SIMILARITY_FLOOR={similarity_floor} is outside [0, 1] and was clamped."
        )

    return AppConfig(
        app_title=app_title,
        nvidia_api_key=nvidia_api_key,
        nvidia_base_url=nvidia_base_url,
        nvidia_model=nvidia_model,
        embedding_model=embedding_model,
        data_dir=data_dir,
        formulary_collection=formulary_collection,
        inventory_database_url=inventory_database_url,
        log_level=log_level,
        log_pipeline=log_pipeline,
        embedding_timeout_seconds=max(1.0, min(60.0, embedding_timeout_seconds)),
        generation_timeout_seconds=max(1.0, min(120.0, generation_timeout_seconds)),
        external_timeout_seconds=max(1.0, min(60.0, external_timeout_seconds)),
        retrieval_k=max(1, min(12, retrieval_k)),
        similarity_floor=max(0.0, min(1.0, similarity_floor)),
        max_inventory_results=max(1, min(20, max_inventory_results)),
        external_cache_ttl_seconds=max(6 * 3600, min(24 * 3600, external_cache_ttl_seconds)),
        cache_backend=cache_backend,
        audit_mode=audit_mode,
        audit_log_path=audit_log_path,
        frontend_origin=frontend_origin,
        config_errors=tuple(config_errors),
        config_warnings=tuple(config_warnings),
    )


def _parse_bool(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "y", "on"}


def _parse_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except (TypeError, ValueError):
        return default


def _parse_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value.strip())
    except (TypeError, ValueError):
        return default
