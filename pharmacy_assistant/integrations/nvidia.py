from __future__ import annotations

from functools import lru_cache
from threading import Lock

from langchain_nvidia_ai_endpoints import ChatNVIDIA, NVIDIAEmbeddings

from pharmacy_assistant.core.config import DEFAULT_EMBEDDING_MODEL, DEFAULT_NVIDIA_MODEL, AppConfig
from pharmacy_assistant.errors import ConfigurationError

_LLM_BUILD_LOCK = Lock()
_EMBEDDINGS_BUILD_LOCK = Lock()


def get_nvidia_llm(config: AppConfig) -> ChatNVIDIA:
    if not config.nvidia_api_key:
        raise ConfigurationError("NVIDIA_API_KEY is not set.")
    return _get_nvidia_llm_cached(
        config.nvidia_model or DEFAULT_NVIDIA_MODEL,
        config.nvidia_api_key,
        config.nvidia_base_url or "",
    )


def get_nvidia_embeddings(config: AppConfig) -> NVIDIAEmbeddings:
    if not config.nvidia_api_key:
        raise ConfigurationError("NVIDIA_API_KEY is not set.")
    return _get_nvidia_embeddings_cached(
        config.embedding_model or DEFAULT_EMBEDDING_MODEL,
        config.nvidia_api_key,
        config.nvidia_base_url or "",
    )


@lru_cache(maxsize=8)
def _get_nvidia_llm_cached(model_name: str, api_key: str, base_url: str) -> ChatNVIDIA:
    kwargs = {"model": model_name, "temperature": 0, "api_key": api_key}
    if base_url:
        kwargs["base_url"] = base_url
    with _LLM_BUILD_LOCK:
        return ChatNVIDIA(**kwargs)


@lru_cache(maxsize=8)
def _get_nvidia_embeddings_cached(model_name: str, api_key: str, base_url: str) -> NVIDIAEmbeddings:
    kwargs = {"model": model_name, "api_key": api_key, "truncate": "END"}
    if base_url:
        kwargs["base_url"] = base_url
    with _EMBEDDINGS_BUILD_LOCK:
        return NVIDIAEmbeddings(**kwargs)
