from __future__ import annotations

from datetime import datetime, timezone
import hashlib
import json
import logging
from pathlib import Path
from threading import Lock
from typing import Any, Mapping

_AUDIT_WRITE_LOCK = Lock()

_PROMPT_TOKEN_KEYS = ("prompt_tokens", "input_tokens")
_COMPLETION_TOKEN_KEYS = ("completion_tokens", "output_tokens")
_TOTAL_TOKEN_KEYS = ("total_tokens",)


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def get_logger(name: str | None = None) -> logging.Logger:
    return logging.getLogger(name)


def log_event(
    name: str,
    *,
    logger_name: str = "app.events",
    store_path: str | Path | None = None,
    **fields: Any,
) -> dict[str, Any]:
    """Emit a structured JSON event and optionally append it to a JSONL audit file."""
    payload = {
        "event": name,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        **_normalize_json_fields(fields),
    }
    line = json.dumps(payload, ensure_ascii=False, sort_keys=True)
    get_logger(logger_name).info(line)
    if store_path:
        path = Path(store_path).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        with _AUDIT_WRITE_LOCK, path.open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")
    return payload


def hash_query_text(text: str) -> str:
    normalized = " ".join(str(text or "").strip().lower().split())
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def extract_usage_stats(response: Any) -> dict[str, Any]:
    usage = _extract_usage_mapping(response)
    prompt_tokens = _get_int(usage, _PROMPT_TOKEN_KEYS)
    completion_tokens = _get_int(usage, _COMPLETION_TOKEN_KEYS)
    total_tokens = _get_int(usage, _TOTAL_TOKEN_KEYS)
    if total_tokens is None and prompt_tokens is not None and completion_tokens is not None:
        total_tokens = prompt_tokens + completion_tokens
    metadata = getattr(response, "response_metadata", None)
    model_name = None
    if isinstance(metadata, Mapping):
        model_name = metadata.get("model_name") or metadata.get("model")
    return {
        "prompt_tokens": prompt_tokens,
        "completion_tokens": completion_tokens,
        "total_tokens": total_tokens,
        "model_name": str(model_name) if model_name else None,
    }


def log_llm_usage(tag: str, response: Any) -> dict[str, Any]:
    logger = get_logger("llm.usage")
    usage_stats = extract_usage_stats(response)
    if all(usage_stats[key] is None for key in ("prompt_tokens", "completion_tokens", "total_tokens")):
        logger.info("[TOKENS] %s usage metadata not available", tag)
        return usage_stats
    logger.info(
        "[TOKENS] %s prompt=%s completion=%s total=%s model=%s",
        tag,
        _fmt_token(usage_stats["prompt_tokens"]),
        _fmt_token(usage_stats["completion_tokens"]),
        _fmt_token(usage_stats["total_tokens"]),
        usage_stats.get("model_name") or "unknown",
    )
    return usage_stats


def _normalize_json_fields(fields: Mapping[str, Any]) -> dict[str, Any]:
    normalized: dict[str, Any] = {}
    for key, value in fields.items():
        if isinstance(value, Mapping):
            normalized[key] = _normalize_json_fields(value)
        elif isinstance(value, (list, tuple, set, frozenset)):
            normalized[key] = [
                _normalize_json_fields(item) if isinstance(item, Mapping) else _coerce_json_scalar(item)
                for item in value
            ]
        else:
            normalized[key] = _coerce_json_scalar(value)
    return normalized


def _coerce_json_scalar(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


def _extract_usage_mapping(response: Any) -> Mapping[str, Any] | None:
    if response is None:
        return None
    usage_metadata = getattr(response, "usage_metadata", None)
    if isinstance(usage_metadata, Mapping) and usage_metadata:
        return usage_metadata
    metadata = getattr(response, "response_metadata", None)
    if isinstance(metadata, Mapping):
        for key in ("token_usage", "usage"):
            nested = metadata.get(key)
            if isinstance(nested, Mapping):
                return nested
    return None


def _get_int(payload: Mapping[str, Any] | None, keys: tuple[str, ...]) -> int | None:
    if payload is None:
        return None
    for key in keys:
        value = payload.get(key)
        if value is None:
            continue
        try:
            return int(value)
        except (TypeError, ValueError):
            continue
    return None


def _fmt_token(value: int | None) -> str:
    if value is None:
        return "na"
    return str(value)
