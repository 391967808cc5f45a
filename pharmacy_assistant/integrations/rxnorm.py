from __future__ import annotations

from dataclasses import dataclass
import logging
import re
from typing import Any, Dict
from urllib.parse import quote, urlencode

import requests

from pharmacy_assistant.errors import UpstreamTimeout
from pharmacy_assistant.integrations.cache import TTLCache

RXNAV_BASE = "https://rxnav.nlm.nih.gov/REST"
LOGGER = logging.getLogger("pipeline.rxnorm")

_STRENGTH_RE = re.compile(r"\b\d{1,4}\s?(?:mg|mcg|g|ml)\b", flags=re.IGNORECASE)
_FRACTION_STRENGTH_RE = re.compile(
    r"\b\d{1,4}\s?(?:mg|mcg|g)\s?/\s?\d{1,4}\s?(?:ml|mg)\b",
    flags=re.IGNORECASE,
)


@dataclass(frozen=True)
class RxNormMapping:
    mapped_name: str | None
    confidence: float
    provenance: tuple[str, ...] = ()

    def to_cache(self) -> dict[str, Any]:
        return {
            "mapped_name": self.mapped_name,
            "confidence": self.confidence,
            "provenance": list(self.provenance),
        }

    @classmethod
    def from_cache(cls, payload: dict[str, Any]) -> "RxNormMapping":
        return cls(
            mapped_name=payload.get("mapped_name"),
            confidence=float(payload.get("confidence") or 0.0),
            provenance=tuple(payload.get("provenance") or ()),
        )


class RxNormClient:
    """Maps local drug names (e.g. paracetamol) to US generics via RxNav."""

    def __init__(self, *, cache: TTLCache | None = None, timeout_seconds: float = 10.0) -> None:
        self.cache = cache
        self.timeout_seconds = timeout_seconds

    def map_to_us_generic(self, term: str) -> RxNormMapping:
        if self.cache is None:
            return self._map(term) or RxNormMapping(mapped_name=None, confidence=0.0)
        payload = self.cache.get_or_load(term, lambda: _to_cache(self._map(term)))
        if payload is None:
            return RxNormMapping(mapped_name=None, confidence=0.0)
        return RxNormMapping.from_cache(payload)

    def _map(self, term: str) -> RxNormMapping | None:
        strengths = extract_strength_tokens(term)
        base = strip_strengths(term)
        if not base:
            return RxNormMapping(mapped_name=None, confidence=0.0)
        url = f"{RXNAV_BASE}/approximateTerm.json?{urlencode({'term': base, 'maxEntries': 3})}"
        provenance = [url]
        data = self._get_json(url)
        if data is None:
            return None
        candidates = list(((data.get("approximateGroup") or {}).get("candidate")) or [])
        if not candidates:
            LOGGER.info("[PIPELINE] RxNorm found no candidates | term='%s'", base)
            return RxNormMapping(mapped_name=None, confidence=0.0, provenance=tuple(provenance))

        candidates.sort(key=lambda candidate: _to_float(candidate.get("score")), reverse=True)
        top = candidates[0]
        name = str(top.get("name") or "").strip()
        if not name:
            return RxNormMapping(mapped_name=None, confidence=0.0, provenance=tuple(provenance))

        canonical = self._canonical_name(top.get("rxcui"), provenance)
        mapped = (canonical or name).lower()
        if strengths and strengths not in mapped:
            mapped = f"{mapped} {strengths}".strip()
        confidence = max(0.0, min(1.0, _to_float(top.get("score")) / 100.0))
        LOGGER.info(
            "[PIPELINE] RxNorm mapping | term='%s' mapped='%s' confidence=%.2f",
            term,
            mapped,
            confidence,
        )
        return RxNormMapping(mapped_name=mapped, confidence=confidence, provenance=tuple(provenance))

    def _canonical_name(self, rxcui: Any, provenance: list[str]) -> str | None:
        if not rxcui:
            return None
        url = (
            f"{RXNAV_BASE}/rxcui/{quote(str(rxcui))}/property.json?"
            f"{urlencode({'propName': 'RxNorm Name'})}"
        )
        provenance.append(url)
        data = self._get_json(url)
        if not data:
            return None
        concepts = (data.get("propConceptGroup") or {}).get("propConcept") or []
        if not concepts:
            return None
        value = str(concepts[0].get("propValue") or "").strip()
        return value.lower() or None

    def _get_json(self, url: str) -> Dict[str, Any] | None:
        try:
            response = requests.get(url, timeout=self.timeout_seconds)
            response.raise_for_status()
            return response.json()
        except requests.Timeout as exc:
            raise UpstreamTimeout("rxnorm", self.timeout_seconds) from exc
        except (requests.RequestException, ValueError):
            LOGGER.info("[PIPELINE] RxNorm request failed | url=%s", url, exc_info=True)
            return None


def extract_strength_tokens(text: str) -> str:
    tokens: list[str] = []
    for match in [*_STRENGTH_RE.finditer(text or ""), *_FRACTION_STRENGTH_RE.finditer(text or "")]:
        token = " ".join(match.group(0).split()).lower()
        if token not in tokens:
            tokens.append(token)
    return " ".join(tokens)


def strip_strengths(text: str) -> str:
    lowered = str(text or "").lower()
    lowered = _FRACTION_STRENGTH_RE.sub(" ", lowered)
    lowered = _STRENGTH_RE.sub(" ", lowered)
    lowered = re.sub(r"[^a-z0-9\s\-]", " ", lowered)
    return " ".join(lowered.split())


def _to_cache(mapping: RxNormMapping | None) -> dict[str, Any] | None:
    return mapping.to_cache() if mapping is not None else None


def _to_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0
