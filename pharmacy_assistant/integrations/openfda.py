from __future__ import annotations

import logging
import re
from typing import Any, Dict, List

import requests

from pharmacy_assistant.errors import UpstreamTimeout
from pharmacy_assistant.integrations.cache import TTLCache
from pharmacy_assistant.types import ExternalFact

OPENFDA_LABEL_URL = "https://api.fda.gov/drug/label.json"
OPENFDA_CITATION = "web: OpenFDA search -> https://open.fda.gov/apis/drug/label/"
LOGGER = logging.getLogger("pipeline.openfda")

_FORM_WORDS_RE = re.compile(
    r"\b(tablet|capsule|gelcap|caplet|syrup|suspension|liquid|injection|cream|ointment|gel|patch|"
    r"drops|inhaler|spray|suppository|solution|lotion|powder|mouthwash)s?\b",
    flags=re.IGNORECASE,
)
_STRENGTH_RE = re.compile(r"\b\d+(?:\.\d+)?\s?(?:mg|ml|mcg|g)\b", flags=re.IGNORECASE)
_SENTENCE_SPLIT_RE = re.compile(r"[.!?]+")


class OpenFDAClient:
    """Drug label lookups against the openFDA label endpoint."""

    def __init__(
        self,
        *,
        cache: TTLCache | None = None,
        timeout_seconds: float = 10.0,
        limit: int = 5,
    ) -> None:
        self.cache = cache
        self.timeout_seconds = timeout_seconds
        self.limit = max(1, int(limit))

    def drug_info(self, subject: str, *, mapped_name: str | None = None) -> ExternalFact | None:
        search_name = clean_drug_name(mapped_name or subject)
        if not search_name:
            return None
        if self.cache is None:
            results = self.search_labels(search_name)
        else:
            results = self.cache.get_or_load(search_name, lambda: self.search_labels(search_name))
        if not results:
            LOGGER.info("[PIPELINE] openFDA returned no labels | subject='%s'", search_name)
            return None
        return ExternalFact(
            subject=subject,
            source="openFDA",
            mapped_name=mapped_name,
            indications=extract_indications(results),
            dosage=extract_dosage(results),
            warnings=extract_warnings(results),
            side_effects=extract_side_effects(results),
            brand_us=extract_brand_name(results),
            citations=(OPENFDA_CITATION,),
        )

    def search_labels(self, name: str) -> List[Dict[str, Any]] | None:
        """Return label records, [] for no match, or None when the request failed."""
        search = f'openfda.generic_name:"{name}" OR openfda.brand_name:"{name}"'
        try:
            response = requests.get(
                OPENFDA_LABEL_URL,
                params={"search": search, "limit": self.limit},
                headers={"Accept": "application/json"},
                timeout=self.timeout_seconds,
            )
            if response.status_code == 404:
                return []
            response.raise_for_status()
            payload = response.json()
        except requests.Timeout as exc:
            raise UpstreamTimeout("openfda", self.timeout_seconds) from exc
        except (requests.RequestException, ValueError):
            LOGGER.info("[PIPELINE] openFDA request failed | name='%s'", name, exc_info=True)
            return None
        return list(payload.get("results") or [])


def clean_drug_name(name: str) -> str:
    lowered = _STRENGTH_RE.sub(" ", str(name or "").lower())
    lowered = _FORM_WORDS_RE.sub(" ", lowered)
    return " ".join(lowered.split())


def extract_dosage(results: List[Dict[str, Any]]) -> str | None:
    text = _first_field(results, "dosage_and_administration")
    if not text:
        return None
    return re.sub(r"^Directions\s*", "", text, flags=re.IGNORECASE)


def extract_indications(results: List[Dict[str, Any]]) -> str | None:
    text = _first_field(results, "indications_and_usage")
    if text:
        return re.sub(r"^Uses\s*", "", text, flags=re.IGNORECASE)
    purpose = _first_field(results, "purpose")
    if purpose:
        return re.sub(r"^Purpose\s*", "", purpose, flags=re.IGNORECASE)
    return None


def extract_warnings(results: List[Dict[str, Any]]) -> str | None:
    text = _first_field(results, "warnings") or _first_field(results, "contraindications")
    if not text:
        return None
    sentences = [sentence.strip() for sentence in _SENTENCE_SPLIT_RE.split(text) if sentence.strip()]
    summary = ". ".join(sentences[:3])
    return summary + ("..." if len(sentences) > 3 else ".")


def extract_side_effects(results: List[Dict[str, Any]]) -> str | None:
    adverse = _first_field(results, "adverse_reactions")
    if adverse:
        return adverse
    warnings = _first_field(results, "warnings")
    if not warnings:
        return None
    relevant = [
        sentence.strip()
        for sentence in _SENTENCE_SPLIT_RE.split(warnings)
        if any(marker in sentence.lower() for marker in ("side effect", "adverse", "reaction"))
    ]
    return ". ".join(relevant[:2]) or None


def extract_brand_name(results: List[Dict[str, Any]]) -> str | None:
    for result in results:
        brand = (result.get("openfda") or {}).get("brand_name")
        if isinstance(brand, list):
            brand = brand[0] if brand else None
        if brand:
            return str(brand)
    return None


def _first_field(results: List[Dict[str, Any]], key: str) -> str | None:
    for result in results:
        values = result.get(key) or []
        if isinstance(values, str):
            values = [values]
        for value in values:
            text = " ".join(str(value or "").split())
            if text:
                return text
    return None
