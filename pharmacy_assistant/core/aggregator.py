from __future__ import annotations

from dataclasses import dataclass
import logging
from threading import Event
from typing import Any, Callable

from pharmacy_assistant.core.concurrency import call_with_timeout, run_parallel
from pharmacy_assistant.errors import UpstreamTimeout
from pharmacy_assistant.integrations.openfda import OpenFDAClient
from pharmacy_assistant.integrations.rxnorm import RxNormClient
from pharmacy_assistant.types import AggregatedFacts, ExternalFact, Intent, InventoryFact, SourceTag

LOGGER = logging.getLogger("pipeline.aggregator")

INVENTORY_SOURCE = "Pharmacy Inventory"
RXNORM_SOURCE = "RxNorm"
OPENFDA_SOURCE = "FDA Drug Labels"
WEB_SEARCH_NOTE = "Web search requested; no live web search is performed. See https://www.fda.gov/drugs for advisories."


@dataclass
class SourceAggregator:
    """Fans out inventory and external clinical lookups for one intent."""

    inventory: Any | None = None
    rxnorm: RxNormClient | None = None
    openfda: OpenFDAClient | None = None
    timeout_seconds: float = 10.0
    log_pipeline: bool = False

    def aggregate(
        self,
        intent: Intent,
        *,
        pharmacy_id: int | None = None,
        cancel_event: Event | None = None,
    ) -> AggregatedFacts:
        subject = (intent.subject or "").strip()
        if not subject:
            return AggregatedFacts(notes=("No drug or product name was recognised in the question.",))

        lookups: list[tuple[str, Callable[[], Any]]] = []
        if SourceTag.INTERNAL_DB in intent.sources and self.inventory is not None and pharmacy_id:
            lookups.append(("inventory", lambda: self.inventory.lookup(subject, pharmacy_id)))
        if SourceTag.EXTERNAL_DB in intent.sources and self.openfda is not None:
            lookups.append(("external", lambda: self._external_lookup(subject)))

        notes: list[str] = []
        if SourceTag.INTERNAL_DB in intent.sources and self.inventory is None:
            notes.append("Inventory database is not configured.")
        if SourceTag.WEB_SEARCH in intent.sources:
            notes.append(WEB_SEARCH_NOTE)
        if not lookups:
            return AggregatedFacts(notes=tuple(notes))

        outcomes = run_parallel(
            [self._bounded(name, fn) for name, fn in lookups],
            max_workers=len(lookups),
            cancel_event=cancel_event,
            thread_name_prefix="aggregate",
        )

        inventory: tuple[InventoryFact, ...] = ()
        external: tuple[ExternalFact | None, bool] = (None, False)
        for (name, _), outcome in zip(lookups, outcomes):
            if not outcome.ok:
                if isinstance(outcome.error, UpstreamTimeout):
                    notes.append(f"{name} lookup timed out and was skipped.")
                else:
                    notes.append(f"{name} lookup failed and was skipped.")
                LOGGER.warning("[PIPELINE] %s lookup failed | subject='%s' error=%s", name, subject, outcome.error)
                continue
            if name == "inventory":
                inventory = tuple(outcome.value or ())
            else:
                external = outcome.value or (None, False)

        external_fact, mapped = external
        sources: list[str] = []
        if inventory:
            sources.append(INVENTORY_SOURCE)
        if mapped:
            sources.append(RXNORM_SOURCE)
        if external_fact is not None and external_fact.has_content:
            sources.append(OPENFDA_SOURCE)
        else:
            external_fact = None

        if self.log_pipeline:
            LOGGER.info(
                "[PIPELINE] Aggregated facts | subject='%s' inventory=%s external=%s sources=%s",
                subject,
                len(inventory),
                external_fact is not None,
                sources,
            )
        return AggregatedFacts(
            inventory=inventory,
            external=external_fact,
            sources=tuple(sources),
            notes=tuple(notes),
        )

    def _external_lookup(self, subject: str) -> tuple[ExternalFact | None, bool]:
        mapped_name = None
        if self.rxnorm is not None:
            mapping = self.rxnorm.map_to_us_generic(subject)
            mapped_name = mapping.mapped_name
        fact = self.openfda.drug_info(subject, mapped_name=mapped_name)
        return fact, bool(mapped_name)

    def _bounded(self, name: str, fn: Callable[[], Any]) -> Callable[[], Any]:
        def runner() -> Any:
            return call_with_timeout(fn, timeout_seconds=self.timeout_seconds, source=name)

        return runner
