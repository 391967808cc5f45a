from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class IntentType(str, Enum):
    DRUG_INFO = "drug_info"
    STOCK_CHECK = "stock_check"
    DOSAGE = "dosage"
    ALTERNATIVES = "alternatives"
    OTHER = "other"


class NeedTag(str, Enum):
    STOCK = "stock"
    DOSAGE = "dosage"
    WARNINGS = "warnings"
    ALTERNATIVES = "alternatives"
    PRICE = "price"
    EXPIRY = "expiry"
    LOCAL_NAME = "local_name"


class SourceTag(str, Enum):
    INTERNAL_DB = "internal_db"
    EXTERNAL_DB = "external_db"
    WEB_SEARCH = "web_search"


class PipelineStage(str, Enum):
    RECEIVED = "received"
    CLASSIFIED = "classified"
    EXPANDED = "expanded"
    RETRIEVING = "retrieving"
    MERGED = "merged"
    AGGREGATING = "aggregating"
    SYNTHESIZING = "synthesizing"
    ANSWERED = "answered"
    DEGRADED = "degraded"


NOT_COVERED = "Not covered in provided context."
NOT_REQUESTED = "Not requested"

SECTION_KEYS: tuple[str, ...] = (
    "overview",
    "formulations",
    "indications",
    "contraindications",
    "dosage",
    "dose_adjustment",
    "precautions",
    "adverse_reactions",
    "interactions",
    "administration",
    "monitoring",
    "notes",
    "pregnancy",
    "atc_code",
    "classification",
)

SECTION_LABELS: dict[str, str] = {
    "overview": "Overview",
    "formulations": "Formulations",
    "indications": "Indications",
    "contraindications": "Contraindications",
    "dosage": "Dosage",
    "dose_adjustment": "Dose Adjustment",
    "precautions": "Precautions",
    "adverse_reactions": "Adverse Reactions",
    "interactions": "Interactions",
    "administration": "Administration",
    "monitoring": "Monitoring",
    "notes": "Notes",
    "pregnancy": "Pregnancy",
    "atc_code": "ATC Code",
    "classification": "Classification",
}


def empty_sections() -> dict[str, str]:
    return {key: NOT_COVERED for key in SECTION_KEYS}


@dataclass(frozen=True)
class Intent:
    intent: IntentType
    subject: str | None = None
    needs: frozenset[NeedTag] = frozenset()
    sources: frozenset[SourceTag] = frozenset({SourceTag.INTERNAL_DB})
    origin: str = "heuristic"

    def __post_init__(self) -> None:
        if self.intent is IntentType.OTHER and self.needs:
            object.__setattr__(self, "needs", frozenset())

    def to_payload(self) -> dict[str, Any]:
        return {
            "intent": self.intent.value,
            "drugName": self.subject,
            "needs": sorted(need.value for need in self.needs),
            "sources": sorted(source.value for source in self.sources),
        }


@dataclass(frozen=True)
class Query:
    text: str
    conversation_history: tuple[str, ...] = ()
    active_topic_hint: str | None = None
    max_results: int = 6


@dataclass(frozen=True)
class QueryVariant:
    text: str
    weight: float


@dataclass(frozen=True)
class ChunkMetadata:
    subject_name: str | None = None
    section: str | None = None
    source_range: str | None = None
    classification: str | None = None


@dataclass(frozen=True)
class RetrievedChunk:
    id: str
    content: str
    similarity: float
    metadata: ChunkMetadata = field(default_factory=ChunkMetadata)

    def citation(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "drugName": self.metadata.subject_name or "",
            "section": self.metadata.section or "",
            "pageRange": self.metadata.source_range or "",
            "similarity": round(float(self.similarity), 4),
        }


@dataclass(frozen=True)
class InventoryFact:
    id: int
    name: str
    quantity: int
    selling_price: str
    generic_name: str | None = None
    brand_name: str | None = None
    dosage_form: str | None = None
    unit: str | None = None
    expiry_date: str | None = None
    category_name: str | None = None

    @property
    def in_stock(self) -> bool:
        return self.quantity > 0

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "genericName": self.generic_name,
            "brandName": self.brand_name,
            "dosageForm": self.dosage_form or "Unknown",
            "quantity": self.quantity,
            "sellingPrice": self.selling_price,
            "inStock": self.in_stock,
            "unit": self.unit or "piece",
            "expiryDate": self.expiry_date,
            "categoryName": self.category_name,
        }


@dataclass(frozen=True)
class ExternalFact:
    subject: str
    source: str
    mapped_name: str | None = None
    indications: str | None = None
    dosage: str | None = None
    warnings: str | None = None
    side_effects: str | None = None
    brand_us: str | None = None
    citations: tuple[str, ...] = ()

    @property
    def has_content(self) -> bool:
        return any((self.indications, self.dosage, self.warnings, self.side_effects))

    def to_payload(self) -> dict[str, Any]:
        return {
            "dosage": self.dosage,
            "usage": self.indications,
            "sideEffects": self.side_effects,
            "warnings": self.warnings,
            "source": self.source,
        }


@dataclass(frozen=True)
class AggregatedFacts:
    inventory: tuple[InventoryFact, ...] = ()
    external: ExternalFact | None = None
    sources: tuple[str, ...] = ()
    notes: tuple[str, ...] = ()


@dataclass
class StructuredAnswer:
    sections: dict[str, str] = field(default_factory=empty_sections)
    overview: str = NOT_COVERED
    follow_up_questions: list[str] = field(default_factory=list)
    citations: list[dict[str, Any]] = field(default_factory=list)
    latency_ms: int = 0
    notes: str = ""
    resolved_subject: str | None = None
    related_subjects: list[str] = field(default_factory=list)
    degraded: bool = False


@dataclass
class FormularyResult:
    answer: StructuredAnswer
    answer_text: str
    drug_context: str
    stage: PipelineStage
    chunks: list[RetrievedChunk] = field(default_factory=list)
    variants: list[QueryVariant] = field(default_factory=list)
    intent: Intent | None = None
    facts: AggregatedFacts = field(default_factory=AggregatedFacts)
    error: str | None = None


@dataclass
class ChatReply:
    staff_message: str
    detailed_notes: str
    inventory: list[InventoryFact] | None = None
    clinical: ExternalFact | None = None
    sources: list[str] = field(default_factory=list)
    confidence: float = 0.0

    def to_payload(self) -> dict[str, Any]:
        return {
            "ui": {"staffMessage": self.staff_message, "detailedNotes": self.detailed_notes},
            "inventory": [item.to_payload() for item in self.inventory] if self.inventory else None,
            "clinical": self.clinical.to_payload() if self.clinical is not None else None,
            "sources": list(self.sources),
            "confidence": round(float(self.confidence), 2),
        }
