from __future__ import annotations

import importlib.util
import json
from types import SimpleNamespace
from unittest import TestCase, skipUnless
from unittest.mock import Mock

from pharmacy_assistant.core.context import ConversationContext
from pharmacy_assistant.types import (
    NOT_COVERED,
    NOT_REQUESTED,
    SECTION_KEYS,
    AggregatedFacts,
    ChunkMetadata,
    ExternalFact,
    InventoryFact,
    RetrievedChunk,
)

PIPELINE_DEPS_AVAILABLE = importlib.util.find_spec("langchain_core") is not None


def _chunk(chunk_id: str, drug: str, section: str, content: str, classification: str = "Rx") -> RetrievedChunk:
    return RetrievedChunk(
        id=chunk_id,
        content=content,
        similarity=0.82,
        metadata=ChunkMetadata(
            subject_name=drug,
            section=section,
            source_range="210-211",
            classification=classification,
        ),
    )


AMOXICILLIN_DOSAGE = _chunk(
    "amox-dosage",
    "Amoxicillin",
    "dosage",
    "Adults: 500 mg every 8 hours for 7 days.",
)
AMOXICILLIN_ADVERSE = _chunk(
    "amox-adverse",
    "Amoxicillin",
    "adverseReactions",
    "Diarrhoea, rash and nausea.",
)
CETIRIZINE_DOSAGE = _chunk(
    "cet-dosage",
    "Cetirizine",
    "dosage",
    "Adults: 10 mg once daily.",
    classification="OTC",
)


def _llm_reply(sections: dict, **extra) -> SimpleNamespace:
    payload = {"sections": sections, **extra}
    return SimpleNamespace(content=json.dumps(payload), usage_metadata=None, response_metadata={})


def _context(hint: str | None = None, history: tuple[str, ...] = ()) -> ConversationContext:
    return ConversationContext(active_topic_hint=hint, history=history)


@skipUnless(PIPELINE_DEPS_AVAILABLE, "langchain_core is not installed")
class ResponseSynthesizerTests(TestCase):
    def _synthesizer(self, llm):
        from pharmacy_assistant.core.synthesis import ResponseSynthesizer

        return ResponseSynthesizer(llm, timeout_seconds=5)

    def test_empty_chunks_return_sentinels_without_calling_model(self) -> None:
        from pharmacy_assistant.core.synthesis import FALLBACK_MESSAGE, SynthesisOk

        llm = Mock()

        result = self._synthesizer(llm).synthesize("dose of unknownium?", _context(), [])

        self.assertIsInstance(result, SynthesisOk)
        self.assertEqual(set(result.answer.sections), set(SECTION_KEYS))
        self.assertTrue(all(value == NOT_COVERED for value in result.answer.sections.values()))
        self.assertEqual(result.answer_text, FALLBACK_MESSAGE)
        self.assertEqual(result.answer.citations, [])
        llm.invoke.assert_not_called()

    def test_structured_answer_is_grounded_and_scoped_to_request(self) -> None:
        from pharmacy_assistant.core.synthesis import SynthesisOk

        llm = Mock()
        llm.invoke.return_value = _llm_reply(
            {
                "overview": "Adults receive 500 mg every 8 hours [#1].",
                "dosage": "500 mg every 12 hours",
                "indications": "Respiratory infections",
            },
            followUpQuestions=["Any renal adjustment?"],
            citations=[1],
        )

        result = self._synthesizer(llm).synthesize(
            "What is the dosage of amoxicillin?",
            _context(),
            [AMOXICILLIN_DOSAGE],
        )

        self.assertIsInstance(result, SynthesisOk)
        sections = result.answer.sections
        self.assertEqual(
            sections["overview"],
            "Classification: Rx (prescription only). Adults receive 500 mg every 8 hours [#1].",
        )
        self.assertEqual(sections["dosage"], NOT_COVERED)
        self.assertEqual(sections["indications"], NOT_REQUESTED)
        self.assertEqual(sections["classification"], NOT_REQUESTED)
        self.assertEqual(sections["pregnancy"], NOT_REQUESTED)
        self.assertEqual(result.answer.follow_up_questions, ["Any renal adjustment?"])
        self.assertEqual([item["id"] for item in result.answer.citations], ["amox-dosage"])
        self.assertEqual(result.answer.resolved_subject, "Amoxicillin")
        self.assertTrue(result.answer_text.startswith("Overview:\n"))
        self.assertFalse(result.answer.degraded)

    def test_missing_sections_are_filled_from_matching_chunks(self) -> None:
        llm = Mock()
        llm.invoke.return_value = _llm_reply({"overview": "Common reactions are listed [#2]."})

        result = self._synthesizer(llm).synthesize(
            "What are the side effects of amoxicillin?",
            _context(),
            [AMOXICILLIN_DOSAGE, AMOXICILLIN_ADVERSE],
        )

        self.assertEqual(result.answer.sections["adverse_reactions"], "Diarrhoea, rash and nausea.")
        self.assertEqual(result.answer.sections["dosage"], NOT_REQUESTED)

    def test_active_topic_keeps_answer_on_the_same_drug(self) -> None:
        llm = Mock()
        llm.invoke.return_value = _llm_reply({"overview": "Take 10 mg once daily [#1]."}, citations=[1])

        result = self._synthesizer(llm).synthesize(
            "what's the dosage",
            _context(hint="Cetirizine"),
            [AMOXICILLIN_DOSAGE, CETIRIZINE_DOSAGE],
        )

        self.assertEqual(result.answer.resolved_subject, "Cetirizine")
        self.assertEqual([item["id"] for item in result.answer.citations], ["cet-dosage"])
        self.assertIn("OTC (over the counter)", result.answer.sections["overview"])

    def test_unparseable_reply_yields_schema_error(self) -> None:
        from pharmacy_assistant.core.synthesis import FALLBACK_MESSAGE, NO_STRUCTURED_ANSWER_NOTE, SchemaError

        llm = Mock()
        llm.invoke.return_value = SimpleNamespace(content="Sure! Amoxicillin is great.", usage_metadata=None, response_metadata={})

        result = self._synthesizer(llm).synthesize(
            "What is the dosage of amoxicillin?",
            _context(),
            [AMOXICILLIN_DOSAGE],
        )

        self.assertIsInstance(result, SchemaError)
        self.assertTrue(result.answer.degraded)
        self.assertEqual(result.answer.notes, NO_STRUCTURED_ANSWER_NOTE)
        self.assertEqual(result.answer_text, FALLBACK_MESSAGE)
        self.assertEqual(result.answer.sections["dosage"], "Adults: 500 mg every 8 hours for 7 days.")

    def test_model_failure_raises_generation_error(self) -> None:
        from pharmacy_assistant.errors import GenerationError

        llm = Mock()
        llm.invoke.side_effect = RuntimeError("503 from endpoint")

        with self.assertRaises(GenerationError):
            self._synthesizer(llm).synthesize("amoxicillin dose?", _context(), [AMOXICILLIN_DOSAGE])


@skipUnless(PIPELINE_DEPS_AVAILABLE, "langchain_core is not installed")
class SynthesisHelperTests(TestCase):
    def test_numbers_must_appear_in_some_chunk(self) -> None:
        from pharmacy_assistant.core.synthesis import enforce_numeric_grounding

        checked = enforce_numeric_grounding(
            {
                "dosage": "Take 750 mg twice daily.",
                "overview": "See [#3]: 500 mg every 8 hours.",
                "notes": NOT_REQUESTED,
            },
            [AMOXICILLIN_DOSAGE],
        )

        self.assertEqual(checked["dosage"], NOT_COVERED)
        self.assertEqual(checked["overview"], "See [#3]: 500 mg every 8 hours.")
        self.assertEqual(checked["notes"], NOT_REQUESTED)

    def test_requested_sections_always_include_overview(self) -> None:
        from pharmacy_assistant.core.synthesis import detect_requested_sections

        self.assertEqual(detect_requested_sections("any interactions with warfarin?"), ["overview", "interactions"])
        self.assertIsNone(detect_requested_sections("tell me about amoxicillin"))

    def test_active_subject_resolution_order(self) -> None:
        from pharmacy_assistant.core.synthesis import resolve_active_subject

        chunks = [AMOXICILLIN_DOSAGE, CETIRIZINE_DOSAGE]

        self.assertEqual(resolve_active_subject("dose?", (), chunks, "cetirizine"), "Cetirizine")
        self.assertEqual(resolve_active_subject("is cetirizine safe?", (), chunks), "Cetirizine")
        self.assertEqual(
            resolve_active_subject("and the dose?", ("user: tell me about cetirizine", "assistant: ok"), chunks),
            "Cetirizine",
        )
        self.assertEqual(resolve_active_subject("and the dose?", (), chunks), "Amoxicillin")
        self.assertIsNone(resolve_active_subject("dose?", (), []))

    def test_classification_sentence_not_duplicated(self) -> None:
        from pharmacy_assistant.core.synthesis import enforce_classification_in_overview

        self.assertEqual(
            enforce_classification_in_overview(NOT_COVERED, "OTC"),
            "Classification: OTC (over the counter).",
        )
        self.assertEqual(
            enforce_classification_in_overview("Rx only antibiotic.", "Rx"),
            "Rx only antibiotic.",
        )

    def test_templated_text_lists_inventory_and_label_facts(self) -> None:
        from pharmacy_assistant.core.synthesis import templated_text

        facts = AggregatedFacts(
            inventory=(
                InventoryFact(
                    id=1,
                    name="Biogesic 500 mg",
                    quantity=120,
                    selling_price="4.50",
                    unit="tablet",
                    expiry_date="2027-03-31",
                ),
            ),
            external=ExternalFact(
                subject="paracetamol",
                source="openFDA",
                mapped_name="acetaminophen",
                dosage="adults take 2 caplets every 6 hours",
            ),
            sources=("Pharmacy Inventory", "RxNorm", "FDA Drug Labels"),
        )

        text = templated_text(facts, "paracetamol")

        self.assertEqual(
            text.splitlines(),
            [
                "Available in pharmacy: Biogesic 500 mg - In Stock (120 tablet) - PHP 4.50 - expires 2027-03-31",
                "US generic name: acetaminophen",
                "Dosage: adults take 2 caplets every 6 hours",
                "Source: openFDA",
            ],
        )

    def test_templated_text_is_never_empty(self) -> None:
        from pharmacy_assistant.core.synthesis import templated_text

        self.assertIn("losartan", templated_text(AggregatedFacts(), "losartan"))
