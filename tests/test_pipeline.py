from __future__ import annotations

import importlib.util
import json
import time
from pathlib import Path
from tempfile import TemporaryDirectory
from threading import Event
from types import SimpleNamespace
from unittest import TestCase, skipUnless
from unittest.mock import Mock

from pharmacy_assistant.types import (
    NOT_COVERED,
    AggregatedFacts,
    ChunkMetadata,
    ExternalFact,
    InventoryFact,
    PipelineStage,
    RetrievedChunk,
    StructuredAnswer,
)

PIPELINE_DEPS_AVAILABLE = all(
    importlib.util.find_spec(name) is not None
    for name in ("langchain_core", "langchain_community", "langchain_nvidia_ai_endpoints")
)

AMOXICILLIN_DOSAGE = RetrievedChunk(
    id="amox-dosage",
    content="Adults: 500 mg every 8 hours for 7 days.",
    similarity=0.81,
    metadata=ChunkMetadata(subject_name="Amoxicillin", section="dosage", source_range="210", classification="Rx"),
)
BIOGESIC = InventoryFact(id=1, name="Biogesic 500 mg", quantity=120, selling_price="4.50", unit="tablet")
LABEL = ExternalFact(
    subject="amoxicillin",
    source="openFDA",
    dosage="500 mg every 8 hours",
)


def _config(**overrides) -> SimpleNamespace:
    values = dict(
        log_pipeline=False,
        audit_mode=False,
        audit_log_path=Path("./data/audit/formulary_chat.jsonl"),
        generation_configured=True,
        nvidia_api_key="nvapi-test",
        inventory_database_url=None,
        nvidia_model="meta/llama-3.1-8b-instruct",
        embedding_model="nvidia/nv-embedqa-e5-v5",
        retrieval_k=6,
        config_warnings=(),
    )
    values.update(overrides)
    return SimpleNamespace(**values)


@skipUnless(PIPELINE_DEPS_AVAILABLE, "LangChain integrations are not installed")
class FormularyAssistantTests(TestCase):
    def _assistant(self, *, config=None, retriever=None, aggregator=None, synthesizer=None):
        from pharmacy_assistant.core.pipeline import FormularyAssistant
        from pharmacy_assistant.intent import IntentClassifier

        return FormularyAssistant(
            config or _config(),
            classifier=IntentClassifier(llm=None),
            retriever=retriever,
            aggregator=aggregator,
            synthesizer=synthesizer,
        )

    def _retriever(self, chunks):
        retriever = Mock()
        retriever.retrieve_all.return_value = [list(chunks)]
        return retriever

    def test_generation_failure_degrades_chat_reply(self) -> None:
        from pharmacy_assistant.core.synthesis import ResponseSynthesizer

        llm = Mock()
        llm.invoke.side_effect = RuntimeError("model endpoint down")
        aggregator = Mock()
        aggregator.aggregate.return_value = AggregatedFacts(external=LABEL, sources=("FDA Drug Labels",))
        assistant = self._assistant(
            retriever=self._retriever([AMOXICILLIN_DOSAGE]),
            aggregator=aggregator,
            synthesizer=ResponseSynthesizer(llm, timeout_seconds=5),
        )

        reply = assistant.answer_chat("What is the dosage of amoxicillin?", 7)

        self.assertLessEqual(reply.confidence, 0.5)
        self.assertTrue(reply.staff_message.strip())
        self.assertIn("Dosage: 500 mg every 8 hours", reply.staff_message)
        self.assertNotIn("Formulary", reply.sources)
        self.assertIn("Templated fallback", reply.detailed_notes)
        aggregator.aggregate.assert_called_once()
        self.assertEqual(aggregator.aggregate.call_args.kwargs["pharmacy_id"], 7)

    def test_answered_chat_reply_lists_formulary_first(self) -> None:
        from pharmacy_assistant.core.synthesis import SynthesisOk

        synthesizer = Mock()
        synthesizer.synthesize.return_value = SynthesisOk(
            answer=StructuredAnswer(
                sections={"dosage": "Adults: 500 mg every 8 hours for 7 days.", "overview": "Dosing [#1]."},
                resolved_subject="Amoxicillin",
            ),
            answer_text="Dosage:\nAdults: 500 mg every 8 hours for 7 days.",
        )
        aggregator = Mock()
        aggregator.aggregate.return_value = AggregatedFacts(
            inventory=(BIOGESIC,),
            sources=("Pharmacy Inventory",),
        )
        assistant = self._assistant(
            retriever=self._retriever([AMOXICILLIN_DOSAGE]),
            aggregator=aggregator,
            synthesizer=synthesizer,
        )

        reply = assistant.answer_chat("Do we have amoxicillin in stock and what is the dosage?", 7)
        payload = reply.to_payload()

        self.assertEqual(payload["sources"], ["Formulary", "Pharmacy Inventory"])
        self.assertEqual(payload["confidence"], 1.0)
        self.assertEqual(payload["inventory"][0]["sellingPrice"], "4.50")
        self.assertIsNone(payload["clinical"])
        self.assertTrue(payload["ui"]["staffMessage"].startswith("Dosage:"))

    def test_retrieval_failure_returns_degraded_formulary_result(self) -> None:
        from pharmacy_assistant.core.context import build_query
        from pharmacy_assistant.core.pipeline import FORMULARY_UNAVAILABLE_MESSAGE
        from pharmacy_assistant.errors import RetrievalError

        retriever = Mock()
        retriever.retrieve_all.side_effect = RetrievalError("embedding timeout")
        synthesizer = Mock()
        assistant = self._assistant(retriever=retriever, synthesizer=synthesizer)

        result = assistant.answer_formulary(build_query("what's the dosage", active_topic_hint="Amoxicillin"))

        self.assertEqual(result.stage, PipelineStage.DEGRADED)
        self.assertEqual(result.answer_text, FORMULARY_UNAVAILABLE_MESSAGE)
        self.assertEqual(result.error, FORMULARY_UNAVAILABLE_MESSAGE)
        self.assertEqual(result.drug_context, "Amoxicillin")
        self.assertTrue(result.answer.degraded)
        synthesizer.synthesize.assert_not_called()

    def test_follow_up_carries_active_topic(self) -> None:
        from pharmacy_assistant.core.context import build_query
        from pharmacy_assistant.core.synthesis import SynthesisOk

        retriever = self._retriever([AMOXICILLIN_DOSAGE])
        synthesizer = Mock()
        synthesizer.synthesize.return_value = SynthesisOk(answer=StructuredAnswer(), answer_text="ok")
        assistant = self._assistant(retriever=retriever, synthesizer=synthesizer)

        result = assistant.answer_formulary(build_query("what's the dosage", active_topic_hint="Amoxicillin"))

        self.assertEqual(result.stage, PipelineStage.ANSWERED)
        self.assertEqual(result.intent.subject, "Amoxicillin")
        self.assertEqual(
            [(variant.text, variant.weight) for variant in result.variants],
            [("Amoxicillin what's the dosage", 2.0), ("what's the dosage", 1.0)],
        )
        self.assertEqual(result.drug_context, "Amoxicillin")

    def test_merged_chunk_order_is_stable_across_runs(self) -> None:
        from langchain_core.documents import Document

        from pharmacy_assistant.core.context import build_query
        from pharmacy_assistant.core.retrieval import FormularyRetriever
        from pharmacy_assistant.core.synthesis import SynthesisOk

        hinted = "Amoxicillin what's the dosage"
        raw = "what's the dosage"

        def doc(chunk_id: str, drug: str) -> tuple[Document, float]:
            return Document(page_content=f"{drug} {chunk_id}", metadata={"chunk_id": chunk_id, "drug_name": drug}), 0.1

        class SlowHintedEmbeddings:
            def embed_query(self, text: str) -> list[float]:
                if text == hinted:
                    time.sleep(0.05)
                return [float(len(text))]

        class Store:
            results = {
                float(len(hinted)): [doc("amox-dose", "Amoxicillin"), doc("cef-1", "Cefalexin"), doc("amox-ind", "Amoxicillin")],
                float(len(raw)): [doc("cef-1", "Cefalexin"), doc("amox-admin", "Amoxicillin")],
            }

            def similarity_search_by_vector_with_relevance_scores(self, vector, k=4):
                return list(self.results.get(vector[0], []))[:k]

        synthesizer = Mock()
        synthesizer.synthesize.return_value = SynthesisOk(answer=StructuredAnswer(), answer_text="ok")
        assistant = self._assistant(
            retriever=FormularyRetriever(embeddings=SlowHintedEmbeddings(), store=Store()),
            synthesizer=synthesizer,
        )
        query = build_query(raw, active_topic_hint="Amoxicillin")

        first = assistant.answer_formulary(query)
        second = assistant.answer_formulary(query)

        self.assertEqual(
            [chunk.id for chunk in first.chunks],
            ["amox-dose", "amox-ind", "amox-admin", "cef-1"],
        )
        self.assertEqual(first.chunks, second.chunks)

    def test_no_chunks_still_answers_with_sentinels(self) -> None:
        from pharmacy_assistant.core.context import build_query
        from pharmacy_assistant.core.synthesis import FALLBACK_MESSAGE, ResponseSynthesizer

        llm = Mock()
        assistant = self._assistant(
            retriever=self._retriever([]),
            synthesizer=ResponseSynthesizer(llm, timeout_seconds=5),
        )

        result = assistant.answer_formulary(build_query("dose of unknownium?"))

        self.assertEqual(result.stage, PipelineStage.ANSWERED)
        self.assertEqual(result.answer_text, FALLBACK_MESSAGE)
        self.assertTrue(all(value == NOT_COVERED for value in result.answer.sections.values()))
        llm.invoke.assert_not_called()

    def test_cancelled_request_raises(self) -> None:
        from pharmacy_assistant.core.concurrency import RequestCancelled
        from pharmacy_assistant.core.context import build_query

        cancel_event = Event()
        cancel_event.set()
        assistant = self._assistant(retriever=self._retriever([AMOXICILLIN_DOSAGE]), synthesizer=Mock())

        with self.assertRaises(RequestCancelled):
            assistant.answer_formulary(build_query("amoxicillin dose"), cancel_event=cancel_event)

    def test_chat_requires_generation_credentials(self) -> None:
        from pharmacy_assistant.errors import ConfigurationError

        assistant = self._assistant(config=_config(generation_configured=False, nvidia_api_key=None))

        with self.assertRaises(ConfigurationError):
            assistant.answer_chat("Do we have paracetamol?", 7)

    def test_blank_intent_text_is_rejected(self) -> None:
        from pharmacy_assistant.errors import ValidationError

        with self.assertRaises(ValidationError):
            self._assistant().classify_intent("  ")

    def test_audit_mode_appends_answer_record(self) -> None:
        from pharmacy_assistant.core.context import build_query
        from pharmacy_assistant.core.synthesis import SynthesisOk

        synthesizer = Mock()
        synthesizer.synthesize.return_value = SynthesisOk(answer=StructuredAnswer(), answer_text="ok")
        with TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "audit.jsonl"
            assistant = self._assistant(
                config=_config(audit_mode=True, audit_log_path=path),
                retriever=self._retriever([AMOXICILLIN_DOSAGE]),
                synthesizer=synthesizer,
            )

            assistant.answer_formulary(build_query("amoxicillin dose"))
            record = json.loads(path.read_text(encoding="utf-8").strip())

        self.assertEqual(record["event"], "formulary.answer")
        self.assertEqual(record["question"], "amoxicillin dose")
        self.assertEqual(record["stage"], "answered")

    def test_health_reports_configuration(self) -> None:
        health = self._assistant(retriever=Mock(), synthesizer=Mock()).health()

        self.assertEqual(health["status"], "ok")
        self.assertTrue(health["generation_configured"])
        self.assertTrue(health["hasApiKey"])
        self.assertFalse(health["hasDbUrl"])


@skipUnless(PIPELINE_DEPS_AVAILABLE, "LangChain integrations are not installed")
class ChatReplyHelperTests(TestCase):
    def test_confidence_rules(self) -> None:
        from pharmacy_assistant.core.pipeline import compute_confidence

        self.assertEqual(compute_confidence(has_clinical=False, has_inventory=False, source_count=0), 0.5)
        self.assertEqual(compute_confidence(has_clinical=True, has_inventory=False, source_count=2), 0.8)
        self.assertEqual(compute_confidence(has_clinical=True, has_inventory=True, source_count=3), 1.0)
        self.assertEqual(
            compute_confidence(has_clinical=True, has_inventory=True, source_count=3, degraded=True),
            0.5,
        )

    def test_error_reply_shape(self) -> None:
        from pharmacy_assistant.core.pipeline import CHAT_ERROR_MESSAGE, error_reply

        payload = error_reply(CHAT_ERROR_MESSAGE)

        self.assertEqual(payload["ui"]["staffMessage"], CHAT_ERROR_MESSAGE)
        self.assertEqual(payload["confidence"], 0.0)
        self.assertEqual(payload["sources"], [])
