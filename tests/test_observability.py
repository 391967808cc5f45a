from __future__ import annotations

import json
from pathlib import Path
from tempfile import TemporaryDirectory
from types import SimpleNamespace
from unittest import TestCase
from unittest.mock import Mock, patch

from pharmacy_assistant.logging_utils import extract_usage_stats, hash_query_text, log_event
from pharmacy_assistant.observability.tracing import annotate_span, span_attributes, start_span
from pharmacy_assistant.types import IntentType, PipelineStage, SourceTag


class ObservabilityTests(TestCase):
    def test_log_event_emits_valid_json(self) -> None:
        logger = Mock()
        with patch("pharmacy_assistant.logging_utils.get_logger", return_value=logger):
            payload = log_event(
                "formulary.answer",
                request_id="req-1",
                stage="answered",
                citations=("a", "b"),
            )

        logger.info.assert_called_once()
        parsed = json.loads(logger.info.call_args.args[0])
        self.assertEqual(parsed["event"], "formulary.answer")
        self.assertEqual(parsed["request_id"], "req-1")
        self.assertEqual(parsed["citations"], ["a", "b"])
        self.assertEqual(payload["stage"], "answered")

    def test_log_event_appends_audit_line(self) -> None:
        with TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "audit" / "events.jsonl"
            log_event("chat.reply", store_path=path, confidence=0.8)
            log_event("chat.reply", store_path=path, confidence=0.5)

            lines = path.read_text(encoding="utf-8").strip().splitlines()

        self.assertEqual(len(lines), 2)
        self.assertEqual(json.loads(lines[1])["confidence"], 0.5)

    def test_query_hash_ignores_case_and_spacing(self) -> None:
        self.assertEqual(
            hash_query_text("Do we have  Paracetamol?"),
            hash_query_text("do we have paracetamol?"),
        )

    def test_usage_stats_read_response_metadata(self) -> None:
        response = SimpleNamespace(
            usage_metadata=None,
            response_metadata={"token_usage": {"prompt_tokens": 12, "completion_tokens": 5}, "model_name": "m"},
        )

        stats = extract_usage_stats(response)

        self.assertEqual(stats["total_tokens"], 17)
        self.assertEqual(stats["model_name"], "m")

    def test_start_span_is_noop_without_tracer(self) -> None:
        with patch("pharmacy_assistant.observability.tracing._get_tracer", return_value=None):
            with start_span("assistant.answer_formulary") as span:
                self.assertIsNone(span)

    def test_span_attributes_are_namespaced_and_flattened(self) -> None:
        attributes = span_attributes(
            {
                "request_id": "req-9",
                "pharmacy_id": 7,
                "active_topic_hint": None,
                "intent": IntentType.STOCK_CHECK,
                "sources": frozenset({SourceTag.INTERNAL_DB, SourceTag.EXTERNAL_DB}),
                "query": "do we have paracetamol?",
            }
        )

        self.assertEqual(
            attributes,
            {
                "formulary.request.id": "req-9",
                "formulary.pharmacy.id": 7,
                "formulary.intent.type": "stock_check",
                "formulary.intent.sources": ["external_db", "internal_db"],
            },
        )

    def test_annotate_span_sets_mapped_attributes(self) -> None:
        span = Mock()

        annotate_span(span, stage=PipelineStage.ANSWERED, chunk_count=3)
        annotate_span(None, stage=PipelineStage.ANSWERED)

        span.set_attribute.assert_any_call("formulary.pipeline.stage", "answered")
        span.set_attribute.assert_any_call("formulary.retrieval.chunks", 3)

    def test_start_span_applies_mapped_attributes(self) -> None:
        span = Mock()
        tracer = Mock()
        tracer.start_as_current_span.return_value.__enter__ = Mock(return_value=span)
        tracer.start_as_current_span.return_value.__exit__ = Mock(return_value=False)

        with patch("pharmacy_assistant.observability.tracing._get_tracer", return_value=tracer):
            with start_span("assistant.answer_formulary", attributes={"request_id": "req-1"}) as active:
                self.assertIs(active, span)

        span.set_attribute.assert_called_once_with("formulary.request.id", "req-1")
