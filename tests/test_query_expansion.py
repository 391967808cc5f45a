from __future__ import annotations

from unittest import TestCase

from pharmacy_assistant.core.context import ConversationContext, build_query
from pharmacy_assistant.core.expansion import expand
from pharmacy_assistant.errors import ValidationError
from pharmacy_assistant.types import QueryVariant


def _context(hint: str | None = None, history: tuple[str, ...] = ()) -> ConversationContext:
    return ConversationContext(active_topic_hint=hint, history=history)


class QueryExpansionTests(TestCase):
    def test_hint_is_prepended_to_follow_up_question(self) -> None:
        variants = expand("what's the dosage", _context("Amoxicillin"))

        self.assertEqual(
            variants,
            [
                QueryVariant(text="Amoxicillin what's the dosage", weight=2.0),
                QueryVariant(text="what's the dosage", weight=1.0),
            ],
        )

    def test_variants_are_sorted_by_weight_and_capped_with_hint(self) -> None:
        variants = expand("side effects?", _context("Losartan"))

        self.assertEqual(len(variants), 2)
        self.assertEqual([variant.weight for variant in variants], [2.0, 1.0])
        self.assertNotIn("Losartan", [variant.text for variant in variants])

    def test_bare_hint_skipped_when_question_mentions_it(self) -> None:
        variants = expand("Is losartan renally cleared?", _context("Losartan"))

        self.assertEqual(
            [variant.text for variant in variants],
            ["Losartan Is losartan renally cleared?", "Is losartan renally cleared?"],
        )

    def test_without_hint_or_history_only_question_is_used(self) -> None:
        variants = expand("metformin renal dosing", _context())

        self.assertEqual(variants, [QueryVariant(text="metformin renal dosing", weight=1.0)])

    def test_last_user_turn_is_prepended_without_hint(self) -> None:
        history = (
            "user: Tell me about metformin",
            "assistant: Metformin is a biguanide.",
        )

        variants = expand("what about side effects", _context(history=history))

        self.assertEqual(
            variants,
            [QueryVariant(text="Tell me about metformin what about side effects", weight=1.5)],
        )

    def test_short_or_repeated_user_turns_are_ignored(self) -> None:
        short = expand("dose for kids", _context(history=("user: hi",)))
        repeated = expand("dose for kids", _context(history=("user: Dose for kids",)))

        self.assertEqual(short, [QueryVariant(text="dose for kids", weight=1.0)])
        self.assertEqual(repeated, [QueryVariant(text="dose for kids", weight=1.0)])

    def test_only_the_most_recent_user_turn_is_considered(self) -> None:
        context = _context(history=("user: Tell me about warfarin", "user: ok"))

        self.assertEqual(expand("and interactions?", context), [QueryVariant(text="and interactions?", weight=1.0)])


class ConversationContextTests(TestCase):
    def test_build_query_rejects_empty_question(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            build_query("   ")

        self.assertIn("Question must not be empty", ctx.exception.issues)

    def test_build_query_rejects_out_of_range_k(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            build_query("amoxicillin dose", max_results=50)

        self.assertIn("k must be between 1 and 12", ctx.exception.issues)

    def test_build_query_normalizes_hint_and_history(self) -> None:
        query = build_query(
            "  dose?  ",
            conversation_history=["user: hi"],
            active_topic_hint="  ",
            default_max_results=4,
        )

        self.assertEqual(query.text, "dose?")
        self.assertIsNone(query.active_topic_hint)
        self.assertEqual(query.conversation_history, ("user: hi",))
        self.assertEqual(query.max_results, 4)

    def test_history_text_placeholder_when_empty(self) -> None:
        self.assertEqual(_context().history_text(), "No previous turns.")
