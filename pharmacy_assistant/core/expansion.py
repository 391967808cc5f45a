from __future__ import annotations

import logging

from pharmacy_assistant.core.context import ConversationContext
from pharmacy_assistant.types import QueryVariant

LOGGER = logging.getLogger("pipeline.expansion")

QUESTION_WEIGHT = 1.0
HINTED_QUESTION_WEIGHT = 2.0
BARE_HINT_WEIGHT = 0.5
HISTORY_QUESTION_WEIGHT = 1.5
MIN_HISTORY_TURN_CHARS = 6
MAX_VARIANTS_WITHOUT_HINT = 1
MAX_VARIANTS_WITH_HINT = 2


def expand(question: str, context: ConversationContext, *, log_pipeline: bool = False) -> list[QueryVariant]:
    """Build weighted retrieval variants for a question.

    The raw question is always present. A topic hint contributes a hinted
    question and, when the question does not already mention it, the bare
    hint. Without a hint the most recent user turn is prepended instead.
    """
    text = str(question or "").strip()
    hint = (context.active_topic_hint or "").strip()
    candidates: list[QueryVariant] = [QueryVariant(text=text, weight=QUESTION_WEIGHT)]

    if hint:
        candidates.append(QueryVariant(text=f"{hint} {text}", weight=HINTED_QUESTION_WEIGHT))
        if hint.lower() not in text.lower():
            candidates.append(QueryVariant(text=hint, weight=BARE_HINT_WEIGHT))
    else:
        last_turn = context.last_user_turn()
        if last_turn and len(last_turn) > MIN_HISTORY_TURN_CHARS and last_turn.strip().lower() != text.lower():
            candidates.append(
                QueryVariant(text=f"{last_turn} {text}", weight=HISTORY_QUESTION_WEIGHT)
            )

    variants: list[QueryVariant] = []
    seen: set[str] = set()
    for candidate in candidates:
        if not candidate.text or candidate.text in seen:
            continue
        seen.add(candidate.text)
        variants.append(candidate)
    variants.sort(key=lambda variant: variant.weight, reverse=True)

    limit = MAX_VARIANTS_WITH_HINT if hint else MAX_VARIANTS_WITHOUT_HINT
    selected = variants[:limit]
    if log_pipeline:
        LOGGER.info(
            "[PIPELINE] Query expansion | candidates=%s selected=%s",
            len(variants),
            [(variant.text[:80], variant.weight) for variant in selected],
        )
    return selected
