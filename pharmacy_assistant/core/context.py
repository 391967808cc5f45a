from __future__ import annotations

from dataclasses import dataclass
import re

from pharmacy_assistant.errors import ValidationError
from pharmacy_assistant.types import Query

MAX_QUESTION_CHARS = 1000
MAX_HISTORY_TURNS = 12
MAX_TURN_CHARS = 1000
MIN_RESULTS = 1
MAX_RESULTS = 12

_ROLE_PREFIX_RE = re.compile(r"^(user|assistant)\s*:\s*", flags=re.IGNORECASE)
_SUBJECT_CHARS_RE = re.compile(r"[^a-z0-9\s+\-]")


@dataclass(frozen=True)
class ConversationContext:
    """Active-topic hint and trimmed turn history for one exchange."""

    active_topic_hint: str | None
    history: tuple[str, ...]

    @classmethod
    def from_query(cls, query: Query, *, max_turns: int = MAX_HISTORY_TURNS) -> "ConversationContext":
        hint = (query.active_topic_hint or "").strip() or None
        return cls(active_topic_hint=hint, history=trim_history(query.conversation_history, max_turns=max_turns))

    def last_user_turn(self) -> str | None:
        for entry in reversed(self.history):
            role, content = split_turn(entry)
            if role == "user":
                return content or None
        return None

    def history_text(self) -> str:
        return "\n".join(self.history) if self.history else "No previous turns."


def build_query(
    text: str,
    *,
    conversation_history: list[str] | tuple[str, ...] | None = None,
    active_topic_hint: str | None = None,
    max_results: int | None = None,
    default_max_results: int = 6,
) -> Query:
    """Validate raw caller input and return a Query, or raise ValidationError."""
    issues: list[str] = []
    cleaned = str(text or "").strip()
    if not cleaned:
        issues.append("Question must not be empty")
    elif len(cleaned) > MAX_QUESTION_CHARS:
        issues.append(f"Question must be at most {MAX_QUESTION_CHARS} characters")
    resolved_max = default_max_results if max_results is None else max_results
    try:
        resolved_max = int(resolved_max)
    except (TypeError, ValueError):
        issues.append("k must be an integer")
        resolved_max = default_max_results
    if not MIN_RESULTS <= resolved_max <= MAX_RESULTS:
        issues.append(f"k must be between {MIN_RESULTS} and {MAX_RESULTS}")
    if issues:
        raise ValidationError(issues)
    return Query(
        text=cleaned,
        conversation_history=tuple(conversation_history or ()),
        active_topic_hint=(active_topic_hint or "").strip() or None,
        max_results=resolved_max,
    )


def trim_history(history: tuple[str, ...] | list[str], *, max_turns: int = MAX_HISTORY_TURNS) -> tuple[str, ...]:
    cleaned = [" ".join(str(entry or "").split())[:MAX_TURN_CHARS] for entry in history or ()]
    cleaned = [entry for entry in cleaned if entry]
    return tuple(cleaned[-max(1, int(max_turns)):])


def split_turn(entry: str) -> tuple[str, str]:
    text = str(entry or "").strip()
    match = _ROLE_PREFIX_RE.match(text)
    if not match:
        return "", text
    return match.group(1).lower(), text[match.end():].strip()


def normalize_subject(value: str) -> str:
    lowered = str(value or "").lower()
    return " ".join(_SUBJECT_CHARS_RE.sub("", lowered).split())
