from __future__ import annotations


class AssistantError(Exception):
    """Base class for failures the assistant reports to callers."""

    status_code = 500


class ValidationError(AssistantError):
    """Caller input violated one or more shape or length constraints."""

    status_code = 400

    def __init__(self, issues: list[str] | tuple[str, ...] | str) -> None:
        if isinstance(issues, str):
            issues = [issues]
        self.issues = [str(item) for item in issues if str(item).strip()]
        super().__init__(", ".join(self.issues) or "Invalid request.")


class ConfigurationError(AssistantError):
    """A required credential or endpoint is not configured."""

    status_code = 503


class RetrievalError(AssistantError):
    """Embedding or similarity search failed for the primary query variant."""


class GenerationError(AssistantError):
    """Structured answer generation failed or returned an invalid payload."""


class UpstreamTimeout(AssistantError):
    """An external call exceeded its time bound."""

    def __init__(self, source: str, timeout_seconds: float) -> None:
        self.source = source
        self.timeout_seconds = float(timeout_seconds)
        super().__init__(f"{source} did not respond within {self.timeout_seconds:.1f}s")
