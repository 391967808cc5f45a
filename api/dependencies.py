from __future__ import annotations

from functools import lru_cache

from dotenv import load_dotenv
from fastapi import Request

from pharmacy_assistant.core.config import AppConfig, load_config
from pharmacy_assistant.core.pipeline import FormularyAssistant, build_assistant


@lru_cache(maxsize=1)
def get_config() -> AppConfig:
    load_dotenv(override=False)
    return load_config()


def get_assistant(request: Request) -> FormularyAssistant:
    assistant = getattr(request.app.state, "assistant", None)
    if assistant is None:
        assistant = build_assistant(get_config())
        request.app.state.assistant = assistant
    return assistant
