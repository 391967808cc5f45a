from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from api.dependencies import get_assistant
from api.models import ChatRequest, ChatResponse
from pharmacy_assistant.core.pipeline import (
    CHAT_ERROR_MESSAGE,
    CHAT_INVALID_MESSAGE,
    CHAT_UNCONFIGURED_MESSAGE,
    FormularyAssistant,
    error_reply,
)
from pharmacy_assistant.errors import ConfigurationError, ValidationError

LOGGER = logging.getLogger("api.chat")

router = APIRouter(tags=["chat"])


@router.post("/chat", response_model=ChatResponse)
def chat(
    request: ChatRequest,
    assistant: FormularyAssistant = Depends(get_assistant),
):
    try:
        reply = assistant.answer_chat(
            request.message,
            request.pharmacy_id,
            session_id=request.session_id,
            user_id=request.user_id,
        )
    except ConfigurationError as exc:
        LOGGER.warning("Chat request rejected: %s", exc)
        return JSONResponse(
            status_code=503,
            content={**error_reply(CHAT_UNCONFIGURED_MESSAGE), "error": "Service configuration error"},
        )
    except ValidationError as exc:
        return JSONResponse(
            status_code=400,
            content={**error_reply(CHAT_INVALID_MESSAGE), "error": str(exc)},
        )
    except Exception:
        LOGGER.exception("Chat request failed")
        return JSONResponse(
            status_code=500,
            content={**error_reply(CHAT_ERROR_MESSAGE), "error": "Internal server error"},
        )
    return reply.to_payload()
