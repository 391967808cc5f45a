from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from api.dependencies import get_assistant
from api.models import IntentRequest, IntentResponse
from pharmacy_assistant.core.pipeline import FormularyAssistant
from pharmacy_assistant.errors import AssistantError

LOGGER = logging.getLogger("api.intent")

router = APIRouter(tags=["intent"])


@router.post("/intent", response_model=IntentResponse)
def classify_intent(
    request: IntentRequest,
    assistant: FormularyAssistant = Depends(get_assistant),
):
    try:
        intent = assistant.classify_intent(request.text)
    except AssistantError:
        raise
    except Exception:
        LOGGER.exception("Intent classification request failed")
        return JSONResponse(status_code=500, content={"error": "Failed to classify intent"})
    return IntentResponse(**intent.to_payload())
