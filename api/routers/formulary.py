from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from api.dependencies import get_assistant
from api.models import FormularyChatRequest, FormularyChatResponse
from pharmacy_assistant.core.context import build_query
from pharmacy_assistant.core.pipeline import FormularyAssistant
from pharmacy_assistant.errors import AssistantError

LOGGER = logging.getLogger("api.formulary")

router = APIRouter(tags=["formulary"])


@router.post("/formulary-chat", response_model=FormularyChatResponse)
def formulary_chat(
    request: FormularyChatRequest,
    assistant: FormularyAssistant = Depends(get_assistant),
):
    query = build_query(
        request.question,
        conversation_history=request.chat_history,
        active_topic_hint=request.last_drug_discussed,
        max_results=request.k,
        default_max_results=assistant.config.retrieval_k,
    )
    try:
        result = assistant.answer_formulary(query)
    except AssistantError:
        raise
    except Exception:
        LOGGER.exception("Formulary chat request failed")
        return JSONResponse(status_code=500, content={"error": "Failed to answer formulary question"})

    answer = result.answer
    return FormularyChatResponse(
        answer=result.answer_text,
        sections=answer.sections,
        followUpQuestions=answer.follow_up_questions,
        notes=answer.notes,
        latencyMs=answer.latency_ms,
        drugContext=result.drug_context,
        relatedDrugs=answer.related_subjects,
        citations=answer.citations,
        stage=result.stage.value,
    )
