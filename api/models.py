from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, PositiveInt


class IntentRequest(BaseModel):
    text: str = ""


class IntentResponse(BaseModel):
    intent: str
    drugName: str | None = None
    needs: list[str] = Field(default_factory=list)
    sources: list[str] = Field(default_factory=list)


class ChatRequest(BaseModel):
    message: str = Field(min_length=1, max_length=1000)
    pharmacy_id: PositiveInt = Field(alias="pharmacyId")
    session_id: str | None = Field(default=None, alias="sessionId")
    user_id: str | None = Field(default=None, alias="userId")

    model_config = ConfigDict(populate_by_name=True)


class ChatUiModel(BaseModel):
    staffMessage: str
    detailedNotes: str = ""


class ChatResponse(BaseModel):
    ui: ChatUiModel
    inventory: list[dict[str, Any]] | None = None
    clinical: dict[str, Any] | None = None
    sources: list[str] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    error: str | None = None


class FormularyChatRequest(BaseModel):
    question: str
    chat_history: list[str] = Field(default_factory=list, alias="chatHistory")
    last_drug_discussed: str | None = Field(default=None, alias="lastDrugDiscussed")
    k: int | None = None

    model_config = ConfigDict(populate_by_name=True)


class FormularyChatResponse(BaseModel):
    answer: str
    sections: dict[str, str]
    followUpQuestions: list[str] = Field(default_factory=list)
    notes: str = ""
    latencyMs: int = 0
    drugContext: str = ""
    relatedDrugs: list[str] = Field(default_factory=list)
    citations: list[dict[str, Any]] = Field(default_factory=list)
    stage: str | None = None


class ErrorResponse(BaseModel):
    error: str
    issues: list[str] = Field(default_factory=list)
