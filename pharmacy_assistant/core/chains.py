from __future__ import annotations

from functools import lru_cache

from langchain_core.output_parsers import PydanticOutputParser
from langchain_core.prompts import ChatPromptTemplate
from pydantic import BaseModel, ConfigDict, Field

from pharmacy_assistant.types import NOT_COVERED, NOT_REQUESTED

SYSTEM_PROMPT = """You are a formulary reference assistant, an internal tool that helps pharmacists and pharmacy staff retrieve formulary information quickly and accurately. Respond in a clear, professional tone that prioritizes accuracy and quick readability.

CRITICAL RULES:
- Use only the provided context. If a fact is not explicitly stated, respond with: "Not covered in provided context." Do not infer, generalize, or soften this message.
- Never fabricate dosage ranges, regimens, schedules or patient populations. Every numeric value you mention must appear verbatim in the context.
- Do not use vague phrases such as "typically", "usually", "standard dose" or "may vary".
- Keep the original units, ranges, populations, timing and combination therapies exactly as written.
- Reference supporting extracts using their [#X] tags. Never invent a tag.
- Stay on the same drug across follow-up questions. If the latest question does not name a drug, assume it refers to the most recently discussed drug. Do not mix information from other drugs.

OUTPUT STRUCTURE:
- The overview field answers the question directly in 2-4 sentences using only contextual facts, citing [#X] tags inline.
- For every other field, restate the context precisely when it supplies details, otherwise respond "Not covered in provided context."
- Always set the pregnancy field to "Not requested".
- List each dosage regimen separately with indication, population, route, dose, frequency and duration exactly as written.
- The citations array lists the numbers of every [#X] extract you relied on.
- Use prior exchanges only to identify the drug being discussed, never as a source of facts.
- If the context cannot answer the question, say so plainly and do not offer advice.
"""

USER_TEMPLATE = """Question: {question}

Relevant formulary extracts:
{context}

Prior exchanges:
{chat_history}"""


class FormularySections(BaseModel):
    overview: str = NOT_COVERED
    formulations: str = NOT_COVERED
    indications: str = NOT_COVERED
    contraindications: str = NOT_COVERED
    dosage: str = NOT_COVERED
    dose_adjustment: str = Field(default=NOT_COVERED, alias="doseAdjustment")
    precautions: str = NOT_COVERED
    adverse_reactions: str = Field(default=NOT_COVERED, alias="adverseReactions")
    interactions: str = NOT_COVERED
    administration: str = NOT_COVERED
    monitoring: str = NOT_COVERED
    notes: str = NOT_COVERED
    pregnancy: str = NOT_REQUESTED
    atc_code: str = Field(default=NOT_COVERED, alias="atcCode")
    classification: str = NOT_COVERED

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class FormularyAnswerPayload(BaseModel):
    """Structured answer the generation model must return."""

    sections: FormularySections
    answer: str | None = None
    follow_up_questions: list[str] = Field(default_factory=list, alias="followUpQuestions")
    notes: str | None = None
    citations: list[int] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


@lru_cache(maxsize=1)
def get_formulary_parser() -> PydanticOutputParser:
    return PydanticOutputParser(pydantic_object=FormularyAnswerPayload)


def build_formulary_prompt(format_instructions: str | None = None) -> ChatPromptTemplate:
    instructions = format_instructions or get_formulary_parser().get_format_instructions()
    escaped = instructions.replace("{", "{{").replace("}", "}}")
    system_template = f"{SYSTEM_PROMPT}\nYou must respond in JSON that matches this schema:\n{escaped}"
    return ChatPromptTemplate.from_messages(
        [
            ("system", system_template),
            ("human", USER_TEMPLATE),
        ]
    )
