from __future__ import annotations

from contextlib import asynccontextmanager
import os

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.dependencies import get_assistant, get_config
from api.routers import chat, formulary, intent
from pharmacy_assistant.core.pipeline import CHAT_INVALID_MESSAGE, FormularyAssistant, build_assistant, error_reply
from pharmacy_assistant.errors import AssistantError
from pharmacy_assistant.logging_utils import log_event, setup_logging

load_dotenv(override=False)


@asynccontextmanager
async def lifespan(app: FastAPI):
    load_dotenv(override=False)
    config_obj = get_config()
    setup_logging(config_obj.log_level)
    log_event("config.loaded", config=config_obj.masked_summary())
    config_obj.require_valid()
    app.state.assistant = build_assistant(config_obj)
    yield


app = FastAPI(title="pharmacy-formulary-assistant", lifespan=lifespan)

frontend_origin = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000").strip() or "http://localhost:3000"
app.add_middleware(
    CORSMiddleware,
    allow_origins=sorted({frontend_origin, "http://localhost:3000"}),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(intent.router)
app.include_router(chat.router)
app.include_router(formulary.router)


@app.exception_handler(AssistantError)
async def handle_assistant_error(_: Request, exc: AssistantError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": str(exc), "issues": list(getattr(exc, "issues", []) or [])},
    )


@app.exception_handler(RequestValidationError)
async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    issues = [
        f"{'.'.join(str(part) for part in error.get('loc', ()) if part != 'body')}: {error.get('msg', '')}"
        for error in exc.errors()
    ]
    if request.url.path == "/chat":
        content = {**error_reply(CHAT_INVALID_MESSAGE), "error": "Invalid request format", "issues": issues}
    else:
        content = {"error": "Invalid request", "issues": issues}
    return JSONResponse(status_code=400, content=content)


@app.get("/health")
def health(assistant: FormularyAssistant = Depends(get_assistant)) -> dict:
    return assistant.health()
