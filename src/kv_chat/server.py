"""FastAPI application exposing the chat endpoint over a transcript store."""
from __future__ import annotations

import logging
import traceback
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, ConfigDict, Field

from . import __version__
from .config import load_config, load_persona, resolve_config_path
from .errors import InvalidInput
from .llm import ModelCapability, create_model
from .session import SessionCoordinator
from .store import TranscriptStore, create_store

logger = logging.getLogger(__name__)

CHAT_PATH = "/api/chat"
MISSING_BINDINGS_TEXT = "Missing model or store bindings."
MISSING_MESSAGE_TEXT = "Missing userMessage"


# -----------------------------
# Pydantic request/response
# -----------------------------
class ChatRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    chatId: Optional[str] = Field(default=None, description="Conversation identifier; minted when absent.")
    userMessage: Optional[str] = Field(default=None, description="The new user utterance.")


class MessageOut(BaseModel):
    role: str
    content: str


class ChatResponse(BaseModel):
    chatId: str
    reply: str
    history: List[MessageOut]


# -----------------------------
# Utilities
# -----------------------------
def _make_model(cfg: Dict[str, Any]) -> Optional[ModelCapability]:
    try:
        return create_model(cfg)
    except Exception as e:
        logger.error("Model binding unavailable: %s", e)
        return None


def _make_store(cfg: Dict[str, Any]) -> Optional[TranscriptStore]:
    try:
        return create_store(cfg)
    except Exception as e:
        logger.error("Store binding unavailable: %s", e)
        return None


async def _close_bindings(bindings: List[Any]) -> None:
    for binding in bindings:
        aclose = getattr(binding, "aclose", None)
        if aclose is None:
            continue
        try:
            await aclose()
        except Exception as e:
            logger.warning("Failed to close %s: %s", type(binding).__name__, e)


def _error_body(err: Exception, expose_stack: bool) -> Dict[str, Any]:
    body: Dict[str, Any] = {"error": "Chat API error", "details": str(err)}
    if expose_stack:
        body["stack"] = "".join(traceback.format_exception(type(err), err, err.__traceback__))
    return body


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    model: Optional[ModelCapability] = None,
    store: Optional[TranscriptStore] = None,
    persona: Optional[str] = None,
) -> FastAPI:
    cfg = load_config(config_path)
    server_cfg = cfg.get("server", {}) or {}

    # CORS
    cors_origins = server_cfg.get("cors_origins", ["*"])
    expose_stack = bool(server_cfg.get("expose_stack", True))

    # Bindings; a missing one is reported per request, not at startup.
    # Only the ones built here are closed on shutdown.
    owned: List[Any] = []
    if model is None:
        model = _make_model(cfg)
        owned.append(model)
    if store is None:
        store = _make_store(cfg)
        if store is not None:
            owned.append(store.kv)
    if persona is None:
        persona = load_persona(cfg, resolve_config_path(config_path).parent)

    coordinator = (
        SessionCoordinator(store, model, persona)
        if model is not None and store is not None
        else None
    )

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        yield
        await _close_bindings(owned)

    app = FastAPI(title="KV Chat Server", version=__version__, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "ok": coordinator is not None,
            "model_ready": model is not None,
            "store_ready": store is not None,
            "model_backend": type(model).__name__ if model is not None else None,
            "store_backend": type(store.kv).__name__ if store is not None else None,
        }

    @app.post(CHAT_PATH, response_model=ChatResponse)
    async def chat(request: Request):
        if coordinator is None:
            return PlainTextResponse(MISSING_BINDINGS_TEXT, status_code=500)

        try:
            body = await request.json()
            req = ChatRequest.model_validate(body)
            result = await coordinator.handle_turn(req.chatId, req.userMessage)
        except InvalidInput:
            return PlainTextResponse(MISSING_MESSAGE_TEXT, status_code=400)
        except Exception as e:
            logger.exception("Chat API error: %s", e)
            return JSONResponse(_error_body(e, expose_stack), status_code=500)

        return ChatResponse(
            chatId=result.conversation_id,
            reply=result.assistant_reply,
            history=[MessageOut(**m) for m in result.history()],
        )

    return app
