"""FastAPI application exposing conversation CRUD and streamed replies."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, StrictStr, field_validator

from .completion import CompletionSource
from .config import ChatConfig
from .errors import ConversationNotFoundError, ExchangeInProgressError
from .service import ChatService
from .store import ConversationStore
from .transport import event_stream_response
from .utils import setup_logging

logger = logging.getLogger(__name__)


class CreateConversationRequest(BaseModel):
    title: Optional[StrictStr] = Field(None, description="Optional title; defaults to 'New Chat'.")


class RenameConversationRequest(BaseModel):
    title: StrictStr = Field(..., description="New conversation title.")

    @field_validator("title")
    @classmethod
    def _not_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("title must not be empty")
        return value.strip()


class SendMessageRequest(BaseModel):
    content: StrictStr = Field(..., description="User message to send to the model.")

    @field_validator("content")
    @classmethod
    def _not_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Message content is required")
        return value


class ConversationResponse(BaseModel):
    id: str
    title: str
    created_at: datetime
    updated_at: datetime


class MessageResponse(BaseModel):
    id: str
    conversation_id: str
    role: str
    content: str
    status: str
    error_message: Optional[str] = None
    created_at: datetime


def _validation_detail(exc: RequestValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ()) if item != "body")
        message = str(error.get("msg", "invalid value")).removeprefix("Value error, ")
        parts.append(f"{location}: {message}" if location else message)
    return "; ".join(parts) or "Invalid request"


def create_app(
    chat_config: Optional[ChatConfig] = None,
    *,
    log_dir: Optional[str] = None,
    store: Optional[ConversationStore] = None,
    source: Optional[CompletionSource] = None,
) -> FastAPI:
    if log_dir:
        setup_logging(log_dir, logging.INFO)

    config = chat_config or ChatConfig()
    service = ChatService(config, store=store, source=source)
    service.recover()

    app = FastAPI(title="Streaming Chat Service", version="0.1.0")
    app.state.service = service
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        detail = _validation_detail(exc)
        logger.info("Rejected %s %s: %s", request.method, request.url.path, detail)
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": detail})

    @app.get("/health")
    async def health() -> Dict[str, str]:
        return {"status": "ok"}

    @app.get("/conversations", response_model=List[ConversationResponse])
    async def list_conversations():
        try:
            return await app.state.service.list_conversations()
        except Exception as exc:
            logger.exception("Failed to list conversations")
            raise HTTPException(status_code=500, detail="Failed to fetch conversations") from exc

    @app.post(
        "/conversations",
        response_model=ConversationResponse,
        status_code=status.HTTP_201_CREATED,
    )
    async def create_conversation(request: Optional[CreateConversationRequest] = None):
        title = request.title if request else None
        try:
            return await app.state.service.create_conversation(title)
        except Exception as exc:
            logger.exception("Failed to create conversation")
            raise HTTPException(status_code=500, detail="Failed to create conversation") from exc

    @app.get("/conversations/{conversation_id}", response_model=ConversationResponse)
    async def get_conversation(conversation_id: str):
        try:
            return await app.state.service.get_conversation(conversation_id)
        except ConversationNotFoundError as exc:
            raise HTTPException(status_code=404, detail="Conversation not found") from exc
        except Exception as exc:
            logger.exception("Failed to fetch conversation %s", conversation_id)
            raise HTTPException(status_code=500, detail="Failed to fetch conversation") from exc

    @app.patch("/conversations/{conversation_id}", response_model=ConversationResponse)
    async def rename_conversation(conversation_id: str, request: RenameConversationRequest):
        try:
            return await app.state.service.rename_conversation(conversation_id, request.title)
        except ConversationNotFoundError as exc:
            raise HTTPException(status_code=404, detail="Conversation not found") from exc
        except Exception as exc:
            logger.exception("Failed to rename conversation %s", conversation_id)
            raise HTTPException(status_code=500, detail="Failed to update conversation") from exc

    @app.delete("/conversations/{conversation_id}")
    async def delete_conversation(conversation_id: str) -> Dict[str, bool]:
        try:
            await app.state.service.delete_conversation(conversation_id)
        except ConversationNotFoundError as exc:
            raise HTTPException(status_code=404, detail="Conversation not found") from exc
        except Exception as exc:
            logger.exception("Failed to delete conversation %s", conversation_id)
            raise HTTPException(status_code=500, detail="Failed to delete conversation") from exc
        return {"success": True}

    @app.get("/conversations/{conversation_id}/messages", response_model=List[MessageResponse])
    async def list_messages(conversation_id: str):
        try:
            return await app.state.service.list_messages(conversation_id)
        except ConversationNotFoundError as exc:
            raise HTTPException(status_code=404, detail="Conversation not found") from exc
        except Exception as exc:
            logger.exception("Failed to fetch messages for %s", conversation_id)
            raise HTTPException(status_code=500, detail="Failed to fetch messages") from exc

    @app.post("/conversations/{conversation_id}/messages")
    async def send_message(conversation_id: str, request: SendMessageRequest):
        logger.info("Streaming reply for conversation %s", conversation_id)
        try:
            channel = await app.state.service.stream_chat(conversation_id, request.content)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except ConversationNotFoundError as exc:
            raise HTTPException(status_code=404, detail="Conversation not found") from exc
        except ExchangeInProgressError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except Exception as exc:
            logger.exception("Failed to process message for %s", conversation_id)
            raise HTTPException(status_code=500, detail="Failed to process message") from exc

        return event_stream_response(channel)

    return app
