"""
Chat Router — AI assistant with the selected client's platform data in context.
POST /chat answers in one piece; POST /chat/stream answers as Server-Sent Events.
"""

import logging
from typing import Callable, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from insighthub.auth import get_current_user
from insighthub.database import async_session, get_db
from insighthub.models import User
from insighthub.services import chat_service
from insighthub.services.ai_service import ChatProvider, create_chat_provider
from insighthub.services.chat_service import ChatPipeline
from insighthub.services.rate_limiter import RateLimiter
from insighthub.utils import parse_uuid

logger = logging.getLogger(__name__)

router = APIRouter()


# ── Request Models ────────────────────────────────────────────────────

class ChatMessageIn(BaseModel):
    role: str
    content: str


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    messages: list[ChatMessageIn] = Field(default_factory=list)
    conversation_id: Optional[str] = Field(None, alias="conversationId")
    client_id: Optional[str] = Field(None, alias="clientId")
    model_id: Optional[str] = Field(None, alias="modelId")  # "provider:model" override


# ── Dependencies ──────────────────────────────────────────────────────

def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def get_session_factory() -> async_sessionmaker:
    return async_session


def get_provider_factory() -> Callable[[Optional[str]], ChatProvider]:
    return create_chat_provider


def _build_pipeline(
    payload: ChatRequest,
    session_factory: async_sessionmaker,
    provider_factory: Callable[[Optional[str]], ChatProvider],
    rate_limiter: RateLimiter,
) -> ChatPipeline:
    try:
        provider = provider_factory(payload.model_id)
    except ValueError as e:
        raise HTTPException(
            status_code=503,
            detail=f"AI service not configured. {e} Add OPENAI_API_KEY and/or ANTHROPIC_API_KEY.",
        )
    return ChatPipeline(session_factory, provider, rate_limiter)


# ── Chat ──────────────────────────────────────────────────────────────

@router.post("")
async def chat(
    payload: ChatRequest,
    user: User = Depends(get_current_user),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    provider_factory=Depends(get_provider_factory),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
):
    """Send the conversation so far and get the assistant's reply in one response."""
    pipeline = _build_pipeline(payload, session_factory, provider_factory, rate_limiter)
    result = await pipeline.send_message(
        user.id,
        [m.model_dump() for m in payload.messages],
        conversation_id=payload.conversation_id,
        client_id=payload.client_id,
    )
    return JSONResponse(result.as_response(), status_code=result.status_code)


@router.post("/stream")
async def chat_stream(
    payload: ChatRequest,
    user: User = Depends(get_current_user),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    provider_factory=Depends(get_provider_factory),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
):
    """
    SSE stream. Frames are ``data: {json}``: a ``conversationId`` frame first
    when the exchange is stored, then ``content`` frames, or a final ``error``
    frame (with ``retryAfterMs`` when rate limited).
    """
    pipeline = _build_pipeline(payload, session_factory, provider_factory, rate_limiter)
    frames = pipeline.stream_message(
        user.id,
        [m.model_dump() for m in payload.messages],
        conversation_id=payload.conversation_id,
        client_id=payload.client_id,
    )
    return StreamingResponse(
        frames,
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


# ── Conversations ─────────────────────────────────────────────────────

class ConversationUpdate(BaseModel):
    title: Optional[str] = None
    archived: Optional[bool] = None
    pinned: Optional[bool] = None


@router.get("/conversations")
async def list_conversations(
    client_id: Optional[str] = Query(None),
    status: str = Query("active", description="active, archived or all"),
    limit: int = Query(20, ge=1, le=100),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    cid = parse_uuid(client_id, "client_id") if client_id else None
    conversations = await chat_service.list_conversations(db, user.id, client_id=cid, status=status, limit=limit)
    return [chat_service.serialize_conversation(c) for c in conversations]


@router.get("/conversations/search")
async def search_conversations(
    q: str = Query(..., description="Matched against titles and message text"),
    client_id: Optional[str] = Query(None),
    status: str = Query("all"),
    limit: int = Query(20, ge=1, le=50),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    cid = parse_uuid(client_id, "client_id") if client_id else None
    conversations = await chat_service.search_conversations(
        db, user.id, q, client_id=cid, status=status, limit=limit,
    )
    return [chat_service.serialize_conversation(c) for c in conversations]


@router.get("/conversations/{conversation_id}")
async def get_conversation(
    conversation_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    conversation = await chat_service.get_conversation(db, user.id, parse_uuid(conversation_id, "conversation_id"))
    if not conversation:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return conversation


@router.patch("/conversations/{conversation_id}")
async def update_conversation(
    conversation_id: str,
    payload: ConversationUpdate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Rename, archive/unarchive or pin/unpin a conversation."""
    conversation = await chat_service.update_conversation(
        db,
        user.id,
        parse_uuid(conversation_id, "conversation_id"),
        title=payload.title,
        archived=payload.archived,
        pinned=payload.pinned,
    )
    if not conversation:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return chat_service.serialize_conversation(conversation)


@router.get("/conversations/{conversation_id}/export")
async def export_conversation(
    conversation_id: str,
    format: str = Query("json", description="json, csv or markdown"),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    exported = await chat_service.export_conversation(
        db, user.id, parse_uuid(conversation_id, "conversation_id"), format,
    )
    if not exported:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return Response(
        content=exported.content,
        media_type=exported.media_type,
        headers={"Content-Disposition": f'attachment; filename="{exported.filename}"'},
    )


@router.delete("/conversations/{conversation_id}")
async def delete_conversation(
    conversation_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    deleted = await chat_service.delete_conversation(db, user.id, parse_uuid(conversation_id, "conversation_id"))
    if not deleted:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return {"success": True}
