"""
Chat Service — the path from a chat message to a persisted assistant reply.

Per call: rate-limit gate → context build (client connections + aggregated
metrics) → persist the user turn → model request → reply, either in one piece
or as SSE frames. The user turn is committed before the model is asked, and
the assistant turn only after the model finished, so a history read right
after a response always holds the complete pair.
"""

import asyncio
import csv
import enum
import io
import json
import logging
import math
from typing import AsyncIterator, NamedTuple, Optional

from pydantic import BaseModel
from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from insighthub.errors import InsightHubError, NotFoundError, RateLimited, ValidationFailure
from insighthub.models import (
    Client, Connection, ConnectionStatus, Conversation, ConversationMessage, ConversationStatus, MessageRole,
)
from insighthub.services.ai_service import ChatProvider, CompletionResult, build_system_prompt
from insighthub.services.aggregation_service import MetricsAggregator, aggregate_client_metrics
from insighthub.services.connection_service import get_owned_client
from insighthub.services.rate_limiter import RateLimiter
from insighthub.utils import isoformat, try_parse_uuid, utcnow

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 10000
MAX_TITLE_LENGTH = 100
APPEND_ATTEMPTS = 3
CHAT_FAILED_MESSAGE = "Something went wrong while generating the response. Please try again."

# Drain tasks outlive the HTTP response when the viewer disconnects
_background_tasks: set[asyncio.Task] = set()


class PipelineState(str, enum.Enum):
    IDLE = "idle"
    CONTEXT_BUILT = "context_built"
    REQUESTING = "requesting"
    STREAMING = "streaming"
    COMPLETE = "complete"
    ERRORED = "errored"
    PERSISTED = "persisted"


class ChatResult(BaseModel):
    content: str = ""
    conversation_id: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    retry_after_ms: Optional[int] = None
    status_code: int = 200

    def as_response(self) -> dict:
        data = {"content": self.content, "conversationId": self.conversation_id}
        if self.error:
            data["error"] = self.error
            data["errorType"] = self.error_type
        if self.retry_after_ms is not None:
            data["retryAfterMs"] = self.retry_after_ms
        return data


def sse_frame(payload: dict) -> str:
    return f"data: {json.dumps(payload)}\n\n"


class _Run:
    """Tracks one invocation's state and its one-shot conversation id frame."""

    def __init__(self, user_id):
        self.user_id = user_id
        self.state = PipelineState.IDLE
        self.conversation_id = None
        self._conversation_frame_sent = False

    def advance(self, state: PipelineState) -> None:
        logger.debug(f"chat[{self.user_id}] {self.state.value} -> {state.value}")
        self.state = state

    def conversation_frame(self) -> Optional[str]:
        if self._conversation_frame_sent or self.conversation_id is None:
            return None
        self._conversation_frame_sent = True
        return sse_frame({"conversationId": str(self.conversation_id)})


class ChatPipeline:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        provider: ChatProvider,
        rate_limiter: RateLimiter,
        aggregator: Optional[MetricsAggregator] = None,
    ):
        self._session_factory = session_factory
        self.provider = provider
        self.rate_limiter = rate_limiter
        self.aggregator = aggregator

    # ── Steps ────────────────────────────────────────────────────────

    def _gate(self, user_id) -> Optional[RateLimited]:
        result = self.rate_limiter.check_rate_limit(str(user_id))
        if result.allowed:
            return None
        retry_after_ms = self.rate_limiter.get_time_until_reset(str(user_id))
        minutes = max(1, math.ceil(retry_after_ms / 60000))
        logger.info(f"Chat rate limit hit for user {user_id}, resets in {retry_after_ms}ms")
        return RateLimited(
            f"Rate limit exceeded. You can send more messages in {minutes} minute{'s' if minutes != 1 else ''}.",
            retry_after_ms=retry_after_ms,
        )

    @staticmethod
    def _validate(messages) -> list[dict]:
        normalized = []
        for m in messages or []:
            if hasattr(m, "model_dump"):
                m = m.model_dump()
            role = m.get("role") if isinstance(m, dict) else None
            content = m.get("content") if isinstance(m, dict) else None
            if role not in (MessageRole.USER.value, MessageRole.ASSISTANT.value):
                raise ValidationFailure("Each message needs a role of 'user' or 'assistant'")
            if not isinstance(content, str):
                raise ValidationFailure("Message content must be text")
            if len(content) > MAX_MESSAGE_LENGTH:
                raise ValidationFailure(f"Messages are limited to {MAX_MESSAGE_LENGTH} characters")
            normalized.append({"role": role, "content": content})
        return normalized

    async def _build_context(self, db: AsyncSession, user_id, client: Optional[Client]) -> str:
        if client is None:
            return build_system_prompt()

        result = await db.execute(
            select(Connection.platform).where(
                Connection.client_id == client.id,
                Connection.status != ConnectionStatus.DISCONNECTED.value,
            )
        )
        connected = sorted(set(result.scalars().all()))
        snapshot = None
        if connected:
            aggregated = await aggregate_client_metrics(db, user_id, client.id, aggregator=self.aggregator)
            snapshot = aggregated.model_dump(mode="json")
        return build_system_prompt(client.name, connected, snapshot)

    @staticmethod
    async def _append(db: AsyncSession, conversation_id, role: str, content: str) -> Conversation:
        """
        Add one turn after the last stored one. The conversation row is re-read
        under a row lock here, not when the request started: another turn on the
        same conversation may have been stored while the context was built.
        """
        result = await db.execute(
            select(Conversation)
            .where(Conversation.id == conversation_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        conversation = result.scalar_one_or_none()
        if conversation is None:
            raise NotFoundError("Conversation not found")

        last = await db.execute(
            select(func.max(ConversationMessage.position))
            .where(ConversationMessage.conversation_id == conversation_id)
        )
        last_position = last.scalar()
        position = 0 if last_position is None else last_position + 1

        db.add(ConversationMessage(
            conversation_id=conversation_id,
            position=position,
            role=role,
            content=content,
        ))
        conversation.message_count = position + 1
        conversation.last_message_at = utcnow()
        await db.flush()
        return conversation

    async def _persist_turn(
        self,
        conversation_id,
        role: str,
        content: str,
        completion: Optional[CompletionResult] = None,
    ) -> None:
        """Store one turn in its own transaction, renumbering if a parallel turn took the slot."""
        for attempt in range(1, APPEND_ATTEMPTS + 1):
            async with self._session_factory() as db:
                try:
                    conversation = await self._append(db, conversation_id, role, content)
                    if completion is not None:
                        conversation.prompt_tokens = func.coalesce(Conversation.prompt_tokens, 0) + completion.prompt_tokens
                        conversation.completion_tokens = (
                            func.coalesce(Conversation.completion_tokens, 0) + completion.completion_tokens
                        )
                    await db.commit()
                    return
                except IntegrityError:
                    await db.rollback()
                    if attempt == APPEND_ATTEMPTS:
                        raise
                    logger.warning(
                        f"Message slot taken in conversation {conversation_id}, retrying ({attempt}/{APPEND_ATTEMPTS})"
                    )

    async def _prepare(self, run: _Run, messages: list[dict], conversation_id, client_id) -> str:
        """Context build plus user-turn persistence. Returns the system prompt."""
        user_turn = None
        async with self._session_factory() as db:
            client = None
            if client_id:
                client = await get_owned_client(db, run.user_id, client_id)

            conversation = None
            if conversation_id:
                cid = try_parse_uuid(conversation_id)
                if cid:
                    result = await db.execute(
                        select(Conversation).where(Conversation.id == cid, Conversation.user_id == run.user_id)
                    )
                    conversation = result.scalar_one_or_none()
                if conversation is None:
                    raise ValidationFailure("Conversation not found")
                if client is not None and conversation.client_id != client.id:
                    raise ValidationFailure("Conversation belongs to a different client")
                if client is None:
                    client = await get_owned_client(db, run.user_id, conversation.client_id)

            system_prompt = await self._build_context(db, run.user_id, client)
            run.advance(PipelineState.CONTEXT_BUILT)

            if messages and messages[-1]["role"] == MessageRole.USER.value and client is not None:
                user_turn = messages[-1]["content"]
                if conversation is None:
                    conversation = Conversation(
                        user_id=run.user_id,
                        client_id=client.id,
                        title=user_turn[:MAX_TITLE_LENGTH] or "New conversation",
                        message_count=0,
                    )
                    db.add(conversation)

            await db.commit()
            resolved_id = conversation.id if conversation else None

        if user_turn is not None:
            await self._persist_turn(resolved_id, MessageRole.USER.value, user_turn)
        run.conversation_id = resolved_id
        return system_prompt

    # ── One-shot ─────────────────────────────────────────────────────

    async def send_message(
        self,
        user_id,
        messages,
        conversation_id: Optional[str] = None,
        client_id: Optional[str] = None,
    ) -> ChatResult:
        run = _Run(user_id)
        denied = self._gate(user_id)
        if denied:
            return ChatResult(
                error=denied.message,
                error_type=denied.error_type,
                retry_after_ms=denied.retry_after_ms,
                status_code=denied.status_code,
            )

        try:
            normalized = self._validate(messages)
            system_prompt = await self._prepare(run, normalized, conversation_id, client_id)
            run.advance(PipelineState.REQUESTING)
            completion = await self.provider.generate_chat_completion(normalized, system_prompt)
            run.advance(PipelineState.COMPLETE)
            if run.conversation_id:
                await self._persist_turn(run.conversation_id, MessageRole.ASSISTANT.value, completion.content, completion)
                run.advance(PipelineState.PERSISTED)
        except InsightHubError as e:
            run.advance(PipelineState.ERRORED)
            return ChatResult(
                conversation_id=str(run.conversation_id) if run.conversation_id else None,
                error=e.message,
                error_type=e.error_type,
                status_code=e.status_code,
            )
        except Exception as e:
            logger.error(f"Chat request failed for user {user_id}: {e}", exc_info=True)
            run.advance(PipelineState.ERRORED)
            return ChatResult(
                conversation_id=str(run.conversation_id) if run.conversation_id else None,
                error=CHAT_FAILED_MESSAGE,
                error_type="internal",
                status_code=500,
            )

        return ChatResult(
            content=completion.content,
            conversation_id=str(run.conversation_id) if run.conversation_id else None,
        )

    # ── Streaming ────────────────────────────────────────────────────

    async def _drain(self, run: _Run, messages: list[dict], system_prompt: str, queue: asyncio.Queue) -> None:
        """Pull the model stream to the end, forward each chunk, then persist the whole answer."""
        buffer: list[str] = []
        try:
            run.advance(PipelineState.STREAMING)
            async for chunk in self.provider.generate_streaming_completion(messages, system_prompt):
                buffer.append(chunk)
                queue.put_nowait(("content", chunk))
            run.advance(PipelineState.COMPLETE)
            if run.conversation_id:
                await self._persist_turn(run.conversation_id, MessageRole.ASSISTANT.value, "".join(buffer))
                run.advance(PipelineState.PERSISTED)
            queue.put_nowait(("done", None))
        except InsightHubError as e:
            run.advance(PipelineState.ERRORED)
            buffer.clear()
            queue.put_nowait(("error", e.message))
        except asyncio.CancelledError:
            run.advance(PipelineState.ERRORED)
            queue.put_nowait(("error", CHAT_FAILED_MESSAGE))
            raise
        except Exception as e:
            logger.error(f"Chat stream failed for user {run.user_id}: {e}", exc_info=True)
            run.advance(PipelineState.ERRORED)
            buffer.clear()
            queue.put_nowait(("error", CHAT_FAILED_MESSAGE))

    async def stream_message(
        self,
        user_id,
        messages,
        conversation_id: Optional[str] = None,
        client_id: Optional[str] = None,
    ) -> AsyncIterator[str]:
        """SSE frames: conversationId first (when there is one), then content, or a final error."""
        run = _Run(user_id)
        denied = self._gate(user_id)
        if denied:
            yield sse_frame({"error": denied.message, "retryAfterMs": denied.retry_after_ms})
            return

        try:
            normalized = self._validate(messages)
            system_prompt = await self._prepare(run, normalized, conversation_id, client_id)
        except InsightHubError as e:
            run.advance(PipelineState.ERRORED)
            yield sse_frame({"error": e.message})
            return
        except Exception as e:
            logger.error(f"Chat stream setup failed for user {user_id}: {e}", exc_info=True)
            run.advance(PipelineState.ERRORED)
            yield sse_frame({"error": CHAT_FAILED_MESSAGE})
            return

        # Started before the first yield so a viewer who leaves early still gets the answer stored
        queue: asyncio.Queue = asyncio.Queue()
        run.advance(PipelineState.REQUESTING)
        task = asyncio.create_task(self._drain(run, normalized, system_prompt, queue))
        _background_tasks.add(task)
        task.add_done_callback(_background_tasks.discard)

        frame = run.conversation_frame()
        if frame:
            yield frame

        while True:
            kind, value = await queue.get()
            if kind == "content":
                yield sse_frame({"content": value})
            elif kind == "error":
                yield sse_frame({"error": value})
                return
            else:
                return


# ── History ───────────────────────────────────────────────────────────

HISTORY_FILTERS = ("active", "archived", "all")
MIN_SEARCH_LENGTH = 2
MAX_SEARCH_RESULTS = 50
EXPORT_FORMATS = {
    "json": ("application/json", "json"),
    "csv": ("text/csv", "csv"),
    "markdown": ("text/markdown", "md"),
}


class ConversationExport(NamedTuple):
    content: str
    media_type: str
    filename: str


def serialize_conversation(conversation: Conversation) -> dict:
    return {
        "id": str(conversation.id),
        "client_id": str(conversation.client_id),
        "title": conversation.title,
        "status": conversation.status,
        "is_pinned": bool(conversation.is_pinned),
        "message_count": conversation.message_count or 0,
        "prompt_tokens": conversation.prompt_tokens or 0,
        "completion_tokens": conversation.completion_tokens or 0,
        "last_message_at": isoformat(conversation.last_message_at),
        "archived_at": isoformat(conversation.archived_at),
        "created_at": isoformat(conversation.created_at),
        "updated_at": isoformat(conversation.updated_at),
    }


def _history_query(user_id, client_id=None, status: str = "active"):
    if status not in HISTORY_FILTERS:
        raise ValidationFailure(f"Unknown status filter '{status}'. Use one of: {', '.join(HISTORY_FILTERS)}")
    query = select(Conversation).where(Conversation.user_id == user_id)
    if client_id:
        query = query.where(Conversation.client_id == client_id)
    if status != "all":
        query = query.where(Conversation.status == status)
    # Pinned first, then most recently active
    return query.order_by(
        Conversation.is_pinned.desc(),
        func.coalesce(Conversation.last_message_at, Conversation.created_at).desc(),
    )


async def list_conversations(
    db: AsyncSession, user_id, client_id=None, status: str = "active", limit: int = 20,
) -> list[Conversation]:
    result = await db.execute(_history_query(user_id, client_id, status).limit(limit))
    return list(result.scalars().all())


async def search_conversations(
    db: AsyncSession, user_id, query: str, client_id=None, status: str = "all", limit: int = 20,
) -> list[Conversation]:
    """Case-insensitive match on the title or any message in the conversation."""
    term = (query or "").strip()
    if len(term) < MIN_SEARCH_LENGTH:
        raise ValidationFailure(f"Search query must be at least {MIN_SEARCH_LENGTH} characters")

    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    pattern = f"%{escaped}%"
    matching_messages = select(ConversationMessage.conversation_id).where(
        ConversationMessage.content.ilike(pattern, escape="\\")
    )
    result = await db.execute(
        _history_query(user_id, client_id, status)
        .where(or_(Conversation.title.ilike(pattern, escape="\\"), Conversation.id.in_(matching_messages)))
        .limit(min(limit, MAX_SEARCH_RESULTS))
    )
    return list(result.scalars().all())


async def _owned_conversation(db: AsyncSession, user_id, conversation_id) -> Optional[Conversation]:
    result = await db.execute(
        select(Conversation).where(Conversation.id == conversation_id, Conversation.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def _messages(db: AsyncSession, conversation_id) -> list[ConversationMessage]:
    result = await db.execute(
        select(ConversationMessage)
        .where(ConversationMessage.conversation_id == conversation_id)
        .order_by(ConversationMessage.position)
    )
    return list(result.scalars().all())


async def get_conversation(db: AsyncSession, user_id, conversation_id) -> Optional[dict]:
    conversation = await _owned_conversation(db, user_id, conversation_id)
    if not conversation:
        return None
    data = serialize_conversation(conversation)
    data["messages"] = [
        {"role": m.role, "content": m.content, "timestamp": isoformat(m.created_at)}
        for m in await _messages(db, conversation.id)
    ]
    return data


async def update_conversation(
    db: AsyncSession,
    user_id,
    conversation_id,
    title: Optional[str] = None,
    archived: Optional[bool] = None,
    pinned: Optional[bool] = None,
) -> Optional[Conversation]:
    """Rename, archive/unarchive or pin/unpin. Fields left as None are not touched."""
    conversation = await _owned_conversation(db, user_id, conversation_id)
    if not conversation:
        return None

    if title is not None:
        title = title.strip()
        if len(title) > MAX_TITLE_LENGTH:
            raise ValidationFailure(f"Title must be {MAX_TITLE_LENGTH} characters or less")
        conversation.title = title or None

    if archived is not None:
        if archived and conversation.status != ConversationStatus.ARCHIVED.value:
            conversation.status = ConversationStatus.ARCHIVED.value
            conversation.archived_at = utcnow()
        elif not archived:
            conversation.status = ConversationStatus.ACTIVE.value
            conversation.archived_at = None

    if pinned is not None:
        conversation.is_pinned = pinned

    await db.flush()
    logger.info(f"Conversation {conversation.id} updated: title={title!r} archived={archived} pinned={pinned}")
    return conversation


async def export_conversation(db: AsyncSession, user_id, conversation_id, fmt: str = "json") -> Optional[ConversationExport]:
    if fmt not in EXPORT_FORMATS:
        raise ValidationFailure(f"Invalid export format. Use one of: {', '.join(EXPORT_FORMATS)}")
    conversation = await _owned_conversation(db, user_id, conversation_id)
    if not conversation:
        return None

    messages = await _messages(db, conversation.id)
    title = conversation.title or "Untitled conversation"

    if fmt == "json":
        content = json.dumps({
            "metadata": {
                "exported_at": isoformat(utcnow()),
                "format": "json",
                "conversation_id": str(conversation.id),
                "message_count": len(messages),
            },
            "conversation": {
                **serialize_conversation(conversation),
                "title": title,
                "messages": [
                    {"role": m.role, "content": m.content, "timestamp": isoformat(m.created_at)}
                    for m in messages
                ],
            },
        }, indent=2)
    elif fmt == "csv":
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(["Timestamp", "Role", "Content"])
        for m in messages:
            writer.writerow([isoformat(m.created_at), m.role, m.content])
        content = buffer.getvalue()
    else:
        lines = [f"# {title}", "", f"*Exported {isoformat(utcnow())}, {len(messages)} messages*", ""]
        for m in messages:
            speaker = "You" if m.role == MessageRole.USER.value else "Assistant"
            lines += ["---", "", f"**{speaker}** ({isoformat(m.created_at)})", "", m.content, ""]
        content = "\n".join(lines)

    media_type, extension = EXPORT_FORMATS[fmt]
    return ConversationExport(content, media_type, f"conversation-{conversation.id}.{extension}")


async def delete_conversation(db: AsyncSession, user_id, conversation_id) -> bool:
    if not await _owned_conversation(db, user_id, conversation_id):
        return False
    await db.execute(delete(ConversationMessage).where(ConversationMessage.conversation_id == conversation_id))
    await db.execute(delete(Conversation).where(Conversation.id == conversation_id))
    return True
