"""
One chat turn, end to end:
quota check -> cache lookup -> (miss) guidelines + streamed generation ->
cache store -> quota increment, with both sides saved to the chat history.
"""
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

from cobra_chat.prompts.templates import DEFAULT_DOCUMENT_QUESTION, build_prompt
from cobra_chat.services.chat_store import ChatStore
from cobra_chat.services.guidelines import GuidelinesRetriever
from cobra_chat.services.llm_service import LLMService
from cobra_chat.services.quota_tracker import QuotaStatus, QuotaTracker
from cobra_chat.services.semantic_cache import CacheMatch, FileContext, SemanticCache
from cobra_chat.utils.errors import CobraChatError, QuotaExceededError
from cobra_chat.utils.logger import logger
from cobra_chat.utils.security import mask_user_id, safe_log, validate_query


@dataclass
class ChatTurn:
    user_id: str
    message: str
    quota: QuotaStatus
    chat_id: Optional[str] = None
    file_context: Optional[FileContext] = None
    history: List[Dict[str, str]] = field(default_factory=list)
    cache_match: Optional[CacheMatch] = None
    blocked: bool = False
    response: Optional[str] = None

    @property
    def cached(self) -> bool:
        return self.cache_match is not None


@dataclass(frozen=True)
class ChatReply:
    chat_id: Optional[str]
    text: Optional[str]
    cached: bool
    similarity: Optional[float]
    blocked: bool
    quota: QuotaStatus

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chat_id": self.chat_id,
            "text": self.text,
            "cached": self.cached,
            "similarity": self.similarity,
            "blocked": self.blocked,
            "quota": self.quota.to_dict(),
        }


class ChatService:
    def __init__(
        self,
        chats: ChatStore,
        cache: SemanticCache,
        quota: QuotaTracker,
        guidelines: GuidelinesRetriever,
        llm: LLMService,
        max_message_length: int = 4000,
        guidelines_top_k: int = 3,
    ):
        self.chats = chats
        self.cache = cache
        self.quota = quota
        self.guidelines = guidelines
        self.llm = llm
        self.max_message_length = max_message_length
        self.guidelines_top_k = guidelines_top_k

    async def start_turn(
        self,
        user_id: str,
        message: str,
        chat_id: Optional[str] = None,
        file_context: Optional[FileContext] = None,
    ) -> ChatTurn:
        """Validates, gates on quota and consults the cache. No generation happens here.

        A user over quota gets a turn with ``blocked=True`` rather than an exception.
        """
        if file_context is not None and not (message or "").strip():
            message = DEFAULT_DOCUMENT_QUESTION
        message = validate_query(message, self.max_message_length)

        status = await self.quota.check(user_id)
        turn = ChatTurn(user_id=user_id, message=message, quota=status, chat_id=chat_id, file_context=file_context)
        if not status.allowed:
            safe_log("Chat limit reached", user_id)
            turn.blocked = True
            return turn

        if turn.chat_id is None or not await self.chats.chat_exists(user_id, turn.chat_id):
            turn.chat_id = await self.chats.create_chat(user_id, message)
        turn.history = await self.chats.history(turn.chat_id)
        await self.chats.save_message(user_id, turn.chat_id, "user", message)

        turn.cache_match = await self.cache.lookup(user_id, message, file_context)
        return turn

    async def stream(self, turn: ChatTurn) -> AsyncIterator[str]:
        """Yields the answer. On a miss the full answer is cached only after the stream completes."""
        if turn.blocked:
            return

        if turn.cache_match is not None:
            await self.cache.record_hit(turn.user_id, turn.cache_match.entry.id)
            turn.response = turn.cache_match.entry.response
            await self.chats.save_message(turn.user_id, turn.chat_id, "assistant", turn.response)
            yield turn.response
            return

        matches = await self.guidelines.search(turn.message, top_k=self.guidelines_top_k)
        prompt = build_prompt(turn.message, turn.file_context, matches)

        fragments = []
        async for fragment in self.llm.stream_reply(turn.history, prompt):
            fragments.append(fragment)
            yield fragment
        turn.response = "".join(fragments)

        await self.cache.store(turn.user_id, turn.message, turn.response, turn.file_context)
        try:
            turn.quota = await self.quota.increment(turn.user_id)
        except QuotaExceededError as e:
            # Lost a race with a concurrent turn; the answer has already been delivered
            logger.warning(f"Quota exhausted while answering: {e}")
            turn.quota = e.status
        except CobraChatError as e:
            logger.error(f"Could not record chat usage for {mask_user_id(turn.user_id)}: {str(e)}")

        try:
            await self.chats.save_message(turn.user_id, turn.chat_id, "assistant", turn.response)
        except CobraChatError as e:
            logger.error(f"Could not save assistant message in chat {turn.chat_id}: {str(e)}")

    async def reply(
        self,
        user_id: str,
        message: str,
        chat_id: Optional[str] = None,
        file_context: Optional[FileContext] = None,
    ) -> ChatReply:
        turn = await self.start_turn(user_id, message, chat_id, file_context)
        async for _ in self.stream(turn):
            pass
        return ChatReply(
            chat_id=turn.chat_id,
            text=turn.response,
            cached=turn.cached,
            similarity=turn.cache_match.similarity if turn.cache_match else None,
            blocked=turn.blocked,
            quota=turn.quota,
        )
