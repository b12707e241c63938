"""
Persisted chat history.
Manages per-user chat lists (``chats/<user>``) and per-chat messages (``messages/<chat>``).
"""
from typing import Any, Callable, Dict, List, Optional
from datetime import datetime

from cobra_chat.services.persistence import KeyValueStore
from cobra_chat.utils.clock import utcnow
from cobra_chat.utils.logger import logger
from cobra_chat.utils.security import mask_user_id

TITLE_LENGTH = 50


def _epoch_ms(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


class ChatStore:
    def __init__(self, db: KeyValueStore, max_history: int = 20, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.max_history = max_history
        self.clock = clock

    # --- Chats ---
    async def create_chat(self, user_id: str, first_message: str) -> str:
        chat_id = await self.db.push(f"chats/{user_id}")
        now = _epoch_ms(self.clock())
        title = first_message[:TITLE_LENGTH] + ("..." if len(first_message) > TITLE_LENGTH else "")
        await self.db.set(f"chats/{user_id}/{chat_id}", {
            "title": title,
            "createdAt": now,
            "updatedAt": now,
        })
        logger.info(f"Created chat {chat_id} for {mask_user_id(user_id)}")
        return chat_id

    async def chat_exists(self, user_id: str, chat_id: str) -> bool:
        return await self.db.get(f"chats/{user_id}/{chat_id}") is not None

    async def list_chats(self, user_id: str) -> List[Dict[str, Any]]:
        """Newest first."""
        chats = await self.db.get(f"chats/{user_id}") or {}
        items = [{"id": chat_id, **data} for chat_id, data in chats.items()]
        return sorted(items, key=lambda c: c.get("createdAt", 0), reverse=True)

    async def delete_chat(self, user_id: str, chat_id: str) -> None:
        await self.db.remove(f"messages/{chat_id}")
        await self.db.remove(f"chats/{user_id}/{chat_id}")

    async def delete_all_chats(self, user_id: str) -> int:
        chats = await self.db.get(f"chats/{user_id}") or {}
        for chat_id in chats:
            await self.db.remove(f"messages/{chat_id}")
        await self.db.remove(f"chats/{user_id}")
        logger.info(f"Deleted {len(chats)} chats for {mask_user_id(user_id)}")
        return len(chats)

    # --- Messages ---
    async def save_message(self, user_id: str, chat_id: str, role: str, content: str) -> str:
        message_id = await self.db.push(f"messages/{chat_id}")
        now = _epoch_ms(self.clock())
        await self.db.set(f"messages/{chat_id}/{message_id}", {
            "role": role,
            "content": content,
            "timestamp": now,
        })
        await self.db.set(f"chats/{user_id}/{chat_id}/updatedAt", now)
        return message_id

    async def load_messages(self, chat_id: str) -> List[Dict[str, Any]]:
        """Oldest first."""
        messages = await self.db.get(f"messages/{chat_id}") or {}
        items = [{"id": message_id, **data} for message_id, data in messages.items()]
        # Push ids sort by creation time, so they break timestamp ties
        return sorted(items, key=lambda m: (m.get("timestamp", 0), m["id"]))

    async def history(self, chat_id: str, max_messages: Optional[int] = None) -> List[Dict[str, str]]:
        """Recent messages in generator format: {"role": "user" | "model", "text"}."""
        limit = self.max_history if max_messages is None else max_messages
        messages = await self.load_messages(chat_id)
        recent = messages[-limit:] if limit else []
        return [
            {"role": "user" if m.get("role") == "user" else "model", "text": m.get("content", "")}
            for m in recent
        ]
