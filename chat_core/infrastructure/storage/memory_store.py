"""进程内持久化实现，主要用于测试与单机场景。

读写都做深拷贝，保证调用方拿到的对象与存储内部互不影响。
"""
from copy import deepcopy
from typing import Dict, List, Optional

from chat_core.domain.exceptions import NotFoundError
from chat_core.domain.models import ChatSession, Message


class InMemoryChatPersistence:
    def __init__(self) -> None:
        self._chats: Dict[str, ChatSession] = {}
        self._messages: Dict[str, Message] = {}

    async def get_chat(self, chat_id: str) -> ChatSession:
        return deepcopy(self._chat(chat_id))

    async def put_chat(self, chat: ChatSession) -> None:
        self._chats[chat.id] = deepcopy(chat)

    async def list_chats(self) -> List[ChatSession]:
        return sorted((deepcopy(c) for c in self._chats.values()), key=lambda c: c.updated_at, reverse=True)

    async def delete_chat(self, chat_id: str) -> None:
        self._chat(chat_id)
        for mid in [m.id for m in self._messages.values() if m.chat_id == chat_id]:
            del self._messages[mid]
        del self._chats[chat_id]

    async def get_message(self, message_id: str) -> Message:
        msg = self._messages.get(message_id)
        if msg is None:
            raise NotFoundError(code="MESSAGE_NOT_FOUND", message=message_id)
        return deepcopy(msg)

    async def list_messages(self, chat_id: str) -> List[Message]:
        self._chat(chat_id)
        return [deepcopy(m) for m in self._messages.values() if m.chat_id == chat_id]

    async def put_message(self, message: Message) -> None:
        self._chat(message.chat_id)
        self._messages[message.id] = deepcopy(message)

    async def delete_subtree(self, message_id: str) -> List[str]:
        if message_id not in self._messages:
            raise NotFoundError(code="MESSAGE_NOT_FOUND", message=message_id)
        removed: List[str] = []
        frontier = [message_id]
        while frontier:
            current = frontier.pop()
            removed.append(current)
            frontier.extend(m.id for m in self._messages.values() if m.parent_id == current)
        for mid in removed:
            del self._messages[mid]
        return removed

    async def compare_and_set_active_leaf(
        self, chat_id: str, expected: Optional[str], new: Optional[str]
    ) -> bool:
        chat = self._chat(chat_id)
        if chat.active_leaf_id != expected:
            return False
        chat.active_leaf_id = new
        return True

    def _chat(self, chat_id: str) -> ChatSession:
        chat = self._chats.get(chat_id)
        if chat is None:
            raise NotFoundError(code="CHAT_NOT_FOUND", message=chat_id)
        return chat
