"""持久化协作方协议。

引擎只依赖这里定义的异步接口，不关心底层使用文件、数据库还是远程服务。
每个方法各自保证原子性，但引擎不假设跨调用的事务。
"""
from typing import List, Optional, Protocol

from .models import ChatSession, Message


class ChatPersistence(Protocol):
    async def get_chat(self, chat_id: str) -> ChatSession:
        ...

    async def put_chat(self, chat: ChatSession) -> None:
        ...

    async def list_chats(self) -> List[ChatSession]:
        ...

    async def delete_chat(self, chat_id: str) -> None:
        ...

    async def get_message(self, message_id: str) -> Message:
        ...

    async def list_messages(self, chat_id: str) -> List[Message]:
        ...

    async def put_message(self, message: Message) -> None:
        """创建或覆盖一条消息。"""
        ...

    async def delete_subtree(self, message_id: str) -> List[str]:
        """删除消息及其全部后代，返回被删除的 ID。"""
        ...

    async def compare_and_set_active_leaf(
        self, chat_id: str, expected: Optional[str], new: Optional[str]
    ) -> bool:
        """仅当当前 active_leaf_id 等于 expected 时更新为 new。"""
        ...
