"""会话存储：消息树与会话元数据的唯一持有者。

消息以 "ID -> Message" 的扁平表保存，父子关系只通过 parent_id 表达；
为了按父节点查找子节点，另外维护一个 "parent_id -> [child_id]" 的索引。

所有结构性不变式在这里强制：
1. 非根消息必须有且只有一个存在的父节点；
2. 同一会话同一时刻最多一条 streaming 消息；
3. active_leaf_id 必须指向本会话内存在的消息；
4. 删除消息会原子地删除整棵子树。

本类不做并发控制，调用方（MutationOrchestrator）负责按会话串行化。
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Set
from uuid import uuid4

from chat_core.domain.exceptions import ConflictError, NotFoundError, ValidationError
from chat_core.domain.models import (
    STATUS_TRANSITIONS,
    ChatSession,
    ChatSettings,
    Message,
    MessageStatus,
    Role,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class StoreSnapshot:
    """回滚用快照。

    - known_ids: 快照时会话内已存在的全部消息 ID，恢复时删除之后新增的消息。
    - messages: 被改动消息的副本。
    - children: 受影响节点的子节点索引副本（保证恢复后兄弟顺序不变）。
    """

    chat_id: str
    active_leaf_id: Optional[str]
    updated_at: datetime
    known_ids: Set[str]
    messages: Dict[str, Message] = field(default_factory=dict)
    children: Dict[str, List[str]] = field(default_factory=dict)


class ConversationStore:
    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or _utcnow
        self._sessions: Dict[str, ChatSession] = {}
        self._messages: Dict[str, Message] = {}
        self._children: Dict[str, List[str]] = {}
        self._by_chat: Dict[str, Set[str]] = {}
        self._roots: Dict[str, str] = {}

    # ---- 会话 ----

    def create_session(
        self,
        chat_id: Optional[str] = None,
        title: str = "",
        settings: Optional[ChatSettings] = None,
    ) -> ChatSession:
        cid = chat_id or f"c-{uuid4().hex}"
        if cid in self._sessions:
            raise ConflictError(code="CHAT_EXISTS", message=f"Chat {cid} already exists", chat_id=cid)
        now = self._clock()
        session = ChatSession(
            id=cid,
            active_leaf_id=None,
            created_at=now,
            updated_at=now,
            title=title,
            settings=settings or ChatSettings(),
        )
        self._sessions[cid] = session
        self._by_chat[cid] = set()
        return session

    def has_session(self, chat_id: str) -> bool:
        return chat_id in self._sessions

    def get_session(self, chat_id: str) -> ChatSession:
        try:
            return self._sessions[chat_id]
        except KeyError:
            raise NotFoundError(code="CHAT_NOT_FOUND", message=f"Chat {chat_id} not found", chat_id=chat_id)

    def drop_session(self, chat_id: str) -> None:
        """从内存中移除整个会话（不触碰持久化）。"""
        self.get_session(chat_id)
        for mid in self._by_chat.pop(chat_id, set()):
            self._messages.pop(mid, None)
            self._children.pop(mid, None)
        self._roots.pop(chat_id, None)
        del self._sessions[chat_id]

    def load(self, session: ChatSession, messages: Iterable[Message]) -> None:
        """用持久化层读出的数据重建会话。

        消息按创建时间排序后逐条挂载，父节点缺失视为数据损坏。
        """
        if session.id in self._sessions:
            self.drop_session(session.id)
        self._sessions[session.id] = session
        self._by_chat[session.id] = set()
        try:
            for msg in sorted(messages, key=lambda m: m.created_at):
                if msg.chat_id != session.id:
                    raise ValidationError(
                        code="CORRUPT_TREE",
                        message=f"Message {msg.id} belongs to chat {msg.chat_id}",
                        chat_id=session.id,
                    )
                if msg.parent_id is None:
                    if session.id in self._roots:
                        raise ConflictError(code="ROOT_EXISTS", message=f"Chat {session.id} has two roots")
                    self._roots[session.id] = msg.id
                elif msg.parent_id not in self._messages:
                    raise ValidationError(
                        code="CORRUPT_TREE",
                        message=f"Parent {msg.parent_id} of message {msg.id} is missing",
                        chat_id=session.id,
                    )
                self._insert(msg)
            if session.active_leaf_id is not None and session.active_leaf_id not in self._by_chat[session.id]:
                raise ValidationError(
                    code="CORRUPT_TREE",
                    message=f"Active leaf {session.active_leaf_id} is not part of chat {session.id}",
                    chat_id=session.id,
                )
        except (ValidationError, ConflictError):
            self.drop_session(session.id)
            raise

    # ---- 消息 ----

    def create_root(self, chat_id: str, role: Role = "system", content: str = "") -> str:
        session = self.get_session(chat_id)
        if chat_id in self._roots:
            raise ConflictError(code="ROOT_EXISTS", message=f"Chat {chat_id} already has a root", chat_id=chat_id)
        msg = self._new_message(chat_id, None, role, content)
        self._roots[chat_id] = msg.id
        self._insert(msg)
        session.active_leaf_id = msg.id
        session.updated_at = msg.created_at
        return msg.id

    def append(
        self,
        parent_id: str,
        role: Role,
        content: str,
        meta: Optional[Dict] = None,
    ) -> str:
        parent = self._messages.get(parent_id)
        if parent is None:
            raise NotFoundError(code="MESSAGE_NOT_FOUND", message=f"Parent {parent_id} not found", message_id=parent_id)
        msg = self._new_message(parent.chat_id, parent_id, role, content, meta)
        self._insert(msg)
        self._sessions[parent.chat_id].updated_at = msg.created_at
        return msg.id

    def get_message(self, message_id: str) -> Message:
        try:
            return self._messages[message_id]
        except KeyError:
            raise NotFoundError(code="MESSAGE_NOT_FOUND", message=f"Message {message_id} not found", message_id=message_id)

    def has_message(self, message_id: str) -> bool:
        return message_id in self._messages

    def root_of(self, chat_id: str) -> Optional[str]:
        self.get_session(chat_id)
        return self._roots.get(chat_id)

    def children_of(self, message_id: str) -> List[Message]:
        self.get_message(message_id)
        return [self._messages[cid] for cid in self._children.get(message_id, [])]

    def messages_of(self, chat_id: str) -> List[Message]:
        self.get_session(chat_id)
        return sorted((self._messages[mid] for mid in self._by_chat[chat_id]), key=lambda m: m.created_at)

    def streaming_message(self, chat_id: str) -> Optional[Message]:
        for mid in self._by_chat.get(chat_id, ()):
            msg = self._messages[mid]
            if msg.status == "streaming":
                return msg
        return None

    def update_content(
        self,
        message_id: str,
        text: Optional[str] = None,
        status: Optional[MessageStatus] = None,
        *,
        replace_content: bool = False,
        error: Optional[str] = None,
    ) -> Message:
        """追加（或整体替换）消息内容，并可选地推进状态。

        状态只能沿 pending -> streaming -> {complete, failed, cancelled} 前进；
        已处于终态的消息内容不可再修改。
        """
        msg = self.get_message(message_id)
        if text is not None and msg.is_terminal:
            raise ValidationError(
                code="MESSAGE_IMMUTABLE",
                message=f"Message {message_id} is {msg.status} and cannot be modified",
                message_id=message_id,
            )
        if status is not None:
            if status not in STATUS_TRANSITIONS[msg.status]:
                raise ValidationError(
                    code="ILLEGAL_STATUS_TRANSITION",
                    message=f"Cannot move message {message_id} from {msg.status} to {status}",
                    message_id=message_id,
                )
            if status == "streaming" and msg.status != "streaming":
                other = self.streaming_message(msg.chat_id)
                if other is not None:
                    raise ConflictError(
                        code="ALREADY_STREAMING",
                        message=f"Message {other.id} is already streaming in chat {msg.chat_id}",
                        chat_id=msg.chat_id,
                    )
        if text is not None:
            msg.content = text if replace_content else msg.content + text
        if status is not None:
            msg.status = status
        if error is not None:
            msg.error = error
        return msg

    def subtree_ids(self, message_id: str) -> List[str]:
        """先序遍历返回以 message_id 为根的子树 ID。"""
        self.get_message(message_id)
        ids: List[str] = []
        stack = [message_id]
        while stack:
            current = stack.pop()
            ids.append(current)
            stack.extend(reversed(self._children.get(current, [])))
        return ids

    def delete(self, message_id: str) -> Set[str]:
        msg = self.get_message(message_id)
        if msg.parent_id is None:
            raise ConflictError(
                code="ROOT_NOT_DELETABLE",
                message=f"Root message {message_id} cannot be deleted",
                message_id=message_id,
            )
        removed = self.subtree_ids(message_id)
        siblings = self._children.get(msg.parent_id, [])
        siblings.remove(message_id)
        for mid in removed:
            del self._messages[mid]
            self._children.pop(mid, None)
            self._by_chat[msg.chat_id].discard(mid)
        self._sessions[msg.chat_id].updated_at = self._clock()
        return set(removed)

    def set_active_leaf(self, chat_id: str, leaf_id: str) -> None:
        session = self.get_session(chat_id)
        msg = self._messages.get(leaf_id)
        if msg is None or msg.chat_id != chat_id:
            raise ValidationError(
                code="INVALID_LEAF",
                message=f"Message {leaf_id} is not part of chat {chat_id}",
                chat_id=chat_id,
                message_id=leaf_id,
            )
        session.active_leaf_id = leaf_id
        session.updated_at = self._clock()

    # ---- 快照 / 回滚 ----

    def snapshot(self, chat_id: str, message_ids: Iterable[str] = ()) -> StoreSnapshot:
        session = self.get_session(chat_id)
        snap = StoreSnapshot(
            chat_id=chat_id,
            active_leaf_id=session.active_leaf_id,
            updated_at=session.updated_at,
            known_ids=set(self._by_chat[chat_id]),
        )
        for mid in message_ids:
            msg = self._messages.get(mid)
            if msg is None:
                continue
            snap.messages[mid] = replace(msg, meta=dict(msg.meta))
            snap.children[mid] = list(self._children.get(mid, []))
            if msg.parent_id is not None:
                snap.children[msg.parent_id] = list(self._children.get(msg.parent_id, []))
        return snap

    def restore(self, snap: StoreSnapshot) -> None:
        """把会话恢复到快照时刻：删除新增消息、还原被改动或删除的消息。"""
        session = self.get_session(snap.chat_id)
        for mid in list(self._by_chat[snap.chat_id] - snap.known_ids):
            msg = self._messages.pop(mid)
            self._children.pop(mid, None)
            self._by_chat[snap.chat_id].discard(mid)
            if msg.parent_id is not None and mid in self._children.get(msg.parent_id, []):
                self._children[msg.parent_id].remove(mid)
        for mid, msg in snap.messages.items():
            self._messages[mid] = replace(msg, meta=dict(msg.meta))
            self._by_chat[snap.chat_id].add(mid)
        for pid, child_ids in snap.children.items():
            if child_ids:
                self._children[pid] = list(child_ids)
            else:
                self._children.pop(pid, None)
        session.active_leaf_id = snap.active_leaf_id
        session.updated_at = snap.updated_at

    # ---- 内部 ----

    def _new_message(
        self,
        chat_id: str,
        parent_id: Optional[str],
        role: Role,
        content: str,
        meta: Optional[Dict] = None,
    ) -> Message:
        status: MessageStatus = "pending" if role == "assistant" else "complete"
        return Message(
            id=f"m-{uuid4().hex}",
            chat_id=chat_id,
            parent_id=parent_id,
            role=role,
            content=content,
            status=status,
            created_at=self._clock(),
            meta=dict(meta or {}),
        )

    def _insert(self, msg: Message) -> None:
        self._messages[msg.id] = msg
        self._by_chat[msg.chat_id].add(msg.id)
        if msg.parent_id is not None:
            self._children.setdefault(msg.parent_id, []).append(msg.id)
