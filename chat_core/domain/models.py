"""会话树的领域模型。

本模块定义了引擎内部共享的标准数据结构：

- Message: 消息树中的一个节点（通过 parent_id 指向父节点）。
- ChatSession: 会话元数据，核心字段是 active_leaf_id。
- PathEntry: 活动路径上的一条消息及其分支位置信息。
- GenerationRequest: 交给传输层的一次生成请求。
- ChatEvent: 推送给订阅者的事件。

消息树以“ID -> Message”的扁平表存储，父子关系只通过 ID 表达，
不在对象之间持有直接引用。
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional


# 消息角色（与主流 LLM API 的 role 字段对应）
Role = Literal["system", "user", "assistant"]

# 消息生命周期状态
MessageStatus = Literal["pending", "streaming", "complete", "failed", "cancelled"]

TERMINAL_STATUSES = frozenset({"complete", "failed", "cancelled"})

# 合法的状态迁移：pending -> streaming -> {complete, failed, cancelled}
STATUS_TRANSITIONS: Dict[str, frozenset] = {
    "pending": frozenset({"pending", "streaming"}),
    "streaming": frozenset({"streaming", "complete", "failed", "cancelled"}),
    "complete": frozenset(),
    "failed": frozenset(),
    "cancelled": frozenset(),
}


@dataclass
class Message:
    """消息树节点。

    - parent_id: 根消息为 None，其余消息必须指向同一会话内存在的消息。
    - status: user/system 消息创建即 complete；assistant 消息从 pending 开始。
    - error: 生成失败时记录的错误信息，便于排查与重试。
    """

    id: str
    chat_id: str
    parent_id: Optional[str]
    role: Role
    content: str
    status: MessageStatus
    created_at: datetime
    error: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass
class ChatSettings:
    """单个会话的生成参数。"""

    system_prompt: str = ""
    model: Optional[str] = None
    temperature: Optional[float] = None
    top_k: Optional[int] = None


@dataclass
class ChatSession:
    id: str
    active_leaf_id: Optional[str]
    created_at: datetime
    updated_at: datetime
    title: str = ""
    settings: ChatSettings = field(default_factory=ChatSettings)


@dataclass
class PathEntry:
    """活动路径上的一条消息。

    branch_index 为该消息在兄弟节点中的位置（按创建时间排序，从 0 开始），
    total_branches 为兄弟节点总数（包括自身），供 UI 展示 "2 / 3" 这样的分支切换器。
    """

    message: Message
    branch_index: int
    total_branches: int


@dataclass
class ContextMessage:
    role: Role
    content: str


@dataclass
class GenerationRequest:
    """一次流式生成请求。

    messages 为从根到待生成消息父节点的上下文（已按配置裁剪）。
    """

    chat_id: str
    message_id: str
    messages: List[ContextMessage]
    settings: ChatSettings = field(default_factory=ChatSettings)


ChatEventKind = Literal["committed", "rolled_back", "chunk", "finished"]


@dataclass
class ChatEvent:
    """推送给订阅者的事件。

    kind:
        - "committed": 结构性变更已提交，path 为重新计算的活动路径。
        - "rolled_back": 变更失败并已回滚，error 为失败原因。
        - "chunk": 流式增量，delta 为本次追加的文本。
        - "finished": 流结束（complete/failed/cancelled），message 为最终消息。
    """

    kind: ChatEventKind
    chat_id: str
    operation: str = ""
    path: List[PathEntry] = field(default_factory=list)
    message: Optional[Message] = None
    delta: Optional[str] = None
    error: Optional[Exception] = None
