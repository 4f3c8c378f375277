"""会话分支与流式更新引擎。

- store: ConversationStore，消息树与会话元数据的唯一持有者。
- branches: BranchResolver，活动路径与分支计算。
- ingestor: StreamIngestor，字节流 -> 消息内容增量。
- orchestrator: MutationOrchestrator，按会话串行化所有写操作。
"""

from chat_core.engine.branches import BranchResolver
from chat_core.engine.ingestor import SSELineParser, StreamIngestor
from chat_core.engine.orchestrator import GenerationHandle, MutationOrchestrator, MutationResult
from chat_core.engine.store import ConversationStore

__all__ = [
    "BranchResolver",
    "ConversationStore",
    "GenerationHandle",
    "MutationOrchestrator",
    "MutationResult",
    "SSELineParser",
    "StreamIngestor",
]
