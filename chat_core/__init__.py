"""Chat Core 顶层包。

该包提供多轮对话的分支管理与流式更新引擎，
包括配置加载、领域模型、消息树存储、分支解析、
流式解析、按会话串行化的变更编排以及持久化适配。
"""

from chat_core.engine import MutationOrchestrator

__all__ = ["MutationOrchestrator"]
