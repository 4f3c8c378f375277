"""对外 API 服务模块。

提供简化的异步函数接口供上层应用（HTTP 路由、UI 缓存层）调用，
返回值均为可直接 JSON 序列化的字典。
"""

from typing import Any, Dict, List, Optional

from chat_core.config.settings import settings
from chat_core.domain.conversation import ChatPersistence
from chat_core.domain.exceptions import BusinessError, ValidationError
from chat_core.domain.models import ChatSession, Message, PathEntry
from chat_core.engine.orchestrator import GenerationHandle, MutationOrchestrator
from chat_core.infrastructure.logging.logger import logger
from chat_core.infrastructure.storage.json_store import JsonChatPersistence
from chat_core.providers import create_transport


_persistence: Optional[ChatPersistence] = None
_orchestrator: Optional[MutationOrchestrator] = None


def get_default_orchestrator() -> MutationOrchestrator:
    """获取默认的编排器实例（单例）。"""
    global _persistence, _orchestrator
    if _persistence is None:
        _persistence = JsonChatPersistence(root=settings.storage_root)
    if _orchestrator is None:
        _orchestrator = MutationOrchestrator(
            persistence=_persistence,
            transport=create_transport(),
            idle_timeout=settings.stream_idle_timeout,
        )
    return _orchestrator


def message_to_dict(m: Message) -> Dict[str, Any]:
    return {
        "id": m.id,
        "chat_id": m.chat_id,
        "parent_id": m.parent_id,
        "role": m.role,
        "content": m.content,
        "status": m.status,
        "error": m.error,
        "created_at": m.created_at.isoformat(),
        "meta": m.meta,
    }


def path_to_dicts(path: List[PathEntry]) -> List[Dict[str, Any]]:
    return [
        {
            **message_to_dict(entry.message),
            "branch_index": entry.branch_index,
            "total_branches": entry.total_branches,
        }
        for entry in path
    ]


def chat_to_dict(c: ChatSession) -> Dict[str, Any]:
    return {
        "id": c.id,
        "title": c.title,
        "active_leaf_id": c.active_leaf_id,
        "created_at": c.created_at.isoformat(),
        "updated_at": c.updated_at.isoformat(),
        "settings": {
            "system_prompt": c.settings.system_prompt,
            "model": c.settings.model,
            "temperature": c.settings.temperature,
            "top_k": c.settings.top_k,
        },
    }


def handle_to_dict(handle: GenerationHandle) -> Dict[str, Any]:
    return {
        "chat_id": handle.chat_id,
        "user_message_id": handle.user_message_id,
        "assistant_message_id": handle.assistant_message_id,
    }


async def create_chat(
    title: str = "",
    system_prompt: str = "",
    initial_content: Optional[str] = None,
    **options: Any,
) -> Dict[str, Any]:
    """创建会话，返回会话信息与初始活动路径。

    给出 initial_content 时同时发送第一条消息，generation 字段为生成句柄信息。
    """
    orchestrator = get_default_orchestrator()
    chat = await orchestrator.create_chat(
        title=title, system_prompt=system_prompt, initial_content=initial_content, **options
    )
    handle = orchestrator.generation_of(chat.id)
    return {
        "chat": chat_to_dict(chat),
        "messages": path_to_dicts(orchestrator.get_path(chat.id)),
        "generation": handle_to_dict(handle) if handle else None,
    }


async def get_chat(chat_id: str) -> Dict[str, Any]:
    """获取会话及其活动分支上的消息。"""
    orchestrator = get_default_orchestrator()
    chat = await orchestrator.load_chat(chat_id)
    return {"chat": chat_to_dict(chat), "messages": path_to_dicts(orchestrator.get_path(chat_id))}


async def list_chats(page: int = 1, limit: int = 10) -> Dict[str, Any]:
    """分页列出会话（按更新时间倒序）。

    Returns:
        {"data": [...], "page", "limit", "total", "total_pages"}
    """
    if page < 1 or limit < 1:
        raise ValidationError(code="INVALID_PAGINATION", message=f"Invalid page={page} limit={limit}")
    get_default_orchestrator()
    chats = await _persistence.list_chats()
    total = len(chats)
    start = (page - 1) * limit
    return {
        "data": [chat_to_dict(c) for c in chats[start:start + limit]],
        "page": page,
        "limit": limit,
        "total": total,
        "total_pages": (total + limit - 1) // limit,
    }


async def send_message(chat_id: str, content: str, **overrides: Any) -> Dict[str, Any]:
    """发送消息并开始流式生成。

    overrides 可包含 system_prompt / temperature / top_k，只作用于本次生成。

    Returns:
        包含会话ID、用户消息ID、助手占位消息ID的字典；
        流式内容通过 subscribe 推送。

    Raises:
        各种 domain.exceptions 中定义的异常
    """
    try:
        handle = await get_default_orchestrator().send_message(chat_id, content, **overrides)
    except BusinessError as e:
        logger.error(f"Send message failed: {e}", extra={"extra": {
            "chat_id": chat_id,
            "code": e.code,
            "error": e.message,
        }})
        raise
    return handle_to_dict(handle)


async def edit_message(message_id: str, new_content: str, **overrides: Any) -> Dict[str, Any]:
    try:
        handle = await get_default_orchestrator().edit_message(message_id, new_content, **overrides)
    except BusinessError as e:
        logger.error(f"Edit message failed: {e}", extra={"extra": {
            "message_id": message_id,
            "code": e.code,
            "error": e.message,
        }})
        raise
    return handle_to_dict(handle)


async def regenerate_response(assistant_message_id: str, **overrides: Any) -> Dict[str, Any]:
    try:
        handle = await get_default_orchestrator().regenerate_response(assistant_message_id, **overrides)
    except BusinessError as e:
        logger.error(f"Regenerate failed: {e}", extra={"extra": {
            "message_id": assistant_message_id,
            "code": e.code,
            "error": e.message,
        }})
        raise
    return handle_to_dict(handle)


async def delete_message(message_id: str) -> Dict[str, Any]:
    """删除消息分支，返回被删除的 ID 与删除后的活动路径。"""
    orchestrator = get_default_orchestrator()
    chat_id = await orchestrator.chat_of(message_id)
    removed = await orchestrator.delete_message(message_id)
    return {
        "chat_id": chat_id,
        "removed_ids": sorted(removed),
        "messages": path_to_dicts(orchestrator.get_path(chat_id)),
    }


async def switch_branch(chat_id: str, parent_message_id: str, branch_index: int) -> Dict[str, Any]:
    """按序号切换分支，返回更新后的会话与活动路径。"""
    orchestrator = get_default_orchestrator()
    path = await orchestrator.select_branch(chat_id, parent_message_id, branch_index)
    chat = orchestrator.store.get_session(chat_id)
    return {"chat": chat_to_dict(chat), "messages": path_to_dicts(path)}


async def cancel_streaming(chat_id: str) -> Optional[Dict[str, Any]]:
    msg = await get_default_orchestrator().cancel_streaming(chat_id)
    return message_to_dict(msg) if msg else None


async def delete_chat(chat_id: str) -> None:
    await get_default_orchestrator().delete_chat(chat_id)
