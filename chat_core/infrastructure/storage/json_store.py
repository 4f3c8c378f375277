import asyncio
import json
import os
import shutil
import threading
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.exceptions import NotFoundError, PersistenceError
from chat_core.domain.models import ChatSession, ChatSettings, Message


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_dt(value: Any) -> datetime:
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


class JsonChatPersistence:
    """基于文件的持久化实现。

    目录结构：
        <root>/chats/<chat_id>/meta.json       会话元数据（原子替换写入）
        <root>/chats/<chat_id>/messages.jsonl  消息记录，追加写入，按 id 后写覆盖先写

    文件 IO 通过 asyncio.to_thread 放到线程池执行；
    compare_and_set_active_leaf 在进程内通过锁保证原子性。
    """

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._chat_root = self._root / "chats"
        self._chat_root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    # ---- 会话 ----

    async def get_chat(self, chat_id: str) -> ChatSession:
        return await asyncio.to_thread(self._read_meta, chat_id)

    async def put_chat(self, chat: ChatSession) -> None:
        def _put() -> None:
            cdir = self._chat_root / chat.id
            cdir.mkdir(parents=True, exist_ok=True)
            with self._lock:
                self._write_meta(cdir, chat)

        await asyncio.to_thread(_put)

    async def list_chats(self) -> List[ChatSession]:
        def _list() -> List[ChatSession]:
            items: List[ChatSession] = []
            for cdir in sorted(self._chat_root.glob("*/")):
                if (cdir / "meta.json").exists():
                    items.append(self._read_meta(cdir.name))
            items.sort(key=lambda c: c.updated_at, reverse=True)
            return items

        return await asyncio.to_thread(_list)

    async def delete_chat(self, chat_id: str) -> None:
        def _delete() -> None:
            cdir = self._chat_root / chat_id
            if not cdir.exists():
                raise NotFoundError(code="CHAT_NOT_FOUND", message=chat_id)
            try:
                shutil.rmtree(cdir)
            except OSError as e:
                raise PersistenceError(code="STORE_DELETE_ERROR", message=str(e))

        await asyncio.to_thread(_delete)

    async def compare_and_set_active_leaf(
        self, chat_id: str, expected: Optional[str], new: Optional[str]
    ) -> bool:
        def _cas() -> bool:
            with self._lock:
                chat = self._read_meta(chat_id)
                if chat.active_leaf_id != expected:
                    return False
                chat.active_leaf_id = new
                chat.updated_at = datetime.now(timezone.utc)
                self._write_meta(self._chat_root / chat_id, chat)
                return True

        return await asyncio.to_thread(_cas)

    # ---- 消息 ----

    async def get_message(self, message_id: str) -> Message:
        def _get() -> Message:
            for cdir in self._chat_root.glob("*/"):
                msg = self._read_messages(cdir.name).get(message_id)
                if msg is not None:
                    return msg
            raise NotFoundError(code="MESSAGE_NOT_FOUND", message=message_id)

        return await asyncio.to_thread(_get)

    async def list_messages(self, chat_id: str) -> List[Message]:
        def _list() -> List[Message]:
            self._read_meta(chat_id)
            items = list(self._read_messages(chat_id).values())
            items.sort(key=lambda m: m.created_at)
            return items

        return await asyncio.to_thread(_list)

    async def put_message(self, message: Message) -> None:
        def _put() -> None:
            cdir = self._chat_root / message.chat_id
            if not (cdir / "meta.json").exists():
                raise NotFoundError(code="CHAT_NOT_FOUND", message=message.chat_id)
            payload = asdict(message)
            payload["created_at"] = _iso(message.created_at)
            line = json.dumps(payload, ensure_ascii=False)
            try:
                with self._lock, (cdir / "messages.jsonl").open("a", encoding="utf-8") as f:
                    f.write(line + "\n")
            except OSError as e:
                raise PersistenceError(code="STORE_WRITE_ERROR", message=str(e))

        await asyncio.to_thread(_put)

    async def delete_subtree(self, message_id: str) -> List[str]:
        def _delete() -> List[str]:
            for cdir in self._chat_root.glob("*/"):
                with self._lock:
                    messages = self._read_messages(cdir.name)
                    if message_id not in messages:
                        continue
                    removed = [message_id]
                    frontier = [message_id]
                    while frontier:
                        current = frontier.pop()
                        children = [m.id for m in messages.values() if m.parent_id == current]
                        removed.extend(children)
                        frontier.extend(children)
                    removed_set = set(removed)
                    keep = [m for mid, m in messages.items() if mid not in removed_set]
                    self._rewrite_messages(cdir, keep)
                    return removed
            raise NotFoundError(code="MESSAGE_NOT_FOUND", message=message_id)

        return await asyncio.to_thread(_delete)

    # ---- 内部 ----

    def _read_meta(self, chat_id: str) -> ChatSession:
        meta_path = self._chat_root / chat_id / "meta.json"
        if not meta_path.exists():
            raise NotFoundError(code="CHAT_NOT_FOUND", message=chat_id)
        try:
            data = json.loads(meta_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise PersistenceError(code="STORE_READ_ERROR", message=str(e))
        return ChatSession(
            id=data["id"],
            active_leaf_id=data.get("active_leaf_id"),
            created_at=_parse_dt(data["created_at"]),
            updated_at=_parse_dt(data["updated_at"]),
            title=data.get("title") or "",
            settings=ChatSettings(**(data.get("settings") or {})),
        )

    def _write_meta(self, cdir: Path, chat: ChatSession) -> None:
        meta_path = cdir / "meta.json"
        tmp_path = cdir / f"meta.{uuid4().hex}.json.tmp"
        obj = {
            "id": chat.id,
            "title": chat.title,
            "active_leaf_id": chat.active_leaf_id,
            "created_at": _iso(chat.created_at),
            "updated_at": _iso(chat.updated_at),
            "settings": asdict(chat.settings),
        }
        try:
            tmp_path.write_text(json.dumps(obj, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, meta_path)
        except OSError as e:
            raise PersistenceError(code="STORE_WRITE_ERROR", message=str(e))

    def _read_messages(self, chat_id: str) -> Dict[str, Message]:
        msgs_path = self._chat_root / chat_id / "messages.jsonl"
        items: Dict[str, Message] = {}
        if not msgs_path.exists():
            return items
        try:
            lines = msgs_path.read_text(encoding="utf-8").splitlines()
        except OSError as e:
            raise PersistenceError(code="STORE_READ_ERROR", message=str(e))
        for line in lines:
            if not line.strip():
                continue
            try:
                msg = self._to_message(json.loads(line))
            except (json.JSONDecodeError, KeyError, ValueError):
                continue
            items[msg.id] = msg
        return items

    def _rewrite_messages(self, cdir: Path, messages: List[Message]) -> None:
        msgs_path = cdir / "messages.jsonl"
        tmp_path = cdir / f"messages.{uuid4().hex}.jsonl.tmp"
        lines = []
        for m in messages:
            payload = asdict(m)
            payload["created_at"] = _iso(m.created_at)
            lines.append(json.dumps(payload, ensure_ascii=False))
        try:
            tmp_path.write_text("".join(line + "\n" for line in lines), encoding="utf-8")
            os.replace(tmp_path, msgs_path)
        except OSError as e:
            raise PersistenceError(code="STORE_WRITE_ERROR", message=str(e))

    def _to_message(self, data: Dict[str, Any]) -> Message:
        return Message(
            id=data["id"],
            chat_id=data["chat_id"],
            parent_id=data.get("parent_id"),
            role=data["role"],
            content=data.get("content") or "",
            status=data.get("status") or "complete",
            created_at=_parse_dt(data["created_at"]),
            error=data.get("error"),
            meta=data.get("meta") or {},
        )
