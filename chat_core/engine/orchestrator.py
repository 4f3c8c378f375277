"""会话变更编排器。

每个会话一把 asyncio.Lock，所有写操作（发送、编辑、重新生成、删除、切换分支）
以及流式生成都在这把锁内严格串行执行；等待者按 FIFO 排队，不会被拒绝。
不同会话之间完全并行。

每次结构性变更都遵循：
    快照 -> 乐观写入 ConversationStore -> 等待持久化确认 -> 提交或回滚

回滚会把内存状态恢复到快照，并尽力撤销已经写入持久化层的部分，
调用方永远看不到“写了一半”的消息树。

生成类操作（send/edit/regenerate）在结构变更提交后立即返回 GenerationHandle，
锁由后台的流式任务继续持有，直到消息进入终态才释放。
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, Sequence, Set, Tuple, TypeVar

from chat_core.config.settings import settings
from chat_core.domain.conversation import ChatPersistence
from chat_core.domain.exceptions import (
    BusinessError,
    ConflictError,
    PersistenceError,
    StreamTransportError,
    ValidationError,
)
from chat_core.domain.models import (
    ChatEvent,
    ChatSession,
    ChatSettings,
    ContextMessage,
    GenerationRequest,
    Message,
    MessageStatus,
    PathEntry,
)
from chat_core.engine.branches import BranchResolver
from chat_core.engine.ingestor import StreamIngestor
from chat_core.engine.store import ConversationStore, StoreSnapshot
from chat_core.infrastructure.logging.logger import logger
from chat_core.providers.base import ByteSource, GenerationTransport


T = TypeVar("T")
Subscriber = Callable[[ChatEvent], None]


@dataclass
class MutationResult(Generic[T]):
    """一次变更的结果：成功时携带 value，失败时携带已回滚的 error。"""

    ok: bool
    value: Optional[T] = None
    error: Optional[BusinessError] = None

    def unwrap(self) -> T:
        if not self.ok:
            raise self.error
        return self.value


class GenerationHandle:
    """生成类操作的句柄。

    结构变更提交后即可拿到；await wait() 得到进入终态（complete/failed/cancelled）的助手消息。
    """

    def __init__(self, chat_id: str, user_message_id: Optional[str], assistant_message_id: str, task: "asyncio.Task[Message]"):
        self.chat_id = chat_id
        self.user_message_id = user_message_id
        self.assistant_message_id = assistant_message_id
        self._task = task

    @property
    def done(self) -> bool:
        return self._task.done()

    async def wait(self) -> Message:
        return await asyncio.shield(self._task)


@dataclass
class _ActiveStream:
    message_id: str
    cancel: asyncio.Event
    settings: ChatSettings
    task: Optional["asyncio.Task[Message]"] = None
    handle: Optional[GenerationHandle] = None


@dataclass
class _WriteLog:
    """记录一次变更已写入持久化层的操作，供回滚时补偿。"""

    persistence: ChatPersistence
    chat_id: str
    created: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    leaf_move: Optional[Tuple[Optional[str], Optional[str]]] = None

    async def put_new(self, message: Message) -> None:
        await self.persistence.put_message(message)
        self.created.append(message.id)

    async def delete(self, message_id: str) -> None:
        await self.persistence.delete_subtree(message_id)
        self.deleted.append(message_id)

    async def move_leaf(self, expected: Optional[str], new: Optional[str]) -> None:
        if expected == new:
            return
        ok = await self.persistence.compare_and_set_active_leaf(self.chat_id, expected, new)
        if not ok:
            raise ConflictError(
                code="ACTIVE_LEAF_CONFLICT",
                message=f"Active leaf of chat {self.chat_id} changed concurrently",
                chat_id=self.chat_id,
            )
        self.leaf_move = (expected, new)


class MutationOrchestrator:
    def __init__(
        self,
        persistence: ChatPersistence,
        transport: GenerationTransport,
        store: Optional[ConversationStore] = None,
        idle_timeout: Optional[float] = None,
        max_context_messages: Optional[int] = None,
    ):
        self._persistence = persistence
        self._transport = transport
        self._store = store or ConversationStore()
        self._resolver = BranchResolver(self._store)
        self._idle_timeout = idle_timeout if idle_timeout is not None else settings.stream_idle_timeout
        self._ingestor = StreamIngestor(self._store, idle_timeout=self._idle_timeout)
        self._max_context = max_context_messages or settings.max_context_messages
        self._locks: Dict[str, asyncio.Lock] = {}
        self._streams: Dict[str, _ActiveStream] = {}
        self._subscribers: Dict[str, List[Subscriber]] = {}

    @property
    def store(self) -> ConversationStore:
        return self._store

    @property
    def resolver(self) -> BranchResolver:
        return self._resolver

    # ---- 订阅 ----

    def subscribe(self, chat_id: str, callback: Subscriber) -> Callable[[], None]:
        """订阅会话事件，返回取消订阅函数。"""
        self._subscribers.setdefault(chat_id, []).append(callback)

        def unsubscribe() -> None:
            callbacks = self._subscribers.get(chat_id, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return unsubscribe

    # ---- 会话生命周期 ----

    async def create_chat(
        self,
        title: str = "",
        system_prompt: str = "",
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        top_k: Optional[int] = None,
        initial_content: Optional[str] = None,
    ) -> ChatSession:
        """创建会话及其根消息（system，内容为系统提示词）。

        给出 initial_content 时随即发送第一条用户消息并开始生成，
        生成句柄可通过 generation_of(chat_id) 取得。
        """
        if initial_content is not None:
            self._require_content(initial_content)
        chat_settings = ChatSettings(
            system_prompt=system_prompt,
            model=model or settings.default_model,
            temperature=temperature if temperature is not None else settings.default_temperature,
            top_k=top_k if top_k is not None else settings.default_top_k,
        )
        session = self._store.create_session(title=title, settings=chat_settings)
        root_id = self._store.create_root(session.id, role="system", content=system_prompt)
        try:
            await self._persistence.put_chat(session)
            await self._persistence.put_message(self._store.get_message(root_id))
        except Exception as exc:
            self._store.drop_session(session.id)
            error = self._as_business_error(exc)
            self._log(logging.ERROR, "Create chat failed", session.id, "create_chat", error=str(error))
            await self._compensate_chat_creation(session.id)
            raise error
        self._log(logging.INFO, "Created chat", session.id, "create_chat", root_id=root_id)
        if initial_content is not None:
            await self.send_message(session.id, initial_content)
        return session

    async def load_chat(self, chat_id: str, force: bool = False) -> ChatSession:
        """从持久化层加载会话到内存。"""
        async with self._lock_for(chat_id):
            return await self._ensure_loaded(chat_id, force=force)

    async def delete_chat(self, chat_id: str) -> None:
        await self.cancel_streaming(chat_id)
        async with self._lock_for(chat_id):
            await self._persistence.delete_chat(chat_id)
            if self._store.has_session(chat_id):
                self._store.drop_session(chat_id)
            self._subscribers.pop(chat_id, None)
        self._log(logging.INFO, "Deleted chat", chat_id, "delete_chat")

    def get_path(self, chat_id: str) -> List[PathEntry]:
        session = self._store.get_session(chat_id)
        if session.active_leaf_id is None:
            return []
        return self._resolver.describe_path(session.active_leaf_id)

    # ---- 生成类变更 ----

    async def send_message(
        self,
        chat_id: str,
        content: str,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
        top_k: Optional[int] = None,
    ) -> GenerationHandle:
        """在活动叶子下追加用户消息与待生成的助手占位消息，并开始流式生成。

        system_prompt / temperature / top_k 只覆盖本次生成，不修改会话设置。
        """
        self._require_content(content)
        lock = self._lock_for(chat_id)
        await lock.acquire()
        try:
            await self._ensure_loaded(chat_id)
            session = self._store.get_session(chat_id)
            parent_id = session.active_leaf_id
            gen_settings = self._generation_settings(session, system_prompt, temperature, top_k)
            if parent_id is None:
                raise ValidationError(code="NO_ROOT", message=f"Chat {chat_id} has no root message", chat_id=chat_id)

            def apply() -> Tuple[str, str]:
                user_id = self._store.append(parent_id, "user", content)
                assistant_id = self._store.append(user_id, "assistant", "")
                self._store.set_active_leaf(chat_id, assistant_id)
                return user_id, assistant_id

            result = await self._run_mutation(chat_id, "send_message", [parent_id], apply, self._persist_generation)
            user_id, assistant_id = result.unwrap()
        except BaseException:
            lock.release()
            raise
        return self._start_generation(chat_id, user_id, assistant_id, gen_settings, lock)

    async def edit_message(
        self,
        message_id: str,
        new_content: str,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
        top_k: Optional[int] = None,
    ) -> GenerationHandle:
        """编辑用户消息：在原消息的父节点下新建兄弟消息，原分支保留。"""
        self._require_content(new_content)
        chat_id = await self.chat_of(message_id)
        lock = self._lock_for(chat_id)
        await lock.acquire()
        try:
            await self._ensure_loaded(chat_id)
            original = self._store.get_message(message_id)
            if original.role != "user":
                raise ValidationError(
                    code="NOT_EDITABLE",
                    message=f"Only user messages can be edited, {message_id} is {original.role}",
                    message_id=message_id,
                )
            if original.parent_id is None:
                raise ValidationError(code="NOT_EDITABLE", message="Root message cannot be edited", message_id=message_id)
            session = self._store.get_session(chat_id)
            gen_settings = self._generation_settings(session, system_prompt, temperature, top_k)

            def apply() -> Tuple[str, str]:
                user_id = self._store.append(original.parent_id, "user", new_content, meta={"edited_from": message_id})
                assistant_id = self._store.append(user_id, "assistant", "")
                self._store.set_active_leaf(chat_id, assistant_id)
                return user_id, assistant_id

            touched = [original.parent_id, session.active_leaf_id]
            result = await self._run_mutation(chat_id, "edit_message", touched, apply, self._persist_generation)
            user_id, assistant_id = result.unwrap()
        except BaseException:
            lock.release()
            raise
        return self._start_generation(chat_id, user_id, assistant_id, gen_settings, lock)

    async def regenerate_response(
        self,
        assistant_message_id: str,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
        top_k: Optional[int] = None,
    ) -> GenerationHandle:
        """重新生成助手回复：在同一父节点下新建助手兄弟消息，原回复保留。"""
        chat_id = await self.chat_of(assistant_message_id)
        lock = self._lock_for(chat_id)
        await lock.acquire()
        try:
            await self._ensure_loaded(chat_id)
            original = self._store.get_message(assistant_message_id)
            if original.role != "assistant" or original.parent_id is None:
                raise ValidationError(
                    code="NOT_REGENERABLE",
                    message=f"Message {assistant_message_id} is not an assistant reply",
                    message_id=assistant_message_id,
                )
            parent_id = original.parent_id
            session = self._store.get_session(chat_id)
            gen_settings = self._generation_settings(session, system_prompt, temperature, top_k)

            def apply() -> str:
                assistant_id = self._store.append(
                    parent_id, "assistant", "", meta={"regenerated_from": assistant_message_id}
                )
                self._store.set_active_leaf(chat_id, assistant_id)
                return assistant_id

            async def persist(assistant_id: str, log: _WriteLog, snap: StoreSnapshot) -> None:
                await log.put_new(self._store.get_message(assistant_id))
                await log.move_leaf(snap.active_leaf_id, assistant_id)

            touched = [parent_id, session.active_leaf_id]
            result = await self._run_mutation(chat_id, "regenerate_response", touched, apply, persist)
            assistant_id = result.unwrap()
        except BaseException:
            lock.release()
            raise
        return self._start_generation(chat_id, parent_id, assistant_id, gen_settings, lock)

    # ---- 纯结构变更 ----

    async def delete_message(self, message_id: str) -> Set[str]:
        """删除消息及其子树；若活动叶子被删除，回退到最近的幸存祖先。"""
        chat_id = await self.chat_of(message_id)
        async with self._lock_for(chat_id):
            await self._ensure_loaded(chat_id)
            session = self._store.get_session(chat_id)
            subtree = self._store.subtree_ids(message_id)
            previous_leaf = session.active_leaf_id
            previous_path = [m.id for m in self._resolver.resolve_path(previous_leaf)] if previous_leaf else []

            def apply() -> Set[str]:
                removed = self._store.delete(message_id)
                if previous_leaf is not None:
                    new_leaf = self._resolver.fallback_leaf_after_deletion(removed, previous_leaf, previous_path)
                    if new_leaf != previous_leaf:
                        self._store.set_active_leaf(chat_id, new_leaf)
                return removed

            async def persist(removed: Set[str], log: _WriteLog, snap: StoreSnapshot) -> None:
                await log.delete(message_id)
                await log.move_leaf(snap.active_leaf_id, self._store.get_session(chat_id).active_leaf_id)

            result = await self._run_mutation(chat_id, "delete_message", subtree, apply, persist)
            return result.unwrap()

    async def switch_branch(self, chat_id: str, leaf_id: str) -> List[PathEntry]:
        """切换活动叶子（纯指针更新），返回新的活动路径。"""
        async with self._lock_for(chat_id):
            await self._ensure_loaded(chat_id)
            return (await self._switch_locked(chat_id, leaf_id, "switch_branch")).unwrap()

    async def select_branch(self, chat_id: str, parent_id: str, branch_index: int) -> List[PathEntry]:
        """按序号切换 parent_id 下的分支，并定位到该分支最新的叶子。"""
        async with self._lock_for(chat_id):
            await self._ensure_loaded(chat_id)
            parent = self._store.get_message(parent_id)
            if parent.chat_id != chat_id:
                raise ValidationError(
                    code="INVALID_LEAF",
                    message=f"Message {parent_id} is not part of chat {chat_id}",
                    chat_id=chat_id,
                )
            leaf_id = self._resolver.branch_leaf(parent_id, branch_index)
            return (await self._switch_locked(chat_id, leaf_id, "select_branch")).unwrap()

    async def cancel_streaming(self, chat_id: str) -> Optional[Message]:
        """取消正在进行的流式生成；没有流时为空操作。

        返回被取消（或恰好已结束）的消息。锁由流式任务在收尾后释放。
        """
        active = self._streams.get(chat_id)
        if active is None or active.task is None:
            return None
        active.cancel.set()
        self._log(logging.INFO, "Cancel requested", chat_id, "cancel_streaming", message_id=active.message_id)
        return await asyncio.shield(active.task)

    def generation_of(self, chat_id: str) -> Optional[GenerationHandle]:
        """当前正在进行的生成句柄；没有流时返回 None。"""
        active = self._streams.get(chat_id)
        return active.handle if active is not None else None

    # ---- 内部：变更执行 ----

    async def _switch_locked(self, chat_id: str, leaf_id: str, operation: str) -> MutationResult[List[PathEntry]]:
        def apply() -> List[PathEntry]:
            self._store.set_active_leaf(chat_id, leaf_id)
            return self._resolver.describe_path(leaf_id)

        async def persist(_: Any, log: _WriteLog, snap: StoreSnapshot) -> None:
            await log.move_leaf(snap.active_leaf_id, leaf_id)

        return await self._run_mutation(chat_id, operation, [], apply, persist)

    async def _persist_generation(self, ids: Tuple[str, str], log: _WriteLog, snap: StoreSnapshot) -> None:
        user_id, assistant_id = ids
        await log.put_new(self._store.get_message(user_id))
        await log.put_new(self._store.get_message(assistant_id))
        await log.move_leaf(snap.active_leaf_id, assistant_id)

    async def _run_mutation(
        self,
        chat_id: str,
        operation: str,
        touched_ids: Sequence[Optional[str]],
        apply: Callable[[], T],
        persist: Callable[[T, _WriteLog, StoreSnapshot], Awaitable[None]],
    ) -> MutationResult[T]:
        """快照 -> 乐观写入 -> 等待持久化 -> 提交或回滚。

        必须在持有会话锁时调用。
        """
        snap = self._store.snapshot(chat_id, [mid for mid in touched_ids if mid])
        log = _WriteLog(self._persistence, chat_id)
        try:
            value = apply()
            try:
                await persist(value, log, snap)
            except BusinessError:
                raise
            except Exception as exc:
                raise PersistenceError(code="STORE_WRITE_ERROR", message=str(exc) or type(exc).__name__) from exc
        except BusinessError as error:
            self._store.restore(snap)
            await self._compensate(log, snap)
            self._log(logging.WARNING, "Mutation rolled back", chat_id, operation, code=error.code, error=error.message)
            self._notify(ChatEvent(
                kind="rolled_back",
                chat_id=chat_id,
                operation=operation,
                path=self.get_path(chat_id),
                error=error,
            ))
            return MutationResult(ok=False, error=error)
        except BaseException as exc:
            # 包括 CancelledError：调用方放弃等待时同样回滚
            self._store.restore(snap)
            self._log(logging.WARNING, "Mutation aborted", chat_id, operation, error=type(exc).__name__)
            await asyncio.shield(self._compensate(log, snap))
            raise
        self._log(
            logging.INFO,
            "Mutation committed",
            chat_id,
            operation,
            active_leaf_id=self._store.get_session(chat_id).active_leaf_id,
        )
        self._notify(ChatEvent(kind="committed", chat_id=chat_id, operation=operation, path=self.get_path(chat_id)))
        return MutationResult(ok=True, value=value)

    async def _compensate(self, log: _WriteLog, snap: StoreSnapshot) -> None:
        """尽力撤销已经写入持久化层的部分。补偿失败只记录日志。"""
        steps: List[Tuple[str, Callable[[], Awaitable[Any]]]] = []
        if log.deleted:
            # 快照中的消息按先序排列，父节点总在子节点之前写回
            for msg in snap.messages.values():
                steps.append(("restore_deleted", lambda msg=msg: self._persistence.put_message(msg)))
        for mid in reversed(log.created):
            steps.append(("delete_created", lambda mid=mid: self._persistence.delete_subtree(mid)))
        if log.leaf_move is not None:
            expected, new = log.leaf_move
            steps.append(("restore_active_leaf", lambda: self._persistence.compare_and_set_active_leaf(log.chat_id, new, expected)))
        for name, step in steps:
            try:
                await step()
            except Exception as exc:
                self._log(logging.ERROR, "Compensation failed", snap.chat_id, name, error=str(exc))

    async def _compensate_chat_creation(self, chat_id: str) -> None:
        try:
            await self._persistence.delete_chat(chat_id)
        except Exception as exc:
            self._log(logging.ERROR, "Compensation failed", chat_id, "create_chat", error=str(exc))

    # ---- 内部：流式生成 ----

    def _start_generation(
        self,
        chat_id: str,
        user_id: Optional[str],
        assistant_id: str,
        gen_settings: ChatSettings,
        lock: asyncio.Lock,
    ) -> GenerationHandle:
        """启动后台流式任务；锁的所有权随之转移给该任务。"""
        active = _ActiveStream(message_id=assistant_id, cancel=asyncio.Event(), settings=gen_settings)
        self._streams[chat_id] = active
        active.task = asyncio.create_task(self._generate(chat_id, active, lock))
        active.handle = GenerationHandle(chat_id, user_id, assistant_id, active.task)
        return active.handle

    async def _generate(self, chat_id: str, active: _ActiveStream, lock: asyncio.Lock) -> Message:
        message_id = active.message_id
        try:
            try:
                request = self._build_request(chat_id, message_id, active.settings)
                self._log(
                    logging.INFO,
                    "Opening stream",
                    chat_id,
                    "generate",
                    transport=getattr(self._transport, "name", ""),
                    message_id=message_id,
                    context_messages=len(request.messages),
                )
                source = await self._open_stream(request, active.cancel)
            except Exception as exc:
                msg = self._end_before_stream(message_id, "failed", exc)
            else:
                if source is None:
                    msg = self._end_before_stream(message_id, "cancelled")
                else:
                    msg = await self._ingest(chat_id, active, source)
            await self._persist_final(msg)
            self._notify(ChatEvent(
                kind="finished",
                chat_id=chat_id,
                operation="generate",
                path=self.get_path(chat_id),
                message=msg,
            ))
            return msg
        finally:
            if self._streams.get(chat_id) is active:
                del self._streams[chat_id]
            lock.release()

    async def _open_stream(self, request: GenerationRequest, cancel: asyncio.Event) -> Optional[ByteSource]:
        """打开传输流，与取消信号和空闲超时竞争；被取消时返回 None。"""
        open_task = asyncio.ensure_future(self._transport.open_stream(request))
        cancel_task = asyncio.ensure_future(cancel.wait())
        try:
            done, _ = await asyncio.wait(
                {open_task, cancel_task},
                timeout=self._idle_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except BaseException:
            open_task.cancel()
            raise
        finally:
            cancel_task.cancel()
            await asyncio.gather(cancel_task, return_exceptions=True)
        if open_task in done:
            return open_task.result()
        open_task.cancel()
        outcome = (await asyncio.gather(open_task, return_exceptions=True))[0]
        if outcome is not None and not isinstance(outcome, BaseException):
            # 取消与建立连接恰好同时完成
            await outcome.aclose()
        if cancel.is_set():
            return None
        raise StreamTransportError(
            code="STREAM_IDLE_TIMEOUT",
            message=f"No response from transport within {self._idle_timeout} seconds",
        )

    async def _ingest(self, chat_id: str, active: _ActiveStream, source: ByteSource) -> Message:
        return await self._ingestor.ingest(
            active.message_id,
            source,
            active.cancel,
            on_chunk=lambda m, delta: self._notify(
                ChatEvent(kind="chunk", chat_id=chat_id, operation="generate", message=m, delta=delta)
            ),
        )

    def _end_before_stream(self, message_id: str, status: MessageStatus, exc: Optional[Exception] = None) -> Message:
        """流未打开就结束：占位消息经 streaming 直接进入终态。"""
        self._store.update_content(message_id, status="streaming")
        if exc is None:
            msg = self._store.update_content(message_id, status=status)
            logger.info("Stream cancelled before open", extra={"extra": {"chat_id": msg.chat_id, "message_id": message_id}})
            return msg
        error = exc if isinstance(exc, StreamTransportError) else StreamTransportError(
            code="STREAM_OPEN_ERROR", message=str(exc) or type(exc).__name__
        )
        msg = self._store.update_content(message_id, status=status, error=error.message)
        logger.warning(
            "Stream open failed",
            extra={"extra": {"chat_id": msg.chat_id, "message_id": message_id, "code": error.code, "error": error.message}},
        )
        return msg

    async def _persist_final(self, msg: Message) -> None:
        try:
            await self._persistence.put_message(msg)
        except Exception as exc:
            # 内存中的终态消息保留，持久化失败只能记录，下次 load_chat 时以存储为准
            self._log(logging.ERROR, "Persist final message failed", msg.chat_id, "generate", message_id=msg.id, error=str(exc))

    def _build_request(self, chat_id: str, assistant_id: str, gen_settings: ChatSettings) -> GenerationRequest:
        """根据活动路径构造生成上下文，跳过失败/未完成的消息并裁剪长度。

        系统提示词取自本次生成的设置（可能被请求级参数覆盖），不再读取根消息内容。
        """
        assistant = self._store.get_message(assistant_id)
        path = self._resolver.resolve_path(assistant.parent_id) if assistant.parent_id else []
        system: List[ContextMessage] = []
        if gen_settings.system_prompt:
            system.append(ContextMessage(role="system", content=gen_settings.system_prompt))
        turns: List[ContextMessage] = []
        for msg in path:
            if msg.role == "system" or msg.status in ("pending", "streaming", "failed") or not msg.content:
                continue
            turns.append(ContextMessage(role=msg.role, content=msg.content))
        if len(turns) > self._max_context:
            turns = turns[-self._max_context:]
        return GenerationRequest(
            chat_id=chat_id,
            message_id=assistant_id,
            messages=system + turns,
            settings=gen_settings,
        )

    @staticmethod
    def _generation_settings(
        session: ChatSession,
        system_prompt: Optional[str],
        temperature: Optional[float],
        top_k: Optional[int],
    ) -> ChatSettings:
        """会话设置叠加请求级覆盖参数。"""
        if temperature is not None and not 0.0 <= temperature <= 2.0:
            raise ValidationError(code="INVALID_SETTINGS", message=f"temperature must be within [0, 2], got {temperature}")
        if top_k is not None and top_k < 1:
            raise ValidationError(code="INVALID_SETTINGS", message=f"top_k must be >= 1, got {top_k}")
        overrides: Dict[str, Any] = {}
        if system_prompt is not None:
            overrides["system_prompt"] = system_prompt
        if temperature is not None:
            overrides["temperature"] = temperature
        if top_k is not None:
            overrides["top_k"] = top_k
        return replace(session.settings, **overrides)

    # ---- 内部：工具 ----

    def _lock_for(self, chat_id: str) -> asyncio.Lock:
        lock = self._locks.get(chat_id)
        if lock is None:
            lock = self._locks[chat_id] = asyncio.Lock()
        return lock

    async def _ensure_loaded(self, chat_id: str, force: bool = False) -> ChatSession:
        if self._store.has_session(chat_id) and not force:
            return self._store.get_session(chat_id)
        session = await self._persistence.get_chat(chat_id)
        messages = await self._persistence.list_messages(chat_id)
        self._store.load(session, messages)
        self._log(logging.INFO, "Loaded chat", chat_id, "load_chat", message_count=len(messages))
        return session

    async def chat_of(self, message_id: str) -> str:
        if self._store.has_message(message_id):
            return self._store.get_message(message_id).chat_id
        msg = await self._persistence.get_message(message_id)
        return msg.chat_id

    def _notify(self, event: ChatEvent) -> None:
        for callback in list(self._subscribers.get(event.chat_id, [])):
            try:
                callback(event)
            except Exception:
                logger.exception(
                    "Subscriber callback failed",
                    extra={"extra": {"chat_id": event.chat_id, "event": event.kind}},
                )

    @staticmethod
    def _require_content(content: str) -> None:
        if not content or not content.strip():
            raise ValidationError(code="EMPTY_CONTENT", message="Message content must not be empty")

    @staticmethod
    def _as_business_error(exc: Exception) -> BusinessError:
        if isinstance(exc, BusinessError):
            return exc
        return PersistenceError(code="STORE_WRITE_ERROR", message=str(exc) or type(exc).__name__)

    @staticmethod
    def _log(level: int, message: str, chat_id: str, operation: str, **fields: Any) -> None:
        payload: Dict[str, Any] = {"chat_id": chat_id, "operation": operation}
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})
