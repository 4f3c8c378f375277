"""流式增量写入。

把传输层的字节流解析为文本增量，并按到达顺序追加到唯一一条 streaming 消息上。

协议（行式 SSE）：
- "data: <payload>": payload 先按 JSON 解析，结果为字符串则作为增量；
  JSON 解析失败时按原始文本处理。
- "event: error": 下一条 data 行携带错误信息，流以失败结束。
- 空行为分隔符，忽略。

解析器本身是同步的：feed() 接收字节，返回已完整的行；
StreamIngestor 逐行处理，每行之间检查取消信号，因此不会在行中间停止。
"""

import asyncio
import codecs
import json
import logging
from dataclasses import dataclass
from typing import Callable, List, Literal, Optional

from chat_core.config.settings import settings
from chat_core.domain.exceptions import StreamTransportError
from chat_core.domain.models import Message, MessageStatus
from chat_core.engine.store import ConversationStore
from chat_core.infrastructure.logging.logger import logger
from chat_core.providers.base import ByteSource


@dataclass
class StreamEvent:
    kind: Literal["text", "error"]
    text: str


class SSELineParser:
    """增量行解析器。

    多字节字符可能被拆在两次 read 之间，因此使用增量解码器；
    最后一行可能不完整，保留在缓冲区等待下一次 feed。
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._pending_error = False

    def feed(self, data: bytes) -> List[str]:
        self._buffer += self._decoder.decode(data)
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return lines

    def flush(self) -> List[str]:
        """流结束时取出剩余内容（没有换行结尾的最后一行）。"""
        self._buffer += self._decoder.decode(b"", final=True)
        rest, self._buffer = self._buffer, ""
        return [rest] if rest else []

    def parse_line(self, line: str) -> Optional[StreamEvent]:
        line = line.rstrip("\r")
        if not line.strip():
            return None
        if line.startswith("event:"):
            if line[6:].strip() == "error":
                self._pending_error = True
            return None
        if not line.startswith("data:"):
            # 注释行（":" 开头）与未知字段
            return None
        payload = line[5:].strip()
        if self._pending_error:
            self._pending_error = False
            return StreamEvent(kind="error", text=self._error_text(payload))
        if payload == "[DONE]":
            return None
        try:
            value = json.loads(payload)
        except json.JSONDecodeError:
            return StreamEvent(kind="text", text=payload) if payload else None
        if isinstance(value, str):
            return StreamEvent(kind="text", text=value)
        logger.debug("Ignored non-string stream payload", extra={"extra": {"payload_type": type(value).__name__}})
        return None

    @staticmethod
    def _error_text(payload: str) -> str:
        try:
            value = json.loads(payload)
        except json.JSONDecodeError:
            return payload or "stream error"
        if isinstance(value, dict):
            return str(value.get("message") or value.get("error") or value)
        return str(value)


ChunkCallback = Callable[[Message, str], None]
FinishCallback = Callable[[Message], None]
ErrorCallback = Callable[[Message, Exception], None]


class StreamIngestor:
    def __init__(self, store: ConversationStore, idle_timeout: Optional[float] = None):
        self._store = store
        self._idle_timeout = idle_timeout if idle_timeout is not None else settings.stream_idle_timeout

    async def ingest(
        self,
        message_id: str,
        source: ByteSource,
        cancel: asyncio.Event,
        on_chunk: Optional[ChunkCallback] = None,
        on_finish: Optional[FinishCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> Message:
        """消费字节源直到结束、失败或被取消，返回处于终态的消息。

        失败时保留已经收到的内容，只把状态标记为 failed。
        """
        msg = self._store.get_message(message_id)
        if msg.status == "pending":
            self._store.update_content(message_id, status="streaming")
        parser = SSELineParser()
        chunks = 0
        final_status: MessageStatus = "complete"
        error: Optional[Exception] = None
        try:
            while final_status == "complete":
                if cancel.is_set():
                    final_status = "cancelled"
                    break
                data = await self._read(source, cancel)
                if data is None:
                    final_status = "cancelled"
                    break
                eof = not data
                lines = parser.flush() if eof else parser.feed(data)
                for line in lines:
                    if cancel.is_set():
                        final_status = "cancelled"
                        break
                    event = parser.parse_line(line)
                    if event is None:
                        continue
                    if event.kind == "error":
                        raise StreamTransportError(
                            code="STREAM_ERROR_EVENT",
                            message=event.text,
                            message_id=message_id,
                        )
                    if not event.text:
                        continue
                    msg = self._store.update_content(message_id, event.text)
                    chunks += 1
                    if on_chunk:
                        on_chunk(msg, event.text)
                if eof:
                    break
        except StreamTransportError as exc:
            final_status, error = "failed", exc
        except asyncio.CancelledError:
            self._finalize(message_id, "cancelled", None, chunks)
            raise
        finally:
            await self._close(source, message_id)

        msg = self._finalize(message_id, final_status, error, chunks)
        if error is not None:
            if on_error:
                on_error(msg, error)
        elif on_finish:
            on_finish(msg)
        return msg

    async def _read(self, source: ByteSource, cancel: asyncio.Event) -> Optional[bytes]:
        """读取下一段字节；被取消时返回 None，空闲超时抛出 StreamTransportError。"""
        read_task = asyncio.ensure_future(source.read())
        cancel_task = asyncio.ensure_future(cancel.wait())
        try:
            done, _ = await asyncio.wait(
                {read_task, cancel_task},
                timeout=self._idle_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            cancel_task.cancel()
            if not read_task.done():
                read_task.cancel()
            await asyncio.gather(cancel_task, return_exceptions=True)
        if read_task in done:
            try:
                return read_task.result()
            except StreamTransportError:
                raise
            except Exception as exc:
                raise StreamTransportError(code="STREAM_READ_ERROR", message=str(exc) or type(exc).__name__)
        await asyncio.gather(read_task, return_exceptions=True)
        if cancel.is_set():
            return None
        raise StreamTransportError(
            code="STREAM_IDLE_TIMEOUT",
            message=f"No data received for {self._idle_timeout} seconds",
        )

    async def _close(self, source: ByteSource, message_id: str) -> None:
        try:
            await source.aclose()
        except Exception as exc:
            logger.warning(
                "Failed to close stream source",
                extra={"extra": {"message_id": message_id, "error": str(exc)}},
            )

    def _finalize(
        self,
        message_id: str,
        status: MessageStatus,
        error: Optional[Exception],
        chunks: int,
    ) -> Message:
        msg = self._store.update_content(
            message_id,
            status=status,
            error=str(error) if error is not None else None,
        )
        level = logging.WARNING if status == "failed" else logging.INFO
        logger.log(
            level,
            "Stream finished",
            extra={"extra": {
                "chat_id": msg.chat_id,
                "message_id": message_id,
                "status": status,
                "chunks": chunks,
                "content_length": len(msg.content),
            }},
        )
        return msg
