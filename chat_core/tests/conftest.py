import asyncio
import json

import pytest

from chat_core.engine.orchestrator import MutationOrchestrator
from chat_core.infrastructure.storage.memory_store import InMemoryChatPersistence


def sse(*chunks):
    """把若干文本块编码为 SSE data 行。"""
    return b"".join(f"data: {json.dumps(c)}\n\n".encode("utf-8") for c in chunks)


class ScriptedSource:
    """按脚本逐段返回字节。

    脚本元素：bytes 直接返回；asyncio.Event 阻塞到被 set；
    float 先 sleep 再继续；异常实例直接抛出。
    """

    def __init__(self, parts):
        self._parts = list(parts)
        self.closed = False
        self.reads = 0

    async def read(self):
        while self._parts:
            item = self._parts.pop(0)
            if isinstance(item, asyncio.Event):
                await item.wait()
                continue
            if isinstance(item, float):
                await asyncio.sleep(item)
                continue
            if isinstance(item, BaseException):
                raise item
            self.reads += 1
            return item
        return b""

    async def aclose(self):
        self.closed = True


class FakeTransport:
    name = "fake"

    def __init__(self, scripts=None):
        self.scripts = list(scripts or [])
        self.requests = []
        self.sources = []

    async def open_stream(self, req):
        self.requests.append(req)
        parts = self.scripts.pop(0) if self.scripts else [sse("ok")]
        if isinstance(parts, BaseException):
            raise parts
        if isinstance(parts, asyncio.Event):
            # 模拟服务端迟迟不返回响应头
            await parts.wait()
            parts = [sse("ok")]
        source = ScriptedSource(parts)
        self.sources.append(source)
        return source


class FlakyPersistence(InMemoryChatPersistence):
    """可注入失败与延迟的内存持久化。"""

    def __init__(self):
        super().__init__()
        self.fail_on = set()
        self.delays = {}
        self.calls = []

    async def _hook(self, name):
        self.calls.append(name)
        delay = self.delays.get(name)
        if delay:
            await asyncio.sleep(delay)
        if name in self.fail_on:
            raise OSError(f"{name} unavailable")

    async def put_message(self, message):
        await self._hook("put_message")
        await super().put_message(message)

    async def delete_subtree(self, message_id):
        await self._hook("delete_subtree")
        return await super().delete_subtree(message_id)

    async def compare_and_set_active_leaf(self, chat_id, expected, new):
        await self._hook("compare_and_set_active_leaf")
        return await super().compare_and_set_active_leaf(chat_id, expected, new)


@pytest.fixture
def persistence():
    return FlakyPersistence()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def orchestrator(persistence, transport):
    return MutationOrchestrator(persistence=persistence, transport=transport, idle_timeout=2.0)
