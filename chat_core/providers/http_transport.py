"""HTTP 流式传输适配器。

本模块负责：

1. 接收统一的 GenerationRequest。
2. 将其转换为生成服务的 HTTP 请求（POST + text/event-stream）。
3. 处理网络/API 异常，统一包装为 StreamTransportError。
4. 把响应体包装为拉取式 ByteSource，交给 StreamIngestor 解析。

空闲超时由编排器（等待响应头）和 StreamIngestor（等待字节）统一控制，
因此这里关闭了 httpx 的读超时，只保留连接/写入超时。
"""

import json
from contextlib import AsyncExitStack
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from chat_core.domain.exceptions import StreamTransportError, ValidationError
from chat_core.domain.models import GenerationRequest


class HttpByteSource:
    """httpx 流式响应的拉取式包装。"""

    def __init__(self, stack: AsyncExitStack, response: httpx.Response):
        self._stack = stack
        self._response = response
        self._chunks: AsyncIterator[bytes] = response.aiter_bytes()
        self._closed = False

    async def read(self) -> bytes:
        if self._closed:
            return b""
        try:
            return await self._chunks.__anext__()
        except StopAsyncIteration:
            return b""
        except httpx.HTTPError as e:
            # 连接中断、读取失败等
            raise StreamTransportError(code="NETWORK_ERROR", message=str(e) or type(e).__name__)

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._stack.aclose()


class HttpStreamTransport:
    """基于 httpx.AsyncClient 的生成流传输。

    - name: 传输名称（供日志使用）。
    - open_stream: 发起请求并在响应头就绪后返回 ByteSource。
    """

    name = "http"

    def __init__(self, settings):
        # Settings 里包含 base_url、api_key、超时等配置
        self._settings = settings

    async def open_stream(self, req: GenerationRequest) -> HttpByteSource:
        base = getattr(self._settings, "generation_base_url", None)
        if not base:
            raise ValidationError(code="MISSING_BASE_URL", message="GENERATION_BASE_URL not set")
        payload = self._build_payload(req)
        stack = AsyncExitStack()
        try:
            client = await stack.enter_async_context(
                httpx.AsyncClient(
                    timeout=httpx.Timeout(self._settings.http_timeout, read=None),
                    trust_env=False,
                )
            )
            resp = await stack.enter_async_context(
                client.stream(
                    "POST",
                    f"{base.rstrip('/')}/chats/{req.chat_id}/generate",
                    json=payload,
                    headers=self._headers(),
                )
            )
            if resp.status_code == 429:
                raise StreamTransportError(code="RATE_LIMIT", message="Generation rate limit", http_status=429)
            if resp.status_code >= 400:
                body = await resp.aread()
                raise StreamTransportError(
                    code="API_ERROR",
                    message=self._error_message(body, resp.status_code),
                    http_status=resp.status_code,
                )
        except httpx.RequestError as e:
            await stack.aclose()
            # 网络错误：DNS 失败、连接超时等
            raise StreamTransportError(code="NETWORK_ERROR", message=str(e) or type(e).__name__)
        except BaseException:
            await stack.aclose()
            raise
        return HttpByteSource(stack, resp)

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }
        api_key: Optional[str] = getattr(self._settings, "generation_api_key", None)
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return headers

    def _build_payload(self, req: GenerationRequest) -> Dict[str, Any]:
        """将 GenerationRequest 转成生成服务所需的请求 JSON。"""

        payload: Dict[str, Any] = {
            "messageId": req.message_id,
            "messages": [{"role": m.role, "content": m.content} for m in req.messages],
            "stream": True,
        }
        if req.settings.model:
            payload["model"] = req.settings.model
        if req.settings.temperature is not None:
            payload["temperature"] = req.settings.temperature
        if req.settings.top_k is not None:
            payload["top_k"] = req.settings.top_k
        return payload

    @staticmethod
    def _error_message(body: bytes, status_code: int) -> str:
        """优先取响应 JSON 中的 message 字段，否则回退为原始文本。"""

        text = body.decode("utf-8", errors="replace")
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            return text or f"Request failed with status {status_code}"
        if isinstance(data, dict) and data.get("message"):
            return str(data["message"])
        return text
