"""传输层抽象接口。

引擎不直接依赖具体的 HTTP/WebSocket 实现，而是依赖此协议：

- GenerationTransport.open_stream(req) 打开一次生成流；
- 返回的 ByteSource 只需要支持拉取式读取与关闭（关闭即取消信号）。

这样测试里可以用内存字节源替换真实网络，也可以接入其他传输方式。
"""

from typing import Protocol

from chat_core.domain.models import GenerationRequest


class ByteSource(Protocol):
    """拉取式字节源。

    - read(): 返回下一段字节；返回 b"" 表示流已结束。
    - aclose(): 通知上游停止发送并释放连接，可重复调用。
    """

    async def read(self) -> bytes:
        ...

    async def aclose(self) -> None:
        ...


class GenerationTransport(Protocol):
    name: str

    async def open_stream(self, req: GenerationRequest) -> ByteSource:
        ...
