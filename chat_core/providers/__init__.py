"""生成流传输层。

该包下的模块负责：
- 定义传输抽象接口 (base)。
- 提供具体实现 (如 http_transport)。
"""

from typing import Optional

from chat_core.config.settings import settings
from chat_core.providers.base import ByteSource, GenerationTransport
from chat_core.providers.http_transport import HttpStreamTransport


def create_transport(name: Optional[str] = None) -> GenerationTransport:
    """根据名称创建传输实例，目前只有 http 一种实现。"""

    transport_name = (name or "http").lower()
    if transport_name != "http":
        raise ValueError(f"Unknown transport: {name!r}")
    return HttpStreamTransport(settings)


__all__ = ["ByteSource", "GenerationTransport", "HttpStreamTransport", "create_transport"]
