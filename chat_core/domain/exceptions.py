"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在 API 层或 UI 层做统一捕获与用户提示。

分类：
- ValidationError: 引用格式错误、非法的状态迁移等。
- NotFoundError: 会话或消息不存在。
- ConflictError: 结构性前置条件不满足（例如重复创建根消息）。
- StreamTransportError: 流式传输过程中的网络/协议错误。
- PersistenceError: 存储读写失败。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "MESSAGE_NOT_FOUND"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 chat_id、message_id 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class ValidationError(BusinessError):
    """参数校验失败或状态迁移不合法。"""


class NotFoundError(BusinessError):
    """会话或消息不存在。"""

    def __init__(self, code: str, message: str, http_status: int = 404, **extra):
        super().__init__(code, message, http_status, **extra)


class ConflictError(BusinessError):
    """结构性前置条件被破坏，例如同一会话创建第二个根消息。"""

    def __init__(self, code: str, message: str, http_status: int = 409, **extra):
        super().__init__(code, message, http_status, **extra)


class StreamTransportError(BusinessError):
    """流式生成过程中的传输层错误（断连、超时、服务端 error 事件）。"""

    def __init__(self, code: str, message: str, http_status: int = 502, **extra):
        super().__init__(code, message, http_status, **extra)


class PersistenceError(BusinessError):
    """持久化层读写失败。"""

    def __init__(self, code: str, message: str, http_status: int = 500, **extra):
        super().__init__(code, message, http_status, **extra)
