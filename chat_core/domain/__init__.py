"""领域层模型与协议。

包含：
- models: Message / ChatSession / PathEntry / ChatEvent 等模型。
- conversation: 持久化协作方 ChatPersistence 协议。
- exceptions: 业务异常类型定义。
"""
