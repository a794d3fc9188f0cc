"""领域层模型与协议。

包含：
- models: Message / Conversation / TargetSpec 等转录模型及持久化格式转换。
- conversation: ConversationStore 抽象与会话 key 规则。
- exceptions: 业务异常类型定义。
"""
