"""领域层模型与协议。

包含：
- models: 与补全端点交换的 ChatMessage / ChatRequest / ChatUsage / StreamFrame。
- conversation: Conversation / Message / StreamingState 以及 PersistenceService 协议。
- usage: UsageSnapshot / UserTier 以及 AuthProvider / TierService 协议。
- errors: 封闭错误分类 ErrorKind 与 StructuredError。
- exceptions: 业务异常类型定义。
"""
