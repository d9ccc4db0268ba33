"""补全端点集成层。

该包下的模块负责：
- 定义流式客户端抽象接口与取消原语 (base)。
- 维护模型目录 (registry)。
- 提供基于 httpx 的流式实现 (completion_client)。
"""
