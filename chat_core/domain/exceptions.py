"""聊天核心的业务异常。

只有契约违例（历史不合法、标题为空、会话不存在）和存储失败会以异常形式抛出；
补全端点返回的错误与传输失败统一经 ErrorClassifier 转成 StructuredError 走回调。
NetworkError / AuthenticationError 只在客户端内部构造，随即交给分类器。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "CONVERSATION_NOT_FOUND"、"STORE_WRITE_ERROR"）。
        message: 面向用户的错误信息。
        http_status: 经 API 层暴露时使用的状态码，默认 400。
        extra: 附带的上下文字段（conversation_id、detail 等），分类时并入 raw。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class NetworkError(BusinessError):
    """连接失败、超时或读流中断。"""


class AuthenticationError(BusinessError):
    """没有可用的 bearer token，或会话已过期。"""


class ValidationError(BusinessError):
    """调用方传入的参数不满足约束。"""
