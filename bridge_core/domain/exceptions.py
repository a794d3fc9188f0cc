"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在 API 层统一捕获并转换为 OpenAI 风格的错误响应。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 conversation_id、completed_steps 等）。
    """

    http_status_default = 400

    def __init__(self, code: str, message: str, http_status: int | None = None, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status or self.http_status_default
        self.extra = extra
        super().__init__(message)


class ValidationError(BusinessError):
    """参数、操作或目标定位校验失败。不会产生任何持久化副作用。"""


class AuthError(BusinessError):
    """远端服务凭证缺失或无效。"""

    http_status_default = 401


class StoreError(BusinessError):
    """会话存储读写失败。"""

    http_status_default = 500


class RemoteServiceError(BusinessError):
    """主路径上的远端调用失败。

    已提交的转录状态会被保留（不回滚），由调用方决定是否重试。
    """

    http_status_default = 502


class NetworkError(RemoteServiceError):
    """网络层错误，例如连接失败、超时等。"""


class ApiError(RemoteServiceError):
    """远端返回非 2xx 错误时抛出。"""


class RateLimitError(RemoteServiceError):
    """远端限流错误，由上层负责重试/退避策略。"""
