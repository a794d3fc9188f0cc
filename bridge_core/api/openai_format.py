"""OpenAI 风格响应信封的转换。

- completion_envelope: 非流式 chat.completion 响应。
- stream_events: 流式 chat.completion.chunk 的 SSE 文本，以 ``data: [DONE]`` 结束。
- error_envelope: 业务异常 → {"error": {message, type, code}}。
- bearer_token: 从 Authorization 头中提取凭证。
"""

import json
import time
from typing import Any, Dict, Iterator, Optional, Tuple

from bridge_core.domain.exceptions import AuthError, BusinessError, RemoteServiceError, ValidationError


def _completion_id() -> str:
    return f"chatcmpl-{int(time.time() * 1000)}"


def completion_envelope(text: str, model: str) -> Dict[str, Any]:
    return {
        "id": _completion_id(),
        "object": "chat.completion",
        "created": int(time.time()),
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": text},
                "finish_reason": "stop",
            }
        ],
        # 远端服务不提供 token 统计
        "usage": {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0},
    }


def stream_events(text: str, model: str) -> Iterator[str]:
    """远端回合一次性返回完整文本，因此只产生一个内容块和一个结束块。"""

    created = int(time.time())
    content_chunk = {
        "id": _completion_id(),
        "object": "chat.completion.chunk",
        "created": created,
        "model": model,
        "choices": [
            {"index": 0, "delta": {"role": "assistant", "content": text}, "finish_reason": None}
        ],
    }
    yield f"data: {json.dumps(content_chunk, ensure_ascii=False)}\n\n"
    end_chunk = {
        "id": _completion_id(),
        "object": "chat.completion.chunk",
        "created": created,
        "model": model,
        "choices": [{"index": 0, "delta": {}, "finish_reason": "stop"}],
    }
    yield f"data: {json.dumps(end_chunk, ensure_ascii=False)}\n\n"
    yield "data: [DONE]\n\n"


def error_envelope(err: BusinessError) -> Tuple[int, Dict[str, Any]]:
    if isinstance(err, (ValidationError, AuthError)):
        err_type = "invalid_request_error"
    elif isinstance(err, RemoteServiceError):
        err_type = "remote_service_error"
    else:
        err_type = "internal_error"
    body: Dict[str, Any] = {
        "message": err.message,
        "type": err_type,
        "code": err.code.lower(),
    }
    if err.extra:
        body["details"] = {k: v for k, v in err.extra.items() if isinstance(v, (str, int, float, bool, type(None)))}
    return err.http_status, {"error": body}


def bearer_token(header: Optional[str]) -> Optional[str]:
    if not header or not header.startswith("Bearer "):
        return None
    token = header[len("Bearer "):].strip()
    return token or None
