"""回合制远端对话服务的 HTTP 适配器。

本模块负责：

1. 接收引擎的回合操作（开启 / 重新生成 / 删除回合，查询角色信息）。
2. 将其转换为远端 HTTP API 请求。
3. 调用 HTTP 接口并处理网络/鉴权/限流/服务端异常。
4. 用 pydantic 模型一次性严格解析响应 JSON，得到 TurnResult / SessionInfo。

远端响应缺少回合 id 或候选文本时直接抛出 RemoteServiceError，
不会退化成空字符串回复。
"""

from typing import Any, List, Optional

import httpx
from pydantic import BaseModel, Field, ValidationError as SchemaError

from bridge_core.domain.exceptions import (
    ApiError,
    AuthError,
    NetworkError,
    RateLimitError,
    RemoteServiceError,
)
from bridge_core.domain.models import SessionInfo, TurnResult
from bridge_core.infrastructure.logging.logger import logger


class _TurnKey(BaseModel):
    turn_id: str = Field(min_length=1)


class _Candidate(BaseModel):
    candidate_id: Optional[str] = None
    raw_content: str = Field(min_length=1)


class _Turn(BaseModel):
    turn_key: _TurnKey
    candidates: List[_Candidate] = Field(min_length=1)


class _TurnEnvelope(BaseModel):
    turn: _Turn


class _Character(BaseModel):
    name: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None


class _CharacterEnvelope(BaseModel):
    character: _Character


class DialogueClient:
    """远端对话服务客户端实现。

    - name: 适配器名称（供日志/调试使用）。
    - token: 调用方的远端凭证，由服务层从 Authorization 头中提取。
    """

    name = "dialogue"

    def __init__(self, settings, token: str):
        if not token:
            raise AuthError(code="MISSING_TOKEN", message="remote service token required")
        # Settings 里包含 base_url、超时等配置
        self._settings = settings
        self._token = token

    def start_turn(self, character_id: str, text: str, prior_turn_id: Optional[str]) -> TurnResult:
        payload = {
            "character_id": character_id,
            "text": text,
            "parent_turn_id": prior_turn_id,
        }
        data = self._request("POST", "/chat/turns", json=payload)
        return self._parse_turn(data)

    def regenerate_turn(self, turn_id: str) -> TurnResult:
        data = self._request("POST", f"/chat/turns/{turn_id}/candidates")
        return self._parse_turn(data)

    def delete_turn(self, turn_id: str) -> None:
        # 已删除的回合返回 404，视为成功
        self._request("DELETE", f"/chat/turns/{turn_id}", tolerate=(404,))

    def get_session_info(self, character_id: str) -> SessionInfo:
        data = self._request("GET", f"/characters/{character_id}")
        try:
            character = _CharacterEnvelope.model_validate(data).character
        except SchemaError as e:
            raise RemoteServiceError(code="BAD_RESPONSE", message=f"unexpected character payload: {e}")
        return SessionInfo(
            display_name=character.name or character_id,
            title=character.title or "",
            description=character.description or "",
        )

    def check_health(self) -> bool:
        """远端连通性与凭证检查，任何失败都返回 False。"""

        try:
            self._request("GET", "/ping")
        except (RemoteServiceError, AuthError) as e:
            logger.info(f"Remote health check failed: {e.message}")
            return False
        return True

    def _request(self, method: str, path: str, json: Any = None, tolerate: tuple = ()) -> Any:
        """发送请求并把 HTTP 层错误映射为业务异常。"""

        url = f"{self._settings.remote_base_url}{path}"
        try:
            with httpx.Client(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = client.request(
                    method,
                    url,
                    json=json,
                    headers={
                        "Authorization": f"Bearer {self._token}",
                        "Content-Type": "application/json",
                    },
                )
        except httpx.RequestError as e:
            # 网络错误：DNS 失败、连接超时等
            raise NetworkError(code="NETWORK_ERROR", message=str(e))
        if resp.status_code in tolerate:
            return None
        if resp.status_code in (401, 403):
            raise AuthError(code="INVALID_TOKEN", message="remote service rejected the token", http_status=401)
        if resp.status_code == 429:
            raise RateLimitError(code="RATE_LIMIT", message="remote service rate limit")
        if resp.status_code >= 400:
            raise ApiError(code="API_ERROR", message=resp.text, upstream_status=resp.status_code)
        if method == "DELETE" or not resp.content:
            return None
        try:
            return resp.json()
        except ValueError:
            raise RemoteServiceError(code="BAD_RESPONSE", message="remote response is not JSON")

    @staticmethod
    def _parse_turn(data: Any) -> TurnResult:
        """将远端回合 JSON 严格解析为 TurnResult（取第一个候选）。"""

        try:
            turn = _TurnEnvelope.model_validate(data).turn
        except SchemaError as e:
            raise RemoteServiceError(code="BAD_RESPONSE", message=f"unexpected turn payload: {e}")
        candidate = turn.candidates[0]
        return TurnResult(
            text=candidate.raw_content,
            turn_id=turn.turn_key.turn_id,
            candidate_id=candidate.candidate_id,
        )
