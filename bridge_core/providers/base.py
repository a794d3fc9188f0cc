"""远端对话适配器抽象接口。

引擎不直接依赖具体远端服务的 HTTP 细节，而是依赖此协议：

- 每种远端实现一个 DialogueAdapter（如 DialogueClient）。
- 负责：把引擎的回合操作转成具体 API 请求，并把响应严格解析为 TurnResult 等显式类型。

失败统一以 domain.exceptions 中的类型抛出：远端调用失败为 RemoteServiceError
及其子类，凭证问题为 AuthError。
"""

from typing import Optional, Protocol

from bridge_core.domain.models import SessionInfo, TurnResult


class DialogueAdapter(Protocol):
    """回合制远端对话服务协议。

    - start_turn: 以 prior_turn_id 为因果父节点开启新回合。
    - regenerate_turn: 为已有回合生成新的候选回复。
    - delete_turn: 删除回合；重复删除已删除的回合不报错。
    - get_session_info: 获取角色元数据，尽力而为。
    """

    name: str

    def start_turn(self, character_id: str, text: str, prior_turn_id: Optional[str]) -> TurnResult:
        ...

    def regenerate_turn(self, turn_id: str) -> TurnResult:
        ...

    def delete_turn(self, turn_id: str) -> None:
        ...

    def get_session_info(self, character_id: str) -> SessionInfo:
        ...

    def check_health(self) -> bool:
        ...
