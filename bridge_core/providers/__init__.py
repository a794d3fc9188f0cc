"""远端对话服务集成层。

该包下的模块负责：
- 定义远端适配器抽象接口 (base)。
- 提供具体 HTTP 实现 (dialogue_client)。
"""

from bridge_core.config.settings import settings
from bridge_core.providers.base import DialogueAdapter
from bridge_core.providers.dialogue_client import DialogueClient


def create_adapter(token: str) -> DialogueAdapter:
    """用调用方凭证创建适配器实例。"""

    return DialogueClient(settings, token)
