"""Bridge Core 顶层包。

该包把回合制的远端角色对话服务包装成 OpenAI 风格的聊天接口，
包括配置加载、转录模型、远端适配、转录调和引擎（send / edit / delete / regenerate）、
JSON 持久化存储、HTTP 服务与外部记录导入等能力。
"""

from bridge_core.engine import ReconciliationEngine

__all__ = ["ReconciliationEngine"]
