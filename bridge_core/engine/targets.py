"""edit / delete / regenerate 共用的目标定位。

规则：显式 index（在范围内时）→ 显式 id（首个匹配）→ 显式 time（首个匹配）。
多条消息时间戳相同时按线性扫描取第一条，这是刻意保留的策略。
"""

from typing import Optional

from bridge_core.domain.exceptions import ValidationError
from bridge_core.domain.models import Conversation, TargetSpec, epoch_millis, parse_timestamp


def resolve_target(conversation: Conversation, target: Optional[TargetSpec]) -> int:
    """返回目标消息在 conversation.messages 中的下标。

    Raises:
        ValidationError: 目标描述为空、time 无法解析或没有匹配的消息。
    """

    if target is None or target.is_empty():
        raise ValidationError(code="TARGET_REQUIRED", message="target is required")
    messages = conversation.messages

    if target.index is not None and 0 <= target.index < len(messages):
        return target.index

    if target.id:
        for i, m in enumerate(messages):
            if m.id == target.id:
                return i

    if target.time is not None:
        try:
            wanted = epoch_millis(parse_timestamp(target.time))
        except (ValueError, OverflowError):
            raise ValidationError(code="INVALID_TARGET_TIME", message=f"invalid target time: {target.time!r}")
        for i, m in enumerate(messages):
            if epoch_millis(m.created_at) == wanted:
                return i

    raise ValidationError(code="TARGET_NOT_FOUND", message="target not found")


def resolve_user_target(conversation: Conversation, target: Optional[TargetSpec]) -> int:
    """与 resolve_target 相同，但要求目标是 user 消息。"""

    index = resolve_target(conversation, target)
    if conversation.messages[index].role != "user":
        raise ValidationError(code="TARGET_NOT_USER", message="target must be a user message")
    return index
