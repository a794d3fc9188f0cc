"""Risu 聊天导出的导入与远端同步。

Risu 导出格式::

    {"data": [{"message": [{"role": "user" | "char", "data": "...", "time": 1700000000000}]}]}

导入时只合并本地不存在的消息（按 role + time + 内容前 200 字符去重；
本地已有的用户消息，其后的导出回复也不再合并），
合并结果追加到转录末尾并持久化；提供凭证时再调用引擎的 resync，
把最后一条已确认回复之后的用户消息依次发送给远端。
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from bridge_core.domain.conversation import ConversationStore
from bridge_core.domain.exceptions import ValidationError
from bridge_core.domain.models import Conversation, Message, epoch_millis, new_message_id, utcnow
from bridge_core.engine.reconciler import ReconciliationEngine
from bridge_core.infrastructure.logging.logger import logger
from bridge_core.providers.base import DialogueAdapter


@dataclass
class ImportReport:
    key: str
    merged: int
    total: int
    synced: bool


def load_export(path: str | Path) -> List[Dict[str, Any]]:
    """读取导出文件，返回第一个聊天的原始消息列表。"""

    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise ValidationError(code="INVALID_EXPORT", message=f"failed to read {path}: {e}")
    chats = data.get("data") if isinstance(data, dict) else None
    if not isinstance(chats, list) or not chats:
        raise ValidationError(code="INVALID_EXPORT", message="invalid Risu export or empty")
    messages = chats[0].get("message") if isinstance(chats[0], dict) else None
    if not isinstance(messages, list):
        raise ValidationError(code="INVALID_EXPORT", message="no messages found in Risu export")
    return [m for m in messages if isinstance(m, dict)]


def _dedupe_key(m: Message) -> str:
    return f"{m.role}||{epoch_millis(m.created_at)}||{m.content[:200]}"


def merge_messages(conversation: Conversation, raw_messages: List[Dict[str, Any]]) -> int:
    """把导出消息合并进会话，返回新增条数。导入的 assistant 消息没有 turn_id。"""

    existing = {_dedupe_key(m) for m in conversation.messages}
    existing_ids = {m.id for m in conversation.messages}
    merged = 0
    after_known_user = False
    for raw in raw_messages:
        msg = Message.from_record(raw)
        msg.turn_id = None
        msg.candidate_id = None
        key = _dedupe_key(msg)
        if key in existing:
            after_known_user = msg.role == "user"
            continue
        if msg.role == "assistant" and after_known_user:
            # 已存在的用户消息的回复可能已被 resync 替换为远端回合
            continue
        after_known_user = False
        if msg.id in existing_ids:
            # 导出里的 id 与本地冲突时重新分配，保证会话内唯一
            msg.id = new_message_id()
        existing.add(key)
        existing_ids.add(msg.id)
        conversation.messages.append(msg)
        merged += 1
    return merged


def import_and_sync(
    path: str | Path,
    key: str,
    character_id: str,
    store: ConversationStore,
    adapter: Optional[DialogueAdapter] = None,
) -> ImportReport:
    raw_messages = load_export(path)
    conv = store.load(key)
    created = conv is None
    if conv is None:
        now = utcnow()
        conv = Conversation(
            conversation_id=key,
            character_id=character_id,
            display_name=character_id,
            created_at=now,
            updated_at=now,
        )
        logger.info(f"Created new local conversation: {key}")

    merged = merge_messages(conv, raw_messages)
    if merged or created:
        conv.touch()
        store.save(key, conv)
    logger.info(
        f"Merged {merged} messages from Risu export",
        extra={"extra": {"conversation_id": key, "merged": merged, "total": len(conv.messages)}},
    )

    if adapter is None:
        return ImportReport(key=key, merged=merged, total=len(conv.messages), synced=False)

    conv = ReconciliationEngine(store, adapter).resync(key, character_id)
    return ImportReport(key=key, merged=merged, total=len(conv.messages), synced=True)
