"""转录调和引擎。

对外提供 send / edit / delete / regenerate（以及导入后使用的 resync），
负责：加载快照 → 借助远端适配器修改或重建 → 每个状态变化后持久化。

引擎本身不持有跨调用的状态，也不加锁：同一会话 key 同时只能有一个操作在执行，
串行化由调用方（见 api.service.ChatService）负责。
"""

import logging
import time
from typing import Any, Dict, Optional, Tuple
from uuid import uuid4

from bridge_core.domain.conversation import ConversationStore
from bridge_core.domain.exceptions import AuthError, BusinessError, RemoteServiceError, ValidationError
from bridge_core.domain.models import (
    Conversation,
    Message,
    TargetSpec,
    new_message_id,
    utcnow,
)
from bridge_core.engine.rebuild import Rebuild, RebuildPlan, ReplayItem, causal_parent
from bridge_core.engine.targets import resolve_target, resolve_user_target
from bridge_core.infrastructure.logging.logger import logger
from bridge_core.providers.base import DialogueAdapter


class ReconciliationEngine:
    def __init__(self, store: ConversationStore, adapter: DialogueAdapter):
        self._store = store
        self._adapter = adapter

    def send(self, key: str, character_id: str, text: str) -> Tuple[Conversation, Message]:
        """追加用户消息并请求远端回复。

        远端失败时，未回答的用户消息保持已持久化状态，并抛出 RemoteServiceError。
        """

        if not text or not text.strip():
            raise ValidationError(code="EMPTY_MESSAGE", message="message text must not be empty")
        log_ctx = self._log_ctx(key, "send")
        conv = self._load(key, character_id)

        user_msg = Message(id=new_message_id(), role="user", content=text, created_at=utcnow())
        conv.messages.append(user_msg)
        self._persist(key, conv)
        self._log(logging.INFO, "Stored user message", log_ctx, message_id=user_msg.id)

        try:
            result = self._adapter.start_turn(conv.character_id, text, conv.chain_pointer)
        except RemoteServiceError as e:
            e.extra.update(conversation_id=key)
            self._log(logging.WARNING, "send left user message unanswered", log_ctx, error=e.message)
            raise

        assistant_msg = Message(
            id=new_message_id(),
            role="assistant",
            content=result.text,
            created_at=utcnow(),
            turn_id=result.turn_id,
            candidate_id=result.candidate_id,
        )
        conv.messages.append(assistant_msg)
        conv.chain_pointer = result.turn_id
        self._persist(key, conv)
        self._log(
            logging.INFO,
            "Stored assistant message",
            log_ctx,
            message_id=assistant_msg.id,
            turn_id=result.turn_id,
            elapsed_seconds=round(time.time() - log_ctx["started"], 2),
        )
        return conv, assistant_msg

    def regenerate(self, key: str, character_id: str, target: Optional[TargetSpec] = None) -> Conversation:
        """重新生成目标用户消息的回复。

        优先就地重新生成（不影响其他消息）；就地调用失败或回复没有可用的 turn_id 时，
        退回到“从目标处截断并重放”的重建路径。
        """

        log_ctx = self._log_ctx(key, "regenerate")
        conv = self._load(key, character_id)
        index = self._regenerate_index(conv, target)

        answer = conv.answer_to(index)
        if answer is not None and answer.turn_id:
            old_turn_id = answer.turn_id
            try:
                result = self._adapter.regenerate_turn(old_turn_id)
            except RemoteServiceError as e:
                self._log(
                    logging.WARNING,
                    "In-place regenerate failed, falling back to rebuild",
                    log_ctx,
                    turn_id=old_turn_id,
                    error=e.message,
                )
            else:
                answer.content = result.text
                if result.turn_id:
                    answer.turn_id = result.turn_id
                if result.candidate_id:
                    answer.candidate_id = result.candidate_id
                if conv.chain_pointer == old_turn_id:
                    conv.chain_pointer = answer.turn_id
                self._persist(key, conv)
                self._log(logging.INFO, "Regenerated in place", log_ctx, message_id=answer.id, turn_id=answer.turn_id)
                return conv

        plan = RebuildPlan(
            truncate_at=index,
            replay=[ReplayItem(m.content) for m in conv.messages[index:] if m.role == "user"],
        )
        return self._rebuild(key, conv, plan, log_ctx)

    def edit(self, key: str, character_id: str, target: Optional[TargetSpec], new_content: str) -> Conversation:
        """改写用户消息，并重建其后的所有回合。"""

        if not new_content or not new_content.strip():
            raise ValidationError(code="EMPTY_CONTENT", message="new_content must not be empty")
        log_ctx = self._log_ctx(key, "edit")
        conv = self._load(key, character_id)
        index = resolve_user_target(conv, target)

        target_msg = conv.messages[index]
        later = [ReplayItem(m.content) for m in conv.messages[index + 1:] if m.role == "user"]
        target_msg.content = new_content
        plan = RebuildPlan(
            truncate_at=index,
            retained=target_msg,
            replay=[ReplayItem(new_content, message=target_msg)] + later,
        )
        return self._rebuild(key, conv, plan, log_ctx)

    def delete(self, key: str, character_id: str, target: Optional[TargetSpec]) -> Conversation:
        """删除用户消息（连同其回复），并以新的因果父节点重放后续用户消息。"""

        log_ctx = self._log_ctx(key, "delete")
        conv = self._load(key, character_id)
        index = resolve_user_target(conv, target)
        plan = RebuildPlan(
            truncate_at=index,
            replay=[ReplayItem(m.content) for m in conv.messages[index + 1:] if m.role == "user"],
        )
        return self._rebuild(key, conv, plan, log_ctx)

    def resync(self, key: str, character_id: str) -> Conversation:
        """把最后一条已确认回复之后的用户消息依次发送给远端。

        用于导入外部记录后补齐远端回合。用户消息原地保留（id 与时间不变），
        远端回复写在其后一位：紧随其后的是没有 turn_id 的降级回复时替换它，
        否则插入。每一步成功后立即持久化；某一步失败时停止，
        尚未同步的消息保持原样。没有待同步内容时不做任何修改。
        """

        log_ctx = self._log_ctx(key, "resync")
        conv = self._load(key, character_id)
        start = 0
        for i in range(len(conv.messages) - 1, -1, -1):
            if conv.messages[i].confirmed:
                start = i + 1
                break
        pending = [m for m in conv.messages[start:] if m.role == "user"]
        if not pending:
            self._log(logging.INFO, "Nothing to sync", log_ctx)
            return conv

        parent = causal_parent(conv.messages, start)
        self._log(logging.INFO, "Resync started", log_ctx, planned_steps=len(pending), parent_turn_id=parent)
        for step, user_msg in enumerate(pending):
            try:
                result = self._adapter.start_turn(conv.character_id, user_msg.content, parent)
            except (RemoteServiceError, AuthError) as e:
                e.extra.update(conversation_id=key, completed_steps=step, planned_steps=len(pending))
                self._log(logging.WARNING, "Resync stopped", log_ctx, completed_steps=step, error=e.message)
                raise

            reply = Message(
                id=new_message_id(),
                role="assistant",
                content=result.text,
                created_at=utcnow(),
                turn_id=result.turn_id,
                candidate_id=result.candidate_id,
            )
            at = conv.index_of(user_msg.id) + 1
            if at < len(conv.messages) and conv.messages[at].role == "assistant" and not conv.messages[at].confirmed:
                conv.messages[at] = reply
            else:
                conv.messages.insert(at, reply)
            parent = result.turn_id
            conv.chain_pointer = result.turn_id
            self._persist(key, conv)
            self._log(logging.INFO, "Stored assistant message", log_ctx, message_id=reply.id, turn_id=result.turn_id)

        self._log(logging.INFO, "Resync finished", log_ctx, completed_steps=len(pending), chain_pointer=parent)
        return conv

    def load(self, key: str, character_id: str) -> Conversation:
        """读取会话；不存在时返回一个尚未持久化的新会话。"""

        return self._load(key, character_id)

    def _rebuild(self, key: str, conv: Conversation, plan: RebuildPlan, log_ctx: Dict[str, Any]) -> Conversation:
        self._log(
            logging.INFO,
            "Rebuild started",
            log_ctx,
            truncate_at=plan.truncate_at,
            planned_steps=len(plan.replay),
        )
        rebuild = Rebuild(
            conv,
            plan,
            self._adapter,
            persist=lambda c: self._persist(key, c),
            log_ctx=log_ctx,
        )
        return rebuild.run()

    def _regenerate_index(self, conv: Conversation, target: Optional[TargetSpec]) -> int:
        if target is None or target.is_empty():
            index = conv.last_user_index()
            if index is None:
                raise ValidationError(code="NO_USER_MESSAGE", message="no user message to regenerate")
            return index
        index = resolve_target(conv, target)
        if conv.messages[index].role == "user":
            return index
        # 目标是 assistant 时，重新生成的是它所回答的那条用户消息
        if index == 0 or conv.messages[index - 1].role != "user":
            raise ValidationError(code="TARGET_NOT_USER", message="target reply has no preceding user message")
        return index - 1

    def _load(self, key: str, character_id: str) -> Conversation:
        conv = self._store.load(key)
        if conv is not None:
            if not conv.character_id:
                conv.character_id = character_id
            return conv
        now = utcnow()
        return Conversation(
            conversation_id=key,
            character_id=character_id,
            display_name=self._display_name(character_id),
            created_at=now,
            updated_at=now,
        )

    def _display_name(self, character_id: str) -> str:
        try:
            info = self._adapter.get_session_info(character_id)
        except BusinessError as e:
            logger.warning(
                f"Session info unavailable, using character id: {e.message}",
                extra={"extra": {"character_id": character_id}},
            )
            return character_id
        return info.display_name or character_id

    def _persist(self, key: str, conv: Conversation) -> None:
        conv.touch()
        self._store.save(key, conv)

    @staticmethod
    def _log_ctx(key: str, operation: str) -> Dict[str, Any]:
        return {
            "trace_id": f"tr-{uuid4().hex}",
            "conversation_id": key,
            "operation": operation,
            "started": time.time(),
        }

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})
