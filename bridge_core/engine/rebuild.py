"""转录局部重建（rebuild）状态机。

远端回合链是线性的：每个新回合都必须引用它所延续的回合 id。
当转录在第 k 条被改写/删除/重新生成时，第 k 条之后的所有 assistant 回复
在因果上都依赖旧内容，因此需要截断并按原顺序逐条重放后续的用户消息。

状态流转：

    COMPENSATE → TRUNCATE → REPLAY(i) → DONE
                                  └──→ FAILED

- COMPENSATE: 尽力删除截断点之后已确认的远端回合，失败只记 warning。
- TRUNCATE: 截断本地转录（edit 会保留改写后的目标消息）并持久化。
- REPLAY(i): 以运行中的因果父节点调用 start_turn，成功后追加并持久化。
- FAILED: 某一步远端调用失败，已提交的步骤保留，不回滚。
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from bridge_core.domain.exceptions import AuthError, BusinessError, RemoteServiceError
from bridge_core.domain.models import Conversation, Message, new_message_id, utcnow
from bridge_core.infrastructure.logging.logger import logger
from bridge_core.providers.base import DialogueAdapter


class RebuildState(str, Enum):
    COMPENSATE = "compensate"
    TRUNCATE = "truncate"
    REPLAY = "replay"
    DONE = "done"
    FAILED = "failed"


@dataclass
class ReplayItem:
    """待重放的一条用户消息。

    message 不为空时表示该用户消息已保留在转录中（edit 的目标），
    重放时只追加 assistant 回复；否则以新 id 追加一条新的用户消息。
    """

    content: str
    message: Optional[Message] = None


@dataclass
class RebuildPlan:
    truncate_at: int
    replay: List[ReplayItem] = field(default_factory=list)
    retained: Optional[Message] = None


def causal_parent(messages: List[Message], before: int) -> Optional[str]:
    """截断点之前最近一条已确认 assistant 消息的 turn_id；没有则为 None（远端链从头开始）。"""

    for i in range(min(before, len(messages)) - 1, -1, -1):
        if messages[i].confirmed:
            return messages[i].turn_id
    return None


class Rebuild:
    """一次重建的执行过程。

    可以用 run() 一次跑完，也可以逐步调用 advance() 观察每个状态，
    便于确定性地测试部分成功的行为。
    """

    def __init__(
        self,
        conversation: Conversation,
        plan: RebuildPlan,
        adapter: DialogueAdapter,
        persist: Callable[[Conversation], None],
        log_ctx: Optional[Dict[str, Any]] = None,
    ):
        self.conversation = conversation
        self.plan = plan
        self.state = RebuildState.COMPENSATE
        self.step = 0
        self.parent = causal_parent(conversation.messages, plan.truncate_at)
        self.produced: List[str] = []
        self.error: Optional[BusinessError] = None
        self._adapter = adapter
        self._persist = persist
        self._log_ctx = dict(log_ctx or {})
        self._stale_turns = [
            m.turn_id for m in conversation.messages[plan.truncate_at:] if m.confirmed
        ]

    @property
    def finished(self) -> bool:
        return self.state in (RebuildState.DONE, RebuildState.FAILED)

    def run(self) -> Conversation:
        while not self.finished:
            self.advance()
        if self.error is not None:
            raise self.error
        return self.conversation

    def advance(self) -> RebuildState:
        """执行当前状态对应的一步，返回新的状态。"""

        if self.state is RebuildState.COMPENSATE:
            self._compensate()
            self.state = RebuildState.TRUNCATE
        elif self.state is RebuildState.TRUNCATE:
            self._truncate()
            self.state = RebuildState.REPLAY if self.plan.replay else RebuildState.DONE
        elif self.state is RebuildState.REPLAY:
            self._replay_one()
        if self.finished:
            self._log(
                logging.INFO if self.state is RebuildState.DONE else logging.WARNING,
                "Rebuild finished",
                state=self.state.value,
                completed_steps=self.step,
                planned_steps=len(self.plan.replay),
                chain_pointer=self.conversation.chain_pointer,
            )
        return self.state

    def _compensate(self) -> None:
        for turn_id in self._stale_turns:
            try:
                self._adapter.delete_turn(turn_id)
            except BusinessError as e:
                self._log(
                    logging.WARNING,
                    "Compensation delete_turn failed",
                    event="compensation_failed",
                    turn_id=turn_id,
                    error=e.message,
                )

    def _truncate(self) -> None:
        conv = self.conversation
        kept = conv.messages[: self.plan.truncate_at]
        if self.plan.retained is not None:
            kept.append(self.plan.retained)
        conv.messages = kept
        if self.parent is not None:
            conv.chain_pointer = self.parent
        self._persist(conv)
        self._log(
            logging.INFO,
            "Transcript truncated",
            truncate_at=self.plan.truncate_at,
            kept=len(kept),
            parent_turn_id=self.parent,
            compensated=len(self._stale_turns),
        )

    def _replay_one(self) -> None:
        conv = self.conversation
        item = self.plan.replay[self.step]
        try:
            result = self._adapter.start_turn(conv.character_id, item.content, self.parent)
        except (RemoteServiceError, AuthError) as e:
            e.extra.update(
                conversation_id=conv.conversation_id,
                completed_steps=self.step,
                planned_steps=len(self.plan.replay),
            )
            self.error = e
            self.state = RebuildState.FAILED
            return

        if item.message is None:
            conv.messages.append(
                Message(id=new_message_id(), role="user", content=item.content, created_at=utcnow())
            )
        conv.messages.append(
            Message(
                id=new_message_id(),
                role="assistant",
                content=result.text,
                created_at=utcnow(),
                turn_id=result.turn_id,
                candidate_id=result.candidate_id,
            )
        )
        self.parent = result.turn_id
        self.produced.append(result.turn_id)
        conv.chain_pointer = result.turn_id
        self._persist(conv)
        self.step += 1
        if self.step >= len(self.plan.replay):
            self.state = RebuildState.DONE

    def _log(self, level: int, message: str, **fields: Any) -> None:
        payload = dict(self._log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})
