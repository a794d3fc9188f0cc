"""转录（transcript）与远端回合的统一数据模型。

本模块定义了在引擎、存储、Provider 与 API 层之间共享的标准数据结构：

- Message: 转录中的一条消息（user/assistant）。
- Conversation: 以会话 key 持久化的完整转录快照。
- TargetSpec: edit/delete/regenerate 的目标描述（index/id/time）。
- TurnResult / SessionInfo: 远端适配器每个操作的显式返回类型。
- OperationRequest: 传输层交给服务层的操作请求。

持久化格式（camelCase 的 JSON 文档）的转换也集中在这里，
存储实现只负责读写字节，不关心字段含义。
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Literal, Optional, Union
from uuid import uuid4


# 转录中只出现 user / assistant 两种角色
Role = Literal["user", "assistant"]
Operation = Literal["send", "edit", "delete", "regenerate"]
OPERATIONS = ("send", "edit", "delete", "regenerate")

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_message_id() -> str:
    """生成与位置无关、永不复用的消息 id。"""

    return f"m-{uuid4().hex}"


def format_timestamp(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: Union[str, int, float, datetime]) -> datetime:
    """解析时间戳：支持 datetime、ISO-8601 字符串以及毫秒级 epoch（数字或数字字符串）。

    Raises:
        ValueError: 无法识别的格式。
    """

    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, bool):
        raise ValueError(f"invalid timestamp: {value!r}")
    if isinstance(value, (int, float)):
        return _EPOCH + timedelta(milliseconds=value)
    text = str(value).strip()
    if text.lstrip("-").isdigit():
        return _EPOCH + timedelta(milliseconds=int(text))
    dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def epoch_millis(dt: datetime) -> int:
    """毫秒精度的整数时间，用于按时间定位消息。"""

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return (dt - _EPOCH) // timedelta(milliseconds=1)


@dataclass
class Message:
    """转录中的一条消息。

    - id: 会话内唯一，创建时分配，永不复用。
    - turn_id: assistant 消息被远端确认后才有值；降级路径（如导入）可为 None。
    - candidate_id: 部分远端会额外返回的候选 id。
    """

    id: str
    role: Role
    content: str
    created_at: datetime
    turn_id: Optional[str] = None
    candidate_id: Optional[str] = None

    @property
    def confirmed(self) -> bool:
        return self.role == "assistant" and bool(self.turn_id)

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "createdAt": format_timestamp(self.created_at),
            "turnId": self.turn_id,
            "candidateId": self.candidate_id,
        }

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "Message":
        # 兼容旧记录：time/timestamp 字段、"char" 角色、缺失 id
        raw_time = data.get("createdAt") or data.get("time") or data.get("timestamp")
        try:
            created_at = parse_timestamp(raw_time) if raw_time is not None else utcnow()
        except ValueError:
            created_at = utcnow()
        role = "user" if data.get("role") == "user" else "assistant"
        return cls(
            id=str(data.get("id") or new_message_id()),
            role=role,
            content=data.get("content") or data.get("data") or "",
            created_at=created_at,
            turn_id=data.get("turnId") or None,
            candidate_id=data.get("candidateId") or None,
        )


@dataclass
class Conversation:
    """某个 (调用方, 角色) 对应的完整转录。

    chain_pointer 是远端回合链的“尖端”，下一次远端调用以它作为因果父节点。
    """

    conversation_id: str
    character_id: str
    display_name: str
    created_at: datetime
    updated_at: datetime
    chain_pointer: Optional[str] = None
    messages: List[Message] = field(default_factory=list)

    def touch(self) -> None:
        self.updated_at = utcnow()

    def index_of(self, message_id: str) -> int:
        for i, m in enumerate(self.messages):
            if m.id == message_id:
                return i
        raise KeyError(message_id)

    def last_user_index(self) -> Optional[int]:
        for i in range(len(self.messages) - 1, -1, -1):
            if self.messages[i].role == "user":
                return i
        return None

    def answer_to(self, index: int) -> Optional[Message]:
        """返回紧跟在 index 处用户消息后的 assistant 消息（若有）。"""

        nxt = index + 1
        if nxt < len(self.messages) and self.messages[nxt].role == "assistant":
            return self.messages[nxt]
        return None

    def to_record(self) -> Dict[str, Any]:
        return {
            "conversationId": self.conversation_id,
            "characterId": self.character_id,
            "displayName": self.display_name,
            "chainPointer": self.chain_pointer,
            "messages": [m.to_record() for m in self.messages],
            "createdAt": format_timestamp(self.created_at),
            "updatedAt": format_timestamp(self.updated_at),
        }

    @classmethod
    def from_record(cls, data: Dict[str, Any], key: Optional[str] = None) -> "Conversation":
        now = utcnow()
        created_raw = data.get("createdAt")
        updated_raw = data.get("updatedAt")
        character_id = data.get("characterId") or ""
        messages = [Message.from_record(m) for m in data.get("messages") or [] if isinstance(m, dict)]
        # 旧记录中可能存在重复或缺失的 id，加载时补齐，保证会话内唯一
        seen: set[str] = set()
        for m in messages:
            if m.id in seen:
                m.id = new_message_id()
            seen.add(m.id)
        return cls(
            conversation_id=data.get("conversationId") or key or "",
            character_id=character_id,
            display_name=data.get("displayName") or data.get("characterName") or character_id,
            created_at=parse_timestamp(created_raw) if created_raw else now,
            updated_at=parse_timestamp(updated_raw) if updated_raw else now,
            chain_pointer=data.get("chainPointer") or data.get("historyId") or None,
            messages=messages,
        )


@dataclass
class TargetSpec:
    """edit/delete/regenerate 的目标描述，三个字段任意组合。

    解析优先级：index（在范围内时）→ id（首个匹配）→ time（首个匹配）。
    """

    index: Optional[int] = None
    id: Optional[str] = None
    time: Optional[Union[str, int, float]] = None

    def is_empty(self) -> bool:
        return self.index is None and not self.id and self.time is None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["TargetSpec"]:
        if not data:
            return None
        index = data.get("index")
        return cls(
            index=int(index) if index is not None else None,
            id=data.get("id"),
            time=data.get("time"),
        )


@dataclass
class TurnResult:
    """start_turn / regenerate_turn 的统一返回结果。"""

    text: str
    turn_id: str
    candidate_id: Optional[str] = None


@dataclass
class SessionInfo:
    """远端角色/会话的元数据。"""

    display_name: str
    title: str = ""
    description: str = ""


@dataclass
class ChatTurn:
    """OpenAI 风格请求中的一条 {role, content}。"""

    role: str
    content: str


@dataclass
class OperationRequest:
    """一次转录操作请求，由传输层构造、服务层校验与分发。"""

    character_id: str
    operation: Operation = "send"
    messages: List[ChatTurn] = field(default_factory=list)
    target: Optional[TargetSpec] = None
    new_content: Optional[str] = None
    user: Optional[str] = None
