from typing import List, Optional, Protocol

from .models import Conversation


def conversation_key(character_id: str, user: Optional[str] = None) -> str:
    """会话 key 由调用方与角色共同决定：``{user}_{character_id}``。"""

    return f"{user or 'default'}_{character_id}"


class ConversationStore(Protocol):
    """整快照读写的会话存储：无局部字段更新，最后一次写入生效。"""

    def load(self, key: str) -> Optional[Conversation]:
        ...

    def save(self, key: str, conversation: Conversation) -> None:
        ...

    def list_keys(self) -> List[str]:
        ...

    def delete(self, key: str) -> bool:
        ...
