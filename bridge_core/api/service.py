"""对外服务模块。

把传输层的请求转换成引擎操作：凭证检查 → 请求校验 → 按会话 key 串行化 → 分发。
"""

import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional

from bridge_core.config.settings import settings
from bridge_core.domain.conversation import ConversationStore, conversation_key
from bridge_core.domain.exceptions import AuthError, ValidationError
from bridge_core.domain.models import OPERATIONS, Conversation, Message, OperationRequest
from bridge_core.engine.reconciler import ReconciliationEngine
from bridge_core.infrastructure.logging.logger import logger
from bridge_core.api.openai_format import bearer_token
from bridge_core.providers import create_adapter
from bridge_core.providers.base import DialogueAdapter


AdapterFactory = Callable[[str], DialogueAdapter]


@dataclass
class OperationResult:
    """send 返回新的 assistant 消息；其余操作返回重建后的完整会话。"""

    operation: str
    conversation: Conversation
    message: Optional[Message] = None


class KeyedLocks:
    """按会话 key 分配的进程内互斥锁。

    每个 key 记录持有或等待的线程数，归零时移除，表中只保留正在使用的 key。
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, List[Any]] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class ChatService:
    def __init__(
        self,
        store: ConversationStore,
        adapter_factory: AdapterFactory = create_adapter,
        default_user: Optional[str] = None,
    ):
        self._store = store
        self._adapter_factory = adapter_factory
        self._default_user = default_user or settings.default_user
        self._locks = KeyedLocks()

    @property
    def store(self) -> ConversationStore:
        return self._store

    def handle(self, request: OperationRequest, authorization: Optional[str]) -> OperationResult:
        """执行一次转录操作。

        Args:
            request: 操作请求（character_id、operation 及其参数）
            authorization: 原始 Authorization 头

        Returns:
            OperationResult

        Raises:
            各种 domain.exceptions 中定义的异常
        """
        token = bearer_token(authorization)
        if not token:
            raise AuthError(
                code="INVALID_API_KEY",
                message="Missing or invalid authorization header. Use: Authorization: Bearer YOUR_TOKEN",
            )
        self._validate(request)
        key = conversation_key(request.character_id, request.user or self._default_user)
        try:
            engine = ReconciliationEngine(self._store, self._adapter_factory(token))
            with self._locks.hold(key):
                return self._dispatch(engine, key, request)
        except Exception as e:
            logger.error(f"{request.operation} failed: {e}", extra={"extra": {
                "conversation_id": key,
                "operation": request.operation,
                "error": str(e),
            }})
            raise

    def health(self, authorization: Optional[str]) -> Dict[str, Any]:
        token = bearer_token(authorization)
        remote_status = "no_token_provided"
        if token:
            remote_status = "connected" if self._adapter_factory(token).check_health() else "connection_failed"
        return {
            "status": "ok",
            "service": settings.service_name,
            "version": settings.service_version,
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "remote_status": remote_status,
            "storage": {
                "type": "local_json",
                "conversations_count": len(self._store.list_keys()),
            },
        }

    def list_conversations(self) -> List[str]:
        return self._store.list_keys()

    def get_conversation(self, key: str) -> Optional[Conversation]:
        return self._store.load(key)

    def _dispatch(self, engine: ReconciliationEngine, key: str, request: OperationRequest) -> OperationResult:
        op = request.operation
        if op == "send":
            conv, message = engine.send(key, request.character_id, request.messages[-1].content)
            return OperationResult(operation=op, conversation=conv, message=message)
        if op == "edit":
            conv = engine.edit(key, request.character_id, request.target, request.new_content or "")
        elif op == "delete":
            conv = engine.delete(key, request.character_id, request.target)
        else:
            conv = engine.regenerate(key, request.character_id, request.target)
        return OperationResult(operation=op, conversation=conv)

    @staticmethod
    def _validate(request: OperationRequest) -> None:
        if not request.character_id:
            raise ValidationError(
                code="INVALID_MODEL",
                message="Missing model parameter. Use character ID as model.",
            )
        if request.operation not in OPERATIONS:
            raise ValidationError(
                code="INVALID_OPERATION",
                message=f"operation must be one of {', '.join(OPERATIONS)}",
            )
        if request.operation == "send":
            if not request.messages:
                raise ValidationError(
                    code="INVALID_MESSAGES",
                    message="Messages array is required and must not be empty",
                )
            if request.messages[-1].role != "user":
                raise ValidationError(code="INVALID_LAST_MESSAGE", message="Last message must be from user")
        elif request.operation in ("edit", "delete"):
            if request.target is None or request.target.is_empty():
                raise ValidationError(code="TARGET_REQUIRED", message=f"{request.operation} requires a target")
            if request.operation == "edit" and not (request.new_content or "").strip():
                raise ValidationError(code="INVALID_NEW_CONTENT", message="edit requires new_content")
