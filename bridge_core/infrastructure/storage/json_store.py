import json
import os
import re
from pathlib import Path
from typing import List, Optional
from uuid import uuid4

from bridge_core.config.settings import settings
from bridge_core.domain.conversation import ConversationStore
from bridge_core.domain.models import Conversation
from bridge_core.domain.exceptions import StoreError, ValidationError


_KEY_RE = re.compile(r"^[A-Za-z0-9._\-]+$")


class JsonConversationStore(ConversationStore):
    """每个会话 key 对应 ``<root>/<key>.json`` 的整快照存储。"""

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def load(self, key: str) -> Optional[Conversation]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise StoreError(code="STORE_READ_ERROR", message=str(e), key=key)
        if not isinstance(data, dict):
            raise StoreError(code="STORE_READ_ERROR", message=f"{path.name} is not a JSON object", key=key)
        try:
            return Conversation.from_record(data, key=key)
        except (TypeError, ValueError) as e:
            raise StoreError(code="STORE_READ_ERROR", message=f"{path.name} is corrupt: {e}", key=key)

    def save(self, key: str, conversation: Conversation) -> None:
        path = self._path(key)
        tmp_path = self._root / f".{key}.{uuid4().hex}.json.tmp"
        try:
            tmp_path.write_text(
                json.dumps(conversation.to_record(), ensure_ascii=False, indent=2),
                encoding="utf-8",
            )
            os.replace(tmp_path, path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise StoreError(code="STORE_WRITE_ERROR", message=str(e), key=key)

    def list_keys(self) -> List[str]:
        return sorted(p.stem for p in self._root.glob("*.json") if not p.name.startswith("."))

    def delete(self, key: str) -> bool:
        path = self._path(key)
        if not path.exists():
            return False
        try:
            path.unlink()
        except OSError as e:
            raise StoreError(code="STORE_DELETE_ERROR", message=str(e), key=key)
        return True

    def _path(self, key: str) -> Path:
        # key 会出现在文件名中，拒绝路径分隔符与 ".." 之类的输入
        if not key or not _KEY_RE.match(key) or key.startswith("."):
            raise ValidationError(code="INVALID_KEY", message=f"invalid conversation key: {key!r}")
        return self._root / f"{key}.json"
