"""离线任务（外部聊天记录导入与远端同步）。"""

from .risu_import import ImportReport, import_and_sync

__all__ = ["ImportReport", "import_and_sync"]
