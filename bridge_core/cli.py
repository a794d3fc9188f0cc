"""命令行入口。

Usage:
  python -m bridge_core.cli serve                         # 启动 HTTP 服务
  python -m bridge_core.cli import-risu chat.json CHAR_ID --token TOKEN
  python -m bridge_core.cli list                          # 列出本地会话
  python -m bridge_core.cli show default_CHAR_ID          # 打印一条会话记录
"""

from __future__ import annotations

import argparse
import json
import sys
from typing import Optional, Sequence

from bridge_core.config.settings import settings
from bridge_core.domain.conversation import conversation_key
from bridge_core.domain.exceptions import BusinessError
from bridge_core.infrastructure.storage.json_store import JsonConversationStore


def _cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("bridge_core.api.app:app", host=args.host, port=args.port)
    return 0


def _cmd_import(args: argparse.Namespace) -> int:
    from bridge_core.providers import create_adapter
    from bridge_core.tasks import import_and_sync

    store = JsonConversationStore(root=settings.storage_root)
    key = conversation_key(args.character_id, args.user or settings.default_user)
    adapter = create_adapter(args.token) if args.token else None
    report = import_and_sync(args.path, key, args.character_id, store, adapter)
    print(f"merged {report.merged} messages into {report.key}; total {report.total}")
    if not report.synced:
        print("no token provided, skipped remote sync")
    return 0


def _cmd_list(args: argparse.Namespace) -> int:
    for key in JsonConversationStore(root=settings.storage_root).list_keys():
        print(key)
    return 0


def _cmd_show(args: argparse.Namespace) -> int:
    conv = JsonConversationStore(root=settings.storage_root).load(args.key)
    if conv is None:
        print(f"conversation {args.key} not found", file=sys.stderr)
        return 1
    print(json.dumps(conv.to_record(), ensure_ascii=False, indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bridge_core",
        description="OpenAI-compatible proxy for turn-based character chat",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="run the HTTP server")
    serve.add_argument("--host", default=settings.host)
    serve.add_argument("--port", type=int, default=settings.port)
    serve.set_defaults(func=_cmd_serve)

    imp = sub.add_parser("import-risu", help="merge a Risu chat export and sync it to the remote service")
    imp.add_argument("path")
    imp.add_argument("character_id")
    imp.add_argument("--token", default=None, help="remote service token; omit to skip sync")
    imp.add_argument("--user", default=None)
    imp.set_defaults(func=_cmd_import)

    lst = sub.add_parser("list", help="list stored conversations")
    lst.set_defaults(func=_cmd_list)

    show = sub.add_parser("show", help="print one stored conversation")
    show.add_argument("key")
    show.set_defaults(func=_cmd_show)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except BusinessError as e:
        print(f"error [{e.code}]: {e.message}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
