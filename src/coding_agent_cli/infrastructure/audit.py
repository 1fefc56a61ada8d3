"""Append-only JSONL audit trail for approvals and tool executions."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from coding_agent_cli.infrastructure.logging import get_logger

logger = get_logger(__name__)


class AuditLog:
    """監査ログ.

    1行1イベントのJSONLとして追記する。書き込みに失敗しても
    会話は継続し、エラーはログに記録する。
    """

    def __init__(self, path: Path) -> None:
        """
        Initialize AuditLog.

        Args:
            path: 出力先ファイル
        """
        self.path = path

    def record(self, action: str, **details: Any) -> None:
        """
        イベントを1件追記する.

        Args:
            action: イベント種別（例: "approval_decided"）
            **details: イベントの詳細
        """
        event: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "action": action,
            **details,
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(event, ensure_ascii=False, sort_keys=True, default=str) + "\n")
        except OSError:
            logger.exception("Failed to write audit log", path=str(self.path), action=action)

    def read_events(self) -> list[dict[str, Any]]:
        """記録済みのイベントを全て読み込む."""
        if not self.path.exists():
            return []
        return [
            json.loads(line)
            for line in self.path.read_text(encoding="utf-8").splitlines()
            if line.strip()
        ]
