"""Timestamped backups of edited files."""

from __future__ import annotations

import time
from pathlib import Path

from coding_agent_cli.infrastructure.logging import get_logger

logger = get_logger(__name__)

BACKUP_MARKER = ".backup."


def backup_path_for(path: Path, timestamp_ms: int) -> Path:
    """``<original>.backup.<timestamp>`` 形式のバックアップパスを返す."""
    return path.with_name(f"{path.name}{BACKUP_MARKER}{timestamp_ms}")


def create_backup(path: Path, data: bytes) -> Path:
    """
    編集前の内容をバックアップファイルとして書き出す.

    同じミリ秒に複数のバックアップが作られた場合は、空いている
    タイムスタンプが見つかるまで1ずつ進める。

    Args:
        path: 編集対象のファイル
        data: 編集前のファイル内容

    Returns:
        作成したバックアップファイルのパス

    Raises:
        OSError: 書き込みに失敗した場合
    """
    timestamp_ms = int(time.time() * 1000)
    backup = backup_path_for(path, timestamp_ms)
    while backup.exists():
        timestamp_ms += 1
        backup = backup_path_for(path, timestamp_ms)

    # 既存ファイルを上書きしないよう排他作成する
    with backup.open("xb") as f:
        f.write(data)

    logger.info("Created backup", path=str(path), backup_path=str(backup))
    return backup


def list_backups(path: Path) -> list[Path]:
    """
    ファイルのバックアップ一覧を古い順に返す.

    Args:
        path: 編集対象のファイル

    Returns:
        バックアップファイルのパス（タイムスタンプ昇順）
    """
    prefix = f"{path.name}{BACKUP_MARKER}"
    backups: list[tuple[int, Path]] = []
    for candidate in path.parent.glob(f"{path.name}{BACKUP_MARKER}*"):
        stamp = candidate.name[len(prefix) :]
        if stamp.isdigit() and candidate.is_file():
            backups.append((int(stamp), candidate))
    backups.sort()
    return [p for _, p in backups]


def prune_backups(path: Path, keep: int) -> list[Path]:
    """
    最新の ``keep`` 件を残して古いバックアップを削除する.

    Args:
        path: 編集対象のファイル
        keep: 保持する件数（1以上）

    Returns:
        削除したバックアップファイルのパス

    Raises:
        ValueError: keepが1未満の場合
    """
    if keep < 1:
        msg = f"keep must be >= 1, got {keep}"
        raise ValueError(msg)

    backups = list_backups(path)
    removed: list[Path] = []
    for old in backups[: max(len(backups) - keep, 0)]:
        try:
            old.unlink()
            removed.append(old)
        except OSError:
            logger.warning("Failed to remove old backup", backup_path=str(old), exc_info=True)

    if removed:
        logger.info("Pruned old backups", path=str(path), removed_count=len(removed))
    return removed
