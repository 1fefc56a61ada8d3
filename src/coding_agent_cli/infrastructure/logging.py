"""Structured logging configuration."""

from __future__ import annotations

import logging
import sys
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Any

import structlog

# HTTPクライアントのデバッグログはリクエストごとに大量に出るため抑える
NOISY_LOGGERS = ("openai", "httpx", "httpcore")

# ログに残す文字列値の最大長（ファイル内容やコマンド出力が混ざるため）
MAX_VALUE_LENGTH = 2000

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def _resolve_level(log_level: str) -> int:
    level = _LEVELS.get(log_level.upper())
    if level is None:
        print(
            f"Warning: Invalid log level '{log_level}', defaulting to INFO",
            file=sys.stderr,
        )
        return logging.INFO
    return level


def truncate_long_values(
    _logger: Any, _method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """長すぎる文字列値を切り詰めるstructlogプロセッサー."""
    for key, value in event_dict.items():
        if key != "exception" and isinstance(value, str) and len(value) > MAX_VALUE_LENGTH:
            omitted = len(value) - MAX_VALUE_LENGTH
            event_dict[key] = f"{value[:MAX_VALUE_LENGTH]}... ({omitted} more chars)"
    return event_dict


def _rotating_handler(
    path: Path,
    level: int,
    backup_count: int,
    formatter: logging.Formatter,
) -> TimedRotatingFileHandler:
    """日次ローテーションするファイルハンドラーを作成する."""
    handler = TimedRotatingFileHandler(
        path,
        when="midnight",
        backupCount=backup_count,
        encoding="utf-8",
    )
    handler.suffix = "%Y-%m-%d"
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def configure_logging(
    log_level: str = "INFO",
    log_dir: str = "logs",
    log_backup_count: int = 7,
) -> None:
    """
    構造化ロギングを設定する.

    端末には会話が表示されるため、コンソール (stderr) にはERROR以上のみを出し、
    それ以外はJSON形式でファイルに記録する:
    - <log_dir>/latest.log: log_level以上
    - <log_dir>/error.log: WARNING以上

    ログディレクトリが作成できない場合はコンソールのみで継続する。

    Args:
        log_level: ログレベル（DEBUG, INFO, WARNING, ERROR, CRITICAL）
        log_dir: ログ出力ディレクトリ
        log_backup_count: ログローテーションの保持日数
    """
    level = _resolve_level(log_level)

    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            truncate_long_values,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.JSONRenderer(ensure_ascii=False),
        ],
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.ERROR)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    log_path = Path(log_dir)
    try:
        log_path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        print(
            f"Warning: Failed to create log directory '{log_dir}': {e}. "
            "Falling back to console-only logging.",
            file=sys.stderr,
        )
        return

    root_logger.addHandler(
        _rotating_handler(log_path / "latest.log", level, log_backup_count, formatter)
    )
    root_logger.addHandler(
        _rotating_handler(log_path / "error.log", logging.WARNING, log_backup_count, formatter)
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """
    構造化ロガーを取得する.

    Args:
        name: ロガー名（通常は __name__ を指定）

    Returns:
        構造化ロガー
    """
    return structlog.get_logger(name)  # type: ignore[no-any-return]
