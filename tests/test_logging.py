"""Tests for structured logging configuration."""

from __future__ import annotations

import json
import logging
from logging.handlers import TimedRotatingFileHandler
from typing import TYPE_CHECKING

import pytest

if TYPE_CHECKING:
    from pathlib import Path

from coding_agent_cli.infrastructure.logging import (
    MAX_VALUE_LENGTH,
    configure_logging,
    get_logger,
    truncate_long_values,
)


@pytest.fixture(autouse=True)
def _reset_logging() -> None:
    """各テスト前にルートロガーのハンドラーをリセットする."""
    logging.getLogger().handlers.clear()


@pytest.fixture
def log_dir(tmp_path: Path) -> Path:
    """テスト用の一時ログディレクトリを返す."""
    return tmp_path / "logs"


def _file_handlers() -> list[TimedRotatingFileHandler]:
    return [
        h for h in logging.getLogger().handlers if isinstance(h, TimedRotatingFileHandler)
    ]


def _flush() -> None:
    for handler in logging.getLogger().handlers:
        handler.flush()


class TestConfigureLogging:
    """configure_logging のテスト."""

    def test_creates_log_directory(self, log_dir: Path) -> None:
        """ログディレクトリが自動作成されることを確認する."""
        assert not log_dir.exists()
        configure_logging(log_dir=str(log_dir))
        assert log_dir.is_dir()

    def test_three_handlers_added(self, log_dir: Path) -> None:
        """ルートロガーに3つのハンドラーが追加されることを確認する."""
        configure_logging(log_dir=str(log_dir))
        assert len(logging.getLogger().handlers) == 3

    def test_console_handler_only_errors(self, log_dir: Path) -> None:
        """コンソールハンドラーがERROR以上のみをstderrに出力することを確認する."""
        configure_logging(log_dir=str(log_dir))
        stream_handlers = [
            h
            for h in logging.getLogger().handlers
            if isinstance(h, logging.StreamHandler)
            and not isinstance(h, TimedRotatingFileHandler)
        ]
        assert len(stream_handlers) == 1
        assert stream_handlers[0].level == logging.ERROR

    @pytest.mark.parametrize(
        ("log_level", "expected"),
        [("DEBUG", logging.DEBUG), ("info", logging.INFO), ("WARNING", logging.WARNING)],
    )
    def test_latest_log_follows_log_level(
        self, log_dir: Path, log_level: str, expected: int
    ) -> None:
        """latest.logハンドラーのレベルがlog_levelに従うことを確認する."""
        configure_logging(log_level=log_level, log_dir=str(log_dir))
        latest = [h for h in _file_handlers() if "latest.log" in h.baseFilename]
        assert len(latest) == 1
        assert latest[0].level == expected

    def test_error_log_handler(self, log_dir: Path) -> None:
        """error.logハンドラーがWARNING以上で設定されることを確認する."""
        configure_logging(log_dir=str(log_dir))
        errors = [h for h in _file_handlers() if "error.log" in h.baseFilename]
        assert len(errors) == 1
        assert errors[0].level == logging.WARNING

    def test_file_handler_rotation_config(self, log_dir: Path) -> None:
        """ファイルハンドラーのローテーション設定を確認する."""
        configure_logging(log_dir=str(log_dir), log_backup_count=3)
        for handler in _file_handlers():
            assert handler.when == "MIDNIGHT"
            assert handler.backupCount == 3
            assert handler.suffix == "%Y-%m-%d"

    def test_invalid_log_level_defaults_to_info(
        self,
        log_dir: Path,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        """無効なログレベルの場合INFOにフォールバックすることを確認する."""
        configure_logging(log_level="VERBOSE", log_dir=str(log_dir))
        captured = capsys.readouterr()
        assert "Invalid log level" in captured.err
        latest = [h for h in _file_handlers() if "latest.log" in h.baseFilename]
        assert latest[0].level == logging.INFO

    def test_third_party_log_levels(self, log_dir: Path) -> None:
        """openai/httpxのログレベルがWARNINGに抑えられることを確認する."""
        configure_logging(log_dir=str(log_dir))
        assert logging.getLogger("openai").level == logging.WARNING
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_fallback_on_directory_creation_failure(
        self,
        tmp_path: Path,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        """ログディレクトリ作成失敗時にコンソールのみで継続することを確認する."""
        blocker = tmp_path / "blocked"
        blocker.write_text("")

        configure_logging(log_dir=str(blocker / "logs"))

        captured = capsys.readouterr()
        assert "Failed to create log directory" in captured.err
        assert _file_handlers() == []


class TestFileOutput:
    """ファイル出力のテスト."""

    def test_error_log_receives_warning_and_above(self, log_dir: Path) -> None:
        """error.logにWARNING以上のログのみ書き込まれることを確認する."""
        configure_logging(log_level="DEBUG", log_dir=str(log_dir))
        logger = get_logger("test")

        logger.info("info msg")
        logger.warning("warning msg")
        _flush()

        latest = (log_dir / "latest.log").read_text()
        error_log = (log_dir / "error.log").read_text()
        assert "info msg" in latest
        assert "warning msg" in latest
        assert "info msg" not in error_log
        assert "warning msg" in error_log

    def test_log_output_is_json_with_context(self, log_dir: Path) -> None:
        """ログ出力がキーワード引数を含むJSON形式であることを確認する."""
        configure_logging(log_dir=str(log_dir))
        logger = get_logger("coding_agent_cli.test")
        logger.warning("json test", call_id="call_1")
        _flush()

        lines = (log_dir / "latest.log").read_text().strip().splitlines()
        records = [json.loads(line) for line in lines]
        record = next(r for r in records if r["event"] == "json test")
        assert record["call_id"] == "call_1"
        assert record["level"] == "warning"
        assert record["logger"] == "coding_agent_cli.test"

    def test_long_values_truncated_in_file(self, log_dir: Path) -> None:
        """長い値が切り詰められて記録されることを確認する."""
        configure_logging(log_dir=str(log_dir))
        logger = get_logger("coding_agent_cli.test")
        logger.warning("long value", stdout="x" * (MAX_VALUE_LENGTH + 10))
        _flush()

        lines = (log_dir / "latest.log").read_text().strip().splitlines()
        record = next(json.loads(line) for line in lines if "long value" in line)
        assert record["stdout"] == "x" * MAX_VALUE_LENGTH + "... (10 more chars)"


class TestTruncateLongValues:
    """truncate_long_values のテスト."""

    def test_short_and_non_string_values_kept(self) -> None:
        """短い文字列と文字列以外の値は変更されないことを確認する."""
        event = {"event": "msg", "path": "a.txt", "changes": 3}
        assert truncate_long_values(None, "info", dict(event)) == event

    def test_exception_text_kept(self) -> None:
        """例外のトレースバックは切り詰めないことを確認する."""
        traceback_text = "Traceback\n" * MAX_VALUE_LENGTH
        result = truncate_long_values(None, "error", {"exception": traceback_text})
        assert result["exception"] == traceback_text
