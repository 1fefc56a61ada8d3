"""Tests for subprocess execution."""

from __future__ import annotations

import asyncio
import time
from pathlib import Path

import pytest

from coding_agent_cli.infrastructure.shell import run_shell_command


@pytest.mark.asyncio
async def test_captures_stdout_and_stderr_separately(tmp_path: Path) -> None:
    """標準出力と標準エラーが別々に取得され、前後の空白が除去されることを確認する."""
    output = await run_shell_command(
        "echo '  out  '; echo err >&2",
        cwd=tmp_path,
        timeout=5,
    )

    assert output.exit_code == 0
    assert output.stdout == "out"
    assert output.stderr == "err"
    assert output.timed_out is False


@pytest.mark.asyncio
async def test_runs_in_cwd(tmp_path: Path) -> None:
    """指定した作業ディレクトリで実行されることを確認する."""
    output = await run_shell_command("pwd", cwd=tmp_path, timeout=5)
    assert Path(output.stdout).resolve() == tmp_path.resolve()


@pytest.mark.asyncio
async def test_non_zero_exit_code(tmp_path: Path) -> None:
    """終了コードがそのまま返されることを確認する."""
    output = await run_shell_command("exit 3", cwd=tmp_path, timeout=5)
    assert output.exit_code == 3


@pytest.mark.asyncio
async def test_stdin_disabled(tmp_path: Path) -> None:
    """stdin_enabled=Falseの場合は標準入力がEOFになることを確認する."""
    output = await run_shell_command(
        "cat; echo done",
        cwd=tmp_path,
        timeout=5,
        stdin_enabled=False,
    )
    assert output.stdout == "done"


@pytest.mark.asyncio
async def test_timeout_kills_process_group(tmp_path: Path) -> None:
    """タイムアウト時に子プロセスを含めて終了させることを確認する."""
    marker = tmp_path / "marker"
    started = time.monotonic()

    output = await run_shell_command(
        f"(sleep 2; touch {marker}) & sleep 5",
        cwd=tmp_path,
        timeout=0.5,
    )

    assert output.timed_out is True
    assert output.exit_code is None
    assert "timed out after 0.5 seconds" in output.stderr
    assert time.monotonic() - started < 4

    # 孫プロセスも止まっているのでマーカーは作られない
    await asyncio.sleep(2.5)
    assert not marker.exists()


@pytest.mark.asyncio
async def test_timeout_keeps_partial_output(tmp_path: Path) -> None:
    """タイムアウトまでに出力された内容が結果に残ることを確認する."""
    output = await run_shell_command(
        "echo started; echo warming up >&2; sleep 5",
        cwd=tmp_path,
        timeout=0.5,
        stdin_enabled=False,
    )

    assert output.timed_out is True
    assert output.exit_code is None
    assert output.stdout == "started"
    assert output.stderr.startswith("warming up")
    assert output.stderr.endswith("timed out after 0.5 seconds")


@pytest.mark.asyncio
async def test_missing_executable(tmp_path: Path) -> None:
    """シェルが起動できない場合はエラー結果を返すことを確認する."""
    output = await run_shell_command(
        "ls",
        cwd=tmp_path,
        timeout=5,
        executable="/nonexistent/shell",
    )
    assert output.exit_code is None
    assert output.stderr


@pytest.mark.asyncio
async def test_cancellation_kills_process(tmp_path: Path) -> None:
    """キャンセル時にプロセスを終了させて例外を再送出することを確認する."""
    marker = tmp_path / "marker"
    task = asyncio.create_task(
        run_shell_command(f"sleep 2; touch {marker}", cwd=tmp_path, timeout=10)
    )
    await asyncio.sleep(0.3)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    await asyncio.sleep(2.5)
    assert not marker.exists()
