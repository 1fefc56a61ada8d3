"""Subprocess execution for the shell tool."""

from __future__ import annotations

import asyncio
import os
import signal
from dataclasses import dataclass
from typing import TYPE_CHECKING

from coding_agent_cli.infrastructure.logging import get_logger

if TYPE_CHECKING:
    import asyncio.subprocess as aio_subprocess
    from pathlib import Path

logger = get_logger(__name__)

READ_CHUNK_SIZE = 4096

# kill後に残りの出力を読み切るまでの待ち時間（秒）
DRAIN_TIMEOUT = 1.0


@dataclass(frozen=True)
class CommandOutput:
    """サブプロセスの実行結果."""

    exit_code: int | None
    stdout: str
    stderr: str
    timed_out: bool = False


async def _kill_process_group(process: aio_subprocess.Process) -> None:
    """プロセスグループごと強制終了し、終了を待つ（冪等）."""
    if process.returncode is not None:
        return
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    except PermissionError:
        # プロセスグループが既に別物になっている場合は本体だけ止める
        process.kill()
    try:
        await asyncio.wait_for(process.wait(), timeout=5.0)
    except TimeoutError:
        logger.error("Process did not exit after SIGKILL", pid=process.pid)


async def _read_stream(stream: asyncio.StreamReader | None, buffer: bytearray) -> None:
    """EOFまでストリームを読み、読んだ分を順次bufferに追記する."""
    if stream is None:
        return
    while True:
        chunk = await stream.read(READ_CHUNK_SIZE)
        if not chunk:
            return
        buffer.extend(chunk)


async def _collect_output(
    process: aio_subprocess.Process, stdout: bytearray, stderr: bytearray
) -> None:
    await asyncio.gather(
        _read_stream(process.stdout, stdout),
        _read_stream(process.stderr, stderr),
    )
    await process.wait()


def _decode(data: bytearray) -> str:
    return data.decode("utf-8", errors="replace").strip()


async def run_shell_command(
    command: str,
    *,
    cwd: Path,
    timeout: float,
    executable: str = "bash",
    stdin_enabled: bool = True,
) -> CommandOutput:
    """
    シェルコマンドを ``[executable, "-c", command]`` として実行する.

    子プロセスは新しいプロセスグループで起動し、タイムアウトまたは
    キャンセル時にはグループごと強制終了する。タイムアウト時もそれまでに
    読めた出力は結果に含める。

    Args:
        command: 実行するコマンド
        cwd: 作業ディレクトリ
        timeout: タイムアウト（秒）
        executable: 使用するシェル
        stdin_enabled: Falseの場合は標準入力を /dev/null に接続する

    Returns:
        実行結果（stdout/stderr は前後の空白を除去済み）

    Raises:
        asyncio.CancelledError: 実行中にキャンセルされた場合（プロセスはkill済み）
    """
    try:
        process = await asyncio.create_subprocess_exec(
            executable,
            "-c",
            command,
            cwd=str(cwd),
            stdin=asyncio.subprocess.PIPE if stdin_enabled else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
    except OSError as e:
        logger.error("Failed to spawn shell", executable=executable, error=str(e))
        return CommandOutput(exit_code=None, stdout="", stderr=str(e))

    logger.debug("Spawned shell process", pid=process.pid, command=command[:200])

    if process.stdin is not None:
        process.stdin.close()

    stdout = bytearray()
    stderr = bytearray()
    collector = asyncio.ensure_future(_collect_output(process, stdout, stderr))
    try:
        done, _ = await asyncio.wait({collector}, timeout=timeout)
    except asyncio.CancelledError:
        logger.warning("Shell command cancelled, killing process group", pid=process.pid)
        await _kill_process_group(process)
        collector.cancel()
        await asyncio.gather(collector, return_exceptions=True)
        raise

    if not done:
        logger.warning(
            "Shell command timed out, killing process group",
            pid=process.pid,
            timeout=timeout,
        )
        await _kill_process_group(process)
        try:
            await asyncio.wait_for(collector, timeout=DRAIN_TIMEOUT)
        except TimeoutError:
            logger.warning("Output pipes still open after kill", pid=process.pid)
        note = f"Command timed out after {timeout:g} seconds"
        return CommandOutput(
            exit_code=None,
            stdout=_decode(stdout),
            stderr=f"{_decode(stderr)}\n{note}".strip(),
            timed_out=True,
        )

    await collector
    return CommandOutput(
        exit_code=process.returncode,
        stdout=_decode(stdout),
        stderr=_decode(stderr),
    )
