"""Terminal rendering of the conversation and approval prompts."""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, TextIO

from pydantic import BaseModel

from coding_agent_cli.application.models import CancelledResult, ToolCallState
from coding_agent_cli.application.transcript import (
    MessageEnd,
    MessageStart,
    ReasoningDelta,
    TextDelta,
    ToolCallStateChange,
)
from coding_agent_cli.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from coding_agent_cli.application.conversation import Conversation
    from coding_agent_cli.application.models import ApprovalRequest
    from coding_agent_cli.application.transcript import StreamEvent

logger = get_logger(__name__)

LineReader = Callable[[str], Awaitable["str | None"]]

# ツール出力のプレビュー行数
PREVIEW_LINES = 5
# 1行あたりの最大表示文字数
PREVIEW_LINE_WIDTH = 200


class StdinReader:
    """標準入力から1行ずつ非同期に読み込む.

    パイプやTTYはイベントループに接続して読み込み、キャンセル可能にする。
    通常ファイルがリダイレクトされている場合はスレッドで読み込む。
    """

    def __init__(self, output: TextIO = sys.stdout) -> None:
        """
        Initialize StdinReader.

        Args:
            output: プロンプトの出力先
        """
        self._output = output
        self._reader: asyncio.StreamReader | None = None
        self._connected = False

    async def _connect(self) -> None:
        self._connected = True
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader()
        try:
            await loop.connect_read_pipe(
                lambda: asyncio.StreamReaderProtocol(reader), sys.stdin
            )
        except (ValueError, OSError):
            logger.debug("stdin is not a pipe or tty, falling back to thread reads")
            return
        self._reader = reader

    async def __call__(self, prompt: str) -> str | None:
        """
        プロンプトを表示して1行読み込む.

        Returns:
            改行を除いた入力。EOFの場合はNone
        """
        if not self._connected:
            await self._connect()
        self._output.write(prompt)
        self._output.flush()
        if self._reader is not None:
            line = (await self._reader.readline()).decode("utf-8", errors="replace")
        else:
            line = await asyncio.to_thread(sys.stdin.readline)
        if not line:
            return None
        return line.rstrip("\r\n")


def _preview(output: Any) -> str:
    """ツール出力の先頭数行を返す."""
    if isinstance(output, BaseModel):
        payload = output.model_dump(mode="json")
        if "stdout" in payload:
            # シェルの実行結果
            text = payload["stdout"] or payload["stderr"] or f"(exit code {payload['exit_code']})"
        else:
            text = json.dumps(payload, ensure_ascii=False)
    elif isinstance(output, str):
        text = output
    else:
        text = json.dumps(output, ensure_ascii=False, default=str)

    lines = text.splitlines() or [""]
    shown = [line[:PREVIEW_LINE_WIDTH] for line in lines[:PREVIEW_LINES]]
    if len(lines) > PREVIEW_LINES:
        shown.append(f"... ({len(lines) - PREVIEW_LINES} more lines)")
    return "\n".join(f"    {line}" for line in shown)


def _describe_input(tool_input: dict[str, Any] | None) -> str:
    if not tool_input:
        return ""
    if len(tool_input) == 1:
        return str(next(iter(tool_input.values())))
    return json.dumps(tool_input, ensure_ascii=False)[:PREVIEW_LINE_WIDTH]


class TerminalUI:
    """会話を端末に表示し、承認要求をユーザーに確認する."""

    def __init__(
        self,
        *,
        output: TextIO = sys.stdout,
        read_line: LineReader | None = None,
        show_reasoning: bool = False,
    ) -> None:
        """
        Initialize TerminalUI.

        Args:
            output: 出力先
            read_line: 1行読み込む非同期関数（省略時は標準入力）
            show_reasoning: 推論テキストを表示するかどうか
        """
        self._output = output
        self._read_line = read_line or StdinReader(output)
        self._show_reasoning = show_reasoning
        # 会話は後から設定される（コールバック登録のため）
        self.conversation: Conversation | None = None
        # メッセージのロール（message_id -> role）
        self._roles: dict[str, str] = {}
        # 行の途中まで出力済みかどうか
        self._mid_line = False

    def _write(self, text: str) -> None:
        self._output.write(text)
        self._output.flush()

    def _write_line(self, text: str) -> None:
        if self._mid_line:
            self._write("\n")
            self._mid_line = False
        self._write(text + "\n")

    async def prompt(self, prompt: str = "> ") -> str | None:
        """ユーザーの入力を1行読み込む（EOFの場合はNone）."""
        return await self._read_line(prompt)

    def show_error(self, message: str) -> None:
        """エラーメッセージを表示する."""
        self._write_line(f"Error: {message}")

    def handle_event(self, event: StreamEvent) -> None:
        """
        ストリームイベントを表示する.

        Args:
            event: 会話のストリームイベント
        """
        if isinstance(event, MessageStart):
            self._roles[event.message_id] = event.role
        elif isinstance(event, TextDelta):
            if self._roles.get(event.message_id) == "assistant":
                self._write(event.delta)
                self._mid_line = not event.delta.endswith("\n")
        elif isinstance(event, ReasoningDelta):
            if self._show_reasoning:
                self._write(event.delta)
                self._mid_line = not event.delta.endswith("\n")
        elif isinstance(event, ToolCallStateChange):
            self._render_tool_call(event)
        elif isinstance(event, MessageEnd):
            if self._roles.get(event.message_id) == "assistant" and self._mid_line:
                self._write("\n")
                self._mid_line = False

    def _render_tool_call(self, event: ToolCallStateChange) -> None:
        name = event.tool_name
        if event.state == ToolCallState.INPUT_AVAILABLE:
            self._write_line(f"> {name} {_describe_input(event.input)}".rstrip())
        elif event.state == ToolCallState.OUTPUT_ERROR:
            self._write_line(f"x {name} failed: {event.error_text}")
        elif event.state == ToolCallState.OUTPUT_AVAILABLE:
            if isinstance(event.output, CancelledResult):
                self._write_line(f"- {name} cancelled ({event.output.reason})")
            else:
                self._write_line(f"+ {name}")
                self._write_line(_preview(event.output))

    async def request_approval(self, request: ApprovalRequest) -> None:
        """
        承認要求をユーザーに確認し、判断を会話に送る.

        EOFの場合は拒否として扱う。

        Args:
            request: 承認要求
        """
        self._write_line(f"Approval required for {request.tool_name}:")
        self._write_line(request.summary)
        answer = await self._read_line("Approve? [y/N] ")
        approved = answer is not None and answer.strip().lower() in {"y", "yes"}

        if self.conversation is None:
            logger.error("No conversation attached, cannot submit decision")
            return
        if not self.conversation.submit_decision(request.approval_id, approved):
            logger.info("Decision was not applied", approval_id=request.approval_id)
