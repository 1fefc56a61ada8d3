"""Conversation turn loop: model streaming, tool calls and transcript."""

from __future__ import annotations

import asyncio
import json
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, Union

from pydantic import BaseModel

from coding_agent_cli.application.approval import ApprovalGate
from coding_agent_cli.application.errors import ConversationClosedError
from coding_agent_cli.application.models import ApprovalRequest, ToolCall, ToolCallState
from coding_agent_cli.application.tools import create_default_registry
from coding_agent_cli.application.transcript import (
    Message,
    MessageEnd,
    MessageStart,
    ReasoningDelta,
    StreamEvent,
    TextDelta,
    ToolCallDelta,
    ToolCallStateChange,
    Transcript,
    TranscriptReducer,
)
from coding_agent_cli.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from coding_agent_cli.application.tools import ToolRegistry
    from coding_agent_cli.infrastructure.audit import AuditLog
    from coding_agent_cli.infrastructure.config import Config

logger = get_logger(__name__)

SYSTEM_PROMPT = """You are Coding Agent CLI.

You are a coding assistant that helps users understand and modify their codebase.
You have access to tools for exploring files and making changes.
Always analyze, understand, and plan before making medium/large changes.
Explain and guide your reasoning to the user.

[CORE RESPONSIBILITIES]
1. ANALYZE: Thoroughly investigate issues or requirements using your exploration tools
2. UNDERSTAND: Read and comprehend the codebase structure, patterns, and context
3. PLAN: Develop comprehensive implementation strategies and approaches
4. EXECUTE: Make the necessary code changes directly

[TOOLS]
- list: List directory contents (shows file sizes to help you decide reading strategy)
- read: Read file contents (limited to 1MB files)
- search: Search for patterns in files
- edit: Edit files using search and replace (requires user approval)
- shell: Execute shell commands (commands that may modify files require user approval)

[READING LARGE FILES]
When list shows a file is large (>100K), use the shell tool with head/tail instead of read:
- head -n 100 file.txt  # Read first 100 lines
- tail -n 50 file.txt   # Read last 50 lines
- head -c 1000 file.txt # Read first 1000 bytes

If there is a tool you believe is missing, attempt to use the shell tool to work around it.
If the user rejects a tool call, do not retry it; ask how to proceed instead.

[WORKFLOW]
If the user asks you to make large scale changes:
1. Use list, read, and search tools to thoroughly analyze the situation
2. Understand the codebase, issue, or requirement completely
3. Describe clearly your plan to complete the solution and if granted approval:
4. Execute the changes using edit and shell tools
5. Present the final result to the user with explanations

[FORMATTING]
Keep in mind you are operating within a CLI environment.
Keep responses concise and to the point.
Don't use Markdown formatting.
"""


# --- モデルからのストリームチャンク ---


@dataclass(frozen=True)
class TextChunk:
    """本文の差分."""

    text: str


@dataclass(frozen=True)
class ReasoningChunk:
    """推論テキストの差分."""

    text: str


@dataclass(frozen=True)
class ToolCallChunk:
    """ツール呼び出しの差分.

    同じ call_id のチャンクの arguments_delta を連結すると引数のJSONになる。
    """

    call_id: str
    tool_name: str
    arguments_delta: str = ""


ModelChunk = Union[TextChunk, ReasoningChunk, ToolCallChunk]


class ModelClient(Protocol):
    """ストリーミング応答を返すモデルクライアント."""

    def stream(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
    ) -> AsyncIterator[ModelChunk]:
        """1ステップ分の応答をチャンクとして返す."""
        ...


# コールバック型定義
EventCallback = Callable[[StreamEvent], None]
ApprovalRequestCallback = Callable[[ApprovalRequest], Awaitable[None]]


def format_tool_output(call: ToolCall) -> str:
    """
    ツール呼び出しの結果をモデルに返すテキストに変換する.

    Args:
        call: 終端状態のツール呼び出し

    Returns:
        文字列の出力はそのまま、構造化された出力はJSON、エラーは ``Error: ...``
    """
    if call.state == ToolCallState.OUTPUT_ERROR:
        return f"Error: {call.error_text}"
    output = call.output
    if isinstance(output, str):
        return output
    if isinstance(output, BaseModel):
        return output.model_dump_json()
    return json.dumps(output, ensure_ascii=False, default=str)


class Conversation:
    """ユーザーとモデルの会話.

    1ターンごとにモデルを呼び出し、ツール呼び出しがなくなるか
    ステップ数の上限に達するまでツール実行とモデル呼び出しを繰り返す。
    """

    def __init__(
        self,
        config: Config,
        model_client: ModelClient,
        *,
        registry: ToolRegistry | None = None,
        on_event: EventCallback | None = None,
        on_approval_request: ApprovalRequestCallback | None = None,
        audit: AuditLog | None = None,
        system_prompt: str = SYSTEM_PROMPT,
    ) -> None:
        """
        Initialize Conversation.

        Args:
            config: アプリケーション設定
            model_client: モデルクライアント
            registry: ツールレジストリ（省略時はデフォルトの5ツール）
            on_event: ストリームイベント発生時のコールバック
            on_approval_request: 承認要求が作成された時のコールバック
            audit: 監査ログ
            system_prompt: システムプロンプト
        """
        self._config = config
        self._model_client = model_client
        self._registry = registry or create_default_registry(config)
        self._on_event = on_event
        self._gate = ApprovalGate(
            self._registry,
            on_state_change=self._on_tool_call_state_change,
            on_approval_request=on_approval_request,
            approval_timeout=config.approval_timeout,
            audit=audit,
        )
        self._reducer = TranscriptReducer()
        self._events: list[StreamEvent] = []
        # モデルに送る会話履歴（OpenAI Chat Completions 形式）
        self._history: list[dict[str, Any]] = [{"role": "system", "content": system_prompt}]
        # ツール呼び出しが属するメッセージ（call_id -> message_id）
        self._call_messages: dict[str, str] = {}
        self._turn_lock = asyncio.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        """close済みかどうか."""
        return self._closed

    @property
    def events(self) -> list[StreamEvent]:
        """発生したイベントの一覧（発生順）."""
        return list(self._events)

    @property
    def transcript(self) -> Transcript:
        """現在のトランスクリプト."""
        return self._reducer.transcript

    @property
    def history(self) -> list[dict[str, Any]]:
        """モデルに送る会話履歴."""
        return list(self._history)

    def submit_decision(self, approval_id: str, approved: bool) -> bool:
        """
        承認要求に対するユーザーの判断を受け付ける.

        Args:
            approval_id: 承認ID
            approved: 承認する場合True

        Returns:
            判断が反映された場合True
        """
        return self._gate.submit_decision(approval_id, approved)

    def pending_approvals(self) -> list[ApprovalRequest]:
        """未判断の承認要求を返す."""
        return self._gate.pending()

    async def send_message(self, text: str) -> Message:
        """
        ユーザーのメッセージを送信し、1ターン分の応答を処理する.

        Args:
            text: ユーザーのメッセージ

        Returns:
            アシスタントのメッセージ

        Raises:
            ConversationClosedError: 会話がclose済みの場合
        """
        if self._closed:
            raise ConversationClosedError()

        async with self._turn_lock:
            if self._closed:
                raise ConversationClosedError()

            user_message_id = str(uuid.uuid4())
            self._emit(MessageStart(message_id=user_message_id, role="user"))
            self._emit(TextDelta(message_id=user_message_id, delta=text))
            self._emit(MessageEnd(message_id=user_message_id))
            self._history.append({"role": "user", "content": text})

            message_id = str(uuid.uuid4())
            self._emit(MessageStart(message_id=message_id, role="assistant"))
            try:
                await self._run_steps(message_id)
            finally:
                self._emit(MessageEnd(message_id=message_id))

            return self._transcript_message(message_id)

    async def close(self) -> None:
        """
        会話を終了する.

        未判断の承認要求は拒否され、以降の send_message は失敗する。
        """
        if self._closed:
            return
        self._closed = True
        await self._gate.close()
        logger.info("Conversation closed")

    async def _run_steps(self, message_id: str) -> None:
        for step in range(1, self._config.max_steps + 1):
            text, calls = await self._stream_step(message_id)

            assistant_entry: dict[str, Any] = {"role": "assistant", "content": text or None}
            if calls:
                assistant_entry["tool_calls"] = [
                    {
                        "id": call.call_id,
                        "type": "function",
                        "function": {"name": call.tool_name, "arguments": call.input_text},
                    }
                    for call in calls
                ]
            self._history.append(assistant_entry)

            if not calls:
                logger.debug("Turn finished", step=step)
                return

            # ツール呼び出しは要求された順に1件ずつ実行する
            for call in calls:
                await self._gate.run(call)
                self._history.append({
                    "role": "tool",
                    "tool_call_id": call.call_id,
                    "content": format_tool_output(call),
                })

            if self._closed:
                logger.info("Conversation closed during turn, stopping", step=step)
                return

        logger.warning("Step limit reached", max_steps=self._config.max_steps)

    async def _stream_step(self, message_id: str) -> tuple[str, list[ToolCall]]:
        """モデルの応答を1ステップ分ストリーミングする."""
        text_buffer: list[str] = []
        calls: dict[str, ToolCall] = {}

        async for chunk in self._model_client.stream(
            list(self._history), self._registry.tool_schemas()
        ):
            if isinstance(chunk, TextChunk):
                text_buffer.append(chunk.text)
                self._emit(TextDelta(message_id=message_id, delta=chunk.text))
            elif isinstance(chunk, ReasoningChunk):
                self._emit(ReasoningDelta(message_id=message_id, delta=chunk.text))
            elif isinstance(chunk, ToolCallChunk):
                call = calls.get(chunk.call_id)
                if call is None:
                    call = ToolCall(call_id=chunk.call_id, tool_name=chunk.tool_name)
                    calls[chunk.call_id] = call
                    self._call_messages[chunk.call_id] = message_id
                elif chunk.tool_name and not call.tool_name:
                    call.tool_name = chunk.tool_name
                call.input_text += chunk.arguments_delta
                self._emit(
                    ToolCallDelta(
                        message_id=message_id,
                        call_id=call.call_id,
                        tool_name=call.tool_name,
                        input_text_delta=chunk.arguments_delta,
                    )
                )

        return "".join(text_buffer), list(calls.values())

    def _on_tool_call_state_change(self, call: ToolCall) -> None:
        request = self._gate.get_request(call.approval_id) if call.approval_id else None
        self._emit(
            ToolCallStateChange(
                message_id=self._call_messages.get(call.call_id, ""),
                call_id=call.call_id,
                tool_name=call.tool_name,
                state=call.state,
                input=call.input,
                output=call.output,
                error_text=call.error_text,
                approval=request.to_info() if request is not None else None,
            )
        )

    def _emit(self, event: StreamEvent) -> None:
        self._events.append(event)
        self._reducer.apply(event)
        if self._on_event is None:
            return
        try:
            self._on_event(event)
        except Exception:
            logger.exception("Error in event callback", event_type=event.type)

    def _transcript_message(self, message_id: str) -> Message:
        for message in reversed(self._reducer.transcript.messages):
            if message.id == message_id:
                return message
        msg = f"Message {message_id} not found in transcript"
        raise LookupError(msg)
