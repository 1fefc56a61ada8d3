"""Folding of the conversation event stream into a transcript."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

from coding_agent_cli.application.models import ApprovalInfo, ToolCallState
from coding_agent_cli.infrastructure.logging import get_logger

logger = get_logger(__name__)

Role = Literal["user", "assistant"]


# --- ストリームイベント ---


class MessageStart(BaseModel):
    """メッセージの開始."""

    type: Literal["message-start"] = "message-start"
    message_id: str
    role: Role


class TextDelta(BaseModel):
    """本文の差分."""

    type: Literal["text-delta"] = "text-delta"
    message_id: str
    delta: str


class ReasoningDelta(BaseModel):
    """推論テキストの差分."""

    type: Literal["reasoning-delta"] = "reasoning-delta"
    message_id: str
    delta: str


class ToolCallDelta(BaseModel):
    """ツール呼び出し引数（JSON文字列）の差分."""

    type: Literal["tool-call-delta"] = "tool-call-delta"
    message_id: str
    call_id: str
    tool_name: str
    input_text_delta: str = ""


class ToolCallStateChange(BaseModel):
    """ツール呼び出しの状態変化.

    None のフィールドは既存の値を変更しない。
    """

    type: Literal["tool-call-state-change"] = "tool-call-state-change"
    message_id: str
    call_id: str
    tool_name: str
    state: ToolCallState
    input: dict[str, Any] | None = None
    output: Any = None
    error_text: str | None = None
    approval: ApprovalInfo | None = None


class MessageEnd(BaseModel):
    """メッセージの終了."""

    type: Literal["message-end"] = "message-end"
    message_id: str


StreamEvent = Annotated[
    Union[MessageStart, TextDelta, ReasoningDelta, ToolCallDelta, ToolCallStateChange, MessageEnd],
    Field(discriminator="type"),
]

# 辞書やJSONからイベントを復元するためのアダプター
stream_event_adapter: TypeAdapter[StreamEvent] = TypeAdapter(StreamEvent)


# --- トランスクリプト ---


class TextPart(BaseModel):
    """本文パート."""

    type: Literal["text"] = "text"
    text: str = ""


class ReasoningPart(BaseModel):
    """推論パート."""

    type: Literal["reasoning"] = "reasoning"
    text: str = ""


class ToolCallPart(BaseModel):
    """ツール呼び出しパート（状態はその場で更新される）."""

    type: Literal["tool-call"] = "tool-call"
    call_id: str
    tool_name: str
    state: ToolCallState = ToolCallState.INPUT_STREAMING
    input_text: str = ""
    input: dict[str, Any] | None = None
    output: Any = None
    error_text: str | None = None
    approval: ApprovalInfo | None = None


Part = Annotated[Union[TextPart, ReasoningPart, ToolCallPart], Field(discriminator="type")]


class Message(BaseModel):
    """トランスクリプト上の1メッセージ."""

    id: str
    role: Role
    parts: list[Part] = Field(default_factory=list)
    completed: bool = False

    @property
    def text(self) -> str:
        """本文パートを連結したテキスト."""
        return "".join(p.text for p in self.parts if isinstance(p, TextPart))


class Transcript(BaseModel):
    """メッセージの順序付きの記録."""

    messages: list[Message] = Field(default_factory=list)

    def tool_calls(self) -> list[ToolCallPart]:
        """全メッセージのツール呼び出しパートを出現順に返す."""
        return [
            part
            for message in self.messages
            for part in message.parts
            if isinstance(part, ToolCallPart)
        ]


class TranscriptReducer:
    """イベントストリームをトランスクリプトに畳み込む.

    同じイベント列を空の状態から適用し直すと、同一のトランスクリプトが
    得られる。
    """

    def __init__(self) -> None:
        """Initialize TranscriptReducer."""
        self._transcript = Transcript()
        # メッセージの索引（message_id -> Message）
        self._messages: dict[str, Message] = {}
        # ツール呼び出しパートの索引（call_id -> ToolCallPart）
        self._tool_calls: dict[str, ToolCallPart] = {}

    @classmethod
    def replay(cls, events: Iterable[StreamEvent]) -> TranscriptReducer:
        """
        イベント列を空の状態から適用したリデューサーを返す.

        Args:
            events: 順序付きのイベント列

        Returns:
            全イベント適用後のリデューサー
        """
        reducer = cls()
        for event in events:
            reducer.apply(event)
        return reducer

    @property
    def transcript(self) -> Transcript:
        """現在のトランスクリプト."""
        return self._transcript

    def snapshot(self) -> Transcript:
        """トランスクリプトのコピーを返す."""
        return self._transcript.model_copy(deep=True)

    def apply(self, event: StreamEvent) -> None:
        """
        イベントを1件適用する.

        Args:
            event: ストリームイベント
        """
        if isinstance(event, MessageStart):
            self._start_message(event)
        elif isinstance(event, TextDelta):
            self._append_text(event.message_id, TextPart, event.delta)
        elif isinstance(event, ReasoningDelta):
            self._append_text(event.message_id, ReasoningPart, event.delta)
        elif isinstance(event, ToolCallDelta):
            self._apply_tool_call_delta(event)
        elif isinstance(event, ToolCallStateChange):
            self._apply_state_change(event)
        elif isinstance(event, MessageEnd):
            message = self._get_message(event.message_id)
            if message is not None:
                message.completed = True

    def _start_message(self, event: MessageStart) -> None:
        if event.message_id in self._messages:
            logger.debug("Duplicate message-start ignored", message_id=event.message_id)
            return
        message = Message(id=event.message_id, role=event.role)
        self._transcript.messages.append(message)
        self._messages[event.message_id] = message

    def _get_message(self, message_id: str) -> Message | None:
        message = self._messages.get(message_id)
        if message is None:
            logger.warning("Event for unknown message ignored", message_id=message_id)
        return message

    def _append_text(
        self,
        message_id: str,
        part_type: type[TextPart] | type[ReasoningPart],
        delta: str,
    ) -> None:
        message = self._get_message(message_id)
        if message is None or not delta:
            return
        last = message.parts[-1] if message.parts else None
        if isinstance(last, part_type):
            last.text += delta
        else:
            message.parts.append(part_type(text=delta))

    def _tool_call_part(self, message: Message, call_id: str, tool_name: str) -> ToolCallPart:
        part = self._tool_calls.get(call_id)
        if part is None:
            part = ToolCallPart(call_id=call_id, tool_name=tool_name)
            message.parts.append(part)
            self._tool_calls[call_id] = part
        return part

    def _apply_tool_call_delta(self, event: ToolCallDelta) -> None:
        message = self._get_message(event.message_id)
        if message is None:
            return
        part = self._tool_call_part(message, event.call_id, event.tool_name)
        if part.state != ToolCallState.INPUT_STREAMING:
            logger.debug("Input delta after input completed ignored", call_id=event.call_id)
            return
        part.input_text += event.input_text_delta

    def _apply_state_change(self, event: ToolCallStateChange) -> None:
        message = self._get_message(event.message_id)
        if message is None:
            return
        part = self._tool_call_part(message, event.call_id, event.tool_name)
        if part.state.is_terminal:
            logger.debug(
                "State change after terminal state ignored",
                call_id=event.call_id,
                state=part.state.value,
                new_state=event.state.value,
            )
            return
        part.state = event.state
        if event.input is not None:
            part.input = event.input
        if event.output is not None:
            part.output = event.output
        if event.error_text is not None:
            part.error_text = event.error_text
        if event.approval is not None:
            part.approval = event.approval
