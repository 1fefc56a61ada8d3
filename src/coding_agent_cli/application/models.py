"""Data models shared by the approval gate, the transcript and the conversation."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from coding_agent_cli.application.errors import ToolCallStateError


class ToolCallState(str, Enum):
    """ツール呼び出しのライフサイクル状態."""

    INPUT_STREAMING = "input-streaming"  # モデルが引数を生成中
    INPUT_AVAILABLE = "input-available"  # 引数の生成が完了
    APPROVAL_REQUESTED = "approval-requested"  # ユーザーの判断待ち
    APPROVED = "approved"
    REJECTED = "rejected"
    OUTPUT_AVAILABLE = "output-available"  # 終端（拒否時のキャンセル結果を含む）
    OUTPUT_ERROR = "output-error"  # 終端

    @property
    def is_terminal(self) -> bool:
        """終端状態かどうか."""
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset({ToolCallState.OUTPUT_AVAILABLE, ToolCallState.OUTPUT_ERROR})

_ALLOWED_TRANSITIONS: dict[ToolCallState, frozenset[ToolCallState]] = {
    ToolCallState.INPUT_STREAMING: frozenset({
        ToolCallState.INPUT_AVAILABLE,
        ToolCallState.OUTPUT_ERROR,
    }),
    ToolCallState.INPUT_AVAILABLE: frozenset({
        ToolCallState.APPROVAL_REQUESTED,
        ToolCallState.OUTPUT_AVAILABLE,
        ToolCallState.OUTPUT_ERROR,
    }),
    ToolCallState.APPROVAL_REQUESTED: frozenset({
        ToolCallState.APPROVED,
        ToolCallState.REJECTED,
    }),
    ToolCallState.APPROVED: frozenset({
        ToolCallState.OUTPUT_AVAILABLE,
        ToolCallState.OUTPUT_ERROR,
    }),
    ToolCallState.REJECTED: frozenset({ToolCallState.OUTPUT_AVAILABLE}),
    ToolCallState.OUTPUT_AVAILABLE: frozenset(),
    ToolCallState.OUTPUT_ERROR: frozenset(),
}


class CancelledResult(BaseModel):
    """承認が得られなかったツール呼び出しの結果.

    エラーではなく、ユーザーによるキャンセルとして扱う。
    """

    cancelled: bool = True
    message: str = "Tool execution cancelled by user"
    reason: str = "user"  # "user", "timeout", "session-closed", "cancelled"


class ToolCall(BaseModel):
    """モデルが要求した1件のツール呼び出し."""

    call_id: str
    tool_name: str
    input_text: str = ""
    input: dict[str, Any] | None = None
    state: ToolCallState = ToolCallState.INPUT_STREAMING
    output: Any = None
    error_text: str | None = None
    approval_id: str | None = None
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    @property
    def is_terminal(self) -> bool:
        """終端状態に到達しているかどうか."""
        return self.state.is_terminal

    def transition(self, state: ToolCallState) -> None:
        """
        状態を遷移させる.

        Args:
            state: 遷移先の状態

        Raises:
            ToolCallStateError: 許可されていない遷移の場合（終端状態からの遷移を含む）
        """
        if state not in _ALLOWED_TRANSITIONS[self.state]:
            raise ToolCallStateError(self.call_id, self.state.value, state.value)
        self.state = state
        self.updated_at = datetime.now()


class ApprovalInfo(BaseModel):
    """トランスクリプトに表示する承認要求の情報."""

    approval_id: str
    summary: str
    approved: bool | None = None
    reason: str | None = None


@dataclass
class ApprovalRequest:
    """承認要求.

    decision は一度だけ設定される（None は未決定）。
    """

    approval_id: str
    call_id: str
    tool_name: str
    summary: str
    decision: bool | None = None
    reason: str | None = None
    created_at: datetime = field(default_factory=datetime.now)
    decided_at: datetime | None = None

    @property
    def is_resolved(self) -> bool:
        """判断済みかどうか."""
        return self.decision is not None

    def to_info(self) -> ApprovalInfo:
        """トランスクリプト表示用の情報に変換する."""
        return ApprovalInfo(
            approval_id=self.approval_id,
            summary=self.summary,
            approved=self.decision,
            reason=self.reason,
        )
