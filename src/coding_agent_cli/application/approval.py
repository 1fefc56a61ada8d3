"""Approval gate that suspends risky tool calls until the user decides."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import TYPE_CHECKING, Any

from coding_agent_cli.application.errors import ToolError
from coding_agent_cli.application.models import (
    ApprovalRequest,
    CancelledResult,
    ToolCall,
    ToolCallState,
)
from coding_agent_cli.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from coding_agent_cli.application.tools import ToolRegistry
    from coding_agent_cli.infrastructure.audit import AuditLog

logger = get_logger(__name__)

# コールバック型定義
StateChangeCallback = Callable[[ToolCall], None]
ApprovalRequestCallback = Callable[[ApprovalRequest], Awaitable[None]]

REASON_USER = "user"
REASON_TIMEOUT = "timeout"
REASON_SESSION_CLOSED = "session-closed"
REASON_CANCELLED = "cancelled"


def approval_id_for(call_id: str) -> str:
    """ツール呼び出しIDから承認IDを導出する."""
    return f"approval_{call_id}"


class ApprovalGate:
    """ツール呼び出しを実行し、必要に応じてユーザーの承認を待つ.

    承認が必要な呼び出しは ``asyncio.Future`` で待機し、
    ``submit_decision`` によって再開される。判断は承認IDごとに一度だけ
    受け付け、2回目以降は無視する。
    """

    def __init__(
        self,
        registry: ToolRegistry,
        *,
        on_state_change: StateChangeCallback | None = None,
        on_approval_request: ApprovalRequestCallback | None = None,
        approval_timeout: float = 0,
        audit: AuditLog | None = None,
    ) -> None:
        """
        Initialize ApprovalGate.

        Args:
            registry: ツールレジストリ
            on_state_change: ツール呼び出しの状態が変わるたびに呼ばれるコールバック
            on_approval_request: 承認要求が作成された時のコールバック
            approval_timeout: 承認待ちのタイムアウト（秒）。0の場合は無期限に待つ
            audit: 監査ログ
        """
        self._registry = registry
        self._on_state_change = on_state_change
        self._on_approval_request = on_approval_request
        self._approval_timeout = approval_timeout
        self._audit = audit
        # 承認要求（approval_id -> ApprovalRequest）
        self._requests: dict[str, ApprovalRequest] = {}
        # 判断待ちのFuture（approval_id -> Future）
        self._futures: dict[str, asyncio.Future[bool]] = {}
        # 承認要求コールバックのタスク
        self._callback_tasks: set[asyncio.Task[None]] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        """close済みかどうか."""
        return self._closed

    async def run(self, call: ToolCall) -> ToolCall:
        """
        ツール呼び出しを終端状態まで進める.

        入力の検証エラーやツールのエラーは output-error として記録し、
        例外は送出しない。

        Args:
            call: 実行するツール呼び出し

        Returns:
            終端状態になったツール呼び出し

        Raises:
            asyncio.CancelledError: 実行中にキャンセルされた場合
        """
        validation_error: ToolError | None = None
        try:
            tool = self._registry.get(call.tool_name)
            tool_input = self._registry.parse_input(
                call.tool_name,
                call.input if call.input is not None else call.input_text,
            )
        except ToolError as e:
            validation_error = e
        else:
            if call.input is None:
                call.input = tool_input.model_dump(mode="json")

        # input を設定してから input-available を通知する
        if call.state == ToolCallState.INPUT_STREAMING:
            self._set_state(call, ToolCallState.INPUT_AVAILABLE)

        try:
            if validation_error is not None:
                raise validation_error
            requirement = tool.prepare(tool_input)
        except ToolError as e:
            logger.info(
                "Tool call rejected by validation",
                call_id=call.call_id,
                tool_name=call.tool_name,
                error=str(e),
            )
            self._finish_error(call, str(e))
            return call

        if requirement.required:
            request = self._open_request(call, requirement.summary)
            approved = await self._wait_for_decision(call, request)
            if not approved:
                self._finish_rejected(call, request)
                return call

        try:
            output = await tool.execute(tool_input)
        except ToolError as e:
            self._finish_error(call, str(e))
        except asyncio.CancelledError:
            self._finish_error(call, "Tool execution cancelled")
            raise
        except Exception as e:
            logger.exception(
                "Unexpected error during tool execution",
                call_id=call.call_id,
                tool_name=call.tool_name,
            )
            self._finish_error(call, str(e) or type(e).__name__)
        else:
            call.output = output
            self._set_state(call, ToolCallState.OUTPUT_AVAILABLE)
            self._record_finished(call)
        return call

    def submit_decision(self, approval_id: str, approved: bool) -> bool:
        """
        承認要求に対するユーザーの判断を受け付ける.

        Args:
            approval_id: 承認ID
            approved: 承認する場合True

        Returns:
            判断が反映された場合True。未知のIDや判断済みの場合はFalse
        """
        request = self._requests.get(approval_id)
        if request is None:
            logger.warning("Decision for unknown approval id ignored", approval_id=approval_id)
            return False
        if request.is_resolved:
            logger.info(
                "Decision for already resolved approval ignored",
                approval_id=approval_id,
                decision=request.decision,
            )
            return False
        return self._resolve(request, approved=approved, reason=REASON_USER)

    def pending(self) -> list[ApprovalRequest]:
        """未判断の承認要求を作成順に返す."""
        return [r for r in self._requests.values() if not r.is_resolved]

    def get_request(self, approval_id: str) -> ApprovalRequest | None:
        """承認要求を取得する."""
        return self._requests.get(approval_id)

    async def close(self) -> None:
        """
        ゲートを閉じる.

        未判断の承認要求は全て拒否し、以降の承認要求は即座に拒否する。
        """
        if self._closed:
            return
        self._closed = True

        pending = self.pending()
        for request in pending:
            self._resolve(request, approved=False, reason=REASON_SESSION_CLOSED)
        if pending:
            logger.info("Rejected pending approvals on close", count=len(pending))

        tasks = list(self._callback_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        # 拒否された呼び出しのコルーチンに再開の機会を与える
        await asyncio.sleep(0)

    def _open_request(self, call: ToolCall, summary: str) -> ApprovalRequest:
        approval_id = approval_id_for(call.call_id)
        if approval_id in self._requests:
            approval_id = f"{approval_id}_{len(self._requests)}"

        request = ApprovalRequest(
            approval_id=approval_id,
            call_id=call.call_id,
            tool_name=call.tool_name,
            summary=summary,
        )
        self._requests[approval_id] = request
        self._futures[approval_id] = asyncio.get_running_loop().create_future()

        call.approval_id = approval_id
        self._set_state(call, ToolCallState.APPROVAL_REQUESTED)

        logger.info(
            "Approval requested",
            approval_id=approval_id,
            call_id=call.call_id,
            tool_name=call.tool_name,
        )
        self._audit_record(
            "approval_requested",
            approval_id=approval_id,
            call_id=call.call_id,
            tool_name=call.tool_name,
            summary=summary,
        )

        if self._closed:
            self._resolve(request, approved=False, reason=REASON_SESSION_CLOSED)
        elif self._on_approval_request is not None:
            task = asyncio.create_task(self._safe_callback_wrapper(request))
            self._callback_tasks.add(task)
            task.add_done_callback(self._callback_tasks.discard)

        return request

    async def _wait_for_decision(self, call: ToolCall, request: ApprovalRequest) -> bool:
        """判断を待ち、状態を approved / rejected に進める."""
        future = self._futures.get(request.approval_id)
        if future is not None and not request.is_resolved:
            try:
                if self._approval_timeout > 0:
                    await asyncio.wait_for(future, timeout=self._approval_timeout)
                else:
                    await future
            except TimeoutError:
                logger.warning(
                    "Approval request timed out, rejecting",
                    approval_id=request.approval_id,
                    timeout=self._approval_timeout,
                )
                self._resolve(request, approved=False, reason=REASON_TIMEOUT)
            except asyncio.CancelledError:
                self._resolve(request, approved=False, reason=REASON_CANCELLED)
                self._finish_rejected(call, request)
                raise

        approved = bool(request.decision)
        self._set_state(
            call,
            ToolCallState.APPROVED if approved else ToolCallState.REJECTED,
        )
        return approved

    def _resolve(self, request: ApprovalRequest, *, approved: bool, reason: str) -> bool:
        """承認要求に判断を一度だけ設定する."""
        if request.is_resolved:
            return False
        request.decision = approved
        request.reason = reason
        request.decided_at = datetime.now()

        future = self._futures.pop(request.approval_id, None)
        if future is not None and not future.done():
            future.set_result(approved)

        logger.info(
            "Approval decided",
            approval_id=request.approval_id,
            call_id=request.call_id,
            approved=approved,
            reason=reason,
        )
        self._audit_record(
            "approval_decided",
            approval_id=request.approval_id,
            call_id=request.call_id,
            tool_name=request.tool_name,
            approved=approved,
            reason=reason,
        )
        return True

    def _finish_rejected(self, call: ToolCall, request: ApprovalRequest) -> None:
        if call.state == ToolCallState.APPROVAL_REQUESTED:
            self._set_state(call, ToolCallState.REJECTED)
        call.output = CancelledResult(reason=request.reason or REASON_USER)
        self._set_state(call, ToolCallState.OUTPUT_AVAILABLE)
        self._record_finished(call)

    def _finish_error(self, call: ToolCall, error_text: str) -> None:
        call.error_text = error_text
        self._set_state(call, ToolCallState.OUTPUT_ERROR)
        self._record_finished(call)

    def _set_state(self, call: ToolCall, state: ToolCallState) -> None:
        call.transition(state)
        if self._on_state_change is None:
            return
        try:
            self._on_state_change(call)
        except Exception:
            logger.exception("Error in state change callback", call_id=call.call_id)

    def _record_finished(self, call: ToolCall) -> None:
        logger.info(
            "Tool call finished",
            call_id=call.call_id,
            tool_name=call.tool_name,
            state=call.state.value,
        )
        self._audit_record(
            "tool_finished",
            call_id=call.call_id,
            tool_name=call.tool_name,
            state=call.state.value,
            error_text=call.error_text,
        )

    def _audit_record(self, action: str, **details: Any) -> None:
        if self._audit is not None:
            self._audit.record(action, **details)

    async def _safe_callback_wrapper(self, request: ApprovalRequest) -> None:
        """
        承認要求コールバックを安全に実行するラッパー.

        例外が発生してもログに記録し、タスクをクラッシュさせない。
        """
        if self._on_approval_request is None:
            return
        try:
            await self._on_approval_request(request)
        except Exception:
            logger.exception("Error in approval request callback", approval_id=request.approval_id)
