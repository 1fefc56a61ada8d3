"""Tests for the approval gate and the tool call state machine."""

from __future__ import annotations

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from coding_agent_cli.application.approval import ApprovalGate, approval_id_for
from coding_agent_cli.application.errors import ToolCallStateError
from coding_agent_cli.application.models import (
    ApprovalRequest,
    CancelledResult,
    ToolCall,
    ToolCallState,
)
from coding_agent_cli.application.path_guard import PathGuard
from coding_agent_cli.application.tools import ShellResult, ToolRegistry, create_default_registry
from coding_agent_cli.infrastructure.audit import AuditLog
from coding_agent_cli.infrastructure.config import Config


@pytest.fixture
def registry(tmp_path: Path) -> ToolRegistry:
    """tmp_pathを作業ディレクトリとするレジストリ."""
    return create_default_registry(Config(), guard=PathGuard(tmp_path))


@pytest.fixture
def states() -> list[ToolCallState]:
    """状態遷移の記録."""
    return []


@pytest.fixture
def gate(registry: ToolRegistry, states: list[ToolCallState]) -> ApprovalGate:
    """状態遷移を記録するゲート."""
    return ApprovalGate(registry, on_state_change=lambda call: states.append(call.state))


def shell_call(command: str, call_id: str = "call_1") -> ToolCall:
    """shellツールの呼び出しを作成する."""
    return ToolCall(call_id=call_id, tool_name="shell", input={"command": command})


async def wait_for_pending(gate: ApprovalGate) -> ApprovalRequest:
    """承認要求が作成されるまで待つ."""
    for _ in range(200):
        pending = gate.pending()
        if pending:
            return pending[0]
        await asyncio.sleep(0.01)
    raise AssertionError("approval request was not created")


class TestToolCallTransitions:
    """ToolCall の状態遷移のテスト."""

    def test_happy_path(self) -> None:
        """承認ありの正常系の遷移を確認する."""
        call = ToolCall(call_id="c", tool_name="edit")
        for state in (
            ToolCallState.INPUT_AVAILABLE,
            ToolCallState.APPROVAL_REQUESTED,
            ToolCallState.APPROVED,
            ToolCallState.OUTPUT_AVAILABLE,
        ):
            call.transition(state)
        assert call.is_terminal

    @pytest.mark.parametrize("terminal", [ToolCallState.OUTPUT_AVAILABLE, ToolCallState.OUTPUT_ERROR])
    def test_no_transition_out_of_terminal(self, terminal: ToolCallState) -> None:
        """終端状態からは遷移できないことを確認する."""
        call = ToolCall(call_id="c", tool_name="read", state=ToolCallState.INPUT_AVAILABLE)
        call.transition(terminal)

        for state in ToolCallState:
            with pytest.raises(ToolCallStateError):
                call.transition(state)
        assert call.state == terminal

    def test_rejected_cannot_produce_error(self) -> None:
        """拒否された呼び出しはoutput-errorにならないことを確認する."""
        call = ToolCall(call_id="c", tool_name="shell", state=ToolCallState.REJECTED)
        with pytest.raises(ToolCallStateError):
            call.transition(ToolCallState.OUTPUT_ERROR)

    def test_cannot_skip_approval_decision(self) -> None:
        """承認待ちから判断なしに実行結果へ進めないことを確認する."""
        call = ToolCall(call_id="c", tool_name="shell", state=ToolCallState.APPROVAL_REQUESTED)
        with pytest.raises(ToolCallStateError, match="approval-requested"):
            call.transition(ToolCallState.OUTPUT_AVAILABLE)


class TestApprovalGateRun:
    """ApprovalGate.run のテスト."""

    @pytest.mark.asyncio
    async def test_read_only_runs_without_approval(
        self, gate: ApprovalGate, states: list[ToolCallState], tmp_path: Path
    ) -> None:
        """承認不要なツールはそのまま実行されることを確認する."""
        (tmp_path / "a.txt").write_text("content")
        call = ToolCall(call_id="c1", tool_name="read", input_text='{"path": "a.txt"}')

        await gate.run(call)

        assert call.state == ToolCallState.OUTPUT_AVAILABLE
        assert call.output == "content"
        assert call.input == {"path": "a.txt"}
        assert states == [ToolCallState.INPUT_AVAILABLE, ToolCallState.OUTPUT_AVAILABLE]
        assert gate.pending() == []

    @pytest.mark.asyncio
    async def test_rejected_command_has_no_side_effect(
        self, gate: ApprovalGate, states: list[ToolCallState], tmp_path: Path
    ) -> None:
        """拒否されたコマンドは実行されず、キャンセル結果で終わることを確認する."""
        old = tmp_path / "old.txt"
        old.write_text("keep me")
        call = shell_call("rm old.txt")

        task = asyncio.create_task(gate.run(call))
        request = await wait_for_pending(gate)

        assert call.state == ToolCallState.APPROVAL_REQUESTED
        assert request.approval_id == approval_id_for("call_1")
        assert request.summary == "$ rm old.txt"

        assert gate.submit_decision(request.approval_id, approved=False) is True
        await task

        assert call.state == ToolCallState.OUTPUT_AVAILABLE
        assert isinstance(call.output, CancelledResult)
        assert call.output.reason == "user"
        assert call.error_text is None
        assert old.exists()
        assert states[-3:] == [
            ToolCallState.APPROVAL_REQUESTED,
            ToolCallState.REJECTED,
            ToolCallState.OUTPUT_AVAILABLE,
        ]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "command",
        ["ls\nrm victim.txt", "ls & rm victim.txt", "cat <(rm victim.txt)"],
    )
    async def test_chained_command_requires_approval(
        self, gate: ApprovalGate, tmp_path: Path, command: str
    ) -> None:
        """読み取りコマンドに連結された書き込みが承認なしで実行されないことを確認する."""
        victim = tmp_path / "victim.txt"
        victim.write_text("x")
        call = shell_call(command)

        task = asyncio.create_task(gate.run(call))
        request = await wait_for_pending(gate)

        assert call.state == ToolCallState.APPROVAL_REQUESTED
        assert request.approval_id == approval_id_for("call_1")
        assert victim.exists()

        gate.submit_decision(request.approval_id, approved=False)
        await task

        assert isinstance(call.output, CancelledResult)
        assert victim.exists()

    @pytest.mark.asyncio
    async def test_input_set_before_input_available(self, registry: ToolRegistry) -> None:
        """input-available通知の時点で解析済みの入力が設定されていることを確認する."""
        seen: list[tuple[ToolCallState, dict | None]] = []
        gate = ApprovalGate(
            registry, on_state_change=lambda c: seen.append((c.state, c.input))
        )
        call = ToolCall(
            call_id="c1",
            tool_name="shell",
            state=ToolCallState.INPUT_STREAMING,
            input_text='{"command": "pwd"}',
        )

        await gate.run(call)

        assert seen[0] == (ToolCallState.INPUT_AVAILABLE, {"command": "pwd"})
        assert call.state == ToolCallState.OUTPUT_AVAILABLE

    @pytest.mark.asyncio
    async def test_invalid_streamed_input_ends_in_error(
        self, gate: ApprovalGate, states: list[ToolCallState]
    ) -> None:
        """入力が解析できない場合はoutput-errorで終わることを確認する."""
        call = ToolCall(
            call_id="c1",
            tool_name="shell",
            state=ToolCallState.INPUT_STREAMING,
            input_text='{"command": ',
        )

        await gate.run(call)

        assert call.state == ToolCallState.OUTPUT_ERROR
        assert call.error_text
        assert states[-1] == ToolCallState.OUTPUT_ERROR

    @pytest.mark.asyncio
    async def test_approved_command_runs(
        self, gate: ApprovalGate, states: list[ToolCallState], tmp_path: Path
    ) -> None:
        """承認されたコマンドが元の入力で実行されることを確認する."""
        call = shell_call("touch created.txt")

        task = asyncio.create_task(gate.run(call))
        request = await wait_for_pending(gate)
        assert not (tmp_path / "created.txt").exists()

        gate.submit_decision(request.approval_id, approved=True)
        await task

        assert (tmp_path / "created.txt").exists()
        assert call.state == ToolCallState.OUTPUT_AVAILABLE
        assert isinstance(call.output, ShellResult)
        assert call.output.success is True
        assert ToolCallState.APPROVED in states

    @pytest.mark.asyncio
    async def test_second_decision_is_noop(
        self, gate: ApprovalGate, states: list[ToolCallState], tmp_path: Path
    ) -> None:
        """2回目の判断が状態を変えず、ツールを再実行しないことを確認する."""
        (tmp_path / "old.txt").write_text("x")
        call = shell_call("rm old.txt")

        task = asyncio.create_task(gate.run(call))
        request = await wait_for_pending(gate)
        gate.submit_decision(request.approval_id, approved=False)
        await task
        recorded = list(states)

        assert gate.submit_decision(request.approval_id, approved=True) is False
        await asyncio.sleep(0.05)

        assert call.state == ToolCallState.OUTPUT_AVAILABLE
        assert isinstance(call.output, CancelledResult)
        assert states == recorded
        assert (tmp_path / "old.txt").exists()
        assert request.decision is False

    def test_unknown_approval_id(self, gate: ApprovalGate) -> None:
        """未知の承認IDは無視されることを確認する."""
        assert gate.submit_decision("approval_missing", approved=True) is False

    @pytest.mark.asyncio
    async def test_dangerous_command_is_error_without_approval(
        self, registry: ToolRegistry
    ) -> None:
        """dangerousなコマンドは承認要求なしでエラーになることを確認する."""
        callback = AsyncMock()
        gate = ApprovalGate(registry, on_approval_request=callback)
        call = shell_call("sudo rm -rf /tmp/x")

        await gate.run(call)

        assert call.state == ToolCallState.OUTPUT_ERROR
        assert call.error_text is not None
        assert "Command blocked for safety" in call.error_text
        assert call.approval_id is None
        callback.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("tool_name", "input_text", "message"),
        [
            ("write_file", "{}", "Unknown tool"),
            ("shell", "{broken", "not valid JSON"),
            ("edit", '{"path": "missing.txt", "old_string": "a", "new_string": "b"}', "does not exist"),
        ],
    )
    async def test_validation_errors(
        self, gate: ApprovalGate, tool_name: str, input_text: str, message: str
    ) -> None:
        """検証エラーがoutput-errorとして記録されることを確認する."""
        call = ToolCall(call_id="c1", tool_name=tool_name, input_text=input_text)

        await gate.run(call)

        assert call.state == ToolCallState.OUTPUT_ERROR
        assert call.error_text is not None
        assert message in call.error_text
        assert gate.pending() == []

    @pytest.mark.asyncio
    async def test_runtime_tool_error(self, gate: ApprovalGate, tmp_path: Path) -> None:
        """実行時のツールエラーがoutput-errorになることを確認する."""
        (tmp_path / "f.txt").write_text("hello")
        call = ToolCall(
            call_id="c1",
            tool_name="edit",
            input={"path": "f.txt", "old_string": "absent", "new_string": "x"},
        )

        task = asyncio.create_task(gate.run(call))
        request = await wait_for_pending(gate)
        gate.submit_decision(request.approval_id, approved=True)
        await task

        assert call.state == ToolCallState.OUTPUT_ERROR
        assert call.error_text is not None
        assert "not found in file" in call.error_text


class TestApprovalCallbacks:
    """承認要求コールバックのテスト."""

    @pytest.mark.asyncio
    async def test_callback_receives_request_and_decides(
        self, registry: ToolRegistry, tmp_path: Path
    ) -> None:
        """コールバックから判断を送れることを確認する."""
        received: list[ApprovalRequest] = []

        async def on_request(request: ApprovalRequest) -> None:
            received.append(request)
            gate.submit_decision(request.approval_id, approved=True)

        gate = ApprovalGate(registry, on_approval_request=on_request)
        call = shell_call("touch approved.txt")

        await gate.run(call)

        assert len(received) == 1
        assert received[0].tool_name == "shell"
        assert call.state == ToolCallState.OUTPUT_AVAILABLE
        assert (tmp_path / "approved.txt").exists()

    @pytest.mark.asyncio
    async def test_callback_error_does_not_break_gate(self, registry: ToolRegistry) -> None:
        """コールバックの例外でゲートが壊れないことを確認する."""
        gate = ApprovalGate(registry, on_approval_request=AsyncMock(side_effect=RuntimeError("ui down")))
        call = shell_call("touch x.txt")

        task = asyncio.create_task(gate.run(call))
        request = await wait_for_pending(gate)
        await asyncio.sleep(0.01)
        gate.submit_decision(request.approval_id, approved=False)
        await task

        assert isinstance(call.output, CancelledResult)

    @pytest.mark.asyncio
    async def test_state_callback_error_is_logged(self, registry: ToolRegistry, tmp_path: Path) -> None:
        """状態変化コールバックの例外で実行が止まらないことを確認する."""
        (tmp_path / "a.txt").write_text("ok")

        def broken(call: ToolCall) -> None:
            raise RuntimeError("render failed")

        gate = ApprovalGate(registry, on_state_change=broken)
        call = ToolCall(call_id="c1", tool_name="read", input={"path": "a.txt"})

        await gate.run(call)

        assert call.output == "ok"


class TestImplicitRejection:
    """close / タイムアウト / キャンセルによる暗黙の拒否のテスト."""

    @pytest.mark.asyncio
    async def test_close_rejects_pending(self, gate: ApprovalGate, tmp_path: Path) -> None:
        """close時に未判断の要求が拒否され、コマンドが実行されないことを確認する."""
        (tmp_path / "old.txt").write_text("x")
        call = shell_call("rm old.txt")

        task = asyncio.create_task(gate.run(call))
        request = await wait_for_pending(gate)

        await gate.close()
        await task

        assert request.decision is False
        assert request.reason == "session-closed"
        assert isinstance(call.output, CancelledResult)
        assert call.output.reason == "session-closed"
        assert (tmp_path / "old.txt").exists()
        assert gate.submit_decision(request.approval_id, approved=True) is False

    @pytest.mark.asyncio
    async def test_requests_after_close_rejected_immediately(
        self, registry: ToolRegistry, tmp_path: Path
    ) -> None:
        """close後の承認要求はコールバックなしで即座に拒否されることを確認する."""
        callback = AsyncMock()
        gate = ApprovalGate(registry, on_approval_request=callback)
        await gate.close()

        call = shell_call("touch late.txt")
        await asyncio.wait_for(gate.run(call), timeout=1)

        assert isinstance(call.output, CancelledResult)
        assert call.output.reason == "session-closed"
        assert not (tmp_path / "late.txt").exists()
        callback.assert_not_called()

    @pytest.mark.asyncio
    async def test_approval_timeout(self, registry: ToolRegistry, tmp_path: Path) -> None:
        """タイムアウトした要求が拒否されることを確認する."""
        gate = ApprovalGate(registry, approval_timeout=0.05)
        call = shell_call("touch slow.txt")

        await asyncio.wait_for(gate.run(call), timeout=2)

        assert isinstance(call.output, CancelledResult)
        assert call.output.reason == "timeout"
        assert not (tmp_path / "slow.txt").exists()
        assert gate.pending() == []

    @pytest.mark.asyncio
    async def test_cancellation_rejects_and_reraises(self, gate: ApprovalGate, tmp_path: Path) -> None:
        """待機中のキャンセルで拒否され、CancelledErrorが再送出されることを確認する."""
        call = shell_call("touch never.txt")

        task = asyncio.create_task(gate.run(call))
        request = await wait_for_pending(gate)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert request.decision is False
        assert request.reason == "cancelled"
        assert call.state == ToolCallState.OUTPUT_AVAILABLE
        assert not (tmp_path / "never.txt").exists()


@pytest.mark.asyncio
async def test_audit_records(registry: ToolRegistry, tmp_path: Path) -> None:
    """承認要求・判断・実行結果が監査ログに記録されることを確認する."""
    audit = AuditLog(tmp_path / "audit.jsonl")
    gate = ApprovalGate(registry, audit=audit)
    call = shell_call("rm nothing.txt")

    task = asyncio.create_task(gate.run(call))
    request = await wait_for_pending(gate)
    gate.submit_decision(request.approval_id, approved=False)
    await task

    events = audit.read_events()
    assert [e["action"] for e in events] == [
        "approval_requested",
        "approval_decided",
        "tool_finished",
    ]
    assert events[1]["approved"] is False
    assert events[2]["state"] == "output-available"
