"""Main entry point for the coding agent CLI."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

from openai import APIError

from coding_agent_cli.application.conversation import Conversation
from coding_agent_cli.infrastructure.audit import AuditLog
from coding_agent_cli.infrastructure.config import get_config
from coding_agent_cli.infrastructure.logging import configure_logging, get_logger
from coding_agent_cli.infrastructure.model_client import OpenAICompatibleClient
from coding_agent_cli.presentation.terminal import TerminalUI

EXIT_COMMANDS = frozenset({"exit", "quit", "q"})


async def interactive_loop(conversation: Conversation, ui: TerminalUI) -> None:
    """
    ユーザーの入力を読み込み、会話に送る.

    ``exit`` / ``quit`` / ``q`` またはEOFで終了する。モデルAPIの
    エラーは表示して次の入力を待つ。

    Args:
        conversation: 会話
        ui: 端末UI
    """
    logger = get_logger(__name__)
    while True:
        text = await ui.prompt()
        if text is None:
            break
        text = text.strip()
        if not text:
            continue
        if text.lower() in EXIT_COMMANDS:
            break
        try:
            await conversation.send_message(text)
        except APIError as e:
            logger.error("Model request failed", error=str(e))
            ui.show_error(f"Model request failed: {e}")


async def main(argv: list[str] | None = None) -> None:
    """アプリケーションのメインエントリポイント."""
    args = sys.argv[1:] if argv is None else argv

    # 設定を読み込み（ロギング設定より前に必要）
    config = get_config()

    # 構造化ロギングを設定
    configure_logging(
        log_level=config.log_level,
        log_dir=config.log_dir,
        log_backup_count=config.log_backup_count,
    )

    logger = get_logger(__name__)

    logger.info("Starting coding agent CLI...", model=config.model)

    # シャットダウンイベント
    shutdown_event = asyncio.Event()

    def signal_handler() -> None:
        if shutdown_event.is_set():
            return  # 二重呼び出しを防止
        logger.info("Received shutdown signal, shutting down gracefully...")
        shutdown_event.set()

    # シグナルハンドラーを登録（SIGINT + SIGTERM）
    # Windows では loop.add_signal_handler が未実装のため signal.signal にフォールバック
    loop = asyncio.get_running_loop()
    try:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, signal_handler)
    except NotImplementedError:
        for sig in (signal.SIGINT, signal.SIGTERM):
            signal.signal(sig, lambda s, f: loop.call_soon_threadsafe(signal_handler))

    conversation: Conversation | None = None
    run_task: asyncio.Task[object] | None = None
    shutdown_task: asyncio.Task[bool] | None = None

    try:
        audit = AuditLog(config.audit_log_file) if config.audit_log_file else None

        # UIを初期化（Conversationより先に）
        ui = TerminalUI()

        conversation = Conversation(
            config,
            OpenAICompatibleClient.from_config(config),
            on_event=ui.handle_event,
            on_approval_request=ui.request_approval,
            audit=audit,
        )

        # UIにConversationを設定
        ui.conversation = conversation

        logger.info("Conversation initialized", one_shot=bool(args))

        # 引数があれば1回だけ送信、なければ対話モード
        if args:
            run_task = asyncio.create_task(conversation.send_message(" ".join(args)))
        else:
            run_task = asyncio.create_task(interactive_loop(conversation, ui))
        shutdown_task = asyncio.create_task(shutdown_event.wait())

        # run_taskの完了 or シャットダウンイベントを待つ
        done, _ = await asyncio.wait(
            [run_task, shutdown_task],
            return_when=asyncio.FIRST_COMPLETED,
        )

        # run_taskが例外で終了した場合は例外を伝播
        if run_task in done:
            run_task.result()  # 例外があればここでraise

    except Exception:
        logger.exception("Fatal error occurred")
        sys.exit(1)
    finally:
        # 未判断の承認要求を拒否してから残タスクを止める
        if conversation is not None:
            try:
                await conversation.close()
            except Exception:
                logger.critical("Error during conversation cleanup", exc_info=True)

        # 残タスクのキャンセル
        for task in (run_task, shutdown_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        # シグナルハンドラーの解除
        try:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)
        except NotImplementedError:
            for sig in (signal.SIGINT, signal.SIGTERM):
                signal.signal(sig, signal.SIG_DFL)

        logger.info("Shutdown complete")

        # ログのフラッシュと確実なクローズ
        logging.shutdown()


def run() -> None:
    """コンソールスクリプトのエントリポイント."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
