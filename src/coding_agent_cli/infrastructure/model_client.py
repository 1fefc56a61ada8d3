"""OpenAI-compatible streaming chat completions client."""

from __future__ import annotations

import uuid
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING, Any

from openai import AsyncOpenAI

from coding_agent_cli.application.conversation import (
    ModelChunk,
    ReasoningChunk,
    TextChunk,
    ToolCallChunk,
)
from coding_agent_cli.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from coding_agent_cli.infrastructure.config import Config

logger = get_logger(__name__)

# 推論テキストを返す互換APIで使われるフィールド名
_REASONING_FIELDS = ("reasoning_content", "reasoning")


class OpenAICompatibleClient:
    """OpenAI互換APIのストリーミングクライアント.

    ツール呼び出しの差分はストリーム中の ``index`` ごとにまとめ、
    最初の差分で通知された ID と名前を後続の差分にも付与する。
    """

    def __init__(
        self,
        model: str,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        client: AsyncOpenAI | None = None,
    ) -> None:
        """
        Initialize OpenAICompatibleClient.

        Args:
            model: モデル名
            base_url: APIのベースURL
            api_key: APIキー
            client: 使用するクライアント（テスト用）
        """
        self._model = model
        self._client = client or AsyncOpenAI(
            base_url=base_url,
            api_key=api_key or "not-needed",
        )

    @classmethod
    def from_config(cls, config: Config) -> OpenAICompatibleClient:
        """設定からクライアントを作成する."""
        return cls(
            config.model,
            base_url=config.openai_api_base_url,
            api_key=config.openai_api_key,
        )

    async def stream(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
    ) -> AsyncIterator[ModelChunk]:
        """
        1ステップ分の応答をストリーミングする.

        Args:
            messages: 会話履歴
            tools: ツール定義

        Yields:
            本文・推論・ツール呼び出しの差分
        """
        logger.debug(
            "Requesting chat completion",
            model=self._model,
            message_count=len(messages),
        )
        kwargs: dict[str, Any] = {
            "model": self._model,
            "messages": messages,
            "stream": True,
        }
        if tools:
            kwargs["tools"] = tools

        response = await self._client.chat.completions.create(**kwargs)

        # ストリーム中のindex -> (call_id, tool_name)
        calls: dict[int, tuple[str, str]] = {}
        async for chunk in response:
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta
            if delta is None:
                continue

            for field in _REASONING_FIELDS:
                reasoning = getattr(delta, field, None)
                if isinstance(reasoning, str) and reasoning:
                    yield ReasoningChunk(text=reasoning)
                    break

            if delta.content:
                yield TextChunk(text=delta.content)

            for tool_call in delta.tool_calls or []:
                index = tool_call.index
                function = tool_call.function
                if index not in calls:
                    call_id = tool_call.id or f"call_{uuid.uuid4().hex[:12]}"
                    tool_name = function.name if function and function.name else ""
                    calls[index] = (call_id, tool_name)
                elif function and function.name and not calls[index][1]:
                    calls[index] = (calls[index][0], function.name)
                call_id, tool_name = calls[index]
                yield ToolCallChunk(
                    call_id=call_id,
                    tool_name=tool_name,
                    arguments_delta=(function.arguments or "") if function else "",
                )
