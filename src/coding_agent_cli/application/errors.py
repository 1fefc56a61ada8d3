"""Tool execution error taxonomy.

Every ``ToolError`` is raised before the tool produces a side effect (or, for
edits, before the target file is written) and is surfaced to the model as the
``errorText`` of the tool call. Runtime failures of shell commands are not
errors: they are reported inside ``ShellResult``.
"""

from __future__ import annotations


class ToolError(Exception):
    """ツール実行時のエラーの基底クラス."""


class AccessDeniedError(ToolError):
    """機密ファイルや作業ディレクトリ外へのアクセスを拒否した場合の例外."""

    def __init__(self, path: str, reason: str) -> None:
        """
        Initialize AccessDeniedError.

        Args:
            path: アクセスしようとしたパス
            reason: 拒否理由
        """
        super().__init__(f"Access denied: {reason}: {path}")
        self.path = path
        self.reason = reason


class PathNotFoundError(ToolError):
    """指定されたパスが存在しない場合の例外."""

    def __init__(self, path: str) -> None:
        """
        Initialize PathNotFoundError.

        Args:
            path: 見つからなかったパス
        """
        super().__init__(f"Path does not exist: {path}")
        self.path = path


class NotAFileError(ToolError):
    """指定されたパスが通常ファイルでない場合の例外."""

    def __init__(self, path: str) -> None:
        """
        Initialize NotAFileError.

        Args:
            path: 対象のパス
        """
        super().__init__(f"Path is not a file: {path}")
        self.path = path


class TooLargeError(ToolError):
    """ファイルサイズが上限を超えている場合の例外."""

    def __init__(self, path: str, size: int, limit: int) -> None:
        """
        Initialize TooLargeError.

        Args:
            path: 対象のパス
            size: 実際のファイルサイズ（バイト）
            limit: 上限（バイト）
        """
        super().__init__(f"File too large ({size} bytes > {limit} bytes): {path}")
        self.path = path
        self.size = size
        self.limit = limit


class BinaryFileError(ToolError):
    """ファイルがUTF-8テキストとして読めない場合の例外."""

    def __init__(self, path: str) -> None:
        super().__init__(f"File is not valid UTF-8 text: {path}")
        self.path = path


class TextNotFoundError(ToolError):
    """置換対象のテキストがファイル内に見つからない場合の例外."""

    def __init__(self, path: str, text: str) -> None:
        """
        Initialize TextNotFoundError.

        Args:
            path: 対象のパス
            text: 見つからなかったテキスト
        """
        preview = text if len(text) <= 80 else text[:80] + "..."
        super().__init__(f'Text "{preview}" not found in file: {path}')
        self.path = path
        self.text = text


class EmptyPatternError(ToolError):
    """置換対象のテキストが空の場合の例外."""

    def __init__(self) -> None:
        super().__init__("old_string cannot be empty")


class InvalidPatternError(ToolError):
    """検索パターンが正規表現として不正な場合の例外."""

    def __init__(self, pattern: str, detail: str) -> None:
        """
        Initialize InvalidPatternError.

        Args:
            pattern: 不正なパターン
            detail: re.error のメッセージ
        """
        super().__init__(f"Invalid search pattern {pattern!r}: {detail}")
        self.pattern = pattern


class CommandBlockedError(ToolError):
    """危険なコマンドの実行を拒否した場合の例外."""

    def __init__(self, command: str) -> None:
        """
        Initialize CommandBlockedError.

        Args:
            command: 拒否したコマンド
        """
        super().__init__(f"Command blocked for safety: {command}")
        self.command = command


class BackupFailedError(ToolError):
    """編集前のバックアップ作成に失敗した場合の例外."""

    def __init__(self, path: str, detail: str) -> None:
        super().__init__(f"Failed to create backup for {path}: {detail}")
        self.path = path


class ConcurrentModificationError(ToolError):
    """編集中に別プロセスがファイルを書き換えた場合の例外."""

    def __init__(self, path: str) -> None:
        super().__init__(f"File was modified by another process during edit: {path}")
        self.path = path


class InvalidToolInputError(ToolError):
    """ツール入力が不正な場合の例外."""

    def __init__(self, tool_name: str, detail: str) -> None:
        """
        Initialize InvalidToolInputError.

        Args:
            tool_name: ツール名
            detail: 検証エラーの詳細
        """
        super().__init__(f"Invalid input for tool {tool_name}: {detail}")
        self.tool_name = tool_name


class UnknownToolError(ToolError):
    """登録されていないツール名が指定された場合の例外."""

    def __init__(self, tool_name: str) -> None:
        super().__init__(f"Unknown tool: {tool_name}")
        self.tool_name = tool_name


class ToolCallStateError(Exception):
    """ツール呼び出しの状態遷移が不正な場合の例外."""

    def __init__(self, call_id: str, current_state: str, target_state: str) -> None:
        """
        Initialize ToolCallStateError.

        Args:
            call_id: ツール呼び出しID
            current_state: 現在の状態
            target_state: 遷移しようとした状態
        """
        super().__init__(
            f"Invalid transition for tool call {call_id}: "
            f"{current_state} -> {target_state}"
        )
        self.call_id = call_id
        self.current_state = current_state
        self.target_state = target_state


class ConversationClosedError(Exception):
    """終了済みの会話を操作しようとした場合の例外."""

    def __init__(self) -> None:
        super().__init__("Conversation is closed")
