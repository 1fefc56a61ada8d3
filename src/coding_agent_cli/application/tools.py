"""Tool executors available to the model.

The tool set is closed: ``list``, ``read``, ``search``, ``edit`` and
``shell``. Each tool validates its typed input in ``prepare`` (no side
effects) and reports whether the call has to be approved by the user before
``execute`` may run.
"""

from __future__ import annotations

import contextlib
import difflib
import hashlib
import json
import os
import re
import shutil
import tempfile
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, ClassVar

from pydantic import AliasChoices, BaseModel, Field, ValidationError, computed_field, field_validator

from coding_agent_cli.application.command_classifier import (
    CommandClassification,
    CommandClassifier,
)
from coding_agent_cli.application.errors import (
    BackupFailedError,
    BinaryFileError,
    CommandBlockedError,
    ConcurrentModificationError,
    EmptyPatternError,
    InvalidPatternError,
    InvalidToolInputError,
    NotAFileError,
    PathNotFoundError,
    TextNotFoundError,
    UnknownToolError,
)
from coding_agent_cli.application.path_guard import PathGuard
from coding_agent_cli.infrastructure.backup import create_backup, prune_backups
from coding_agent_cli.infrastructure.logging import get_logger
from coding_agent_cli.infrastructure.shell import run_shell_command

if TYPE_CHECKING:
    from coding_agent_cli.infrastructure.config import Config

logger = get_logger(__name__)

# searchツールがディレクトリ検索時に対象とする拡張子（拡張子なしのファイルも対象）
TEXT_EXTENSIONS: frozenset[str] = frozenset({
    ".txt",
    ".md",
    ".json",
    ".xml",
    ".yml",
    ".yaml",
    ".toml",
    ".cfg",
    ".ini",
    ".html",
    ".css",
    ".js",
    ".jsx",
    ".ts",
    ".tsx",
    ".py",
    ".java",
    ".c",
    ".h",
    ".cpp",
    ".go",
    ".rs",
    ".sh",
})

_SUMMARY_PREVIEW_LIMIT = 1000


class ToolName(str, Enum):
    """ツール名."""

    LIST = "list"
    READ = "read"
    SEARCH = "search"
    EDIT = "edit"
    SHELL = "shell"


# --- 入力モデル ---


class ListInput(BaseModel):
    """listツールの入力."""

    path: str = Field(default=".", description="Directory path to list")

    @field_validator("path", mode="before")
    @classmethod
    def default_path(cls, v: str | None) -> str:
        """未指定（null）の場合はカレントディレクトリを対象にする."""
        return "." if v is None or v == "" else v


class ReadInput(BaseModel):
    """readツールの入力."""

    path: str = Field(
        validation_alias=AliasChoices("path", "filePath", "file_path"),
        description="Path to the file to read",
    )


class SearchInput(BaseModel):
    """searchツールの入力."""

    pattern: str = Field(description="Regular expression to search for")
    path: str | None = Field(
        default=None,
        validation_alias=AliasChoices("path", "filePath", "file_path"),
        description="File or directory to search in (default: current directory)",
    )


class EditInput(BaseModel):
    """editツールの入力."""

    path: str = Field(
        validation_alias=AliasChoices("path", "filePath", "file_path"),
        description="Path to the file to edit",
    )
    old_string: str = Field(
        validation_alias=AliasChoices("old_string", "oldString"),
        description="Text to replace (must be present in the file unless replace_all is true)",
    )
    new_string: str = Field(
        validation_alias=AliasChoices("new_string", "newString"),
        description="Text to replace it with",
    )
    replace_all: bool = Field(
        default=False,
        validation_alias=AliasChoices("replace_all", "replaceAll"),
        description="Replace all occurrences (default: false)",
    )


class ShellInput(BaseModel):
    """shellツールの入力."""

    command: str = Field(description="The shell command to execute")


# --- 出力モデル ---


class EditResult(BaseModel):
    """editツールの実行結果.

    置換箇所がなかった場合はファイルを書き換えず、backup_path は None になる。
    """

    path: str
    changes: int
    backup_path: str | None = None


class ShellResult(BaseModel):
    """shellツールの実行結果.

    終了コードが0以外の場合やタイムアウトした場合もエラーにはせず、
    success=False の結果としてモデルに返す。
    """

    command: str
    classification: CommandClassification
    exit_code: int | None
    stdout: str
    stderr: str
    timed_out: bool = False

    @computed_field  # type: ignore[prop-decorator]
    @property
    def success(self) -> bool:
        """コマンドが正常終了したかどうか."""
        return self.exit_code == 0 and not self.timed_out


@dataclass(frozen=True)
class ApprovalRequirement:
    """事前検証の結果.

    Attributes:
        required: 実行前にユーザーの承認が必要かどうか
        summary: 承認UIに表示する要約（コマンド文字列や差分プレビュー）
    """

    required: bool
    summary: str = ""


def format_size(num_bytes: int) -> str:
    """バイト数を ``12K`` のような人間が読みやすい形式に変換する."""
    if num_bytes <= 0:
        return "0B"
    units = ["B", "K", "M", "G", "T"]
    size = float(num_bytes)
    index = 0
    while size >= 1024 and index < len(units) - 1:
        size /= 1024
        index += 1
    return f"{int(size + 0.5)}{units[index]}"


def _truncate(text: str, limit: int = _SUMMARY_PREVIEW_LIMIT) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


class Tool(ABC):
    """ツールの基底クラス."""

    name: ClassVar[ToolName]
    description: ClassVar[str]
    input_model: ClassVar[type[BaseModel]]

    def __init__(self, guard: PathGuard) -> None:
        self._guard = guard

    def _display_path(self, path: Path) -> str:
        """作業ディレクトリからの相対パスを返す（外側の場合は絶対パス）."""
        try:
            return str(path.relative_to(self._guard.root))
        except ValueError:
            return str(path)

    @abstractmethod
    def prepare(self, tool_input: Any) -> ApprovalRequirement:
        """
        副作用なしで入力を検証し、承認の要否を返す.

        Raises:
            ToolError: 入力が前提条件を満たさない場合
        """

    @abstractmethod
    async def execute(self, tool_input: Any) -> Any:
        """ツールを実行する."""

    def schema(self) -> dict[str, Any]:
        """OpenAI互換のfunction定義を返す."""
        return {
            "type": "function",
            "function": {
                "name": self.name.value,
                "description": self.description,
                "parameters": self.input_model.model_json_schema(),
            },
        }


class ListTool(Tool):
    """ディレクトリの内容を一覧表示する."""

    name = ToolName.LIST
    description = (
        "List directory contents (shows file sizes to help you decide reading strategy)"
    )
    input_model = ListInput

    def prepare(self, tool_input: ListInput) -> ApprovalRequirement:
        self._guard.resolve(tool_input.path)
        return ApprovalRequirement(required=False)

    async def execute(self, tool_input: ListInput) -> str:
        path = self._guard.resolve(tool_input.path)
        if not path.exists():
            raise PathNotFoundError(tool_input.path)
        if path.is_file():
            return path.name
        if not path.is_dir():
            raise NotAFileError(tool_input.path)

        lines: list[str] = []
        for entry in sorted(path.iterdir(), key=lambda p: p.name):
            try:
                is_dir = entry.is_dir()
                size = "-" if is_dir else format_size(entry.stat().st_size)
            except OSError:
                # 壊れたシンボリックリンクなど
                is_dir = False
                size = "?"
            name = f"{entry.name}/" if is_dir else entry.name
            lines.append(f"{size:>8} {name}")
        return "\n".join(lines)


class ReadTool(Tool):
    """ファイルの内容を読み込む."""

    name = ToolName.READ
    description = "Read file contents (limited to 1MB files)"
    input_model = ReadInput

    def __init__(self, guard: PathGuard, *, max_bytes: int) -> None:
        super().__init__(guard)
        self._max_bytes = max_bytes

    def prepare(self, tool_input: ReadInput) -> ApprovalRequirement:
        self._guard.resolve_file(tool_input.path, max_bytes=self._max_bytes)
        return ApprovalRequirement(required=False)

    async def execute(self, tool_input: ReadInput) -> str:
        path = self._guard.resolve_file(tool_input.path, max_bytes=self._max_bytes)
        try:
            return path.read_bytes().decode("utf-8")
        except UnicodeDecodeError:
            raise BinaryFileError(tool_input.path) from None


class SearchTool(Tool):
    """ファイル内の行を正規表現で検索する."""

    name = ToolName.SEARCH
    description = "Search for patterns in files"
    input_model = SearchInput

    def __init__(
        self,
        guard: PathGuard,
        *,
        max_bytes: int,
        text_extensions: frozenset[str] = TEXT_EXTENSIONS,
    ) -> None:
        super().__init__(guard)
        self._max_bytes = max_bytes
        self._text_extensions = text_extensions

    def _compile(self, pattern: str) -> re.Pattern[str]:
        if not pattern:
            raise EmptyPatternError()
        try:
            return re.compile(pattern)
        except re.error as e:
            raise InvalidPatternError(pattern, str(e)) from None

    def prepare(self, tool_input: SearchInput) -> ApprovalRequirement:
        self._compile(tool_input.pattern)
        if tool_input.path:
            self._guard.resolve(tool_input.path)
        return ApprovalRequirement(required=False)

    async def execute(self, tool_input: SearchInput) -> str:
        regex = self._compile(tool_input.pattern)
        no_match = f"No matches found for pattern: {tool_input.pattern}"

        if tool_input.path:
            target = self._guard.resolve(tool_input.path)
            if not target.exists():
                raise PathNotFoundError(tool_input.path)
            if not target.is_dir():
                file_path = self._guard.resolve_file(
                    tool_input.path, max_bytes=self._max_bytes
                )
                try:
                    content = file_path.read_bytes().decode("utf-8")
                except UnicodeDecodeError:
                    raise BinaryFileError(tool_input.path) from None
                matches = self._match_lines(regex, content)
                return "\n".join(matches) if matches else no_match
        else:
            target = self._guard.root

        results: list[str] = []
        for entry in sorted(target.iterdir(), key=lambda p: p.name):
            if not self._is_searchable(entry):
                continue
            try:
                content = entry.read_bytes().decode("utf-8")
            except (OSError, UnicodeDecodeError):
                logger.debug("Skipping unreadable file", path=str(entry))
                continue
            matches = self._match_lines(regex, content)
            if matches:
                results.append(f"{self._display_path(entry)}:\n" + "\n".join(matches))

        return "\n\n".join(results) if results else no_match

    def _is_searchable(self, entry: Path) -> bool:
        """ディレクトリ検索の対象にするファイルか判定する."""
        if entry.name.startswith("."):
            return False
        try:
            if not entry.is_file() or entry.stat().st_size > self._max_bytes:
                return False
        except OSError:
            return False
        ext = entry.suffix.lower()
        if ext and ext not in self._text_extensions:
            return False
        return not self._guard.is_sensitive(entry)

    @staticmethod
    def _match_lines(regex: re.Pattern[str], content: str) -> list[str]:
        return [line for line in content.split("\n") if regex.search(line)]


class EditTool(Tool):
    """ファイルの文字列を検索・置換する（常に承認が必要）."""

    name = ToolName.EDIT
    description = (
        "Edit files using search and replace operations. Supports both single and "
        "multiple replacements with automatic backup creation."
    )
    input_model = EditInput

    def __init__(
        self,
        guard: PathGuard,
        *,
        max_bytes: int,
        backup_retention: int | None = None,
    ) -> None:
        super().__init__(guard)
        self._max_bytes = max_bytes
        self._backup_retention = backup_retention

    def _validate(self, tool_input: EditInput) -> Path:
        path = self._guard.resolve_file(
            tool_input.path, max_bytes=self._max_bytes, for_edit=True
        )
        if not tool_input.old_string.strip():
            raise EmptyPatternError()
        return path

    def prepare(self, tool_input: EditInput) -> ApprovalRequirement:
        path = self._validate(tool_input)
        display = self._display_path(path)
        diff = "\n".join(
            difflib.unified_diff(
                tool_input.old_string.splitlines(),
                tool_input.new_string.splitlines(),
                fromfile=display,
                tofile=display,
                lineterm="",
            )
        )
        mode = "all occurrences" if tool_input.replace_all else "first occurrence"
        summary = f"Edit {display} ({mode})\n{_truncate(diff)}"
        return ApprovalRequirement(required=True, summary=summary)

    async def execute(self, tool_input: EditInput) -> EditResult:
        path = self._validate(tool_input)

        original = path.read_bytes()
        try:
            content = original.decode("utf-8")
        except UnicodeDecodeError:
            raise BinaryFileError(tool_input.path) from None

        old, new = tool_input.old_string, tool_input.new_string
        if tool_input.replace_all:
            changes = content.count(old)
            new_content = content.replace(old, new)
        else:
            if old not in content:
                raise TextNotFoundError(tool_input.path, old)
            changes = 1
            new_content = content.replace(old, new, 1)

        if changes == 0:
            logger.info("No occurrences to replace", path=str(path))
            return EditResult(path=self._display_path(path), changes=0)

        # バックアップが完了するまで対象ファイルには書き込まない
        try:
            backup = create_backup(path, original)
        except OSError as e:
            raise BackupFailedError(tool_input.path, str(e)) from e

        # 読み込み後に外部プロセスが書き換えていないことを確認する
        if hashlib.sha256(path.read_bytes()).digest() != hashlib.sha256(original).digest():
            logger.warning(
                "File changed between read and write, aborting edit",
                path=str(path),
                backup_path=str(backup),
            )
            raise ConcurrentModificationError(tool_input.path)

        _atomic_write(path, new_content.encode("utf-8"))

        logger.info(
            "Edited file",
            path=str(path),
            changes=changes,
            backup_path=str(backup),
        )

        if self._backup_retention is not None:
            prune_backups(path, self._backup_retention)

        return EditResult(
            path=self._display_path(path),
            changes=changes,
            backup_path=self._display_path(backup),
        )


def _atomic_write(path: Path, data: bytes) -> None:
    """同じディレクトリの一時ファイルに書き込んでから置き換える."""
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        shutil.copymode(path, tmp_path)
        os.replace(tmp_path, path)
    except BaseException:
        with contextlib.suppress(OSError):
            tmp_path.unlink()
        raise


class ShellTool(Tool):
    """シェルコマンドを実行する.

    dangerous なコマンドは承認を求めずに拒否し、write-risk なコマンドのみ
    承認を要求する。
    """

    name = ToolName.SHELL
    description = (
        "Execute shell commands. Read-only commands run immediately, "
        "commands that may modify files require user confirmation."
    )
    input_model = ShellInput

    def __init__(
        self,
        guard: PathGuard,
        classifier: CommandClassifier,
        *,
        timeout: float,
        executable: str = "bash",
    ) -> None:
        super().__init__(guard)
        self._classifier = classifier
        self._timeout = timeout
        self._executable = executable

    def _classify(self, tool_input: ShellInput) -> tuple[str, CommandClassification]:
        command = tool_input.command.strip()
        if not command:
            raise InvalidToolInputError(self.name.value, "command cannot be empty")
        classification = self._classifier.classify(command)
        if classification == CommandClassification.DANGEROUS:
            logger.warning("Blocked dangerous command", command=command)
            raise CommandBlockedError(command)
        return command, classification

    def prepare(self, tool_input: ShellInput) -> ApprovalRequirement:
        command, classification = self._classify(tool_input)
        return ApprovalRequirement(
            required=classification == CommandClassification.WRITE_RISK,
            summary=f"$ {command}",
        )

    async def execute(self, tool_input: ShellInput) -> ShellResult:
        command, classification = self._classify(tool_input)
        logger.info(
            "Executing shell command",
            command=command,
            classification=classification.value,
        )
        output = await run_shell_command(
            command,
            cwd=self._guard.root,
            timeout=self._timeout,
            executable=self._executable,
            stdin_enabled=classification != CommandClassification.READ_ONLY,
        )
        return ShellResult(
            command=command,
            classification=classification,
            exit_code=output.exit_code,
            stdout=output.stdout,
            stderr=output.stderr,
            timed_out=output.timed_out,
        )


class ToolRegistry:
    """ツール名からツールを引く閉じたテーブル."""

    def __init__(self, tools: Iterable[Tool]) -> None:
        self._tools: dict[str, Tool] = {tool.name.value: tool for tool in tools}

    @property
    def names(self) -> list[str]:
        """登録済みのツール名."""
        return list(self._tools)

    def get(self, tool_name: str) -> Tool:
        """
        ツールを取得する.

        Raises:
            UnknownToolError: 登録されていないツール名の場合
        """
        tool = self._tools.get(tool_name)
        if tool is None:
            raise UnknownToolError(tool_name)
        return tool

    def parse_input(self, tool_name: str, arguments: str | Mapping[str, Any] | None) -> BaseModel:
        """
        モデルが生成した引数をツールの入力モデルに変換する.

        Args:
            tool_name: ツール名
            arguments: JSON文字列または辞書

        Returns:
            検証済みの入力モデル

        Raises:
            UnknownToolError: 登録されていないツール名の場合
            InvalidToolInputError: 引数が不正な場合
        """
        tool = self.get(tool_name)
        if arguments is None or (isinstance(arguments, str) and not arguments.strip()):
            arguments = {}
        if isinstance(arguments, str):
            try:
                arguments = json.loads(arguments)
            except json.JSONDecodeError as e:
                raise InvalidToolInputError(tool_name, f"arguments are not valid JSON ({e})") from None
        if not isinstance(arguments, Mapping):
            raise InvalidToolInputError(tool_name, "arguments must be a JSON object")
        try:
            return tool.input_model.model_validate(dict(arguments))
        except ValidationError as e:
            detail = "; ".join(
                f"{'.'.join(str(part) for part in err['loc']) or 'input'}: {err['msg']}"
                for err in e.errors()
            )
            raise InvalidToolInputError(tool_name, detail) from None

    def tool_schemas(self) -> list[dict[str, Any]]:
        """全ツールのfunction定義を返す."""
        return [tool.schema() for tool in self._tools.values()]


def create_default_registry(
    config: Config,
    *,
    guard: PathGuard | None = None,
    classifier: CommandClassifier | None = None,
) -> ToolRegistry:
    """
    設定に従って5つのツールを登録したレジストリを作成する.

    Args:
        config: アプリケーション設定
        guard: パス検証（省略時はカレントディレクトリ基準で作成）
        classifier: コマンド分類器（省略時はデフォルトのルール）

    Returns:
        ツールレジストリ
    """
    guard = guard or PathGuard(restrict_to_workspace=config.restrict_to_workspace)
    classifier = classifier or CommandClassifier()
    return ToolRegistry([
        ListTool(guard),
        ReadTool(guard, max_bytes=config.read_max_bytes),
        SearchTool(guard, max_bytes=config.read_max_bytes),
        EditTool(
            guard,
            max_bytes=config.edit_max_bytes,
            backup_retention=config.backup_retention,
        ),
        ShellTool(
            guard,
            classifier,
            timeout=config.shell_timeout,
            executable=config.shell_executable,
        ),
    ])
