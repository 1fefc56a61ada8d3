"""Filesystem path validation for file tools."""

from __future__ import annotations

from pathlib import Path

from coding_agent_cli.application.errors import (
    AccessDeniedError,
    NotAFileError,
    PathNotFoundError,
    TooLargeError,
)
from coding_agent_cli.infrastructure.logging import get_logger

logger = get_logger(__name__)

# ファイル名にこれらの文字列を含むファイルは読み書きともに拒否する（大文字小文字無視）
DEFAULT_SENSITIVE_NAMES: frozenset[str] = frozenset({
    "passwd",
    "shadow",
    "authorized_keys",
    "id_rsa",
    "id_dsa",
    "id_ecdsa",
    "id_ed25519",
})

DEFAULT_SENSITIVE_EXTENSIONS: frozenset[str] = frozenset({
    ".key",
    ".pem",
    ".crt",
    ".p12",
    ".ppk",
})

# 編集時のみ追加で拒否する拡張子
DEFAULT_EDIT_SENSITIVE_EXTENSIONS: frozenset[str] = frozenset({".env"})


def _extension(name: str) -> str:
    """ファイル名の拡張子を小文字で返す.

    ``.env`` のようにドット以外にドットを含まないドットファイルは、
    ファイル名全体を拡張子として扱う。
    """
    suffix = Path(name).suffix
    if not suffix and name.startswith(".") and name.count(".") == 1:
        suffix = name
    return suffix.lower()


class PathGuard:
    """ファイルツールが扱うパスの検証を一箇所で行うクラス."""

    def __init__(
        self,
        root: Path | None = None,
        *,
        sensitive_names: frozenset[str] = DEFAULT_SENSITIVE_NAMES,
        sensitive_extensions: frozenset[str] = DEFAULT_SENSITIVE_EXTENSIONS,
        edit_sensitive_extensions: frozenset[str] = DEFAULT_EDIT_SENSITIVE_EXTENSIONS,
        restrict_to_workspace: bool = True,
    ) -> None:
        """
        Initialize PathGuard.

        Args:
            root: 相対パスの基準ディレクトリ（省略時はカレントディレクトリ）
            sensitive_names: 拒否するファイル名の部分文字列
            sensitive_extensions: 拒否する拡張子
            edit_sensitive_extensions: 編集時のみ拒否する拡張子
            restrict_to_workspace: rootの外を指すパスを拒否するかどうか
        """
        self._root = root
        self._sensitive_names = frozenset(n.lower() for n in sensitive_names)
        self._sensitive_extensions = frozenset(e.lower() for e in sensitive_extensions)
        self._edit_sensitive_extensions = frozenset(
            e.lower() for e in edit_sensitive_extensions
        )
        self._restrict_to_workspace = restrict_to_workspace

    @property
    def root(self) -> Path:
        """相対パス解決の基準ディレクトリ."""
        return (self._root or Path.cwd()).resolve()

    def resolve(self, raw_path: str) -> Path:
        """
        パスを基準ディレクトリからの絶対パスに解決する.

        Args:
            raw_path: モデルから渡されたパス

        Returns:
            解決済みの絶対パス

        Raises:
            AccessDeniedError: 作業ディレクトリ外を指している場合
        """
        root = self.root
        candidate = (root / Path(raw_path).expanduser()).resolve()
        if self._restrict_to_workspace:
            try:
                candidate.relative_to(root)
            except ValueError:
                logger.warning(
                    "Rejected path outside workspace",
                    path=raw_path,
                    resolved=str(candidate),
                )
                raise AccessDeniedError(raw_path, "path is outside the working directory") from None
        return candidate

    def is_sensitive(self, path: Path, *, for_edit: bool = False) -> bool:
        """
        パスが機密ファイルに該当するか判定する.

        Args:
            path: 判定対象のパス
            for_edit: 編集操作かどうか（Trueの場合は編集専用の拡張子も対象）

        Returns:
            機密ファイルの場合True
        """
        name = path.name.lower()
        ext = _extension(path.name)
        if ext in self._sensitive_extensions:
            return True
        if for_edit and ext in self._edit_sensitive_extensions:
            return True
        return any(s in name for s in self._sensitive_names)

    def check_access(self, path: Path, *, for_edit: bool = False) -> None:
        """
        機密ファイルへのアクセスを拒否する.

        Raises:
            AccessDeniedError: 機密ファイルの場合
        """
        if self.is_sensitive(path, for_edit=for_edit):
            operation = "edit" if for_edit else "read"
            logger.warning(
                "Rejected access to sensitive file",
                path=str(path),
                operation=operation,
            )
            raise AccessDeniedError(
                str(path), f"cannot {operation} potentially sensitive file"
            )

    def resolve_file(
        self, raw_path: str, *, max_bytes: int, for_edit: bool = False
    ) -> Path:
        """
        読み書き対象のファイルパスを解決し、全ての前提条件を検証する.

        Args:
            raw_path: モデルから渡されたパス
            max_bytes: 許容するファイルサイズの上限
            for_edit: 編集操作かどうか

        Returns:
            検証済みの絶対パス

        Raises:
            AccessDeniedError: 機密ファイル、または作業ディレクトリ外の場合
            PathNotFoundError: ファイルが存在しない場合
            NotAFileError: 通常ファイルでない場合
            TooLargeError: サイズが上限を超えている場合
        """
        path = self.resolve(raw_path)
        self.check_access(path, for_edit=for_edit)

        if not path.exists():
            raise PathNotFoundError(raw_path)
        if not path.is_file():
            raise NotAFileError(raw_path)

        size = path.stat().st_size
        if size > max_bytes:
            raise TooLargeError(raw_path, size, max_bytes)
        return path
