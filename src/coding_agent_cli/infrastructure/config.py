"""Configuration management."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_MIB = 1024 * 1024


class Config(BaseSettings):
    """アプリケーション設定."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # モデル設定（OpenAI互換API）
    openai_api_base_url: str | None = Field(
        default=None,
        description="OpenAI互換APIのベースURL",
    )
    openai_api_key: str | None = Field(
        default=None,
        description="APIキー",
    )
    model: str = Field(
        default="xai/grok-code-fast",
        description="使用するモデルID",
    )
    max_steps: int = Field(
        default=20,
        ge=1,
        description="1ターンあたりの最大ステップ数",
    )

    # シェルツール設定
    shell_executable: str = Field(
        default="bash",
        description="シェルコマンドの実行に使うシェル",
    )
    shell_timeout: float = Field(
        default=10.0,
        gt=0,
        description="シェルコマンドのタイムアウト（秒）",
    )

    # ファイルツール設定
    read_max_bytes: int = Field(
        default=1 * _MIB,
        gt=0,
        description="readツールで読み込めるファイルサイズの上限",
    )
    edit_max_bytes: int = Field(
        default=10 * _MIB,
        gt=0,
        description="editツールで編集できるファイルサイズの上限",
    )
    restrict_to_workspace: bool = Field(
        default=True,
        description="作業ディレクトリ外のパスへのアクセスを拒否する",
    )

    # 承認設定
    approval_timeout: float = Field(
        default=0.0,
        ge=0,
        description="承認待ちのタイムアウト（秒）。0の場合は無期限に待つ",
    )

    # バックアップ設定
    backup_retention: int | None = Field(
        default=None,
        ge=1,
        description="ファイルごとに保持するバックアップ数。Noneの場合は削除しない",
    )

    # 監査ログ設定
    audit_log_file: Path | None = Field(
        default=None,
        description="監査ログ（JSONL）の出力先。Noneの場合は出力しない",
    )

    # ロギング設定
    log_level: str = Field(default="INFO", description="ログレベル")
    log_dir: str = Field(default="logs", description="ログ出力ディレクトリ")
    log_backup_count: int = Field(
        default=7,
        ge=0,
        description="ログローテーションの保持日数",
    )

    @field_validator("audit_log_file", mode="before")
    @classmethod
    def parse_audit_log_file(cls, v: str | Path | None) -> Path | None:
        """audit_log_fileをPathに変換する（空文字列はNone扱い）."""
        if v is None or v == "":
            return None
        if isinstance(v, str):
            return Path(v)
        return v


# グローバル設定インスタンス（シングルトン）
_config: Config | None = None


def get_config() -> Config:
    """
    グローバル設定インスタンスを取得する.

    Returns:
        設定インスタンス
    """
    global _config
    if _config is None:
        _config = Config()
    return _config
