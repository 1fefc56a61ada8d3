"""Shell command risk classification."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum


class CommandClassification(str, Enum):
    """シェルコマンドの分類."""

    READ_ONLY = "read-only"
    DANGEROUS = "dangerous"
    WRITE_RISK = "write-risk"


def _compile(patterns: list[str]) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


@dataclass(frozen=True)
class ClassifierRules:
    """分類に使うパターン集合.

    Attributes:
        dangerous: どれかにマッチしたコマンドは常に拒否する
        read_only: パイプラインの各要素の先頭がマッチすれば読み取り専用候補
        write_indicators: マッチした場合は読み取り専用とみなさない
    """

    dangerous: tuple[re.Pattern[str], ...]
    read_only: tuple[re.Pattern[str], ...]
    write_indicators: tuple[re.Pattern[str], ...] = ()


DEFAULT_RULES = ClassifierRules(
    dangerous=_compile([
        r"\brm\s+-[a-z]*(rf|fr)[a-z]*\s+(/|~)",  # ルートやホームからの再帰削除
        r"\bsudo\b",
        r"\bdoas\b",
        r"\bchmod\s+(-[a-z]+\s+)*0?777\b",
        r">\s*/dev/null.*&",
        r"&\s*$",  # バックグラウンド実行
        r"\b(curl|wget)\b.*\|\s*(ba|z)?sh\b",
        r"\bpkill\b",
        r"\bkillall\b",
        r"\bkill\s",
        r"\bhalt\b",
        r"\breboot\b",
        r"\bshutdown\b",
        r"\bdd\s+if=",
        r"\bmkfs",
        r"\bfdisk\b",
        r"\bparted\b",
        r"\bcrontab\b",
        r">\s*/(etc|usr|bin|sbin|boot)/",
    ]),
    read_only=_compile([
        r"^ls\b",
        r"^cat\b",
        r"^head\b",
        r"^tail\b",
        r"^grep\b",
        r"^find\b",
        r"^which\b",
        r"^ps\b",
        r"^pwd\b",
        r"^whoami\b",
        r"^date\b",
        r"^env\b",
        r"^echo\b",
        r"^wc\b",
        r"^diff\b",
        r"^file\b",
        r"^stat\b",
        r"^tree\b",
        r"^less\b",
        r"^more\b",
    ]),
    write_indicators=_compile([
        r">(?!&\d)(?!\s*/dev/null\b)",  # /dev/null 以外へのリダイレクト
        r";",
        r"&&",
        r"(?<![&>])&(?!&)",  # 単独の & によるコマンド連結
        r"[\r\n]",  # 改行によるコマンド連結
        r"\|\|",
        r"`",
        r"\$\(",
        r"[<>]\(",  # プロセス置換
        r"\s-(delete|exec\w*|ok\w*|fprint\w*|fls)\b",  # find
        r"(^|\|)\s*env\s+[^-\s|]",  # env 経由で別コマンドを起動
        r"\btee\b",
    ]),
)


def normalize_command(command: str) -> str:
    """前後の空白を除去し、連続する空白を1つにまとめる."""
    return " ".join(command.split())


class CommandClassifier:
    """シェルコマンドを read-only / dangerous / write-risk に分類する.

    分類は保守的に行う。読み取り専用と確認できないコマンドは全て
    write-risk として扱い、危険パターンにマッチしたコマンドは
    読み取り専用リストにマッチしていても dangerous とする。
    """

    def __init__(self, rules: ClassifierRules = DEFAULT_RULES) -> None:
        """
        Initialize CommandClassifier.

        Args:
            rules: 分類に使うパターン集合
        """
        self._rules = rules

    @property
    def rules(self) -> ClassifierRules:
        """分類に使うパターン集合."""
        return self._rules

    def is_dangerous(self, command: str) -> bool:
        """危険パターンにマッチするか判定する."""
        normalized = normalize_command(command)
        return any(p.search(normalized) for p in self._rules.dangerous)

    def is_read_only(self, command: str) -> bool:
        """読み取り専用コマンドか判定する（危険パターンは考慮しない）."""
        normalized = normalize_command(command)
        if not normalized:
            return False
        # 連結記号は正規化前の文字列で判定する
        raw = command.strip()
        if any(p.search(raw) for p in self._rules.write_indicators):
            return False
        segments = [s.strip() for s in normalized.split("|")]
        return all(
            segment and any(p.search(segment) for p in self._rules.read_only)
            for segment in segments
        )

    def classify(self, command: str) -> CommandClassification:
        """
        コマンドを分類する.

        Args:
            command: シェルコマンド文字列

        Returns:
            コマンドの分類
        """
        if self.is_dangerous(command):
            return CommandClassification.DANGEROUS
        if self.is_read_only(command):
            return CommandClassification.READ_ONLY
        return CommandClassification.WRITE_RISK
