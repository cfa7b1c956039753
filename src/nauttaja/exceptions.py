"""
nauttaja パッケージ用カスタム例外クラス階層。

例外の階層構造:
    NauttajaError (基底)
    ├── ConfigurationError
    └── SaveStoreError
        ├── InvalidSaveNameError
        ├── NameConflictError
        ├── SaveNotFoundError
        ├── AlreadyTrashedError
        ├── NotTrashedError
        ├── SaveIsTrashedError
        ├── SourceUnavailableError
        ├── StoreUnavailableError
        ├── CopyFailedError
        ├── BackupFailedError
        └── LoadFailedError
"""

from __future__ import annotations

from pathlib import Path
from typing import Any


class NauttajaError(Exception):
    """
    nauttaja パッケージの基底例外クラス。

    すべての nauttaja 固有例外はこのクラスを継承する。
    エラーコードとメタデータを保持可能。

    Attributes:
        message: エラーメッセージ
        code: オプションのエラーコード（例: "SAV-001"）
        details: エラーに関する追加情報
    """

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    def __str__(self) -> str:
        if self.code:
            return f"[{self.code}] {self.message}"
        return self.message

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(message={self.message!r}, code={self.code!r})"


# =============================================================================
# 設定関連エラー
# =============================================================================


class ConfigurationError(NauttajaError):
    """
    設定関連のエラー。

    ゲームディレクトリ未設定、不正なスロット名などの場合に発生。

    Examples:
        >>> raise ConfigurationError(
        ...     "Game directory is not configured",
        ...     code="CFG-001",
        ...     details={"env_var": "NAUTTAJA_GAME_DIR"}
        ... )
    """

    pass


# =============================================================================
# セーブストア関連エラー
# =============================================================================


class SaveStoreError(NauttajaError):
    """
    セーブストア操作エラーの基底クラス。

    CLI が利用者に次の行動を提示できるよう、hint を保持する。

    Attributes:
        name: 対象のセーブ名（あれば）
        hint: 利用者向けの対処方法
    """

    default_code: str | None = None

    def __init__(
        self,
        message: str,
        *,
        name: str | None = None,
        hint: str | None = None,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        details = details or {}
        if name is not None:
            details["name"] = name
        super().__init__(message, code=code or self.default_code, details=details)
        self.name = name
        self.hint = hint


class InvalidSaveNameError(SaveStoreError, ValueError):
    """セーブ名として使用できない文字列が渡された。"""

    default_code = "SAV-001"


class NameConflictError(SaveStoreError):
    """
    同名のセーブが既に存在する。

    作成・インポート時は Active と Trashed の両方が衝突対象。
    remove / restore では移動先のコレクションのみが対象。
    """

    default_code = "SAV-002"


class SaveNotFoundError(SaveStoreError):
    """指定された名前のセーブがどのコレクションにも存在しない。"""

    default_code = "SAV-003"


class AlreadyTrashedError(SaveStoreError):
    """remove 対象のセーブが既にゴミ箱にある。"""

    default_code = "SAV-004"


class NotTrashedError(SaveStoreError):
    """
    完全削除の対象がゴミ箱にない。

    完全削除は必ずゴミ箱を経由する二段階操作。
    """

    default_code = "SAV-005"


class SaveIsTrashedError(SaveStoreError):
    """load 対象のセーブがゴミ箱にある。"""

    default_code = "SAV-006"


class SourceUnavailableError(SaveStoreError):
    """
    コピー元ディレクトリが存在しない、またはディレクトリではない。

    Attributes:
        source: コピー元パス
    """

    default_code = "SAV-007"

    def __init__(self, message: str, *, source: Path | str | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.source = Path(source) if source is not None else None
        if source is not None:
            self.details["source"] = str(source)


class StoreUnavailableError(SaveStoreError):
    """ストアルートの読み書きに失敗した、またはストアの状態が矛盾している。"""

    default_code = "SAV-008"


class CopyFailedError(SaveStoreError):
    """セーブ作成中のコピーに失敗した。ストアは呼び出し前の状態のまま。"""

    default_code = "SAV-009"


class BackupFailedError(SaveStoreError):
    """load 前のバックアップ作成に失敗した。ライブディレクトリは変更されていない。"""

    default_code = "SAV-010"


class LoadFailedError(SaveStoreError):
    """
    ライブディレクトリへの書き戻しに失敗した。

    ライブディレクトリの状態は不定になり得るため、
    backup_path のバックアップから手動で復旧できる。

    Attributes:
        backup_path: 復旧に使用できるバックアップのパス
    """

    default_code = "SAV-011"

    def __init__(self, message: str, *, backup_path: Path | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.backup_path = backup_path
        if backup_path is not None:
            self.details["backup_path"] = str(backup_path)


# =============================================================================
# エラーコード定数
# =============================================================================


class ErrorCodes:
    """
    エラーコード定数。

    一貫したエラーコード管理のためのヘルパークラス。
    """

    # 設定エラー (CFG-xxx)
    CONFIG_GAME_DIR_MISSING = "CFG-001"
    CONFIG_INVALID_VALUE = "CFG-002"

    # セーブストアエラー (SAV-xxx)
    SAVE_INVALID_NAME = InvalidSaveNameError.default_code
    SAVE_NAME_CONFLICT = NameConflictError.default_code
    SAVE_NOT_FOUND = SaveNotFoundError.default_code
    SAVE_ALREADY_TRASHED = AlreadyTrashedError.default_code
    SAVE_NOT_TRASHED = NotTrashedError.default_code
    SAVE_IS_TRASHED = SaveIsTrashedError.default_code
    SAVE_SOURCE_UNAVAILABLE = SourceUnavailableError.default_code
    SAVE_STORE_UNAVAILABLE = StoreUnavailableError.default_code
    SAVE_COPY_FAILED = CopyFailedError.default_code
    SAVE_BACKUP_FAILED = BackupFailedError.default_code
    SAVE_LOAD_FAILED = LoadFailedError.default_code
