"""
セーブストア

ライブディレクトリ（ゲームのセーブスロット）のスナップショットを管理する。
作成・インポート・一覧・読み込み・ゴミ箱への移動・ゴミ箱からの復元・完全削除を提供する。

ディレクトリ構成:
    <store_root>/saves/<name>/save.json   マーカー（作成日時）
    <store_root>/saves/<name>/data/       スナップショット本体
    <store_root>/trash/<name>/            ゴミ箱（saves と同じ構成）
    <store_root>/backup/                  直近の load 直前のライブディレクトリ（1 スロット）

ストアルートとライブディレクトリは、実行中このプロセスだけが操作する前提。
ゲーム本体や同期ツールによる同時書き込みは検出しない。
"""

import json
import logging
import os
import secrets
import shutil
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..exceptions import (
    AlreadyTrashedError,
    BackupFailedError,
    CopyFailedError,
    LoadFailedError,
    NameConflictError,
    NotTrashedError,
    SaveIsTrashedError,
    SaveNotFoundError,
    SourceUnavailableError,
    StoreUnavailableError,
)
from ..utils.path import validate_save_name

logger = logging.getLogger(__name__)

SAVES_DIR = "saves"
TRASH_DIR = "trash"
BACKUP_DIR = "backup"
DATA_DIR = "data"
SAVE_MARKER = "save.json"
BACKUP_MARKER = "backup.json"
STAGING_PREFIX = ".staging-"
ASIDE_TAG = "old"
LIVE_STAGING_TAG = "nauttaja"


class SaveLocation(str, Enum):
    ACTIVE = "active"
    TRASHED = "trashed"


def _as_aware(value: datetime) -> datetime:
    """タイムゾーンなしの datetime はローカル時刻として扱う"""
    if value.tzinfo is None:
        return value.astimezone()
    return value


@dataclass
class Save:
    """セーブデータ"""

    name: str
    created_at: datetime
    location: SaveLocation
    path: Path

    @property
    def data_dir(self) -> Path:
        return self.path / DATA_DIR

    def to_dict(self) -> Dict[str, Any]:
        """マーカーファイル用の辞書形式に変換"""
        return {
            "name": self.name,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class Backup:
    """load 直前に退避したライブディレクトリ"""

    path: Path
    created_at: datetime
    source: Optional[str] = None

    @property
    def data_dir(self) -> Path:
        return self.path / DATA_DIR


@dataclass
class LoadResult:
    save: Save
    backup: Backup


def _write_json_atomic(path: Path, data: Dict[str, Any]) -> None:
    # 一時ファイル経由で書き込み、os.replace でアトミックに置換
    temp_fd, temp_path = tempfile.mkstemp(dir=path.parent, suffix=".json.tmp")
    try:
        with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
        os.replace(temp_path, path)
    except Exception:
        if os.path.exists(temp_path):
            os.unlink(temp_path)
        raise


def _read_marker(directory: Path, marker: str) -> Optional[Dict[str, Any]]:
    try:
        with open(directory / marker, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning(f"Unreadable {marker} in {directory}: {e}")
        return None
    if not isinstance(data, dict):
        logger.warning(f"Malformed {marker} in {directory}")
        return None
    return data


def _read_created_at(directory: Path, data: Optional[Dict[str, Any]]) -> datetime:
    """
    マーカーの内容から作成日時を取得する。

    マーカーが使えない場合はディレクトリの更新日時で代替する
    （rename では変化しないため saves/trash 間の移動後も同じ値になる）。
    """
    if data is not None:
        try:
            return _as_aware(datetime.fromisoformat(data["created_at"]))
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Invalid created_at in {directory}: {e}")
    return datetime.fromtimestamp(directory.stat().st_mtime, tz=timezone.utc)


def _aside_path(target: Path, tag: str) -> Path:
    return target.parent / f".{target.name}.{tag}-{secrets.token_hex(4)}"


def _swap_in(staged: Path, target: Path) -> None:
    """
    staged を target の位置に置き換える。

    既存の target は一旦退避し、置き換えに失敗した場合は元に戻す。
    """
    aside = None
    if target.exists():
        aside = _aside_path(target, ASIDE_TAG)
        os.rename(target, aside)
    try:
        os.rename(staged, target)
    except OSError:
        if aside is not None:
            os.rename(aside, target)
        raise
    if aside is not None:
        try:
            shutil.rmtree(aside)
        except OSError as e:
            logger.warning(f"Failed to remove replaced directory {aside}: {e}")


def _remove_staging(path: Optional[Path]) -> None:
    if path is not None and path.exists():
        shutil.rmtree(path, ignore_errors=True)


class SaveStore:
    """
    セーブストア

    ファイルシステムをそのままデータベースとして扱い、
    一意性や所在（Active / Trashed）はディレクトリの有無から判定する。
    """

    def __init__(self, store_root: Path, live_dir: Optional[Path] = None):
        """
        セーブストアを初期化

        Args:
            store_root: saves / trash / backup を配置するルートディレクトリ
            live_dir: ゲームのライブディレクトリ（create / load で使用）

        Raises:
            StoreUnavailableError: ストアルートを作成できない場合
        """
        self.store_root = Path(store_root)
        self.live_dir = Path(live_dir) if live_dir is not None else None
        self.saves_dir = self.store_root / SAVES_DIR
        self.trash_dir = self.store_root / TRASH_DIR
        self.backup_dir = self.store_root / BACKUP_DIR

        try:
            self.saves_dir.mkdir(parents=True, exist_ok=True)
            self.trash_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreUnavailableError(
                f"Cannot initialize save store at {self.store_root}: {e}",
                hint="Check that the store directory is writable (NAUTTAJA_HOME).",
            ) from e

    # ------------------------------------------------------------------
    # 内部ヘルパー
    # ------------------------------------------------------------------

    def _collection_dir(self, location: SaveLocation) -> Path:
        if location == SaveLocation.ACTIVE:
            return self.saves_dir
        return self.trash_dir

    def _save_path(self, name: str, location: SaveLocation) -> Path:
        return self._collection_dir(location) / name

    def _exists(self, name: str, location: SaveLocation) -> bool:
        return self._save_path(name, location).is_dir()

    def _read_save(self, name: str, location: SaveLocation) -> Save:
        path = self._save_path(name, location)
        try:
            created_at = _read_created_at(path, _read_marker(path, SAVE_MARKER))
        except OSError as e:
            raise StoreUnavailableError(f"Cannot read save '{name}': {e}", name=name) from e
        return Save(name=name, created_at=created_at, location=location, path=path)

    def _require_live_dir(self) -> Path:
        if self.live_dir is None:
            raise SourceUnavailableError(
                "No live game directory is configured",
                hint="Run `nauttaja set-game-dir <path>` first.",
            )
        return self.live_dir

    def _make_staging(self) -> Path:
        try:
            return Path(tempfile.mkdtemp(prefix=STAGING_PREFIX, dir=self.store_root))
        except OSError as e:
            raise StoreUnavailableError(f"Cannot create staging directory in {self.store_root}: {e}") from e

    def _capture(self, name: str, source: Path, created_at: Optional[datetime]) -> Save:
        name = validate_save_name(name)

        if self._exists(name, SaveLocation.ACTIVE):
            raise NameConflictError(
                f"A save named '{name}' already exists",
                name=name,
                hint="Pick another name, or remove the existing save first.",
            )
        if self._exists(name, SaveLocation.TRASHED):
            raise NameConflictError(
                f"A save named '{name}' is in the trash",
                name=name,
                hint=f"Pick another name, or run `nauttaja delete {name}` to delete the trashed save permanently.",
            )

        source = Path(source)
        if not source.is_dir() or not os.access(source, os.R_OK | os.X_OK):
            raise SourceUnavailableError(
                f"Source directory not found or not readable: {source}",
                name=name,
                source=source,
            )

        created_at = _as_aware(created_at) if created_at else datetime.now(timezone.utc)
        save = Save(
            name=name,
            created_at=created_at,
            location=SaveLocation.ACTIVE,
            path=self._save_path(name, SaveLocation.ACTIVE),
        )

        staging = self._make_staging()
        try:
            try:
                shutil.copytree(source, staging / DATA_DIR, symlinks=True)
                _write_json_atomic(staging / SAVE_MARKER, save.to_dict())
                os.rename(staging, save.path)
            except OSError as e:
                logger.error(f"Failed to copy {source} into save '{name}': {e}")
                raise CopyFailedError(
                    f"Failed to copy {source} into save '{name}': {e}",
                    name=name,
                    hint="No save was created. Check disk space and permissions, then try again.",
                ) from e
        finally:
            _remove_staging(staging)

        logger.debug(f"Save created: {name} from {source}")
        return save

    def _replace_live(self, source: Path, live_dir: Path, *, name: str, backup_path: Path) -> None:
        """
        ライブディレクトリの中身を source で置き換える

        ライブディレクトリと同じ階層にコピーしてから rename で入れ替えるため、
        ライブディレクトリが不完全な状態になるのは入れ替えの間だけ。
        """
        hint = (
            f"The previous game state is kept in {backup_path}. "
            "Run `nauttaja backup restore` or copy it back manually."
        )
        try:
            staging_root = Path(tempfile.mkdtemp(prefix=f".{live_dir.name}.{LIVE_STAGING_TAG}-", dir=live_dir.parent))
        except OSError as e:
            raise LoadFailedError(
                f"Cannot create staging directory next to {live_dir}: {e}",
                name=name,
                backup_path=backup_path,
                hint=hint,
            ) from e

        try:
            staged = staging_root / live_dir.name
            try:
                shutil.copytree(source, staged, symlinks=True)
                _swap_in(staged, live_dir)
            except OSError as e:
                logger.error(f"Failed to replace {live_dir} with '{name}': {e}")
                raise LoadFailedError(
                    f"Failed to load '{name}' into {live_dir}: {e}",
                    name=name,
                    backup_path=backup_path,
                    hint=hint,
                ) from e
        finally:
            _remove_staging(staging_root)

    def _refresh_backup(self, live_dir: Path) -> Backup:
        """ライブディレクトリを backup スロットに退避する（既存のバックアップは置き換え）"""
        if not live_dir.is_dir():
            raise BackupFailedError(
                f"Live directory not found: {live_dir}",
                hint="Nothing was changed. Check the configured game directory.",
                details={"live_dir": str(live_dir)},
            )

        created_at = datetime.now(timezone.utc)
        try:
            staging = self._make_staging()
        except StoreUnavailableError as e:
            raise BackupFailedError(e.message, hint="Nothing was changed.") from e

        try:
            try:
                shutil.copytree(live_dir, staging / DATA_DIR, symlinks=True)
                _write_json_atomic(
                    staging / BACKUP_MARKER,
                    {"created_at": created_at.isoformat(), "source": str(live_dir)},
                )
                _swap_in(staging, self.backup_dir)
            except OSError as e:
                logger.error(f"Failed to back up {live_dir}: {e}")
                raise BackupFailedError(
                    f"Failed to back up {live_dir}: {e}",
                    hint="The live directory was not modified.",
                ) from e
        finally:
            _remove_staging(staging)

        logger.debug(f"Backup refreshed from {live_dir}")
        return Backup(path=self.backup_dir, created_at=created_at, source=str(live_dir))

    def _live_leftovers(self) -> List[Path]:
        """ライブディレクトリの隣に残った退避・ステージング用ディレクトリ"""
        if self.live_dir is None or not self.live_dir.parent.is_dir():
            return []
        prefixes = (
            f".{self.live_dir.name}.{ASIDE_TAG}-",
            f".{self.live_dir.name}.{LIVE_STAGING_TAG}-",
        )
        try:
            return sorted(p for p in self.live_dir.parent.iterdir() if p.name.startswith(prefixes))
        except OSError as e:
            raise StoreUnavailableError(f"Cannot read {self.live_dir.parent}: {e}") from e

    # ------------------------------------------------------------------
    # 公開 API
    # ------------------------------------------------------------------

    def create(self, name: str) -> Save:
        """
        ライブディレクトリから新しいセーブを作成

        ステージングディレクトリにコピーしてから saves/ に rename するため、
        失敗時に中途半端なセーブが見えることはない。

        Args:
            name: セーブ名

        Returns:
            作成されたセーブ

        Raises:
            InvalidSaveNameError: 名前が不正な場合
            NameConflictError: 同名のセーブが Active または Trashed に存在する場合
            SourceUnavailableError: ライブディレクトリが存在しない場合
            CopyFailedError: コピーに失敗した場合
        """
        return self._capture(name, self._require_live_dir(), created_at=None)

    def import_save(self, name: str, external_path: Path, created_at: Optional[datetime] = None) -> Save:
        """
        任意のディレクトリをセーブとして取り込む

        Args:
            name: セーブ名
            external_path: 取り込むディレクトリ
            created_at: 作成日時（省略時は現在時刻）

        Returns:
            作成されたセーブ
        """
        return self._capture(name, Path(external_path), created_at=created_at)

    def list_saves(self, location: SaveLocation = SaveLocation.ACTIVE) -> List[Save]:
        """
        セーブ一覧を取得

        Args:
            location: Active または Trashed

        Returns:
            セーブのリスト（作成日時昇順、同時刻は名前順）

        Raises:
            StoreUnavailableError: ストアルートを読めない場合
        """
        base = self._collection_dir(location)
        try:
            names = [p.name for p in base.iterdir() if p.is_dir() and not p.name.startswith(".")]
        except FileNotFoundError:
            return []
        except OSError as e:
            raise StoreUnavailableError(f"Cannot read {base}: {e}") from e

        saves = [self._read_save(name, location) for name in names]
        saves.sort(key=lambda s: (s.created_at, s.name))
        return saves

    def get(self, name: str) -> Save:
        """名前からセーブを取得（Active を優先）"""
        name = validate_save_name(name)
        for location in (SaveLocation.ACTIVE, SaveLocation.TRASHED):
            if self._exists(name, location):
                return self._read_save(name, location)
        raise SaveNotFoundError(f"No save named '{name}'", name=name, hint="Run `nauttaja list` to see available saves.")

    @property
    def backup(self) -> Optional[Backup]:
        """現在のバックアップ（存在しなければ None）"""
        if not self.backup_dir.is_dir():
            return None

        data = _read_marker(self.backup_dir, BACKUP_MARKER)
        try:
            created_at = _read_created_at(self.backup_dir, data)
        except OSError as e:
            raise StoreUnavailableError(f"Cannot read backup: {e}") from e
        return Backup(path=self.backup_dir, created_at=created_at, source=(data or {}).get("source"))

    def load(self, name: str) -> LoadResult:
        """
        セーブをライブディレクトリに読み込む

        1. 現在のライブディレクトリを backup スロットに退避（既存のバックアップは置き換え）
        2. ライブディレクトリの中身をセーブの中身で置き換え

        Args:
            name: 読み込む Active セーブ名

        Returns:
            読み込んだセーブと新しいバックアップ

        Raises:
            SaveIsTrashedError: セーブがゴミ箱にある場合
            SaveNotFoundError: セーブが存在しない場合
            BackupFailedError: 退避に失敗した場合（ライブディレクトリは変更なし）
            LoadFailedError: 置き換えに失敗した場合（バックアップから復旧可能）
        """
        name = validate_save_name(name)
        live_dir = self._require_live_dir()

        if not self._exists(name, SaveLocation.ACTIVE):
            if self._exists(name, SaveLocation.TRASHED):
                raise SaveIsTrashedError(
                    f"Save '{name}' is in the trash",
                    name=name,
                    hint=f"Restore it first: `nauttaja restore {name}`.",
                )
            raise SaveNotFoundError(f"No save named '{name}'", name=name, hint="Run `nauttaja list` to see available saves.")

        save = self._read_save(name, SaveLocation.ACTIVE)
        if not save.data_dir.is_dir():
            raise StoreUnavailableError(
                f"Save '{name}' has no data directory",
                name=name,
                hint="Run `nauttaja check` to inspect the store.",
            )

        backup = self._refresh_backup(live_dir)
        self._replace_live(save.data_dir, live_dir, name=name, backup_path=backup.data_dir)

        logger.debug(f"Save loaded: {name} into {live_dir}")
        return LoadResult(save=save, backup=backup)

    def restore_backup(self) -> Backup:
        """
        バックアップをライブディレクトリに書き戻す

        バックアップ自体は変更しない。
        """
        live_dir = self._require_live_dir()
        backup = self.backup
        if backup is None or not backup.data_dir.is_dir():
            raise SaveNotFoundError(
                "No backup exists yet",
                hint="A backup is taken automatically every time a save is loaded.",
            )

        self._replace_live(backup.data_dir, live_dir, name="backup", backup_path=backup.data_dir)
        logger.debug(f"Backup restored into {live_dir}")
        return backup

    def remove(self, name: str) -> Save:
        """
        セーブをゴミ箱に移動

        Raises:
            AlreadyTrashedError: 既にゴミ箱にある場合
            SaveNotFoundError: セーブが存在しない場合
            NameConflictError: ゴミ箱に同名のセーブがある場合
        """
        name = validate_save_name(name)
        active = self._exists(name, SaveLocation.ACTIVE)
        trashed = self._exists(name, SaveLocation.TRASHED)

        if not active:
            if trashed:
                raise AlreadyTrashedError(
                    f"Save '{name}' is already in the trash",
                    name=name,
                    hint=f"Use `nauttaja restore {name}` to bring it back or `nauttaja delete {name}` to delete it permanently.",
                )
            raise SaveNotFoundError(f"No save named '{name}'", name=name, hint="Run `nauttaja list` to see available saves.")
        if trashed:
            raise NameConflictError(
                f"The trash already contains a save named '{name}'",
                name=name,
                hint=f"Restore or permanently delete the trashed '{name}' first.",
            )

        save = self._read_save(name, SaveLocation.ACTIVE)
        target = self._save_path(name, SaveLocation.TRASHED)
        try:
            os.rename(save.path, target)
        except OSError as e:
            raise StoreUnavailableError(f"Failed to move '{name}' to the trash: {e}", name=name) from e

        logger.debug(f"Save moved to trash: {name}")
        return Save(name=name, created_at=save.created_at, location=SaveLocation.TRASHED, path=target)

    def restore(self, name: str) -> Save:
        """
        ゴミ箱のセーブを元に戻す

        Raises:
            SaveNotFoundError: ゴミ箱にセーブがない場合
            NameConflictError: 同名の Active セーブがある場合
        """
        name = validate_save_name(name)
        active = self._exists(name, SaveLocation.ACTIVE)

        if not self._exists(name, SaveLocation.TRASHED):
            hint = "It is not trashed." if active else "Run `nauttaja list --trash` to see trashed saves."
            raise SaveNotFoundError(f"No trashed save named '{name}'", name=name, hint=hint)
        if active:
            raise NameConflictError(
                f"An active save named '{name}' already exists",
                name=name,
                hint=f"Remove the active '{name}' first if you want the trashed one back.",
            )

        save = self._read_save(name, SaveLocation.TRASHED)
        target = self._save_path(name, SaveLocation.ACTIVE)
        try:
            os.rename(save.path, target)
        except OSError as e:
            raise StoreUnavailableError(f"Failed to restore '{name}' from the trash: {e}", name=name) from e

        logger.debug(f"Save restored from trash: {name}")
        return Save(name=name, created_at=save.created_at, location=SaveLocation.ACTIVE, path=target)

    def delete(self, name: str) -> Save:
        """
        ゴミ箱のセーブを完全に削除（取り消し不可）

        Raises:
            NotTrashedError: セーブが Active の場合
            SaveNotFoundError: セーブが存在しない場合
        """
        name = validate_save_name(name)

        if not self._exists(name, SaveLocation.TRASHED):
            if self._exists(name, SaveLocation.ACTIVE):
                raise NotTrashedError(
                    f"Save '{name}' is not in the trash",
                    name=name,
                    hint=f"Move it to the trash first: `nauttaja remove {name}`.",
                )
            raise SaveNotFoundError(f"No save named '{name}'", name=name, hint="Run `nauttaja list --trash` to see trashed saves.")

        save = self._read_save(name, SaveLocation.TRASHED)
        try:
            shutil.rmtree(save.path)
        except OSError as e:
            raise StoreUnavailableError(f"Failed to delete '{name}': {e}", name=name) from e

        logger.debug(f"Save deleted permanently: {name}")
        return save

    def empty_trash(self) -> List[Save]:
        """ゴミ箱のセーブをすべて完全に削除"""
        return [self.delete(save.name) for save in self.list_saves(SaveLocation.TRASHED)]

    def check_integrity(self) -> List[str]:
        """
        ディレクトリ構成から不整合を検出

        Returns:
            問題の説明のリスト（問題がなければ空）
        """
        problems = []

        aside_prefix = f".{BACKUP_DIR}.{ASIDE_TAG}-"
        try:
            active = {p.name for p in self.saves_dir.iterdir() if p.is_dir() and not p.name.startswith(".")}
            trashed = {p.name for p in self.trash_dir.iterdir() if p.is_dir() and not p.name.startswith(".")}
            store_entries = sorted(p.name for p in self.store_root.iterdir())
        except OSError as e:
            raise StoreUnavailableError(f"Cannot read {self.store_root}: {e}") from e

        leftovers = [n for n in store_entries if n.startswith(STAGING_PREFIX)]
        replaced = [self.store_root / n for n in store_entries if n.startswith(aside_prefix)]
        replaced.extend(self._live_leftovers())

        for name in sorted(active & trashed):
            problems.append(f"'{name}' exists both as an active and a trashed save")

        for location, names in ((SaveLocation.ACTIVE, active), (SaveLocation.TRASHED, trashed)):
            for name in sorted(names):
                path = self._save_path(name, location)
                if not (path / SAVE_MARKER).is_file():
                    problems.append(f"{location.value} save '{name}' has no {SAVE_MARKER}")
                if not (path / DATA_DIR).is_dir():
                    problems.append(f"{location.value} save '{name}' has no {DATA_DIR}/ directory")

        for leftover in leftovers:
            problems.append(f"leftover staging directory: {self.store_root / leftover}")
        for path in replaced:
            problems.append(f"leftover replaced directory: {path}")

        return problems
