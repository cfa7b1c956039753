"""Tests for SaveStore"""
import os
import shutil
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import patch

import pytest

from nauttaja.exceptions import (
    AlreadyTrashedError,
    BackupFailedError,
    CopyFailedError,
    InvalidSaveNameError,
    LoadFailedError,
    NameConflictError,
    NotTrashedError,
    SaveIsTrashedError,
    SaveNotFoundError,
    SourceUnavailableError,
    StoreUnavailableError,
)
from nauttaja.storage.save_store import SAVE_MARKER, STAGING_PREFIX, SaveLocation, SaveStore


def write_tree(root: Path, files: dict) -> None:
    for rel, content in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)


def read_tree(root: Path) -> dict:
    return {
        p.relative_to(root).as_posix(): p.read_text()
        for p in sorted(root.rglob("*"))
        if p.is_file()
    }


def names(saves) -> list:
    return [s.name for s in saves]


INITIAL = {"player.xml": "hp=100", "world/chunk_0.bin": "chunk-0"}


@pytest.fixture
def temp_dir():
    """一時ディレクトリを作成"""
    d = tempfile.mkdtemp()
    yield Path(d)
    shutil.rmtree(d, ignore_errors=True)


@pytest.fixture
def live_dir(temp_dir):
    """ゲームのライブディレクトリ"""
    live = temp_dir / "game" / "save00"
    write_tree(live, INITIAL)
    return live


@pytest.fixture
def store(temp_dir, live_dir):
    """テスト用のSaveStore"""
    return SaveStore(temp_dir / "store", live_dir=live_dir)


@pytest.fixture
def external_dir(temp_dir):
    """取り込み用の外部ディレクトリ"""
    ext = temp_dir / "downloads" / "speedrun"
    write_tree(ext, {"player.xml": "hp=9999", "mods/list.txt": "none"})
    return ext


def staging_leftovers(store: SaveStore) -> list:
    return [p.name for p in store.store_root.iterdir() if p.name.startswith(STAGING_PREFIX)]


class TestCreate:
    def test_create_copies_live_directory(self, store, live_dir):
        """ライブディレクトリの中身がセーブにコピーされる"""
        save = store.create("a")

        assert names(store.list_saves()) == ["a"]
        assert save.location == SaveLocation.ACTIVE
        assert read_tree(save.data_dir) == INITIAL
        assert read_tree(live_dir) == INITIAL

    def test_created_at_is_timezone_aware(self, store):
        save = store.create("a")
        assert save.created_at.tzinfo is not None
        assert abs(datetime.now(timezone.utc) - save.created_at) < timedelta(minutes=1)

    def test_create_strips_whitespace(self, store):
        save = store.create("  boss fight  ")
        assert save.name == "boss fight"
        assert names(store.list_saves()) == ["boss fight"]

    def test_duplicate_active_name_conflicts(self, store, live_dir):
        """同名の Active セーブがあると NameConflict、既存の中身は変わらない"""
        store.create("a")
        (live_dir / "player.xml").write_text("hp=1")

        with pytest.raises(NameConflictError) as exc_info:
            store.create("a")

        assert exc_info.value.name == "a"
        assert read_tree(store.get("a").data_dir) == INITIAL

    def test_trashed_name_blocks_create(self, store):
        """ゴミ箱にある名前でも作成できない"""
        store.create("a")
        store.remove("a")

        with pytest.raises(NameConflictError) as exc_info:
            store.create("a")

        assert "delete a" in exc_info.value.hint
        assert names(store.list_saves()) == []
        assert names(store.list_saves(SaveLocation.TRASHED)) == ["a"]

    def test_missing_live_directory(self, store, live_dir):
        shutil.rmtree(live_dir)

        with pytest.raises(SourceUnavailableError):
            store.create("a")
        assert store.list_saves() == []

    def test_store_without_live_directory(self, temp_dir):
        store = SaveStore(temp_dir / "store")

        with pytest.raises(SourceUnavailableError):
            store.create("a")

    @pytest.mark.parametrize("bad_name", ["", "   ", "../escape", "a/b", ".hidden", ".", ".."])
    def test_invalid_names(self, store, bad_name):
        """不正な名前は拒否される"""
        with pytest.raises(InvalidSaveNameError):
            store.create(bad_name)
        assert store.list_saves() == []

    def test_invalid_name_is_value_error(self, store):
        with pytest.raises(ValueError):
            store.create("../../etc")

    def test_failed_copy_leaves_no_save(self, store):
        """コピー失敗時はセーブもステージングも残らない"""
        with patch("nauttaja.storage.save_store.shutil.copytree", side_effect=OSError("disk full")):
            with pytest.raises(CopyFailedError) as exc_info:
                store.create("a")

        assert "disk full" in str(exc_info.value)
        assert store.list_saves() == []
        assert not (store.saves_dir / "a").exists()
        assert staging_leftovers(store) == []

    def test_failed_marker_write_leaves_no_save(self, store):
        with patch("nauttaja.storage.save_store._write_json_atomic", side_effect=OSError("read-only")):
            with pytest.raises(CopyFailedError):
                store.create("a")

        assert store.list_saves() == []
        assert staging_leftovers(store) == []

    def test_successful_create_leaves_no_staging(self, store):
        store.create("a")
        assert staging_leftovers(store) == []


class TestImport:
    def test_import_external_directory(self, store, external_dir):
        save = store.import_save("speedrun", external_dir)

        assert names(store.list_saves()) == ["speedrun"]
        assert read_tree(save.data_dir) == read_tree(external_dir)

    def test_import_missing_directory(self, store, temp_dir):
        with pytest.raises(SourceUnavailableError) as exc_info:
            store.import_save("x", temp_dir / "does-not-exist")

        assert exc_info.value.source == temp_dir / "does-not-exist"
        assert store.list_saves() == []

    def test_import_file_is_not_a_directory(self, store, temp_dir):
        path = temp_dir / "file.txt"
        path.write_text("not a dir")

        with pytest.raises(SourceUnavailableError):
            store.import_save("x", path)

    def test_import_conflicts_with_active(self, store, external_dir):
        store.create("a")
        with pytest.raises(NameConflictError):
            store.import_save("a", external_dir)

    def test_import_with_earlier_timestamp_sorts_first(self, store, external_dir):
        """過去の作成日時で取り込んだセーブは先頭に並ぶ"""
        store.create("new")
        store.import_save("old", external_dir, created_at=datetime(2020, 1, 1, tzinfo=timezone.utc))

        assert names(store.list_saves()) == ["old", "new"]

    def test_import_naive_timestamp(self, store, external_dir):
        save = store.import_save("old", external_dir, created_at=datetime(2021, 6, 1, 12, 0, 0))

        assert save.created_at.tzinfo is not None
        assert store.get("old").created_at == save.created_at


class TestList:
    def test_empty_store(self, store):
        assert store.list_saves() == []
        assert store.list_saves(SaveLocation.TRASHED) == []

    def test_creation_order(self, store):
        store.create("a-first")
        store.create("b-second")

        assert names(store.list_saves()) == ["a-first", "b-second"]

    def test_out_of_order_timestamps(self, store, external_dir):
        """作成日時の昇順で並ぶ（作成した順ではない）"""
        base = datetime(2022, 3, 1, tzinfo=timezone.utc)
        store.import_save("third", external_dir, created_at=base + timedelta(days=2))
        store.import_save("first", external_dir, created_at=base)
        store.import_save("second", external_dir, created_at=base + timedelta(days=1))

        assert names(store.list_saves()) == ["first", "second", "third"]

    def test_ties_broken_by_name(self, store, external_dir):
        same = datetime(2022, 3, 1, tzinfo=timezone.utc)
        store.import_save("zeta", external_dir, created_at=same)
        store.import_save("alpha", external_dir, created_at=same)

        assert names(store.list_saves()) == ["alpha", "zeta"]

    def test_missing_marker_falls_back_to_mtime(self, store):
        save = store.create("a")
        (save.path / SAVE_MARKER).unlink()

        listed = store.list_saves()
        assert names(listed) == ["a"]
        assert listed[0].created_at.tzinfo is not None

    def test_ignores_hidden_entries(self, store):
        store.create("a")
        (store.saves_dir / ".DS_Store").mkdir()
        assert names(store.list_saves()) == ["a"]

    def test_unreadable_store(self, store):
        """saves/ を読めない場合は StoreUnavailable"""
        shutil.rmtree(store.saves_dir)
        store.saves_dir.write_text("not a directory")

        with pytest.raises(StoreUnavailableError):
            store.list_saves()


class TestRemoveRestore:
    def test_scenario(self, store, live_dir):
        """作成・ゴミ箱・復元・読み込みの一連の流れ"""
        store.create("a")
        (live_dir / "player.xml").write_text("hp=50")
        store.create("b")
        assert names(store.list_saves()) == ["a", "b"]

        store.remove("a")
        assert names(store.list_saves()) == ["b"]
        assert names(store.list_saves(SaveLocation.TRASHED)) == ["a"]

        store.restore("a")
        assert names(store.list_saves()) == ["a", "b"]
        assert store.list_saves(SaveLocation.TRASHED) == []

        (live_dir / "player.xml").write_text("hp=10")
        pre_load = read_tree(live_dir)
        store.load("b")
        assert read_tree(live_dir) == read_tree(store.get("b").data_dir)
        assert read_tree(store.backup.data_dir) == pre_load

    def test_remove_then_restore_preserves_identity(self, store):
        before = store.create("a")
        before_contents = read_tree(before.data_dir)

        trashed = store.remove("a")
        assert trashed.location == SaveLocation.TRASHED
        assert trashed.created_at == before.created_at

        after = store.restore("a")
        assert after.name == before.name
        assert after.created_at == before.created_at
        assert store.get("a").created_at == before.created_at
        assert read_tree(after.data_dir) == before_contents

    def test_remove_moves_without_copying(self, store):
        """remove はコピーではなく移動"""
        save = store.create("a")
        inode = os.stat(save.data_dir / "player.xml").st_ino

        trashed = store.remove("a")

        assert not save.path.exists()
        assert os.stat(trashed.data_dir / "player.xml").st_ino == inode

    def test_remove_twice(self, store):
        store.create("a")
        store.remove("a")

        with pytest.raises(AlreadyTrashedError) as exc_info:
            store.remove("a")

        assert "restore a" in exc_info.value.hint
        assert names(store.list_saves(SaveLocation.TRASHED)) == ["a"]

    def test_remove_missing(self, store):
        with pytest.raises(SaveNotFoundError):
            store.remove("nope")

    def test_remove_never_overwrites_trash(self, store):
        """ゴミ箱に同名がある場合は上書きしない"""
        save = store.create("a")
        shutil.copytree(save.path, store.trash_dir / "a")
        (store.trash_dir / "a" / "data" / "player.xml").write_text("trashed copy")

        with pytest.raises(NameConflictError):
            store.remove("a")

        assert (store.trash_dir / "a" / "data" / "player.xml").read_text() == "trashed copy"
        assert names(store.list_saves()) == ["a"]

    def test_restore_missing(self, store):
        with pytest.raises(SaveNotFoundError):
            store.restore("nope")

    def test_restore_active_save_is_not_found(self, store):
        store.create("a")
        with pytest.raises(SaveNotFoundError) as exc_info:
            store.restore("a")
        assert exc_info.value.hint == "It is not trashed."

    def test_restore_never_overwrites_active(self, store):
        save = store.create("a")
        store.remove("a")
        shutil.copytree(store.trash_dir / "a", save.path)

        with pytest.raises(NameConflictError):
            store.restore("a")

        assert names(store.list_saves(SaveLocation.TRASHED)) == ["a"]


class TestDelete:
    def test_delete_active_is_refused(self, store):
        """Active セーブは完全削除できない"""
        store.create("a")

        with pytest.raises(NotTrashedError) as exc_info:
            store.delete("a")

        assert "remove a" in exc_info.value.hint
        assert names(store.list_saves()) == ["a"]
        assert read_tree(store.get("a").data_dir) == INITIAL

    def test_delete_trashed(self, store):
        save = store.create("a")
        store.remove("a")

        deleted = store.delete("a")

        assert deleted.name == "a"
        assert store.list_saves() == []
        assert store.list_saves(SaveLocation.TRASHED) == []
        assert not (store.trash_dir / "a").exists()
        assert not save.path.exists()

    def test_delete_missing(self, store):
        with pytest.raises(SaveNotFoundError):
            store.delete("nope")

    def test_name_reusable_after_delete(self, store):
        store.create("a")
        store.remove("a")
        store.delete("a")

        store.create("a")
        assert names(store.list_saves()) == ["a"]

    def test_empty_trash(self, store):
        store.create("a")
        store.create("b")
        store.create("c")
        store.remove("a")
        store.remove("c")

        deleted = store.empty_trash()

        assert names(deleted) == ["a", "c"]
        assert store.list_saves(SaveLocation.TRASHED) == []
        assert names(store.list_saves()) == ["b"]


class TestLoad:
    def test_load_replaces_live_and_takes_backup(self, store, live_dir):
        """ライブディレクトリはセーブと一致し、バックアップは読み込み前の状態"""
        store.create("a")
        (live_dir / "player.xml").write_text("hp=3")
        (live_dir / "new_file.txt").write_text("only after save")
        (live_dir / "world" / "chunk_0.bin").unlink()
        pre_load = read_tree(live_dir)

        result = store.load("a")

        assert read_tree(live_dir) == INITIAL
        assert not (live_dir / "new_file.txt").exists()
        assert read_tree(store.backup.data_dir) == pre_load
        assert result.save.name == "a"
        assert result.backup.source == str(live_dir)

    def test_load_does_not_change_save(self, store, live_dir):
        save = store.create("a")
        (live_dir / "player.xml").write_text("hp=3")

        store.load("a")
        (live_dir / "player.xml").write_text("hp=0")

        assert read_tree(save.data_dir) == INITIAL
        assert names(store.list_saves()) == ["a"]

    def test_backup_is_replaced_not_accumulated(self, store, live_dir):
        store.create("a")
        (live_dir / "player.xml").write_text("first")
        store.load("a")
        (live_dir / "player.xml").write_text("second")
        store.load("a")

        assert (store.backup.data_dir / "player.xml").read_text() == "second"
        assert [p.name for p in store.store_root.iterdir() if "backup" in p.name] == ["backup"]

    def test_no_backup_initially(self, store):
        assert store.backup is None

    def test_load_trashed(self, store):
        store.create("a")
        store.remove("a")

        with pytest.raises(SaveIsTrashedError) as exc_info:
            store.load("a")

        assert "nauttaja restore a" in exc_info.value.hint
        assert store.backup is None

    def test_load_missing(self, store):
        with pytest.raises(SaveNotFoundError):
            store.load("nope")

    def test_backup_failure_leaves_live_untouched(self, store, live_dir):
        """バックアップに失敗したらライブディレクトリは変更されない"""
        store.create("a")
        (live_dir / "player.xml").write_text("current")
        before = read_tree(live_dir)

        with patch("nauttaja.storage.save_store.shutil.copytree", side_effect=OSError("no space")):
            with pytest.raises(BackupFailedError):
                store.load("a")

        assert read_tree(live_dir) == before
        assert store.backup is None
        assert staging_leftovers(store) == []

    def test_missing_live_directory_fails_backup(self, store, live_dir):
        store.create("a")
        shutil.rmtree(live_dir)

        with pytest.raises(BackupFailedError):
            store.load("a")
        assert not live_dir.exists()

    def test_copy_failure_after_backup_reports_backup(self, store, live_dir):
        """書き戻しのコピーに失敗した場合はバックアップの場所を通知"""
        store.create("a")
        (live_dir / "player.xml").write_text("current")
        before = read_tree(live_dir)

        save_data = store.get("a").data_dir
        real_copytree = shutil.copytree

        def flaky_copytree(src, dst, *args, **kwargs):
            # copytree はサブディレクトリごとに再帰呼び出しされるため、コピー元で判定する
            if Path(src) == save_data:
                raise OSError("device removed")
            return real_copytree(src, dst, *args, **kwargs)

        with patch("nauttaja.storage.save_store.shutil.copytree", side_effect=flaky_copytree):
            with pytest.raises(LoadFailedError) as exc_info:
                store.load("a")

        assert exc_info.value.backup_path == store.backup.data_dir
        assert str(store.backup.data_dir) in exc_info.value.hint
        assert read_tree(store.backup.data_dir) == before
        # コピー後に入れ替えるため、コピー失敗ではライブディレクトリは元のまま
        assert read_tree(live_dir) == before
        assert [p.name for p in live_dir.parent.iterdir()] == ["save00"]

    def test_failed_swap_puts_live_directory_back(self, store, live_dir):
        """入れ替えの rename に失敗したら退避したライブディレクトリを元に戻す"""
        store.create("a")
        (live_dir / "player.xml").write_text("current")
        before = read_tree(live_dir)

        real_rename = os.rename

        def failing_rename(src, dst):
            # ステージングからライブディレクトリへの rename だけ失敗させる
            if Path(dst) == live_dir and Path(src).parent != live_dir.parent:
                raise OSError("rename refused")
            return real_rename(src, dst)

        with patch("nauttaja.storage.save_store.os.rename", side_effect=failing_rename):
            with pytest.raises(LoadFailedError) as exc_info:
                store.load("a")

        assert exc_info.value.backup_path == store.backup.data_dir
        assert read_tree(live_dir) == before
        assert [p.name for p in live_dir.parent.iterdir()] == ["save00"]

    def test_leftover_replaced_directory_is_reported(self, store, live_dir):
        """退避したディレクトリを削除できなくても load は成功し、check で検出される"""
        store.create("a")
        real_rmtree = shutil.rmtree

        def stubborn_rmtree(path, *args, **kwargs):
            if Path(path).name.startswith(".save00.old-"):
                raise OSError("busy")
            return real_rmtree(path, *args, **kwargs)

        with patch("nauttaja.storage.save_store.shutil.rmtree", side_effect=stubborn_rmtree):
            store.load("a")

        assert read_tree(live_dir) == INITIAL
        problems = store.check_integrity()
        assert len(problems) == 1
        assert problems[0].startswith("leftover replaced directory:")
        assert ".save00.old-" in problems[0]

    def test_restore_backup(self, store, live_dir):
        store.create("a")
        (live_dir / "player.xml").write_text("before load")
        pre_load = read_tree(live_dir)
        store.load("a")

        restored = store.restore_backup()

        assert read_tree(live_dir) == pre_load
        assert read_tree(restored.data_dir) == pre_load

    def test_restore_backup_recreates_missing_live_directory(self, store, live_dir):
        """ライブディレクトリが失われていてもバックアップから復旧できる"""
        store.create("a")
        (live_dir / "player.xml").write_text("before load")
        pre_load = read_tree(live_dir)
        store.load("a")
        shutil.rmtree(live_dir)

        store.restore_backup()

        assert read_tree(live_dir) == pre_load

    def test_restore_backup_without_backup(self, store):
        with pytest.raises(SaveNotFoundError):
            store.restore_backup()


class TestCheckIntegrity:
    def test_clean_store(self, store):
        store.create("a")
        store.create("b")
        store.remove("b")
        assert store.check_integrity() == []

    def test_name_in_both_collections(self, store):
        save = store.create("a")
        shutil.copytree(save.path, store.trash_dir / "a")

        problems = store.check_integrity()
        assert any("'a' exists both" in p for p in problems)

    def test_missing_marker_and_data(self, store):
        save = store.create("a")
        (save.path / SAVE_MARKER).unlink()
        shutil.rmtree(save.data_dir)

        problems = store.check_integrity()
        assert len(problems) == 2

    def test_leftover_staging(self, store):
        (store.store_root / f"{STAGING_PREFIX}abc").mkdir()

        problems = store.check_integrity()
        assert problems == [f"leftover staging directory: {store.store_root / (STAGING_PREFIX + 'abc')}"]

    def test_leftover_old_backup(self, store):
        old = store.store_root / ".backup.old-1a2b3c4d"
        old.mkdir()

        assert store.check_integrity() == [f"leftover replaced directory: {old}"]

    def test_leftover_beside_live_directory(self, store, live_dir):
        old = live_dir.parent / ".save00.old-1a2b3c4d"
        old.mkdir()

        assert store.check_integrity() == [f"leftover replaced directory: {old}"]
