#!/usr/bin/env python3
"""Nauttaja CLI"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from . import __version__
from .config import ENV_GAME_DIR, init_environment, load_config
from .exceptions import NauttajaError
from .storage.save_store import Save, SaveLocation, SaveStore
from .ui.theme import THEMES, Theme, ThemeName
from .utils.env_manager import EnvManager

TIME_FORMAT = "%Y-%m-%d %H:%M:%S"

app = typer.Typer(
    name="nauttaja",
    help="Save manager for Noita: snapshot, restore and trash game saves",
    add_completion=False,
)

# バックアップスロット用サブコマンド
backup_app = typer.Typer(help="load 直前に取得されるバックアップ")
app.add_typer(backup_app, name="backup")


def _version_callback(value: bool):
    if value:
        typer.echo(f"nauttaja {__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="詳細ログ"),
    theme: ThemeName = typer.Option(ThemeName.DEFAULT, "--theme", help="UIカラーテーマ", case_sensitive=False),
    version: bool = typer.Option(False, "--version", callback=_version_callback, is_eager=True, help="バージョンを表示"),
):
    """Save manager for Noita"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    init_environment()
    ctx.obj = {"theme": THEMES[theme]}


def _theme(ctx: typer.Context) -> Theme:
    if ctx.obj and "theme" in ctx.obj:
        return ctx.obj["theme"]
    return THEMES[ThemeName.DEFAULT]


def _format_time(value: datetime) -> str:
    return value.astimezone().strftime(TIME_FORMAT)


def _open_store(need_live: bool = False) -> SaveStore:
    """設定からセーブストアを開く（need_live の場合はゲームディレクトリ必須）"""
    config = load_config()
    if need_live or config.game_dir is not None:
        return SaveStore(config.store_root, live_dir=config.live_dir)
    return SaveStore(config.store_root)


def _fail(error: NauttajaError, theme: Theme) -> None:
    """エラーを表示して終了コード 1 で終了"""
    console = Console(stderr=True)
    console.print(f"[bold {theme.error}]Error:[/] {escape(error.message)}", highlight=False)
    hint = getattr(error, "hint", None)
    if hint:
        console.print(f"[{theme.warning}]{escape(hint)}[/]", highlight=False)
    raise typer.Exit(code=1)


def _saves_table(saves: list, title: str, theme: Theme) -> Table:
    table = Table(title=title, border_style=theme.border)
    table.add_column("#", style=theme.muted, justify="right")
    table.add_column("Name", style=theme.name)
    table.add_column("Created", style=theme.timestamp)

    for index, save in enumerate(saves, start=1):
        table.add_row(str(index), escape(save.name), _format_time(save.created_at))
    return table


@app.command()
def save(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="新しいセーブの名前"),
):
    """現在のゲームをセーブ"""
    theme = _theme(ctx)
    console = Console()
    try:
        created = _open_store(need_live=True).create(name)
    except NauttajaError as e:
        _fail(e, theme)

    console.print(f"[{theme.success}]✅ Saved game as [bold]{escape(created.name)}[/bold][/]", highlight=False)


@app.command("import")
def import_(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="新しいセーブの名前"),
    path: Path = typer.Argument(..., help="取り込むディレクトリ"),
    created_at: Optional[str] = typer.Option(None, "--created-at", help="作成日時 (ISO 8601, 例: 2024-05-01T18:30:00)"),
):
    """任意のディレクトリをセーブとして取り込む"""
    theme = _theme(ctx)
    console = Console()

    timestamp = None
    if created_at:
        try:
            timestamp = datetime.fromisoformat(created_at)
        except ValueError:
            raise typer.BadParameter(f"Not an ISO 8601 timestamp: {created_at}", param_hint="--created-at")

    try:
        imported = _open_store().import_save(name, path, created_at=timestamp)
    except NauttajaError as e:
        _fail(e, theme)

    console.print(
        f"[{theme.success}]✅ Imported {escape(str(path))} as [bold]{escape(imported.name)}[/bold] ({_format_time(imported.created_at)})[/]",
        highlight=False,
    )


@app.command("list")
def list_(
    ctx: typer.Context,
    trash: bool = typer.Option(False, "--trash", "-t", help="ゴミ箱のセーブを表示"),
):
    """セーブ一覧（古い順）"""
    theme = _theme(ctx)
    console = Console()
    location = SaveLocation.TRASHED if trash else SaveLocation.ACTIVE
    try:
        saves = _open_store().list_saves(location)
    except NauttajaError as e:
        _fail(e, theme)

    if not saves:
        console.print("[dim]Trash is empty[/dim]" if trash else "[dim]No saves found[/dim]")
        return

    console.print(_saves_table(saves, "Trash" if trash else "Saves", theme))


@app.command()
def info(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="セーブ名"),
):
    """セーブの詳細"""
    theme = _theme(ctx)
    console = Console()
    try:
        found: Save = _open_store().get(name)
    except NauttajaError as e:
        _fail(e, theme)

    table = Table(title=f"Save: {escape(found.name)}", border_style=theme.border, show_header=False)
    table.add_column("Property", style=theme.name)
    table.add_column("Value")
    table.add_row("Name", escape(found.name))
    table.add_row("Location", found.location.value)
    table.add_row("Created", _format_time(found.created_at))
    table.add_row("Path", str(found.path))
    console.print(table)


@app.command()
def load(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="読み込むセーブ名"),
):
    """現在のゲームを指定したセーブで置き換える"""
    theme = _theme(ctx)
    console = Console()
    try:
        result = _open_store(need_live=True).load(name)
    except NauttajaError as e:
        _fail(e, theme)

    console.print(f"[{theme.success}]✅ Save [bold]{escape(result.save.name)}[/bold] successfully loaded![/]", highlight=False)
    console.print(f"[dim]Previous game state backed up to {result.backup.path}[/dim]", highlight=False)


@app.command()
def remove(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="ゴミ箱に移動するセーブ名"),
):
    """セーブをゴミ箱に移動"""
    theme = _theme(ctx)
    console = Console()
    try:
        trashed = _open_store().remove(name)
    except NauttajaError as e:
        _fail(e, theme)

    console.print(f"[{theme.success}]🗑  Moved [bold]{escape(trashed.name)}[/bold] to the trash[/]", highlight=False)
    console.print(f"[dim]Undo with:[/dim] [{theme.accent}]nauttaja restore {escape(trashed.name)}[/]", highlight=False)


@app.command()
def restore(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="ゴミ箱から戻すセーブ名"),
):
    """ゴミ箱のセーブを元に戻す"""
    theme = _theme(ctx)
    console = Console()
    try:
        restored = _open_store().restore(name)
    except NauttajaError as e:
        _fail(e, theme)

    console.print(f"[{theme.success}]✅ Restored [bold]{escape(restored.name)}[/bold] from the trash[/]", highlight=False)


@app.command()
def delete(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="完全に削除するセーブ名（ゴミ箱内）"),
    yes: bool = typer.Option(False, "--yes", "-y", help="確認を省略"),
):
    """ゴミ箱のセーブを完全に削除（取り消し不可）"""
    theme = _theme(ctx)
    console = Console()
    try:
        store = _open_store()
        target = store.get(name)
        if target.location == SaveLocation.TRASHED and not yes:
            typer.confirm(f"Permanently delete '{target.name}'? This cannot be undone.", abort=True)
        deleted = store.delete(name)
    except NauttajaError as e:
        _fail(e, theme)

    console.print(f"[{theme.success}]Deleted [bold]{escape(deleted.name)}[/bold] permanently[/]", highlight=False)


@app.command("empty-trash")
def empty_trash(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", "-y", help="確認を省略"),
):
    """ゴミ箱を空にする（取り消し不可）"""
    theme = _theme(ctx)
    console = Console()
    try:
        store = _open_store()
        trashed = store.list_saves(SaveLocation.TRASHED)
        if not trashed:
            console.print("[dim]Trash is empty[/dim]")
            return
        if not yes:
            typer.confirm(f"Permanently delete {len(trashed)} trashed save(s)? This cannot be undone.", abort=True)
        deleted = store.empty_trash()
    except NauttajaError as e:
        _fail(e, theme)

    console.print(f"[{theme.success}]Deleted {len(deleted)} save(s) permanently[/]", highlight=False)


@app.command()
def check(ctx: typer.Context):
    """セーブストアの整合性チェック"""
    theme = _theme(ctx)
    console = Console()
    try:
        problems = _open_store().check_integrity()
    except NauttajaError as e:
        _fail(e, theme)

    if not problems:
        console.print(f"[{theme.success}]✅ No problems found[/]")
        return

    for problem in problems:
        console.print(f"[{theme.warning}]- {escape(problem)}[/]", highlight=False)
    raise typer.Exit(code=1)


@backup_app.command("show")
def backup_show(ctx: typer.Context):
    """現在のバックアップを表示"""
    theme = _theme(ctx)
    console = Console()
    try:
        current = _open_store().backup
    except NauttajaError as e:
        _fail(e, theme)

    if current is None:
        console.print("[dim]No backup yet. One is taken automatically each time a save is loaded.[/dim]")
        return

    lines = [f"Taken: {_format_time(current.created_at)}", f"Path: {current.data_dir}"]
    if current.source:
        lines.append(f"From: {current.source}")
    console.print(Panel("\n".join(lines), title="Backup", border_style=theme.border), highlight=False)


@backup_app.command("restore")
def backup_restore(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", "-y", help="確認を省略"),
):
    """バックアップをライブディレクトリに書き戻す"""
    theme = _theme(ctx)
    console = Console()
    try:
        store = _open_store(need_live=True)
        if store.backup is not None and not yes:
            typer.confirm(f"Overwrite {store.live_dir} with the backup?", abort=True)
        restored = store.restore_backup()
    except NauttajaError as e:
        _fail(e, theme)

    console.print(
        f"[{theme.success}]✅ Restored the backup taken at {_format_time(restored.created_at)}[/]",
        highlight=False,
    )


@app.command("open")
def open_(ctx: typer.Context):
    """ゲームディレクトリをファイルブラウザで開く"""
    theme = _theme(ctx)
    try:
        game_dir = load_config().live_dir.parent
    except NauttajaError as e:
        _fail(e, theme)

    typer.launch(str(game_dir))


@app.command("set-game-dir")
def set_game_dir(
    ctx: typer.Context,
    path: Path = typer.Argument(
        ...,
        help="ゲームのルートディレクトリ（セーブスロットの親）",
        exists=True,
        file_okay=False,
        dir_okay=True,
        resolve_path=True,
    ),
):
    """ゲームのルートディレクトリを設定"""
    theme = _theme(ctx)
    console = Console()
    try:
        config = load_config()
        EnvManager(config.env_file).update(ENV_GAME_DIR, str(path))
    except NauttajaError as e:
        _fail(e, theme)
    except OSError as e:
        console.print(f"[bold {theme.error}]Error:[/] Could not write {config.env_file}: {e}", highlight=False)
        raise typer.Exit(code=1)

    console.print(f"[{theme.success}]✅ Game directory set to {path}[/]", highlight=False)
    slot = path / config.save_slot
    if not slot.is_dir():
        console.print(f"[{theme.warning}]Note: {slot} does not exist yet[/]", highlight=False)


@app.command("config")
def show_config(ctx: typer.Context):
    """現在の設定を表示"""
    theme = _theme(ctx)
    console = Console()
    try:
        config = load_config()
    except NauttajaError as e:
        _fail(e, theme)

    table = Table(title="Configuration", border_style=theme.border, show_header=False)
    table.add_column("Key", style=theme.name)
    table.add_column("Value")
    table.add_row("Store root", str(config.store_root))
    table.add_row("Game directory", str(config.game_dir) if config.game_dir else "(not set)")
    table.add_row("Save slot", config.save_slot)
    table.add_row("Config file", str(config.env_file))
    console.print(table)

    if config.env_file.is_file():
        saved = EnvManager(config.env_file).values()
        for key, value in sorted(saved.items()):
            console.print(f"[{theme.accent}]{key}[/]={escape(value)}", highlight=False)


def main():
    app()


if __name__ == "__main__":
    main()
