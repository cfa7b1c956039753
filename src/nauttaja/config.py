"""
設定モジュール

ストアルート・ゲームディレクトリ・ライブスロット名を環境変数（.env）から解決する。
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import find_dotenv, load_dotenv

from .exceptions import ConfigurationError, ErrorCodes

logger = logging.getLogger(__name__)

ENV_HOME = "NAUTTAJA_HOME"
ENV_GAME_DIR = "NAUTTAJA_GAME_DIR"
ENV_SAVE_SLOT = "NAUTTAJA_SAVE_SLOT"

DEFAULT_SAVE_SLOT = "save00"
ENV_FILE_NAME = ".env"


def default_store_root() -> Path:
    """NAUTTAJA_HOME が未設定の場合のストアルート"""
    return Path.home() / ".nauttaja"


def init_environment() -> None:
    """環境変数の初期化"""
    # 1. find_dotenv(usecwd=True) でカレントディレクトリから親方向に .env を探索
    # 2. ストアルート直下の .env（set-game-dir の保存先）
    # 既存の環境変数は上書きしない
    env_path = find_dotenv(usecwd=True)
    if env_path:
        load_dotenv(env_path)

    store_env = Path(os.environ.get(ENV_HOME) or default_store_root()) / ENV_FILE_NAME
    if store_env.exists():
        load_dotenv(store_env)


@dataclass
class NauttajaConfig:
    """nauttaja 設定"""

    store_root: Path
    game_dir: Optional[Path] = None
    save_slot: str = DEFAULT_SAVE_SLOT

    def __post_init__(self):
        """設定値のバリデーション"""
        self.store_root = Path(self.store_root).expanduser()
        if self.game_dir is not None:
            self.game_dir = Path(self.game_dir).expanduser()
        if not self.save_slot or Path(self.save_slot).name != self.save_slot:
            raise ConfigurationError(
                f"{ENV_SAVE_SLOT} must be a single directory name, got {self.save_slot!r}",
                code=ErrorCodes.CONFIG_INVALID_VALUE,
                details={"env_var": ENV_SAVE_SLOT},
            )

    @property
    def env_file(self) -> Path:
        return self.store_root / ENV_FILE_NAME

    @property
    def live_dir(self) -> Path:
        """ゲームが読み書きするライブディレクトリ"""
        if self.game_dir is None:
            raise ConfigurationError(
                "Game directory is not configured. Run: nauttaja set-game-dir <path to the game's root directory>",
                code=ErrorCodes.CONFIG_GAME_DIR_MISSING,
                details={"env_var": ENV_GAME_DIR},
            )
        return self.game_dir / self.save_slot


def load_config() -> NauttajaConfig:
    """環境変数から設定を読み込む"""
    store_root = os.environ.get(ENV_HOME) or default_store_root()
    game_dir = os.environ.get(ENV_GAME_DIR) or None
    save_slot = os.environ.get(ENV_SAVE_SLOT) or DEFAULT_SAVE_SLOT

    config = NauttajaConfig(
        store_root=Path(store_root),
        game_dir=Path(game_dir) if game_dir else None,
        save_slot=save_slot,
    )
    logger.debug(f"Config loaded: store_root={config.store_root} game_dir={config.game_dir} slot={config.save_slot}")
    return config
