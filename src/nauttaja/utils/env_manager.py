import os
from pathlib import Path
from dotenv import dotenv_values, set_key


class EnvManager:
    """.env ファイルの読み書きを管理するクラス"""

    def __init__(self, env_path: Path):
        self.env_path = Path(env_path)
        self.env_path.parent.mkdir(parents=True, exist_ok=True)
        if not self.env_path.exists():
            self.env_path.touch()

    def update(self, key: str, value: str):
        """指定されたキーの値を更新または追加する。"""
        set_key(str(self.env_path), key, value)
        # プロセス内の環境変数も更新
        os.environ[key] = value

    def values(self) -> dict:
        """.env ファイルに保存されている値"""
        return {k: v for k, v in dotenv_values(str(self.env_path)).items() if v is not None}
