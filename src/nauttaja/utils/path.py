import os
from pathlib import Path

from ..exceptions import InvalidSaveNameError


def validate_save_name(name: str) -> str:
    """
    セーブ名を検証する。
    ストアのディレクトリ外へのアクセス（パストラバーサル）を防ぐ。

    Args:
        name: 利用者が指定したセーブ名

    Returns:
        前後の空白を取り除いたセーブ名

    Raises:
        InvalidSaveNameError: 空、区切り文字を含む、または "." で始まる場合
    """
    if name is None:
        raise InvalidSaveNameError("Save name must not be empty", hint="Give the save a name, e.g. `nauttaja save boss-fight`.")

    stripped = name.strip()
    if not stripped:
        raise InvalidSaveNameError("Save name must not be empty", name=name, hint="Give the save a name, e.g. `nauttaja save boss-fight`.")

    separators = {"/", "\\", os.sep}
    if os.altsep:
        separators.add(os.altsep)
    if any(sep in stripped for sep in separators) or "\x00" in stripped:
        raise InvalidSaveNameError(
            f"Save name must not contain path separators: {name!r}",
            name=name,
            hint="Use letters, digits, spaces, '-' or '_'.",
        )

    # "." 始まりはステージング用に予約（"." と ".." も含む）
    if stripped.startswith("."):
        raise InvalidSaveNameError(
            f"Save name must not start with '.': {name!r}",
            name=name,
            hint="Names starting with '.' are reserved for internal use.",
        )

    # 単一のパス要素であること
    if Path(stripped).name != stripped:
        raise InvalidSaveNameError(f"Invalid save name: {name!r}", name=name)

    return stripped
