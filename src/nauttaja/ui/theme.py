from dataclasses import dataclass
from enum import Enum


class ThemeName(str, Enum):
    DEFAULT = "default"
    OCEAN = "ocean"
    FOREST = "forest"


@dataclass
class Theme:
    border: str
    name: str
    timestamp: str
    accent: str = "bright_cyan"
    muted: str = "grey50"
    success: str = "green"
    warning: str = "yellow"
    error: str = "red"


THEMES = {
    ThemeName.DEFAULT: Theme(
        border="blue",
        name="cyan",
        timestamp="green",
    ),
    ThemeName.OCEAN: Theme(
        border="cyan",
        name="bright_blue",
        timestamp="blue",
        success="bright_green",
    ),
    ThemeName.FOREST: Theme(
        border="yellow",
        name="green",
        timestamp="bright_green",
        accent="bright_green",
    ),
}
