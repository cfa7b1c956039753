from .theme import THEMES, Theme, ThemeName

__all__ = ["THEMES", "Theme", "ThemeName"]
