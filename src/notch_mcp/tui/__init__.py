"""notch-mcp terminal display.

Modules:
    themes  — Color schemes (Nord, Tokyo Night, Catppuccin, Dracula) and CSS generation
    widgets — NotificationItem, kind icons, _safe_action decorator
    app     — NotchDisplayApp (main Textual App)
"""

from .themes import COLOR_SCHEMES, DEFAULT_SCHEME, get_scheme, build_css
from .widgets import NotificationItem, _safe_action
from .app import NotchDisplayApp

__all__ = [
    "COLOR_SCHEMES",
    "DEFAULT_SCHEME",
    "get_scheme",
    "build_css",
    "NotificationItem",
    "_safe_action",
    "NotchDisplayApp",
]
