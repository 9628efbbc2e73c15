"""Color schemes and CSS generation for the notch display.

Supports Nord (default), Tokyo Night, Catppuccin, and Dracula.
"""

from __future__ import annotations


# ─── Color Schemes ────────────────────────────────────────────────────────

COLOR_SCHEMES: dict[str, dict[str, str]] = {
    "nord": {
        "bg": "#2e3440",
        "bg_alt": "#3b4252",
        "fg": "#eceff4",
        "fg_dim": "#616e88",
        "accent": "#88c0d0",
        "success": "#a3be8c",
        "warning": "#ebcb8b",
        "error": "#bf616a",
        "purple": "#b48ead",
        "highlight_bg": "#434c5e",
        "border": "#4c566a",
    },
    "tokyo-night": {
        "bg": "#1a1b26",
        "bg_alt": "#24283b",
        "fg": "#a9b1d6",
        "fg_dim": "#565f89",
        "accent": "#7aa2f7",
        "success": "#9ece6a",
        "warning": "#e0af68",
        "error": "#f7768e",
        "purple": "#bb9af7",
        "highlight_bg": "#292e42",
        "border": "#414868",
    },
    "catppuccin": {
        "bg": "#1e1e2e",
        "bg_alt": "#313244",
        "fg": "#cdd6f4",
        "fg_dim": "#585b70",
        "accent": "#89b4fa",
        "success": "#a6e3a1",
        "warning": "#f9e2af",
        "error": "#f38ba8",
        "purple": "#cba6f7",
        "highlight_bg": "#45475a",
        "border": "#585b70",
    },
    "dracula": {
        "bg": "#282a36",
        "bg_alt": "#44475a",
        "fg": "#f8f8f2",
        "fg_dim": "#6272a4",
        "accent": "#8be9fd",
        "success": "#50fa7b",
        "warning": "#f1fa8c",
        "error": "#ff5555",
        "purple": "#bd93f9",
        "highlight_bg": "#44475a",
        "border": "#6272a4",
    },
}

DEFAULT_SCHEME = "nord"

# Notification kind → scheme color key for the left border
KIND_COLORS: dict[str, str] = {
    "success": "success",
    "celebration": "success",
    "warning": "warning",
    "reminder": "warning",
    "error": "error",
    "security": "error",
    "ai": "purple",
}


def get_scheme(name: str = DEFAULT_SCHEME) -> dict[str, str]:
    """Get a color scheme by name, with fallback to default."""
    return COLOR_SCHEMES.get(name, COLOR_SCHEMES[DEFAULT_SCHEME])


def build_css(scheme_name: str = DEFAULT_SCHEME) -> str:
    """Build the Textual CSS using a named color scheme."""
    s = get_scheme(scheme_name)
    kind_rules = "\n".join(
        f"    NotificationItem.kind-{kind} {{ border-left: tall {s[key]}; }}"
        for kind, key in KIND_COLORS.items()
    )
    return f"""
    Screen {{
        background: {s['bg']};
        color: {s['fg']};
    }}

    #status {{
        dock: top;
        height: 1;
        width: 1fr;
        background: {s['bg_alt']};
        color: {s['accent']};
        padding: 0 1;
    }}

    #feed {{
        height: 1fr;
        background: {s['bg']};
    }}

    NotificationItem {{
        padding: 0 1;
        border-left: tall {s['accent']};
        background: {s['bg']};
    }}

    NotificationItem.-highlight {{
        background: {s['highlight_bg']};
    }}

    NotificationItem .notification-message {{
        color: {s['fg_dim']};
    }}

{kind_rules}

    #detail {{
        dock: bottom;
        height: auto;
        max-height: 50%;
        background: {s['bg_alt']};
        border-top: solid {s['border']};
        padding: 0 1;
    }}

    #detail-title {{
        text-style: bold;
        color: {s['fg']};
    }}

    #detail-message {{
        color: {s['fg_dim']};
    }}

    #buttons {{
        height: auto;
        layout: horizontal;
    }}

    #buttons Button {{
        margin: 0 1 0 0;
    }}
    """
