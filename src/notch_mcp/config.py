"""Configuration system for notch-mcp.

Reads/writes config from $XDG_CONFIG_HOME/notch-mcp/config.yml (default
~/.config/notch-mcp/config.yml), overridable with --config-file or the
NOTCH_MCP_CONFIG environment variable.

Config strings can include shell variables like ${HOME} or
${NOTCH_SOCKET:-~/.notch.sock} which are expanded at load time, and
paths additionally get ``~`` expansion.

The config defines:
  - paths: socket, pending-action store and its lock file
  - transport: ingestion backlog, receive buffer, client timeout
  - actionable: poll interval / budget for blocking tool calls
  - watcher: sampling interval for the store file watcher
  - store: orphan sweep age
  - display: color scheme and in-memory history size

All messages go to stderr: stdout is the MCP stdio transport.
"""

from __future__ import annotations

import copy
import os
import re
import sys
from dataclasses import dataclass, field
from typing import Any, Optional

import yaml


DEFAULT_CONFIG_DIR = os.path.join(
    os.environ.get("XDG_CONFIG_HOME", os.path.expanduser("~/.config")),
    "notch-mcp",
)
DEFAULT_CONFIG_FILE = os.path.join(DEFAULT_CONFIG_DIR, "config.yml")

# Full default config: written on first run, used as fallback for missing keys
DEFAULT_CONFIG: dict[str, Any] = {
    "paths": {
        "socket": "~/.notch.sock",
        "store": "~/.notch_pending_actions.json",
        "lock": "~/.notch_pending_actions.lock",
    },
    "transport": {
        "backlog": 5,
        "bufferSize": 65536,
        "clientTimeoutSecs": 2.0,
    },
    "actionable": {
        "pollIntervalSecs": 1.0,
        "maxPolls": 50,
        "useWatcher": False,       # wake the poll loop early on store writes
    },
    "watcher": {
        "intervalSecs": 0.05,
    },
    "store": {
        "orphanMaxAgeSecs": 0,     # 0 = keep late-click orphans forever
    },
    "display": {
        "colorScheme": "nord",
        "historySize": 50,
    },
}

_KNOWN_KEYS: dict[str, set[str]] = {
    "paths": {"socket", "store", "lock"},
    "transport": {"backlog", "bufferSize", "clientTimeoutSecs"},
    "actionable": {"pollIntervalSecs", "maxPolls", "useWatcher"},
    "watcher": {"intervalSecs"},
    "store": {"orphanMaxAgeSecs"},
    "display": {"colorScheme", "historySize"},
}


def _note(message: str) -> None:
    print(message, file=sys.stderr, flush=True)


def _expand_env(value: str) -> str:
    """Expand shell-style ${VAR} and ${VAR:-default} in a string."""
    def _replacer(m: re.Match) -> str:
        var_expr = m.group(1)
        if ":-" in var_expr:
            var_name, default = var_expr.split(":-", 1)
            return os.environ.get(var_name, default)
        return os.environ.get(var_expr, "")
    return re.sub(r"\$\{([^}]+)\}", _replacer, value)


def _expand_config(obj: Any) -> Any:
    """Recursively expand env vars in all string values."""
    if isinstance(obj, str):
        return _expand_env(obj)
    elif isinstance(obj, dict):
        return {k: _expand_config(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_expand_config(v) for v in obj]
    return obj


def _deep_merge(base: dict, override: dict) -> dict:
    """Deep-merge override into base. Override values win."""
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _edit_distance(a: str, b: str) -> int:
    """Compute Levenshtein edit distance between two strings."""
    if len(a) > len(b):
        a, b = b, a
    prev = list(range(len(a) + 1))
    for j in range(1, len(b) + 1):
        curr = [j] + [0] * len(a)
        for i in range(1, len(a) + 1):
            cost = 0 if a[i - 1] == b[j - 1] else 1
            curr[i] = min(curr[i - 1] + 1, prev[i] + 1, prev[i - 1] + cost)
        prev = curr
    return prev[len(a)]


def _closest_match(key: str, valid_keys: set[str], max_distance: int = 3) -> str | None:
    """Suggest the nearest valid key for a probable typo, or None."""
    best_match = None
    best_dist = max_distance + 1
    key_lower = key.lower()
    for candidate in valid_keys:
        cand_lower = candidate.lower()
        if key_lower == cand_lower:
            return candidate
        if abs(len(key_lower) - len(cand_lower)) > max_distance:
            continue
        dist = _edit_distance(key_lower, cand_lower)
        if dist < best_dist:
            best_dist = dist
            best_match = candidate
    return best_match if best_dist <= max_distance else None


def _default_path() -> str:
    return os.environ.get("NOTCH_MCP_CONFIG") or DEFAULT_CONFIG_FILE


@dataclass
class NotchConfig:
    """Parsed and expanded notch-mcp configuration."""

    raw: dict[str, Any] = field(default_factory=lambda: copy.deepcopy(DEFAULT_CONFIG))
    """The raw config as loaded from YAML (with env vars unexpanded)."""

    expanded: dict[str, Any] = field(default_factory=lambda: _expand_config(copy.deepcopy(DEFAULT_CONFIG)))
    """The config with all env vars expanded."""

    config_path: str = DEFAULT_CONFIG_FILE
    """Path to the config file."""

    validation_warnings: list[str] = field(default_factory=list)
    """Warnings from the last validation run."""

    @classmethod
    def defaults(cls) -> "NotchConfig":
        """Built-in defaults only; nothing is read from or written to disk."""
        raw = copy.deepcopy(DEFAULT_CONFIG)
        return cls(raw=raw, expanded=_expand_config(raw), config_path=os.devnull)

    @classmethod
    def load(cls, config_path: Optional[str] = None) -> "NotchConfig":
        """Load config from file, creating it with defaults if not found.

        Merge order (later takes precedence):
        1. DEFAULT_CONFIG (built-in defaults)
        2. the YAML file at *config_path*

        The merged result is written back so new default keys show up in
        the user's file.
        """
        path = config_path or _default_path()
        raw = copy.deepcopy(DEFAULT_CONFIG)

        if os.path.isfile(path):
            try:
                with open(path, "r") as f:
                    user_config = yaml.safe_load(f)
                if user_config and isinstance(user_config, dict):
                    raw = _deep_merge(raw, user_config)
            except (OSError, yaml.YAMLError) as e:
                _note(f"WARNING: Failed to load config from {path}: {e}")
        else:
            try:
                os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
                with open(path, "w") as f:
                    yaml.dump(raw, f, default_flow_style=False, sort_keys=False)
                _note(f"  Config: created {path}")
            except OSError as e:
                _note(f"WARNING: Failed to write default config to {path}: {e}")

        cfg = cls(raw=raw, expanded=_expand_config(raw), config_path=path)
        cfg._validate()

        try:
            cfg.save()
        except OSError:
            pass
        return cfg

    def _validate(self) -> None:
        """Validate config structure and report warnings for issues."""
        warnings: list[str] = []

        for key, value in self.raw.items():
            if key not in _KNOWN_KEYS:
                _suggest = _closest_match(key, set(_KNOWN_KEYS))
                hint = f" (did you mean '{_suggest}'?)" if _suggest else ""
                warnings.append(
                    f"Unknown top-level key '{key}'{hint} — "
                    f"expected one of: {', '.join(sorted(_KNOWN_KEYS))}"
                )
                continue
            if not isinstance(value, dict):
                warnings.append(f"Section '{key}' should be a mapping, got {type(value).__name__}")
                continue
            known = _KNOWN_KEYS[key]
            for sub in value:
                if sub not in known:
                    _suggest = _closest_match(sub, known)
                    hint = f" (did you mean '{_suggest}'?)" if _suggest else ""
                    warnings.append(
                        f"Unknown key '{key}.{sub}'{hint} — "
                        f"expected one of: {', '.join(sorted(known))}"
                    )

        actionable = self._section("actionable")
        try:
            if int(actionable.get("maxPolls", 50)) < 1:
                warnings.append("actionable.maxPolls must be >= 1 — using 1")
            if float(actionable.get("pollIntervalSecs", 1.0)) <= 0:
                warnings.append("actionable.pollIntervalSecs must be > 0 — using 1.0")
        except (TypeError, ValueError) as e:
            warnings.append(f"actionable section has a non-numeric value: {e}")

        self.validation_warnings = warnings
        for w in warnings:
            _note(f"  Config WARNING: {w}")

    def save(self) -> None:
        """Write the raw config back to disk."""
        if self.config_path == os.devnull:
            return
        os.makedirs(os.path.dirname(self.config_path) or ".", exist_ok=True)
        with open(self.config_path, "w") as f:
            yaml.dump(self.raw, f, default_flow_style=False, sort_keys=False)
        self.expanded = _expand_config(self.raw)

    def reload(self) -> None:
        """Reload from disk."""
        fresh = NotchConfig.load(self.config_path)
        self.raw = fresh.raw
        self.expanded = fresh.expanded
        self.validation_warnings = fresh.validation_warnings

    def _section(self, name: str) -> dict[str, Any]:
        value = self.expanded.get(name, {})
        return value if isinstance(value, dict) else {}

    def _path(self, key: str) -> str:
        value = self._section("paths").get(key) or DEFAULT_CONFIG["paths"][key]
        return os.path.expanduser(str(value))

    # ─── Paths ──────────────────────────────────────────────────────

    @property
    def socket_path(self) -> str:
        """Unix socket the display process listens on."""
        return self._path("socket")

    @property
    def store_path(self) -> str:
        """JSON file holding pending actions, shared by both processes."""
        return self._path("store")

    @property
    def lock_path(self) -> str:
        """Advisory lock file guarding the store."""
        return self._path("lock")

    # ─── Transport ──────────────────────────────────────────────────

    @property
    def backlog(self) -> int:
        return int(self._section("transport").get("backlog", 5))

    @property
    def buffer_size(self) -> int:
        return int(self._section("transport").get("bufferSize", 65536))

    @property
    def client_timeout(self) -> float:
        return float(self._section("transport").get("clientTimeoutSecs", 2.0))

    # ─── Actionable requests ────────────────────────────────────────

    @property
    def poll_interval(self) -> float:
        """Seconds between store checks while a tool call waits for a click.

        Non-positive values fall back to the 1.0 default.
        """
        interval = float(self._section("actionable").get("pollIntervalSecs", 1.0))
        return interval if interval > 0 else 1.0

    @property
    def max_polls(self) -> int:
        """Number of store checks before the tool call gives up."""
        return max(1, int(self._section("actionable").get("maxPolls", 50)))

    @property
    def use_watcher(self) -> bool:
        return bool(self._section("actionable").get("useWatcher", False))

    @property
    def watcher_interval(self) -> float:
        return float(self._section("watcher").get("intervalSecs", 0.05))

    # ─── Store ──────────────────────────────────────────────────────

    @property
    def orphan_max_age(self) -> float:
        """Age in seconds after which resolved orphans are swept. 0 disables."""
        return float(self._section("store").get("orphanMaxAgeSecs", 0))

    # ─── Display ────────────────────────────────────────────────────

    @property
    def color_scheme(self) -> str:
        return str(self._section("display").get("colorScheme", "nord"))

    @property
    def history_size(self) -> int:
        return int(self._section("display").get("historySize", 50))
