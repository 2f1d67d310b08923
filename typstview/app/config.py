from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

GLOBAL_CONFIG = Path.home() / ".typstview_config.json"

DEFAULT_PREAMBLE = "// typstview preamble"
DEFAULT_TEMP_PREFIX = "typstview-"
DEFAULT_CLI_STYLE = {"foreground": "#000000", "font_weight": "regular", "font_size_pt": 11}


def _read_global_config() -> dict:
    """Return the parsed global config, or an empty dict on error/missing."""
    if not GLOBAL_CONFIG.exists():
        return {}
    try:
        payload = json.loads(GLOBAL_CONFIG.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError):
        return {}
    return payload if isinstance(payload, dict) else {}


def _update_global_config(updates: dict) -> None:
    """Merge updates into global config file."""
    existing = _read_global_config()
    existing.update(updates)
    GLOBAL_CONFIG.write_text(json.dumps(existing, indent=2), encoding="utf-8")


# Typst compiler


def load_typst_path() -> Optional[str]:
    """Load configured typst executable path (if any)."""
    payload = _read_global_config()
    path = payload.get("typst_path")
    return path if isinstance(path, str) and path.strip() else None


def save_typst_path(path: str) -> None:
    """Save configured typst executable path."""
    _update_global_config({"typst_path": path.strip() if path else ""})


def load_typst_preamble() -> str:
    """Load the user preamble inserted before every fragment (default: an empty comment)."""
    payload = _read_global_config()
    preamble = payload.get("typst_preamble")
    if isinstance(preamble, str) and preamble.strip():
        return preamble
    return DEFAULT_PREAMBLE


def save_typst_preamble(preamble: str) -> None:
    _update_global_config({"typst_preamble": preamble or ""})


def load_typst_timeout_s() -> Optional[float]:
    """Load the compiler timeout in seconds. None means wait for the compiler indefinitely."""
    payload = _read_global_config()
    raw = payload.get("typst_timeout_s")
    if raw is None:
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    return value if value > 0 else None


def save_typst_timeout_s(seconds: Optional[float]) -> None:
    value: Optional[float]
    try:
        value = float(seconds) if seconds is not None else None
    except (TypeError, ValueError):
        value = None
    if value is not None and value <= 0:
        value = None
    _update_global_config({"typst_timeout_s": value})


# Preview behaviour


def load_render_debounce_ms() -> int:
    """Load the theme-change rerender debounce delay in milliseconds (default: 250)."""
    payload = _read_global_config()
    try:
        ms = int(payload.get("render_debounce_ms", 250))
        return max(50, min(5000, ms))
    except (TypeError, ValueError):
        return 250


def save_render_debounce_ms(ms: int) -> None:
    try:
        val = int(ms)
        val = max(50, min(5000, val))
    except (TypeError, ValueError):
        val = 250
    _update_global_config({"render_debounce_ms": val})


def load_temp_prefix() -> str:
    payload = _read_global_config()
    prefix = payload.get("temp_prefix")
    if isinstance(prefix, str) and prefix.strip():
        return prefix.strip()
    return DEFAULT_TEMP_PREFIX


def load_cli_style() -> dict:
    """Style used by the command line, where no widget palette exists."""
    payload = _read_global_config()
    style = dict(DEFAULT_CLI_STYLE)
    raw = payload.get("cli_style")
    if not isinstance(raw, dict):
        return style
    fg = raw.get("foreground")
    if isinstance(fg, str) and len(fg.strip().lstrip("#")) == 6:
        try:
            int(fg.strip().lstrip("#"), 16)
            style["foreground"] = fg.strip()
        except ValueError:
            pass
    weight = raw.get("font_weight")
    if isinstance(weight, str) and weight.strip():
        style["font_weight"] = weight.strip()
    try:
        size = int(raw.get("font_size_pt", style["font_size_pt"]))
        if size > 0:
            style["font_size_pt"] = size
    except (TypeError, ValueError):
        pass
    return style


def save_cli_style(foreground: str, font_weight: str, font_size_pt: int) -> None:
    _update_global_config(
        {"cli_style": {"foreground": foreground, "font_weight": font_weight, "font_size_pt": int(font_size_pt)}}
    )
