"""Typst rendering for inline fragments.

Handles:
- typst executable discovery
- building a self-contained source document for one fragment
- SVG rendering via ``typst compile``

Compiler diagnostics are never parsed; a render either produced an SVG (exit
status zero) or it failed.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from typstview.app import config
from typstview.app.block_scanner import strip_markers

logger = logging.getLogger(__name__)

SOURCE_NAME = "fragment.typ"
OUTPUT_NAME = "fragment.svg"
OUTPUT_FORMAT = "svg"

PAGE_SETUP = "#set page(fill: none, width: auto, height: auto, margin: 0pt)"
TEXT_EDGES = '#set text(top-edge: "bounds", bottom-edge: "bounds")'

TYPST_WEIGHTS = {
    100: "thin",
    200: "extralight",
    300: "light",
    400: "regular",
    500: "medium",
    600: "semibold",
    700: "bold",
    800: "extrabold",
    900: "black",
}


def _debug_enabled() -> bool:
    return os.getenv("TYPSTVIEW_DEBUG_RENDER", "0") not in ("0", "false", "False", "")


@dataclass(frozen=True)
class StyleDescriptor:
    """Snapshot of the host's text style, taken fresh for each render."""
    foreground: tuple[int, int, int]
    font_weight: str
    font_size_pt: int

    def __post_init__(self):
        if self.font_weight not in TYPST_WEIGHTS.values():
            raise ValueError(f"Unknown typst font weight: {self.font_weight!r}")

    @property
    def foreground_hex(self) -> str:
        r, g, b = (max(0, min(255, int(c))) for c in self.foreground)
        return f"#{r:02x}{g:02x}{b:02x}"

    @classmethod
    def from_hex(cls, color: str, font_weight: str = "regular", font_size_pt: int = 11) -> "StyleDescriptor":
        value = color.strip().lstrip("#")
        if len(value) != 6:
            raise ValueError(f"Expected #rrggbb color, got {color!r}")
        rgb = tuple(int(value[i:i + 2], 16) for i in (0, 2, 4))
        return cls(foreground=rgb, font_weight=font_weight, font_size_pt=int(font_size_pt))


@dataclass
class RenderResult:
    """Result of a typst render attempt."""
    success: bool
    artifact_path: Optional[Path] = None
    error_message: Optional[str] = None
    stderr: Optional[str] = None
    duration_ms: float = 0.0


def build_source(fragment_text: str, style: StyleDescriptor, preamble: Optional[str] = None) -> str:
    """Wrap a raw ``#[ ... #]`` fragment into a standalone typst document."""
    styling = (
        f'#set text(fill: rgb("{style.foreground_hex}"), '
        f'weight: "{style.font_weight}", size: {int(style.font_size_pt)}pt)'
    )
    lines = [
        PAGE_SETUP,
        TEXT_EDGES,
        styling,
        preamble if preamble is not None else config.DEFAULT_PREAMBLE,
        strip_markers(fragment_text),
    ]
    return "\n".join(lines) + "\n"


class TypstRenderer:
    """Runs the typst compiler over single fragments."""

    def __init__(self, typst_path: Optional[str] = None, preamble: Optional[str] = None,
                 timeout_s: Optional[float] = None):
        """Initialize the renderer.

        Args:
            typst_path: Explicit typst executable. Falls back to config, then PATH.
            preamble: User configuration block. Falls back to config.
            timeout_s: Compiler timeout. Falls back to config (default: none).
        """
        self._typst_path: Optional[Path] = Path(typst_path) if typst_path else None
        self._preamble = preamble
        self._timeout_s = timeout_s
        self._config_initialized = False

    def initialize_from_config(self) -> None:
        """Load configured values for anything not given explicitly."""
        if self._config_initialized:
            return
        if self._typst_path is None:
            configured = config.load_typst_path()
            if configured:
                self.set_typst_path(configured)
        if self._preamble is None:
            self._preamble = config.load_typst_preamble()
        if self._timeout_s is None:
            self._timeout_s = config.load_typst_timeout_s()
        self._config_initialized = True

    def discover_typst(self) -> Optional[Path]:
        """Locate typst on PATH."""
        found = shutil.which("typst")
        if found:
            self._typst_path = Path(found)
            return self._typst_path
        return None

    def set_typst_path(self, typst_path: str) -> bool:
        path = Path(typst_path)
        if path.exists() and path.is_file():
            self._typst_path = path
            return True
        logger.warning("Ignoring typst path %s: not a file", typst_path)
        return False

    def get_typst_path(self) -> Optional[Path]:
        return self._typst_path

    def is_configured(self) -> bool:
        self.initialize_from_config()
        if self._typst_path is None:
            self.discover_typst()
        return self._typst_path is not None

    def render(self, fragment_text: str, style: StyleDescriptor, output_dir: Path) -> RenderResult:
        """Render a raw fragment into ``output_dir``.

        Args:
            fragment_text: Fragment including its ``#[`` and ``#]`` markers
            style: Style snapshot for this render only
            output_dir: Directory owned by the caller

        Returns:
            RenderResult with the SVG path on success
        """
        t0 = time.perf_counter()
        self.initialize_from_config()

        if self._typst_path is None:
            self.discover_typst()
        if self._typst_path is None:
            return RenderResult(
                success=False,
                error_message="typst not found. Install typst or set typst_path in settings.",
                duration_ms=(time.perf_counter() - t0) * 1000,
            )

        output_dir = Path(output_dir)
        source_path = output_dir / SOURCE_NAME
        output_path = output_dir / OUTPUT_NAME
        try:
            source_path.write_text(build_source(fragment_text, style, self._preamble), encoding="utf-8")
        except (OSError, UnicodeError) as exc:
            return RenderResult(
                success=False,
                error_message=f"Could not write typst source: {exc}",
                duration_ms=(time.perf_counter() - t0) * 1000,
            )

        result = self._invoke_typst(source_path, output_path)
        result.duration_ms = (time.perf_counter() - t0) * 1000
        if _debug_enabled():
            logger.info("[typst] %s in %.1f ms", "ok" if result.success else "failed", result.duration_ms)
        return result

    def test_setup(self) -> RenderResult:
        """Render a tiny fragment into a throwaway directory to validate configuration."""
        style = StyleDescriptor(foreground=(0, 0, 0), font_weight="regular", font_size_pt=11)
        with tempfile.TemporaryDirectory(prefix=config.load_temp_prefix()) as tmp:
            result = self.render("#[$x^2$#]", style, Path(tmp))
            # The artifact goes away with the directory.
            result.artifact_path = None
        return result

    def _invoke_typst(self, source_path: Path, output_path: Path) -> RenderResult:
        cmd = [str(self._typst_path), "compile", f"--format={OUTPUT_FORMAT}", str(source_path), str(output_path)]
        logger.debug("typst command: %s", " ".join(cmd))
        try:
            proc = subprocess.run(cmd, capture_output=True, timeout=self._timeout_s)
        except subprocess.TimeoutExpired:
            return RenderResult(success=False, error_message=f"typst timed out (>{self._timeout_s}s)")
        except FileNotFoundError:
            return RenderResult(success=False, error_message="typst executable not found")
        except OSError as exc:
            return RenderResult(success=False, error_message=f"Could not launch typst: {exc}")

        stderr_text = (proc.stderr or b"").decode("utf-8", errors="replace")
        logger.debug("typst exit code: %s", proc.returncode)
        if proc.returncode != 0:
            if stderr_text:
                logger.debug("typst stderr:\n%s", stderr_text)
            return RenderResult(
                success=False,
                error_message=f"typst render error (exit {proc.returncode})",
                stderr=stderr_text,
            )
        return RenderResult(success=True, artifact_path=output_path, stderr=stderr_text or None)
