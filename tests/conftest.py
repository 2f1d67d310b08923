from __future__ import annotations

import os
from pathlib import Path

import pytest

os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")

from typstview.app import config
from typstview.app.typst_renderer import RenderResult

SAMPLE_SVG = (
    '<svg xmlns="http://www.w3.org/2000/svg" width="40" height="20" viewBox="0 0 40 20">'
    '<rect width="40" height="20" fill="#ff0000"/></svg>'
)


class StubRenderer:
    """Writes a fixed SVG instead of calling typst. Fails for fragments listed in ``fail_on``."""

    def __init__(self, fail_on: tuple[str, ...] = ()):
        self.fail_on = fail_on
        self.calls: list[tuple[str, object, Path]] = []

    def render(self, fragment_text, style, output_dir):
        self.calls.append((fragment_text, style, Path(output_dir)))
        (Path(output_dir) / "fragment.typ").write_text(fragment_text, encoding="utf-8")
        if any(marker in fragment_text for marker in self.fail_on):
            return RenderResult(success=False, error_message="stub failure")
        out = Path(output_dir) / "fragment.svg"
        out.write_text(SAMPLE_SVG, encoding="utf-8")
        return RenderResult(success=True, artifact_path=out)


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Point the global config file at a per-test location."""
    path = tmp_path / "typstview_config.json"
    monkeypatch.setattr(config, "GLOBAL_CONFIG", path)
    return path


@pytest.fixture(scope="session")
def qapp():
    from PySide6.QtWidgets import QApplication

    app = QApplication.instance() or QApplication([])
    yield app
