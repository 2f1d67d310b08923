from __future__ import annotations

import pytest

from typstview.app import config
from typstview.app import main as cli
from typstview.app.typst_renderer import RenderResult

from conftest import StubRenderer


@pytest.fixture
def stub_typst(monkeypatch):
    """Replace TypstRenderer in the CLI with a stub that fails on 'bad' fragments."""
    created = []

    class FakeTypstRenderer(StubRenderer):
        def __init__(self, typst_path=None):
            super().__init__(fail_on=("bad",))
            self.typst_path = typst_path
            created.append(self)

        def is_configured(self):
            return self.typst_path != "missing"

        def get_typst_path(self):
            return self.typst_path

        def test_setup(self):
            return RenderResult(success=self.typst_path != "broken", error_message="compile error")

    monkeypatch.setattr(cli, "TypstRenderer", FakeTypstRenderer)
    return created


def test_scan_lists_blocks(tmp_path, capsys) -> None:
    doc = tmp_path / "notes.txt"
    doc.write_text("a #[x^2#] b #[y#]", encoding="utf-8")
    assert cli.main(["scan", str(doc)]) == 0
    lines = capsys.readouterr().out.splitlines()
    assert lines == ["2\t9\t'#[x^2#]'", "12\t17\t'#[y#]'"]


def test_scan_missing_file(tmp_path) -> None:
    assert cli.main(["scan", str(tmp_path / "nope.txt")]) == 2


def test_render_all_copies_svgs_and_cleans_up(tmp_path, stub_typst, capsys) -> None:
    doc = tmp_path / "notes.txt"
    doc.write_text("#[one#] #[two#]", encoding="utf-8")
    out = tmp_path / "out"
    assert cli.main(["render", str(doc), "--output", str(out)]) == 0
    assert sorted(p.name for p in out.iterdir()) == ["block-0.svg", "block-8.svg"]
    work_dirs = [call[2] for call in stub_typst[0].calls]
    assert not any(d.exists() for d in work_dirs)


def test_render_reports_failures(tmp_path, stub_typst) -> None:
    doc = tmp_path / "notes.txt"
    doc.write_text("#[one#] #[bad#] #[three#]", encoding="utf-8")
    out = tmp_path / "out"
    assert cli.main(["render", str(doc), "-o", str(out)]) == 1
    assert sorted(p.name for p in out.iterdir()) == ["block-0.svg", "block-16.svg"]


def test_render_nearest_block(tmp_path, stub_typst) -> None:
    doc = tmp_path / "notes.txt"
    doc.write_text("#[one#] text #[two#]", encoding="utf-8")
    out = tmp_path / "out"
    assert cli.main(["render", str(doc), "-o", str(out), "--cursor", "19"]) == 0
    assert [p.name for p in out.iterdir()] == ["block-13.svg"]


def test_render_without_blocks(tmp_path, stub_typst, capsys) -> None:
    doc = tmp_path / "notes.txt"
    doc.write_text("plain", encoding="utf-8")
    assert cli.main(["render", str(doc), "-o", str(tmp_path / "out"), "--cursor", "0"]) == 1
    assert "No typst block found" in capsys.readouterr().err


def test_check(stub_typst) -> None:
    assert cli.main(["check", "--typst", "/usr/bin/typst"]) == 0
    assert cli.main(["check", "--typst", "missing"]) == 1
    assert cli.main(["check", "--typst", "broken"]) == 1


def test_config_writes_settings(tmp_path, capsys) -> None:
    typst = tmp_path / "typst"
    typst.write_text("#!/bin/sh\n", encoding="utf-8")
    assert cli.main(["config", "--typst-path", str(typst), "--preamble", "#let k = 2", "--timeout", "4"]) == 0
    assert cli.main(["config", "--debounce", "700", "--cli-style", "#112233", "bold", "13"]) == 0

    assert config.load_typst_path() == str(typst)
    assert config.load_typst_preamble() == "#let k = 2"
    assert config.load_typst_timeout_s() == 4.0
    assert config.load_render_debounce_ms() == 700
    assert config.load_cli_style() == {"foreground": "#112233", "font_weight": "bold", "font_size_pt": 13}

    capsys.readouterr()
    assert cli.main(["config"]) == 0
    out = capsys.readouterr().out
    assert f"typst_path\t{typst}" in out
    assert "cli_style\t#112233 bold 13" in out


def test_config_rejects_bad_values(tmp_path) -> None:
    assert cli.main(["config", "--typst-path", str(tmp_path / "nope")]) == 2
    assert config.load_typst_path() is None
    assert cli.main(["config", "--cli-style", "#112233", 'bold"', "13"]) == 2
    assert config.load_cli_style() == config.DEFAULT_CLI_STYLE


def test_render_rejects_invalid_cli_style(tmp_path, stub_typst) -> None:
    config.save_cli_style("#000000", "heavy", 11)
    doc = tmp_path / "notes.txt"
    doc.write_text("#[one#]", encoding="utf-8")
    assert cli.main(["render", str(doc), "-o", str(tmp_path / "out")]) == 2
