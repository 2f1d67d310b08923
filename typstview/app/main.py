from __future__ import annotations

import argparse
import logging
import shutil
import sys
from pathlib import Path
from typing import Optional

from typstview.app import config
from typstview.app.block_scanner import scan
from typstview.app.preview_manager import PreviewManager, StringDocument
from typstview.app.typst_renderer import StyleDescriptor, TypstRenderer


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="typstview", description="Render inline #[ ... #] typst blocks.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log compiler commands and results.")
    sub = parser.add_subparsers(dest="command", required=True)

    scan_cmd = sub.add_parser("scan", help="List the typst blocks in a file.")
    scan_cmd.add_argument("file", type=Path)

    render_cmd = sub.add_parser("render", help="Render typst blocks of a file to SVG.")
    render_cmd.add_argument("file", type=Path)
    render_cmd.add_argument("--output", "-o", type=Path, required=True, help="Directory for the SVG files.")
    render_cmd.add_argument("--cursor", type=int, help="Render only the block nearest to this offset.")
    render_cmd.add_argument("--typst", help="typst executable (overrides settings).")

    check_cmd = sub.add_parser("check", help="Verify that typst can render a sample block.")
    check_cmd.add_argument("--typst", help="typst executable (overrides settings).")

    config_cmd = sub.add_parser("config", help="Show or change settings.")
    config_cmd.add_argument("--typst-path", help="typst executable to use by default.")
    config_cmd.add_argument("--preamble", help="typst code inserted before every block.")
    config_cmd.add_argument("--timeout", type=float, help="Compiler timeout in seconds (0 = none).")
    config_cmd.add_argument("--debounce", type=int, help="Theme-change rerender delay in milliseconds.")
    config_cmd.add_argument(
        "--cli-style",
        nargs=3,
        metavar=("COLOR", "WEIGHT", "SIZE"),
        help="Style for command-line renders, e.g. \"#000000 regular 11\".",
    )
    return parser.parse_args(argv)


def _cli_style() -> StyleDescriptor:
    style = config.load_cli_style()
    return StyleDescriptor.from_hex(style["foreground"], style["font_weight"], style["font_size_pt"])


def _read(path: Path) -> Optional[str]:
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        print(f"Cannot read {path}: {exc}", file=sys.stderr)
        return None


def _cmd_scan(args: argparse.Namespace) -> int:
    text = _read(args.file)
    if text is None:
        return 2
    for span in scan(text):
        print(f"{span.begin}\t{span.end}\t{span.text(text)!r}")
    return 0


def _cmd_render(args: argparse.Namespace) -> int:
    text = _read(args.file)
    if text is None:
        return 2
    try:
        style = _cli_style()
    except ValueError as exc:
        print(f"Invalid cli_style setting: {exc}", file=sys.stderr)
        return 2
    args.output.mkdir(parents=True, exist_ok=True)
    document = StringDocument(text)
    manager = PreviewManager(
        document,
        TypstRenderer(typst_path=args.typst),
        lambda: style,
        notify=lambda message: print(message, file=sys.stderr),
    )
    try:
        if args.cursor is not None:
            ok = manager.toggle_nearest(args.cursor)
        else:
            ok = manager.render_all_unbound().ok

        for binding in sorted(manager.bindings, key=lambda b: b.begin):
            target = args.output / f"block-{binding.begin}.svg"
            shutil.copyfile(binding.artifact.path, target)
            print(target)
    finally:
        manager.clear_all()
    return 0 if ok else 1


def _cmd_check(args: argparse.Namespace) -> int:
    renderer = TypstRenderer(typst_path=args.typst)
    if not renderer.is_configured():
        print("typst not found. Install typst or set typst_path in settings.", file=sys.stderr)
        return 1
    result = renderer.test_setup()
    if result.success:
        print(f"typst OK ({renderer.get_typst_path()}, {result.duration_ms:.0f} ms)")
        return 0
    print(result.error_message or "typst render failed", file=sys.stderr)
    if result.stderr:
        print(result.stderr, file=sys.stderr)
    return 1


def _cmd_config(args: argparse.Namespace) -> int:
    changed = False
    if args.typst_path is not None:
        if not TypstRenderer().set_typst_path(args.typst_path):
            print(f"Not a file: {args.typst_path}", file=sys.stderr)
            return 2
        config.save_typst_path(args.typst_path)
        changed = True
    if args.preamble is not None:
        config.save_typst_preamble(args.preamble)
        changed = True
    if args.timeout is not None:
        config.save_typst_timeout_s(args.timeout)
        changed = True
    if args.debounce is not None:
        config.save_render_debounce_ms(args.debounce)
        changed = True
    if args.cli_style is not None:
        color, weight, size = args.cli_style
        try:
            StyleDescriptor.from_hex(color, weight, int(size))
        except ValueError as exc:
            print(f"Invalid style: {exc}", file=sys.stderr)
            return 2
        config.save_cli_style(color, weight, int(size))
        changed = True
    if changed:
        return 0

    style = config.load_cli_style()
    print(f"typst_path\t{config.load_typst_path() or ''}")
    print(f"typst_preamble\t{config.load_typst_preamble()!r}")
    print(f"typst_timeout_s\t{config.load_typst_timeout_s() or 'none'}")
    print(f"render_debounce_ms\t{config.load_render_debounce_ms()}")
    print(f"cli_style\t{style['foreground']} {style['font_weight']} {style['font_size_pt']}")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    args = _parse_args(sys.argv[1:] if argv is None else argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    handlers = {"scan": _cmd_scan, "render": _cmd_render, "check": _cmd_check, "config": _cmd_config}
    return handlers[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
