"""Qt integration for inline typst previews.

Connects a QTextDocument-backed editor to a PreviewManager, derives the
render style from the editor's palette and font, and rerenders every open
document when the application theme changes.
"""

from __future__ import annotations

import logging
from bisect import bisect_left
from pathlib import Path
from typing import Callable, Optional

from PySide6.QtCore import QEvent, QObject, QTimer, Signal
from PySide6.QtGui import QFont, QImage, QPainter, QPalette, QTextDocument
from PySide6.QtSvg import QSvgRenderer
from PySide6.QtWidgets import QApplication, QWidget
from shiboken6 import Shiboken

from typstview.app import config
from typstview.app.preview_manager import Binding, PreviewManager, PreviewRegistry, RenderReport
from typstview.app.typst_renderer import TYPST_WEIGHTS, StyleDescriptor, TypstRenderer

logger = logging.getLogger(__name__)

STYLE_EVENTS = {
    QEvent.Type.ApplicationPaletteChange,
    QEvent.Type.ApplicationFontChange,
    QEvent.Type.ThemeChange,
    QEvent.Type.StyleChange,
}


def _utf16_positions(text: str) -> list[int]:
    """Qt position of every string index, plus one past the end."""
    positions = [0]
    total = 0
    for ch in text:
        total += 2 if ord(ch) > 0xFFFF else 1
        positions.append(total)
    return positions


def typst_weight(weight) -> str:
    value = int(getattr(weight, "value", weight))
    nearest = min(TYPST_WEIGHTS, key=lambda w: abs(w - value))
    return TYPST_WEIGHTS[nearest]


def font_size_pt(font: QFont) -> int:
    if font.pointSizeF() > 0:
        return max(1, round(font.pointSizeF()))
    # Pixel-sized font: 96 dpi reference.
    return max(1, round(font.pixelSize() * 0.75))


def style_from_widget(widget: QWidget) -> StyleDescriptor:
    color = widget.palette().color(QPalette.ColorRole.Text)
    font = widget.font()
    return StyleDescriptor(
        foreground=(color.red(), color.green(), color.blue()),
        font_weight=typst_weight(font.weight()),
        font_size_pt=font_size_pt(font),
    )


def svg_to_image(svg_path: Path, max_width: int = 800) -> Optional[QImage]:
    """Load a rendered SVG into a transparent QImage, scaled down to ``max_width``."""
    renderer = QSvgRenderer()
    if not renderer.load(str(svg_path)):
        logger.warning("Failed to load SVG %s", svg_path)
        return None

    size = renderer.defaultSize()
    if not size.isValid() or size.isEmpty():
        return None
    if size.width() > max_width:
        scale = max_width / size.width()
        size.setWidth(int(size.width() * scale))
        size.setHeight(max(1, int(size.height() * scale)))

    image = QImage(size, QImage.Format.Format_ARGB32_Premultiplied)
    image.fill(0)
    painter = QPainter(image)
    renderer.render(painter)
    painter.end()
    return image


class QtDocumentHost(QObject):
    """Document access for PreviewManager over a QTextDocument.

    PreviewManager works in Python string indices; Qt reports UTF-16
    positions. Conversions go through ``to_index``/``to_position``.
    """

    def __init__(self, document: QTextDocument, parent=None):
        super().__init__(parent)
        self.document = document
        self._text = document.toPlainText()
        self._positions = _utf16_positions(self._text)
        self._edited: Optional[Callable[[int, int, int], None]] = None
        document.contentsChange.connect(self._on_contents_change)

    def set_edited_callback(self, callback: Optional[Callable[[int, int, int], None]]) -> None:
        self._edited = callback

    def text(self) -> str:
        return self._text

    def read_range(self, begin: int, end: int) -> str:
        return self._text[begin:end]

    def document_length(self) -> int:
        return len(self._text)

    def to_index(self, position: int) -> int:
        return min(bisect_left(self._positions, position), len(self._text))

    def to_position(self, index: int) -> int:
        return self._positions[max(0, min(index, len(self._text)))]

    def detach(self) -> None:
        self._edited = None
        if not Shiboken.isValid(self.document):
            return
        try:
            self.document.contentsChange.disconnect(self._on_contents_change)
        except (RuntimeError, TypeError):
            pass

    def _on_contents_change(self, position: int, removed: int, added: int) -> None:
        old_text, old_positions = self._text, self._positions
        new_text = self.document.toPlainText()
        new_positions = _utf16_positions(new_text)
        self._text, self._positions = new_text, new_positions

        # setPlainText counts the trailing block separator, so clamp both ends.
        start = min(bisect_left(old_positions, position), len(old_text))
        old_end = min(bisect_left(old_positions, position + removed), len(old_text))
        new_end = min(bisect_left(new_positions, position + added), len(new_text))
        old_seg, new_seg = old_text[start:old_end], new_text[start:new_end]
        if old_seg == new_seg:
            return

        # Qt may report a wider range than was edited; narrow it to the real change.
        prefix = 0
        limit = min(len(old_seg), len(new_seg))
        while prefix < limit and old_seg[prefix] == new_seg[prefix]:
            prefix += 1
        suffix = 0
        while suffix < limit - prefix and old_seg[-1 - suffix] == new_seg[-1 - suffix]:
            suffix += 1
        if self._edited is not None:
            self._edited(start + prefix, len(old_seg) - prefix - suffix, len(new_seg) - prefix - suffix)


class PreviewSession(QObject):
    """Inline typst previews for one editor widget."""

    previewAdded = Signal(int, int, str)  # qt begin, qt end, svg path
    previewRemoved = Signal(int, int)  # qt begin, qt end
    message = Signal(str)

    def __init__(self, editor: QWidget, registry: PreviewRegistry, doc_id: Optional[str] = None,
                 renderer=None, parent=None):
        super().__init__(parent)
        self.editor = editor
        self.registry = registry
        self.doc_id = doc_id or f"document-{id(editor.document())}"
        self.host = QtDocumentHost(editor.document(), self)
        self.manager = PreviewManager(
            self.host,
            renderer or TypstRenderer(),
            lambda: style_from_widget(self.editor),
            notify=self._notify,
            on_bound=self._bound,
            on_unbound=self._unbound,
        )
        self.host.set_edited_callback(self.manager.document_edited)
        registry.open(self.doc_id, self.manager)
        self._closed = False
        editor.destroyed.connect(self._on_editor_destroyed)

    def _notify(self, text: str) -> None:
        logger.info("%s: %s", self.doc_id, text)
        self.message.emit(text)

    def _bound(self, binding: Binding) -> None:
        self.previewAdded.emit(
            self.host.to_position(binding.begin),
            self.host.to_position(binding.end),
            str(binding.artifact.path),
        )

    def _unbound(self, binding: Binding) -> None:
        self.previewRemoved.emit(self.host.to_position(binding.begin), self.host.to_position(binding.end))

    def toggle_at_cursor(self) -> bool:
        position = self.editor.textCursor().position()
        return self.manager.toggle_nearest(self.host.to_index(position))

    def clear_all(self) -> bool:
        self.manager.clear_all()
        return True

    def render_all(self) -> RenderReport:
        return self.manager.render_all_unbound()

    def preview_image(self, binding: Binding, max_width: int = 800) -> Optional[QImage]:
        return svg_to_image(binding.artifact.path, max_width)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.host.detach()
        self.registry.close(self.doc_id)

    def _on_editor_destroyed(self, *args) -> None:
        # The editor and its document are gone; only Python-side state is touched.
        self.close()


class ThemeWatcher(QObject):
    """Rerenders all registered documents after palette, font or theme changes."""

    rerendered = Signal(int, int)  # rendered, failed

    def __init__(self, registry: PreviewRegistry, app: Optional[QApplication] = None, parent=None):
        super().__init__(parent)
        self.registry = registry
        self._app = app or QApplication.instance()
        self._timer = QTimer(self)
        self._timer.setSingleShot(True)
        self._timer.setInterval(config.load_render_debounce_ms())
        self._timer.timeout.connect(self.flush)
        if self._app is not None:
            self._app.installEventFilter(self)

    def eventFilter(self, obj, event) -> bool:
        if event.type() in STYLE_EVENTS:
            self.notify_style_changed()
        return False

    def notify_style_changed(self) -> None:
        # Restart the debounce window; a theme switch fires several events.
        self._timer.start()

    def is_pending(self) -> bool:
        return self._timer.isActive()

    def flush(self) -> RenderReport:
        self._timer.stop()
        report = self.registry.style_changed()
        logger.info("Theme change: rerendered %d preview(s), %d failed", report.rendered, report.failed)
        self.rerendered.emit(report.rendered, report.failed)
        return report

    def stop(self) -> None:
        self._timer.stop()
        if self._app is not None:
            self._app.removeEventFilter(self)
