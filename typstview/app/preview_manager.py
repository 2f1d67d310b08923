"""Rendered-preview bindings for one document.

A binding ties a block span to the SVG rendered for it. Each binding owns a
private temporary directory; removing the binding deletes that directory.
Bindings are only ever Unbound -> Bound -> removed.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, Optional, Protocol

from typstview.app import config
from typstview.app.block_scanner import Span, scan, select_nearest
from typstview.app.typst_renderer import RenderResult, StyleDescriptor

logger = logging.getLogger(__name__)

MSG_NO_BLOCK = "No typst block found"
MSG_NO_ARTIFACT = "typst produced no image"


class PreviewError(Exception):
    """Raised for misuse of the preview registry."""


class DocumentHost(Protocol):
    def read_range(self, begin: int, end: int) -> str: ...

    def document_length(self) -> int: ...


class Renderer(Protocol):
    def render(self, fragment_text: str, style: StyleDescriptor, output_dir: Path) -> RenderResult: ...


class StringDocument:
    """In-memory document host for files and tests."""

    def __init__(self, text: str = ""):
        self.text = text

    def read_range(self, begin: int, end: int) -> str:
        return self.text[begin:end]

    def document_length(self) -> int:
        return len(self.text)

    def replace(self, begin: int, end: int, new_text: str) -> tuple[int, int, int]:
        """Replace ``text[begin:end]``; returns the edit as (position, removed, added)."""
        self.text = self.text[:begin] + new_text + self.text[end:]
        return begin, end - begin, len(new_text)


@dataclass(frozen=True)
class RenderedArtifact:
    path: Path
    owning_dir: Path


@dataclass(frozen=True)
class Binding:
    span: Span
    artifact: RenderedArtifact

    @property
    def begin(self) -> int:
        return self.span.begin

    @property
    def end(self) -> int:
        return self.span.end


@dataclass
class RenderReport:
    rendered: int = 0
    skipped: int = 0
    failed: int = 0

    @property
    def ok(self) -> bool:
        return self.failed == 0

    def __add__(self, other: "RenderReport") -> "RenderReport":
        return RenderReport(
            rendered=self.rendered + other.rendered,
            skipped=self.skipped + other.skipped,
            failed=self.failed + other.failed,
        )


def _delete_dir(path: Optional[Path]) -> None:
    if path is None or not path.exists():
        return
    try:
        shutil.rmtree(path)
    except OSError as exc:
        logger.warning("Failed to delete preview directory %s: %s", path, exc)


class PreviewManager:
    """Creates, tracks and removes rendered previews for a single document."""

    def __init__(
        self,
        host: DocumentHost,
        renderer: Renderer,
        style_source: Callable[[], StyleDescriptor],
        notify: Optional[Callable[[str], None]] = None,
        on_bound: Optional[Callable[[Binding], None]] = None,
        on_unbound: Optional[Callable[[Binding], None]] = None,
    ):
        self.host = host
        self.renderer = renderer
        self.style_source = style_source
        self._notify = notify
        self._on_bound = on_bound
        self._on_unbound = on_unbound
        self._bindings: list[Binding] = []
        self._lock = threading.RLock()

    @property
    def bindings(self) -> tuple[Binding, ...]:
        with self._lock:
            return tuple(self._bindings)

    def notify(self, message: str) -> None:
        if self._notify is not None:
            self._notify(message)
        else:
            logger.info(message)

    def scan_document(self) -> list[Span]:
        return scan(self.host.read_range(0, self.host.document_length()))

    def bindings_overlapping(self, begin: int, end: int) -> list[Binding]:
        with self._lock:
            return [b for b in self._bindings if b.span.overlaps(begin, end)]

    def remove(self, binding: Binding) -> None:
        with self._lock:
            try:
                self._bindings.remove(binding)
            except ValueError:
                return
        if self._on_unbound is not None:
            self._on_unbound(binding)
        _delete_dir(binding.artifact.owning_dir)

    def toggle(self, span: Span) -> bool:
        """Remove previews overlapping ``span``, or render one if there are none."""
        existing = self.bindings_overlapping(span.begin, span.end)
        if existing:
            for binding in existing:
                self.remove(binding)
            return True
        return self._create(span)

    def _create(self, span: Span) -> bool:
        length = self.host.document_length()
        begin, end = max(0, span.begin), min(span.end, length)
        if begin >= end:
            logger.debug("Span %s lies outside the document (length %d)", span, length)
            self.notify(MSG_NO_ARTIFACT)
            return False

        output_dir = Path(tempfile.mkdtemp(prefix=config.load_temp_prefix()))
        try:
            result = self.renderer.render(self.host.read_range(begin, end), self.style_source(), output_dir)
        except Exception:
            logger.exception("Render raised for %s", span)
            _delete_dir(output_dir)
            self.notify(MSG_NO_ARTIFACT)
            return False
        if not result.success or result.artifact_path is None:
            logger.debug("Render failed for %s: %s", span, result.error_message)
            _delete_dir(output_dir)
            self.notify(MSG_NO_ARTIFACT)
            return False

        binding = Binding(Span(begin, end), RenderedArtifact(Path(result.artifact_path), output_dir))
        with self._lock:
            self._bindings.append(binding)
        if self._on_bound is not None:
            self._on_bound(binding)
        return True

    def toggle_nearest(self, pos: int) -> bool:
        span = select_nearest(self.scan_document(), pos)
        if span is None:
            self.notify(MSG_NO_BLOCK)
            return False
        return self.toggle(span)

    def render_all_unbound(self, spans: Optional[Iterable[Span]] = None) -> RenderReport:
        """Render every block that has no preview yet. One failure never stops the rest."""
        report = RenderReport()
        for span in (self.scan_document() if spans is None else spans):
            if self.bindings_overlapping(*span.interior()):
                report.skipped += 1
            elif self.toggle(span):
                report.rendered += 1
            else:
                report.failed += 1
        if report.failed:
            logger.info("Rendered %d typst block(s), %d failed", report.rendered, report.failed)
        return report

    def clear_all(self) -> int:
        existing = self.bindings
        for binding in existing:
            self.remove(binding)
        return len(existing)

    def rerender_all(self) -> RenderReport:
        """Re-render every preview from the text currently at its span."""
        report = RenderReport()
        for binding in self.bindings:
            self.remove(binding)
            if self.toggle(binding.span):
                report.rendered += 1
            else:
                report.failed += 1
        return report

    def document_edited(self, position: int, removed: int, added: int) -> None:
        """Drop previews whose text was touched and move the ones after the edit."""
        edit_end = position + removed
        delta = added - removed
        stale: list[Binding] = []
        with self._lock:
            moved: list[Binding] = []
            for binding in self._bindings:
                span = binding.span
                touched = span.overlaps(position, edit_end) if removed else span.begin < position < span.end
                if touched:
                    stale.append(binding)
                elif span.begin >= edit_end and delta:
                    moved.append(Binding(span.shifted(delta), binding.artifact))
                else:
                    moved.append(binding)
            self._bindings = moved
        for binding in stale:
            if self._on_unbound is not None:
                self._on_unbound(binding)
            _delete_dir(binding.artifact.owning_dir)

    def close(self) -> None:
        self.clear_all()


class PreviewRegistry:
    """Live preview managers keyed by document identity."""

    def __init__(self):
        self._managers: Dict[str, PreviewManager] = {}

    def __len__(self) -> int:
        return len(self._managers)

    def __contains__(self, doc_id: object) -> bool:
        return doc_id in self._managers

    def open(self, doc_id: str, manager: PreviewManager) -> PreviewManager:
        if doc_id in self._managers:
            raise PreviewError(f"Document already open: {doc_id}")
        self._managers[doc_id] = manager
        return manager

    def get(self, doc_id: str) -> Optional[PreviewManager]:
        return self._managers.get(doc_id)

    def close(self, doc_id: str) -> None:
        manager = self._managers.pop(doc_id, None)
        if manager is not None:
            manager.close()

    def documents(self) -> list[str]:
        return list(self._managers)

    def close_all(self) -> None:
        for doc_id in self.documents():
            self.close(doc_id)

    def style_changed(self) -> RenderReport:
        """Re-render every open document after a theme change."""
        report = RenderReport()
        for doc_id, manager in list(self._managers.items()):
            try:
                report = report + manager.rerender_all()
            except Exception:
                logger.exception("Rerender failed for %s", doc_id)
        return report
