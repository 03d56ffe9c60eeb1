from __future__ import annotations

import base64
import io
import logging
import os
import shutil
import signal
import subprocess
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, Optional

from docx import Document
from docx.oxml.ns import qn
from jinja2 import Environment, FileSystemLoader, select_autoescape
from reportlab.lib.pagesizes import A4, landscape
from reportlab.lib.utils import ImageReader, simpleSplit
from reportlab.pdfgen import canvas

from .conversion import (
    ConversionError,
    ConversionJob,
    ConversionSettings,
    ConversionTimeout,
    ProjectionPage,
)
from .docx_templates import W_P, owned_text_nodes
from .photos import PHOTO_SIZE


logger = logging.getLogger("coursecert.certgen")

TEMPLATES_DIR = os.path.join(os.path.dirname(os.path.dirname(__file__)), "templates")
PROJECTION_TEMPLATE = "certificates/projection.html"

_MM = 72 / 25.4
_PX = 0.75
_STDERR_TAIL = 400


@contextmanager
def scoped_workdir(prefix: str) -> Iterator[str]:
    """Temporary directory removed on every exit path."""
    with tempfile.TemporaryDirectory(prefix=f"coursecert-{prefix}-") as workdir:
        yield workdir


def _kill(proc: subprocess.Popen) -> None:
    if hasattr(os, "killpg"):
        try:
            os.killpg(proc.pid, signal.SIGKILL)
            return
        except ProcessLookupError:
            return
        except OSError:
            pass
    proc.kill()


def run_command(cmd: list[str], cwd: str, timeout: float, label: str) -> None:
    """Run a converter subprocess; on timeout the whole process group is killed."""
    logger.debug("[CERT-CONVERT] strategy=%s exec=%s timeout=%s", label, cmd[0], timeout)
    with subprocess.Popen(
        cmd,
        cwd=cwd,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        start_new_session=True,
    ) as proc:
        try:
            _, stderr = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            _kill(proc)
            proc.communicate()
            raise ConversionTimeout(f"{label} timed out after {timeout:g}s")
    if proc.returncode != 0:
        detail = (stderr or b"").decode("utf-8", errors="replace").strip()[-_STDERR_TAIL:]
        raise ConversionError(f"{label} exited with {proc.returncode}: {detail}")


def _read_output(path: str, label: str) -> bytes:
    if not os.path.isfile(path):
        raise ConversionError(f"{label} did not produce an output file")
    with open(path, "rb") as fh:
        return fh.read()


def _which(candidates: tuple[Optional[str], ...]) -> Optional[str]:
    for candidate in candidates:
        if not candidate:
            continue
        resolved = shutil.which(candidate)
        if resolved:
            return resolved
    return None


class ConversionStrategy:
    name = ""
    relaxed = False
    in_process = False

    def is_available(self) -> bool:
        return True

    def convert(self, job: ConversionJob, timeout: float) -> bytes:
        raise NotImplementedError


class LibreOfficeStrategy(ConversionStrategy):
    """Native conversion through a headless office suite."""

    name = "libreoffice"

    def __init__(self, binary: Optional[str] = None):
        self.binary = binary

    def executable(self) -> Optional[str]:
        return _which((self.binary, "soffice", "libreoffice"))

    def is_available(self) -> bool:
        return self.executable() is not None

    def convert(self, job: ConversionJob, timeout: float) -> bytes:
        executable = self.executable()
        if not executable:
            raise ConversionError("LibreOffice is not installed")
        with scoped_workdir(self.name) as workdir:
            source = os.path.join(workdir, "certificate.docx")
            with open(source, "wb") as fh:
                fh.write(job.document)
            profile = Path(workdir, "profile").as_uri()
            run_command(
                [
                    executable,
                    f"-env:UserInstallation={profile}",
                    "--headless",
                    "--norestore",
                    "--convert-to",
                    "pdf",
                    "--outdir",
                    workdir,
                    source,
                ],
                cwd=workdir,
                timeout=timeout,
                label=self.name,
            )
            return _read_output(os.path.join(workdir, "certificate.pdf"), self.name)


_jinja_env: Optional[Environment] = None


def _projection_env() -> Environment:
    global _jinja_env
    if _jinja_env is None:
        _jinja_env = Environment(
            loader=FileSystemLoader(TEMPLATES_DIR),
            autoescape=select_autoescape(["html"]),
        )
    return _jinja_env


def _data_uri(photo: Optional[bytes]) -> Optional[str]:
    if not photo:
        return None
    return "data:image/jpeg;base64," + base64.b64encode(photo).decode("ascii")


def render_projection_html(pages: list[ProjectionPage], title: str) -> str:
    """HTML view of the bound data, one certificate per printed page."""
    template = _projection_env().get_template(PROJECTION_TEMPLATE)
    return template.render(
        title=title,
        pages=[
            {"values": dict(page.values), "photo": _data_uri(page.photo)}
            for page in pages
        ],
    )


class WeasyPrintStrategy(ConversionStrategy):
    """Headless HTML-to-PDF render of the projection."""

    name = "weasyprint"

    def __init__(self, binary: Optional[str] = None):
        self.binary = binary

    def executable(self) -> Optional[str]:
        return _which((self.binary, "weasyprint"))

    def is_available(self) -> bool:
        return self.executable() is not None

    def convert(self, job: ConversionJob, timeout: float) -> bytes:
        executable = self.executable()
        if not executable:
            raise ConversionError("WeasyPrint is not installed")
        if not job.pages:
            raise ConversionError("No bound data to project as HTML")
        with scoped_workdir(self.name) as workdir:
            source = os.path.join(workdir, "certificate.html")
            target = os.path.join(workdir, "certificate.pdf")
            with open(source, "w", encoding="utf-8") as fh:
                fh.write(render_projection_html(job.pages, job.title))
            run_command(
                [executable, "--encoding", "utf-8", source, target],
                cwd=workdir,
                timeout=timeout,
                label=self.name,
            )
            return _read_output(target, self.name)


@dataclass
class _LaidOutPage:
    items: list[tuple[str, object]] = field(default_factory=list)
    header: list[str] = field(default_factory=list)
    footer: list[str] = field(default_factory=list)


def _story_lines(story) -> list[str]:
    lines = []
    for p in story._element.iter(W_P):
        text = "".join(node.text or "" for node in owned_text_nodes(p)).strip()
        if text:
            lines.append(text)
    return lines


def _section_stories(section) -> tuple[list[str], list[str]]:
    if section.different_first_page_header_footer:
        return _story_lines(section.first_page_header), _story_lines(section.first_page_footer)
    return _story_lines(section.header), _story_lines(section.footer)


def _document_pages(data: bytes) -> list[_LaidOutPage]:
    """Split a rendered document into pages of ``("text", str)``/``("image", bytes)`` items.

    Page breaks and section breaks both start a new page; each page carries
    the header and footer text of the section it belongs to.
    """
    document = Document(io.BytesIO(data))
    related = document.part.related_parts
    page_break = qn("w:br")
    br_type = qn("w:type")
    blip_tag = qn("a:blip")
    embed = qn("r:embed")
    section_break = f"{qn('w:pPr')}/{qn('w:sectPr')}"
    stories = [_section_stories(section) for section in document.sections]
    section_index = 0

    def _new_page() -> _LaidOutPage:
        header, footer = stories[min(section_index, len(stories) - 1)] if stories else ([], [])
        return _LaidOutPage(header=list(header), footer=list(footer))

    pages = [_new_page()]
    for p in document.element.body.iter(W_P):
        text = "".join(node.text or "" for node in owned_text_nodes(p)).strip()
        if text:
            pages[-1].items.append(("text", text))
        for blip in p.iter(blip_tag):
            rid = blip.get(embed)
            if rid and rid in related:
                pages[-1].items.append(("image", related[rid].blob))
        if p.find(section_break) is not None:
            section_index += 1
            pages.append(_new_page())
        elif any(br.get(br_type) == "page" for br in p.iter(page_break)):
            pages.append(_new_page())
    return [page for page in pages if page.items]


class ReportLabStrategy(ConversionStrategy):
    """Fixed-layout PDF drawn from the rendered document's text flow."""

    name = "reportlab"
    in_process = True

    max_font = 28
    min_font = 8
    story_font = 10

    def convert(self, job: ConversionJob, timeout: float) -> bytes:
        pages = _document_pages(job.document)
        if not pages:
            raise ConversionError("Rendered document has no content to lay out")
        buffer = io.BytesIO()
        page_size = landscape(A4)
        c = canvas.Canvas(buffer, pagesize=page_size)
        c.setTitle(job.title)
        for page in pages:
            self._draw_page(c, page_size, page)
            c.showPage()
        c.save()
        return buffer.getvalue()

    def _fit_font(self, c: canvas.Canvas, text: str, font: str, start: int, width: float) -> int:
        size = start
        while size > self.min_font and c.stringWidth(text, font, size) > width:
            size -= 1
        return size

    def _draw_story(self, c: canvas.Canvas, lines: list[str], x: float, y: float, width: float, step: float) -> float:
        """Draw header/footer lines centred at ``x``; ``step`` is signed, returns the next y."""
        for line in lines:
            size = self._fit_font(c, line, "Helvetica", self.story_font, width)
            c.setFont("Helvetica", size)
            c.drawCentredString(x, y, line)
            y += step
        return y

    def _draw_page(self, c: canvas.Canvas, page_size, page: _LaidOutPage) -> None:
        width, height = page_size
        margin = _mm(20)
        story_step = self.story_font * 1.4
        top = height - _mm(12)
        if page.header:
            top = self._draw_story(c, page.header, width / 2, top, width - 2 * margin, -story_step)
        bottom = margin
        if page.footer:
            self._draw_story(
                c,
                list(reversed(page.footer)),
                width / 2,
                _mm(12),
                width - 2 * margin,
                story_step,
            )
            bottom = _mm(12) + story_step * len(page.footer)
        content_top = min(height - margin, top - _mm(4))

        text_left = margin
        images = [value for kind, value in page.items if kind == "image"]
        if images:
            photo_w, photo_h = PHOTO_SIZE[0] * _PX, PHOTO_SIZE[1] * _PX
            c.drawImage(
                ImageReader(io.BytesIO(images[0])),
                margin,
                content_top - photo_h,
                width=photo_w,
                height=photo_h,
                preserveAspectRatio=True,
            )
            text_left = margin + photo_w + _mm(10)
        usable = width - text_left - margin
        centre = text_left + usable / 2
        y = content_top - _mm(10)
        lines = [value for kind, value in page.items if kind == "text"]
        for index, line in enumerate(lines):
            font = "Helvetica-Bold" if index == 0 else "Helvetica"
            size = self._fit_font(c, line, font, self.max_font if index == 0 else 16, usable)
            for chunk in simpleSplit(line, font, size, usable):
                if y < bottom:
                    c.showPage()
                    y = height - margin
                c.setFont(font, size)
                c.drawCentredString(centre, y, chunk)
                y -= size * 1.5


def _mm(v: float) -> float:
    return v * _MM


class PassthroughStrategy(ConversionStrategy):
    """Hands back the editable document when no fixed-layout path succeeded."""

    name = "passthrough"
    relaxed = True

    def __init__(self, enabled: bool = True):
        self.enabled = enabled

    def is_available(self) -> bool:
        return self.enabled

    def convert(self, job: ConversionJob, timeout: float) -> bytes:
        return job.document


STRATEGIES: dict[str, type[ConversionStrategy]] = {
    LibreOfficeStrategy.name: LibreOfficeStrategy,
    WeasyPrintStrategy.name: WeasyPrintStrategy,
    ReportLabStrategy.name: ReportLabStrategy,
    PassthroughStrategy.name: PassthroughStrategy,
}


def build_strategy(name: str, settings: ConversionSettings) -> ConversionStrategy:
    key = (name or "").strip().lower()
    if key not in STRATEGIES:
        raise ValueError(f"Unknown conversion strategy: {name!r}")
    if key == LibreOfficeStrategy.name:
        return LibreOfficeStrategy(settings.soffice_path)
    if key == WeasyPrintStrategy.name:
        return WeasyPrintStrategy(settings.weasyprint_path)
    if key == PassthroughStrategy.name:
        return PassthroughStrategy(settings.allow_docx)
    return STRATEGIES[key]()
