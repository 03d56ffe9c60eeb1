from __future__ import annotations

import io
import logging
from copy import deepcopy
from dataclasses import dataclass, field
from typing import Callable, Mapping, Optional, Sequence

from docx import Document
from docx.oxml import OxmlElement
from docx.oxml.ns import qn
from docx.parts.hdrftr import HeaderPart
from docx.shared import Emu, Pt
from docx.text.paragraph import Paragraph
from docx.text.run import Run

from .docx_templates import (
    BINDABLE_OPTIONAL,
    PHOTO_PLACEHOLDER,
    PLACEHOLDER_ALIASES,
    PLACEHOLDER_PATTERNS,
    SYNTAX_DOUBLE,
    SYNTAX_SINGLE,
    W_P,
    canonical_name,
    detect_syntax,
    extract_placeholders,
    iter_paragraph_texts,
    iter_story_roots,
    owned_text_nodes,
    parse_template,
)
from .photos import PHOTO_SIZE, ResolvedPhoto


logger = logging.getLogger("coursecert.certgen")

METHOD_STRUCTURAL = "structural"
METHOD_DEGRADED = "degraded"

EMU_PER_PIXEL = 9525
PHOTO_FOOTPRINT = (Emu(PHOTO_SIZE[0] * EMU_PER_PIXEL), Emu(PHOTO_SIZE[1] * EMU_PER_PIXEL))
_XML_SPACE = qn("xml:space")
W_SECT_PR = qn("w:sectPr")
_PPR_SECT_PR = f"{qn('w:pPr')}/{W_SECT_PR}"
_STORY_REFS = (qn("w:headerReference"), qn("w:footerReference"))
_R_ID = qn("r:id")


class RenderError(RuntimeError):
    """Raised when a template cannot be bound into a document."""


class MissingBoundValue(RenderError):
    def __init__(self, names: Sequence[str]):
        super().__init__(f"Missing values for required placeholders: {', '.join(names)}")
        self.names = list(names)


@dataclass(frozen=True)
class BoundData:
    values: Mapping[str, str]
    photo_ref: Optional[str] = None
    subject_id: Optional[str] = None

    def lookup(self, raw: str) -> Optional[str]:
        """Value for a token as written in a template; None leaves the token intact."""
        name = canonical_name(raw)
        for key in (name, raw.strip()):
            if key in self.values and self.values[key] is not None:
                return str(self.values[key])
        if name in BINDABLE_OPTIONAL:
            return ""
        return None


@dataclass
class RenderOutcome:
    document: bytes
    method: str
    warnings: list[str] = field(default_factory=list)
    photo: Optional[ResolvedPhoto] = None

    @property
    def degraded(self) -> bool:
        return self.method == METHOD_DEGRADED


PhotoResolver = Callable[[str], ResolvedPhoto]


def check_required_values(template_bytes: bytes, bound: BoundData) -> str:
    """Run placeholder discovery and fail if a required token has no value."""
    parsed = parse_template(template_bytes)
    syntax = detect_syntax(parsed.text)
    tokens = extract_placeholders(parsed.text, syntax)
    missing = [
        token.name
        for token in tokens
        if token.required and not (bound.lookup(token.raw) or "").strip()
    ]
    if missing:
        raise MissingBoundValue(missing)
    return syntax


def _splice(nodes: list, texts: list[str], offsets: list[int], start: int, end: int, replacement: str) -> int:
    """Replace ``[start, end)`` of the joined paragraph text; returns the node holding ``start``."""
    first = last = None
    for index, offset in enumerate(offsets):
        length = len(nodes[index].text or "")
        if first is None and offset <= start < offset + length:
            first = index
        if offset < end <= offset + length:
            last = index
            break
    if first is None or last is None:
        raise RenderError("Placeholder offsets do not map onto document text")
    head = texts[first][: start - offsets[first]]
    if first == last:
        tail = texts[first][end - offsets[first] :]
        texts[first] = head + replacement + tail
        return first
    texts[first] = head + replacement
    for index in range(first + 1, last):
        texts[index] = ""
    texts[last] = texts[last][end - offsets[last] :]
    return first


def _insert_picture_after(run_element, paragraph: Paragraph, photo: bytes) -> None:
    new_r = OxmlElement("w:r")
    run_element.addnext(new_r)
    run = Run(new_r, paragraph)
    run.add_picture(io.BytesIO(photo), width=PHOTO_FOOTPRINT[0], height=PHOTO_FOOTPRINT[1])


class _StructuralBinder:
    def __init__(self, bound: BoundData, syntax: str, resolve_photo: Optional[PhotoResolver]):
        self.bound = bound
        self.pattern = PLACEHOLDER_PATTERNS[syntax]
        self.resolve_photo = resolve_photo
        self.photo: Optional[ResolvedPhoto] = None
        self.photo_attempted = False
        self.warnings: list[str] = []

    def _photo_bytes(self) -> Optional[bytes]:
        if not self.bound.photo_ref or self.resolve_photo is None:
            return None
        if not self.photo_attempted:
            self.photo_attempted = True
            try:
                self.photo = self.resolve_photo(self.bound.photo_ref)
            except Exception as exc:
                logger.warning("[CERT-RENDER] photo resolution failed, continuing without photo: %s", exc)
                self.warnings.append(f"Photo omitted: {exc}")
                self.photo = None
            if self.photo is not None and self.photo.warning:
                self.warnings.append(f"Default photo used: {self.photo.warning}")
        return self.photo.data if self.photo is not None else None

    def bind_paragraph(self, p, parent) -> None:
        nodes = owned_text_nodes(p)
        if not nodes:
            return
        texts = [node.text or "" for node in nodes]
        full = "".join(texts)
        if "{" not in full:
            return
        offsets: list[int] = []
        running = 0
        for text in texts:
            offsets.append(running)
            running += len(text)

        photo_anchors: list[int] = []
        for match in reversed(list(self.pattern.finditer(full))):
            inner = match.group(1)
            if "{" in inner or "}" in inner or not inner.strip():
                continue
            name = canonical_name(inner)
            if name == PHOTO_PLACEHOLDER:
                anchor = _splice(nodes, texts, offsets, match.start(), match.end(), "")
                photo_anchors.append(anchor)
                continue
            value = self.bound.lookup(inner)
            if value is None:
                continue
            _splice(nodes, texts, offsets, match.start(), match.end(), value)

        for node, text in zip(nodes, texts):
            if (node.text or "") != text:
                node.text = text
                node.set(_XML_SPACE, "preserve")

        if not photo_anchors:
            return
        photo = self._photo_bytes()
        if photo is None:
            return
        paragraph = Paragraph(p, parent)
        for anchor in photo_anchors:
            run_element = next(nodes[anchor].iterancestors(qn("w:r")), None)
            if run_element is None:
                continue
            _insert_picture_after(run_element, paragraph, photo)


def render_structural(
    template_bytes: bytes,
    bound: BoundData,
    syntax: str,
    resolve_photo: Optional[PhotoResolver] = None,
) -> RenderOutcome:
    """Bind values in place, leaving every run's styling untouched."""
    document = Document(io.BytesIO(template_bytes))
    binder = _StructuralBinder(bound, syntax, resolve_photo)
    for root, parent in iter_story_roots(document):
        for p in list(root.iter(W_P)):
            binder.bind_paragraph(p, parent)
    out = io.BytesIO()
    document.save(out)
    return RenderOutcome(
        document=out.getvalue(),
        method=METHOD_STRUCTURAL,
        warnings=binder.warnings,
        photo=binder.photo,
    )


def substitute_text(text: str, bound: BoundData) -> str:
    """Raw string substitution in both delimiter syntaxes; photo tokens are dropped."""
    names: dict[str, str] = {name: name for name in bound.values}
    for alias, name in PLACEHOLDER_ALIASES.items():
        names.setdefault(alias, name)
    for name in BINDABLE_OPTIONAL:
        names.setdefault(name, name)
    result = text
    for raw, name in names.items():
        value = "" if name == PHOTO_PLACEHOLDER else (bound.lookup(raw) or "")
        result = result.replace("{{%s}}" % raw, value)
        result = result.replace("{{ %s }}" % raw, value)
    for raw, name in names.items():
        value = "" if name == PHOTO_PLACEHOLDER else (bound.lookup(raw) or "")
        result = result.replace("{%s}" % raw, value)
    return result


def render_degraded(template_bytes: bytes, bound: BoundData) -> RenderOutcome:
    """Unstyled text flow with substituted values; never embeds the photo."""
    parsed = parse_template(template_bytes)
    if not parsed.text.strip():
        raise RenderError(parsed.error or "Template has no readable text")
    text = substitute_text(parsed.text, bound)
    document = Document()
    for line in text.split("\n"):
        paragraph = document.add_paragraph()
        paragraph.add_run(line).font.size = Pt(12)
    out = io.BytesIO()
    document.save(out)
    return RenderOutcome(
        document=out.getvalue(),
        method=METHOD_DEGRADED,
        warnings=["Degraded render: template formatting and photo were not preserved."],
    )


def render_document(
    template_bytes: bytes,
    bound: BoundData,
    resolve_photo: Optional[PhotoResolver] = None,
) -> RenderOutcome:
    syntax = check_required_values(template_bytes, bound)
    try:
        return render_structural(template_bytes, bound, syntax, resolve_photo)
    except Exception as exc:
        logger.warning(
            "[CERT-RENDER] structural render failed subject=%s; using degraded path: %s",
            bound.subject_id,
            exc,
        )
        structural_error = exc
    try:
        outcome = render_degraded(template_bytes, bound)
    except Exception as exc:
        raise RenderError(
            f"Structural render failed ({structural_error}); degraded render failed ({exc})"
        ) from exc
    outcome.warnings.append(f"Structural render failed: {structural_error}")
    return outcome


def document_text(document_bytes: bytes) -> str:
    document = Document(io.BytesIO(document_bytes))
    return "\n".join(iter_paragraph_texts(document))


def _page_break_paragraph():
    p = OxmlElement("w:p")
    r = OxmlElement("w:r")
    br = OxmlElement("w:br")
    br.set(qn("w:type"), "page")
    r.append(br)
    p.append(r)
    return p


def _relink_images(element, source_part, target_part) -> None:
    embed = qn("r:embed")
    for blip in element.iter(qn("a:blip")):
        rid = blip.get(embed)
        if not rid or rid not in source_part.related_parts:
            continue
        image_part = source_part.related_parts[rid]
        new_rid, _ = target_part.get_or_add_image(io.BytesIO(image_part.blob))
        blip.set(embed, new_rid)


def _copy_story_part(story, target_part):
    """Clone a header or footer part, with its images, into the target package."""
    package = target_part.package
    kind = "header" if isinstance(story, HeaderPart) else "footer"
    partname = package.next_partname(f"/word/{kind}%d.xml")
    clone = type(story)(partname, story.content_type, deepcopy(story.element), package)
    _relink_images(clone.element, story, clone)
    return clone


def _relink_sections(element, source_part, target_part, copied: dict[str, str]) -> None:
    """Point every header/footer reference under ``element`` at copies owned by ``target_part``."""
    for sect_pr in element.iter(W_SECT_PR):
        for ref in sect_pr:
            if ref.tag not in _STORY_REFS:
                continue
            rid = ref.get(_R_ID)
            if not rid or rid not in source_part.related_parts:
                continue
            if rid not in copied:
                clone = _copy_story_part(source_part.related_parts[rid], target_part)
                copied[rid] = target_part.relate_to(clone, source_part.rels[rid].reltype)
            ref.set(_R_ID, copied[rid])


def _break_section(body, sect_pr) -> None:
    """Move the trailing ``sectPr`` into the last paragraph, ending that section there."""
    blocks = [child for child in body.iterchildren() if child.tag != W_SECT_PR]
    last = blocks[-1] if blocks else None
    if last is None or last.tag != W_P or last.find(_PPR_SECT_PR) is not None:
        last = OxmlElement("w:p")
        sect_pr.addprevious(last)
    body.remove(sect_pr)
    last.get_or_add_pPr().append(sect_pr)


def combine_documents(documents: Sequence[bytes]) -> bytes:
    """Concatenate rendered documents into one, each subject in its own section.

    Every source keeps its page setup and its own header and footer parts, so
    bound header values stay with the subject they were rendered for.
    """
    if not documents:
        raise RenderError("No documents to combine")
    base = Document(io.BytesIO(documents[0]))
    body = base.element.body

    for data in documents[1:]:
        source = Document(io.BytesIO(data))
        copied: dict[str, str] = {}
        trailing = body.find(W_SECT_PR)
        if trailing is not None:
            _break_section(body, trailing)
        else:
            body.append(_page_break_paragraph())
        for child in source.element.body.iterchildren():
            clone = deepcopy(child)
            _relink_images(clone, source.part, base.part)
            _relink_sections(clone, source.part, base.part, copied)
            body.append(clone)

    for index, doc_pr in enumerate(body.iter(qn("wp:docPr")), start=1):
        doc_pr.set("id", str(index))

    out = io.BytesIO()
    base.save(out)
    return out.getvalue()
