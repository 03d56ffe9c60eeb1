from __future__ import annotations

import io
import logging
import re
import zipfile
from dataclasses import dataclass, field
from typing import Iterable, Iterator, Sequence

from docx import Document
from docx.oxml.ns import qn


logger = logging.getLogger("coursecert.certgen")

DOCUMENT_XML = "word/document.xml"
MAX_TEMPLATE_BYTES = 10 * 1024 * 1024
CONTEXT_CHARS = 50

SYNTAX_DOUBLE = "double"
SYNTAX_SINGLE = "single"

PLACEHOLDER_PATTERNS: dict[str, re.Pattern] = {
    SYNTAX_DOUBLE: re.compile(r"\{\{([^}]+)\}\}"),
    SYNTAX_SINGLE: re.compile(r"\{([^}]+)\}"),
}

PHOTO_PLACEHOLDER = "subject_photo"

REQUIRED_PLACEHOLDERS: tuple[str, ...] = (
    "subject_name",
    "subject_id",
    "program_name",
    "program_duration",
    "issuance_date",
    "certificate_number",
)

OPTIONAL_PLACEHOLDERS: tuple[str, ...] = (
    "issuer_name",
    PHOTO_PLACEHOLDER,
)

# Bound on every certificate but never expected in a template.
EXTRA_PLACEHOLDERS: tuple[str, ...] = ("issuance_month_year",)

BINDABLE_OPTIONAL: tuple[str, ...] = OPTIONAL_PLACEHOLDERS + EXTRA_PLACEHOLDERS

# Names used by templates authored for the previous generator.
PLACEHOLDER_ALIASES: dict[str, str] = {
    "student_name": "subject_name",
    "student_id": "subject_id",
    "course_name": "program_name",
    "course_duration": "program_duration",
    "certificate_date": "issuance_date",
    "teacher_name": "issuer_name",
    "student_photo": PHOTO_PLACEHOLDER,
    "certificate_month_year": "issuance_month_year",
}

W_P = qn("w:p")
W_T = qn("w:t")
_XML_TAG = re.compile(r"<[^>]+>")
_WS = re.compile(r"\s+")


class TemplateInvalid(ValueError):
    """Raised when a template cannot be used for rendering."""

    def __init__(self, message: str, report: "ValidationReport | None" = None):
        super().__init__(message)
        self.report = report


@dataclass(frozen=True)
class PlaceholderToken:
    name: str
    raw: str
    syntax: str
    required: bool
    context: str
    position: int


@dataclass(frozen=True)
class ParsedTemplate:
    text: str
    is_archive: bool
    structural: bool
    size: int
    error: str | None = None


@dataclass
class ValidationReport:
    is_valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    tokens: list[PlaceholderToken] = field(default_factory=list)
    syntax: str | None = None

    @property
    def placeholder_names(self) -> list[str]:
        return [token.name for token in self.tokens]

    def to_dict(self) -> dict:
        return {
            "is_valid": self.is_valid,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "syntax": self.syntax,
            "placeholders": [
                {
                    "name": t.name,
                    "raw": t.raw,
                    "syntax": t.syntax,
                    "required": t.required,
                    "context": t.context,
                }
                for t in self.tokens
            ],
        }


def canonical_name(raw: str) -> str:
    name = (raw or "").strip()
    return PLACEHOLDER_ALIASES.get(name, name)


def iter_story_roots(document) -> Iterator[tuple[object, object]]:
    """Yield ``(root_element, parent)`` for the body and each distinct header/footer."""
    yield document.element.body, document._body
    seen: set[int] = set()
    for section in document.sections:
        for part_owner in (
            section.header,
            section.first_page_header,
            section.even_page_header,
            section.footer,
            section.first_page_footer,
            section.even_page_footer,
        ):
            if part_owner.is_linked_to_previous:
                continue
            element = part_owner._element
            if id(element) in seen:
                continue
            seen.add(id(element))
            yield element, part_owner


def owned_text_nodes(paragraph_element) -> list:
    """``w:t`` nodes whose closest paragraph is ``paragraph_element``.

    Text boxes nest whole paragraphs inside runs; those belong to the inner
    paragraph, not the one hosting the drawing.
    """
    nodes = []
    for node in paragraph_element.iter(W_T):
        owner = next(node.iterancestors(W_P), None)
        if owner is paragraph_element:
            nodes.append(node)
    return nodes


def iter_paragraph_texts(document) -> Iterator[str]:
    for root, _ in iter_story_roots(document):
        for p in root.iter(W_P):
            yield "".join(node.text or "" for node in owned_text_nodes(p))


def _text_from_document_xml(data: bytes) -> str:
    with zipfile.ZipFile(io.BytesIO(data)) as archive:
        xml = archive.read(DOCUMENT_XML).decode("utf-8", errors="replace")
    xml = xml.replace("</w:p>", "\n")
    text = _XML_TAG.sub("", xml)
    return "\n".join(_WS.sub(" ", line).strip() for line in text.splitlines())


def parse_template(data: bytes) -> ParsedTemplate:
    """Unpack the container and extract its plain text for placeholder discovery."""
    size = len(data or b"")
    if not data or not zipfile.is_zipfile(io.BytesIO(data)):
        return ParsedTemplate(
            text="",
            is_archive=False,
            structural=False,
            size=size,
            error="Template is not a valid DOCX archive.",
        )
    try:
        document = Document(io.BytesIO(data))
        text = "\n".join(iter_paragraph_texts(document))
        return ParsedTemplate(text=text, is_archive=True, structural=True, size=size)
    except Exception as exc:
        structural_error = str(exc) or exc.__class__.__name__
        logger.warning("[CERT-TEMPLATE] structural parse failed: %s", structural_error)
    try:
        text = _text_from_document_xml(data)
    except (KeyError, zipfile.BadZipFile) as exc:
        return ParsedTemplate(
            text="",
            is_archive=False,
            structural=False,
            size=size,
            error=f"Template archive has no readable document part: {exc}",
        )
    return ParsedTemplate(
        text=text,
        is_archive=True,
        structural=False,
        size=size,
        error=structural_error,
    )


def detect_syntax(text: str) -> str:
    """Pick the delimiter syntax with more raw matches; double wins ties."""
    doubles = len(PLACEHOLDER_PATTERNS[SYNTAX_DOUBLE].findall(text or ""))
    singles = len(PLACEHOLDER_PATTERNS[SYNTAX_SINGLE].findall(text or ""))
    return SYNTAX_DOUBLE if doubles >= singles else SYNTAX_SINGLE


def _is_malformed(inner: str) -> bool:
    return not inner.strip() or "{" in inner or "}" in inner


def _context(text: str, start: int, end: int) -> str:
    snippet = text[max(0, start - CONTEXT_CHARS) : min(len(text), end + CONTEXT_CHARS)]
    return _WS.sub(" ", snippet).strip()


def extract_placeholders(
    text: str, syntax: str | None = None
) -> list[PlaceholderToken]:
    text = text or ""
    active = syntax or detect_syntax(text)
    pattern = PLACEHOLDER_PATTERNS[active]
    tokens: list[PlaceholderToken] = []
    seen: set[str] = set()
    for match in pattern.finditer(text):
        inner = match.group(1)
        if _is_malformed(inner):
            continue
        raw = inner.strip()
        name = canonical_name(raw)
        if name in seen:
            continue
        seen.add(name)
        tokens.append(
            PlaceholderToken(
                name=name,
                raw=raw,
                syntax=active,
                required=name in REQUIRED_PLACEHOLDERS,
                context=_context(text, match.start(), match.end()),
                position=match.start(),
            )
        )
    return tokens


def classify_placeholders(
    tokens: Iterable[PlaceholderToken | str],
) -> dict[str, list[str]]:
    groups: dict[str, list[str]] = {"required": [], "optional": [], "unknown": []}
    for token in tokens:
        name = token.name if isinstance(token, PlaceholderToken) else canonical_name(token)
        if name in REQUIRED_PLACEHOLDERS:
            bucket = "required"
        elif name in BINDABLE_OPTIONAL:
            bucket = "optional"
        else:
            bucket = "unknown"
        if name not in groups[bucket]:
            groups[bucket].append(name)
    return groups


def validate_template(
    parsed: ParsedTemplate, tokens: Sequence[PlaceholderToken]
) -> ValidationReport:
    errors: list[str] = []
    warnings: list[str] = []

    if not parsed.is_archive:
        errors.append(parsed.error or "Template is not a valid DOCX archive.")
    elif not parsed.structural:
        warnings.append(
            "Template could not be opened as a document; placeholders were read from raw XML."
        )

    if parsed.is_archive and not tokens:
        errors.append("No placeholders found in template.")

    groups = classify_placeholders(tokens)
    found = set(groups["required"]) | set(groups["optional"]) | set(groups["unknown"])
    missing_required = [name for name in REQUIRED_PLACEHOLDERS if name not in found]
    if parsed.is_archive and tokens and missing_required:
        errors.append(
            f"Missing required placeholders: {', '.join(missing_required)}"
        )
    missing_optional = [name for name in OPTIONAL_PLACEHOLDERS if name not in found]
    if tokens and missing_optional:
        warnings.append(
            f"Missing optional placeholders: {', '.join(missing_optional)}"
        )
    if groups["unknown"]:
        warnings.append(f"Unknown placeholders: {', '.join(groups['unknown'])}")
    if parsed.size > MAX_TEMPLATE_BYTES:
        warnings.append("Template is larger than 10 MB and may be slow to process.")

    return ValidationReport(
        is_valid=not errors,
        errors=errors,
        warnings=warnings,
        tokens=list(tokens),
        syntax=tokens[0].syntax if tokens else None,
    )


def inspect_template(data: bytes) -> ValidationReport:
    parsed = parse_template(data)
    tokens = extract_placeholders(parsed.text) if parsed.text else []
    return validate_template(parsed, tokens)


def require_valid_template(data: bytes) -> ValidationReport:
    report = inspect_template(data)
    if not report.is_valid:
        raise TemplateInvalid("; ".join(report.errors), report)
    return report
