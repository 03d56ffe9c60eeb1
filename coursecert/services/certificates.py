from __future__ import annotations

import hashlib
import os
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Mapping, NamedTuple, Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..app import db
from ..models import Certificate, CertificateTemplate, Student
from ..shared.conversion import (
    ConversionJob,
    ConversionOutcome,
    ConversionSettings,
    ProjectionPage,
    build_pipeline,
)
from ..shared.docx_templates import (
    PHOTO_PLACEHOLDER,
    ValidationReport,
    canonical_name,
    require_valid_template,
)
from ..shared.identifiers import (
    format_certificate_date,
    format_month_year_roman,
    format_program_duration,
    generate_certificate_number,
)
from ..shared.photos import PhotoSettings, resolve_photo
from ..shared.rendering import BoundData, RenderOutcome, render_document
from ..shared.storage import (
    build_download_path,
    certificate_storage_paths,
    discard_file,
    safe_join,
    write_atomic,
)


DEFAULT_ISSUER_NAME = "Instruktur"
NUMBER_ATTEMPTS = 5


class TemplateNotFound(LookupError):
    pass


class TemplateInactive(ValueError):
    pass


class SubjectNotFound(LookupError):
    pass


class SubjectRecord(NamedTuple):
    id: int
    name: str
    student_number: str
    course_id: Optional[int]
    course_name: str
    meetings: int
    minutes_per_meeting: int
    teacher_id: Optional[int]
    teacher_name: Optional[str]
    photo_ref: Optional[str]


@dataclass
class GenerationResult:
    certificate_id: int
    certificate_number: str
    subject_id: int
    subject_name: str
    file_path: str
    size: int
    sha256: str
    output_format: str
    render_method: str
    conversion_method: str
    download_path: Optional[str]
    issued_at: datetime
    warnings: list[str] = field(default_factory=list)
    data: bytes = field(default=b"", repr=False)

    def to_dict(self) -> dict:
        return {
            "certificate_id": self.certificate_id,
            "certificate_number": self.certificate_number,
            "subject_id": self.subject_id,
            "subject_name": self.subject_name,
            "file_path": self.file_path,
            "size": self.size,
            "sha256": self.sha256,
            "output_format": self.output_format,
            "render_method": self.render_method,
            "conversion_method": self.conversion_method,
            "download_path": self.download_path,
            "issued_at": self.issued_at.isoformat(),
            "warnings": list(self.warnings),
        }


@dataclass
class PreparedTemplate:
    id: int
    name: str
    content: bytes
    report: ValidationReport


def conversion_settings() -> ConversionSettings:
    cfg = current_app.config
    return ConversionSettings(
        strategies=tuple(cfg.get("CERT_CONVERSION_STRATEGIES") or ()),
        timeout=float(cfg.get("CERT_CONVERSION_TIMEOUT", 60)),
        allow_docx=bool(cfg.get("CERT_ALLOW_DOCX_OUTPUT", True)),
        max_bytes=int(cfg.get("CERT_MAX_OUTPUT_BYTES", 50 * 1024 * 1024)),
        soffice_path=cfg.get("SOFFICE_PATH"),
        weasyprint_path=cfg.get("WEASYPRINT_PATH"),
        isolate=bool(cfg.get("CERT_ISOLATE_RENDER", True)),
    )


def photo_settings() -> PhotoSettings:
    cfg = current_app.config
    return PhotoSettings(
        storage_root=cfg.get("SITE_ROOT", "/srv"),
        max_bytes=int(cfg.get("CERT_PHOTO_MAX_BYTES", 10 * 1024 * 1024)),
        timeout=float(cfg.get("CERT_PHOTO_TIMEOUT", 10)),
    )


def load_template(template_id: int) -> PreparedTemplate:
    """Fetch an active template and run placeholder discovery on it."""
    template = db.session.get(CertificateTemplate, template_id)
    if not template:
        raise TemplateNotFound(f"Template {template_id} not found")
    if not template.is_active:
        raise TemplateInactive(f"Template {template_id} is not active")
    content = bytes(template.content or b"")
    report = require_valid_template(content)
    return PreparedTemplate(
        id=template.id, name=template.name, content=content, report=report
    )


def load_subject(subject_id: int) -> SubjectRecord:
    student = db.session.get(Student, subject_id)
    if not student:
        raise SubjectNotFound(f"Subject {subject_id} not found")
    course = student.course
    teacher = student.teacher
    return SubjectRecord(
        id=student.id,
        name=student.name,
        student_number=student.student_number,
        course_id=course.id if course else None,
        course_name=course.name if course else "",
        meetings=int(course.meetings or 0) if course else 0,
        minutes_per_meeting=int(course.minutes_per_meeting or 90) if course else 90,
        teacher_id=teacher.id if teacher else None,
        teacher_name=teacher.name if teacher else None,
        photo_ref=student.photo_ref,
    )


def build_bound_data(
    subject: SubjectRecord,
    certificate_number: str,
    overrides: Optional[Mapping[str, object]] = None,
    issued_on: date | None = None,
    locale: str | None = None,
) -> BoundData:
    issued = issued_on or date.today()
    values: dict[str, str] = {
        "subject_name": subject.name or "",
        "subject_id": subject.student_number or "",
        "program_name": subject.course_name or "",
        "program_duration": format_program_duration(
            subject.meetings, subject.minutes_per_meeting
        ),
        "issuance_date": format_certificate_date(
            issued, locale or current_app.config.get("CERT_LOCALE", "id")
        ),
        "issuance_month_year": format_month_year_roman(issued.month, issued.year),
        "issuer_name": subject.teacher_name or DEFAULT_ISSUER_NAME,
    }
    photo_ref = subject.photo_ref
    for key, value in (overrides or {}).items():
        name = canonical_name(str(key))
        if name == PHOTO_PLACEHOLDER:
            photo_ref = str(value) if value else None
            continue
        values[name] = "" if value is None else str(value)
    values["certificate_number"] = certificate_number
    return BoundData(
        values=values,
        photo_ref=(photo_ref or "").strip() or None,
        subject_id=str(subject.id),
    )


def allocate_certificate_number(now: datetime | None = None) -> str:
    prefix = current_app.config.get("CERT_NUMBER_PREFIX", "CERT")
    for _ in range(NUMBER_ATTEMPTS):
        candidate = generate_certificate_number(prefix, now)
        taken = (
            db.session.query(Certificate.id)
            .filter(Certificate.certificate_number == candidate)
            .first()
        )
        if not taken:
            return candidate
        current_app.logger.warning("[CERT] number collision number=%s", candidate)
    raise RuntimeError("Could not allocate a unique certificate number")


def _is_number_conflict(error: IntegrityError) -> bool:
    details = str(getattr(error, "orig", None) or error).lower()
    return "certificate_number" in details or "uix_certificate_number" in details


def render_subject(
    template: PreparedTemplate,
    subject: SubjectRecord,
    certificate_number: str,
    overrides: Optional[Mapping[str, object]] = None,
    issued_on: date | None = None,
) -> tuple[BoundData, RenderOutcome]:
    bound = build_bound_data(subject, certificate_number, overrides, issued_on)
    settings = photo_settings()
    outcome = render_document(
        template.content, bound, lambda ref: resolve_photo(ref, settings)
    )
    return bound, outcome


def projection_page(bound: BoundData, outcome: RenderOutcome) -> ProjectionPage:
    photo = outcome.photo.data if outcome.photo is not None else None
    return ProjectionPage(values=dict(bound.values), photo=photo)


def store_output(data: bytes, certificate_number: str, output_format: str) -> tuple[str, str, str]:
    """Write bytes under SITE_ROOT; returns ``(abs_path, rel_path, download_path)``."""
    filename = f"{certificate_number}.{output_format}"
    site_root = current_app.config.get("SITE_ROOT", "/srv")
    abs_path, rel_path = certificate_storage_paths(site_root, filename)
    write_atomic(abs_path, data)
    os.chmod(abs_path, 0o644)
    return abs_path, rel_path, build_download_path(filename)


def record_certificate(
    *,
    certificate_number: str,
    template_id: int,
    subject: SubjectRecord,
    bound: BoundData,
    rel_path: str,
    download_path: Optional[str],
    conversion: ConversionOutcome,
    render_method: str,
    warnings: list[str],
    generated_by: Optional[int] = None,
    batch_id: Optional[str] = None,
) -> Certificate:
    cert = Certificate(
        certificate_number=certificate_number,
        template_id=template_id,
        student_id=subject.id,
        teacher_id=subject.teacher_id,
        course_id=subject.course_id,
        student_name=bound.values.get("subject_name"),
        course_name=bound.values.get("program_name"),
        teacher_name=bound.values.get("issuer_name"),
        course_duration=bound.values.get("program_duration"),
        file_path=rel_path,
        file_size=len(conversion.data),
        sha256=hashlib.sha256(conversion.data).hexdigest(),
        output_format=conversion.output_format,
        render_method=render_method,
        conversion_method=conversion.method,
        download_url=download_path,
        warnings=list(warnings),
        batch_id=batch_id,
        generated_by=generated_by,
        issued_at=datetime.utcnow(),
    )
    db.session.add(cert)
    return cert


def generate_certificate(
    template_id: int,
    subject_id: int,
    overrides: Optional[Mapping[str, object]] = None,
    generated_by: Optional[int] = None,
    template: PreparedTemplate | None = None,
) -> GenerationResult:
    """Validate, bind, render, convert and persist one certificate."""
    template = template or load_template(template_id)
    subject = load_subject(subject_id)

    for attempt in range(NUMBER_ATTEMPTS):
        number = allocate_certificate_number()
        bound, rendered = render_subject(template, subject, number, overrides)
        conversion = build_pipeline(conversion_settings()).convert(
            ConversionJob(
                document=rendered.document,
                pages=[projection_page(bound, rendered)],
                title=f"Certificate {number}",
            )
        )
        abs_path, rel_path, download_path = store_output(
            conversion.data, number, conversion.output_format
        )
        warnings = list(rendered.warnings)
        if conversion.output_format != "pdf":
            warnings.append("Fixed-layout conversion unavailable; editable document delivered.")
        try:
            cert = record_certificate(
                certificate_number=number,
                template_id=template.id,
                subject=subject,
                bound=bound,
                rel_path=rel_path,
                download_path=download_path,
                conversion=conversion,
                render_method=rendered.method,
                warnings=warnings,
                generated_by=generated_by,
            )
            db.session.commit()
        except IntegrityError as exc:
            db.session.rollback()
            discard_file(abs_path)
            if attempt + 1 >= NUMBER_ATTEMPTS or not _is_number_conflict(exc):
                raise
            current_app.logger.warning("[CERT] number taken at commit number=%s", number)
            continue
        except Exception:
            db.session.rollback()
            discard_file(abs_path)
            raise
        break

    current_app.logger.info(
        "[CERT] subject=%s template=%s number=%s render=%s convert=%s path=%s",
        subject.id,
        template.id,
        number,
        rendered.method,
        conversion.method,
        rel_path,
    )
    return GenerationResult(
        certificate_id=cert.id,
        certificate_number=number,
        subject_id=subject.id,
        subject_name=subject.name,
        file_path=rel_path,
        size=cert.file_size,
        sha256=cert.sha256,
        output_format=conversion.output_format,
        render_method=rendered.method,
        conversion_method=conversion.method,
        download_path=download_path,
        issued_at=cert.issued_at,
        warnings=warnings,
        data=conversion.data,
    )


def certificate_file_path(cert: Certificate) -> Optional[str]:
    site_root = current_app.config.get("SITE_ROOT", "/srv")
    path = safe_join(site_root, cert.file_path)
    if not path or not os.path.isfile(path):
        return None
    return path


def list_certificates(
    template_id: Optional[int] = None,
    student_id: Optional[int] = None,
    batch_id: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Certificate], int]:
    """Newest first; returns ``(page, total)``."""
    query = db.session.query(Certificate)
    if template_id is not None:
        query = query.filter(Certificate.template_id == template_id)
    if student_id is not None:
        query = query.filter(Certificate.student_id == student_id)
    if batch_id:
        query = query.filter(Certificate.batch_id == batch_id)
    total = query.count()
    rows = (
        query.order_by(Certificate.issued_at.desc(), Certificate.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return rows, total


def delete_certificate(cert: Certificate) -> bool:
    """Delete the row, and its file unless a combined batch row still points at it.

    Returns True when a file was removed.
    """
    shared = (
        db.session.query(Certificate.id)
        .filter(Certificate.file_path == cert.file_path, Certificate.id != cert.id)
        .first()
        is not None
    )
    path = None if shared else certificate_file_path(cert)
    number = cert.certificate_number
    db.session.delete(cert)
    db.session.commit()
    discard_file(path)
    current_app.logger.info(
        "[CERT-DELETE] number=%s file_removed=%s shared=%s", number, bool(path), shared
    )
    return path is not None
