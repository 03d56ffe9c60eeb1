from __future__ import annotations

import hashlib
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Mapping, Optional, Sequence

from flask import current_app

from ..app import db
from ..shared.conversion import ConversionJob, build_pipeline
from ..shared.rendering import combine_documents
from ..shared.storage import discard_file
from .certificates import (
    GenerationResult,
    PreparedTemplate,
    allocate_certificate_number,
    conversion_settings,
    generate_certificate,
    load_subject,
    load_template,
    projection_page,
    record_certificate,
    render_subject,
    store_output,
)


class BatchTooLarge(ValueError):
    pass


@dataclass
class BatchFailure:
    subject_id: int
    subject_name: Optional[str]
    reason: str

    def to_dict(self) -> dict:
        return {
            "subject_id": self.subject_id,
            "subject_name": self.subject_name,
            "reason": self.reason,
        }


@dataclass
class CombinedArtifact:
    batch_id: str
    file_path: str
    download_path: Optional[str]
    output_format: str
    conversion_method: str
    size: int
    sha256: str

    def to_dict(self) -> dict:
        return {
            "batch_id": self.batch_id,
            "file_path": self.file_path,
            "download_path": self.download_path,
            "output_format": self.output_format,
            "conversion_method": self.conversion_method,
            "size": self.size,
            "sha256": self.sha256,
        }


@dataclass
class BatchResult:
    requested: int
    successes: list[GenerationResult] = field(default_factory=list)
    failures: list[BatchFailure] = field(default_factory=list)
    cancelled: list[int] = field(default_factory=list)
    combined: Optional[CombinedArtifact] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "requested": self.requested,
            "success_count": len(self.successes),
            "failure_count": len(self.failures),
            "successes": [r.to_dict() for r in self.successes],
            "failures": [f.to_dict() for f in self.failures],
            "cancelled": list(self.cancelled),
            "combined": self.combined.to_dict() if self.combined else None,
            "error": self.error,
        }


def _subject_label(subject_id: int) -> Optional[str]:
    try:
        return load_subject(subject_id).name
    except LookupError:
        return None


def _run_one(
    template: PreparedTemplate,
    subject_id: int,
    overrides: Optional[Mapping[str, object]],
    generated_by: Optional[int],
) -> GenerationResult | BatchFailure:
    try:
        return generate_certificate(
            template.id,
            subject_id,
            overrides=overrides,
            generated_by=generated_by,
            template=template,
        )
    except Exception as exc:
        db.session.rollback()
        current_app.logger.exception(
            "[CERT-FAIL] subject=%s template=%s", subject_id, template.id
        )
        return BatchFailure(
            subject_id=subject_id,
            subject_name=_subject_label(subject_id),
            reason=str(exc) or exc.__class__.__name__,
        )


def _per_subject(
    result: BatchResult,
    template: PreparedTemplate,
    subject_ids: Sequence[int],
    overrides: Optional[Mapping[str, object]],
    generated_by: Optional[int],
    max_workers: int,
    cancel_event: Optional[threading.Event],
) -> None:
    def _collect(outcome) -> None:
        if isinstance(outcome, BatchFailure):
            result.failures.append(outcome)
        else:
            result.successes.append(outcome)

    if max_workers <= 1:
        for subject_id in subject_ids:
            if cancel_event is not None and cancel_event.is_set():
                result.cancelled.append(subject_id)
                continue
            _collect(_run_one(template, subject_id, overrides, generated_by))
        return

    app = current_app._get_current_object()

    def _worker(subject_id: int):
        if cancel_event is not None and cancel_event.is_set():
            return None
        with app.app_context():
            try:
                return _run_one(template, subject_id, overrides, generated_by)
            finally:
                db.session.remove()

    with ThreadPoolExecutor(
        max_workers=max_workers, thread_name_prefix="certbatch"
    ) as pool:
        futures = [(sid, pool.submit(_worker, sid)) for sid in subject_ids]
        for subject_id, future in futures:
            outcome = future.result()
            if outcome is None:
                result.cancelled.append(subject_id)
            else:
                _collect(outcome)


def _combined(
    result: BatchResult,
    template: PreparedTemplate,
    subject_ids: Sequence[int],
    overrides: Optional[Mapping[str, object]],
    generated_by: Optional[int],
    cancel_event: Optional[threading.Event],
) -> None:
    batch_id = f"BATCH-{datetime.utcnow().strftime('%Y%m%d%H%M%S%f')}"
    rendered = []
    used_numbers: set[str] = set()
    for subject_id in subject_ids:
        if cancel_event is not None and cancel_event.is_set():
            result.cancelled.append(subject_id)
            continue
        try:
            subject = load_subject(subject_id)
            number = allocate_certificate_number()
            while number in used_numbers:
                number = allocate_certificate_number()
            used_numbers.add(number)
            bound, outcome = render_subject(template, subject, number, overrides)
        except Exception as exc:
            current_app.logger.exception(
                "[CERT-FAIL] subject=%s template=%s batch=%s",
                subject_id,
                template.id,
                batch_id,
            )
            result.failures.append(
                BatchFailure(
                    subject_id=subject_id,
                    subject_name=_subject_label(subject_id),
                    reason=str(exc) or exc.__class__.__name__,
                )
            )
            continue
        rendered.append((subject, number, bound, outcome))

    if not rendered:
        result.error = "No subject could be rendered"
        return

    abs_path = None
    try:
        document = combine_documents([outcome.document for _, _, _, outcome in rendered])
        conversion = build_pipeline(conversion_settings()).convert(
            ConversionJob(
                document=document,
                pages=[projection_page(bound, outcome) for _, _, bound, outcome in rendered],
                title=f"Certificates {batch_id}",
            )
        )
        abs_path, rel_path, download_path = store_output(
            conversion.data, batch_id, conversion.output_format
        )
        rows = []
        for subject, number, bound, outcome in rendered:
            rows.append(
                (
                    subject,
                    number,
                    outcome,
                    record_certificate(
                        certificate_number=number,
                        template_id=template.id,
                        subject=subject,
                        bound=bound,
                        rel_path=rel_path,
                        download_path=download_path,
                        conversion=conversion,
                        render_method=outcome.method,
                        warnings=outcome.warnings,
                        generated_by=generated_by,
                        batch_id=batch_id,
                    ),
                )
            )
        db.session.commit()
    except Exception as exc:
        db.session.rollback()
        discard_file(abs_path)
        current_app.logger.exception("[CERT-BATCH] combine failed batch=%s", batch_id)
        result.error = str(exc) or exc.__class__.__name__
        return

    digest = hashlib.sha256(conversion.data).hexdigest()
    result.combined = CombinedArtifact(
        batch_id=batch_id,
        file_path=rel_path,
        download_path=download_path,
        output_format=conversion.output_format,
        conversion_method=conversion.method,
        size=len(conversion.data),
        sha256=digest,
    )
    for subject, number, outcome, cert in rows:
        result.successes.append(
            GenerationResult(
                certificate_id=cert.id,
                certificate_number=number,
                subject_id=subject.id,
                subject_name=subject.name,
                file_path=rel_path,
                size=cert.file_size,
                sha256=digest,
                output_format=conversion.output_format,
                render_method=outcome.method,
                conversion_method=conversion.method,
                download_path=download_path,
                issued_at=cert.issued_at,
                warnings=list(outcome.warnings),
            )
        )


def generate_batch(
    template_id: int,
    subject_ids: Sequence[int],
    overrides: Optional[Mapping[str, object]] = None,
    generated_by: Optional[int] = None,
    combine: bool = False,
    max_workers: Optional[int] = None,
    cancel_event: Optional[threading.Event] = None,
) -> BatchResult:
    """Generate certificates for many subjects; per-subject failures never raise."""
    subject_ids = list(subject_ids)
    limit = int(current_app.config.get("CERT_BATCH_MAX", 100))
    if not subject_ids:
        raise ValueError("At least one subject id is required")
    if len(subject_ids) > limit:
        raise BatchTooLarge(f"Maximum {limit} certificates per batch")
    template = load_template(template_id)
    workers = max_workers or int(current_app.config.get("CERT_BATCH_WORKERS", 1))

    result = BatchResult(requested=len(subject_ids))
    current_app.logger.info(
        "[CERT-BATCH] start template=%s count=%s combine=%s workers=%s",
        template.id,
        len(subject_ids),
        combine,
        workers,
    )
    if combine:
        _combined(result, template, subject_ids, overrides, generated_by, cancel_event)
    else:
        _per_subject(
            result, template, subject_ids, overrides, generated_by, workers, cancel_event
        )
    current_app.logger.info(
        "[CERT-BATCH] done template=%s ok=%s failed=%s cancelled=%s error=%s",
        template.id,
        len(result.successes),
        len(result.failures),
        len(result.cancelled),
        result.error,
    )
    return result
