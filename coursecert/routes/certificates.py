from __future__ import annotations

import os

from flask import Blueprint, abort, current_app, jsonify, request, send_file, session
from werkzeug.utils import secure_filename

from ..app import db
from ..models import Certificate, CertificateTemplate, Course, Student
from ..services.batch import BatchTooLarge, generate_batch
from ..services.certificates import (
    SubjectNotFound,
    TemplateInactive,
    TemplateNotFound,
    certificate_file_path,
    delete_certificate,
    generate_certificate,
    list_certificates,
)
from ..shared.conversion import CONTENT_TYPES, ConversionError
from ..shared.docx_templates import TemplateInvalid, inspect_template
from ..shared.rendering import RenderError
from ..shared.storage import build_download_path

bp = Blueprint("certificates", __name__, url_prefix="/certificates")

_DOCX_SUFFIX = ".docx"
_LIST_MAX = 200
_RECENT_COUNT = 50


def _error(message: str, status: int, **extra):
    payload = {"ok": False, "error": message}
    payload.update(extra)
    return jsonify(payload), status


def _requester_id():
    return session.get("user_id")


def _as_id(value):
    """Positive integer id from JSON or form input; None when malformed."""
    if isinstance(value, bool):
        return None
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return None
    return parsed if parsed > 0 else None


def _read_upload():
    upload = request.files.get("file")
    if not upload or not upload.filename:
        return None, None
    return secure_filename(upload.filename) or "template.docx", upload.read()


@bp.errorhandler(TemplateNotFound)
@bp.errorhandler(SubjectNotFound)
def _not_found(exc):
    return _error(str(exc), 404)


@bp.errorhandler(TemplateInvalid)
def _invalid_template(exc):
    report = exc.report.to_dict() if exc.report is not None else None
    return _error(str(exc), 422, report=report)


@bp.errorhandler(TemplateInactive)
@bp.errorhandler(BatchTooLarge)
def _bad_request(exc):
    return _error(str(exc), 400)


@bp.errorhandler(RenderError)
@bp.errorhandler(ConversionError)
def _generation_failed(exc):
    current_app.logger.exception("[CERT-FAIL] %s", exc)
    return _error(str(exc), 500)


@bp.get("/templates")
def list_templates():
    query = db.session.query(CertificateTemplate)
    course_id = request.args.get("course_id", type=int)
    if course_id is not None:
        query = query.filter(
            (CertificateTemplate.course_id == course_id)
            | (CertificateTemplate.course_id.is_(None))
        )
    if request.args.get("active") == "1":
        query = query.filter(CertificateTemplate.is_active.is_(True))
    templates = query.order_by(CertificateTemplate.id).all()
    return jsonify({"ok": True, "templates": [t.to_dict() for t in templates]})


@bp.post("/templates/validate")
def validate_template_upload():
    filename, data = _read_upload()
    if data is None:
        return _error("No file uploaded", 400)
    report = inspect_template(data)
    return jsonify({"ok": report.is_valid, "filename": filename, **report.to_dict()})


@bp.post("/templates")
def upload_template():
    filename, data = _read_upload()
    if data is None:
        return _error("No file uploaded", 400)
    if not filename.lower().endswith(_DOCX_SUFFIX):
        return _error("Only .docx templates are accepted", 400)
    name = (request.form.get("name") or "").strip() or os.path.splitext(filename)[0]
    report = inspect_template(data)
    if not report.is_valid:
        return _error("Template is invalid", 422, report=report.to_dict())
    template = CertificateTemplate(
        name=name,
        original_filename=filename,
        content=data,
        course_id=request.form.get("course_id", type=int),
        is_active=True,
        placeholders=report.placeholder_names,
        file_size=len(data),
    )
    db.session.add(template)
    db.session.commit()
    current_app.logger.info(
        "[CERT-TEMPLATE] uploaded id=%s name=%s size=%s", template.id, name, len(data)
    )
    return (
        jsonify({"ok": True, "template": template.to_dict(), "report": report.to_dict()}),
        201,
    )


def _template_or_404(template_id: int) -> CertificateTemplate:
    template = db.session.get(CertificateTemplate, template_id)
    if not template:
        raise TemplateNotFound(f"Template {template_id} not found")
    return template


def _as_flag(value):
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in {"1", "true", "yes", "on"}:
        return True
    if text in {"0", "false", "no", "off"}:
        return False
    return None


@bp.get("/templates/<int:template_id>")
def show_template(template_id: int):
    template = _template_or_404(template_id)
    report = inspect_template(template.content)
    in_use = db.session.query(Certificate).filter_by(template_id=template.id).count()
    return jsonify(
        {
            "ok": True,
            "template": template.to_dict(),
            "report": report.to_dict(),
            "certificate_count": in_use,
        }
    )


@bp.route("/templates/<int:template_id>", methods=["PUT", "PATCH"])
def update_template(template_id: int):
    """Rename, re-scope or (de)activate a template; its content never changes."""
    template = _template_or_404(template_id)
    if request.files:
        return _error("Template content cannot be replaced; upload a new template", 400)
    payload = request.get_json(silent=True)
    if payload is None:
        payload = request.form.to_dict()
    if not isinstance(payload, dict):
        return _error("Expected an object", 400)

    if "name" in payload:
        name = str(payload["name"] or "").strip()
        if not name:
            return _error("name cannot be empty", 400)
        template.name = name
    if "course_id" in payload:
        raw = payload["course_id"]
        if raw in (None, ""):
            template.course_id = None
        else:
            course_id = _as_id(raw)
            if course_id is None or db.session.get(Course, course_id) is None:
                return _error("Unknown course", 400)
            template.course_id = course_id
    if "is_active" in payload:
        flag = _as_flag(payload["is_active"])
        if flag is None:
            return _error("is_active must be true or false", 400)
        template.is_active = flag
    db.session.commit()
    current_app.logger.info(
        "[CERT-TEMPLATE] updated id=%s name=%s course=%s active=%s",
        template.id,
        template.name,
        template.course_id,
        template.is_active,
    )
    return jsonify({"ok": True, "template": template.to_dict()})


@bp.delete("/templates/<int:template_id>")
def delete_template(template_id: int):
    template = _template_or_404(template_id)
    in_use = db.session.query(Certificate).filter_by(template_id=template.id).count()
    if in_use:
        return _error(
            f"Template is used by {in_use} certificate(s); deactivate it instead", 409
        )
    db.session.delete(template)
    db.session.commit()
    current_app.logger.info("[CERT-TEMPLATE] deleted id=%s", template_id)
    return jsonify({"ok": True})


@bp.post("/generate")
def generate_one():
    payload = request.get_json(silent=True) or {}
    template_id = _as_id(payload.get("template_id"))
    subject_id = _as_id(payload.get("subject_id"))
    if template_id is None or subject_id is None:
        return _error("template_id and subject_id must be positive integers", 400)
    overrides = payload.get("overrides") or None
    if overrides is not None and not isinstance(overrides, dict):
        return _error("overrides must be an object", 400)
    result = generate_certificate(
        template_id,
        subject_id,
        overrides=overrides,
        generated_by=_requester_id(),
    )
    return jsonify({"ok": True, "certificate": result.to_dict()}), 201


@bp.post("/batch")
def generate_many():
    payload = request.get_json(silent=True) or {}
    template_id = _as_id(payload.get("template_id"))
    raw_ids = payload.get("subject_ids") or []
    if template_id is None or not isinstance(raw_ids, list) or not raw_ids:
        return _error("template_id and subject_ids are required", 400)
    subject_ids = [_as_id(sid) for sid in raw_ids]
    if None in subject_ids:
        return _error("subject_ids must be positive integers", 400)
    overrides = payload.get("overrides") or None
    if overrides is not None and not isinstance(overrides, dict):
        return _error("overrides must be an object", 400)
    result = generate_batch(
        template_id,
        subject_ids,
        overrides=overrides,
        generated_by=_requester_id(),
        combine=bool(payload.get("combine")),
    )
    status = 200 if not result.error else 207
    return jsonify({"ok": not result.error, **result.to_dict()}), status


@bp.get("")
def list_issued():
    limit = min(max(request.args.get("limit", 50, type=int), 1), _LIST_MAX)
    offset = max(request.args.get("offset", 0, type=int), 0)
    rows, total = list_certificates(
        template_id=request.args.get("template_id", type=int),
        student_id=request.args.get("student_id", type=int),
        batch_id=request.args.get("batch_id"),
        limit=limit,
        offset=offset,
    )
    return jsonify(
        {
            "ok": True,
            "certificates": [cert.to_dict() for cert in rows],
            "pagination": {"limit": limit, "offset": offset, "total": total},
        }
    )


@bp.get("/generated")
def recent():
    rows, _ = list_certificates(limit=_RECENT_COUNT)
    certificates = []
    for cert in rows:
        item = cert.to_dict()
        item["template_name"] = cert.template.name if cert.template else None
        certificates.append(item)
    return jsonify({"ok": True, "certificates": certificates})


@bp.get("/students/<int:student_id>")
def by_student(student_id: int):
    student = db.session.get(Student, student_id)
    if not student:
        return _error("Student not found", 404)
    rows, total = list_certificates(student_id=student_id, limit=_LIST_MAX)
    return jsonify(
        {
            "ok": True,
            "student": {"id": student.id, "name": student.name, "student_number": student.student_number},
            "certificates": [cert.to_dict() for cert in rows],
            "total": total,
        }
    )


@bp.get("/<int:cert_id>")
def show(cert_id: int):
    cert = db.session.get(Certificate, cert_id)
    if not cert:
        return _error("Certificate not found", 404)
    return jsonify({"ok": True, "certificate": cert.to_dict()})


@bp.delete("/<int:cert_id>")
def delete(cert_id: int):
    cert = db.session.get(Certificate, cert_id)
    if not cert:
        return _error("Certificate not found", 404)
    file_removed = delete_certificate(cert)
    return jsonify({"ok": True, "file_removed": file_removed})


@bp.get("/download/<path:filename>")
def download(filename: str):
    cert = (
        db.session.query(Certificate)
        .filter(Certificate.download_url == build_download_path(filename))
        .order_by(Certificate.id)
        .first()
    )
    if not cert:
        abort(404)
    path = certificate_file_path(cert)
    if not path:
        current_app.logger.warning(
            "[CERT] download missing file number=%s path=%s",
            cert.certificate_number,
            cert.file_path,
        )
        abort(404)
    return send_file(
        path,
        mimetype=CONTENT_TYPES.get(cert.output_format, "application/octet-stream"),
        as_attachment=True,
        download_name=filename,
    )
