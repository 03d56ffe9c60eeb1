import io
import threading

import pytest
from PyPDF2 import PdfReader
from sqlalchemy.exc import OperationalError

from conftest import seed_records
from coursecert.app import create_app, db
from coursecert.models import Certificate, Student
from coursecert.services import batch as batch_service
from coursecert.services.batch import BatchTooLarge, generate_batch
from coursecert.services.certificates import TemplateNotFound
from coursecert.shared import converters


@pytest.fixture
def five_ids(seed):
    extra = Student(
        name="Dewi", student_number="S-004", course_id=seed["course"].id
    )
    db.session.add(extra)
    db.session.commit()
    ids = [s.id for s in seed["students"]] + [extra.id]
    return ids[:2] + [999] + ids[2:]


@pytest.mark.smoke
def test_batch_isolates_failures(app, seed, five_ids):
    result = generate_batch(seed["template"].id, five_ids)
    assert result.requested == 5
    assert len(result.successes) == 4
    assert len(result.failures) == 1
    failure = result.failures[0]
    assert failure.subject_id == 999
    assert failure.subject_name is None
    assert "not found" in failure.reason
    assert result.error is None
    assert [r.subject_id for r in result.successes] == [i for i in five_ids if i != 999]
    assert db.session.query(Certificate).count() == 4
    numbers = {r.certificate_number for r in result.successes}
    assert len(numbers) == 4


def test_batch_summary_dict(app, seed, five_ids):
    summary = generate_batch(seed["template"].id, five_ids).to_dict()
    assert summary["success_count"] == 4
    assert summary["failure_count"] == 1
    assert summary["failures"][0]["subject_id"] == 999
    assert summary["combined"] is None


def test_combined_batch_produces_one_artifact(app, seed, tmp_path):
    ids = [s.id for s in seed["students"]] + [999]
    result = generate_batch(seed["template"].id, ids, combine=True)
    assert result.error is None
    assert len(result.successes) == 3
    assert [f.subject_id for f in result.failures] == [999]
    combined = result.combined
    assert combined is not None
    assert combined.batch_id.startswith("BATCH-")
    assert combined.output_format == "pdf"
    data = (tmp_path / combined.file_path).read_bytes()
    assert len(PdfReader(io.BytesIO(data)).pages) == 3
    rows = db.session.query(Certificate).filter_by(batch_id=combined.batch_id).all()
    assert len(rows) == 3
    assert {row.file_path for row in rows} == {combined.file_path}
    assert len({row.certificate_number for row in rows}) == 3


def test_combined_conversion_failure_is_a_batch_error(app, seed, monkeypatch):
    monkeypatch.setattr(converters.shutil, "which", lambda name: None)
    app.config["CERT_CONVERSION_STRATEGIES"] = ("libreoffice", "weasyprint")
    ids = [s.id for s in seed["students"]]
    result = generate_batch(seed["template"].id, ids, combine=True)
    assert result.combined is None
    assert result.successes == []
    assert "No conversion strategy" in result.error
    assert db.session.query(Certificate).count() == 0


def test_cancellation_stops_new_jobs(app, seed, monkeypatch):
    cancel = threading.Event()
    original = batch_service.generate_certificate

    def generate_then_cancel(*args, **kwargs):
        outcome = original(*args, **kwargs)
        cancel.set()
        return outcome

    monkeypatch.setattr(batch_service, "generate_certificate", generate_then_cancel)
    ids = [s.id for s in seed["students"]]
    result = generate_batch(seed["template"].id, ids, cancel_event=cancel)
    assert len(result.successes) == 1
    assert result.cancelled == ids[1:]
    assert result.failures == []


def test_batch_level_errors_raise_before_any_job(app, seed):
    ids = [s.id for s in seed["students"]]
    with pytest.raises(TemplateNotFound):
        generate_batch(999, ids)
    app.config["CERT_BATCH_MAX"] = 2
    with pytest.raises(BatchTooLarge):
        generate_batch(seed["template"].id, ids)
    with pytest.raises(ValueError):
        generate_batch(seed["template"].id, [])
    assert db.session.query(Certificate).count() == 0


def test_combined_insert_failure_removes_artifact(app, seed, tmp_path, monkeypatch):
    def locked(**kwargs):
        raise OperationalError("INSERT INTO certificates", {}, Exception("database is locked"))

    monkeypatch.setattr(batch_service, "record_certificate", locked)
    ids = [s.id for s in seed["students"]]
    result = generate_batch(seed["template"].id, ids, combine=True)
    assert result.combined is None
    assert "database is locked" in result.error
    assert list((tmp_path / "certificates").rglob("*.pdf")) == []
    assert db.session.query(Certificate).count() == 0


@pytest.fixture
def pooled_app(tmp_path):
    application = create_app(
        {
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'certs.sqlite'}",
            "SITE_ROOT": str(tmp_path),
            "CERT_CONVERSION_STRATEGIES": ("reportlab", "passthrough"),
            "CERT_CONVERSION_TIMEOUT": 30,
            "CERT_ISOLATE_RENDER": False,
        }
    )
    with application.app_context():
        db.create_all()
        yield application
        db.session.remove()
        db.drop_all()


def test_worker_pool_keeps_input_order(pooled_app):
    seeded = seed_records()
    extra = Student(name="Dewi", student_number="S-004", course_id=seeded["course"].id)
    db.session.add(extra)
    db.session.commit()
    ids = [s.id for s in seeded["students"]]
    ids = ids[:2] + [999] + ids[2:] + [extra.id]

    result = generate_batch(seeded["template"].id, ids, max_workers=3)
    assert len(result.successes) == 4
    assert [f.subject_id for f in result.failures] == [999]
    assert [r.subject_id for r in result.successes] == [i for i in ids if i != 999]
    assert result.cancelled == []
    assert db.session.query(Certificate).count() == 4
    assert len({r.certificate_number for r in result.successes}) == 4


def test_worker_pool_skips_jobs_after_cancel(pooled_app):
    seeded = seed_records()
    ids = [s.id for s in seeded["students"]]
    cancel = threading.Event()
    cancel.set()
    result = generate_batch(seeded["template"].id, ids, max_workers=3, cancel_event=cancel)
    assert result.cancelled == ids
    assert result.successes == []
    assert result.failures == []
    assert db.session.query(Certificate).count() == 0
