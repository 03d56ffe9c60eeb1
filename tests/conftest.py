import io
import os
import pathlib
import sys
import zipfile

import pytest
from docx import Document
from PIL import Image

PROJECT_ROOT = pathlib.Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from coursecert.app import create_app, db
from coursecert.models import CertificateTemplate, Course, Student, Teacher


FULL_TEMPLATE_LINES = (
    "Nomor: {{certificate_number}}",
    "Diberikan kepada {{subject_name}} ({{subject_id}})",
    "Telah menyelesaikan program {{program_name}} selama {{program_duration}}",
    "Jakarta, {{issuance_date}}",
    "Instruktur: {{issuer_name}}",
    "{{subject_photo}}",
)


def pytest_collection_modifyitems(config, items):
    for item in items:
        if "slow" in item.keywords or "quarantine" in item.keywords:
            continue
        item.add_marker("full")
        if "no_smoke" in item.keywords:
            continue
        item.add_marker("smoke")


def build_docx(lines=FULL_TEMPLATE_LINES, header=None, title="SERTIFIKAT", footer=None) -> bytes:
    doc = Document()
    if title:
        heading = doc.add_paragraph()
        heading.add_run(title).bold = True
    for line in lines:
        doc.add_paragraph(line)
    if header:
        doc.sections[0].header.paragraphs[0].text = header
    if footer:
        doc.sections[0].footer.paragraphs[0].text = footer
    out = io.BytesIO()
    doc.save(out)
    return out.getvalue()


def build_raw_xml_docx(lines) -> bytes:
    """Archive holding only ``word/document.xml``; python-docx cannot open it."""
    body = "".join(
        f"<w:p><w:r><w:t>{line}</w:t></w:r></w:p>" for line in lines
    )
    xml = (
        '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
        '<w:document xmlns:w="http://schemas.openxmlformats.org/wordprocessingml/2006/main">'
        f"<w:body>{body}</w:body></w:document>"
    )
    out = io.BytesIO()
    with zipfile.ZipFile(out, "w") as archive:
        archive.writestr("word/document.xml", xml)
    return out.getvalue()


def image_bytes(fmt="PNG", size=(400, 300), color=(200, 30, 30)) -> bytes:
    mode = "RGBA" if fmt == "PNG" else "RGB"
    fill = color + (255,) if mode == "RGBA" else color
    img = Image.new(mode, size, fill)
    out = io.BytesIO()
    img.save(out, format=fmt)
    return out.getvalue()


@pytest.fixture
def app(tmp_path):
    os.environ["DATABASE_URL"] = "sqlite:///:memory:"
    application = create_app(
        {
            "TESTING": True,
            "SITE_ROOT": str(tmp_path),
            "CERT_CONVERSION_STRATEGIES": ("reportlab", "passthrough"),
            "CERT_CONVERSION_TIMEOUT": 30,
            "CERT_ISOLATE_RENDER": False,
            "CERT_PHOTO_TIMEOUT": 1,
        }
    )
    with application.app_context():
        db.create_all()
        yield application
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


def seed_records():
    """Course, teacher, three students and an active template."""
    course = Course(name="Office Skills", meetings=8, minutes_per_meeting=90)
    teacher = Teacher(name="Budi Santoso")
    db.session.add_all([course, teacher])
    db.session.flush()
    students = [
        Student(name="Siti", student_number="S-001", course_id=course.id),
        Student(
            name="Andi",
            student_number="S-002",
            course_id=course.id,
            teacher_id=teacher.id,
        ),
        Student(name="Rina", student_number="S-003", course_id=course.id),
    ]
    template = CertificateTemplate(
        name="Default",
        original_filename="default.docx",
        content=build_docx(),
        is_active=True,
        placeholders=[],
        file_size=0,
    )
    db.session.add_all(students + [template])
    db.session.commit()
    return {
        "course": course,
        "teacher": teacher,
        "students": students,
        "template": template,
    }


@pytest.fixture
def seed(app):
    return seed_records()
