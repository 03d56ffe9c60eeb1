from __future__ import annotations

from .app import db


class Course(db.Model):
    __tablename__ = "courses"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    meetings = db.Column(db.Integer, nullable=False, default=0)
    minutes_per_meeting = db.Column(db.Integer, nullable=False, default=90)
    created_at = db.Column(db.DateTime, server_default=db.func.now())


class Teacher(db.Model):
    __tablename__ = "teachers"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    created_at = db.Column(db.DateTime, server_default=db.func.now())


class Student(db.Model):
    __tablename__ = "students"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    student_number = db.Column(db.String(64), nullable=False, unique=True)
    course_id = db.Column(
        db.Integer, db.ForeignKey("courses.id", ondelete="SET NULL")
    )
    teacher_id = db.Column(
        db.Integer, db.ForeignKey("teachers.id", ondelete="SET NULL")
    )
    photo_ref = db.Column(db.String(1024))
    created_at = db.Column(db.DateTime, server_default=db.func.now())

    course = db.relationship("Course")
    teacher = db.relationship("Teacher")


class CertificateTemplate(db.Model):
    __tablename__ = "certificate_templates"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    original_filename = db.Column(db.String(255))
    content = db.Column(db.LargeBinary, nullable=False)
    course_id = db.Column(
        db.Integer, db.ForeignKey("courses.id", ondelete="SET NULL")
    )
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    placeholders = db.Column(db.JSON, nullable=False, default=list)
    file_size = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime, server_default=db.func.now(), onupdate=db.func.now()
    )

    course = db.relationship("Course")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "original_filename": self.original_filename,
            "course_id": self.course_id,
            "is_active": bool(self.is_active),
            "placeholders": list(self.placeholders or []),
            "file_size": self.file_size,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class Certificate(db.Model):
    """One issued certificate; rows are inserted once and never updated."""

    __tablename__ = "certificates"

    id = db.Column(db.Integer, primary_key=True)
    certificate_number = db.Column(db.String(64), nullable=False)
    template_id = db.Column(
        db.Integer, db.ForeignKey("certificate_templates.id", ondelete="SET NULL")
    )
    student_id = db.Column(
        db.Integer, db.ForeignKey("students.id", ondelete="SET NULL")
    )
    teacher_id = db.Column(
        db.Integer, db.ForeignKey("teachers.id", ondelete="SET NULL")
    )
    course_id = db.Column(
        db.Integer, db.ForeignKey("courses.id", ondelete="SET NULL")
    )
    student_name = db.Column(db.String(255))
    course_name = db.Column(db.String(255))
    teacher_name = db.Column(db.String(255))
    course_duration = db.Column(db.String(64))
    file_path = db.Column(db.String(512), nullable=False)
    file_size = db.Column(db.Integer, nullable=False)
    sha256 = db.Column(db.String(64), nullable=False)
    output_format = db.Column(db.String(8), nullable=False)
    render_method = db.Column(db.String(32), nullable=False)
    conversion_method = db.Column(db.String(32), nullable=False)
    download_url = db.Column(db.String(512))
    warnings = db.Column(db.JSON, nullable=False, default=list)
    batch_id = db.Column(db.String(64))
    generated_by = db.Column(db.Integer)
    issued_at = db.Column(db.DateTime, server_default=db.func.now())
    __table_args__ = (
        db.UniqueConstraint("certificate_number", name="uix_certificate_number"),
        db.Index("ix_certificates_batch_id", "batch_id"),
    )

    template = db.relationship("CertificateTemplate")
    student = db.relationship("Student")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "certificate_number": self.certificate_number,
            "template_id": self.template_id,
            "student_id": self.student_id,
            "student_name": self.student_name,
            "course_name": self.course_name,
            "teacher_name": self.teacher_name,
            "course_duration": self.course_duration,
            "file_size": self.file_size,
            "sha256": self.sha256,
            "output_format": self.output_format,
            "render_method": self.render_method,
            "conversion_method": self.conversion_method,
            "download_url": self.download_url,
            "warnings": list(self.warnings or []),
            "batch_id": self.batch_id,
            "issued_at": self.issued_at.isoformat() if self.issued_at else None,
        }
