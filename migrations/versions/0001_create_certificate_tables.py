"""create course, student and certificate tables

Revision ID: 0001
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa


revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "courses",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("meetings", sa.Integer, nullable=False, server_default="0"),
        sa.Column(
            "minutes_per_meeting", sa.Integer, nullable=False, server_default="90"
        ),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
    )
    op.create_table(
        "teachers",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
    )
    op.create_table(
        "students",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("student_number", sa.String(64), nullable=False, unique=True),
        sa.Column(
            "course_id",
            sa.Integer,
            sa.ForeignKey("courses.id", ondelete="SET NULL"),
        ),
        sa.Column(
            "teacher_id",
            sa.Integer,
            sa.ForeignKey("teachers.id", ondelete="SET NULL"),
        ),
        sa.Column("photo_ref", sa.String(1024)),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
    )
    op.create_table(
        "certificate_templates",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("original_filename", sa.String(255)),
        sa.Column("content", sa.LargeBinary, nullable=False),
        sa.Column(
            "course_id",
            sa.Integer,
            sa.ForeignKey("courses.id", ondelete="SET NULL"),
        ),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("placeholders", sa.JSON, nullable=False),
        sa.Column("file_size", sa.Integer, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, server_default=sa.func.now()),
    )
    op.create_table(
        "certificates",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("certificate_number", sa.String(64), nullable=False),
        sa.Column(
            "template_id",
            sa.Integer,
            sa.ForeignKey("certificate_templates.id", ondelete="SET NULL"),
        ),
        sa.Column(
            "student_id",
            sa.Integer,
            sa.ForeignKey("students.id", ondelete="SET NULL"),
        ),
        sa.Column(
            "teacher_id",
            sa.Integer,
            sa.ForeignKey("teachers.id", ondelete="SET NULL"),
        ),
        sa.Column(
            "course_id",
            sa.Integer,
            sa.ForeignKey("courses.id", ondelete="SET NULL"),
        ),
        sa.Column("student_name", sa.String(255)),
        sa.Column("course_name", sa.String(255)),
        sa.Column("teacher_name", sa.String(255)),
        sa.Column("course_duration", sa.String(64)),
        sa.Column("file_path", sa.String(512), nullable=False),
        sa.Column("file_size", sa.Integer, nullable=False),
        sa.Column("sha256", sa.String(64), nullable=False),
        sa.Column("output_format", sa.String(8), nullable=False),
        sa.Column("render_method", sa.String(32), nullable=False),
        sa.Column("conversion_method", sa.String(32), nullable=False),
        sa.Column("download_url", sa.String(512)),
        sa.Column("warnings", sa.JSON, nullable=False),
        sa.Column("batch_id", sa.String(64)),
        sa.Column("generated_by", sa.Integer),
        sa.Column("issued_at", sa.DateTime, server_default=sa.func.now()),
        sa.UniqueConstraint("certificate_number", name="uix_certificate_number"),
    )
    op.create_index("ix_certificates_batch_id", "certificates", ["batch_id"])


def downgrade() -> None:
    op.drop_index("ix_certificates_batch_id", table_name="certificates")
    op.drop_table("certificates")
    op.drop_table("certificate_templates")
    op.drop_table("students")
    op.drop_table("teachers")
    op.drop_table("courses")
