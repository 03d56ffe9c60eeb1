from coursecert.app import create_app, db
import json
import os
import time
from collections import Counter
from typing import Iterator

from flask_migrate import Migrate
from flask.cli import FlaskGroup
import click
from flask import current_app
from coursecert.models import Certificate, CertificateTemplate
from coursecert.services.batch import generate_batch
from coursecert.services.certificates import generate_certificate
from coursecert.shared.docx_templates import inspect_template
from coursecert.shared.storage import discard_file, safe_join


migrate = Migrate()

_OUTPUT_SUFFIXES = (".pdf", ".docx")


def create_coursecert_app():
    app = create_app()
    migrate.init_app(app, db)
    return app


cli = FlaskGroup(create_app=create_coursecert_app)


def _echo_report(report) -> None:
    for token in report.tokens:
        flag = "required" if token.required else "optional"
        click.echo(f"  {token.name} ({flag}, {token.syntax})")
    for error in report.errors:
        click.echo(f"ERROR: {error}", err=True)
    for warning in report.warnings:
        click.echo(f"WARNING: {warning}")


@cli.command("validate_template")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
def validate_template(path: str):
    """Report the placeholders discovered in a DOCX template."""
    with open(path, "rb") as fh:
        report = inspect_template(fh.read())
    click.echo(f"{path}: {'valid' if report.is_valid else 'invalid'}")
    _echo_report(report)
    if not report.is_valid:
        raise SystemExit(1)


@cli.command("upload_template")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.option("--name", "name", required=True)
@click.option("--course", "course_id", type=int, default=None)
def upload_template(path: str, name: str, course_id: int | None):
    with open(path, "rb") as fh:
        data = fh.read()
    report = inspect_template(data)
    if not report.is_valid:
        _echo_report(report)
        raise SystemExit(1)
    template = CertificateTemplate(
        name=name,
        original_filename=os.path.basename(path),
        content=data,
        course_id=course_id,
        is_active=True,
        placeholders=report.placeholder_names,
        file_size=len(data),
    )
    db.session.add(template)
    db.session.commit()
    click.echo(f"template_id={template.id}")


@cli.command("gen_cert")
@click.option("--template", "template_id", required=True, type=int)
@click.option("--student", "student_id", required=True, type=int)
def gen_cert(template_id: int, student_id: int):
    """Generate a certificate for one student."""
    try:
        result = generate_certificate(template_id, student_id)
    except (LookupError, ValueError, RuntimeError) as exc:
        click.echo(str(exc), err=True)
        raise SystemExit(1)
    click.echo(result.file_path)
    for warning in result.warnings:
        click.echo(f"WARNING: {warning}", err=True)


@cli.command("gen_batch")
@click.option("--template", "template_id", required=True, type=int)
@click.option("--student", "student_ids", required=True, type=int, multiple=True)
@click.option("--combine", is_flag=True, help="Produce a single combined document")
@click.option("--workers", type=int, default=None)
def gen_batch(template_id: int, student_ids: tuple[int, ...], combine: bool, workers: int | None):
    try:
        result = generate_batch(
            template_id, list(student_ids), combine=combine, max_workers=workers
        )
    except (LookupError, ValueError) as exc:
        click.echo(str(exc), err=True)
        raise SystemExit(1)
    summary = result.to_dict()
    click.echo(
        f"requested={result.requested} ok={len(result.successes)} "
        f"failed={len(result.failures)} cancelled={len(result.cancelled)}"
    )
    for failure in summary["failures"]:
        click.echo(json.dumps(failure), err=True)
    if result.combined:
        click.echo(result.combined.file_path)
    if result.error:
        click.echo(f"ERROR: {result.error}", err=True)
        raise SystemExit(1)


def _referenced_paths(site_root: str) -> set[str]:
    rows = db.session.query(Certificate.file_path).distinct()
    resolved = (safe_join(site_root, path) for (path,) in rows)
    return {path for path in resolved if path}


def _stored_outputs(cert_root: str) -> Iterator[str]:
    for root, _dirs, files in os.walk(cert_root):
        for name in sorted(files):
            if name.lower().endswith(_OUTPUT_SUFFIXES):
                yield os.path.realpath(os.path.join(root, name))


@cli.command("purge_orphan_certs")
@click.option(
    "--dry-run", is_flag=True, help="List orphaned certificate files without deleting"
)
@click.option(
    "--grace-minutes",
    type=click.IntRange(min=0),
    default=10,
    show_default=True,
    help="Leave files younger than this; their record may not be committed yet",
)
def purge_orphan_certs(dry_run: bool, grace_minutes: int):
    site_root = current_app.config.get("SITE_ROOT", "/srv")
    cert_root = os.path.join(site_root, "certificates")
    if not os.path.isdir(cert_root):
        click.echo("Certificate directory missing", err=True)
        return

    referenced = _referenced_paths(site_root)
    cutoff = time.time() - grace_minutes * 60
    counts = Counter()
    for path in _stored_outputs(cert_root):
        counts["scanned"] += 1
        if path in referenced:
            counts["kept"] += 1
            continue
        if os.path.getmtime(path) > cutoff:
            counts["recent"] += 1
            continue
        click.echo(os.path.relpath(path, os.path.realpath(site_root)))
        if dry_run:
            counts["orphaned"] += 1
            continue
        try:
            discard_file(path)
        except OSError:
            counts["errors"] += 1
            current_app.logger.exception("[CERT-PURGE] failed to remove %s", path)
        else:
            counts["deleted"] += 1
    # Rows whose artifact is gone can no longer be downloaded.
    counts["dangling"] = sum(1 for path in referenced if not os.path.isfile(path))

    summary = " ".join(
        f"{key}={counts[key]}"
        for key in ("scanned", "deleted", "kept", "recent", "orphaned", "dangling", "errors")
    )
    click.echo(summary)
    current_app.logger.info("[CERT-PURGE] %s%s", "dry-run " if dry_run else "", summary)


if __name__ == "__main__":
    cli()
