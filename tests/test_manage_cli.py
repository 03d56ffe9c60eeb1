import os
import time

import pytest

from conftest import build_docx
from coursecert.app import db
from coursecert.models import Certificate, CertificateTemplate
from manage import (
    gen_batch,
    gen_cert,
    purge_orphan_certs,
    upload_template,
    validate_template,
)


@pytest.fixture
def runner(app):
    for command in (validate_template, upload_template, gen_cert, gen_batch, purge_orphan_certs):
        app.cli.add_command(command)
    return app.test_cli_runner()


def test_validate_template_cli(runner, tmp_path):
    good = tmp_path / "good.docx"
    good.write_bytes(build_docx())
    res = runner.invoke(args=["validate_template", str(good)])
    assert res.exit_code == 0
    assert "valid" in res.output
    assert "subject_name (required, double)" in res.output

    bad = tmp_path / "bad.docx"
    bad.write_bytes(build_docx(["{{subject_name}}"]))
    res = runner.invoke(args=["validate_template", str(bad)])
    assert res.exit_code == 1


def test_upload_template_cli(runner, tmp_path):
    path = tmp_path / "kelas.docx"
    path.write_bytes(build_docx())
    res = runner.invoke(args=["upload_template", str(path), "--name", "Kelas"])
    assert res.exit_code == 0
    assert "template_id=" in res.output
    tmpl = db.session.query(CertificateTemplate).one()
    assert tmpl.name == "Kelas"
    assert tmpl.original_filename == "kelas.docx"


def test_gen_cert_cli(runner, seed, tmp_path):
    res = runner.invoke(
        args=[
            "gen_cert",
            "--template",
            str(seed["template"].id),
            "--student",
            str(seed["students"][0].id),
        ]
    )
    assert res.exit_code == 0
    rel_path = res.output.strip().splitlines()[0]
    assert (tmp_path / rel_path).exists()

    res = runner.invoke(
        args=["gen_cert", "--template", str(seed["template"].id), "--student", "999"]
    )
    assert res.exit_code == 1


def test_gen_batch_cli(runner, seed):
    args = ["gen_batch", "--template", str(seed["template"].id)]
    for student in seed["students"]:
        args += ["--student", str(student.id)]
    args += ["--student", "999"]
    res = runner.invoke(args=args)
    assert res.exit_code == 0
    assert "requested=4 ok=3 failed=1 cancelled=0" in res.output


def _issue(runner, seed, index=0):
    res = runner.invoke(
        args=[
            "gen_cert",
            "--template",
            str(seed["template"].id),
            "--student",
            str(seed["students"][index].id),
        ]
    )
    assert res.exit_code == 0
    return res.output.strip().splitlines()[0]


def _backdate(path, minutes=60):
    stamp = time.time() - minutes * 60
    os.utime(path, (stamp, stamp))


def test_purge_orphan_certs_cli(runner, seed, tmp_path):
    kept = tmp_path / _issue(runner, seed)
    orphan = kept.parent / "CERT-000000-ORPHAN.pdf"
    orphan.write_bytes(b"%PDF-1.4")
    _backdate(orphan)

    res = runner.invoke(args=["purge_orphan_certs", "--dry-run"])
    assert "CERT-000000-ORPHAN.pdf" in res.output
    assert "deleted=0 kept=1 recent=0 orphaned=1" in res.output
    assert orphan.exists()
    res = runner.invoke(args=["purge_orphan_certs"])
    assert res.exit_code == 0
    assert "deleted=1 kept=1" in res.output
    assert not orphan.exists()
    assert kept.exists()
    assert db.session.query(Certificate).count() == 1


def test_purge_leaves_fresh_files_and_counts_dangling_rows(runner, seed, tmp_path):
    first = tmp_path / _issue(runner, seed, 0)
    second = tmp_path / _issue(runner, seed, 1)
    fresh = first.parent / "CERT-000000-PENDING.docx"
    fresh.write_bytes(b"PK")
    second.unlink()

    res = runner.invoke(args=["purge_orphan_certs"])
    assert res.exit_code == 0
    assert "deleted=0 kept=1 recent=1 orphaned=0 dangling=1 errors=0" in res.output
    assert fresh.exists()

    res = runner.invoke(args=["purge_orphan_certs", "--grace-minutes", "0"])
    assert "deleted=1" in res.output
    assert not fresh.exists()
    assert first.exists()
