import io

import pytest

from conftest import build_docx
from coursecert.app import db
from coursecert.models import Certificate, CertificateTemplate


def login(client, user_id):
    with client.session_transaction() as sess:
        sess["user_id"] = user_id


def _upload(client, data, filename="sertifikat.docx", **form):
    payload = {"file": (io.BytesIO(data), filename)}
    payload.update(form)
    return client.post(
        "/certificates/templates", data=payload, content_type="multipart/form-data"
    )


@pytest.mark.smoke
def test_upload_and_list_templates(app, client):
    resp = _upload(client, build_docx(), name="Kelas Kantor")
    assert resp.status_code == 201
    body = resp.get_json()
    assert body["ok"] is True
    assert body["template"]["name"] == "Kelas Kantor"
    assert "subject_name" in body["template"]["placeholders"]

    listed = client.get("/certificates/templates").get_json()
    assert [t["name"] for t in listed["templates"]] == ["Kelas Kantor"]
    tmpl = db.session.get(CertificateTemplate, body["template"]["id"])
    assert tmpl.original_filename == "sertifikat.docx"
    assert tmpl.file_size > 0


def test_upload_rejects_invalid_templates(app, client):
    resp = _upload(client, build_docx(["{{subject_name}}"]))
    assert resp.status_code == 422
    report = resp.get_json()["report"]
    assert report["is_valid"] is False
    assert _upload(client, b"%PDF-1.4", filename="cert.pdf").status_code == 400
    assert client.post("/certificates/templates").status_code == 400
    assert db.session.query(CertificateTemplate).count() == 0


def test_validate_endpoint_reports_without_saving(app, client):
    resp = client.post(
        "/certificates/templates/validate",
        data={"file": (io.BytesIO(build_docx(["Halo {{grade}}"])), "x.docx")},
        content_type="multipart/form-data",
    )
    body = resp.get_json()
    assert resp.status_code == 200
    assert body["ok"] is False
    assert any("Missing required" in e for e in body["errors"])
    assert db.session.query(CertificateTemplate).count() == 0


def test_generate_show_and_download(app, client, seed):
    login(client, 7)
    resp = client.post(
        "/certificates/generate",
        json={"template_id": seed["template"].id, "subject_id": seed["students"][0].id},
    )
    assert resp.status_code == 201
    cert_json = resp.get_json()["certificate"]
    assert cert_json["render_method"] == "structural"
    cert = db.session.get(Certificate, cert_json["certificate_id"])
    assert cert.generated_by == 7

    shown = client.get(f"/certificates/{cert.id}").get_json()["certificate"]
    assert shown["certificate_number"] == cert_json["certificate_number"]

    download = client.get(cert_json["download_path"])
    assert download.status_code == 200
    assert download.mimetype == "application/pdf"
    assert download.data.startswith(b"%PDF")


def test_generate_errors_map_to_status_codes(app, client, seed):
    resp = client.post(
        "/certificates/generate",
        json={"template_id": seed["template"].id, "subject_id": 999},
    )
    assert resp.status_code == 404
    assert resp.get_json()["ok"] is False
    assert client.post("/certificates/generate", json={}).status_code == 400
    seed["template"].is_active = False
    db.session.commit()
    resp = client.post(
        "/certificates/generate",
        json={"template_id": seed["template"].id, "subject_id": seed["students"][0].id},
    )
    assert resp.status_code == 400
    assert client.get("/certificates/12345").status_code == 404
    assert client.get("/certificates/download/nothing.pdf").status_code == 404


def test_batch_endpoint(app, client, seed):
    ids = [s.id for s in seed["students"]] + [999]
    resp = client.post(
        "/certificates/batch",
        json={"template_id": seed["template"].id, "subject_ids": ids},
    )
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["success_count"] == 3
    assert body["failure_count"] == 1
    app.config["CERT_BATCH_MAX"] = 2
    resp = client.post(
        "/certificates/batch",
        json={"template_id": seed["template"].id, "subject_ids": ids},
    )
    assert resp.status_code == 400


def test_malformed_ids_are_rejected(app, client, seed):
    resp = client.post(
        "/certificates/generate", json={"template_id": "abc", "subject_id": 1}
    )
    assert resp.status_code == 400
    assert resp.get_json()["ok"] is False
    resp = client.post(
        "/certificates/batch",
        json={"template_id": seed["template"].id, "subject_ids": [1, "x"]},
    )
    assert resp.status_code == 400
    resp = client.post(
        "/certificates/generate",
        json={"template_id": True, "subject_id": seed["students"][0].id},
    )
    assert resp.status_code == 400
    assert db.session.query(Certificate).count() == 0


def _generate(client, seed, index):
    resp = client.post(
        "/certificates/generate",
        json={"template_id": seed["template"].id, "subject_id": seed["students"][index].id},
    )
    assert resp.status_code == 201
    return resp.get_json()["certificate"]


def test_list_recent_and_by_student(app, client, seed):
    first = _generate(client, seed, 0)
    second = _generate(client, seed, 1)
    _generate(client, seed, 0)

    listed = client.get("/certificates").get_json()
    assert listed["pagination"]["total"] == 3
    assert len(listed["certificates"]) == 3
    paged = client.get("/certificates?limit=1&offset=1").get_json()
    assert paged["pagination"] == {"limit": 1, "offset": 1, "total": 3}
    assert len(paged["certificates"]) == 1

    filtered = client.get(f"/certificates?student_id={seed['students'][1].id}").get_json()
    assert [c["certificate_number"] for c in filtered["certificates"]] == [
        second["certificate_number"]
    ]

    recent = client.get("/certificates/generated").get_json()["certificates"]
    assert {c["template_name"] for c in recent} == {"Default"}

    siti = client.get(f"/certificates/students/{seed['students'][0].id}").get_json()
    assert siti["student"]["student_number"] == "S-001"
    assert siti["total"] == 2
    assert first["certificate_number"] in {c["certificate_number"] for c in siti["certificates"]}
    assert client.get("/certificates/students/999").status_code == 404


def test_delete_certificate_removes_row_and_file(app, client, seed, tmp_path):
    cert = _generate(client, seed, 0)
    stored = tmp_path / cert["file_path"]
    assert stored.exists()
    resp = client.delete(f"/certificates/{cert['certificate_id']}")
    assert resp.status_code == 200
    assert resp.get_json()["file_removed"] is True
    assert not stored.exists()
    assert db.session.get(Certificate, cert["certificate_id"]) is None
    assert client.delete(f"/certificates/{cert['certificate_id']}").status_code == 404


def test_delete_keeps_shared_combined_file(app, client, seed, tmp_path):
    ids = [s.id for s in seed["students"]]
    body = client.post(
        "/certificates/batch",
        json={"template_id": seed["template"].id, "subject_ids": ids, "combine": True},
    ).get_json()
    artifact = tmp_path / body["combined"]["file_path"]
    rows = db.session.query(Certificate).order_by(Certificate.id).all()
    assert len(rows) == 3
    resp = client.delete(f"/certificates/{rows[0].id}")
    assert resp.get_json()["file_removed"] is False
    assert artifact.exists()
    assert db.session.query(Certificate).count() == 2


def test_update_and_deactivate_template(app, client, seed):
    template_id = seed["template"].id
    resp = client.put(
        f"/certificates/templates/{template_id}",
        json={"name": "Sertifikat Kantor", "course_id": seed["course"].id, "is_active": False},
    )
    assert resp.status_code == 200
    body = resp.get_json()["template"]
    assert body["name"] == "Sertifikat Kantor"
    assert body["course_id"] == seed["course"].id
    assert body["is_active"] is False

    resp = client.post(
        "/certificates/generate",
        json={"template_id": template_id, "subject_id": seed["students"][0].id},
    )
    assert resp.status_code == 400

    resp = client.patch(
        f"/certificates/templates/{template_id}", data={"is_active": "true", "course_id": ""}
    )
    assert resp.status_code == 200
    assert resp.get_json()["template"]["is_active"] is True
    assert resp.get_json()["template"]["course_id"] is None

    assert client.put(
        f"/certificates/templates/{template_id}", json={"course_id": 999}
    ).status_code == 400
    assert client.put(
        f"/certificates/templates/{template_id}", json={"is_active": "maybe"}
    ).status_code == 400
    assert client.put("/certificates/templates/999", json={"name": "x"}).status_code == 404
    resp = client.put(
        f"/certificates/templates/{template_id}",
        data={"file": (io.BytesIO(build_docx()), "new.docx")},
        content_type="multipart/form-data",
    )
    assert resp.status_code == 400


def test_show_and_delete_template(app, client, seed):
    shown = client.get(f"/certificates/templates/{seed['template'].id}").get_json()
    assert shown["report"]["is_valid"] is True
    assert shown["certificate_count"] == 0

    _generate(client, seed, 0)
    resp = client.delete(f"/certificates/templates/{seed['template'].id}")
    assert resp.status_code == 409

    spare = _upload(client, build_docx(), name="Cadangan").get_json()["template"]
    assert client.delete(f"/certificates/templates/{spare['id']}").status_code == 200
    assert db.session.get(CertificateTemplate, spare["id"]) is None
    assert client.get(f"/certificates/templates/{spare['id']}").status_code == 404
