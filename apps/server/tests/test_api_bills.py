"""Bill upload, AI validation and admin review."""
import io

import httpx
import pytest

from relifex.api import bills as bills_api
from relifex.errors import UpstreamError
from relifex.models import BillValidation

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


def _upload(client, headers, ngo_id, content=PNG, name="bill.png", amount="1200", **form):
    data = {"file": (io.BytesIO(content), name), "ngo_id": str(ngo_id), "amount": amount}
    data.update(form)
    return client.post("/api/bills", data=data, content_type="multipart/form-data", headers=headers)


@pytest.fixture
def ai_on(settings):
    settings.ai_enabled = True
    settings.ai_api_key = "test-key"
    return settings


def test_upload_without_ai_stays_pending(client, ngo_user, make_ngo, settings):
    ngo = make_ngo()
    resp = _upload(client, ngo_user, ngo.id, vendor_name="Metro Wholesale")

    assert resp.status_code == 201
    body = resp.get_json()
    assert body["validation"] is None
    assert body["duplicate_uploads"] == 0
    bill = body["bill"]
    assert bill["ai_validation_status"] == "pending"
    assert bill["mime_type"] == "image/png"
    assert len(bill["hash_sha256"]) == 64
    assert bill["vendor_name"] == "Metro Wholesale"
    assert "/bills/" in bill["file_path"] and bill["file_path"].endswith("__bill.png")

    again = _upload(client, ngo_user, ngo.id)
    assert again.get_json()["duplicate_uploads"] == 1


def test_upload_rejects_non_bill_files(client, ngo_user, make_ngo, settings):
    ngo = make_ngo()
    resp = _upload(client, ngo_user, ngo.id, content=b"just some text", name="notes.txt")
    assert resp.status_code == 400
    assert resp.get_json()["details"]["mime_type"] == "text/plain"
    assert list((settings.storage_dir / "bills").iterdir()) == []


def test_upload_requires_file_and_valid_amount(client, ngo_user, make_ngo):
    ngo = make_ngo()
    resp = client.post("/api/bills", data={"ngo_id": str(ngo.id)}, content_type="multipart/form-data",
                       headers=ngo_user)
    assert resp.status_code == 400
    assert _upload(client, ngo_user, ngo.id, amount="-3").status_code == 400
    assert _upload(client, ngo_user, 999).status_code == 404


def test_upload_runs_ai_validation(client, ngo_user, make_ngo, ai_on, monkeypatch):
    calls = {}

    def fake_validate(cfg, content, mime, claimed_amount, vendor_name=None, client=None):
        calls.update(api_key=cfg.api_key, mime=mime, amount=claimed_amount, size=len(content))
        return {
            "is_valid": False,
            "status": "invalid",
            "confidence_score": 0.9,
            "extracted_amount": 900,
            "extracted_vendor": "Other Shop",
            "extracted_date": "2026-02-11",
            "discrepancies": ["Amount mismatch"],
            "notes": "Claimed amount is 33% higher than the bill.",
        }

    monkeypatch.setattr(bills_api, "validate_bill", fake_validate)
    ngo = make_ngo()
    resp = _upload(client, ngo_user, ngo.id)

    assert calls == {"api_key": "test-key", "mime": "image/png", "amount": 1200.0, "size": len(PNG)}
    bill = resp.get_json()["bill"]
    assert bill["ai_validation_status"] == "invalid"
    assert bill["ai_confidence_score"] == 0.9
    assert bill["bill_date"] == "2026-02-11"
    assert bill["ai_validation_notes"].endswith("Discrepancies:\n- Amount mismatch")
    assert bill["validated_at"] is not None


def test_gateway_failure_leaves_bill_for_review(client, ngo_user, make_ngo, ai_on, monkeypatch):
    def failing(*args, **kwargs):
        raise UpstreamError("Rate limited. Please try again later.", service="ai_gateway", status=429)

    monkeypatch.setattr(bills_api, "validate_bill", failing)
    ngo = make_ngo()
    resp = _upload(client, ngo_user, ngo.id)

    assert resp.status_code == 201
    body = resp.get_json()
    assert body["validation"] == {"error": "Rate limited. Please try again later.", "status": 429}
    assert body["bill"]["ai_validation_status"] == "requires_review"
    assert "Manual review required" in body["bill"]["ai_validation_notes"]


def test_html_from_gateway_leaves_bill_for_review(client, ngo_user, make_ngo, ai_on, monkeypatch):
    real_validate = bills_api.validate_bill

    def behind_portal(*args, **kwargs):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, text="<html>Login</html>"))
        with httpx.Client(transport=transport) as http:
            return real_validate(*args, client=http, **kwargs)

    monkeypatch.setattr(bills_api, "validate_bill", behind_portal)
    ngo = make_ngo()
    resp = _upload(client, ngo_user, ngo.id)

    assert resp.status_code == 201
    body = resp.get_json()
    assert body["validation"]["error"] == "AI gateway returned invalid JSON"
    assert body["bill"]["ai_validation_status"] == "requires_review"
    assert body["bill"]["ai_validation_notes"].startswith("AI validation failed: AI gateway returned invalid JSON")


def test_failed_insert_removes_stored_file(client, ngo_user, make_ngo, settings, monkeypatch):
    def broken_audit(*args, **kwargs):
        raise RuntimeError("audit table missing")

    monkeypatch.setattr(bills_api, "record_audit", broken_audit)
    ngo = make_ngo()
    with pytest.raises(RuntimeError):
        _upload(client, ngo_user, ngo.id)

    assert list((settings.storage_dir / "bills").iterdir()) == []
    assert BillValidation.query.count() == 0


def test_admin_review_and_stats(client, ngo_user, admin, make_ngo, fresh):
    ngo = make_ngo()
    first = _upload(client, ngo_user, ngo.id).get_json()["bill"]["id"]
    second = _upload(client, ngo_user, ngo.id).get_json()["bill"]["id"]

    resp = client.post(f"/api/bills/{first}/approve", json={"notes": "Checked against stock"}, headers=admin)
    assert resp.get_json()["ai_validation_status"] == "valid"
    assert resp.get_json()["ai_validation_notes"] == "Admin Review: Checked against stock"

    assert client.post(f"/api/bills/{second}/reject", json={}, headers=admin).status_code == 400
    resp = client.post(f"/api/bills/{second}/reject", json={"reason": "Blurry"}, headers=admin)
    assert resp.get_json()["ai_validation_notes"] == "Admin Review: REJECTED - Blurry"
    assert fresh(BillValidation, second).ai_validation_status == "invalid"

    stats = client.get("/api/bills/stats").get_json()
    assert stats == {"pending": 0, "valid": 1, "invalid": 1, "requires_review": 0, "total": 2}
    assert [b["id"] for b in client.get("/api/bills?status=valid").get_json()] == [first]


def test_download_and_delete(client, ngo_user, admin, make_ngo, settings):
    ngo = make_ngo()
    bill_id = _upload(client, ngo_user, ngo.id).get_json()["bill"]["id"]

    resp = client.get(f"/api/bills/{bill_id}/file")
    assert resp.status_code == 200
    assert resp.data == PNG
    assert resp.mimetype == "image/png"

    resp = client.delete(f"/api/bills/{bill_id}", headers=admin)
    assert resp.get_json()["file_deleted"] is True
    assert list((settings.storage_dir / "bills").iterdir()) == []
    assert client.get(f"/api/bills/{bill_id}").status_code == 404


def test_revalidate_needs_gateway(client, ngo_user, admin, make_ngo):
    ngo = make_ngo()
    bill_id = _upload(client, ngo_user, ngo.id).get_json()["bill"]["id"]
    resp = client.post(f"/api/bills/{bill_id}/revalidate", headers=admin)
    assert resp.status_code == 503
