"""Merchant offline queue and sync loop."""
import base64
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from relifex.client import ApiError, RelifexClient
from relifex.offline import OfflineQueue, OfflineSyncer, make_qr_signature

T0 = datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakeClient:
    """Stands in for RelifexClient; fails for wallets listed in ``failing``."""

    def __init__(self, failing=()):
        self.failing = set(failing)
        self.submitted = []

    def submit_offline_transaction(self, payload):
        self.submitted.append(payload)
        if payload["citizen_wallet"] in self.failing:
            raise ApiError("server unavailable", status=503)
        return {"transaction": {"id": len(self.submitted)}}


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def queue(tmp_path, clock):
    return OfflineQueue(tmp_path / "queue.json", clock=clock)


def test_qr_signature_is_truncated_base64():
    sig = make_qr_signature("RLXABC", 250.0, T0)
    assert len(sig) == 32
    ms = int(T0.timestamp() * 1000)
    assert base64.b64encode(f"RLXABC:250:{ms}".encode()).decode().startswith(sig)


def test_add_persists_across_instances(tmp_path, queue, clock):
    tx = queue.add("RLXCIT1", "RLXMER1", 120.0, purpose="Rice", citizen_name="Asha")
    assert tx.id.startswith(f"offline_{int(T0.timestamp() * 1000)}_")
    assert not tx.synced and tx.sync_attempts == 0

    reopened = OfflineQueue(tmp_path / "queue.json", clock=clock)
    assert [t.id for t in reopened.pending()] == [tx.id]
    assert reopened.items[0].citizen_name == "Asha"


def test_add_rejects_non_positive_amount(queue):
    with pytest.raises(ValueError):
        queue.add("RLXCIT1", "RLXMER1", 0)


def test_corrupt_file_is_treated_as_empty(tmp_path):
    path = tmp_path / "queue.json"
    path.write_text("{not json", encoding="utf-8")
    assert OfflineQueue(path).items == []


def test_sync_marks_successes_and_counts_failures_in_order(queue):
    a = queue.add("RLXCIT1", "RLXMER1", 100.0)
    b = queue.add("RLXBAD", "RLXMER1", 50.0)
    c = queue.add("RLXCIT2", "RLXMER1", 75.0)
    client = FakeClient(failing={"RLXBAD"})

    report = OfflineSyncer(queue, client).sync()

    assert [p["client_ref"] for p in client.submitted] == [a.id, b.id, c.id]
    assert (report.synced, report.failed) == (2, 1)
    assert [t.id for t in queue.pending()] == [b.id]
    assert queue.pending()[0].sync_attempts == 1
    assert report.errors and b.id in report.errors[0]


def test_failed_entry_is_retried_on_next_pass(queue):
    tx = queue.add("RLXBAD", "RLXMER1", 50.0)
    client = FakeClient(failing={"RLXBAD"})
    syncer = OfflineSyncer(queue, client)
    syncer.sync()
    client.failing.clear()

    report = syncer.sync()

    assert report.synced == 1
    assert queue.pending_count() == 0
    assert queue.items[0].id == tx.id and queue.items[0].sync_attempts == 1


def test_sync_skips_when_already_running(queue):
    queue.add("RLXCIT1", "RLXMER1", 100.0)
    client = FakeClient()
    syncer = OfflineSyncer(queue, client)
    syncer.is_syncing = True

    report = syncer.sync()

    assert report.skipped == "sync already in progress"
    assert client.submitted == []


def test_sync_skips_when_offline_or_empty(queue):
    syncer = OfflineSyncer(queue, FakeClient(), online=False)
    queue.add("RLXCIT1", "RLXMER1", 100.0)
    assert syncer.sync().skipped == "offline"

    empty = OfflineSyncer(OfflineQueue(queue.path.with_name("other.json")), FakeClient())
    assert empty.sync().skipped == "nothing to sync"


def test_unexpected_error_does_not_stop_the_pass(queue):
    class Flaky(FakeClient):
        def submit_offline_transaction(self, payload):
            if payload["citizen_wallet"] == "RLXCIT1":
                self.submitted.append(payload)
                raise RuntimeError("boom")
            return super().submit_offline_transaction(payload)

    first = queue.add("RLXCIT1", "RLXMER1", 100.0)
    second = queue.add("RLXCIT2", "RLXMER1", 50.0)
    client = Flaky()
    syncer = OfflineSyncer(queue, client)

    report = syncer.sync()

    assert len(client.submitted) == 2
    assert report.synced == 1 and report.failed == 1
    assert report.errors[0].startswith(first.id)
    assert {t.id: t.sync_attempts for t in queue.items} == {first.id: 1, second.id: 0}
    assert [t.id for t in queue.pending()] == [first.id]
    assert syncer.is_syncing is False


def test_html_reply_is_counted_as_a_failed_attempt(queue):
    def handler(request):
        return httpx.Response(302, text="<html>Sign in to Wi-Fi</html>", headers={"Location": "http://portal.test"})

    queue.add("RLXCIT1", "RLXMER1", 100.0)
    queue.add("RLXCIT2", "RLXMER1", 50.0)
    client = RelifexClient("http://relief.test/api", transport=httpx.MockTransport(handler))
    report = OfflineSyncer(queue, client).sync()

    assert report.failed == 2 and report.synced == 0
    assert [t.sync_attempts for t in queue.items] == [1, 1]
    assert all(not t.synced for t in queue.items)


def test_coming_back_online_triggers_sync(queue):
    queue.add("RLXCIT1", "RLXMER1", 100.0)
    client = FakeClient()
    syncer = OfflineSyncer(queue, client, online=False)

    assert syncer.set_online(False) is None
    report = syncer.set_online(True)

    assert report is not None and report.synced == 1
    assert syncer.set_online(True) is None


def test_prune_drops_only_old_synced_entries(queue, clock):
    old = queue.add("RLXCIT1", "RLXMER1", 10.0)
    stale_pending = queue.add("RLXCIT2", "RLXMER1", 20.0)
    queue.mark_synced(old.id)
    clock.advance(hours=23)
    recent = queue.add("RLXCIT3", "RLXMER1", 30.0)
    queue.mark_synced(recent.id)

    assert queue.prune() == 0
    clock.advance(hours=2)
    assert queue.prune() == 1
    assert {t.id for t in queue.items} == {stale_pending.id, recent.id}


def test_sync_prunes_after_pass(queue, clock):
    old = queue.add("RLXCIT1", "RLXMER1", 10.0)
    queue.mark_synced(old.id)
    clock.advance(hours=30)
    queue.add("RLXCIT2", "RLXMER1", 20.0)

    report = OfflineSyncer(queue, FakeClient()).sync()

    assert report.synced == 1 and report.pruned == 1
    assert old.id not in {t.id for t in queue.items}


def test_clear_synced(queue):
    a = queue.add("RLXCIT1", "RLXMER1", 10.0)
    queue.add("RLXCIT2", "RLXMER1", 20.0)
    queue.mark_synced(a.id)
    assert queue.clear_synced() == 1
    assert queue.pending_count() == 1 and len(queue.items) == 1


def test_client_posts_payload_with_role_headers(queue):
    seen = {}

    def handler(request: httpx.Request):
        seen["path"] = request.url.path
        seen["role"] = request.headers.get("X-Relifex-Role")
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, json={"transaction": {"id": 7}})

    tx = queue.add("RLXCIT1", "RLXMER1", 100.0)
    with RelifexClient("http://relief.test/api", transport=httpx.MockTransport(handler)) as client:
        out = client.submit_offline_transaction(tx.to_payload())

    assert out == {"transaction": {"id": 7}}
    assert seen["path"] == "/api/offline/transactions"
    assert seen["role"] == "merchant"
    assert seen["body"]["client_ref"] == tx.id
    assert seen["body"]["qr_signature"] == tx.qr_signature


def test_client_turns_error_reply_into_api_error():
    def handler(request):
        return httpx.Response(409, json={"error": "conflict", "message": "Merchant is not active"})

    client = RelifexClient("http://relief.test/api", transport=httpx.MockTransport(handler))
    with pytest.raises(ApiError) as exc:
        client.submit_offline_transaction({})
    assert exc.value.status == 409
    assert str(exc.value) == "Merchant is not active"
    assert client.ping() is False


def test_client_rejects_success_reply_without_json():
    client = RelifexClient(
        "http://relief.test/api",
        transport=httpx.MockTransport(lambda request: httpx.Response(200, text="OK")),
    )
    with pytest.raises(ApiError) as exc:
        client.submit_offline_transaction({})
    assert exc.value.status == 200
    assert client.ping() is False
