"""Flask CLI commands for the merchant offline queue."""
from relifex import cli
from relifex.client import ApiError
from relifex.offline import OfflineQueue


class StubClient:
    instances = []

    def __init__(self, base_url, role="merchant", user_ref=None, **kwargs):
        self.base_url = base_url
        self.role = role
        self.submitted = []
        self.online = True
        StubClient.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return None

    def ping(self):
        return self.online

    def submit_offline_transaction(self, payload):
        if payload["amount"] > 1000:
            raise ApiError("Amount too large", status=422)
        self.submitted.append(payload)
        return {}


def test_init_db(app):
    result = app.test_cli_runner().invoke(args=["init-db"])
    assert result.exit_code == 0
    assert "Database initialized." in result.output


def test_offline_add_and_status(app, settings):
    runner = app.test_cli_runner()
    result = runner.invoke(args=["offline-add", "--citizen", "RLXCIT", "--merchant", "RLXMER", "--amount", "250"])
    assert result.exit_code == 0
    assert "₹250.00" in result.output

    bad = runner.invoke(args=["offline-add", "--citizen", "RLXCIT", "--merchant", "RLXMER", "--amount", "-1"])
    assert bad.exit_code != 0

    status = runner.invoke(args=["offline-status"])
    assert "1 pending of 1" in status.output
    assert len(OfflineQueue(settings.offline_queue_path).pending()) == 1


def test_offline_sync_replays_queue(app, settings, monkeypatch):
    StubClient.instances = []
    monkeypatch.setattr(cli, "RelifexClient", StubClient)
    queue = OfflineQueue(settings.offline_queue_path)
    queue.add("RLXCIT", "RLXMER", 250.0)
    queue.add("RLXCIT", "RLXMER", 5000.0)

    result = app.test_cli_runner().invoke(args=["offline-sync", "--api", "http://relief.test/api"])

    assert result.exit_code == 0
    assert "Synced 1, failed 1" in result.output
    assert StubClient.instances[0].base_url == "http://relief.test/api"
    reloaded = OfflineQueue(settings.offline_queue_path)
    assert [t.amount for t in reloaded.pending()] == [5000.0]
    assert reloaded.pending()[0].sync_attempts == 1


def test_offline_sync_when_api_unreachable(app, settings, monkeypatch):
    class Offline(StubClient):
        def ping(self):
            return False

    monkeypatch.setattr(cli, "RelifexClient", Offline)
    OfflineQueue(settings.offline_queue_path).add("RLXCIT", "RLXMER", 250.0)

    result = app.test_cli_runner().invoke(args=["offline-sync"])

    assert "Skipped: offline (1 pending)" in result.output
