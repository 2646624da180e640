"""Flask CLI commands.

    flask --app relifex:create_app init-db
    flask --app relifex:create_app offline-add --citizen RLX... --merchant RLX... --amount 250
    flask --app relifex:create_app offline-sync
    flask --app relifex:create_app offline-status

The ``offline-*`` commands act on a merchant device's local queue file and
talk to the API over HTTP, so they also work against a remote server.
"""

from datetime import timedelta

import click
from flask import current_app

from .client import RelifexClient
from .db import db
from .offline import OfflineQueue, OfflineSyncer


def _queue(path=None) -> OfflineQueue:
    settings = current_app.config["SETTINGS"]
    return OfflineQueue(
        path or settings.offline_queue_path,
        retention=timedelta(hours=settings.offline_retention_hours),
    )


def register_cli(app) -> None:
    @app.cli.command("init-db")
    def init_db():
        """Create all tables."""
        from . import models  # noqa: F401 (register models)

        db.create_all()
        click.echo("Database initialized.")

    @app.cli.command("offline-add")
    @click.option("--citizen", "citizen_wallet", required=True, help="Citizen wallet from the scanned QR.")
    @click.option("--merchant", "merchant_wallet", required=True, help="This merchant's wallet.")
    @click.option("--amount", type=float, required=True)
    @click.option("--purpose", default="")
    @click.option("--name", "citizen_name", default="")
    @click.option("--queue", "queue_path", type=click.Path(dir_okay=False), default=None)
    def offline_add(citizen_wallet, merchant_wallet, amount, purpose, citizen_name, queue_path):
        """Record a payment taken while offline."""
        try:
            tx = _queue(queue_path).add(citizen_wallet, merchant_wallet, amount,
                                        purpose=purpose, citizen_name=citizen_name)
        except ValueError as e:
            raise click.BadParameter(str(e), param_hint="--amount")
        click.echo(f"Queued {tx.id} for ₹{tx.amount:,.2f}")

    @app.cli.command("offline-sync")
    @click.option("--queue", "queue_path", type=click.Path(dir_okay=False), default=None)
    @click.option("--api", "api_base_url", default=None, help="API base URL (defaults to RELIFEX_API_BASE_URL).")
    @click.option("--user", "user_ref", default=None, help="Merchant user id sent as X-Relifex-User.")
    def offline_sync(queue_path, api_base_url, user_ref):
        """Replay queued offline payments against the API (one pass)."""
        settings = current_app.config["SETTINGS"]
        queue = _queue(queue_path)
        with RelifexClient(api_base_url or settings.api_base_url, role="merchant", user_ref=user_ref) as client:
            syncer = OfflineSyncer(queue, client, online=client.ping())
            report = syncer.sync()
        if report.skipped:
            click.echo(f"Skipped: {report.skipped} ({queue.pending_count()} pending)")
            return
        click.echo(f"Synced {report.synced}, failed {report.failed}, pruned {report.pruned}")
        for err in report.errors:
            click.echo(f"  {err}", err=True)

    @app.cli.command("offline-status")
    @click.option("--queue", "queue_path", type=click.Path(dir_okay=False), default=None)
    def offline_status(queue_path):
        """Show queued offline payments."""
        queue = _queue(queue_path)
        for tx in queue.items:
            state = "synced" if tx.synced else f"pending (attempts={tx.sync_attempts})"
            click.echo(f"{tx.id}  {tx.timestamp}  ₹{tx.amount:,.2f}  {tx.citizen_wallet}  {state}")
        click.echo(f"{queue.pending_count()} pending of {len(queue.items)}")
