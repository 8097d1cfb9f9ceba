"""
chiprelay CLI.

Commands:
    chiprelay serve          Run the relay HTTP API
    chiprelay nonce          Read an authorization nonce
    chiprelay owner          Resolve a chip to its registered wallet
    chiprelay requests ...   List, show, complete, remind and sweep payment requests
    chiprelay circle ...     Create, list and (de)activate circles
    chiprelay split-preview  Show how an amount splits across a circle
    chiprelay audit          View the audit trail
"""

from __future__ import annotations

import json
import logging
import sys
import time
from typing import Optional

import click

from . import __version__
from .audit import AuditTrail
from .config import RelayConfig
from .errors import ChipRelayError
from .money import USDC_DECIMALS, format_units, parse_units, split_share
from .service import RelayService


def _config() -> RelayConfig:
    try:
        return RelayConfig.from_env()
    except ChipRelayError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)


def _service(with_audit: bool = True) -> RelayService:
    config = _config()
    audit = AuditTrail(config.audit_path) if with_audit else None
    return RelayService(config, audit=audit)


def _fail(message: str) -> None:
    click.echo(f"❌ {message}", err=True)
    sys.exit(1)


def _ts(value: Optional[int]) -> str:
    if not value:
        return "-"
    return time.strftime("%Y-%m-%d %H:%M", time.localtime(value))


@click.group()
@click.version_option(version=__version__)
def main():
    """chiprelay: gasless NFC-chip payment relay."""


@main.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", type=int, default=8000, show_default=True)
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"]),
    default="info",
    show_default=True,
)
def serve(host: str, port: int, log_level: str):
    """Run the relay HTTP API."""
    import uvicorn

    from .server import create_app

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    service = _service()
    if not service.config.relayer_private_key:
        click.echo("⚠️  RELAYER_PRIVATE_KEY not set: relay endpoints will answer 500", err=True)
    uvicorn.run(create_app(service), host=host, port=port, log_level=log_level)


@main.command()
@click.argument("contract")
@click.argument("account")
def nonce(contract: str, account: str):
    """Read nonces(ACCOUNT) on CONTRACT."""
    try:
        value = _service(with_audit=False).current_nonce(contract, account)
    except ChipRelayError as e:
        _fail(f"Failed to read nonce: {e}")
    click.echo(str(value))


@main.command()
@click.argument("chip")
@click.option("--registry", default=None, help="Registry address (default: CHIPRELAY_REGISTRY_ADDRESS)")
def owner(chip: str, registry: Optional[str]):
    """Resolve CHIP to the wallet that registered it."""
    try:
        wallet = _service(with_audit=False).owner_of(chip, registry)
    except ChipRelayError as e:
        _fail(f"Failed to resolve chip: {e}")
    if int(wallet, 16) == 0:
        click.echo(f"❌ Chip not registered: {chip}")
        sys.exit(1)
    click.echo(f"✅ {chip} → {wallet}")


# ── Payment requests ──────────────────────────────────────────────

@main.group("requests")
def requests_group():
    """Payment request lifecycle."""


@requests_group.command("list")
@click.option("--wallet", required=True, help="Wallet address")
@click.option("--type", "direction", type=click.Choice(["incoming", "outgoing"]), default="incoming")
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON")
def requests_list(wallet: str, direction: str, as_json: bool):
    """List requests where WALLET pays (incoming) or is paid (outgoing)."""
    try:
        rows = _service().requests.list_for_wallet(wallet, direction)
    except ChipRelayError as e:
        _fail(str(e))
    if as_json:
        click.echo(json.dumps([r.to_dict() for r in rows], indent=2))
        return
    if not rows:
        click.echo("No payment requests found.")
        return
    for r in rows:
        click.echo(f"{r.id}  {r.status:<9} {r.amount} USDC  {r.payer} → {r.recipient}")
        if r.memo:
            click.echo(f"    {r.memo}")
        click.echo(f"    expires {_ts(r.expires_at)}")


@requests_group.command("show")
@click.argument("request_id")
def requests_show(request_id: str):
    """Show one request (applies expiry)."""
    try:
        request = _service().requests.require(request_id)
    except ChipRelayError as e:
        _fail(str(e))
    click.echo(json.dumps(request.to_dict(), indent=2))


@requests_group.command("complete")
@click.argument("request_id")
@click.option("--tx-hash", required=True, help="Settling transaction hash")
def requests_complete(request_id: str, tx_hash: str):
    """Mark a pending request completed."""
    try:
        _service().requests.complete(request_id, tx_hash)
    except ChipRelayError as e:
        _fail(str(e))
    click.echo(f"✅ Request {request_id} completed")


@requests_group.command("remind")
@click.argument("request_id")
def requests_remind(request_id: str):
    """Re-send the notification for a pending request."""
    try:
        sent = _service().requests.remind(request_id)
    except ChipRelayError as e:
        _fail(str(e))
    click.echo(f"✅ Reminder {'sent' if sent else 'queued (no notifier configured)'}")


@requests_group.command("sweep")
def requests_sweep():
    """Expire every pending request past its deadline."""
    count = _service().requests.sweep_expired()
    click.echo(f"✅ Expired {count} request(s)")


# ── Circles ───────────────────────────────────────────────────────

@main.group("circle")
def circle_group():
    """Circle management."""


@circle_group.command("create")
@click.option("--name", required=True)
@click.option("--creator", required=True, help="Creator wallet address")
@click.option("--member", "members", multiple=True, required=True, help="Member wallet (repeatable)")
@click.option("--inactive", is_flag=True, help="Create without activating")
def circle_create(name: str, creator: str, members: tuple[str, ...], inactive: bool):
    """Create a circle; by default it becomes the creator's active circle."""
    try:
        circle = _service(with_audit=False).circles.create(name, creator, members, activate=not inactive)
    except ChipRelayError as e:
        _fail(f"Failed to create circle: {e}")
    click.echo(f"✅ Circle created: {circle.id}")
    click.echo(f"   Name:    {circle.name}")
    click.echo(f"   Members: {len(circle.members)}")
    click.echo(f"   Active:  {circle.is_active}")


@circle_group.command("list")
@click.option("--creator", required=True, help="Creator wallet address")
def circle_list(creator: str):
    try:
        circles = _service(with_audit=False).circles.list_by_creator(creator)
    except ChipRelayError as e:
        _fail(str(e))
    if not circles:
        click.echo("No circles found.")
        return
    for c in circles:
        marker = "●" if c.is_active else "○"
        click.echo(f"{marker} {c.id}  {c.name}  ({len(c.members)} members)")


@circle_group.command("activate")
@click.argument("circle_id")
@click.option("--creator", required=True, help="Creator wallet address")
@click.option("--off", is_flag=True, help="Deactivate instead")
def circle_activate(circle_id: str, creator: str, off: bool):
    """Make CIRCLE_ID the creator's active circle (or deactivate it with --off)."""
    try:
        circle = _service(with_audit=False).circles.set_active(circle_id, creator, not off)
    except ChipRelayError as e:
        _fail(str(e))
    click.echo(f"✅ {circle.name} is now {'active' if circle.is_active else 'inactive'}")


@main.command("split-preview")
@click.option("--total", required=True, help="Total amount in USDC, e.g. 90 or 10.5")
@click.option("--members", type=int, required=True, help="Circle members, excluding the payer")
def split_preview(total: str, members: int):
    """Show how TOTAL splits across the payer plus MEMBERS."""
    try:
        total_units = parse_units(total, USDC_DECIMALS)
        share = split_share(total_units, members)
    except ValueError as e:
        _fail(str(e))
    remainder = total_units - share * (members + 1)
    click.echo(f"Total:     {format_units(total_units)} USDC")
    click.echo(f"Split:     {members + 1} ways")
    click.echo(f"Each:      {format_units(share)} USDC")
    click.echo(f"Requested: {format_units(share * members)} USDC from members")
    click.echo(f"Remainder: {format_units(remainder)} USDC (stays with payer)")


@main.command()
@click.option("--wallet", default=None, help="Filter by wallet")
@click.option("--limit", type=int, default=20)
@click.option("--verify", "verify_only", is_flag=True, help="Only check the hash chain")
def audit(wallet: Optional[str], limit: int, verify_only: bool):
    """View the audit trail."""
    trail = AuditTrail(_config().audit_path)
    try:
        if verify_only:
            click.echo(f"✅ Audit chain intact ({trail.verify()} events)")
            return
        events = trail.read_events(wallet=wallet, limit=limit)
    except ChipRelayError as e:
        _fail(str(e))

    if not events:
        click.echo("No audit events found.")
        return

    for event in events:
        ts = time.strftime("%H:%M:%S", time.localtime(event.timestamp))
        status = "✅" if event.success else "❌"
        amount = f" {event.amount}" if event.amount else ""
        tx = f" {event.tx_hash[:12]}…" if event.tx_hash else ""
        reason = f" ({event.reason})" if event.reason and not event.success else ""
        click.echo(f"  {ts} {status} {event.event_type}{amount}{tx}{reason}")


if __name__ == "__main__":
    main()
