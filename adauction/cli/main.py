"""
adauction CLI - Command line interface for the ad-slot auction server

Main entry point for all CLI commands.
"""

import asyncio
import json
import tempfile
from pathlib import Path

import click

from adauction.utils.logger import setup_logging


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.option("--data-dir", default=None, help="Data directory (overrides DATA_DIR)")
@click.option("--env-file", default=None, help="Path to a .env file")
@click.version_option(version="0.1.0")
@click.pass_context
def cli(ctx, debug, data_dir, env_file):
    """Ad-slot micro-auction server with pay-per-request bidding"""
    import logging
    from adauction.core.config import load_config

    level = logging.DEBUG if debug else logging.INFO
    setup_logging(level=level)

    config = load_config(env_file)
    if data_dir:
        config.data_dir = Path(data_dir).expanduser()

    ctx.ensure_object(dict)
    ctx.obj["config"] = config


# =============================================================================
# Server
# =============================================================================


@cli.command("serve")
@click.option("--host", default="127.0.0.1", help="Bind address")
@click.option("--port", default=8000, type=int, help="HTTP port")
@click.option("--public-url", default=None, help="Base URL advertised in payment requirements")
@click.pass_context
def serve(ctx, host, port, public_url):
    """Run the HTTP auction server"""
    import uvicorn
    from adauction.api import create_app
    from adauction.core.service import build_service

    config = ctx.obj["config"]
    service = build_service(config, resource_base=public_url or f"http://{host}:{port}")
    app = create_app(service)

    click.echo(f"Serving auctions on http://{host}:{port} (pay to {config.pay_to})")
    uvicorn.run(app, host=host, port=port, log_level="info")


# =============================================================================
# Inspection Commands
# =============================================================================


@cli.command("status")
@click.argument("slot_id")
@click.option("--json", "as_json", is_flag=True, help="Print the raw record")
@click.pass_context
def status(ctx, slot_id, as_json):
    """Show a slot's auction state"""
    import time
    from adauction.core.pricing import format_usdc
    from adauction.core.storage import AuctionStore

    config = ctx.obj["config"]
    store = AuctionStore(config.data_dir, config.db_name)
    record = store.get_record(slot_id)
    if record is None:
        click.echo(f"No auction for slot {slot_id}")
        raise SystemExit(1)

    if as_json:
        click.echo(json.dumps(record.to_dict(now=time.time()), indent=2))
        return

    click.echo(f"Slot {slot_id}")
    click.echo("-" * 40)
    click.echo(f"  Status:       {record.status.value}")
    click.echo(f"  Current bid:  {format_usdc(record.current_bid)}")
    winner = record.current_winner.agent_id if record.current_winner else "-"
    click.echo(f"  Leader:       {winner}")
    if record.auction_ended:
        click.echo(f"  Ended:        {record.auction_end_reason} (winner: {record.winner or 'none'})")
    else:
        remaining = record.time_remaining(time.time())
        click.echo(f"  Time left:    {remaining if remaining is not None else '-'}s")
    click.echo(f"  Bids:         {len(record.bid_history)}")
    for entry in record.bid_history[-10:]:
        click.echo(
            f"    {entry.agent_id:<16} {format_usdc(entry.amount):>10}  "
            f"refund={entry.refund_status.value}"
        )


@cli.command("refunds")
@click.pass_context
def refunds(ctx):
    """List refunds that failed their retry"""
    from adauction.core.pricing import format_usdc
    from adauction.core.storage import AuctionStore

    config = ctx.obj["config"]
    store = AuctionStore(config.data_dir, config.db_name)
    failed = store.failed_refunds()
    if not failed:
        click.echo("No failed refunds")
        return

    click.echo(f"{len(failed)} failed refund(s):")
    for row in failed:
        click.echo(
            f"  [{row['slot_id'] or '-'}] {row['agent_id'] or '-'} "
            f"{format_usdc(row['amount'])} -> {row['payout_address']}: {row['reason']}"
        )


# =============================================================================
# Demo
# =============================================================================


@cli.command("demo")
@click.option("--slot", default="demo", help="Slot id to auction")
@click.pass_context
def demo(ctx, slot):
    """Run a two-agent auction in-process against a local ledger"""
    from adauction.core.auction.events import RecordingNotifier, event_to_dict
    from adauction.core.auction.outcomes import Accepted, PaymentRequired
    from adauction.core.payment.local import Ledger, sign_authorization
    from adauction.core.payment.types import encode_payment_header
    from adauction.core.pricing import USDC_UNIT, format_usdc
    from adauction.core.service import build_service
    from adauction.crypto import generate_keypair

    config = ctx.obj["config"]
    config.thinking_delay = 0.0
    config.refund_delay = 0.0
    config.facilitator_url = None
    config.wallet_service_url = None
    config.pay_to = ""
    config.data_dir = Path(tempfile.mkdtemp(prefix="adauction-demo-"))

    ledger = Ledger()
    notifier = RecordingNotifier()
    service = build_service(config, notifier=notifier, ledger=ledger)
    engine = service.engine

    agents = {"agent-a": generate_keypair(), "agent-b": generate_keypair()}
    for keypair in agents.values():
        ledger.mint(keypair.address, 10 * USDC_UNIT)

    async def place(agent_id: str, dollars: int):
        amount = dollars * USDC_UNIT
        outcome = await engine.submit_bid(slot, agent_id, proposed_amount=amount)
        if not isinstance(outcome, PaymentRequired):
            click.echo(f"  {agent_id} proposes {format_usdc(amount)} -> {type(outcome).__name__}")
            return outcome
        payment = sign_authorization(
            agents[agent_id], config.pay_to, amount, config.network, config.asset
        )
        outcome = await engine.submit_bid(
            slot, agent_id, payment_proof=encode_payment_header(payment)
        )
        click.echo(f"  {agent_id} pays {format_usdc(amount)} -> {type(outcome).__name__}")
        return outcome

    async def run():
        await place("agent-a", 1)
        await place("agent-b", 1)
        outcome = await place("agent-b", 2)
        await engine.drain_refunds()
        return outcome

    click.echo("=" * 60)
    click.echo(f"  AD-SLOT AUCTION DEMO ({slot})")
    click.echo("=" * 60)
    outcome = asyncio.run(run())

    click.echo()
    click.echo("Events:")
    for event in notifier.events:
        click.echo(f"  {json.dumps(event_to_dict(event))}")

    click.echo()
    click.echo("Balances:")
    for agent_id, keypair in agents.items():
        click.echo(f"  {agent_id}: {format_usdc(ledger.balance_of(keypair.address))}")
    click.echo(f"  server:  {format_usdc(ledger.balance_of(config.pay_to))}")

    if isinstance(outcome, Accepted):
        click.echo(f"\nLeader: {outcome.agent_id} at {format_usdc(outcome.settled_amount)}")


if __name__ == "__main__":
    cli()
