#!/usr/bin/env python3
"""
Neutra Batch CLI

Read-only inspection of a persisted batch engine database.

Usage:
    neutra-batch [--config FILE] status
    neutra-batch [--config FILE] rounds [--side SIDE]
    neutra-batch [--config FILE] reservation <address>
    neutra-batch [--config FILE] pending [--side SIDE]
"""

import asyncio
import os
from decimal import Decimal
from typing import Optional

import aiosqlite
import click

from neutra import __version__
from neutra.batch.ledger import Side
from neutra.batch.resolver import ClaimResolver
from neutra.config import load_config
from neutra.constants import TOKEN_DECIMALS
from neutra.database_sqlite import BatchDatabase
from neutra.exceptions import InvalidAddressError, NeutraException
from neutra.logger import LogManager


def format_amount(amount: int, decimals: int = TOKEN_DECIMALS) -> str:
    """Format a base-unit amount as whole tokens."""
    value = Decimal(amount).scaleb(-decimals)
    return f"{value:,.4f}"


def _load(ctx: click.Context):
    """Load (ledger, pendings) from the configured database."""
    config = ctx.obj["config"]
    path = config.database.sqlite.path
    if not os.path.isfile(path):
        raise click.ClickException(f"No batch database at {path}")

    async def _read():
        db = await BatchDatabase.create(path, config.database.sqlite.wal_mode)
        try:
            return await db.load_ledger(), await db.load_pending()
        finally:
            await db.close()

    try:
        return asyncio.run(_read())
    except (NeutraException, aiosqlite.Error) as e:
        raise click.ClickException(f"Failed to load batch state: {e}")


def _sides(side: Optional[str]):
    return [Side(side)] if side else list(Side)


@click.group()
@click.version_option(version=__version__, prog_name="neutra-batch")
@click.option("--config", "-c", "config_path", type=click.Path(), help="Path to config.toml")
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[str]):
    """Neutra Batch Command Line Interface

    Inspect rounds, reservations and in-flight batches.
    """
    ctx.ensure_object(dict)
    try:
        config = load_config(config_path)
        config.validate()
    except NeutraException as e:
        raise click.ClickException(str(e))

    ctx.obj["config"] = config
    LogManager().reconfigure(log_level=config.engine.log_level, file_output=False)


@cli.command("status")
@click.pass_context
def status_cmd(ctx: click.Context):
    """Show round counters, locks and unclaimed output per side."""
    ledger, pendings = _load(ctx)

    click.echo()
    click.echo(click.style("═══════════════════════════════════════", fg="cyan"))
    click.echo(click.style("          Neutra Batch Status           ", fg="cyan", bold=True))
    click.echo(click.style("═══════════════════════════════════════", fg="cyan"))
    click.echo()

    for side in Side:
        current = ledger.get_round(side, ledger.current_round(side))
        pending = pendings[side]
        locked = click.style("batch under execution", fg="red") if current.is_executing else "open"

        click.echo(click.style(f"{side.value.capitalize()}:", fg="green"))
        click.echo(f"  Current round: {current.number} ({locked})")
        click.echo(f"  Reserved: {format_amount(current.total_reserved)}")
        click.echo(f"  Unclaimed output: {format_amount(ledger.unclaimed_output(side))}")
        if pending.in_progress:
            click.echo(
                f"  In flight: {pending.outstanding_increase} increase / "
                f"{pending.outstanding_decrease} decrease outstanding"
            )
        click.echo()


@cli.command("rounds")
@click.option(
    "--side", "-s",
    type=click.Choice([s.value for s in Side]),
    help="Only show one side"
)
@click.pass_context
def rounds_cmd(ctx: click.Context, side: Optional[str]):
    """List every round with its totals.

    Examples:

        neutra-batch rounds --side deposit
    """
    ledger, _ = _load(ctx)

    for s in _sides(side):
        click.echo()
        click.echo(click.style(f"{s.value.capitalize()} rounds:", fg="green", bold=True))
        for rnd in ledger.rounds(s):
            if rnd.confirmed:
                state = click.style("confirmed", fg="green")
            elif rnd.is_executing:
                state = click.style("executing", fg="yellow")
            else:
                state = "open"
            click.echo(
                f"  #{rnd.number:<4} {state:<20} reserved {format_amount(rnd.total_reserved)}"
                f"  executed {format_amount(rnd.executed_amount)}"
                f"  output {format_amount(rnd.total_output)}"
            )


@cli.command("reservation")
@click.argument("address")
@click.pass_context
def reservation_cmd(ctx: click.Context, address: str):
    """Show a participant's reservations on both sides.

    Examples:

        neutra-batch reservation 0x1234...abcd
    """
    ledger, _ = _load(ctx)

    click.echo()
    for side in Side:
        try:
            res = ledger.get_reservation(address, side)
        except InvalidAddressError as e:
            raise click.ClickException(str(e))

        if not res.is_active:
            click.echo(f"{side.value.capitalize()}: none")
            continue

        claimable = res.round_number < ledger.current_round(side)
        status = click.style("claimable", fg="green") if claimable else "pending"
        click.echo(
            f"{side.value.capitalize()}: {format_amount(res.amount)} in round "
            f"{res.round_number} ({status})"
        )
        if claimable:
            payout = ClaimResolver.pro_rata(res.amount, ledger.get_round(side, res.round_number))
            click.echo(f"  Payout: {format_amount(payout)}")


@cli.command("pending")
@click.option(
    "--side", "-s",
    type=click.Choice([s.value for s in Side]),
    help="Only show one side"
)
@click.pass_context
def pending_cmd(ctx: click.Context, side: Optional[str]):
    """Show in-flight batch status (initiator, outstanding requests)."""
    _, pendings = _load(ctx)

    for s in _sides(side):
        pending = pendings[s]
        click.echo()
        click.echo(click.style(f"{s.value.capitalize()}:", fg="green", bold=True))
        if not pending.in_progress:
            click.echo("  idle")
            continue
        click.echo(f"  Round: {pending.round_number}")
        click.echo(f"  Initiator: {pending.initiator}")
        click.echo(f"  Leg: {pending.leg.value if pending.leg else '-'}")
        click.echo(f"  Outstanding: {pending.outstanding_increase} increase / {pending.outstanding_decrease} decrease")
        click.echo(f"  Open leg confirmed: {pending.confirmed}")
        for request_id in pending.failed_requests:
            click.echo(click.style(f"  Failed request: {request_id}", fg="red"))


if __name__ == "__main__":
    cli()
