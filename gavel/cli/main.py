"""
Gavel CLI - Command Line Interface for the live auction engine

Main entry point for all CLI commands.
"""

import json
import click
from pathlib import Path

from gavel.utils.logger import setup_logging, get_logger

logger = get_logger("cli")


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.option("--data-dir", default=None, help="Data directory (default: GAVEL_DATA_DIR or ./data)")
@click.option("--env-file", default=None, help="Path to a .env file")
@click.option("--log-file", is_flag=True, help="Also write logs to <log dir>/gavel.log")
@click.version_option(version="0.1.0")
@click.pass_context
def cli(ctx, debug, data_dir, env_file, log_file):
    """Gavel - Live multi-participant auction engine"""
    import logging
    from gavel.core.config import load_config

    config = load_config(env_file)
    if data_dir:
        config.data_dir = Path(data_dir).expanduser()

    if log_file:
        config.log_to_file = True

    level = logging.DEBUG if debug else logging.INFO
    setup_logging(level=level, log_dir=str(config.log_dir), log_to_file=config.log_to_file)

    ctx.ensure_object(dict)
    ctx.obj["config"] = config


# =============================================================================
# Catalog Commands
# =============================================================================


@cli.command("tiers")
def tiers():
    """Show rating tiers and their minimum bids"""
    from gavel.core.catalog import Tier

    click.echo(f"  {'Tier':<8} {'Rating':>7} {'Minimum bid':>12}")
    for tier in Tier:
        click.echo(f"  {tier.label:<8} {'>= ' + str(tier.value.min_rating):>7} {tier.minimum_bid:>12,}")


# =============================================================================
# Session Commands
# =============================================================================


@cli.group()
def sessions():
    """Inspect persisted sessions"""
    pass


def _open_storage(ctx):
    from gavel.core.storage import StorageManager

    config = ctx.obj["config"]
    if not config.db_path.exists():
        raise click.ClickException(f"No session database at {config.db_path}")
    return StorageManager(config.data_dir, config.db_name)


@sessions.command("list")
@click.option("--all", "show_all", is_flag=True, help="Include completed sessions")
@click.pass_context
def sessions_list(ctx, show_all):
    """List sessions"""
    from gavel.core.session import SessionStatus

    storage = _open_storage(ctx)
    found = [
        s for s in storage.load_sessions()
        if show_all or s.status != SessionStatus.COMPLETED
    ]
    if not found:
        click.echo("No sessions found.")
        return

    for s in found:
        click.echo(
            f"  {s.session_id}  {s.name:<24} {s.status.name.lower():<10} "
            f"round {s.round}  {len(s.participants)} participants  "
            f"{len(s.completed)} sold / {len(s.skipped)} skipped / {len(s.available)} left"
        )


@sessions.command("show")
@click.argument("session_id")
@click.option("--json", "as_json", is_flag=True, help="Print the raw session document")
@click.pass_context
def sessions_show(ctx, session_id, as_json):
    """Show one session"""
    storage = _open_storage(ctx)
    session = storage.get_session(session_id)
    if session is None:
        raise click.ClickException(f"Session {session_id} not found")

    if as_json:
        click.echo(json.dumps(session.to_dict(), indent=2))
        return

    click.echo(f"Session {session.session_id}: {session.name}")
    click.echo(f"  Host:    {session.host_id}")
    click.echo(f"  Status:  {session.status.name.lower()} (round {session.round})")
    click.echo(f"  Budget:  {session.budget:,}")
    if session.current:
        cur = session.current
        bid = f"{cur.current_bid:,} by {cur.current_bidder}" if cur.has_bid else "no bids"
        click.echo(f"  Current: {cur.item_id} (min {cur.minimum_bid:,}) - {bid}")
    click.echo("  Participants:")
    for p in session.participants:
        click.echo(f"    {p:<16} budget {session.budgets.get(p, 0):>12,}  spent {session.spent_by(p):>10,}")
    click.echo(f"  Sold ({len(session.completed)}):")
    for e in session.completed:
        click.echo(f"    {e.item_id:<16} -> {e.winner_id:<16} {e.amount:>10,}")
    if session.skipped:
        click.echo(f"  Skipped: {', '.join(session.skipped)}")


# =============================================================================
# Demo Command
# =============================================================================


@cli.command("demo")
@click.option("--persist", is_flag=True, help="Write the demo session to the data directory")
@click.pass_context
def demo(ctx, persist):
    """Run a scripted two-bidder auction"""
    import asyncio
    from gavel.core.catalog import CatalogItem, InMemoryCatalog
    from gavel.core.config import SessionConfig
    from gavel.core.directory import InMemoryDirectory
    from gavel.core.errors import BidRejected
    from gavel.core.session import AuctionEngine
    from gavel.network import InMemoryPublisher, session_topic

    config = ctx.obj["config"]
    config.auto_expire = False

    click.echo("=" * 60)
    click.echo("  GAVEL - DEMO")
    click.echo("=" * 60)
    click.echo()

    catalog = InMemoryCatalog([
        CatalogItem("p1", "Striker", rating=70, minimum_bid_override=5000),
        CatalogItem("p2", "Keeper", rating=88),
        CatalogItem("p3", "Winger", rating=60),
    ])
    directory = InMemoryDirectory()
    directory.register("alice", "Alice", budget=1_000_000)
    directory.register("bob", "Bob", budget=1_000_000)

    # Simulated time so the demo does not wait on real countdowns
    clock = {"t": 0.0}
    store = None
    if persist:
        from gavel.core.storage import StorageManager
        store = StorageManager(config.data_dir, config.db_name)

    publisher = InMemoryPublisher()
    engine = AuctionEngine(
        catalog, directory, publisher=publisher, store=store, config=config,
        now=lambda: clock["t"],
    )

    async def run_demo():
        session = await engine.create_session(
            "Demo Auction", 1_000_000, "alice",
            config=SessionConfig(bid_duration=30, min_bid_increment=1000, auto_shuffle=False),
        )
        sid = session.session_id
        publisher.subscribe(
            session_topic(sid),
            lambda ev: click.echo(f"  📣 {ev.event_type.name.lower()} {ev.data}"),
        )
        click.echo(f"🏛️  Session {sid} created")
        await engine.join(sid, "bob")
        await engine.start(sid, "alice")

        for user, amount in [("alice", 5000), ("bob", 5500), ("bob", 6000)]:
            try:
                await engine.place_bid(sid, user, amount)
            except BidRejected as e:
                click.echo(f"  ✗ {user} {amount}: {e}")

        clock["t"] += 31
        await engine.get_time_left(sid)

        await engine.vote_skip(sid, "alice")
        await engine.vote_skip(sid, "bob")
        await engine.end(sid, "alice")
        return engine.get_state(sid)

    final = asyncio.run(run_demo())
    engine.close()

    click.echo()
    click.echo(f"✓ Session {final.status.name.lower()}")
    for e in final.completed:
        click.echo(f"  {e.item_id} -> {e.winner_id} for {e.amount:,}")
    click.echo(f"  Skipped: {', '.join(final.skipped) or '-'}")
    click.echo(f"  Bob's budget: {directory.get_budget('bob'):,}")


if __name__ == "__main__":
    cli()
