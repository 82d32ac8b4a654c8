"""CLI entry point for the transfer engine."""

from __future__ import annotations

from datetime import date
from decimal import Decimal

import click

from .core.config import Settings, load_settings
from .core.enums import StorageBackend


def _load(config: str, log_level: str | None) -> Settings:
    from .observability.logger import setup_logging

    settings = load_settings(config_path=config)
    setup_logging(
        level=log_level or settings.observability.log_level,
        format=settings.observability.log_format,
    )
    return settings


@click.group()
def main() -> None:
    """Football transfer and contract lifecycle engine."""


@main.command("init-db")
@click.option("--config", default="configs/default.toml", help="Config file path")
@click.option("--url", default=None, help="SQLAlchemy URL override")
def init_db(config: str, url: str | None) -> None:
    """Create the document table in the configured SQL database."""
    import asyncio

    from .storage.sql_store import SqlDocumentStore

    settings = _load(config, None)
    db_url = url or settings.storage.url

    async def _run() -> None:
        store = SqlDocumentStore(db_url, echo=settings.storage.echo, use_null_pool=True)
        try:
            await store.create_all()
        finally:
            await store.close()

    asyncio.run(_run())
    click.echo(f"Schema ready at {db_url.split('@')[-1]}")


@main.command()
@click.option("--config", default="configs/default.toml", help="Config file path")
@click.option("--as-of", "as_of", default=None, help="Sweep date (YYYY-MM-DD), default today")
def sweep(config: str, as_of: str | None) -> None:
    """Expire every Active contract that ended before the sweep date."""
    import asyncio

    from .engine import build_engine

    settings = _load(config, None)
    if settings.storage.backend == StorageBackend.MEMORY:
        click.echo("Note: memory backend holds no contracts between runs.", err=True)
    sweep_date = date.fromisoformat(as_of) if as_of else None

    async def _run() -> int:
        engine = await build_engine(settings)
        try:
            return await engine.sweep_expired_contracts(sweep_date)
        finally:
            await engine.close()

    count = asyncio.run(_run())
    click.echo(f"Expired {count} contract(s)")


@main.command()
@click.option("--config", default="configs/default.toml", help="Config file path")
@click.option("--log-level", default="WARNING", help="Log level for the demo run")
def demo(config: str, log_level: str) -> None:
    """Run a sample summer transfer against the in-memory store."""
    import asyncio

    settings = _load(config, log_level)
    settings.storage.backend = StorageBackend.MEMORY
    asyncio.run(_demo(settings))


async def _demo(settings: Settings) -> None:
    from .core.clock import SimClock
    from .core.models import Club, Player
    from .engine import build_engine

    clock = SimClock()
    engine = await build_engine(settings, clock)
    async with engine:
        club_a = await engine.add_club(Club(name="Club A", budget=Decimal("10000000")))
        club_b = await engine.add_club(Club(name="Club B", budget=Decimal("15000000")))
        player = await engine.add_player(
            Player(
                name="Player X",
                date_of_birth=date(1998, 3, 14),
                nationality="Italian",
                position="Central Midfielder",
                market_value=Decimal("5000000"),
            )
        )
        await engine.create_contract({
            "player_id": player.id,
            "club_id": club_a.id,
            "start_date": "2023-07-01",
            "end_date": "2027-06-30",
            "salary": "1000000",
        })

        transfer = await engine.initiate_transfer({
            "player_id": player.id,
            "from_club_id": club_a.id,
            "to_club_id": club_b.id,
            "fee": "7000000",
            "transfer_date": "2024-07-15",
        })
        await engine.complete_transfer(transfer.id, {
            "end_date": "2029-06-30",
            "salary": "1500000",
        })

        details = await engine.get_transfer_details(transfer.id)
        await engine.capture.flush()

        click.echo(f"Transfer {transfer.id}: {details.transfer.status.value}")
        click.echo(f"  {details.from_club.name} budget: {details.from_club.budget}")
        click.echo(f"  {details.to_club.name} budget: {details.to_club.budget}")
        click.echo(f"  {details.player.name} value: {details.player.market_value}")
        click.echo("Recent changes:")
        for record in engine.capture.recent(limit=10):
            click.echo(
                f"  #{record.sequence} {record.operation.value:<6} "
                f"{record.entity_type.value}/{record.entity_id}"
            )
