import asyncio
import logging
import sys

import click

from .client import Chordbook
from .exceptions import LocalStoreError, UnknownCollectionError
from .models import Song
from .registry import get_collection
from .settings import get_settings


def _open_book(options: dict) -> Chordbook:
    return Chordbook.from_settings(store_path=options["store_path"], force_offline=options["offline"])


def _run(coro):
    try:
        return asyncio.run(coro)
    except LocalStoreError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)


def _song_label(ref) -> str:
    return ref.title if isinstance(ref, Song) else f"{ref} (unresolved)"


@click.group()
@click.option("--store", "store_path", default=None, metavar="PATH",
              help="Local record file (default: CHORDBOOK_STORE_PATH).")
@click.option("--offline", is_flag=True, default=False,
              help="Force offline mode; nothing is sent to the server.")
@click.option("-v", "--verbose", is_flag=True, default=False, help="Log debug output.")
@click.pass_context
def main(ctx: click.Context, store_path: str | None, offline: bool, verbose: bool) -> None:
    """Inspect and sync the offline playbook cache."""
    settings = get_settings()
    logging.basicConfig(
        level=logging.DEBUG if verbose else settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = {"store_path": store_path, "offline": offline}


@main.command()
@click.pass_obj
def status(options: dict) -> None:
    """Show connectivity and per-collection sync state."""

    async def _status():
        async with _open_book(options) as book:
            online = await book.monitor.check_now()
            return online, book.engine.sync_summary()

    online, summary = _run(_status())
    click.echo(f"Network: {'online' if online else 'offline'}")
    for name, counts in summary.items():
        parts = ", ".join(f"{state} {count}" for state, count in counts.items())
        click.echo(f"{name}s: {parts}")


@main.command()
@click.pass_obj
def sync(options: dict) -> None:
    """Replay pending changes against the server now."""

    async def _sync():
        async with _open_book(options) as book:
            if not await book.monitor.check_now():
                return None
            await book.sync.run(force=True)
            return book.engine.sync_summary()

    summary = _run(_sync())
    if summary is None:
        click.echo("Error: offline, nothing was synced", err=True)
        sys.exit(1)
    left = sum(counts["pending"] + counts["error"] + counts["deleted"] for counts in summary.values())
    click.echo("Sync complete" if not left else f"Sync finished, {left} record(s) still unsynced")


@main.command()
@click.argument("user_id")
@click.pass_obj
def playbooks(options: dict, user_id: str) -> None:
    """List USER_ID's playbooks."""

    async def _list():
        async with _open_book(options) as book:
            return await book.engine.get_playbooks(user_id)

    for playbook in _run(_list()):
        click.echo(f"{playbook.id}\t{playbook.name}\t[{playbook.sync_status.value}]")
        for ref in playbook.songs:
            click.echo(f"  - {_song_label(ref)}")


@main.command()
@click.option("--interval", default=None, type=float, metavar="SECONDS",
              help="Seconds between connectivity checks (default: CHORDBOOK_CHECK_INTERVAL).")
@click.pass_obj
def watch(options: dict, interval: float | None) -> None:
    """Watch the network and sync every time it comes back."""
    interval = interval or get_settings().CHECK_INTERVAL

    async def _watch():
        async with _open_book(options) as book:
            book.sync.start()
            await book.monitor.watch(interval)

    try:
        _run(_watch())
    except KeyboardInterrupt:
        click.echo("Stopped")


@main.command()
@click.argument("collection_name", metavar="COLLECTION")
@click.option("--yes", is_flag=True, default=False, help="Do not ask for confirmation.")
@click.pass_obj
def clear(options: dict, collection_name: str, yes: bool) -> None:
    """Delete every cached record in COLLECTION (playbooks or songs).

    Unsynced changes in that collection are lost.
    """
    try:
        collection = get_collection(collection_name)
    except UnknownCollectionError as exc:
        click.echo(f"Error: {exc}", err=True)
        click.echo("Collections: playbooks, songs", err=True)
        sys.exit(1)

    if not yes:
        click.confirm(f"Remove all cached {collection.name}s?", abort=True)

    async def _clear():
        async with _open_book(options) as book:
            return book.store.clear(collection.prefix)

    removed = _run(_clear())
    click.echo(f"Removed {removed} {collection.name} record(s)")
