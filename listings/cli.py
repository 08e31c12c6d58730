"""
Simple CLI to pull listing pages manually.
"""
from __future__ import annotations

import json
import os
import sys

import click
from dotenv import load_dotenv

from listings.errors import ListingsError
from listings.models import SortMode, SourceQuery, TimeWindow, post_to_dict
from listings.service import ListingsService
from listings.settings import load_settings

SORT_CHOICES = click.Choice([mode.value for mode in SortMode])
WINDOW_CHOICES = click.Choice([window.value for window in TimeWindow])


def _service() -> ListingsService:
    load_dotenv(os.getenv("LISTINGS_DOTENV", ".env"))
    return ListingsService.from_settings(load_settings())


@click.group()
def cli():
    pass


@cli.command()
@click.argument("channel")
@click.option("--sort", "sort_mode", type=SORT_CHOICES, default=SortMode.HOT.value)
@click.option("--time-window", type=WINDOW_CHOICES, default=None)
@click.option("--cursor", default=None)
@click.option("--limit", type=click.IntRange(1, 100, clamp=True), default=20)
def fetch(channel: str, sort_mode: str, time_window: str | None, cursor: str | None, limit: int):
    """Fetch one page of CHANNEL."""
    service = _service()
    try:
        query = SourceQuery(channel=channel, sort_mode=sort_mode, time_window=time_window, cursor=cursor, page_size=limit)
        result = service.get_listing(query, identity="cli")
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc
    except ListingsError as exc:
        click.echo(f"error: {exc}", err=True)
        sys.exit(1)
    finally:
        service.close()

    for post in result.posts:
        click.echo(json.dumps(post_to_dict(post), ensure_ascii=False))
    click.echo(json.dumps({"cursor": result.next_cursor}))


@cli.command()
@click.argument("channels", nargs=-1, required=True)
@click.option("--sort", "sort_mode", type=SORT_CHOICES, default=SortMode.HOT.value)
@click.option("--time-window", type=WINDOW_CHOICES, default=None)
@click.option("--limit", type=click.IntRange(1, 100, clamp=True), default=20)
@click.option("--pages", type=click.IntRange(1, 50), default=1)
def aggregate(channels: tuple, sort_mode: str, time_window: str | None, limit: int, pages: int):
    """Walk PAGES interleaved pages across CHANNELS."""
    if sort_mode == SortMode.TOP.value and not time_window:
        raise click.BadParameter("--time-window is required with --sort top")
    service = _service()
    session = service.session(list(channels), sort_mode, time_window, page_size=limit, identity="cli")
    try:
        for _ in range(pages):
            if not session.has_more:
                break
            page = session.next_page()
            for warning in page.warnings:
                click.echo(f"warning: {warning}", err=True)
            for post in page.posts:
                click.echo(json.dumps(post_to_dict(post), ensure_ascii=False))
        click.echo(json.dumps({"cursors": session.cursors, "state": session.state.value}))
    except ListingsError as exc:
        click.echo(f"error: {exc}", err=True)
        sys.exit(1)
    finally:
        service.close()


if __name__ == "__main__":  # pragma: no cover
    cli()
