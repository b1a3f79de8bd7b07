"""reviewsync CLI — run the server, watch change streams, act on reviews.

Usage:
    reviewsync serve                                      # Run the API server
    reviewsync watch comments content_item_id=eq.<id>     # Tail a change stream
    reviewsync approve <item> <version> -f "looks good"   # Approve a version
    reviewsync request-changes <item> <version> "fix x"   # Request changes
    reviewsync notifications --unread                     # Your notifications
    reviewsync mark-all-read                              # Clear your unread count
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import json
import os
import sys
from typing import Optional

import click

from reviewsync import __version__
from reviewsync.config import settings
from reviewsync.errors import ReviewSyncError
from reviewsync.sync.api import ReviewSyncApi

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run(coro):
    """Run an async coroutine from synchronous Click handler.

    Handles nested event loops (e.g. when invoked via Click CliRunner
    inside an existing async context like tests) by offloading to a thread.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        # No running loop — normal CLI invocation
        return asyncio.run(coro)
    else:
        # Already inside an event loop (e.g. test runner) — run in a thread
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return pool.submit(asyncio.run, coro).result()


def _user_id_from_ctx(user_id: Optional[str]) -> str:
    """Resolve user_id from flag or REVIEWSYNC_USER_ID env var."""
    uid = user_id or os.environ.get("REVIEWSYNC_USER_ID")
    if not uid:
        click.secho(
            "Error: --user-id required (or set REVIEWSYNC_USER_ID env var)",
            fg="red",
            err=True,
        )
        sys.exit(1)
    return uid


def _api(user_id: str) -> ReviewSyncApi:
    return ReviewSyncApi(user_id, settings.api_url)


def _fail(e: ReviewSyncError) -> None:
    click.secho(f"Error: {e}", fg="red", err=True)
    sys.exit(1)


def _status_color(status: str) -> str:
    """Map status strings to click colors."""
    colors = {
        "draft": "white",
        "submitted": "cyan",
        "in_review": "cyan",
        "approved": "green",
        "changes_requested": "yellow",
        "needs_revision": "yellow",
        "connected": "green",
        "connecting": "yellow",
        "disconnected": "red",
        "closed": "white",
        "INSERT": "green",
        "UPDATE": "yellow",
        "DELETE": "red",
    }
    return colors.get(status, "white")


user_option = click.option("--user-id", "-u", help="Your user UUID (or set REVIEWSYNC_USER_ID)")

# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(version=__version__, prog_name="reviewsync")
def main():
    """reviewsync — content review workflow with live change streams."""


# ---------------------------------------------------------------------------
# reviewsync serve
# ---------------------------------------------------------------------------


@main.command()
@click.option("--host", default=None, help="Bind address (default: REVIEWSYNC_HOST)")
@click.option("--port", "-p", type=int, default=None, help="Port (default: REVIEWSYNC_PORT)")
@click.option("--reload", is_flag=True, help="Reload on code changes")
def serve(host: Optional[str], port: Optional[int], reload: bool):
    """Run the API server."""
    import uvicorn

    uvicorn.run(
        "reviewsync.main:app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
    )


# ---------------------------------------------------------------------------
# reviewsync watch
# ---------------------------------------------------------------------------


@main.command()
@click.argument("entity_type")
@click.argument("filter_expression", metavar="FILTER")
@click.option("--events", "-e", default="", help="Comma-separated kinds, e.g. INSERT,UPDATE")
def watch(entity_type: str, filter_expression: str, events: str):
    """Tail one change stream, printing connectivity and every event.

    FILTER is an equality predicate such as content_item_id=eq.<uuid>.
    Runs until interrupted.
    """
    try:
        _run(_watch_impl(entity_type, filter_expression, events))
    except KeyboardInterrupt:
        click.echo()


async def _watch_impl(entity_type: str, filter_expression: str, events: str):
    from reviewsync.realtime.websocket import parse_stream_request
    from reviewsync.sync.channel import ChangeEventChannel
    from reviewsync.sync.transport import build_transport

    if settings.change_stream_backend != "redis":
        click.secho("watch needs REVIEWSYNC_CHANGE_STREAM_BACKEND=redis", fg="red", err=True)
        sys.exit(1)
    try:
        request = parse_stream_request(entity_type, filter_expression, events)
    except ReviewSyncError as e:
        _fail(e)

    channel = ChangeEventChannel(build_transport(), request)
    channel.on_status(
        lambda status: click.secho(f"[{status.value}] {request.stream_name}", fg=_status_color(status.value))
    )

    def show(event):
        if not request.accepts(event):
            return
        op = click.style(event.operation.value.ljust(6), fg=_status_color(event.operation.value))
        click.echo(f"{event.occurred_at:%H:%M:%S}  {op}  {json.dumps(event.row, default=str)}")

    channel.on_event(show)
    await channel.start()
    try:
        await asyncio.Event().wait()
    finally:
        await channel.close()


# ---------------------------------------------------------------------------
# reviewsync approve / request-changes
# ---------------------------------------------------------------------------


@main.command()
@click.argument("content_item_id")
@click.argument("version_id")
@click.option("--feedback", "-f", help="Optional note for the author")
@user_option
def approve(content_item_id: str, version_id: str, feedback: Optional[str], user_id: Optional[str]):
    """Approve a submitted version."""
    _run(_decide_impl("approve", content_item_id, version_id, feedback, user_id))


@main.command("request-changes")
@click.argument("content_item_id")
@click.argument("version_id")
@click.argument("feedback")
@user_option
def request_changes(content_item_id: str, version_id: str, feedback: str, user_id: Optional[str]):
    """Request changes on a submitted version. FEEDBACK is required."""
    _run(_decide_impl("request_changes", content_item_id, version_id, feedback, user_id))


async def _decide_impl(decision, content_item_id, version_id, feedback, user_id):
    uid = _user_id_from_ctx(user_id)
    async with _api(uid) as api:
        try:
            if decision == "approve":
                approval = await api.approve_version(content_item_id, version_id, feedback)
            else:
                approval = await api.request_changes(content_item_id, version_id, feedback)
        except ReviewSyncError as e:
            _fail(e)
    label = "Approved" if decision == "approve" else "Changes requested"
    click.secho(f"{label}: version {approval['version_id']}", fg="green")


# ---------------------------------------------------------------------------
# reviewsync notifications / mark-all-read
# ---------------------------------------------------------------------------


@main.command()
@click.option("--unread", is_flag=True, help="Only unread notifications")
@click.option("--limit", "-l", default=20, help="Max results")
@user_option
def notifications(unread: bool, limit: int, user_id: Optional[str]):
    """List your notifications (newest first)."""
    _run(_notifications_impl(unread, limit, user_id))


async def _notifications_impl(unread: bool, limit: int, user_id: Optional[str]):
    uid = _user_id_from_ctx(user_id)
    async with _api(uid) as api:
        try:
            rows = await api.list_notifications(uid, limit, unread)
            count = await api.unread_count(uid)
        except ReviewSyncError as e:
            _fail(e)

    click.secho(f"Notifications ({count} unread):", bold=True)
    if not rows:
        click.echo("  Nothing here.")
        return
    for n in rows:
        marker = " " if n["read"] else click.style("●", fg="cyan")
        click.echo(f"  {marker} {n['created_at'][:16]}  {n['type']:18s}  {n['title']}")


@main.command("mark-all-read")
@user_option
def mark_all_read(user_id: Optional[str]):
    """Mark all your notifications read."""
    _run(_mark_all_read_impl(user_id))


async def _mark_all_read_impl(user_id: Optional[str]):
    uid = _user_id_from_ctx(user_id)
    async with _api(uid) as api:
        try:
            updated = await api.mark_all_read(uid)
        except ReviewSyncError as e:
            _fail(e)
    click.secho(f"Marked {updated} notification(s) read", fg="green")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    main()
