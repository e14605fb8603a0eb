"""CLI entry point for the pairs tracker."""

from __future__ import annotations

import json
import logging
import re
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import click
from pydantic import ValidationError

from pairs_tracker.db import IntervalStore
from pairs_tracker.errors import AggregationQueryError, InvalidEventError, ReconcileTimeoutError
from pairs_tracker.pairs import PairAggregate, QuerySpec, top_pairs
from pairs_tracker.presence import (
    PresenceNotification,
    SnapshotOracle,
    VoiceState,
    VoiceStateUpdate,
    diff_voice_states,
)
from pairs_tracker.reconcile import Reconciler
from pairs_tracker.transitions import Transition, TransitionProcessor

DEFAULT_DB_PATH = Path.home() / ".local" / "share" / "pairs" / "intervals.db"

# Unit -> milliseconds, for relative spans like "1M15d7h"
SPAN_UNITS = {
    "s": 1_000,
    "m": 60_000,
    "h": 3_600_000,
    "d": 86_400_000,
    "M": 30 * 86_400_000,
    "y": 360 * 86_400_000,
}

SPAN_PATTERN = re.compile(r"(\d+)([a-zA-Z])")


def _parse_timestamp(ts: str) -> datetime:
    """Parse ISO 8601 timestamp to an aware datetime (naive means UTC)."""
    dt = datetime.fromisoformat(ts.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def parse_span(value: str) -> timedelta:
    """Parse a relative span like '1d12h' or '90m'.

    Raises:
        ValueError: If the span is empty or uses an unknown unit.
    """
    matches = SPAN_PATTERN.findall(value)
    if not matches or "".join(n + u for n, u in matches) != value:
        raise ValueError(f"Invalid time span: {value!r}")
    total_ms = 0
    for number, unit in matches:
        if unit not in SPAN_UNITS:
            raise ValueError(f"Invalid time unit {unit!r} in {value!r}")
        total_ms += int(number) * SPAN_UNITS[unit]
    return timedelta(milliseconds=total_ms)


def parse_since(value: str, *, now: datetime | None = None) -> datetime:
    """Parse an ISO 8601 timestamp or a span back from now (e.g. '7d')."""
    try:
        return _parse_timestamp(value)
    except ValueError:
        pass
    if now is None:
        now = datetime.now(timezone.utc)
    return now - parse_span(value)


def format_duration(ms: int) -> str:
    """Format milliseconds as up to three units, e.g. '2d 3h 5m', or '<1m'.

    Args:
        ms: Duration in milliseconds.

    Returns:
        Formatted duration string.
    """
    if ms < 60_000:  # Less than 1 minute
        return "<1m" if ms > 0 else "0m"
    total_minutes = ms // 60_000
    days, rest = divmod(total_minutes, 1440)
    hours, minutes = divmod(rest, 60)
    parts = []
    if days:
        parts.append(f"{days}d")
    if hours or days:
        parts.append(f"{hours}h")
    parts.append(f"{minutes}m")
    return " ".join(parts)


def make_progress_bar(value: int, max_value: int, width: int = 16) -> str:
    """Create ASCII progress bar.

    Args:
        value: Current value.
        max_value: Maximum value (100%).
        width: Total width of bar (default: 16).

    Returns:
        Progress bar string like '████████░░░░░░░░'.
    """
    if max_value == 0 or value == 0:
        return "░" * width
    filled = max(1, min(width, round((value / max_value) * width)))
    return "█" * filled + "░" * (width - filled)


def db_option(func):
    return click.option(
        "--db",
        type=click.Path(path_type=Path),
        default=DEFAULT_DB_PATH,
        envvar="PAIRS_DB",
        show_envvar=True,
        help="Path to SQLite database",
    )(func)


def _require_db(db: Path) -> None:
    if not db.exists():
        click.echo("No database found", err=True)
        sys.exit(1)


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Log debug output")
def main(verbose: bool) -> None:
    """Voice channel pairs tracker."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s: %(message)s",
    )


@main.command("ingest")
@db_option
@click.option(
    "--voice",
    is_flag=True,
    help="Read voice-state updates ({before, after, at}) instead of notifications",
)
def ingest_command(db: Path, voice: bool) -> None:
    """Apply presence notifications from stdin (JSONL format).

    Each line is a notification such as
    {"kind": "connect", "user_id": "u1", "channel_id": "c1", "guild_id": "g1",
    "at": "2025-01-25T10:00:00Z", "active": true}.
    Duplicate starts and unmatched ends are ignored.

    Example usage:
        cat notifications.jsonl | pairs ingest
        cat voice-updates.jsonl | pairs ingest --voice
    """
    db.parent.mkdir(parents=True, exist_ok=True)

    applied: dict[Transition, int] = {t: 0 for t in Transition}
    valid_count = 0
    has_input = False

    with IntervalStore.open(db) as store:
        processor = TransitionProcessor(store)
        for line_number, line in enumerate(sys.stdin, 1):
            stripped = line.strip()
            if not stripped:
                continue

            has_input = True

            try:
                data = json.loads(stripped)
                if voice:
                    update = VoiceStateUpdate.model_validate(data)
                    notifications = diff_voice_states(update.before, update.after, update.at)
                else:
                    notifications = [PresenceNotification.model_validate(data)]
                for notification in notifications:
                    applied[processor.apply(notification)] += 1
                valid_count += 1
            except json.JSONDecodeError as e:
                click.echo(f"Warning: line {line_number}: invalid JSON: {e}", err=True)
            except ValidationError as e:
                click.echo(f"Warning: line {line_number}: validation error: {e}", err=True)
            except InvalidEventError as e:
                click.echo(f"Warning: line {line_number}: invalid event: {e}", err=True)

    click.echo(
        f"Opened {applied[Transition.OPENED]}, closed {applied[Transition.CLOSED]} intervals "
        f"({applied[Transition.DUPLICATE]} duplicate starts, "
        f"{applied[Transition.UNMATCHED]} unmatched ends)"
    )

    # Exit code 1 if we had input but no valid lines
    if has_input and valid_count == 0:
        sys.exit(1)


@main.command("reconcile")
@db_option
@click.option(
    "--snapshot",
    type=click.File("r"),
    required=True,
    help="JSONL file of current voice states ('-' for stdin)",
)
@click.option(
    "--timeout",
    type=float,
    default=10.0,
    help="Presence oracle timeout in seconds",
)
@click.option(
    "--budget",
    type=float,
    default=60.0,
    show_default=True,
    help="Overall time limit for the pass in seconds",
)
def reconcile_command(db: Path, snapshot, timeout: float, budget: float) -> None:
    """Verify open intervals against a snapshot of current voice states.

    Intervals the snapshot confirms stay open; the rest are closed now.
    Users in the snapshot with nothing open get an interval starting now.
    """
    _require_db(db)

    states = []
    for line_number, line in enumerate(snapshot, 1):
        stripped = line.strip()
        if not stripped:
            continue
        try:
            states.append(VoiceState.model_validate_json(stripped))
        except ValidationError as e:
            click.echo(f"Error: snapshot line {line_number}: {e}", err=True)
            sys.exit(1)

    with IntervalStore.open(db) as store:
        reconciler = Reconciler(
            store,
            SnapshotOracle.from_voice_states(states),
            oracle_timeout=timeout,
            pass_timeout=budget,
        )
        try:
            report = reconciler.run(states=states)
        except ReconcileTimeoutError as e:
            click.echo(f"Error: {e}", err=True)
            report = e.report
            failed = True
        else:
            failed = False

    click.echo(
        f"Verified {report.pending} open intervals: {report.confirmed} confirmed, "
        f"{report.closed} closed, {report.expired} removed, {report.opened} opened"
    )
    if failed:
        sys.exit(1)


def _run_pairs_query(db: Path, spec: QuerySpec, output_json: bool, title: str) -> None:
    _require_db(db)
    try:
        with IntervalStore.open(db) as store:
            results = top_pairs(store, spec)
    except AggregationQueryError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if output_json:
        click.echo(
            json.dumps(
                [
                    {
                        "first": r.pair.first,
                        "second": r.pair.second,
                        "total_ms": r.total_ms,
                        "occurrences": r.occurrences,
                    }
                    for r in results
                ],
                indent=2,
            )
        )
        return

    click.echo(title)
    click.echo()
    if not results:
        click.echo("No time tracked for this period.")
        return
    _output_human_pairs(results)


def _output_human_pairs(results: list[PairAggregate]) -> None:
    max_total = max(r.total_ms for r in results)
    for r in results:
        if r.pair.is_self:
            label = f"{r.pair.first} (total)"
        else:
            label = f"{r.pair.first} & {r.pair.second}"
        if len(label) > 32:
            label = label[:29] + "..."
        bar = make_progress_bar(r.total_ms, max_total)
        click.echo(f"  {label:<32} {format_duration(r.total_ms):>11}   {bar}")


def _title(since: datetime | None) -> str:
    if since is None:
        return "Top pairs for all time"
    elapsed = datetime.now(timezone.utc) - since
    return f"Top pairs for the past {format_duration(int(elapsed.total_seconds() * 1000))}"


def _since_value(since: str | None) -> datetime | None:
    if since is None:
        return None
    try:
        return parse_since(since)
    except ValueError as e:
        raise click.BadParameter(f"{e}. Use ISO 8601 or a span like 1M15d7h10m5s") from e


@main.command("top")
@db_option
@click.option("--since", "-t", help="ISO 8601 timestamp or span back from now (e.g. 7d)")
@click.option("--until", help="ISO 8601 timestamp (exclusive end, default: now)")
@click.option("--user", "users", multiple=True, help="Only pairs involving this user")
@click.option("--channel", "channels", multiple=True, help="Only time on this channel")
@click.option("--guild", "guilds", multiple=True, help="Only time in this guild")
@click.option("--mask", "mask", multiple=True, help="Only count time with this user")
@click.option("--no-self", is_flag=True, help="Leave out each user's own total")
@click.option("--only-self", is_flag=True, help="Only each user's own total")
@click.option("--count", "-c", type=int, default=5, show_default=True, help="Pairs to show (0 = all)")
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
def top_command(
    db: Path,
    since: str | None,
    until: str | None,
    users: tuple[str, ...],
    channels: tuple[str, ...],
    guilds: tuple[str, ...],
    mask: tuple[str, ...],
    no_self: bool,
    only_self: bool,
    count: int,
    output_json: bool,
) -> None:
    """Show the pairs of users who spent the most time together.

    Example:
        pairs top
        pairs top --since 7d --user alice --no-self
    """
    if no_self and only_self:
        raise click.UsageError("--no-self and --only-self are mutually exclusive")

    start = _since_value(since)
    try:
        spec = QuerySpec(
            start_time=start,
            end_time=_parse_timestamp(until) if until else None,
            user_ids=users or None,
            channel_ids=channels or None,
            guild_ids=guilds or None,
            user_mask=mask or None,
            exclude_self=no_self,
            only_self=only_self,
            count=count,
        )
    except (ValidationError, ValueError) as e:
        raise click.UsageError(str(e)) from e

    _run_pairs_query(db, spec, output_json, _title(start))


@main.command("with")
@db_option
@click.argument("users", nargs=-1, required=True)
@click.option("--since", "-t", help="ISO 8601 timestamp or span back from now (e.g. 7d)")
@click.option("--no-self", is_flag=True, help="Leave out each user's own total")
@click.option("--count", "-c", type=int, default=5, show_default=True, help="Pairs to show (0 = all)")
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
def with_command(
    db: Path,
    users: tuple[str, ...],
    since: str | None,
    no_self: bool,
    count: int,
    output_json: bool,
) -> None:
    """Show time spent together among the given USERS only.

    Example:
        pairs with alice bob carol --since 30d
    """
    start = _since_value(since)
    spec = QuerySpec().since(start).with_users(*users).limit(count)
    if no_self:
        spec = spec.without_self()
    _run_pairs_query(db, spec, output_json, _title(start))


@main.command("status")
@db_option
def status_command(db: Path) -> None:
    """Show open and stored interval counts."""
    _require_db(db)

    with IntervalStore.open(db) as store:
        open_count = store.count_open()
        total = store.count_events()

    click.echo(f"Database: {db}")
    click.echo()
    click.echo(f"Open intervals: {open_count}")
    click.echo(f"Intervals stored: {total}")


@main.command("purge")
@db_option
@click.option(
    "--hours",
    type=float,
    default=24.0,
    show_default=True,
    help="Retention window in hours",
)
def purge_command(db: Path, hours: float) -> None:
    """Delete intervals written longer ago than the retention window."""
    _require_db(db)

    with IntervalStore.open(db) as store:
        purged = store.purge_expired(retention=timedelta(hours=hours))

    click.echo(f"Purged {purged} intervals")


if __name__ == "__main__":
    main()
