"""Tests for the CLI entry point."""

import json
from datetime import datetime, timedelta, timezone

import pytest
from click.testing import CliRunner

from pairs_tracker.cli import format_duration, main, make_progress_bar, parse_since, parse_span
from pairs_tracker.db import EventKind, IntervalStore


def notification(kind: str, user_id: str, ts: str, active: bool, channel_id: str | None = "c1") -> dict:
    return {
        "kind": kind,
        "user_id": user_id,
        "channel_id": channel_id,
        "guild_id": "g1",
        "at": ts,
        "active": active,
    }


def jsonl(records: list[dict]) -> str:
    return "\n".join(json.dumps(r) for r in records) + "\n"


SESSION = [
    notification("connect", "alice", "2025-01-25T10:00:00Z", True),
    notification("connect", "bob", "2025-01-25T10:05:00Z", True),
    notification("connect", "alice", "2025-01-25T10:10:00Z", False),
    notification("connect", "bob", "2025-01-25T10:15:00Z", False),
]


@pytest.fixture
def db_with_session(tmp_path):
    """Database with alice and bob overlapping for five minutes."""
    db_path = tmp_path / "test.db"
    result = CliRunner().invoke(main, ["ingest", "--db", str(db_path)], input=jsonl(SESSION))
    assert result.exit_code == 0, result.output
    return db_path


def test_main_help():
    """Test that --help works and shows the group description."""
    runner = CliRunner()
    result = runner.invoke(main, ["--help"])
    assert result.exit_code == 0
    assert "Voice channel pairs tracker" in result.output


def test_main_no_args():
    """Click groups exit with code 2 when no subcommand is provided."""
    result = CliRunner().invoke(main, [])
    assert result.exit_code == 2
    assert "Usage:" in result.output


class TestIngestCommand:
    """Tests for the ingest command."""

    def test_ingest_session(self, db_with_session):
        with IntervalStore.open(db_with_session) as store:
            events = store.get_events()
        assert len(events) == 2
        assert all(not e.is_open for e in events)

    def test_ingest_reports_transitions(self, tmp_path):
        db_path = tmp_path / "test.db"
        records = SESSION + [notification("connect", "carol", "2025-01-25T10:20:00Z", False)]
        result = CliRunner().invoke(main, ["ingest", "--db", str(db_path)], input=jsonl(records))

        assert result.exit_code == 0
        assert "Opened 2, closed 2 intervals (0 duplicate starts, 1 unmatched ends)" in result.output

    def test_ingest_skips_bad_lines(self, tmp_path):
        db_path = tmp_path / "test.db"
        input_data = (
            json.dumps(SESSION[0]) + "\n"
            "not valid json\n"
            + json.dumps({"kind": "connect"}) + "\n"
            + json.dumps(notification("connect", "bob", "2025-01-25T10:00:00Z", True, channel_id=None))
            + "\n"
        )
        result = CliRunner().invoke(main, ["ingest", "--db", str(db_path)], input=input_data)

        assert result.exit_code == 0
        assert "Warning: line 2: invalid JSON" in result.output
        assert "Warning: line 3: validation error" in result.output
        assert "Warning: line 4: invalid event" in result.output
        with IntervalStore.open(db_path) as store:
            assert store.count_open() == 1

    def test_ingest_all_invalid_exits_1(self, tmp_path):
        db_path = tmp_path / "test.db"
        result = CliRunner().invoke(main, ["ingest", "--db", str(db_path)], input="garbage\n")
        assert result.exit_code == 1

    def test_ingest_only_invalid_events_exits_1(self, tmp_path):
        """Lines that parse but cannot be applied do not count as valid."""
        db_path = tmp_path / "test.db"
        records = [
            notification("connect", "alice", "2025-01-25T10:00:00Z", True, channel_id=None),
            notification("mute", "bob", "2025-01-25T10:00:00Z", True, channel_id=None),
        ]
        result = CliRunner().invoke(main, ["ingest", "--db", str(db_path)], input=jsonl(records))

        assert result.exit_code == 1
        assert "Warning: line 2: invalid event" in result.output

    def test_ingest_empty_input(self, tmp_path):
        db_path = tmp_path / "test.db"
        result = CliRunner().invoke(main, ["ingest", "--db", str(db_path)], input="")
        assert result.exit_code == 0
        assert "Opened 0, closed 0 intervals" in result.output

    def test_ingest_voice_updates(self, tmp_path):
        db_path = tmp_path / "test.db"
        joined = {"user_id": "alice", "guild_id": "g1", "channel_id": "c1", "streaming": True}
        left = {"user_id": "alice", "guild_id": "g1", "channel_id": None}
        updates = [
            {"before": None, "after": joined, "at": "2025-01-25T10:00:00Z"},
            {"before": joined, "after": left, "at": "2025-01-25T11:00:00Z"},
        ]
        result = CliRunner().invoke(
            main, ["ingest", "--db", str(db_path), "--voice"], input=jsonl(updates)
        )

        assert result.exit_code == 0
        with IntervalStore.open(db_path) as store:
            events = store.get_events()
        assert {e.kind for e in events} == {EventKind.CONNECT, EventKind.STREAMING}
        assert all(not e.is_open for e in events)

    def test_db_from_environment(self, tmp_path):
        db_path = tmp_path / "env.db"
        result = CliRunner().invoke(
            main, ["ingest"], input=jsonl(SESSION[:1]), env={"PAIRS_DB": str(db_path)}
        )
        assert result.exit_code == 0
        assert db_path.exists()


class TestReconcileCommand:
    """Tests for the reconcile command."""

    def test_reconcile_closes_missing_users(self, tmp_path):
        db_path = tmp_path / "test.db"
        runner = CliRunner()
        opens = [
            notification("connect", "alice", "2025-01-25T10:00:00Z", True),
            notification("connect", "bob", "2025-01-25T10:00:00Z", True),
        ]
        runner.invoke(main, ["ingest", "--db", str(db_path)], input=jsonl(opens))

        snapshot = tmp_path / "states.jsonl"
        snapshot.write_text(json.dumps({"user_id": "alice", "guild_id": "g1", "channel_id": "c1"}) + "\n")
        result = runner.invoke(main, ["reconcile", "--db", str(db_path), "--snapshot", str(snapshot)])

        assert result.exit_code == 0, result.output
        assert "Verified 2 open intervals: 1 confirmed, 1 closed, 0 removed, 0 opened" in result.output
        with IntervalStore.open(db_path) as store:
            assert [e.user_id for e in store.get_open_events()] == ["alice"]

    def test_reconcile_opens_users_already_in_voice(self, db_with_session, tmp_path):
        snapshot = tmp_path / "states.jsonl"
        snapshot.write_text(
            json.dumps({"user_id": "carol", "guild_id": "g1", "channel_id": "c2", "mute": True}) + "\n"
        )
        result = CliRunner().invoke(
            main, ["reconcile", "--db", str(db_with_session), "--snapshot", str(snapshot)]
        )

        assert result.exit_code == 0, result.output
        assert "Verified 0 open intervals: 0 confirmed, 0 closed, 0 removed, 2 opened" in result.output
        with IntervalStore.open(db_with_session) as store:
            assert {(e.user_id, e.kind) for e in store.get_open_events()} == {
                ("carol", EventKind.CONNECT),
                ("carol", EventKind.MUTE),
            }

    def test_reconcile_bad_snapshot(self, db_with_session, tmp_path):
        snapshot = tmp_path / "states.jsonl"
        snapshot.write_text("{}\n")
        result = CliRunner().invoke(
            main, ["reconcile", "--db", str(db_with_session), "--snapshot", str(snapshot)]
        )
        assert result.exit_code == 1
        assert "snapshot line 1" in result.output

    def test_reconcile_no_database(self, tmp_path):
        snapshot = tmp_path / "states.jsonl"
        snapshot.write_text("")
        result = CliRunner().invoke(
            main, ["reconcile", "--db", str(tmp_path / "missing.db"), "--snapshot", str(snapshot)]
        )
        assert result.exit_code == 1
        assert "No database found" in result.output


class TestTopCommand:
    """Tests for the top and with commands."""

    def test_top_json(self, db_with_session):
        result = CliRunner().invoke(
            main, ["top", "--db", str(db_with_session), "--no-self", "--json"]
        )

        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data == [
            {"first": "alice", "second": "bob", "total_ms": 300_000, "occurrences": 2}
        ]

    def test_top_human(self, db_with_session):
        result = CliRunner().invoke(main, ["top", "--db", str(db_with_session)])

        assert result.exit_code == 0
        assert "Top pairs for all time" in result.output
        assert "alice (total)" in result.output
        assert "alice & bob" in result.output
        assert "5m" in result.output

    def test_top_window(self, db_with_session):
        result = CliRunner().invoke(
            main,
            [
                "top",
                "--db",
                str(db_with_session),
                "--since",
                "2025-01-25T10:08:00Z",
                "--until",
                "2025-01-25T10:09:00Z",
                "--user",
                "bob",
                "--no-self",
                "--json",
            ],
        )
        data = json.loads(result.output)
        assert data[0]["total_ms"] == 60_000

    def test_top_only_self(self, db_with_session):
        result = CliRunner().invoke(
            main, ["top", "--db", str(db_with_session), "--only-self", "--user", "alice", "--json"]
        )
        data = json.loads(result.output)
        assert data == [
            {"first": "alice", "second": "alice", "total_ms": 600_000, "occurrences": 1}
        ]

    def test_top_empty_period(self, db_with_session):
        result = CliRunner().invoke(main, ["top", "--db", str(db_with_session), "--since", "1h"])
        assert result.exit_code == 0
        assert "No time tracked for this period." in result.output

    def test_top_self_flags_conflict(self, db_with_session):
        result = CliRunner().invoke(
            main, ["top", "--db", str(db_with_session), "--no-self", "--only-self"]
        )
        assert result.exit_code == 2

    def test_top_bad_since(self, db_with_session):
        result = CliRunner().invoke(main, ["top", "--db", str(db_with_session), "--since", "soon"])
        assert result.exit_code == 2
        assert "1M15d7h10m5s" in result.output

    def test_top_no_database(self, tmp_path):
        result = CliRunner().invoke(main, ["top", "--db", str(tmp_path / "missing.db")])
        assert result.exit_code == 1
        assert "No database found" in result.output

    def test_with_command(self, db_with_session):
        result = CliRunner().invoke(
            main, ["with", "alice", "bob", "--db", str(db_with_session), "--json"]
        )
        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert [(d["first"], d["second"], d["total_ms"]) for d in data] == [
            ("alice", "alice", 600_000),
            ("bob", "bob", 600_000),
            ("alice", "bob", 300_000),
        ]

    def test_with_command_no_self(self, db_with_session):
        result = CliRunner().invoke(
            main, ["with", "alice", "bob", "--no-self", "--db", str(db_with_session), "--json"]
        )
        data = json.loads(result.output)
        assert [(d["first"], d["second"]) for d in data] == [("alice", "bob")]


class TestStatusAndPurge:
    """Tests for the status and purge commands."""

    def test_status(self, db_with_session):
        result = CliRunner().invoke(main, ["status", "--db", str(db_with_session)])
        assert result.exit_code == 0
        assert "Open intervals: 0" in result.output
        assert "Intervals stored: 2" in result.output

    def test_purge_keeps_recent(self, db_with_session):
        result = CliRunner().invoke(main, ["purge", "--db", str(db_with_session)])
        assert result.exit_code == 0
        assert "Purged 0 intervals" in result.output

    def test_purge_zero_retention(self, db_with_session):
        with IntervalStore.open(db_with_session) as store:
            store._conn.execute("UPDATE intervals SET created_at = '2000-01-01T00:00:00Z'")
            store._conn.commit()
        result = CliRunner().invoke(main, ["purge", "--db", str(db_with_session), "--hours", "1"])
        assert "Purged 2 intervals" in result.output


class TestParseSpan:
    """Tests for relative time spans."""

    def test_single_unit(self):
        assert parse_span("90m") == timedelta(minutes=90)

    def test_combined_units(self):
        assert parse_span("1d12h") == timedelta(days=1, hours=12)
        assert parse_span("1M15d") == timedelta(days=45)

    @pytest.mark.parametrize("value", ["", "abc", "5x", "10", "5m garbage"])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            parse_span(value)

    def test_parse_since_span(self):
        now = datetime(2025, 1, 25, 12, 0, tzinfo=timezone.utc)
        assert parse_since("2h", now=now) == datetime(2025, 1, 25, 10, 0, tzinfo=timezone.utc)

    def test_parse_since_iso(self):
        assert parse_since("2025-01-25T10:00:00Z") == datetime(2025, 1, 25, 10, 0, tzinfo=timezone.utc)
        assert parse_since("2025-01-25T10:00:00").tzinfo is not None


class TestFormatting:
    """Tests for output helpers."""

    def test_format_duration(self):
        assert format_duration(0) == "0m"
        assert format_duration(30_000) == "<1m"
        assert format_duration(300_000) == "5m"
        assert format_duration(5_400_000) == "1h 30m"
        assert format_duration(2 * 86_400_000 + 60_000) == "2d 0h 1m"

    def test_progress_bar(self):
        assert make_progress_bar(0, 10, width=4) == "░░░░"
        assert make_progress_bar(10, 10, width=4) == "████"
        assert make_progress_bar(5, 10, width=4) == "██░░"
