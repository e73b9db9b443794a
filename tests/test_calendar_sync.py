import datetime as dt
import sqlite3

import pytest

from app import calendar_sync
from app.db import SCHEMA


@pytest.fixture
def conn():
    connection = sqlite3.connect(":memory:")
    connection.row_factory = sqlite3.Row
    connection.executescript(SCHEMA)
    yield connection
    connection.close()


ICS = (
    "BEGIN:VCALENDAR\r\n"
    "BEGIN:VEVENT\r\n"
    "UID:abc-123@example.org\r\n"
    "DTSTART:20260305T143000Z\r\n"
    "DTEND:20260305T153000Z\r\n"
    "SUMMARY:Quarterly review\\, Lusaka\r\n"
    "DESCRIPTION:First line that is long enough to be folded across \r\n"
    " two physical lines\r\n"
    "END:VEVENT\r\n"
    "BEGIN:VEVENT\r\n"
    "DTSTART;VALUE=DATE:20260310\r\n"
    "SUMMARY:Field visit\r\n"
    "END:VEVENT\r\n"
    "BEGIN:VEVENT\r\n"
    "SUMMARY:No start\r\n"
    "END:VEVENT\r\n"
    "END:VCALENDAR\r\n"
)


def test_parse_ics_unfolds_and_unescapes():
    events = calendar_sync.parse_ics(ICS)
    assert len(events) == 2
    first, second = events
    assert first["title"] == "Quarterly review, Lusaka"
    assert first["description"] == "First line that is long enough to be folded across two physical lines"
    assert first["start_at"] == "2026-03-05T14:30:00+00:00"
    assert first["external_id"] == "abc-123@example.org"
    assert first["source"] == "ics"
    assert second["start_at"] == "2026-03-10T09:00:00+00:00"
    assert second["end_at"] == "2026-03-10T10:00:00+00:00"
    assert second["external_id"] is None


def test_parse_google_csv_combines_date_and_time_columns():
    content = (
        "Subject,Start Date,Start Time,End Date,End Time,Location\n"
        "Partner meeting,03/05/2026,2:30 PM,03/05/2026,4:00 PM,Office\n"
        "Bad row,not a date,,,,\n"
        "Data review,2026-03-06,,,,\n"
    )
    events = calendar_sync.parse_google_csv(content)
    assert [e["title"] for e in events] == ["Partner meeting", "Data review"]
    assert events[0]["start_at"] == "2026-03-05T14:30:00+00:00"
    assert events[0]["end_at"] == "2026-03-05T16:00:00+00:00"
    assert events[0]["location"] == "Office"
    assert events[1]["end_at"] == "2026-03-06T01:00:00+00:00"


def test_build_ics_escapes_folds_and_reads_back():
    event = {
        "id": 5,
        "event_type": "custom",
        "title": "Board, review",
        "start_at": "2026-03-05T14:30:00+00:00",
        "end_at": "2026-03-05T15:30:00+00:00",
        "description": "x" * 100,
    }
    body = calendar_sync.build_ics([event, {"id": 6, "title": "No date"}], "Default Org")
    assert body.startswith("BEGIN:VCALENDAR\r\n")
    assert "X-WR-CALNAME:Default Org" in body
    assert "UID:custom-5@meridian.local" in body
    assert "DTSTART:20260305T143000Z" in body
    assert "SUMMARY:Board\\, review" in body
    assert body.count("BEGIN:VEVENT") == 1
    assert all(len(line) <= 75 for line in body.split("\r\n"))

    parsed = calendar_sync.parse_ics(body)
    assert parsed[0]["title"] == "Board, review"
    assert parsed[0]["description"] == "x" * 100
    assert parsed[0]["external_id"] == "custom-5@meridian.local"


def test_escaped_backslash_before_n_is_not_a_newline():
    windows_path = "C:\\new\\reports; draft,\nsecond line"
    body = calendar_sync.build_ics(
        [{"id": 7, "event_type": "custom", "title": "Paths", "start_at": "2026-03-05T14:30:00+00:00", "description": windows_path}],
        "Default Org",
    )
    assert calendar_sync.parse_ics(body)[0]["description"] == windows_path

    ics = "BEGIN:VEVENT\r\nDTSTART:20260305T143000Z\r\nSUMMARY:a\\\\nb\\Nc\r\nEND:VEVENT\r\n"
    assert calendar_sync.parse_ics(ics)[0]["title"] == "a\\nb\nc"


def test_derived_events_from_projects_and_periods():
    projects = [{"id": 1, "name": "Water", "start_date": "2026-01-01", "end_date": None}]
    periods = [{"id": 9, "period_key": "Q1-2026", "due_date": "2026-04-15", "indicator_name": "People reached", "project_id": 1}]
    events = calendar_sync.derived_events(projects, periods)
    assert [(e["id"], e["title"], e["event_type"]) for e in events] == [
        ("p1-project_start", "Water starts", "project_start"),
        ("ip9", "People reached report due (Q1-2026)", "target_date"),
    ]
    assert events[1]["start_at"] == "2026-04-15T09:00:00+00:00"
    assert all(e["source"] == "derived" for e in events)


def test_events_by_day_sorts_within_day():
    events = [
        {"title": "late", "start_at": "2026-03-05T15:00:00+00:00"},
        {"title": "early", "start_at": "2026-03-05T08:00:00+00:00"},
        {"title": "next", "start_at": "2026-03-06T08:00:00+00:00"},
    ]
    grouped = calendar_sync.events_by_day(events)
    assert [e["title"] for e in grouped["2026-03-05"]] == ["early", "late"]
    assert list(grouped) == ["2026-03-05", "2026-03-06"]


def test_month_grid_starts_on_monday():
    weeks = calendar_sync.month_grid(dt.date(2026, 2, 14))
    assert len(weeks) == 5
    assert weeks[0] == [None] * 6 + [dt.date(2026, 2, 1)]
    assert weeks[-1] == [dt.date(2026, 2, d) for d in range(23, 29)] + [None]
    assert all(len(week) == 7 for week in weeks)


def test_google_event_times():
    all_day = {"start": {"date": "2026-05-01"}, "end": {"date": "2026-05-02"}}
    assert calendar_sync.gcal_event_times(all_day) == ("2026-05-01T09:00:00+00:00", "2026-05-02T10:00:00+00:00")
    timed = {"start": {"dateTime": "2026-05-01T10:00:00-04:00"}}
    assert calendar_sync.gcal_event_times(timed) == ("2026-05-01T14:00:00+00:00", "2026-05-01T15:00:00+00:00")
    assert calendar_sync.gcal_event_times({}) == (None, None)


def test_upsert_external_event_updates_by_uid(conn):
    event = calendar_sync.parse_ics(ICS)[0]
    assert calendar_sync.upsert_external_event(conn, 1, 1, event) == "inserted"
    changed = dict(event, title="Quarterly review (moved)")
    assert calendar_sync.upsert_external_event(conn, 1, 1, changed) == "updated"
    rows = conn.execute("SELECT title FROM calendar_events WHERE organization_id = 1").fetchall()
    assert [r["title"] for r in rows] == ["Quarterly review (moved)"]
    # No UID means every import inserts.
    undated = calendar_sync.parse_ics(ICS)[1]
    calendar_sync.upsert_external_event(conn, 1, 1, undated)
    assert calendar_sync.upsert_external_event(conn, 1, 1, undated) == "inserted"


def test_sync_settings_defaults_and_updates(conn):
    settings = calendar_sync.load_sync_settings(conn, 1)
    assert settings["lookahead_days"] == 90
    assert not settings["connected"]

    calendar_sync.save_sync_settings(conn, 1, "team@example.org", 14, 60, True, "Connected")
    settings = calendar_sync.load_sync_settings(conn, 1)
    assert settings["calendar_id"] == "team@example.org"
    assert settings["connected"] == 1
    assert settings["last_pull_at"] is None

    calendar_sync.save_sync_settings(conn, 1, "team@example.org", 14, 60, True, "Pulled 2 new", touch_pull=True)
    settings = calendar_sync.load_sync_settings(conn, 1)
    assert settings["last_status"] == "Pulled 2 new"
    assert settings["last_pull_at"]


def test_pull_without_credentials_reports_error(conn, monkeypatch):
    monkeypatch.setattr(calendar_sync, "GCAL_ACCESS_TOKEN", "")
    monkeypatch.setattr(calendar_sync, "GCAL_CLIENT_ID", "")
    assert calendar_sync.gcal_api_configured() is False
    inserted, updated, error = calendar_sync.pull_google_calendar_events(conn, 1, 1, "primary", 30, 90)
    assert (inserted, updated) == (0, 0)
    assert "not configured" in error
