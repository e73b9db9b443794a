"""Calendar import/export and Google Calendar pull sync."""

from __future__ import annotations

import csv
import datetime as dt
import io
import json
import logging
import os
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple
from urllib import error as urlerror
from urllib import request as urlrequest
from urllib.parse import quote, urlencode

from app.common import iso, parse_datetime, parse_iso_date, parse_rfc3339_datetime, utcnow

log = logging.getLogger(__name__)

GCAL_CLIENT_ID = os.environ.get("MERIDIAN_GCAL_CLIENT_ID", "")
GCAL_CLIENT_SECRET = os.environ.get("MERIDIAN_GCAL_CLIENT_SECRET", "")
GCAL_REFRESH_TOKEN = os.environ.get("MERIDIAN_GCAL_REFRESH_TOKEN", "")
GCAL_ACCESS_TOKEN = os.environ.get("MERIDIAN_GCAL_ACCESS_TOKEN", "")
GCAL_DEFAULT_CALENDAR_ID = os.environ.get("MERIDIAN_GCAL_CALENDAR_ID", "primary")
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API_BASE = "https://www.googleapis.com/calendar/v3"

EVENT_TYPES = ["project_start", "project_end", "target_date", "custom"]
EVENT_SOURCES = ["manual", "ics", "google_csv", "google"]
EVENT_TYPE_LABELS = {
    "project_start": "Project start",
    "project_end": "Project end",
    "target_date": "Reporting due",
    "custom": "Event",
}


# -- file imports -----------------------------------------------------------


def _one_hour_after(start_at: str) -> str:
    return (dt.datetime.fromisoformat(start_at) + dt.timedelta(hours=1)).isoformat()


def parse_google_csv(content: str) -> List[Dict[str, Any]]:
    rows: List[Dict[str, Any]] = []
    reader = csv.DictReader(io.StringIO(content))
    for raw in reader:
        title = raw.get("Subject") or raw.get("Title") or raw.get("Event Title") or raw.get("Summary") or "Untitled"
        start_raw = raw.get("Start") or f"{raw.get('Start Date', '')} {raw.get('Start Time', '')}".strip()
        end_raw = raw.get("End") or f"{raw.get('End Date', '')} {raw.get('End Time', '')}".strip()
        start_at = parse_datetime(start_raw)
        if not start_at:
            continue
        end_at = parse_datetime(end_raw) or _one_hour_after(start_at)
        rows.append(
            {
                "title": title.strip(),
                "start_at": start_at,
                "end_at": end_at,
                "description": raw.get("Description", "") or "",
                "location": raw.get("Location", "") or "",
                "event_type": "custom",
                "source": "google_csv",
                "external_id": None,
            }
        )
    return rows


def _unfold_ics(content: str) -> List[str]:
    lines: List[str] = []
    for raw in content.splitlines():
        if raw.startswith((" ", "\t")) and lines:
            lines[-1] += raw[1:]
        else:
            lines.append(raw.rstrip("\r"))
    return lines


_ICS_ESCAPE_RE = re.compile(r"\\(.)")


def _ics_unescape(value: str) -> str:
    return _ICS_ESCAPE_RE.sub(lambda m: "\n" if m.group(1) in "nN" else m.group(1), value)


def parse_ics_datetime(value: str) -> Optional[str]:
    if not value:
        return None
    for fmt in ("%Y%m%dT%H%M%SZ", "%Y%m%dT%H%M%S", "%Y%m%d"):
        try:
            parsed = dt.datetime.strptime(value, fmt)
        except ValueError:
            continue
        if fmt == "%Y%m%d":
            parsed = parsed.replace(hour=9)
        return parsed.replace(tzinfo=dt.timezone.utc).isoformat()
    return None


def parse_ics(content: str) -> List[Dict[str, Any]]:
    rows: List[Dict[str, Any]] = []
    current: Optional[Dict[str, str]] = None
    for line in _unfold_ics(content):
        stripped = line.strip()
        if stripped == "BEGIN:VEVENT":
            current = {}
            continue
        if stripped == "END:VEVENT":
            if current is not None:
                event = _ics_event(current)
                if event:
                    rows.append(event)
            current = None
            continue
        if current is None or ":" not in stripped:
            continue
        name_part, value = stripped.split(":", 1)
        name = name_part.split(";", 1)[0].upper()
        current.setdefault(name, value)
    return rows


def _ics_event(fields: Mapping[str, str]) -> Optional[Dict[str, Any]]:
    start_at = parse_ics_datetime(fields.get("DTSTART", "").strip())
    if not start_at:
        return None
    end_at = parse_ics_datetime(fields.get("DTEND", "").strip()) or _one_hour_after(start_at)
    return {
        "title": _ics_unescape(fields.get("SUMMARY", "").strip()) or "Untitled",
        "start_at": start_at,
        "end_at": end_at,
        "description": _ics_unescape(fields.get("DESCRIPTION", "").strip()),
        "location": _ics_unescape(fields.get("LOCATION", "").strip()),
        "event_type": "custom",
        "source": "ics",
        "external_id": fields.get("UID", "").strip() or None,
    }


# -- ICS export ---------------------------------------------------------------


def _ics_escape(value: object) -> str:
    text = str(value or "")
    return text.replace("\\", "\\\\").replace(";", "\\;").replace(",", "\\,").replace("\n", "\\n")


def _ics_stamp(value: object) -> str:
    parsed = parse_rfc3339_datetime(str(value or ""))
    if parsed is None:
        day = parse_iso_date(value)
        if day is None:
            return ""
        parsed = dt.datetime.combine(day, dt.time(hour=9), tzinfo=dt.timezone.utc)
    return parsed.strftime("%Y%m%dT%H%M%SZ")


def _fold(line: str) -> str:
    if len(line) <= 75:
        return line
    chunks = [line[:75]]
    rest = line[75:]
    while rest:
        chunks.append(" " + rest[:74])
        rest = rest[74:]
    return "\r\n".join(chunks)


def build_ics(events: Iterable[Mapping[str, Any]], calendar_name: str, domain: str = "meridian.local") -> str:
    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "PRODID:-//Meridian M&E//Calendar//EN",
        "CALSCALE:GREGORIAN",
        f"X-WR-CALNAME:{_ics_escape(calendar_name)}",
    ]
    stamp = utcnow().strftime("%Y%m%dT%H%M%SZ")
    for event in events:
        start = _ics_stamp(event.get("start_at"))
        if not start:
            continue
        end = _ics_stamp(event.get("end_at")) or start
        uid = event.get("uid") or f"{event.get('event_type') or 'event'}-{event.get('id')}@{domain}"
        lines += [
            "BEGIN:VEVENT",
            f"UID:{uid}",
            f"DTSTAMP:{stamp}",
            f"DTSTART:{start}",
            f"DTEND:{end}",
            f"SUMMARY:{_ics_escape(event.get('title'))}",
        ]
        if event.get("description"):
            lines.append(f"DESCRIPTION:{_ics_escape(event.get('description'))}")
        if event.get("location"):
            lines.append(f"LOCATION:{_ics_escape(event.get('location'))}")
        lines.append(f"CATEGORIES:{EVENT_TYPE_LABELS.get(str(event.get('event_type') or 'custom'), 'Event')}")
        lines.append("END:VEVENT")
    lines.append("END:VCALENDAR")
    return "\r\n".join(_fold(line) for line in lines) + "\r\n"


# -- derived events ----------------------------------------------------------


def derived_events(projects: Iterable[Mapping[str, Any]], periods: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    """Events implied by project dates and indicator period due dates."""
    events: List[Dict[str, Any]] = []
    for project in projects:
        for field, event_type, label in (("start_date", "project_start", "starts"), ("end_date", "project_end", "ends")):
            day = parse_iso_date(project.get(field))
            if day is None:
                continue
            start = dt.datetime.combine(day, dt.time(hour=9), tzinfo=dt.timezone.utc)
            events.append(
                {
                    "id": f"p{project['id']}-{event_type}",
                    "title": f"{project.get('name') or 'Project'} {label}",
                    "start_at": start.isoformat(),
                    "end_at": (start + dt.timedelta(hours=1)).isoformat(),
                    "event_type": event_type,
                    "project_id": project["id"],
                    "source": "derived",
                }
            )
    for period in periods:
        day = parse_iso_date(period.get("due_date"))
        if day is None:
            continue
        start = dt.datetime.combine(day, dt.time(hour=9), tzinfo=dt.timezone.utc)
        events.append(
            {
                "id": f"ip{period['id']}",
                "title": f"{period.get('indicator_name') or 'Indicator'} report due ({period.get('period_key') or ''})",
                "start_at": start.isoformat(),
                "end_at": (start + dt.timedelta(hours=1)).isoformat(),
                "event_type": "target_date",
                "project_id": period.get("project_id"),
                "source": "derived",
            }
        )
    return events


def events_by_day(events: Iterable[Mapping[str, Any]]) -> Dict[str, List[Mapping[str, Any]]]:
    out: Dict[str, List[Mapping[str, Any]]] = {}
    for event in events:
        day = str(event.get("start_at") or "")[:10]
        if day:
            out.setdefault(day, []).append(event)
    for items in out.values():
        items.sort(key=lambda e: str(e.get("start_at") or ""))
    return out


def month_grid(anchor: dt.date) -> List[List[Optional[dt.date]]]:
    """Weeks (Monday first) covering the month of ``anchor``; days outside the month are None."""
    first = anchor.replace(day=1)
    weeks: List[List[Optional[dt.date]]] = []
    week: List[Optional[dt.date]] = [None] * first.weekday()
    day = first
    while day.month == first.month:
        week.append(day)
        if len(week) == 7:
            weeks.append(week)
            week = []
        day += dt.timedelta(days=1)
    if week:
        weeks.append(week + [None] * (7 - len(week)))
    return weeks


# -- Google Calendar ----------------------------------------------------------


def gcal_api_configured() -> bool:
    if GCAL_ACCESS_TOKEN:
        return True
    return bool(GCAL_CLIENT_ID and GCAL_CLIENT_SECRET and GCAL_REFRESH_TOKEN)


def gcal_access_token() -> Tuple[Optional[str], str]:
    if GCAL_ACCESS_TOKEN:
        return GCAL_ACCESS_TOKEN, ""
    if not gcal_api_configured():
        return None, "Google Calendar API credentials are not configured."
    payload = urlencode(
        {
            "client_id": GCAL_CLIENT_ID,
            "client_secret": GCAL_CLIENT_SECRET,
            "refresh_token": GCAL_REFRESH_TOKEN,
            "grant_type": "refresh_token",
        }
    ).encode("utf-8")
    req = urlrequest.Request(
        GOOGLE_TOKEN_URL,
        data=payload,
        method="POST",
        headers={"Content-Type": "application/x-www-form-urlencoded"},
    )
    try:
        with urlrequest.urlopen(req, timeout=15) as resp:
            data = json.loads(resp.read().decode("utf-8", errors="ignore"))
    except urlerror.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="ignore")[:400]
        return None, f"OAuth token error ({exc.code}): {detail or 'No details'}"
    except Exception as exc:
        return None, f"OAuth token error: {str(exc)[:240]}"
    token = str(data.get("access_token") or "")
    if not token:
        return None, "OAuth token response missing access_token."
    return token, ""


def gcal_request(
    method: str,
    endpoint: str,
    access_token: str,
    params: Optional[Dict[str, str]] = None,
) -> Tuple[Optional[Dict[str, Any]], str]:
    url = endpoint if endpoint.startswith("http") else f"{GOOGLE_CALENDAR_API_BASE}{endpoint}"
    if params:
        url = f"{url}{'&' if '?' in url else '?'}{urlencode(params)}"
    req = urlrequest.Request(url, method=method.upper())
    req.add_header("Authorization", f"Bearer {access_token}")
    req.add_header("Accept", "application/json")
    try:
        with urlrequest.urlopen(req, timeout=20) as resp:
            raw = resp.read().decode("utf-8", errors="ignore")
            return (json.loads(raw) if raw else {}), ""
    except urlerror.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="ignore")[:600]
        return None, f"Google API {exc.code}: {detail or exc.reason}"
    except Exception as exc:
        return None, f"Google API request failed: {str(exc)[:300]}"


def gcal_event_times(item: Mapping[str, Any]) -> Tuple[Optional[str], Optional[str]]:
    start_obj = item.get("start") if isinstance(item.get("start"), dict) else {}
    end_obj = item.get("end") if isinstance(item.get("end"), dict) else {}
    start_dt = parse_rfc3339_datetime(str(start_obj.get("dateTime", "")))
    end_dt = parse_rfc3339_datetime(str(end_obj.get("dateTime", "")))
    start_iso = start_dt.isoformat() if start_dt else None
    end_iso = end_dt.isoformat() if end_dt else None

    if not start_iso:
        start_date = parse_iso_date(start_obj.get("date"))
        if start_date:
            start_iso = dt.datetime.combine(start_date, dt.time(hour=9, tzinfo=dt.timezone.utc)).isoformat()
    if not end_iso:
        end_date = parse_iso_date(end_obj.get("date"))
        if end_date:
            end_iso = dt.datetime.combine(end_date, dt.time(hour=10, tzinfo=dt.timezone.utc)).isoformat()
    if start_iso and not end_iso:
        end_iso = _one_hour_after(start_iso)
    return start_iso, end_iso


def load_sync_settings(conn, org_id: int) -> Dict[str, Any]:
    row = conn.execute(
        """
        SELECT calendar_id, lookback_days, lookahead_days, connected, last_pull_at, last_status
        FROM calendar_sync_settings
        WHERE organization_id = ?
        """,
        (org_id,),
    ).fetchone()
    defaults = {
        "calendar_id": GCAL_DEFAULT_CALENDAR_ID or "primary",
        "lookback_days": 30,
        "lookahead_days": 90,
        "connected": 0,
        "last_pull_at": "",
        "last_status": "",
    }
    if not row:
        return defaults
    out = dict(defaults)
    out.update({k: row[k] for k in row.keys()})
    return out


def save_sync_settings(
    conn,
    org_id: int,
    calendar_id: str,
    lookback_days: int,
    lookahead_days: int,
    connected: bool,
    status: str = "",
    touch_pull: bool = False,
) -> None:
    now = iso()
    existing = conn.execute("SELECT id FROM calendar_sync_settings WHERE organization_id = ?", (org_id,)).fetchone()
    if existing:
        conn.execute(
            """
            UPDATE calendar_sync_settings
            SET calendar_id = ?, lookback_days = ?, lookahead_days = ?, connected = ?, last_status = ?,
                last_pull_at = CASE WHEN ? THEN ? ELSE last_pull_at END,
                updated_at = ?
            WHERE id = ?
            """,
            (calendar_id, lookback_days, lookahead_days, 1 if connected else 0, status, 1 if touch_pull else 0, now, now, existing["id"]),
        )
        return
    conn.execute(
        """
        INSERT INTO calendar_sync_settings
        (organization_id, calendar_id, lookback_days, lookahead_days, connected, last_pull_at, last_status, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (org_id, calendar_id, lookback_days, lookahead_days, 1 if connected else 0, now if touch_pull else None, status, now, now),
    )


def upsert_external_event(conn, org_id: int, user_id: int, event: Mapping[str, Any]) -> str:
    """Insert or refresh an imported event keyed by (source, external_id). Returns 'inserted' or 'updated'."""
    external_id = event.get("external_id")
    existing = None
    if external_id:
        existing = conn.execute(
            "SELECT id FROM calendar_events WHERE organization_id = ? AND source = ? AND external_id = ?",
            (org_id, event["source"], external_id),
        ).fetchone()
    if existing:
        conn.execute(
            """
            UPDATE calendar_events
            SET title = ?, description = ?, location = ?, start_at = ?, end_at = ?, updated_at = ?
            WHERE id = ?
            """,
            (event["title"], event.get("description") or "", event.get("location") or "", event["start_at"], event["end_at"], iso(), existing["id"]),
        )
        return "updated"
    conn.execute(
        """
        INSERT INTO calendar_events
        (organization_id, project_id, title, description, location, start_at, end_at, event_type, source, external_id, created_by, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            org_id,
            event.get("project_id"),
            event["title"],
            event.get("description") or "",
            event.get("location") or "",
            event["start_at"],
            event["end_at"],
            event.get("event_type") or "custom",
            event["source"],
            external_id,
            user_id,
            iso(),
            iso(),
        ),
    )
    return "inserted"


def pull_google_calendar_events(conn, org_id: int, user_id: int, calendar_id: str, lookback_days: int, lookahead_days: int) -> Tuple[int, int, str]:
    token, token_error = gcal_access_token()
    if not token:
        return 0, 0, token_error

    time_min = (utcnow() - dt.timedelta(days=lookback_days)).isoformat().replace("+00:00", "Z")
    time_max = (utcnow() + dt.timedelta(days=lookahead_days)).isoformat().replace("+00:00", "Z")
    endpoint = f"/calendars/{quote(calendar_id, safe='')}/events"
    page_token = ""
    inserted = 0
    updated = 0

    for _page in range(10):
        params = {
            "singleEvents": "true",
            "orderBy": "startTime",
            "maxResults": "250",
            "timeMin": time_min,
            "timeMax": time_max,
        }
        if page_token:
            params["pageToken"] = page_token
        payload, error = gcal_request("GET", endpoint, token, params=params)
        if error:
            log.warning("google calendar pull failed for org %s: %s", org_id, error)
            return inserted, updated, error
        if not payload:
            break
        items = payload.get("items")
        for item in items if isinstance(items, list) else []:
            if not isinstance(item, dict):
                continue
            external_id = str(item.get("id") or "").strip()
            start_at, end_at = gcal_event_times(item)
            if not external_id or not start_at or not end_at:
                continue
            outcome = upsert_external_event(
                conn,
                org_id,
                user_id,
                {
                    "title": str(item.get("summary") or "Untitled"),
                    "description": str(item.get("description") or ""),
                    "location": str(item.get("location") or ""),
                    "start_at": start_at,
                    "end_at": end_at,
                    "event_type": "custom",
                    "source": "google",
                    "external_id": external_id,
                },
            )
            if outcome == "inserted":
                inserted += 1
            else:
                updated += 1
        page_token = str(payload.get("nextPageToken") or "")
        if not page_token:
            break

    log.info("google calendar pull for org %s: %s inserted, %s updated", org_id, inserted, updated)
    return inserted, updated, ""
