#!/usr/bin/env python3
"""Meridian M&E

A multi-tenant monitoring and evaluation platform: projects, results frameworks, indicators with
reporting periods, disaggregated submissions with a review workflow, shareable data-collection
forms, dataset imports with charts, a calendar with Google sync, team messaging and the
Performance Indicator Tracking Table (PITT) export.
"""

from __future__ import annotations

import datetime as dt
import hashlib
import hmac
import io
import json
import logging
import os
import re
import secrets
import sqlite3
import threading
from pathlib import Path
from socketserver import ThreadingMixIn
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple
from urllib.parse import parse_qs, quote, unquote
from wsgiref.simple_server import WSGIServer, make_server

from werkzeug.formparser import parse_form_data

from app import calendar_sync
from app.charts import (
    AGGREGATION_TYPES,
    CHART_TYPES,
    build_figure,
    chart_payload,
    default_chart_config,
    sanitize_chart_config,
    transform_for_chart,
)
from app.common import (
    clamp_int,
    h,
    hash_password,
    iso,
    parse_date,
    parse_datetime,
    parse_iso_date,
    parse_rfc3339_datetime,
    slugify,
    to_int,
    token_hash,
    utcnow,
    verify_password,
)
from app.data_import import (
    TOTAL_KEY,
    ImportFormatError,
    build_data_template,
    build_dataset,
    combination_key,
    combination_label,
    generate_disagg_combinations,
    import_data_template,
    page_rows,
    template_filename,
    workbook_bytes,
)
from app.db import DB_PATH, db_connect, ensure_bootstrap, ensure_org_defaults
from app.indicators import (
    AGGREGATION_RULES,
    COUNTED_STATUSES,
    INDICATOR_DIRECTIONS,
    INDICATOR_TYPES,
    SUBMISSION_STATUSES,
    UNIT_TYPES,
    FormulaError,
    aggregate_values,
    is_on_track,
    to_number,
    transition_min_role,
    transition_submission,
    validate_submission_form,
    validate_wizard_step,
)
from app.periods import CALENDAR_TYPES, INDICATOR_FREQUENCIES, generate_periods, period_status
from app.pitt import PittDataError, assemble_pitt, pitt_filename, pitt_workbook_bytes

log = logging.getLogger(__name__)

APP_NAME = "Meridian M&E"
APP_TAGLINE = "Monitoring, evaluation and reporting for programme teams"
BASE_DIR = Path(__file__).resolve().parent.parent
STATIC_DIR = BASE_DIR / "app" / "static"
SECRET_KEY = os.environ.get("MERIDIAN_SECRET_KEY", "change-this-secret-in-production")
COOKIE_SECURE = os.environ.get("MERIDIAN_COOKIE_SECURE", "0") == "1"
SESSION_DAYS = int(os.environ.get("MERIDIAN_SESSION_DAYS", "14"))
HOST = os.environ.get("MERIDIAN_HOST", os.environ.get("HOST", "127.0.0.1"))
PORT = int(os.environ.get("MERIDIAN_PORT", os.environ.get("PORT", "8080")))
WSGI_THREADED = os.environ.get("MERIDIAN_WSGI_THREADED", "1") == "1"
LOG_LEVEL = os.environ.get("MERIDIAN_LOG_LEVEL", "INFO").strip().upper()
MAX_UPLOAD_BYTES = int(os.environ.get("MERIDIAN_MAX_UPLOAD_BYTES", str(20 * 1024 * 1024)))

PROJECT_STATUSES = ["planning", "active", "on_hold", "completed", "cancelled"]
FORM_LINK_STATUSES = ["active", "paused", "closed"]
NOTIFICATION_KINDS = ["submission", "mention", "message", "project", "system"]

ROLE_RANK = {
    "viewer": 1,
    "field_staff": 2,
    "manager": 3,
    "admin": 4,
    "owner": 5,
}
MEMBERSHIP_ROLE_OPTIONS = ["viewer", "field_staff", "manager", "admin", "owner"]

NAV_PRIMARY_ITEMS: List[Dict[str, str]] = [
    {"key": "dashboard", "path": "/dashboard", "label": "Dashboard", "min_role": "viewer"},
    {"key": "projects", "path": "/projects", "label": "Projects", "min_role": "viewer"},
    {"key": "submissions", "path": "/submissions", "label": "Submissions", "min_role": "viewer"},
    {"key": "datasets", "path": "/datasets", "label": "Data", "min_role": "viewer"},
    {"key": "calendar", "path": "/calendar", "label": "Calendar", "min_role": "viewer"},
    {"key": "messages", "path": "/messages", "label": "Messages", "min_role": "viewer"},
    {"key": "statistics", "path": "/statistics", "label": "Statistics", "min_role": "viewer"},
]

NAV_ACCOUNT_ITEMS: List[Dict[str, str]] = [
    {"key": "notifications", "path": "/notifications", "label": "Notifications", "min_role": "viewer"},
    {"key": "users", "path": "/admin/users", "label": "Users", "min_role": "manager"},
    {"key": "settings", "path": "/settings", "label": "Units & Disaggregations", "min_role": "manager"},
    {"key": "profile", "path": "/profile", "label": "Profile", "min_role": "viewer"},
]

MENTION_TOKEN_RE = re.compile(r"@([A-Za-z0-9_.+\-@]+)")
RATE_LIMIT: Dict[str, List[dt.datetime]] = {}
RATE_LIMIT_LOCK = threading.Lock()
RESET_REQUESTED_NOTICE = "If an active account uses that email, your organization admins have been asked to send you a reset link."


def configure_logging() -> None:
    level = getattr(logging, LOG_LEVEL, logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def sign_value(value: str) -> str:
    digest = hmac.new(SECRET_KEY.encode("utf-8"), value.encode("utf-8"), hashlib.sha256).hexdigest()
    return f"{value}.{digest}"


def verify_signed_value(signed: str) -> Optional[str]:
    if not signed or "." not in signed:
        return None
    value, digest = signed.rsplit(".", 1)
    expected = hmac.new(SECRET_KEY.encode("utf-8"), value.encode("utf-8"), hashlib.sha256).hexdigest()
    if hmac.compare_digest(digest, expected):
        return value
    return None


def fmt_number(value: object, digits: int = 2) -> str:
    number = to_number(value)
    if number is None:
        return "-"
    if float(number).is_integer():
        return f"{int(number):,}"
    return f"{number:,.{digits}f}"


def label(value: object) -> str:
    return str(value or "").replace("_", " ").title()


class Request:
    """Thin wrapper over the WSGI environ with lazy form/file parsing."""

    def __init__(self, environ: dict):
        self.environ = environ
        self.method = environ.get("REQUEST_METHOD", "GET").upper()
        self.path = environ.get("PATH_INFO", "/") or "/"
        parsed_query = parse_qs(environ.get("QUERY_STRING", ""), keep_blank_values=True)
        self.query = {k: v[0] for k, v in parsed_query.items()}
        self.query_lists = parsed_query
        self.cookies = self._parse_cookies(environ.get("HTTP_COOKIE", ""))
        self._form: Optional[Dict[str, str]] = None
        self._form_lists: Dict[str, List[str]] = {}
        self._files: Optional[Dict[str, Any]] = None
        self._json: Optional[object] = None

    def _parse_cookies(self, raw_cookie: str) -> Dict[str, str]:
        cookies: Dict[str, str] = {}
        for token in (raw_cookie or "").split(";"):
            if "=" not in token:
                continue
            key, value = token.split("=", 1)
            cookies[key.strip()] = unquote(value.strip())
        return cookies

    @property
    def is_json(self) -> bool:
        return "application/json" in self.environ.get("CONTENT_TYPE", "")

    @property
    def form(self) -> Dict[str, str]:
        if self._form is None:
            self._parse_form_data()
        return self._form or {}

    def form_list(self, key: str) -> List[str]:
        if self._form is None:
            self._parse_form_data()
        return list(self._form_lists.get(key, []))

    @property
    def files(self) -> Dict[str, Any]:
        if self._files is None:
            self._parse_form_data()
        return self._files or {}

    def json(self) -> object:
        if self._json is None:
            try:
                length = int(self.environ.get("CONTENT_LENGTH") or 0)
            except ValueError:
                length = 0
            raw = self.environ["wsgi.input"].read(length) if length else b""
            try:
                self._json = json.loads(raw.decode("utf-8")) if raw else {}
            except (UnicodeDecodeError, json.JSONDecodeError):
                self._json = {}
        return self._json

    def _parse_form_data(self) -> None:
        self._form = {}
        self._files = {}
        if self.method not in {"POST", "PUT", "PATCH", "DELETE"} or self.is_json:
            return
        _stream, form, files = parse_form_data(self.environ, max_content_length=MAX_UPLOAD_BYTES)
        for key in form.keys():
            values = form.getlist(key)
            self._form_lists[key] = values
            self._form[key] = values[0] if values else ""
        for key in files.keys():
            upload = files.get(key)
            if upload is not None and upload.filename:
                self._files[key] = upload


class Response:
    """Simple response object that centralizes security headers."""

    def __init__(
        self,
        body: object = "",
        status: str = "200 OK",
        content_type: str = "text/html; charset=utf-8",
        headers: Optional[List[Tuple[str, str]]] = None,
    ):
        self.body = body.encode("utf-8") if isinstance(body, str) else bytes(body or b"")
        self.status = status
        self.content_type = content_type
        self.headers = headers or []

    def wsgi(self, start_response):
        sec_headers = [
            ("Content-Type", self.content_type),
            ("X-Frame-Options", "DENY"),
            ("X-Content-Type-Options", "nosniff"),
            ("Referrer-Policy", "strict-origin-when-cross-origin"),
            ("Cache-Control", "no-store"),
            (
                "Content-Security-Policy",
                "default-src 'self'; style-src 'self'; script-src 'self'; img-src 'self' data:; base-uri 'self'; form-action 'self'",
            ),
        ]
        start_response(self.status, sec_headers + self.headers)
        return [self.body]


def redirect(location: str, cookies: Optional[List[str]] = None) -> Response:
    headers = [("Location", location)]
    for cookie in cookies or []:
        headers.append(("Set-Cookie", cookie))
    return Response("", status="302 Found", headers=headers)


def json_response(payload: object, status: str = "200 OK") -> Response:
    return Response(json.dumps(payload, default=str), status=status, content_type="application/json; charset=utf-8")


def download_response(data: bytes, filename: str, content_type: str) -> Response:
    return Response(
        data,
        content_type=content_type,
        headers=[("Content-Disposition", f'attachment; filename="{filename}"')],
    )


XLSX_MIME = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def set_cookie(name: str, value: str, max_age: Optional[int] = None, path: str = "/") -> str:
    parts = [f"{name}={quote(value)}", f"Path={path}", "HttpOnly", "SameSite=Lax"]
    if COOKIE_SECURE:
        parts.append("Secure")
    if max_age is not None:
        parts.append(f"Max-Age={max_age}")
    return "; ".join(parts)


def clear_cookie(name: str, path: str = "/") -> str:
    parts = [f"{name}=", "Max-Age=0", f"Path={path}", "HttpOnly", "SameSite=Lax"]
    if COOKIE_SECURE:
        parts.append("Secure")
    return "; ".join(parts)


def notice_redirect(path: str, message: str) -> Response:
    joiner = "&" if "?" in path else "?"
    return redirect(f"{path}{joiner}msg={quote(message)}")


# -- sessions and authorization ---------------------------------------------


def create_session(conn, user_id: int, ip: str, user_agent: str) -> Tuple[str, str]:
    raw_token = secrets.token_urlsafe(32)
    csrf = secrets.token_urlsafe(24)
    expires = utcnow() + dt.timedelta(days=SESSION_DAYS)
    conn.execute(
        "INSERT INTO sessions (user_id, token_hash, csrf_token, expires_at, created_at, last_seen_at, ip_address, user_agent) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
        (user_id, token_hash(raw_token), csrf, expires.isoformat(), iso(), iso(), ip, user_agent[:200]),
    )
    return raw_token, csrf


ANONYMOUS: Dict[str, object] = {"user": None, "memberships": [], "active_org": None, "role": None, "csrf": ""}


def get_auth_context(conn, req: Request) -> Dict[str, object]:
    """Return the authenticated user and active organization for a request."""
    token = req.cookies.get("session_token")
    if not token:
        return dict(ANONYMOUS)

    session = conn.execute(
        """
        SELECT s.*, u.id AS user_id, u.email, u.name, u.timezone, u.is_active, u.is_superuser
        FROM sessions s
        JOIN users u ON u.id = s.user_id
        WHERE s.token_hash = ?
        """,
        (token_hash(token),),
    ).fetchone()
    if not session:
        return dict(ANONYMOUS)

    try:
        expires_at = dt.datetime.fromisoformat(session["expires_at"])
    except ValueError:
        expires_at = utcnow() - dt.timedelta(days=1)
    if expires_at < utcnow() or not session["is_active"]:
        conn.execute("DELETE FROM sessions WHERE id = ?", (session["id"],))
        conn.commit()
        return dict(ANONYMOUS)

    conn.execute("UPDATE sessions SET last_seen_at = ? WHERE id = ?", (iso(), session["id"]))

    memberships = conn.execute(
        """
        SELECT m.organization_id, m.role, o.name, o.slug, m.created_at
        FROM memberships m
        JOIN organizations o ON o.id = m.organization_id
        WHERE m.user_id = ?
        ORDER BY m.created_at, o.name
        """,
        (session["user_id"],),
    ).fetchall()
    if not memberships:
        return dict(ANONYMOUS)

    selected_org = verify_signed_value(req.cookies.get("active_org", ""))
    active = next((m for m in memberships if selected_org and str(m["organization_id"]) == str(selected_org)), memberships[0])
    return {
        "user": {
            "id": session["user_id"],
            "email": session["email"],
            "name": session["name"],
            "timezone": session["timezone"],
            "is_superuser": bool(session["is_superuser"]),
        },
        "memberships": memberships,
        "active_org": active,
        "role": active["role"],
        "csrf": session["csrf_token"],
    }


def role_allows(role: Optional[str], minimum: str) -> bool:
    if role is None:
        return False
    return ROLE_RANK.get(role, 0) >= ROLE_RANK.get(minimum, 99)


def parse_membership_role(raw_role: Optional[str], default: str = "field_staff") -> str:
    role = str(raw_role or default).strip().lower()
    return role if role in MEMBERSHIP_ROLE_OPTIONS else default


def assignable_membership_roles(actor_role: str) -> List[str]:
    if actor_role == "owner":
        return MEMBERSHIP_ROLE_OPTIONS
    return [role for role in MEMBERSHIP_ROLE_OPTIONS if ROLE_RANK[role] < ROLE_RANK.get(actor_role, 0)]


def enforce_rate_limit(ip: str, max_attempts: int = 8, window_minutes: int = 10) -> bool:
    now = utcnow()
    cutoff = now - dt.timedelta(minutes=window_minutes)
    with RATE_LIMIT_LOCK:
        for key in list(RATE_LIMIT):
            recent = [event for event in RATE_LIMIT[key] if event >= cutoff]
            if recent:
                RATE_LIMIT[key] = recent
            else:
                del RATE_LIMIT[key]
        history = RATE_LIMIT.setdefault(ip, [])
        if len(history) >= max_attempts:
            return False
        history.append(now)
        return True


def require_auth(ctx: Dict[str, object]) -> Optional[Response]:
    if not ctx.get("user"):
        return redirect("/login")
    return None


def require_role(ctx: Dict[str, object], minimum: str) -> Optional[Response]:
    if not role_allows(ctx.get("role"), minimum):
        return Response("<h1>403 Forbidden</h1>", status="403 Forbidden")
    return None


def validate_csrf(req: Request, ctx: Dict[str, object]) -> bool:
    if req.method not in {"POST", "PUT", "PATCH", "DELETE"}:
        return True
    csrf = req.environ.get("HTTP_X_CSRF_TOKEN", "") or req.query.get("csrf_token", "")
    if not csrf and not req.is_json:
        csrf = req.form.get("csrf_token", "")
    return bool(csrf and hmac.compare_digest(str(csrf), str(ctx.get("csrf") or "")))


def create_password_reset(conn, user_id: int, created_by: Optional[int] = None, hours: int = 24) -> Tuple[str, str]:
    raw_token = secrets.token_urlsafe(32)
    expires = utcnow() + dt.timedelta(hours=hours)
    conn.execute(
        "INSERT INTO password_resets (user_id, token_hash, expires_at, used_at, created_by, created_at) VALUES (?, ?, ?, NULL, ?, ?)",
        (user_id, token_hash(raw_token), expires.isoformat(), created_by, iso()),
    )
    return raw_token, expires.isoformat()


def request_password_reset(conn, user_id: int, email: str) -> int:
    """Tell the admins and owners of each of the user's organizations that a reset was requested.

    No token is issued here; an admin issues the link from the Users page and shares it.
    Returns the number of notifications written.
    """
    admins = conn.execute(
        """
        SELECT DISTINCT a.organization_id, a.user_id
        FROM memberships m
        JOIN memberships a ON a.organization_id = m.organization_id
        JOIN users u ON u.id = a.user_id
        WHERE m.user_id = ? AND a.role IN ('admin', 'owner') AND a.user_id != ? AND u.is_active = 1
        """,
        (user_id, user_id),
    ).fetchall()
    for row in admins:
        notify(
            conn,
            int(row["organization_id"]),
            int(row["user_id"]),
            "system",
            f"Password reset requested for {email}",
            "Issue a reset link from the Users page if this request is expected.",
            "/admin/users",
        )
    log.info("password reset requested for user %s, %s admins notified", user_id, len(admins))
    return len(admins)



def verify_reset_token(conn, raw_token: str):
    row = conn.execute(
        """
        SELECT pr.*, u.email, u.name
        FROM password_resets pr
        JOIN users u ON u.id = pr.user_id
        WHERE pr.token_hash = ?
        """,
        (token_hash(raw_token),),
    ).fetchone()
    if not row or row["used_at"]:
        return None
    try:
        if dt.datetime.fromisoformat(row["expires_at"]) < utcnow():
            return None
    except ValueError:
        return None
    return row


def query_scalar(conn, sql: str, params: Tuple = ()) -> int:
    row = conn.execute(sql, params).fetchone()
    return int(row[0] or 0) if row else 0


def register_account(conn, name: str, email: str, password: str, org_name: str) -> Tuple[Optional[int], str]:
    """Create a user plus a new organization they own. Returns ``(user_id, error)``."""
    email = email.strip().lower()
    if not name.strip() or "@" not in email:
        return None, "Name and a valid email are required."
    if len(password) < 12:
        return None, "Password must be at least 12 characters."
    if not org_name.strip():
        return None, "Organization name is required."
    if conn.execute("SELECT id FROM users WHERE email = ?", (email,)).fetchone():
        return None, "An account with that email already exists."

    base_slug = slugify(org_name)
    slug = base_slug
    suffix = 2
    while conn.execute("SELECT id FROM organizations WHERE slug = ?", (slug,)).fetchone():
        slug = f"{base_slug}-{suffix}"
        suffix += 1

    pw_hash, pw_salt = hash_password(password)
    user_id = int(
        conn.execute(
            "INSERT INTO users (email, name, password_hash, password_salt, is_active, is_superuser, timezone, created_at) VALUES (?, ?, ?, ?, 1, 0, 'UTC', ?)",
            (email, name.strip(), pw_hash, pw_salt, iso()),
        ).lastrowid
    )
    org_id = int(
        conn.execute(
            "INSERT INTO organizations (name, slug, created_at) VALUES (?, ?, ?)",
            (org_name.strip(), slug, iso()),
        ).lastrowid
    )
    conn.execute(
        "INSERT INTO memberships (user_id, organization_id, role, created_at) VALUES (?, ?, 'owner', ?)",
        (user_id, org_id, iso()),
    )
    ensure_org_defaults(conn, org_id)
    log.info("registered %s with new organization %s", email, slug)
    return user_id, ""


# -- layout -------------------------------------------------------------------


def nav_link(path: str, label_text: str, current: str) -> str:
    active = current == path or current.startswith(path + "/")
    cls = "nav-link active" if active else "nav-link"
    aria = ' aria-current="page"' if active else ""
    return f'<a class="{cls}" href="{h(path)}"{aria}>{h(label_text)}</a>'


def csrf_field(ctx: Optional[Mapping[str, object]]) -> str:
    return f'<input type="hidden" name="csrf_token" value="{h((ctx or {}).get("csrf", ""))}" />'


def render_layout(
    title: str,
    content: str,
    req: Request,
    ctx: Optional[Dict[str, object]] = None,
    notice: str = "",
) -> str:
    if ctx and ctx.get("user"):
        user = ctx["user"]
        org = ctx.get("active_org")
        role = str(ctx.get("role") or "viewer")
        org_switch = "".join(
            f"""
            <form method="post" action="/switch-org" class="inline">
              {csrf_field(ctx)}
              <input type="hidden" name="org_id" value="{m['organization_id']}" />
              <button type="submit" class="org-chip {'active' if org and int(m['organization_id']) == int(org['organization_id']) else ''}">{h(m['name'])}</button>
            </form>
            """
            for m in ctx.get("memberships", [])
        )
        nav_primary = "".join(
            nav_link(item["path"], item["label"], req.path) for item in NAV_PRIMARY_ITEMS if role_allows(role, item["min_role"])
        )
        nav_account = "".join(
            nav_link(item["path"], item["label"], req.path) for item in NAV_ACCOUNT_ITEMS if role_allows(role, item["min_role"])
        )
        unread = int(ctx.get("unread_notifications") or 0)
        sidebar = f"""
        <aside class="sidebar" aria-label="Primary Navigation">
          <div class="sidebar-brand">
            <h1><a class="brand-link" href="/dashboard">{h(APP_NAME)}</a></h1>
            <p>{h(APP_TAGLINE)}</p>
          </div>
          <nav class="side-nav" aria-label="Primary">{nav_primary}</nav>
          <div class="sidebar-foot">
            <h4>Organizations</h4>
            <div class="org-switch">{org_switch}</div>
            <h4>Account</h4>
            <nav class="side-nav account-nav" aria-label="Account">{nav_account}</nav>
          </div>
        </aside>
        """
        top_bar = f"""
        <header class="topbar">
          <span class="space-label">{h(org['name']) if org else ''} · {h(label(role))}</span>
          <div class="top-actions">
            <a class="btn ghost" href="/notifications">Notifications <span class="pill soft" id="notification-count">{unread}</span></a>
            <span class="user-chip">{h(user['name'])}</span>
            <form method="post" action="/logout">
              {csrf_field(ctx)}
              <button type="submit">Logout</button>
            </form>
          </div>
        </header>
        """
    else:
        sidebar = ""
        top_bar = f"<header class='topbar'><h1>{h(APP_NAME)}</h1></header>"

    alert = f"<div class='notice' role='status' aria-live='polite'>{h(notice)}</div>" if notice else ""

    return f"""<!doctype html>
    <html lang="en">
      <head>
        <meta charset="utf-8" />
        <meta name="viewport" content="width=device-width,initial-scale=1" />
        <meta name="csrf-token" content="{h(ctx.get('csrf', '') if ctx else '')}" />
        <title>{h(title)} | {h(APP_NAME)}</title>
        <link rel="stylesheet" href="/static/style.css" />
        <script defer src="/static/app.js"></script>
      </head>
      <body>
        <a class="skip-link" href="#main-content">Skip to main content</a>
        <div class="container app-shell">{sidebar}<section class="main-shell">{top_bar}{alert}<main id="main-content" tabindex="-1">{content}</main></section></div>
      </body>
    </html>
    """


def render_login(req: Request, error: str = "") -> str:
    body = f"""
    <section class="card auth">
      <h2>Sign In</h2>
      {'<div class="error">' + h(error) + '</div>' if error else ''}
      <form method="post" action="/login">
        <label>Email <input type="email" name="email" required /></label>
        <label>Password <input type="password" name="password" required /></label>
        <button type="submit">Sign In</button>
      </form>
      <p><a href="/forgot-password">Forgot password?</a> · <a href="/register">Create an organization</a></p>
    </section>
    """
    return render_layout("Login", body, req)


def render_register(req: Request, error: str = "") -> str:
    form = req.form if req.method == "POST" else {}
    body = f"""
    <section class="card auth">
      <h2>Create Your Organization</h2>
      {'<div class="error">' + h(error) + '</div>' if error else ''}
      <form method="post" action="/register">
        <label>Your name <input name="name" value="{h(form.get('name', ''))}" required /></label>
        <label>Email <input type="email" name="email" value="{h(form.get('email', ''))}" required /></label>
        <label>Organization <input name="organization" value="{h(form.get('organization', ''))}" required /></label>
        <label>Password <input type="password" name="password" minlength="12" required /></label>
        <button type="submit">Create Account</button>
      </form>
      <p><a href="/login">Back to sign in</a></p>
    </section>
    """
    return render_layout("Register", body, req)


def render_forgot_password(req: Request, message: str = "") -> str:
    body = f"""
    <section class="card auth">
      <h2>Reset Your Password</h2>
      <p>Ask for a password reset. Your organization admins are notified and can send you a reset link.</p>
      {f"<div class='notice'>{h(message)}</div>" if message else ""}
      <form method="post" action="/forgot-password">
        <label>Email <input type="email" name="email" required /></label>
        <button type="submit">Request Reset</button>
      </form>
      <p><a href="/login">Back to login</a></p>
    </section>
    """
    return render_layout("Forgot Password", body, req)


def render_reset_password(req: Request, token: str, error: str = "") -> str:
    body = f"""
    <section class="card auth">
      <h2>Set New Password</h2>
      {f"<div class='error'>{h(error)}</div>" if error else ""}
      <form method="post" action="/reset-password">
        <input type="hidden" name="token" value="{h(token)}" />
        <label>New Password <input type="password" name="password" minlength="12" required /></label>
        <label>Confirm Password <input type="password" name="password_confirm" minlength="12" required /></label>
        <button type="submit">Update Password</button>
      </form>
    </section>
    """
    return render_layout("Reset Password", body, req)


def select_options(options: Iterable[object], selected: object = None, labels: Optional[Mapping[object, str]] = None, blank: str = "") -> str:
    out = [f"<option value=''>{h(blank)}</option>"] if blank else []
    for option in options:
        is_selected = " selected" if str(option) == str(selected if selected is not None else "") else ""
        text = (labels or {}).get(option) or label(option)
        out.append(f"<option value='{h(option)}'{is_selected}>{h(text)}</option>")
    return "".join(out)


def status_pill(status: object) -> str:
    return f"<span class='pill status-{h(status)}'>{h(label(status))}</span>"


def render_table(headers: List[str], rows: List[str], empty: str = "Nothing here yet.") -> str:
    if not rows:
        return f"<p class='muted'>{h(empty)}</p>"
    head = "".join(f"<th scope='col'>{h(col)}</th>" for col in headers)
    return f"<div class='table-wrap'><table><thead><tr>{head}</tr></thead><tbody>{''.join(rows)}</tbody></table></div>"


def render_figure(figure: Mapping[str, Any], payload: Optional[Mapping[str, Any]] = None, element_id: str = "chart") -> str:
    """Embed a figure as JSON for app.js plus a server-rendered bar list fallback."""
    bars = ""
    if payload and payload.get("labels"):
        peak = max([abs(float(v)) for v in payload["values"]] + [1.0])
        bars = "".join(
            f"<div class='bar-row'><span class='bar-label'>{h(name)}</span>"
            f"<progress class='bar' max='100' value='{int(abs(float(value)) / peak * 100)}'></progress>"
            f"<span class='bar-value'>{h(fmt_number(value))}{h(payload.get('unit') or '')}</span></div>"
            for name, value in zip(payload["labels"], payload["values"])
        )
    figure_json = json.dumps(figure, default=str).replace("</", "<\\/")
    return f"""
    <div class="chart" id="{h(element_id)}" data-figure="{h(element_id)}-data">
      <div class="bar-list">{bars}</div>
    </div>
    <script type="application/json" id="{h(element_id)}-data">{figure_json}</script>
    """


# -- data access ----------------------------------------------------------------


def org_members(conn, org_id: int) -> List[Any]:
    return conn.execute(
        """
        SELECT u.id, u.name, u.email, u.is_active, m.role
        FROM memberships m
        JOIN users u ON u.id = m.user_id
        WHERE m.organization_id = ?
        ORDER BY u.name
        """,
        (org_id,),
    ).fetchall()


def member_role(conn, org_id: int, user_id: int) -> Optional[str]:
    row = conn.execute(
        "SELECT role FROM memberships WHERE organization_id = ? AND user_id = ?",
        (org_id, user_id),
    ).fetchone()
    return str(row["role"]) if row else None


def get_project(conn, org_id: int, project_id: Optional[int]):
    if not project_id:
        return None
    return conn.execute(
        """
        SELECT p.*, u.name AS manager_name
        FROM projects p
        LEFT JOIN users u ON u.id = p.manager_user_id
        WHERE p.id = ? AND p.organization_id = ?
        """,
        (project_id, org_id),
    ).fetchone()


def project_team(conn, project_id: int) -> List[Any]:
    return conn.execute(
        """
        SELECT pm.id, pm.role, u.id AS user_id, u.name, u.email
        FROM project_members pm
        JOIN users u ON u.id = pm.user_id
        WHERE pm.project_id = ?
        ORDER BY u.name
        """,
        (project_id,),
    ).fetchall()


def can_view_project_chat(conn, ctx: Mapping[str, Any], project) -> bool:
    if role_allows(ctx.get("role"), "manager"):
        return True
    user_id = int(ctx["user"]["id"])
    if project["manager_user_id"] and int(project["manager_user_id"]) == user_id:
        return True
    return bool(
        conn.execute(
            "SELECT id FROM project_members WHERE project_id = ? AND user_id = ?",
            (project["id"], user_id),
        ).fetchone()
    )


def list_units(conn, org_id: int) -> List[Any]:
    return conn.execute("SELECT * FROM units WHERE organization_id = ? ORDER BY name", (org_id,)).fetchall()


def disaggregation_definitions(conn, org_id: int, definition_ids: Optional[Iterable[int]] = None) -> List[Dict[str, Any]]:
    """Definitions as ``{id, name, values: [{id, value_label, sort_order}]}`` ordered by id."""
    rows = conn.execute(
        "SELECT id, name FROM disaggregation_defs WHERE organization_id = ? ORDER BY id",
        (org_id,),
    ).fetchall()
    wanted = None if definition_ids is None else {int(i) for i in definition_ids}
    out: List[Dict[str, Any]] = []
    for row in rows:
        if wanted is not None and int(row["id"]) not in wanted:
            continue
        values = conn.execute(
            "SELECT id, value_label, sort_order FROM disaggregation_values WHERE definition_id = ? ORDER BY sort_order, id",
            (row["id"],),
        ).fetchall()
        out.append({"id": int(row["id"]), "name": row["name"], "values": [dict(v) for v in values]})
    return out


def indicator_definition_ids(conn, indicator_id: int) -> List[int]:
    rows = conn.execute(
        "SELECT definition_id FROM indicator_disaggregations WHERE indicator_id = ? ORDER BY definition_id",
        (indicator_id,),
    ).fetchall()
    return [int(r["definition_id"]) for r in rows]


def indicator_combinations(conn, org_id: int, indicator_id: int) -> Tuple[List[Dict[str, Any]], List[Tuple[str, str]]]:
    """Return the indicator's definitions and its ``(combination_key, label)`` grid rows."""
    definitions = disaggregation_definitions(conn, org_id, indicator_definition_ids(conn, indicator_id))
    if not definitions:
        return definitions, [(TOTAL_KEY, "Total")]
    return definitions, [(combination_key(c), combination_label(c)) for c in generate_disagg_combinations(definitions)]


def get_indicator(conn, org_id: int, indicator_id: Optional[int]):
    if not indicator_id:
        return None
    return conn.execute(
        """
        SELECT i.*, u.name AS unit_name, u.symbol AS unit_symbol, u.unit_type AS unit_type,
               p.name AS project_name, n.title AS node_title
        FROM indicators i
        JOIN projects p ON p.id = i.project_id
        LEFT JOIN units u ON u.id = i.unit_id
        LEFT JOIN results_nodes n ON n.id = i.results_node_id
        WHERE i.id = ? AND i.organization_id = ?
        """,
        (indicator_id, org_id),
    ).fetchone()


def project_indicators(conn, project_id: int) -> List[Any]:
    return conn.execute(
        """
        SELECT i.*, u.name AS unit_name, u.symbol AS unit_symbol, u.unit_type AS unit_type
        FROM indicators i
        LEFT JOIN units u ON u.id = i.unit_id
        WHERE i.project_id = ?
        ORDER BY i.results_node_id IS NULL, i.results_node_id, i.id
        """,
        (project_id,),
    ).fetchall()


def indicator_periods(conn, indicator_id: int) -> List[Any]:
    return conn.execute(
        "SELECT * FROM indicator_periods WHERE indicator_id = ? ORDER BY end_date, period_key",
        (indicator_id,),
    ).fetchall()


def get_period(conn, indicator_id: int, period_id: Optional[int]):
    if not period_id:
        return None
    return conn.execute(
        "SELECT * FROM indicator_periods WHERE id = ? AND indicator_id = ?",
        (period_id, indicator_id),
    ).fetchone()


def save_periods(conn, indicator_id: int, periods: Iterable[Mapping[str, Any]]) -> int:
    created = 0
    for period in periods:
        try:
            conn.execute(
                """
                INSERT INTO indicator_periods (indicator_id, period_key, start_date, end_date, due_date, target_value, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    indicator_id,
                    period["period_key"],
                    period["start_date"],
                    period["end_date"],
                    period.get("due_date"),
                    to_number(period.get("target_value")),
                    iso(),
                ),
            )
            created += 1
        except sqlite3.IntegrityError:
            log.info("period %s already exists for indicator %s", period["period_key"], indicator_id)
    return created


def parse_custom_periods(raw: str) -> List[Dict[str, Any]]:
    """Parse ``key, start, end[, due[, target]]`` lines entered for custom-frequency indicators."""
    periods: List[Dict[str, Any]] = []
    for line in (raw or "").splitlines():
        parts = [part.strip() for part in line.split(",")]
        if len(parts) < 3 or not parts[0]:
            continue
        start = parse_date(parts[1])
        end = parse_date(parts[2])
        if not start or not end or end < start:
            continue
        periods.append(
            {
                "period_key": parts[0],
                "start_date": start,
                "end_date": end,
                "due_date": parse_date(parts[3]) if len(parts) > 3 and parts[3] else end,
                "target_value": to_number(parts[4]) if len(parts) > 4 else None,
            }
        )
    return periods


def indicator_form_data(form: Mapping[str, str]) -> Dict[str, Any]:
    aggregation_rule = form.get("aggregation_rule", "sum")
    return {
        "name": form.get("name", "").strip(),
        "definition": form.get("definition", "").strip(),
        "unit_id": to_int(form.get("unit_id")),
        "type": form.get("type") if form.get("type") in INDICATOR_TYPES else "quantitative",
        "direction": form.get("direction") if form.get("direction") in INDICATOR_DIRECTIONS else "increase",
        "frequency": form.get("frequency") if form.get("frequency") in INDICATOR_FREQUENCIES else "quarterly",
        "calendar_type": form.get("calendar_type") if form.get("calendar_type") in CALENDAR_TYPES else "gregorian",
        "aggregation_rule": aggregation_rule if aggregation_rule in AGGREGATION_RULES else "sum",
        "formula_expr": form.get("formula_expr", "").strip(),
        "baseline_value": to_number(form.get("baseline_value")),
        "baseline_date": parse_date(form.get("baseline_date", "")),
        "due_days": clamp_int(form.get("due_days"), 15, 0, 365),
        "results_node_id": to_int(form.get("results_node_id")),
    }


def create_indicator(
    conn,
    org_id: int,
    project_id: int,
    user_id: int,
    data: Mapping[str, Any],
    periods: List[Dict[str, Any]],
    definition_ids: Iterable[int],
) -> int:
    indicator_id = int(
        conn.execute(
            """
            INSERT INTO indicators
            (organization_id, project_id, results_node_id, name, definition, unit_id, type, direction, frequency,
             calendar_type, aggregation_rule, formula_expr, baseline_value, baseline_date, due_days, created_by, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                org_id,
                project_id,
                data.get("results_node_id"),
                data["name"],
                data.get("definition") or "",
                data.get("unit_id"),
                data["type"],
                data["direction"],
                data["frequency"],
                data["calendar_type"],
                data["aggregation_rule"],
                data.get("formula_expr") or "",
                data.get("baseline_value"),
                data.get("baseline_date"),
                data["due_days"],
                user_id,
                iso(),
                iso(),
            ),
        ).lastrowid
    )
    for definition_id in definition_ids:
        conn.execute(
            "INSERT OR IGNORE INTO indicator_disaggregations (indicator_id, definition_id) VALUES (?, ?)",
            (indicator_id, definition_id),
        )
    save_periods(conn, indicator_id, periods)
    return indicator_id


def submission_values(conn, submission_id: int) -> Dict[str, Dict[str, Any]]:
    rows = conn.execute(
        "SELECT combination_key, value_number, value_text, is_estimated, notes FROM submission_values WHERE submission_id = ?",
        (submission_id,),
    ).fetchall()
    return {
        str(r["combination_key"]): {
            "value": r["value_number"] if r["value_number"] is not None else r["value_text"],
            "value_number": r["value_number"],
            "value_text": r["value_text"],
            "is_estimated": bool(r["is_estimated"]),
            "notes": r["notes"],
        }
        for r in rows
    }


def submission_total(values: Mapping[str, Mapping[str, Any]]) -> Optional[float]:
    """Total of one submission: its ``total`` value, else the sum of its numeric combinations."""
    total = values.get(TOTAL_KEY)
    if total and total.get("value_number") is not None:
        return float(total["value_number"])
    numbers = [float(v["value_number"]) for v in values.values() if v.get("value_number") is not None]
    return float(sum(numbers)) if numbers else None


def collect_grid_values(form: Mapping[str, str], keys: Iterable[str]) -> Dict[str, Dict[str, Any]]:
    """Read ``value__<key>``/``estimated__<key>``/``notes__<key>`` inputs for each grid row."""
    values: Dict[str, Dict[str, Any]] = {}
    for key in keys:
        raw = str(form.get(f"value__{key}", "")).strip()
        if not raw:
            continue
        values[key] = {
            "raw": raw,
            "value_number": to_number(raw),
            "value_text": raw,
            "is_estimated": form.get(f"estimated__{key}", "") in {"1", "on", "yes", "Yes"},
            "notes": str(form.get(f"notes__{key}", "")).strip(),
        }
    return values


def validate_grid(project_id: object, indicator, period_id: object, values: Mapping[str, Mapping[str, Any]]) -> Optional[str]:
    ind = dict(indicator) if indicator else None
    indicator_id = ind["id"] if ind else None
    if not values:
        return validate_submission_form(project_id, indicator_id, period_id, "", "", ind)
    for entry in values.values():
        error = validate_submission_form(project_id, indicator_id, period_id, entry["raw"], "", ind)
        if error:
            return error
    return None


def write_submission_values(conn, submission_id: int, values: Mapping[str, Mapping[str, Any]], numeric: bool) -> None:
    conn.execute("DELETE FROM submission_values WHERE submission_id = ?", (submission_id,))
    for key, entry in values.items():
        conn.execute(
            """
            INSERT INTO submission_values (submission_id, combination_key, value_number, value_text, is_estimated, notes)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                submission_id,
                key,
                entry.get("value_number") if numeric else None,
                "" if numeric else str(entry.get("value_text") or ""),
                1 if entry.get("is_estimated") else 0,
                entry.get("notes") or "",
            ),
        )


def indicator_is_numeric(indicator) -> bool:
    return indicator["type"] != "qualitative" and str(indicator["unit_type"] or "") != "text"


def save_submission(
    conn,
    org_id: int,
    indicator,
    period_id: int,
    values: Mapping[str, Mapping[str, Any]],
    narrative: str = "",
    reporter_user_id: Optional[int] = None,
    status: str = "draft",
    form_link_id: Optional[int] = None,
    respondent: Optional[Mapping[str, str]] = None,
) -> int:
    respondent = respondent or {}
    now = iso()
    submission_id = int(
        conn.execute(
            """
            INSERT INTO submissions
            (organization_id, project_id, indicator_id, period_id, reporter_user_id, form_link_id, status, narrative,
             respondent_name, respondent_email, respondent_phone, submitted_at, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                org_id,
                indicator["project_id"],
                indicator["id"],
                period_id,
                reporter_user_id,
                form_link_id,
                status,
                narrative,
                respondent.get("name", ""),
                respondent.get("email", ""),
                respondent.get("phone", ""),
                now if status == "submitted" else None,
                now,
                now,
            ),
        ).lastrowid
    )
    write_submission_values(conn, submission_id, values, indicator_is_numeric(indicator))
    return submission_id


def reported_values(conn, indicator_ids: Iterable[int]) -> Tuple[Dict[int, List[float]], Dict[int, str]]:
    """Counted submission totals per period id in reporting order, plus the latest narrative."""
    ids = [int(i) for i in indicator_ids]
    reported: Dict[int, List[float]] = {}
    narratives: Dict[int, str] = {}
    if not ids:
        return reported, narratives
    marks = ",".join("?" for _ in ids)
    status_marks = ",".join("?" for _ in COUNTED_STATUSES)
    rows = conn.execute(
        f"""
        SELECT s.id, s.period_id, s.narrative
        FROM submissions s
        WHERE s.indicator_id IN ({marks}) AND s.status IN ({status_marks})
        ORDER BY COALESCE(s.submitted_at, s.created_at), s.id
        """,
        tuple(ids) + tuple(COUNTED_STATUSES),
    ).fetchall()
    for row in rows:
        period_id = int(row["period_id"])
        total = submission_total(submission_values(conn, int(row["id"])))
        if total is not None:
            reported.setdefault(period_id, []).append(total)
        if row["narrative"]:
            narratives[period_id] = str(row["narrative"])
    return reported, narratives


def project_pitt_data(conn, org_id: int, project) -> Dict[str, Any]:
    nodes = [dict(n) for n in conn.execute("SELECT * FROM results_nodes WHERE project_id = ? ORDER BY sort_order, id", (project["id"],)).fetchall()]
    indicators = [dict(i) for i in project_indicators(conn, int(project["id"]))]
    periods_by_indicator = {ind["id"]: [dict(p) for p in indicator_periods(conn, ind["id"])] for ind in indicators}
    reported, narratives = reported_values(conn, [ind["id"] for ind in indicators])
    return assemble_pitt(dict(project), nodes, indicators, periods_by_indicator, reported, narratives)


def indicator_achievements(conn, org_id: int, project_id: Optional[int] = None) -> List[Dict[str, Any]]:
    """Per-indicator life-of-project target, actual, achievement % and latest on-track flag."""
    sql = "SELECT id FROM projects WHERE organization_id = ?"
    params: Tuple = (org_id,)
    if project_id:
        sql += " AND id = ?"
        params = (org_id, project_id)
    out: List[Dict[str, Any]] = []
    for project in conn.execute(sql, params).fetchall():
        full = get_project(conn, org_id, int(project["id"]))
        directions = {int(r["id"]): r["direction"] for r in project_indicators(conn, int(project["id"]))}
        try:
            data = project_pitt_data(conn, org_id, full)
        except (PittDataError, FormulaError) as exc:
            log.warning("skipping project %s in achievement rollup: %s", project["id"], exc)
            continue
        for objective in data["objectives"]:
            for ind in objective["indicators"]:
                lop = ind["life_of_project"]
                target, actual = lop["target"], lop["actual"]
                achievement = round(actual / target * 100, 1) if target and actual is not None else None
                latest_dev = next((p["deviation_percent"] for p in reversed(ind["periods"]) if p["deviation_percent"] is not None), None)
                out.append(
                    {
                        "id": ind["id"],
                        "name": ind["name"],
                        "project_id": project["id"],
                        "target": target,
                        "actual": actual,
                        "achievement": achievement,
                        "on_track": is_on_track(latest_dev, directions.get(int(ind["id"]), "increase")),
                    }
                )
    return out


def notify(conn, org_id: int, user_id: int, kind: str, title: str, body: str = "", link: str = "") -> None:
    conn.execute(
        """
        INSERT INTO notifications (organization_id, user_id, kind, title, body, link, read_at, created_at)
        VALUES (?, ?, ?, ?, ?, ?, NULL, ?)
        """,
        (org_id, user_id, kind if kind in NOTIFICATION_KINDS else "system", title[:200], body[:1000], link, iso()),
    )


def unread_notification_count(conn, org_id: int, user_id: int) -> int:
    return query_scalar(
        conn,
        "SELECT COUNT(*) FROM notifications WHERE organization_id = ? AND user_id = ? AND read_at IS NULL",
        (org_id, user_id),
    )


def normalize_mention_token(value: str) -> str:
    return re.sub(r"[^a-z0-9]", "", str(value or "").lower())


def resolve_mentioned_users(conn, org_id: int, text: str) -> List[Any]:
    tokens = {str(match.group(1) or "").strip().lower() for match in MENTION_TOKEN_RE.finditer(text or "")}
    if not tokens:
        return []
    matched = []
    for user in org_members(conn, org_id):
        if not user["is_active"]:
            continue
        email = str(user["email"] or "").strip().lower()
        local = email.split("@", 1)[0]
        aliases = {email, local, normalize_mention_token(str(user["name"] or ""))}
        aliases.update({normalize_mention_token(alias) for alias in aliases})
        if any(token in aliases or normalize_mention_token(token) in aliases for token in tokens):
            matched.append(user)
    return matched


def notify_mentions(conn, org_id: int, sender, text: str, link: str, where: str) -> int:
    count = 0
    for user in resolve_mentioned_users(conn, org_id, text):
        if int(user["id"]) == int(sender["id"]):
            continue
        notify(conn, org_id, int(user["id"]), "mention", f"{sender['name']} mentioned you in {where}", text[:200], link)
        count += 1
    return count


def get_or_create_conversation(conn, org_id: int, user_id: int, other_user_id: int) -> int:
    user_a, user_b = sorted((int(user_id), int(other_user_id)))
    row = conn.execute(
        "SELECT id FROM conversations WHERE organization_id = ? AND user_a_id = ? AND user_b_id = ?",
        (org_id, user_a, user_b),
    ).fetchone()
    if row:
        return int(row["id"])
    return int(
        conn.execute(
            "INSERT INTO conversations (organization_id, user_a_id, user_b_id, last_message_at, created_at) VALUES (?, ?, ?, NULL, ?)",
            (org_id, user_a, user_b, iso()),
        ).lastrowid
    )


def conversation_for_user(conn, org_id: int, user_id: int, conversation_id: Optional[int]):
    if not conversation_id:
        return None
    return conn.execute(
        """
        SELECT c.*, CASE WHEN c.user_a_id = ? THEN c.user_b_id ELSE c.user_a_id END AS other_user_id
        FROM conversations c
        WHERE c.id = ? AND c.organization_id = ? AND (c.user_a_id = ? OR c.user_b_id = ?)
        """,
        (user_id, conversation_id, org_id, user_id, user_id),
    ).fetchone()


def send_direct_message(conn, org_id: int, sender, conversation, content: str) -> int:
    message_id = int(
        conn.execute(
            "INSERT INTO messages (conversation_id, sender_id, content, is_read, created_at) VALUES (?, ?, ?, 0, ?)",
            (conversation["id"], sender["id"], content, iso()),
        ).lastrowid
    )
    conn.execute("UPDATE conversations SET last_message_at = ? WHERE id = ?", (iso(), conversation["id"]))
    link = f"/messages/{conversation['id']}"
    notify(conn, org_id, int(conversation["other_user_id"]), "message", f"New message from {sender['name']}", content[:200], link)
    notify_mentions(conn, org_id, sender, content, link, "a direct message")
    return message_id


def unread_message_count(conn, org_id: int, user_id: int) -> int:
    return query_scalar(
        conn,
        """
        SELECT COUNT(*)
        FROM messages msg
        JOIN conversations c ON c.id = msg.conversation_id
        WHERE c.organization_id = ? AND (c.user_a_id = ? OR c.user_b_id = ?)
          AND msg.sender_id != ? AND msg.is_read = 0
        """,
        (org_id, user_id, user_id, user_id),
    )


def apply_submission_action(conn, org_id: int, actor, actor_role: str, submission, action: str, note: str = "") -> Tuple[bool, str]:
    """Move a submission through the review workflow and notify the reporter."""
    if not role_allows(actor_role, transition_min_role(action)):
        return False, "You do not have permission for that action."
    target = transition_submission(str(submission["status"]), action)
    if not target:
        return False, f"Cannot {action} a submission that is {submission['status']}."
    now = iso()
    if action == "submit":
        conn.execute(
            "UPDATE submissions SET status = ?, submitted_at = ?, updated_at = ? WHERE id = ?",
            (target, now, now, submission["id"]),
        )
    else:
        conn.execute(
            "UPDATE submissions SET status = ?, decided_by = ?, decided_at = ?, decision_note = ?, updated_at = ? WHERE id = ?",
            (target, actor["id"], now, note, now, submission["id"]),
        )
        if submission["reporter_user_id"] and int(submission["reporter_user_id"]) != int(actor["id"]):
            notify(
                conn,
                org_id,
                int(submission["reporter_user_id"]),
                "submission",
                f"Submission {target}",
                note or f"Your submission #{submission['id']} was {target}.",
                f"/submissions/{submission['id']}",
            )
    if action == "submit":
        project = conn.execute("SELECT manager_user_id FROM projects WHERE id = ?", (submission["project_id"],)).fetchone()
        if project and project["manager_user_id"] and int(project["manager_user_id"]) != int(actor["id"]):
            notify(
                conn,
                org_id,
                int(project["manager_user_id"]),
                "submission",
                "Submission awaiting review",
                f"{actor['name']} submitted #{submission['id']}.",
                f"/submissions/{submission['id']}",
            )
    log.info("submission %s: %s -> %s by user %s", submission["id"], submission["status"], target, actor["id"])
    return True, f"Submission {target}."


def get_submission(conn, org_id: int, submission_id: Optional[int]):
    if not submission_id:
        return None
    return conn.execute(
        """
        SELECT s.*, i.name AS indicator_name, i.type AS indicator_type, p.name AS project_name,
               ip.period_key, ip.target_value, u.name AS reporter_name, d.name AS decided_by_name
        FROM submissions s
        JOIN indicators i ON i.id = s.indicator_id
        JOIN projects p ON p.id = s.project_id
        JOIN indicator_periods ip ON ip.id = s.period_id
        LEFT JOIN users u ON u.id = s.reporter_user_id
        LEFT JOIN users d ON d.id = s.decided_by
        WHERE s.id = ? AND s.organization_id = ?
        """,
        (submission_id, org_id),
    ).fetchone()


def form_link_open(link, now: Optional[dt.datetime] = None) -> Tuple[bool, str]:
    if link["status"] == "paused":
        return False, "This form is paused and is not accepting responses."
    if link["status"] == "closed":
        return False, "This form is closed."
    expires = parse_rfc3339_datetime(str(link["expires_at"] or ""))
    if expires and expires < (now or utcnow()):
        return False, "This form has expired."
    return True, ""


def get_dataset(conn, org_id: int, dataset_id: Optional[int]):
    if not dataset_id:
        return None
    return conn.execute("SELECT * FROM datasets WHERE id = ? AND organization_id = ?", (dataset_id, org_id)).fetchone()


def dataset_payload(dataset) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
    try:
        columns = json.loads(dataset["columns_json"] or "[]")
        rows = json.loads(dataset["rows_json"] or "[]")
    except json.JSONDecodeError:
        log.warning("dataset %s has unreadable JSON payload", dataset["id"])
        return [], []
    return columns, rows


def import_dataset_file(conn, org_id: int, user_id: int, name: str, upload, dataset_id: Optional[int] = None) -> Tuple[Optional[int], str]:
    """Store an uploaded CSV/XLSX as a dataset and record the import. Returns ``(dataset_id, message)``."""
    filename = str(upload.filename or "upload")
    content = upload.read()
    try:
        parsed = build_dataset(filename, content)
    except ImportFormatError as exc:
        conn.execute(
            """
            INSERT INTO import_history (organization_id, dataset_id, file_name, content_type, file_blob, row_count, status, errors, created_by, created_at)
            VALUES (?, ?, ?, ?, ?, 0, 'failed', ?, ?, ?)
            """,
            (org_id, dataset_id, filename, upload.content_type or "", content, str(exc), user_id, iso()),
        )
        return None, str(exc)

    now = iso()
    if dataset_id:
        conn.execute(
            "UPDATE datasets SET columns_json = ?, rows_json = ?, row_count = ?, updated_at = ? WHERE id = ?",
            (json.dumps(parsed["columns"]), json.dumps(parsed["rows"], default=str), len(parsed["rows"]), now, dataset_id),
        )
    else:
        dataset_id = int(
            conn.execute(
                """
                INSERT INTO datasets (organization_id, name, description, columns_json, rows_json, row_count, created_by, created_at, updated_at)
                VALUES (?, ?, '', ?, ?, ?, ?, ?, ?)
                """,
                (
                    org_id,
                    name or filename.rsplit(".", 1)[0],
                    json.dumps(parsed["columns"]),
                    json.dumps(parsed["rows"], default=str),
                    len(parsed["rows"]),
                    user_id,
                    now,
                    now,
                ),
            ).lastrowid
        )
    conn.execute(
        """
        INSERT INTO import_history (organization_id, dataset_id, file_name, content_type, file_blob, row_count, status, errors, created_by, created_at)
        VALUES (?, ?, ?, ?, ?, ?, 'completed', '', ?, ?)
        """,
        (org_id, dataset_id, filename, upload.content_type or "", content, len(parsed["rows"]), user_id, now),
    )
    log.info("imported %s rows from %s into dataset %s", len(parsed["rows"]), filename, dataset_id)
    return dataset_id, f"Imported {len(parsed['rows'])} rows."


def chart_config_from_form(form: Mapping[str, str], columns: List[Dict[str, Any]]) -> Tuple[str, Dict[str, Any]]:
    chart_type = form.get("chart_type", "bar")
    if chart_type not in CHART_TYPES:
        chart_type = "bar"
    config = sanitize_chart_config(form) if any(form.get(k) for k in ("x_axis", "group_by", "value")) else default_chart_config(columns)
    return chart_type, config


def visualization_figure(rows: List[Dict[str, Any]], chart_type: str, config: Mapping[str, Any], title: str = "") -> Tuple[Dict[str, Any], List[Dict[str, Any]]]:
    points = transform_for_chart(rows, chart_type, config)
    return build_figure(points, chart_type, config, title), points


# -- pages ----------------------------------------------------------------------


def achievement_chart(achievements: List[Dict[str, Any]], element_id: str = "achievement-chart") -> str:
    rows = [{"indicator": a["name"], "achievement": a["achievement"]} for a in achievements if a["achievement"] is not None]
    if not rows:
        return "<p class='muted'>No indicator has both targets and reported values yet.</p>"
    config = {"x_axis": "indicator", "value": "achievement"}
    points = transform_for_chart(rows, "bar", config)
    figure = build_figure(points, "bar", config, "Achievement vs target (%)")
    return render_figure(figure, chart_payload(points, "%", "Actual as a share of target over all periods."), element_id)


def build_dashboard(conn, org_id: int, user_id: int) -> str:
    stats = {
        "Projects": query_scalar(conn, "SELECT COUNT(*) FROM projects WHERE organization_id = ?", (org_id,)),
        "Active projects": query_scalar(conn, "SELECT COUNT(*) FROM projects WHERE organization_id = ? AND status = 'active'", (org_id,)),
        "Team members": query_scalar(conn, "SELECT COUNT(*) FROM memberships WHERE organization_id = ?", (org_id,)),
        "Reports": query_scalar(conn, "SELECT COUNT(*) FROM submissions WHERE organization_id = ?", (org_id,)),
        "Indicators": query_scalar(conn, "SELECT COUNT(*) FROM indicators WHERE organization_id = ?", (org_id,)),
    }
    avg_row = conn.execute("SELECT AVG(progress) AS p FROM projects WHERE organization_id = ?", (org_id,)).fetchone()
    avg_progress = round(float(avg_row["p"] or 0), 1) if avg_row else 0.0
    cards = "".join(f"<div class='stat'><span class='stat-value'>{value}</span><span class='stat-label'>{h(name)}</span></div>" for name, value in stats.items())
    cards += f"<div class='stat'><span class='stat-value'>{avg_progress}%</span><span class='stat-label'>Average progress</span></div>"

    recent_projects = conn.execute(
        "SELECT id, name, status, progress, updated_at FROM projects WHERE organization_id = ? ORDER BY updated_at DESC LIMIT 5",
        (org_id,),
    ).fetchall()
    project_rows = [
        f"<tr><td><a href='/projects/{p['id']}'>{h(p['name'])}</a></td><td>{status_pill(p['status'])}</td><td>{int(p['progress'] or 0)}%</td></tr>"
        for p in recent_projects
    ]
    recent_submissions = conn.execute(
        """
        SELECT s.id, s.status, s.created_at, i.name AS indicator_name, ip.period_key
        FROM submissions s
        JOIN indicators i ON i.id = s.indicator_id
        JOIN indicator_periods ip ON ip.id = s.period_id
        WHERE s.organization_id = ?
        ORDER BY s.created_at DESC, s.id DESC
        LIMIT 5
        """,
        (org_id,),
    ).fetchall()
    submission_rows = [
        f"<tr><td><a href='/submissions/{s['id']}'>{h(s['indicator_name'])}</a></td><td>{h(s['period_key'])}</td><td>{status_pill(s['status'])}</td></tr>"
        for s in recent_submissions
    ]
    due_rows = []
    today = dt.date.today()
    for period in conn.execute(
        """
        SELECT ip.*, i.name AS indicator_name, i.id AS indicator_id
        FROM indicator_periods ip
        JOIN indicators i ON i.id = ip.indicator_id
        WHERE i.organization_id = ? AND ip.due_date >= ? AND ip.due_date <= ?
        ORDER BY ip.due_date
        LIMIT 8
        """,
        (org_id, (today - dt.timedelta(days=14)).isoformat(), (today + dt.timedelta(days=30)).isoformat()),
    ).fetchall():
        due_rows.append(
            f"<tr><td><a href='/indicators/{period['indicator_id']}'>{h(period['indicator_name'])}</a></td>"
            f"<td>{h(period['period_key'])}</td><td>{h(period['due_date'])}</td><td>{status_pill(period_status(dict(period), today))}</td></tr>"
        )

    return f"""
    <section class="card">
      <h2>Dashboard</h2>
      <div class="stats-grid">{cards}</div>
    </section>
    <section class="grid-2">
      <div class="card"><h3>Recent projects</h3>{render_table(['Project', 'Status', 'Progress'], project_rows, 'No projects yet.')}</div>
      <div class="card"><h3>Recent reports</h3>{render_table(['Indicator', 'Period', 'Status'], submission_rows, 'No submissions yet.')}</div>
    </section>
    <section class="card"><h3>Reporting deadlines</h3>{render_table(['Indicator', 'Period', 'Due', 'Status'], due_rows, 'Nothing due in the next 30 days.')}</section>
    <section class="card"><h3>Indicator achievement</h3>{achievement_chart(indicator_achievements(conn, org_id))}</section>
    """


def project_form(ctx, members: List[Any], project=None, action: str = "/projects/new") -> str:
    p = dict(project) if project else {}
    return f"""
    <form method="post" action="{h(action)}" class="stack">
      {csrf_field(ctx)}
      <label>Name <input name="name" value="{h(p.get('name', ''))}" required /></label>
      <label>Description <textarea name="description">{h(p.get('description', ''))}</textarea></label>
      <label>Status <select name="status">{select_options(PROJECT_STATUSES, p.get('status', 'planning'))}</select></label>
      <label>Start date <input type="date" name="start_date" value="{h(p.get('start_date') or '')}" /></label>
      <label>End date <input type="date" name="end_date" value="{h(p.get('end_date') or '')}" /></label>
      <label>Progress (%) <input type="number" name="progress" min="0" max="100" value="{h(p.get('progress', 0))}" /></label>
      <label>Manager <select name="manager_user_id">{select_options([m['id'] for m in members], p.get('manager_user_id'), {m['id']: m['name'] for m in members}, blank='No manager')}</select></label>
      <button type="submit">Save Project</button>
    </form>
    """


def project_fields(form: Mapping[str, str]) -> Tuple[Dict[str, Any], str]:
    fields = {
        "name": form.get("name", "").strip(),
        "description": form.get("description", "").strip(),
        "status": form.get("status") if form.get("status") in PROJECT_STATUSES else "planning",
        "start_date": parse_date(form.get("start_date", "")),
        "end_date": parse_date(form.get("end_date", "")),
        "progress": clamp_int(form.get("progress"), 0, 0, 100),
        "manager_user_id": to_int(form.get("manager_user_id")),
    }
    if not fields["name"]:
        return fields, "Project name is required."
    if fields["start_date"] and fields["end_date"] and fields["end_date"] < fields["start_date"]:
        return fields, "End date must be on or after the start date."
    return fields, ""


def render_projects_page(conn, org_id: int, ctx, view: str = "list") -> str:
    projects = conn.execute(
        """
        SELECT p.*, u.name AS manager_name,
               (SELECT COUNT(*) FROM indicators i WHERE i.project_id = p.id) AS indicator_count
        FROM projects p
        LEFT JOIN users u ON u.id = p.manager_user_id
        WHERE p.organization_id = ?
        ORDER BY p.updated_at DESC
        """,
        (org_id,),
    ).fetchall()
    if view == "board":
        columns = []
        for status in PROJECT_STATUSES:
            cards = "".join(
                f"<article class='board-card'><a href='/projects/{p['id']}'>{h(p['name'])}</a><p class='muted'>{int(p['progress'] or 0)}% · {h(p['manager_name'] or 'Unassigned')}</p></article>"
                for p in projects
                if p["status"] == status
            )
            count = sum(1 for p in projects if p["status"] == status)
            columns.append(f"<section class='board-column'><h3>{h(label(status))} <span class='pill soft'>{count}</span></h3>{cards}</section>")
        listing = f"<div class='board'>{''.join(columns)}</div>"
    else:
        rows = [
            f"<tr><td><a href='/projects/{p['id']}'>{h(p['name'])}</a></td><td>{status_pill(p['status'])}</td>"
            f"<td>{h(p['start_date'] or '-')} → {h(p['end_date'] or '-')}</td><td>{int(p['progress'] or 0)}%</td>"
            f"<td>{h(p['manager_name'] or '-')}</td><td>{int(p['indicator_count'] or 0)}</td></tr>"
            for p in projects
        ]
        listing = render_table(["Project", "Status", "Dates", "Progress", "Manager", "Indicators"], rows, "No projects yet.")
    create = ""
    if role_allows(ctx.get("role"), "manager"):
        create = f"<details class='card'><summary>New project</summary>{project_form(ctx, org_members(conn, org_id))}</details>"
    return f"""
    <section class="card">
      <header class="section-head"><h2>Projects</h2>
        <nav><a class="btn ghost" href="/projects">List</a> <a class="btn ghost" href="/projects?view=board">Board</a></nav>
      </header>
      {listing}
    </section>
    {create}
    """


def render_project_detail(conn, org_id: int, ctx, project) -> str:
    project_id = int(project["id"])
    can_manage = role_allows(ctx.get("role"), "manager")
    nodes = conn.execute("SELECT * FROM results_nodes WHERE project_id = ? ORDER BY sort_order, id", (project_id,)).fetchall()
    indicators = project_indicators(conn, project_id)
    team = project_team(conn, project_id)
    members = org_members(conn, org_id)

    node_items = []
    for node in nodes:
        node_inds = [i for i in indicators if i["results_node_id"] and int(i["results_node_id"]) == int(node["id"])]
        items = "".join(f"<li><a href='/indicators/{i['id']}'>{h(i['name'])}</a></li>" for i in node_inds) or "<li class='muted'>No indicators</li>"
        delete = ""
        if can_manage:
            delete = f"""<form method="post" action="/projects/{project_id}/nodes/{node['id']}/delete" class="inline">{csrf_field(ctx)}<button type="submit" class="btn ghost">Remove</button></form>"""
        node_items.append(f"<li><strong>{h(node['title'])}</strong> {delete}<p class='muted'>{h(node['description'])}</p><ul>{items}</ul></li>")
    unassigned = [i for i in indicators if not i["results_node_id"]]
    if unassigned:
        items = "".join(f"<li><a href='/indicators/{i['id']}'>{h(i['name'])}</a></li>" for i in unassigned)
        node_items.append(f"<li><strong>Unassigned Indicators</strong><ul>{items}</ul></li>")

    team_rows = []
    for member in team:
        remove = ""
        if can_manage:
            remove = f"""<form method="post" action="/projects/{project_id}/team/{member['id']}/remove" class="inline">{csrf_field(ctx)}<button type="submit" class="btn ghost">Remove</button></form>"""
        team_rows.append(f"<tr><td>{h(member['name'])}</td><td>{h(member['email'])}</td><td>{h(label(member['role']))}</td><td>{remove}</td></tr>")

    recent = conn.execute(
        """
        SELECT s.id, s.status, s.created_at, i.name AS indicator_name, ip.period_key
        FROM submissions s
        JOIN indicators i ON i.id = s.indicator_id
        JOIN indicator_periods ip ON ip.id = s.period_id
        WHERE s.project_id = ?
        ORDER BY s.created_at DESC, s.id DESC
        LIMIT 10
        """,
        (project_id,),
    ).fetchall()
    recent_rows = [
        f"<tr><td><a href='/submissions/{s['id']}'>#{s['id']}</a></td><td>{h(s['indicator_name'])}</td><td>{h(s['period_key'])}</td><td>{status_pill(s['status'])}</td></tr>"
        for s in recent
    ]

    manage = ""
    if can_manage:
        manage = f"""
        <details class="card"><summary>Edit project</summary>
          {project_form(ctx, members, project, f'/projects/{project_id}/edit')}
          <form method="post" action="/projects/{project_id}/delete" class="danger-zone">{csrf_field(ctx)}<button type="submit" class="btn danger">Delete project</button></form>
        </details>
        <details class="card"><summary>Add objective</summary>
          <form method="post" action="/projects/{project_id}/nodes/new" class="stack">
            {csrf_field(ctx)}
            <label>Title <input name="title" required /></label>
            <label>Description <textarea name="description"></textarea></label>
            <label>Sort order <input type="number" name="sort_order" value="{len(nodes) + 1}" /></label>
            <button type="submit">Add Objective</button>
          </form>
        </details>
        <details class="card"><summary>Add team member</summary>
          <form method="post" action="/projects/{project_id}/team/add" class="stack">
            {csrf_field(ctx)}
            <label>Member <select name="user_id">{select_options([m['id'] for m in members], None, {m['id']: m['name'] for m in members})}</select></label>
            <label>Role <input name="role" value="member" /></label>
            <button type="submit">Add to Team</button>
          </form>
        </details>
        <p><a class="btn" href="/projects/{project_id}/indicators/new">New indicator</a></p>
        """

    return f"""
    <section class="card">
      <header class="section-head"><h2>{h(project['name'])}</h2>{status_pill(project['status'])}</header>
      <p>{h(project['description'])}</p>
      <p class="muted">{h(project['start_date'] or '-')} → {h(project['end_date'] or '-')} · Progress {int(project['progress'] or 0)}% · Manager {h(project['manager_name'] or '-')}</p>
      <progress max="100" value="{int(project['progress'] or 0)}"></progress>
      <nav class="actions">
        <a class="btn" href="/projects/{project_id}/reports/pitt">PITT report</a>
        <a class="btn ghost" href="/projects/{project_id}/reports/pitt.xlsx">Download PITT (.xlsx)</a>
        <a class="btn ghost" href="/projects/{project_id}/chat">Team chat</a>
      </nav>
    </section>
    <section class="grid-2">
      <div class="card"><h3>Results framework</h3><ul class="tree">{''.join(node_items) or "<li class='muted'>No objectives yet.</li>"}</ul></div>
      <div class="card"><h3>Team</h3>{render_table(['Name', 'Email', 'Role', ''], team_rows, 'No team members yet.')}</div>
    </section>
    <section class="card"><h3>Recent submissions</h3>{render_table(['#', 'Indicator', 'Period', 'Status'], recent_rows, 'No submissions yet.')}</section>
    {manage}
    """


def render_indicator_form(conn, org_id: int, ctx, project, error: str = "", form: Optional[Mapping[str, str]] = None) -> str:
    form = form or {}
    units = list_units(conn, org_id)
    nodes = conn.execute("SELECT id, title FROM results_nodes WHERE project_id = ? ORDER BY sort_order, id", (project["id"],)).fetchall()
    definitions = disaggregation_definitions(conn, org_id)
    disagg_boxes = "".join(
        f"<label class='check'><input type='checkbox' name='disaggregation_ids' value='{d['id']}' /> {h(d['name'])} "
        f"<span class='muted'>({h(', '.join(v['value_label'] for v in d['values']))})</span></label>"
        for d in definitions
    )
    return f"""
    <section class="card">
      <h2>New indicator · {h(project['name'])}</h2>
      {f"<div class='error'>{h(error)}</div>" if error else ""}
      <form method="post" action="/projects/{project['id']}/indicators/new" class="stack">
        {csrf_field(ctx)}
        <fieldset><legend>1. Definition</legend>
          <label>Name <input name="name" value="{h(form.get('name', ''))}" required /></label>
          <label>Definition <textarea name="definition">{h(form.get('definition', ''))}</textarea></label>
          <label>Objective <select name="results_node_id">{select_options([n['id'] for n in nodes], form.get('results_node_id'), {n['id']: n['title'] for n in nodes}, blank='Unassigned')}</select></label>
          <label>Unit <select name="unit_id">{select_options([u['id'] for u in units], form.get('unit_id'), {u['id']: f"{u['name']} ({u['symbol']})" if u['symbol'] else u['name'] for u in units}, blank='Select a unit')}</select></label>
          <label>Type <select name="type">{select_options(INDICATOR_TYPES, form.get('type', 'quantitative'))}</select></label>
          <label>Direction <select name="direction">{select_options(INDICATOR_DIRECTIONS, form.get('direction', 'increase'))}</select></label>
          <label>Aggregation <select name="aggregation_rule">{select_options(AGGREGATION_RULES, form.get('aggregation_rule', 'sum'))}</select></label>
          <label>Formula (for formula aggregation, e.g. <code>sum / count</code>) <input name="formula_expr" value="{h(form.get('formula_expr', ''))}" /></label>
          <label>Baseline value <input name="baseline_value" value="{h(form.get('baseline_value', ''))}" /></label>
          <label>Baseline date <input type="date" name="baseline_date" value="{h(form.get('baseline_date', ''))}" /></label>
        </fieldset>
        <fieldset><legend>2. Disaggregation</legend>{disagg_boxes or "<p class='muted'>No disaggregations defined.</p>"}</fieldset>
        <fieldset><legend>3. Reporting periods</legend>
          <label>Frequency <select name="frequency">{select_options(INDICATOR_FREQUENCIES, form.get('frequency', 'quarterly'))}</select></label>
          <label>Calendar <select name="calendar_type">{select_options(CALENDAR_TYPES, form.get('calendar_type', 'gregorian'))}</select></label>
          <label>Report due (days after period end) <input type="number" name="due_days" min="0" max="365" value="{h(form.get('due_days', '15'))}" /></label>
          <label>Custom periods (one per line: <code>key, start, end, due, target</code>) <textarea name="custom_periods">{h(form.get('custom_periods', ''))}</textarea></label>
        </fieldset>
        <button type="submit">Create Indicator</button>
      </form>
    </section>
    """


def render_indicator_detail(conn, org_id: int, ctx, indicator) -> str:
    indicator_id = int(indicator["id"])
    can_manage = role_allows(ctx.get("role"), "manager")
    can_report = role_allows(ctx.get("role"), "field_staff")
    periods = indicator_periods(conn, indicator_id)
    reported, _narratives = reported_values(conn, [indicator_id])
    definitions, _grid = indicator_combinations(conn, org_id, indicator_id)
    today = dt.date.today()

    actuals: Dict[int, Any] = {}
    try:
        data = project_pitt_data(conn, org_id, get_project(conn, org_id, int(indicator["project_id"])))
        actuals = {
            int(p["period_id"]): p["actual"]
            for objective in data["objectives"]
            for ind in objective["indicators"]
            if ind["id"] == indicator_id
            for p in ind["periods"]
        }
    except (PittDataError, FormulaError) as exc:
        log.warning("indicator %s actuals unavailable: %s", indicator_id, exc)

    period_rows = []
    for period in periods:
        actual = actuals.get(int(period["id"]))
        target_cell = fmt_number(period["target_value"])
        if can_manage:
            target_cell = f"""
            <form method="post" action="/indicators/{indicator_id}/periods/{period['id']}/target" class="inline">
              {csrf_field(ctx)}<input name="target_value" value="{h('' if period['target_value'] is None else period['target_value'])}" size="8" />
              <button type="submit" class="btn ghost">Set</button>
            </form>"""
        actions = []
        if can_report:
            actions.append(f"<a href='/submissions/new?indicator_id={indicator_id}&period_id={period['id']}'>Report</a>")
        actions.append(f"<a href='/indicators/{indicator_id}/periods/{period['id']}/template.xlsx'>Template</a>")
        actions.append(f"<a href='/indicators/{indicator_id}/periods/{period['id']}/template.xlsx?empty=1'>Blank</a>")
        period_rows.append(
            f"<tr><td>{h(period['period_key'])}</td><td>{h(period['start_date'])} → {h(period['end_date'])}</td><td>{h(period['due_date'] or '-')}</td>"
            f"<td>{status_pill(period_status(dict(period), today))}</td><td>{target_cell}</td><td>{fmt_number(actual)}</td>"
            f"<td>{len(reported.get(int(period['id']), []))}</td><td>{' · '.join(actions)}</td></tr>"
        )

    targets = conn.execute("SELECT * FROM indicator_targets WHERE indicator_id = ? ORDER BY target_date, id", (indicator_id,)).fetchall()
    target_rows = [f"<tr><td>{fmt_number(t['target_value'])}</td><td>{h(t['target_date'] or '-')}</td><td>{h(t['notes'])}</td></tr>" for t in targets]

    links = conn.execute("SELECT * FROM form_links WHERE indicator_id = ? ORDER BY created_at DESC", (indicator_id,)).fetchall()
    link_rows = [
        f"<tr><td><a href='/forms/{l['id']}'>{h(l['title'])}</a></td><td>{status_pill(l['status'])}</td><td><code>/form/{h(l['access_token'])}</code></td>"
        f"<td>{int(l['response_count'] or 0)}</td><td>{h(l['expires_at'] or '-')}</td></tr>"
        for l in links
    ]

    manage = ""
    if can_manage:
        manage = f"""
        <section class="grid-2">
          <details class="card"><summary>Add target</summary>
            <form method="post" action="/indicators/{indicator_id}/targets/new" class="stack">
              {csrf_field(ctx)}
              <label>Target value <input name="target_value" required /></label>
              <label>Target date <input type="date" name="target_date" /></label>
              <label>Notes <input name="notes" /></label>
              <button type="submit">Add Target</button>
            </form>
          </details>
          <details class="card"><summary>Add period</summary>
            <form method="post" action="/indicators/{indicator_id}/periods/new" class="stack">
              {csrf_field(ctx)}
              <label>Periods (one per line: <code>key, start, end, due, target</code>) <textarea name="custom_periods" required></textarea></label>
              <button type="submit">Add Periods</button>
            </form>
          </details>
          <details class="card"><summary>New shareable form</summary>
            <form method="post" action="/indicators/{indicator_id}/forms/new" class="stack">
              {csrf_field(ctx)}
              <label>Title <input name="title" value="{h(indicator['name'])}" required /></label>
              <label>Description <textarea name="description"></textarea></label>
              <label class="check"><input type="checkbox" name="require_name" value="1" checked /> Require name</label>
              <label class="check"><input type="checkbox" name="require_email" value="1" /> Require email</label>
              <label class="check"><input type="checkbox" name="require_phone" value="1" /> Require phone</label>
              <label>Expires at <input type="datetime-local" name="expires_at" /></label>
              <button type="submit">Create Link</button>
            </form>
          </details>
          <form method="post" action="/indicators/{indicator_id}/delete" class="card danger-zone">{csrf_field(ctx)}<button type="submit" class="btn danger">Delete indicator</button></form>
        </section>
        """
    upload = ""
    if can_report:
        upload = f"""
        <section class="card"><h3>Import a filled template</h3>
          <form method="post" action="/indicators/{indicator_id}/import" enctype="multipart/form-data" class="stack">
            {csrf_field(ctx)}
            <input type="file" name="file" accept=".xlsx" required />
            <button type="submit">Import as Draft</button>
          </form>
        </section>
        """

    unit = indicator["unit_name"] or "-"
    if indicator["unit_symbol"]:
        unit = f"{unit} ({indicator['unit_symbol']})"
    return f"""
    <section class="card">
      <header class="section-head"><h2>{h(indicator['name'])}</h2><a class="btn ghost" href="/projects/{indicator['project_id']}">{h(indicator['project_name'])}</a></header>
      <p>{h(indicator['definition'])}</p>
      <dl class="facts">
        <dt>Objective</dt><dd>{h(indicator['node_title'] or 'Unassigned')}</dd>
        <dt>Unit</dt><dd>{h(unit)}</dd>
        <dt>Type</dt><dd>{h(label(indicator['type']))}</dd>
        <dt>Direction</dt><dd>{h(label(indicator['direction']))}</dd>
        <dt>Frequency</dt><dd>{h(label(indicator['frequency']))} ({h(label(indicator['calendar_type']))})</dd>
        <dt>Aggregation</dt><dd>{h(label(indicator['aggregation_rule']))} {h(indicator['formula_expr'])}</dd>
        <dt>Baseline</dt><dd>{fmt_number(indicator['baseline_value'])} {h(indicator['baseline_date'] or '')}</dd>
        <dt>Disaggregated by</dt><dd>{h(', '.join(d['name'] for d in definitions) or 'Not disaggregated')}</dd>
      </dl>
    </section>
    <section class="card"><h3>Reporting periods</h3>{render_table(['Period', 'Dates', 'Due', 'Status', 'Target', 'Actual', 'Reports', ''], period_rows, 'No periods.')}</section>
    <section class="grid-2">
      <div class="card"><h3>Targets</h3>{render_table(['Value', 'Date', 'Notes'], target_rows, 'No indicator-level targets.')}</div>
      <div class="card"><h3>Shareable forms</h3>{render_table(['Title', 'Status', 'Link', 'Responses', 'Expires'], link_rows, 'No form links.')}</div>
    </section>
    {upload}
    {manage}
    """


def render_value_grid(grid: List[Tuple[str, str]], values: Mapping[str, Mapping[str, Any]], numeric: bool) -> str:
    rows = []
    for key, row_label in grid:
        current = values.get(key) or {}
        value = current.get("value_number") if numeric else current.get("value_text")
        checked = " checked" if current.get("is_estimated") else ""
        rows.append(
            f"<tr><th scope='row'>{h(row_label)}</th>"
            f"<td><input name='value__{h(key)}' value='{h('' if value is None else value)}' {'inputmode=decimal' if numeric else ''} /></td>"
            f"<td><input type='checkbox' name='estimated__{h(key)}' value='1'{checked} /></td>"
            f"<td><input name='notes__{h(key)}' value='{h(current.get('notes') or '')}' /></td></tr>"
        )
    return render_table(["Disaggregation", "Value", "Estimated", "Notes"], rows)


def render_submission_form(
    conn,
    org_id: int,
    ctx,
    indicator,
    period,
    error: str = "",
    values: Optional[Mapping[str, Any]] = None,
    narrative: str = "",
    submission_id: Optional[int] = None,
) -> str:
    _definitions, grid = indicator_combinations(conn, org_id, int(indicator["id"]))
    numeric = indicator_is_numeric(indicator)
    return f"""
    <section class="card">
      <h2>Report · {h(indicator['name'])}</h2>
      <p class="muted">{h(indicator['project_name'])} · Period {h(period['period_key'])} ({h(period['start_date'])} → {h(period['end_date'])}) · Target {fmt_number(period['target_value'])}</p>
      {f"<div class='error'>{h(error)}</div>" if error else ""}
      <form method="post" action="/submissions/new" class="stack">
        {csrf_field(ctx)}
        <input type="hidden" name="project_id" value="{indicator['project_id']}" />
        <input type="hidden" name="indicator_id" value="{indicator['id']}" />
        <input type="hidden" name="period_id" value="{period['id']}" />
        <input type="hidden" name="submission_id" value="{submission_id or ''}" />
        {render_value_grid(grid, values or {}, numeric)}
        <label>Narrative <textarea name="narrative">{h(narrative)}</textarea></label>
        <div class="actions">
          <button type="submit" name="action" value="draft" class="btn ghost">Save Draft</button>
          <button type="submit" name="action" value="submit">Submit for Review</button>
        </div>
      </form>
    </section>
    """


def submission_filters(req: Request) -> Dict[str, str]:
    return {
        "project_id": req.query.get("project_id", ""),
        "indicator_id": req.query.get("indicator_id", ""),
        "period_id": req.query.get("period_id", ""),
        "status": req.query.get("status", ""),
        "q": req.query.get("q", "").strip(),
    }


def render_submissions_page(conn, org_id: int, ctx, filters: Mapping[str, str]) -> str:
    where = ["s.organization_id = ?"]
    params: List[Any] = [org_id]
    for key, column in (("project_id", "s.project_id"), ("indicator_id", "s.indicator_id"), ("period_id", "s.period_id")):
        value = to_int(filters.get(key))
        if value:
            where.append(f"{column} = ?")
            params.append(value)
    if filters.get("status") in SUBMISSION_STATUSES:
        where.append("s.status = ?")
        params.append(filters["status"])
    if filters.get("q"):
        where.append("(LOWER(i.name) LIKE ? OR LOWER(p.name) LIKE ? OR LOWER(s.narrative) LIKE ? OR LOWER(COALESCE(u.name, s.respondent_name)) LIKE ?)")
        needle = f"%{filters['q'].lower()}%"
        params.extend([needle] * 4)
    clause = " AND ".join(where)
    rows = conn.execute(
        f"""
        SELECT s.*, i.name AS indicator_name, p.name AS project_name, ip.period_key, u.name AS reporter_name
        FROM submissions s
        JOIN indicators i ON i.id = s.indicator_id
        JOIN projects p ON p.id = s.project_id
        JOIN indicator_periods ip ON ip.id = s.period_id
        LEFT JOIN users u ON u.id = s.reporter_user_id
        WHERE {clause}
        ORDER BY s.created_at DESC, s.id DESC
        LIMIT 500
        """,
        tuple(params),
    ).fetchall()
    counts = {status: 0 for status in SUBMISSION_STATUSES}
    for row in conn.execute("SELECT status, COUNT(*) AS c FROM submissions WHERE organization_id = ? GROUP BY status", (org_id,)).fetchall():
        counts[str(row["status"])] = int(row["c"])
    count_cards = "".join(
        f"<a class='stat' href='/submissions?status={status}'><span class='stat-value'>{counts[status]}</span><span class='stat-label'>{label(status)}</span></a>"
        for status in SUBMISSION_STATUSES
    )
    table_rows = [
        f"<tr><td><input type='checkbox' name='submission_ids' value='{s['id']}' aria-label='Select submission {s['id']}' /></td>"
        f"<td><a href='/submissions/{s['id']}'>#{s['id']}</a></td><td>{h(s['project_name'])}</td><td>{h(s['indicator_name'])}</td>"
        f"<td>{h(s['period_key'])}</td><td>{h(s['reporter_name'] or s['respondent_name'] or '-')}</td><td>{status_pill(s['status'])}</td><td>{h(str(s['created_at'])[:10])}</td></tr>"
        for s in rows
    ]
    projects = conn.execute("SELECT id, name FROM projects WHERE organization_id = ? ORDER BY name", (org_id,)).fetchall()
    bulk_buttons = "<button type='submit' name='action' value='submit' class='btn ghost'>Submit selected</button>"
    if role_allows(ctx.get("role"), "manager"):
        bulk_buttons += (
            "<button type='submit' name='action' value='approve' class='btn ghost'>Approve selected</button>"
            "<button type='submit' name='action' value='return' class='btn ghost'>Return selected</button>"
        )
    return f"""
    <section class="card">
      <h2>Submissions</h2>
      <div class="stats-grid">{count_cards}</div>
      <form method="get" action="/submissions" class="filters">
        <label>Project <select name="project_id">{select_options([p['id'] for p in projects], filters.get('project_id'), {p['id']: p['name'] for p in projects}, blank='All projects')}</select></label>
        <label>Status <select name="status">{select_options(SUBMISSION_STATUSES, filters.get('status'), blank='Any status')}</select></label>
        <label>Search <input name="q" value="{h(filters.get('q', ''))}" /></label>
        <input type="hidden" name="indicator_id" value="{h(filters.get('indicator_id', ''))}" />
        <input type="hidden" name="period_id" value="{h(filters.get('period_id', ''))}" />
        <button type="submit">Filter</button>
      </form>
    </section>
    <section class="card">
      <form method="post" action="/submissions/bulk">
        {csrf_field(ctx)}
        {render_table(['', '#', 'Project', 'Indicator', 'Period', 'Reporter', 'Status', 'Created'], table_rows, 'No submissions match.')}
        <label>Note for returned submissions <input name="note" /></label>
        <div class="actions">{bulk_buttons}</div>
      </form>
    </section>
    """


def render_submission_detail(conn, org_id: int, ctx, submission) -> str:
    values = submission_values(conn, int(submission["id"]))
    _definitions, grid = indicator_combinations(conn, org_id, int(submission["indicator_id"]))
    labels = dict(grid)
    value_rows = [
        f"<tr><td>{h(labels.get(key, key))}</td><td>{h(fmt_number(v['value_number']) if v['value_number'] is not None else v['value_text'])}</td>"
        f"<td>{'Yes' if v['is_estimated'] else ''}</td><td>{h(v['notes'])}</td></tr>"
        for key, v in values.items()
    ]
    total = submission_total(values)
    role = str(ctx.get("role") or "viewer")
    actions = []
    for action, text in (("submit", "Submit for review"), ("approve", "Approve"), ("return", "Return")):
        if transition_submission(str(submission["status"]), action) and role_allows(role, transition_min_role(action)):
            actions.append(f"<button type='submit' name='action' value='{action}'>{text}</button>")
    review = ""
    if actions:
        review = f"""
        <form method="post" action="/submissions/{submission['id']}/status" class="stack">
          {csrf_field(ctx)}
          <label>Note <input name="note" /></label>
          <div class="actions">{''.join(actions)}</div>
        </form>
        """
    edit = ""
    if submission["status"] in ("draft", "returned") and role_allows(role, "field_staff"):
        edit = f"<p><a class='btn ghost' href='/submissions/{submission['id']}/edit'>Edit values</a></p>"
    respondent = ""
    if submission["respondent_name"] or submission["respondent_email"]:
        respondent = f"<dt>Respondent</dt><dd>{h(submission['respondent_name'])} {h(submission['respondent_email'])} {h(submission['respondent_phone'])}</dd>"
    return f"""
    <section class="card">
      <header class="section-head"><h2>Submission #{submission['id']}</h2>{status_pill(submission['status'])}</header>
      <dl class="facts">
        <dt>Project</dt><dd><a href="/projects/{submission['project_id']}">{h(submission['project_name'])}</a></dd>
        <dt>Indicator</dt><dd><a href="/indicators/{submission['indicator_id']}">{h(submission['indicator_name'])}</a></dd>
        <dt>Period</dt><dd>{h(submission['period_key'])} (target {fmt_number(submission['target_value'])})</dd>
        <dt>Reporter</dt><dd>{h(submission['reporter_name'] or '-')}</dd>
        {respondent}
        <dt>Total</dt><dd>{fmt_number(total)}</dd>
        <dt>Decision</dt><dd>{h(submission['decided_by_name'] or '-')} {h(submission['decided_at'] or '')} {h(submission['decision_note'])}</dd>
      </dl>
      {render_table(['Disaggregation', 'Value', 'Estimated', 'Notes'], value_rows, 'No values recorded.')}
      <h3>Narrative</h3><p>{h(submission['narrative']) or "<span class='muted'>None</span>"}</p>
      {edit}
      {review}
    </section>
    """


def render_public_form(link, indicator, periods: List[Any], grid: List[Tuple[str, str]], error: str = "", done: bool = False) -> str:
    if done:
        inner = "<div class='notice'>Thank you. Your response has been recorded.</div>"
    else:
        is_open, closed_reason = form_link_open(link)
        if not is_open:
            inner = f"<div class='error'>{h(closed_reason)}</div>"
        else:
            respondent = "".join(
                f"<label>{h(text)} <input name='{field}' {'required' if link[flag] else ''} /></label>"
                for field, flag, text in (
                    ("respondent_name", "require_name", "Your name"),
                    ("respondent_email", "require_email", "Email"),
                    ("respondent_phone", "require_phone", "Phone"),
                )
            )
            inner = f"""
            {f"<div class='error'>{h(error)}</div>" if error else ""}
            <form method="post" action="/form/{h(link['access_token'])}" class="stack">
              {respondent}
              <label>Reporting period <select name="period_id">{select_options([p['id'] for p in periods], None, {p['id']: p['period_key'] for p in periods})}</select></label>
              {render_value_grid(grid, {}, indicator_is_numeric(indicator))}
              <label>Comments <textarea name="narrative"></textarea></label>
              <button type="submit">Send Response</button>
            </form>
            """
    return f"""
    <section class="card auth wide">
      <h2>{h(link['title'])}</h2>
      <p>{h(link['description'])}</p>
      <p class="muted">{h(indicator['name'])}</p>
      {inner}
    </section>
    """


def render_form_link_page(conn, org_id: int, ctx, link, indicator) -> str:
    _definitions, grid = indicator_combinations(conn, org_id, int(indicator["id"]))
    responses = conn.execute(
        "SELECT id, status, respondent_name, respondent_email, created_at FROM submissions WHERE form_link_id = ? ORDER BY created_at DESC",
        (link["id"],),
    ).fetchall()
    totals: Dict[str, float] = {}
    for response in responses:
        for key, value in submission_values(conn, int(response["id"])).items():
            if value["value_number"] is not None:
                totals[key] = totals.get(key, 0.0) + float(value["value_number"])
    total_rows = [f"<tr><td>{h(row_label)}</td><td>{fmt_number(totals.get(key))}</td></tr>" for key, row_label in grid]
    response_rows = [
        f"<tr><td><a href='/submissions/{r['id']}'>#{r['id']}</a></td><td>{h(r['respondent_name'] or '-')}</td><td>{h(r['respondent_email'] or '')}</td><td>{status_pill(r['status'])}</td><td>{h(str(r['created_at'])[:16])}</td></tr>"
        for r in responses
    ]
    status_form = ""
    if role_allows(ctx.get("role"), "manager"):
        status_form = f"""
        <form method="post" action="/forms/{link['id']}/status" class="inline">
          {csrf_field(ctx)}
          <select name="status">{select_options(FORM_LINK_STATUSES, link['status'])}</select>
          <button type="submit">Update</button>
        </form>
        """
    return f"""
    <section class="card">
      <header class="section-head"><h2>{h(link['title'])}</h2>{status_pill(link['status'])}</header>
      <p>Public link: <code>/form/{h(link['access_token'])}</code> · Responses {int(link['response_count'] or 0)} · Expires {h(link['expires_at'] or 'never')}</p>
      <p><a href="/indicators/{indicator['id']}">{h(indicator['name'])}</a></p>
      {status_form}
    </section>
    <section class="grid-2">
      <div class="card"><h3>Aggregated totals</h3>{render_table(['Disaggregation', 'Total'], total_rows)}</div>
      <div class="card"><h3>Responses</h3>{render_table(['#', 'Name', 'Email', 'Status', 'Received'], response_rows, 'No responses yet.')}</div>
    </section>
    """


def render_datasets_page(conn, org_id: int, ctx) -> str:
    datasets = conn.execute(
        "SELECT d.*, u.name AS creator FROM datasets d LEFT JOIN users u ON u.id = d.created_by WHERE d.organization_id = ? ORDER BY d.updated_at DESC",
        (org_id,),
    ).fetchall()
    rows = [
        f"<tr><td><a href='/datasets/{d['id']}'>{h(d['name'])}</a></td><td>{int(d['row_count'] or 0)}</td><td>{h(d['creator'] or '-')}</td><td>{h(str(d['updated_at'])[:10])}</td></tr>"
        for d in datasets
    ]
    history = conn.execute(
        """
        SELECT ih.id, ih.file_name, ih.row_count, ih.status, ih.errors, ih.created_at, d.name AS dataset_name, ih.dataset_id
        FROM import_history ih
        LEFT JOIN datasets d ON d.id = ih.dataset_id
        WHERE ih.organization_id = ?
        ORDER BY ih.created_at DESC, ih.id DESC
        LIMIT 25
        """,
        (org_id,),
    ).fetchall()
    can_edit = role_allows(ctx.get("role"), "field_staff")
    history_rows = []
    for item in history:
        delete = ""
        if role_allows(ctx.get("role"), "manager"):
            delete = f"""<form method="post" action="/imports/{item['id']}/delete" class="inline">{csrf_field(ctx)}<button type="submit" class="btn ghost">Delete</button></form>"""
        history_rows.append(
            f"<tr><td><a href='/imports/{item['id']}/download'>{h(item['file_name'])}</a></td><td>{h(item['dataset_name'] or '-')}</td>"
            f"<td>{int(item['row_count'] or 0)}</td><td>{status_pill(item['status'])} {h(item['errors'])}</td><td>{h(str(item['created_at'])[:16])}</td><td>{delete}</td></tr>"
        )
    upload = ""
    if can_edit:
        upload = f"""
        <section class="card"><h3>Import CSV or Excel</h3>
          <form method="post" action="/datasets/upload" enctype="multipart/form-data" class="stack">
            {csrf_field(ctx)}
            <label>Dataset name <input name="name" /></label>
            <input type="file" name="file" accept=".csv,.xlsx,.xlsm" required />
            <button type="submit">Upload</button>
          </form>
        </section>
        """
    return f"""
    <section class="card"><h2>Datasets</h2>{render_table(['Name', 'Rows', 'Created by', 'Updated'], rows, 'No datasets yet.')}</section>
    {upload}
    <section class="card"><h3>Import history</h3>{render_table(['File', 'Dataset', 'Rows', 'Status', 'Imported', ''], history_rows, 'No imports yet.')}</section>
    """


def chart_builder_form(ctx, dataset_id: int, columns: List[Dict[str, Any]], chart_type: str, config: Mapping[str, Any]) -> str:
    names = [c["name"] for c in columns]

    def column_select(key: str, text: str) -> str:
        return f"<label>{text} <select name='{key}'>{select_options(names, config.get(key), {n: n for n in names}, blank='(none)')}</select></label>"

    return f"""
    <form method="get" action="/datasets/{dataset_id}/visualize" class="filters">
      <label>Chart type <select name="chart_type">{select_options(CHART_TYPES, chart_type)}</select></label>
      {column_select('x_axis', 'X axis')}
      {column_select('y_axis', 'Y axis')}
      {column_select('value', 'Value')}
      {column_select('group_by', 'Group by')}
      {column_select('source', 'Source')}
      {column_select('target', 'Target')}
      <label>Aggregation <select name="aggregation">{select_options(AGGREGATION_TYPES, config.get('aggregation', 'sum'))}</select></label>
      <button type="submit">Preview</button>
    </form>
    """


def render_dataset_detail(conn, org_id: int, ctx, dataset, page: int, limit: int) -> str:
    columns, rows = dataset_payload(dataset)
    paged = page_rows(rows, page, limit)
    names = [c["name"] for c in columns]
    body_rows = ["<tr>" + "".join(f"<td>{h(row.get(name))}</td>" for name in names) + "</tr>" for row in paged["data"]]
    last_page = max(1, -(-paged["total"] // paged["limit"]))
    pager = []
    if paged["page"] > 1:
        pager.append(f"<a href='/datasets/{dataset['id']}?page={paged['page'] - 1}&limit={paged['limit']}'>Previous</a>")
    pager.append(f"<span>Page {paged['page']} of {last_page}</span>")
    if paged["page"] < last_page:
        pager.append(f"<a href='/datasets/{dataset['id']}?page={paged['page'] + 1}&limit={paged['limit']}'>Next</a>")
    schema = "".join(f"<li><code>{h(c['name'])}</code> {h(c['type'])}</li>" for c in columns)
    visualizations = conn.execute("SELECT id, name, chart_type, share_id FROM visualizations WHERE dataset_id = ? ORDER BY created_at DESC", (dataset["id"],)).fetchall()
    viz_rows = []
    for viz in visualizations:
        share = f"<code>/share/{h(viz['share_id'])}</code>" if viz["share_id"] else "-"
        viz_rows.append(f"<tr><td><a href='/visualizations/{viz['id']}'>{h(viz['name'])}</a></td><td>{h(label(viz['chart_type']))}</td><td>{share}</td></tr>")
    manage = ""
    if role_allows(ctx.get("role"), "field_staff"):
        manage = f"""
        <details class="card"><summary>Replace data</summary>
          <form method="post" action="/datasets/{dataset['id']}/upload" enctype="multipart/form-data" class="stack">
            {csrf_field(ctx)}
            <input type="file" name="file" accept=".csv,.xlsx,.xlsm" required />
            <button type="submit">Re-import</button>
          </form>
        </details>
        """
    if role_allows(ctx.get("role"), "manager"):
        manage += f"""<form method="post" action="/datasets/{dataset['id']}/delete" class="card danger-zone">{csrf_field(ctx)}<button type="submit" class="btn danger">Delete dataset</button></form>"""
    return f"""
    <section class="card">
      <header class="section-head"><h2>{h(dataset['name'])}</h2><a class="btn" href="/datasets/{dataset['id']}/visualize">Visualize</a></header>
      <p class="muted">{paged['total']} rows · {len(columns)} columns</p>
      <ul class="schema">{schema}</ul>
      {render_table(names, body_rows, 'This dataset has no rows.')}
      <nav class="pager">{' · '.join(pager)}</nav>
    </section>
    <section class="card"><h3>Saved visualizations</h3>{render_table(['Name', 'Type', 'Share link'], viz_rows, 'No saved charts.')}</section>
    {manage}
    """


def render_visualize_page(ctx, dataset, chart_type: str, config: Mapping[str, Any], figure: Mapping[str, Any], points: List[Dict[str, Any]]) -> str:
    columns, _rows = dataset_payload(dataset)
    payload = chart_payload(points) if chart_type in {"bar", "line", "area", "pie", "composed"} else None
    save = ""
    if role_allows(ctx.get("role"), "field_staff"):
        hidden = "".join(f"<input type='hidden' name='{h(k)}' value='{h(v)}' />" for k, v in config.items())
        save = f"""
        <form method="post" action="/datasets/{dataset['id']}/visualizations" class="inline">
          {csrf_field(ctx)}
          <input type="hidden" name="chart_type" value="{h(chart_type)}" />
          {hidden}
          <input name="name" placeholder="Chart name" required />
          <label class="check"><input type="checkbox" name="share" value="1" /> Public share link</label>
          <button type="submit">Save Chart</button>
        </form>
        """
    return f"""
    <section class="card">
      <header class="section-head"><h2>Visualize · {h(dataset['name'])}</h2><a class="btn ghost" href="/datasets/{dataset['id']}">Back to data</a></header>
      {chart_builder_form(ctx, int(dataset['id']), columns, chart_type, config)}
    </section>
    <section class="card">
      {render_figure(figure, payload, 'dataset-chart')}
      <p class="muted">{len(points)} points</p>
      {save}
    </section>
    """


def render_visualization(viz, dataset, figure: Mapping[str, Any], points: List[Dict[str, Any]], ctx=None) -> str:
    payload = chart_payload(points) if viz["chart_type"] in {"bar", "line", "area", "pie", "composed"} else None
    manage = ""
    if ctx and ctx.get("user") and role_allows(ctx.get("role"), "field_staff"):
        share_action = "Stop sharing" if viz["share_id"] else "Create share link"
        manage = f"""
        <div class="actions">
          <form method="post" action="/visualizations/{viz['id']}/share" class="inline">{csrf_field(ctx)}<button type="submit" class="btn ghost">{share_action}</button></form>
          <form method="post" action="/visualizations/{viz['id']}/delete" class="inline">{csrf_field(ctx)}<button type="submit" class="btn danger">Delete</button></form>
        </div>
        """
    share = f"<p>Public link: <code>/share/{h(viz['share_id'])}</code></p>" if viz["share_id"] and manage else ""
    return f"""
    <section class="card">
      <h2>{h(viz['name'])}</h2>
      <p class="muted">{h(label(viz['chart_type']))} chart of {h(dataset['name'])}</p>
      {render_figure(figure, payload, 'saved-chart')}
      {share}
      {manage}
    </section>
    """


def render_pitt_page(ctx, project, data: Mapping[str, Any]) -> str:
    years = data.get("years") or []
    head = ["Objective / Indicator", "Frequency", "Baseline"]
    for year in years:
        head.extend([f"FY {year} Target", f"FY {year} Actual", f"FY {year} Deviation"])
    head.extend(["LOP Target", "LOP Actual", "LOP Deviation"])
    rows = []
    for objective in data.get("objectives") or []:
        rows.append(f"<tr class='objective-row'><th colspan='{len(head)}' scope='colgroup'>{h(objective['title'])}</th></tr>")
        for ind in objective["indicators"]:
            annual = {a["year"]: a for a in ind["annual_totals_by_year"]}
            cells = [f"<td><a href='/indicators/{ind['id']}'>{h(ind['name'])}</a></td>", f"<td>{h(label(ind['frequency']))}</td>", f"<td>{fmt_number(ind['baseline'])}</td>"]
            for year in years:
                totals = annual.get(year) or {}
                deviation = totals.get("deviation_percent")
                cells.extend([
                    f"<td>{fmt_number(totals.get('target'))}</td>",
                    f"<td>{fmt_number(totals.get('actual'))}</td>",
                    f"<td>{'' if deviation is None else h(fmt_number(deviation)) + '%'}</td>",
                ])
            lop = ind["life_of_project"]
            deviation = lop.get("deviation_percent")
            cells.extend([
                f"<td>{fmt_number(lop.get('target'))}</td>",
                f"<td>{fmt_number(lop.get('actual'))}</td>",
                f"<td>{'' if deviation is None else h(fmt_number(deviation)) + '%'}</td>",
            ])
            rows.append(f"<tr>{''.join(cells)}</tr>")
    return f"""
    <section class="card">
      <header class="section-head">
        <h2>Performance Indicator Tracking Table · {h(project['name'])}</h2>
        <nav><a class="btn" href="/projects/{project['id']}/reports/pitt.xlsx">Download .xlsx</a> <a class="btn ghost" href="/api/projects/{project['id']}/pitt">JSON</a></nav>
      </header>
      <p class="muted">Fiscal years start in October. Deviation is (actual - target) / target.</p>
      {render_table(head, rows, 'This project has no indicators yet.')}
    </section>
    """


def calendar_events_between(conn, org_id: int, start: dt.date, end: dt.date) -> List[Dict[str, Any]]:
    """Stored events plus project and reporting-deadline events in ``[start, end]``."""
    lo, hi = start.isoformat(), (end + dt.timedelta(days=1)).isoformat()
    stored = [
        dict(e)
        for e in conn.execute(
            "SELECT * FROM calendar_events WHERE organization_id = ? AND start_at >= ? AND start_at < ? ORDER BY start_at",
            (org_id, lo, hi),
        ).fetchall()
    ]
    projects = [dict(p) for p in conn.execute("SELECT id, name, start_date, end_date FROM projects WHERE organization_id = ?", (org_id,)).fetchall()]
    periods = [
        dict(p)
        for p in conn.execute(
            """
            SELECT ip.id, ip.period_key, ip.due_date, i.name AS indicator_name, i.project_id
            FROM indicator_periods ip
            JOIN indicators i ON i.id = ip.indicator_id
            WHERE i.organization_id = ? AND ip.due_date >= ? AND ip.due_date < ?
            """,
            (org_id, lo, hi),
        ).fetchall()
    ]
    derived = [e for e in calendar_sync.derived_events(projects, periods) if lo <= e["start_at"][:10] < hi]
    return sorted(stored + derived, key=lambda e: str(e.get("start_at") or ""))


def render_calendar_page(conn, org_id: int, ctx, anchor: dt.date) -> str:
    first = anchor.replace(day=1)
    weeks = calendar_sync.month_grid(first)
    last = max(day for week in weeks for day in week if day)
    by_day = calendar_sync.events_by_day(calendar_events_between(conn, org_id, first, last))
    prev_month = (first - dt.timedelta(days=1)).replace(day=1)
    next_month = last + dt.timedelta(days=1)
    can_edit = role_allows(ctx.get("role"), "field_staff")

    cells = []
    for week in weeks:
        tds = []
        for day in week:
            if day is None:
                tds.append("<td class='empty'></td>")
                continue
            items = []
            for event in by_day.get(day.isoformat(), []):
                text = f"{event['start_at'][11:16]} {event['title']}"
                if can_edit and event.get("source") != "derived":
                    items.append(
                        f"<li class='event {h(event['event_type'])}'>{h(text)}"
                        f"<form method='post' action='/calendar/events/{event['id']}/delete' class='inline'>{csrf_field(ctx)}<button type='submit' class='btn ghost' aria-label='Delete event'>×</button></form></li>"
                    )
                else:
                    items.append(f"<li class='event {h(event['event_type'])}'>{h(text)}</li>")
            tds.append(f"<td><span class='day'>{day.day}</span><ul>{''.join(items)}</ul></td>")
        cells.append(f"<tr>{''.join(tds)}</tr>")
    head = "".join(f"<th scope='col'>{d}</th>" for d in ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"))

    forms = ""
    if can_edit:
        projects = conn.execute("SELECT id, name FROM projects WHERE organization_id = ? ORDER BY name", (org_id,)).fetchall()
        forms = f"""
        <section class="grid-2">
          <details class="card"><summary>New event</summary>
            <form method="post" action="/calendar/events/new" class="stack">
              {csrf_field(ctx)}
              <label>Title <input name="title" required /></label>
              <label>Starts <input type="datetime-local" name="start_at" required /></label>
              <label>Ends <input type="datetime-local" name="end_at" /></label>
              <label>Type <select name="event_type">{select_options(calendar_sync.EVENT_TYPES, 'custom', calendar_sync.EVENT_TYPE_LABELS)}</select></label>
              <label>Project <select name="project_id">{select_options([p['id'] for p in projects], None, {p['id']: p['name'] for p in projects}, blank='None')}</select></label>
              <label>Location <input name="location" /></label>
              <label>Description <textarea name="description"></textarea></label>
              <button type="submit">Add Event</button>
            </form>
          </details>
          <details class="card"><summary>Import events</summary>
            <form method="post" action="/calendar/import" enctype="multipart/form-data" class="stack">
              {csrf_field(ctx)}
              <p class="muted">Upload an .ics file or a Google Calendar CSV export.</p>
              <input type="file" name="file" accept=".ics,.csv" required />
              <button type="submit">Import</button>
            </form>
          </details>
        </section>
        """
    google = ""
    if role_allows(ctx.get("role"), "manager"):
        settings = calendar_sync.load_sync_settings(conn, org_id)
        configured = calendar_sync.gcal_api_configured()
        state = "Connected" if settings["connected"] else "Not connected"
        pull = ""
        if settings["connected"]:
            pull = f"""<form method="post" action="/calendar/google/pull" class="inline">{csrf_field(ctx)}<button type="submit">Pull now</button></form>
            <form method="post" action="/calendar/google/disconnect" class="inline">{csrf_field(ctx)}<button type="submit" class="btn ghost">Disconnect</button></form>"""
        google = f"""
        <details class="card"><summary>Google Calendar sync</summary>
          <p>{h(state)} · Last pull {h(settings['last_pull_at'] or 'never')} {h(settings['last_status'])}</p>
          {'' if configured else "<p class='muted'>Set MERIDIAN_GCAL_CLIENT_ID, MERIDIAN_GCAL_CLIENT_SECRET and MERIDIAN_GCAL_REFRESH_TOKEN to enable sync.</p>"}
          <form method="post" action="/calendar/google/connect" class="stack">
            {csrf_field(ctx)}
            <label>Calendar ID <input name="calendar_id" value="{h(settings['calendar_id'])}" /></label>
            <label>Look back (days) <input type="number" name="lookback_days" min="0" max="365" value="{h(settings['lookback_days'])}" /></label>
            <label>Look ahead (days) <input type="number" name="lookahead_days" min="1" max="730" value="{h(settings['lookahead_days'])}" /></label>
            <button type="submit">Save &amp; Connect</button>
          </form>
          {pull}
        </details>
        """
    return f"""
    <section class="card">
      <header class="section-head">
        <h2>{first.strftime('%B %Y')}</h2>
        <nav>
          <a class="btn ghost" href="/calendar?month={prev_month.strftime('%Y-%m')}">Previous</a>
          <a class="btn ghost" href="/calendar">Today</a>
          <a class="btn ghost" href="/calendar?month={next_month.strftime('%Y-%m')}">Next</a>
          <a class="btn" href="/calendar/export.ics">Export .ics</a>
        </nav>
      </header>
      <div class="table-wrap"><table class="calendar"><thead><tr>{head}</tr></thead><tbody>{''.join(cells)}</tbody></table></div>
    </section>
    {forms}
    {google}
    """


def render_messages_page(conn, org_id: int, ctx, conversation=None) -> str:
    user_id = int(ctx["user"]["id"])
    conversations = conn.execute(
        """
        SELECT c.id, c.last_message_at,
               CASE WHEN c.user_a_id = ? THEN c.user_b_id ELSE c.user_a_id END AS other_user_id,
               (SELECT COUNT(*) FROM messages m WHERE m.conversation_id = c.id AND m.sender_id != ? AND m.is_read = 0) AS unread
        FROM conversations c
        WHERE c.organization_id = ? AND (c.user_a_id = ? OR c.user_b_id = ?)
        ORDER BY COALESCE(c.last_message_at, c.created_at) DESC
        """,
        (user_id, user_id, org_id, user_id, user_id),
    ).fetchall()
    members = {int(m["id"]): m for m in org_members(conn, org_id)}
    items = []
    for conv in conversations:
        other = members.get(int(conv["other_user_id"]))
        name = other["name"] if other else "Former member"
        badge = f" <span class='pill'>{conv['unread']}</span>" if conv["unread"] else ""
        active = " class='active'" if conversation and int(conversation["id"]) == int(conv["id"]) else ""
        items.append(f"<li{active}><a href='/messages/{conv['id']}'>{h(name)}</a>{badge}</li>")
    others = [m for uid, m in members.items() if uid != user_id and m["is_active"]]
    start = f"""
    <form method="post" action="/messages/new" class="stack">
      {csrf_field(ctx)}
      <label>Message a colleague <select name="user_id">{select_options([m['id'] for m in others], None, {m['id']: m['name'] for m in others})}</select></label>
      <button type="submit">Open Conversation</button>
    </form>
    """
    thread = "<p class='muted'>Select a conversation.</p>"
    if conversation:
        messages = conn.execute(
            """
            SELECT m.*, u.name AS sender_name
            FROM messages m
            JOIN users u ON u.id = m.sender_id
            WHERE m.conversation_id = ?
            ORDER BY m.created_at, m.id
            """,
            (conversation["id"],),
        ).fetchall()
        bubbles = "".join(
            f"<li class='message {'mine' if int(m['sender_id']) == user_id else ''}'><strong>{h(m['sender_name'])}</strong> <span class='muted'>{h(str(m['created_at'])[:16])}</span><p>{h(m['content'])}</p></li>"
            for m in messages
        )
        other = members.get(int(conversation["other_user_id"]))
        thread = f"""
        <h3>{h(other['name'] if other else 'Conversation')}</h3>
        <ul class="thread">{bubbles or "<li class='muted'>No messages yet.</li>"}</ul>
        <form method="post" action="/messages/{conversation['id']}/send" class="stack">
          {csrf_field(ctx)}
          <textarea name="content" required placeholder="Write a message. Use @name to mention someone."></textarea>
          <button type="submit">Send</button>
        </form>
        """
    return f"""
    <section class="grid-2 messages">
      <div class="card"><h2>Messages</h2><ul class="conversations">{''.join(items) or "<li class='muted'>No conversations.</li>"}</ul>{start}</div>
      <div class="card">{thread}</div>
    </section>
    """


def render_project_chat(conn, ctx, project) -> str:
    messages = conn.execute(
        """
        SELECT pm.*, u.name AS sender_name
        FROM project_messages pm
        JOIN users u ON u.id = pm.sender_id
        WHERE pm.project_id = ?
        ORDER BY pm.created_at, pm.id
        LIMIT 200
        """,
        (project["id"],),
    ).fetchall()
    user_id = int(ctx["user"]["id"])
    bubbles = "".join(
        f"<li class='message {'mine' if int(m['sender_id']) == user_id else ''}'><strong>{h(m['sender_name'])}</strong> <span class='muted'>{h(str(m['created_at'])[:16])}</span><p>{h(m['content'])}</p></li>"
        for m in messages
    )
    return f"""
    <section class="card">
      <header class="section-head"><h2>Team chat · {h(project['name'])}</h2><a class="btn ghost" href="/projects/{project['id']}">Back to project</a></header>
      <ul class="thread">{bubbles or "<li class='muted'>No messages yet.</li>"}</ul>
      <form method="post" action="/projects/{project['id']}/chat" class="stack">
        {csrf_field(ctx)}
        <textarea name="content" required placeholder="Message the team. Use @name to mention someone."></textarea>
        <button type="submit">Send</button>
      </form>
    </section>
    """


def render_notifications_page(conn, org_id: int, ctx) -> str:
    items = conn.execute(
        "SELECT * FROM notifications WHERE organization_id = ? AND user_id = ? ORDER BY created_at DESC, id DESC LIMIT 100",
        (org_id, ctx["user"]["id"]),
    ).fetchall()
    rows = []
    for n in items:
        title = f"<a href='{h(n['link'])}'>{h(n['title'])}</a>" if n["link"] else h(n["title"])
        rows.append(
            f"<tr class='{'' if n['read_at'] else 'unread'}'><td>{h(label(n['kind']))}</td><td>{title}<p class='muted'>{h(n['body'])}</p></td><td>{h(str(n['created_at'])[:16])}</td></tr>"
        )
    return f"""
    <section class="card">
      <header class="section-head"><h2>Notifications</h2>
        <form method="post" action="/notifications/read-all">{csrf_field(ctx)}<button type="submit" class="btn ghost">Mark all read</button></form>
      </header>
      {render_table(['Kind', 'Notification', 'When'], rows, 'You have no notifications.')}
    </section>
    """


def render_statistics_page(conn, org_id: int) -> str:
    achievements = indicator_achievements(conn, org_id)
    flagged = [a for a in achievements if a["on_track"] is not None]
    on_track = sum(1 for a in flagged if a["on_track"])
    ratio = round(on_track / len(flagged) * 100, 1) if flagged else None
    status_counts = conn.execute(
        "SELECT status, COUNT(*) AS c FROM submissions WHERE organization_id = ? GROUP BY status ORDER BY status",
        (org_id,),
    ).fetchall()
    status_rows = [dict(r) for r in status_counts]
    status_points = transform_for_chart(status_rows, "pie", {"x_axis": "status", "value": "c"})
    status_chart = render_figure(build_figure(status_points, "pie", {}, "Submissions by status"), chart_payload(status_points), "status-chart")
    project_status_rows = [
        {"status": label(r["status"]), "projects": r["c"]}
        for r in conn.execute(
            "SELECT status, COUNT(*) AS c FROM projects WHERE organization_id = ? GROUP BY status ORDER BY status",
            (org_id,),
        ).fetchall()
    ]
    project_status_points = transform_for_chart(project_status_rows, "bar", {"x_axis": "status", "value": "projects"})
    project_status_chart = render_figure(
        build_figure(project_status_points, "bar", {}, "Projects by status"), chart_payload(project_status_points), "project-status-chart"
    )
    indicator_rows = [
        dict(r)
        for r in conn.execute(
            """
            SELECT p.name AS project, COUNT(i.id) AS indicators
            FROM projects p
            LEFT JOIN indicators i ON i.project_id = p.id
            WHERE p.organization_id = ?
            GROUP BY p.id, p.name
            ORDER BY p.name
            """,
            (org_id,),
        ).fetchall()
    ]
    indicator_points = transform_for_chart(indicator_rows, "bar", {"x_axis": "project", "value": "indicators"})
    indicator_chart = render_figure(build_figure(indicator_points, "bar", {}, "Indicators per project"), chart_payload(indicator_points), "indicator-chart")
    table_rows = [
        f"<tr><td><a href='/indicators/{a['id']}'>{h(a['name'])}</a></td><td>{fmt_number(a['target'])}</td><td>{fmt_number(a['actual'])}</td>"
        f"<td>{'-' if a['achievement'] is None else h(fmt_number(a['achievement'])) + '%'}</td>"
        f"<td>{'-' if a['on_track'] is None else ('On track' if a['on_track'] else 'Off track')}</td></tr>"
        for a in achievements
    ]
    return f"""
    <section class="card">
      <h2>Statistics</h2>
      <div class="stats-grid">
        <div class="stat"><span class="stat-value">{len(achievements)}</span><span class="stat-label">Indicators</span></div>
        <div class="stat"><span class="stat-value">{on_track}/{len(flagged)}</span><span class="stat-label">On track</span></div>
        <div class="stat"><span class="stat-value">{'-' if ratio is None else f'{ratio}%'}</span><span class="stat-label">On-track ratio</span></div>
      </div>
    </section>
    <section class="grid-2">
      <div class="card">{status_chart}</div>
      <div class="card">{project_status_chart}</div>
    </section>
    <section class="card">{indicator_chart}</section>
    <section class="card"><h3>Achievement by indicator</h3>{achievement_chart(achievements, 'stats-achievement')}{render_table(['Indicator', 'LOP target', 'LOP actual', 'Achievement', 'Latest period'], table_rows, 'No indicators yet.')}</section>
    """


def render_users_page(conn, org_id: int, ctx, reset_link: str = "") -> str:
    actor_role = str(ctx.get("role") or "viewer")
    roles = assignable_membership_roles(actor_role)
    rows = []
    for member in org_members(conn, org_id):
        controls = ""
        if member["role"] in roles and int(member["id"]) != int(ctx["user"]["id"]):
            controls = f"""
            <form method="post" action="/admin/users/{member['id']}/role" class="inline">{csrf_field(ctx)}<select name="role">{select_options(roles, member['role'])}</select><button type="submit" class="btn ghost">Set</button></form>
            <form method="post" action="/admin/users/{member['id']}/{'deactivate' if member['is_active'] else 'activate'}" class="inline">{csrf_field(ctx)}<button type="submit" class="btn ghost">{'Deactivate' if member['is_active'] else 'Activate'}</button></form>
            <form method="post" action="/admin/users/{member['id']}/reset" class="inline">{csrf_field(ctx)}<button type="submit" class="btn ghost">Reset link</button></form>
            """
        rows.append(
            f"<tr><td>{h(member['name'])}</td><td>{h(member['email'])}</td><td>{h(label(member['role']))}</td>"
            f"<td>{'Active' if member['is_active'] else 'Inactive'}</td><td>{controls}</td></tr>"
        )
    reset = f"<div class='notice'>Reset link (valid 24 hours): <code>{h(reset_link)}</code></div>" if reset_link else ""
    return f"""
    <section class="card">
      <h2>Users</h2>
      {reset}
      {render_table(['Name', 'Email', 'Role', 'Status', ''], rows, 'No members.')}
    </section>
    <section class="card"><h3>Add user</h3>
      <form method="post" action="/admin/users/new" class="stack">
        {csrf_field(ctx)}
        <label>Name <input name="name" required /></label>
        <label>Email <input type="email" name="email" required /></label>
        <label>Temporary password <input type="password" name="password" minlength="12" /></label>
        <label>Role <select name="role">{select_options(roles, 'field_staff')}</select></label>
        <button type="submit">Add User</button>
      </form>
    </section>
    """


def render_settings_page(conn, org_id: int, ctx) -> str:
    unit_rows = []
    for unit in list_units(conn, org_id):
        unit_rows.append(
            f"<tr><td>{h(unit['name'])}</td><td>{h(unit['symbol'])}</td><td>{h(label(unit['unit_type']))}</td>"
            f"<td><form method='post' action='/settings/units/{unit['id']}/delete' class='inline'>{csrf_field(ctx)}<button type='submit' class='btn ghost'>Delete</button></form></td></tr>"
        )
    disagg_rows = []
    for definition in disaggregation_definitions(conn, org_id):
        disagg_rows.append(
            f"<tr><td>{h(definition['name'])}</td><td>{h(', '.join(v['value_label'] for v in definition['values']))}</td>"
            f"<td><form method='post' action='/settings/disaggregations/{definition['id']}/delete' class='inline'>{csrf_field(ctx)}<button type='submit' class='btn ghost'>Delete</button></form></td></tr>"
        )
    return f"""
    <section class="grid-2">
      <div class="card">
        <h2>Units of measure</h2>
        {render_table(['Name', 'Symbol', 'Type', ''], unit_rows, 'No units.')}
        <form method="post" action="/settings/units/new" class="stack">
          {csrf_field(ctx)}
          <label>Name <input name="name" required /></label>
          <label>Symbol <input name="symbol" /></label>
          <label>Type <select name="unit_type">{select_options(UNIT_TYPES, 'count')}</select></label>
          <button type="submit">Add Unit</button>
        </form>
      </div>
      <div class="card">
        <h2>Disaggregations</h2>
        {render_table(['Name', 'Values', ''], disagg_rows, 'No disaggregations.')}
        <form method="post" action="/settings/disaggregations/new" class="stack">
          {csrf_field(ctx)}
          <label>Name <input name="name" required /></label>
          <label>Values (one per line) <textarea name="values" required></textarea></label>
          <button type="submit">Add Disaggregation</button>
        </form>
      </div>
    </section>
    """


def render_profile_page(ctx, error: str = "") -> str:
    user = ctx["user"]
    return f"""
    <section class="card">
      <h2>Profile</h2>
      {f"<div class='error'>{h(error)}</div>" if error else ""}
      <form method="post" action="/profile" class="stack">
        {csrf_field(ctx)}
        <label>Name <input name="name" value="{h(user['name'])}" required /></label>
        <label>Email <input value="{h(user['email'])}" disabled /></label>
        <label>Timezone <input name="timezone" value="{h(user['timezone'] or 'UTC')}" /></label>
        <button type="submit">Save Profile</button>
      </form>
    </section>
    <section class="card">
      <h3>Change password</h3>
      <form method="post" action="/profile/password" class="stack">
        {csrf_field(ctx)}
        <label>Current password <input type="password" name="current_password" required /></label>
        <label>New password <input type="password" name="password" minlength="12" required /></label>
        <label>Confirm new password <input type="password" name="password_confirm" minlength="12" required /></label>
        <button type="submit">Update Password</button>
      </form>
    </section>
    """


# -- dispatch -------------------------------------------------------------------


class ThreadedWSGIServer(ThreadingMixIn, WSGIServer):
    """Thread-per-request WSGI server for small-team deployments."""

    daemon_threads = True


STATIC_MIME = {
    ".css": "text/css; charset=utf-8",
    ".js": "application/javascript; charset=utf-8",
    ".svg": "image/svg+xml",
}


def static_response(rel: str) -> Response:
    static_file = (STATIC_DIR / rel).resolve()
    if STATIC_DIR.resolve() not in static_file.parents or not static_file.is_file():
        return Response("Not found", status="404 Not Found", content_type="text/plain")
    mime = STATIC_MIME.get(static_file.suffix, "text/plain; charset=utf-8")
    return Response(static_file.read_text(encoding="utf-8"), content_type=mime)


def template_values_to_grid(imported: Mapping[str, Mapping[str, Any]], definitions: List[Dict[str, Any]]) -> Tuple[Dict[str, Dict[str, Any]], List[str]]:
    """Map imported ``label|label`` rows onto combination keys. Returns ``(values, unknown_labels)``."""
    by_labels = {
        "|".join(str(v["value_label"]) for v in combo) if combo else TOTAL_KEY: combination_key(combo)
        for combo in generate_disagg_combinations(definitions)
    }
    values: Dict[str, Dict[str, Any]] = {}
    unknown: List[str] = []
    for labels, entry in imported.items():
        key = by_labels.get(labels)
        if key is None:
            unknown.append(labels)
            continue
        raw = str(entry.get("value") or "").strip()
        values[key] = {
            "raw": raw,
            "value_number": to_number(raw),
            "value_text": raw,
            "is_estimated": bool(entry.get("is_estimated")),
            "notes": str(entry.get("notes") or ""),
        }
    return values, unknown


def latest_submission_values(conn, indicator_id: int, period_id: int) -> Dict[str, Dict[str, Any]]:
    row = conn.execute(
        "SELECT id FROM submissions WHERE indicator_id = ? AND period_id = ? ORDER BY created_at DESC, id DESC LIMIT 1",
        (indicator_id, period_id),
    ).fetchone()
    return submission_values(conn, int(row["id"])) if row else {}


def app(environ, start_response):
    """WSGI entrypoint with explicit path dispatch."""
    req = Request(environ)

    if req.path.startswith("/static/"):
        return static_response(req.path.replace("/static/", "", 1)).wsgi(start_response)

    if req.path == "/healthz":
        return Response("ok", content_type="text/plain").wsgi(start_response)
    if req.path == "/readyz":
        try:
            ensure_bootstrap()
            check = db_connect()
            check.execute("SELECT 1").fetchone()
            check.close()
            return Response("ready", content_type="text/plain").wsgi(start_response)
        except Exception as exc:
            log.warning("readiness check failed: %s", exc)
            return Response(f"not-ready: {exc}", status="503 Service Unavailable", content_type="text/plain").wsgi(start_response)

    try:
        ensure_bootstrap()
    except Exception as exc:
        body = f"<h1>503 Service Unavailable</h1><p>Database bootstrap failed: {h(str(exc))}</p>"
        return Response(body, status="503 Service Unavailable").wsgi(start_response)

    conn = db_connect()
    try:
        ctx = get_auth_context(conn, req)
        notice = req.query.get("msg", "")
        response = dispatch_public(conn, req, ctx, notice)
        if response is None:
            response = dispatch(conn, req, ctx, notice)
        return response.wsgi(start_response)
    except Exception:
        log.exception("unhandled error on %s %s", req.method, req.path)
        return Response(
            "<h1>500 Internal Server Error</h1><p>An unexpected server error occurred.</p>",
            status="500 Internal Server Error",
        ).wsgi(start_response)
    finally:
        conn.close()


def session_redirect(conn, req: Request, user_id: int, location: str = "/dashboard") -> Response:
    raw_session, _csrf = create_session(conn, user_id, req.environ.get("REMOTE_ADDR", ""), req.environ.get("HTTP_USER_AGENT", ""))
    conn.commit()
    return redirect(location, cookies=[set_cookie("session_token", raw_session, max_age=SESSION_DAYS * 24 * 3600)])


def dispatch_public(conn, req: Request, ctx: Dict[str, Any], notice: str) -> Optional[Response]:
    """Routes that work without a session: auth pages, public forms and shared charts."""
    if req.path == "/login" and req.method == "GET":
        if ctx.get("user"):
            return redirect("/dashboard")
        return Response(render_login(req, error=notice))

    if req.path == "/login" and req.method == "POST":
        ip = req.environ.get("REMOTE_ADDR", "unknown")
        if not enforce_rate_limit(ip):
            return Response(render_login(req, "Too many login attempts. Try again later."), status="429 Too Many Requests")
        email = req.form.get("email", "").strip().lower()
        password = req.form.get("password", "")
        user = conn.execute("SELECT * FROM users WHERE email = ? AND is_active = 1", (email,)).fetchone()
        if not user or not verify_password(password, str(user["password_hash"] or ""), str(user["password_salt"] or "")):
            log.info("failed login for %s from %s", email, ip)
            return Response(render_login(req, "Invalid credentials."))
        return session_redirect(conn, req, int(user["id"]))

    if req.path == "/register" and req.method == "GET":
        return Response(render_register(req))

    if req.path == "/register" and req.method == "POST":
        ip = req.environ.get("REMOTE_ADDR", "unknown")
        if not enforce_rate_limit(ip):
            return Response(render_register(req, "Too many attempts. Try again later."), status="429 Too Many Requests")
        form = req.form
        user_id, error = register_account(conn, form.get("name", ""), form.get("email", ""), form.get("password", ""), form.get("organization", ""))
        if error:
            conn.rollback()
            return Response(render_register(req, error))
        return session_redirect(conn, req, int(user_id))

    if req.path == "/forgot-password" and req.method == "GET":
        return Response(render_forgot_password(req, message=notice))

    if req.path == "/forgot-password" and req.method == "POST":
        ip = req.environ.get("REMOTE_ADDR", "unknown")
        if not enforce_rate_limit(ip):
            return Response(render_forgot_password(req, "Too many attempts. Try again later."), status="429 Too Many Requests")
        email = req.form.get("email", "").strip().lower()
        user = conn.execute("SELECT id FROM users WHERE email = ? AND is_active = 1", (email,)).fetchone()
        if user:
            request_password_reset(conn, int(user["id"]), email)
            conn.commit()
        return Response(render_forgot_password(req, RESET_REQUESTED_NOTICE))

    if req.path == "/reset-password" and req.method == "GET":
        token = req.query.get("token", "")
        if not token or not verify_reset_token(conn, token):
            return Response(render_login(req, "Reset link is invalid or expired."))
        return Response(render_reset_password(req, token))

    if req.path == "/reset-password" and req.method == "POST":
        token = req.form.get("token", "")
        password = req.form.get("password", "")
        if password != req.form.get("password_confirm", "") or len(password) < 12:
            return Response(render_reset_password(req, token, "Passwords must match and be at least 12 characters."))
        reset = verify_reset_token(conn, token)
        if not reset:
            return Response(render_login(req, "Reset link is invalid or expired."))
        pw_hash, pw_salt = hash_password(password)
        conn.execute("UPDATE users SET password_hash = ?, password_salt = ? WHERE id = ?", (pw_hash, pw_salt, reset["user_id"]))
        conn.execute("UPDATE password_resets SET used_at = ? WHERE id = ?", (iso(), reset["id"]))
        conn.execute("DELETE FROM sessions WHERE user_id = ?", (reset["user_id"],))
        conn.commit()
        return notice_redirect("/login", "Password updated. Please sign in.")

    match = re.fullmatch(r"/form/([A-Za-z0-9_\-]+)", req.path)
    if match:
        link = conn.execute("SELECT * FROM form_links WHERE access_token = ?", (match.group(1),)).fetchone()
        if not link:
            return Response("<h1>404 Not Found</h1>", status="404 Not Found")
        indicator = get_indicator(conn, int(link["organization_id"]), int(link["indicator_id"]))
        if not indicator:
            return Response("<h1>404 Not Found</h1>", status="404 Not Found")
        periods = indicator_periods(conn, int(indicator["id"]))
        _definitions, grid = indicator_combinations(conn, int(link["organization_id"]), int(indicator["id"]))
        if req.method == "GET":
            return Response(render_layout(link["title"], render_public_form(link, indicator, periods, grid), req))

        is_open, reason = form_link_open(link)
        if not is_open:
            return Response(render_layout(link["title"], render_public_form(link, indicator, periods, grid, reason), req), status="403 Forbidden")
        form = req.form
        respondent = {
            "name": form.get("respondent_name", "").strip(),
            "email": form.get("respondent_email", "").strip(),
            "phone": form.get("respondent_phone", "").strip(),
        }
        error = ""
        for field, flag, text in (("name", "require_name", "Name"), ("email", "require_email", "Email"), ("phone", "require_phone", "Phone")):
            if link[flag] and not respondent[field]:
                error = f"{text} is required."
                break
        period_id = to_int(form.get("period_id"))
        if not error and not get_period(conn, int(indicator["id"]), period_id):
            error = "Please select a reporting period."
        values = collect_grid_values(form, [key for key, _label in grid])
        if not error:
            error = validate_grid(indicator["project_id"], indicator, period_id, values) or ""
        if error:
            return Response(render_layout(link["title"], render_public_form(link, indicator, periods, grid, error), req))
        submission_id = save_submission(
            conn,
            int(link["organization_id"]),
            indicator,
            int(period_id),
            values,
            narrative=form.get("narrative", "").strip(),
            status="draft",
            form_link_id=int(link["id"]),
            respondent=respondent,
        )
        conn.execute("UPDATE form_links SET response_count = response_count + 1 WHERE id = ?", (link["id"],))
        if link["created_by"]:
            notify(
                conn,
                int(link["organization_id"]),
                int(link["created_by"]),
                "submission",
                f"New response to {link['title']}",
                respondent["name"] or respondent["email"] or "Anonymous respondent",
                f"/submissions/{submission_id}",
            )
        conn.commit()
        log.info("form link %s received submission %s", link["id"], submission_id)
        return Response(render_layout(link["title"], render_public_form(link, indicator, periods, grid, done=True), req))

    match = re.fullmatch(r"/share/([A-Za-z0-9_\-]+)", req.path)
    if match and req.method == "GET":
        viz = conn.execute("SELECT * FROM visualizations WHERE share_id = ?", (match.group(1),)).fetchone()
        dataset = conn.execute("SELECT * FROM datasets WHERE id = ?", (viz["dataset_id"],)).fetchone() if viz else None
        if not viz or not dataset:
            return Response("<h1>404 Not Found</h1>", status="404 Not Found")
        _columns, rows = dataset_payload(dataset)
        figure, points = visualization_figure(rows, viz["chart_type"], json.loads(viz["config_json"] or "{}"), viz["name"])
        return Response(render_layout(viz["name"], render_visualization(viz, dataset, figure, points), req))

    return None


def dispatch(conn, req: Request, ctx: Dict[str, Any], notice: str) -> Response:
    """Authenticated routes. Every POST carries the session CSRF token."""
    gate = require_auth(ctx)
    if gate:
        if req.path.startswith("/api/"):
            return json_response({"ok": False, "error": "authentication_required"}, status="401 Unauthorized")
        return gate
    if req.method == "POST" and not validate_csrf(req, ctx):
        return Response("<h1>400 Bad Request</h1><p>CSRF token mismatch.</p>", status="400 Bad Request")

    user = ctx["user"]
    user_id = int(user["id"])
    org_id = int(ctx["active_org"]["organization_id"])
    role = str(ctx.get("role") or "viewer")
    ctx["unread_notifications"] = unread_notification_count(conn, org_id, user_id)
    path = req.path

    def page(title: str, content: str, status: str = "200 OK") -> Response:
        conn.commit()
        return Response(render_layout(title, content, req, ctx, notice), status=status)

    def not_found() -> Response:
        if path.startswith("/api/"):
            return json_response({"ok": False, "error": "not_found"}, status="404 Not Found")
        return Response("<h1>404 Not Found</h1>", status="404 Not Found")

    if path == "/":
        return redirect("/dashboard")

    if path == "/logout" and req.method == "POST":
        token = req.cookies.get("session_token", "")
        if token:
            conn.execute("DELETE FROM sessions WHERE token_hash = ?", (token_hash(token),))
            conn.commit()
        return redirect("/login", cookies=[clear_cookie("session_token"), clear_cookie("active_org")])

    if path == "/switch-org" and req.method == "POST":
        wanted = to_int(req.form.get("org_id"))
        if not any(int(m["organization_id"]) == wanted for m in ctx["memberships"]):
            return notice_redirect("/dashboard", "You are not a member of that organization.")
        return redirect("/dashboard", cookies=[set_cookie("active_org", sign_value(str(wanted)), max_age=SESSION_DAYS * 24 * 3600)])

    if path == "/dashboard":
        return page("Dashboard", build_dashboard(conn, org_id, user_id))

    # -- projects and results framework
    if path == "/projects" and req.method == "GET":
        view = "board" if req.query.get("view") == "board" else "list"
        return page("Projects", render_projects_page(conn, org_id, ctx, view))

    if path == "/projects/new" and req.method == "POST":
        gate = require_role(ctx, "manager")
        if gate:
            return gate
        fields, error = project_fields(req.form)
        if error:
            return notice_redirect("/projects", error)
        if fields["manager_user_id"] and not member_role(conn, org_id, fields["manager_user_id"]):
            fields["manager_user_id"] = None
        now = iso()
        project_id = int(
            conn.execute(
                """
                INSERT INTO projects (organization_id, name, description, status, start_date, end_date, progress, manager_user_id, created_by, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    org_id,
                    fields["name"],
                    fields["description"],
                    fields["status"],
                    fields["start_date"],
                    fields["end_date"],
                    fields["progress"],
                    fields["manager_user_id"],
                    user_id,
                    now,
                    now,
                ),
            ).lastrowid
        )
        if fields["manager_user_id"]:
            conn.execute(
                "INSERT OR IGNORE INTO project_members (project_id, user_id, role, created_at) VALUES (?, ?, 'manager', ?)",
                (project_id, fields["manager_user_id"], now),
            )
        conn.commit()
        log.info("project %s created by user %s", project_id, user_id)
        return notice_redirect(f"/projects/{project_id}", "Project created.")

    match = re.fullmatch(r"/projects/(\d+)(/.*)?", path)
    if match:
        project = get_project(conn, org_id, int(match.group(1)))
        if not project:
            return not_found()
        project_id = int(project["id"])
        sub = match.group(2) or ""

        if sub == "" and req.method == "GET":
            return page(project["name"], render_project_detail(conn, org_id, ctx, project))

        if sub == "/edit" and req.method == "POST":
            gate = require_role(ctx, "manager")
            if gate:
                return gate
            fields, error = project_fields(req.form)
            if error:
                return notice_redirect(f"/projects/{project_id}", error)
            if fields["manager_user_id"] and not member_role(conn, org_id, fields["manager_user_id"]):
                fields["manager_user_id"] = None
            conn.execute(
                """
                UPDATE projects SET name = ?, description = ?, status = ?, start_date = ?, end_date = ?, progress = ?, manager_user_id = ?, updated_at = ?
                WHERE id = ? AND organization_id = ?
                """,
                (
                    fields["name"],
                    fields["description"],
                    fields["status"],
                    fields["start_date"],
                    fields["end_date"],
                    fields["progress"],
                    fields["manager_user_id"],
                    iso(),
                    project_id,
                    org_id,
                ),
            )
            conn.commit()
            return notice_redirect(f"/projects/{project_id}", "Project updated.")

        if sub == "/delete" and req.method == "POST":
            gate = require_role(ctx, "manager")
            if gate:
                return gate
            conn.execute("DELETE FROM projects WHERE id = ? AND organization_id = ?", (project_id, org_id))
            conn.commit()
            log.info("project %s deleted by user %s", project_id, user_id)
            return notice_redirect("/projects", "Project deleted.")

        if sub == "/nodes/new" and req.method == "POST":
            gate = require_role(ctx, "manager")
            if gate:
                return gate
            title = req.form.get("title", "").strip()
            if not title:
                return notice_redirect(f"/projects/{project_id}", "Objective title is required.")
            conn.execute(
                "INSERT INTO results_nodes (project_id, title, description, sort_order, created_at) VALUES (?, ?, ?, ?, ?)",
                (project_id, title, req.form.get("description", "").strip(), to_int(req.form.get("sort_order"), 0), iso()),
            )
            conn.commit()
            return notice_redirect(f"/projects/{project_id}", "Objective added.")

        node_match = re.fullmatch(r"/nodes/(\d+)/delete", sub)
        if node_match and req.method == "POST":
            gate = require_role(ctx, "manager")
            if gate:
                return gate
            node_id = int(node_match.group(1))
            conn.execute("UPDATE indicators SET results_node_id = NULL WHERE results_node_id = ? AND project_id = ?", (node_id, project_id))
            conn.execute("DELETE FROM results_nodes WHERE id = ? AND project_id = ?", (node_id, project_id))
            conn.commit()
            return notice_redirect(f"/projects/{project_id}", "Objective removed. Its indicators are now unassigned.")

        if sub == "/team/add" and req.method == "POST":
            gate = require_role(ctx, "manager")
            if gate:
                return gate
            member_id = to_int(req.form.get("user_id"))
            if not member_id or not member_role(conn, org_id, member_id):
                return notice_redirect(f"/projects/{project_id}", "Select a member of this organization.")
            conn.execute(
                "INSERT OR IGNORE INTO project_members (project_id, user_id, role, created_at) VALUES (?, ?, ?, ?)",
                (project_id, member_id, req.form.get("role", "member").strip()[:40] or "member", iso()),
            )
            notify(conn, org_id, member_id, "project", f"You were added to {project['name']}", "", f"/projects/{project_id}")
            conn.commit()
            return notice_redirect(f"/projects/{project_id}", "Team member added.")

        team_match = re.fullmatch(r"/team/(\d+)/remove", sub)
        if team_match and req.method == "POST":
            gate = require_role(ctx, "manager")
            if gate:
                return gate
            conn.execute("DELETE FROM project_members WHERE id = ? AND project_id = ?", (int(team_match.group(1)), project_id))
            conn.commit()
            return notice_redirect(f"/projects/{project_id}", "Team member removed.")

        if sub == "/indicators/new":
            gate = require_role(ctx, "manager")
            if gate:
                return gate
            if req.method == "GET":
                return page("New Indicator", render_indicator_form(conn, org_id, ctx, project))
            form = req.form
            data = indicator_form_data(form)
            if data["results_node_id"] and not conn.execute(
                "SELECT id FROM results_nodes WHERE id = ? AND project_id = ?", (data["results_node_id"], project_id)
            ).fetchone():
                data["results_node_id"] = None
            if data["unit_id"] and not conn.execute("SELECT id FROM units WHERE id = ? AND organization_id = ?", (data["unit_id"], org_id)).fetchone():
                data["unit_id"] = None
            if data["frequency"] == "custom":
                periods = parse_custom_periods(form.get("custom_periods", ""))
            else:
                periods = generate_periods(data["frequency"], data["due_days"])
            if data["aggregation_rule"] == "formula" and data["formula_expr"]:
                try:
                    aggregate_values([1.0, 2.0, 4.0], "formula", data["formula_expr"])
                except FormulaError as exc:
                    return page("New Indicator", render_indicator_form(conn, org_id, ctx, project, f"Formula error: {exc}", form))
            for step in (1, 2, 3):
                error = validate_wizard_step(step, data, periods)
                if error:
                    return page("New Indicator", render_indicator_form(conn, org_id, ctx, project, error, form))
            known_defs = {d["id"] for d in disaggregation_definitions(conn, org_id)}
            definition_ids = [i for i in (to_int(v) for v in req.form_list("disaggregation_ids")) if i in known_defs]
            indicator_id = create_indicator(conn, org_id, project_id, user_id, data, periods, definition_ids)
            conn.execute("UPDATE projects SET updated_at = ? WHERE id = ?", (iso(), project_id))
            conn.commit()
            log.info("indicator %s created on project %s with %s periods", indicator_id, project_id, len(periods))
            return notice_redirect(f"/indicators/{indicator_id}", "Indicator created.")

        if sub == "/reports/pitt" and req.method == "GET":
            try:
                data = project_pitt_data(conn, org_id, project)
            except (PittDataError, FormulaError) as exc:
                return notice_redirect(f"/projects/{project_id}", f"PITT unavailable: {exc}")
            return page("PITT", render_pitt_page(ctx, project, data))

        if sub == "/reports/pitt.xlsx" and req.method == "GET":
            try:
                data = project_pitt_data(conn, org_id, project)
            except (PittDataError, FormulaError) as exc:
                return notice_redirect(f"/projects/{project_id}", f"PITT unavailable: {exc}")
            today = dt.date.today()
            log.info("PITT export for project %s by user %s", project_id, user_id)
            return download_response(pitt_workbook_bytes(data, today), pitt_filename(project["name"], today), XLSX_MIME)

        if sub == "/chat":
            if not can_view_project_chat(conn, ctx, project):
                return Response("<h1>403 Forbidden</h1>", status="403 Forbidden")
            if req.method == "POST":
                content = req.form.get("content", "").strip()
                if not content:
                    return notice_redirect(f"/projects/{project_id}/chat", "Message cannot be empty.")
                conn.execute(
                    "INSERT INTO project_messages (project_id, sender_id, content, created_at) VALUES (?, ?, ?, ?)",
                    (project_id, user_id, content[:4000], iso()),
                )
                notify_mentions(conn, org_id, user, content, f"/projects/{project_id}/chat", f"{project['name']} chat")
                conn.commit()
                return redirect(f"/projects/{project_id}/chat")
            return page(f"{project['name']} chat", render_project_chat(conn, ctx, project))

        return not_found()

    match = re.fullmatch(r"/api/projects/(\d+)/pitt", path)
    if match:
        project = get_project(conn, org_id, int(match.group(1)))
        if not project:
            return not_found()
        try:
            return json_response(project_pitt_data(conn, org_id, project))
        except (PittDataError, FormulaError) as exc:
            return json_response({"ok": False, "error": str(exc)}, status="422 Unprocessable Entity")

    if path == "/api/periods/preview":
        frequency = req.query.get("frequency", "quarterly")
        return json_response({"periods": generate_periods(frequency, clamp_int(req.query.get("due_days"), 15, 0, 365))})

    response = dispatch_indicators(conn, req, ctx, page, not_found)
    if response is None:
        response = dispatch_submissions(conn, req, ctx, page, not_found)
    if response is None:
        response = dispatch_data(conn, req, ctx, page, not_found)
    if response is None:
        response = dispatch_collaboration(conn, req, ctx, page, not_found)
    return response or not_found()


def dispatch_indicators(conn, req: Request, ctx: Dict[str, Any], page, not_found) -> Optional[Response]:
    match = re.fullmatch(r"/indicators/(\d+)(/.*)?", req.path)
    if not match:
        return None
    org_id = int(ctx["active_org"]["organization_id"])
    user = ctx["user"]
    indicator = get_indicator(conn, org_id, int(match.group(1)))
    if not indicator:
        return not_found()
    indicator_id = int(indicator["id"])
    sub = match.group(2) or ""
    base = f"/indicators/{indicator_id}"

    if sub == "" and req.method == "GET":
        return page(indicator["name"], render_indicator_detail(conn, org_id, ctx, indicator))

    if sub == "/delete" and req.method == "POST":
        gate = require_role(ctx, "manager")
        if gate:
            return gate
        conn.execute("DELETE FROM indicators WHERE id = ? AND organization_id = ?", (indicator_id, org_id))
        conn.commit()
        log.info("indicator %s deleted by user %s", indicator_id, user["id"])
        return notice_redirect(f"/projects/{indicator['project_id']}", "Indicator deleted.")

    target_match = re.fullmatch(r"/periods/(\d+)/target", sub)
    if target_match and req.method == "POST":
        gate = require_role(ctx, "manager")
        if gate:
            return gate
        period = get_period(conn, indicator_id, int(target_match.group(1)))
        if not period:
            return not_found()
        raw = req.form.get("target_value", "").strip()
        target = to_number(raw)
        if raw and target is None:
            return notice_redirect(base, "Target must be a number.")
        conn.execute("UPDATE indicator_periods SET target_value = ? WHERE id = ?", (target, period["id"]))
        conn.commit()
        return notice_redirect(base, f"Target for {period['period_key']} updated.")

    if sub == "/periods/new" and req.method == "POST":
        gate = require_role(ctx, "manager")
        if gate:
            return gate
        periods = parse_custom_periods(req.form.get("custom_periods", ""))
        if not periods:
            return notice_redirect(base, "No valid periods. Use: key, start, end, due, target.")
        created = save_periods(conn, indicator_id, periods)
        conn.commit()
        return notice_redirect(base, f"Added {created} periods.")

    if sub == "/targets/new" and req.method == "POST":
        gate = require_role(ctx, "manager")
        if gate:
            return gate
        target = to_number(req.form.get("target_value"))
        if target is None:
            return notice_redirect(base, "Target must be a number.")
        conn.execute(
            "INSERT INTO indicator_targets (indicator_id, target_value, target_date, notes, created_at) VALUES (?, ?, ?, ?, ?)",
            (indicator_id, target, parse_date(req.form.get("target_date", "")), req.form.get("notes", "").strip(), iso()),
        )
        conn.commit()
        return notice_redirect(base, "Target added.")

    if sub == "/forms/new" and req.method == "POST":
        gate = require_role(ctx, "manager")
        if gate:
            return gate
        form = req.form
        title = form.get("title", "").strip() or str(indicator["name"])
        link_id = int(
            conn.execute(
                """
                INSERT INTO form_links
                (organization_id, indicator_id, title, description, access_token, status, require_name, require_email, require_phone, expires_at, response_count, created_by, created_at)
                VALUES (?, ?, ?, ?, ?, 'active', ?, ?, ?, ?, 0, ?, ?)
                """,
                (
                    org_id,
                    indicator_id,
                    title,
                    form.get("description", "").strip(),
                    secrets.token_urlsafe(18),
                    1 if form.get("require_name") else 0,
                    1 if form.get("require_email") else 0,
                    1 if form.get("require_phone") else 0,
                    parse_datetime(form.get("expires_at", "")),
                    user["id"],
                    iso(),
                ),
            ).lastrowid
        )
        conn.commit()
        return notice_redirect(f"/forms/{link_id}", "Form link created.")

    template_match = re.fullmatch(r"/periods/(\d+)/template\.xlsx", sub)
    if template_match and req.method == "GET":
        period = get_period(conn, indicator_id, int(template_match.group(1)))
        if not period:
            return not_found()
        definitions, _grid = indicator_combinations(conn, org_id, indicator_id)
        empty = req.query.get("empty") == "1"
        if empty:
            wb = build_data_template(dict(indicator), dict(period), definitions, row_count=clamp_int(req.query.get("rows"), 50, 1, 1000))
        else:
            wb = build_data_template(dict(indicator), dict(period), definitions, latest_submission_values(conn, indicator_id, int(period["id"])))
        return download_response(workbook_bytes(wb), template_filename(str(indicator["name"]), str(period["period_key"]), empty), XLSX_MIME)

    if sub == "/import" and req.method == "POST":
        gate = require_role(ctx, "field_staff")
        if gate:
            return gate
        upload = req.files.get("file")
        if upload is None:
            return notice_redirect(base, "No file selected.")
        result = import_data_template(io.BytesIO(upload.read()))
        if not result["success"]:
            return notice_redirect(base, "; ".join(result["errors"]) or "Import failed.")
        if to_int(result.get("indicator_id")) != indicator_id:
            return notice_redirect(base, "This template belongs to a different indicator.")
        period = get_period(conn, indicator_id, to_int(result.get("period_id")))
        if not period:
            return notice_redirect(base, "The template's reporting period no longer exists.")
        definitions, _grid = indicator_combinations(conn, org_id, indicator_id)
        values, unknown = template_values_to_grid(result["values"], definitions)
        if unknown:
            return notice_redirect(base, f"Unknown disaggregation rows: {', '.join(unknown[:5])}")
        error = validate_grid(indicator["project_id"], indicator, period["id"], values)
        if error:
            return notice_redirect(base, error)
        submission_id = save_submission(conn, org_id, indicator, int(period["id"]), values, reporter_user_id=int(user["id"]), status="draft")
        conn.commit()
        log.info("template import created submission %s for indicator %s", submission_id, indicator_id)
        return notice_redirect(f"/submissions/{submission_id}", f"Imported {len(values)} values as a draft.")

    return not_found()


def dispatch_submissions(conn, req: Request, ctx: Dict[str, Any], page, not_found) -> Optional[Response]:
    path = req.path
    org_id = int(ctx["active_org"]["organization_id"])
    user = ctx["user"]
    role = str(ctx.get("role") or "viewer")

    if path == "/submissions" and req.method == "GET":
        return page("Submissions", render_submissions_page(conn, org_id, ctx, submission_filters(req)))

    if path == "/submissions/bulk" and req.method == "POST":
        action = req.form.get("action", "")
        ids = [i for i in (to_int(v) for v in req.form_list("submission_ids")) if i]
        if not ids:
            return notice_redirect("/submissions", "Select at least one submission.")
        done, skipped = 0, 0
        for submission_id in ids:
            submission = get_submission(conn, org_id, submission_id)
            if not submission:
                skipped += 1
                continue
            ok, _msg = apply_submission_action(conn, org_id, user, role, submission, action, req.form.get("note", "").strip())
            if ok:
                done += 1
            else:
                skipped += 1
        conn.commit()
        return notice_redirect("/submissions", f"{done} updated, {skipped} skipped.")

    if path == "/submissions/new":
        gate = require_role(ctx, "field_staff")
        if gate:
            return gate
        source = req.query if req.method == "GET" else req.form
        indicator = get_indicator(conn, org_id, to_int(source.get("indicator_id")))
        if not indicator:
            return notice_redirect("/submissions", "Please select an indicator.")
        period = get_period(conn, int(indicator["id"]), to_int(source.get("period_id")))
        if not period:
            return notice_redirect(f"/indicators/{indicator['id']}", "Please select a reporting period.")
        if req.method == "GET":
            return page("Report", render_submission_form(conn, org_id, ctx, indicator, period))

        form = req.form
        _definitions, grid = indicator_combinations(conn, org_id, int(indicator["id"]))
        values = collect_grid_values(form, [key for key, _label in grid])
        narrative = form.get("narrative", "").strip()
        existing = get_submission(conn, org_id, to_int(form.get("submission_id")))
        error = validate_grid(form.get("project_id") or indicator["project_id"], indicator, period["id"], values)
        if error:
            return page(
                "Report",
                render_submission_form(conn, org_id, ctx, indicator, period, error, values, narrative, int(existing["id"]) if existing else None),
                status="422 Unprocessable Entity",
            )
        if existing:
            if existing["status"] not in ("draft", "returned") or int(existing["indicator_id"]) != int(indicator["id"]):
                return notice_redirect(f"/submissions/{existing['id']}", "Only draft or returned submissions can be edited.")
            conn.execute(
                "UPDATE submissions SET period_id = ?, narrative = ?, updated_at = ? WHERE id = ?",
                (period["id"], narrative, iso(), existing["id"]),
            )
            write_submission_values(conn, int(existing["id"]), values, indicator_is_numeric(indicator))
            submission_id = int(existing["id"])
        else:
            submission_id = save_submission(conn, org_id, indicator, int(period["id"]), values, narrative, reporter_user_id=int(user["id"]))
        message = "Draft saved."
        if form.get("action") == "submit":
            _ok, message = apply_submission_action(conn, org_id, user, role, get_submission(conn, org_id, submission_id), "submit")
        notify_mentions(conn, org_id, user, narrative, f"/submissions/{submission_id}", "a submission narrative")
        conn.commit()
        return notice_redirect(f"/submissions/{submission_id}", message)

    match = re.fullmatch(r"/submissions/(\d+)(/.*)?", path)
    if not match:
        return None
    submission = get_submission(conn, org_id, int(match.group(1)))
    if not submission:
        return not_found()
    sub = match.group(2) or ""

    if sub == "" and req.method == "GET":
        return page(f"Submission #{submission['id']}", render_submission_detail(conn, org_id, ctx, submission))

    if sub == "/edit" and req.method == "GET":
        gate = require_role(ctx, "field_staff")
        if gate:
            return gate
        if submission["status"] not in ("draft", "returned"):
            return notice_redirect(f"/submissions/{submission['id']}", "Only draft or returned submissions can be edited.")
        indicator = get_indicator(conn, org_id, int(submission["indicator_id"]))
        period = get_period(conn, int(submission["indicator_id"]), int(submission["period_id"]))
        return page(
            "Edit Report",
            render_submission_form(
                conn, org_id, ctx, indicator, period, values=submission_values(conn, int(submission["id"])), narrative=submission["narrative"], submission_id=int(submission["id"])
            ),
        )

    if sub == "/status" and req.method == "POST":
        ok, message = apply_submission_action(conn, org_id, user, role, submission, req.form.get("action", ""), req.form.get("note", "").strip())
        if ok:
            conn.commit()
        return notice_redirect(f"/submissions/{submission['id']}", message)

    return not_found()


def dispatch_data(conn, req: Request, ctx: Dict[str, Any], page, not_found) -> Optional[Response]:
    path = req.path
    org_id = int(ctx["active_org"]["organization_id"])
    user_id = int(ctx["user"]["id"])

    match = re.fullmatch(r"/forms/(\d+)(/status)?", path)
    if match:
        link = conn.execute("SELECT * FROM form_links WHERE id = ? AND organization_id = ?", (int(match.group(1)), org_id)).fetchone()
        if not link:
            return not_found()
        indicator = get_indicator(conn, org_id, int(link["indicator_id"]))
        if match.group(2) and req.method == "POST":
            gate = require_role(ctx, "manager")
            if gate:
                return gate
            status = req.form.get("status", "")
            if status not in FORM_LINK_STATUSES:
                return notice_redirect(f"/forms/{link['id']}", "Unknown status.")
            conn.execute("UPDATE form_links SET status = ? WHERE id = ?", (status, link["id"]))
            conn.commit()
            return notice_redirect(f"/forms/{link['id']}", f"Form is now {status}.")
        if not match.group(2) and req.method == "GET":
            return page(link["title"], render_form_link_page(conn, org_id, ctx, link, indicator))
        return not_found()

    if path == "/datasets" and req.method == "GET":
        return page("Datasets", render_datasets_page(conn, org_id, ctx))

    if path == "/datasets/upload" and req.method == "POST":
        gate = require_role(ctx, "field_staff")
        if gate:
            return gate
        upload = req.files.get("file")
        if upload is None:
            return notice_redirect("/datasets", "No file selected.")
        dataset_id, message = import_dataset_file(conn, org_id, user_id, req.form.get("name", "").strip(), upload)
        conn.commit()
        return notice_redirect(f"/datasets/{dataset_id}" if dataset_id else "/datasets", message)

    match = re.fullmatch(r"/api/datasets/(\d+)/data", path)
    if match:
        dataset = get_dataset(conn, org_id, int(match.group(1)))
        if not dataset:
            return not_found()
        columns, rows = dataset_payload(dataset)
        paged = page_rows(rows, clamp_int(req.query.get("page"), 1, 1, 1_000_000), clamp_int(req.query.get("limit"), 100, 1, 5000))
        paged["columns"] = columns
        return json_response(paged)

    match = re.fullmatch(r"/datasets/(\d+)(/.*)?", path)
    if match:
        dataset = get_dataset(conn, org_id, int(match.group(1)))
        if not dataset:
            return not_found()
        dataset_id = int(dataset["id"])
        sub = match.group(2) or ""

        if sub == "" and req.method == "GET":
            page_no = clamp_int(req.query.get("page"), 1, 1, 1_000_000)
            limit = clamp_int(req.query.get("limit"), 50, 1, 500)
            return page(dataset["name"], render_dataset_detail(conn, org_id, ctx, dataset, page_no, limit))

        if sub == "/upload" and req.method == "POST":
            gate = require_role(ctx, "field_staff")
            if gate:
                return gate
            upload = req.files.get("file")
            if upload is None:
                return notice_redirect(f"/datasets/{dataset_id}", "No file selected.")
            _dataset_id, message = import_dataset_file(conn, org_id, user_id, dataset["name"], upload, dataset_id)
            conn.commit()
            return notice_redirect(f"/datasets/{dataset_id}", message)

        if sub == "/delete" and req.method == "POST":
            gate = require_role(ctx, "manager")
            if gate:
                return gate
            conn.execute("DELETE FROM visualizations WHERE dataset_id = ?", (dataset_id,))
            conn.execute("UPDATE import_history SET dataset_id = NULL WHERE dataset_id = ?", (dataset_id,))
            conn.execute("DELETE FROM datasets WHERE id = ? AND organization_id = ?", (dataset_id, org_id))
            conn.commit()
            return notice_redirect("/datasets", "Dataset deleted.")

        if sub == "/visualize" and req.method == "GET":
            columns, rows = dataset_payload(dataset)
            chart_type, config = chart_config_from_form(req.query, columns)
            figure, points = visualization_figure(rows, chart_type, config, dataset["name"])
            return page(f"Visualize {dataset['name']}", render_visualize_page(ctx, dataset, chart_type, config, figure, points))

        if sub == "/visualizations" and req.method == "POST":
            gate = require_role(ctx, "field_staff")
            if gate:
                return gate
            columns, _rows = dataset_payload(dataset)
            chart_type, config = chart_config_from_form(req.form, columns)
            name = req.form.get("name", "").strip() or f"{dataset['name']} {chart_type}"
            now = iso()
            viz_id = int(
                conn.execute(
                    """
                    INSERT INTO visualizations (organization_id, dataset_id, name, chart_type, config_json, share_id, created_by, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        org_id,
                        dataset_id,
                        name,
                        chart_type,
                        json.dumps(config),
                        secrets.token_urlsafe(12) if req.form.get("share") else None,
                        user_id,
                        now,
                        now,
                    ),
                ).lastrowid
            )
            conn.commit()
            return notice_redirect(f"/visualizations/{viz_id}", "Chart saved.")

        return not_found()

    match = re.fullmatch(r"/visualizations/(\d+)(/share|/delete)?", path)
    if match:
        viz = conn.execute("SELECT * FROM visualizations WHERE id = ? AND organization_id = ?", (int(match.group(1)), org_id)).fetchone()
        if not viz:
            return not_found()
        dataset = get_dataset(conn, org_id, int(viz["dataset_id"]))
        action = match.group(2)
        if action is None and req.method == "GET":
            _columns, rows = dataset_payload(dataset)
            figure, points = visualization_figure(rows, viz["chart_type"], json.loads(viz["config_json"] or "{}"), viz["name"])
            return page(viz["name"], render_visualization(viz, dataset, figure, points, ctx))
        if action and req.method == "POST":
            gate = require_role(ctx, "field_staff")
            if gate:
                return gate
            if action == "/delete":
                conn.execute("DELETE FROM visualizations WHERE id = ?", (viz["id"],))
                conn.commit()
                return notice_redirect(f"/datasets/{viz['dataset_id']}", "Chart deleted.")
            share_id = None if viz["share_id"] else secrets.token_urlsafe(12)
            conn.execute("UPDATE visualizations SET share_id = ?, updated_at = ? WHERE id = ?", (share_id, iso(), viz["id"]))
            conn.commit()
            return notice_redirect(f"/visualizations/{viz['id']}", "Share link created." if share_id else "Sharing stopped.")
        return not_found()

    match = re.fullmatch(r"/imports/(\d+)/(download|delete)", path)
    if match:
        item = conn.execute("SELECT * FROM import_history WHERE id = ? AND organization_id = ?", (int(match.group(1)), org_id)).fetchone()
        if not item:
            return not_found()
        if match.group(2) == "download" and req.method == "GET":
            blob = item["file_blob"]
            if blob is None:
                return notice_redirect("/datasets", "The original file is no longer stored.")
            return download_response(bytes(blob), str(item["file_name"]).replace('"', ""), item["content_type"] or "application/octet-stream")
        if match.group(2) == "delete" and req.method == "POST":
            gate = require_role(ctx, "manager")
            if gate:
                return gate
            conn.execute("DELETE FROM import_history WHERE id = ?", (item["id"],))
            conn.commit()
            return notice_redirect("/datasets", "Import record deleted.")
        return not_found()

    return None


def dispatch_collaboration(conn, req: Request, ctx: Dict[str, Any], page, not_found) -> Optional[Response]:
    path = req.path
    org_id = int(ctx["active_org"]["organization_id"])
    user = ctx["user"]
    user_id = int(user["id"])
    role = str(ctx.get("role") or "viewer")

    # -- calendar
    if path == "/calendar" and req.method == "GET":
        month = req.query.get("month", "")
        anchor = parse_iso_date(f"{month}-01") if month else None
        return page("Calendar", render_calendar_page(conn, org_id, ctx, anchor or dt.date.today()))

    if path == "/calendar/events/new" and req.method == "POST":
        gate = require_role(ctx, "field_staff")
        if gate:
            return gate
        form = req.form
        title = form.get("title", "").strip()
        start_at = parse_datetime(form.get("start_at", ""))
        if not title or not start_at:
            return notice_redirect("/calendar", "Title and start time are required.")
        end_at = parse_datetime(form.get("end_at", "")) or start_at
        if end_at < start_at:
            return notice_redirect("/calendar", "End time must be after the start time.")
        project_id = to_int(form.get("project_id"))
        if project_id and not get_project(conn, org_id, project_id):
            project_id = None
        event_type = form.get("event_type") if form.get("event_type") in calendar_sync.EVENT_TYPES else "custom"
        now = iso()
        conn.execute(
            """
            INSERT INTO calendar_events (organization_id, project_id, title, description, location, start_at, end_at, event_type, source, external_id, created_by, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'manual', NULL, ?, ?, ?)
            """,
            (org_id, project_id, title, form.get("description", "").strip(), form.get("location", "").strip(), start_at, end_at, event_type, user_id, now, now),
        )
        conn.commit()
        return notice_redirect(f"/calendar?month={start_at[:7]}", "Event added.")

    match = re.fullmatch(r"/calendar/events/(\d+)/delete", path)
    if match and req.method == "POST":
        gate = require_role(ctx, "field_staff")
        if gate:
            return gate
        conn.execute("DELETE FROM calendar_events WHERE id = ? AND organization_id = ?", (int(match.group(1)), org_id))
        conn.commit()
        return notice_redirect("/calendar", "Event deleted.")

    if path == "/calendar/import" and req.method == "POST":
        gate = require_role(ctx, "field_staff")
        if gate:
            return gate
        upload = req.files.get("file")
        if upload is None:
            return notice_redirect("/calendar", "No file selected.")
        text = upload.read().decode("utf-8-sig", errors="replace")
        if str(upload.filename or "").lower().endswith(".ics") or "BEGIN:VCALENDAR" in text[:200]:
            events = calendar_sync.parse_ics(text)
        else:
            events = calendar_sync.parse_google_csv(text)
        counts = {"inserted": 0, "updated": 0}
        for event in events:
            counts[calendar_sync.upsert_external_event(conn, org_id, user_id, event)] += 1
        conn.commit()
        log.info("calendar import for org %s: %s", org_id, counts)
        return notice_redirect("/calendar", f"Imported {counts['inserted']} new and {counts['updated']} updated events.")

    if path == "/calendar/export.ics" and req.method == "GET":
        events = [dict(e) for e in conn.execute("SELECT * FROM calendar_events WHERE organization_id = ? ORDER BY start_at", (org_id,)).fetchall()]
        projects = [dict(p) for p in conn.execute("SELECT id, name, start_date, end_date FROM projects WHERE organization_id = ?", (org_id,)).fetchall()]
        periods = [
            dict(p)
            for p in conn.execute(
                """
                SELECT ip.id, ip.period_key, ip.due_date, i.name AS indicator_name, i.project_id
                FROM indicator_periods ip
                JOIN indicators i ON i.id = ip.indicator_id
                WHERE i.organization_id = ?
                """,
                (org_id,),
            ).fetchall()
        ]
        body = calendar_sync.build_ics(events + calendar_sync.derived_events(projects, periods), str(ctx["active_org"]["name"]))
        return download_response(body.encode("utf-8"), f"{ctx['active_org']['slug']}-calendar.ics", "text/calendar; charset=utf-8")

    if path.startswith("/calendar/google/") and req.method == "POST":
        gate = require_role(ctx, "manager")
        if gate:
            return gate
        settings = calendar_sync.load_sync_settings(conn, org_id)
        action = path.rsplit("/", 1)[-1]
        if action == "connect":
            calendar_id = req.form.get("calendar_id", "").strip() or "primary"
            lookback = clamp_int(req.form.get("lookback_days"), 30, 0, 365)
            lookahead = clamp_int(req.form.get("lookahead_days"), 90, 1, 730)
            if not calendar_sync.gcal_api_configured():
                calendar_sync.save_sync_settings(conn, org_id, calendar_id, lookback, lookahead, False, "Google API credentials are not configured.")
                conn.commit()
                return notice_redirect("/calendar", "Google API credentials are not configured on the server.")
            calendar_sync.save_sync_settings(conn, org_id, calendar_id, lookback, lookahead, True, "Connected")
            conn.commit()
            return notice_redirect("/calendar", "Google Calendar connected.")
        if action == "disconnect":
            calendar_sync.save_sync_settings(
                conn, org_id, settings["calendar_id"], int(settings["lookback_days"]), int(settings["lookahead_days"]), False, "Disconnected"
            )
            conn.commit()
            return notice_redirect("/calendar", "Google Calendar disconnected.")
        if action == "pull":
            if not settings["connected"]:
                return notice_redirect("/calendar", "Connect Google Calendar first.")
            inserted, updated, error = calendar_sync.pull_google_calendar_events(
                conn, org_id, user_id, settings["calendar_id"], int(settings["lookback_days"]), int(settings["lookahead_days"])
            )
            status = error or f"Pulled {inserted} new, {updated} updated"
            calendar_sync.save_sync_settings(
                conn, org_id, settings["calendar_id"], int(settings["lookback_days"]), int(settings["lookahead_days"]), True, status, touch_pull=not error
            )
            conn.commit()
            return notice_redirect("/calendar", status)
        return not_found()

    # -- messaging
    if path == "/messages" and req.method == "GET":
        return page("Messages", render_messages_page(conn, org_id, ctx))

    if path == "/messages/new" and req.method == "POST":
        other_id = to_int(req.form.get("user_id"))
        if not other_id or other_id == user_id or not member_role(conn, org_id, other_id):
            return notice_redirect("/messages", "Select a colleague in this organization.")
        conversation_id = get_or_create_conversation(conn, org_id, user_id, other_id)
        conn.commit()
        return redirect(f"/messages/{conversation_id}")

    match = re.fullmatch(r"/messages/(\d+)(/send)?", path)
    if match:
        conversation = conversation_for_user(conn, org_id, user_id, int(match.group(1)))
        if not conversation:
            return not_found()
        if match.group(2) and req.method == "POST":
            content = req.form.get("content", "").strip()
            if not content:
                return notice_redirect(f"/messages/{conversation['id']}", "Message cannot be empty.")
            send_direct_message(conn, org_id, user, conversation, content[:4000])
            conn.commit()
            return redirect(f"/messages/{conversation['id']}")
        if not match.group(2) and req.method == "GET":
            conn.execute(
                "UPDATE messages SET is_read = 1 WHERE conversation_id = ? AND sender_id != ? AND is_read = 0",
                (conversation["id"], user_id),
            )
            return page("Messages", render_messages_page(conn, org_id, ctx, conversation))
        return not_found()

    if path == "/api/messages/unread":
        return json_response({"unread": unread_message_count(conn, org_id, user_id)})

    # -- notifications
    if path == "/notifications" and req.method == "GET":
        return page("Notifications", render_notifications_page(conn, org_id, ctx))

    if path == "/notifications/read-all" and req.method == "POST":
        conn.execute(
            "UPDATE notifications SET read_at = ? WHERE organization_id = ? AND user_id = ? AND read_at IS NULL",
            (iso(), org_id, user_id),
        )
        conn.commit()
        return notice_redirect("/notifications", "All notifications marked read.")

    if path == "/api/notifications/count":
        return json_response({"unread": unread_notification_count(conn, org_id, user_id)})

    if path == "/statistics" and req.method == "GET":
        return page("Statistics", render_statistics_page(conn, org_id))

    # -- administration
    if path == "/admin/users" and req.method == "GET":
        gate = require_role(ctx, "manager")
        if gate:
            return gate
        return page("Users", render_users_page(conn, org_id, ctx))

    if path == "/admin/users/new" and req.method == "POST":
        gate = require_role(ctx, "manager")
        if gate:
            return gate
        form = req.form
        email = form.get("email", "").strip().lower()
        name = form.get("name", "").strip()
        new_role = parse_membership_role(form.get("role"))
        if new_role not in assignable_membership_roles(role):
            return notice_redirect("/admin/users", "You cannot assign that role.")
        if not name or "@" not in email:
            return notice_redirect("/admin/users", "Name and a valid email are required.")
        existing = conn.execute("SELECT id FROM users WHERE email = ?", (email,)).fetchone()
        reset_link = ""
        if existing:
            member_id = int(existing["id"])
        else:
            password = form.get("password", "")
            if password and len(password) < 12:
                return notice_redirect("/admin/users", "Password must be at least 12 characters.")
            pw_hash, pw_salt = hash_password(password or secrets.token_urlsafe(24))
            member_id = int(
                conn.execute(
                    "INSERT INTO users (email, name, password_hash, password_salt, is_active, is_superuser, timezone, created_at) VALUES (?, ?, ?, ?, 1, 0, 'UTC', ?)",
                    (email, name, pw_hash, pw_salt, iso()),
                ).lastrowid
            )
            if not password:
                token, _expires = create_password_reset(conn, member_id, created_by=user_id, hours=72)
                reset_link = f"/reset-password?token={token}"
        if member_role(conn, org_id, member_id):
            return notice_redirect("/admin/users", "That user is already a member.")
        conn.execute(
            "INSERT INTO memberships (user_id, organization_id, role, created_at) VALUES (?, ?, ?, ?)",
            (member_id, org_id, new_role, iso()),
        )
        notify(conn, org_id, member_id, "system", f"You were added to {ctx['active_org']['name']}", f"Role: {label(new_role)}", "/dashboard")
        conn.commit()
        log.info("user %s added to org %s as %s by %s", email, org_id, new_role, user_id)
        if reset_link:
            return page("Users", render_users_page(conn, org_id, ctx, reset_link))
        return notice_redirect("/admin/users", "User added.")

    match = re.fullmatch(r"/admin/users/(\d+)/(role|deactivate|activate|reset)", path)
    if match and req.method == "POST":
        gate = require_role(ctx, "manager")
        if gate:
            return gate
        member_id = int(match.group(1))
        current_role = member_role(conn, org_id, member_id)
        assignable = assignable_membership_roles(role)
        if not current_role or member_id == user_id or current_role not in assignable:
            return notice_redirect("/admin/users", "You cannot change that user.")
        action = match.group(2)
        if action == "role":
            new_role = parse_membership_role(req.form.get("role"), current_role)
            if new_role not in assignable:
                return notice_redirect("/admin/users", "You cannot assign that role.")
            conn.execute("UPDATE memberships SET role = ? WHERE user_id = ? AND organization_id = ?", (new_role, member_id, org_id))
            conn.commit()
            return notice_redirect("/admin/users", "Role updated.")
        if action in ("deactivate", "activate"):
            conn.execute("UPDATE users SET is_active = ? WHERE id = ?", (1 if action == "activate" else 0, member_id))
            if action == "deactivate":
                conn.execute("DELETE FROM sessions WHERE user_id = ?", (member_id,))
            conn.commit()
            return notice_redirect("/admin/users", f"User {action}d.")
        token, _expires = create_password_reset(conn, member_id, created_by=user_id)
        conn.commit()
        return page("Users", render_users_page(conn, org_id, ctx, f"/reset-password?token={token}"))

    if path == "/settings" and req.method == "GET":
        gate = require_role(ctx, "manager")
        if gate:
            return gate
        return page("Units & Disaggregations", render_settings_page(conn, org_id, ctx))

    if path == "/settings/units/new" and req.method == "POST":
        gate = require_role(ctx, "manager")
        if gate:
            return gate
        name = req.form.get("name", "").strip()
        unit_type = req.form.get("unit_type") if req.form.get("unit_type") in UNIT_TYPES else "other"
        if not name:
            return notice_redirect("/settings", "Unit name is required.")
        try:
            conn.execute(
                "INSERT INTO units (organization_id, name, symbol, unit_type, created_at) VALUES (?, ?, ?, ?, ?)",
                (org_id, name, req.form.get("symbol", "").strip(), unit_type, iso()),
            )
        except sqlite3.IntegrityError:
            return notice_redirect("/settings", "A unit with that name already exists.")
        conn.commit()
        return notice_redirect("/settings", "Unit added.")

    match = re.fullmatch(r"/settings/(units|disaggregations)/(\d+)/delete", path)
    if match and req.method == "POST":
        gate = require_role(ctx, "manager")
        if gate:
            return gate
        table = "units" if match.group(1) == "units" else "disaggregation_defs"
        conn.execute(f"DELETE FROM {table} WHERE id = ? AND organization_id = ?", (int(match.group(2)), org_id))
        conn.commit()
        return notice_redirect("/settings", "Deleted.")

    if path == "/settings/disaggregations/new" and req.method == "POST":
        gate = require_role(ctx, "manager")
        if gate:
            return gate
        name = req.form.get("name", "").strip()
        labels = [line.strip() for line in req.form.get("values", "").splitlines() if line.strip()]
        if not name or not labels:
            return notice_redirect("/settings", "A name and at least one value are required.")
        try:
            definition_id = conn.execute(
                "INSERT INTO disaggregation_defs (organization_id, name, created_at) VALUES (?, ?, ?)",
                (org_id, name, iso()),
            ).lastrowid
        except sqlite3.IntegrityError:
            return notice_redirect("/settings", "A disaggregation with that name already exists.")
        for order, value_label in enumerate(dict.fromkeys(labels)):
            conn.execute(
                "INSERT INTO disaggregation_values (definition_id, value_label, sort_order) VALUES (?, ?, ?)",
                (definition_id, value_label, order),
            )
        conn.commit()
        return notice_redirect("/settings", "Disaggregation added.")

    if path == "/profile" and req.method == "GET":
        return page("Profile", render_profile_page(ctx))

    if path == "/profile" and req.method == "POST":
        name = req.form.get("name", "").strip()
        timezone = req.form.get("timezone", "").strip() or "UTC"
        if not name:
            return page("Profile", render_profile_page(ctx, "Name is required."))
        conn.execute("UPDATE users SET name = ?, timezone = ? WHERE id = ?", (name, timezone[:64], user_id))
        conn.commit()
        return notice_redirect("/profile", "Profile saved.")

    if path == "/profile/password" and req.method == "POST":
        row = conn.execute("SELECT password_hash, password_salt FROM users WHERE id = ?", (user_id,)).fetchone()
        password = req.form.get("password", "")
        if not verify_password(req.form.get("current_password", ""), str(row["password_hash"]), str(row["password_salt"])):
            return page("Profile", render_profile_page(ctx, "Current password is incorrect."))
        if password != req.form.get("password_confirm", "") or len(password) < 12:
            return page("Profile", render_profile_page(ctx, "Passwords must match and be at least 12 characters."))
        pw_hash, pw_salt = hash_password(password)
        conn.execute("UPDATE users SET password_hash = ?, password_salt = ? WHERE id = ?", (pw_hash, pw_salt, user_id))
        conn.execute("DELETE FROM sessions WHERE user_id = ? AND token_hash != ?", (user_id, token_hash(req.cookies.get("session_token", ""))))
        conn.commit()
        return notice_redirect("/profile", "Password updated.")

    return None


def run() -> None:
    configure_logging()
    ensure_bootstrap()
    server_mode = "threaded" if WSGI_THREADED else "single-threaded"
    print(f"{APP_NAME} running on http://{HOST}:{PORT} (db={DB_PATH}, mode={server_mode})")
    if WSGI_THREADED:
        server = make_server(HOST, PORT, app, server_class=ThreadedWSGIServer)
    else:
        server = make_server(HOST, PORT, app)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        print("Shutting down")


if __name__ == "__main__":
    run()
