"""Database connection, schema and first-run seed.

SQLite is the default backend. Setting ``MERIDIAN_DATABASE_URL`` to a ``postgresql://`` URL
switches to PostgreSQL through psycopg; a thin compatibility layer keeps the sqlite-style
``conn.execute(sql, params)`` calls used throughout the app working unchanged.
"""

from __future__ import annotations

import logging
import os
import re
import sqlite3
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from app.common import hash_password, iso, slugify

try:
    import psycopg
    from psycopg.rows import dict_row
except ImportError:  # pragma: no cover - optional dependency path
    psycopg = None
    dict_row = None

log = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = BASE_DIR / "data"
DB_PATH = Path(os.environ.get("MERIDIAN_DB_PATH", str(DATA_DIR / "meridian.db")))
DATABASE_URL = os.environ.get("MERIDIAN_DATABASE_URL", os.environ.get("DATABASE_URL", "")).strip()
DB_BACKEND = "postgres" if DATABASE_URL.startswith(("postgres://", "postgresql://")) else "sqlite"
DB_BUSY_TIMEOUT_MS = max(1000, int(os.environ.get("MERIDIAN_DB_BUSY_TIMEOUT_MS", "6000")))
DB_JOURNAL_MODE = os.environ.get("MERIDIAN_DB_JOURNAL_MODE", "WAL").strip().upper()
DB_SYNCHRONOUS = os.environ.get("MERIDIAN_DB_SYNCHRONOUS", "NORMAL").strip().upper()

DEFAULT_UNITS = [
    ("Number", "#", "count"),
    ("People", "people", "count"),
    ("Percentage", "%", "percentage"),
    ("US Dollars", "$", "currency"),
    ("Hours", "h", "time"),
    ("Kilometres", "km", "distance"),
    ("Text", "", "text"),
]
DEFAULT_DISAGGREGATIONS = [
    ("Sex", ["Female", "Male"]),
    ("Age group", ["0-17", "18-35", "36+"]),
]

BOOTSTRAPPED = False
BOOTSTRAP_LOCK = threading.Lock()
BOOTSTRAP_ERROR = ""


class CompatRow(dict):
    """Row mapping that also supports numeric index access like sqlite3.Row."""

    def __init__(self, data: Dict[str, Any], order: List[str]):
        super().__init__(data)
        self._order = order

    def __getitem__(self, key: object) -> Any:  # type: ignore[override]
        if isinstance(key, int):
            return super().__getitem__(self._order[key])
        return super().__getitem__(str(key))


class CompatCursor:
    """Cursor wrapper with sqlite-like row behavior for PostgreSQL."""

    def __init__(self, cursor: Any, order: Optional[List[str]] = None, lastrowid: Optional[int] = None):
        self._cursor = cursor
        self._order = order or []
        self.lastrowid = lastrowid

    @property
    def rowcount(self) -> int:
        return int(getattr(self._cursor, "rowcount", -1))

    def _wrap(self, row: Any) -> Any:
        if isinstance(row, dict):
            return CompatRow(row, self._order)
        if isinstance(row, tuple):
            return CompatRow({self._order[i]: row[i] for i in range(min(len(self._order), len(row)))}, self._order)
        return row

    def fetchone(self):
        row = self._cursor.fetchone()
        return None if row is None else self._wrap(row)

    def fetchall(self):
        return [self._wrap(row) for row in self._cursor.fetchall()]


def _outside_quotes(sql: str):
    in_single = False
    in_double = False
    for ch in sql:
        if ch == "'" and not in_double:
            in_single = not in_single
        elif ch == '"' and not in_single:
            in_double = not in_double
        yield ch, not (in_single or in_double)


def _split_sql_script(script: str) -> List[str]:
    chunks: List[str] = []
    buf: List[str] = []
    for ch, bare in _outside_quotes(script):
        if ch == ";" and bare:
            stmt = "".join(buf).strip()
            if stmt:
                chunks.append(stmt)
            buf = []
        else:
            buf.append(ch)
    tail = "".join(buf).strip()
    if tail:
        chunks.append(tail)
    return chunks


def _replace_qmark_params(sql: str) -> str:
    return "".join("%s" if ch == "?" and bare else ch for ch, bare in _outside_quotes(sql))


def _adapt_sql_for_postgres(sql: str) -> str:
    text = sql.strip()
    if re.match(r"PRAGMA\s+table_info\(([^)]+)\)", text, flags=re.IGNORECASE):
        return (
            "SELECT column_name AS name, data_type AS type "
            "FROM information_schema.columns "
            "WHERE table_schema = current_schema() AND table_name = %s "
            "ORDER BY ordinal_position"
        )
    text = re.sub(r"INTEGER\s+PRIMARY\s+KEY\s+AUTOINCREMENT", "BIGSERIAL PRIMARY KEY", text, flags=re.IGNORECASE)
    text = re.sub(r"\bBLOB\b", "BYTEA", text, flags=re.IGNORECASE)
    text = re.sub(r"INSERT\s+OR\s+IGNORE\s+INTO", "INSERT INTO", text, flags=re.IGNORECASE)
    if re.match(r"^INSERT\s+INTO\s+", text, flags=re.IGNORECASE) and " ON CONFLICT " not in text.upper():
        text = f"{text} ON CONFLICT DO NOTHING"
    return _replace_qmark_params(text)


class PostgresCompatConnection:
    """Small DB-API compatibility layer so sqlite-style calls work against PostgreSQL."""

    def __init__(self, conn: Any):
        self._conn = conn

    def execute(self, sql: str, params: Tuple[Any, ...] = ()):
        pg_sql = _adapt_sql_for_postgres(sql)
        use_params = params
        pragma_match = re.match(r"PRAGMA\s+table_info\(([^)]+)\)", sql.strip(), flags=re.IGNORECASE)
        if pragma_match:
            use_params = (pragma_match.group(1).strip().strip('"'),)
        cur = self._conn.cursor()
        try:
            cur.execute(pg_sql, use_params)
        except Exception as exc:
            # Integrity violations surface as sqlite3.IntegrityError so callers handle one type.
            if str(getattr(exc, "sqlstate", "") or "").startswith("23"):
                self._conn.rollback()
                raise sqlite3.IntegrityError(str(exc)) from exc
            raise
        order = [d.name for d in (cur.description or [])]
        last_id = None
        if pg_sql.upper().startswith("INSERT") and cur.rowcount:
            with self._conn.cursor() as c2:
                c2.execute("SELECT LASTVAL() AS id")
                row = c2.fetchone()
                if isinstance(row, dict) and row.get("id") is not None:
                    last_id = int(row["id"])
        return CompatCursor(cur, order=order, lastrowid=last_id)

    def executescript(self, script: str):
        for stmt in _split_sql_script(script):
            self.execute(stmt)

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()

    def close(self):
        self._conn.close()


def db_connect():
    if DB_BACKEND == "postgres":
        if psycopg is None:
            raise RuntimeError("PostgreSQL backend requested but psycopg is not installed.")
        raw = psycopg.connect(DATABASE_URL, row_factory=dict_row, autocommit=False)
        return PostgresCompatConnection(raw)

    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(DB_PATH), timeout=DB_BUSY_TIMEOUT_MS / 1000.0)
    conn.row_factory = sqlite3.Row
    conn.execute(f"PRAGMA busy_timeout = {DB_BUSY_TIMEOUT_MS}")
    conn.execute("PRAGMA foreign_keys = ON")
    safe_journal_mode = DB_JOURNAL_MODE if DB_JOURNAL_MODE in {"DELETE", "TRUNCATE", "PERSIST", "MEMORY", "WAL", "OFF"} else "WAL"
    safe_synchronous = DB_SYNCHRONOUS if DB_SYNCHRONOUS in {"OFF", "NORMAL", "FULL", "EXTRA"} else "NORMAL"
    conn.execute(f"PRAGMA journal_mode = {safe_journal_mode}")
    conn.execute(f"PRAGMA synchronous = {safe_synchronous}")
    return conn


def ensure_column(conn, table: str, column: str, ddl: str) -> None:
    existing = {str(row["name"] or "").lower() for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}
    if column.lower() in existing:
        return
    try:
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}")
    except Exception as exc:
        msg = str(exc).lower()
        if "duplicate column name" not in msg and "already exists" not in msg:
            raise


SCHEMA = """
CREATE TABLE IF NOT EXISTS organizations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    slug TEXT NOT NULL UNIQUE,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    email TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL,
    password_hash TEXT NOT NULL,
    password_salt TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    is_superuser INTEGER NOT NULL DEFAULT 0,
    timezone TEXT NOT NULL DEFAULT 'UTC',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS memberships (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    organization_id INTEGER NOT NULL,
    role TEXT NOT NULL,
    created_at TEXT NOT NULL,
    UNIQUE (user_id, organization_id),
    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
    FOREIGN KEY (organization_id) REFERENCES organizations(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS sessions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    token_hash TEXT NOT NULL UNIQUE,
    csrf_token TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    created_at TEXT NOT NULL,
    last_seen_at TEXT,
    ip_address TEXT,
    user_agent TEXT,
    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS password_resets (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    token_hash TEXT NOT NULL UNIQUE,
    expires_at TEXT NOT NULL,
    used_at TEXT,
    created_by INTEGER,
    created_at TEXT NOT NULL,
    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS projects (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    organization_id INTEGER NOT NULL,
    name TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL DEFAULT 'planning',
    start_date TEXT,
    end_date TEXT,
    progress INTEGER NOT NULL DEFAULT 0,
    manager_user_id INTEGER,
    created_by INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (organization_id) REFERENCES organizations(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS project_members (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id INTEGER NOT NULL,
    user_id INTEGER NOT NULL,
    role TEXT NOT NULL DEFAULT 'member',
    created_at TEXT NOT NULL,
    UNIQUE (project_id, user_id),
    FOREIGN KEY (project_id) REFERENCES projects(id) ON DELETE CASCADE,
    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS results_nodes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id INTEGER NOT NULL,
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    sort_order INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    FOREIGN KEY (project_id) REFERENCES projects(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS units (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    organization_id INTEGER NOT NULL,
    name TEXT NOT NULL,
    symbol TEXT NOT NULL DEFAULT '',
    unit_type TEXT NOT NULL DEFAULT 'count',
    created_at TEXT NOT NULL,
    UNIQUE (organization_id, name),
    FOREIGN KEY (organization_id) REFERENCES organizations(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS disaggregation_defs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    organization_id INTEGER NOT NULL,
    name TEXT NOT NULL,
    created_at TEXT NOT NULL,
    UNIQUE (organization_id, name),
    FOREIGN KEY (organization_id) REFERENCES organizations(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS disaggregation_values (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    definition_id INTEGER NOT NULL,
    value_label TEXT NOT NULL,
    sort_order INTEGER NOT NULL DEFAULT 0,
    FOREIGN KEY (definition_id) REFERENCES disaggregation_defs(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS indicators (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    organization_id INTEGER NOT NULL,
    project_id INTEGER NOT NULL,
    results_node_id INTEGER,
    name TEXT NOT NULL,
    definition TEXT NOT NULL DEFAULT '',
    unit_id INTEGER,
    type TEXT NOT NULL DEFAULT 'quantitative',
    direction TEXT NOT NULL DEFAULT 'increase',
    frequency TEXT NOT NULL DEFAULT 'quarterly',
    calendar_type TEXT NOT NULL DEFAULT 'gregorian',
    aggregation_rule TEXT NOT NULL DEFAULT 'sum',
    formula_expr TEXT NOT NULL DEFAULT '',
    baseline_value REAL,
    baseline_date TEXT,
    due_days INTEGER NOT NULL DEFAULT 15,
    created_by INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (project_id) REFERENCES projects(id) ON DELETE CASCADE,
    FOREIGN KEY (results_node_id) REFERENCES results_nodes(id) ON DELETE SET NULL,
    FOREIGN KEY (unit_id) REFERENCES units(id) ON DELETE SET NULL
);

CREATE TABLE IF NOT EXISTS indicator_disaggregations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    indicator_id INTEGER NOT NULL,
    definition_id INTEGER NOT NULL,
    UNIQUE (indicator_id, definition_id),
    FOREIGN KEY (indicator_id) REFERENCES indicators(id) ON DELETE CASCADE,
    FOREIGN KEY (definition_id) REFERENCES disaggregation_defs(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS indicator_periods (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    indicator_id INTEGER NOT NULL,
    period_key TEXT NOT NULL,
    start_date TEXT NOT NULL,
    end_date TEXT NOT NULL,
    due_date TEXT,
    target_value REAL,
    created_at TEXT NOT NULL,
    UNIQUE (indicator_id, period_key),
    FOREIGN KEY (indicator_id) REFERENCES indicators(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS indicator_targets (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    indicator_id INTEGER NOT NULL,
    target_value REAL NOT NULL,
    target_date TEXT,
    notes TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL,
    FOREIGN KEY (indicator_id) REFERENCES indicators(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS form_links (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    organization_id INTEGER NOT NULL,
    indicator_id INTEGER NOT NULL,
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    access_token TEXT NOT NULL UNIQUE,
    status TEXT NOT NULL DEFAULT 'active',
    require_name INTEGER NOT NULL DEFAULT 1,
    require_email INTEGER NOT NULL DEFAULT 0,
    require_phone INTEGER NOT NULL DEFAULT 0,
    expires_at TEXT,
    response_count INTEGER NOT NULL DEFAULT 0,
    created_by INTEGER,
    created_at TEXT NOT NULL,
    FOREIGN KEY (indicator_id) REFERENCES indicators(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS submissions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    organization_id INTEGER NOT NULL,
    project_id INTEGER NOT NULL,
    indicator_id INTEGER NOT NULL,
    period_id INTEGER NOT NULL,
    reporter_user_id INTEGER,
    form_link_id INTEGER,
    status TEXT NOT NULL DEFAULT 'draft',
    narrative TEXT NOT NULL DEFAULT '',
    respondent_name TEXT NOT NULL DEFAULT '',
    respondent_email TEXT NOT NULL DEFAULT '',
    respondent_phone TEXT NOT NULL DEFAULT '',
    submitted_at TEXT,
    decided_by INTEGER,
    decided_at TEXT,
    decision_note TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (indicator_id) REFERENCES indicators(id) ON DELETE CASCADE,
    FOREIGN KEY (period_id) REFERENCES indicator_periods(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS submission_values (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    submission_id INTEGER NOT NULL,
    combination_key TEXT NOT NULL DEFAULT 'total',
    value_number REAL,
    value_text TEXT NOT NULL DEFAULT '',
    is_estimated INTEGER NOT NULL DEFAULT 0,
    notes TEXT NOT NULL DEFAULT '',
    UNIQUE (submission_id, combination_key),
    FOREIGN KEY (submission_id) REFERENCES submissions(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS datasets (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    organization_id INTEGER NOT NULL,
    name TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    columns_json TEXT NOT NULL DEFAULT '[]',
    rows_json TEXT NOT NULL DEFAULT '[]',
    row_count INTEGER NOT NULL DEFAULT 0,
    created_by INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (organization_id) REFERENCES organizations(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS import_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    organization_id INTEGER NOT NULL,
    dataset_id INTEGER,
    file_name TEXT NOT NULL,
    content_type TEXT NOT NULL DEFAULT '',
    file_blob BLOB,
    row_count INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'completed',
    errors TEXT NOT NULL DEFAULT '',
    created_by INTEGER,
    created_at TEXT NOT NULL,
    FOREIGN KEY (dataset_id) REFERENCES datasets(id) ON DELETE SET NULL
);

CREATE TABLE IF NOT EXISTS visualizations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    organization_id INTEGER NOT NULL,
    dataset_id INTEGER NOT NULL,
    name TEXT NOT NULL,
    chart_type TEXT NOT NULL,
    config_json TEXT NOT NULL DEFAULT '{}',
    share_id TEXT UNIQUE,
    created_by INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (dataset_id) REFERENCES datasets(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS calendar_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    organization_id INTEGER NOT NULL,
    project_id INTEGER,
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    location TEXT NOT NULL DEFAULT '',
    start_at TEXT NOT NULL,
    end_at TEXT NOT NULL,
    event_type TEXT NOT NULL DEFAULT 'custom',
    source TEXT NOT NULL DEFAULT 'manual',
    external_id TEXT,
    created_by INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (organization_id) REFERENCES organizations(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS calendar_sync_settings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    organization_id INTEGER NOT NULL UNIQUE,
    calendar_id TEXT NOT NULL DEFAULT 'primary',
    lookback_days INTEGER NOT NULL DEFAULT 30,
    lookahead_days INTEGER NOT NULL DEFAULT 90,
    connected INTEGER NOT NULL DEFAULT 0,
    last_pull_at TEXT,
    last_status TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS conversations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    organization_id INTEGER NOT NULL,
    user_a_id INTEGER NOT NULL,
    user_b_id INTEGER NOT NULL,
    last_message_at TEXT,
    created_at TEXT NOT NULL,
    UNIQUE (organization_id, user_a_id, user_b_id)
);

CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    conversation_id INTEGER NOT NULL,
    sender_id INTEGER NOT NULL,
    content TEXT NOT NULL,
    is_read INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    FOREIGN KEY (conversation_id) REFERENCES conversations(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS project_messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id INTEGER NOT NULL,
    sender_id INTEGER NOT NULL,
    content TEXT NOT NULL,
    created_at TEXT NOT NULL,
    FOREIGN KEY (project_id) REFERENCES projects(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS notifications (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    organization_id INTEGER NOT NULL,
    user_id INTEGER NOT NULL,
    kind TEXT NOT NULL,
    title TEXT NOT NULL,
    body TEXT NOT NULL DEFAULT '',
    link TEXT NOT NULL DEFAULT '',
    read_at TEXT,
    created_at TEXT NOT NULL,
    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_projects_org ON projects(organization_id, status);
CREATE INDEX IF NOT EXISTS idx_indicators_project ON indicators(project_id);
CREATE INDEX IF NOT EXISTS idx_periods_indicator ON indicator_periods(indicator_id, end_date);
CREATE INDEX IF NOT EXISTS idx_submissions_period ON submissions(period_id, status);
CREATE INDEX IF NOT EXISTS idx_submissions_org ON submissions(organization_id, status);
CREATE INDEX IF NOT EXISTS idx_events_org_start ON calendar_events(organization_id, start_at);
CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id, created_at);
CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id, read_at)
"""


def run_schema_upgrades(conn) -> None:
    """Additive, idempotent column upgrades for databases created by older releases."""
    ensure_column(conn, "users", "timezone", "TEXT NOT NULL DEFAULT 'UTC'")
    ensure_column(conn, "projects", "progress", "INTEGER NOT NULL DEFAULT 0")
    ensure_column(conn, "indicators", "calendar_type", "TEXT NOT NULL DEFAULT 'gregorian'")
    ensure_column(conn, "indicators", "formula_expr", "TEXT NOT NULL DEFAULT ''")
    ensure_column(conn, "submissions", "form_link_id", "INTEGER")


def ensure_org_defaults(conn, org_id: int) -> None:
    """Give an organization the default units of measure and disaggregations."""
    if conn.execute("SELECT COUNT(*) AS c FROM units WHERE organization_id = ?", (org_id,)).fetchone()["c"] == 0:
        for name, symbol, unit_type in DEFAULT_UNITS:
            conn.execute(
                "INSERT INTO units (organization_id, name, symbol, unit_type, created_at) VALUES (?, ?, ?, ?, ?)",
                (org_id, name, symbol, unit_type, iso()),
            )
    if conn.execute("SELECT COUNT(*) AS c FROM disaggregation_defs WHERE organization_id = ?", (org_id,)).fetchone()["c"] == 0:
        for name, labels in DEFAULT_DISAGGREGATIONS:
            definition_id = conn.execute(
                "INSERT INTO disaggregation_defs (organization_id, name, created_at) VALUES (?, ?, ?)",
                (org_id, name, iso()),
            ).lastrowid
            for order, label in enumerate(labels):
                conn.execute(
                    "INSERT INTO disaggregation_values (definition_id, value_label, sort_order) VALUES (?, ?, ?)",
                    (definition_id, label, order),
                )


def seed_defaults(conn) -> None:
    # Release-safe bootstrap: one organization, one owner, reference data only.
    org_slug = slugify(os.environ.get("MERIDIAN_DEFAULT_ORG_SLUG", "default"), "default")
    org_name = os.environ.get("MERIDIAN_DEFAULT_ORG_NAME", "Default Organization").strip() or "Default Organization"

    row = conn.execute("SELECT id FROM organizations WHERE slug = ?", (org_slug,)).fetchone()
    if row:
        org_id = int(row["id"])
    else:
        org_id = int(
            conn.execute(
                "INSERT INTO organizations (name, slug, created_at) VALUES (?, ?, ?)",
                (org_name, org_slug, iso()),
            ).lastrowid
        )
        log.info("created default organization %s", org_slug)

    admin_email = os.environ.get("MERIDIAN_ADMIN_EMAIL", "admin@meridian.local").lower().strip()
    admin_password = os.environ.get("MERIDIAN_ADMIN_PASSWORD", "ChangeMeMeridian!2026")
    admin_name = os.environ.get("MERIDIAN_ADMIN_NAME", "Meridian Admin")

    admin = conn.execute("SELECT id FROM users WHERE email = ?", (admin_email,)).fetchone()
    if admin:
        admin_id = int(admin["id"])
        conn.execute("UPDATE users SET is_active = 1, is_superuser = 1 WHERE id = ?", (admin_id,))
    else:
        pw_hash, pw_salt = hash_password(admin_password)
        admin_id = int(
            conn.execute(
                """
                INSERT INTO users (email, name, password_hash, password_salt, is_active, is_superuser, timezone, created_at)
                VALUES (?, ?, ?, ?, 1, 1, 'UTC', ?)
                """,
                (admin_email, admin_name, pw_hash, pw_salt, iso()),
            ).lastrowid
        )
        log.info("created bootstrap admin %s", admin_email)

    if not conn.execute(
        "SELECT id FROM memberships WHERE user_id = ? AND organization_id = ?",
        (admin_id, org_id),
    ).fetchone():
        conn.execute(
            "INSERT INTO memberships (user_id, organization_id, role, created_at) VALUES (?, ?, 'owner', ?)",
            (admin_id, org_id, iso()),
        )

    ensure_org_defaults(conn, org_id)


def init_db() -> None:
    """Create the schema and seed reference data. Safe to call repeatedly."""
    conn = db_connect()
    try:
        conn.executescript(SCHEMA)
        run_schema_upgrades(conn)
        seed_defaults(conn)
        conn.commit()
    finally:
        conn.close()


def ensure_bootstrap() -> None:
    """Initialize the database once per process."""
    global BOOTSTRAPPED, BOOTSTRAP_ERROR
    if BOOTSTRAPPED:
        return
    with BOOTSTRAP_LOCK:
        if BOOTSTRAPPED:
            return
        try:
            init_db()
            BOOTSTRAPPED = True
            BOOTSTRAP_ERROR = ""
        except Exception as exc:
            BOOTSTRAP_ERROR = str(exc)
            log.exception("database bootstrap failed")
            raise
