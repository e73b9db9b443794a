#!/usr/bin/env python3
"""Load deterministic sample data: staff, a project with objectives, indicators and reported values."""

import argparse
import datetime as dt
import json
import os
import random
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.common import hash_password, iso
from app.data_import import TOTAL_KEY
from app.db import db_connect, ensure_bootstrap
from app.periods import generate_periods

RANDOM_SEED = 20261019

NAMES = [
    ("Amina Okafor", "manager"),
    ("Tomas Lindqvist", "field_staff"),
    ("Grace Mwangi", "field_staff"),
    ("Rafael Ortega", "field_staff"),
    ("Leila Haddad", "viewer"),
]

PROJECT_NAME = "Community Water Access Programme"
OBJECTIVES = [
    "Objective 1: Increase access to safe drinking water",
    "Objective 2: Improve hygiene practices in schools",
]
INDICATORS = [
    (0, "Number of people with new access to safe water", "People", "sum", 1200.0),
    (0, "Number of water points rehabilitated", "Number", "sum", 8.0),
    (1, "Percentage of schools with handwashing stations", "Percentage", "latest", 35.0),
]
DEFAULT_ORG_SLUG = os.environ.get("MERIDIAN_DEFAULT_ORG_SLUG", "default").strip().lower()


def upsert_sample_users(conn, org_id):
    user_ids = []
    for idx, (name, role) in enumerate(NAMES, start=1):
        email = f"sample{idx}@meridian.local"
        row = conn.execute("SELECT id FROM users WHERE email = ?", (email,)).fetchone()
        if row:
            user_id = row["id"]
        else:
            pw_hash, pw_salt = hash_password("SamplePassword!2026")
            user_id = conn.execute(
                "INSERT INTO users (email, name, password_hash, password_salt, is_active, is_superuser, timezone, created_at) VALUES (?, ?, ?, ?, 1, 0, 'UTC', ?)",
                (email, name, pw_hash, pw_salt, iso()),
            ).lastrowid
        user_ids.append(user_id)
        conn.execute(
            "INSERT OR IGNORE INTO memberships (user_id, organization_id, role, created_at) VALUES (?, ?, ?, ?)",
            (user_id, org_id, role, iso()),
        )
    return user_ids


def create_project(conn, org_id, manager_id, staff_ids):
    today = dt.date.today()
    now = iso()
    project_id = conn.execute(
        """
        INSERT INTO projects (organization_id, name, description, status, start_date, end_date, progress, manager_user_id, created_by, created_at, updated_at)
        VALUES (?, ?, ?, 'active', ?, ?, 40, ?, ?, ?, ?)
        """,
        (
            org_id,
            PROJECT_NAME,
            "Sample programme loaded for demonstrations.",
            (today - dt.timedelta(days=180)).isoformat(),
            (today + dt.timedelta(days=540)).isoformat(),
            manager_id,
            manager_id,
            now,
            now,
        ),
    ).lastrowid
    for user_id in [manager_id] + staff_ids:
        conn.execute(
            "INSERT OR IGNORE INTO project_members (project_id, user_id, role, created_at) VALUES (?, ?, 'member', ?)",
            (project_id, user_id, now),
        )
    node_ids = [
        conn.execute(
            "INSERT INTO results_nodes (project_id, title, sort_order, created_at) VALUES (?, ?, ?, ?)",
            (project_id, title, order, now),
        ).lastrowid
        for order, title in enumerate(OBJECTIVES)
    ]
    return project_id, node_ids


def create_indicators(conn, org_id, project_id, node_ids, manager_id, reporter_ids):
    now = iso()
    today = dt.date.today()
    units = {row["name"]: row["id"] for row in conn.execute("SELECT id, name FROM units WHERE organization_id = ?", (org_id,)).fetchall()}
    submissions = 0
    for node_index, name, unit_name, rule, target in INDICATORS:
        indicator_id = conn.execute(
            """
            INSERT INTO indicators (organization_id, project_id, results_node_id, name, unit_id, type, direction, frequency, calendar_type, aggregation_rule, baseline_value, baseline_date, due_days, created_by, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, 'quantitative', 'increase', 'quarterly', 'fiscal', ?, 0, ?, 15, ?, ?, ?)
            """,
            (org_id, project_id, node_ids[node_index], name, units.get(unit_name), rule, today.isoformat(), manager_id, now, now),
        ).lastrowid
        periods = generate_periods("quarterly", 15, today - dt.timedelta(days=270))
        for position, period in enumerate(periods):
            period_id = conn.execute(
                "INSERT INTO indicator_periods (indicator_id, period_key, start_date, end_date, due_date, target_value, created_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (indicator_id, period["period_key"], period["start_date"], period["end_date"], period["due_date"], round(target / 4, 2), now),
            ).lastrowid
            if period["end_date"] >= today.isoformat():
                continue
            status = "approved" if position % 2 == 0 else "submitted"
            submission_id = conn.execute(
                """
                INSERT INTO submissions (organization_id, project_id, indicator_id, period_id, reporter_user_id, status, narrative, submitted_at, decided_by, decided_at, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, 'Sample field report.', ?, ?, ?, ?, ?)
                """,
                (
                    org_id,
                    project_id,
                    indicator_id,
                    period_id,
                    random.choice(reporter_ids),
                    status,
                    now,
                    manager_id if status == "approved" else None,
                    now if status == "approved" else None,
                    now,
                    now,
                ),
            ).lastrowid
            value = round(target / 4 * random.uniform(0.6, 1.2), 1)
            conn.execute(
                "INSERT INTO submission_values (submission_id, combination_key, value_number) VALUES (?, ?, ?)",
                (submission_id, TOTAL_KEY, value),
            )
            submissions += 1
    return submissions


def create_dataset(conn, org_id, user_id):
    columns = [{"name": "District", "type": "text"}, {"name": "Households", "type": "number"}, {"name": "Coverage", "type": "percentage"}]
    rows = [
        {"District": district, "Households": random.randint(200, 1500), "Coverage": round(random.uniform(20, 90), 1)}
        for district in ("North", "South", "East", "West", "Central")
    ]
    now = iso()
    conn.execute(
        "INSERT INTO datasets (organization_id, name, description, columns_json, rows_json, row_count, created_by, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
        (org_id, "Baseline household survey", "Sample dataset", json.dumps(columns), json.dumps(rows), len(rows), user_id, now, now),
    )


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--org-slug", default=DEFAULT_ORG_SLUG)
    parser.add_argument("--force", action="store_true", help="load even if the sample project already exists")
    args = parser.parse_args()

    random.seed(RANDOM_SEED)
    ensure_bootstrap()
    conn = db_connect()
    try:
        org = conn.execute("SELECT id FROM organizations WHERE slug = ?", (args.org_slug,)).fetchone()
        if not org:
            print(f"organization '{args.org_slug}' not found")
            return 1
        org_id = org["id"]
        exists = conn.execute("SELECT id FROM projects WHERE organization_id = ? AND name = ?", (org_id, PROJECT_NAME)).fetchone()
        if exists and not args.force:
            print("SAMPLE_DATA_PRESENT")
            return 0
        user_ids = upsert_sample_users(conn, org_id)
        manager_id, staff_ids = user_ids[0], user_ids[1:4]
        project_id, node_ids = create_project(conn, org_id, manager_id, staff_ids)
        submissions = create_indicators(conn, org_id, project_id, node_ids, manager_id, staff_ids)
        create_dataset(conn, org_id, manager_id)
        conn.commit()
    finally:
        conn.close()
    print(f"SAMPLE_DATA_OK project={project_id} submissions={submissions}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
