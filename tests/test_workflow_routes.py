import io
from urllib.parse import unquote

import pytest
from openpyxl import load_workbook

from app import server
from conftest import Session, location_id

CUSTOM_PERIODS = "FY25-Q1, 2024-10-01, 2024-12-31, 2025-01-15, 100\nFY25-Q2, 2025-01-01, 2025-03-31, 2025-04-15, 120"


def default_org_id(conn) -> int:
    return int(conn.execute("SELECT id FROM organizations WHERE slug = 'default'").fetchone()["id"])


def unit_id(conn, name: str = "People") -> int:
    return int(conn.execute("SELECT id FROM units WHERE organization_id = ? AND name = ?", (default_org_id(conn), name)).fetchone()["id"])


def create_project(admin, name: str = "Community Water Access") -> int:
    response = admin.post("/projects/new", {"name": name, "status": "active", "start_date": "2024-10-01", "end_date": "2026-09-30"})
    assert response.status_code == 302
    return location_id(response, "/projects")


def create_indicator(admin, conn, project_id: int, **extra) -> int:
    admin.post(f"/projects/{project_id}/nodes/new", {"title": "Objective 1: Safe water"})
    node = conn.execute("SELECT id FROM results_nodes WHERE project_id = ?", (project_id,)).fetchone()
    form = {
        "name": "Households with safe water",
        "unit_id": str(unit_id(conn)),
        "frequency": "custom",
        "custom_periods": CUSTOM_PERIODS,
        "aggregation_rule": "sum",
        "results_node_id": str(node["id"]),
    }
    form.update(extra)
    response = admin.post(f"/projects/{project_id}/indicators/new", form)
    assert response.status_code == 302, response.get_data(as_text=True)
    return location_id(response, "/indicators")


def period_ids(conn, indicator_id: int):
    return [int(r["id"]) for r in conn.execute("SELECT id FROM indicator_periods WHERE indicator_id = ? ORDER BY end_date", (indicator_id,))]


def submission_status(conn, submission_id: int) -> str:
    return conn.execute("SELECT status FROM submissions WHERE id = ?", (submission_id,)).fetchone()["status"]


def add_member(admin, email: str, role: str, password: str = "member-password-1") -> Session:
    response = admin.post("/admin/users/new", {"name": email.split("@")[0].title(), "email": email, "password": password, "role": role})
    assert response.status_code == 302
    assert "User%20added" in response.headers["Location"]
    return Session(remote_addr=f"10.0.0.{len(email)}").login(email, password)


@pytest.fixture
def indicator(admin, conn):
    project_id = create_project(admin)
    return {"project_id": project_id, "indicator_id": create_indicator(admin, conn, project_id)}


@pytest.mark.parametrize(
    "path",
    ["/dashboard", "/projects", "/projects?view=board", "/submissions", "/datasets", "/calendar", "/messages", "/notifications", "/statistics", "/admin/users", "/settings", "/profile"],
)
def test_main_pages_render(admin, path):
    response = admin.get(path)
    assert response.status_code == 200
    assert "csrf-token" in response.get_data(as_text=True)


def test_project_requires_name(admin):
    response = admin.post("/projects/new", {"name": ""})
    assert "Project%20name%20is%20required" in response.headers["Location"]


def test_indicator_creation_stores_custom_periods(admin, conn, indicator):
    rows = conn.execute(
        "SELECT period_key, due_date, target_value FROM indicator_periods WHERE indicator_id = ? ORDER BY end_date",
        (indicator["indicator_id"],),
    ).fetchall()
    assert [(r["period_key"], r["due_date"], r["target_value"]) for r in rows] == [
        ("FY25-Q1", "2025-01-15", 100.0),
        ("FY25-Q2", "2025-04-15", 120.0),
    ]
    assert admin.get(f"/indicators/{indicator['indicator_id']}").status_code == 200
    assert admin.get(f"/projects/{indicator['project_id']}").status_code == 200


def test_indicator_without_unit_is_rejected(admin, conn):
    project_id = create_project(admin)
    response = admin.post(
        f"/projects/{project_id}/indicators/new",
        {"name": "Unitless", "frequency": "quarterly", "aggregation_rule": "sum"},
    )
    assert response.status_code == 200
    assert "Unit of measurement is required" in response.get_data(as_text=True)
    assert conn.execute("SELECT COUNT(*) AS n FROM indicators WHERE project_id = ?", (project_id,)).fetchone()["n"] == 0


def test_bad_formula_is_reported_on_the_form(admin, conn):
    project_id = create_project(admin)
    response = admin.post(
        f"/projects/{project_id}/indicators/new",
        {"name": "Ratio", "unit_id": str(unit_id(conn)), "frequency": "annual", "aggregation_rule": "formula", "formula_expr": "sum +"},
    )
    assert response.status_code == 200
    assert "Formula error" in response.get_data(as_text=True)


def test_submit_approve_and_pitt_actuals(admin, conn, indicator):
    first, _second = period_ids(conn, indicator["indicator_id"])
    response = admin.post(
        "/submissions/new",
        {"indicator_id": str(indicator["indicator_id"]), "period_id": str(first), "value__total": "80", "narrative": "Two boreholes", "action": "submit"},
    )
    assert response.status_code == 302
    submission_id = location_id(response, "/submissions")
    assert submission_status(conn, submission_id) == "submitted"

    approved = admin.post(f"/submissions/{submission_id}/status", {"action": "approve", "note": "Verified"})
    assert approved.status_code == 302
    assert submission_status(conn, submission_id) == "approved"
    again = admin.post(f"/submissions/{submission_id}/status", {"action": "approve"})
    assert "Cannot%20approve" in again.headers["Location"]
    assert admin.get(f"/submissions/{submission_id}").status_code == 200

    pitt = admin.get(f"/api/projects/{indicator['project_id']}/pitt").get_json()
    objective = pitt["objectives"][0]
    assert objective["title"] == "Objective 1: Safe water"
    row = objective["indicators"][0]
    assert row["unit"] == "People"
    assert row["periods"][0]["actual"] == 80.0
    assert row["periods"][0]["target"] == 100.0
    assert row["periods"][0]["deviation_percent"] == -20.0
    assert row["periods"][1]["actual"] is None
    assert row["life_of_project"]["target"] == 220.0
    assert row["life_of_project"]["actual"] == 80.0

    assert admin.get(f"/projects/{indicator['project_id']}/reports/pitt").status_code == 200
    export = admin.get(f"/projects/{indicator['project_id']}/reports/pitt.xlsx")
    assert export.status_code == 200
    assert export.headers["Content-Type"] == server.XLSX_MIME
    assert "attachment" in export.headers["Content-Disposition"]
    workbook = load_workbook(io.BytesIO(export.get_data()))
    assert workbook.active.max_row > 3


def approve_value(admin, indicator_id: int, period_id: int, value: str) -> int:
    response = admin.post(
        "/submissions/new",
        {"indicator_id": str(indicator_id), "period_id": str(period_id), "value__total": value, "action": "submit"},
    )
    submission_id = location_id(response, "/submissions")
    admin.post(f"/submissions/{submission_id}/status", {"action": "approve"})
    return submission_id


def test_dashboard_and_statistics_report_indicator_achievement(admin, conn, indicator):
    first, _second = period_ids(conn, indicator["indicator_id"])
    approve_value(admin, indicator["indicator_id"], first, "80")

    achievements = server.indicator_achievements(conn, default_org_id(conn))
    assert achievements == [
        {
            "id": indicator["indicator_id"],
            "name": "Households with safe water",
            "project_id": indicator["project_id"],
            "target": 220.0,
            "actual": 80.0,
            "achievement": 36.4,
            "on_track": False,
        }
    ]
    assert server.indicator_achievements(conn, default_org_id(conn), indicator["project_id"]) == achievements
    assert server.indicator_achievements(conn, default_org_id(conn), indicator["project_id"] + 1000) == []

    dashboard = admin.get("/dashboard")
    assert dashboard.status_code == 200
    assert "Households with safe water" in dashboard.get_data(as_text=True)
    statistics = admin.get("/statistics")
    assert statistics.status_code == 200
    assert "Households with safe water" in statistics.get_data(as_text=True)


def test_indicator_within_tolerance_is_on_track(admin, conn, indicator):
    first, _second = period_ids(conn, indicator["indicator_id"])
    approve_value(admin, indicator["indicator_id"], first, "95")
    (row,) = server.indicator_achievements(conn, default_org_id(conn))
    assert row["achievement"] == round(95 / 220 * 100, 1)
    assert row["on_track"] is True


@pytest.mark.parametrize("expression", ["(sum - 100) ** 0.5", "sum ** 400"])
def test_formula_without_a_finite_real_result_is_rejected_on_save(admin, conn, expression):
    project_id = create_project(admin)
    response = admin.post(
        f"/projects/{project_id}/indicators/new",
        {"name": "Root", "unit_id": str(unit_id(conn)), "frequency": "annual", "aggregation_rule": "formula", "formula_expr": expression},
    )
    assert response.status_code == 200
    assert "Formula error" in response.get_data(as_text=True)
    assert conn.execute("SELECT COUNT(*) AS n FROM indicators WHERE project_id = ?", (project_id,)).fetchone()["n"] == 0


def test_formula_failing_on_reported_values_keeps_pages_up(admin, conn):
    project_id = create_project(admin)
    indicator_id = create_indicator(admin, conn, project_id, aggregation_rule="formula", formula_expr="100 / (sum - 80)")
    first, _second = period_ids(conn, indicator_id)
    approve_value(admin, indicator_id, first, "80")

    report = admin.get(f"/projects/{project_id}/reports/pitt")
    assert report.status_code == 302
    assert "PITT unavailable" in unquote(report.headers["Location"])
    export = admin.get(f"/projects/{project_id}/reports/pitt.xlsx")
    assert export.status_code == 302
    api = admin.get(f"/api/projects/{project_id}/pitt")
    assert api.status_code == 422
    assert api.get_json()["ok"] is False
    for path in (f"/indicators/{indicator_id}", "/dashboard", "/statistics"):
        assert admin.get(path).status_code == 200


def test_drafts_do_not_count_and_returned_reports_can_be_resubmitted(admin, conn, indicator):
    first, _second = period_ids(conn, indicator["indicator_id"])
    draft = admin.post("/submissions/new", {"indicator_id": str(indicator["indicator_id"]), "period_id": str(first), "value__total": "55"})
    submission_id = location_id(draft, "/submissions")
    assert submission_status(conn, submission_id) == "draft"
    pitt = admin.get(f"/api/projects/{indicator['project_id']}/pitt").get_json()
    assert pitt["objectives"][0]["indicators"][0]["periods"][0]["actual"] is None

    admin.post(f"/submissions/{submission_id}/status", {"action": "submit"})
    admin.post(f"/submissions/{submission_id}/status", {"action": "return", "note": "Check the count"})
    assert submission_status(conn, submission_id) == "returned"

    assert admin.get(f"/submissions/{submission_id}/edit").status_code == 200
    edited = admin.post(
        "/submissions/new",
        {
            "indicator_id": str(indicator["indicator_id"]),
            "period_id": str(first),
            "submission_id": str(submission_id),
            "value__total": "60",
            "action": "submit",
        },
    )
    assert location_id(edited, "/submissions") == submission_id
    assert submission_status(conn, submission_id) == "submitted"
    value = conn.execute("SELECT value_number FROM submission_values WHERE submission_id = ?", (submission_id,)).fetchone()
    assert value["value_number"] == 60.0


def test_negative_value_is_rejected(admin, conn, indicator):
    first, _second = period_ids(conn, indicator["indicator_id"])
    response = admin.post("/submissions/new", {"indicator_id": str(indicator["indicator_id"]), "period_id": str(first), "value__total": "-5"})
    assert response.status_code == 422
    assert "Please enter a valid numeric value" in response.get_data(as_text=True)


def test_bulk_approval(admin, conn, indicator):
    ids = []
    for period_id in period_ids(conn, indicator["indicator_id"]):
        response = admin.post(
            "/submissions/new",
            {"indicator_id": str(indicator["indicator_id"]), "period_id": str(period_id), "value__total": "10", "action": "submit"},
        )
        ids.append(str(location_id(response, "/submissions")))
    response = admin.post("/submissions/bulk", {"action": "approve", "submission_ids": ids + ["99999"]})
    assert "2 updated, 1 skipped." in unquote(response.headers["Location"])
    assert {submission_status(conn, int(i)) for i in ids} == {"approved"}


def test_disaggregated_indicator_totals_its_combinations(admin, conn):
    org_id = default_org_id(conn)
    sex = conn.execute("SELECT id FROM disaggregation_defs WHERE organization_id = ? AND name = 'Sex'", (org_id,)).fetchone()["id"]
    project_id = create_project(admin)
    indicator_id = create_indicator(admin, conn, project_id, disaggregation_ids=[str(sex)])
    _definitions, grid = server.indicator_combinations(conn, org_id, indicator_id)
    assert [label for _key, label in grid] == ["Female", "Male"]

    first, _second = period_ids(conn, indicator_id)
    form = {"indicator_id": str(indicator_id), "period_id": str(first), "action": "submit"}
    for (key, _label), value in zip(grid, ("30", "50")):
        form[f"value__{key}"] = value
    admin.post("/submissions/new", form)

    pitt = admin.get(f"/api/projects/{project_id}/pitt").get_json()
    assert pitt["objectives"][0]["indicators"][0]["periods"][0]["actual"] == 80.0


def test_viewer_cannot_change_data(admin, conn, indicator):
    viewer = add_member(admin, "viewer@example.org", "viewer")
    assert viewer.get("/projects").status_code == 200
    assert viewer.post("/projects/new", {"name": "Nope"}).status_code == 403
    first, _second = period_ids(conn, indicator["indicator_id"])
    report = viewer.post("/submissions/new", {"indicator_id": str(indicator["indicator_id"]), "period_id": str(first), "value__total": "1"})
    assert report.status_code == 403
    assert viewer.get("/admin/users").status_code == 403


def test_manager_cannot_grant_owner_or_change_self(admin, conn):
    manager = add_member(admin, "manager@example.org", "manager")
    denied = manager.post("/admin/users/new", {"name": "Boss", "email": "boss@example.org", "password": "boss-password-12", "role": "owner"})
    assert "cannot%20assign" in denied.headers["Location"]

    manager_id = conn.execute("SELECT id FROM users WHERE email = 'manager@example.org'").fetchone()["id"]
    self_change = manager.post(f"/admin/users/{manager_id}/role", {"role": "admin"})
    assert "cannot%20change" in self_change.headers["Location"]


def test_admin_creates_user_without_password_gets_reset_link(admin, conn):
    response = admin.post("/admin/users/new", {"name": "Field Person", "email": "field@example.org", "role": "field_staff"})
    assert response.status_code == 200
    assert "/reset-password?token=" in response.get_data(as_text=True)
    duplicate = admin.post("/admin/users/new", {"name": "Field Person", "email": "field@example.org", "role": "field_staff"})
    assert "already%20a%20member" in duplicate.headers["Location"]


def test_deactivated_user_loses_sessions(admin, conn):
    member = add_member(admin, "leaver@example.org", "field_staff")
    member_id = conn.execute("SELECT id FROM users WHERE email = 'leaver@example.org'").fetchone()["id"]
    admin.post(f"/admin/users/{member_id}/deactivate")
    assert member.get("/dashboard").status_code == 302
    relogin = Session(remote_addr="10.9.9.9").post("/login", {"email": "leaver@example.org", "password": "member-password-1"}, csrf=False)
    assert "Invalid credentials." in relogin.get_data(as_text=True)


def test_public_form_link_collects_drafts(admin, anon, conn, indicator):
    response = admin.post(f"/indicators/{indicator['indicator_id']}/forms/new", {"title": "Community survey", "require_name": "1"})
    link_id = location_id(response, "/forms")
    assert admin.get(f"/forms/{link_id}").status_code == 200
    token = conn.execute("SELECT access_token FROM form_links WHERE id = ?", (link_id,)).fetchone()["access_token"]
    first, _second = period_ids(conn, indicator["indicator_id"])

    page = anon.get(f"/form/{token}")
    assert page.status_code == 200
    assert "Community survey" in page.get_data(as_text=True)

    missing_name = anon.post(f"/form/{token}", {"period_id": str(first), "value__total": "12"}, csrf=False)
    assert "Name is required." in missing_name.get_data(as_text=True)

    done = anon.post(f"/form/{token}", {"respondent_name": "Chanda", "period_id": str(first), "value__total": "12"}, csrf=False)
    assert "Thank you" in done.get_data(as_text=True)
    row = conn.execute("SELECT status, respondent_name, form_link_id FROM submissions WHERE indicator_id = ?", (indicator["indicator_id"],)).fetchone()
    assert (row["status"], row["respondent_name"], row["form_link_id"]) == ("draft", "Chanda", link_id)
    assert conn.execute("SELECT response_count FROM form_links WHERE id = ?", (link_id,)).fetchone()["response_count"] == 1
    assert admin.get("/api/notifications/count").get_json()["unread"] == 1

    admin.post(f"/forms/{link_id}/status", {"status": "paused"})
    paused = anon.post(f"/form/{token}", {"respondent_name": "Chanda", "period_id": str(first), "value__total": "3"}, csrf=False)
    assert paused.status_code == 403
    assert anon.get("/form/unknown-token").status_code == 404


def test_template_download_and_import(admin, conn, indicator):
    first, _second = period_ids(conn, indicator["indicator_id"])
    download = admin.get(f"/indicators/{indicator['indicator_id']}/periods/{first}/template.xlsx")
    assert download.status_code == 200
    assert download.headers["Content-Type"] == server.XLSX_MIME

    workbook = load_workbook(io.BytesIO(download.get_data()))
    sheet = next(ws for ws in workbook.worksheets if not ws.title.startswith("_"))
    sheet["A2"] = 42
    buffer = io.BytesIO()
    workbook.save(buffer)
    buffer.seek(0)

    response = admin.post(f"/indicators/{indicator['indicator_id']}/import", {"file": (buffer, "filled.xlsx")})
    submission_id = location_id(response, "/submissions")
    assert submission_status(conn, submission_id) == "draft"
    value = conn.execute("SELECT combination_key, value_number FROM submission_values WHERE submission_id = ?", (submission_id,)).fetchone()
    assert (value["combination_key"], value["value_number"]) == ("total", 42.0)


def test_dataset_upload_visualize_and_share(admin, anon, conn):
    csv_bytes = b"District,Households\nChipata,10\nChipata,20\nMongu,5\n"
    response = admin.post("/datasets/upload", {"name": "Household survey", "file": (io.BytesIO(csv_bytes), "households.csv")})
    dataset_id = location_id(response, "/datasets")
    assert admin.get(f"/datasets/{dataset_id}").status_code == 200

    api = admin.get(f"/api/datasets/{dataset_id}/data?limit=2").get_json()
    assert api["total"] == 3
    assert len(api["data"]) == 2
    assert [c["name"] for c in api["columns"]] == ["District", "Households"]

    chart = admin.get(f"/datasets/{dataset_id}/visualize?chart_type=bar&group_by=District&value=Households&aggregation=sum")
    assert chart.status_code == 200
    assert "Mongu" in chart.get_data(as_text=True)

    saved = admin.post(
        f"/datasets/{dataset_id}/visualizations",
        {"name": "By district", "chart_type": "bar", "group_by": "District", "value": "Households", "aggregation": "sum", "share": "1"},
    )
    viz_id = location_id(saved, "/visualizations")
    assert admin.get(f"/visualizations/{viz_id}").status_code == 200
    share_id = conn.execute("SELECT share_id FROM visualizations WHERE id = ?", (viz_id,)).fetchone()["share_id"]
    public = anon.get(f"/share/{share_id}")
    assert public.status_code == 200
    assert "By district" in public.get_data(as_text=True)

    admin.post(f"/visualizations/{viz_id}/share")
    assert anon.get(f"/share/{share_id}").status_code == 404


def test_unsupported_upload_is_recorded_as_failed_import(admin, conn):
    response = admin.post("/datasets/upload", {"name": "Photo", "file": (io.BytesIO(b"\x89PNG"), "photo.png")})
    assert response.headers["Location"].startswith("/datasets?msg=")
    row = conn.execute("SELECT status, file_name FROM import_history").fetchone()
    assert (row["status"], row["file_name"]) == ("failed", "photo.png")


def test_calendar_events_and_ics_round_trip(admin, conn):
    bad = admin.post("/calendar/events/new", {"title": "Backwards", "start_at": "2026-03-05T10:00", "end_at": "2026-03-05T09:00"})
    assert "End%20time" in bad.headers["Location"]

    created = admin.post("/calendar/events/new", {"title": "Quarterly review", "start_at": "2026-03-05T10:00", "end_at": "2026-03-05T12:00"})
    assert created.headers["Location"].startswith("/calendar?month=2026-03")
    month = admin.get("/calendar?month=2026-03")
    assert "Quarterly review" in month.get_data(as_text=True)

    export = admin.get("/calendar/export.ics")
    assert export.headers["Content-Type"].startswith("text/calendar")
    body = export.get_data(as_text=True)
    assert body.startswith("BEGIN:VCALENDAR")
    assert "SUMMARY:Quarterly review" in body

    ics = b"BEGIN:VCALENDAR\r\nBEGIN:VEVENT\r\nUID:ext-1@example.org\r\nDTSTART:20260310T090000Z\r\nSUMMARY:Partner call\r\nEND:VEVENT\r\nEND:VCALENDAR\r\n"
    first = admin.post("/calendar/import", {"file": (io.BytesIO(ics), "partner.ics")})
    assert "Imported 1 new and 0 updated" in unquote(first.headers["Location"])
    second = admin.post("/calendar/import", {"file": (io.BytesIO(ics), "partner.ics")})
    assert "Imported 0 new and 1 updated" in unquote(second.headers["Location"])

    google = admin.post("/calendar/google/pull")
    assert "Connect%20Google%20Calendar%20first" in google.headers["Location"]


def test_direct_messages_and_notifications(admin, conn):
    colleague = add_member(admin, "colleague@example.org", "field_staff")
    colleague_id = conn.execute("SELECT id FROM users WHERE email = 'colleague@example.org'").fetchone()["id"]

    opened = admin.post("/messages/new", {"user_id": str(colleague_id)})
    conversation_id = location_id(opened, "/messages")
    admin.post(f"/messages/{conversation_id}/send", {"content": "Can you upload the Q1 data?"})

    assert colleague.get("/api/messages/unread").get_json() == {"unread": 1}
    assert colleague.get("/api/notifications/count").get_json()["unread"] == 2
    assert colleague.get(f"/messages/{conversation_id}").status_code == 200
    assert colleague.get("/api/messages/unread").get_json() == {"unread": 0}

    colleague.post("/notifications/read-all")
    assert colleague.get("/api/notifications/count").get_json() == {"unread": 0}


def test_settings_units_and_disaggregations(admin, conn):
    added = admin.post("/settings/units/new", {"name": "Households", "unit_type": "count"})
    assert "Unit%20added" in added.headers["Location"]
    duplicate = admin.post("/settings/units/new", {"name": "Households", "unit_type": "count"})
    assert "already%20exists" in duplicate.headers["Location"]

    admin.post("/settings/disaggregations/new", {"name": "Disability", "values": "Yes\nNo\nYes"})
    definition = conn.execute("SELECT id FROM disaggregation_defs WHERE name = 'Disability'").fetchone()
    labels = [r["value_label"] for r in conn.execute("SELECT value_label FROM disaggregation_values WHERE definition_id = ? ORDER BY sort_order", (definition["id"],))]
    assert labels == ["Yes", "No"]


def test_period_preview_api(admin):
    payload = admin.get("/api/periods/preview?frequency=monthly&due_days=10").get_json()
    assert len(payload["periods"]) == 12
