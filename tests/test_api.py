import datetime

import pytest
from fastapi.testclient import TestClient

import main
from sheets import ErrorKind
from tests.helpers import FakeSheets

CSV = "name,qty\napple,3\npear,5\n"


@pytest.fixture
def fake():
    return FakeSheets({"sid-1": {"Sheet1": [], "Data": []}})


@pytest.fixture
def client(tmp_path, monkeypatch, fake):
    monkeypatch.setattr(main, "USAGE_DB", str(tmp_path / "usage.db"))
    monkeypatch.setattr(main, "DB_IS_PG", False)
    monkeypatch.setattr(main, "sheets_client", lambda token: fake)
    main.db_init()
    return TestClient(main.app)


@pytest.fixture
def api_key(client):
    r = client.post("/v1/keys", json={"email": "Someone@Example.com"})
    assert r.status_code == 200
    return r.json()["apiKey"]


def auth(key):
    return {"Authorization": f"Bearer {key}"}


def expire_trial(key):
    past = (datetime.datetime.now(datetime.timezone.utc) - datetime.timedelta(days=1)).isoformat()
    with main.db_conn() as con:
        con.execute("UPDATE keys SET trial_ends_at=? WHERE api_key=?", (past, key))
        con.commit()


def upload_body(**overrides):
    body = {"csvContent": CSV, "googleToken": "g-tok", "spreadsheetId": "sid-1",
            "sheetName": "Sheet1", "uploadMode": "append", "autoFormat": False}
    body.update(overrides)
    return body


class TestAccount:
    def test_healthz(self, client):
        assert client.get("/healthz").json() == {"ok": True, "version": main.VERSION}

    def test_new_key_starts_trial(self, client):
        r = client.post("/v1/keys", json={"email": "new@example.com"})
        data = r.json()
        assert data["apiKey"].startswith("csk_")
        assert data["existing"] is False
        assert data["trial"]["isActive"] is True
        assert data["trial"]["daysRemaining"] == main.TRIAL_DAYS

    def test_same_email_gets_same_key(self, client, api_key):
        r = client.post("/v1/keys", json={"email": "someone@example.com"})
        assert r.json()["apiKey"] == api_key
        assert r.json()["existing"] is True

    def test_bad_email(self, client):
        assert client.post("/v1/keys", json={"email": "not-an-email"}).status_code == 400

    def test_user_info(self, client, api_key):
        r = client.get("/v1/user-info", headers=auth(api_key))
        assert r.status_code == 200
        data = r.json()
        assert data["email"] == "someone@example.com"
        assert data["plan"] == "trial"
        assert data["usage"]["uploadsThisMonth"] == 0

    def test_x_api_key_header_accepted(self, client, api_key):
        assert client.get("/v1/user-info", headers={"x-api-key": api_key}).status_code == 200

    def test_missing_or_unknown_key(self, client):
        assert client.get("/v1/user-info").status_code == 401
        assert client.get("/v1/user-info", headers=auth("csk_nope")).status_code == 401

    def test_admin_upgrade_requires_basic_auth(self, client, api_key):
        r = client.post("/admin/keys/upgrade", data={"api_key": api_key, "plan": "pro"})
        assert r.status_code == 401
        r = client.post("/admin/keys/upgrade", data={"api_key": api_key, "plan": "pro"},
                        auth=(main.ADMIN_USER, main.ADMIN_PASS))
        assert r.status_code == 200
        assert main.keys_db_get(api_key)["plan"] == "pro"


class TestCsvRoutes:
    def test_preview_limits_rows(self, client, api_key):
        csv = "h1;h2\n" + "\n".join(f"{i};x" for i in range(40))
        r = client.post("/v1/csv/preview", json={"csvContent": csv}, headers=auth(api_key))
        data = r.json()
        assert r.status_code == 200
        assert data["delimiter"] == ";"
        assert data["headers"] == ["h1", "h2"]
        assert len(data["previewRows"]) == main.PREVIEW_ROWS
        assert data["totalRows"] == 40

    def test_preview_is_sanitized(self, client, api_key):
        r = client.post("/v1/csv/preview", json={"csvContent": "https://example.com/x.csv\n"},
                        headers=auth(api_key))
        assert r.status_code == 400
        assert "No data" in r.json()["detail"]

    def test_process_full_parse(self, client, api_key):
        r = client.post("/v1/csv/process", json={"csvContent": CSV, "processingOptions": {"headerHandling": "none"}},
                        headers=auth(api_key))
        data = r.json()
        assert data["headers"] is None
        assert len(data["rows"]) == 3

    def test_bad_options(self, client, api_key):
        r = client.post("/v1/csv/process", json={"csvContent": CSV, "processingOptions": {"delimiter": "#"}},
                        headers=auth(api_key))
        assert r.status_code == 400


class TestUploadRoute:
    def test_upload_success_counts_usage(self, client, api_key, fake):
        r = client.post("/v1/csv/upload", json=upload_body(), headers=auth(api_key))
        assert r.status_code == 200
        data = r.json()
        assert data["upload"]["rowsUploaded"] == 2
        assert data["upload"]["columnsDetected"] == 2
        assert data["usage"]["uploadsThisMonth"] == 1
        assert fake.rows("sid-1", "Sheet1")[0] == ["name", "qty"]
        actions = [a["action"] for a in main.activity_list(api_key)]
        assert actions == ["csv_upload"]

    def test_empty_csv_is_400(self, client, api_key):
        r = client.post("/v1/csv/upload", json=upload_body(csvContent="\n\n"), headers=auth(api_key))
        assert r.status_code == 400
        assert r.json()["errorKind"] is None

    def test_unknown_mode_is_400(self, client, api_key):
        r = client.post("/v1/csv/upload", json=upload_body(uploadMode="merge"), headers=auth(api_key))
        assert r.status_code == 400

    def test_expired_google_token_is_401_with_reauth(self, client, api_key, fake):
        fake.fail("introspect", ErrorKind.AUTH_EXPIRED, 403)
        r = client.post("/v1/csv/upload", json=upload_body(), headers=auth(api_key))
        assert r.status_code == 401
        assert r.json()["needsReauth"] is True
        assert r.json()["errorKind"] == "AUTH_EXPIRED"
        assert main.get_usage(api_key) == 0

    def test_create_new_tab_conflict_is_409(self, client, api_key):
        r = client.post("/v1/csv/upload", json=upload_body(createNewTab=True, sheetName="data"), headers=auth(api_key))
        assert r.status_code == 409
        assert r.json()["errorKind"] == "CONFLICT"

    def test_remote_error_is_502(self, client, api_key, fake):
        fake.fail("append_values", ErrorKind.REMOTE_ERROR, 500)
        r = client.post("/v1/csv/upload", json=upload_body(), headers=auth(api_key))
        assert r.status_code == 502

    def test_expired_trial_is_402(self, client, api_key, fake):
        expire_trial(api_key)
        r = client.post("/v1/csv/upload", json=upload_body(), headers=auth(api_key))
        assert r.status_code == 402
        assert r.json()["detail"]["needsUpgrade"] is True
        assert fake.calls == []

    def test_paid_plan_ignores_trial_end(self, client, api_key):
        expire_trial(api_key)
        main.keys_db_update_plan(api_key, "pro")
        r = client.post("/v1/csv/upload", json=upload_body(), headers=auth(api_key))
        assert r.status_code == 200

    def test_activity_log_failure_is_not_fatal(self, client, api_key):
        with main.db_conn() as con:
            con.execute("DROP TABLE activity")
            con.commit()
        r = client.post("/v1/csv/upload", json=upload_body(), headers=auth(api_key))
        assert r.status_code == 200
        assert r.json()["success"] is True


class TestSheetsRoute:
    def test_list_sheets(self, client, api_key):
        r = client.post("/v1/sheets", json={"action": "list-sheets", "googleToken": "g"}, headers=auth(api_key))
        assert r.status_code == 200
        assert r.json()["total"] == 1

    def test_get_tabs(self, client, api_key):
        r = client.post("/v1/sheets", json={"action": "get-sheet-tabs", "googleToken": "g", "spreadsheetId": "sid-1"},
                        headers=auth(api_key))
        data = r.json()
        assert [t["title"] for t in data["tabs"]] == ["Sheet1", "Data"]
        assert data["defaultTab"] == "Sheet1"

    def test_create_tab_conflict(self, client, api_key):
        r = client.post("/v1/sheets", json={"action": "create-tab", "googleToken": "g", "spreadsheetId": "sid-1",
                                            "tabName": " DATA "}, headers=auth(api_key))
        assert r.status_code == 409

    def test_create_tab(self, client, api_key, fake):
        r = client.post("/v1/sheets", json={"action": "create-tab", "googleToken": "g", "spreadsheetId": "sid-1",
                                            "tabName": "Fresh"}, headers=auth(api_key))
        assert r.status_code == 200
        assert "Fresh" in fake.spreadsheets["sid-1"]

    def test_create_sheet_counts_usage(self, client, api_key):
        r = client.post("/v1/sheets", json={"action": "create-sheet", "googleToken": "g", "sheetName": "Budget"},
                        headers=auth(api_key))
        assert r.status_code == 200
        assert r.json()["spreadsheet"]["title"] == "Budget"
        assert main.get_usage(api_key) == 1

    def test_unknown_action_is_rejected(self, client, api_key):
        r = client.post("/v1/sheets", json={"action": "delete-everything", "googleToken": "g"}, headers=auth(api_key))
        assert r.status_code == 422

    def test_expired_token(self, client, api_key, fake):
        fake.fail("introspect", ErrorKind.AUTH_EXPIRED, 401)
        r = client.post("/v1/sheets", json={"action": "list-sheets", "googleToken": "g"}, headers=auth(api_key))
        assert r.status_code == 401
        assert r.json()["needsReauth"] is True

    def test_every_action_has_a_handler(self):
        assert set(main._SHEETS_ACTIONS) == set(main.SheetsAction)
