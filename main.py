import os, re, json, time, math, uuid, secrets, logging, datetime
from enum import Enum
from typing import List, Dict, Optional, Tuple

from fastapi import FastAPI, HTTPException, Header, Form, Depends
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from starlette.middleware.base import BaseHTTPMiddleware
from uvicorn import run as uvicorn_run

import sqlite3
try:
    import psycopg2
    HAS_PG = True
except Exception:
    HAS_PG = False

from csvparse import ParseFailure, config_from_options, parse
from sheets import (DEFAULT_TAB, Destination, ErrorKind, SheetsAPIError, SheetsClient, create_unique_tab,
                    UploadMode, default_spreadsheet_title)
from upload import OrchestratorFailure, upload

VERSION = "0.4.0"

# ---------- Logging ----------
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
log = logging.getLogger("csv2sheets")

# ---------- Optional: Sentry ----------
SENTRY_DSN = os.getenv("SENTRY_DSN","").strip()
if SENTRY_DSN:
    try:
        import sentry_sdk
        sentry_sdk.init(dsn=SENTRY_DSN, traces_sample_rate=0.05)
    except Exception as e:
        log.warning("Sentry init failed: %s", e)

# ---------- App ----------
app = FastAPI(
    title="CSV2Sheets",
    version=VERSION,
    openapi_tags=[
        {"name": "CSV", "description": "Parse CSV and upload it to Google Sheets"},
        {"name": "Sheets", "description": "Google Sheets / Drive passthrough"},
        {"name": "Account", "description": "API keys, trial & usage"},
        {"name": "Admin", "description": "Key management"},
    ],
)
app.add_middleware(GZipMiddleware)

# CORS
CORS_ALLOW_ORIGINS = os.getenv("CORS_ALLOW_ORIGINS", "*")
cors_origins = ["*"] if CORS_ALLOW_ORIGINS.strip() == "*" else [o.strip() for o in CORS_ALLOW_ORIGINS.split(",") if o.strip()]
app.add_middleware(CORSMiddleware, allow_origins=cors_origins, allow_methods=["GET", "POST", "OPTIONS"],
                   allow_headers=["Content-Type", "Authorization", "x-api-key"])

# ---------- Config ----------
USAGE_DB = os.getenv("USAGE_DB_PATH", "usage.db")
DATABASE_URL = os.getenv("DATABASE_URL")
DB_IS_PG = bool(DATABASE_URL and DATABASE_URL.startswith("postgres"))

ADMIN_USER = os.getenv("ADMIN_USER") or "admin"
ADMIN_PASS = os.getenv("ADMIN_PASS") or "change-me"

TRIAL_DAYS = int(os.getenv("TRIAL_DAYS", "7"))
MAX_UPLOAD_ROWS = int(os.getenv("MAX_UPLOAD_ROWS", "50000"))
PREVIEW_ROWS = int(os.getenv("PREVIEW_ROWS", "10"))

# Plans: 'trial' is unlimited until trial_ends_at, paid plans never expire
PLANS = {
    "trial": {"label": "Free trial", "paid": False},
    "basic": {"label": "Basic",      "paid": True},
    "pro":   {"label": "Pro",        "paid": True},
}

_email_re = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

# ---------- Security headers ----------
class SecurityHeaders(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        resp = await call_next(request)
        resp.headers["X-Content-Type-Options"] = "nosniff"
        resp.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        resp.headers["X-Frame-Options"] = "DENY"
        resp.headers["Strict-Transport-Security"] = "max-age=63072000; includeSubDomains; preload"
        return resp

app.add_middleware(SecurityHeaders)

# ---------- DB helpers ----------
def db_conn():
    if DB_IS_PG:
        if not HAS_PG:
            raise RuntimeError("psycopg2 not installed; needed for Postgres")
        return psycopg2.connect(DATABASE_URL)
    return sqlite3.connect(USAGE_DB)

def q(sql: str) -> str:
    # queries are written with sqlite '?' placeholders
    return sql.replace("?", "%s") if DB_IS_PG else sql

def db_init():
    id_col = "id SERIAL PRIMARY KEY" if DB_IS_PG else "id INTEGER PRIMARY KEY AUTOINCREMENT"
    with db_conn() as con:
        cur = con.cursor()
        cur.execute("""
            CREATE TABLE IF NOT EXISTS keys (
                api_key       TEXT PRIMARY KEY,
                email         TEXT NOT NULL,
                plan          TEXT NOT NULL,
                trial_ends_at TEXT NOT NULL,
                created_at    TEXT NOT NULL
            )
        """)
        cur.execute("""
            CREATE TABLE IF NOT EXISTS usage (
                api_key TEXT NOT NULL,
                period  TEXT NOT NULL,
                count   INTEGER NOT NULL DEFAULT 0,
                PRIMARY KEY (api_key, period)
            )
        """)
        cur.execute(f"""
            CREATE TABLE IF NOT EXISTS activity (
                {id_col},
                api_key    TEXT NOT NULL,
                action     TEXT NOT NULL,
                detail     TEXT,
                created_at TEXT NOT NULL
            )
        """)
        con.commit()

def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)

def current_period() -> str:
    return utcnow().strftime("%Y-%m")

# ----- Keys -----
def _key_row(row) -> Optional[Dict]:
    if not row:
        return None
    return {"api_key": row[0], "email": row[1], "plan": row[2], "trial_ends_at": row[3], "created_at": row[4]}

def keys_db_get(api_key: str) -> Optional[Dict]:
    with db_conn() as con:
        cur = con.cursor()
        cur.execute(q("SELECT api_key, email, plan, trial_ends_at, created_at FROM keys WHERE api_key = ?"), (api_key,))
        return _key_row(cur.fetchone())

def keys_db_find_by_email(email: str) -> Optional[Dict]:
    with db_conn() as con:
        cur = con.cursor()
        cur.execute(q("SELECT api_key, email, plan, trial_ends_at, created_at FROM keys WHERE email = ? "
                      "ORDER BY created_at LIMIT 1"), (email,))
        return _key_row(cur.fetchone())

def keys_db_insert(api_key: str, email: str, plan: str, trial_ends_at: str):
    with db_conn() as con:
        cur = con.cursor()
        cur.execute(q("INSERT INTO keys(api_key, email, plan, trial_ends_at, created_at) VALUES (?,?,?,?,?)"),
                    (api_key, email, plan, trial_ends_at, utcnow().isoformat()))
        con.commit()

def keys_db_update_plan(api_key: str, plan: str):
    with db_conn() as con:
        cur = con.cursor()
        cur.execute(q("UPDATE keys SET plan=? WHERE api_key=?"), (plan, api_key))
        con.commit()

def issue_key(email: str) -> Tuple[Dict, bool]:
    """
    Return (key record, created). An email that already has a key gets the same
    key back; its trial is NOT restarted.
    """
    email = email.strip().lower()
    existing = keys_db_find_by_email(email)
    if existing:
        return existing, False
    while True:
        k = "csk_" + uuid.uuid4().hex
        if not keys_db_get(k):
            break
    trial_end = utcnow() + datetime.timedelta(days=TRIAL_DAYS)
    keys_db_insert(k, email, "trial", trial_end.isoformat())
    log.info("Issued key for %s, trial ends %s", email, trial_end.isoformat())
    return keys_db_get(k), True

def trial_status(meta: Dict, now: Optional[datetime.datetime] = None) -> Dict:
    now = now or utcnow()
    plan = (meta.get("plan") or "trial").lower()
    try:
        ends = datetime.datetime.fromisoformat(meta["trial_ends_at"])
        if ends.tzinfo is None:
            ends = ends.replace(tzinfo=datetime.timezone.utc)
    except (KeyError, TypeError, ValueError):
        ends = now
    expired = now > ends
    paid = PLANS.get(plan, PLANS["trial"])["paid"]
    return {
        "plan": plan,
        "isActive": plan == "trial" and not expired,
        "isExpired": plan == "trial" and expired,
        "daysRemaining": max(0, math.ceil((ends - now).total_seconds() / 86400)),
        "endsAt": meta.get("trial_ends_at"),
        "unlimited": paid or not expired,
        "needsUpgrade": plan == "trial" and expired,
    }

# ----- Usage counters -----
def get_usage(api_key: str, period: Optional[str] = None) -> int:
    period = period or current_period()
    with db_conn() as con:
        cur = con.cursor()
        cur.execute(q("SELECT count FROM usage WHERE api_key=? AND period=?"), (api_key, period))
        row = cur.fetchone()
        return int(row[0]) if row else 0

def increment_usage(api_key: str, amount: int = 1) -> int:
    period = current_period()
    with db_conn() as con:
        cur = con.cursor()
        if DB_IS_PG:
            cur.execute("""
                INSERT INTO usage(api_key, period, count)
                VALUES (%s, %s, 0)
                ON CONFLICT (api_key, period) DO NOTHING
            """, (api_key, period))
        else:
            cur.execute("INSERT OR IGNORE INTO usage(api_key, period, count) VALUES(?, ?, 0)", (api_key, period))
        cur.execute(q("UPDATE usage SET count = count + ? WHERE api_key=? AND period=?"), (amount, api_key, period))
        cur.execute(q("SELECT count FROM usage WHERE api_key=? AND period=?"), (api_key, period))
        row = cur.fetchone()
        con.commit()
        return int(row[0]) if row else 0

# ----- Activity log (fire-and-forget) -----
def log_activity(api_key: str, action: str, **detail):
    try:
        with db_conn() as con:
            cur = con.cursor()
            cur.execute(q("INSERT INTO activity(api_key, action, detail, created_at) VALUES (?,?,?,?)"),
                        (api_key, action, json.dumps(detail, default=str), utcnow().isoformat()))
            con.commit()
    except Exception as e:
        log.warning("Failed to log activity %s: %s", action, e)

def activity_list(api_key: str, limit: int = 50) -> List[Dict]:
    with db_conn() as con:
        cur = con.cursor()
        cur.execute(q("SELECT action, detail, created_at FROM activity WHERE api_key=? ORDER BY id DESC LIMIT ?"),
                    (api_key, limit))
        return [{"action": r[0], "detail": json.loads(r[1] or "{}"), "created_at": r[2]} for r in cur.fetchall()]

# ---------- API key enforcement ----------
def require_key(authorization: Optional[str], api_key_header: Optional[str]) -> Dict:
    api_key = None
    if authorization and authorization.startswith("Bearer "):
        api_key = authorization[7:].strip()
    api_key = api_key or api_key_header
    if not api_key:
        raise HTTPException(status_code=401, detail="Authorization header required (Bearer <api key>)")
    meta = keys_db_get(api_key)
    if not meta:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return meta

def require_entitled_key(authorization: Optional[str], api_key_header: Optional[str]) -> Tuple[Dict, Dict]:
    meta = require_key(authorization, api_key_header)
    status = trial_status(meta)
    if status["needsUpgrade"]:
        log.info("Blocked %s: trial expired", meta["email"])
        raise HTTPException(status_code=402, detail={
            "success": False,
            "error": f"Your {TRIAL_DAYS}-day free trial has expired. Upgrade to continue uploading CSV files.",
            "needsUpgrade": True,
            "trialStatus": status,
        })
    return meta, status

# ---------- Remote errors -> HTTP ----------
_STATUS_FOR_KIND = {
    ErrorKind.AUTH_EXPIRED: 401,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.REMOTE_ERROR: 502,
}

def error_response(kind: Optional[ErrorKind], body: Dict) -> JSONResponse:
    status = _STATUS_FOR_KIND.get(kind, 400)
    body = dict(body, success=False, needsReauth=kind == ErrorKind.AUTH_EXPIRED)
    if kind == ErrorKind.AUTH_EXPIRED:
        body["error"] = "Google authentication expired"
    return JSONResponse(status_code=status, content=body)

def sheets_client(token: str) -> SheetsClient:
    return SheetsClient(token)

# ---------- Request bodies ----------
class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

class KeyRequest(ApiModel):
    email: str

class ParseRequest(ApiModel):
    csv_content: str
    filename: Optional[str] = None
    processing_options: Optional[Dict] = None

class UploadRequest(ApiModel):
    csv_content: str
    google_token: str
    filename: Optional[str] = None
    spreadsheet_id: Optional[str] = None
    sheet_name: Optional[str] = None
    title: Optional[str] = None
    upload_mode: Optional[str] = "append"
    create_new_tab: bool = False
    auto_format: Optional[bool] = None
    processing_options: Optional[Dict] = None

class SheetsAction(str, Enum):
    LIST_SHEETS = "list-sheets"
    GET_SHEET_TABS = "get-sheet-tabs"
    CREATE_SHEET = "create-sheet"
    CREATE_TAB = "create-tab"

class SheetsRequest(ApiModel):
    action: SheetsAction
    google_token: str
    spreadsheet_id: Optional[str] = None
    sheet_name: Optional[str] = None
    tab_name: Optional[str] = None
    page_size: int = Field(50, ge=1, le=1000)

# ---------- Health ----------
@app.get("/healthz")
def healthz(): return {"ok": True, "version": VERSION}

# ---------- Account ----------
@app.post("/v1/keys", tags=["Account"])
def create_key(body: KeyRequest):
    email = body.email.strip().lower()
    if not _email_re.match(email):
        raise HTTPException(status_code=400, detail="Valid email required")
    meta, created = issue_key(email)
    return {
        "success": True,
        "apiKey": meta["api_key"],
        "existing": not created,
        "trial": trial_status(meta),
        "message": f"Account created with {TRIAL_DAYS}-day free trial" if created else "Existing API key returned",
    }

@app.get("/v1/user-info", tags=["Account"])
def user_info(
    authorization: Optional[str] = Header(None),
    api_key_header: Optional[str] = Header(None, alias="x-api-key"),
):
    meta = require_key(authorization, api_key_header)
    return {
        "success": True,
        "email": meta["email"],
        "plan": meta["plan"],
        "createdAt": meta["created_at"],
        "trial": trial_status(meta),
        "usage": {"period": current_period(), "uploadsThisMonth": get_usage(meta["api_key"])},
        "recentActivity": activity_list(meta["api_key"], 10),
    }

# ---------- CSV ----------
def _parse_or_400(body: ParseRequest, preview: bool):
    cfg = config_from_options(body.processing_options, preview=preview,
                              preview_rows=PREVIEW_ROWS, max_rows=MAX_UPLOAD_ROWS)
    if isinstance(cfg, ParseFailure):
        raise HTTPException(status_code=400, detail=cfg.reason)
    result = parse(body.csv_content, cfg)
    if isinstance(result, ParseFailure):
        raise HTTPException(status_code=400, detail=result.reason)
    return result

@app.post("/v1/csv/preview", tags=["CSV"])
def csv_preview(
    body: ParseRequest,
    authorization: Optional[str] = Header(None),
    api_key_header: Optional[str] = Header(None, alias="x-api-key"),
):
    meta = require_key(authorization, api_key_header)
    table = _parse_or_400(body, preview=True)
    log_activity(meta["api_key"], "preview", filename=body.filename, rows=table.row_count_data)
    out = table.to_dict()
    out["metadata"]["previewRowCount"] = len(table.data_rows)
    return {"success": True, "previewRows": table.data_rows, **out}

@app.post("/v1/csv/process", tags=["CSV"])
def csv_process(
    body: ParseRequest,
    authorization: Optional[str] = Header(None),
    api_key_header: Optional[str] = Header(None, alias="x-api-key"),
):
    meta = require_key(authorization, api_key_header)
    table = _parse_or_400(body, preview=False)
    log_activity(meta["api_key"], "process", filename=body.filename, rows=table.row_count_data)
    return {"success": True, **table.to_dict()}

@app.post("/v1/csv/upload", tags=["CSV"])
def csv_upload(
    body: UploadRequest,
    authorization: Optional[str] = Header(None),
    api_key_header: Optional[str] = Header(None, alias="x-api-key"),
):
    meta, status = require_entitled_key(authorization, api_key_header)
    api_key = meta["api_key"]

    try:
        mode = UploadMode.CREATE_TAB_THEN_WRITE if body.create_new_tab else UploadMode.from_directive(body.upload_mode)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    cfg = config_from_options(body.processing_options, max_rows=MAX_UPLOAD_ROWS)
    if isinstance(cfg, ParseFailure):
        raise HTTPException(status_code=400, detail=cfg.reason)

    destination = Destination(body.spreadsheet_id, (body.sheet_name or "").strip() or DEFAULT_TAB, body.title)
    started = time.time()
    outcome = upload(destination, body.csv_content, cfg, mode, body.google_token,
                     client_factory=sheets_client, auto_format=body.auto_format)
    elapsed_ms = int((time.time() - started) * 1000)

    if isinstance(outcome, OrchestratorFailure):
        log_activity(api_key, "csv_upload", status="failed", filename=body.filename, mode=mode.value,
                     error=outcome.reason, error_kind=outcome.error_kind)
        return error_response(outcome.error_kind, outcome.to_dict())

    used = increment_usage(api_key)
    log_activity(api_key, "csv_upload", status="success", filename=body.filename, mode=mode.value,
                 spreadsheet_id=outcome.destination.spreadsheet_id, sheet_name=outcome.destination.sheet_name,
                 rows=outcome.rows_uploaded, columns=outcome.columns_detected, processing_ms=elapsed_ms)
    return {
        "success": True,
        "message": "Upload completed successfully",
        "upload": dict(outcome.to_dict(), filename=body.filename, processingTime=f"{elapsed_ms}ms"),
        "usage": {"period": current_period(), "uploadsThisMonth": used},
        "trialStatus": status,
    }

# ---------- Sheets passthrough ----------
def _list_sheets(client: SheetsClient, body: SheetsRequest, meta: Dict) -> Dict:
    files = client.list_spreadsheets(body.page_size)
    sheets = [{
        "id": f.get("id"),
        "name": f.get("name"),
        "modifiedTime": f.get("modifiedTime"),
        "webViewLink": f.get("webViewLink"),
        "editUrl": f"https://docs.google.com/spreadsheets/d/{f.get('id')}/edit",
        "owner": ((f.get("owners") or [{}])[0]).get("displayName") or "Unknown",
    } for f in files]
    log_activity(meta["api_key"], "list_sheets", found=len(sheets))
    return {"success": True, "sheets": sheets, "total": len(sheets)}

def _get_sheet_tabs(client: SheetsClient, body: SheetsRequest, meta: Dict) -> Dict:
    if not body.spreadsheet_id:
        raise HTTPException(status_code=400, detail="Spreadsheet ID required")
    tabs = client.get_tabs(body.spreadsheet_id)
    default = next((t.title for t in tabs if t.index == 0), DEFAULT_TAB)
    log_activity(meta["api_key"], "get_sheet_tabs", spreadsheet_id=body.spreadsheet_id, found=len(tabs))
    return {"success": True, "spreadsheetId": body.spreadsheet_id, "tabs": [t.to_dict() for t in tabs],
            "total": len(tabs), "defaultTab": default}

def _create_sheet(client: SheetsClient, body: SheetsRequest, meta: Dict) -> Dict:
    require_entitled_key(None, meta["api_key"])
    title = (body.sheet_name or "").strip() or default_spreadsheet_title()
    created = client.create_spreadsheet(title)
    increment_usage(meta["api_key"])
    log_activity(meta["api_key"], "create_spreadsheet", spreadsheet_id=created["spreadsheetId"], title=title)
    sid = created["spreadsheetId"]
    return {"success": True, "spreadsheet": {
        "id": sid,
        "title": created["title"],
        "webViewLink": created.get("spreadsheetUrl"),
        "editUrl": f"https://docs.google.com/spreadsheets/d/{sid}/edit",
        "defaultTab": created["tab"].title,
    }, "message": f'Successfully created "{title}"'}

def _create_tab(client: SheetsClient, body: SheetsRequest, meta: Dict) -> Dict:
    name = (body.tab_name or "").strip()
    if not body.spreadsheet_id or not name:
        raise HTTPException(status_code=400, detail="Spreadsheet ID and tab name required")
    tab = create_unique_tab(client, body.spreadsheet_id, name)
    log_activity(meta["api_key"], "create_tab", spreadsheet_id=body.spreadsheet_id, tab=name, tab_id=tab.id)
    return {"success": True, "tab": dict(tab.to_dict(), spreadsheetId=body.spreadsheet_id,
            editUrl=f"https://docs.google.com/spreadsheets/d/{body.spreadsheet_id}/edit#gid={tab.id}"),
            "message": f'Successfully created tab "{name}"'}

_SHEETS_ACTIONS = {
    SheetsAction.LIST_SHEETS: _list_sheets,
    SheetsAction.GET_SHEET_TABS: _get_sheet_tabs,
    SheetsAction.CREATE_SHEET: _create_sheet,
    SheetsAction.CREATE_TAB: _create_tab,
}

@app.post("/v1/sheets", tags=["Sheets"])
def sheets_action(
    body: SheetsRequest,
    authorization: Optional[str] = Header(None),
    api_key_header: Optional[str] = Header(None, alias="x-api-key"),
):
    meta = require_key(authorization, api_key_header)
    client = sheets_client(body.google_token)
    try:
        client.introspect()
        return _SHEETS_ACTIONS[body.action](client, body, meta)
    except SheetsAPIError as e:
        log.info("Sheets action %s failed: %s", body.action.value, e.reason)
        return error_response(e.kind, {"error": e.reason, "errorKind": e.kind.value})

# ---------- Admin (HTTP Basic) ----------
security = HTTPBasic()
def admin_guard(credentials: HTTPBasicCredentials = Depends(security)):
    u_ok = secrets.compare_digest(credentials.username, ADMIN_USER)
    p_ok = secrets.compare_digest(credentials.password, ADMIN_PASS)
    if not (u_ok and p_ok):
        raise HTTPException(status_code=401, detail="Unauthorized", headers={"WWW-Authenticate": "Basic"})
    return True

@app.post("/admin/keys/upgrade", tags=["Admin"])
def admin_upgrade_key(api_key: str = Form(...), plan: str = Form("pro"), auth: bool = Depends(admin_guard)):
    plan = plan.lower()
    if plan not in PLANS:
        raise HTTPException(status_code=400, detail=f"Unknown plan: {plan}")
    if not keys_db_get(api_key):
        raise HTTPException(status_code=404, detail="Key not found")
    keys_db_update_plan(api_key, plan)
    log_activity(api_key, "upgrade", plan=plan)
    return PlainTextResponse(f"Updated {api_key} to {plan}.")

# ---------- Startup ----------
@app.on_event("startup")
def _startup():
    db_init()

if __name__ == "__main__":
    uvicorn_run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
