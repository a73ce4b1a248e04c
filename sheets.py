import os
import logging
import datetime
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional
from urllib.parse import quote

import requests
from requests.adapters import HTTPAdapter, Retry

log = logging.getLogger(__name__)

# ---------- Config ----------
SHEETS_API = "https://sheets.googleapis.com/v4/spreadsheets"
DRIVE_FILES_API = "https://www.googleapis.com/drive/v3/files"
USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"

HTTP_TIMEOUT = float(os.getenv("HTTP_TIMEOUT_SECONDS", "30"))
GET_RETRIES = int(os.getenv("GET_RETRIES", "2"))
DEFAULT_TAB = os.getenv("DEFAULT_TAB", "Sheet1")
AUTO_FORMAT = os.getenv("AUTO_FORMAT", "true").lower() in ("1", "true", "yes", "on")

MIN_TAB_ROWS = 1000
MIN_TAB_COLS = 26

# ---------- Types ----------
class ErrorKind(str, Enum):
    AUTH_EXPIRED = "AUTH_EXPIRED"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    REMOTE_ERROR = "REMOTE_ERROR"

class UploadMode(str, Enum):
    APPEND = "append"
    REPLACE_SHEET = "replace_sheet"
    REPLACE_SPREADSHEET = "replace_spreadsheet"
    CREATE_TAB_THEN_WRITE = "create_tab"
    CREATE_SPREADSHEET_THEN_WRITE = "create_spreadsheet"

    @classmethod
    def from_directive(cls, directive: Optional[str]) -> "UploadMode":
        """Map a caller-supplied mode string ('append', 'replace', 'new-tab', ...) to a mode."""
        key = (directive or "append").strip().lower().replace("-", "_").replace(" ", "_")
        mode = _DIRECTIVES.get(key)
        if mode is None:
            raise ValueError(f"Unknown upload mode: {directive!r}")
        return mode

    @property
    def creates_destination(self) -> bool:
        return self in (UploadMode.CREATE_TAB_THEN_WRITE, UploadMode.CREATE_SPREADSHEET_THEN_WRITE)

    @property
    def replaces(self) -> bool:
        return self in (UploadMode.REPLACE_SHEET, UploadMode.REPLACE_SPREADSHEET,
                        UploadMode.CREATE_SPREADSHEET_THEN_WRITE)

_DIRECTIVES = {
    "append": UploadMode.APPEND,
    "replace": UploadMode.REPLACE_SHEET,
    "replace_sheet": UploadMode.REPLACE_SHEET,
    "replace_tab": UploadMode.REPLACE_SHEET,
    "replace_spreadsheet": UploadMode.REPLACE_SPREADSHEET,
    "create_tab": UploadMode.CREATE_TAB_THEN_WRITE,
    "new_tab": UploadMode.CREATE_TAB_THEN_WRITE,
    "create_tab_then_write": UploadMode.CREATE_TAB_THEN_WRITE,
    "create_spreadsheet": UploadMode.CREATE_SPREADSHEET_THEN_WRITE,
    "create_sheet": UploadMode.CREATE_SPREADSHEET_THEN_WRITE,
    "new_spreadsheet": UploadMode.CREATE_SPREADSHEET_THEN_WRITE,
    "create_spreadsheet_then_write": UploadMode.CREATE_SPREADSHEET_THEN_WRITE,
}

@dataclass
class Tab:
    id: int
    title: str
    index: int = 0
    row_count: int = MIN_TAB_ROWS
    column_count: int = MIN_TAB_COLS

    @classmethod
    def from_properties(cls, p: Dict) -> "Tab":
        grid = p.get("gridProperties") or {}
        return cls(
            id=int(p.get("sheetId", 0)),
            title=p.get("title", ""),
            index=int(p.get("index", 0)),
            row_count=int(grid.get("rowCount") or MIN_TAB_ROWS),
            column_count=int(grid.get("columnCount") or MIN_TAB_COLS),
        )

    def to_dict(self) -> dict:
        return {"id": self.id, "title": self.title, "index": self.index,
                "rowCount": self.row_count, "columnCount": self.column_count,
                "isDefault": self.index == 0}

@dataclass
class Destination:
    spreadsheet_id: Optional[str]
    sheet_name: str = DEFAULT_TAB
    title: Optional[str] = None          # new spreadsheet title
    tab_id: Optional[int] = None         # filled in once known

    @property
    def url(self) -> str:
        if not self.spreadsheet_id:
            return ""
        u = f"https://docs.google.com/spreadsheets/d/{self.spreadsheet_id}/edit"
        return u + (f"#gid={self.tab_id}" if self.tab_id is not None else "")

@dataclass
class WriteResult:
    success: bool
    rows_written: int = 0
    updated_range: Optional[str] = None
    destination_url: str = ""
    error_kind: Optional[ErrorKind] = None
    updated_cells: int = 0
    reason: Optional[str] = None

    @classmethod
    def failed(cls, err: "SheetsAPIError", destination_url: str = "") -> "WriteResult":
        return cls(success=False, destination_url=destination_url, error_kind=err.kind, reason=err.reason)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "rowsWritten": self.rows_written,
            "updatedRange": self.updated_range,
            "updatedCells": self.updated_cells,
            "spreadsheetUrl": self.destination_url,
            "errorKind": self.error_kind.value if self.error_kind else None,
            "error": self.reason,
        }

class SheetsAPIError(Exception):
    def __init__(self, kind: ErrorKind, reason: str, status: Optional[int] = None):
        super().__init__(reason)
        self.kind = kind
        self.reason = reason
        self.status = status

def classify_status(status: int, body: str = "") -> ErrorKind:
    if status in (401, 403):
        return ErrorKind.AUTH_EXPIRED
    if status == 404:
        return ErrorKind.NOT_FOUND
    if status == 409:
        return ErrorKind.CONFLICT
    # Sheets reports a duplicate addSheet title as a 400
    if status == 400 and "already exists" in (body or ""):
        return ErrorKind.CONFLICT
    return ErrorKind.REMOTE_ERROR

def a1_range(sheet_name: str, cells: str = "") -> str:
    name = "'" + sheet_name.replace("'", "''") + "'"
    return name + ("!" + cells if cells else "")

def default_spreadsheet_title(today: Optional[datetime.date] = None) -> str:
    return "CSV Import - " + (today or datetime.date.today()).isoformat()

# ---------- Remote client ----------
def new_session(get_retries: int = GET_RETRIES) -> requests.Session:
    s = requests.Session()
    retry = Retry(total=get_retries, backoff_factor=0.3, status_forcelist=(500, 502, 503, 504),
                  allowed_methods=frozenset(["GET"]), raise_on_status=False)
    s.mount("https://", HTTPAdapter(max_retries=retry))
    return s

class SheetsClient:
    """
    Thin wrapper over the Sheets v4 / Drive v3 REST endpoints.

    One instance per request: the capability token is bound at construction and
    never stored anywhere else. Every non-2xx response, timeout or transport
    failure is raised as SheetsAPIError with its ErrorKind already decided.
    """

    def __init__(self, token: str, session: Optional[requests.Session] = None, timeout: float = HTTP_TIMEOUT):
        self.token = token
        self.session = session if session is not None else new_session()
        self.timeout = timeout

    def _request(self, method: str, url: str, params: Optional[Dict] = None, body: Optional[Dict] = None) -> Dict:
        headers = {"Authorization": f"Bearer {self.token}", "Accept": "application/json"}
        try:
            r = self.session.request(method, url, params=params, json=body, headers=headers, timeout=self.timeout)
        except requests.Timeout:
            raise SheetsAPIError(ErrorKind.REMOTE_ERROR, f"{method} {url} timed out after {self.timeout:g}s")
        except requests.RequestException as e:
            raise SheetsAPIError(ErrorKind.REMOTE_ERROR, f"{method} {url} failed: {e}")
        if not r.ok:
            text = r.text or ""
            kind = classify_status(r.status_code, text)
            log.info("Google API %s %s -> %s (%s)", method, url, r.status_code, kind.value)
            raise SheetsAPIError(kind, f"Google API error: {r.status_code} - {text[:500]}", status=r.status_code)
        if not r.content:
            return {}
        try:
            return r.json()
        except ValueError:
            return {}

    # --- identity ---
    def introspect(self) -> Dict:
        try:
            return self._request("GET", USERINFO_URL)
        except SheetsAPIError as e:
            if e.status in (400, 401, 403):
                raise SheetsAPIError(ErrorKind.AUTH_EXPIRED, "Google authentication expired", status=e.status)
            raise

    # --- drive ---
    def list_spreadsheets(self, page_size: int = 50) -> List[Dict]:
        data = self._request("GET", DRIVE_FILES_API, params={
            "q": 'mimeType="application/vnd.google-apps.spreadsheet"',
            "fields": "files(id,name,modifiedTime,webViewLink,owners)",
            "orderBy": "modifiedTime desc",
            "pageSize": str(page_size),
        })
        return data.get("files") or []

    # --- tabs ---
    def get_tabs(self, spreadsheet_id: str) -> List[Tab]:
        data = self._request("GET", f"{SHEETS_API}/{spreadsheet_id}",
                             params={"fields": "sheets(properties(sheetId,title,index,gridProperties))"})
        tabs = [Tab.from_properties(s.get("properties") or {}) for s in data.get("sheets") or []]
        tabs.sort(key=lambda t: t.index)
        return tabs

    def create_tab(self, spreadsheet_id: str, title: str, rows: int = MIN_TAB_ROWS, cols: int = MIN_TAB_COLS) -> Tab:
        data = self.batch_update(spreadsheet_id, [{
            "addSheet": {"properties": {"title": title, "gridProperties": {"rowCount": rows, "columnCount": cols}}}
        }])
        replies = data.get("replies") or [{}]
        props = (replies[0].get("addSheet") or {}).get("properties") or {"title": title}
        return Tab.from_properties(props)

    def create_spreadsheet(self, title: str, tab_title: str = DEFAULT_TAB,
                           rows: int = MIN_TAB_ROWS, cols: int = MIN_TAB_COLS) -> Dict:
        data = self._request("POST", SHEETS_API, body={
            "properties": {"title": title},
            "sheets": [{"properties": {"title": tab_title, "gridProperties": {"rowCount": rows, "columnCount": cols}}}],
        })
        sheets = data.get("sheets") or [{}]
        tab = Tab.from_properties(sheets[0].get("properties") or {"title": tab_title})
        return {
            "spreadsheetId": data.get("spreadsheetId"),
            "title": (data.get("properties") or {}).get("title", title),
            "spreadsheetUrl": data.get("spreadsheetUrl"),
            "tab": tab,
        }

    # --- values ---
    def append_values(self, spreadsheet_id: str, sheet_name: str, rows: List[List[str]]) -> Dict:
        rng = quote(a1_range(sheet_name, "A1"), safe="")
        return self._request("POST", f"{SHEETS_API}/{spreadsheet_id}/values/{rng}:append",
                             params={"valueInputOption": "RAW", "insertDataOption": "INSERT_ROWS"},
                             body={"values": rows})

    def clear_values(self, spreadsheet_id: str, sheet_name: str) -> Dict:
        rng = quote(a1_range(sheet_name), safe="")
        return self._request("POST", f"{SHEETS_API}/{spreadsheet_id}/values/{rng}:clear", body={})

    def put_values(self, spreadsheet_id: str, sheet_name: str, rows: List[List[str]]) -> Dict:
        rng = quote(a1_range(sheet_name, "A1"), safe="")
        return self._request("PUT", f"{SHEETS_API}/{spreadsheet_id}/values/{rng}",
                             params={"valueInputOption": "RAW"}, body={"values": rows})

    def batch_update(self, spreadsheet_id: str, requests_: List[Dict]) -> Dict:
        return self._request("POST", f"{SHEETS_API}/{spreadsheet_id}:batchUpdate", body={"requests": requests_})

# ---------- Writer ----------
def create_unique_tab(client: SheetsClient, spreadsheet_id: str, title: str,
                      rows: int = MIN_TAB_ROWS, cols: int = MIN_TAB_COLS) -> Tab:
    """Add a tab unless one with the same title (case-insensitive) exists; CONFLICT otherwise."""
    wanted = title.strip()
    if any(t.title.lower() == wanted.lower() for t in client.get_tabs(spreadsheet_id)):
        raise SheetsAPIError(ErrorKind.CONFLICT, f'Tab "{wanted}" already exists', status=409)
    return client.create_tab(spreadsheet_id, wanted, rows, cols)

def header_format_requests(tab_id: int, column_count: int) -> List[Dict]:
    return [
        {"repeatCell": {
            "range": {"sheetId": tab_id, "startRowIndex": 0, "endRowIndex": 1},
            "cell": {"userEnteredFormat": {"backgroundColor": {"red": 0.9, "green": 0.9, "blue": 0.9},
                                           "textFormat": {"bold": True}}},
            "fields": "userEnteredFormat(backgroundColor,textFormat)",
        }},
        {"autoResizeDimensions": {
            "dimensions": {"sheetId": tab_id, "dimension": "COLUMNS", "startIndex": 0, "endIndex": max(1, column_count)},
        }},
    ]

@dataclass
class SheetWriter:
    client: SheetsClient
    auto_format: bool = AUTO_FORMAT

    def validate_token(self) -> Dict:
        return self.client.introspect()

    def resolve_destination(self, destination: Destination, mode: UploadMode,
                            sheet_data: List[List[str]]) -> Destination:
        """
        Create the tab or spreadsheet the mode asks for and return the concrete
        destination. Raises SheetsAPIError (CONFLICT for a duplicate tab title).
        """
        if mode == UploadMode.REPLACE_SPREADSHEET:
            return Destination(destination.spreadsheet_id, DEFAULT_TAB, destination.title, destination.tab_id)

        rows = max(MIN_TAB_ROWS, len(sheet_data))
        cols = max([MIN_TAB_COLS] + [len(r) for r in sheet_data])

        if mode == UploadMode.CREATE_TAB_THEN_WRITE:
            wanted = destination.sheet_name.strip()
            tab = create_unique_tab(self.client, destination.spreadsheet_id, wanted, rows, cols)
            log.info("Created tab %r in %s", tab.title, destination.spreadsheet_id)
            return Destination(destination.spreadsheet_id, tab.title or wanted, destination.title, tab.id)

        if mode == UploadMode.CREATE_SPREADSHEET_THEN_WRITE:
            title = (destination.title or "").strip() or default_spreadsheet_title()
            created = self.client.create_spreadsheet(title, DEFAULT_TAB, rows, cols)
            if not created.get("spreadsheetId"):
                raise SheetsAPIError(ErrorKind.REMOTE_ERROR, "Create spreadsheet returned no id")
            tab = created["tab"]
            log.info("Created spreadsheet %r (%s)", title, created["spreadsheetId"])
            return Destination(created["spreadsheetId"], tab.title or DEFAULT_TAB, title, tab.id)

        return destination

    def write(self, destination: Destination, mode: UploadMode, sheet_data: List[List[str]],
              header_row: bool = False) -> WriteResult:
        if not sheet_data:
            raise ValueError("sheet_data must not be empty")
        sid, tab = destination.spreadsheet_id, destination.sheet_name
        try:
            if mode.replaces:
                try:
                    self.client.clear_values(sid, tab)
                except SheetsAPIError as e:
                    # a failed clear aborts; writing over stale rows would mix old and new data
                    kind = e.kind if e.kind in (ErrorKind.AUTH_EXPIRED, ErrorKind.NOT_FOUND) else ErrorKind.REMOTE_ERROR
                    return WriteResult.failed(SheetsAPIError(kind, "Clear failed: " + e.reason, e.status), destination.url)
                resp = self.client.put_values(sid, tab, sheet_data)
                updates = resp
            else:
                resp = self.client.append_values(sid, tab, sheet_data)
                updates = resp.get("updates") or {}
        except SheetsAPIError as e:
            return WriteResult.failed(e, destination.url)

        result = WriteResult(
            success=True,
            rows_written=int(updates.get("updatedRows") or len(sheet_data)),
            updated_range=updates.get("updatedRange"),
            destination_url=destination.url,
            updated_cells=int(updates.get("updatedCells") or sum(len(r) for r in sheet_data)),
        )
        if header_row and self.auto_format:
            self._format_header(destination, max(len(r) for r in sheet_data))
        return result

    def _format_header(self, destination: Destination, column_count: int):
        try:
            tab_id = destination.tab_id
            if tab_id is None:
                match = [t for t in self.client.get_tabs(destination.spreadsheet_id)
                         if t.title == destination.sheet_name]
                if not match:
                    return
                tab_id = match[0].id
            self.client.batch_update(destination.spreadsheet_id, header_format_requests(tab_id, column_count))
        except SheetsAPIError as e:
            log.warning("Header formatting skipped for %s: %s", destination.spreadsheet_id, e.reason)

    def run(self, destination: Destination, mode: UploadMode, sheet_data: List[List[str]],
            header_row: bool = False) -> WriteResult:
        """Introspect, resolve and write in one go; never raises SheetsAPIError."""
        try:
            self.validate_token()
            destination = self.resolve_destination(destination, mode, sheet_data)
        except SheetsAPIError as e:
            return WriteResult.failed(e, destination.url)
        return self.write(destination, mode, sheet_data, header_row=header_row)
