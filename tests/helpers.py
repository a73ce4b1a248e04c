"""
In-memory stand-in for the Google Sheets / Drive API, shaped like sheets.SheetsClient.
"""

import json
from typing import Callable, Dict, List, Optional

import requests

from sheets import ErrorKind, SheetsAPIError, Tab


class FakeSheets:
    def __init__(self, spreadsheets: Optional[Dict[str, Dict[str, List[List[str]]]]] = None):
        # spreadsheet id -> {tab title -> rows}
        self.spreadsheets: Dict[str, Dict[str, List[List[str]]]] = spreadsheets if spreadsheets is not None \
            else {"sid-1": {"Sheet1": []}}
        self.calls: List[tuple] = []
        self.failures: Dict[str, SheetsAPIError] = {}
        self.before: Dict[str, Callable[[], None]] = {}
        self._next_id = 100

    # --- test controls ---
    def fail(self, method: str, kind: ErrorKind, status: Optional[int] = None, reason: str = "boom"):
        self.failures[method] = SheetsAPIError(kind, reason, status)

    def rows(self, spreadsheet_id: str, tab: str) -> List[List[str]]:
        return self.spreadsheets[spreadsheet_id][tab]

    def called(self, method: str) -> bool:
        return any(c[0] == method for c in self.calls)

    def _hit(self, method: str, *args):
        self.calls.append((method,) + args)
        hook = self.before.pop(method, None)
        if hook:
            hook()
        if method in self.failures:
            raise self.failures[method]

    def _book(self, spreadsheet_id: str) -> Dict[str, List[List[str]]]:
        if spreadsheet_id not in self.spreadsheets:
            raise SheetsAPIError(ErrorKind.NOT_FOUND, "Spreadsheet not found", 404)
        return self.spreadsheets[spreadsheet_id]

    # --- SheetsClient surface ---
    def introspect(self):
        self._hit("introspect")
        return {"email": "someone@example.com"}

    def list_spreadsheets(self, page_size=50):
        self._hit("list_spreadsheets", page_size)
        return [{"id": sid, "name": sid, "owners": [{"displayName": "Someone"}]} for sid in self.spreadsheets]

    def get_tabs(self, spreadsheet_id):
        self._hit("get_tabs", spreadsheet_id)
        book = self._book(spreadsheet_id)
        return [Tab(id=i, title=t, index=i) for i, t in enumerate(book)]

    def create_tab(self, spreadsheet_id, title, rows=1000, cols=26):
        self._hit("create_tab", spreadsheet_id, title, rows, cols)
        book = self._book(spreadsheet_id)
        book[title] = []
        self._next_id += 1
        return Tab(id=self._next_id, title=title, index=len(book) - 1, row_count=rows, column_count=cols)

    def create_spreadsheet(self, title, tab_title="Sheet1", rows=1000, cols=26):
        self._hit("create_spreadsheet", title, tab_title, rows, cols)
        sid = "new-" + str(len(self.spreadsheets))
        self.spreadsheets[sid] = {tab_title: []}
        return {"spreadsheetId": sid, "title": title,
                "spreadsheetUrl": f"https://docs.google.com/spreadsheets/d/{sid}/edit",
                "tab": Tab(id=0, title=tab_title, index=0)}

    def append_values(self, spreadsheet_id, sheet_name, rows):
        self._hit("append_values", spreadsheet_id, sheet_name, len(rows))
        target = self._book(spreadsheet_id)[sheet_name]
        start = len(target) + 1
        target.extend([list(r) for r in rows])
        return {"updates": {"updatedRange": f"{sheet_name}!A{start}:Z{start + len(rows) - 1}",
                            "updatedRows": len(rows), "updatedCells": sum(len(r) for r in rows)}}

    def clear_values(self, spreadsheet_id, sheet_name):
        self._hit("clear_values", spreadsheet_id, sheet_name)
        self._book(spreadsheet_id)[sheet_name] = []
        return {"clearedRange": sheet_name}

    def put_values(self, spreadsheet_id, sheet_name, rows):
        self._hit("put_values", spreadsheet_id, sheet_name, len(rows))
        book = self._book(spreadsheet_id)
        book[sheet_name] = [list(r) for r in rows]
        return {"updatedRange": f"{sheet_name}!A1:Z{len(rows)}", "updatedRows": len(rows),
                "updatedCells": sum(len(r) for r in rows)}

    def batch_update(self, spreadsheet_id, requests_):
        self._hit("batch_update", spreadsheet_id, len(requests_))
        return {"replies": [{} for _ in requests_]}


def make_response(status: int, payload=None, text: Optional[str] = None) -> requests.Response:
    r = requests.Response()
    r.status_code = status
    r.encoding = "utf-8"
    if payload is not None:
        r._content = json.dumps(payload).encode("utf-8")
        r.headers["Content-Type"] = "application/json"
    else:
        r._content = (text or "").encode("utf-8")
    return r


class FakeSession:
    """Replays queued responses (or raises queued exceptions) and records each request."""

    def __init__(self, *responses):
        self.queue = list(responses)
        self.requests: List[dict] = []

    def request(self, method, url, **kwargs):
        self.requests.append(dict(kwargs, method=method, url=url))
        nxt = self.queue.pop(0)
        if isinstance(nxt, Exception):
            raise nxt
        return nxt
